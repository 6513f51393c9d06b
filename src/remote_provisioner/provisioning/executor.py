"""Runs a step sequence over one SSH session, strictly in order."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence

from ..utils.logging import get_logger
from .steps import ExecutionContext, LocalStep, Step, StepResult, redact

logger = get_logger(__name__)

DEFAULT_SESSION_TIMEOUT = 600

StepCallback = Callable[[Step, StepResult], None]


class CommandSession(Protocol):
    """The subset of `SSHSession` the executor needs."""

    def run(self, command: str, *, timeout: Optional[float] = None):
        ...


@dataclass
class ExecutionResult:
    results: List[StepResult] = field(default_factory=list)
    failed: Optional[StepResult] = None
    timed_out: bool = False
    timeout: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.failed is None

    @property
    def steps_run(self) -> int:
        return len(self.results)

    def error_text(self) -> str:
        if self.failed is None:
            return ""
        step = self.failed
        if self.timed_out:
            header = f"Session timed out after {self.timeout} seconds at step {step.index} ({step.milestone})"
        elif step.command is None:
            header = f"Local step {step.index} ({step.milestone}) failed"
        else:
            header = f"Command failed with exit status {step.exit_status} at step {step.index} ({step.milestone}): {step.command}"
        lines = [header]
        if step.stderr:
            lines.append(f"Error Output: {step.stderr}")
        if step.stdout:
            lines.append(f"Output: {step.stdout}")
        return "\n".join(lines)


class RemoteExecutor:
    """Single deterministic pass; no retries of its own."""

    def __init__(
        self,
        timeout: float = DEFAULT_SESSION_TIMEOUT,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self._clock = clock

    def run(
        self,
        session: CommandSession,
        steps: Sequence[Step],
        context: Optional[ExecutionContext] = None,
        on_step: Optional[StepCallback] = None,
    ) -> ExecutionResult:
        execution = ExecutionResult(timeout=self.timeout)
        deadline = self._clock() + self.timeout

        for index, step in enumerate(steps, 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                result = StepResult(
                    index=index,
                    milestone=step.milestone,
                    command=getattr(step, "display", None),
                    exit_status=-1,
                    stderr=f"TIMEOUT: session budget of {self.timeout} seconds exhausted",
                )
                execution.timed_out = True
            elif isinstance(step, LocalStep):
                result = self._run_local(index, step, context)
            else:
                logger.debug("SSH command [%d/%d]: %s", index, len(steps), step.display)
                outcome = session.run(step.command, timeout=remaining)
                result = StepResult(
                    index=index,
                    milestone=step.milestone,
                    command=step.display,
                    exit_status=outcome.exit_status,
                    stdout=redact(outcome.stdout, step.secrets),
                    stderr=redact(outcome.stderr, step.secrets),
                )
                if not result.ok and self._clock() >= deadline:
                    execution.timed_out = True

            execution.results.append(result)
            if context is not None:
                context.results.append(result)

            if not result.ok:
                execution.failed = result
                logger.error(
                    "Step %d/%d (%s) failed with exit status %s",
                    index,
                    len(steps),
                    step.milestone,
                    result.exit_status,
                )

            if on_step is not None:
                on_step(step, result)

            if not result.ok:
                break

        return execution

    def _run_local(self, index: int, step: LocalStep, context: Optional[ExecutionContext]) -> StepResult:
        if context is None:
            raise ValueError(f"Local step {step.milestone} needs an execution context")
        try:
            step.effect(context)
        except Exception as exc:
            logger.warning("Local step %s raised: %s", step.milestone, exc)
            return StepResult(
                index=index,
                milestone=step.milestone,
                command=None,
                exit_status=1,
                stderr=f"{type(exc).__name__}: {exc}",
            )
        return StepResult(index=index, milestone=step.milestone, command=None, exit_status=0)
