"""Step types produced by command builders.

A step is either a `RemoteStep` (one shell command run over SSH) or a
`LocalStep` (an in-process effect on local state). Each step reaches exactly
one milestone.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import ValidationError

if TYPE_CHECKING:
    from ..models import ManagedResource, ServerRecord
    from ..store import ResourceStore


REDACTED = "********"


@dataclass(frozen=True)
class RemoteStep:
    milestone: str
    command: str = field(repr=False)
    # Values masked wherever the command or its output is logged or stored
    secrets: Tuple[str, ...] = field(default=(), repr=False)

    @property
    def is_remote(self) -> bool:
        return True

    @property
    def display(self) -> str:
        return redact(self.command, self.secrets)


@dataclass(frozen=True)
class LocalStep:
    milestone: str
    effect: Callable[["ExecutionContext"], None]
    description: str = ""

    @property
    def is_remote(self) -> bool:
        return False


Step = Union[RemoteStep, LocalStep]


@dataclass
class StepResult:
    index: int
    milestone: str
    command: Optional[str]
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class ExecutionContext:
    """What local effects may touch while a sequence runs."""

    store: "ResourceStore"
    resource: "ManagedResource"
    server: "ServerRecord"
    config: Dict[str, Any]
    results: List[StepResult] = field(default_factory=list)

    def output_of(self, milestone: str) -> str:
        """stdout of the most recent step that reached `milestone`."""
        for result in reversed(self.results):
            if result.milestone == milestone:
                return result.stdout
        raise KeyError(f"No step output recorded for milestone {milestone}")


def remote(milestone: str, *commands: str) -> RemoteStep:
    """Chain one or more shell commands into a single remote step."""
    if not commands:
        raise ValueError("A remote step needs at least one command")
    return RemoteStep(milestone=milestone, command=" && ".join(commands))


def redact(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def conceal(steps: Sequence[Step], *secrets: Optional[str]) -> List[Step]:
    """Mark the remote steps that embed any of `secrets` for redaction."""
    values = [str(value) for value in secrets if value]
    variants = values + [quote(value) for value in values if quote(value) != value]
    concealed: List[Step] = []
    for step in steps:
        if isinstance(step, RemoteStep):
            found = tuple(value for value in variants if value in step.command and value not in step.secrets)
            if found:
                # Longest first so a quoted form is masked before its bare value
                merged = tuple(sorted(step.secrets + found, key=len, reverse=True))
                step = replace(step, secrets=merged)
        concealed.append(step)
    return concealed


def local(milestone: str, effect: Callable[[ExecutionContext], None], description: str = "") -> LocalStep:
    return LocalStep(milestone=milestone, effect=effect, description=description)


def quote(value: object) -> str:
    return shlex.quote(str(value))


def heredoc(path: str, content: str, marker: str = "PROVISIONER_EOF") -> str:
    """Write `content` verbatim to `path` on the remote host."""
    if marker in content:
        raise ValidationError(f"Content may not contain the heredoc marker {marker}")
    return f"cat > {quote(path)} << '{marker}'\n{content.rstrip()}\n{marker}"
