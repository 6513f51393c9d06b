"""Milestone definitions: the fixed, human-labeled checkpoints of an operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

COMPLETE = "complete"


@dataclass(frozen=True)
class Milestone:
    key: str
    label: str


def humanize(key: str) -> str:
    """`clone_or_fetch_repository` -> `Clone or fetch repository`."""
    words = key.replace("-", "_").replace(".", "_").split("_")
    text = " ".join(word for word in words if word)
    return text[:1].upper() + text[1:] if text else "Unknown milestone"


@dataclass(frozen=True)
class MilestoneDefinition:
    """Ordered milestones for one operation; the last one is always `complete`."""

    operation: str
    milestones: Tuple[Milestone, ...]

    def __post_init__(self) -> None:
        keys = [m.key for m in self.milestones]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate milestone keys for {self.operation}")
        if not keys or keys[-1] != COMPLETE:
            raise ValueError(f"Milestones for {self.operation} must end with '{COMPLETE}'")

    @classmethod
    def of(cls, operation: str, *pairs: Tuple[str, str]) -> "MilestoneDefinition":
        milestones = tuple(Milestone(key, label) for key, label in pairs)
        if not milestones or milestones[-1].key != COMPLETE:
            milestones += (Milestone(COMPLETE, "Complete"),)
        return cls(operation=operation, milestones=milestones)

    def count_labels(self) -> int:
        return len(self.milestones)

    def keys(self) -> List[str]:
        return [m.key for m in self.milestones]

    def label_for(self, key: str) -> str:
        for milestone in self.milestones:
            if milestone.key == key:
                return milestone.label
        return humanize(key)

    def position_of(self, key: str) -> int:
        """1-based step number of `key`."""
        return self.keys().index(key) + 1

    def to_payload(self) -> List[Dict[str, str]]:
        return [{"key": m.key, "label": m.label} for m in self.milestones]


def catalog_payload(definitions: Sequence[MilestoneDefinition]) -> Dict[str, List[Dict[str, str]]]:
    return {definition.operation: definition.to_payload() for definition in definitions}
