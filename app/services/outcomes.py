"""Per-item processing outcomes."""

from dataclasses import dataclass
from typing import Union

from app.models.run_item import ItemStatus


@dataclass(frozen=True)
class Completed:
    created: int
    replaced: int = 0
    tokens_used: int = 0

    status = ItemStatus.COMPLETED


@dataclass(frozen=True)
class Failed:
    message: str

    status = ItemStatus.FAILED


@dataclass(frozen=True)
class Skipped:
    reason: str

    status = ItemStatus.SKIPPED


Outcome = Union[Completed, Failed, Skipped]
