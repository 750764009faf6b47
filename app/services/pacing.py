"""Pacing presets for calls to the external generator."""

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class PacingConfig:
    delay_between_items_ms: int
    delay_after_error_ms: int
    max_retries: int
    description: str


PACING_PRESETS: Dict[str, PacingConfig] = {
    "fast": PacingConfig(
        delay_between_items_ms=500,
        delay_after_error_ms=2000,
        max_retries=1,
        description="Faster processing, higher rate limit risk",
    ),
    "safe": PacingConfig(
        delay_between_items_ms=2000,
        delay_after_error_ms=5000,
        max_retries=2,
        description="Slower processing, lower rate limit risk",
    ),
}


def get_pacing(mode: str) -> PacingConfig:
    """Return the pacing preset for a named mode."""
    try:
        return PACING_PRESETS[mode]
    except KeyError:
        raise ValueError(f"Unknown pacing mode: {mode}") from None
