"""Tests for pacing presets."""

import pytest

from app.services.pacing import PACING_PRESETS, get_pacing


def test_fast_preset():
    pacing = get_pacing("fast")
    assert (pacing.delay_between_items_ms, pacing.delay_after_error_ms, pacing.max_retries) == (500, 2000, 1)


def test_safe_preset():
    pacing = get_pacing("safe")
    assert (pacing.delay_between_items_ms, pacing.delay_after_error_ms, pacing.max_retries) == (2000, 5000, 2)


def test_presets_are_the_only_modes():
    assert set(PACING_PRESETS) == {"fast", "safe"}


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        get_pacing("turbo")
