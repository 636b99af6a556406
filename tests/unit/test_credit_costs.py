from __future__ import annotations

import logging

import pytest

from app.services.credits import FALLBACK_COST, estimate_cost


@pytest.mark.parametrize(
  ("enhancement_type", "has_mask", "expected"),
  [
    ("image_enhancement", False, 2),
    ("declutter", False, 2),
    ("blend_materials", False, 5),
    ("day_to_dusk", False, 6),
    ("stage_room", False, 6),
    ("item_removal", False, 10),
    ("add_pool", True, 10),
    ("add_pool", False, 2),
    ("my_custom_look", True, 10),
    ("my_custom_look", False, 2),
    ("  Item_Removal  ", False, 10),
  ],
)
def test_estimate_cost_table(enhancement_type: str, has_mask: bool, expected: int) -> None:
  assert estimate_cost(enhancement_type, has_mask) == expected


def test_estimate_cost_defaults_empty_type_to_basic() -> None:
  assert estimate_cost(None) == 2
  assert estimate_cost("   ") == 2


def test_unknown_type_uses_fallback_and_warns(caplog: pytest.LogCaptureFixture) -> None:
  with caplog.at_level(logging.WARNING, logger="app.services.credits"):
    assert estimate_cost("hologram") == FALLBACK_COST
  assert "hologram" in caplog.text
