from typing import List, Sequence

import numpy as np
import pytest

from slotscan.segmentation import (
  SegmentationParams,
  SlotSegmenter,
  merge_nearby,
  remove_contained,
  segment,
  sort_row_major
)
from slotscan.slot_types import Rect

ROWS, COLUMNS = 4, 6
CELL, GUTTER, MARGIN = 40, 12, 20
WIDTH = 2 * MARGIN + COLUMNS * CELL + (COLUMNS - 1) * GUTTER
HEIGHT = 2 * MARGIN + ROWS * CELL + (ROWS - 1) * GUTTER


def _grid() -> List[Rect]:
  return [
    Rect(MARGIN + column * (CELL + GUTTER), MARGIN + row * (CELL + GUTTER), CELL, CELL)
    for row in range(ROWS)
    for column in range(COLUMNS)
  ]


def _render(rects: Sequence[Rect]) -> np.ndarray:
  image = np.full((HEIGHT, WIDTH, 3), 15, dtype=np.uint8)
  for rect in rects:
    image[rect.y : rect.bottom, rect.x : rect.right] = 200
  return image


def _assert_close(found: Sequence[Rect], expected: Sequence[Rect], tolerance: int = 2) -> None:
  assert len(found) == len(expected)
  for actual, wanted in zip(found, expected):
    assert abs(actual.x - wanted.x) <= tolerance
    assert abs(actual.y - wanted.y) <= tolerance
    assert abs(actual.width - wanted.width) <= tolerance
    assert abs(actual.height - wanted.height) <= tolerance


def test_clean_grid_is_recovered_in_row_major_order() -> None:
  expected = _grid()

  found = segment(_render(expected))

  _assert_close(found, expected)


def test_missing_cells_are_filled_by_grid_inference() -> None:
  expected = _grid()
  missing = {(0, 2), (0, 3), (1, 1), (1, 4), (2, 2), (2, 5), (3, 3)}
  visible = [
    rect for index, rect in enumerate(expected)
    if (index // COLUMNS, index % COLUMNS) not in missing
  ]

  found = segment(_render(visible))

  _assert_close(found, expected)


def test_grid_inference_can_be_disabled() -> None:
  visible = _grid()[:-1]
  params = SegmentationParams(infer_grid=False)

  found = SlotSegmenter(params).segment(_render(visible))

  assert len(found) == len(visible)


def test_fewer_than_three_detections_skip_grid_inference() -> None:
  rects = [Rect(20, 20, 40, 40), Rect(176, 124, 40, 40)]

  found = segment(_render(rects))

  _assert_close(found, rects)


def test_grayscale_input_is_supported() -> None:
  image = _render(_grid())[:, :, 0]

  assert len(segment(image)) == ROWS * COLUMNS


def test_degenerate_images_never_raise() -> None:
  assert segment(np.zeros((0, 0, 3), dtype=np.uint8)) == []
  assert segment(np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)) == []
  # A single component covering the frame is rejected as background.
  assert segment(np.full((HEIGHT, WIDTH, 3), 255, dtype=np.uint8)) == []


def test_merge_is_idempotent() -> None:
  rects = [
    Rect(0, 0, 10, 10),
    Rect(13, 0, 10, 10),
    Rect(26, 2, 10, 10),
    Rect(100, 100, 10, 10)
  ]

  once = merge_nearby(rects, 5)
  twice = merge_nearby(once, 5)

  assert sorted(once, key=lambda r: (r.x, r.y)) == sorted(twice, key=lambda r: (r.x, r.y))
  assert Rect(0, 0, 36, 12) in once
  assert len(once) == 2


def test_contained_rects_are_removed() -> None:
  outer = Rect(0, 0, 50, 50)
  inner = Rect(10, 10, 10, 10)
  other = Rect(60, 0, 20, 20)

  kept = remove_contained([inner, outer, other])

  assert inner not in kept
  assert set(kept) == {outer, other}
  for rect in kept:
    assert not any(rect is not outer_rect and outer_rect.contains(rect) for outer_rect in kept)


def test_sort_row_major_tolerates_jitter() -> None:
  rects = [Rect(100, 52, 10, 10), Rect(10, 50, 10, 10), Rect(50, 0, 10, 10), Rect(0, 2, 10, 10)]

  ordered = sort_row_major(rects, image_height=100, tolerance=0.05)

  assert ordered == [Rect(0, 2, 10, 10), Rect(50, 0, 10, 10), Rect(10, 50, 10, 10), Rect(100, 52, 10, 10)]


def test_params_from_mapping() -> None:
  params = SegmentationParams.from_mapping({"threshold": "80", "merge_gap": 2.0, "infer_grid": 0})

  assert params.threshold == 80.0
  assert params.merge_gap == 2
  assert params.infer_grid is False
  assert SegmentationParams.from_mapping(None) == SegmentationParams()

  with pytest.raises(ValueError):
    SegmentationParams.from_mapping({"kernel": 5})


@pytest.mark.parametrize("raw, expected", [("false", False), ("0", False), (" Off ", False), ("true", True), (1, True)])
def test_params_flag_strings(raw: object, expected: bool) -> None:
  assert SegmentationParams.from_mapping({"infer_grid": raw}).infer_grid is expected


@pytest.mark.parametrize("data", [{"infer_grid": "maybe"}, {"infer_grid": None}, [("threshold", 80)], "threshold"])
def test_params_reject_malformed_overrides(data: object) -> None:
  with pytest.raises(ValueError):
    SegmentationParams.from_mapping(data)
