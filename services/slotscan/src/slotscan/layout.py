"""Editable slot layout used while a user adjusts detections."""

from __future__ import annotations

import logging
from statistics import median
from typing import Iterable, List, Optional, Tuple

from .slot_types import Rect

LOGGER = logging.getLogger(__name__)

MIN_SLOT_SIZE = 10
UNIFORM_CELL_SCALE = 1.35


class SlotLayout:
  """Mutable list of slot rects bound to one image size.

  Rects are kept in insertion order; the most recently added rect is the
  topmost one when rects overlap.
  """

  def __init__(self, width: int, height: int, rects: Iterable[Rect] = ()) -> None:
    self._width = int(width)
    self._height = int(height)
    self._rects: List[Rect] = []
    for rect in rects:
      self.add(rect)

  def __len__(self) -> int:
    return len(self._rects)

  def __iter__(self):
    return iter(self._rects)

  @property
  def rects(self) -> List[Rect]:
    return list(self._rects)

  def add(self, rect: Rect) -> bool:
    """Add a rect clamped to the image; rects under 10x10 are rejected."""

    clamped = rect.clamp(self._width, self._height)
    if clamped is None or clamped.width < MIN_SLOT_SIZE or clamped.height < MIN_SLOT_SIZE:
      LOGGER.debug("Rejected slot %s below minimum size", rect)
      return False
    self._rects.append(clamped)
    return True

  def remove(self, x: float, y: float) -> Optional[Rect]:
    """Remove the topmost rect containing the point and return it."""

    for index in range(len(self._rects) - 1, -1, -1):
      if self._rects[index].contains_point(x, y):
        return self._rects.pop(index)
    return None

  def expand_to_uniform_cells(self, scale: float = UNIFORM_CELL_SCALE) -> None:
    """Resize every rect around its center to the median cell times ``scale``."""

    if not self._rects:
      return

    cell_w = float(median(rect.width for rect in self._rects)) * scale
    cell_h = float(median(rect.height for rect in self._rects)) * scale
    expanded: List[Rect] = []
    for rect in self._rects:
      cx, cy = rect.center
      cell = Rect.from_center(cx, cy, cell_w, cell_h).clamp(self._width, self._height)
      expanded.append(cell if cell is not None else rect)
    self._rects = expanded

  def freeze(self) -> Tuple[Rect, ...]:
    return tuple(self._rects)
