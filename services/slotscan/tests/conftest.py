from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
import pytest

from slotscan.catalog import ReferenceCatalog, make_entry
from slotscan.similarity import normalize_rows

Color = Tuple[int, int, int]

COLORS: Dict[str, Color] = {
  "Bandage": (200, 30, 30),
  "Medkit": (30, 200, 30),
  "Rope": (60, 60, 230),
  "Gunpowder": (200, 200, 30)
}


class DownsampleEncoder:
  """Embeds an image as its 8x8 area-averaged thumbnail."""

  dimension = 8 * 8 * 3

  def __init__(
    self,
    *,
    fail_on_blank: bool = False,
    delays: Optional[Dict[Color, float]] = None
  ) -> None:
    self.calls: List[int] = []
    self._fail_on_blank = fail_on_blank
    self._delays = delays or {}
    self._lock = threading.Lock()

  def embed_batch(self, images: Sequence[np.ndarray]) -> np.ndarray:
    with self._lock:
      self.calls.append(len(images))
    rows = []
    for image in images:
      if self._fail_on_blank and not np.any(image):
        raise ValueError("blank crop")
      delay = self._delays.get(tuple(int(v) for v in image[0, 0, :3]))
      if delay:
        time.sleep(delay)
      small = cv2.resize(np.ascontiguousarray(image[:, :, :3]), (8, 8), interpolation=cv2.INTER_AREA)
      rows.append(small.astype(np.float32).reshape(-1))
    return normalize_rows(np.stack(rows))


def solid(color: Color, size: int = 224) -> np.ndarray:
  image = np.empty((size, size, 3), dtype=np.uint8)
  image[...] = color
  return image


@pytest.fixture
def solid_image() -> Callable[..., np.ndarray]:
  return solid


@pytest.fixture
def downsample_encoder() -> Callable[..., DownsampleEncoder]:
  return DownsampleEncoder


@pytest.fixture
def color_catalog() -> ReferenceCatalog:
  encoder = DownsampleEncoder()
  entries = []
  for name, color in COLORS.items():
    vectors = encoder.embed_batch([solid(color)])
    entries.append(make_entry(name, vectors, variant_tags=["bg_none"]))
  return ReferenceCatalog(entries)


@pytest.fixture
def colors() -> Dict[str, Color]:
  return dict(COLORS)
