"""Slot crop extraction helpers."""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .slot_types import Rect

Fill = Union[int, Tuple[int, ...]]


def _resolve_rect(frame: np.ndarray, rect: Rect) -> Tuple[int, int, int, int]:
  height, width = frame.shape[:2]
  x = max(0, min(int(rect.x), width - 1))
  y = max(0, min(int(rect.y), height - 1))
  w = max(1, min(int(rect.width), width - x))
  h = max(1, min(int(rect.height), height - y))
  return x, y, w, h


def crop_region(frame: np.ndarray, rect: Rect) -> np.ndarray:
  """Copy a rect out of the frame, clamping it to the frame bounds."""

  x, y, w, h = _resolve_rect(frame, rect)
  return frame[y : y + h, x : x + w].copy()


def letterbox(image: np.ndarray, size: int, fill: Fill = 0) -> np.ndarray:
  """Scale into a size x size canvas preserving aspect ratio, centered."""

  height, width = image.shape[:2]
  if height == size and width == size:
    return image.copy()

  scale = min(size / float(width), size / float(height))
  new_w = max(1, min(size, int(round(width * scale))))
  new_h = max(1, min(size, int(round(height * scale))))
  interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
  resized = cv2.resize(image, (new_w, new_h), interpolation=interpolation)
  if resized.ndim == 2 and image.ndim == 3:
    resized = resized[:, :, np.newaxis]

  canvas_shape = (size, size) + image.shape[2:]
  canvas = np.empty(canvas_shape, dtype=image.dtype)
  canvas[...] = fill
  top = (size - new_h) // 2
  left = (size - new_w) // 2
  canvas[top : top + new_h, left : left + new_w] = resized
  return canvas


def extract_regions(
  frame: np.ndarray,
  rects: Sequence[Rect],
  target_size: Optional[int] = None,
  fill: Fill = 0
) -> List[np.ndarray]:
  """Crop every rect, letterboxing each crop when a target size is given."""

  crops: List[np.ndarray] = []
  for rect in rects:
    crop = crop_region(frame, rect)
    if target_size:
      crop = letterbox(crop, target_size, fill)
    crops.append(crop)
  return crops
