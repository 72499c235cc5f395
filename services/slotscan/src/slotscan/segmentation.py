"""Slot segmentation: candidate icon rectangles from pixel statistics alone.

The pipeline binarizes luma, dilates the mask to bridge small gaps (an icon
and its quantity glyph, for instance), labels 4-connected components with a
union-find over horizontal runs, filters the resulting boxes by size and
shape, merges fragments and finally recovers slots that were missed by
assuming the inventory is a regular grid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from statistics import median
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .slot_types import Rect

LOGGER = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _parse_flag(key: str, value: object) -> bool:
  if isinstance(value, bool):
    return value
  if isinstance(value, (int, float)):
    return bool(value)
  if isinstance(value, str):
    text = value.strip().lower()
    if text in _TRUTHY:
      return True
    if text in _FALSY:
      return False
  raise ValueError(f"Segmentation parameter {key} must be a boolean, got {value!r}")


@dataclass(slots=True)
class SegmentationParams:
  threshold: float = 60.0
  dilate_radius: int = 3
  min_area_px: int = 64
  min_area_ratio: float = 0.001
  max_area_ratio: float = 0.45
  min_aspect: float = 0.4
  max_aspect: float = 3.0
  merge_gap: int = 5
  iou_threshold: float = 0.6
  row_tolerance: float = 0.05
  min_grid_detections: int = 3
  infer_grid: bool = True

  @classmethod
  def from_mapping(cls, data: Optional[Mapping[str, object]]) -> "SegmentationParams":
    """Build params from request overrides, rejecting unknown keys."""

    params = cls()
    if data is None:
      return params
    if not isinstance(data, Mapping):
      raise ValueError("Segmentation parameters must be an object")

    known = {field.name for field in fields(cls)}
    for key, value in data.items():
      if key not in known:
        raise ValueError(f"Unknown segmentation parameter: {key}")
      current = getattr(params, key)
      if isinstance(current, bool):
        setattr(params, key, _parse_flag(key, value))
      elif isinstance(current, int):
        setattr(params, key, int(value))
      else:
        setattr(params, key, float(value))
    return params


@dataclass(slots=True)
class _Blob:
  min_x: int
  max_x: int
  min_y: int
  max_y: int


def binarize(image: np.ndarray, threshold: float) -> np.ndarray:
  """Return a boolean foreground mask where luma exceeds the threshold."""

  if image.ndim == 2:
    luma = image.astype(np.float32)
  elif image.shape[2] < 3:
    luma = image[:, :, 0].astype(np.float32)
  else:
    rgb = image[:, :, :3].astype(np.float32)
    luma = 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]
  return luma > threshold


def _sliding_or(mask: np.ndarray, radius: int, axis: int) -> np.ndarray:
  moved = np.moveaxis(mask, axis, 0).astype(np.int32)
  length = moved.shape[0]
  window = 2 * radius + 1

  # One leading zero row so the window difference can start at index 0.
  padded = np.zeros((length + 2 * radius + 1,) + moved.shape[1:], dtype=np.int32)
  padded[radius + 1 : radius + 1 + length] = moved
  sums = np.cumsum(padded, axis=0)
  counts = sums[window:] - sums[:-window]
  return np.moveaxis(counts > 0, 0, axis)


def dilate(mask: np.ndarray, radius: int) -> np.ndarray:
  """Square dilation of the given radius as two separable window passes."""

  if radius <= 0:
    return mask.astype(bool)
  return _sliding_or(_sliding_or(mask, radius, axis=1), radius, axis=0)


def _find(parent: List[int], node: int) -> int:
  root = node
  while parent[root] != root:
    root = parent[root]
  while parent[node] != root:
    parent[node], node = root, parent[node]
  return root


def _union(parent: List[int], a: int, b: int) -> None:
  root_a = _find(parent, a)
  root_b = _find(parent, b)
  if root_a == root_b:
    return
  if root_a < root_b:
    parent[root_b] = root_a
  else:
    parent[root_a] = root_b


def label_components(mask: np.ndarray) -> List[_Blob]:
  """Label 4-connected foreground components and return their extents."""

  height, width = mask.shape
  parent: List[int] = []
  runs: List[Tuple[int, int, int, int]] = []
  previous: List[Tuple[int, int, int]] = []
  row = np.zeros(width + 2, dtype=np.int8)

  for y in range(height):
    row[1:-1] = mask[y]
    edges = np.diff(row)
    starts = np.flatnonzero(edges == 1).tolist()
    ends = np.flatnonzero(edges == -1).tolist()

    current: List[Tuple[int, int, int]] = []
    cursor = 0
    for start, end in zip(starts, ends):
      label = len(parent)
      parent.append(label)
      while cursor < len(previous) and previous[cursor][1] <= start:
        cursor += 1
      overlap = cursor
      while overlap < len(previous) and previous[overlap][0] < end:
        _union(parent, label, previous[overlap][2])
        overlap += 1
      current.append((start, end, label))
      runs.append((y, start, end, label))
    previous = current

  blobs: Dict[int, _Blob] = {}
  for y, start, end, label in runs:
    root = _find(parent, label)
    blob = blobs.get(root)
    if blob is None:
      blobs[root] = _Blob(start, end - 1, y, y)
      continue
    blob.min_x = min(blob.min_x, start)
    blob.max_x = max(blob.max_x, end - 1)
    blob.min_y = min(blob.min_y, y)
    blob.max_y = max(blob.max_y, y)

  return list(blobs.values())


def _blob_to_rect(blob: _Blob, radius: int, width: int, height: int) -> Optional[Rect]:
  # Undo dilation growth except where the blob was cut by the image border.
  min_x = blob.min_x + radius if blob.min_x > 0 else 0
  min_y = blob.min_y + radius if blob.min_y > 0 else 0
  max_x = blob.max_x - radius if blob.max_x < width - 1 else width - 1
  max_y = blob.max_y - radius if blob.max_y < height - 1 else height - 1
  if max_x < min_x or max_y < min_y:
    return None
  return Rect(min_x, min_y, max_x - min_x + 1, max_y - min_y + 1)


def filter_components(rects: Sequence[Rect], width: int, height: int, params: SegmentationParams) -> List[Rect]:
  """Drop noise, background-sized regions and implausible shapes."""

  image_area = float(width * height)
  min_area = max(float(params.min_area_px), params.min_area_ratio * image_area)
  max_area = params.max_area_ratio * image_area

  kept: List[Rect] = []
  for rect in rects:
    if rect.area < min_area or rect.area > max_area:
      continue
    aspect = rect.width / float(rect.height)
    if aspect < params.min_aspect or aspect > params.max_aspect:
      continue
    kept.append(rect)
  return kept


def merge_nearby(rects: Sequence[Rect], gap: int) -> List[Rect]:
  """Union rects whose gap on both axes is within ``gap`` until stable."""

  merged = list(rects)
  changed = True
  while changed:
    changed = False
    for i in range(len(merged)):
      for j in range(i + 1, len(merged)):
        gap_x, gap_y = merged[i].gap_to(merged[j])
        if gap_x <= gap and gap_y <= gap:
          merged[i] = merged[i].union(merged[j])
          del merged[j]
          changed = True
          break
      if changed:
        break
  return merged


def remove_contained(rects: Sequence[Rect]) -> List[Rect]:
  """Drop every rect that lies fully inside a larger kept rect."""

  kept: List[Rect] = []
  for rect in sorted(rects, key=lambda r: r.area, reverse=True):
    if any(outer.contains(rect) for outer in kept):
      continue
    kept.append(rect)
  return kept


def _axis_pitch(centers: Sequence[float], min_step: float) -> Optional[float]:
  ordered = sorted(centers)
  deltas = [b - a for a, b in zip(ordered, ordered[1:]) if b - a >= min_step]
  if not deltas:
    return None
  return float(median(deltas))


def _axis_layout(centers: Sequence[float], pitch: Optional[float]) -> Tuple[float, List[int]]:
  if pitch is None:
    return float(median(centers)), [0]
  anchor = min(centers)
  indices = [int(round((center - anchor) / pitch)) for center in centers]
  origin = float(median([center - index * pitch for center, index in zip(centers, indices)]))
  return origin, list(range(min(indices), max(indices) + 1))


def infer_grid(rects: Sequence[Rect], width: int, height: int, iou_threshold: float = 0.6) -> List[Rect]:
  """Add a rect for every grid cell implied by the detections but not found."""

  cell_w = float(median(rect.width for rect in rects))
  cell_h = float(median(rect.height for rect in rects))
  centers_x = [rect.center[0] for rect in rects]
  centers_y = [rect.center[1] for rect in rects]

  pitch_x = _axis_pitch(centers_x, cell_w * 0.5)
  pitch_y = _axis_pitch(centers_y, cell_h * 0.5)
  origin_x, columns = _axis_layout(centers_x, pitch_x)
  origin_y, rows = _axis_layout(centers_y, pitch_y)

  result = list(rects)
  recovered = 0
  for row in rows:
    cy = origin_y + row * (pitch_y or 0.0)
    for column in columns:
      cx = origin_x + column * (pitch_x or 0.0)
      cell = Rect.from_center(cx, cy, cell_w, cell_h).clamp(width, height)
      if cell is None:
        continue
      if any(cell.iou(real) >= iou_threshold for real in rects):
        continue
      result.append(cell)
      recovered += 1

  LOGGER.debug(
    "Grid inference: %dx%d cells of %.1fx%.1f, recovered %d slots",
    len(columns), len(rows), cell_w, cell_h, recovered
  )
  return result


def sort_row_major(rects: Sequence[Rect], image_height: int, tolerance: float = 0.05) -> List[Rect]:
  """Group rects into rows by top edge, then order each row left to right."""

  limit = tolerance * image_height
  rows: List[List[Rect]] = []
  for rect in sorted(rects, key=lambda r: (r.y, r.x)):
    if rows and abs(rect.y - rows[-1][0].y) < limit:
      rows[-1].append(rect)
    else:
      rows.append([rect])
  return [rect for row in rows for rect in sorted(row, key=lambda r: r.x)]


def _segment(image: np.ndarray, params: SegmentationParams) -> List[Rect]:
  height, width = image.shape[:2]
  radius = max(0, int(params.dilate_radius))

  mask = dilate(binarize(image, params.threshold), radius)
  blobs = label_components(mask)
  rects = [rect for rect in (_blob_to_rect(blob, radius, width, height) for blob in blobs) if rect is not None]

  rects = filter_components(rects, width, height, params)
  rects = merge_nearby(rects, params.merge_gap)
  rects = remove_contained(rects)
  LOGGER.debug("Segmentation kept %d of %d components", len(rects), len(blobs))

  if params.infer_grid and len(rects) >= params.min_grid_detections:
    rects = infer_grid(rects, width, height, params.iou_threshold)
  else:
    LOGGER.debug("Skipping grid inference with %d detections", len(rects))

  return sort_row_major(rects, height, params.row_tolerance)


def segment(image: np.ndarray, params: Optional[SegmentationParams] = None) -> List[Rect]:
  """Find candidate slot rectangles in an RGB/RGBA or grayscale image.

  Never raises: an empty image yields no rects and an internal failure
  yields a single full-image rect.
  """

  params = params or SegmentationParams()
  if image is None or getattr(image, "ndim", 0) < 2 or image.size == 0:
    return []

  height, width = image.shape[:2]
  try:
    return _segment(image, params)
  except Exception:  # pragma: no cover - unexpected failure
    LOGGER.exception("Slot segmentation failed; returning the full image")
    return [Rect(0, 0, width, height)]


class SlotSegmenter:
  """Segment screenshots with a fixed parameter set."""

  def __init__(self, params: Optional[SegmentationParams] = None) -> None:
    self._params = params or SegmentationParams()

  @property
  def params(self) -> SegmentationParams:
    return self._params

  def segment(self, image: np.ndarray, params: Optional[SegmentationParams] = None) -> List[Rect]:
    return segment(image, params or self._params)
