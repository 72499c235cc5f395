"""Type definitions for the slot scanner."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Mapping, Optional, Tuple, TypedDict

import numpy as np


class RectDict(TypedDict):
  x: int
  y: int
  width: int
  height: int


class OcrWordDict(TypedDict, total=False):
  text: str
  bbox: RectDict
  confidence: float


class SlotResultDict(TypedDict):
  label: str
  score: float
  qty: int
  method: str


@dataclass(frozen=True, slots=True)
class Rect:
  """Pixel-space box; right and bottom are exclusive."""

  x: int
  y: int
  width: int
  height: int

  @property
  def right(self) -> int:
    return self.x + self.width

  @property
  def bottom(self) -> int:
    return self.y + self.height

  @property
  def area(self) -> int:
    return self.width * self.height

  @property
  def center(self) -> Tuple[float, float]:
    return self.x + self.width / 2.0, self.y + self.height / 2.0

  @classmethod
  def from_center(cls, cx: float, cy: float, width: float, height: float) -> "Rect":
    w = max(1, int(round(width)))
    h = max(1, int(round(height)))
    return cls(int(round(cx - w / 2.0)), int(round(cy - h / 2.0)), w, h)

  @classmethod
  def from_mapping(cls, data: Mapping[str, object]) -> "Rect":
    rect = cls(
      int(round(float(data["x"]))),
      int(round(float(data["y"]))),
      int(round(float(data["width"]))),
      int(round(float(data["height"])))
    )
    if rect.width <= 0 or rect.height <= 0:
      raise ValueError(f"Rect must have a positive size, got {rect.width}x{rect.height}")
    return rect

  def to_dict(self) -> RectDict:
    return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

  def contains_point(self, px: float, py: float) -> bool:
    return self.x <= px < self.right and self.y <= py < self.bottom

  def contains(self, other: "Rect") -> bool:
    return (
      other.x >= self.x
      and other.y >= self.y
      and other.right <= self.right
      and other.bottom <= self.bottom
    )

  def union(self, other: "Rect") -> "Rect":
    x = min(self.x, other.x)
    y = min(self.y, other.y)
    return Rect(x, y, max(self.right, other.right) - x, max(self.bottom, other.bottom) - y)

  def gap_to(self, other: "Rect") -> Tuple[int, int]:
    """Axis-wise gap to another rect; negative values mean overlap."""

    gap_x = max(self.x, other.x) - min(self.right, other.right)
    gap_y = max(self.y, other.y) - min(self.bottom, other.bottom)
    return gap_x, gap_y

  def iou(self, other: "Rect") -> float:
    inter_w = min(self.right, other.right) - max(self.x, other.x)
    inter_h = min(self.bottom, other.bottom) - max(self.y, other.y)
    if inter_w <= 0 or inter_h <= 0:
      return 0.0
    inter = inter_w * inter_h
    return inter / float(self.area + other.area - inter)

  def clamp(self, width: int, height: int) -> Optional["Rect"]:
    """Clip to a width x height image; None when nothing is left."""

    x = max(0, min(self.x, width))
    y = max(0, min(self.y, height))
    right = max(0, min(self.right, width))
    bottom = max(0, min(self.bottom, height))
    if right - x <= 0 or bottom - y <= 0:
      return None
    return Rect(x, y, right - x, bottom - y)


@dataclass(frozen=True, slots=True)
class OcrWord:
  text: str
  bbox: Rect
  confidence: float = -1.0

  @classmethod
  def from_mapping(cls, data: Mapping[str, object]) -> "OcrWord":
    bbox = data["bbox"]
    if not isinstance(bbox, Mapping):
      raise ValueError("OCR word bbox must be an object")
    return cls(
      text=str(data.get("text", "")),
      bbox=Rect.from_mapping(bbox),
      confidence=float(data.get("confidence", -1.0))
    )


@dataclass(frozen=True, slots=True)
class MatchResult:
  label: str
  score: float


@dataclass(slots=True)
class SlotResult:
  label: str
  score: float
  qty: int
  method: Literal["text", "vision"]

  def to_dict(self) -> SlotResultDict:
    return {"label": self.label, "score": float(self.score), "qty": int(self.qty), "method": self.method}


@dataclass(slots=True)
class AnalysisItem:
  """One prepared slot: its crop (None if it failed to decode) and OCR hint."""

  image: Optional[np.ndarray]
  hint_text: str = ""


@dataclass(slots=True)
class BatchAnalysis:
  results: List[Optional[SlotResult]]
  errors: dict


@dataclass(slots=True)
class ScanReport:
  rects: List[Rect]
  hints: List[str]
  results: List[Optional[SlotResult]]
  errors: dict
