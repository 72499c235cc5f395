"""Build structured scan payloads."""

from __future__ import annotations

from time import perf_counter, time
from typing import Dict, List, Mapping, Optional, Sequence

from .slot_types import Rect, SlotResult


class ScanOutputBuilder:
  """Incrementally build a scan response dictionary with stage latencies."""

  def __init__(self, request_id: str = "") -> None:
    self._request_id = request_id
    self._timestamp = int(time() * 1000)
    self._rects: List[Rect] = []
    self._hints: List[str] = []
    self._results: List[Optional[SlotResult]] = []
    self._errors: Dict[int, str] = {}
    self._latency: Dict[str, float] = {"segmentation": 0.0, "ocr": 0.0, "matching": 0.0, "total": 0.0}

    self._start = perf_counter()
    self._stage_start = self._start

  def _finish_stage(self, stage: str) -> None:
    now = perf_counter()
    self._latency[stage] = now - self._stage_start
    self._stage_start = now

  def mark_segmentation_complete(self) -> None:
    self._finish_stage("segmentation")

  def mark_ocr_complete(self) -> None:
    self._finish_stage("ocr")

  def mark_matching_complete(self) -> None:
    self._finish_stage("matching")
    self._latency["total"] = perf_counter() - self._start

  def set_slots(self, rects: Sequence[Rect], hints: Sequence[str]) -> None:
    self._rects = list(rects)
    self._hints = list(hints)

  def set_results(self, results: Sequence[Optional[SlotResult]], errors: Mapping[int, str]) -> None:
    self._results = list(results)
    self._errors = dict(errors)

  def build(self) -> Dict[str, object]:
    if self._latency["total"] == 0.0:
      self._latency["total"] = perf_counter() - self._start

    slots = []
    for index, rect in enumerate(self._rects):
      result = self._results[index] if index < len(self._results) else None
      slots.append({
        "rect": rect.to_dict(),
        "hint": self._hints[index] if index < len(self._hints) else "",
        "result": result.to_dict() if result is not None else None
      })

    output: Dict[str, object] = {
      "request_id": self._request_id,
      "timestamp": self._timestamp,
      "slots": slots,
      "latency": dict(self._latency)
    }

    if self._errors:
      output["errors"] = {str(index): message for index, message in sorted(self._errors.items())}

    return output
