"""Batch orchestration across every slot of one screenshot."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .catalog import ReferenceCatalog
from .errors import EncoderUnavailable
from .extraction import Fill, extract_regions, letterbox
from .hints import locate_hints
from .matcher import VisualMatcher
from .narrowing import CandidateNarrower
from .segmentation import SlotSegmenter
from .slot_types import AnalysisItem, BatchAnalysis, OcrWord, Rect, ScanReport, SlotResult

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
OcrRunner = Callable[[np.ndarray], List[OcrWord]]

_QUANTITY_MARKER = re.compile(r"x\s*(\d+)", re.IGNORECASE)
_INTEGER_TOKEN = re.compile(r"\b\d+\b")


def parse_quantity(hint: str) -> int:
  """Read a stack size from hint text: ``x<n>`` first, else the last integer."""

  if not hint:
    return 1
  marked = _QUANTITY_MARKER.search(hint)
  if marked:
    return int(marked.group(1))
  tokens = _INTEGER_TOKEN.findall(hint)
  if tokens:
    return int(tokens[-1])
  return 1


class BatchCoordinator:
  """Resolve prepared slots, text first and visually for the rest.

  Text-resolved slots never reach the encoder. The remaining crops are
  letterboxed to the encoder input size and sent in fixed-size chunks; the
  result list always follows the input order.
  """

  def __init__(
    self,
    catalog: ReferenceCatalog,
    matcher: VisualMatcher,
    *,
    narrower: Optional[CandidateNarrower] = None,
    segmenter: Optional[SlotSegmenter] = None,
    ocr: Optional[OcrRunner] = None,
    batch_size: int = 4,
    input_size: int = 224,
    max_concurrent_batches: int = 2,
    letterbox_fill: Fill = 0
  ) -> None:
    if batch_size < 1:
      raise ValueError("batch_size must be at least 1")
    self._matcher = matcher
    self._narrower = narrower or CandidateNarrower(catalog)
    self._segmenter = segmenter or SlotSegmenter()
    self._ocr = ocr
    self._batch_size = batch_size
    self._input_size = input_size
    self._max_concurrent = max(1, max_concurrent_batches)
    self._fill = letterbox_fill

  @property
  def segmenter(self) -> SlotSegmenter:
    return self._segmenter

  async def analyze_batch(
    self,
    items: Sequence[AnalysisItem],
    *,
    request_id: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None
  ) -> List[Optional[SlotResult]]:
    report = await self.analyze_batch_report(items, request_id=request_id, on_progress=on_progress)
    return report.results

  async def analyze_batch_report(
    self,
    items: Sequence[AnalysisItem],
    *,
    request_id: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None
  ) -> BatchAnalysis:
    request_id = request_id or uuid.uuid4().hex
    total = len(items)
    results: List[Optional[SlotResult]] = [None] * total
    errors: Dict[int, str] = {}
    slow: List[Tuple[int, np.ndarray, Optional[Tuple[str, ...]], int]] = []

    for index, item in enumerate(items):
      hint = item.hint_text or ""
      qty = parse_quantity(hint)
      narrowing = self._narrower.find_match(hint)
      if narrowing.match is not None:
        results[index] = SlotResult(narrowing.match.label, narrowing.match.score, qty, "text")
        continue
      if item.image is None or item.image.size == 0:
        errors[index] = "image could not be decoded"
        continue
      slow.append((index, letterbox(item.image, self._input_size, self._fill), narrowing.shortlist, qty))

    completed = total - len(slow)
    LOGGER.debug("Request %s: %d text matches, %d slots need vision", request_id, completed - len(errors), len(slow))
    if on_progress is not None:
      on_progress(completed, total)

    semaphore = asyncio.Semaphore(self._max_concurrent)

    async def run_chunk(number: int, chunk: Sequence[Tuple[int, np.ndarray, Optional[Tuple[str, ...]], int]]) -> None:
      nonlocal completed
      try:
        async with semaphore:
          outcomes = await self._matcher.match_batch(
            [entry[1] for entry in chunk],
            [entry[2] for entry in chunk],
            f"{request_id}:{number}"
          )
      except EncoderUnavailable as exc:
        for entry in chunk:
          errors[entry[0]] = f"encoder unavailable: {exc}"
      else:
        for (index, _, _, qty), outcome in zip(chunk, outcomes):
          if isinstance(outcome, Exception):
            errors[index] = str(outcome) or type(outcome).__name__
            continue
          best = outcome[0]
          results[index] = SlotResult(best.label, best.score, qty, "vision")

      completed += len(chunk)
      if on_progress is not None:
        on_progress(completed, total)

    chunks = [slow[start : start + self._batch_size] for start in range(0, len(slow), self._batch_size)]
    await asyncio.gather(*(run_chunk(number, chunk) for number, chunk in enumerate(chunks)))

    if errors:
      LOGGER.warning("Request %s: %d of %d slots failed", request_id, len(errors), total)
    return BatchAnalysis(results=results, errors=errors)

  async def scan(
    self,
    image: np.ndarray,
    words: Optional[Sequence[OcrWord]] = None,
    rects: Optional[Sequence[Rect]] = None,
    *,
    request_id: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None
  ) -> ScanReport:
    """Segment, caption and identify every slot of one screenshot."""

    if rects is None:
      rects = await asyncio.to_thread(self._segmenter.segment, image)
    if words is None:
      words = await asyncio.to_thread(self._ocr, image) if self._ocr is not None else []

    hints = locate_hints(words, rects)
    crops = extract_regions(image, rects)
    items = [AnalysisItem(image=crop, hint_text=hint) for crop, hint in zip(crops, hints)]
    report = await self.analyze_batch_report(items, request_id=request_id, on_progress=on_progress)
    LOGGER.info("Scanned %d slots (%d unresolved)", len(rects), sum(1 for result in report.results if result is None))
    return ScanReport(rects=list(rects), hints=hints, results=report.results, errors=report.errors)
