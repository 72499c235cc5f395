"""Assign words from a global OCR pass to the slots they caption."""

from __future__ import annotations

from typing import List, Sequence

from .slot_types import OcrWord, Rect

# Captions print over or below the icon bottom, never above it.
CAPTION_BELOW_RATIO = 0.6


def hint_for_slot(words: Sequence[OcrWord], rect: Rect, below_ratio: float = CAPTION_BELOW_RATIO) -> str:
  top = rect.y
  bottom = rect.y + rect.height + below_ratio * rect.height
  matched: List[str] = []
  for word in words:
    text = word.text.strip()
    if not text:
      continue
    cx, cy = word.bbox.center
    if rect.x <= cx <= rect.right and top <= cy <= bottom:
      matched.append(text)
  return " ".join(matched)


def locate_hints(
  words: Sequence[OcrWord],
  rects: Sequence[Rect],
  below_ratio: float = CAPTION_BELOW_RATIO
) -> List[str]:
  """Return one hint string per rect, empty when no word falls inside."""

  return [hint_for_slot(words, rect, below_ratio) for rect in rects]
