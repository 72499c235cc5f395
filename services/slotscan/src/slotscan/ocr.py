"""Global OCR pass producing word boxes for hint location."""

from __future__ import annotations

import logging
from typing import List, Mapping, Sequence

import numpy as np

from .slot_types import OcrWord, Rect

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG = "--psm 11"


def words_from_tesseract(data: Mapping[str, Sequence[object]], min_confidence: float = 0.0) -> List[OcrWord]:
  """Convert pytesseract ``image_to_data`` dict output into words."""

  words: List[OcrWord] = []
  texts = data.get("text", [])
  for index, raw_text in enumerate(texts):
    text = str(raw_text or "").strip()
    if not text:
      continue

    try:
      confidence = float(data["conf"][index])
    except (KeyError, IndexError, TypeError, ValueError):
      confidence = -1.0
    if 0.0 <= confidence < min_confidence:
      continue

    width = int(data["width"][index])
    height = int(data["height"][index])
    if width <= 0 or height <= 0:
      continue
    bbox = Rect(int(data["left"][index]), int(data["top"][index]), width, height)
    words.append(OcrWord(text=text, bbox=bbox, confidence=confidence))
  return words


def run_global_ocr(image: np.ndarray, config: str = DEFAULT_CONFIG, min_confidence: float = 30.0) -> List[OcrWord]:
  """Run tesseract over the whole screenshot.

  Returns an empty list when tesseract is unavailable or fails, so slots
  simply receive empty hints and fall through to visual matching.
  """

  try:
    import pytesseract  # type: ignore
    from PIL import Image
  except Exception:  # pragma: no cover - optional dependency
    LOGGER.warning("pytesseract is not available; OCR hints are disabled")
    return []

  pil_image = Image.fromarray(np.ascontiguousarray(image))
  try:
    data = pytesseract.image_to_data(pil_image, config=config, output_type=pytesseract.Output.DICT)
  except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as exc:
    LOGGER.warning("Global OCR pass failed: %s", exc)
    return []

  words = words_from_tesseract(data, min_confidence)
  LOGGER.debug("Global OCR produced %d words", len(words))
  return words
