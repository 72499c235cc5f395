"""Image decoding helpers."""

from __future__ import annotations

import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError

LOGGER = logging.getLogger(__name__)


def decode_image(data: bytes) -> np.ndarray:
  """Decode encoded image bytes into an RGB uint8 array."""

  if not data:
    raise DecodeError("Image payload is empty")

  try:
    with Image.open(io.BytesIO(data)) as image:
      frame = np.array(image.convert("RGB"))
  except (UnidentifiedImageError, OSError, ValueError) as exc:
    raise DecodeError(f"Cannot decode image: {exc}") from exc

  if frame.ndim != 3 or frame.size == 0:
    raise DecodeError("Decoded image has no pixels")
  return frame


def decode_base64_image(payload: str) -> np.ndarray:
  try:
    data = base64.b64decode(payload, validate=True)
  except (binascii.Error, ValueError) as exc:
    raise DecodeError(f"Invalid base64 image payload: {exc}") from exc
  return decode_image(data)


def load_image(path: Union[str, Path]) -> np.ndarray:
  try:
    data = Path(path).read_bytes()
  except OSError as exc:
    raise DecodeError(f"Cannot read image {path}: {exc}") from exc
  return decode_image(data)


def encode_png(frame: np.ndarray) -> bytes:
  buffer = io.BytesIO()
  Image.fromarray(np.ascontiguousarray(frame)).save(buffer, format="PNG")
  return buffer.getvalue()
