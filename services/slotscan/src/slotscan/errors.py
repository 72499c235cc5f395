"""Exception types raised by the slot scanner."""

from __future__ import annotations


class SlotScanError(Exception):
  """Base class for slot scanner failures."""


class DecodeError(SlotScanError, ValueError):
  """Raised when image bytes cannot be decoded into a raster."""


class CatalogError(SlotScanError, ValueError):
  """Raised when a reference catalog artifact is malformed."""


class EncoderUnavailable(SlotScanError, RuntimeError):
  """Raised when the visual encoder could not be initialised."""


class NoCandidateVectors(SlotScanError, KeyError):
  """Raised when a candidate name has no stored reference vector."""

  def __init__(self, name: str) -> None:
    super().__init__(name)
    self.name = name

  def __str__(self) -> str:
    return f"No reference vectors for {self.name!r}"


class RegionMatchError(SlotScanError):
  """Raised when a single region cannot be matched."""
