"""Inventory slot scanner."""

from .catalog import ReferenceCatalog, load_catalog, parse_catalog, save_catalog
from .config import ServiceConfig
from .coordinator import BatchCoordinator, parse_quantity
from .encoder import EncoderService, ImageEncoder, OnnxImageEncoder
from .errors import (
  CatalogError,
  DecodeError,
  EncoderUnavailable,
  NoCandidateVectors,
  RegionMatchError,
  SlotScanError
)
from .extraction import crop_region, extract_regions, letterbox
from .hints import locate_hints
from .layout import SlotLayout
from .matcher import VisualMatcher
from .narrowing import CandidateNarrower, normalize_label
from .output import ScanOutputBuilder
from .segmentation import SegmentationParams, SlotSegmenter, segment
from .slot_types import AnalysisItem, MatchResult, OcrWord, Rect, SlotResult

__all__ = [
  "Rect",
  "OcrWord",
  "MatchResult",
  "SlotResult",
  "AnalysisItem",
  "SegmentationParams",
  "SlotSegmenter",
  "segment",
  "SlotLayout",
  "crop_region",
  "extract_regions",
  "letterbox",
  "locate_hints",
  "CandidateNarrower",
  "normalize_label",
  "ReferenceCatalog",
  "load_catalog",
  "parse_catalog",
  "save_catalog",
  "ImageEncoder",
  "OnnxImageEncoder",
  "EncoderService",
  "VisualMatcher",
  "BatchCoordinator",
  "parse_quantity",
  "ScanOutputBuilder",
  "ServiceConfig",
  "SlotScanError",
  "DecodeError",
  "CatalogError",
  "EncoderUnavailable",
  "NoCandidateVectors",
  "RegionMatchError"
]
