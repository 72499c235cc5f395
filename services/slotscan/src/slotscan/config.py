"""Environment-driven service configuration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(slots=True)
class ServiceConfig:
  port: int = 50053
  model_path: Optional[str] = None
  catalog_path: str = "embeddings.json"
  max_workers: int = 4
  batch_size: int = 4
  input_size: int = 224
  max_concurrent_batches: int = 2
  ocr_enabled: bool = True
  log_level: str = "INFO"

  @classmethod
  def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceConfig":
    """Read SLOTSCAN_* variables, falling back to the dataclass defaults."""

    env = os.environ if environ is None else environ
    defaults = cls()
    return cls(
      port=int(env.get("SLOTSCAN_PORT", defaults.port)),
      model_path=env.get("SLOTSCAN_MODEL_PATH") or defaults.model_path,
      catalog_path=env.get("SLOTSCAN_CATALOG_PATH") or defaults.catalog_path,
      max_workers=int(env.get("SLOTSCAN_MAX_WORKERS", defaults.max_workers)),
      batch_size=int(env.get("SLOTSCAN_BATCH_SIZE", defaults.batch_size)),
      input_size=int(env.get("SLOTSCAN_INPUT_SIZE", defaults.input_size)),
      max_concurrent_batches=int(env.get("SLOTSCAN_MAX_CONCURRENT_BATCHES", defaults.max_concurrent_batches)),
      ocr_enabled=str(env.get("SLOTSCAN_OCR", "1")).strip().lower() in _TRUTHY,
      log_level=str(env.get("SLOTSCAN_LOG_LEVEL", defaults.log_level)).upper()
    )

  @property
  def logging_level(self) -> int:
    level = logging.getLevelName(self.log_level)
    return level if isinstance(level, int) else logging.INFO
