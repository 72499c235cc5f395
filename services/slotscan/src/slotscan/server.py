"""gRPC server implementation for the slot scanner service.

Messages are JSON documents carried through generic handlers; images travel
as base64 encoded PNG or JPEG bytes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional

import grpc

from .catalog import load_catalog
from .config import ServiceConfig
from .coordinator import BatchCoordinator, OcrRunner
from .encoder import EncoderService, OnnxImageEncoder
from .errors import DecodeError, EncoderUnavailable
from .imaging import decode_base64_image
from .matcher import VisualMatcher
from .ocr import run_global_ocr
from .output import ScanOutputBuilder
from .segmentation import SegmentationParams
from .slot_types import AnalysisItem, OcrWord, Rect

LOGGER = logging.getLogger(__name__)

SERVICE_NAME = "slotscan.SlotScanService"


def _deserialize(data: bytes) -> Dict[str, Any]:
  if not data:
    return {}
  message = json.loads(data.decode("utf-8"))
  if not isinstance(message, dict):
    raise ValueError("request must be a JSON object")
  return message


def _serialize(message: Mapping[str, Any]) -> bytes:
  return json.dumps(message).encode("utf-8")


class SlotScanServicer:
  """Serve Segment/AnalyzeBatch/Scan/HealthCheck RPCs backed by the local pipeline."""

  def __init__(
    self,
    coordinator: BatchCoordinator,
    *,
    encoder: Optional[EncoderService] = None,
    ocr: Optional[OcrRunner] = None,
    catalog_size: int = 0
  ) -> None:
    self._coordinator = coordinator
    self._encoder = encoder
    self._ocr = ocr
    self._catalog_size = catalog_size

  @property
  def encoder(self) -> Optional[EncoderService]:
    return self._encoder

  async def Segment(self, request: Dict[str, Any], context: grpc.aio.ServicerContext) -> Dict[str, Any]:
    try:
      image = decode_base64_image(str(request.get("image", "")))
      params = SegmentationParams.from_mapping(request.get("params"))
    except (DecodeError, ValueError, TypeError) as exc:
      await context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"Invalid segment request: {exc}")
      raise

    rects = await asyncio.to_thread(self._coordinator.segmenter.segment, image, params)
    return {"rects": [rect.to_dict() for rect in rects]}

  async def AnalyzeBatch(self, request: Dict[str, Any], context: grpc.aio.ServicerContext) -> Dict[str, Any]:
    raw_items = request.get("items") or []
    if not isinstance(raw_items, list):
      await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "items must be a list")

    items: List[AnalysisItem] = []
    decode_errors: Dict[int, str] = {}
    for index, raw in enumerate(raw_items):
      hint = str(raw.get("hint", "") or "") if isinstance(raw, Mapping) else ""
      try:
        image = decode_base64_image(str(raw.get("image", ""))) if isinstance(raw, Mapping) else None
      except DecodeError as exc:
        LOGGER.debug("Item %d failed to decode: %s", index, exc)
        decode_errors[index] = str(exc)
        image = None
      items.append(AnalysisItem(image=image, hint_text=hint))

    report = await self._coordinator.analyze_batch_report(items, request_id=request.get("request_id"))
    errors = dict(report.errors)
    for index, message in decode_errors.items():
      if report.results[index] is None:
        errors[index] = message

    return {
      "results": [result.to_dict() if result is not None else None for result in report.results],
      "errors": {str(index): message for index, message in sorted(errors.items())}
    }

  async def Scan(self, request: Dict[str, Any], context: grpc.aio.ServicerContext) -> Dict[str, Any]:
    try:
      image = decode_base64_image(str(request.get("image", "")))
      words = self._parse_words(request.get("words"))
      rects = self._parse_rects(request.get("rects"))
    except (DecodeError, ValueError, TypeError, KeyError) as exc:
      await context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"Invalid scan request: {exc}")
      raise

    request_id = str(request.get("request_id") or "")
    builder = ScanOutputBuilder(request_id)

    if rects is None:
      rects = await asyncio.to_thread(self._coordinator.segmenter.segment, image)
    builder.mark_segmentation_complete()

    if words is None:
      words = await asyncio.to_thread(self._ocr, image) if self._ocr is not None else []
    builder.mark_ocr_complete()

    report = await self._coordinator.scan(image, words, rects, request_id=request_id or None)
    builder.mark_matching_complete()

    builder.set_slots(report.rects, report.hints)
    builder.set_results(report.results, report.errors)
    return builder.build()

  async def HealthCheck(self, request: Dict[str, Any], context: grpc.aio.ServicerContext) -> Dict[str, Any]:
    if self._encoder is None:
      encoder_state = "disabled"
    elif self._encoder.failed:
      encoder_state = "failed"
    elif self._encoder.ready:
      encoder_state = "ready"
    else:
      encoder_state = "loading"

    # Text matching still works without the encoder, so only an empty catalog is unhealthy.
    healthy = self._catalog_size > 0
    return {
      "healthy": healthy,
      "message": "ready" if healthy else "reference catalog is empty",
      "catalog_items": self._catalog_size,
      "encoder": encoder_state
    }

  @staticmethod
  def _parse_words(raw: object) -> Optional[List[OcrWord]]:
    if raw is None:
      return None
    if not isinstance(raw, list):
      raise ValueError("words must be a list")
    return [OcrWord.from_mapping(entry) for entry in raw]

  @staticmethod
  def _parse_rects(raw: object) -> Optional[List[Rect]]:
    if raw is None:
      return None
    if not isinstance(raw, list):
      raise ValueError("rects must be a list")
    return [Rect.from_mapping(entry) for entry in raw]


def build_handler(servicer: SlotScanServicer) -> grpc.GenericRpcHandler:
  methods: Dict[str, Callable[..., Any]] = {
    "Segment": servicer.Segment,
    "AnalyzeBatch": servicer.AnalyzeBatch,
    "Scan": servicer.Scan,
    "HealthCheck": servicer.HealthCheck
  }
  handlers = {
    name: grpc.unary_unary_rpc_method_handler(
      method,
      request_deserializer=_deserialize,
      response_serializer=_serialize
    )
    for name, method in methods.items()
  }
  return grpc.method_handlers_generic_handler(SERVICE_NAME, handlers)


def _unavailable_encoder() -> OnnxImageEncoder:
  raise EncoderUnavailable("SLOTSCAN_MODEL_PATH is not set")


def build_services(config: ServiceConfig) -> SlotScanServicer:
  """Wire catalog, encoder, matcher and coordinator from configuration."""

  catalog = load_catalog(config.catalog_path)
  if config.model_path:
    factory: Callable[[], OnnxImageEncoder] = partial(OnnxImageEncoder, config.model_path, config.input_size)
  else:
    LOGGER.warning("No encoder model configured; only text matches will resolve")
    factory = _unavailable_encoder

  encoder = EncoderService(factory, max_workers=config.max_workers)
  ocr = run_global_ocr if config.ocr_enabled else None
  coordinator = BatchCoordinator(
    catalog,
    VisualMatcher(catalog, encoder),
    ocr=ocr,
    batch_size=config.batch_size,
    input_size=config.input_size,
    max_concurrent_batches=config.max_concurrent_batches
  )
  return SlotScanServicer(coordinator, encoder=encoder, ocr=ocr, catalog_size=len(catalog))


async def _warm_up(encoder: EncoderService) -> None:
  try:
    await encoder.init()
  except EncoderUnavailable as exc:
    LOGGER.warning("Visual matching disabled: %s", exc)


async def serve(config: Optional[ServiceConfig] = None, *, servicer: Optional[SlotScanServicer] = None) -> grpc.aio.Server:
  """Start the gRPC server; the caller awaits ``wait_for_termination``."""

  config = config or ServiceConfig.from_env()
  servicer = servicer or build_services(config)

  if servicer.encoder is not None:
    await _warm_up(servicer.encoder)

  address = f"[::]:{config.port}"
  server = grpc.aio.server()
  server.add_generic_rpc_handlers((build_handler(servicer),))
  server.add_insecure_port(address)
  await server.start()

  LOGGER.info("Slot scanner listening on %s (catalog: %s)", address, config.catalog_path)
  return server


async def _run(config: ServiceConfig) -> None:
  server = await serve(config)
  try:
    await server.wait_for_termination()
  finally:
    await server.stop(grace=None)


def main() -> None:
  config = ServiceConfig.from_env()
  logging.basicConfig(level=config.logging_level)
  asyncio.run(_run(config))


if __name__ == "__main__":
  main()
