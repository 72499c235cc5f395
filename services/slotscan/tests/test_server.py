import base64

import grpc
import numpy as np
import pytest

from slotscan.coordinator import BatchCoordinator
from slotscan.encoder import EncoderService
from slotscan.imaging import encode_png
from slotscan.matcher import VisualMatcher
from slotscan.server import SlotScanServicer, _deserialize, _serialize, build_handler


class FakeContext:
  def __init__(self) -> None:
    self.code = None
    self.details = None

  async def abort(self, code, details):
    self.code = code
    self.details = details
    raise grpc.RpcError(details)


def _b64(image: np.ndarray) -> str:
  return base64.b64encode(encode_png(image)).decode("ascii")


def _grid_image(colors) -> np.ndarray:
  image = np.full((132, 132, 3), 15, dtype=np.uint8)
  for (x, y), name in zip([(20, 20), (72, 20), (20, 72), (72, 72)], ["Bandage", "Medkit", "Rope", "Gunpowder"]):
    image[y : y + 40, x : x + 40] = colors[name]
  return image


@pytest.fixture
def servicer(color_catalog, downsample_encoder):
  service = EncoderService(downsample_encoder)
  coordinator = BatchCoordinator(color_catalog, VisualMatcher(color_catalog, service))
  yield SlotScanServicer(coordinator, encoder=service, ocr=None, catalog_size=len(color_catalog))
  service.close()


class _CallDetails:
  def __init__(self, method: str) -> None:
    self.method = method
    self.invocation_metadata = ()


def test_json_codec() -> None:
  assert _deserialize(_serialize({"a": [1, None]})) == {"a": [1, None]}
  assert _deserialize(b"") == {}
  with pytest.raises(ValueError):
    _deserialize(b"[1, 2]")


def test_handler_routes_service_methods(servicer) -> None:
  handler = build_handler(servicer)

  scan = handler.service(_CallDetails("/slotscan.SlotScanService/Scan"))
  assert scan.unary_unary == servicer.Scan
  assert scan.request_deserializer is _deserialize
  assert handler.service(_CallDetails("/slotscan.SlotScanService/Missing")) is None


@pytest.mark.asyncio
async def test_segment_returns_rects(servicer, colors) -> None:
  response = await servicer.Segment({"image": _b64(_grid_image(colors))}, FakeContext())

  assert response["rects"][1] == {"x": 72, "y": 20, "width": 40, "height": 40}
  assert len(response["rects"]) == 4


@pytest.mark.asyncio
async def test_segment_rejects_bad_input(servicer, colors) -> None:
  context = FakeContext()
  with pytest.raises(grpc.RpcError):
    await servicer.Segment({"image": "%%%"}, context)
  assert context.code == grpc.StatusCode.INVALID_ARGUMENT

  context = FakeContext()
  with pytest.raises(grpc.RpcError):
    await servicer.Segment({"image": _b64(_grid_image(colors)), "params": {"bogus": 1}}, context)
  assert context.code == grpc.StatusCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_analyze_batch_reports_per_item_errors(servicer, solid_image, colors) -> None:
  request = {
    "request_id": "batch-1",
    "items": [
      {"image": "not-base64!", "hint": ""},
      {"image": "not-base64!", "hint": "Rope x2"},
      {"image": _b64(solid_image(colors["Gunpowder"], 64)), "hint": ""}
    ]
  }

  response = await servicer.AnalyzeBatch(request, FakeContext())

  assert response["results"][0] is None
  assert "base64" in response["errors"]["0"]
  assert response["results"][1] == {"label": "Rope", "score": 1.0, "qty": 2, "method": "text"}
  assert response["results"][2]["label"] == "Gunpowder"
  assert set(response["errors"]) == {"0"}


@pytest.mark.asyncio
async def test_scan_with_supplied_words(servicer, colors) -> None:
  request = {
    "image": _b64(_grid_image(colors)),
    "words": [{"text": "Medkit", "bbox": {"x": 75, "y": 62, "width": 30, "height": 8}}],
    "request_id": "scan-9"
  }

  response = await servicer.Scan(request, FakeContext())

  assert response["request_id"] == "scan-9"
  assert [slot["result"]["label"] for slot in response["slots"]] == ["Bandage", "Medkit", "Rope", "Gunpowder"]
  assert response["slots"][1]["hint"] == "Medkit"
  assert response["slots"][1]["result"]["method"] == "text"
  assert set(response["latency"]) == {"segmentation", "ocr", "matching", "total"}


@pytest.mark.asyncio
async def test_scan_rejects_malformed_words(servicer, colors) -> None:
  context = FakeContext()
  with pytest.raises(grpc.RpcError):
    await servicer.Scan({"image": _b64(_grid_image(colors)), "words": [{"text": "x"}]}, context)
  assert context.code == grpc.StatusCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_scan_rejects_empty_rects(servicer, colors) -> None:
  context = FakeContext()
  request = {"image": _b64(_grid_image(colors)), "rects": [{"x": 20, "y": 20, "width": 0, "height": 40}]}

  with pytest.raises(grpc.RpcError):
    await servicer.Scan(request, context)
  assert context.code == grpc.StatusCode.INVALID_ARGUMENT


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [[1, 2], {"infer_grid": "sometimes"}])
async def test_segment_rejects_malformed_params(servicer, colors, params) -> None:
  context = FakeContext()

  with pytest.raises(grpc.RpcError):
    await servicer.Segment({"image": _b64(_grid_image(colors)), "params": params}, context)
  assert context.code == grpc.StatusCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_segment_honours_disabled_grid_inference(servicer, colors) -> None:
  image = _grid_image(colors)
  image[72:112, 72:112] = 15

  inferred = await servicer.Segment({"image": _b64(image)}, FakeContext())
  raw = await servicer.Segment({"image": _b64(image), "params": {"infer_grid": "false"}}, FakeContext())

  assert len(inferred["rects"]) == 4
  assert len(raw["rects"]) == 3


@pytest.mark.asyncio
async def test_health_check_reports_encoder_state(servicer) -> None:
  before = await servicer.HealthCheck({}, FakeContext())
  await servicer.encoder.init()
  after = await servicer.HealthCheck({}, FakeContext())

  assert before == {"healthy": True, "message": "ready", "catalog_items": 4, "encoder": "loading"}
  assert after["encoder"] == "ready"
