import numpy as np
import pytest
from PIL import Image, ImageDraw

from slotscan.catalog import ReferenceCatalog, make_entry
from slotscan.catalog_builder import build_catalog, render_variants
from slotscan.coordinator import BatchCoordinator, parse_quantity
from slotscan.encoder import EncoderService
from slotscan.errors import EncoderUnavailable
from slotscan.matcher import VisualMatcher
from slotscan.slot_types import AnalysisItem, OcrWord, Rect


class RecordingMatcher(VisualMatcher):
  def __init__(self, catalog, encoder) -> None:
    super().__init__(catalog, encoder)
    self.candidate_lists = []

  async def match_batch(self, crops, candidate_lists, request_id=None):
    self.candidate_lists.extend(candidate_lists)
    return await super().match_batch(crops, candidate_lists, request_id)


def _coordinator(catalog, encoder_factory, **kwargs):
  service = EncoderService(encoder_factory, max_workers=4)
  matcher = RecordingMatcher(catalog, service)
  return BatchCoordinator(catalog, matcher, **kwargs), matcher, service


@pytest.mark.parametrize(
  "hint, qty",
  [
    ("Bandage x5", 5),
    ("X12 Rope", 12),
    ("Rope x 7", 7),
    ("Rope 3", 3),
    ("10 Rope 20", 20),
    ("Rope", 1),
    ("", 1)
  ]
)
def test_parse_quantity(hint: str, qty: int) -> None:
  assert parse_quantity(hint) == qty


@pytest.mark.asyncio
async def test_text_match_never_reaches_the_encoder(color_catalog, downsample_encoder, solid_image, colors) -> None:
  encoder = downsample_encoder()
  coordinator, matcher, service = _coordinator(color_catalog, lambda: encoder)

  results = await coordinator.analyze_batch([AnalysisItem(solid_image(colors["Rope"]), "Bandage x5")])

  assert results[0].label == "Bandage"
  assert results[0].score == 1.0
  assert results[0].qty == 5
  assert results[0].method == "text"
  assert encoder.calls == []
  assert matcher.candidate_lists == []
  service.close()


@pytest.mark.asyncio
async def test_results_follow_input_order_under_interleaved_completion(
  color_catalog, downsample_encoder, solid_image, colors
) -> None:
  names = ["Bandage", "Medkit", "Rope", "Gunpowder"]
  delays = {colors[name]: 0.2 - 0.05 * index for index, name in enumerate(names)}
  coordinator, _, service = _coordinator(
    color_catalog,
    lambda: downsample_encoder(delays=delays),
    batch_size=1,
    max_concurrent_batches=4
  )
  progress = []

  results = await coordinator.analyze_batch(
    [AnalysisItem(solid_image(colors[name])) for name in names],
    on_progress=lambda done, total: progress.append((done, total))
  )

  assert [result.label for result in results] == names
  assert all(result.method == "vision" and result.qty == 1 for result in results)
  assert progress[0] == (0, 4)
  assert progress[-1] == (4, 4)
  assert [done for done, _ in progress] == sorted(done for done, _ in progress)
  service.close()


@pytest.mark.asyncio
async def test_empty_hint_searches_the_full_catalog(downsample_encoder, solid_image) -> None:
  rng = np.random.default_rng(5)
  encoder = downsample_encoder()
  palette = {f"Item {index}": tuple(int(v) for v in rng.integers(40, 250, 3)) for index in range(50)}
  catalog = ReferenceCatalog(
    make_entry(name, encoder.embed_batch([solid_image(color)])) for name, color in palette.items()
  )
  coordinator, matcher, service = _coordinator(catalog, downsample_encoder)

  results = await coordinator.analyze_batch([AnalysisItem(solid_image(palette["Item 37"]), "")])

  assert matcher.candidate_lists == [None]
  assert results[0].label == "Item 37"
  assert results[0].score == pytest.approx(1.0, abs=1e-5)
  assert results[0].method == "vision"
  service.close()


@pytest.mark.asyncio
async def test_pixel_identical_reference_variant_scores_one(downsample_encoder) -> None:
  icons = {}
  for name, color in {"Bandage": (230, 230, 230, 255), "Rope": (160, 110, 40, 255)}.items():
    icon = Image.new("RGBA", (96, 96), (0, 0, 0, 0))
    ImageDraw.Draw(icon).ellipse((10, 10, 86, 86), fill=color)
    icons[name] = icon
  catalog = build_catalog(icons, downsample_encoder(), size=224)
  tag, variant = render_variants(icons["Bandage"], 224)[7]
  coordinator, _, service = _coordinator(catalog, downsample_encoder)

  results = await coordinator.analyze_batch([AnalysisItem(variant, "")])

  assert tag == "bg_blue_x5"
  assert results[0].label == "Bandage"
  assert results[0].score == pytest.approx(1.0, abs=1e-5)
  service.close()


@pytest.mark.asyncio
async def test_unavailable_encoder_keeps_text_matches(color_catalog, solid_image, colors) -> None:
  def factory():
    raise EncoderUnavailable("no model")

  coordinator, _, service = _coordinator(color_catalog, factory)

  report = await coordinator.analyze_batch_report([
    AnalysisItem(solid_image(colors["Rope"]), "Rope 3"),
    AnalysisItem(solid_image(colors["Rope"]), ""),
    AnalysisItem(None, "Medkit"),
    AnalysisItem(None, "")
  ])

  assert report.results[0].label == "Rope" and report.results[0].qty == 3
  assert report.results[1] is None
  assert "encoder unavailable" in report.errors[1]
  assert report.results[2].label == "Medkit"
  assert report.errors[3] == "image could not be decoded"
  assert set(report.errors) == {1, 3}
  service.close()


@pytest.mark.asyncio
async def test_scan_runs_the_whole_pipeline(color_catalog, downsample_encoder, colors) -> None:
  image = np.full((132, 132, 3), 15, dtype=np.uint8)
  layout = {"Bandage": (20, 20), "Medkit": (72, 20), "Rope": (20, 72), "Gunpowder": (72, 72)}
  for name, (x, y) in layout.items():
    image[y : y + 40, x : x + 40] = colors[name]
  words = [OcrWord("Medkit", Rect(75, 62, 30, 8))]
  encoder = downsample_encoder()
  coordinator, _, service = _coordinator(color_catalog, lambda: encoder, ocr=lambda frame: words)

  report = await coordinator.scan(image)

  assert report.rects == [Rect(x, y, 40, 40) for x, y in layout.values()]
  assert report.hints == ["", "Medkit", "", ""]
  assert [result.label for result in report.results] == list(layout)
  assert report.results[1].method == "text"
  assert {result.method for index, result in enumerate(report.results) if index != 1} == {"vision"}
  assert sum(encoder.calls) == 3
  service.close()
