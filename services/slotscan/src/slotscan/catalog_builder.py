"""Offline construction of the reference embedding catalog.

Every icon is composited onto each slot-background tint and, per tint, with
and without the quantity glyphs that live screenshots overlay in the slot
corner. Each composite is encoded and stored as one variant vector.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont, ImageOps

from .catalog import ReferenceCatalog, make_entry, save_catalog
from .encoder import ImageEncoder, OnnxImageEncoder
from .errors import CatalogError

LOGGER = logging.getLogger(__name__)

# Slot background tints by rarity.
BACKGROUNDS: Dict[str, Tuple[int, int, int]] = {
  "gray": (31, 41, 55),
  "green": (6, 78, 59),
  "blue": (30, 58, 138),
  "purple": (88, 28, 135)
}

QUANTITY_OVERLAYS: Tuple[Tuple[str, Optional[str]], ...] = (
  ("", None),
  ("_x5", "x5"),
  ("_99", "99")
)

ICON_SUFFIXES = (".png", ".jpg", ".jpeg")


def _draw_quantity(canvas: Image.Image, text: str) -> None:
  size = canvas.width
  font = ImageFont.load_default(size=max(10, int(size * 0.27)))
  draw = ImageDraw.Draw(canvas)
  _, _, right, bottom = draw.textbbox((0, 0), text, font=font, stroke_width=2)
  x = int(size * 0.95) - right
  y = int(size * 0.95) - bottom
  draw.text((x, y), text, font=font, fill=(255, 255, 255), stroke_width=2, stroke_fill=(0, 0, 0))


def render_variants(icon: Image.Image, size: int = 224) -> List[Tuple[str, np.ndarray]]:
  """Return ``(tag, rgb array)`` composites for every tint and overlay."""

  rgba = icon.convert("RGBA")
  contained = ImageOps.contain(rgba, (size, size), Image.Resampling.LANCZOS)
  offset = ((size - contained.width) // 2, (size - contained.height) // 2)

  variants: List[Tuple[str, np.ndarray]] = []
  for tint, color in BACKGROUNDS.items():
    base = Image.new("RGB", (size, size), color)
    base.paste(contained, offset, contained)
    for suffix, text in QUANTITY_OVERLAYS:
      canvas = base.copy()
      if text:
        _draw_quantity(canvas, text)
      variants.append((f"bg_{tint}{suffix}", np.array(canvas)))
  return variants


def build_catalog(
  icons: Mapping[str, Image.Image],
  encoder: ImageEncoder,
  aliases: Optional[Mapping[str, Sequence[str]]] = None,
  size: int = 224
) -> ReferenceCatalog:
  aliases = aliases or {}
  entries = []
  for name, icon in icons.items():
    variants = render_variants(icon, size)
    vectors = encoder.embed_batch([image for _, image in variants])
    try:
      entries.append(make_entry(name, vectors, aliases.get(name, ()), [tag for tag, _ in variants]))
    except CatalogError as exc:
      LOGGER.error("Skipping %s: %s", name, exc)
  return ReferenceCatalog(entries)


def _slug(name: str) -> str:
  return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def load_icons(icon_dir: Path, items: Optional[Sequence[Mapping[str, object]]] = None) -> Dict[str, Image.Image]:
  """Load icons keyed by item name.

  Without an item list every image file in the directory becomes an item
  named after its stem. With one, each item's ``icon`` (or the slug of its
  name) is looked up in the directory.
  """

  files = {path.stem: path for path in sorted(icon_dir.iterdir()) if path.suffix.lower() in ICON_SUFFIXES}
  if items is None:
    pairs = [(stem, path) for stem, path in files.items()]
  else:
    pairs = []
    for item in items:
      name = str(item["name"])
      path = files.get(str(item.get("icon") or _slug(name)))
      if path is None:
        LOGGER.warning("No icon found for %s", name)
        continue
      pairs.append((name, path))

  icons: Dict[str, Image.Image] = {}
  for name, path in pairs:
    try:
      with Image.open(path) as image:
        icons[name] = image.convert("RGBA")
    except OSError as exc:
      LOGGER.error("Cannot read icon %s: %s", path, exc)
  return icons


def main(argv: Optional[Sequence[str]] = None) -> int:
  parser = argparse.ArgumentParser(description="Build the slot reference embedding catalog.")
  parser.add_argument("--icons", required=True, type=Path, help="directory of item icons")
  parser.add_argument("--items", type=Path, help="JSON list of {name, aliases, icon} objects")
  parser.add_argument("--model", required=True, help="ONNX image encoder")
  parser.add_argument("--output", default="embeddings.json", type=Path)
  parser.add_argument("--size", default=224, type=int)
  parser.add_argument("--log-level", default="INFO")
  args = parser.parse_args(argv)

  logging.basicConfig(level=args.log_level.upper())

  items = json.loads(args.items.read_text(encoding="utf-8")) if args.items else None
  aliases = {str(item["name"]): list(item.get("aliases") or []) for item in items or []}
  icons = load_icons(args.icons, items)
  if not icons:
    LOGGER.error("No icons found in %s", args.icons)
    return 1

  encoder = OnnxImageEncoder(args.model, input_size=args.size)
  catalog = build_catalog(icons, encoder, aliases, args.size)
  save_catalog(catalog, args.output)
  LOGGER.info("Wrote %d items to %s", len(catalog), args.output)
  return 0


if __name__ == "__main__":
  raise SystemExit(main())
