"""Reference catalog of per-item embedding variants."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import CatalogError, NoCandidateVectors

LOGGER = logging.getLogger(__name__)

LEGACY_VARIANT_SEPARATOR = "__"


@dataclass(frozen=True)
class CatalogEntry:
  """One item: canonical name, aliases and a (V, D) matrix of unit vectors."""

  name: str
  aliases: Tuple[str, ...]
  vectors: np.ndarray
  variant_tags: Tuple[str, ...]

  @property
  def labels(self) -> Tuple[str, ...]:
    return (self.name,) + self.aliases


def _unit_rows(name: str, vectors: object) -> np.ndarray:
  try:
    matrix = np.asarray(vectors, dtype=np.float32)
  except (TypeError, ValueError) as exc:
    raise CatalogError(f"Vectors for {name!r} are not numeric: {exc}") from exc

  if matrix.ndim == 1:
    matrix = matrix[np.newaxis, :]
  if matrix.ndim != 2 or matrix.shape[1] == 0:
    raise CatalogError(f"Vectors for {name!r} must be a non-empty 2-D array")

  norms = np.linalg.norm(matrix, axis=1)
  valid = norms > 0
  if not np.all(valid):
    LOGGER.warning("Dropping %d zero vectors for %s", int(np.sum(~valid)), name)
  return matrix[valid] / norms[valid, np.newaxis]


def make_entry(
  name: str,
  vectors: object,
  aliases: Sequence[str] = (),
  variant_tags: Optional[Sequence[str]] = None
) -> CatalogEntry:
  """Build an entry with normalized, read-only vectors."""

  matrix = _unit_rows(name, vectors)
  if matrix.shape[0] == 0:
    raise CatalogError(f"Item {name!r} has no usable vectors")

  tags = tuple(variant_tags) if variant_tags is not None else tuple(f"v{i}" for i in range(matrix.shape[0]))
  if len(tags) != matrix.shape[0]:
    tags = tuple(f"v{i}" for i in range(matrix.shape[0]))

  matrix = np.ascontiguousarray(matrix)
  matrix.setflags(write=False)
  return CatalogEntry(name=name, aliases=tuple(a for a in aliases if a and a != name), vectors=matrix, variant_tags=tags)


class ReferenceCatalog:
  """Immutable ``name -> CatalogEntry`` table with a fixed dimension."""

  def __init__(self, entries: Iterable[CatalogEntry]) -> None:
    table: Dict[str, CatalogEntry] = {}
    dimension: Optional[int] = None
    for entry in entries:
      if entry.name in table:
        raise CatalogError(f"Duplicate catalog item {entry.name!r}")
      entry_dim = int(entry.vectors.shape[1])
      if dimension is None:
        dimension = entry_dim
      elif entry_dim != dimension:
        raise CatalogError(f"Item {entry.name!r} has dimension {entry_dim}, expected {dimension}")
      table[entry.name] = entry

    self._entries = MappingProxyType(table)
    self._names = tuple(table)
    self._dimension = dimension or 0
    self._lookup: Dict[str, str] = {}
    for entry in table.values():
      for label in entry.labels:
        self._lookup.setdefault(label.strip().lower(), entry.name)

  def __len__(self) -> int:
    return len(self._entries)

  def __contains__(self, name: object) -> bool:
    return name in self._entries

  @property
  def names(self) -> Tuple[str, ...]:
    return self._names

  @property
  def entries(self) -> Mapping[str, CatalogEntry]:
    return self._entries

  @property
  def dimension(self) -> int:
    return self._dimension

  def get(self, name: str) -> Optional[CatalogEntry]:
    return self._entries.get(name)

  def resolve(self, label: str) -> Optional[str]:
    """Map a name or alias, case-insensitively, to its canonical name."""

    return self._lookup.get(label.strip().lower())

  def vectors_for(self, name: str) -> np.ndarray:
    entry = self._entries.get(name)
    if entry is None:
      raise NoCandidateVectors(name)
    return entry.vectors


def _split_legacy_key(key: str) -> Tuple[str, str]:
  base, separator, tag = key.partition(LEGACY_VARIANT_SEPARATOR)
  return base, (tag if separator else "default")


def parse_catalog(data: object, aliases: Optional[Mapping[str, Sequence[str]]] = None) -> ReferenceCatalog:
  """Build a catalog from the structured or the legacy flat JSON form."""

  aliases = aliases or {}
  entries: List[CatalogEntry] = []

  if isinstance(data, Mapping) and "items" in data:
    items = data["items"]
    if not isinstance(items, list):
      raise CatalogError("Catalog 'items' must be a list")
    for item in items:
      if not isinstance(item, Mapping) or "name" not in item:
        raise CatalogError("Catalog item must be an object with a name")
      name = str(item["name"])
      variants = item.get("variants") or []
      if not variants:
        LOGGER.warning("Skipping catalog item %s without variants", name)
        continue
      tags = [str(variant.get("tag", f"v{i}")) for i, variant in enumerate(variants)]
      vectors = [variant.get("vector") for variant in variants]
      item_aliases = list(item.get("aliases") or []) + list(aliases.get(name, []))
      entries.append(make_entry(name, vectors, item_aliases, tags))
    catalog = ReferenceCatalog(entries)
    declared = data.get("dimension")
    if declared is not None and len(catalog) and int(declared) != catalog.dimension:
      raise CatalogError(f"Catalog declares dimension {declared} but vectors have {catalog.dimension}")
    return catalog

  if isinstance(data, Mapping):
    grouped: Dict[str, List[Tuple[str, object]]] = {}
    for key, vector in data.items():
      base, tag = _split_legacy_key(str(key))
      grouped.setdefault(base, []).append((tag, vector))
    for name, variants in grouped.items():
      entries.append(
        make_entry(name, [vector for _, vector in variants], list(aliases.get(name, [])), [tag for tag, _ in variants])
      )
    return ReferenceCatalog(entries)

  raise CatalogError("Catalog artifact must be a JSON object")


def load_catalog(path: Union[str, Path], aliases: Optional[Mapping[str, Sequence[str]]] = None) -> ReferenceCatalog:
  try:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
  except (OSError, json.JSONDecodeError) as exc:
    raise CatalogError(f"Cannot load catalog {path}: {exc}") from exc

  catalog = parse_catalog(data, aliases)
  variants = sum(entry.vectors.shape[0] for entry in catalog.entries.values())
  LOGGER.info("Loaded catalog %s: %d items, %d variants, dimension %d", path, len(catalog), variants, catalog.dimension)
  return catalog


def catalog_to_dict(catalog: ReferenceCatalog) -> Dict[str, object]:
  return {
    "dimension": catalog.dimension,
    "items": [
      {
        "name": entry.name,
        "aliases": list(entry.aliases),
        "variants": [
          {"tag": tag, "vector": row.tolist()}
          for tag, row in zip(entry.variant_tags, entry.vectors)
        ]
      }
      for entry in catalog.entries.values()
    ]
  }


def save_catalog(catalog: ReferenceCatalog, path: Union[str, Path]) -> None:
  Path(path).write_text(json.dumps(catalog_to_dict(catalog)), encoding="utf-8")
