"""Resolve OCR hints against catalog names before visual matching.

OCR is cheap and often exact, so a hint that is equal or very close to a
catalog name resolves the slot directly. Anything weaker only narrows the
candidate list handed to the visual matcher.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from .catalog import ReferenceCatalog
from .slot_types import MatchResult

LOGGER = logging.getLogger(__name__)

EXACT_SCORE = 1.0
NEAR_SCORE = 0.95

_QUANTITY_TOKEN = re.compile(r"\bx\s*\d+\b", re.IGNORECASE)
_STANDALONE_NUMBER = re.compile(r"\b\d+\b")
_DISALLOWED = re.compile(r"[^a-z0-9'\- ]+")


def normalize_label(text: str, *, strip_quantity: bool = True, strip_numbers: bool = True) -> str:
  """Lowercase, drop punctuation and collapse whitespace.

  Quantity tokens (``x5``) and standalone integers are removed unless
  disabled; catalog labels keep both so numbered items stay distinct.
  """

  lowered = text.lower()
  if strip_quantity:
    lowered = _QUANTITY_TOKEN.sub(" ", lowered)
  if strip_numbers:
    lowered = _STANDALONE_NUMBER.sub(" ", lowered)
  lowered = _DISALLOWED.sub(" ", lowered)
  return " ".join(lowered.split())


@dataclass(frozen=True, slots=True)
class Narrowing:
  """Outcome of a hint lookup.

  ``match`` is set when the hint resolves the slot outright. Otherwise
  ``shortlist`` holds the closest names, or is None when the whole catalog
  should be searched.
  """

  match: Optional[MatchResult] = None
  shortlist: Optional[Tuple[str, ...]] = None
  distance: Optional[int] = None


class CandidateNarrower:
  def __init__(
    self,
    catalog: ReferenceCatalog,
    *,
    shortlist_size: int = 10,
    min_hint_length: int = 3,
    max_distance: int = 2,
    short_name_length: int = 4
  ) -> None:
    self._shortlist_size = shortlist_size
    self._min_hint_length = min_hint_length
    self._max_distance = max_distance
    self._short_name_length = short_name_length
    self._labels: List[Tuple[str, Tuple[str, ...]]] = []
    for entry in catalog.entries.values():
      normalized = (normalize_label(text, strip_quantity=False, strip_numbers=False) for text in entry.labels)
      labels = tuple(label for label in normalized if label)
      if labels:
        self._labels.append((entry.name, labels))

  def _score(self, normalized: str) -> List[Tuple[int, str, str]]:
    scored: List[Tuple[int, str, str]] = []
    for name, labels in self._labels:
      distance, label = min((Levenshtein.distance(normalized, label), label) for label in labels)
      scored.append((distance, name, label))
    scored.sort(key=lambda item: (item[0], item[1]))
    return scored

  def _resolve(self, hint: str, scored: List[Tuple[int, str, str]]) -> Optional[Narrowing]:
    distance, name, label = scored[0]
    # Items tied at the best distance cannot be told apart by text.
    if len(scored) > 1 and scored[1][0] == distance:
      LOGGER.debug("Hint %r is ambiguous between %s and %s", hint, name, scored[1][1])
      return None
    if distance == 0:
      LOGGER.debug("Hint %r matched %s exactly", hint, name)
      return Narrowing(match=MatchResult(name, EXACT_SCORE), distance=0)
    # Short names are only trusted at distance 1.
    if distance <= self._max_distance and (len(label) > self._short_name_length or distance <= 1):
      LOGGER.debug("Hint %r matched %s at distance %d", hint, name, distance)
      return Narrowing(match=MatchResult(name, NEAR_SCORE), distance=distance)
    return None

  def find_match(self, hint: str) -> Narrowing:
    hint = hint or ""
    without_numbers = normalize_label(hint)
    if len(without_numbers) < self._min_hint_length or not self._labels:
      return Narrowing()

    # Numbers in a hint may be part of the name ("Mk. 3"), so they are only
    # dropped when the hint does not resolve with them.
    with_numbers = normalize_label(hint, strip_numbers=False)
    scored = self._score(with_numbers)
    resolved = self._resolve(hint, scored)
    if resolved is None and without_numbers != with_numbers:
      resolved = self._resolve(hint, self._score(without_numbers))
    if resolved is not None:
      return resolved

    shortlist = tuple(item[1] for item in scored[: self._shortlist_size])
    LOGGER.debug("Hint %r narrowed to %d candidates", hint, len(shortlist))
    return Narrowing(shortlist=shortlist, distance=scored[0][0])
