"""Nearest-neighbour matching of slot crops against catalog embeddings."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import List, Optional, Sequence, Union

import numpy as np

from .catalog import ReferenceCatalog
from .encoder import EncoderService
from .errors import EncoderUnavailable, NoCandidateVectors, RegionMatchError
from .similarity import best_variant_score, l2_normalize
from .slot_types import MatchResult

LOGGER = logging.getLogger(__name__)

MatchOutcome = Union[List[MatchResult], Exception]


class VisualMatcher:
  """Rank catalog items by their best variant similarity to a crop."""

  def __init__(self, catalog: ReferenceCatalog, encoder: EncoderService) -> None:
    self._catalog = catalog
    self._encoder = encoder

  @property
  def catalog(self) -> ReferenceCatalog:
    return self._catalog

  def rank(self, embedding: np.ndarray, candidates: Optional[Sequence[str]] = None) -> List[MatchResult]:
    """Score each candidate by max cosine similarity over its variants.

    An empty or missing candidate list means the whole catalog. Candidates
    without stored vectors are skipped.
    """

    query = l2_normalize(embedding)
    if query.shape[0] != self._catalog.dimension:
      raise RegionMatchError(
        f"Embedding dimension {query.shape[0]} does not match catalog dimension {self._catalog.dimension}"
      )

    names = list(candidates) if candidates else list(self._catalog.names)
    results: List[MatchResult] = []
    seen = set()
    for name in names:
      if name in seen:
        continue
      seen.add(name)
      try:
        vectors = self._catalog.vectors_for(name)
      except NoCandidateVectors as exc:
        LOGGER.debug("%s; skipping candidate", exc)
        continue
      results.append(MatchResult(label=name, score=best_variant_score(query, vectors)))

    if not results:
      raise RegionMatchError("No reference vectors available for the candidate labels")

    results.sort(key=lambda result: result.score, reverse=True)
    return results

  async def match(
    self,
    crop: np.ndarray,
    candidates: Optional[Sequence[str]] = None,
    request_id: Optional[str] = None
  ) -> List[MatchResult]:
    embeddings = await self._encoder.embed([crop], request_id)
    return self.rank(embeddings[0], candidates)

  async def _match_isolated(
    self,
    crop: np.ndarray,
    candidates: Optional[Sequence[str]],
    request_id: str
  ) -> MatchOutcome:
    try:
      return await self.match(crop, candidates, request_id)
    except EncoderUnavailable:
      raise
    except Exception as exc:
      LOGGER.warning("Region %s failed to match: %s", request_id, exc)
      return exc

  async def match_batch(
    self,
    crops: Sequence[np.ndarray],
    candidate_lists: Sequence[Optional[Sequence[str]]],
    request_id: Optional[str] = None
  ) -> List[MatchOutcome]:
    """Match crops in one encoder request, one outcome per crop.

    A failing batch is retried crop by crop so a single bad region does
    not take its siblings down with it.
    """

    if len(crops) != len(candidate_lists):
      raise ValueError("crops and candidate_lists must have the same length")
    if not crops:
      return []

    request_id = request_id or uuid.uuid4().hex
    try:
      embeddings = await self._encoder.embed(crops, request_id)
    except EncoderUnavailable:
      raise
    except Exception as exc:
      if len(crops) == 1:
        LOGGER.warning("Region %s failed to match: %s", request_id, exc)
        return [exc]
      LOGGER.warning("Encoder batch %s failed (%s); retrying regions individually", request_id, exc)
      return list(
        await asyncio.gather(*(
          self._match_isolated(crop, candidates, f"{request_id}/{index}")
          for index, (crop, candidates) in enumerate(zip(crops, candidate_lists))
        ))
      )

    outcomes: List[MatchOutcome] = []
    for embedding, candidates in zip(embeddings, candidate_lists):
      try:
        outcomes.append(self.rank(embedding, candidates))
      except RegionMatchError as exc:
        outcomes.append(exc)
    return outcomes
