"""Vector similarity utilities for embedding matching."""

from __future__ import annotations

import numpy as np


def l2_normalize(vector: np.ndarray) -> np.ndarray:
  """Return the vector scaled to unit length; zero vectors stay zero."""

  values = np.asarray(vector, dtype=np.float32).reshape(-1)
  norm = float(np.linalg.norm(values))
  if norm == 0.0:
    return values
  return values / norm


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
  values = np.asarray(matrix, dtype=np.float32)
  if values.ndim == 1:
    values = values[np.newaxis, :]
  norms = np.linalg.norm(values, axis=1, keepdims=True)
  norms[norms == 0] = 1.0
  return values / norms


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
  """Cosine similarity of two vectors, clipped to [-1, 1]."""

  score = float(np.dot(l2_normalize(a), l2_normalize(b)))
  return max(-1.0, min(score, 1.0))


def best_variant_score(query: np.ndarray, variants: np.ndarray) -> float:
  """Max cosine similarity of a unit query against unit variant rows."""

  if variants.size == 0:
    return -1.0
  scores = variants @ query
  return max(-1.0, min(float(np.max(scores)), 1.0))
