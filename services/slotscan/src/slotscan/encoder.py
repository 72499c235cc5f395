"""Visual encoder adapters and the shared encoder service."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from .errors import EncoderUnavailable, RegionMatchError
from .similarity import normalize_rows

try:
  import onnxruntime as ort
except Exception:  # pragma: no cover - optional dependency
  ort = None


LOGGER = logging.getLogger(__name__)

CLIP_MEAN = np.array([0.48145466, 0.4578275, 0.40821073], dtype=np.float32)
CLIP_STD = np.array([0.26862954, 0.26130258, 0.27577711], dtype=np.float32)


class ImageEncoder(Protocol):
  dimension: int

  def embed_batch(self, images: Sequence[np.ndarray]) -> np.ndarray:
    """Return an (N, D) array of unit vectors, one row per image."""


class OnnxImageEncoder:
  """CLIP-style image encoder backed by an ONNX vision tower."""

  def __init__(self, model_path: str, input_size: int = 224, providers: Optional[List[str]] = None) -> None:
    if ort is None:
      raise EncoderUnavailable("onnxruntime is not available")
    if not os.path.exists(model_path):
      raise EncoderUnavailable(f"ONNX model missing: {model_path}")

    try:
      self._session = ort.InferenceSession(model_path, providers=providers or ["CPUExecutionProvider"])
    except Exception as exc:  # pragma: no cover - runtime failure
      raise EncoderUnavailable(f"Failed to load ONNX model {model_path}: {exc}") from exc

    input_meta = self._session.get_inputs()[0]
    self._input_name = input_meta.name
    self._input_size = input_size
    self._single_batch = isinstance(input_meta.shape[0], int) and input_meta.shape[0] == 1
    self.dimension = self._warm_up()
    LOGGER.info("Loaded ONNX encoder %s (dimension %d)", model_path, self.dimension)

  def _warm_up(self) -> int:
    dummy = np.zeros((1, 3, self._input_size, self._input_size), dtype=np.float32)
    outputs = self._session.run(None, {self._input_name: dummy})
    return int(self._pool(np.asarray(outputs[0])).shape[1])

  def _preprocess(self, image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
      image = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    elif image.shape[2] == 4:
      image = image[:, :, :3]
    if image.shape[0] != self._input_size or image.shape[1] != self._input_size:
      image = cv2.resize(image, (self._input_size, self._input_size), interpolation=cv2.INTER_AREA)
    normalized = (image.astype(np.float32) / 255.0 - CLIP_MEAN) / CLIP_STD
    return normalized.transpose(2, 0, 1)

  @staticmethod
  def _pool(output: np.ndarray) -> np.ndarray:
    # Token-level outputs carry the class token first.
    if output.ndim == 3:
      output = output[:, 0, :]
    return output.reshape(output.shape[0], -1)

  def _run(self, tensor: np.ndarray) -> np.ndarray:
    outputs = self._session.run(None, {self._input_name: tensor})
    return self._pool(np.asarray(outputs[0], dtype=np.float32))

  def embed_batch(self, images: Sequence[np.ndarray]) -> np.ndarray:
    if not images:
      return np.zeros((0, self.dimension), dtype=np.float32)

    tensor = np.stack([self._preprocess(image) for image in images]).astype(np.float32)
    if self._single_batch:
      embeddings = np.concatenate([self._run(tensor[i : i + 1]) for i in range(tensor.shape[0])])
    else:
      embeddings = self._run(tensor)
    return normalize_rows(embeddings)


class EncoderService:
  """Lazily constructed encoder shared by every caller in the process.

  ``init`` starts construction once; concurrent first callers await the same
  in-flight task and a failure is remembered for the session. Embedding
  requests are tracked by id so a superseded request can be discarded and
  its late response ignored.
  """

  def __init__(
    self,
    factory: Callable[[], ImageEncoder],
    *,
    executor: Optional[Executor] = None,
    max_workers: int = 2
  ) -> None:
    self._factory = factory
    self._executor = executor
    self._owns_executor = executor is None
    self._max_workers = max_workers
    self._init_task: Optional[asyncio.Future] = None
    self._encoder: Optional[ImageEncoder] = None
    self._failure: Optional[BaseException] = None
    self._pending: Dict[str, asyncio.Future] = {}

  @property
  def ready(self) -> bool:
    return self._encoder is not None

  @property
  def failed(self) -> bool:
    return self._failure is not None

  @property
  def pending_ids(self) -> Tuple[str, ...]:
    return tuple(self._pending)

  def _get_executor(self) -> Executor:
    if self._executor is None:
      self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="slotscan-encoder")
    return self._executor

  async def init(self) -> ImageEncoder:
    if self._encoder is not None:
      return self._encoder
    if self._failure is not None:
      raise EncoderUnavailable(f"Visual encoder unavailable: {self._failure}")

    if self._init_task is None:
      LOGGER.info("Initialising visual encoder")
      loop = asyncio.get_running_loop()
      self._init_task = loop.run_in_executor(self._get_executor(), self._factory)

    try:
      encoder = await asyncio.shield(self._init_task)
    except Exception as exc:
      if self._failure is None:
        LOGGER.error("Visual encoder initialisation failed: %s", exc)
        self._failure = exc
      if isinstance(exc, EncoderUnavailable):
        raise
      raise EncoderUnavailable(f"Visual encoder initialisation failed: {exc}") from exc

    self._encoder = encoder
    return encoder

  async def embed(self, images: Sequence[np.ndarray], request_id: Optional[str] = None) -> np.ndarray:
    """Embed images as one request; rows follow the input order."""

    encoder = await self.init()
    request_id = request_id or uuid.uuid4().hex
    if request_id in self._pending:
      raise ValueError(f"Request {request_id} is already pending")

    loop = asyncio.get_running_loop()
    future = loop.create_future()
    self._pending[request_id] = future
    job = loop.run_in_executor(self._get_executor(), encoder.embed_batch, list(images))
    job.add_done_callback(functools.partial(self._complete, request_id, future))

    try:
      embeddings = await future
    finally:
      if self._pending.get(request_id) is future:
        del self._pending[request_id]

    embeddings = np.asarray(embeddings, dtype=np.float32)
    if embeddings.ndim != 2 or embeddings.shape[0] != len(images):
      raise RegionMatchError(
        f"Encoder returned {embeddings.shape} for {len(images)} images in request {request_id}"
      )
    return embeddings

  def _complete(self, request_id: str, future: asyncio.Future, job: asyncio.Future) -> None:
    error = None if job.cancelled() else job.exception()
    if self._pending.get(request_id) is not future or future.done():
      LOGGER.debug("Discarding late encoder response for request %s", request_id)
      return

    del self._pending[request_id]
    if job.cancelled():
      future.cancel()
    elif error is not None:
      future.set_exception(error)
    else:
      future.set_result(job.result())

  def discard(self, request_id: str) -> bool:
    """Stop waiting for a request; its response is dropped when it arrives."""

    future = self._pending.pop(request_id, None)
    if future is None:
      return False
    if not future.done():
      future.cancel()
    return True

  def clear(self) -> None:
    for request_id in list(self._pending):
      self.discard(request_id)

  def close(self) -> None:
    self.clear()
    if self._owns_executor and self._executor is not None:
      self._executor.shutdown(wait=False)
      self._executor = None
