"""Embedding gateway: text -> L2-normalised float32 vectors tagged with a model id.

Backends:
  - FastEmbedBackend: fastembed (ONNX), lazily loaded on first use.
    Default model BAAI/bge-small-en-v1.5 (384-dim).
  - HashingBackend: deterministic character n-gram feature hashing. No model
    download; captures surface similarity only. Used offline and in tests.

The gateway batches chunks, embeds batches concurrently, retries transient
failures with exponential backoff, and degrades per item: a chunk that
cannot be embedded is skipped and recorded, while a run of consecutive
failures marks the backend as down and aborts the build.
"""

from __future__ import annotations

import hashlib
import os
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np
import structlog

from semindex.config.constants import DEFAULT_FASTEMBED_MODEL, HASHING_MODEL_ID
from semindex.core.errors import (
    EmbeddingBackendDownError,
    EmbeddingUnavailableError,
)
from semindex.index.models import Chunk, SkippedChunk

if TYPE_CHECKING:
    from semindex.config.models import EmbeddingConfig

log = structlog.get_logger()

_WORD_RE = re.compile(r"\w+")


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise each row; all-zero rows stay zero."""
    matrix = np.asarray(matrix, dtype=np.float32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.maximum(norms, 1e-10)
    return (matrix / norms).astype(np.float32)


@runtime_checkable
class EmbeddingBackend(Protocol):
    """Anything that turns texts into fixed-dimension vectors under a model id."""

    @property
    def model_id(self) -> str: ...

    @property
    def dim(self) -> int: ...

    def embed(self, texts: Sequence[str]) -> Sequence[Any]: ...


# ===================================================================
# Backends
# ===================================================================


class HashingBackend:
    """Signed feature hashing over character trigrams, words and word prefixes.

    Equal text always maps to the same vector, so exact matches score 1.0.
    """

    _TRIGRAM_WEIGHT = 1.0
    _WORD_WEIGHT = 2.0
    _PREFIX_WEIGHT = 2.0

    def __init__(self, dim: int = 384) -> None:
        if dim < 1:
            raise ValueError(f"dim must be >= 1, got {dim}")
        self._dim = dim

    @property
    def model_id(self) -> str:
        return HASHING_MODEL_ID if self._dim == 384 else f"{HASHING_MODEL_ID}-{self._dim}"

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        return [self._embed_one(t) for t in texts]

    def _embed_one(self, text: str) -> np.ndarray:
        vec = np.zeros(self._dim, dtype=np.float32)
        for word in _WORD_RE.findall(text.lower()):
            padded = f" {word} "
            for i in range(len(padded) - 2):
                self._add(vec, "c:" + padded[i : i + 3], self._TRIGRAM_WEIGHT)
            self._add(vec, "w:" + word, self._WORD_WEIGHT)
            if len(word) >= 3:
                self._add(vec, "p:" + word[:3], self._PREFIX_WEIGHT)
        return vec

    def _add(self, vec: np.ndarray, feature: str, weight: float) -> None:
        h = int.from_bytes(hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest(), "big")
        sign = 1.0 if (h >> 63) & 1 else -1.0
        vec[h % self._dim] += sign * weight


def _detect_providers() -> list[str]:
    """Detect available ONNX Runtime execution providers."""
    try:
        import onnxruntime as ort  # type: ignore[import-not-found]

        available = set(ort.get_available_providers())
    except Exception:
        return []

    providers: list[str] = []
    if "CUDAExecutionProvider" in available:
        providers.append("CUDAExecutionProvider")
    providers.append("CPUExecutionProvider")
    return providers


class FastEmbedBackend:
    """fastembed TextEmbedding, loaded on first embed() call."""

    def __init__(self, model_name: str = DEFAULT_FASTEMBED_MODEL, *, threads: int | None = None):
        self._model_name = model_name
        self._threads = threads
        self._model: Any | None = None
        self._dim: int | None = None
        self._load_error: str | None = None
        self._load_lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return self._model_name

    @property
    def dim(self) -> int:
        if self._dim is None:
            self._dim = self._lookup_dim()
        return self._dim

    def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        model = self._ensure_model()
        return [
            np.asarray(v, dtype=np.float32)
            for v in model.embed(list(texts), batch_size=max(1, len(texts)))
        ]

    def _lookup_dim(self) -> int:
        try:
            from fastembed import TextEmbedding  # type: ignore[import-not-found]

            for desc in TextEmbedding.list_supported_models():
                if desc.get("model") == self._model_name:
                    return int(desc["dim"])
        except ImportError:
            pass
        # Unknown model: embed one text to learn the width
        return len(self.embed(["dimension check"])[0])

    def _ensure_model(self) -> Any:
        """Lazy-load fastembed TextEmbedding model with GPU auto-detect."""
        with self._load_lock:
            if self._model is not None:
                return self._model
            if self._load_error is not None:
                raise EmbeddingUnavailableError.for_item(self._model_name, self._load_error)

            try:
                from fastembed import TextEmbedding  # type: ignore[import-not-found]
            except ImportError:
                log.warning(
                    "embedding_fastembed_not_installed",
                    hint="pip install 'semindex[fastembed]' or set embedding.backend=hashing",
                )
                self._load_error = "fastembed is not installed"
                raise EmbeddingUnavailableError.for_item(
                    self._model_name, self._load_error
                ) from None

            providers = _detect_providers()
            threads = self._threads or max(1, (os.cpu_count() or 4) // 2)
            start = time.monotonic()
            kwargs: dict[str, Any] = {"model_name": self._model_name, "threads": threads}
            if providers:
                kwargs["providers"] = providers
            try:
                self._model = TextEmbedding(**kwargs)
            except Exception as e:
                log.warning("embedding_model_load_failed", model=self._model_name, exc_info=True)
                raise EmbeddingUnavailableError.for_item(
                    self._model_name, f"model load failed: {e}"
                ) from e
            log.info(
                "embedding_model_loaded",
                model=self._model_name,
                providers=providers or ["CPUExecutionProvider"],
                threads=threads,
                elapsed_s=round(time.monotonic() - start, 2),
            )
            return self._model


def create_backend(config: EmbeddingConfig) -> EmbeddingBackend:
    """Instantiate the configured backend."""
    if config.backend == "hashing":
        return HashingBackend(dim=config.hashing_dim)
    return FastEmbedBackend(config.model)


# ===================================================================
# Gateway
# ===================================================================


@dataclass
class EmbedOutcome:
    """Result of embedding a build's chunks, in input order."""

    embedded: list[tuple[Chunk, np.ndarray]] = field(default_factory=list)
    skipped: list[SkippedChunk] = field(default_factory=list)
    cancelled: bool = False


class _BatchFailed(Exception):
    pass


class EmbeddingGateway:
    """Batching, retrying, degrading front for an EmbeddingBackend."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        batch_size: int = 24,
        workers: int = 2,
        max_retries: int = 3,
        retry_base_delay_sec: float = 0.2,
        max_consecutive_failures: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backend = backend
        self._batch_size = max(1, batch_size)
        self._workers = max(1, workers)
        self._max_retries = max(0, max_retries)
        self._retry_base_delay = retry_base_delay_sec
        self._max_consecutive_failures = max(1, max_consecutive_failures)
        self._sleep = sleep

    @classmethod
    def from_config(cls, backend: EmbeddingBackend, config: EmbeddingConfig) -> EmbeddingGateway:
        return cls(
            backend,
            batch_size=config.batch_size,
            workers=config.workers,
            max_retries=config.max_retries,
            retry_base_delay_sec=config.retry_base_delay_sec,
            max_consecutive_failures=config.max_consecutive_failures,
        )

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def model_id(self) -> str:
        return self._backend.model_id

    @property
    def dim(self) -> int:
        return self._backend.dim

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text (e.g. a query).

        Raises:
            EmbeddingUnavailableError: after retries are exhausted.
        """
        try:
            vectors = self._embed_with_retry([text])
        except _BatchFailed as e:
            raise EmbeddingUnavailableError.for_item(self.model_id, str(e.__cause__ or e)) from e
        vec = vectors[0]
        if vec is None:
            raise EmbeddingUnavailableError.for_item(
                self.model_id, "dimension mismatch", expected_dim=self.dim
            )
        return vec

    def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        *,
        cancel: threading.Event | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> EmbedOutcome:
        """Embed chunks concurrently; results keep submission order.

        Raises:
            EmbeddingBackendDownError: after too many consecutive item failures.
        """
        outcome = EmbedOutcome()
        total = len(chunks)
        if total == 0:
            return outcome

        batches = [
            list(chunks[i : i + self._batch_size]) for i in range(0, total, self._batch_size)
        ]
        consecutive = 0
        done = 0
        window = self._workers * 2
        pending: deque[tuple[list[Chunk], Future[list[np.ndarray | None] | Exception]]] = deque()
        next_batch = 0

        executor = ThreadPoolExecutor(
            max_workers=self._workers, thread_name_prefix="semindex-embed"
        )
        try:
            while next_batch < len(batches) or pending:
                while next_batch < len(batches) and len(pending) < window:
                    batch = batches[next_batch]
                    pending.append((batch, executor.submit(self._embed_batch_safe, batch)))
                    next_batch += 1

                if cancel is not None and cancel.is_set():
                    outcome.cancelled = True
                    return outcome

                batch, fut = pending.popleft()
                result = fut.result()
                if isinstance(result, Exception):
                    log.warning(
                        "embedding_batch_failed",
                        model=self.model_id,
                        size=len(batch),
                        error=str(result),
                    )
                    items = self._embed_items(batch)
                else:
                    items = [
                        (c, v, None if v is not None else "dimension mismatch")
                        for c, v in zip(batch, result, strict=True)
                    ]

                for chunk, vec, reason in items:
                    if vec is None:
                        consecutive += 1
                        outcome.skipped.append(
                            SkippedChunk(chunk.chunk_id, chunk.unit_id, reason or "unknown")
                        )
                        log.warning(
                            "embedding_chunk_failed",
                            chunk_id=chunk.chunk_id,
                            unit_id=chunk.unit_id,
                            reason=reason,
                        )
                        if consecutive >= self._max_consecutive_failures:
                            raise EmbeddingBackendDownError.consecutive_failures(
                                self.model_id, consecutive, reason or "unknown"
                            )
                    else:
                        consecutive = 0
                        outcome.embedded.append((chunk, vec))

                done += len(batch)
                if on_progress is not None:
                    on_progress(done, total)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        return outcome

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _embed_batch_safe(self, batch: list[Chunk]) -> list[np.ndarray | None] | Exception:
        try:
            return self._embed_with_retry([c.text for c in batch])
        except _BatchFailed as e:
            return e.__cause__ if isinstance(e.__cause__, Exception) else e

    def _embed_items(self, batch: list[Chunk]) -> list[tuple[Chunk, np.ndarray | None, str | None]]:
        out: list[tuple[Chunk, np.ndarray | None, str | None]] = []
        for chunk in batch:
            try:
                vec = self._call_backend([chunk.text])[0]
            except Exception as e:
                out.append((chunk, None, f"{type(e).__name__}: {e}"))
                continue
            out.append((chunk, vec, None if vec is not None else "dimension mismatch"))
        return out

    def _embed_with_retry(self, texts: list[str]) -> list[np.ndarray | None]:
        last: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                return self._call_backend(texts)
            except Exception as e:
                last = e
                if attempt < self._max_retries:
                    delay = self._retry_base_delay * (2**attempt)
                    log.debug(
                        "embedding_retry", model=self.model_id, attempt=attempt + 1, delay_s=delay
                    )
                    self._sleep(delay)
        raise _BatchFailed(str(last)) from last

    def _call_backend(self, texts: list[str]) -> list[np.ndarray | None]:
        """One backend call. Items with the wrong dimension come back as None."""
        raw = self._backend.embed(texts)
        if len(raw) != len(texts):
            raise ValueError(f"backend returned {len(raw)} vectors for {len(texts)} texts")
        dim = self._backend.dim
        out: list[np.ndarray | None] = []
        for v in raw:
            arr = np.asarray(v, dtype=np.float32).reshape(-1)
            if arr.shape[0] != dim or not np.all(np.isfinite(arr)):
                out.append(None)
            else:
                out.append(normalize_rows(arr)[0])
        return out
