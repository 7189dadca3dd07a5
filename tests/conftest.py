"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages,
and provides embedding backends and index fixtures shared by all tests.
"""

import os
import re
import sys
from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import numpy as np
import pytest

# Insert local src directory at the beginning of sys.path
# This ensures that the local semindex package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

from semindex.config.loader import load_config  # noqa: E402
from semindex.config.models import SemIndexConfig  # noqa: E402
from semindex.index._internal.embedding import HashingBackend  # noqa: E402
from semindex.index.ops import SemanticIndex  # noqa: E402

_WORD_RE = re.compile(r"[a-z]+")


class KeywordBackend:
    """Deterministic backend with one axis per concept.

    Each known word adds 1.0 on its concept's axis; unknown words are
    ignored. Makes similarity between short texts easy to reason about.
    """

    CONCEPTS: dict[str, int] = {
        "add": 0,
        "addition": 0,
        "sum": 0,
        "subtract": 1,
        "subtraction": 1,
        "minus": 1,
        "function": 2,
        "numbers": 2,
        "two": 2,
        "multiply": 3,
        "product": 3,
        "weather": 4,
        "rain": 4,
    }

    def __init__(self, model_id: str = "keyword-test-v1", dim: int = 8) -> None:
        self._model_id = model_id
        self._dim = dim
        self.calls: list[list[str]] = []

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        self.calls.append(list(texts))
        out = []
        for text in texts:
            vec = np.zeros(self._dim, dtype=np.float32)
            for word in _WORD_RE.findall(text.lower()):
                axis = self.CONCEPTS.get(word)
                if axis is not None:
                    vec[axis] += 1.0
            # Texts without known words still get a direction of their own
            if not vec.any():
                vec[self._dim - 1] = 1.0
            out.append(vec)
        return out

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]


@pytest.fixture
def keyword_backend() -> KeywordBackend:
    return KeywordBackend()


@pytest.fixture
def hashing_backend() -> HashingBackend:
    return HashingBackend(dim=128)


@pytest.fixture(autouse=True)
def _isolate_global_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the user's global config and SEMINDEX__ env vars out of tests."""
    monkeypatch.setattr(
        "semindex.config.loader.GLOBAL_CONFIG_PATH", tmp_path / "no-global-config.yaml"
    )
    for key in list(os.environ):
        if key.startswith("SEMINDEX"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def index_root(tmp_path: Path) -> Path:
    return tmp_path / ".semindex"


@pytest.fixture
def make_config() -> Callable[..., SemIndexConfig]:
    """Config factory with test-friendly defaults (single embed worker, no retry delay)."""

    def _make(**overrides: object) -> SemIndexConfig:
        sections: dict[str, dict[str, object]] = {
            "embedding": {"backend": "hashing", "workers": 1, "retry_base_delay_sec": 0.0},
            "lock": {"heartbeat_interval_sec": 0.2},
        }
        for key, value in overrides.items():
            section, _, field = key.partition("__")
            sections.setdefault(section, {})[field] = value
        return load_config(None, **sections)

    return _make


@pytest.fixture
def open_index(
    index_root: Path,
    keyword_backend: KeywordBackend,
    make_config: Callable[..., SemIndexConfig],
) -> Generator[Callable[..., SemanticIndex], None, None]:
    """Open SemanticIndex instances on ``index_root``; all are closed at teardown."""
    opened: list[SemanticIndex] = []

    def _open(backend: object | None = None, **overrides: object) -> SemanticIndex:
        index = SemanticIndex.open(
            index_root,
            config=make_config(**overrides),
            backend=backend if backend is not None else keyword_backend,  # type: ignore[arg-type]
        )
        opened.append(index)
        return index

    yield _open
    for index in opened:
        index.close()


@pytest.fixture
def keyword_backend_cls() -> type[KeywordBackend]:
    """The KeywordBackend class, for tests that need a second model id."""
    return KeywordBackend
