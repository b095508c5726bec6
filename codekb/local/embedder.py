"""
Embedding clients for the semantic layer.

Two providers are supported: a local Ollama server (``/api/embed`` over
requests) and the OpenAI Embeddings API (``pip install 'codekb[semantic]'``).
Both retry transient failures with exponential back-off and raise
:class:`EmbeddingError` once retries are exhausted.
"""

from __future__ import annotations

import logging
import os
import time
from typing import TYPE_CHECKING, Optional

import requests

if TYPE_CHECKING:
    from ..config import Config
    from .models import Chunk, CodeNode

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OPENAI_EMBED_MODEL = "text-embedding-3-small"
OLLAMA_EMBED_MODEL = "nomic-embed-text"
MAX_RETRIES = 3
SNIPPET_CHARS = 500


class EmbeddingError(RuntimeError):
    """Raised when an embedding request fails after all retries."""


# ---------------------------------------------------------------------------
# Embedding text
# ---------------------------------------------------------------------------

def build_embedding_text(
    node: "CodeNode",
    chunk: Optional["Chunk"] = None,
    snippet_chars: int = SNIPPET_CHARS,
) -> str:
    """
    Format a node into the text that gets embedded.

    Name, signature, summary and the first *snippet_chars* characters of
    the chunk source, one per line; empty parts are dropped.
    """
    parts = [node.name, node.signature, node.summary]
    if chunk is not None:
        parts.append(chunk.source[:snippet_chars])
    return "\n".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class EmbeddingClient:
    """Base class: subclasses implement :meth:`_request`."""

    max_retries = MAX_RETRIES

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed *texts*, retrying with exponential back-off on failure.

        Returns
        -------
        list[list[float]]
            Embedding vectors in the same order as *texts*.

        Raises
        ------
        EmbeddingError
            If all retries are exhausted or the provider returns the wrong
            number of vectors.
        """
        if not texts:
            return []
        for attempt in range(1, self.max_retries + 1):
            try:
                vectors = self._request(texts)
                if len(vectors) != len(texts):
                    raise EmbeddingError(
                        f"Expected {len(texts)} embeddings, got {len(vectors)}"
                    )
                return vectors
            except Exception as exc:
                if attempt < self.max_retries:
                    wait = 2 ** attempt
                    logger.warning(
                        "Embedding API error (attempt %d/%d): %s, retrying in %ds",
                        attempt, self.max_retries, exc, wait,
                    )
                    time.sleep(wait)
                else:
                    raise EmbeddingError(
                        f"Embedding API failed after {self.max_retries} attempts: {exc}"
                    ) from exc
        raise EmbeddingError("unreachable")

    def _request(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError


class OllamaEmbeddingClient(EmbeddingClient):
    """
    Embeddings from a local Ollama server.

    Parameters
    ----------
    base_url:
        Server URL; any ``/api/...`` suffix is stripped.
    model:
        Embedding model name.
    timeout:
        Request timeout in seconds.
    """

    def __init__(self, base_url: str = "http://localhost:11434",
                 model: str = OLLAMA_EMBED_MODEL, timeout: float = 60.0) -> None:
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def _request(self, texts: list[str]) -> list[list[float]]:
        response = requests.post(
            f"{self._api_root}/api/embed",
            json={"model": self.model, "input": texts},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json().get("embeddings", [])


class OpenAIEmbeddingClient(EmbeddingClient):
    """
    Embeddings from the OpenAI API.

    Parameters
    ----------
    api_key:
        API key; falls back to ``OPENAI_API_KEY``.
    model:
        Embedding model name.
    base_url:
        Optional API base URL for compatible servers.
    """

    def __init__(self, api_key: str = "", model: str = OPENAI_EMBED_MODEL,
                 base_url: Optional[str] = None) -> None:
        self.model = model
        self._client = _get_openai_client(api_key, base_url)

    def _request(self, texts: list[str]) -> list[list[float]]:
        response = self._client.embeddings.create(model=self.model, input=texts)
        return [item.embedding for item in response.data]


def _get_openai_client(api_key: str = "", base_url: Optional[str] = None):
    """Return an openai.OpenAI client, raising ImportError if not installed."""
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "openai package is required for OpenAI embeddings. "
            "Install it with: pip install 'codekb[semantic]'"
        ) from exc
    api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
    if not api_key:
        raise EnvironmentError("OPENAI_API_KEY environment variable is not set.")
    if base_url:
        return openai.OpenAI(api_key=api_key, base_url=base_url)
    return openai.OpenAI(api_key=api_key)


def create_embedding_client(config: "Config") -> Optional[EmbeddingClient]:
    """
    Build the client selected by ``config.EMBEDDING_PROVIDER``.

    Returns None for provider ``none``; the scanner then maintains the
    structural graph only.
    """
    provider = (config.EMBEDDING_PROVIDER or "none").lower()
    if provider == "none":
        return None
    if provider == "ollama":
        return OllamaEmbeddingClient(
            base_url=config.OLLAMA_BASE_URL,
            model=config.EMBEDDING_MODEL or OLLAMA_EMBED_MODEL,
        )
    if provider == "openai":
        return OpenAIEmbeddingClient(
            api_key=config.OPENAI_API_KEY,
            model=config.EMBEDDING_MODEL or OPENAI_EMBED_MODEL,
            base_url=config.OPENAI_BASE_URL or None,
        )
    raise ValueError(f"Unknown embedding provider: {config.EMBEDDING_PROVIDER!r}")
