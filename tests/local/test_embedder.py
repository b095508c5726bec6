"""
Unit tests for codekb.local.embedder

Tests the embedding text format, retry behaviour and provider selection
without calling any embedding API.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest


class _FlakyClient:
    """Client whose _request fails a set number of times, then succeeds."""

    def __init__(self, failures, vectors):
        from codekb.local.embedder import EmbeddingClient

        class Client(EmbeddingClient):
            calls = 0

            def _request(self, texts):
                Client.calls += 1
                if Client.calls <= failures:
                    raise ConnectionError("connection refused")
                return vectors

        self.client = Client()
        self.cls = Client


# ---------------------------------------------------------------------------
# build_embedding_text
# ---------------------------------------------------------------------------

class TestBuildEmbeddingText:
    def test_parts_in_order(self):
        from codekb.local.embedder import build_embedding_text
        from codekb.local.models import Chunk, CodeNode
        node = CodeNode(id="a.ts:function:f", type="function", name="f", file_path="a.ts",
                        signature="function f() {", summary="Does f")
        chunk = Chunk(content="function f() {\n  return 1;\n}", token_count=0,
                      start_line=1, end_line=3, start_byte=0, end_byte=27,
                      language="typescript", node_type="function_declaration")
        text = build_embedding_text(node, chunk)
        assert text.split("\n")[:3] == ["f", "function f() {", "Does f"]
        assert text.endswith("return 1;\n}")

    def test_snippet_is_truncated_and_empty_parts_dropped(self):
        from codekb.local.embedder import build_embedding_text
        from codekb.local.models import Chunk, CodeNode
        node = CodeNode(id="x", type="function", name="f", file_path="a.ts")
        chunk = Chunk(content="abcdefghij", token_count=0, start_line=1, end_line=1,
                      start_byte=0, end_byte=10, language="typescript",
                      node_type="function_declaration")
        assert build_embedding_text(node, chunk, snippet_chars=4) == "f\nabcd"


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

class TestRetry:
    @patch("codekb.local.embedder.time.sleep")
    def test_retries_then_succeeds(self, mock_sleep):
        flaky = _FlakyClient(failures=2, vectors=[[1.0]])
        assert flaky.client.embed_batch(["a"]) == [[1.0]]
        assert flaky.cls.calls == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [2, 4]

    @patch("codekb.local.embedder.time.sleep")
    def test_gives_up_after_max_retries(self, mock_sleep):
        from codekb.local.embedder import EmbeddingError
        flaky = _FlakyClient(failures=10, vectors=[[1.0]])
        with pytest.raises(EmbeddingError, match="after 3 attempts"):
            flaky.client.embed_batch(["a"])
        assert flaky.cls.calls == 3

    @patch("codekb.local.embedder.time.sleep")
    def test_count_mismatch_is_an_error(self, mock_sleep):
        from codekb.local.embedder import EmbeddingError
        flaky = _FlakyClient(failures=0, vectors=[[1.0]])
        with pytest.raises(EmbeddingError):
            flaky.client.embed_batch(["a", "b"])

    def test_empty_batch(self):
        flaky = _FlakyClient(failures=0, vectors=[])
        assert flaky.client.embed_batch([]) == []
        assert flaky.cls.calls == 0

    def test_embed_single(self):
        flaky = _FlakyClient(failures=0, vectors=[[0.5, 0.5]])
        assert flaky.client.embed("x") == [0.5, 0.5]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class TestOllama:
    @patch("codekb.local.embedder.requests.post")
    def test_posts_to_embed_endpoint(self, mock_post):
        from codekb.local.embedder import OllamaEmbeddingClient
        response = MagicMock()
        response.json.return_value = {"embeddings": [[0.1, 0.2], [0.3, 0.4]]}
        mock_post.return_value = response

        client = OllamaEmbeddingClient("http://localhost:11434/api/generate", model="m")
        vectors = client.embed_batch(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        mock_post.assert_called_once_with(
            "http://localhost:11434/api/embed",
            json={"model": "m", "input": ["a", "b"]},
            timeout=60.0,
        )
        response.raise_for_status.assert_called_once()


class TestOpenAI:
    def test_missing_key(self, monkeypatch):
        from codekb.local.embedder import _get_openai_client
        pytest.importorskip("openai")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(EnvironmentError):
            _get_openai_client("")

    def test_request_reads_embeddings(self):
        from codekb.local.embedder import OpenAIEmbeddingClient
        fake = MagicMock()
        fake.embeddings.create.return_value.data = [
            MagicMock(embedding=[1.0]), MagicMock(embedding=[2.0]),
        ]
        with patch("codekb.local.embedder._get_openai_client", return_value=fake):
            client = OpenAIEmbeddingClient(api_key="k", model="text-embedding-3-small")
        assert client.embed_batch(["a", "b"]) == [[1.0], [2.0]]
        fake.embeddings.create.assert_called_once_with(
            model="text-embedding-3-small", input=["a", "b"])


class TestCreateEmbeddingClient:
    def _config(self, **values):
        from codekb.config import Config
        data = {"embedding_provider": "none"}
        data.update(values)
        return Config(data)

    def test_none(self, monkeypatch):
        from codekb.local.embedder import create_embedding_client
        monkeypatch.delenv("EMBEDDING_PROVIDER", raising=False)
        assert create_embedding_client(self._config()) is None

    def test_ollama(self, monkeypatch):
        from codekb.local.embedder import OllamaEmbeddingClient, create_embedding_client
        monkeypatch.setenv("EMBEDDING_PROVIDER", "ollama")
        monkeypatch.delenv("EMBEDDING_MODEL", raising=False)
        client = create_embedding_client(self._config())
        assert isinstance(client, OllamaEmbeddingClient)
        assert client.model == "nomic-embed-text"

    def test_unknown(self, monkeypatch):
        from codekb.local.embedder import create_embedding_client
        monkeypatch.setenv("EMBEDDING_PROVIDER", "carrier-pigeon")
        with pytest.raises(ValueError):
            create_embedding_client(self._config())
