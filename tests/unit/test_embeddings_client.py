import httpx
import pytest

from knowledge_service.clients.embeddings_client import EmbeddingsClient
from knowledge_service.core.errors import EmbeddingIndexingError


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


class FakeHttpxClient:
    def __init__(self, recorder):
        self.recorder = recorder

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def post(self, url, json):
        self.recorder.append((url, json))
        return FakeResponse({"data": [{"index": 1, "embedding": [0.3, 0.4]}, {"index": 0, "embedding": [0.1, 0.2]}]})


def test_embed_texts_positive_batches_payload(monkeypatch):
    calls = []

    monkeypatch.setattr("httpx.Client", lambda timeout: FakeHttpxClient(calls))
    client = EmbeddingsClient(base_url="http://emb/", timeout_seconds=5, model_id="m1")
    vectors = client.embed_texts(["a", "b"], correlation_id="c1")

    assert vectors == [[0.1, 0.2], [0.3, 0.4]]
    assert calls[0][0] == "http://emb/v1/embeddings"
    assert calls[0][1]["model"] == "m1"
    assert calls[0][1]["input"] == ["a", "b"]
    assert calls[0][1]["correlation_id"] == "c1"


def test_embed_texts_skips_request_for_empty_input(monkeypatch):
    calls = []
    monkeypatch.setattr("httpx.Client", lambda timeout: FakeHttpxClient(calls))

    assert EmbeddingsClient("http://emb", 5, "m1").embed_texts([]) == []
    assert calls == []


def test_embed_text_negative_count_mismatch(monkeypatch):
    class EmptyDataHttpxClient(FakeHttpxClient):
        def post(self, url, json):
            return FakeResponse({"data": []})

    monkeypatch.setattr("httpx.Client", lambda timeout: EmptyDataHttpxClient([]))
    client = EmbeddingsClient(base_url="http://emb", timeout_seconds=5, model_id="m1")

    with pytest.raises(EmbeddingIndexingError):
        client.embed_text("hello")


def test_embed_texts_wraps_transport_errors(monkeypatch):
    class DownHttpxClient(FakeHttpxClient):
        def post(self, url, json):
            raise httpx.ConnectError("refused", request=httpx.Request("POST", url))

    monkeypatch.setattr("httpx.Client", lambda timeout: DownHttpxClient([]))
    client = EmbeddingsClient(base_url="http://emb", timeout_seconds=5, model_id="m1")

    with pytest.raises(EmbeddingIndexingError) as exc_info:
        client.embed_batch(["a"])
    assert exc_info.value.retryable is True
