import asyncio
import json

import httpx
import pytest

from meridian_rag.common.errors import (
    EmbeddingConfigError,
    EmbeddingProviderError,
    EmbeddingResponseError,
)
from meridian_rag.retrieval.embedder import (
    LocalHostConfig,
    LocalHostEmbedder,
    OpenAICompatibleConfig,
    OpenAICompatibleEmbedder,
    RetryPolicy,
)


class SleepRecorder:
    """Stands in for asyncio.sleep between retries and records each backoff."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _vector_for(text):
    # "t7" -> [7.0, 1.0]
    return [float(text[1:]), 1.0]


def _openai_embedder(handler, **config_kwargs):
    config_kwargs.setdefault("api_key", "sk-test")
    config = OpenAICompatibleConfig(model="text-embedding-3-small", **config_kwargs)
    sleep = SleepRecorder()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleEmbedder(config, client=client, sleep=sleep), sleep


def _ok_response(texts, *, reverse=False):
    data = [{"index": i, "embedding": _vector_for(t)} for i, t in enumerate(texts)]
    if reverse:
        data.reverse()
    return httpx.Response(200, json={"data": data, "model": "m"})


@pytest.mark.asyncio
async def test_embed_batch_preserves_order_across_concurrent_batches():
    in_flight = 0
    max_in_flight = 0

    async def handler(request):
        nonlocal in_flight, max_in_flight
        texts = json.loads(request.content)["input"]
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        # Later batches finish first.
        await asyncio.sleep(0.01 * (10 - int(texts[0][1:])))
        in_flight -= 1
        return _ok_response(texts, reverse=True)

    embedder, _ = _openai_embedder(handler, batch_size=2, concurrency=3)
    texts = [f"t{i}" for i in range(7)]

    vectors = await embedder.embed_batch(texts)

    assert vectors == [_vector_for(t) for t in texts]
    assert 1 <= max_in_flight <= 3


@pytest.mark.asyncio
async def test_concurrency_one_serialises_requests():
    in_flight = 0
    max_in_flight = 0

    async def handler(request):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        await asyncio.sleep(0.001)
        in_flight -= 1
        return _ok_response(json.loads(request.content)["input"])

    embedder, _ = _openai_embedder(handler, batch_size=1, concurrency=1)
    await embedder.embed_batch([f"t{i}" for i in range(5)])

    assert max_in_flight == 1


@pytest.mark.asyncio
async def test_empty_input_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    embedder, _ = _openai_embedder(handler)

    assert await embedder.embed_batch([]) == []


@pytest.mark.asyncio
async def test_request_shape_and_dimension_tracking():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.1, 0.2, 0.3]}]})

    embedder, _ = _openai_embedder(handler, api_base="https://example.test/v1/")
    assert embedder.get_dimension() == 1536

    vector = await embedder.embed("hello")

    assert vector == [0.1, 0.2, 0.3]
    assert embedder.get_dimension() == 3
    request = seen[0]
    assert str(request.url) == "https://example.test/v1/embeddings"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {"input": ["hello"], "model": "text-embedding-3-small"}


def test_dimension_table():
    big = OpenAICompatibleEmbedder(OpenAICompatibleConfig(model="text-embedding-3-large", api_key="k"))
    unknown = OpenAICompatibleEmbedder(OpenAICompatibleConfig(model="custom", api_key="k"))
    local = LocalHostEmbedder(LocalHostConfig(model="all-minilm"))

    assert big.get_dimension() == 3072
    assert unknown.get_dimension() == 1536
    assert local.get_dimension() == 384
    assert LocalHostEmbedder(LocalHostConfig(model="other")).get_dimension() == 768


def test_openai_embedder_requires_api_key():
    with pytest.raises(EmbeddingConfigError):
        OpenAICompatibleEmbedder(OpenAICompatibleConfig(model="text-embedding-3-small"))


@pytest.mark.asyncio
async def test_rate_limit_is_retried_after_rate_limit_backoff():
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(429, json={"error": "slow down"})
        return _ok_response(json.loads(request.content)["input"])

    embedder, sleep = _openai_embedder(handler)

    vectors = await embedder.embed_batch(["t1"])

    assert vectors == [_vector_for("t1")]
    assert calls == 2
    assert sleep.delays == [15.0]


@pytest.mark.asyncio
async def test_server_errors_are_retried_after_server_backoff():
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        if calls <= 2:
            return httpx.Response(503, text="unavailable")
        return _ok_response(json.loads(request.content)["input"])

    embedder, sleep = _openai_embedder(handler)

    await embedder.embed_batch(["t1"])

    assert calls == 3
    assert sleep.delays == [2.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_provider_error():
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(500, text="boom")

    embedder, sleep = _openai_embedder(
        handler, retry=RetryPolicy(max_retries=2, rate_limit_backoff=0.0, server_error_backoff=0.0)
    )

    with pytest.raises(EmbeddingProviderError) as excinfo:
        await embedder.embed_batch(["t1"])

    assert excinfo.value.status_code == 500
    assert excinfo.value.retryable
    assert calls == 3
    assert sleep.delays == [0.0, 0.0]


@pytest.mark.asyncio
async def test_client_errors_fail_immediately():
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(400, text="bad request")

    embedder, sleep = _openai_embedder(handler)

    with pytest.raises(EmbeddingProviderError) as excinfo:
        await embedder.embed_batch(["t1"])

    assert excinfo.value.status_code == 400
    assert not excinfo.value.retryable
    assert calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_transport_errors_fail_without_retry():
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("network down", request=request)

    embedder, _ = _openai_embedder(handler)

    with pytest.raises(EmbeddingProviderError) as excinfo:
        await embedder.embed_batch(["t1"])

    assert excinfo.value.status_code is None
    assert calls == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"data": [{"index": 0, "embedding": [1.0]}]},
        {"data": [{"index": 0, "embedding": [1.0]}, {"index": 1, "embedding": []}]},
        {"data": [{"index": 0, "embedding": [1.0]}, {"index": 1}]},
        {"data": [{"index": 1, "embedding": [1.0]}, {"index": 1, "embedding": [0.0]}]},
        {"data": [{"index": 0, "embedding": [1.0]}, {"index": 2, "embedding": [0.0]}]},
        {"data": [{"index": "0", "embedding": [1.0]}, {"index": 1, "embedding": [0.0]}]},
        {"unexpected": True},
    ],
)
async def test_malformed_responses_are_not_retried(payload):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(200, json=payload)

    embedder, _ = _openai_embedder(handler)

    with pytest.raises(EmbeddingResponseError):
        await embedder.embed_batch(["t1", "t2"])
    assert calls == 1


@pytest.mark.asyncio
async def test_invalid_json_raises_response_error():
    def handler(request):
        return httpx.Response(200, content=b"not json", headers={"content-type": "application/json"})

    embedder, _ = _openai_embedder(handler)

    with pytest.raises(EmbeddingResponseError):
        await embedder.embed("t1")


@pytest.mark.asyncio
async def test_one_failing_batch_fails_the_whole_call():
    def handler(request):
        texts = json.loads(request.content)["input"]
        if "t3" in texts:
            return httpx.Response(401, text="unauthorised")
        return _ok_response(texts)

    embedder, _ = _openai_embedder(handler, batch_size=1, concurrency=2)

    with pytest.raises(EmbeddingProviderError):
        await embedder.embed_batch([f"t{i}" for i in range(6)])


@pytest.mark.asyncio
async def test_local_host_embedder_sends_one_prompt_per_request():
    prompts = []

    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/api/embeddings"
        assert body["model"] == "nomic-embed-text"
        prompts.append(body["prompt"])
        return httpx.Response(200, json={"embedding": _vector_for(body["prompt"])})

    config = LocalHostConfig(api_base="http://ollama.test:11434", concurrency=2)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    embedder = LocalHostEmbedder(config, client=client, sleep=SleepRecorder())
    texts = ["t1", "t2", "t3"]

    vectors = await embedder.embed_batch(texts)

    assert vectors == [_vector_for(t) for t in texts]
    assert sorted(prompts) == texts
    assert embedder.batch_size == 1
    assert embedder.get_dimension() == 2


@pytest.mark.asyncio
async def test_local_host_missing_embedding_raises():
    def handler(request):
        return httpx.Response(200, json={"embedding": []})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    embedder = LocalHostEmbedder(LocalHostConfig(), client=client)

    with pytest.raises(EmbeddingResponseError):
        await embedder.embed("t1")
