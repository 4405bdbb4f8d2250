import logging

import pytest

from meridian_rag.app.container import MeridianContainer, build_container
from meridian_rag.config import GlobalConfig
from meridian_rag.pipelines import DocumentIndexer, SearchPipeline
from meridian_rag.retrieval.aggregator import EnhancedRetrievalEngine
from meridian_rag.retrieval.embedder import LocalHostEmbedder, OpenAICompatibleEmbedder
from meridian_rag.retrieval.retriever import RetrievalEngine
from meridian_rag.retrieval.text_splitter import TextSplitter
from meridian_rag.retrieval.vector_store import InMemoryVectorSearch


CONFIG_YAML = """
embedder:
  kind: openai
  model: text-embedding-3-small
  api_key: ${MERIDIAN_TEST_KEY}
  batch_size: 32
retrieval:
  top_k: 7
  relevance_threshold: 0.25
  max_parallel_searches: 4
chunking:
  chunk_size: 800
  chunk_overlap: 80
"""


def test_load_expands_environment_variables(tmp_path, monkeypatch):
    monkeypatch.setenv("MERIDIAN_TEST_KEY", "sk-from-env")
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)

    cfg = GlobalConfig.load(path)

    assert cfg.config_path == path.resolve()
    assert cfg.embedder["api_key"] == "sk-from-env"
    assert cfg.embedder["batch_size"] == 32
    assert cfg.chunking == {"chunk_size": 800, "chunk_overlap": 80}
    assert cfg.retrieval == {
        "top_k": 7,
        "relevance_threshold": 0.25,
        "max_context_tokens": 4000,
        "max_parallel_searches": 4,
    }


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    cfg = GlobalConfig.load(path)

    assert cfg.chunking == {"chunk_size": 1500, "chunk_overlap": 100}
    assert cfg.retrieval["top_k"] == 5
    assert cfg.retrieval["relevance_threshold"] == 0.3
    assert cfg.retrieval["max_parallel_searches"] is None
    assert cfg.vector_store == {}
    assert cfg.tokenization == {}
    assert cfg.logging == {}
    with pytest.raises(KeyError):
        cfg.embedder


@pytest.mark.parametrize(
    "raw,section,error",
    [
        ({"embedder": "openai"}, "embedder", TypeError),
        ({"chunking": {"chunk_size": 100, "chunk_overlap": 100}}, "chunking", ValueError),
        ({"chunking": {"chunk_size": "big"}}, "chunking", TypeError),
        ({"chunking": {"chunk_size": 0}}, "chunking", ValueError),
        ({"chunking": {"separators": "\n"}}, "chunking", TypeError),
        ({"retrieval": {"relevance_threshold": 1.5}}, "retrieval", ValueError),
        ({"retrieval": {"top_k": True}}, "retrieval", TypeError),
        ({"retrieval": {"max_parallel_searches": 0}}, "retrieval", ValueError),
        ({"vector_store": ["qdrant"]}, "vector_store", TypeError),
    ],
)
def test_invalid_sections_are_rejected(raw, section, error):
    cfg = GlobalConfig(raw)

    with pytest.raises(error):
        getattr(cfg, section)


def test_chunking_separators_reach_the_text_splitter():
    cfg = GlobalConfig({"chunking": {"chunk_size": 300, "chunk_overlap": 30, "separators": ["\n\n", "\n"]}})

    splitter = TextSplitter.from_config_dict(cfg.chunking)

    assert splitter.options.separators == ["\n\n", "\n"]
    assert splitter.options.chunk_size == 300


def _container(**overrides):
    raw = {"embedder": {"kind": "ollama", "model": "all-minilm"}, "retrieval": {"top_k": 7}}
    raw.update(overrides)
    return build_container(GlobalConfig(raw))


def test_container_wires_components_from_config():
    c = _container()

    assert isinstance(c, MeridianContainer)
    assert isinstance(c.embedder_handle.current, LocalHostEmbedder)
    assert isinstance(c.vector_client, InMemoryVectorSearch)
    assert type(c.retrieval_engine) is RetrievalEngine
    assert isinstance(c.enhanced_engine, EnhancedRetrievalEngine)
    assert c.enhanced_engine.chunk_repository is c.catalog
    assert c.retrieval_engine.config.top_k == 7
    assert isinstance(c.search_pipeline, SearchPipeline)
    assert isinstance(c.indexer, DocumentIndexer)
    assert c.indexer.chunk_store is c.catalog


def test_container_caches_components():
    c = _container()

    assert c.search_pipeline is c.search_pipeline
    assert c.retrieval_engine.embedder_handle is c.enhanced_engine.embedder_handle
    assert c.retrieval_engine.vector_client is c.indexer.vector_client


def test_embedder_reload_reaches_every_engine():
    c = _container()
    handle = c.embedder_handle

    handle.reload({"kind": "openai", "api_key": "k"})

    assert isinstance(c.retrieval_engine.embedder_handle.current, OpenAICompatibleEmbedder)
    assert isinstance(c.indexer.embedder_handle.current, OpenAICompatibleEmbedder)


@pytest.mark.asyncio
async def test_container_embedders_share_one_http_client():
    c = _container()
    client = c.http_client

    assert c.embedder_handle.current._client is client
    reloaded = c.reload_embedder({"kind": "openai", "api_key": "k"})
    assert isinstance(reloaded, OpenAICompatibleEmbedder)
    assert c.retrieval_engine.embedder_handle.current._client is client

    await c.aclose()

    assert client.is_closed


def test_build_container_configures_logging():
    _container(logging={"level": "DEBUG"})

    assert logging.getLogger("meridian_rag").level == logging.DEBUG
    logging.getLogger("meridian_rag").setLevel(logging.NOTSET)
