import math
from types import SimpleNamespace

import httpx
import openai
import pytest

from matchflow.catalog import JobRecord
from matchflow.embeddings import (
    HashingEmbeddingProvider,
    OpenAIEmbeddingProvider,
    get_embedding_provider,
)
from matchflow.embeddings.hashing import hash_embed, tokenize
from matchflow.errors import ConfigError, EntityNotFound, PermanentError, ProviderTimeout, ProviderUnavailable
from matchflow.models import JOB, RESUME
from matchflow.ranker import match_score, similarity

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def test_tokenize_keeps_tech_tokens():
    assert tokenize("Python, C++ and Node.js. K8s!") == ["python", "c++", "and", "node.js", "k8s"]


def test_hash_embed_is_deterministic_and_unit_length():
    a = hash_embed("kubernetes terraform aws", 64)
    assert a == hash_embed("kubernetes terraform aws", 64)
    assert len(a) == 64
    assert math.isclose(math.sqrt(sum(v * v for v in a)), 1.0)


def test_hash_embed_empty_text_is_zero():
    assert hash_embed("!!! ---", 8) == [0.0] * 8


def test_hashing_provider_relates_similar_texts(catalog):
    provider = HashingEmbeddingProvider(catalog, dimensions=256)
    resume = provider.get_embedding(RESUME, "R")
    assert resume.entity_id == "R"
    assert len(resume) == 256
    job = provider.get_embedding(JOB, "J")
    assert match_score(similarity(resume.values, resume.values)) == 100.0
    assert -1.0 <= similarity(resume.values, job.values) <= 1.0


def test_missing_or_blank_entity_is_not_found(catalog):
    catalog.add_job(JobRecord(id="blank", title="   ", company="Nowhere"))
    provider = HashingEmbeddingProvider(catalog)
    for entity_id in ("nope", "blank"):
        with pytest.raises(EntityNotFound) as exc:
            provider.get_embedding(JOB, entity_id)
        assert exc.value.entity_id == entity_id
        assert isinstance(exc.value, PermanentError)


class FakeEmbeddings:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def create(self, model, input):
        self.calls.append((model, input))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return SimpleNamespace(data=[SimpleNamespace(embedding=outcome)])


def _openai(catalog, *outcomes):
    fake = FakeEmbeddings(outcomes)
    provider = OpenAIEmbeddingProvider(catalog, "sk-test", model="text-embedding-3-small",
                                       client=SimpleNamespace(embeddings=fake))
    return provider, fake


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr("matchflow.retry.time.sleep", lambda s: None)


def test_openai_embedding(catalog):
    provider, fake = _openai(catalog, [0.1, 0.2, 0.3])
    vector = provider.get_embedding(RESUME, "R")
    assert vector.values == (0.1, 0.2, 0.3)
    model, text = fake.calls[0]
    assert model == "text-embedding-3-small"
    assert "kubernetes" in text


def test_openai_connection_error_is_retried(catalog, no_sleep):
    provider, fake = _openai(catalog, openai.APIConnectionError(request=REQUEST), [1.0, 0.0])
    assert provider.get_embedding(JOB, "J").values == (1.0, 0.0)
    assert len(fake.calls) == 2


def test_openai_timeout(catalog, no_sleep):
    provider, _ = _openai(catalog, openai.APITimeoutError(request=REQUEST), openai.APITimeoutError(request=REQUEST))
    with pytest.raises(ProviderTimeout):
        provider.get_embedding(JOB, "J")


def test_openai_error_is_unavailable(catalog):
    provider, fake = _openai(catalog, openai.OpenAIError("bad key"))
    with pytest.raises(ProviderUnavailable):
        provider.get_embedding(JOB, "J")
    assert len(fake.calls) == 1


def test_registry_defaults_to_hashing(settings, catalog):
    provider = get_embedding_provider(settings, catalog, lambda key, default="": "")
    assert isinstance(provider, HashingEmbeddingProvider)
    assert provider.dimensions == 64


def test_registry_openai_without_key_falls_back(settings, catalog):
    settings["embeddings"]["provider"] = "openai"
    provider = get_embedding_provider(settings, catalog, lambda key, default="": "")
    assert isinstance(provider, HashingEmbeddingProvider)


def test_registry_openai_with_key(settings, catalog):
    settings["embeddings"]["provider"] = "openai"
    env = {"OPENAI_API_KEY": "sk-test"}
    provider = get_embedding_provider(settings, catalog, lambda key, default="": env.get(key, default))
    assert isinstance(provider, OpenAIEmbeddingProvider)
    assert provider.model == "text-embedding-3-small"


def test_registry_unknown_provider(settings, catalog):
    settings["embeddings"]["provider"] = "word2vec"
    with pytest.raises(ConfigError):
        get_embedding_provider(settings, catalog, lambda key, default="": "")
