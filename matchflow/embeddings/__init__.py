from .base import EmbeddingProvider
from .hashing import HashingEmbeddingProvider
from .openai_provider import OpenAIEmbeddingProvider

from matchflow.catalog import Catalog
from matchflow.errors import ConfigError
from matchflow.log import get_logger

log = get_logger(__name__)

__all__ = [
    "EmbeddingProvider", "HashingEmbeddingProvider", "OpenAIEmbeddingProvider",
    "get_embedding_provider",
]


def get_embedding_provider(settings: dict, catalog: Catalog, env_getter) -> EmbeddingProvider:
    cfg = settings["embeddings"]
    kind = str(cfg.get("provider", "hashing")).lower()

    if kind == "openai":
        api_key = env_getter("OPENAI_API_KEY")
        if api_key:
            base_url = cfg.get("base_url") or env_getter("OPENAI_BASE_URL")
            log.info("Registered embedding provider: OpenAI (%s)", cfg.get("model"))
            return OpenAIEmbeddingProvider(
                catalog,
                api_key,
                model=cfg.get("model", "text-embedding-3-small"),
                base_url=base_url or None,
                timeout=float(cfg.get("timeout_seconds", 20.0)),
            )
        log.warning("No OPENAI_API_KEY — falling back to hashing embeddings")
    elif kind != "hashing":
        raise ConfigError(f"unknown embedding provider {kind!r}")

    log.info("Registered embedding provider: hashing (%d dims)", int(cfg.get("dimensions", 64)))
    return HashingEmbeddingProvider(catalog, int(cfg.get("dimensions", 64)))
