"""Embeddings from the OpenAI API or any OpenAI-compatible endpoint."""
from __future__ import annotations

import openai
from openai import OpenAI

from matchflow.catalog import Catalog
from matchflow.embeddings.base import EmbeddingProvider
from matchflow.errors import ProviderTimeout, ProviderUnavailable
from matchflow.log import get_logger
from matchflow.models import EmbeddingVector
from matchflow.retry import retry

log = get_logger(__name__)

# Max characters sent per entity; long resumes are truncated.
_MAX_INPUT_CHARS = 8000


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"

    def __init__(
        self,
        catalog: Catalog,
        api_key: str,
        *,
        model: str = "text-embedding-3-small",
        base_url: str | None = None,
        timeout: float = 20.0,
        client: OpenAI | None = None,
    ) -> None:
        super().__init__(catalog)
        self.model = model
        self.client = client or OpenAI(
            api_key=api_key,
            base_url=base_url or None,
            timeout=timeout,
            max_retries=0,
        )

    @retry(
        max_attempts=2,
        base_delay=1.0,
        retryable=(openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError),
    )
    def _create(self, text: str) -> list[float]:
        r = self.client.embeddings.create(model=self.model, input=text[:_MAX_INPUT_CHARS])
        return list(r.data[0].embedding)

    def get_embedding(self, entity_type: str, entity_id: str) -> EmbeddingVector:
        text = self._text(entity_type, entity_id)
        try:
            values = self._create(text)
        except openai.APITimeoutError as exc:
            raise ProviderTimeout(f"embedding {entity_type} {entity_id} timed out") from exc
        except openai.OpenAIError as exc:
            raise ProviderUnavailable(f"embedding {entity_type} {entity_id} failed: {exc}") from exc
        log.debug("Embedded %s %s with %s (%d dims)", entity_type, entity_id, self.model, len(values))
        return EmbeddingVector(entity_type=entity_type, entity_id=entity_id, values=tuple(values))
