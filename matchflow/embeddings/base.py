from __future__ import annotations

from abc import ABC, abstractmethod

from matchflow.catalog import Catalog
from matchflow.errors import EntityNotFound
from matchflow.models import EmbeddingVector


class EmbeddingProvider(ABC):
    name: str = "base"

    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog

    def _text(self, entity_type: str, entity_id: str) -> str:
        text = self.catalog.entity_text(entity_type, entity_id)
        if not text or not text.strip():
            raise EntityNotFound(entity_type, entity_id)
        return text

    @abstractmethod
    def get_embedding(self, entity_type: str, entity_id: str) -> EmbeddingVector:
        """Compute the vector for one entity.

        Raises ProviderUnavailable or ProviderTimeout, or EntityNotFound when
        the catalog has nothing to embed.
        """
