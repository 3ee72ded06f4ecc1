"""Offline embedding: signed feature hashing of word tokens.

Deterministic across processes (md5, not ``hash()``), so cached vectors stay
comparable after a restart.
"""
from __future__ import annotations

import hashlib
import math
import re
from collections import Counter

from matchflow.catalog import Catalog
from matchflow.embeddings.base import EmbeddingProvider
from matchflow.log import get_logger
from matchflow.models import EmbeddingVector

log = get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9+#.]*")


def tokenize(text: str) -> list[str]:
    return [t.rstrip(".") for t in _TOKEN_RE.findall(text.lower())]


def hash_embed(text: str, dim: int) -> list[float]:
    """Unit-length vector of ``dim`` floats; all zeros when no token survives."""
    vector = [0.0] * dim
    for token, count in Counter(tokenize(text)).items():
        h = int(hashlib.md5(token.encode("utf-8")).hexdigest()[:8], 16)
        sign = 1.0 if h & 1 else -1.0
        vector[(h >> 1) % dim] += sign * (1.0 + math.log(count))
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return vector
    return [v / norm for v in vector]


class HashingEmbeddingProvider(EmbeddingProvider):
    name = "hashing"

    def __init__(self, catalog: Catalog, dimensions: int = 64) -> None:
        super().__init__(catalog)
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self.dimensions = dimensions

    def get_embedding(self, entity_type: str, entity_id: str) -> EmbeddingVector:
        values = hash_embed(self._text(entity_type, entity_id), self.dimensions)
        log.debug("Hashed %s %s into %d dims", entity_type, entity_id, self.dimensions)
        return EmbeddingVector(entity_type=entity_type, entity_id=entity_id, values=tuple(values))
