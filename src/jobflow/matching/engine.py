"""Embedding engine: text to vector, and vector similarity ranking.

EmbeddingEngine wraps an EmbeddingProvider with input and output
validation and a concurrency bound, and ranks stored vectors against each
other with numpy. It holds no state besides its collaborators, so one
instance is shared by everything in a worker process.

Example usage:
    >>> engine = EmbeddingEngine(provider, config.provider, batch_size=500)
    >>> vector = await engine.embed("Senior backend engineer, 5 years Go")
    >>> async with session_factory() as session:
    ...     similar = await engine.rank_similar(session, EntityType.job, job_id, k=10)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

import numpy as np
import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config import ProviderConfig
from jobflow.database.models.base import as_utc
from jobflow.database.models.entity import EmbeddingStatus
from jobflow.database.models.task import EntityType
from jobflow.database.queries.entity import get_entity, iter_vector_batches
from jobflow.matching.provider import EmbeddingProvider

logger = structlog.get_logger(__name__)


class EmbeddingError(Exception):
    """Base exception for embedding engine failures."""


class EmbeddingValidationError(EmbeddingError):
    """Input text or provider output failed validation."""


class EmbeddingNotReady(EmbeddingError):
    """The entity has no completed embedding to rank against."""


class SimilarEntity(BaseModel):
    """One ranked neighbour."""

    entity_id: UUID
    score: float
    generated_at: datetime | None = None


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity clamped to [0, 1].

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape[0]} != {vb.shape[0]}")

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = float(np.dot(va, vb) / (norm_a * norm_b))
    return min(max(similarity, 0.0), 1.0)


def _batch_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    if query_norm == 0.0:
        return np.zeros(matrix.shape[0])
    denominators = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denominators > 0, (matrix @ query) / denominators, 0.0)
    return np.clip(scores, 0.0, 1.0)


def _rank_key(item: SimilarEntity) -> tuple[float, float]:
    generated = as_utc(item.generated_at)
    return (-item.score, -(generated.timestamp() if generated else 0.0))


class EmbeddingEngine:
    """Turns text into validated vectors and ranks stored vectors.

    Attributes:
        provider: External embedding provider
        config: Provider settings (dimensions, text limits, concurrency)
        batch_size: Rows fetched per round trip when scanning vectors
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: ProviderConfig,
        batch_size: int = 500,
    ) -> None:
        self.provider = provider
        self.config = config
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(config.max_concurrent)

    @property
    def model(self) -> str:
        return getattr(self.provider, "model", self.config.model)

    def prepare_text(self, text: str) -> str:
        """Validate and truncate text before it is sent to the provider.

        Raises:
            EmbeddingValidationError: If the text is empty or too short.
        """
        cleaned = (text or "").strip()
        if not cleaned:
            raise EmbeddingValidationError("Cannot embed empty text")
        if len(cleaned) < self.config.min_text_length:
            raise EmbeddingValidationError(
                f"Text too short to embed ({len(cleaned)} < {self.config.min_text_length} chars)"
            )
        return cleaned[: self.config.max_text_length]

    def validate_vector(self, vector: Sequence[float]) -> list[float]:
        """Check a provider vector's length and values.

        Raises:
            EmbeddingValidationError: On a dimension mismatch, non-finite
                values or an all-zero vector.
        """
        array = np.asarray(vector, dtype=np.float64)
        if array.ndim != 1 or array.shape[0] != self.config.dimensions:
            raise EmbeddingValidationError(
                f"Expected {self.config.dimensions} dimensions, got {array.size}"
            )
        if not np.all(np.isfinite(array)):
            raise EmbeddingValidationError("Embedding contains non-finite values")
        if not np.any(array):
            raise EmbeddingValidationError("Embedding is all zeros")
        return array.tolist()

    async def embed(self, text: str) -> list[float]:
        """Embed text with one provider call.

        Provider errors propagate unchanged; the caller owns retries.

        Raises:
            EmbeddingValidationError: On invalid input text or provider output.
            ProviderError: On provider failure.
        """
        prepared = self.prepare_text(text)
        async with self._semaphore:
            raw = await self.provider.embed(prepared)
        vector = self.validate_vector(raw)

        logger.debug("text_embedded", text_length=len(prepared), dimensions=len(vector))
        return vector

    async def rank_similar(
        self,
        session: AsyncSession,
        entity_type: EntityType,
        entity_id: UUID,
        k: int,
        target_type: EntityType | None = None,
        min_score: float = 0.0,
    ) -> list[SimilarEntity]:
        """Rank the completed-vector population against one entity.

        Args:
            session: Active async database session.
            entity_type: Type of the query entity.
            entity_id: Query entity; excluded from its own results.
            k: Number of neighbours to return.
            target_type: Population to rank (defaults to entity_type).
            min_score: Drop neighbours scoring below this.

        Returns:
            Up to k neighbours by descending score; ties go to the more
            recently generated vector.

        Raises:
            EmbeddingNotReady: If the entity has no completed embedding.
        """
        target_type = target_type or entity_type
        entity = await get_entity(session, entity_type, entity_id)
        if (
            entity is None
            or entity.embedding_vector is None
            or entity.embedding_status != EmbeddingStatus.completed
        ):
            raise EmbeddingNotReady(
                f"{entity_type.value} {entity_id} has no completed embedding"
            )

        query = np.asarray(entity.embedding_vector, dtype=np.float64)
        exclude_id = entity_id if target_type == entity_type else None

        top: list[SimilarEntity] = []
        scanned = 0
        skipped = 0
        async for rows in iter_vector_batches(session, target_type, self.batch_size, exclude_id):
            usable: list[tuple[UUID, Any, datetime | None]] = []
            for row_id, vector, generated_at in rows:
                if len(vector) != query.shape[0]:
                    skipped += 1
                    continue
                usable.append((row_id, vector, generated_at))
            scanned += len(rows)
            if not usable:
                continue

            matrix = np.vstack([np.asarray(vector, dtype=np.float64) for _, vector, _ in usable])
            scores = _batch_similarities(query, matrix)
            for (row_id, _, generated_at), score in zip(usable, scores):
                if score >= min_score:
                    top.append(
                        SimilarEntity(
                            entity_id=row_id,
                            score=float(score),
                            generated_at=as_utc(generated_at),
                        )
                    )
            top.sort(key=_rank_key)
            del top[k:]

        if skipped:
            logger.warning(
                "vectors_skipped_dimension_mismatch",
                entity_type=target_type.value,
                count=skipped,
            )
        logger.info(
            "similarity_ranked",
            entity_type=entity_type.value,
            entity_id=str(entity_id),
            target_type=target_type.value,
            scanned=scanned,
            returned=len(top),
        )
        return top
