"""Semantic matching for Jobflow.

This package turns jobs and candidates into embedding text, embeds it
through an external provider, ranks stored vectors by cosine similarity,
and scores job/candidate pairs for the match store.
"""

from jobflow.matching.engine import (
    EmbeddingEngine,
    EmbeddingError,
    EmbeddingNotReady,
    EmbeddingValidationError,
    SimilarEntity,
    cosine_similarity,
)
from jobflow.matching.provider import (
    EmbeddingProvider,
    OpenAIEmbeddingClient,
    ProviderError,
    ProviderRateLimitError,
    ProviderRejectedError,
    ProviderTransportError,
)
from jobflow.matching.scoring import MatchScore, score_match
from jobflow.matching.text import build_candidate_text, build_entity_text, build_job_text

__all__ = [
    "EmbeddingEngine",
    "EmbeddingError",
    "EmbeddingNotReady",
    "EmbeddingValidationError",
    "SimilarEntity",
    "cosine_similarity",
    "EmbeddingProvider",
    "OpenAIEmbeddingClient",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderRejectedError",
    "ProviderTransportError",
    "MatchScore",
    "score_match",
    "build_candidate_text",
    "build_entity_text",
    "build_job_text",
]
