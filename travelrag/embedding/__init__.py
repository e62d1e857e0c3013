from .embeddings import Embedder, EmbeddingProviderError
from .jobs import EmbeddingJob, FatalFailure, Outcome, RetryableFailure, Skip, Success
from .similarity import cosine_similarity, rank_by_similarity
from .text import build_text
from .worker import EmbeddingProcessor, Worker

__all__ = [
    "Embedder",
    "EmbeddingProviderError",
    "EmbeddingJob",
    "EmbeddingProcessor",
    "FatalFailure",
    "Outcome",
    "RetryableFailure",
    "Skip",
    "Success",
    "Worker",
    "build_text",
    "cosine_similarity",
    "rank_by_similarity",
]
