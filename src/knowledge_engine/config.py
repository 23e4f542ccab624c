"""Knowledge engine configuration via Pydantic BaseSettings.

All settings load from environment variables with the KNOWLEDGE_ prefix.
For example, KNOWLEDGE_QDRANT_URL sets qdrant_url and KNOWLEDGE_CHUNK_SIZE
sets chunk_size.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STOP_WORDS: list[str] = [
    "the", "and", "for", "with", "that", "this", "from", "have", "your", "will", "into", "about",
    "there", "their", "when", "what", "which", "while", "where", "these", "those", "been", "being",
    "more", "some", "than", "then", "them", "they", "could", "would", "should", "because", "through",
    "using", "given", "after", "before", "during", "within", "between", "among", "over", "under",
    "onto", "also", "just", "very", "each", "other", "every", "such", "amongst", "maybe",
    "might", "much", "many", "like", "said", "does", "done", "only", "even", "well", "keep", "know",
]


class KnowledgeEngineConfig(BaseSettings):
    """Configuration for chunking, embedding, vector indexing and retrieval.

    Attributes:
        qdrant_path: Local filesystem path for Qdrant storage (dev mode).
        qdrant_url: Remote Qdrant server URL (production mode). If set, takes
            precedence over qdrant_path.
        qdrant_api_key: API key for remote Qdrant authentication.
        embedding_base_url: Base URL of the Ollama-compatible embedding service.
        embedding_model: Embedding model name sent with every request.
        embedding_timeout: Per-request timeout in seconds.
        embedding_max_concurrency: Upper bound on outstanding embedding requests.
        embedding_max_retries: Attempts per text on transport failures.
        chunk_size: Maximum chunk length in characters.
        min_chunk_size: Minimum length of a trailing chunk before it is merged.
        max_text_length: Extracted document text is truncated to this length.
        index_prefix: Prefix for per-tenant index names.
        index_metric: Distance metric for new indexes (cosine, euclidean, dotproduct).
        index_cloud: Cloud for server-managed (serverless) index specs.
        index_region: Region for serverless specs, environment for pod specs.
        index_pod_type: When set, new indexes use a fixed-capacity pod spec.
        index_ready_timeout: Seconds to wait for a new index to become ready.
        index_poll_interval: Seconds between readiness checks.
        upsert_batch_size: Vectors per upsert request.
        vector_text_limit: Characters of chunk text stored with each vector.
        default_top_k: Results returned when the caller gives no top_k.
        max_top_k: Upper clamp for top_k.
        target_query_timeout: Seconds allowed for one index/namespace query.
        stop_words: Tokens ignored by lexical matching and keyword extraction.
        exact_id_pattern: Regex for caller-domain identifiers (matched upper-cased).
    """

    model_config = SettingsConfigDict(
        env_prefix="KNOWLEDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Qdrant connection
    qdrant_path: str = "./qdrant_data"
    qdrant_url: str | None = None
    qdrant_api_key: str | None = None

    # Embedding
    embedding_base_url: str = "http://127.0.0.1:11434"
    embedding_model: str = "nomic-embed-text:latest"
    embedding_timeout: float = 30.0
    embedding_max_concurrency: int = Field(default=4, ge=1)
    embedding_max_retries: int = Field(default=3, ge=1)

    # Chunking
    chunk_size: int = Field(default=900, gt=0)
    min_chunk_size: int = Field(default=280, ge=0)
    max_text_length: int = Field(default=120_000, gt=0)

    # Index provisioning
    index_prefix: str = "tenant"
    index_metric: str = "cosine"
    index_cloud: str = "aws"
    index_region: str = "us-west-2"
    index_pod_type: str = ""
    index_pods: int = 1
    index_replicas: int = 1
    index_shards: int = 1
    index_ready_timeout: float = 180.0
    index_poll_interval: float = 5.0
    upsert_batch_size: int = Field(default=100, gt=0)
    vector_text_limit: int = 512

    # Retrieval
    default_top_k: int = 6
    max_top_k: int = 20
    target_query_timeout: float = 10.0
    stop_words: list[str] = Field(default_factory=lambda: list(DEFAULT_STOP_WORDS))
    exact_id_pattern: str = r"CS\d{5,}"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_config() -> KnowledgeEngineConfig:
    """Return the cached process-wide configuration."""
    return KnowledgeEngineConfig()
