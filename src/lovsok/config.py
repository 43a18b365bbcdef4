"""Configuration management using Pydantic settings."""

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Reasoning model (OpenAI-compatible chat completions)
    openai_api_key: str | None = Field(
        default=None,
        description="API key for the reasoning model. Without it the agent path is disabled.",
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the OpenAI-compatible chat completions API",
    )
    llm_model: str = Field(
        default="gpt-4o-mini",
        description="Chat model used by the agent loop",
    )
    llm_temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=2.0,
        description="LLM temperature (lower = more factual)",
    )
    agent_enabled: bool = Field(
        default=True,
        description="Use the tool-calling agent when a reasoning model is configured",
    )

    # Qdrant Configuration
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant server URL (ignored if qdrant_in_memory is True)",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (required for cloud instances)",
    )
    qdrant_collection_prefix: str = Field(
        default="lovsok",
        description="Prefix for the archive, document and chunk collections",
    )
    qdrant_in_memory: bool = Field(
        default=False,
        description="Use in-memory Qdrant (for testing, no Docker needed)",
    )
    qdrant_persist_path: str | None = Field(
        default=None,
        description="Path to persist Qdrant data (only for in-memory mode)",
    )

    # Embedding Model Configuration
    embedding_model_name: str = Field(
        default="BAAI/bge-m3",
        description="Hugging Face model name for embeddings",
    )
    embedding_dimension: int = Field(
        default=1024,
        description="Embedding vector dimension (BGE-M3 uses 1024)",
    )
    embedding_batch_size: int = Field(
        default=32,
        ge=1,
        le=256,
        description="Batch size for embedding generation (memory dependent)",
    )
    embedding_max_chars: int = Field(
        default=20000,
        ge=1000,
        description="Texts longer than this are head+tail truncated before embedding",
    )

    # Chunking Configuration
    chunk_size: int = Field(
        default=12800,
        ge=100,
        description="Target chunk size in characters",
    )
    chunk_overlap_ratio: float = Field(
        default=0.2,
        ge=0.0,
        description="Overlap between consecutive chunks as a fraction of chunk_size",
    )
    chunk_preserve_paragraphs: bool = Field(
        default=True,
        description="Move chunk ends to nearby paragraph or line boundaries",
    )
    chunk_extract_metadata: bool = Field(
        default=True,
        description="Extract section number and title for each chunk",
    )

    # Store Configuration
    index_batch_size: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Batch size for writing documents and chunks",
    )
    document_fetch_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Timeout for fetching a single document's full content",
    )

    # Search Configuration
    rrf_k: int = Field(
        default=40,
        ge=1,
        le=200,
        description="Reciprocal rank fusion constant (lower = sharper rank differentiation)",
    )
    search_candidate_limit: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Number of candidates per signal and after fusion",
    )
    search_timeout_seconds: float = Field(
        default=20.0,
        gt=0.0,
        description="Hard timeout for each store call made by a search",
    )
    search_default_page_size: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Page size used when the caller gives none",
    )
    search_max_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Upper clamp for requested page sizes",
    )
    base_law_ordering_enabled: bool = Field(
        default=True,
        description="Move amendment acts after the base laws they amend",
    )
    public_api_base_url: str = Field(
        default="http://localhost:4000",
        description="Base URL used to build document viewer links",
    )

    # Reranker Configuration
    reranker_enabled: bool = Field(
        default=True,
        description="Enable cross-encoder reranking of the first result page",
    )
    reranker_model: str = Field(
        default="BAAI/bge-reranker-v2-m3",
        description="Cross-encoder reranker model for rescoring retrieved documents",
    )
    reranker_max_candidates: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum number of candidates sent to the reranker",
    )
    reranker_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for one reranking pass",
    )

    # Web search (Serper)
    serper_api_key: str | None = Field(
        default=None,
        description="Serper API key. Without it the web-search tool is unavailable.",
    )
    serper_base_url: str = Field(
        default="https://google.serper.dev/search",
        description="Serper search endpoint",
    )
    serper_site_filter: str = Field(
        default="lovdata.no",
        description="Site that web searches are restricted to",
    )
    serper_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Timeout for a single web search request",
    )

    # Agent Configuration
    agent_max_iterations: int = Field(
        default=5,
        ge=1,
        le=8,
        description="Maximum number of model rounds per request",
    )
    agent_base_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Soft time budget for one request",
    )
    agent_max_timeout_seconds: float = Field(
        default=55.0,
        gt=0.0,
        description="Hard time budget for one request",
    )
    agent_min_iteration_seconds: float = Field(
        default=8.0,
        ge=0.0,
        description="Do not start another round with less budget than this",
    )
    agent_fallback_min_hits: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Web fallback fires when a legal search returns fewer than min(page_size, this) hits",
    )
    agent_default_page_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Default page size for requests and tool searches",
    )
    agent_max_page_size: int = Field(
        default=20,
        ge=1,
        le=50,
        description="Upper clamp for page sizes requested by the model",
    )
    agent_max_evidence_items: int = Field(
        default=6,
        ge=1,
        le=100,
        description="Evidence items shown to the model per round",
    )
    agent_max_content_chars: int = Field(
        default=20000,
        ge=1000,
        description="Maximum characters of hydrated document content per evidence item",
    )
    agent_min_evidence_for_answer: int = Field(
        default=1,
        ge=0,
        description="Evidence needed for a best-effort answer when the budget runs out",
    )
    agent_recent_years: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Default recency window for law and regulation searches without a year",
    )
    hydration_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for loading full document content into evidence",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("openai_api_key", "serper_api_key")
    @classmethod
    def blank_key_is_none(cls, v: str | None) -> str | None:
        """Treat blank API keys as not configured."""
        if v is None or v.strip() == "":
            return None
        return v.strip()

    @field_validator("chunk_overlap_ratio")
    @classmethod
    def validate_overlap(cls, v: float) -> float:
        """Overlap must be strictly smaller than the chunk itself."""
        if v >= 1.0:
            raise ValueError("CHUNK_OVERLAP_RATIO must be below 1.0 (overlap >= chunk size never progresses).")
        return v

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        if self.agent_max_timeout_seconds < self.agent_base_timeout_seconds:
            raise ValueError("AGENT_MAX_TIMEOUT_SECONDS must be >= AGENT_BASE_TIMEOUT_SECONDS.")
        return self

    @property
    def chunk_overlap(self) -> int:
        """Overlap in characters derived from chunk_size."""
        return int(self.chunk_size * self.chunk_overlap_ratio)


# Singleton instance
_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """
    Get application settings instance (singleton pattern).

    Scripts use this; the runtime receives settings through ServiceRegistry.

    Returns:
        Settings instance (cached after first call)
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
