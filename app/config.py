"""
Configuration settings for the concept insight engine.
Loads environment variables and provides application-wide settings.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"
    LOG_LEVEL: str = "INFO"

    # External Ontology Configuration
    WIKIDATA_SPARQL_URL: str = "https://query.wikidata.org/sparql"
    DBPEDIA_SPARQL_URL: str = "https://dbpedia.org/sparql"
    ONTOLOGY_USER_AGENT: str = "ConceptInsightEngine/1.0 (knowledge-graph reasoning service)"
    ONTOLOGY_LANGUAGE: str = "en"
    ONTOLOGY_TIMEOUT: float = 15.0  # seconds, per provider call including retries
    # Hard deadline per HTTP attempt; capped at ONTOLOGY_TIMEOUT / attempts so a
    # timed-out first attempt still leaves room for a retry
    ONTOLOGY_REQUEST_TIMEOUT: float = 6.0
    ONTOLOGY_CONNECT_TIMEOUT: float = 5.0
    ONTOLOGY_MAX_RETRIES: int = 2  # total attempts per query
    ONTOLOGY_RETRY_BACKOFF: float = 0.5  # base seconds, doubled per attempt
    ONTOLOGY_RESULT_LIMIT: int = 20  # SPARQL LIMIT per provider query
    ONTOLOGY_CACHE_TTL_SECONDS: int = 60 * 60  # 1 hour
    ONTOLOGY_CACHE_MAX_ENTRIES: int = 2048

    # Context Store Configuration
    # When CONTEXT_STORE_URL is unset the in-memory retriever is used, seeded
    # from CONTEXT_STORE_FILE if present.
    CONTEXT_STORE_URL: Optional[str] = None
    CONTEXT_STORE_FILE: Optional[str] = None
    CONTEXT_STORE_TIMEOUT: float = 5.0

    # Schema Graph Configuration
    SCHEMA_CACHE_TTL_SECONDS: int = 60 * 60
    SCHEMA_CACHE_MAX_ENTRIES: int = 256
    # Top external results per concept whose related concepts become edges
    SCHEMA_EXTERNAL_RESULTS: int = 5

    # Reasoning Configuration
    GAP_CANDIDATE_BATCH_SIZE: int = 3
    LINK_WORKER_COUNT: int = 4
    MAX_PATHS_PER_PAIR: int = 50
    # Stack pops allowed per path enumeration; bounds work on dense graphs
    MAX_PATH_EXPANSIONS: int = 10_000
    PAIR_SEARCH_TIMEOUT: float = 10.0
    RANKING_DEADLINE_SECONDS: float = 90.0

    # Concept Similarity Configuration
    # "lexical" (substring / token-Jaccard) or "embedding" (Ollama vectors)
    SIMILARITY_BACKEND: str = "lexical"

    # Ollama Configuration (embedding similarity backend only)
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_EMBED_MODEL: str = "nomic-embed-text"
    OLLAMA_TIMEOUT: int = 60
    VECTOR_DIMENSION: int = 768  # nomic-embed-text outputs 768-dimensional vectors
    EMBEDDING_CACHE_MAX_ENTRIES: int = 10_000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    def get_allowed_origins(self) -> List[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]


# Global settings instance
settings = Settings()
