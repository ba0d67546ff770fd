"""Application configuration with secure handling of sensitive values."""

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with secure secret handling.

    Sensitive fields use SecretStr so they never show up in logs,
    error messages, or repr() output.
    """

    # Graph store
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: SecretStr = SecretStr("")
    neo4j_pool_max_size: int = 50
    neo4j_pool_acquisition_timeout: float = 60.0  # seconds
    redis_url: str = ""  # e.g., redis://localhost:6379 (optional cache)

    # LLM provider selection: "gemini" or "nvidia" (both OpenAI-compatible)
    llm_provider: str = "gemini"

    gemini_api_key: SecretStr = SecretStr("")
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"

    nvidia_api_key: SecretStr = SecretStr("")
    nvidia_model: str = "nvidia/llama-3.3-nemotron-super-49b-v1.5"
    nvidia_base_url: str = "https://integrate.api.nvidia.com/v1"

    llm_temperature: float = 0.3
    llm_max_tokens: int = 4096
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 1.0
    llm_fallback_model: str = ""  # Empty disables model fallback
    max_prompt_tokens: int = 30000
    prompt_warning_threshold: float = 0.8

    # Provider rate limit (free tier: 12 requests per minute)
    rate_limit_requests: int = 12
    rate_limit_window: float = 60.0  # seconds

    # Single-fragment analysis queue
    analysis_batch_size: int = 8
    analysis_batch_delay: float = 1.5  # seconds since first unflushed item

    # Cross-session step pool
    step_collection_delay: float = 8.0  # seconds of quiet before a step flushes
    max_sessions_per_step: int = 10  # flush immediately at this many sessions

    # Relationship discovery
    relationship_min_fragments: int = 2
    relationship_max_fragments: int = 10
    pooled_relationship_threshold: float = 0.6
    session_relationship_threshold: float = 0.3

    semantic_vector_dimensions: int = 100

    # Browser automation (Browser Use Cloud)
    browser_use_api_key: SecretStr = SecretStr("")
    browser_use_base_url: str = "https://api.browser-use.com/api/v2"
    browser_use_timeout: float = 30.0
    task_poll_interval: float = 2.0

    # Pooled graph response cache
    graph_cache_ttl: int = 10  # seconds

    # App
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def __repr__(self) -> str:
        """Custom repr that masks sensitive values."""
        safe_fields = {
            "neo4j_uri": self.neo4j_uri,
            "neo4j_user": self.neo4j_user,
            "redis_url": self._mask_url(self.redis_url),
            "llm_provider": self.llm_provider,
            "gemini_model": self.gemini_model,
            "nvidia_model": self.nvidia_model,
            "rate_limit_requests": self.rate_limit_requests,
            "step_collection_delay": self.step_collection_delay,
            "max_sessions_per_step": self.max_sessions_per_step,
            "debug": self.debug,
            "cors_origins": self.cors_origins,
        }
        fields_str = ", ".join(f"{k}={v!r}" for k, v in safe_fields.items())
        return f"Settings({fields_str})"

    @staticmethod
    def _mask_url(url: str) -> str:
        """Mask password in connection URLs."""
        if not url:
            return url
        import re

        return re.sub(r":([^:@]+)@", ":***@", url)

    def get_gemini_api_key(self) -> str:
        """Safely get Gemini API key value."""
        return self.gemini_api_key.get_secret_value()

    def get_nvidia_api_key(self) -> str:
        """Safely get NVIDIA API key value."""
        return self.nvidia_api_key.get_secret_value()

    def get_neo4j_password(self) -> str:
        """Safely get Neo4j password value."""
        return self.neo4j_password.get_secret_value()

    def get_browser_use_api_key(self) -> str:
        """Safely get Browser Use API key value."""
        return self.browser_use_api_key.get_secret_value()


@lru_cache
def get_settings() -> Settings:
    return Settings()
