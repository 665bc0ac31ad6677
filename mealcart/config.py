from __future__ import annotations

from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

SimilarityMode = Literal["inline", "background", "off"]


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="mealcart-server")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Auth (any OIDC issuer exposing a JWKS)
    auth_issuer: str | None = Field(default=None)
    auth_jwks_url: str | None = Field(default=None)
    auth_audience: str | None = Field(default=None)
    auth_disable_verification: bool = Field(default=False)

    # Data
    database_url: str | None = Field(default=None)

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    # OpenAI (ingredient pair classification)
    openai_api_key: str | None = Field(default=None)
    openai_similarity_model: str = Field(default="gpt-5-mini")
    openai_similarity_top_p: float | None = Field(default=None)
    openai_similarity_reasoning_effort: str = Field(default="low")
    openai_similarity_max_output_tokens: int = Field(default=8000)
    openai_request_timeout_seconds: int = Field(default=90, ge=30, le=300)

    # Similarity engine
    similarity_batch_size: int = Field(default=25, ge=1, le=100)
    similarity_max_concurrency: int = Field(default=5, ge=1, le=20)
    similarity_mode: SimilarityMode = Field(default="inline")

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
