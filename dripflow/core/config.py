import json
from typing import List, Literal, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Dripflow Backend"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./dripflow.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # SEGMENTATION
    segment_recalc_max_workers: int = Field(default=4, ge=1, le=64)
    fact_source_timeout_seconds: int = Field(default=30, ge=1, le=600)
    dynamic_segment_max_age_minutes: int = Field(default=60, ge=1, le=43_200)
    audience_size_mode: Literal["sum", "union"] = "sum"

    # ENROLLMENT
    enrollment_batch_limit: int = Field(default=1000, ge=1, le=100_000)
    enrollment_test_mode_limit: int = Field(default=5, ge=1, le=100)
    due_sends_default_limit: int = Field(default=200, ge=1, le=5000)

    api_timeout_hint_ms: int = Field(default=300000, ge=1000, le=1_800_000)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("audience_size_mode", mode="before")
    @classmethod
    def normalize_audience_size_mode(cls, value: str | None) -> str:
        if value is None:
            return "sum"
        return str(value).strip().lower() or "sum"

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point at SQLite in production")
        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
