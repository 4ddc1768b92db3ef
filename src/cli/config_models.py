"""Pydantic configuration models for memory-curator."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator


class PathsConfig(BaseModel):
    """File paths configuration."""

    db_path: Path = Path("~/curator/memory.db")
    log_file: Path = Path("~/curator/curator.log")

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.db_path = self.db_path.expanduser()
        self.log_file = self.log_file.expanduser()
        return self


class MemoryConfig(BaseModel):
    """Memory store and extraction configuration."""

    max_content_chars: int = 10_000
    chars_per_token: int = 4
    journal_window_days: int = 7
    chunk_target_tokens: int = 100_000

    @field_validator("max_content_chars", "chars_per_token", "chunk_target_tokens")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v


class RefinementConfig(BaseModel):
    """Refinement sessions and circuit breaker."""

    default_threshold: float = 0.75
    max_mutations: int = 10
    check_each_mutation: bool = False
    core_token_budget: int = 5000
    interval_hours: float = 168
    session_timeout_seconds: float = 900
    schedule: str = "0 3 * * *"
    instructions: str = ""
    driver: str = ""

    @field_validator("default_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"default_threshold must be in (0, 1], got {v}")
        return v

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        parts = v.split()
        if len(parts) != 5:
            raise ValueError(f"Cron must have 5 fields, got {len(parts)}: {v}")
        return v

    @field_validator("driver")
    @classmethod
    def validate_driver(cls, v: str) -> str:
        if v and ":" not in v:
            raise ValueError(f"driver must look like package.module:callable, got {v}")
        return v


class RetryConfig(BaseModel):
    """Retry/backoff configuration for session drivers."""

    max_attempts: int = 3
    min_wait: float = 2.0
    max_wait: float = 30.0


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file_level: str = "DEBUG"
    json_mode: bool = False

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class CuratorConfig(BaseModel):
    """Main configuration model."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    refinement: RefinementConfig = Field(default_factory=RefinementConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "CuratorConfig":
        """Create config from dict, accepting string paths."""
        if "paths" in data:
            for key in ["db_path", "log_file"]:
                if key in data["paths"] and isinstance(data["paths"][key], str):
                    data["paths"][key] = Path(data["paths"][key])
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
