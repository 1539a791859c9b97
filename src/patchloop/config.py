"""Runtime settings, read from PATCHLOOP_* environment variables."""

import os

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

MAX_RETRIES_LIMIT = 10
MAX_REFLECTION_ITERATIONS_LIMIT = 10
MAX_CONCURRENT_JOBS_LIMIT = 32

ENV_PREFIX = "PATCHLOOP_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


class PatchLoopSettings(BaseModel):
    """Tunables for orchestration, reflection and the job queue."""

    model_config = ConfigDict(frozen=False)

    model: str = "claude-sonnet-4-5-20250929"
    llm_provider: str = "auto"               # "auto" | "anthropic" | "openai"
    llm_fallback_provider: str | None = None
    allow_llm_fallback: bool = False

    max_retries_per_step: int = 3
    enable_reflection: bool = True
    max_reflection_iterations: int = 5
    backoff_base_seconds: float = 1.0

    max_concurrent_jobs: int = 3
    job_max_retries: int = 3
    job_priority: int = 5

    max_file_lines: int = 700

    @field_validator("max_retries_per_step", "job_max_retries")
    @classmethod
    def _clamp_retries(cls, value: int) -> int:
        return max(0, min(value, MAX_RETRIES_LIMIT))

    @field_validator("max_reflection_iterations")
    @classmethod
    def _clamp_reflection(cls, value: int) -> int:
        return max(1, min(value, MAX_REFLECTION_ITERATIONS_LIMIT))

    @field_validator("max_concurrent_jobs")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(1, min(value, MAX_CONCURRENT_JOBS_LIMIT))

    @field_validator("backoff_base_seconds")
    @classmethod
    def _non_negative_backoff(cls, value: float) -> float:
        return max(0.0, value)

    @field_validator("llm_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        if value not in {"auto", "anthropic", "openai"}:
            raise ValueError(f"Unsupported provider: {value}")
        return value

    @classmethod
    def from_env(cls, load_env_file: bool = True, **overrides) -> "PatchLoopSettings":  # type: ignore[no-untyped-def]
        """Build settings from PATCHLOOP_* variables, then apply overrides.

        A .env file in the working directory is loaded first unless
        load_env_file is False. Overrides whose value is None are ignored.
        """
        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True))

        values: dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if field.annotation is bool:
                values[name] = _env_bool(raw)
            else:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
