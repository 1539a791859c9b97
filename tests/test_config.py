"""Tests for PatchLoopSettings."""

import pytest
from pydantic import ValidationError

from patchloop.config import (
    MAX_CONCURRENT_JOBS_LIMIT,
    MAX_REFLECTION_ITERATIONS_LIMIT,
    MAX_RETRIES_LIMIT,
    PatchLoopSettings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in PatchLoopSettings.model_fields:
        monkeypatch.delenv(f"PATCHLOOP_{name.upper()}", raising=False)


class TestDefaults:

    def test_defaults(self):
        settings = PatchLoopSettings()
        assert settings.max_retries_per_step == 3
        assert settings.enable_reflection is True
        assert settings.max_reflection_iterations == 5
        assert settings.backoff_base_seconds == 1.0
        assert settings.max_concurrent_jobs == 3
        assert settings.job_priority == 5
        assert settings.max_file_lines == 700
        assert settings.llm_provider == "auto"
        assert settings.allow_llm_fallback is False


class TestClamping:

    def test_retries_clamped(self):
        assert PatchLoopSettings(max_retries_per_step=-1).max_retries_per_step == 0
        assert PatchLoopSettings(max_retries_per_step=50).max_retries_per_step == MAX_RETRIES_LIMIT
        assert PatchLoopSettings(job_max_retries=50).job_max_retries == MAX_RETRIES_LIMIT

    def test_reflection_iterations_clamped(self):
        assert PatchLoopSettings(max_reflection_iterations=0).max_reflection_iterations == 1
        assert (
            PatchLoopSettings(max_reflection_iterations=99).max_reflection_iterations
            == MAX_REFLECTION_ITERATIONS_LIMIT
        )

    def test_concurrency_clamped(self):
        assert PatchLoopSettings(max_concurrent_jobs=0).max_concurrent_jobs == 1
        assert PatchLoopSettings(max_concurrent_jobs=500).max_concurrent_jobs == MAX_CONCURRENT_JOBS_LIMIT

    def test_negative_backoff(self):
        assert PatchLoopSettings(backoff_base_seconds=-3).backoff_base_seconds == 0.0

    def test_unknown_provider(self):
        with pytest.raises(ValidationError):
            PatchLoopSettings(llm_provider="mistral")


class TestFromEnv:

    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("PATCHLOOP_MAX_RETRIES_PER_STEP", "5")
        monkeypatch.setenv("PATCHLOOP_ENABLE_REFLECTION", "false")
        monkeypatch.setenv("PATCHLOOP_BACKOFF_BASE_SECONDS", "0.25")

        settings = PatchLoopSettings.from_env(load_env_file=False)

        assert settings.max_retries_per_step == 5
        assert settings.enable_reflection is False
        assert settings.backoff_base_seconds == 0.25

    @pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("ON", True), ("0", False), ("nah", False)])
    def test_bool_parsing(self, monkeypatch, raw, expected):
        monkeypatch.setenv("PATCHLOOP_ALLOW_LLM_FALLBACK", raw)
        assert PatchLoopSettings.from_env(load_env_file=False).allow_llm_fallback is expected

    def test_overrides_win_and_none_ignored(self, monkeypatch):
        monkeypatch.setenv("PATCHLOOP_MAX_FILE_LINES", "300")

        settings = PatchLoopSettings.from_env(load_env_file=False, max_file_lines=None, model="m")
        assert settings.max_file_lines == 300
        assert settings.model == "m"

        settings = PatchLoopSettings.from_env(load_env_file=False, max_file_lines=50)
        assert settings.max_file_lines == 50

    def test_empty_value_ignored(self, monkeypatch):
        monkeypatch.setenv("PATCHLOOP_JOB_PRIORITY", "")
        assert PatchLoopSettings.from_env(load_env_file=False).job_priority == 5

    def test_loads_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("PATCHLOOP_MAX_CONCURRENT_JOBS=7\n")

        assert PatchLoopSettings.from_env().max_concurrent_jobs == 7
