"""
Tests for derived settings values.
"""

import pytest

from docpipe.config import (
    EMBEDDING_QUEUE,
    LLM_PROCESSING_QUEUE,
    PDF_EXTRACTION_QUEUE,
    Settings,
)


class TestJobMaxRuntime:
    @pytest.fixture
    def config(self) -> Settings:
        return Settings(
            retry_max_attempts=3,
            retry_base_delay_ms=2_000,
            retry_max_delay_ms=30_000,
            generation_timeout_seconds=300.0,
            embedding_timeout_seconds=60.0,
            conversion_timeout_seconds=120,
            job_default_max_runtime_seconds=600.0,
        )

    def test_llm_job_covers_both_calls_with_all_retries(self, config):
        # 4 calls x 300s, backoff 2 + 4 + 8 s, for extraction and translation
        assert config.job_max_runtime_seconds(LLM_PROCESSING_QUEUE) == 2428.0

    def test_embedding_job(self, config):
        assert config.job_max_runtime_seconds(EMBEDDING_QUEUE) == 254.0

    def test_pdf_job(self, config):
        assert config.job_max_runtime_seconds(PDF_EXTRACTION_QUEUE) == 720.0

    def test_other_queues_use_default(self, config):
        assert config.job_max_runtime_seconds("maintenance") == 600.0

    def test_llm_job_outlives_old_rescue_window(self, config):
        assert config.job_max_runtime_seconds(LLM_PROCESSING_QUEUE) > 30 * 60
