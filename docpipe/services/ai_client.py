# =============================================================================
# External AI Client - Vision Extraction, Translation, Embeddings
# =============================================================================
#
# The pipeline talks to the AI service through a small Protocol, so the
# implementation is picked once at startup (settings.ai_client) and injected
# through the PipelineContext.
#
# ARCHITECTURE:
#   AIClient (Protocol)
#   ├── OpenAICompatibleClient  - openai SDK against any OpenAI-compatible
#   │                             endpoint (Ollama /v1, vLLM, OpenAI)
#   ├── FakeAIClient            - deterministic, in-process; tests and demos
#   └── create_ai_client()      - picks one from settings.ai_client
#
# ERRORS:
#   Every failure surfaces as a ServiceError subclass so the classifier can
#   decide retry vs give-up from the status code:
#     APITimeoutError     → ServiceTimeoutError       (transient)
#     APIConnectionError  → ServiceUnavailableError   (transient)
#     APIStatusError      → ServiceError(status_code) (4xx permanent except
#                                                      408/429)
#
# The SDK's own retries are disabled (max_retries=0): retries belong to the
# stage job's retry loop, which is wired to the circuit breaker.
# =============================================================================

from __future__ import annotations

import base64
import hashlib
import logging
import math
import mimetypes
import re
import threading
from collections import defaultdict, deque
from pathlib import Path
from typing import Protocol

import openai
from openai import OpenAI

from docpipe.config import settings
from docpipe.resilience.errors import (
    ServiceError,
    ServiceTimeoutError,
    ServiceUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)


LANGUAGE_NAMES = {
    "de": "German",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "it": "Italian",
    "ja": "Japanese",
    "nl": "Dutch",
    "pl": "Polish",
    "pt": "Portuguese",
    "zh": "Chinese",
}

EXTRACTION_PROMPT = (
    "Extract all text from this document page as Markdown. Mirror the visual "
    "structure: headings, emphasis, lists, tables and paragraph breaks. Output "
    "only the Markdown, without code fences or commentary."
)

TRANSLATION_PROMPT = (
    "Translate the following Markdown to {language}. Keep every piece of "
    "Markdown syntax, heading level and table layout unchanged. Output only the "
    "translated Markdown, without code fences or commentary.\n\n{text}"
)

_LEADING_FENCE = re.compile(r"\A```[^\n]*\n")
_TRAILING_FENCE = re.compile(r"\n?```\s*\Z")


def strip_code_fences(text: str) -> str:
    """Remove a Markdown code fence wrapped around the whole model output."""
    text = text.strip()
    text = _LEADING_FENCE.sub("", text)
    return _TRAILING_FENCE.sub("", text)


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code.lower(), code)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class AIClient(Protocol):
    """
    Interface the pipeline needs from the AI service.

    All methods block and raise ServiceError subclasses on failure.
    """

    def extract(self, image_path: str | Path, model: str | None = None) -> str:
        """Return the page image's text as Markdown."""
        ...

    def translate(self, text: str, target_language: str, model: str | None = None) -> str:
        """Return `text` translated into `target_language` (ISO code)."""
        ...

    def embed(self, text: str) -> list[float]:
        """Return a fixed-dimension embedding vector for `text`."""
        ...

    def available(self) -> bool:
        """Cheap liveness probe; never raises."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: OpenAI-compatible HTTP API
# ---------------------------------------------------------------------------


class OpenAICompatibleClient:
    """
    Client for any API that speaks the OpenAI chat and embeddings API.

    Switching backends is a config change:
        LLM_BASE_URL=http://localhost:11434/v1
        VISION_MODEL=ministral-3:14b
        EMBEDDING_MODEL=qwen3-embedding:0.6b
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        embedding_base_url: str | None = None,
        vision_model: str | None = None,
        text_model: str | None = None,
        embedding_model: str | None = None,
        generation_timeout: float | None = None,
        embedding_timeout: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        resolved_base_url = base_url or settings.llm_base_url
        resolved_key = api_key or settings.llm_api_key
        self._client = OpenAI(
            api_key=resolved_key,
            base_url=resolved_base_url,
            timeout=generation_timeout or settings.generation_timeout_seconds,
            max_retries=0,
        )
        self._embedding_client = OpenAI(
            api_key=resolved_key,
            base_url=embedding_base_url or settings.resolved_embedding_base_url,
            timeout=embedding_timeout or settings.embedding_timeout_seconds,
            max_retries=0,
        )
        self._vision_model = vision_model or settings.vision_model
        self._text_model = text_model or settings.text_model
        self._embedding_model = embedding_model or settings.embedding_model
        self._max_tokens = max_tokens or settings.generation_max_tokens

        logger.info(
            "Initialized OpenAICompatibleClient (base_url=%s, vision=%s, text=%s, embedding=%s)",
            resolved_base_url, self._vision_model, self._text_model, self._embedding_model,
        )

    def extract(self, image_path: str | Path, model: str | None = None) -> str:
        image_url = _image_data_url(Path(image_path))
        response = self._call(
            lambda: self._client.chat.completions.create(
                model=model or self._vision_model,
                max_tokens=self._max_tokens,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            {"type": "image_url", "image_url": {"url": image_url}},
                        ],
                    }
                ],
            )
        )
        return strip_code_fences(response.choices[0].message.content or "")

    def translate(self, text: str, target_language: str, model: str | None = None) -> str:
        prompt = TRANSLATION_PROMPT.format(language=language_name(target_language), text=text)
        response = self._call(
            lambda: self._client.chat.completions.create(
                model=model or self._text_model,
                max_tokens=self._max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        )
        return strip_code_fences(response.choices[0].message.content or "")

    def embed(self, text: str) -> list[float]:
        response = self._call(
            lambda: self._embedding_client.embeddings.create(
                model=self._embedding_model,
                input=text,
            )
        )
        return list(response.data[0].embedding)

    def available(self) -> bool:
        try:
            self._client.with_options(timeout=settings.health_check_timeout_seconds).models.list()
        except openai.OpenAIError as e:
            logger.debug("AI service not available: %s", e)
            return False
        return True

    @staticmethod
    def _call(fn):
        """Run an SDK call, translating SDK exceptions into ServiceError."""
        try:
            return fn()
        except openai.APITimeoutError as e:
            raise ServiceTimeoutError(f"Request timed out: {e}") from e
        except openai.APIConnectionError as e:
            raise ServiceUnavailableError(f"Cannot connect to AI service: {e}") from e
        except openai.APIStatusError as e:
            raise ServiceError(f"AI service returned {e.status_code}: {e.message}", e.status_code) from e


def _image_data_url(path: Path) -> str:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ValidationError(f"Failed to read image {path}: {e}") from e
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


# ---------------------------------------------------------------------------
# Implementation 2: Fake (deterministic, in-process)
# ---------------------------------------------------------------------------


class FakeAIClient:
    """
    Deterministic stand-in for the AI service.

    Failures are scripted per operation with `fail_next()`; every call is
    counted in `calls`. Thread-safe, so it can back the supervisor's pool.

        client = FakeAIClient(dimensions=8)
        client.fail_next("embed", ServiceError("boom", 503), times=2)
    """

    def __init__(self, dimensions: int | None = None, healthy: bool = True) -> None:
        self.dimensions = dimensions or settings.embedding_dimensions
        self.healthy = healthy
        self.calls: dict[str, int] = defaultdict(int)
        self.models: list[tuple[str, str | None]] = []
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)
        self._lock = threading.Lock()

    def fail_next(self, operation: str, error: BaseException, times: int = 1) -> None:
        with self._lock:
            self._failures[operation].extend([error] * times)

    def fail_always(self, operation: str, error: BaseException) -> None:
        self.fail_next(operation, error, times=10_000)

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    def _record(self, operation: str, model: str | None = None) -> None:
        with self._lock:
            self.calls[operation] += 1
            if operation in ("extract", "translate"):
                self.models.append((operation, model))
            pending = self._failures.get(operation)
            error = pending.popleft() if pending else None
        if error is not None:
            raise error

    def extract(self, image_path: str | Path, model: str | None = None) -> str:
        self._record("extract", model)
        return f"# {Path(image_path).stem}\n\nExtracted text of {Path(image_path).name}."

    def translate(self, text: str, target_language: str, model: str | None = None) -> str:
        self._record("translate", model)
        return f"[{target_language}] {text}"

    def embed(self, text: str) -> list[float]:
        self._record("embed")
        return _hash_vector(text, self.dimensions)

    def available(self) -> bool:
        with self._lock:
            self.calls["available"] += 1
        return self.healthy


def _hash_vector(text: str, dimensions: int) -> list[float]:
    """Unit-length vector derived from sha256 blocks of the text."""
    values: list[float] = []
    counter = 0
    while len(values) < dimensions:
        digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
        values.extend((b - 127.5) / 127.5 for b in digest)
        counter += 1
    values = values[:dimensions]
    norm = math.sqrt(sum(v * v for v in values)) or 1.0
    return [v / norm for v in values]


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

AI_CLIENTS = ("openai_compatible", "fake")


def create_ai_client(kind: str | None = None) -> AIClient:
    kind = kind or settings.ai_client
    if kind == "openai_compatible":
        return OpenAICompatibleClient()
    if kind == "fake":
        return FakeAIClient()
    raise ValueError(f"Unknown ai_client '{kind}'. Expected one of: {', '.join(AI_CLIENTS)}")
