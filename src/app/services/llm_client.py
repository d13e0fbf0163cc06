from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Literal

import google.generativeai as genai

from src.app.domain.errors import KhutbahNotesError, ProviderResponseError, TokenBudgetExceededError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
_LOG_PREVIEW_CHARS = 2000


class GeminiConfigurationError(KhutbahNotesError):
    pass


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["system", "user"]
    content: str


class JsonLLMClient(ABC):
    """A model call constrained to a single JSON object with an output token budget."""

    @abstractmethod
    def generate_json(self, messages: list[ChatMessage], max_output_tokens: int, stage: str) -> str:
        """
        Returns:
            The raw JSON text

        Raises:
            TokenBudgetExceededError: The model hit `max_output_tokens` before finishing
            ProviderResponseError: Refusal, block or empty output
        """
        pass


def safe_json(value: Any) -> str:
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as error:
        return f"Unserializable response: {error}"
    return text if len(text) <= _LOG_PREVIEW_CHARS else f"{text[:_LOG_PREVIEW_CHARS]}...<truncated>"


def _enum_name(value: Any) -> str:
    return str(getattr(value, "name", value) or "")


class GeminiClient(JsonLLMClient):
    def __init__(self, api_key: str | None = None, model_name: str = DEFAULT_MODEL_NAME) -> None:
        self.api_key = api_key or os.getenv("GOOGLE_API_KEY", "")
        self.model_name = model_name
        self._configure_api()

    def _configure_api(self) -> None:
        if not self.api_key:
            raise GeminiConfigurationError("Missing Google API key.")
        genai.configure(api_key=self.api_key)

    def generate_json(self, messages: list[ChatMessage], max_output_tokens: int, stage: str) -> str:
        system_instruction = "\n\n".join(m.content for m in messages if m.role == "system") or None
        user_parts = [m.content for m in messages if m.role == "user"]

        model = genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_instruction,
        )
        response = model.generate_content(
            [{"role": "user", "parts": user_parts}],
            generation_config=genai.GenerationConfig(
                max_output_tokens=max_output_tokens,
                response_mime_type="application/json",
            ),
        )
        return self._extract_text(response, max_output_tokens, stage)

    def _extract_text(self, response: Any, max_output_tokens: int, stage: str) -> str:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = _enum_name(getattr(feedback, "block_reason", None))
        if block_reason and block_reason != "BLOCK_REASON_UNSPECIFIED":
            raise ProviderResponseError(stage, f"Prompt blocked: {block_reason}")

        candidates = list(getattr(response, "candidates", None) or [])
        if not candidates:
            raise ProviderResponseError(stage, "Empty response from Gemini")

        finish_reason = _enum_name(getattr(candidates[0], "finish_reason", None))
        if finish_reason == "MAX_TOKENS":
            raise TokenBudgetExceededError(stage, max_output_tokens)
        if finish_reason in ("SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT"):
            raise ProviderResponseError(stage, f"Model refusal: {finish_reason}")

        try:
            text = (response.text or "").strip()
        except ValueError as error:
            text = ""
            logger.debug("%s: response had no text parts: %s", stage, error)

        if not text:
            logger.error(
                "%s empty output: finish_reason=%s, raw=%s",
                stage,
                finish_reason,
                safe_json(getattr(response, "to_dict", lambda: str(response))()),
            )
            raise ProviderResponseError(stage, "Empty response from Gemini")
        return text
