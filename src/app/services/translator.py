from __future__ import annotations

import json
import logging

from src.app.domain.errors import UnsupportedLanguageError
from src.app.domain.models import LectureSummary
from src.app.services.llm_client import ChatMessage, JsonLLMClient
from src.app.services.summarizer import enforce_limits, normalize_summary, parse_json_object

logger = logging.getLogger(__name__)

TRANSLATION_OUTPUT_TOKENS = 3500

# Summaries are produced in English; these are the targets the app offers.
SUPPORTED_LANGUAGES: dict[str, str] = {
    "ar": "Arabic",
    "ur": "Urdu",
    "fr": "French",
    "tr": "Turkish",
    "id": "Indonesian",
    "ms": "Malay",
    "es": "Spanish",
    "bn": "Bengali",
}

TRANSLATION_SYSTEM_PROMPT = "\n".join([
    "You translate structured khutbah summaries.",
    "Translate every string value faithfully; do not add, drop or reinterpret content.",
    "Qur'an verses and hadith may keep their original Arabic wording.",
    "Return a single JSON object with exactly the keys mainTheme, keyPoints, explicitQuotes, weeklyActions,",
    "keeping the same number of list items as the input. Output ONLY valid JSON.",
])


def is_supported_language(language: str) -> bool:
    return language in SUPPORTED_LANGUAGES


class Translator:
    def __init__(self, client: JsonLLMClient, max_output_tokens: int = TRANSLATION_OUTPUT_TOKENS):
        self.client = client
        self.max_output_tokens = max_output_tokens

    def translate_summary(self, summary: LectureSummary, language: str) -> LectureSummary:
        """
        Translate a summary into one of the supported languages.

        Raises:
            UnsupportedLanguageError: If `language` is not offered
            SchemaInvalidError: If the translated object does not fit the summary schema
        """
        if not is_supported_language(language):
            raise UnsupportedLanguageError(language)

        stage = f"Translation {language}"
        messages = [
            ChatMessage("system", TRANSLATION_SYSTEM_PROMPT),
            ChatMessage("user", f"Target language: {SUPPORTED_LANGUAGES[language]} ({language})."),
            ChatMessage("user", json.dumps(summary.to_record(), ensure_ascii=False)),
        ]
        text = self.client.generate_json(messages, self.max_output_tokens, stage)
        translated = enforce_limits(normalize_summary(parse_json_object(text, stage)))
        logger.info("Translated summary into %s", language)
        return translated
