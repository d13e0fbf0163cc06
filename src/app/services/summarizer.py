"""
Structured khutbah summaries.

Long transcripts are summarized chunk by chunk and the partial summaries are
merged in one more request. Every request is JSON-only with a fixed output
token budget; when the model runs out of budget the request is repeated with
more compact instructions and a larger budget, twice at most.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from src.app.domain.errors import SchemaInvalidError, TokenBudgetExceededError
from src.app.domain.models import LectureSummary
from src.app.services.chunking import CHUNK_CHAR_OVERLAP, CHUNK_CHAR_TARGET, chunk_transcript
from src.app.services.llm_client import ChatMessage, JsonLLMClient, safe_json

logger = logging.getLogger(__name__)

MAX_SUMMARY_OUTPUT_TOKENS = 3000
CHUNK_OUTPUT_TOKENS = 2000

MAX_MAIN_THEME_WORDS = 400
MAX_KEY_POINTS = 7
MAX_EXPLICIT_QUOTES = 2
MAX_WEEKLY_ACTIONS = 3
NOT_MENTIONED = "Not mentioned"
NO_ACTION_MENTIONED = "No action mentioned"

SUMMARY_SYSTEM_PROMPT = "\n".join([
    "You are a careful summarization engine for Islamic khutbah (sermon) content.",
    "Your ONLY source of information is the khutbah material provided. Do not rely on prior knowledge,",
    "do not interpret or add religious meaning, and do not add verses, hadith or advice that are not",
    "explicitly in the text. If something is missing or unclear, say it was not mentioned.",
    "",
    "Return a single JSON object with EXACTLY these keys:",
    '{"mainTheme": string, "keyPoints": string[], "explicitQuotes": string[], "weeklyActions": string[]}',
    "",
    f"- mainTheme: up to {MAX_MAIN_THEME_WORDS} words (prefer 3-5 sentences), or \"{NOT_MENTIONED}\".",
    f"- keyPoints: up to {MAX_KEY_POINTS} concise complete sentences.",
    f"- explicitQuotes: at most {MAX_EXPLICIT_QUOTES} Qur'an verses or hadith quoted verbatim in the text, or [].",
    f"- weeklyActions: up to {MAX_WEEKLY_ACTIONS} actions explicitly encouraged, or [\"{NO_ACTION_MENTIONED}\"].",
    "Output ONLY valid JSON, with no markdown or extra text.",
])

COMPACT_RETRY_INSTRUCTIONS = "\n".join([
    "Your previous attempt exceeded the output token limit.",
    "Retry with an ultra-compact JSON summary that fits well under the budget:",
    "- mainTheme: max 200 words.",
    "- keyPoints: max 6 sentences, each under ~22 words.",
    "- weeklyActions: max 3 sentences, each under ~16 words.",
    "- explicitQuotes: up to 2 verbatim quotes.",
])

ULTRA_COMPACT_INSTRUCTIONS = "\n".join([
    "Your previous attempt still exceeded the output token limit.",
    "Return an ultra-compact JSON summary that fits comfortably under the budget:",
    "- mainTheme: max 120 words.",
    "- keyPoints: max 4 sentences, each under ~18 words.",
    "- weeklyActions: max 2 sentences, each under ~12 words.",
    "- explicitQuotes: up to 2 verbatim quotes, no duplicates.",
])

# (extra instructions, additional output tokens) per attempt
ESCALATION_STEPS: tuple[tuple[Optional[str], int, str], ...] = (
    (None, 0, ""),
    (COMPACT_RETRY_INSTRUCTIONS, 500, " (compact)"),
    (ULTRA_COMPACT_INSTRUCTIONS, 1000, " (ultra-compact)"),
)

# Alternate key names models have been seen to produce.
_THEME_ALIASES = ("topic", "main_theme")
_KEY_POINT_ALIASES = ("main_points", "key_points")
_QUOTE_ALIASES = ("explicitAyatOrHadith", "explicit_quotes", "quote", "quoted_verse")
_ACTION_ALIASES = ("weeklyAction", "weekly_actions", "closing_advice")


def truncate_words(text: str, max_words: int) -> str:
    words = text.strip().split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words])


def dedupe_strings(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        trimmed = item.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        result.append(trimmed)
    return result


def _first_present(raw: dict[str, Any], primary: str, aliases: tuple[str, ...]) -> Any:
    value = raw.get(primary)
    if value not in (None, "", []):
        return value
    for alias in aliases:
        alias_value = raw.get(alias)
        if alias_value not in (None, "", []):
            return alias_value
    return value


def _wrap_string(value: Any) -> Any:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    return value


def normalize_summary(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Map alternate key names onto the schema and wrap single strings into lists.

    Missing fields get their defaults; fields of the wrong type are left as
    they are so `enforce_limits` can reject them.
    """
    main_theme = _first_present(raw, "mainTheme", _THEME_ALIASES)
    key_points = _wrap_string(_first_present(raw, "keyPoints", _KEY_POINT_ALIASES))
    quotes = _wrap_string(_first_present(raw, "explicitQuotes", _QUOTE_ALIASES))
    actions = _wrap_string(_first_present(raw, "weeklyActions", _ACTION_ALIASES))

    if main_theme is None and isinstance(key_points, list) and key_points and isinstance(key_points[0], str):
        main_theme = key_points[0]

    return {
        "mainTheme": NOT_MENTIONED if main_theme is None else main_theme,
        "keyPoints": [] if key_points is None else key_points,
        "explicitQuotes": [] if quotes is None else quotes,
        "weeklyActions": [NO_ACTION_MENTIONED] if actions is None else actions,
    }


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def enforce_limits(summary: dict[str, Any]) -> LectureSummary:
    """
    Validate the summary shape and clamp it to the published limits.

    Raises:
        SchemaInvalidError: If a field has the wrong type
    """
    main_theme = summary.get("mainTheme")
    key_points = summary.get("keyPoints")
    quotes = summary.get("explicitQuotes")
    actions = summary.get("weeklyActions")

    if not (
        isinstance(main_theme, str)
        and _is_string_list(key_points)
        and _is_string_list(quotes)
        and _is_string_list(actions)
    ):
        logger.error("Invalid summary schema: %s", safe_json(summary))
        raise SchemaInvalidError("Invalid summary schema")

    trimmed_theme = truncate_words(main_theme, MAX_MAIN_THEME_WORDS).strip()
    weekly = dedupe_strings(actions)[:MAX_WEEKLY_ACTIONS]

    return LectureSummary(
        main_theme=trimmed_theme or NOT_MENTIONED,
        key_points=dedupe_strings(key_points)[:MAX_KEY_POINTS],
        explicit_quotes=dedupe_strings(quotes)[:MAX_EXPLICIT_QUOTES],
        weekly_actions=weekly or [NO_ACTION_MENTIONED],
    )


def parse_json_object(text: str, stage: str) -> dict[str, Any]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as error:
        raise SchemaInvalidError(f"{stage}: Model did not return valid JSON") from error
    if not isinstance(parsed, dict):
        raise SchemaInvalidError(f"{stage}: Model did not return a JSON object")
    return parsed


class Summarizer:
    def __init__(
        self,
        client: JsonLLMClient,
        chunk_chars: int = CHUNK_CHAR_TARGET,
        overlap_chars: int = CHUNK_CHAR_OVERLAP,
    ):
        self.client = client
        self.chunk_chars = chunk_chars
        self.overlap_chars = overlap_chars

    def request_with_escalation(self, body: list[ChatMessage], max_output_tokens: int, stage: str) -> str:
        """Send `body` under the system prompt, escalating on token-budget cutoffs."""
        system = ChatMessage("system", SUMMARY_SYSTEM_PROMPT)
        last_step = len(ESCALATION_STEPS) - 1

        for step, (instructions, extra_tokens, label) in enumerate(ESCALATION_STEPS):
            messages = [system]
            if instructions:
                messages.append(ChatMessage("user", instructions))
            messages.extend(body)
            try:
                return self.client.generate_json(messages, max_output_tokens + extra_tokens, f"{stage}{label}")
            except TokenBudgetExceededError as error:
                if step == last_step:
                    raise
                logger.warning("%s; retrying with more compact instructions", error)

        raise AssertionError("unreachable")

    def summarize_chunk(
        self,
        segment: str,
        index: int,
        total: int,
        token_budget: int = CHUNK_OUTPUT_TOKENS,
    ) -> dict[str, Any]:
        stage = f"Chunk {index}/{total}"
        context = "\n".join([
            f"You are summarizing chunk {index} of {total} of a khutbah transcript.",
            "Focus only on this chunk. Do not speculate about missing context."
            if total > 1 else "This is the full transcript.",
            "Keep the output brief: mainTheme up to ~200 words, keyPoints up to 5 sentences,",
            "explicitQuotes at most 2 verbatim quotes, weeklyActions up to 2 explicit actions.",
        ])
        text = self.request_with_escalation(
            [ChatMessage("user", context), ChatMessage("user", segment)],
            token_budget,
            stage,
        )
        return normalize_summary(parse_json_object(text, stage))

    def aggregate(self, chunk_summaries: list[dict[str, Any]]) -> dict[str, Any]:
        if not chunk_summaries:
            raise ValueError("Nothing to aggregate")
        if len(chunk_summaries) == 1:
            return chunk_summaries[0]

        instructions = "\n".join([
            "Combine the chunk-level summaries into one final khutbah summary using the required JSON schema.",
            "The next message is a JSON array of chunk summaries; use only that content.",
            "Merge overlapping ideas and remove duplicates. Keep explicitQuotes verbatim, at most 2.",
            f"Final limits: mainTheme <= {MAX_MAIN_THEME_WORDS} words, keyPoints <= {MAX_KEY_POINTS},",
            f"weeklyActions <= {MAX_WEEKLY_ACTIONS}, explicitQuotes <= {MAX_EXPLICIT_QUOTES}.",
        ])
        text = self.request_with_escalation(
            [
                ChatMessage("user", instructions),
                ChatMessage("user", json.dumps(chunk_summaries, ensure_ascii=False)),
            ],
            MAX_SUMMARY_OUTPUT_TOKENS,
            "Aggregation",
        )
        return normalize_summary(parse_json_object(text, "Aggregation"))

    def summarize(self, transcript: str) -> LectureSummary:
        chunks = chunk_transcript(transcript, self.chunk_chars, self.overlap_chars)
        if not chunks:
            raise SchemaInvalidError("Transcript is empty")

        budget = MAX_SUMMARY_OUTPUT_TOKENS if len(chunks) == 1 else CHUNK_OUTPUT_TOKENS
        partials = [
            self.summarize_chunk(chunk, index, len(chunks), budget)
            for index, chunk in enumerate(chunks, start=1)
        ]
        logger.info("Summarized %d chunk(s), %d chars", len(chunks), len(transcript))
        return enforce_limits(self.aggregate(partials))
