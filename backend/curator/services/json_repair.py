from __future__ import annotations

import json
import logging
import re
from typing import Any

from backend.curator.services.errors import MalformedLLMResponseError

LOGGER = logging.getLogger("curator.json_repair")

FENCED_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
TRAILING_COMMA_OBJECT_PATTERN = re.compile(r",\s*}")
TRAILING_COMMA_ARRAY_PATTERN = re.compile(r",\s*]")
DIAGNOSTIC_SNIPPET_CHARS = 500


def strip_markdown_code_blocks(text: str) -> str:
    """Return the body of the first fenced block, or the stripped text when there is none."""
    stripped = text.strip()
    matched = FENCED_BLOCK_PATTERN.search(stripped)
    if matched is not None:
        return matched.group(1).strip()
    if stripped.startswith("```json"):
        stripped = stripped[7:]
    elif stripped.startswith("```"):
        stripped = stripped[3:]
    return stripped.strip()


def repair_json_text(text: str) -> str:
    repaired = TRAILING_COMMA_OBJECT_PATTERN.sub("}", text)
    repaired = TRAILING_COMMA_ARRAY_PATTERN.sub("]", repaired)
    return repaired.replace("\r", " ").replace("\n", " ")


def parse_llm_json(text: str, *, context: str) -> Any:
    """
    Parse JSON produced by an LLM, tolerating the usual formatting slips.

    Tries, in order: the raw text, the body of a fenced code block (or the span
    between the first and last bracket), then that body with trailing commas
    removed and newlines collapsed. Raises `MalformedLLMResponseError` when every
    attempt fails, logging the response length plus its head and tail.
    """
    raw = text.strip()
    candidates = [raw]
    extracted = strip_markdown_code_blocks(raw)
    if extracted != raw:
        candidates.append(extracted)
    bracketed = _outer_bracket_span(extracted)
    if bracketed is not None and bracketed not in candidates:
        candidates.append(bracketed)
    candidates.append(repair_json_text(bracketed if bracketed is not None else extracted))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    head = raw[:DIAGNOSTIC_SNIPPET_CHARS]
    tail = raw[-DIAGNOSTIC_SNIPPET_CHARS:]
    LOGGER.error(
        "llm json unparseable context=%s length=%s head=%r tail=%r",
        context,
        len(raw),
        head,
        tail,
    )
    raise MalformedLLMResponseError(
        f"{context} response was truncated or malformed.",
        response_length=len(raw),
        head=head,
        tail=tail,
    )


def _outer_bracket_span(text: str) -> str | None:
    starts = [index for index in (text.find("{"), text.find("[")) if index >= 0]
    if not starts:
        return None
    start = min(starts)
    closing = "}" if text[start] == "{" else "]"
    end = text.rfind(closing)
    if end <= start:
        return None
    return text[start : end + 1]
