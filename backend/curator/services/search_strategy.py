from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal

from backend.curator.services.errors import CuratorError, summarize_exception_message
from backend.curator.services.json_repair import parse_llm_json
from backend.curator.services.key_selector import CallerContext, KeySelector
from backend.curator.services.llm_client import LLMClientFactory

LOGGER = logging.getLogger("curator.search_strategy")

SkillLevel = Literal["beginner", "intermediate", "advanced"]
SKILL_LEVELS: tuple[SkillLevel, ...] = ("beginner", "intermediate", "advanced")
DEPTH_DIMENSIONS: tuple[str, ...] = (
    "conceptual",
    "analytical",
    "strategic",
    "critical",
    "evolutionary",
)
MAX_QUERIES_PER_LEVEL = 4
MAX_QUERIES_PER_DIMENSION = 5
SKILL_LEVEL_MAX_TOKENS = 300
DEPTH_MAX_TOKENS = 1_500
STRATEGY_TEMPERATURE = 0.7

_SKILL_LEVEL_FALLBACKS: dict[str, tuple[str, ...]] = {
    "beginner": (
        "{topic} tutorial for beginners",
        "learn {topic} step by step",
        "{topic} basics explained",
        "how to start with {topic}",
    ),
    "intermediate": (
        "{topic} intermediate guide",
        "{topic} practical examples",
        "improve your {topic} skills",
        "{topic} techniques and tips",
    ),
    "advanced": (
        "advanced {topic} techniques",
        "{topic} expert strategies",
        "professional {topic} methods",
        "{topic} mastery course",
    ),
}
_DEPTH_FALLBACKS: dict[str, tuple[str, ...]] = {
    "conceptual": (
        "{topic} principles explained",
        "{topic} fundamentals",
        "understanding {topic} concepts",
        "{topic} theory and practice",
    ),
    "analytical": (
        "{topic} analysis",
        "{topic} case study",
        "{topic} research findings",
    ),
    "strategic": (
        "{topic} framework",
        "{topic} methodology",
        "{topic} strategic approach",
        "{topic} systematic process",
    ),
    "critical": (
        "{topic} evaluation",
        "{topic} comparison",
        "{topic} strengths and limitations",
    ),
    "evolutionary": (
        "{topic} evolution",
        "{topic} historical perspective",
        "{topic} future trends",
        "{topic} development over time",
    ),
}

_SKILL_LEVEL_SYSTEM_PROMPT = (
    "You generate YouTube search queries for educational content discovery. "
    "Return only a valid JSON array of strings with no markdown and no extra text."
)
_DEPTH_SYSTEM_PROMPT = (
    "You generate YouTube search queries that favour depth of understanding over quick "
    "tutorials. Return only a valid JSON object with no markdown and no extra text."
)


@dataclass(frozen=True)
class SearchQuery:
    text: str
    tag: str


def skill_level_fallback(topic: str, level: str) -> list[str]:
    templates = _SKILL_LEVEL_FALLBACKS.get(level, _SKILL_LEVEL_FALLBACKS["beginner"])
    return [template.format(topic=topic) for template in templates]


def depth_fallback(topic: str) -> dict[str, list[str]]:
    return {
        dimension: [template.format(topic=topic) for template in _DEPTH_FALLBACKS[dimension]]
        for dimension in DEPTH_DIMENSIONS
    }


def _skill_level_prompt(topic: str, level: str) -> str:
    return (
        f'Generate 3-4 distinct YouTube search queries for learning "{topic}" at the '
        f'"{level}" skill level. Reflect how learners at that level actually search: '
        "beginners look for foundations and step-by-step walkthroughs, intermediate "
        "learners for practical application, advanced learners for specialised "
        "terminology and professional practice. Adapt to the domain of the topic.\n\n"
        "Return ONLY a JSON array of 3-4 query strings."
    )


def _depth_prompt(topic: str) -> str:
    dimensions = ", ".join(DEPTH_DIMENSIONS)
    return (
        f'Generate 15-25 YouTube search queries for "{topic}" that lead to deep '
        f"understanding, grouped into these dimensions: {dimensions}. "
        "Conceptual covers principles and mechanisms, analytical covers case studies "
        "and breakdowns, strategic covers frameworks and methodologies, critical covers "
        "evaluation and trade-offs, evolutionary covers history and future direction. "
        "Avoid quick-tip phrasing.\n\n"
        "Return ONLY a JSON object mapping each dimension name to an array of 3-5 "
        "query strings."
    )


def _valid_query_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class SearchStrategyGenerator:
    """LLM-generated search queries per skill level or depth dimension, with templated fallbacks."""

    def __init__(
        self,
        *,
        key_selector: KeySelector,
        llm_factory: LLMClientFactory,
    ) -> None:
        self._key_selector = key_selector
        self._llm_factory = llm_factory

    async def generate_for_skill_level(
        self,
        topic: str,
        level: str,
        caller: CallerContext,
    ) -> list[str]:
        try:
            parsed = await self._complete_json(
                caller,
                prompt=_skill_level_prompt(topic, level),
                system=_SKILL_LEVEL_SYSTEM_PROMPT,
                max_tokens=SKILL_LEVEL_MAX_TOKENS,
                context=f"{level} search strategy",
            )
        except CuratorError as exc:
            LOGGER.warning(
                "search strategy fallback level=%s reason=%s",
                level,
                summarize_exception_message(exc),
            )
            return skill_level_fallback(topic, level)

        queries = _valid_query_list(parsed)[:MAX_QUERIES_PER_LEVEL]
        if not queries:
            LOGGER.warning("search strategy fallback level=%s reason=empty_or_invalid", level)
            return skill_level_fallback(topic, level)
        LOGGER.info("search strategies generated level=%s count=%s", level, len(queries))
        return queries

    async def generate_for_all_skill_levels(
        self,
        topic: str,
        caller: CallerContext,
    ) -> dict[str, list[str]]:
        results = await asyncio.gather(
            *(self.generate_for_skill_level(topic, level, caller) for level in SKILL_LEVELS)
        )
        return dict(zip(SKILL_LEVELS, results, strict=True))

    async def generate_depth_dimensions(
        self,
        topic: str,
        caller: CallerContext,
    ) -> dict[str, list[str]]:
        try:
            parsed = await self._complete_json(
                caller,
                prompt=_depth_prompt(topic),
                system=_DEPTH_SYSTEM_PROMPT,
                max_tokens=DEPTH_MAX_TOKENS,
                context="depth search strategy",
            )
        except CuratorError as exc:
            LOGGER.warning(
                "depth strategy fallback reason=%s",
                summarize_exception_message(exc),
            )
            return depth_fallback(topic)

        if not isinstance(parsed, dict):
            LOGGER.warning("depth strategy fallback reason=not_an_object")
            return depth_fallback(topic)

        strategies: dict[str, list[str]] = {}
        for dimension in DEPTH_DIMENSIONS:
            queries = _valid_query_list(parsed.get(dimension))[:MAX_QUERIES_PER_DIMENSION]
            if not queries:
                LOGGER.warning("depth strategy fallback reason=missing_dimension:%s", dimension)
                return depth_fallback(topic)
            strategies[dimension] = queries

        LOGGER.info(
            "depth strategies generated total=%s",
            sum(len(queries) for queries in strategies.values()),
        )
        return strategies

    async def _complete_json(
        self,
        caller: CallerContext,
        *,
        prompt: str,
        system: str,
        max_tokens: int,
        context: str,
    ) -> Any:
        async def _call(api_key: str) -> str:
            client = self._llm_factory(api_key)
            return await client.complete(
                prompt,
                system=system,
                max_tokens=max_tokens,
                temperature=STRATEGY_TEMPERATURE,
            )

        text = await self._key_selector.run("claude", caller, _call)
        return parse_llm_json(text, context=context)


def skill_level_queries(strategies: dict[str, list[str]]) -> list[SearchQuery]:
    return [
        SearchQuery(text=text, tag=level)
        for level in SKILL_LEVELS
        for text in strategies.get(level, [])
    ]


def depth_queries(strategies: dict[str, list[str]]) -> list[SearchQuery]:
    return [
        SearchQuery(text=text, tag=dimension)
        for dimension in DEPTH_DIMENSIONS
        for text in strategies.get(dimension, [])
    ]
