"""Structured Query Generator (SQG) for legal retrieval.

Expands a raw question into a StructuredQuery (keywords, topics, statutes,
synonyms, urgency) with a cheap chat model. Results are cached by the exact
question string. When the model call or JSON parsing fails, a deterministic
keyword/urgency heuristic produces a value with the same schema, so callers
never see an exception or a partially-filled object.

Usage:
    generator = StructuredQueryGenerator()
    structured = await generator.generate("Can a minor be arrested without a warrant?")
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, List, Optional

import structlog

from api.composer.prompts import build_sqg_messages
from api.models import URGENCY_LEVELS, StructuredQuery
from libs.caching.ttl_cache import TTLCache
from libs.common.settings import StructuredQuerySettings
from libs.monitoring.performance import PerformanceMonitor

logger = structlog.get_logger(__name__)

LIST_FIELDS = (
    "keywords",
    "legal_topics",
    "statutes_referenced",
    "related_terms",
    "query_expansions",
)

FALLBACK_STOPWORDS = frozenset(
    {"the", "a", "an", "is", "are", "what", "how", "when", "where", "why", "can", "in", "of", "to", "for"}
)
FALLBACK_MAX_KEYWORDS = 10

_HIGH_URGENCY_RE = re.compile(r"\b(bail|warrant|arrest|custody|detention|emergency)\b")
_MEDIUM_URGENCY_RE = re.compile(r"\b(deadline|filing|period|time limit)\b")


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


def validate_structured_query(raw: Dict[str, Any]) -> StructuredQuery:
    """Coerce a model response into a StructuredQuery field by field.

    Fields with the wrong shape become their empty/default value instead of
    failing validation.
    """
    urgency = str(raw.get("urgency") or "").lower()
    return StructuredQuery(
        normalized_question=str(raw.get("normalized_question") or ""),
        jurisdiction=str(raw.get("jurisdiction") or "Philippines"),
        temporal_scope=str(raw.get("temporal_scope") or ""),
        urgency=urgency if urgency in URGENCY_LEVELS else "low",
        **{field: _string_list(raw.get(field)) for field in LIST_FIELDS},
    )


def detect_urgency(question: str) -> str:
    """Regex urgency heuristic used when the model is unavailable."""
    q = str(question or "").lower()
    if _HIGH_URGENCY_RE.search(q):
        return "high"
    if _MEDIUM_URGENCY_RE.search(q):
        return "medium"
    return "low"


def fallback_structured_query(question: Optional[str]) -> StructuredQuery:
    """Deterministic structured query built without a model call."""
    original = str(question or "")
    keywords = [
        word
        for word in original.lower().split()
        if len(word) > 2 and word not in FALLBACK_STOPWORDS
    ][:FALLBACK_MAX_KEYWORDS]

    return StructuredQuery(
        normalized_question=original,
        keywords=keywords,
        urgency=detect_urgency(original),
    )


def _message_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        # Content blocks from newer chat models
        content = "".join(
            block.get("text", "") if isinstance(block, dict) else str(block) for block in content
        )
    return str(content or "{}")


def _total_tokens(response: Any) -> int:
    metadata = getattr(response, "response_metadata", None) or {}
    usage = metadata.get("token_usage") or {}
    return int(usage.get("total_tokens") or 0)


class StructuredQueryGenerator:
    """Question → StructuredQuery expansion with cache and heuristic fallback."""

    def __init__(
        self,
        settings: Optional[StructuredQuerySettings] = None,
        cache: Optional[TTLCache[StructuredQuery]] = None,
        monitor: Optional[PerformanceMonitor] = None,
        llm: Any = None,
    ):
        """
        Args:
            settings: SQG settings (model, TTL, cache size)
            cache: Shared structured query cache; a private one is created if omitted
            monitor: Performance monitor for cache and latency counters
            llm: Chat model exposing ``ainvoke``; defaults to ChatOpenAI in JSON mode
        """
        self.settings = settings or StructuredQuerySettings()
        self.cache = cache if cache is not None else TTLCache(
            name="sqg",
            max_size=self.settings.cache_max,
            ttl_ms=self.settings.ttl_ms,
        )
        self.monitor = monitor or PerformanceMonitor(enabled=False)
        self._llm = llm

    def _get_llm(self) -> Any:
        if self._llm is None:
            from langchain_openai import ChatOpenAI

            self._llm = ChatOpenAI(
                model=self.settings.model,
                temperature=self.settings.temperature,
            ).bind(response_format={"type": "json_object"})
        return self._llm

    @staticmethod
    def cache_key(question: str) -> str:
        return f"sqg:{question}"

    async def generate(self, question: str) -> StructuredQuery:
        """Expand a question; always returns a schema-valid StructuredQuery."""
        started = time.perf_counter()
        key = self.cache_key(question)

        cached = self.cache.get(key)
        if cached is not None:
            self.monitor.record_cache_hit("sqg")
            logger.info(
                "SQG cache hit",
                stage="sqg",
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return cached

        self.monitor.record_cache_miss("sqg")
        timer = self.monitor.start_timer("sqg")

        try:
            response = await self._get_llm().ainvoke(build_sqg_messages(question))
            parsed = json.loads(_message_text(response))
            if not isinstance(parsed, dict):
                raise ValueError(f"expected JSON object, got {type(parsed).__name__}")

            validated = validate_structured_query(parsed)
            self.cache.set(key, validated)

            logger.info(
                "SQG generated",
                stage="sqg",
                model=self.settings.model,
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
                tokens=_total_tokens(response),
                keywords_count=len(validated.keywords),
                expansions_count=len(validated.query_expansions),
                statutes_count=len(validated.statutes_referenced),
                urgency=validated.urgency,
            )
            return validated

        except Exception as e:
            logger.warning("SQG failed, using heuristic fallback", stage="sqg", error=str(e))
            return fallback_structured_query(question)

        finally:
            self.monitor.end_timer(timer)
