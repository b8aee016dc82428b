#!/usr/bin/env python3
"""Confidence-gated candidate reranking for the Villy retrieval pipeline.

Two interchangeable strategies share one capability:

- CrossEncoderReranker: local sentence-transformers cross-encoder
  (ms-marco-MiniLM-L-6-v2 by default)
- LLMReranker: remote chat model that scores a shortlist 0-100

Both only run inside a confidence band: above the high threshold retrieval is
already trustworthy, below the low threshold the caller is going to answer
"I don't know" anyway. Inside the band, a prefiltered pool is scored, the
scores are min-max normalized, cached by (query, pool ids), and blended with
the pre-rerank finalScore:

    final_score = blend * rerank_score + (1 - blend) * original_final_score

Any failure returns None so the caller keeps the original order.

Usage:
    reranker = CrossEncoderReranker(settings.cross_encoder)
    reranked = await reranker.rerank(query, candidates, confidence=0.5)
    if reranked is None:
        reranked = candidates
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import structlog

from api.composer.prompts import build_rerank_messages
from api.models import Candidate
from libs.caching.ttl_cache import TTLCache
from libs.common.settings import CrossEncoderSettings, LLMRerankSettings
from libs.monitoring.performance import PerformanceMonitor

logger = structlog.get_logger(__name__)

CandidateLike = Union[Candidate, Mapping[str, Any]]
ScoreMap = Dict[str, float]


def as_candidates(candidates: Sequence[CandidateLike]) -> List[Candidate]:
    """Accept store rows (mappings) or Candidate models."""
    return [c if isinstance(c, Candidate) else Candidate.model_validate(dict(c)) for c in candidates]


def min_max_normalize(scores: Mapping[str, float], range_floor: float) -> ScoreMap:
    """Scale a batch of scores to [0, 1]; the range is floored to avoid division by zero."""
    if not scores:
        return {}
    ids = list(scores)
    values = np.asarray([scores[i] for i in ids], dtype=float)
    low = float(values.min())
    spread = max(range_floor, float(values.max()) - low)
    normalized = (values - low) / spread
    return {entry_id: float(value) for entry_id, value in zip(ids, normalized)}


class BaseReranker(ABC):
    """Shared gating, caching and blending; variants provide pool and scoring."""

    name: str = "reranker"
    cache_prefix: str = "rr"
    score_field: str = "rr_score"
    range_floor: float = 1.0

    def __init__(
        self,
        settings: Union[CrossEncoderSettings, LLMRerankSettings],
        cache: Optional[TTLCache[ScoreMap]] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.settings = settings
        self.cache = cache if cache is not None else TTLCache(
            name=self.name,
            max_size=settings.cache_max,
            ttl_ms=settings.ttl_ms,
        )
        self.monitor = monitor or PerformanceMonitor(enabled=False)

    # ------------------------------------------------------------------
    # Variant hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def build_pool(self, candidates: List[Candidate]) -> List[Candidate]:
        """Prefilter and cap the candidates that will be scored."""

    @abstractmethod
    async def score(self, query: str, pool: List[Candidate], confidence: float) -> ScoreMap:
        """Raw (unnormalized) relevance score per entry_id."""

    def on_high_confidence(self, candidates: List[Candidate]) -> Optional[List[Candidate]]:
        return None

    def on_empty_pool(self, candidates: List[Candidate]) -> Optional[List[Candidate]]:
        return None

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------

    def should_skip_low(self, confidence: float) -> bool:
        return confidence < self.settings.low_conf

    def cache_key(self, query: str, pool: Sequence[Candidate]) -> str:
        return f"{self.cache_prefix}:{query}::{','.join(c.entry_id for c in pool)}"

    def blend(self, pool: Sequence[Candidate], scores: Mapping[str, float]) -> List[Candidate]:
        """Blend normalized scores into final_score and sort descending."""
        weight = self.settings.blend
        blended = []
        for candidate in pool:
            rerank_score = float(scores.get(candidate.entry_id, 0.0) or 0.0)
            final = weight * rerank_score + (1 - weight) * candidate.current_score()
            blended.append(candidate.model_copy(update={self.score_field: rerank_score, "final_score": final}))
        blended.sort(key=lambda c: c.current_score(), reverse=True)
        return blended

    async def rerank(
        self,
        query: str,
        candidates: Sequence[CandidateLike],
        confidence: float,
    ) -> Optional[List[Candidate]]:
        """Rerank candidates, or return None to keep the original order.

        Args:
            query: User question
            candidates: Retrieval hits in original order
            confidence: Retrieval confidence used for gating

        Returns:
            Top-N blended candidates, a pass-through slice, or None
        """
        try:
            started = time.perf_counter()
            items = as_candidates(candidates)

            if confidence > self.settings.high_conf:
                logger.info("Rerank skipped (high confidence)", stage=self.name, confidence=confidence)
                return self.on_high_confidence(items)
            if self.should_skip_low(confidence):
                logger.info("Rerank skipped (low confidence)", stage=self.name, confidence=confidence)
                return None

            pool = self.build_pool(items)
            if not pool:
                logger.info("No candidates passed rerank prefilter", stage=self.name, candidates=len(items))
                return self.on_empty_pool(items)

            key = self.cache_key(query, pool)
            scores = self.cache.get(key)
            cached = scores is not None

            if cached:
                self.monitor.record_cache_hit(self.name)
            else:
                self.monitor.record_cache_miss(self.name)
                raw_scores = await self.score(query, pool, confidence)
                scores = min_max_normalize(raw_scores, self.range_floor)
                self.cache.set(key, scores)

            blended = self.blend(pool, scores)

            logger.info(
                "Rerank stats",
                stage=self.name,
                candidates=len(pool),
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
                cached=cached,
                blend_weight=self.settings.blend,
            )
            return blended[: self.settings.top_n]

        except Exception as e:
            logger.warning("Rerank failed, keeping original order", stage=self.name, error=str(e))
            return None


class CrossEncoderReranker(BaseReranker):
    """Local cross-encoder reranker (no API cost, 50-200ms per batch on CPU)."""

    name = "cross_encoder"
    cache_prefix = "ce"
    score_field = "ce_score"
    range_floor = 0.01

    def __init__(
        self,
        settings: Optional[CrossEncoderSettings] = None,
        cache: Optional[TTLCache[ScoreMap]] = None,
        monitor: Optional[PerformanceMonitor] = None,
        model: Any = None,
    ):
        """
        Args:
            settings: Cross-encoder settings
            cache: Shared score cache
            monitor: Performance monitor
            model: Object exposing ``predict(pairs)``; loaded lazily when omitted
        """
        super().__init__(settings or CrossEncoderSettings(), cache, monitor)
        self.model = model

    def _load_model(self) -> Any:
        from sentence_transformers import CrossEncoder

        logger.info("Loading cross-encoder model", model=self.settings.model)
        start_time = time.perf_counter()
        model = CrossEncoder(
            self.settings.model,
            max_length=self.settings.max_length,
            device=self.settings.device,
        )
        logger.info(
            "Cross-encoder model loaded",
            model=self.settings.model,
            load_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return model

    async def ensure_model(self) -> Any:
        """Load the model in a worker thread on first use."""
        if self.model is None:
            loop = asyncio.get_running_loop()
            self.model = await loop.run_in_executor(None, self._load_model)
        return self.model

    def build_snippet(self, candidate: Candidate) -> str:
        """Compact, keyword-rich text: title, citation, then summary or text."""
        max_len = self.settings.snippet_max_len
        parts = [p for p in (candidate.title, candidate.canonical_citation) if p]

        body = candidate.summary or candidate.text
        if body:
            remaining = max(0, max_len - len(" ".join(parts)))
            parts.append(body[:remaining])

        return " ".join(parts)[:max_len]

    def build_pool(self, candidates: List[Candidate]) -> List[Candidate]:
        eligible = [c for c in candidates if c.vector_score() >= self.settings.min_sim]
        return eligible[: self.settings.max_candidates]

    async def score(self, query: str, pool: List[Candidate], confidence: float) -> ScoreMap:
        model = await self.ensure_model()
        pairs = [[query, self.build_snippet(c)] for c in pool]

        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, lambda: model.predict(pairs))

        scores = np.asarray(raw, dtype=float)
        if scores.ndim == 2:
            # Two-label heads: last column is the "relevant" probability
            scores = scores[:, -1]

        return {c.entry_id: float(s) for c, s in zip(pool, scores)}


ChatModelFactory = Callable[[str], Any]


def default_chat_model_factory(model_name: str) -> Any:
    """ChatOpenAI in JSON mode at temperature 0."""
    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=model_name, temperature=0).bind(response_format={"type": "json_object"})


def parse_rerank_scores(text: str) -> ScoreMap:
    """Parse ``[{id, score}]`` (bare or wrapped in an object) into a score map.

    Raises:
        ValueError: If the text is not JSON or holds no usable scores
    """
    parsed = json.loads(text)

    if isinstance(parsed, dict):
        wrapped = next((parsed[k] for k in ("scores", "results", "items") if isinstance(parsed.get(k), list)), None)
        if wrapped is None:
            wrapped = next((v for v in parsed.values() if isinstance(v, list)), [])
        parsed = wrapped

    if not isinstance(parsed, list):
        raise ValueError("rerank response is not a list of scores")

    scores: ScoreMap = {}
    for item in parsed:
        if not isinstance(item, dict):
            continue
        entry_id = str(item.get("id") or "")
        if not entry_id:
            continue
        try:
            scores[entry_id] = float(item.get("score") or 0)
        except (TypeError, ValueError):
            scores[entry_id] = 0.0

    if not scores:
        raise ValueError("rerank response contained no scores")
    return scores


class LLMReranker(BaseReranker):
    """Remote chat-model reranker with confidence-dependent model choice."""

    name = "llm_rerank"
    cache_prefix = "rr"
    score_field = "rr_score"
    range_floor = 1.0

    def __init__(
        self,
        settings: Optional[LLMRerankSettings] = None,
        cache: Optional[TTLCache[ScoreMap]] = None,
        monitor: Optional[PerformanceMonitor] = None,
        llm_factory: Optional[ChatModelFactory] = None,
    ):
        """
        Args:
            settings: LLM rerank settings
            cache: Shared score cache
            monitor: Performance monitor
            llm_factory: Builds a chat model (with ``ainvoke``) for a model name
        """
        super().__init__(settings or LLMRerankSettings(), cache, monitor)
        self._llm_factory = llm_factory or default_chat_model_factory
        self._llms: Dict[str, Any] = {}

    def on_high_confidence(self, candidates: List[Candidate]) -> Optional[List[Candidate]]:
        return candidates[: self.settings.top_n]

    def on_empty_pool(self, candidates: List[Candidate]) -> Optional[List[Candidate]]:
        return candidates[: self.settings.top_n]

    def select_model(self, confidence: float) -> str:
        """Escalate to the strong model near the low-confidence boundary."""
        if confidence < self.settings.low_conf + self.settings.strong_margin:
            return self.settings.model_strong
        return self.settings.model

    def _get_llm(self, model_name: str) -> Any:
        if model_name not in self._llms:
            self._llms[model_name] = self._llm_factory(model_name)
        return self._llms[model_name]

    def build_pool(self, candidates: List[Candidate]) -> List[Candidate]:
        eligible = [
            c
            for c in candidates
            if c.vector_score() >= self.settings.min_vec
            and c.lexical_score() >= self.settings.min_lex
            and c.has_content()
        ]
        return eligible[: self.settings.max_candidates]

    def build_items(self, pool: Sequence[Candidate]) -> List[Dict[str, Any]]:
        limit = self.settings.snippet_max_len
        return [
            {
                "id": c.entry_id,
                "title": c.title,
                "type": c.type,
                "citation": c.canonical_citation,
                "snippet": (c.fts_snippet or c.summary or c.text or "")[:limit],
            }
            for c in pool
        ]

    async def score(self, query: str, pool: List[Candidate], confidence: float) -> ScoreMap:
        model_name = self.select_model(confidence)
        messages = build_rerank_messages(query, self.build_items(pool))

        timer = self.monitor.start_timer("llm")
        try:
            response = await self._get_llm(model_name).ainvoke(messages)
        finally:
            self.monitor.end_timer(timer)

        metadata = getattr(response, "response_metadata", None) or {}
        logger.info(
            "LLM rerank call completed",
            stage=self.name,
            model=model_name,
            items=len(pool),
            tokens=(metadata.get("token_usage") or {}).get("total_tokens", 0),
        )
        return parse_rerank_scores(str(getattr(response, "content", response) or ""))
