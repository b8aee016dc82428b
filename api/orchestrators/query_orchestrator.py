"""Query pipeline for the Villy legal assistant.

Routes a question through the cheap stages first and only pays for
retrieval and reranking when it has to:

    classify -> (meta | list | follow-up rewrite)
             -> structured query -> hybrid retrieval
             -> confidence gate -> rerank -> top-N candidates

Caches and the performance monitor live on an explicit PipelineContext so
tests and workers can run isolated instances side by side.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

import structlog

from api.models import Candidate, ConversationContext, PipelineResult, RetrievalRequest, StructuredQuery
from api.orchestrators.query_classifier import (
    DbQuery,
    classify_query,
    handle_follow_up_query,
    handle_list_query,
    handle_meta_query,
)
from api.tools.reranker import BaseReranker, CrossEncoderReranker, LLMReranker, as_candidates
from api.tools.structured_query import StructuredQueryGenerator
from api.tools.text_normalization import normalize_question
from libs.caching.ttl_cache import TTLCache
from libs.common.settings import Settings, get_settings
from libs.monitoring.performance import PerformanceMonitor

logger = structlog.get_logger(__name__)


@runtime_checkable
class HybridRetriever(Protocol):
    """Hybrid (vector + lexical + full-text) retrieval over the entry store."""

    async def search(self, request: RetrievalRequest) -> Sequence[Union[Candidate, Mapping[str, Any]]]:
        ...


@dataclass
class PipelineContext:
    """Process-level state shared by pipeline runs: settings, caches and monitor."""

    settings: Settings
    sqg_cache: TTLCache[StructuredQuery]
    cross_encoder_cache: TTLCache[dict]
    llm_rerank_cache: TTLCache[dict]
    monitor: PerformanceMonitor = field(default_factory=PerformanceMonitor)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PipelineContext":
        settings = settings or get_settings()
        return cls(
            settings=settings,
            sqg_cache=TTLCache("sqg", settings.sqg.cache_max, settings.sqg.ttl_ms),
            cross_encoder_cache=TTLCache(
                "cross_encoder", settings.cross_encoder.cache_max, settings.cross_encoder.ttl_ms
            ),
            llm_rerank_cache=TTLCache("llm_rerank", settings.llm_rerank.cache_max, settings.llm_rerank.ttl_ms),
            monitor=PerformanceMonitor(enabled=settings.performance_logging),
        )

    def clear_caches(self) -> None:
        for cache in (self.sqg_cache, self.cross_encoder_cache, self.llm_rerank_cache):
            cache.clear()


# Global context instance
_context: Optional[PipelineContext] = None


def get_pipeline_context() -> PipelineContext:
    """Get or create the process-wide pipeline context."""
    global _context
    if _context is None:
        _context = PipelineContext.from_settings()
    return _context


def create_reranker(strategy: str, context: PipelineContext) -> Optional[BaseReranker]:
    """Build the configured reranking strategy bound to the context's cache and monitor."""
    if strategy == "cross_encoder":
        return CrossEncoderReranker(
            context.settings.cross_encoder, cache=context.cross_encoder_cache, monitor=context.monitor
        )
    if strategy == "llm":
        return LLMReranker(context.settings.llm_rerank, cache=context.llm_rerank_cache, monitor=context.monitor)
    if strategy == "none":
        return None
    raise ValueError(f"Unknown reranker strategy: {strategy}")


def estimate_confidence(candidates: Sequence[Candidate]) -> float:
    """Retrieval confidence: the best vector similarity in the pool."""
    return max((c.vector_score() for c in candidates), default=0.0)


def seed_final_scores(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Fill missing final_score from the vector score."""
    return [
        c if c.final_score is not None else c.model_copy(update={"final_score": c.vector_score()})
        for c in candidates
    ]


def rank_by_final_score(candidates: Sequence[Candidate]) -> List[Candidate]:
    return sorted(candidates, key=lambda c: c.current_score(), reverse=True)


class QueryPipeline:
    """Classify, retrieve and rerank one question."""

    def __init__(
        self,
        retriever: HybridRetriever,
        context: Optional[PipelineContext] = None,
        db_query: Optional[DbQuery] = None,
        generator: Optional[StructuredQueryGenerator] = None,
        reranker: Optional[BaseReranker] = None,
    ):
        """
        Args:
            retriever: Hybrid retrieval backend
            context: Shared caches, settings and monitor; process default if omitted
            db_query: Async SQL callable used by list requests; list requests fall
                through to retrieval without it
            generator: Structured query generator; built from the context if omitted
            reranker: Reranking strategy; built from ``settings.reranker`` if omitted
        """
        self.retriever = retriever
        self.context = context or get_pipeline_context()
        self.settings = self.context.settings
        self.monitor = self.context.monitor
        self.db_query = db_query
        self.generator = generator or StructuredQueryGenerator(
            self.settings.sqg, cache=self.context.sqg_cache, monitor=self.monitor
        )
        self.reranker = reranker if reranker is not None else create_reranker(self.settings.reranker, self.context)

    @property
    def low_confidence_threshold(self) -> float:
        """Below this, retrieval is too weak to rerank; 0 when reranking is off."""
        return self.reranker.settings.low_conf if self.reranker is not None else 0.0

    @property
    def top_n(self) -> int:
        if self.reranker is not None:
            return self.reranker.settings.top_n
        return self.settings.cross_encoder.top_n

    async def run(self, question: str, conversation: Optional[ConversationContext] = None) -> PipelineResult:
        """Run one question through the pipeline.

        Args:
            question: Raw user question
            conversation: Previous turn, used to resolve follow-ups

        Returns:
            PipelineResult with either a direct answer (meta/list) or ranked candidates
        """
        start_time = time.perf_counter()
        trace_id = str(uuid.uuid4())
        try:
            return await self._run(question, conversation, start_time, trace_id)
        finally:
            latency_ms = (time.perf_counter() - start_time) * 1000
            self.monitor.record_query(latency_ms)

    async def _run(
        self,
        question: str,
        conversation: Optional[ConversationContext],
        start_time: float,
        trace_id: str,
    ) -> PipelineResult:
        classification = classify_query(question)
        route = classification.type
        effective_question = classification.original_query

        logger.info("Query classified", route=route, confidence=classification.confidence, trace_id=trace_id)

        if route == "unknown":
            return self._result(route, question, effective_question, start_time)

        if route == "follow_up":
            follow_up = handle_follow_up_query(effective_question, conversation)
            effective_question = follow_up.enhanced_query
            if follow_up.is_list_query:
                route = "list"
            else:
                route = classify_query(effective_question).type
                if route in ("follow_up", "unknown"):
                    route = "legal"
            logger.info(
                "Follow-up rewritten",
                route=route,
                context_added=follow_up.context_added,
                effective_question=effective_question,
                trace_id=trace_id,
            )

        if route == "meta":
            handled = handle_meta_query(effective_question)
            self.monitor.record_simple_query_skip()
            return self._result(route, question, effective_question, start_time, answer=handled.answer)

        if route == "list" and self.db_query is not None:
            handled = await handle_list_query(effective_question, self.db_query)
            if handled.skip_rag:
                self.monitor.record_simple_query_skip()
                return self._result(
                    route, question, effective_question, start_time, answer=handled.answer, sources=handled.sources
                )
            logger.info("List request falling through to retrieval", trace_id=trace_id)

        structured = await self.generator.generate(effective_question)
        request = RetrievalRequest(
            question=effective_question,
            normalized_question=(
                normalize_question(effective_question) if self.settings.normalize_questions else effective_question
            ),
            structured=structured,
        )

        timer = self.monitor.start_timer("db_query")
        try:
            hits = await self.retriever.search(request)
        finally:
            self.monitor.end_timer(timer)

        candidates = seed_final_scores(as_candidates(hits or []))
        confidence = estimate_confidence(candidates)

        if not candidates or confidence < self.low_confidence_threshold:
            self.monitor.record_early_termination()
            logger.info(
                "Early termination (low retrieval confidence)",
                candidates=len(candidates),
                confidence=confidence,
                trace_id=trace_id,
            )
            return self._result(
                route,
                question,
                effective_question,
                start_time,
                candidates=rank_by_final_score(candidates)[: self.top_n],
                confidence=confidence,
                structured=structured,
                early_terminated=True,
            )

        reranked = None
        if self.reranker is not None:
            timer = self.monitor.start_timer("reranking")
            try:
                reranked = await self.reranker.rerank(effective_question, candidates, confidence)
            finally:
                self.monitor.end_timer(timer)

        if reranked is None:
            ranked = rank_by_final_score(candidates)
        else:
            ranked = reranked

        result = self._result(
            route,
            question,
            effective_question,
            start_time,
            candidates=ranked[: self.top_n],
            confidence=confidence,
            structured=structured,
            reranked=reranked is not None,
            rerank_method=self.reranker.name if reranked is not None else None,
        )
        logger.info(
            "Pipeline completed",
            route=route,
            candidates=len(result.candidates),
            confidence=round(confidence, 4),
            reranked=result.reranked,
            latency_ms=result.latency_ms,
            trace_id=trace_id,
        )
        return result

    @staticmethod
    def _result(route: str, question: str, effective_question: str, start_time: float, **fields: Any) -> PipelineResult:
        return PipelineResult(
            route=route,
            question=str(question or ""),
            effective_question=effective_question,
            latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
            **fields,
        )
