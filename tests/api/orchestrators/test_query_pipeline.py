"""
Tests for the query pipeline.

Tests verify:
- Meta and list requests skip retrieval
- List requests fall through to retrieval on empty results or without a store
- Follow-ups are rewritten before routing
- Early termination on empty or low-confidence retrieval
- Reranking by the configured strategy, with fallback to finalScore order
- Monitor accounting for skips, terminations and queries
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.models import Candidate, ConversationContext, StructuredQuery
from api.orchestrators.query_classifier import IDENTITY_ANSWER
from api.orchestrators.query_orchestrator import (
    HybridRetriever,
    PipelineContext,
    QueryPipeline,
    create_reranker,
    estimate_confidence,
    get_pipeline_context,
    seed_final_scores,
)
from api.tools.reranker import CrossEncoderReranker, LLMReranker
from libs.common.settings import Settings

STRUCTURED = StructuredQuery(normalized_question="What is bail?", keywords=["bail"], urgency="high")


@pytest.fixture
def generator():
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=STRUCTURED)
    return generator


@pytest.fixture
def cross_encoder_model():
    model = MagicMock()
    model.predict.side_effect = lambda pairs: [float(i) for i in range(len(pairs))]
    return model


@pytest.fixture
def reranker(pipeline_context, cross_encoder_model):
    return CrossEncoderReranker(
        pipeline_context.settings.cross_encoder,
        cache=pipeline_context.cross_encoder_cache,
        monitor=pipeline_context.monitor,
        model=cross_encoder_model,
    )


@pytest.fixture
def list_rows():
    return [
        {
            "entry_id": f"ra-{i}",
            "type": "statute_section",
            "title": f"RA {i}",
            "canonical_citation": f"Republic Act No. {i}",
            "summary": "Summary",
            "tags": [],
        }
        for i in range(1, 4)
    ]


@pytest.fixture
def pipeline(mock_retriever, pipeline_context, generator, reranker):
    return QueryPipeline(mock_retriever, context=pipeline_context, generator=generator, reranker=reranker)


@pytest.mark.asyncio
async def test_meta_question_skips_retrieval(pipeline, mock_retriever, pipeline_context, generator):
    result = await pipeline.run("Who are you?")

    assert result.route == "meta"
    assert result.answer == IDENTITY_ANSWER
    mock_retriever.search.assert_not_awaited()
    generator.generate.assert_not_awaited()

    stats = pipeline_context.monitor.get_stats()
    assert stats["total_queries"] == 1
    assert stats["optimization_stats"]["simple_query_skips"] == 1


@pytest.mark.asyncio
async def test_list_request_served_from_store(
    mock_retriever, pipeline_context, generator, reranker, list_rows
):
    db_query = AsyncMock(return_value=SimpleNamespace(rows=list_rows))
    pipeline = QueryPipeline(
        mock_retriever, context=pipeline_context, db_query=db_query, generator=generator, reranker=reranker
    )

    result = await pipeline.run("list 3 republic acts")

    assert result.route == "list"
    assert len(result.sources) == 3
    assert result.answer.count("**RA ") == 3
    mock_retriever.search.assert_not_awaited()
    assert pipeline_context.monitor.metrics.simple_query_skips == 1


@pytest.mark.asyncio
async def test_list_request_without_results_falls_through(mock_retriever, pipeline_context, generator, reranker):
    db_query = AsyncMock(return_value=SimpleNamespace(rows=[]))
    pipeline = QueryPipeline(
        mock_retriever, context=pipeline_context, db_query=db_query, generator=generator, reranker=reranker
    )

    result = await pipeline.run("list 3 republic acts")

    assert result.route == "list"
    assert result.answer is None
    assert result.candidates
    mock_retriever.search.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "question", ["What is Rule 114 Section 20?", "What are the penalties under the law on theft?"]
)
async def test_statute_lookup_goes_to_retrieval(
    mock_retriever, pipeline_context, generator, reranker, list_rows, question
):
    db_query = AsyncMock(return_value=SimpleNamespace(rows=list_rows))
    pipeline = QueryPipeline(
        mock_retriever, context=pipeline_context, db_query=db_query, generator=generator, reranker=reranker
    )

    result = await pipeline.run(question)

    assert result.route == "definition"
    assert result.answer is None
    db_query.assert_not_awaited()
    mock_retriever.search.assert_awaited_once()
    assert result.candidates


@pytest.mark.asyncio
async def test_list_request_without_store_uses_retrieval(pipeline, mock_retriever):
    await pipeline.run("list 3 republic acts")

    mock_retriever.search.assert_awaited_once()


@pytest.mark.asyncio
async def test_numbered_follow_up_becomes_list_request(
    mock_retriever, pipeline_context, generator, reranker, list_rows
):
    db_query = AsyncMock(return_value=SimpleNamespace(rows=list_rows[:2]))
    pipeline = QueryPipeline(
        mock_retriever, context=pipeline_context, db_query=db_query, generator=generator, reranker=reranker
    )

    result = await pipeline.run("another 2", ConversationContext(question="list 3 republic acts"))

    assert result.route == "list"
    assert result.effective_question == "list 2 republic acts"
    assert db_query.await_args.args[1] == ["statute_section", "Republic Act", 2]


@pytest.mark.asyncio
async def test_contextual_follow_up_is_reclassified(pipeline, mock_retriever, generator):
    result = await pipeline.run("what about minors?", ConversationContext(question="What is bail?"))

    assert result.effective_question == "What is bail? what about minors?"
    assert result.route == "definition"
    generator.generate.assert_awaited_once_with("What is bail? what about minors?")
    assert mock_retriever.search.await_args.args[0].question == "What is bail? what about minors?"


@pytest.mark.asyncio
async def test_follow_up_without_context_falls_back_to_legal(pipeline):
    result = await pipeline.run("another one")

    assert result.route == "legal"
    assert result.effective_question == "another one"


@pytest.mark.asyncio
async def test_legal_question_is_retrieved_and_reranked(pipeline, mock_retriever, generator):
    result = await pipeline.run("What is bail?")

    request = mock_retriever.search.await_args.args[0]
    assert isinstance(request.structured, StructuredQuery)
    assert request.normalized_question == "what is bail rule 114"

    assert result.route == "definition"
    assert result.structured == STRUCTURED
    assert result.reranked is True
    assert result.rerank_method == "cross_encoder"
    assert result.confidence == pytest.approx(0.6)
    assert [c.entry_id for c in result.candidates] == ["entry-4", "entry-3", "entry-2", "entry-1", "entry-0"]


@pytest.mark.asyncio
async def test_empty_retrieval_terminates_early(pipeline, mock_retriever, pipeline_context, cross_encoder_model):
    mock_retriever.search.return_value = []

    result = await pipeline.run("What is bail?")

    assert result.early_terminated is True
    assert result.candidates == []
    assert result.confidence == 0.0
    cross_encoder_model.predict.assert_not_called()
    assert pipeline_context.monitor.metrics.early_terminations == 1


@pytest.mark.asyncio
async def test_low_confidence_terminates_early(pipeline, mock_retriever, rows_factory, cross_encoder_model):
    mock_retriever.search.return_value = rows_factory(count=3, start_sim=0.2)

    result = await pipeline.run("What is bail?")

    assert result.early_terminated is True
    assert [c.entry_id for c in result.candidates] == ["entry-0", "entry-1", "entry-2"]
    cross_encoder_model.predict.assert_not_called()


@pytest.mark.asyncio
async def test_low_confidence_keeps_best_final_scores(pipeline, mock_retriever, rows_factory):
    rows = rows_factory(count=10, start_sim=0.2, step=0.01)
    for i, row in enumerate(rows):
        row["finalScore"] = round(0.1 + i * 0.01, 4)
    mock_retriever.search.return_value = rows

    result = await pipeline.run("What is bail?")

    assert result.early_terminated is True
    assert [c.entry_id for c in result.candidates] == [f"entry-{i}" for i in range(9, 1, -1)]


@pytest.mark.asyncio
async def test_skipped_rerank_sorts_by_final_score(pipeline, mock_retriever, rows_factory):
    rows = rows_factory(count=3, start_sim=0.95)
    for row, final in zip(rows, (0.2, 0.9, 0.5)):
        row["finalScore"] = final
    mock_retriever.search.return_value = rows

    result = await pipeline.run("What is bail?")

    assert result.reranked is False
    assert result.rerank_method is None
    assert [c.entry_id for c in result.candidates] == ["entry-1", "entry-2", "entry-0"]


@pytest.mark.asyncio
async def test_results_truncated_to_top_n(pipeline, mock_retriever, rows_factory):
    mock_retriever.search.return_value = rows_factory(count=12, start_sim=0.7, step=0.02)

    result = await pipeline.run("What is bail?")

    assert len(result.candidates) == 8


@pytest.mark.asyncio
async def test_missing_final_scores_seeded_from_vector_score(pipeline, mock_retriever, rows_factory):
    rows = rows_factory(count=3, start_sim=0.95)
    for row in rows:
        del row["finalScore"]
    mock_retriever.search.return_value = rows

    result = await pipeline.run("What is bail?")

    assert [c.final_score for c in result.candidates] == pytest.approx([0.95, 0.9, 0.85])


@pytest.mark.asyncio
async def test_no_reranker_strategy(mock_retriever, generator, rows_factory):
    context = PipelineContext.from_settings(Settings(reranker="none", performance_logging=True))
    mock_retriever.search.return_value = rows_factory(count=3, start_sim=0.1)
    pipeline = QueryPipeline(mock_retriever, context=context, generator=generator)

    result = await pipeline.run("What is bail?")

    assert pipeline.reranker is None
    assert result.early_terminated is False
    assert result.reranked is False
    assert len(result.candidates) == 3


@pytest.mark.asyncio
async def test_normalization_can_be_disabled(mock_retriever, generator):
    context = PipelineContext.from_settings(Settings(reranker="none", normalize_questions=False))
    pipeline = QueryPipeline(mock_retriever, context=context, generator=generator)

    await pipeline.run("What is bail?")

    assert mock_retriever.search.await_args.args[0].normalized_question == "What is bail?"


@pytest.mark.asyncio
async def test_empty_question_does_nothing(pipeline, mock_retriever, generator):
    result = await pipeline.run("   ")

    assert result.route == "unknown"
    mock_retriever.search.assert_not_awaited()
    generator.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_stage_timers_and_query_recorded(pipeline, pipeline_context):
    await pipeline.run("What is bail?")

    metrics = pipeline_context.monitor.metrics
    assert metrics.total_queries == 1
    assert metrics.stage_latency["db_query"] > 0
    assert metrics.stage_latency["reranking"] > 0
    assert metrics.cache_misses["cross_encoder"] == 1


@pytest.mark.asyncio
async def test_retriever_errors_propagate(pipeline, mock_retriever, pipeline_context):
    mock_retriever.search.side_effect = ConnectionError("database unavailable")

    with pytest.raises(ConnectionError):
        await pipeline.run("What is bail?")

    assert pipeline_context.monitor.metrics.total_queries == 1


def test_create_reranker_binds_context_caches(pipeline_context):
    cross_encoder = create_reranker("cross_encoder", pipeline_context)
    llm = create_reranker("llm", pipeline_context)

    assert isinstance(cross_encoder, CrossEncoderReranker)
    assert cross_encoder.cache is pipeline_context.cross_encoder_cache
    assert isinstance(llm, LLMReranker)
    assert llm.cache is pipeline_context.llm_rerank_cache
    assert llm.monitor is pipeline_context.monitor
    assert create_reranker("none", pipeline_context) is None

    with pytest.raises(ValueError):
        create_reranker("bm25", pipeline_context)


def test_contexts_are_isolated(settings):
    first = PipelineContext.from_settings(settings)
    second = PipelineContext.from_settings(settings)

    first.sqg_cache.set("sqg:q", STRUCTURED)

    assert second.sqg_cache.get("sqg:q") is None
    assert first.monitor is not second.monitor


def test_clear_caches(pipeline_context):
    pipeline_context.sqg_cache.set("sqg:q", STRUCTURED)
    pipeline_context.cross_encoder_cache.set("ce:q::a", {"a": 1.0})

    pipeline_context.clear_caches()

    assert len(pipeline_context.sqg_cache) == 0
    assert len(pipeline_context.cross_encoder_cache) == 0


def test_default_context_is_shared():
    assert get_pipeline_context() is get_pipeline_context()


def test_estimate_confidence_uses_best_vector_score():
    candidates = [
        Candidate(entry_id="a", vector_sim=0.3),
        Candidate(entry_id="b", similarity=0.7),
        Candidate(entry_id="c"),
    ]

    assert estimate_confidence(candidates) == 0.7
    assert estimate_confidence([]) == 0.0


def test_seed_final_scores_keeps_existing():
    seeded = seed_final_scores(
        [Candidate(entry_id="a", vector_sim=0.4, final_score=0.9), Candidate(entry_id="b", vector_sim=0.4)]
    )

    assert [c.final_score for c in seeded] == [0.9, 0.4]


def test_retriever_protocol():
    class Store:
        async def search(self, request):
            return []

    assert isinstance(Store(), HybridRetriever)
