"""Pydantic models for the Villy retrieval core.

This module defines the structured query, retrieval candidate and handler
response models that flow between the classifier, the structured query
generator, the rerankers and the query pipeline.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Urgency = Literal["low", "medium", "high"]
URGENCY_LEVELS = ("low", "medium", "high")


class StructuredQuery(BaseModel):
    """Schema-shaped expansion of a free-text legal question."""

    normalized_question: str = Field(default="", description="Legally precise restatement of the question")
    keywords: List[str] = Field(default_factory=list, description="Terms expected in top-ranked entries")
    legal_topics: List[str] = Field(default_factory=list, description="Doctrinal buckets (bail, contracts, ...)")
    statutes_referenced: List[str] = Field(default_factory=list, description="Canonical citations mentioned")
    jurisdiction: str = Field(default="Philippines", description="Jurisdiction of the question")
    temporal_scope: str = Field(default="", description="Years, ranges, weekends or holidays mentioned")
    related_terms: List[str] = Field(default_factory=list, description="Synonyms for trigram recall")
    urgency: Urgency = Field(default="low", description="Procedural urgency")
    query_expansions: List[str] = Field(default_factory=list, description="Extra terms for semantic search")

    @field_validator("urgency", mode="before")
    @classmethod
    def coerce_urgency(cls, v: Any) -> str:
        """Unknown or missing urgency resolves to 'low'."""
        value = str(v or "").strip().lower()
        return value if value in URGENCY_LEVELS else "low"

    def search_terms(self) -> List[str]:
        """Keywords, related terms and expansions in order, without duplicates."""
        seen = set()
        terms = []
        for term in [*self.keywords, *self.related_terms, *self.query_expansions]:
            key = term.lower()
            if key not in seen:
                seen.add(key)
                terms.append(term)
        return terms


class Candidate(BaseModel):
    """One hybrid retrieval hit plus the scores attached by pipeline stages."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    entry_id: str
    title: Optional[str] = None
    type: Optional[str] = None
    canonical_citation: Optional[str] = None
    summary: Optional[str] = None
    text: Optional[str] = None
    fts_snippet: Optional[str] = None

    vector_sim: Optional[float] = Field(default=None, validation_alias=AliasChoices("vector_sim", "vectorSim"))
    similarity: Optional[float] = None
    lexsim: Optional[float] = None

    final_score: Optional[float] = Field(default=None, validation_alias=AliasChoices("final_score", "finalScore"))
    ce_score: Optional[float] = Field(default=None, validation_alias=AliasChoices("ce_score", "ceScore"))
    rr_score: Optional[float] = Field(default=None, validation_alias=AliasChoices("rr_score", "rrScore"))

    @field_validator("entry_id", mode="before")
    @classmethod
    def stringify_entry_id(cls, v: Any) -> str:
        return str(v)

    def vector_score(self) -> float:
        """Vector similarity, falling back to the generic similarity column."""
        value = self.vector_sim if self.vector_sim is not None else self.similarity
        return float(value or 0.0)

    def lexical_score(self) -> float:
        return float(self.lexsim or 0.0)

    def current_score(self) -> float:
        return float(self.final_score or 0.0)

    def has_content(self) -> bool:
        """True when there is displayable text a judge model can read."""
        return any((self.summary, self.text, self.fts_snippet))


class ClassificationResult(BaseModel):
    """Output of the intent classifier."""

    type: str
    handler: Optional[str] = None
    confidence: float
    original_query: str


class ListSource(BaseModel):
    """Entry returned by a list request."""

    entry_id: str
    type: Optional[str] = None
    title: Optional[str] = None
    canonical_citation: Optional[str] = None
    summary: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("entry_id", mode="before")
    @classmethod
    def stringify_entry_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("tags", mode="before")
    @classmethod
    def tags_default(cls, v: Any) -> List[str]:
        return list(v or [])


class HandlerResponse(BaseModel):
    """Answer produced without retrieval (meta and list handlers)."""

    answer: Optional[str] = None
    sources: List[ListSource] = Field(default_factory=list)
    skip_rag: bool = False


class ConversationContext(BaseModel):
    """Previous turn used to resolve follow-up questions."""

    question: Optional[str] = None
    answer: Optional[str] = None
    sources: List[Dict[str, Any]] = Field(default_factory=list)


class FollowUpResult(BaseModel):
    """Rewritten follow-up question."""

    enhanced_query: str
    should_use_rag: bool = True
    is_list_query: bool = False
    context_added: bool = False


class RetrievalRequest(BaseModel):
    """Input handed to the external hybrid retriever."""

    question: str
    normalized_question: str
    structured: StructuredQuery


class PipelineResult(BaseModel):
    """Outcome of one pipeline run, ready for the answer generator."""

    route: str
    question: str
    effective_question: str
    answer: Optional[str] = None
    sources: List[ListSource] = Field(default_factory=list)
    candidates: List[Candidate] = Field(default_factory=list)
    confidence: float = 0.0
    structured: Optional[StructuredQuery] = None
    reranked: bool = False
    rerank_method: Optional[str] = None
    early_terminated: bool = False
    latency_ms: float = 0.0
