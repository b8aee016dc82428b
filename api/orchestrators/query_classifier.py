"""Intent classifier for incoming legal questions.

Routes each question to a handler before any retrieval happens:
meta questions about the assistant get canned answers, list requests are
served straight from the entry store, and follow-ups are rewritten with the
previous turn. Everything else goes through retrieval.

Intent rules are evaluated in table order and the first match wins, so the
order of INTENT_RULES is the priority order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

import structlog

from api.models import (
    ClassificationResult,
    ConversationContext,
    FollowUpResult,
    HandlerResponse,
    ListSource,
)

logger = structlog.get_logger(__name__)

DbQuery = Callable[[str, Sequence[Any]], Awaitable[Any]]

LEGAL_INTENTS = frozenset({"legal", "definition", "procedure", "analysis"})


@dataclass(frozen=True)
class IntentRule:
    """One row of the intent table."""

    type: str
    patterns: Tuple[Pattern[str], ...]
    handler: str

    def matches(self, question: str) -> bool:
        return any(pattern.search(question) for pattern in self.patterns)


def _rule(intent: str, *patterns: str, handler: Optional[str] = None) -> IntentRule:
    return IntentRule(
        type=intent,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        handler=handler or intent,
    )


INTENT_RULES: Tuple[IntentRule, ...] = (
    # Questions about the assistant itself; must precede definition/analysis
    _rule(
        "meta",
        r"\b(who are you|what are you|what can you do|what do you know|how do you work)\b",
        r"\b(help|guide|tutorial|instructions)\b",
        r"\b(what is (this|villy)|introduce yourself)\b",
    ),
    # Enumeration needs a list verb with a plural noun or a count; a bare
    # "Rule 114" or "the law on theft" is a lookup, not a list
    _rule(
        "list",
        r"\b(list|enumerate|give me|show me|tell me)\s+((\d+|all|some|many|few)\s+)?(republic acts|statutes|laws|rules|articles)\b",
        r"\b(list|enumerate|give me|show me)\s+(\d+|all|some|many|few)\s+(republic act|statute|law|rule|article)s?\b",
        r"^what are (the|all|some)\s+(republic acts|statutes|laws|rules( of court)?)(\s+in the philippines)?\s*\??$",
        r"\b(name|provide|suggest)\s+(\d+\s+)?(examples|republic acts|laws)\b",
    ),
    _rule(
        "follow_up",
        r"^(another|more|else|too|also|and|additionally)[\s\d]*",
        r"^(what about|how about|tell me about)",
        r"^(next|previous|other)",
    ),
    _rule(
        "definition",
        r"\b(what is|what are|define|meaning of|definition of)\b",
        r"\bexplain\b",
    ),
    _rule(
        "procedure",
        r"\b(how to|how do I|how can I|what is the process|procedure for|steps to)\b",
        r"\b(requirements?|needed|necessary|must)\b",
    ),
    _rule(
        "analysis",
        r"\b(penalty|penalties|punishment|sentence|imprisonment|fine)\b",
        r"\b(elements? of|constitutes?|liable|violation)\b",
        r"\b(rights?|obligations?|duties?|responsibilities?)\b",
    ),
)


def classify_query(question: Optional[str], rules: Sequence[IntentRule] = INTENT_RULES) -> ClassificationResult:
    """Classify a question by the first matching intent rule.

    Args:
        question: Raw user question
        rules: Ordered intent table (defaults to INTENT_RULES)

    Returns:
        ClassificationResult; "legal" with confidence 0.8 when nothing matches
    """
    q = str(question or "").strip()

    if not q:
        return ClassificationResult(type="unknown", handler=None, confidence=0.0, original_query=q)

    for rule in rules:
        if rule.matches(q):
            return ClassificationResult(type=rule.type, handler=rule.handler, confidence=1.0, original_query=q)

    return ClassificationResult(type="legal", handler="legal", confidence=0.8, original_query=q)


# ---------------------------------------------------------------------------
# Meta questions
# ---------------------------------------------------------------------------

IDENTITY_ANSWER = """I am **Villy**, a legal assistant specialized in **Philippine law**. I can help you understand:

• **Criminal law** (Revised Penal Code, special penal laws)
• **Rules of Court** (procedural rules, bail, arrest, evidence)
• **Civil law** (obligations, contracts, family code)
• **Constitutional law** (1987 Constitution, Bill of Rights)
• **Labor law** (Labor Code, employment rights)
• **Administrative law** (agency circulars, executive orders)
• **Special laws** (Republic Acts, Batas Pambansa, Presidential Decrees)

I can answer questions like:
- "What is bail?"
- "What are the elements of theft?"
- "What are the penalties for estafa?"
- "How to file a complaint?"
- "What are my rights when arrested?"

Ask me anything about Philippine law, and I'll provide accurate, cited answers based on official legal texts."""

CAPABILITIES_ANSWER = """I can help you with **Philippine law** in several ways:

**1. Legal Definitions**
Ask: "What is estafa?", "What is bail?", "What is probable cause?"

**2. Legal Requirements & Procedures**
Ask: "How to file a complaint?", "What are the requirements for bail?", "What is the process for arrest?"

**3. Legal Analysis**
Ask: "What are the elements of theft?", "What are the penalties for rape?", "What are defenses against libel?"

**4. Rights & Obligations**
Ask: "What are my rights when arrested?", "What are the rights of OFWs?", "What are labor rights?"

**5. Statute Lookups**
Ask: "What is Rule 114 Section 20?", "What is RA 7610?", "What is RPC Article 266-A?"

**Tips:**
- Be specific in your questions
- Mention statute numbers if you know them
- Ask follow-up questions for clarification
- I always cite my sources for accuracy"""

GENERIC_META_ANSWER = (
    "I am Villy, your Philippine law assistant. I can help you understand laws, statutes, "
    "rules of court, and legal procedures. Please ask me a specific legal question, such as "
    '"What is bail?" or "What are the penalties for theft?"'
)

_IDENTITY_RE = re.compile(r"who are you|what are you|introduce")
_CAPABILITIES_RE = re.compile(r"what can you do|help|guide")


def handle_meta_query(query: str) -> HandlerResponse:
    """Answer a question about the assistant without touching retrieval."""
    q = str(query or "").lower()

    if _IDENTITY_RE.search(q):
        answer = IDENTITY_ANSWER
    elif _CAPABILITIES_RE.search(q):
        answer = CAPABILITIES_ANSWER
    else:
        answer = GENERIC_META_ANSWER

    return HandlerResponse(answer=answer, sources=[], skip_rag=True)


# ---------------------------------------------------------------------------
# List requests
# ---------------------------------------------------------------------------

DEFAULT_LIST_COUNT = 5
MAX_LIST_COUNT = 20
LIST_SUMMARY_CHARS = 150

LIST_QUERY_SQL = """
SELECT entry_id, type, title, canonical_citation, summary, tags
FROM kb_entries
WHERE ($1::text IS NULL OR type = $1)
  AND ($2::text IS NULL OR law_family = $2)
  AND status = 'active'
  AND verified = true
ORDER BY
  (CASE WHEN summary IS NOT NULL AND summary != '' THEN 1 ELSE 0 END) DESC,
  RANDOM()
LIMIT $3
"""

NO_LIST_RESULTS_ANSWER = (
    "I couldn't find specific entries matching your request. Please try a more specific question, "
    'such as "What is bail?" or "What are the elements of theft?"'
)

# Count next to the list verb ("list 3 ...") or before the noun ("3 statutes")
_LIST_COUNT_RE = re.compile(
    r"\b(?:list|enumerate|give me|show me|tell me|name|provide|suggest)\s+(\d+)\b"
    r"|\b(\d+)\s+(?:republic acts?|statutes?|laws?|rules?|articles?|examples?|provisions?|penal code)\b"
)

# (pattern, entry type, law family); first match wins
_LIST_FILTERS: Tuple[Tuple[Pattern[str], str, Optional[str]], ...] = (
    (re.compile(r"republic act", re.IGNORECASE), "statute_section", "Republic Act"),
    (re.compile(r"rules? of court|roc", re.IGNORECASE), "rule_of_court", None),
    (re.compile(r"penal code|rpc|criminal law", re.IGNORECASE), "statute_section", "Revised Penal Code"),
    (re.compile(r"constitution", re.IGNORECASE), "constitution_provision", None),
)


def parse_list_request(query: str) -> Tuple[int, Optional[str], Optional[str]]:
    """Extract (limit, entry type, law family) from a list request."""
    q = str(query or "").lower()

    count_match = _LIST_COUNT_RE.search(q)
    requested = int(count_match.group(1) or count_match.group(2)) if count_match else DEFAULT_LIST_COUNT
    limit = min(requested, MAX_LIST_COUNT)

    for pattern, entry_type, law_family in _LIST_FILTERS:
        if pattern.search(q):
            return limit, entry_type, law_family
    return limit, None, None


def _rows_from(result: Any) -> List[Dict[str, Any]]:
    if result is None:
        return []
    rows = getattr(result, "rows", None)
    if rows is None and isinstance(result, dict):
        rows = result.get("rows")
    if rows is None and isinstance(result, (list, tuple)):
        rows = result
    return [dict(row) for row in (rows or [])]


def _format_list_item(index: int, entry: Dict[str, Any]) -> str:
    citation = entry.get("canonical_citation") or ""
    summary = entry.get("summary") or ""
    if summary:
        ellipsis = "..." if len(summary) > LIST_SUMMARY_CHARS else ""
        summary = f" - {summary[:LIST_SUMMARY_CHARS]}{ellipsis}"
    return f"{index}. **{entry.get('title')}** ({citation}){summary}"


async def handle_list_query(query: str, db_query: DbQuery) -> HandlerResponse:
    """Serve an enumeration request from the entry store.

    Zero rows or a failed query return skip_rag=False so the caller falls
    through to normal retrieval.
    """
    limit, entry_type, law_family = parse_list_request(query)

    try:
        result = await db_query(LIST_QUERY_SQL, [entry_type, law_family, limit])
        entries = _rows_from(result)
    except Exception as e:
        logger.warning("List query failed, falling back to retrieval", stage="list_query", error=str(e))
        return HandlerResponse(answer=None, sources=[], skip_rag=False)

    if not entries:
        logger.info("List query returned no entries", stage="list_query", entry_type=entry_type, law_family=law_family)
        return HandlerResponse(answer=NO_LIST_RESULTS_ANSWER, sources=[], skip_rag=False)

    list_items = "\n\n".join(_format_list_item(i, entry) for i, entry in enumerate(entries, start=1))

    if entry_type:
        type_label = law_family or entry_type.replace("_", " ")
    else:
        type_label = "Philippine law entries"

    answer = (
        f"Here are **{len(entries)} {type_label}** from the knowledge base:\n\n{list_items}\n\n---\n\n"
        f"**Note**: For detailed information about any of these, please ask a specific question "
        f'(e.g., "What is {entries[0].get("title")}?").'
    )

    logger.info("List query served", stage="list_query", count=len(entries), entry_type=entry_type)
    return HandlerResponse(
        answer=answer,
        sources=[ListSource(**{k: entry.get(k) for k in ListSource.model_fields}) for entry in entries],
        skip_rag=True,
    )


# ---------------------------------------------------------------------------
# Follow-ups
# ---------------------------------------------------------------------------

_FOLLOW_UP_RE = re.compile(r"^(another|more|else|too|also|next|other|what about|how about)", re.IGNORECASE)
_NUMBERED_FOLLOW_UP_RE = re.compile(r"^(another|more)\s+(\d+)", re.IGNORECASE)

# Domain inferred from the previous question; first match wins
_FOLLOW_UP_DOMAINS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"republic act", re.IGNORECASE), "republic acts"),
    (re.compile(r"rule", re.IGNORECASE), "rules of court"),
    (re.compile(r"statute", re.IGNORECASE), "statutes"),
    (re.compile(r"penal", re.IGNORECASE), "criminal laws"),
)


def handle_follow_up_query(query: str, context: Optional[ConversationContext]) -> FollowUpResult:
    """Rewrite a follow-up using the previous question."""
    q = str(query or "").strip()

    if context is None or not context.question:
        return FollowUpResult(enhanced_query=q)

    if not _FOLLOW_UP_RE.search(q):
        return FollowUpResult(enhanced_query=q)

    numbered = _NUMBERED_FOLLOW_UP_RE.search(q)
    if numbered:
        previous = context.question.lower()
        domain = next((label for pattern, label in _FOLLOW_UP_DOMAINS if pattern.search(previous)), "laws")
        return FollowUpResult(
            enhanced_query=f"list {numbered.group(2)} {domain}",
            is_list_query=True,
        )

    return FollowUpResult(enhanced_query=f"{context.question} {q}", context_added=True)
