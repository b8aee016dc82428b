"""
Prompt templates for the Villy retrieval core.

Two prompts live here:
- Structured Query Generator: expands a question into the StructuredQuery JSON schema
- LLM reranker: scores a shortlist of candidates 0-100 against the question

Both ask the model for strict JSON only. Messages are built directly rather
than through ChatPromptTemplate because the prompts embed literal JSON.
"""

import json
from typing import Any, Dict, List, Sequence

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage


# ==============================================================================
# STRUCTURED QUERY GENERATOR
# ==============================================================================

SQG_SYSTEM_PROMPT = """You are a Structured Query Generator for a RAG legal assistant specializing in Philippine law.

Your task is to transform a user's natural language question into a structured JSON query that improves hybrid retrieval (pgvector + trigram).

Extract legal topics, keywords, canonical citations, temporal constraints, and synonyms.

**RULES:**
- Do NOT answer the question.
- Do NOT provide legal advice.
- ONLY produce the JSON shape specified below.
- Do NOT add commentary outside the JSON.
- Do NOT fabricate statute sections if not explicitly mentioned.
- Do NOT assert foreign law unless asked explicitly.
- If no statute is referenced, output "statutes_referenced": []
- If user intent is unclear, keep normalized_question conservative.

**OUTPUT SCHEMA:**
{
  "normalized_question": "Cleaned, legally-precise restatement of what the user is asking",
  "keywords": ["Extracted terms that should appear in top-ranked docs"],
  "legal_topics": ["Common doctrinal buckets like 'homicide', 'labor law', 'contracts', 'bail', 'criminal procedure'"],
  "statutes_referenced": ["Canonical citations if user mentions Rule X Sec Y, RA Z Sec W, RPC Art N, etc."],
  "jurisdiction": "Philippines (default) unless context changes",
  "temporal_scope": "Extract years, date ranges, weekends/holidays if mentioned",
  "related_terms": ["Common synonyms to improve trigram recall"],
  "urgency": "low | medium | high (for prioritizing procedural rules like bail, warrants, custody)",
  "query_expansions": ["LLM-generated terms that should improve semantic search"]
}

**PHILIPPINE LAW CONTEXT:**
Common legal domains to recognize:
- Criminal law (RPC - Revised Penal Code)
- Rules of Court (ROC) - procedural rules
- Civil law (Civil Code, Family Code)
- Labor law (Labor Code)
- Special laws (RA, BP, PD, EO)
- Constitutional law (1987 Constitution)
- Administrative law (DOJ circulars, agency rules)
- Local ordinances

Common statute patterns:
- "Rule [number] Section [number]" → Rules of Court
- "RA [number]" or "Republic Act [number]" → statute
- "RPC Art. [number]" or "Article [number]" → Revised Penal Code
- "BP [number]" → Batas Pambansa
- "PD [number]" → Presidential Decree
- "G.R. No. [number]" → Supreme Court case

**EXAMPLES:**

User: "Hey, what's the rule when computing deadlines if the last day falls on a Sunday?"
Output:
{
  "normalized_question": "How are legal filing deadlines computed when the final day falls on a weekend?",
  "keywords": ["computation of time", "filing deadlines", "legal periods", "weekend"],
  "legal_topics": ["procedural law", "computation of time"],
  "statutes_referenced": ["Rules of Court Rule 22 Section 1"],
  "jurisdiction": "Philippines",
  "temporal_scope": "weekend",
  "related_terms": ["time computation", "period extension", "deadline computation"],
  "urgency": "low",
  "query_expansions": ["judicial deadlines", "legal periods computation", "reckoning of period"]
}

User: "What is bail?"
Output:
{
  "normalized_question": "What is the definition and legal framework for bail?",
  "keywords": ["bail", "security", "release"],
  "legal_topics": ["criminal procedure", "bail"],
  "statutes_referenced": ["Rules of Court Rule 114"],
  "jurisdiction": "Philippines",
  "temporal_scope": "",
  "related_terms": ["bond", "provisional liberty", "release on recognizance"],
  "urgency": "high",
  "query_expansions": ["bail application", "bail conditions", "right to bail"]
}

User: "penalties for theft in the Philippines"
Output:
{
  "normalized_question": "What are the penalties for the crime of theft under Philippine law?",
  "keywords": ["theft", "penalties", "punishment"],
  "legal_topics": ["criminal law", "crimes against property", "theft"],
  "statutes_referenced": ["RPC Article 308", "RPC Article 309"],
  "jurisdiction": "Philippines",
  "temporal_scope": "",
  "related_terms": ["robbery", "larceny", "property crimes", "prisión mayor"],
  "urgency": "low",
  "query_expansions": ["theft penalties", "punishment for theft", "imprisonment for theft"]
}

User: "Can a minor be arrested without a warrant?"
Output:
{
  "normalized_question": "What are the rules for warrantless arrest of minors under Philippine law?",
  "keywords": ["warrantless arrest", "minor", "juvenile"],
  "legal_topics": ["criminal procedure", "arrest", "juvenile justice"],
  "statutes_referenced": ["Rules of Court Rule 113 Section 5", "RA 9344"],
  "jurisdiction": "Philippines",
  "temporal_scope": "",
  "related_terms": ["in flagrante delicto", "hot pursuit", "children in conflict with law"],
  "urgency": "high",
  "query_expansions": ["arrest without warrant juvenile", "minor apprehension", "child arrest procedures"]
}

Respond ONLY with valid JSON matching the schema above."""


def build_sqg_messages(question: str) -> List[BaseMessage]:
    """Messages for one structured query generation call."""
    return [
        SystemMessage(content=SQG_SYSTEM_PROMPT),
        HumanMessage(content=question),
    ]


# ==============================================================================
# LLM RERANKER
# ==============================================================================

RERANK_SYSTEM_PROMPT = (
    "You are a precise reranker. Respond only with JSON: an object "
    '{"scores": [{"id": "<candidate id>", "score": <0-100>}]} covering every item.'
)

RERANK_TASK = "Relevance scoring for legal RAG"
RERANK_SCORING = (
    "Return JSON array of {id, score} with score 0-100. "
    "Directly answers = 95-100, partial = 60-80, unrelated = 0-20."
)
RERANK_CUES = "Prefer exact matches on rule/section/article numbers and quoted definitions."
RERANK_ITEM_SNIPPET_CHARS = 1500


def build_rerank_payload(query: str, items: Sequence[Dict[str, Any]]) -> str:
    """Compact JSON instruction payload for the reranker.

    Args:
        query: User question
        items: Dicts with id, title, type, citation and snippet

    Returns:
        JSON string sent as the user message
    """
    doc_list = [
        {
            "id": item.get("id"),
            "title": item.get("title") or "",
            "type": item.get("type") or "",
            "citation": item.get("citation") or "",
            "snippet": (item.get("snippet") or "")[:RERANK_ITEM_SNIPPET_CHARS],
            "rank": rank,
        }
        for rank, item in enumerate(items, start=1)
    ]
    instructions = {
        "task": RERANK_TASK,
        "query": query,
        "scoring": RERANK_SCORING,
        "cues": RERANK_CUES,
        "items": doc_list,
    }
    return json.dumps(instructions, ensure_ascii=False)


def build_rerank_messages(query: str, items: Sequence[Dict[str, Any]]) -> List[BaseMessage]:
    """Messages for one LLM rerank call."""
    return [
        SystemMessage(content=RERANK_SYSTEM_PROMPT),
        HumanMessage(content=build_rerank_payload(query, items)),
    ]
