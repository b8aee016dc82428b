"""Embedding text builder for knowledge-base entries.

Flattens an entry's core, type-specific and relation fields into one
labelled text blob that is fed to the embedding model. The field order is
fixed so that re-embedding the same entry always produces the same text.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel

LIST_SEPARATOR = " • "
LINE_SEPARATOR = "\n\n"
PHASE_PART_SEPARATOR = " | "

RELATION_KEYS = ("type", "entry_id", "citation", "title", "url", "note")
STEP_BASIS_KEYS = ("type", "entry_id", "citation", "title", "url")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _stringify(value: Any) -> str:
    """Scalar rendering: lists comma-joined, booleans lowercase, None empty."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(v) for v in value)
    return _text(value)


def _scalar(value: Any) -> str:
    # False and empty values are skipped; 0 is kept
    if value is False:
        return ""
    return _stringify(value)


def join_strings(values: Any) -> str:
    """Join non-blank list items with a bullet separator."""
    if not isinstance(values, (list, tuple)):
        return ""
    return LIST_SEPARATOR.join(s for s in (_text(v) for v in values) if s.strip())


def _relation_token(relation: Any, keys: Tuple[str, ...]) -> str:
    if not relation:
        return ""
    if not isinstance(relation, Mapping):
        return _text(relation)

    parts = []
    for key in keys:
        value = relation.get(key)
        if not value:
            continue
        parts.append(f"[{_text(value)}]" if key == "type" else _text(value))
    return " ".join(parts)


def flatten_relations(relations: Any, separator: str = LIST_SEPARATOR, keys: Tuple[str, ...] = RELATION_KEYS) -> str:
    """``[type] entry_id citation title url note`` per relation."""
    if not isinstance(relations, (list, tuple)):
        return ""
    return separator.join(token for token in (_relation_token(r, keys) for r in relations) if token)


def flatten_phases(phases: Any) -> str:
    """One ``Phase <name>: ...`` line per checklist step."""
    if not isinstance(phases, (list, tuple)):
        return ""

    lines: List[str] = []
    for phase in phases:
        if not isinstance(phase, Mapping):
            continue
        name = _text(phase.get("name"))
        label = f"Phase {name}" if name else "Phase"

        for step in phase.get("steps") or []:
            if not isinstance(step, Mapping):
                continue
            bits = []
            if step.get("text"):
                bits.append(_text(step["text"]))
            if step.get("condition"):
                bits.append(f"cond: {_text(step['condition'])}")
            if step.get("deadline"):
                bits.append(f"deadline: {_text(step['deadline'])}")
            evidence = join_strings(step.get("evidence_required"))
            if evidence:
                bits.append(f"evidence: {evidence}")
            bases = flatten_relations(step.get("legal_bases"), PHASE_PART_SEPARATOR, STEP_BASIS_KEYS)
            if bases:
                bits.append(f"bases: {bases}")
            if step.get("failure_state"):
                bits.append(f"fail: {_text(step['failure_state'])}")

            lines.append(f"{label}: {PHASE_PART_SEPARATOR.join(bits)}")

    return "\n".join(lines)


def _fine_schedule(value: Any) -> str:
    if value is None or isinstance(value, str):
        return _text(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


Formatter = Optional[Callable[[Any], str]]

# (label, field, formatter); None means plain scalar
EMBEDDING_FIELDS: Tuple[Tuple[str, str, Formatter], ...] = (
    # Core
    ("Title", "title", None),
    ("Type", "type", None),
    ("Canonical Citation", "canonical_citation", None),
    ("Section", "section_id", None),
    ("Status", "status", None),
    ("Jurisdiction", "jurisdiction", None),
    ("Law Family", "law_family", None),
    ("Summary", "summary", None),
    ("Text", "text", None),
    ("Tags", "tags", join_strings),
    ("Source URLs", "source_urls", join_strings),
    ("Effective Date", "effective_date", None),
    ("Amendment Date", "amendment_date", None),
    ("Last Reviewed", "last_reviewed", None),
    # Statute / ordinance
    ("Elements", "elements", join_strings),
    ("Penalties", "penalties", join_strings),
    ("Defenses", "defenses", join_strings),
    ("Prescriptive Period", "prescriptive_period", None),
    ("Standard of Proof", "standard_of_proof", None),
    # Rules of Court
    ("Rule No", "rule_no", None),
    ("Section No", "section_no", None),
    ("Triggers", "triggers", join_strings),
    ("Time Limits", "time_limits", join_strings),
    ("Required Forms", "required_forms", join_strings),
    # Agency / DOJ / executive issuances
    ("Circular No", "circular_no", None),
    ("Applicability", "applicability", join_strings),
    ("Issuance No", "issuance_no", None),
    ("Instrument No", "instrument_no", None),
    ("Supersedes", "supersedes", flatten_relations),
    # PNP SOP
    ("Steps Brief", "steps_brief", join_strings),
    ("Forms Required", "forms_required", join_strings),
    ("Failure States", "failure_states", join_strings),
    # LTO / traffic
    ("Violation Code", "violation_code", None),
    ("Violation Name", "violation_name", None),
    ("License Action", "license_action", None),
    ("Fine Schedule", "fine_schedule", _fine_schedule),
    ("Apprehension Flow", "apprehension_flow", join_strings),
    # Incident checklist (phases are emitted unlabelled after "Incident")
    ("Incident", "incident", None),
    ("", "phases", flatten_phases),
    ("Forms", "forms", join_strings),
    ("Handoff", "handoff", join_strings),
    ("Rights Callouts", "rights_callouts", join_strings),
    # Rights advisory
    ("Rights Scope", "rights_scope", None),
    ("Advice Points", "advice_points", join_strings),
    # Constitution
    ("Topics", "topics", join_strings),
    ("Jurisprudence", "jurisprudence", join_strings),
    # Relations
    ("Legal Bases", "legal_bases", flatten_relations),
    ("Related Sections", "related_sections", flatten_relations),
)


def _as_mapping(entry: Any) -> Dict[str, Any]:
    if entry is None:
        return {}
    if isinstance(entry, BaseModel):
        return entry.model_dump()
    return dict(entry)


def _render(fields: Iterable[Tuple[str, str, Formatter]], data: Mapping[str, Any]) -> List[str]:
    lines = []
    for label, field, formatter in fields:
        value = data.get(field)
        rendered = formatter(value) if formatter else _scalar(value)
        rendered = rendered.strip() if label else rendered
        if not rendered.strip():
            continue
        lines.append(f"{label}: {rendered}" if label else rendered)
    return lines


def build_embedding_text(entry: Any) -> str:
    """Build the embedding text for a knowledge-base entry.

    Args:
        entry: Mapping or pydantic model with entry fields; unknown fields are ignored

    Returns:
        ``Label: value`` lines for every non-empty field, separated by blank lines

    Example:
        >>> build_embedding_text({"title": "Bail", "tags": ["bail", "rule 114"]})
        'Title: Bail\\n\\nTags: bail • rule 114'
    """
    return LINE_SEPARATOR.join(_render(EMBEDDING_FIELDS, _as_mapping(entry)))
