#!/usr/bin/env python3
"""
export_embedding_texts.py - Export embedding texts for knowledge-base entries

Reads exported KB entries (a JSON list, or an object with an "entries" list)
and writes one JSON line per entry with the text that the embedding model
should see. Used to re-embed the corpus offline after the embedding text
layout changes.

Usage:
    python scripts/export_embedding_texts.py --input data/kb_entries.json --output data/embedding_texts.jsonl
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog
from dotenv import load_dotenv
from tqdm import tqdm

from api.tools.embedding_text import build_embedding_text

# Load environment variables from .env.local
load_dotenv(".env.local")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = structlog.get_logger()


def load_entries(input_file: Path) -> List[Dict[str, Any]]:
    """Load entries from a JSON list or an ``{"entries": [...]}`` export."""
    with open(input_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("entries", [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of entries in {input_file}")

    return [entry for entry in data if isinstance(entry, dict)]


def export_embedding_texts(entries: Sequence[Dict[str, Any]], output_file: Path, show_progress: bool = True) -> int:
    """Write ``{"entry_id", "embedding_text"}`` JSON lines.

    Returns:
        Number of lines written
    """
    output_file.parent.mkdir(parents=True, exist_ok=True)
    written = 0

    with open(output_file, "w", encoding="utf-8") as f:
        for entry in tqdm(entries, desc="Building embedding texts", disable=not show_progress):
            entry_id = entry.get("entry_id")
            if not entry_id:
                logger.warning("Skipping entry without entry_id", title=entry.get("title"))
                continue

            record = {"entry_id": str(entry_id), "embedding_text": build_embedding_text(entry)}
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
            written += 1

    return written


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Export embedding texts for KB entries as JSON lines")
    parser.add_argument("--input", type=Path, required=True, help="Entries JSON file")
    parser.add_argument("--output", type=Path, required=True, help="Output JSONL file")
    parser.add_argument("--quiet", action="store_true", help="Disable the progress bar")

    args = parser.parse_args(argv)

    try:
        entries = load_entries(args.input)
        logger.info("Loaded entries", count=len(entries), input=str(args.input))

        written = export_embedding_texts(entries, args.output, show_progress=not args.quiet)
        logger.info("Embedding texts exported", written=written, skipped=len(entries) - written, output=str(args.output))
        return 0

    except (OSError, ValueError) as e:
        logger.error("Export failed", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
