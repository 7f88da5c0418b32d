"""
ask.py — Ask the honorary street index a question from the command line.

Usage:
    python ask.py "Where is Walt Whitman Way?"
    python ask.py "Streets honoring musicians in Williamsburg" --json
    python ask.py "..." --config path/to/config.yaml -v
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from config import load_config
from core.pipeline import QueryResolutionFailed, build_pipeline
from core.retrieval import RetrievalFailed

logger = logging.getLogger("ask")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ask about NYC honorary street names")
    parser.add_argument("question", help="Free-text question")
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to config.yaml (default: work dir discovery)")
    parser.add_argument("--json", action="store_true", dest="as_json",
                        help="Print the full result as JSON")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s — %(message)s",
    )

    cfg = load_config(config_file=args.config)
    pipeline = build_pipeline(cfg)

    try:
        entries = pipeline.retrieval.all_records()
    except RetrievalFailed as e:
        logger.warning("Full dataset unavailable: %s", e)
        entries = []

    try:
        result = pipeline.resolve_query(args.question, entries)
    except QueryResolutionFailed as e:
        print(f"Sorry, something went wrong, please try again. ({e})", file=sys.stderr)
        return 1

    if args.as_json:
        print(json.dumps({
            "answer":         result.answer_text,
            "filtered_count": result.filtered_count,
            "records":        [r.to_dict() for r in result.filtered_records],
        }, indent=2, ensure_ascii=False))
        return 0

    print(result.answer_text)
    print(f"\nShowing {result.filtered_count} of {len(entries)} total entries")
    for i, r in enumerate(result.filtered_records[:20], 1):
        score = f"  score={r.relevance_score:.3f}" if r.relevance_score is not None else ""
        borough = f" ({r.borough.title()})" if r.borough else ""
        print(f"  [{i}] {r.honorary_name}{borough}{score}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
