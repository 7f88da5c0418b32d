"""
core/ranker.py — Pick the records that go into the summary prompt.

rank_and_truncate(records, limit=10)
  len(records) <= limit : same records, same order
  otherwise             : stable sort by relevance_score DESC (None → 0),
                          first `limit` records

Only the summary sees the truncated list; callers keep the full list for
the map.
"""

from __future__ import annotations

from core.records import StreetRecord

SUMMARY_LIMIT = 10


def _score(record: StreetRecord) -> float:
    return record.relevance_score if record.relevance_score is not None else 0.0


def rank_and_truncate(records: list[StreetRecord], limit: int = SUMMARY_LIMIT) -> list[StreetRecord]:
    if limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")
    if len(records) <= limit:
        return list(records)
    # sorted() is stable, so equal scores keep their original order.
    return sorted(records, key=_score, reverse=True)[:limit]
