"""
core/compose.py — Summary synthesizer.

synthesize(records, question)
  1. Build a prompt listing each record (name, borough, limits or
     coordinates, biography) followed by the question.
  2. Call the completion gateway once.
  3. Return the trimmed answer.

Fallback (gateway unavailable, or blank answer):
  "No summary available."

The record list stays usable without prose, so a failed summary never fails
the query.
"""

from __future__ import annotations

import logging

from core.llm import CompletionGateway
from core.records import StreetRecord

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY = "No summary available."

_BIO_MAX = 500     # chars of biography per record in the prompt

_SUMMARY_PROMPT = """\
You are an AI that answers questions about NYC honorary street names.

The user asked: "{question}"

{records_block}

Answer the question in 2-4 sentences, mentioning the most relevant streets by name.
You may add well-known facts that are not in the list above, but introduce them
with "Beyond the dataset," so the reader can tell them apart.
"""

_NO_MATCHES = (
    "No matching honorary streets were found in the dataset. Say so briefly, "
    "then answer from general knowledge if you can."
)


def _describe(index: int, record: StreetRecord) -> str:
    where = record.limits
    if not where and record.location is not None:
        where = f"{record.location.latitude:.5f}, {record.location.longitude:.5f}"
    parts = [f"{index}. **{record.honorary_name or 'Unnamed'}**"]
    if record.borough:
        parts.append(f"({record.borough.title()})")
    if where:
        parts.append(f"at {where}")
    line = " ".join(parts)
    bio = record.biography.strip()
    if bio:
        if len(bio) > _BIO_MAX:
            bio = bio[:_BIO_MAX].rstrip() + "…"
        line += f" - {bio}"
    return line


def build_summary_prompt(records: list[StreetRecord], question: str) -> str:
    if records:
        block = "Matching honorary streets:\n" + "\n".join(
            _describe(i, r) for i, r in enumerate(records, 1)
        )
    else:
        block = _NO_MATCHES
    return _SUMMARY_PROMPT.format(
        question=question.strip().replace('"', "'"),
        records_block=block,
    )


class SummarySynthesizer:
    def __init__(self, gateway: CompletionGateway) -> None:
        self._gateway = gateway

    def synthesize(self, records: list[StreetRecord], question: str) -> str:
        prompt = build_summary_prompt(records, question)
        try:
            answer = self._gateway.complete(prompt)
        except Exception as e:
            logger.warning("Summary generation failed, using fallback: %s", e)
            return FALLBACK_SUMMARY
        answer = (answer or "").strip()
        if not answer:
            logger.warning("Empty summary from completion service, using fallback")
            return FALLBACK_SUMMARY
        return answer
