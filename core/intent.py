"""
core/intent.py — First-stage prompt: question → QueryIntent.

The model is asked for one of two shapes:

  structured : {"location": "williamsburg" | null, "searchTerms": "musicians"}
  direct     : a short plain-text reply (greetings, off-topic questions)

parse_intent() decides which one came back by decoding, never by looking at
the first character.  Anything that fails to decode as the structured shape
is a DirectAnswer carrying the raw text, so malformed output cannot crash
the pipeline.

Location policy
---------------
Boroughs are matched through the search terms, not geocoded, so a borough
(or the whole city) as location becomes None.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from core.llm import CompletionGateway
from core.records import BOROUGHS, DirectAnswer, QueryIntent, StructuredQuery

logger = logging.getLogger(__name__)

_EMPTY_REPLY = "Sorry, I didn't catch that. Try asking about a street, a person or a neighborhood."

_NULL_LOCATIONS = frozenset({"", "null", "none", "n/a", "nyc", "new york", "new york city"})

# Words that match nearly every record; they only dilute the search.
_GENERIC_TERMS = frozenset({
    "street", "streets", "st", "avenue", "avenues", "ave", "road", "rd",
    "way", "place", "pl", "boulevard", "blvd", "corner", "square", "plaza",
    "lane", "drive", "honorary", "honored", "honoured", "honoring", "honor",
    "named", "name", "names", "naming", "co-named", "conamed", "sign", "signs",
    "nyc", "new", "york", "city",
})

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```", re.DOTALL)
_DECODER = json.JSONDecoder()

_INTENT_PROMPT = """\
You are an intelligent assistant with access to a dataset about NYC honorary street names.
The user has asked: "{question}"

### Your Task:
1. Decide whether the question can be answered from the dataset. Assume it is about
   NYC honorary street names even if it does not say so.
2. If it is, reply ONLY with a JSON object: {{"location": <string or null>, "searchTerms": <string>}}
3. If the question is purely conversational or unrelated (greetings, small talk),
   reply with one short, friendly sentence of plain text instead of JSON.

To extract "location":
- If the question mentions a neighborhood, specific street or landmark, extract it.
- Boroughs (manhattan, brooklyn, queens, bronx, staten island) are NOT locations: use null.
- Otherwise use null.

To extract "searchTerms" for vector search:
- Identify key concepts (e.g. musicians, artists, scientists, activists, firefighters).
- Expand broad concepts into related terms ("creative people" → "artists, musicians").
- Keep a mentioned borough in the terms.
- Leave out generic words such as "street", "way", "honored" or "named".

Example 1:
User Question: "Street names about love?"
Your response: {{"location": null, "searchTerms": "love"}}

Example 2:
User Question: "Street names about musicians in WILLIAMSBURG?"
Your response: {{"location": "williamsburg", "searchTerms": "musicians"}}

Example 3:
User Question: "Streets honoring firefighters in Brooklyn?"
Your response: {{"location": null, "searchTerms": "firefighters brooklyn"}}

Example 4:
User Question: "Where is Walt Whitman Way?"
Your response: {{"location": null, "searchTerms": "walt whitman"}}

Example 5:
User Question: "How are you feeling?"
Your response: I'm doing great, thanks! Ask me about any of NYC's honorary street names.
"""


class MalformedModelOutput(Exception):
    """Raised when a completion does not decode to the structured-query shape."""


# ---------------------------------------------------------------------------
# Prompt + parsing
# ---------------------------------------------------------------------------

def build_intent_prompt(question: str) -> str:
    return _INTENT_PROMPT.format(question=question.strip().replace('"', "'"))


def _strip_fence(text: str) -> str:
    m = _FENCE_RE.match(text)
    return m.group(1).strip() if m else text


def normalise_location(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    loc = " ".join(value.lower().split())
    if loc in _NULL_LOCATIONS:
        return None
    bare = loc[4:] if loc.startswith("the ") else loc
    if bare in BOROUGHS:
        return None
    return loc


def normalise_terms(value: str) -> str:
    """Lowercase, drop punctuation and generic dataset vocabulary."""
    words = re.sub(r"[^\w\s'-]", " ", value.lower()).split()
    kept = [w for w in words if w not in _GENERIC_TERMS]
    return " ".join(kept or words)


def decode_structured(raw: str) -> StructuredQuery:
    """
    Decode raw model output as a StructuredQuery or raise MalformedModelOutput.

    Only the leading JSON value is read; chat models often append a sentence
    after the object.
    """
    try:
        data, _ = _DECODER.raw_decode(_strip_fence(raw.strip()))
    except json.JSONDecodeError as exc:
        raise MalformedModelOutput(f"not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedModelOutput(f"expected an object, got {type(data).__name__}")

    terms = data.get("searchTerms")
    if not isinstance(terms, str) or not terms.strip():
        raise MalformedModelOutput("searchTerms missing or empty")

    return StructuredQuery(
        search_terms  = normalise_terms(terms),
        location_name = normalise_location(data.get("location")),
    )


def parse_intent(raw: str) -> QueryIntent:
    """Structured query when the output decodes, otherwise a direct answer."""
    text = (raw or "").strip()
    if not text:
        return DirectAnswer(_EMPTY_REPLY)
    try:
        return decode_structured(text)
    except MalformedModelOutput as e:
        logger.debug("Treating completion as direct answer (%s)", e)
        return DirectAnswer(text)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class IntentExtractor:
    def __init__(self, gateway: CompletionGateway) -> None:
        self._gateway = gateway

    def extract(self, question: str) -> QueryIntent:
        """
        Ask the completion service to classify `question`.
        UpstreamUnavailable propagates: without intent there is nothing to do.
        """
        raw = self._gateway.complete(build_intent_prompt(question))
        intent = parse_intent(raw)
        logger.debug("intent for %r: %r", question, intent)
        return intent
