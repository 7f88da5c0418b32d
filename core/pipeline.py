"""
core/pipeline.py — Query-resolution pipeline.

resolve_query(question, entries) -> PipelineResult

  START
    └─ IntentExtractor.extract(question)
         ├─ DirectAnswer    → TERMINAL {text, entries unchanged, len(entries)}
         └─ StructuredQuery → RetrievalGateway.retrieve(terms, location)
                               (RetrievalFailed → [] and carry on)
                             → rank_and_truncate(retrieved)   [summary only]
                             → SummarySynthesizer.synthesize(top, question)
                             → TERMINAL {summary, retrieved (untruncated), len}

Anything unexpected escaping a stage becomes QueryResolutionFailed; that is
the only error a caller has to handle.  Each call is independent: nothing is
kept between queries except the shared index connection.

build_pipeline(cfg) wires the concrete gateways (used by server.py / ask.py).
"""

from __future__ import annotations

import logging
import time

import httpx

from config import cfg as _module_cfg, Config
from core.compose import SummarySynthesizer
from core.geocode import Geocoder
from core.intent import IntentExtractor
from core.llm import CompletionGateway
from core.ranker import rank_and_truncate
from core.records import DirectAnswer, PipelineResult, StreetRecord
from core.retrieval import RetrievalFailed, RetrievalGateway
from core.vectors import IndexConnection, StreetIndex

logger = logging.getLogger(__name__)


class QueryResolutionFailed(Exception):
    """Raised when a query cannot be resolved at all."""


class QueryPipeline:
    def __init__(
        self,
        extractor: IntentExtractor,
        retrieval: RetrievalGateway,
        synthesizer: SummarySynthesizer,
        summary_limit: int = 10,
    ) -> None:
        self.extractor = extractor
        self.retrieval = retrieval
        self.synthesizer = synthesizer
        self.summary_limit = summary_limit

    def _retrieve(self, search_terms: str, location_name: str | None) -> list[StreetRecord]:
        try:
            return self.retrieval.retrieve(search_terms, location_name)
        except RetrievalFailed as e:
            logger.warning("Retrieval failed, answering with no records: %s", e)
            return []

    def resolve_query(self, question: str, entries: list[StreetRecord]) -> PipelineResult:
        if not question or not question.strip():
            raise ValueError("question must be non-empty")

        t0 = time.perf_counter()
        try:
            intent = self.extractor.extract(question)

            if isinstance(intent, DirectAnswer):
                result = PipelineResult(intent.text, list(entries))
                path = "direct"
            else:
                retrieved = self._retrieve(intent.search_terms, intent.location_name)
                top = rank_and_truncate(retrieved, self.summary_limit)
                summary = self.synthesizer.synthesize(top, question)
                result = PipelineResult(summary, retrieved)
                path = "search"
        except Exception as exc:
            logger.error("Query resolution failed for %r: %s", question, exc)
            raise QueryResolutionFailed(str(exc)) from exc

        logger.info(
            "resolved %r via %s: %d records in %.0f ms",
            question, path, result.filtered_count, (time.perf_counter() - t0) * 1000,
        )
        return result


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

def build_pipeline(
    cfg_obj: Config | None = None,
    connection: IndexConnection | None = None,
    client: httpx.Client | None = None,
) -> QueryPipeline:
    """Wire the Ollama, LanceDB and Nominatim clients into a QueryPipeline."""
    _cfg = cfg_obj or _module_cfg
    _client = client or httpx.Client(timeout=_cfg.ollama_timeout)
    _conn = connection or IndexConnection(_cfg.index_uri, _cfg.index_table)

    llm = CompletionGateway(_cfg, _client)
    index = StreetIndex(_conn, _cfg, _client)
    geocoder = Geocoder(_cfg, httpx.Client(timeout=_cfg.geocoder_timeout))

    return QueryPipeline(
        extractor     = IntentExtractor(llm),
        retrieval     = RetrievalGateway(index, geocoder, _cfg),
        synthesizer   = SummarySynthesizer(llm),
        summary_limit = _cfg.summary_limit,
    )
