"""
server.py — Honorary Streets FastAPI server.

Endpoints
---------
  POST /api/query    — resolve a question → answer + filtered streets
  GET  /api/entries  — the full dataset (initial map load)
  GET  /health       — liveness check {status, ollama}

The lifespan hook is the composition root: it builds one QueryPipeline
(one index connection, shared HTTP clients) and keeps it on app.state.

Every query is appended as a JSON line to {work_dir}/logs/queries.log.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import cfg, ollama_available
from core.pipeline import QueryPipeline, QueryResolutionFailed, build_pipeline
from core.records import StreetRecord
from core.retrieval import RetrievalFailed

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_ERROR_MESSAGE = "Sorry, we encountered an error processing your request."


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg.ensure_dirs()
    if not ollama_available(cfg.ollama_base_url):
        logger.warning("Ollama not reachable at %s, queries will fail", cfg.ollama_base_url)
    app.state.pipeline = build_pipeline(cfg)
    logger.info("Honorary Streets server ready on port %s", cfg.server_port)
    yield
    logger.info("Honorary Streets server shutting down")


app = FastAPI(title="Honorary Streets", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline(request: Request) -> QueryPipeline:
    """FastAPI dependency: the pipeline built at startup."""
    return request.app.state.pipeline


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    question: str


class LocationItem(BaseModel):
    latitude:  float
    longitude: float


class RecordItem(BaseModel):
    id:              str
    honorary_name:   str
    borough:         str
    kind:            str
    limits:          str
    biography:       str
    geometry_wkt:    str | None = None
    location:        LocationItem | None = None
    relevance_score: float | None = None


class QueryResponse(BaseModel):
    question:       str
    answer:         str
    filtered_count: int
    total_count:    int
    mappable_count: int
    records:        list[RecordItem]
    latency_ms:     float


def _record_item(r: StreetRecord) -> RecordItem:
    return RecordItem(**r.to_dict())


# ---------------------------------------------------------------------------
# Query log
# ---------------------------------------------------------------------------

def _log_query(question: str, status: str, result_count: int, duration_ms: float) -> None:
    """Append one JSON line to {work_dir}/logs/queries.log."""
    try:
        log_dir = cfg.get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        entry = json.dumps({
            "timestamp":    datetime.now().isoformat(),
            "question":     question,
            "status":       status,
            "result_count": result_count,
            "duration_ms":  round(duration_ms, 1),
        }, ensure_ascii=False)
        with open(log_dir / "queries.log", "a", encoding="utf-8") as f:
            f.write(entry + "\n")
    except OSError as e:
        logger.debug("Query log write failed: %s", e)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health() -> dict[str, Any]:
    ok = ollama_available(cfg.ollama_base_url)
    return {"status": "ok" if ok else "degraded", "ollama": ok}


@app.get("/api/entries", response_model=list[RecordItem])
def api_entries(pipeline: QueryPipeline = Depends(get_pipeline)) -> list[RecordItem]:
    try:
        records = pipeline.retrieval.all_records()
    except RetrievalFailed as e:
        logger.error("Full dataset fetch failed: %s", e)
        raise HTTPException(status_code=502, detail="Failed to fetch data")
    return [_record_item(r) for r in records]


@app.post("/api/query", response_model=QueryResponse)
def api_query(
    req: QueryRequest,
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> QueryResponse:
    question = req.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Question cannot be empty.")

    t_start = time.perf_counter()

    try:
        entries = pipeline.retrieval.all_records()
    except RetrievalFailed as e:
        logger.warning("Full dataset unavailable, continuing without it: %s", e)
        entries = []

    try:
        result = pipeline.resolve_query(question, entries)
    except QueryResolutionFailed:
        duration_ms = (time.perf_counter() - t_start) * 1000
        _log_query(question, "failed", 0, duration_ms)
        raise HTTPException(status_code=502, detail=_ERROR_MESSAGE)

    duration_ms = (time.perf_counter() - t_start) * 1000
    _log_query(question, "ok", result.filtered_count, duration_ms)

    return QueryResponse(
        question       = question,
        answer         = result.answer_text,
        filtered_count = result.filtered_count,
        total_count    = len(entries),
        mappable_count = len(result.mappable_records),
        records        = [_record_item(r) for r in result.filtered_records],
        latency_ms     = round(duration_ms, 1),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host=cfg.server_host,
        port=cfg.server_port,
        reload=False,
    )
