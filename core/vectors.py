"""
core/vectors.py — LanceDB street index + Ollama embeddings.

One table (default name honorary_streets), one row per designation:
  record_id, honorary_name, borough, type, limits, bio, geometry_wkt,
  latitude, longitude, vector

Public API
----------
  EmbedError / SearchError
  embed_text(text, cfg, client)           — embed single text, raises EmbedError
  IndexConnection(uri, table)             — lazy connect-once table handle
  StreetIndex(connection, cfg, client)
    .geo_query(terms, lat, lon, radius_m) — semantic search inside a radius
    .hybrid_query(terms, alpha, limit)    — BM25 + vector blend
    .fetch_all()                          — every row, unranked

Scores
------
  Every row returned by a query carries "score" in [0, 1].
  Vector lane : 1 - cosine distance, clamped.
  BM25 lane   : LanceDB FTS _score, min-max normalised.
  Hybrid      : final = alpha * vector + (1 - alpha) * bm25
"""

from __future__ import annotations

import logging
import math
import threading
import time
from pathlib import Path
from typing import Any, Callable

import httpx
import lancedb
import pyarrow as pa

from config import cfg as _module_cfg, Config

logger = logging.getLogger(__name__)

_EMBED_DIM       = 768      # nomic-embed-text output dimension
_EARTH_RADIUS_M  = 6_371_000.0
_METRES_PER_DEG  = 111_320.0
_LANE_OVERFETCH  = 3        # each hybrid lane fetches limit * 3 candidates


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EmbedError(Exception):
    """Raised when the Ollama embedding call fails."""


class SearchError(Exception):
    """Raised when the index cannot answer a query."""


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

def embed_text(
    text: str,
    cfg: Config | None = None,
    client: httpx.Client | None = None,
) -> list[float]:
    """
    Embed a single text string via Ollama.
    Raises EmbedError on any failure (network, timeout, bad response).
    """
    _cfg = cfg or _module_cfg
    url = _cfg.ollama_base_url.rstrip("/") + "/api/embeddings"
    payload = {"model": _cfg.embed_model, "prompt": text}
    try:
        if client is not None:
            resp = client.post(url, json=payload)
        else:
            resp = httpx.post(url, json=payload, timeout=_cfg.ollama_timeout)
        resp.raise_for_status()
        return [float(v) for v in resp.json()["embedding"]]
    except Exception as exc:
        raise EmbedError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Schema + connection
# ---------------------------------------------------------------------------

def street_schema(dim: int = _EMBED_DIM) -> pa.Schema:
    """Column layout the loader writes; the query side only reads it."""
    return pa.schema([
        pa.field("record_id",     pa.string()),
        pa.field("honorary_name", pa.string()),
        pa.field("borough",       pa.string()),
        pa.field("type",          pa.string()),
        pa.field("limits",        pa.string()),
        pa.field("bio",           pa.string()),
        pa.field("geometry_wkt",  pa.string()),
        pa.field("latitude",      pa.float64()),
        pa.field("longitude",     pa.float64()),
        pa.field("vector",        pa.list_(pa.float32(), dim)),
    ])


class IndexConnection:
    """
    Owns the LanceDB table handle.

    The first get() connects and opens the table; every later call returns
    the same handle. Safe to share between threads. A missing index
    directory or table raises SearchError and nothing is written, so the
    next get() tries again. A handle that breaks after opening is not
    replaced.
    """

    def __init__(
        self,
        uri: str | Path,
        table_name: str,
        connect: Callable[[str], Any] = lancedb.connect,
    ) -> None:
        self.uri = str(uri)
        self.table_name = table_name
        self._connect = connect
        self._lock = threading.Lock()
        self._table: Any = None

    @property
    def connected(self) -> bool:
        return self._table is not None

    def get(self) -> Any:
        if self._table is None:
            with self._lock:
                if self._table is None:
                    # Local paths only; remote URIs (s3://, db://) are left to lancedb
                    if "://" not in self.uri and not Path(self.uri).is_dir():
                        raise SearchError(
                            f"table {self.table_name!r} not found in {self.uri} "
                            "(no such index directory)"
                        )
                    db = self._connect(self.uri)
                    try:
                        self._table = db.open_table(self.table_name)
                    except Exception as exc:
                        raise SearchError(
                            f"table {self.table_name!r} not found in {self.uri}: {exc}"
                        ) from exc
                    logger.info("Connected to street index %s/%s", self.uri, self.table_name)
        return self._table


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _normalise(scores: list[float]) -> list[float]:
    """Min-max normalise to [0, 1]; higher = better."""
    if not scores:
        return []
    if len(scores) == 1:
        return [1.0]
    lo, hi = min(scores), max(scores)
    if hi == lo:
        return [1.0] * len(scores)
    return [(s - lo) / (hi - lo) for s in scores]


def _similarity(distance: Any) -> float:
    """Cosine distance → similarity clamped to [0, 1]."""
    try:
        d = float(distance)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, 1.0 - d))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * _EARTH_RADIUS_M * math.asin(math.sqrt(a))


def _bbox_clause(lat: float, lon: float, radius_m: float) -> str:
    """SQL prefilter for the square that encloses the search circle."""
    dlat = radius_m / _METRES_PER_DEG
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    dlon = radius_m / (_METRES_PER_DEG * cos_lat)
    return (
        f"latitude >= {lat - dlat:.7f} AND latitude <= {lat + dlat:.7f} "
        f"AND longitude >= {lon - dlon:.7f} AND longitude <= {lon + dlon:.7f}"
    )


def _clean_row(row: dict[str, Any], score: float | None) -> dict[str, Any]:
    out = {k: v for k, v in row.items() if k != "vector" and not k.startswith("_")}
    if score is not None:
        out["score"] = round(score, 4)
    return out


def _row_key(row: dict[str, Any]) -> str:
    return str(row.get("record_id") or row.get("honorary_name") or id(row))


# ---------------------------------------------------------------------------
# StreetIndex
# ---------------------------------------------------------------------------

class StreetIndex:
    def __init__(
        self,
        connection: IndexConnection,
        cfg_obj: Config | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._conn = connection
        self._cfg = cfg_obj or _module_cfg
        self._client = client

    def _table(self) -> Any:
        try:
            return self._conn.get()
        except Exception as exc:
            raise SearchError(f"index unavailable: {exc}") from exc

    def _embed(self, text: str) -> list[float]:
        return embed_text(text, self._cfg, self._client)

    # ── Vector lane ────────────────────────────────────────────────────────

    def _vector_lane(self, table: Any, terms: str, limit: int) -> dict[str, tuple[dict, float]]:
        vec = self._embed(terms)
        rows = table.search(vec).distance_type("cosine").limit(limit).to_list()
        return {_row_key(r): (r, _similarity(r.get("_distance"))) for r in rows}

    # ── BM25 lane ──────────────────────────────────────────────────────────

    def _fts_lane(self, table: Any, terms: str, limit: int) -> dict[str, tuple[dict, float]]:
        rows = table.search(terms, query_type="fts").limit(limit).to_list()
        norm = _normalise([float(r.get("_score", 0.0)) for r in rows])
        return {_row_key(r): (r, ns) for r, ns in zip(rows, norm)}

    # ── Public API ─────────────────────────────────────────────────────────

    def hybrid_query(self, terms: str, alpha: float, limit: int) -> list[dict[str, Any]]:
        """
        Blend vector similarity and BM25 with weight alpha
        (1.0 = pure vector, 0.0 = pure BM25). Returns at most `limit` rows,
        best first. A failing lane is skipped; both failing raises SearchError.
        """
        table = self._table()
        t0 = time.perf_counter()
        pool = limit * _LANE_OVERFETCH

        try:
            if table.count_rows() == 0:
                return []
        except Exception as exc:
            raise SearchError(f"index unavailable: {exc}") from exc

        errors: list[Exception] = []
        try:
            vec_hits = self._vector_lane(table, terms, pool)
        except Exception as e:
            logger.warning("Vector lane unavailable (BM25-only fallback): %s", e)
            errors.append(e)
            vec_hits = {}
        try:
            fts_hits = self._fts_lane(table, terms, pool)
        except Exception as e:
            logger.warning("BM25 lane unavailable (vector-only fallback): %s", e)
            errors.append(e)
            fts_hits = {}

        if len(errors) == 2:
            raise SearchError(f"hybrid query failed: {errors[-1]}") from errors[-1]

        merged: list[tuple[dict, float]] = []
        for key in {*vec_hits, *fts_hits}:
            row = (vec_hits.get(key) or fts_hits[key])[0]
            v = vec_hits[key][1] if key in vec_hits else 0.0
            b = fts_hits[key][1] if key in fts_hits else 0.0
            merged.append((row, alpha * v + (1 - alpha) * b))

        merged.sort(key=lambda rs: (-rs[1], str(rs[0].get("honorary_name", ""))))
        out = [_clean_row(row, score) for row, score in merged[:limit]]
        logger.debug(
            "hybrid_query %r: %d vector + %d bm25 → %d rows in %.0f ms",
            terms, len(vec_hits), len(fts_hits), len(out),
            (time.perf_counter() - t0) * 1000,
        )
        return out

    def geo_query(
        self,
        terms: str,
        lat: float,
        lon: float,
        radius_m: float,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Semantic search restricted to rows within radius_m of (lat, lon).
        Ranked by vector similarity, best first.
        """
        table = self._table()
        _limit = limit or self._cfg.geo_limit
        try:
            vec = self._embed(terms)
            rows = (
                table.search(vec)
                .distance_type("cosine")
                .where(_bbox_clause(lat, lon, radius_m), prefilter=True)
                .limit(_limit)
                .to_list()
            )
        except EmbedError:
            raise
        except Exception as exc:
            raise SearchError(f"geo query failed: {exc}") from exc

        out: list[dict[str, Any]] = []
        for r in rows:
            rlat, rlon = r.get("latitude"), r.get("longitude")
            if rlat is None or rlon is None:
                continue
            if haversine_m(lat, lon, float(rlat), float(rlon)) <= radius_m:
                out.append(_clean_row(r, _similarity(r.get("_distance"))))
        out.sort(key=lambda r: -r["score"])
        logger.debug(
            "geo_query %r @ (%.5f, %.5f) r=%sm: %d of %d candidates inside radius",
            terms, lat, lon, radius_m, len(out), len(rows),
        )
        return out

    def fetch_all(self) -> list[dict[str, Any]]:
        """Every row in the table, without vectors or scores."""
        table = self._table()
        try:
            rows = table.to_arrow().to_pylist()
        except Exception as exc:
            raise SearchError(f"full scan failed: {exc}") from exc
        return [_clean_row(r, None) for r in rows]
