"""
core/retrieval.py — Retrieval gateway.

retrieve(search_terms, location_name) -> list[StreetRecord]

  location_name set
    → geocode "<location_name>, NYC"
      ≥1 candidate : geo-bounded semantic query around the first candidate
      0 candidates : hybrid query (same as no location)
  location_name None/blank
    → hybrid query (geocoder never called)

Index rows are loosely typed; record_from_raw() applies the defaults:
strings → "", type → "point", missing coordinates → 0 (and a 0/0 pair means
"no location").  Index failures surface as RetrievalFailed.
"""

from __future__ import annotations

import logging
from typing import Any

from config import cfg as _module_cfg, Config
from core.geocode import GeocodeError, Geocoder
from core.records import BOROUGHS, GeoPoint, StreetRecord
from core.vectors import EmbedError, SearchError, StreetIndex

logger = logging.getLogger(__name__)


class RetrievalFailed(Exception):
    """Raised when the street index cannot be queried."""


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _number(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _borough(value: Any) -> str:
    b = _text(value).lower()
    if b.startswith("the "):
        b = b[4:]
    return b if b in BOROUGHS else ""


def record_from_raw(raw: dict[str, Any]) -> StreetRecord:
    """Build a StreetRecord from one index row, defaulting absent fields."""
    geo = raw.get("geolocation")
    if isinstance(geo, dict):
        lat, lon = _number(geo.get("latitude")), _number(geo.get("longitude"))
    else:
        lat, lon = _number(raw.get("latitude")), _number(raw.get("longitude"))

    kind = _text(raw.get("type")).lower()
    score = raw.get("score")

    return StreetRecord(
        id              = _text(raw.get("record_id")),
        honorary_name   = _text(raw.get("honorary_name")),
        borough         = _borough(raw.get("borough")),
        kind            = kind if kind == "line" else "point",
        limits          = _text(raw.get("limits")),
        biography       = _text(raw.get("bio")),
        geometry_wkt    = _text(raw.get("geometry_wkt")) or None,
        location        = GeoPoint(lat, lon) if (lat, lon) != (0.0, 0.0) else None,
        relevance_score = _number(score) if score is not None else None,
    )


def records_from_raw(rows: list[dict[str, Any]]) -> list[StreetRecord]:
    """Normalise rows, keeping the first occurrence of each record id."""
    seen: set[str] = set()
    out: list[StreetRecord] = []
    for row in rows:
        rec = record_from_raw(row)
        if rec.id:
            if rec.id in seen:
                continue
            seen.add(rec.id)
        out.append(rec)
    return out


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class RetrievalGateway:
    def __init__(
        self,
        index: StreetIndex,
        geocoder: Geocoder,
        cfg_obj: Config | None = None,
    ) -> None:
        self._index = index
        self._geocoder = geocoder
        self._cfg = cfg_obj or _module_cfg

    def _resolve(self, location_name: str) -> GeoPoint | None:
        try:
            candidates = self._geocoder.lookup(location_name)
        except GeocodeError as e:
            logger.warning("Geocoding unavailable, searching without location: %s", e)
            return None
        if not candidates:
            logger.info("No coordinates for %r, falling back to hybrid search", location_name)
            return None
        return candidates[0]

    def retrieve(self, search_terms: str, location_name: str | None = None) -> list[StreetRecord]:
        point = None
        if location_name and location_name.strip():
            point = self._resolve(location_name)

        try:
            if point is not None:
                rows = self._index.geo_query(
                    search_terms, point.latitude, point.longitude,
                    self._cfg.geo_radius_m,
                )
            else:
                rows = self._index.hybrid_query(
                    search_terms, self._cfg.hybrid_alpha, self._cfg.hybrid_limit,
                )
        except (SearchError, EmbedError) as exc:
            raise RetrievalFailed(str(exc)) from exc

        return records_from_raw(rows)

    def all_records(self) -> list[StreetRecord]:
        """The full dataset, as shown on the map before any question."""
        try:
            rows = self._index.fetch_all()
        except SearchError as exc:
            raise RetrievalFailed(str(exc)) from exc
        return records_from_raw(rows)
