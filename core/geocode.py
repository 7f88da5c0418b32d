"""
core/geocode.py — Place-name lookup via Nominatim.

lookup("williamsburg") → GET {base_url}/search?q=williamsburg, NYC&format=json
Returns [GeoPoint, ...] in Nominatim's order. An empty list is a normal
outcome (nothing matched), not an error.
"""

from __future__ import annotations

import logging

import httpx

from config import cfg as _module_cfg, Config
from core.records import GeoPoint

logger = logging.getLogger(__name__)


class GeocodeError(Exception):
    """Raised when the geocoding service cannot be reached or answers garbage."""


class Geocoder:
    def __init__(
        self,
        cfg_obj: Config | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._cfg = cfg_obj or _module_cfg
        self._client = client or httpx.Client(timeout=self._cfg.geocoder_timeout)

    def lookup(self, place: str) -> list[GeoPoint]:
        query = f"{place.strip()}, {self._cfg.geocoder_city_suffix}"
        url = self._cfg.geocoder_base_url.rstrip("/") + "/search"
        try:
            resp = self._client.get(
                url,
                params={"q": query, "format": "json"},
                headers={"User-Agent": self._cfg.geocoder_user_agent},
            )
            resp.raise_for_status()
            candidates = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise GeocodeError(f"geocoding {query!r} failed: {exc}") from exc

        if not isinstance(candidates, list):
            raise GeocodeError(f"unexpected geocoder payload for {query!r}")

        points: list[GeoPoint] = []
        for c in candidates:
            try:
                points.append(GeoPoint(float(c["lat"]), float(c["lon"])))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed geocoder candidate: %r", c)
        logger.debug("geocode %r → %d candidates", query, len(points))
        return points
