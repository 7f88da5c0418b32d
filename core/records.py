"""
core/records.py — Data model for the query pipeline.

StreetRecord    — one honorary street designation, as retrieved from the index
GeoPoint        — latitude/longitude pair
StructuredQuery — intent: search the index with these terms (+ optional place)
DirectAnswer    — intent: reply with this text, skip retrieval
PipelineResult  — final output handed to the caller

Records are frozen: the pipeline filters and reorders, never mutates.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union

BOROUGHS = frozenset({"manhattan", "brooklyn", "queens", "staten island", "bronx"})
KINDS = frozenset({"line", "point"})


@dataclass(frozen=True)
class GeoPoint:
    latitude:  float
    longitude: float


@dataclass(frozen=True)
class StreetRecord:
    id:              str
    honorary_name:   str
    borough:         str = ""          # one of BOROUGHS, "" when unknown
    kind:            str = "point"     # "line" | "point"
    limits:          str = ""
    biography:       str = ""
    geometry_wkt:    str | None = None
    location:        GeoPoint | None = None
    relevance_score: float | None = None

    @property
    def mappable(self) -> bool:
        """True when the record can be placed on a map."""
        return self.location is not None

    @property
    def line_geometry(self) -> str | None:
        """WKT geometry, only meaningful for street segments."""
        return self.geometry_wkt if self.kind == "line" else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StructuredQuery:
    search_terms:  str
    location_name: str | None = None


@dataclass(frozen=True)
class DirectAnswer:
    text: str


QueryIntent = Union[StructuredQuery, DirectAnswer]


@dataclass
class PipelineResult:
    answer_text:      str
    filtered_records: list[StreetRecord] = field(default_factory=list)
    filtered_count:   int = 0

    def __post_init__(self) -> None:
        # The count always describes the returned list, never a hidden subset.
        self.filtered_count = len(self.filtered_records)

    @property
    def mappable_records(self) -> list[StreetRecord]:
        return [r for r in self.filtered_records if r.mappable]
