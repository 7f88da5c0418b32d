"""
tests/test_vectors.py — Street index and embedding unit tests.

Uses fakes so Ollama and LanceDB are not required.
Run with: pytest tests/test_vectors.py -v
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import lancedb
import pytest
import yaml

from config import load_config
from core.vectors import (
    EmbedError,
    IndexConnection,
    SearchError,
    StreetIndex,
    _bbox_clause,
    _normalise,
    embed_text,
    haversine_m,
    street_schema,
)

# Washington Square Arch
_ARCH = (40.7312, -73.9971)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _cfg(tmp_path: Path):
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(
        yaml.dump({"ollama": {"base_url": "http://ollama.test"}}),
        encoding="utf-8",
    )
    return load_config(config_file=cfg_file, work_dir=tmp_path)


def _row(rid: str, name: str, lat: float = 40.7, lon: float = -73.9, **extra: Any) -> dict:
    row = {
        "record_id": rid, "honorary_name": name, "borough": "Manhattan",
        "type": "point", "limits": "", "bio": "", "geometry_wkt": "",
        "latitude": lat, "longitude": lon, "vector": [0.0, 0.0],
    }
    row.update(extra)
    return row


class _FakeQuery:
    def __init__(self, table: "_FakeTable", query: Any, query_type: str) -> None:
        self._table = table
        self._fts = query_type == "fts"
        self._n = 10

    def distance_type(self, _name: str) -> "_FakeQuery":
        return self

    def where(self, clause: str, prefilter: bool = False) -> "_FakeQuery":
        self._table.where_clauses.append(clause)
        return self

    def limit(self, n: int) -> "_FakeQuery":
        self._n = n
        return self

    def to_list(self) -> list[dict]:
        if self._fts:
            if self._table.fts_error:
                raise RuntimeError("no FTS index")
            return [dict(r) for r in self._table.fts_rows[: self._n]]
        if self._table.vector_error:
            raise RuntimeError("vector search broke")
        return [dict(r) for r in self._table.vector_rows[: self._n]]


class _FakeTable:
    def __init__(self, vector_rows=(), fts_rows=(), vector_error=False, fts_error=False) -> None:
        self.vector_rows = list(vector_rows)
        self.fts_rows = list(fts_rows)
        self.vector_error = vector_error
        self.fts_error = fts_error
        self.where_clauses: list[str] = []

    def search(self, query: Any, query_type: str = "auto") -> _FakeQuery:
        return _FakeQuery(self, query, query_type)

    def count_rows(self) -> int:
        return len(self.vector_rows) + len(self.fts_rows)

    def to_arrow(self) -> MagicMock:
        arrow = MagicMock()
        arrow.to_pylist.return_value = [dict(r) for r in self.vector_rows]
        return arrow


def _index(tmp_path: Path, table: _FakeTable) -> StreetIndex:
    conn = IndexConnection(tmp_path / "vectors", "honorary_streets")
    conn._table = table
    return StreetIndex(conn, _cfg(tmp_path))


# ---------------------------------------------------------------------------
# embed_text
# ---------------------------------------------------------------------------

class TestEmbedText:
    def test_returns_vector(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url == "http://ollama.test/api/embeddings"
            body = json.loads(request.content)
            assert body["model"] == "nomic-embed-text"
            assert body["prompt"] == "jazz musicians"
            return httpx.Response(200, json={"embedding": [0.1] * 768})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        vec = embed_text("jazz musicians", _cfg(tmp_path), client)
        assert len(vec) == 768

    def test_raises_embed_error_on_network_failure(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(EmbedError):
            embed_text("test", _cfg(tmp_path), client)

    def test_raises_embed_error_on_bad_response(self, tmp_path: Path) -> None:
        """Response without 'embedding' key must raise EmbedError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": "model not found"})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(EmbedError):
            embed_text("test", _cfg(tmp_path), client)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_normalise_best_gets_1() -> None:
    norm = _normalise([3.0, 2.0, 1.0])
    assert norm[0] == pytest.approx(1.0)
    assert norm[-1] == pytest.approx(0.0)


def test_haversine_known_distance() -> None:
    # One hundredth of a degree of latitude ≈ 1.11 km
    d = haversine_m(40.70, -73.95, 40.71, -73.95)
    assert 1100 < d < 1125


def test_bbox_clause_contains_center() -> None:
    clause = _bbox_clause(*_ARCH, 1000)
    assert "latitude >= 40.72" in clause
    assert "longitude <= -73.98" in clause


# ---------------------------------------------------------------------------
# IndexConnection
# ---------------------------------------------------------------------------

class TestIndexConnection:
    def test_lazy_connect_once(self, tmp_path: Path) -> None:
        db = MagicMock()
        connect = MagicMock(return_value=db)

        conn = IndexConnection(tmp_path, "honorary_streets", connect=connect)
        assert not conn.connected
        connect.assert_not_called()

        first = conn.get()
        second = conn.get()
        assert first is second
        connect.assert_called_once_with(str(tmp_path))
        db.open_table.assert_called_once_with("honorary_streets")

    def test_missing_table_raises_and_creates_nothing(self, tmp_path: Path) -> None:
        db = MagicMock()
        db.open_table.side_effect = ValueError("Table 'honorary_streets' was not found")
        conn = IndexConnection(tmp_path, "honorary_streets", connect=MagicMock(return_value=db))

        with pytest.raises(SearchError, match="not found"):
            conn.get()
        db.create_table.assert_not_called()
        assert not conn.connected

    def test_missing_table_is_retried_on_next_get(self, tmp_path: Path) -> None:
        db = MagicMock()
        db.open_table.side_effect = [ValueError("not found"), MagicMock()]
        conn = IndexConnection(tmp_path, "honorary_streets", connect=MagicMock(return_value=db))

        with pytest.raises(SearchError):
            conn.get()
        conn.get()
        assert conn.connected

    def test_missing_directory_raises_without_connecting(self, tmp_path: Path) -> None:
        uri = tmp_path / "typo_vectors"
        connect = MagicMock()
        conn = IndexConnection(uri, "honorary_streets", connect=connect)

        with pytest.raises(SearchError, match="not found"):
            conn.get()
        connect.assert_not_called()
        assert not uri.exists()

    def test_concurrent_get_connects_once(self, tmp_path: Path) -> None:
        db = MagicMock()
        connect = MagicMock(return_value=db)
        conn = IndexConnection(tmp_path, "honorary_streets", connect=connect)

        threads = [threading.Thread(target=conn.get) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert connect.call_count == 1


class TestLanceDBIndex:
    """Against a real on-disk LanceDB database in tmp_path."""

    def test_mistyped_uri_fails_instead_of_returning_nothing(self, tmp_path: Path) -> None:
        uri = tmp_path / "typo_vectors"
        idx = StreetIndex(IndexConnection(uri, "honorary_streets"), _cfg(tmp_path))

        with pytest.raises(SearchError, match="not found"):
            idx.hybrid_query("walt whitman", 0.5, 10)
        with pytest.raises(SearchError):
            idx.fetch_all()
        assert not uri.exists()

    def test_missing_table_in_existing_database(self, tmp_path: Path) -> None:
        uri = tmp_path / "vectors"
        lancedb.connect(str(uri)).create_table("other_table", schema=street_schema())
        idx = StreetIndex(IndexConnection(uri, "honorary_streets"), _cfg(tmp_path))

        with pytest.raises(SearchError, match="honorary_streets"):
            idx.hybrid_query("walt whitman", 0.5, 10)
        assert "honorary_streets" not in {p.stem for p in uri.iterdir()}

    def test_existing_empty_table_answers_empty(self, tmp_path: Path) -> None:
        uri = tmp_path / "vectors"
        lancedb.connect(str(uri)).create_table("honorary_streets", schema=street_schema())
        idx = StreetIndex(IndexConnection(uri, "honorary_streets"), _cfg(tmp_path))

        assert idx.hybrid_query("walt whitman", 0.5, 10) == []


# ---------------------------------------------------------------------------
# StreetIndex.hybrid_query
# ---------------------------------------------------------------------------

class TestHybridQuery:
    def test_blends_lanes_with_alpha(self, tmp_path: Path) -> None:
        table = _FakeTable(
            vector_rows=[_row("a", "Alpha", _distance=0.1), _row("b", "Beta", _distance=0.5)],
            fts_rows=[_row("b", "Beta", _score=9.0), _row("c", "Gamma", _score=3.0)],
        )
        idx = _index(tmp_path, table)
        with patch("core.vectors.embed_text", return_value=[0.1, 0.2]):
            rows = idx.hybrid_query("jazz", alpha=0.5, limit=10)

        scores = {r["record_id"]: r["score"] for r in rows}
        # a: 0.5*0.9 + 0       = 0.45
        # b: 0.5*0.5 + 0.5*1.0 = 0.75
        # c: 0       + 0.5*0.0 = 0.0
        assert [r["record_id"] for r in rows] == ["b", "a", "c"]
        assert scores["b"] == pytest.approx(0.75)
        assert scores["a"] == pytest.approx(0.45)
        assert all("vector" not in r and "_distance" not in r for r in rows)

    def test_limit_caps_results(self, tmp_path: Path) -> None:
        table = _FakeTable(vector_rows=[_row(str(i), f"S{i}", _distance=i / 20) for i in range(15)])
        idx = _index(tmp_path, table)
        with patch("core.vectors.embed_text", return_value=[0.1]):
            rows = idx.hybrid_query("x", alpha=0.5, limit=10)
        assert len(rows) == 10

    def test_fts_failure_falls_back_to_vector(self, tmp_path: Path) -> None:
        table = _FakeTable(vector_rows=[_row("a", "Alpha", _distance=0.2)], fts_error=True)
        idx = _index(tmp_path, table)
        with patch("core.vectors.embed_text", return_value=[0.1]):
            rows = idx.hybrid_query("x", alpha=1.0, limit=10)
        assert [r["record_id"] for r in rows] == ["a"]
        assert rows[0]["score"] == pytest.approx(0.8)

    def test_embed_failure_falls_back_to_bm25(self, tmp_path: Path) -> None:
        table = _FakeTable(fts_rows=[_row("c", "Gamma", _score=2.0)])
        idx = _index(tmp_path, table)
        with patch("core.vectors.embed_text", side_effect=EmbedError("down")):
            rows = idx.hybrid_query("x", alpha=0.5, limit=10)
        assert [r["record_id"] for r in rows] == ["c"]

    def test_both_lanes_failing_raises(self, tmp_path: Path) -> None:
        table = _FakeTable(vector_rows=[_row("a", "A")], fts_error=True)
        idx = _index(tmp_path, table)
        with patch("core.vectors.embed_text", side_effect=EmbedError("down")):
            with pytest.raises(SearchError):
                idx.hybrid_query("x", alpha=0.5, limit=10)

    def test_empty_table_returns_empty(self, tmp_path: Path) -> None:
        idx = _index(tmp_path, _FakeTable())
        with patch("core.vectors.embed_text") as emb:
            assert idx.hybrid_query("x", alpha=0.5, limit=10) == []
        emb.assert_not_called()

    def test_unreachable_index_raises_search_error(self, tmp_path: Path) -> None:
        conn = IndexConnection(tmp_path, "t", connect=MagicMock(side_effect=OSError("no such dir")))
        idx = StreetIndex(conn, _cfg(tmp_path))
        with pytest.raises(SearchError):
            idx.hybrid_query("x", alpha=0.5, limit=10)


# ---------------------------------------------------------------------------
# StreetIndex.geo_query
# ---------------------------------------------------------------------------

class TestGeoQuery:
    def test_keeps_only_rows_inside_radius(self, tmp_path: Path) -> None:
        near = _row("near", "Near Way", 40.7320, -73.9975, _distance=0.4)
        far = _row("far", "Far Place", 40.7400, -73.9971, _distance=0.1)   # ~1 km north
        table = _FakeTable(vector_rows=[far, near])
        idx = _index(tmp_path, table)
        with patch("core.vectors.embed_text", return_value=[0.1]):
            rows = idx.geo_query("poets", *_ARCH, radius_m=500)
        assert [r["record_id"] for r in rows] == ["near"]
        assert rows[0]["score"] == pytest.approx(0.6)
        assert table.where_clauses, "bounding-box prefilter not applied"

    def test_sorted_by_similarity(self, tmp_path: Path) -> None:
        table = _FakeTable(vector_rows=[
            _row("x", "X", 40.7313, -73.9970, _distance=0.6),
            _row("y", "Y", 40.7311, -73.9972, _distance=0.2),
        ])
        idx = _index(tmp_path, table)
        with patch("core.vectors.embed_text", return_value=[0.1]):
            rows = idx.geo_query("poets", *_ARCH, radius_m=1000)
        assert [r["record_id"] for r in rows] == ["y", "x"]

    def test_embed_failure_propagates(self, tmp_path: Path) -> None:
        idx = _index(tmp_path, _FakeTable(vector_rows=[_row("a", "A")]))
        with patch("core.vectors.embed_text", side_effect=EmbedError("down")):
            with pytest.raises(EmbedError):
                idx.geo_query("poets", *_ARCH, radius_m=1000)

    def test_search_failure_raises_search_error(self, tmp_path: Path) -> None:
        idx = _index(tmp_path, _FakeTable(vector_error=True))
        with patch("core.vectors.embed_text", return_value=[0.1]):
            with pytest.raises(SearchError):
                idx.geo_query("poets", *_ARCH, radius_m=1000)


def test_fetch_all_strips_vectors(tmp_path: Path) -> None:
    idx = _index(tmp_path, _FakeTable(vector_rows=[_row("a", "A"), _row("b", "B")]))
    rows = idx.fetch_all()
    assert [r["record_id"] for r in rows] == ["a", "b"]
    assert all("vector" not in r and "score" not in r for r in rows)
