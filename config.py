"""
config.py — Honorary Streets configuration loader.

Settings come from {work_dir}/config.yaml, laid over the defaults in
_DEFAULTS one section at a time (a section in the file only replaces the
keys it names).

  work_dir    STREETS_WORK_DIR env var, else ./streets_work next to this file
  ollama      completion + embedding service
  index       LanceDB location and table
  retrieval   hybrid blend weight, result sizes, geo radius
  geocoder    Nominatim endpoint and request identity
  pipeline    how many records the summary sees
  server      uvicorn bind address

load_config(config_file, work_dir) -> Config
ollama_available(base_url) -> bool
cfg  module-level Config, loaded on import
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import httpx
import yaml

logger = logging.getLogger(__name__)

WORK_DIR_ENV = "STREETS_WORK_DIR"
CONFIG_FILENAME = "config.yaml"

_DEFAULTS: dict[str, dict[str, Any]] = {
    "ollama": {
        "base_url":        "http://localhost:11434",
        "chat_model":      "mistral",
        "embed_model":     "nomic-embed-text",
        "timeout_seconds": 30,
        "temperature":     0.3,
        "max_tokens":      300,
        "num_ctx":         4096,
    },
    "index": {
        "uri":   None,
        "table": "honorary_streets",
    },
    "retrieval": {
        "hybrid_alpha": 0.5,
        "hybrid_limit": 10,
        "geo_radius_m": 1000,
        "geo_limit":    100,
    },
    "geocoder": {
        "base_url":        "https://nominatim.openstreetmap.org",
        "city_suffix":     "NYC",
        "user_agent":      "honorary-streets/0.1",
        "timeout_seconds": 10,
    },
    "pipeline": {
        "summary_limit": 10,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 7860,
    },
}

_POSITIVE = [
    ("retrieval", "hybrid_limit"),
    ("retrieval", "geo_radius_m"),
    ("retrieval", "geo_limit"),
    ("pipeline", "summary_limit"),
]


class ConfigError(Exception):
    """config.yaml is malformed or holds an out-of-range value."""


def default_work_dir() -> Path:
    env = os.environ.get(WORK_DIR_ENV)
    if env:
        return Path(env).resolve()
    return Path(__file__).resolve().parent / "streets_work"


class Config:
    """Flat, typed view over the merged settings sections."""

    def __init__(self, sections: dict[str, dict[str, Any]], work_dir: Path, config_file: Path) -> None:
        self.work_dir = work_dir
        self.config_file = config_file

        oll = sections["ollama"]
        self.ollama_base_url: str = oll["base_url"]
        self.chat_model: str = oll["chat_model"]
        self.embed_model: str = oll["embed_model"]
        self.ollama_timeout: float = oll["timeout_seconds"]
        self.temperature: float = oll["temperature"]
        self.max_tokens: int = oll["max_tokens"]
        self.num_ctx: int = oll["num_ctx"]

        idx = sections["index"]
        self.index_uri: Path = Path(idx["uri"]).resolve() if idx["uri"] else work_dir / "vectors"
        self.index_table: str = idx["table"]

        ret = sections["retrieval"]
        self.hybrid_alpha: float = ret["hybrid_alpha"]
        self.hybrid_limit: int = ret["hybrid_limit"]
        self.geo_radius_m: float = ret["geo_radius_m"]
        self.geo_limit: int = ret["geo_limit"]

        geo = sections["geocoder"]
        self.geocoder_base_url: str = geo["base_url"]
        self.geocoder_city_suffix: str = geo["city_suffix"]
        self.geocoder_user_agent: str = geo["user_agent"]
        self.geocoder_timeout: float = geo["timeout_seconds"]

        self.summary_limit: int = sections["pipeline"]["summary_limit"]

        srv = sections["server"]
        self.server_host: str = srv["host"]
        self.server_port: int = srv["port"]

    def get_log_dir(self) -> Path:
        return self.work_dir / "logs"

    def ensure_dirs(self) -> None:
        """Create the log directory. The index is only read, never created here."""
        self.get_log_dir().mkdir(parents=True, exist_ok=True)


def _read_file(path: Path, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise FileNotFoundError(f"Config file not found: {path}")
        logger.info("No config file at %s, using defaults", path)
        return {}
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level.")
    return raw


def _merge(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    merged: dict[str, dict[str, Any]] = {}
    for name, defaults in _DEFAULTS.items():
        override = raw.get(name) or {}
        if not isinstance(override, dict):
            raise ConfigError(f"config.yaml section '{name}' must be a mapping.")
        merged[name] = {**defaults, **override}
    return merged


def _check_ranges(sections: dict[str, dict[str, Any]]) -> None:
    alpha = sections["retrieval"]["hybrid_alpha"]
    if isinstance(alpha, bool) or not isinstance(alpha, (int, float)) or not 0.0 <= alpha <= 1.0:
        raise ConfigError(f"retrieval.hybrid_alpha must be within [0, 1], got {alpha!r}")
    for section, key in _POSITIVE:
        value = sections[section][key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{section}.{key} must be a positive number, got {value!r}")


def load_config(config_file: Path | None = None, work_dir: Path | None = None) -> Config:
    """
    Build a Config.

    An explicit config_file must exist; the discovered {work_dir}/config.yaml
    may be absent, in which case every default applies.
    """
    wd = work_dir or default_work_dir()
    path = config_file or (wd / CONFIG_FILENAME)
    sections = _merge(_read_file(path, required=config_file is not None))
    _check_ranges(sections)
    return Config(sections, wd, path)


def ollama_available(base_url: str | None = None) -> bool:
    """True when Ollama answers GET /api/tags with 200."""
    url = (base_url or _DEFAULTS["ollama"]["base_url"]).rstrip("/") + "/api/tags"
    try:
        return httpx.get(url, timeout=3).status_code == 200
    except httpx.HTTPError:
        return False


cfg: Config = load_config()
