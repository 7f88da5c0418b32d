"""
core/llm.py — Completion gateway (Ollama /api/chat, stream=false).

complete(prompt) sends one user message and returns the raw content string.
No retries, no trimming: callers decide what to do with whitespace and
failures.

Any transport problem (connection refused, timeout, non-2xx status, body
without message.content) surfaces as UpstreamUnavailable.
"""

from __future__ import annotations

import logging
import time

import httpx

from config import cfg as _module_cfg, Config

logger = logging.getLogger(__name__)


class UpstreamUnavailable(Exception):
    """Raised when the completion service cannot produce a response."""


class CompletionGateway:
    def __init__(
        self,
        cfg_obj: Config | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._cfg = cfg_obj or _module_cfg
        self._client = client or httpx.Client(timeout=self._cfg.ollama_timeout)

    @property
    def url(self) -> str:
        return self._cfg.ollama_base_url.rstrip("/") + "/api/chat"

    def complete(self, prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be non-empty")

        payload = {
            "model":    self._cfg.chat_model,
            "messages": [{"role": "user", "content": prompt}],
            "stream":   False,
            "options":  {
                "temperature": self._cfg.temperature,
                "num_predict": self._cfg.max_tokens,
                "num_ctx":     self._cfg.num_ctx,
            },
        }
        t0 = time.perf_counter()
        try:
            resp = self._client.post(self.url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamUnavailable(f"completion request failed: {exc}") from exc

        try:
            content = data["message"]["content"]
        except (KeyError, TypeError) as exc:
            raise UpstreamUnavailable("completion response has no message content") from exc
        if not isinstance(content, str):
            raise UpstreamUnavailable("completion content is not text")

        logger.debug(
            "completion: %d chars in %.0f ms",
            len(content), (time.perf_counter() - t0) * 1000,
        )
        return content
