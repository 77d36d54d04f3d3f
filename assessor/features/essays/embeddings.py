from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

import httpx

from assessor.common.errors import GradingDegraded
from assessor.core.config import Settings, get_settings


class EmbeddingClient:
    """OpenAI-compatible ``/embeddings`` client with a hard latency bound.

    Every failure (missing config, timeout, transport or payload error) is
    raised as ``GradingDegraded`` so the evaluator can fall back.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.base_url = (self.settings.embedding_api_url or "").rstrip("/")
        self.model = self.settings.embedding_model
        self.timeout_s = float(self.settings.embedding_timeout_s or 10.0)
        self.headers = {"Content-Type": "application/json"}
        if self.settings.embedding_api_key:
            self.headers["Authorization"] = f"Bearer {self.settings.embedding_api_key}"
        self._transport = transport
        self._logger = logging.getLogger("essays.embeddings")

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.settings.embedding_api_key)

    async def _post(self, payload: dict) -> httpx.Response:
        timeout = httpx.Timeout(connect=3.0, read=self.timeout_s, write=5.0, pool=5.0)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            return await client.post(f"{self.base_url}/embeddings", json=payload, headers=self.headers)

    async def embed(self, text: str) -> List[float]:
        if not self.enabled:
            raise GradingDegraded("embedding_service_not_configured")
        try:
            resp = await asyncio.wait_for(self._post({"input": text, "model": self.model}), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            self._logger.warning("Embedding request timed out after %.1fs", self.timeout_s)
            raise GradingDegraded("embedding_timeout") from exc
        except httpx.HTTPError as exc:
            self._logger.warning("Embedding request failed: %s", exc)
            raise GradingDegraded("embedding_unavailable") from exc

        if resp.status_code >= 400:
            self._logger.warning("Embedding service returned %s", resp.status_code)
            raise GradingDegraded("embedding_http_error", extra={"status_code": resp.status_code})
        try:
            vector = resp.json()["data"][0]["embedding"]
            return [float(v) for v in vector]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise GradingDegraded("embedding_payload_invalid") from exc


_client: Optional[EmbeddingClient] = None


def get_embedding_client() -> EmbeddingClient:
    global _client
    if _client is None:
        _client = EmbeddingClient()
    return _client


__all__ = ["EmbeddingClient", "get_embedding_client"]
