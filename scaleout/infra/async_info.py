"""
Minimal async HTTP client for Hyperliquid info endpoints using HTTP/2.
"""

from __future__ import annotations

import httpx
from typing import Any, List, Optional


class AsyncInfo:
    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client passed in is not closed by close()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def user_fills_by_time(self, account: str, start_ms: int) -> List[dict]:
        """
        Fetch fills by time. userFillsByTime does NOT support dex filtering;
        the caller filters by coin/oid.
        """
        payload: dict[str, Any] = {"type": "userFillsByTime", "user": account, "startTime": start_ms}
        return await self._post_info(payload) or []

    async def _post_info(self, payload: dict[str, Any]) -> Any:
        resp = await self.client.post("/info", json=payload)
        resp.raise_for_status()
        return resp.json()
