from typing import Any, Dict, List, Optional

import httpx

from skema_daemon.config import DEFAULT_WATCH_MAX_TIMEOUT


class ControlClient:
    """Minimal async HTTP client for the daemon's control protocol.

    Intended for externally driven agents running in queue mode::

        client = ControlClient("http://127.0.0.1:9999")
        work = await client.watch(timeout=60)
        if work:
            await client.acknowledge(work["annotation"]["annotation"]["id"])
    """

    def __init__(self, base_url: str = "http://127.0.0.1:9999", transport: Optional[httpx.AsyncBaseTransport] = None,
                 max_watch_s: float = DEFAULT_WATCH_MAX_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        # Must match the daemon's SKEMA_WATCH_MAX_TIMEOUT; the server never holds a watch longer.
        self.max_watch_s = max_watch_s

    async def _call(self, method: str, path: str, *, json: Optional[dict] = None,
                    params: Optional[dict] = None, timeout: float = 10.0) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v1{path}"
        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
            resp = await client.request(method, url, json=json, params=params)
            resp.raise_for_status()
            return resp.json()

    async def get_pending(self) -> List[Dict[str, Any]]:
        return (await self._call("GET", "/annotations/pending"))["annotations"]

    async def get_all_annotations(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"status": status} if status else None
        return (await self._call("GET", "/annotations", params=params))["annotations"]

    async def get_annotation(self, annotation_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/annotations/{annotation_id}")

    async def acknowledge(self, annotation_id: str) -> Dict[str, Any]:
        return await self._call("POST", f"/annotations/{annotation_id}/acknowledge")

    async def resolve(self, annotation_id: str, summary: Optional[str] = None) -> Dict[str, Any]:
        return await self._call("POST", f"/annotations/{annotation_id}/resolve", json={"summary": summary})

    async def dismiss(self, annotation_id: str, reason: str) -> Dict[str, Any]:
        return await self._call("POST", f"/annotations/{annotation_id}/dismiss", json={"reason": reason})

    async def watch(self, timeout: Optional[float] = None, after: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Long-poll for new work. Returns the watch response, or ``None`` when there is no new work."""
        params: Dict[str, Any] = {}
        if timeout is not None:
            params["timeout"] = timeout
        if after is not None:
            params["after"] = after
        # Leave headroom over the server-side ceiling so the daemon answers first.
        ceiling = min(timeout, self.max_watch_s) if timeout else self.max_watch_s
        http_timeout = ceiling + 10.0
        data = await self._call("GET", "/annotations/watch", params=params, timeout=http_timeout)
        return data if data.get("status") == "annotation" else None

    async def status(self) -> Dict[str, Any]:
        return await self._call("GET", "/status")

    async def export(self) -> Dict[str, Any]:
        return await self._call("GET", "/export")
