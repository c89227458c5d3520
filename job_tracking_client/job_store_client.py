import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from job_tracking_client.errors import (
    JobStoreError,
    RateLimitedError,
    ServiceUnavailableError,
    parse_retry_after,
)
from job_tracking_client.models import JobRecord, JobStoreConfig


class JobStoreClient:
    """CRUD client for a REST job collection (`/jobs`, `/jobs/{id}`)"""

    def __init__(
        self,
        base_url: str,
        config: Optional[JobStoreConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or JobStoreConfig()
        self.logger = logger
        self._session = session
        self._owns_session = session is None
        self._last_request_at: Optional[float] = None
        self._throttle_lock = asyncio.Lock()

    async def __aenter__(self) -> "JobStoreClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            )
            self._owns_session = True
        return self._session

    async def _throttle(self) -> None:
        """Keeps at least `min_request_gap` seconds between requests"""
        async with self._throttle_lock:
            loop = asyncio.get_event_loop()
            if self._last_request_at is not None:
                wait = self._last_request_at + self.config.min_request_gap - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_at = loop.time()

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return

        try:
            body = await response.json()
            message = body.get("message") if isinstance(body, dict) else None
        except (aiohttp.ContentTypeError, ValueError):
            message = None
        message = message or f"HTTP {response.status}: {response.reason}"
        retry_after = parse_retry_after(response.headers.get("Retry-After"))

        self.logger.error(f"HTTP error {response.status} at {response.url}: {message}")
        if response.status == 429:
            raise RateLimitedError(message, retry_after=retry_after)
        if response.status == 503:
            raise ServiceUnavailableError(message, retry_after=retry_after)
        raise JobStoreError(message, status=response.status, retry_after=retry_after)

    async def _request(
        self,
        method: str,
        path: str = "",
        payload: Any = None,
        abort: Optional[asyncio.Event] = None,
    ) -> Any:
        await self._throttle()
        if abort is not None and abort.is_set():
            # superseded while waiting on the throttle
            raise asyncio.CancelledError()
        url = f"{self.base_url}{path}"
        async with self._get_session().request(method, url, json=payload) as response:
            await self._raise_for_status(response)
            return await response.json()

    async def create(self, payload: Dict[str, Any]) -> JobRecord:
        data = await self._request("POST", "/jobs", payload)
        return JobRecord.model_validate(data)

    async def fetch(
        self, job_id: str, abort: Optional[asyncio.Event] = None
    ) -> JobRecord:
        """Fetches the current status record of a job, unless `abort` is set first"""
        data = await self._request("GET", f"/jobs/{job_id}", abort=abort)
        return JobRecord.model_validate(data)

    async def update(self, job_id: str, patch: Dict[str, Any]) -> JobRecord:
        data = await self._request("PUT", f"/jobs/{job_id}", patch)
        return JobRecord.model_validate(data)

    async def list_jobs(self) -> List[JobRecord]:
        data = await self._request("GET", "/jobs")
        if not isinstance(data, list):
            return []
        return [JobRecord.model_validate(item) for item in data]

    async def delete(self, job_id: str) -> JobRecord:
        data = await self._request("DELETE", f"/jobs/{job_id}")
        return JobRecord.model_validate(data)
