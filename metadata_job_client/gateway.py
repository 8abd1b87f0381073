import asyncio
from typing import Any, Dict, Optional, Protocol

import aiohttp
from loguru import logger
from pydantic import ValidationError

from metadata_job_client.errors import PollError, SubmissionError
from metadata_job_client.models import StatusSnapshot


class Gateway(Protocol):
    """Remote operation gateway shared by every job of a client.

    Implementations must be safe for concurrent use by multiple jobs.
    """

    async def submit(self, operation: str, params: Dict[str, Any]) -> str:
        ...

    async def poll(self, job_id: str) -> StatusSnapshot:
        ...


class HttpGateway:
    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpGateway":
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                "HttpGateway must be entered with 'async with' before use"
            )
        return self._session

    async def submit(self, operation: str, params: Dict[str, Any]) -> str:
        """Submits an operation and returns the job id assigned by the server"""
        url = f"{self.base_url}/operations/{operation}"

        try:
            async with self.session.post(url, json=params) as response:
                response.raise_for_status()
                data = await response.json()
                return str(data["id"])
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise SubmissionError(f"{operation} rejected with HTTP {e.status}") from e
        except (aiohttp.ClientError, KeyError, ValueError) as e:
            self.logger.error(f"Submitting {operation} failed: {e!r}")
            raise SubmissionError(f"{operation} could not be submitted: {e!r}") from e

    async def poll(self, job_id: str) -> StatusSnapshot:
        """Fetches the status of a job from the server"""
        start_time = asyncio.get_running_loop().time()
        url = f"{self.base_url}/jobs/{job_id}"

        try:
            async with self.session.get(url) as response:
                response.raise_for_status()
                data = await response.json()
                elapsed_time = asyncio.get_running_loop().time() - start_time
                return StatusSnapshot.from_response(data, elapsed_time)
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise PollError(
                f"status of job {job_id} failed with HTTP {e.status}"
            ) from e
        except (aiohttp.ClientError, KeyError, ValueError, ValidationError) as e:
            self.logger.error(f"Polling job {job_id} failed: {e!r}")
            raise PollError(f"status of job {job_id} could not be read: {e!r}") from e
