"""Health probes for worker instances."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from .exceptions import ProbeError
from .retry import RetryConfig, RetryHandler, RetryStrategy
from .types import Instance


logger = logging.getLogger(__name__)


class HealthProber(ABC):
    """Decides whether a single instance is serving requests."""

    def __init__(self, attempts: int = 2, retry_delay: float = 1.0):
        """Initialize prober.

        Args:
            attempts: Probe attempts made by ``check_with_retry``
            retry_delay: Fixed delay between those attempts
        """
        self.retry_handler = RetryHandler(RetryConfig(
            max_attempts=attempts,
            base_delay=retry_delay,
            strategy=RetryStrategy.FIXED,
            retryable_exceptions=(ProbeError,)
        ))

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    @abstractmethod
    async def check(self, instance: Instance) -> bool:
        """Probe once. Never raises for an unhealthy instance."""
        pass

    async def check_with_retry(self, instance: Instance) -> bool:
        """Probe up to the configured attempt count.

        Returns:
            True as soon as one attempt succeeds
        """
        async def attempt():
            if not await self.check(instance):
                raise ProbeError(instance.instance_id, "unhealthy response")
            return True

        try:
            return await self.retry_handler.execute(attempt)
        except ProbeError:
            return False

    async def close(self) -> None:
        pass


class HttpProber(HealthProber):
    """Probes ``http://<host>:<port><path>``; any 2xx response is healthy."""

    def __init__(
        self,
        path: str = "/",
        timeout: float = 5.0,
        attempts: int = 2,
        retry_delay: float = 1.0
    ):
        super().__init__(attempts=attempts, retry_delay=retry_delay)
        self.path = path
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._ensure_session()
        return self

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    def url_for(self, instance: Instance) -> str:
        return f"http://{instance.host}:{instance.port}{self.path}"

    async def check(self, instance: Instance) -> bool:
        session = self._ensure_session()
        url = self.url_for(instance)
        try:
            async with session.get(url) as response:
                healthy = 200 <= response.status < 300
                if not healthy:
                    logger.debug(f"Probe {url} returned HTTP {response.status}")
                return healthy
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Probe {url} failed: {e}")
            return False

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
