"""
Core HTTP plumbing for resource sites: session management and bounded retry
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp
from pydantic import BaseModel

from ..logging_config import setup_logging
from ..config import settings

logger = setup_logging(__name__)

T = TypeVar("T")

# Errors worth another attempt; aiohttp.ClientResponseError (non-2xx) is a ClientError
RETRYABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class RetryPolicy(BaseModel):
    """How many times to retry a request and how long to wait in between"""
    max_retries: int = 2
    backoff: float = 0.5

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt"""
        return self.backoff * (attempt + 1)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "request",
) -> T:
    """
    Run an async operation, retrying transport errors per policy

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy
        description: Used in log messages

    Returns:
        The operation's result

    Raises:
        The last retryable error once every attempt has failed
    """
    last_error: Optional[BaseException] = None
    for attempt in range(policy.attempts):
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            last_error = e
            if attempt + 1 >= policy.attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{policy.attempts} for {description} failed: {e!r}; retrying in {delay:.2f}s"
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise last_error


class SourceSession:
    """Shared aiohttp session for talking to resource sites"""

    def __init__(self, user_agent: Optional[str] = None):
        self.user_agent = user_agent or settings.SCRAPER_USER_AGENT
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Create the HTTP client"""
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            headers={
                'User-Agent': self.user_agent,
                'Accept': 'application/json, application/xml;q=0.9, text/plain;q=0.8, */*;q=0.5',
                'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.5',
                'Connection': 'keep-alive',
            },
        )
        logger.debug("Source session initialized")

    async def close(self):
        """Clean up resources"""
        if self.session:
            await self.session.close()
            self.session = None
        logger.debug("Source session closed")

    async def get_text(self, url: str, params: Dict[str, Any], timeout: float) -> str:
        """GET a URL and return its body; non-2xx raises ClientResponseError"""
        async with self.session.get(
            url,
            params=params,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            response.raise_for_status()
            return await response.text(errors="replace")

    async def probe(self, url: str, timeout: float) -> int:
        """
        Check that a playback URL answers

        HEAD first; servers that refuse HEAD (403/405) get a one-byte ranged GET.
        Returns the final status; any status >= 400 raises ClientResponseError.
        """
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with self.session.head(url, timeout=client_timeout, allow_redirects=True) as response:
            status = response.status
            if status not in (403, 405):
                response.raise_for_status()
                return status

        async with self.session.get(
            url,
            headers={'Range': 'bytes=0-0'},
            timeout=client_timeout,
            allow_redirects=True,
        ) as response:
            response.raise_for_status()
            return response.status
