import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class OptimizedHTTPClient:
    """Pooled HTTP client with retry for idempotent requests."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
        self._client = httpx.Client(
            limits=limits,
            timeout=httpx.Timeout(timeout=timeout, connect=min(timeout, 5.0)),
            follow_redirects=True,
            transport=transport,
        )

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self._client.post(url, **kwargs)

    def request_with_retry(self, method: str, url: str, retries: int = 3, backoff: float = 0.5,
                           **kwargs) -> Optional[httpx.Response]:
        """Send a GET/HEAD with exponential backoff; None when every attempt failed."""
        for attempt in range(retries):
            try:
                return self._client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                if attempt < retries - 1:
                    wait_time = backoff * (2 ** attempt)
                    logger.debug(f"{method} {url} failed ({e}); retrying in {wait_time:.1f}s")
                    time.sleep(wait_time)
                    continue
                logger.error(f"{method} {url} failed after {retries} attempts: {e}")
                return None
        return None

    def close(self) -> None:
        self._client.close()
