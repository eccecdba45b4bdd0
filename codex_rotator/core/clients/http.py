from __future__ import annotations

from dataclasses import dataclass

import aiohttp
from aiohttp_retry import RetryClient


@dataclass(slots=True)
class HttpClient:
    session: aiohttp.ClientSession
    retry_client: RetryClient

    async def close(self) -> None:
        await self.retry_client.close()


def create_http_client(*, connector_limit: int = 20, keepalive_timeout_seconds: float = 15.0) -> HttpClient:
    """Build the shared session pair; must be called from inside a running event loop.

    ``trust_env`` picks up HTTP(S)_PROXY / NO_PROXY so the token and usage endpoints can be
    reached through the same proxies as the rest of the client.
    """
    connector = aiohttp.TCPConnector(
        limit=connector_limit,
        keepalive_timeout=keepalive_timeout_seconds,
    )
    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None),
        connector=connector,
        trust_env=True,
    )
    retry_client = RetryClient(client_session=session, raise_for_status=False, trust_env=True)
    return HttpClient(session=session, retry_client=retry_client)
