import asyncio
import logging
from typing import Any, Dict, Optional
import aiohttp
from ...config import Config
from ...errors import GatewayUnavailable

class HttpResponse:
    """Status code and decoded JSON body of a gateway reply"""

    def __init__(self, status: int, data: Any = None):
        self.status = status
        self.data = data

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Dict[str, Any]:
        return self.data if isinstance(self.data, dict) else {}

class GatewayHttpClient:
    """JSON over HTTP with a bounded timeout for one payment processor"""

    def __init__(self, name: str, timeout: Optional[float] = None):
        self.name = name
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.HTTP_TIMEOUT_SECONDS)
        self.logger = logging.getLogger(__name__)

    async def request(self, verb: str, url: str, *, headers: Optional[Dict[str, str]] = None,
                      json: Any = None, data: Any = None,
                      params: Optional[Dict[str, Any]] = None,
                      reference: Optional[str] = None) -> HttpResponse:
        """Send a request; transport failures and 5xx replies raise GatewayUnavailable"""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(
                    verb, url, headers=headers, json=json, data=data, params=params
                ) as response:
                    status = response.status
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = None

        except asyncio.TimeoutError as e:
            raise GatewayUnavailable(
                f"{self.name} did not answer within {self.timeout.total:g}s",
                method=self.name, reference=reference
            ) from e
        except aiohttp.ClientError as e:
            raise GatewayUnavailable(
                f"{self.name} request failed: {type(e).__name__}",
                method=self.name, reference=reference
            ) from e

        if status >= 500 or status == 429:
            self.logger.warning(f"{self.name} answered {status} for {verb} {url}")
            raise GatewayUnavailable(
                f"{self.name} temporarily unavailable ({status})",
                method=self.name, reference=reference, details={"http_status": status}
            )

        return HttpResponse(status, payload)
