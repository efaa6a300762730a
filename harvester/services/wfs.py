from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Dict, Mapping

import httpx

from ..config import HarvestSettings
from .ledger import record_api_usage
from .tiling import BoundingBox

logger = logging.getLogger(__name__)

WFS_SERVICE = "WFS"
WFS_VERSION = "2.0.0"
WFS_REQUEST = "GetFeature"

Sleep = Callable[[float], Awaitable[None]]


def build_getfeature_params(bbox: BoundingBox, settings: HarvestSettings) -> Dict[str, str]:
    """Query parameters for one ``GetFeature`` request covering ``bbox``."""

    return {
        "service": WFS_SERVICE,
        "version": WFS_VERSION,
        "request": WFS_REQUEST,
        "typename": settings.typename,
        "outputFormat": settings.output_format,
        "srsName": settings.srs_name,
        "bbox": bbox.wfs_value(settings.srs_name),
        "count": str(settings.max_features),
    }


def request_url(base_url: str, params: Mapping[str, str]) -> str:
    return str(httpx.URL(base_url, params=dict(params)))


def count_features(payload: str, typename: str) -> int:
    """Count feature element openings such as ``<CL:Cadastral_parcel`` in a GML payload.

    This is a textual approximation of the number of returned features, not
    a parse of the document.
    """

    pattern = re.compile(rf"<{re.escape(typename)}(?=[\s/>])")
    return len(pattern.findall(payload))


class RetryingFetcher:
    """Issue GET requests with bounded exponential backoff.

    A request is retried on transport errors and on non-success HTTP status
    codes. The wait before retry ``n`` (0-based) is ``base_delay * 2 ** n``
    seconds; once ``max_attempts`` are used up the last error is raised.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def fetch(
        self,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        provider = httpx.URL(url).host or url
        for attempt in range(self.max_attempts):
            self._count_request(provider)
            try:
                response = await self.client.get(url, params=params, headers=headers)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                detail = f"{exc.response.status_code} {_short_error_detail(exc.response.text)}"
                if attempt + 1 >= self.max_attempts:
                    raise
            except httpx.RequestError as exc:
                detail = str(exc) or exc.__class__.__name__
                if attempt + 1 >= self.max_attempts:
                    raise

            delay = self.backoff(attempt)
            logger.warning(
                "Request to %s failed (%s); retrying in %.1fs (attempt %d/%d)",
                provider,
                detail,
                delay,
                attempt + 1,
                self.max_attempts,
            )
            await self._sleep(delay)

    @staticmethod
    def _count_request(provider: str) -> None:
        try:
            record_api_usage(provider)
        except Exception as exc:
            logger.warning("Could not record request to %s: %s", provider, exc)


def _short_error_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"
