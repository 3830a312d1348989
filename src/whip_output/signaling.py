"""HTTP signalling for WHIP ingestion endpoints."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 8.0
SDP_CONTENT_TYPE = "application/sdp"


class WHIPError(RuntimeError):
    """Base error raised for WHIP signalling failures."""


class WHIPConnectionError(WHIPError):
    """Raised when the endpoint cannot be reached or the request times out."""


class WHIPStatusError(WHIPError):
    """Raised when the endpoint answers an offer with an unexpected status."""

    def __init__(self, url: str, status_code: int, body: str = "") -> None:
        detail = f"WHIP endpoint returned HTTP {status_code} for {url}"
        if body:
            detail = f"{detail}: {body}"
        super().__init__(detail)
        self.url = url
        self.status_code = status_code
        self.body = body


class WHIPEmptyAnswerError(WHIPError):
    """Raised when the endpoint accepted an offer without returning an answer."""


@dataclass(frozen=True, slots=True)
class OfferAnswer:
    """Outcome of a successful offer exchange."""

    answer: str
    resource_url: str | None = None


def _auth_headers(bearer_token: str | None) -> dict[str, str]:
    if not bearer_token:
        return {}
    return {"Authorization": f"Bearer {bearer_token}"}


def resolve_resource_url(endpoint_url: str, location: str) -> str | None:
    """Resolve a ``Location`` header value against ``endpoint_url``.

    Both absolute and relative references are supported. Returns ``None`` when
    the value cannot be interpreted as a URL.
    """

    location = location.strip()
    if not location:
        return None
    try:
        resolved = httpx.URL(endpoint_url).join(location)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        logger.warning("Unable to process resource URL response %r: %s", location, exc)
        return None
    return str(resolved)


class WHIPClient:
    """Thin async HTTP client for the WHIP offer and teardown requests."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def timeout(self) -> float:
        return self._timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            )
        return self._client

    async def offer(
        self, offer_sdp: str, endpoint_url: str, bearer_token: str | None = None
    ) -> OfferAnswer:
        """POST ``offer_sdp`` to ``endpoint_url`` and return the remote answer."""

        client = await self._get_client()
        headers = {"Content-Type": SDP_CONTENT_TYPE, **_auth_headers(bearer_token)}
        try:
            response = await asyncio.wait_for(
                client.post(endpoint_url, content=offer_sdp, headers=headers),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise WHIPConnectionError(
                f"Timed out after {self._timeout:g}s posting offer to {endpoint_url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise WHIPConnectionError(
                f"Unable to connect to WHIP endpoint at {endpoint_url}: {exc}"
            ) from exc

        if response.status_code != 201:
            raise WHIPStatusError(endpoint_url, response.status_code, response.text.strip())

        answer = response.text
        if not answer:
            raise WHIPEmptyAnswerError(f"No data returned from WHIP endpoint {endpoint_url}")

        location = response.headers.get("location", "").strip()
        resource_url: str | None = None
        if not location:
            logger.warning(
                "WHIP server did not provide a resource URL via the Location header"
            )
        else:
            resource_url = resolve_resource_url(endpoint_url, location)
            if resource_url is not None:
                logger.debug("WHIP resource URL is: %s", resource_url)
        return OfferAnswer(answer=answer, resource_url=resource_url)

    async def delete(self, resource_url: str, bearer_token: str | None = None) -> bool:
        """Tear down the session at ``resource_url``.

        Failures are logged and reported through the return value only.
        """

        if not resource_url:
            logger.debug("No resource URL available, not sending DELETE")
            return False

        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.delete(resource_url, headers=_auth_headers(bearer_token)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "DELETE request for resource URL failed. Reason: timed out after %gs",
                self._timeout,
            )
            return False
        except httpx.HTTPError as exc:
            logger.warning("DELETE request for resource URL failed. Reason: %s", exc)
            return False

        if response.status_code != 200:
            logger.warning(
                "DELETE request for resource URL failed. HTTP Code: %d",
                response.status_code,
            )
            return False

        logger.debug("Successfully performed DELETE request for resource URL")
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "DEFAULT_TIMEOUT",
    "OfferAnswer",
    "WHIPClient",
    "WHIPConnectionError",
    "WHIPEmptyAnswerError",
    "WHIPError",
    "WHIPStatusError",
    "resolve_resource_url",
]
