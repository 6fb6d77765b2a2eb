"""
Thin JSON-over-HTTP client shared by every platform collaborator.

One request per call, bounded by the configured timeout, no retries. Failures
are mapped onto the ``PlatformError`` hierarchy so callers can tell an
unreachable service from a rejected request from an undecodable body.
"""
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError

from canary.services.exceptions import (
    PlatformRequestError,
    PlatformResponseError,
    PlatformUnavailableError,
)

logger = structlog.get_logger()

T = TypeVar("T")


def join_url(base_url: str, path: str) -> str:
    if not path:
        return base_url
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def parse_as(type_: Type[T], data: Any, *, source: str = "") -> T:
    """Validate decoded JSON against a schema type, e.g. ``List[Device]``."""
    try:
        return TypeAdapter(type_).validate_python(data)
    except ValidationError as e:
        raise PlatformResponseError(f"unexpected response shape from {source or 'platform'}: {e}") from e


class PlatformClient:
    def __init__(self, http_client: httpx.AsyncClient, timeout_seconds: float = 10.0):
        self._http = http_client
        self._timeout = timeout_seconds

    async def send(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str] = None,
        json_body: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        form: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        headers: Dict[str, str] = {}
        if token:
            headers["Authorization"] = token
        try:
            response = await self._http.request(
                method,
                url,
                headers=headers,
                json=json_body,
                params=params,
                data=form,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as e:
            raise PlatformUnavailableError(f"{method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise PlatformUnavailableError(f"{method} {url} failed: {e}") from e

        if response.status_code > 299:
            logger.debug(
                "Platform request rejected",
                method=method,
                url=url,
                status_code=response.status_code,
            )
            raise PlatformRequestError(method, url, response.status_code, response.text)
        return response

    async def request_json(self, method: str, url: str, **kwargs) -> Any:
        """Send a request and decode the JSON response body."""
        response = await self.send(method, url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise PlatformResponseError(f"{method} {url} returned an undecodable body: {response.text[:200]}") from e

    async def get_json(self, url: str, **kwargs) -> Any:
        return await self.request_json("GET", url, **kwargs)

    async def post_json(self, url: str, body: Any, **kwargs) -> Any:
        return await self.request_json("POST", url, json_body=body, **kwargs)

    async def delete(self, url: str, **kwargs) -> None:
        await self.send("DELETE", url, **kwargs)
