"""Astarte AppEngine REST client."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.parse import urljoin

import aiohttp

LOGGER = logging.getLogger(__name__)


class ApiError(RuntimeError):
    """Raised when AppEngine or Pairing answer with a 4xx/5xx status."""

    def __init__(self, status: int, url: str, body: Any) -> None:
        detail = json.dumps(body, indent=2) if not isinstance(body, str) else body
        super().__init__(f"HTTP status error ({status}) for url {url}\nResponse:\n{detail}")
        self.status = status
        self.url = url
        self.body = body


async def check_response(response: aiohttp.ClientResponse) -> aiohttp.ClientResponse:
    """Raise :class:`ApiError` carrying the response body on error statuses."""

    if response.status < 400:
        return response

    text = await response.text()
    try:
        body: Any = json.loads(text)
    except ValueError:
        body = text.strip()

    raise ApiError(response.status, str(response.url), body)


class ApiClient:
    """Device scoped AppEngine API calls, authenticated with a realm JWT."""

    def __init__(
        self,
        appengine_url: str,
        pairing_url: str,
        realm: str,
        device_id: str,
        jwt: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        ssl: bool = True,
    ) -> None:
        self.appengine_url = _with_trailing_slash(appengine_url)
        self.pairing_url = _with_trailing_slash(pairing_url)
        self.realm = realm
        self.device_id = device_id

        self._headers = {"Authorization": f"Bearer {jwt}"}
        self._ssl = ssl
        self._session = session
        self._owns_session = session is None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def is_healthy(self) -> None:
        """Raise :class:`ApiError` unless both AppEngine and Pairing answer."""

        session = await self._ensure_session()
        for url in (self.appengine_url, self.pairing_url):
            async with session.get(url, headers=self._headers, ssl=self._ssl) as response:
                await check_response(response)

    async def interfaces(self) -> list[str]:
        """List the interface names the device introspection declares."""

        data = await self._request("GET", self.device_url("/interfaces"))
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise ApiError(200, self.device_url("/interfaces"), data)
        return [str(name) for name in data["data"]]

    def device_url(self, rest: str) -> str:
        return urljoin(
            self.appengine_url, f"v1/{self.realm}/devices/{self.device_id}{rest}"
        )

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        session = await self._ensure_session()
        LOGGER.debug("%s %s", method, url)
        async with session.request(
            method, url, headers=self._headers, ssl=self._ssl, **kwargs
        ) as response:
            await check_response(response)
            text = await response.text()

        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ApiError(response.status, url, text) from exc


def _with_trailing_slash(url: str) -> str:
    return url if url.endswith("/") else url + "/"
