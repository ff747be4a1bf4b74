# src/oshapp_bff/api_client.py

import asyncio
import typing

import httpx

from .config import settings
from .exceptions import (
    BackendHTTPError,
    BackendUnauthorizedError,
    BackendUnavailableError,
)

HEALTH_CHECK_PATH = "/api/v1/medical-visits"


def extract_error_message(response: httpx.Response) -> str:
    """Best-effort human readable message from a backend error response."""
    header_message = response.headers.get("x-error-message")
    if header_message:
        return header_message
    text = response.text or ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if body.get(key):
                return f"Erreur: {body[key]}"
    elif isinstance(body, str) and body:
        return f"Erreur: {body}"
    if text.strip():
        return f"Erreur: {text.strip()}"
    return f"Erreur serveur ({response.status_code})"


class BackendClient:
    """Bearer-authenticated JSON client for the OSHApp REST backend."""

    def __init__(
            self,
            access_token: typing.Optional[str],
            base_url: typing.Optional[str] = None,
            transport: typing.Optional[httpx.AsyncBaseTransport] = None,
            timeout: typing.Optional[float] = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.API_URL).rstrip("/")
        self.transport = transport
        self.timeout = timeout if timeout is not None else settings.BACKEND_TIMEOUT_SECONDS

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _client(self, timeout: typing.Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            transport=self.transport,
            timeout=timeout if timeout is not None else self.timeout,
        )

    async def request(
            self,
            method: str,
            path: str,
            json: typing.Any = None,
            params: typing.Optional[dict] = None,
    ) -> typing.Any:
        async with self._client() as client:
            try:
                response = await client.request(method, path, headers=self._headers(), json=json, params=params)
            except httpx.TimeoutException as e:
                print(f"BACKEND: Timeout calling {method} {path}: {e}")
                raise BackendUnavailableError(f"Timeout calling {path}") from e
            except httpx.RequestError as e:
                print(f"BACKEND: Network error calling {method} {path}: {e}")
                raise BackendUnavailableError(f"Could not connect to backend: {e}") from e

        if response.status_code == 401:
            raise BackendUnauthorizedError()
        if response.status_code >= 400:
            message = extract_error_message(response)
            print(f"BACKEND: {method} {path} failed: {response.status_code} - {message}")
            raise BackendHTTPError(response.status_code, message)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def get(self, path: str, params: typing.Optional[dict] = None) -> typing.Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: typing.Any = None, params: typing.Optional[dict] = None) -> typing.Any:
        return await self.request("POST", path, json=json, params=params)

    async def put(self, path: str, json: typing.Any = None) -> typing.Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> typing.Any:
        return await self.request("DELETE", path)

    async def check_backend_available(self, timeout: typing.Optional[float] = None) -> bool:
        """
        Quick availability probe. A 404 means the service answering is not the
        OSHApp backend; any other status means it is up. Never waits longer than
        the timeout, even if the transport neither answers nor fails.
        """
        timeout = timeout if timeout is not None else settings.HEALTH_CHECK_TIMEOUT_SECONDS

        async def probe() -> bool:
            async with self._client(timeout=timeout) as client:
                response = await client.get(HEALTH_CHECK_PATH, headers=self._headers())
                return response.status_code != 404

        try:
            return await asyncio.wait_for(probe(), timeout=timeout)
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            print(f"BACKEND: Health check failed ({type(e).__name__}), backend considered offline")
            return False
