import asyncio
import os
from typing import Any

import httpx

from finance_tracker.errors import UpstreamServiceError
from finance_tracker.integration.base import TransactionService
from finance_tracker.logger import get_logger

logger = get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0

_FILTER_PARAMS = {
    "search": "search",
    "type": "type",
    "category": "category",
    "start_date": "startDate",
    "end_date": "endDate",
    "page": "page",
    "limit": "limit",
}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if value:
                return str(value)
    return f"Transaction service returned HTTP {response.status_code}"


def _unwrap(body: Any) -> Any:
    # The API answers either with the resource itself or with {"data": ...}.
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class HttpTransactionService(TransactionService):
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ):
        self.base_url = (base_url or os.getenv("TRANSACTION_API_URL") or "").rstrip("/") or None
        self.token = token or os.getenv("TRANSACTION_API_TOKEN")
        self.timeout = timeout
        self.headers = self._build_headers()
        self._client = client
        self._client_lock = asyncio.Lock()

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def refresh(self, base_url: str | None = None, token: str | None = None) -> None:
        base_value = base_url if base_url is not None else os.getenv("TRANSACTION_API_URL")
        token_value = token if token is not None else os.getenv("TRANSACTION_API_TOKEN")
        self.base_url = (base_value or "").rstrip("/") or None
        self.token = token_value or None
        self.headers = self._build_headers()

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            # Another task may have created the client while we waited.
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self.timeout)
                self._client = client
            return client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        if not self.base_url:
            raise UpstreamServiceError("Transaction service is not configured (TRANSACTION_API_URL)")

        client = await self._get_client()
        url = f"{self.base_url}{path}"
        try:
            response = await client.request(
                method,
                url,
                headers=self.headers,
                json=json,
                params=params,
            )
        except httpx.TimeoutException as exc:
            logger.error("[API] %s %s timed out.", method, url)
            raise UpstreamServiceError("Transaction service timed out", timed_out=True) from exc
        except httpx.HTTPError as exc:
            logger.error("[API] %s %s failed: %s", method, url, exc)
            raise UpstreamServiceError(
                "Network error. Please check your connection and try again."
            ) from exc

        if response.is_error:
            message = _error_message(response)
            logger.error("[API] %s %s -> %s: %s", method, url, response.status_code, message)
            raise UpstreamServiceError(message, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return _unwrap(response.json())
        except ValueError as exc:
            raise UpstreamServiceError("Transaction service returned invalid JSON") from exc

    async def create_transaction(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/api/transactions", json=payload)
        if not isinstance(data, dict):
            raise UpstreamServiceError("Unexpected create response from transaction service")
        return data

    async def update_transaction(self, transaction_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("PUT", f"/api/transactions/{transaction_id}", json=patch)
        if not isinstance(data, dict):
            raise UpstreamServiceError("Unexpected update response from transaction service")
        return data

    async def delete_transaction(self, transaction_id: str) -> None:
        await self._request("DELETE", f"/api/transactions/{transaction_id}")

    async def list_transactions(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        for key, value in (filters or {}).items():
            if value is None or value == "":
                continue
            params[_FILTER_PARAMS.get(key, key)] = value

        data = await self._request("GET", "/api/transactions", params=params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise UpstreamServiceError("Unexpected list response from transaction service")
        return [item for item in data if isinstance(item, dict)]
