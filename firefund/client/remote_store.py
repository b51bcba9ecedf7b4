"""
HTTP client for the FireFund server, used by the field client
"""

import logging
from typing import Any, Dict, Optional

import httpx

from firefund.client.offline_queue import TransactionStore


logger = logging.getLogger(__name__)

TRANSACTIONS_PATH = "/api/v1/transactions"
SIGNIN_PATH = "/api/v1/auth/signin"


class RemoteStoreError(Exception):
    """Server rejected the request or could not be reached"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"

    if isinstance(body, dict) and body.get('error'):
        return f"HTTP {response.status_code}: {body['error']}"
    return f"HTTP {response.status_code}"


class HttpTransactionStore(TransactionStore):
    """Inserts transactions through the server API"""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": "FireFund-Client/1.0"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def insert(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                f"{self.base_url}{TRANSACTIONS_PATH}", json=payload, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"Server unreachable: {e}") from e

        if response.status_code >= 400:
            raise RemoteStoreError(_error_message(response), response.status_code)

        return response.json()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


async def sign_in(base_url: str, email: str, password: str,
                  client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """Exchange credentials for a bearer token and profile"""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=30.0)
    try:
        response = await client.post(
            f"{base_url.rstrip('/')}{SIGNIN_PATH}",
            json={"email": email, "password": password}
        )
    except httpx.HTTPError as e:
        raise RemoteStoreError(f"Server unreachable: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code >= 400:
        raise RemoteStoreError(_error_message(response), response.status_code)

    return response.json()
