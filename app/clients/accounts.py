"""Opus Convert Service - Account service client.

Thin wrapper over the storage service's admin account endpoints:
- POST /admin/accounts?email={hashed}        -> {"id": ...}
- POST /admin/accounts/new_auth_token?id={id} -> token payload
- GET  /admin/accounts/full                  -> {"accounts": [...]}

The hashed seed travels in the remote "email" field; this client treats it as
an opaque hashed secret and exposes it as Account.hashed_secret.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import STORAGE_ADMIN_TOKEN, STORAGE_TIMEOUT_SECONDS, STORAGE_URL

logger = logging.getLogger(__name__)


class AccountServiceError(Exception):
    """The account service rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class Account:
    """One remote account."""

    id: int | str
    hashed_secret: str | None


class AccountClient:
    """Client for the remote account admin API.

    Args:
        base_url: Service root URL.
        admin_token: Value sent in the Authorization header.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = STORAGE_URL,
        admin_token: str = STORAGE_ADMIN_TOKEN,
        timeout: float = STORAGE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.admin_token = admin_token
        self.timeout = timeout
        self.transport = transport

    async def _request(self, method: str, path: str, params: dict | None = None) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.admin_token:
            headers["Authorization"] = self.admin_token

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    headers=headers,
                    json={} if method == "POST" else None,
                )
        except httpx.HTTPError as e:
            raise AccountServiceError(f"Account service request failed: {e}") from e

        if resp.is_error:
            logger.warning("Account service %s %s failed: %d", method, path, resp.status_code)
            raise AccountServiceError(
                f"Account service call failed: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise AccountServiceError("Account service returned invalid JSON") from e

    async def create_account(self, hashed_secret: str) -> int | str:
        """Create an account keyed by a hashed secret.

        Returns:
            The new account id.

        Raises:
            AccountServiceError: On failure or a response without an id.
        """
        data = await self._request("POST", "/admin/accounts", params={"email": hashed_secret})
        if not isinstance(data, dict) or data.get("id") is None:
            raise AccountServiceError("Account service response has no account id")
        return data["id"]

    async def issue_token(self, account_id: int | str) -> Any:
        """Issue a new auth token for an account.

        Returns:
            The service's token payload, passed through unchanged.
        """
        return await self._request(
            "POST", "/admin/accounts/new_auth_token", params={"id": str(account_id)}
        )

    async def list_accounts(self) -> list[Account]:
        """Fetch every account with its hashed secret."""
        data = await self._request("GET", "/admin/accounts/full")
        if not isinstance(data, dict) or not isinstance(data.get("accounts"), list):
            raise AccountServiceError("Account service response has no accounts list")
        return [
            Account(id=entry["id"], hashed_secret=entry.get("email") or None)
            for entry in data["accounts"]
            if isinstance(entry, dict) and entry.get("id") is not None
        ]
