"""Opus Convert Service - Account registration and login.

Registration is a two-step pipeline with a typed intermediate result:

    seed -> hash -> create_account -> CreatedAccount -> issue_token -> token

If the account is created but the token cannot be issued, the caller gets a
PartialRegistrationError carrying the account id, which is distinct from a
registration that failed outright.

Login fetches every account and scans them in order, stopping at the first
whose hashed secret matches the seed. Cost is O(accounts) hash checks; each
PBKDF2 derivation runs in the threadpool so the event loop keeps serving
encoder outcomes meanwhile.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi.concurrency import run_in_threadpool

from app.clients.accounts import AccountClient, AccountServiceError
from app.utils.hashing import hash_secret, verify_secret

logger = logging.getLogger(__name__)


class RegistrationFailedError(Exception):
    """No account was created."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Registration failed: {reason}")


class PartialRegistrationError(Exception):
    """The account exists but no token could be issued for it."""

    def __init__(self, account_id: int | str, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Account {account_id} created but token issuance failed: {reason}")


class LoginFailedError(Exception):
    """No account matches the submitted seed."""


@dataclass(frozen=True)
class CreatedAccount:
    """Intermediate result: account exists, no token yet."""

    account_id: int | str


async def create_account(client: AccountClient, seed: str) -> CreatedAccount:
    """Step 1: create an account keyed by the hashed seed.

    Raises:
        RegistrationFailedError: If the account service fails.
    """
    try:
        hashed = await run_in_threadpool(hash_secret, seed)
        account_id = await client.create_account(hashed)
    except AccountServiceError as e:
        raise RegistrationFailedError(e.message) from e
    logger.info("Created account id=%s", account_id)
    return CreatedAccount(account_id=account_id)


async def issue_token(client: AccountClient, created: CreatedAccount) -> Any:
    """Step 2: issue a token for a freshly created account.

    Raises:
        PartialRegistrationError: If the token cannot be issued.
    """
    try:
        return await client.issue_token(created.account_id)
    except AccountServiceError as e:
        logger.error("Token issuance failed for new account id=%s: %s", created.account_id, e)
        raise PartialRegistrationError(created.account_id, e.message) from e


async def register(client: AccountClient, seed: str) -> Any:
    """Register a new account and return its token payload."""
    created = await create_account(client, seed)
    return await issue_token(client, created)


async def login(client: AccountClient, seed: str) -> Any:
    """Find the account matching a seed and issue it a token.

    Raises:
        LoginFailedError: If no account matches.
        AccountServiceError: If the account service fails.
    """
    accounts = await client.list_accounts()
    for account in accounts:
        if account.hashed_secret and await run_in_threadpool(
            verify_secret, seed, account.hashed_secret
        ):
            logger.info("Login matched account id=%s", account.id)
            return await client.issue_token(account.id)
    raise LoginFailedError("Login failed.")
