"""Opus Convert Service - Clients for the remote storage / account service."""

from app.clients.accounts import Account, AccountClient, AccountServiceError
from app.clients.storage import BlobStoreClient, StorageError

__all__ = [
    "Account",
    "AccountClient",
    "AccountServiceError",
    "BlobStoreClient",
    "StorageError",
]
