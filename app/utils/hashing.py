"""Opus Convert Service - Hashing utilities.

Account seeds are stored remotely as opaque hashed secrets. The encoded form is
self-describing so verification needs nothing but the stored string:

    pbkdf2_sha256${iterations}${salt_hex}${digest_hex}
"""

import hashlib
import secrets

from app.config import HASH_ITERATIONS

SECRET_SCHEME = "pbkdf2_sha256"


def _derive(secret: str, salt: str, iterations: int) -> str:
    dk = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt.encode("utf-8"), iterations)
    return dk.hex()


def hash_secret(secret: str, salt: str | None = None, iterations: int = HASH_ITERATIONS) -> str:
    """Hash a secret into its encoded storage form.

    Args:
        secret: Plain secret (e.g., an account seed).
        salt: Optional hex salt (random 16 bytes if omitted).
        iterations: PBKDF2 iteration count.

    Returns:
        Encoded hash string.
    """
    salt = salt or secrets.token_hex(16)
    return f"{SECRET_SCHEME}${iterations}${salt}${_derive(secret, salt, iterations)}"


def verify_secret(secret: str, encoded: str | None) -> bool:
    """Check a secret against an encoded hash.

    Malformed or empty encodings never match.

    Returns:
        True if the secret matches.
    """
    if not encoded:
        return False
    try:
        scheme, iterations_str, salt, digest = encoded.split("$")
        iterations = int(iterations_str)
    except ValueError:
        return False
    if scheme != SECRET_SCHEME or iterations <= 0:
        return False
    return secrets.compare_digest(_derive(secret, salt, iterations), digest)
