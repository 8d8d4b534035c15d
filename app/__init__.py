"""Opus Convert Service - Core application modules.

Provides:
- Encode job specs and outcomes (jobs)
- The encoder process runner (runner)
- The fan-out/join batch coordinator (batch)
- Clients for the remote storage / account service (clients)
- Core utilities: atomic_io, hashing, paths
"""

__version__ = "0.1.0"
