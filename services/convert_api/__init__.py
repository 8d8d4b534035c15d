"""Opus Convert Service - Convert API service.

FastAPI service that fans an uploaded audio file out to one encoder process
per target bitrate and answers once with the joined result.
"""

__all__: list[str] = []
