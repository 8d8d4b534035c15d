"""Opus Convert Service - Pydantic models for API validation.

Pydantic models for request/response validation corresponding to
JSON schemas in /specs. Used by FastAPI for runtime validation.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# --- Request Models ---


class UploadRequest(BaseModel):
    """Request payload for pushing a published output to storage."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    file_name: str = Field(
        ...,
        min_length=1,
        alias="fileName",
        description="Output file name relative to /output (e.g. '{request_id}/track-160.opus')",
    )


class SeedRequest(BaseModel):
    """Request payload for register and login."""

    model_config = ConfigDict(extra="forbid")

    seed: str = Field(..., min_length=1, description="Account seed (never stored in plain text)")


# --- Response Models ---


class ConvertSuccessResponse(BaseModel):
    """Response for a completed conversion.

    Corresponds to specs/convert_success.schema.json.
    """

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="success", description="Operation status")
    message: str = Field(default="Conversion completed.", description="Human-readable summary")
    request_id: str = Field(..., description="Identifier of this conversion request")
    outputs: list[str] = Field(..., min_length=1, description="Output paths relative to /output")


class ErrorResponse(BaseModel):
    """Response for failed operations.

    Corresponds to specs/convert_error.schema.json.
    """

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")
    quality: int | None = Field(default=None, description="Bitrate of the failing encode, if any")
    account_id: int | str | None = Field(
        default=None, description="Account left without a token after partial registration"
    )


class TokenResponse(BaseModel):
    """Response carrying an issued auth token payload.

    Corresponds to specs/token_response.schema.json.
    """

    model_config = ConfigDict(extra="forbid")

    data: Any = Field(..., description="Token payload as returned by the account service")


__all__ = [
    "UploadRequest",
    "SeedRequest",
    "ConvertSuccessResponse",
    "ErrorResponse",
    "TokenResponse",
]
