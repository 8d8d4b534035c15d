"""Opus Convert Service - Convert API FastAPI application.

Endpoints:
- POST /convert   multipart upload -> one Opus file per target quality
- POST /upload    push a published output to the remote blob store
- POST /register  create an account and issue its first token
- POST /login     issue a token for the account matching a seed
- GET  /health    liveness check (no auth)
- GET  /output/*  published outputs, read-only (no auth)

Run with:
    uvicorn services.convert_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import StrEnum
from typing import Annotated

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from app.clients.accounts import AccountClient, AccountServiceError
from app.clients.storage import BlobStoreClient, StorageError
from app.config import ALLOWED_ORIGINS, OUTPUT_DIR, UPLOAD_TMP_DIR
from app.schemas import (
    ConvertSuccessResponse,
    ErrorResponse,
    SeedRequest,
    TokenResponse,
    UploadRequest,
)
from app.utils.paths import resolve_output_file
from services.convert_api import accounts
from services.convert_api.auth import require_bearer_token
from services.convert_api.service import (
    ConversionError,
    ConversionService,
    ConvertErrorCode,
    EncodeProcessFailedError,
    InputMissingError,
)

logger = logging.getLogger(__name__)


# --- Collaborators ---

# Module-level singletons (created on first use, replaceable for tests)
_conversion_service: ConversionService | None = None
_blob_store: BlobStoreClient | None = None
_account_client: AccountClient | None = None


def get_conversion_service() -> ConversionService:
    """Dependency that provides the conversion service."""
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service


def get_blob_store() -> BlobStoreClient:
    """Dependency that provides the blob store client."""
    global _blob_store
    if _blob_store is None:
        _blob_store = BlobStoreClient()
    return _blob_store


def get_account_client() -> AccountClient:
    """Dependency that provides the account service client."""
    global _account_client
    if _account_client is None:
        _account_client = AccountClient()
    return _account_client


# --- Lifespan ---


def _cleanup_orphan_temp_files_safe() -> None:
    """Clean up orphan temp files on startup (best-effort).

    Targets interrupted encoder outputs and upload spools.
    """
    from app.utils.atomic_io import cleanup_orphan_temp_files

    try:
        total_cleaned = cleanup_orphan_temp_files(OUTPUT_DIR)
        total_cleaned += cleanup_orphan_temp_files(UPLOAD_TMP_DIR)
        if total_cleaned > 0:
            logger.info("Startup cleanup: removed %d orphan temp files", total_cleaned)
    except Exception:
        # Best-effort: never crash startup
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Creates the output directory and cleans up orphan temp files.
    """
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    _cleanup_orphan_temp_files_safe()
    yield


# --- FastAPI App ---


app = FastAPI(
    title="Opus Convert Service",
    description="Converts uploaded audio into one Opus file per target bitrate.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(ALLOWED_ORIGINS),
    allow_methods=["GET", "POST"],
    allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"],
)

app.mount("/output", StaticFiles(directory=OUTPUT_DIR, check_dir=False), name="output")


# --- Error Handling ---


class ApiErrorCode(StrEnum):
    """Error codes for the collaborator endpoints."""

    INVALID_FILE_NAME = "INVALID_FILE_NAME"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    STORAGE_FAILED = "STORAGE_FAILED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    PARTIAL_REGISTRATION = "PARTIAL_REGISTRATION"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCOUNT_SERVICE_FAILED = "ACCOUNT_SERVICE_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_code_to_status(error_code: str) -> int:
    """Map error codes to HTTP status codes.

    - INPUT_MISSING / INPUT_UNREADABLE / INVALID_FILE_NAME -> 400
    - LOGIN_FAILED -> 401
    - FILE_NOT_FOUND -> 404
    - remote service failures -> 502
    - BATCH_TIMEOUT -> 504
    - everything else (ENCODE_PROCESS_FAILED, INTERNAL_ERROR) -> 500
    """
    if error_code in (
        ConvertErrorCode.INPUT_MISSING,
        ConvertErrorCode.INPUT_UNREADABLE,
        ApiErrorCode.INVALID_FILE_NAME,
    ):
        return 400
    if error_code == ApiErrorCode.LOGIN_FAILED:
        return 401
    if error_code == ApiErrorCode.FILE_NOT_FOUND:
        return 404
    if error_code in (
        ApiErrorCode.STORAGE_FAILED,
        ApiErrorCode.REGISTRATION_FAILED,
        ApiErrorCode.PARTIAL_REGISTRATION,
        ApiErrorCode.ACCOUNT_SERVICE_FAILED,
    ):
        return 502
    if error_code == ConvertErrorCode.BATCH_TIMEOUT:
        return 504
    return 500


def make_error_response(error_code: str, error_message: str, **extra) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=error_code_to_status(error_code),
        content=ErrorResponse(
            error_code=error_code,
            error_message=error_message,
            **extra,
        ).model_dump(exclude_none=True),
    )


CONVERT_PATH = "/convert"


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report a malformed /convert body as missing input.

    The only body field of /convert is the music file, so a validation error
    there means no usable file was uploaded (e.g. a plain text field). Other
    routes keep FastAPI's default 422 response.
    """
    if request.url.path == CONVERT_PATH:
        logger.info("Rejected /convert body: %s", exc.errors())
        return make_error_response(ConvertErrorCode.INPUT_MISSING, "No file was uploaded.")
    return await request_validation_exception_handler(request, exc)


# --- Endpoints ---


@app.post(
    CONVERT_PATH,
    response_model=ConvertSuccessResponse,
    responses={
        400: {"model": ErrorResponse, "description": "No file or unreadable file"},
        500: {"model": ErrorResponse, "description": "Encoding failed"},
        504: {"model": ErrorResponse, "description": "Encoding timed out"},
    },
    dependencies=[Depends(require_bearer_token)],
    summary="Convert an uploaded audio file to Opus",
    description="Encodes the upload once per target bitrate; succeeds only if every encode does.",
)
async def convert(
    service: Annotated[ConversionService, Depends(get_conversion_service)],
    music: Annotated[
        list[UploadFile] | None, File(description="Audio file to convert (exactly one)")
    ] = None,
):
    """Convert an uploaded audio file.

    Responds exactly once: after every encode succeeded, or as soon as the
    first one failed.
    """
    try:
        uploads = music or []
        if len(uploads) > 1:
            raise InputMissingError(f"Exactly one file must be uploaded, got {len(uploads)}.")
        if uploads:
            result = await service.convert_upload(uploads[0].file, uploads[0].filename)
        else:
            result = await service.convert_upload(None, None)
        return ConvertSuccessResponse(
            request_id=result.request_id,
            outputs=result.relative_outputs(service.output_dir),
        )
    except EncodeProcessFailedError as e:
        return make_error_response(e.error_code, e.message, quality=e.quality)
    except ConversionError as e:
        return make_error_response(e.error_code, e.message)
    except Exception:
        # Log full exception server-side, return generic message to client
        logger.exception("Unexpected error during conversion")
        return make_error_response(
            ApiErrorCode.INTERNAL_ERROR,
            "An unexpected error occurred during conversion",
        )


@app.post(
    "/upload",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid file name"},
        404: {"model": ErrorResponse, "description": "Output file not found"},
        502: {"model": ErrorResponse, "description": "Storage failed"},
    },
    dependencies=[Depends(require_bearer_token)],
    summary="Push a converted file to storage",
)
async def upload(
    request: UploadRequest,
    service: Annotated[ConversionService, Depends(get_conversion_service)],
    blob_store: Annotated[BlobStoreClient, Depends(get_blob_store)],
):
    """Proxy a published output file to the blob store and return its handle."""
    file_path = resolve_output_file(request.file_name, service.output_dir)
    if file_path is None:
        return make_error_response(ApiErrorCode.INVALID_FILE_NAME, "Invalid file name")
    if not file_path.is_file():
        return make_error_response(ApiErrorCode.FILE_NOT_FOUND, "File not found")

    try:
        with open(file_path, "rb") as f:
            return await blob_store.store(file_path.name, f)
    except StorageError as e:
        return make_error_response(ApiErrorCode.STORAGE_FAILED, e.message)
    except OSError:
        logger.exception("Failed to read %s for upload", file_path)
        return make_error_response(ApiErrorCode.INTERNAL_ERROR, "Failed to read file")


@app.post(
    "/register",
    status_code=201,
    response_model=TokenResponse,
    responses={502: {"model": ErrorResponse, "description": "Account service failed"}},
    dependencies=[Depends(require_bearer_token)],
    summary="Register a new account",
)
async def register(
    request: SeedRequest,
    client: Annotated[AccountClient, Depends(get_account_client)],
):
    """Create an account for a seed and issue its first token."""
    try:
        data = await accounts.register(client, request.seed)
    except accounts.PartialRegistrationError as e:
        return make_error_response(
            ApiErrorCode.PARTIAL_REGISTRATION, str(e), account_id=e.account_id
        )
    except accounts.RegistrationFailedError as e:
        return make_error_response(ApiErrorCode.REGISTRATION_FAILED, str(e))
    return TokenResponse(data=data)


@app.post(
    "/login",
    status_code=201,
    response_model=TokenResponse,
    responses={
        401: {"model": ErrorResponse, "description": "No matching account"},
        502: {"model": ErrorResponse, "description": "Account service failed"},
    },
    dependencies=[Depends(require_bearer_token)],
    summary="Log in with a seed",
)
async def login(
    request: SeedRequest,
    client: Annotated[AccountClient, Depends(get_account_client)],
):
    """Issue a token for the account whose hashed secret matches the seed."""
    try:
        data = await accounts.login(client, request.seed)
    except accounts.LoginFailedError:
        return make_error_response(ApiErrorCode.LOGIN_FAILED, "Login failed.")
    except AccountServiceError as e:
        return make_error_response(ApiErrorCode.ACCOUNT_SERVICE_FAILED, e.message)
    return TokenResponse(data=data)


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}

