"""Shared response helpers: private JSON bodies and domain error mapping."""

from __future__ import annotations

import logging
from typing import Tuple, Type

from fastapi.responses import JSONResponse

from jitaccess.errors import (
    CapabilityError,
    ConfigurationError,
    JitAccessError,
    ResolutionError,
    SnapshotConflictError,
    SynchronizationError,
)
from jitaccess.grants.domain import (
    ConcurrentUpdateError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    RequestValidationError,
    SignalRejectedError,
)

LOG = logging.getLogger(__name__)

# First match wins; subclasses precede their bases.
ERROR_STATUS: Tuple[Tuple[Type[JitAccessError], int, str], ...] = (
    (ExecutionNotFoundError, 404, "not_found"),
    (RequestValidationError, 422, "invalid_request"),
    (ResolutionError, 422, "resolution_failed"),
    (ConfigurationError, 422, "invalid_configuration"),
    (CapabilityError, 422, "capability_missing"),
    (SignalRejectedError, 409, "signal_rejected"),
    (InvalidTransitionError, 409, "invalid_transition"),
    (ConcurrentUpdateError, 409, "conflict"),
    (SnapshotConflictError, 409, "conflict"),
    (SynchronizationError, 409, "sync_conflict"),
)


def private_response(body: dict, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def error_response(exc: JitAccessError) -> JSONResponse:
    for error_type, status_code, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return private_response({"error": code, "detail": str(exc)}, status_code=status_code)
    LOG.exception("web.error.unmapped type=%s", type(exc).__name__)
    return private_response({"error": "internal_error"}, status_code=500)


__all__ = ["ERROR_STATUS", "error_response", "private_response"]
