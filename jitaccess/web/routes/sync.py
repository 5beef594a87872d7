"""
Catalog synchronization protocol over HTTP.

Flow (driver side, see `jitaccess.catalog.client.SyncClient`):
    POST /sync/sessions                      -> {"sessionId"}
    POST /sync/sessions/{id}/chunks          -> {"accepted": true}   (base64 payload)
    POST /sync/sessions/{id}/commit          -> {"installedVersion"}
    DELETE /sync/sessions/{id}               -> abort

Any SynchronizationError (out-of-order chunk, checksum mismatch, session
already open, unknown or closed session) is a 409 with the reason as detail.
When `JIT_SYNC_TOKEN` is configured, drivers must send it as a bearer token.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from jitaccess.catalog.pull import pull_catalog
from jitaccess.catalog.sync import DATASETS
from jitaccess.errors import JitAccessError

from ..responses import error_response, private_response
from ..services import get_services

LOG = logging.getLogger(__name__)

sync_router = APIRouter(tags=["Catalog Sync"])


class SessionStart(BaseModel):
    provider: str = Field(..., min_length=1, max_length=200)
    datasetVersion: str = Field(..., min_length=1, max_length=200)
    dataset: str = Field("catalog", max_length=50)


class ChunkPush(BaseModel):
    sequence: int = Field(..., ge=0)
    payload: str


class SessionCommit(BaseModel):
    checksum: str = Field(..., min_length=1, max_length=128)


class PullRequest(BaseModel):
    datasetVersion: str = Field(..., min_length=1, max_length=200)
    chunkSize: int = Field(100, ge=1, le=10000)


def _require_driver(request: Request):
    services = get_services()
    expected = services.config.sync_token
    if not expected:
        return services, None
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        LOG.warning("catalog.sync.unauthenticated path=%s", request.url.path)
        return None, private_response({"error": "unauthenticated"}, status_code=401)
    return services, None


@sync_router.post("/sync/sessions")
def start_session(payload: SessionStart, request: Request):
    services, error = _require_driver(request)
    if error:
        return error
    if payload.dataset not in DATASETS:
        return private_response(
            {"error": "invalid_request", "detail": f"dataset must be one of {', '.join(DATASETS)}"},
            status_code=400,
        )
    try:
        session_id = services.synchronizer.start(payload.provider, payload.datasetVersion, payload.dataset)
    except JitAccessError as exc:
        return error_response(exc)
    return private_response({"sessionId": session_id}, status_code=201)


@sync_router.post("/sync/sessions/{session_id}/chunks")
def push_chunk(session_id: str, payload: ChunkPush, request: Request):
    services, error = _require_driver(request)
    if error:
        return error
    try:
        data = base64.b64decode(payload.payload, validate=True)
    except (binascii.Error, ValueError):
        return private_response({"error": "invalid_request", "detail": "payload must be base64"}, status_code=400)
    try:
        accepted = services.synchronizer.push_chunk(session_id, payload.sequence, data)
    except JitAccessError as exc:
        return error_response(exc)
    return private_response({"accepted": accepted})


@sync_router.post("/sync/sessions/{session_id}/commit")
def commit_session(session_id: str, payload: SessionCommit, request: Request):
    services, error = _require_driver(request)
    if error:
        return error
    try:
        installed = services.synchronizer.commit(session_id, payload.checksum)
    except JitAccessError as exc:
        return error_response(exc)
    return private_response({"installedVersion": installed})


@sync_router.delete("/sync/sessions/{session_id}")
def abort_session(session_id: str, request: Request):
    services, error = _require_driver(request)
    if error:
        return error
    try:
        services.synchronizer.abort(session_id)
    except JitAccessError as exc:
        return error_response(exc)
    return private_response({"aborted": True})


@sync_router.get("/sync/sessions/{session_id}")
def get_session(session_id: str, request: Request):
    services, error = _require_driver(request)
    if error:
        return error
    session = services.synchronizer.get_session(session_id)
    if session is None:
        return private_response({"error": "not_found"}, status_code=404)
    return private_response(
        {
            "sessionId": session.id,
            "provider": session.provider_id,
            "dataset": session.dataset,
            "datasetVersion": session.dataset_version,
            "state": session.state,
            "nextSequence": session.next_sequence,
            "reason": session.reason,
        }
    )


@sync_router.post("/sync/providers/{provider_id}/pull")
def pull_provider_catalog(provider_id: str, payload: PullRequest, request: Request):
    """Refresh a provider's catalog from its own RBAC capability."""
    services, error = _require_driver(request)
    if error:
        return error
    try:
        installed = pull_catalog(
            services.synchronizer,
            services.providers,
            provider_id,
            payload.datasetVersion,
            chunk_size=payload.chunkSize,
        )
    except JitAccessError as exc:
        return error_response(exc)
    return private_response({"installedVersion": installed})


__all__ = ["sync_router"]
