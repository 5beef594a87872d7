"""
Access request endpoints: submission, signals and grant listings.

Behavior:
    - `POST /requests` resolves and validates synchronously; a 201 body is
      the persisted execution (already `pending_approval` or `approved`).
    - Signals map to the orchestrator; a losing approve/deny is a 409.
    - Every response is private (`Cache-Control: private, no-store`).
"""

from __future__ import annotations

from typing import List, Literal, Optional, Union

from fastapi import APIRouter
from pydantic import BaseModel, Field, field_validator

from jitaccess.errors import JitAccessError
from jitaccess.grants.domain import AccessRequest, Execution, Grant, GrantState, parse_duration
from jitaccess.roles.domain import Identity, identity_from_dict

from ..responses import error_response, private_response
from ..services import get_services

requests_router = APIRouter(tags=["Requests"])


class MemberPayload(BaseModel):
    id: str = Field(..., min_length=1, max_length=320)
    email: str = ""
    domain: str = ""
    groups: List[str] = Field(default_factory=list)
    username: str = ""
    name: str = ""


class SubjectPayload(MemberPayload):
    kind: Literal["user", "group"] = "user"
    members: List[MemberPayload] = Field(default_factory=list)

    def to_identity(self) -> Identity:
        return identity_from_dict(self.model_dump())


class RequestCreate(BaseModel):
    subject: SubjectPayload
    role: str = Field(..., min_length=1, max_length=200)
    reason: str = Field(..., max_length=2000)
    duration: Optional[Union[int, str]] = None
    provider: str = ""
    requestedBy: str = ""

    @field_validator("role")
    @classmethod
    def _strip_role(cls, value: str) -> str:
        return value.strip()


class SignalPayload(BaseModel):
    actor: str = Field("", max_length=320)
    comment: str = Field("", max_length=2000)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def grant_view(grant: Grant) -> dict:
    return {
        "executionId": grant.execution_id,
        "subjectId": grant.subject_id,
        "roleId": grant.role_id,
        "providerId": grant.provider_id,
        "handleId": grant.handle.handle_id if grant.handle else None,
        "issuedAt": _iso(grant.issued_at),
        "expiresAt": _iso(grant.expires_at),
        "revokedAt": _iso(grant.revoked_at),
        "revokeAttempts": grant.revoke_attempts,
        "archived": grant.archived,
    }


def execution_view(execution: Execution) -> dict:
    decision = execution.decision
    return {
        "id": execution.id,
        "state": execution.state.value,
        "subjectId": execution.request.subject.id,
        "roleId": execution.request.role_id,
        "providerId": execution.provider_id,
        "reason": execution.request.reason,
        "durationSeconds": execution.request.duration_seconds,
        "pendingSignal": execution.pending_signal,
        "decision": (
            {"signal": decision.signal, "actor": decision.actor, "at": _iso(decision.at)} if decision else None
        ),
        "deadlineAt": _iso(execution.deadline_at),
        "nextAttemptAt": _iso(execution.next_attempt_at),
        "attempts": execution.attempts,
        "revokeRequested": execution.revoke_requested,
        "parked": execution.parked,
        "alertRaised": execution.alert_raised,
        "errorCode": execution.error_code,
        "errorMessage": execution.error_message,
        "policy": execution.policy.to_dict(),
        "grant": grant_view(execution.grant) if execution.grant else None,
        "history": [t.to_dict() for t in execution.history],
        "createdAt": _iso(execution.created_at),
        "updatedAt": _iso(execution.updated_at),
    }


@requests_router.post("/requests")
def submit_request(payload: RequestCreate):
    services = get_services()
    orchestrator = services.orchestrator
    try:
        duration = (
            parse_duration(payload.duration)
            if payload.duration is not None
            else orchestrator.config.default_duration_seconds
        )
        execution = orchestrator.submit(
            AccessRequest(
                subject=payload.subject.to_identity(),
                role_id=payload.role,
                reason=payload.reason,
                duration_seconds=duration,
                provider_id=payload.provider.strip(),
                requested_by=payload.requestedBy.strip(),
            )
        )
    except JitAccessError as exc:
        return error_response(exc)
    return private_response(execution_view(execution), status_code=201)


@requests_router.get("/requests")
def list_requests(state: Optional[GrantState] = None):
    orchestrator = get_services().orchestrator
    executions = orchestrator.list_executions([state] if state else None)
    return private_response({"items": [execution_view(e) for e in executions]})


@requests_router.get("/requests/{execution_id}")
def get_request(execution_id: str):
    try:
        execution = get_services().orchestrator.get(execution_id)
    except JitAccessError as exc:
        return error_response(exc)
    return private_response(execution_view(execution))


_SIGNALS = {
    "approve": lambda o, eid, p: o.approve(eid, actor=p.actor, comment=p.comment),
    "deny": lambda o, eid, p: o.deny(eid, actor=p.actor, comment=p.comment),
    "cancel": lambda o, eid, p: o.cancel(eid, actor=p.actor, comment=p.comment),
    "revoke": lambda o, eid, p: o.revoke(eid, actor=p.actor, comment=p.comment),
    "retry_revoke": lambda o, eid, p: o.retry_revoke(eid, actor=p.actor),
}


def _signal(execution_id: str, signal: str, payload: Optional[SignalPayload]):
    payload = payload or SignalPayload()
    try:
        execution = _SIGNALS[signal](get_services().orchestrator, execution_id, payload)
    except JitAccessError as exc:
        return error_response(exc)
    return private_response(execution_view(execution))


@requests_router.post("/requests/{execution_id}/approve")
def approve_request(execution_id: str, payload: Optional[SignalPayload] = None):
    return _signal(execution_id, "approve", payload)


@requests_router.post("/requests/{execution_id}/deny")
def deny_request(execution_id: str, payload: Optional[SignalPayload] = None):
    return _signal(execution_id, "deny", payload)


@requests_router.post("/requests/{execution_id}/cancel")
def cancel_request(execution_id: str, payload: Optional[SignalPayload] = None):
    return _signal(execution_id, "cancel", payload)


@requests_router.post("/requests/{execution_id}/revoke")
def revoke_request(execution_id: str, payload: Optional[SignalPayload] = None):
    return _signal(execution_id, "revoke", payload)


@requests_router.post("/requests/{execution_id}/retry-revoke")
def retry_revoke_request(execution_id: str, payload: Optional[SignalPayload] = None):
    """Resume a revoke loop parked after `revoke_max_attempts` (operator action)."""
    return _signal(execution_id, "retry_revoke", payload)


@requests_router.get("/grants")
def list_grants(archived: bool = False):
    orchestrator = get_services().orchestrator
    grants = orchestrator.list_archived() if archived else orchestrator.list_active()
    return private_response({"items": [grant_view(g) for g in grants]})


__all__ = ["execution_view", "grant_view", "requests_router"]
