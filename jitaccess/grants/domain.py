"""
Grant lifecycle records: requests, executions, grants and the transition table.

Why:
    The approval wait and the expiry timer must survive process restarts, so
    the lifecycle is an explicit state machine whose complete state lives in
    one persisted `Execution` record. Workers and signal handlers load the
    record, apply one transition and save it back with an optimistic version
    check; nothing lives only in memory.

States:
    requested -> pending_approval -> approved -> granting -> active
    -> expiring -> revoked, plus failed (terminal). `failed` is unreachable
    once `active` was entered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import re
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from jitaccess.errors import JitAccessError
from jitaccess.providers.ports import GrantHandle
from jitaccess.roles.domain import EffectivePolicy, Identity, identity_from_dict, identity_to_dict


class GrantState(str, Enum):
    REQUESTED = "requested"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    GRANTING = "granting"
    ACTIVE = "active"
    EXPIRING = "expiring"
    REVOKED = "revoked"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[GrantState] = frozenset({GrantState.REVOKED, GrantState.FAILED})

# `requested -> approved` is the automatic approval of roles without workflows.
TRANSITIONS: Dict[GrantState, FrozenSet[GrantState]] = {
    GrantState.REQUESTED: frozenset({GrantState.PENDING_APPROVAL, GrantState.APPROVED, GrantState.FAILED}),
    GrantState.PENDING_APPROVAL: frozenset({GrantState.APPROVED, GrantState.FAILED}),
    GrantState.APPROVED: frozenset({GrantState.GRANTING, GrantState.FAILED}),
    GrantState.GRANTING: frozenset({GrantState.ACTIVE, GrantState.FAILED}),
    GrantState.ACTIVE: frozenset({GrantState.EXPIRING}),
    GrantState.EXPIRING: frozenset({GrantState.REVOKED}),
    GrantState.REVOKED: frozenset(),
    GrantState.FAILED: frozenset(),
}


# ------------------------------ Errors --------------------------------------


class InvalidTransitionError(JitAccessError):
    def __init__(self, current: GrantState, target: GrantState) -> None:
        super().__init__(f"invalid transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class SignalRejectedError(JitAccessError):
    """Signal arrived after another decision was recorded or in the wrong state."""


class ExecutionNotFoundError(JitAccessError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"execution not found: {execution_id}")
        self.execution_id = execution_id


class RequestValidationError(JitAccessError):
    """Access request is malformed (missing reason, duration out of bounds)."""


class ConcurrentUpdateError(JitAccessError):
    """The execution changed since it was read (optimistic version check failed)."""


# ------------------------------ Durations -----------------------------------

_ISO_DURATION = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_SHORT_DURATION = re.compile(r"^(?:(?P<hours>\d+)h)?(?:(?P<minutes>\d+)m)?(?:(?P<seconds>\d+)s)?$")


def parse_duration(value: Any) -> int:
    """Return seconds for `3600`, `"3600"`, `"PT1H30M"` or `"1h30m"`."""
    if isinstance(value, bool):
        raise RequestValidationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value or "").strip()
    if text.isdigit():
        return int(text)
    match = _ISO_DURATION.match(text.upper()) or _SHORT_DURATION.match(text.lower())
    if not text or match is None or not any(match.groupdict().values()):
        raise RequestValidationError(f"invalid duration: {value!r}")
    parts = {k: int(v) for k, v in match.groupdict().items() if v}
    return int(
        timedelta(
            days=parts.get("days", 0),
            hours=parts.get("hours", 0),
            minutes=parts.get("minutes", 0),
            seconds=parts.get("seconds", 0),
        ).total_seconds()
    )


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ------------------------------ Records -------------------------------------


@dataclass(frozen=True)
class AccessRequest:
    subject: Identity
    role_id: str
    reason: str
    duration_seconds: int
    provider_id: str = ""
    requested_by: str = ""

    def to_dict(self) -> dict:
        return {
            "subject": identity_to_dict(self.subject),
            "role_id": self.role_id,
            "reason": self.reason,
            "duration_seconds": self.duration_seconds,
            "provider_id": self.provider_id,
            "requested_by": self.requested_by,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AccessRequest":
        return cls(
            subject=identity_from_dict(data["subject"]),
            role_id=str(data["role_id"]),
            reason=str(data.get("reason") or ""),
            duration_seconds=int(data["duration_seconds"]),
            provider_id=str(data.get("provider_id") or ""),
            requested_by=str(data.get("requested_by") or ""),
        )


@dataclass(frozen=True)
class Decision:
    """The single recorded outcome of the approval wait."""

    signal: str  # approve | deny | cancel | timeout | auto
    at: datetime
    actor: str = ""
    comment: str = ""

    def to_dict(self) -> dict:
        return {"signal": self.signal, "at": _iso(self.at), "actor": self.actor, "comment": self.comment}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Decision":
        return cls(
            signal=str(data["signal"]),
            at=_dt(data["at"]),
            actor=str(data.get("actor") or ""),
            comment=str(data.get("comment") or ""),
        )


@dataclass
class Grant:
    """One issued, time-bounded access instance.

    `policy` is the point-in-time copy handed to the provider; later role
    edits never change it.
    """

    execution_id: str
    subject_id: str
    role_id: str
    provider_id: str
    policy: dict
    handle: Optional[GrantHandle]
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    revoke_attempts: int = 0
    archived: bool = False

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "subject_id": self.subject_id,
            "role_id": self.role_id,
            "provider_id": self.provider_id,
            "policy": self.policy,
            "handle": self.handle.to_dict() if self.handle else None,
            "issued_at": _iso(self.issued_at),
            "expires_at": _iso(self.expires_at),
            "revoked_at": _iso(self.revoked_at),
            "revoke_attempts": self.revoke_attempts,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Grant":
        return cls(
            execution_id=str(data["execution_id"]),
            subject_id=str(data["subject_id"]),
            role_id=str(data["role_id"]),
            provider_id=str(data["provider_id"]),
            policy=dict(data.get("policy") or {}),
            handle=GrantHandle.from_dict(data["handle"]) if data.get("handle") else None,
            issued_at=_dt(data["issued_at"]),
            expires_at=_dt(data["expires_at"]),
            revoked_at=_dt(data.get("revoked_at")),
            revoke_attempts=int(data.get("revoke_attempts") or 0),
            archived=bool(data.get("archived")),
        )


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str
    at: datetime
    note: str = ""

    def to_dict(self) -> dict:
        return {"from": self.from_state, "to": self.to_state, "at": _iso(self.at), "note": self.note}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Transition":
        return cls(from_state=data["from"], to_state=data["to"], at=_dt(data["at"]), note=data.get("note") or "")


@dataclass
class Execution:
    """Persisted state-machine record for one access request."""

    id: str
    request: AccessRequest
    state: GrantState
    policy: EffectivePolicy
    provider_id: str
    created_at: datetime
    updated_at: datetime
    pending_signal: Optional[str] = None
    decision: Optional[Decision] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    notified_steps: int = 0
    grant: Optional[Grant] = None
    revoke_requested: bool = False
    alert_raised: bool = False
    parked: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    history: List[Transition] = field(default_factory=list)
    version: int = 0
    lease_owner: Optional[str] = None
    leased_until: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: GrantState, *, at: datetime, note: str = "") -> None:
        """Move to `target` or raise InvalidTransitionError."""
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        self.history.append(Transition(self.state.value, target.value, at, note))
        self.state = target
        self.updated_at = at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request": self.request.to_dict(),
            "state": self.state.value,
            "policy": self.policy.to_dict(),
            "provider_id": self.provider_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "pending_signal": self.pending_signal,
            "decision": self.decision.to_dict() if self.decision else None,
            "attempts": self.attempts,
            "next_attempt_at": _iso(self.next_attempt_at),
            "deadline_at": _iso(self.deadline_at),
            "idempotency_key": self.idempotency_key,
            "notified_steps": self.notified_steps,
            "grant": self.grant.to_dict() if self.grant else None,
            "revoke_requested": self.revoke_requested,
            "alert_raised": self.alert_raised,
            "parked": self.parked,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "history": [t.to_dict() for t in self.history],
            "version": self.version,
            "lease_owner": self.lease_owner,
            "leased_until": _iso(self.leased_until),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Execution":
        return cls(
            id=str(data["id"]),
            request=AccessRequest.from_dict(data["request"]),
            state=GrantState(data["state"]),
            policy=EffectivePolicy.from_dict(data["policy"]),
            provider_id=str(data["provider_id"]),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            pending_signal=data.get("pending_signal"),
            decision=Decision.from_dict(data["decision"]) if data.get("decision") else None,
            attempts=int(data.get("attempts") or 0),
            next_attempt_at=_dt(data.get("next_attempt_at")),
            deadline_at=_dt(data.get("deadline_at")),
            idempotency_key=data.get("idempotency_key"),
            notified_steps=int(data.get("notified_steps") or 0),
            grant=Grant.from_dict(data["grant"]) if data.get("grant") else None,
            revoke_requested=bool(data.get("revoke_requested")),
            alert_raised=bool(data.get("alert_raised")),
            parked=bool(data.get("parked")),
            error_code=data.get("error_code"),
            error_message=data.get("error_message"),
            history=[Transition.from_dict(t) for t in data.get("history") or []],
            version=int(data.get("version") or 0),
            lease_owner=data.get("lease_owner"),
            leased_until=_dt(data.get("leased_until")),
        )


__all__ = [
    "AccessRequest",
    "ConcurrentUpdateError",
    "Decision",
    "Execution",
    "ExecutionNotFoundError",
    "Grant",
    "GrantState",
    "InvalidTransitionError",
    "RequestValidationError",
    "SignalRejectedError",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "Transition",
    "parse_duration",
]
