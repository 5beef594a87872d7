"""
Grant orchestrator tests.

Why:
    The orchestrator owns the lifecycle guarantees: one winning decision per
    request, bounded authorize retries, unbounded (alerting) revoke retries,
    and effectively-once provider calls across worker restarts. Tests drive
    `run_once(now=...)` explicitly so no real time passes.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from jitaccess import telemetry
from jitaccess.config import OrchestratorConfig
from jitaccess.errors import (
    CapabilityError,
    ConfigurationError,
    ProviderPermanentError,
    ProviderTransientError,
    ScopeMismatchError,
)
from jitaccess.grants.domain import (
    AccessRequest,
    ExecutionNotFoundError,
    GrantState,
    RequestValidationError,
    SignalRejectedError,
    parse_duration,
)
from jitaccess.grants.orchestrator import GrantOrchestrator
from jitaccess.grants.store import InMemoryExecutionStore
from jitaccess.providers.local import LocalProvider
from jitaccess.providers.registry import ProviderRegistry
from jitaccess.roles.definitions import parse_role, parse_role_definitions
from jitaccess.roles.domain import User
from jitaccess.roles.registry import RoleRegistry
from jitaccess.roles.resolver import RoleResolver

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
ALICE = User(id="alice", email="alice@example.com", groups=frozenset({"dev"}))

ROLES = {
    "auto": {"permissions": {"allow": ["s3:get"]}, "providers": ["local"]},
    "gated": {"permissions": {"allow": ["s3:*"]}, "providers": ["local"], "workflows": ["security-team"]},
    "admins-only": {"scopes": {"groups": ["admins"]}, "providers": ["local"], "workflows": ["security-team"]},
    "chat-only": {"providers": ["chat"]},
    "nowhere": {"permissions": {"allow": ["a:b"]}},
}


class _Crash(BaseException):
    """Simulates the worker process dying mid-step."""


class _Provider(LocalProvider):
    """LocalProvider with hooks that run after a successful provider call."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.after_authorize = None
        self.after_revoke = None
        self.revoked_policies = []

    def authorize_role(self, **kwargs):
        handle = super().authorize_role(**kwargs)
        hook, self.after_authorize = self.after_authorize, None
        if hook:
            hook()
        return handle

    def revoke_role(self, **kwargs):
        super().revoke_role(**kwargs)
        self.revoked_policies.append(kwargs["policy"])
        hook, self.after_revoke = self.after_revoke, None
        if hook:
            hook()


class _FlakyStore(InMemoryExecutionStore):
    """Raises a connection error once when saving an execution in `fail_state`."""

    def __init__(self, fail_state: GrantState) -> None:
        super().__init__()
        self.fail_state = fail_state

    def save(self, execution, *, expected_version):
        if execution.state is self.fail_state:
            self.fail_state = None
            raise ConnectionError("connection reset by peer")
        return super().save(execution, expected_version=expected_version)


class _Alerts:
    def __init__(self) -> None:
        self.raised = []

    def raise_alert(self, *, execution_id: str, code: str, message: str) -> None:
        self.raised.append((execution_id, code))


class _ChatNotifier:
    capabilities = ("notifier",)

    def send_notification(self, request) -> None:
        return None


class _RacingStore(InMemoryExecutionStore):
    """Runs `before_save` once, right before the next save."""

    def __init__(self) -> None:
        super().__init__()
        self.before_save = None

    def save(self, execution, *, expected_version):
        hook, self.before_save = self.before_save, None
        if hook:
            hook()
        return super().save(execution, expected_version=expected_version)


def _config(**overrides) -> OrchestratorConfig:
    values = dict(backoff_seconds=2, backoff_ceiling_seconds=60, lease_seconds=45)
    values.update(overrides)
    return OrchestratorConfig(**values)


def _orchestrator(
    *,
    provider: Optional[LocalProvider] = None,
    store=None,
    config: Optional[OrchestratorConfig] = None,
    alerts: Optional[_Alerts] = None,
    worker_id: str = "w1",
    roles: Optional[RoleRegistry] = None,
):
    provider = provider or _Provider()
    providers = ProviderRegistry()
    providers.register("local", provider, config={"name": "local"})
    providers.register("chat", _ChatNotifier())
    orchestrator = GrantOrchestrator(
        resolver=RoleResolver(roles or RoleRegistry(parse_role_definitions(ROLES))),
        providers=providers,
        store=store or InMemoryExecutionStore(),
        config=config or _config(),
        alert_sink=alerts or _Alerts(),
        worker_id=worker_id,
    )
    return orchestrator, provider


def _request(role_id: str = "gated", *, duration: int = 3600, reason: str = "incident 42") -> AccessRequest:
    return AccessRequest(subject=ALICE, role_id=role_id, reason=reason, duration_seconds=duration)


def _step(orchestrator: GrantOrchestrator, execution_id: str) -> datetime:
    """Run the worker exactly when the execution is next due; return that time."""
    due = orchestrator.get(execution_id).next_attempt_at
    assert due is not None
    assert orchestrator.run_once(now=due) is True
    return due


def _activate(orchestrator: GrantOrchestrator, role_id: str = "auto", duration: int = 3600):
    execution = orchestrator.submit(_request(role_id, duration=duration), now=T0)
    assert execution.state is GrantState.APPROVED
    _step(orchestrator, execution.id)
    active = orchestrator.get(execution.id)
    assert active.state is GrantState.ACTIVE
    return active


# ------------------------------ Submission ----------------------------------


def test_submit_notifies_workflow_and_waits_for_approval():
    orchestrator, provider = _orchestrator()

    execution = orchestrator.submit(_request(), now=T0)

    assert execution.state is GrantState.PENDING_APPROVAL
    assert execution.pending_signal == f"approval:{execution.id}"
    assert execution.deadline_at == T0 + timedelta(seconds=orchestrator.config.approval_timeout_seconds)
    assert execution.lease_owner is None
    assert [n.step for n in provider.notifications] == ["security-team"]
    assert provider.notifications[0].approval_signal == execution.pending_signal


def test_role_without_workflow_is_approved_automatically():
    orchestrator, provider = _orchestrator()

    execution = orchestrator.submit(_request("auto"), now=T0)

    assert execution.state is GrantState.APPROVED
    assert execution.decision.signal == "auto"
    assert provider.notifications == []


def test_scope_mismatch_persists_nothing_and_calls_no_provider():
    orchestrator, provider = _orchestrator()

    with pytest.raises(ScopeMismatchError):
        orchestrator.submit(_request("admins-only"), now=T0)

    assert orchestrator.list_executions() == []
    assert provider.notifications == []
    assert provider.authorize_calls == []


@pytest.mark.parametrize(
    "request_kwargs",
    [{"reason": "   "}, {"duration": 10}, {"duration": 86400}],
)
def test_invalid_requests_are_rejected_before_persisting(request_kwargs):
    orchestrator, _ = _orchestrator()

    with pytest.raises(RequestValidationError):
        orchestrator.submit(_request("auto", **request_kwargs), now=T0)
    assert orchestrator.list_executions() == []


def test_provider_without_authorizer_or_any_provider_is_rejected():
    orchestrator, _ = _orchestrator()

    with pytest.raises(CapabilityError):
        orchestrator.submit(_request("chat-only"), now=T0)
    with pytest.raises(ConfigurationError):
        orchestrator.submit(_request("nowhere"), now=T0)
    assert orchestrator.list_executions() == []


def test_transient_notify_failure_is_retried_by_worker():
    provider = _Provider()
    provider.fail_next("send_notification", ProviderTransientError("chat down"))
    orchestrator, _ = _orchestrator(provider=provider)

    execution = orchestrator.submit(_request(), now=T0)
    assert execution.state is GrantState.REQUESTED
    assert execution.next_attempt_at == T0 + timedelta(seconds=2)

    _step(orchestrator, execution.id)

    assert orchestrator.get(execution.id).state is GrantState.PENDING_APPROVAL
    assert len(provider.notifications) == 1
    assert telemetry.counter_value("grants_notify_retry_total", provider="local") == 1
    assert telemetry.gauge_value("grants_inflight") == 0


def test_permanent_notify_failure_fails_request():
    provider = _Provider()
    provider.fail_next("send_notification", ProviderPermanentError("no such channel"))
    orchestrator, _ = _orchestrator(provider=provider)

    execution = orchestrator.submit(_request(), now=T0)

    assert execution.state is GrantState.FAILED
    assert execution.error_code == "notify_rejected"


# ------------------------------ Signals -------------------------------------


def test_approve_then_worker_grants_access():
    orchestrator, provider = _orchestrator()
    execution = orchestrator.submit(_request(), now=T0)

    approved = orchestrator.approve(execution.id, actor="bob", now=T0 + timedelta(minutes=5))
    assert approved.state is GrantState.APPROVED
    _step(orchestrator, execution.id)

    active = orchestrator.get(execution.id)
    assert active.state is GrantState.ACTIVE
    assert active.grant.expires_at == T0 + timedelta(minutes=5, seconds=3600)
    assert [c.idempotency_key for c in provider.authorize_calls] == [f"{execution.id}:authorize"]
    assert [g.execution_id for g in orchestrator.list_active()] == [execution.id]


def test_first_decision_wins():
    orchestrator, provider = _orchestrator()
    execution = orchestrator.submit(_request(), now=T0)

    orchestrator.deny(execution.id, actor="bob", comment="not today", now=T0)

    with pytest.raises(SignalRejectedError):
        orchestrator.approve(execution.id, actor="carol", now=T0)
    with pytest.raises(SignalRejectedError):
        orchestrator.cancel(execution.id, now=T0)
    denied = orchestrator.get(execution.id)
    assert denied.state is GrantState.FAILED
    assert denied.error_code == "denied"
    assert denied.decision.actor == "bob"
    assert orchestrator.run_once(now=T0 + timedelta(days=1)) is False
    assert provider.authorize_calls == []


def test_concurrent_deny_beats_approve_via_version_check():
    store = _RacingStore()
    orchestrator, provider = _orchestrator(store=store)
    execution = orchestrator.submit(_request(), now=T0)

    store.before_save = lambda: orchestrator.deny(execution.id, actor="bob", now=T0)
    with pytest.raises(SignalRejectedError):
        orchestrator.approve(execution.id, actor="carol", now=T0)

    final = orchestrator.get(execution.id)
    assert final.state is GrantState.FAILED
    assert final.decision.signal == "deny"
    assert provider.authorize_calls == []


def test_cancel_before_approval_fails_without_provider_call():
    orchestrator, provider = _orchestrator()
    execution = orchestrator.submit(_request(), now=T0)

    cancelled = orchestrator.cancel(execution.id, actor="alice", now=T0)

    assert cancelled.state is GrantState.FAILED
    assert cancelled.error_code == "cancelled"
    assert provider.authorize_calls == []


def test_cancel_after_approval_fails_before_authorize():
    orchestrator, provider = _orchestrator()
    execution = orchestrator.submit(_request("auto"), now=T0)

    orchestrator.cancel(execution.id, actor="alice", now=T0)
    _step(orchestrator, execution.id)

    final = orchestrator.get(execution.id)
    assert final.state is GrantState.FAILED
    assert final.error_code == "cancelled"
    assert provider.authorize_calls == []


def test_approval_timeout_fails_request():
    orchestrator, provider = _orchestrator(config=_config(approval_timeout_seconds=600))
    execution = orchestrator.submit(_request(), now=T0)

    assert orchestrator.run_once(now=T0 + timedelta(seconds=599)) is False
    _step(orchestrator, execution.id)

    timed_out = orchestrator.get(execution.id)
    assert timed_out.state is GrantState.FAILED
    assert timed_out.error_code == "approval_timeout"
    assert timed_out.decision.signal == "timeout"
    with pytest.raises(SignalRejectedError):
        orchestrator.approve(execution.id, now=T0 + timedelta(seconds=601))


@pytest.mark.parametrize("signal", ["approve", "deny", "cancel"])
def test_decision_after_deadline_records_timeout_instead(signal):
    orchestrator, provider = _orchestrator(config=_config(approval_timeout_seconds=600))
    execution = orchestrator.submit(_request(), now=T0)
    late = T0 + timedelta(days=2)

    with pytest.raises(SignalRejectedError):
        getattr(orchestrator, signal)(execution.id, actor="bob", now=late)

    timed_out = orchestrator.get(execution.id)
    assert timed_out.state is GrantState.FAILED
    assert timed_out.error_code == "approval_timeout"
    assert timed_out.decision.signal == "timeout"
    assert orchestrator.run_once(now=late) is False
    assert provider.authorize_calls == []


def test_unknown_execution_raises_not_found():
    orchestrator, _ = _orchestrator()

    with pytest.raises(ExecutionNotFoundError):
        orchestrator.approve("missing")
    with pytest.raises(ExecutionNotFoundError):
        orchestrator.get("missing")


# ------------------------------ Authorize -----------------------------------


def test_authorize_succeeds_after_two_transient_failures():
    provider = _Provider()
    provider.fail_next("authorize_role", ProviderTransientError("timeout"), ProviderTransientError("timeout"))
    orchestrator, _ = _orchestrator(provider=provider)
    execution = orchestrator.submit(_request("auto"), now=T0)

    first = _step(orchestrator, execution.id)
    assert orchestrator.get(execution.id).state is GrantState.GRANTING
    second = _step(orchestrator, execution.id)
    third = _step(orchestrator, execution.id)

    assert second - first == timedelta(seconds=2)
    assert third - second == timedelta(seconds=4)
    active = orchestrator.get(execution.id)
    assert active.state is GrantState.ACTIVE
    assert active.grant is not None
    assert len(provider.authorize_calls) == 1
    assert telemetry.counter_value("grants_authorize_retry_total", provider="local") == 2


def test_authorize_exhausted_fails_without_grant():
    provider = _Provider()
    provider.fail_next("authorize_role", *[ProviderTransientError("timeout") for _ in range(10)])
    orchestrator, _ = _orchestrator(provider=provider, config=_config(authorize_max_attempts=4))
    execution = orchestrator.submit(_request("auto"), now=T0)

    for _ in range(4):
        _step(orchestrator, execution.id)

    failed = orchestrator.get(execution.id)
    assert failed.state is GrantState.FAILED
    assert failed.error_code == "authorize_exhausted"
    assert failed.grant is None
    assert orchestrator.list_active() == []
    assert orchestrator.list_archived() == []
    assert provider.authorize_calls == []


def test_backoff_is_capped_at_ceiling():
    orchestrator, _ = _orchestrator(config=_config(backoff_seconds=2, backoff_ceiling_seconds=10))

    assert [orchestrator._backoff(n).total_seconds() for n in range(1, 6)] == [2, 4, 8, 10, 10]


def test_permanent_authorize_failure_fails_immediately():
    provider = _Provider()
    provider.fail_next("authorize_role", ProviderPermanentError("access denied"))
    orchestrator, _ = _orchestrator(provider=provider)
    execution = orchestrator.submit(_request("auto"), now=T0)

    _step(orchestrator, execution.id)

    failed = orchestrator.get(execution.id)
    assert failed.state is GrantState.FAILED
    assert failed.error_code == "authorize_rejected"


def test_unexpected_error_before_active_is_internal_error():
    provider = _Provider()
    provider.fail_next("authorize_role", RuntimeError("bug"))
    orchestrator, _ = _orchestrator(provider=provider)
    execution = orchestrator.submit(_request("auto"), now=T0)

    _step(orchestrator, execution.id)

    failed = orchestrator.get(execution.id)
    assert failed.state is GrantState.FAILED
    assert failed.error_code == "internal_error"
    assert "RuntimeError" in failed.error_message


def test_store_failure_after_authorize_retries_under_same_key():
    store = _FlakyStore(GrantState.ACTIVE)
    orchestrator, provider = _orchestrator(store=store)
    execution = orchestrator.submit(_request("auto"), now=T0)

    assert orchestrator.run_once(now=T0) is True

    pending = orchestrator.get(execution.id)
    assert pending.state is GrantState.GRANTING
    assert pending.next_attempt_at == T0 + timedelta(seconds=2)
    assert len(provider.active_grants()) == 1

    _step(orchestrator, execution.id)

    active = orchestrator.get(execution.id)
    assert active.state is GrantState.ACTIVE
    assert len(provider.authorize_calls) == 1
    assert active.grant.handle == provider.active_grants()[0]


# ------------------------------ Expiry & revoke -----------------------------


def test_revoke_at_expiry_after_three_transient_failures():
    provider = _Provider()
    orchestrator, _ = _orchestrator(provider=provider)
    active = _activate(orchestrator)
    expires_at = active.grant.expires_at
    provider.fail_next("revoke_role", *[ProviderTransientError("throttled") for _ in range(3)])

    assert orchestrator.run_once(now=expires_at - timedelta(seconds=1)) is False
    assert _step(orchestrator, active.id) == expires_at
    for _ in range(3):
        _step(orchestrator, active.id)

    revoked = orchestrator.get(active.id)
    assert revoked.state is GrantState.REVOKED
    assert len(provider.revoke_calls) == 1
    assert provider.revoke_calls[0].idempotency_key == f"{active.id}:revoke"
    assert revoked.grant.archived is True
    assert revoked.grant.revoke_attempts == 4
    assert orchestrator.list_active() == []
    assert [g.execution_id for g in orchestrator.list_archived()] == [active.id]
    assert provider.active_grants() == []


def test_grant_policy_is_a_copy_taken_at_grant_time():
    roles = RoleRegistry(parse_role_definitions(ROLES))
    orchestrator, provider = _orchestrator(roles=roles)
    active = _activate(orchestrator)
    granted = dict(active.grant.policy)

    roles.put_role(parse_role("auto", {"permissions": {"allow": ["ec2:*"]}, "providers": ["local"]}))
    assert orchestrator.get(active.id).grant.policy == granted
    roles.remove_role("auto")
    _step(orchestrator, active.id)

    revoked = orchestrator.get(active.id)
    assert revoked.state is GrantState.REVOKED
    assert revoked.grant.policy == granted
    assert granted["permissions"]["allow"] == ["s3:get"]
    assert provider.revoked_policies[0].permissions.allow == frozenset({"s3:get"})
    assert provider.active_grants() == []


def test_explicit_revoke_ends_grant_early():
    provider = _Provider()
    orchestrator, _ = _orchestrator(provider=provider)
    active = _activate(orchestrator)

    orchestrator.revoke(active.id, actor="alice", now=T0 + timedelta(minutes=1))
    _step(orchestrator, active.id)

    assert orchestrator.get(active.id).state is GrantState.REVOKED
    assert len(provider.revoke_calls) == 1
    # revoked is terminal
    with pytest.raises(SignalRejectedError):
        orchestrator.revoke(active.id)


@pytest.mark.parametrize("signal", ["revoke", "cancel"])
def test_signal_during_authorize_still_revokes_the_grant(signal):
    provider = _Provider()
    orchestrator, _ = _orchestrator(provider=provider)
    execution = orchestrator.submit(_request("auto"), now=T0)
    send = orchestrator.revoke if signal == "revoke" else orchestrator.cancel
    provider.after_authorize = lambda: send(execution.id, actor="alice", now=T0)

    _step(orchestrator, execution.id)
    active = orchestrator.get(execution.id)
    assert active.state is GrantState.ACTIVE
    assert active.revoke_requested is True
    assert active.next_attempt_at == T0

    _step(orchestrator, execution.id)
    assert orchestrator.get(execution.id).state is GrantState.REVOKED


def test_revoke_alert_raised_once_while_retries_continue():
    provider = _Provider()
    alerts = _Alerts()
    orchestrator, _ = _orchestrator(provider=provider, alerts=alerts, config=_config(revoke_alert_threshold=3))
    active = _activate(orchestrator, duration=60)
    provider.fail_next("revoke_role", *[ProviderTransientError("down") for _ in range(6)])

    for _ in range(6):
        _step(orchestrator, active.id)
    expiring = orchestrator.get(active.id)

    assert expiring.state is GrantState.EXPIRING
    assert expiring.alert_raised is True
    assert expiring.next_attempt_at is not None
    assert alerts.raised == [(active.id, "revoke_failing")]
    assert telemetry.counter_total("grants_revoke_alert_total") == 1

    _step(orchestrator, active.id)
    assert orchestrator.get(active.id).state is GrantState.REVOKED


def test_unexpected_revoke_error_is_retried_not_failed():
    provider = _Provider()
    orchestrator, _ = _orchestrator(provider=provider)
    active = _activate(orchestrator, duration=60)
    provider.fail_next("revoke_role", ProviderPermanentError("gone"), KeyError("handle"))

    _step(orchestrator, active.id)
    _step(orchestrator, active.id)
    assert orchestrator.get(active.id).state is GrantState.EXPIRING
    _step(orchestrator, active.id)

    assert orchestrator.get(active.id).state is GrantState.REVOKED


def test_parked_revoke_resumes_on_retry_revoke():
    provider = _Provider()
    alerts = _Alerts()
    orchestrator, _ = _orchestrator(provider=provider, alerts=alerts, config=_config(revoke_max_attempts=2))
    active = _activate(orchestrator, duration=60)
    provider.fail_next("revoke_role", ProviderTransientError("down"), ProviderTransientError("down"))

    _step(orchestrator, active.id)
    _step(orchestrator, active.id)
    parked = orchestrator.get(active.id)

    assert parked.state is GrantState.EXPIRING
    assert parked.parked is True
    assert parked.next_attempt_at is None
    assert len(alerts.raised) == 1
    assert orchestrator.run_once(now=T0 + timedelta(days=30)) is False

    later = T0 + timedelta(hours=2)
    resumed = orchestrator.retry_revoke(active.id, actor="ops", now=later)
    assert resumed.parked is False
    assert orchestrator.run_once(now=later) is True
    assert orchestrator.get(active.id).state is GrantState.REVOKED
    with pytest.raises(SignalRejectedError):
        orchestrator.retry_revoke(active.id)


def test_retry_revoke_requires_parked_execution():
    orchestrator, _ = _orchestrator()
    active = _activate(orchestrator)

    with pytest.raises(SignalRejectedError):
        orchestrator.retry_revoke(active.id)


# ------------------------------ Restart -------------------------------------


def test_restart_during_granting_reuses_idempotency_key():
    store = InMemoryExecutionStore()
    provider = _Provider()
    first, _ = _orchestrator(provider=provider, store=store, worker_id="w1")
    execution = first.submit(_request("auto"), now=T0)

    def crash():
        raise _Crash()

    provider.after_authorize = crash
    with pytest.raises(_Crash):
        first.run_once(now=T0)
    assert store.get(execution.id).state is GrantState.GRANTING

    second, _ = _orchestrator(provider=provider, store=store, worker_id="w2")
    assert second.run_once(now=T0 + timedelta(seconds=10)) is False
    assert second.run_once(now=T0 + timedelta(seconds=45)) is True

    active = second.get(execution.id)
    assert active.state is GrantState.ACTIVE
    assert len(provider.authorize_calls) == 1
    assert active.grant.handle == provider.active_grants()[0]


def test_restart_during_expiring_revokes_exactly_once():
    store = InMemoryExecutionStore()
    provider = _Provider()
    first, _ = _orchestrator(provider=provider, store=store, worker_id="w1")
    active = _activate(first, duration=60)
    expires_at = active.grant.expires_at

    def crash():
        raise _Crash()

    provider.after_revoke = crash
    with pytest.raises(_Crash):
        first.run_once(now=expires_at)
    assert store.get(active.id).state is GrantState.EXPIRING

    second, _ = _orchestrator(provider=provider, store=store, worker_id="w2")
    assert second.run_once(now=expires_at + timedelta(seconds=45)) is True

    assert second.get(active.id).state is GrantState.REVOKED
    assert len(provider.revoke_calls) == 1


@pytest.mark.parametrize(
    "value, seconds",
    [(3600, 3600), ("900", 900), ("PT1H30M", 5400), ("1h30m", 5400), ("P1D", 86400), ("45s", 45)],
)
def test_parse_duration_accepts_seconds_iso_and_short_forms(value, seconds):
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "soon", "PT", True, "1x"])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(RequestValidationError):
        parse_duration(value)
