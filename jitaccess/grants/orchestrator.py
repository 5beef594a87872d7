"""
Grant Orchestrator: drives one access request from submission to revocation.

Intent:
    A persisted state machine advanced by two kinds of callers:
      1. Signal handlers (HTTP API): submit, approve, deny, cancel, revoke.
      2. Workers: `run_once` leases the next due execution and advances it by
         one step (notify, timeout, authorize, expire, revoke).

Guarantees:
    - Resolution and configuration errors surface from `submit` before
      anything is persisted or any provider is called.
    - The first of {approve, deny, cancel, timeout} durably recorded wins;
      later signals raise SignalRejectedError (compare-and-set in the store).
    - `approved -> granting` and `active -> expiring` are persisted together
      with a stable idempotency key *before* the provider call, so a restarted
      worker repeats the call with the same key and the provider dedupes it.
      A store failure after a successful authorize leaves the execution in
      `granting` and the worker repeats the call the same way.
    - A decision signal arriving after `deadline_at` records the timeout
      instead and is rejected.
    - Authorize retries are bounded (`authorize_max_attempts`); revoke retries
      are not. Once `active` was reached the execution can only end `revoked`.
      An operator alert is raised once when revoke attempts reach
      `revoke_alert_threshold`; retrying continues. With `revoke_max_attempts`
      set, the execution parks in `expiring` until `retry_revoke`.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Dict, Iterable, List, Optional, Protocol
from uuid import uuid4

from jitaccess import telemetry
from jitaccess.config import OrchestratorConfig
from jitaccess.errors import (
    CapabilityError,
    ConfigurationError,
    ProviderPermanentError,
    ProviderTransientError,
)
from jitaccess.providers.ports import Capability, NotificationRequest, NotifierProtocol
from jitaccess.providers.registry import ProviderRegistry
from jitaccess.roles.domain import EffectivePolicy
from jitaccess.roles.resolver import RoleResolver

from .domain import (
    AccessRequest,
    ConcurrentUpdateError,
    Decision,
    Execution,
    ExecutionNotFoundError,
    Grant,
    GrantState,
    RequestValidationError,
    SignalRejectedError,
    Transition,
)
from .store import ExecutionStore

LOG = logging.getLogger(__name__)

_SIGNAL_RETRIES = 5
_PERSIST_RETRIES = 3
_PRE_ACTIVE = frozenset(
    {GrantState.REQUESTED, GrantState.PENDING_APPROVAL, GrantState.APPROVED, GrantState.GRANTING}
)
_REVOCABLE = (GrantState.APPROVED, GrantState.GRANTING, GrantState.ACTIVE)
_DECISIONS = ("approve", "deny", "cancel")


class AlertSink(Protocol):
    def raise_alert(self, *, execution_id: str, code: str, message: str) -> None:
        ...


class LoggingAlertSink:
    """Default sink: operator alerts go to the error log."""

    def raise_alert(self, *, execution_id: str, code: str, message: str) -> None:
        LOG.error("grants.alert code=%s execution=%s detail=%s", code, execution_id, message)


def _truncate_error_message(message: str, limit: int = 1024) -> str:
    """Trim error messages to a safe length for storage."""
    text = (message or "").strip()
    if len(text) <= limit:
        return text
    return f"{text[: limit - 3]}..."


class GrantOrchestrator:
    def __init__(
        self,
        *,
        resolver: RoleResolver,
        providers: ProviderRegistry,
        store: ExecutionStore,
        config: Optional[OrchestratorConfig] = None,
        alert_sink: Optional[AlertSink] = None,
        notifier_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self._resolver = resolver
        self._providers = providers
        self._store = store
        self._config = config or OrchestratorConfig()
        self._alerts = alert_sink or LoggingAlertSink()
        self._notifier_id = notifier_id
        self.worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        self._steps: Dict[GrantState, Callable[[Execution, datetime], Execution]] = {
            GrantState.REQUESTED: self._step_notify,
            GrantState.PENDING_APPROVAL: self._step_timeout,
            GrantState.APPROVED: self._step_authorize,
            GrantState.GRANTING: self._step_authorize,
            GrantState.ACTIVE: self._step_expire,
            GrantState.EXPIRING: self._step_revoke,
        }

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def store(self) -> ExecutionStore:
        return self._store

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        return now or datetime.now(tz=timezone.utc)

    # ------------------------------ Submission ------------------------------

    def validate_request(self, request: AccessRequest) -> None:
        cfg = self._config
        if not (request.role_id or "").strip():
            raise RequestValidationError("role is required")
        if not (request.reason or "").strip():
            raise RequestValidationError("reason is required")
        if not (cfg.min_duration_seconds <= request.duration_seconds <= cfg.max_duration_seconds):
            raise RequestValidationError(
                f"duration must be between {cfg.min_duration_seconds} and {cfg.max_duration_seconds} seconds"
            )

    @staticmethod
    def _select_provider(policy: EffectivePolicy, requested: str) -> str:
        if requested and (not policy.providers or requested in policy.providers):
            return requested
        if policy.providers:
            return policy.providers[0]
        raise ConfigurationError(f"role {policy.role_id} has no providers")

    def _notifier_for(self, step: str, provider_id: str) -> NotifierProtocol:
        """`<provider>:<channel>` steps go to that provider, others to the default notifier."""
        prefix = step.split(":", 1)[0] if ":" in step else ""
        if prefix and self._providers.implements(prefix, Capability.NOTIFIER):
            return self._providers.notifier(prefix)
        return self._providers.notifier(self._notifier_id or provider_id)

    def submit(self, request: AccessRequest, *, now: Optional[datetime] = None) -> Execution:
        """
        Resolve, validate and persist a new access request.

        Behavior:
            - Raises RequestValidationError, ResolutionError, CapabilityError or
              ConfigurationError without persisting anything.
            - Roles without workflows are approved automatically.
            - Otherwise every workflow step is notified; the execution then
              waits in `pending_approval` for a signal until `deadline_at`.
              Transient notifier failures leave it in `requested` for the worker.
        """
        tick = self._now(now)
        self.validate_request(request)
        policy = self._resolver.resolve(request.role_id, request.subject)
        provider_id = self._select_provider(policy, request.provider_id)
        self._providers.authorizer(provider_id)
        for step in policy.workflows:
            self._notifier_for(step, provider_id)

        execution = Execution(
            id=str(uuid4()),
            request=request,
            state=GrantState.REQUESTED,
            policy=policy,
            provider_id=provider_id,
            created_at=tick,
            updated_at=tick,
            next_attempt_at=tick,
            # The submitter holds the lease while notifying; a worker takes over if it dies.
            lease_owner=self.worker_id,
            leased_until=tick + timedelta(seconds=self._config.lease_seconds),
            history=[Transition("", GrantState.REQUESTED.value, tick, f"role={request.role_id}")],
        )
        execution = self._store.create(execution)
        telemetry.increment_counter("grants_submitted_total")
        LOG.info(
            "grants.submitted execution=%s role=%s provider=%s workflows=%s",
            execution.id,
            request.role_id,
            provider_id,
            len(policy.workflows),
        )
        if not policy.workflows:
            execution.decision = Decision("auto", tick, actor="system")
            execution.transition(GrantState.APPROVED, at=tick, note="no approval workflow")
            execution.next_attempt_at = tick
            return self._persist(execution, GrantState.REQUESTED, tick, release=True)
        return self._step_notify(execution, tick)

    # ------------------------------ Signals ---------------------------------

    def approve(self, execution_id: str, *, actor: str = "", comment: str = "", now: Optional[datetime] = None) -> Execution:
        return self._signal(execution_id, "approve", actor=actor, comment=comment, now=now)

    def deny(self, execution_id: str, *, actor: str = "", comment: str = "", now: Optional[datetime] = None) -> Execution:
        return self._signal(execution_id, "deny", actor=actor, comment=comment, now=now)

    def cancel(self, execution_id: str, *, actor: str = "", comment: str = "", now: Optional[datetime] = None) -> Execution:
        return self._signal(execution_id, "cancel", actor=actor, comment=comment, now=now)

    def revoke(self, execution_id: str, *, actor: str = "", comment: str = "", now: Optional[datetime] = None) -> Execution:
        return self._signal(execution_id, "revoke", actor=actor, comment=comment, now=now)

    def retry_revoke(self, execution_id: str, *, actor: str = "", now: Optional[datetime] = None) -> Execution:
        """Resume a parked revoke loop (manual intervention after an alert)."""
        return self._signal(execution_id, "retry_revoke", actor=actor, comment="", now=now)

    def _signal(self, execution_id: str, signal: str, *, actor: str, comment: str, now: Optional[datetime]) -> Execution:
        tick = self._now(now)
        for _ in range(_SIGNAL_RETRIES):
            execution = self._store.get(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            expected = execution.version
            if signal in _DECISIONS and self._deadline_passed(execution, tick):
                self._record_timeout(execution, tick)
                try:
                    self._store.save(execution, expected_version=expected)
                except ConcurrentUpdateError:
                    continue
                LOG.info("grants.signal.late execution=%s signal=%s", execution.id, signal)
                raise SignalRejectedError(f"approval deadline passed for execution {execution.id}")
            if not self._apply_signal(execution, signal, actor=actor, comment=comment, at=tick):
                return execution
            try:
                saved = self._store.save(execution, expected_version=expected)
            except ConcurrentUpdateError:
                continue
            telemetry.increment_counter("grants_signal_total", signal=signal)
            LOG.info(
                "grants.signal.recorded execution=%s signal=%s state=%s actor=%s",
                saved.id,
                signal,
                saved.state.value,
                actor or "-",
            )
            return saved
        raise ConcurrentUpdateError(f"could not record {signal} for execution {execution_id}")

    def _apply_signal(self, execution: Execution, signal: str, *, actor: str, comment: str, at: datetime) -> bool:
        """Mutate `execution` for `signal`; return False when nothing changes."""
        state = execution.state
        if execution.is_terminal:
            raise SignalRejectedError(f"execution {execution.id} is already {state.value}")

        if signal in ("approve", "deny"):
            if execution.decision is not None:
                raise SignalRejectedError(f"decision already recorded: {execution.decision.signal}")
            if state is not GrantState.PENDING_APPROVAL:
                raise SignalRejectedError(f"execution {execution.id} is not awaiting approval ({state.value})")
            execution.decision = Decision(signal, at, actor=actor, comment=comment)
            execution.pending_signal = None
            self._release(execution)
            if signal == "approve":
                execution.transition(GrantState.APPROVED, at=at, note=f"approved by {actor or 'unknown'}")
                execution.attempts = 0
                execution.next_attempt_at = at
            else:
                self._fail(execution, at, "denied", comment or "request denied")
            return True

        if signal == "cancel":
            if state in (GrantState.REQUESTED, GrantState.PENDING_APPROVAL):
                execution.decision = Decision("cancel", at, actor=actor, comment=comment)
                execution.pending_signal = None
                self._release(execution)
                self._fail(execution, at, "cancelled", comment or "request cancelled")
                return True
            signal = "revoke"

        if signal == "revoke":
            if state is GrantState.EXPIRING or (state in _REVOCABLE and execution.revoke_requested):
                return False
            if state not in _REVOCABLE:
                raise SignalRejectedError(f"execution {execution.id} has no grant to revoke ({state.value})")
            execution.revoke_requested = True
            execution.updated_at = at
            if state is not GrantState.GRANTING:
                execution.next_attempt_at = at
            return True

        if signal == "retry_revoke":
            if state is not GrantState.EXPIRING or not execution.parked:
                raise SignalRejectedError(f"execution {execution.id} has no parked revoke ({state.value})")
            execution.parked = False
            execution.attempts = 0
            execution.next_attempt_at = at
            execution.updated_at = at
            return True

        raise SignalRejectedError(f"unknown signal: {signal}")

    # ------------------------------ Worker ----------------------------------

    def run_once(self, *, now: Optional[datetime] = None) -> bool:
        """
        Lease and advance at most one due execution.

        Returns False when nothing is due. Version conflicts (a signal landed
        while the step ran) are logged and left to the next lease.
        """
        tick = self._now(now)
        execution = self._store.lease_next(now=tick, lease_seconds=self._config.lease_seconds, owner=self.worker_id)
        if execution is None:
            return False
        telemetry.adjust_gauge("grants_inflight", delta=1)
        try:
            self._advance(execution, tick)
        except ConcurrentUpdateError as exc:
            LOG.info("grants.worker.conflict execution=%s detail=%s", execution.id, exc)
        finally:
            telemetry.adjust_gauge("grants_inflight", delta=-1)
        return True

    def drain(self, *, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Run `run_once` until nothing is due (or `limit` steps); return the step count."""
        steps = 0
        while steps < limit and self.run_once(now=now):
            steps += 1
        return steps

    def _advance(self, execution: Execution, tick: datetime) -> None:
        step = self._steps.get(execution.state)
        if step is None:
            return
        try:
            step(execution, tick)
        except ConcurrentUpdateError:
            raise
        except Exception as exc:
            LOG.exception("grants.worker.unexpected execution=%s state=%s", execution.id, execution.state.value)
            self._recover(execution.id, tick, exc)

    def _recover(self, execution_id: str, tick: datetime, exc: Exception) -> None:
        fresh = self._store.get(execution_id)
        if fresh is None or fresh.is_terminal or fresh.lease_owner != self.worker_id:
            return
        base = fresh.state
        if base is GrantState.GRANTING:
            # The authorize call may have succeeded; repeat it under the same key.
            fresh.attempts += 1
            self._schedule_retry(fresh, tick, phase="authorize", message=f"{type(exc).__name__}: {exc}")
        elif base in _PRE_ACTIVE:
            self._fail(fresh, tick, "internal_error", f"{type(exc).__name__}: {exc}")
        elif base is GrantState.EXPIRING:
            self._revoke_failed(fresh, tick, exc)
        else:
            fresh.next_attempt_at = tick + self._backoff(1)
        self._persist(fresh, base, tick, release=True)

    def _step_notify(self, execution: Execution, tick: datetime) -> Execution:
        base = execution.state
        cfg = self._config
        steps = execution.policy.workflows
        while execution.notified_steps < len(steps):
            step = steps[execution.notified_steps]
            try:
                notifier = self._notifier_for(step, execution.provider_id)
                notifier.send_notification(self._approval_request(execution, step))
            except ProviderTransientError as exc:
                execution.attempts += 1
                if execution.attempts >= cfg.notify_max_attempts:
                    self._fail(execution, tick, "notify_exhausted", str(exc))
                else:
                    self._schedule_retry(execution, tick, phase="notify", message=str(exc))
                return self._persist(execution, base, tick, release=True)
            except (ProviderPermanentError, CapabilityError) as exc:
                self._fail(execution, tick, "notify_rejected", str(exc))
                return self._persist(execution, base, tick, release=True)
            execution.notified_steps += 1

        execution.attempts = 0
        execution.error_message = None
        execution.pending_signal = f"approval:{execution.id}"
        execution.deadline_at = tick + timedelta(seconds=cfg.approval_timeout_seconds)
        execution.next_attempt_at = execution.deadline_at
        execution.transition(GrantState.PENDING_APPROVAL, at=tick, note=f"notified {len(steps)} workflow step(s)")
        return self._persist(execution, base, tick, release=True)

    def _approval_request(self, execution: Execution, step: str) -> NotificationRequest:
        return NotificationRequest(
            execution_id=execution.id,
            kind="approval_request",
            subject_id=execution.request.subject.id,
            role_id=execution.request.role_id,
            step=step,
            reason=execution.request.reason,
            duration_seconds=execution.request.duration_seconds,
            approval_signal=f"approval:{execution.id}",
            details={"provider_id": execution.provider_id, "step_index": execution.notified_steps},
        )

    @staticmethod
    def _deadline_passed(execution: Execution, tick: datetime) -> bool:
        return (
            execution.state is GrantState.PENDING_APPROVAL
            and execution.deadline_at is not None
            and execution.deadline_at <= tick
        )

    def _record_timeout(self, execution: Execution, tick: datetime) -> None:
        execution.decision = Decision("timeout", tick, actor="system")
        self._release(execution)
        self._fail(execution, tick, "approval_timeout", "approval deadline passed")

    def _step_timeout(self, execution: Execution, tick: datetime) -> Execution:
        base = execution.state
        if self._deadline_passed(execution, tick):
            self._record_timeout(execution, tick)
        else:
            execution.next_attempt_at = execution.deadline_at
        return self._persist(execution, base, tick, release=True)

    def _step_authorize(self, execution: Execution, tick: datetime) -> Execution:
        cfg = self._config
        if execution.state is GrantState.APPROVED:
            if execution.revoke_requested:
                # Cancelled after approval, before any authorize call.
                self._fail(execution, tick, "cancelled", "cancelled before authorize")
                return self._persist(execution, GrantState.APPROVED, tick, release=True)
            execution.idempotency_key = f"{execution.id}:authorize"
            execution.attempts = 0
            execution.transition(GrantState.GRANTING, at=tick, note="authorize")
            execution = self._persist(execution, GrantState.APPROVED, tick, release=False)

        base = execution.state
        try:
            authorizer = self._providers.authorizer(execution.provider_id)
            handle = authorizer.authorize_role(
                subject=execution.request.subject,
                policy=execution.policy,
                idempotency_key=execution.idempotency_key,
            )
        except ProviderTransientError as exc:
            execution.attempts += 1
            if execution.attempts >= cfg.authorize_max_attempts:
                self._fail(execution, tick, "authorize_exhausted", str(exc))
            else:
                self._schedule_retry(execution, tick, phase="authorize", message=str(exc))
            return self._persist(execution, base, tick, release=True)
        except (ProviderPermanentError, CapabilityError) as exc:
            self._fail(execution, tick, "authorize_rejected", str(exc))
            return self._persist(execution, base, tick, release=True)
        except Exception as exc:
            LOG.exception("grants.authorize.unexpected execution=%s", execution.id)
            self._fail(execution, tick, "internal_error", f"{type(exc).__name__}: {exc}")
            return self._persist(execution, base, tick, release=True)

        execution.grant = Grant(
            execution_id=execution.id,
            subject_id=execution.request.subject.id,
            role_id=execution.request.role_id,
            provider_id=execution.provider_id,
            policy=execution.policy.to_dict(),
            handle=handle,
            issued_at=tick,
            expires_at=tick + timedelta(seconds=execution.request.duration_seconds),
        )
        execution.attempts = 0
        execution.error_code = None
        execution.error_message = None
        execution.transition(GrantState.ACTIVE, at=tick, note=f"handle={handle.handle_id}")
        execution.next_attempt_at = tick if execution.revoke_requested else execution.grant.expires_at
        telemetry.increment_counter("grants_active_total", provider=execution.provider_id)
        LOG.info(
            "grants.active execution=%s provider=%s expires_at=%s",
            execution.id,
            execution.provider_id,
            execution.grant.expires_at.isoformat(),
        )
        return self._persist(execution, base, tick, release=True)

    def _step_expire(self, execution: Execution, tick: datetime) -> Execution:
        note = "revoke requested" if execution.revoke_requested else "expired"
        execution.idempotency_key = f"{execution.id}:revoke"
        execution.attempts = 0
        execution.transition(GrantState.EXPIRING, at=tick, note=note)
        execution = self._persist(execution, GrantState.ACTIVE, tick, release=False)
        return self._step_revoke(execution, tick)

    def _step_revoke(self, execution: Execution, tick: datetime) -> Execution:
        base = execution.state
        grant = execution.grant
        if grant is not None:
            grant.revoke_attempts += 1
        try:
            authorizer = self._providers.authorizer(execution.provider_id)
            authorizer.revoke_role(
                subject=execution.request.subject,
                policy=execution.policy,
                handle=grant.handle if grant else None,
                idempotency_key=execution.idempotency_key,
            )
        except Exception as exc:
            # Every failure after `active` is retried; access must not stay granted.
            self._revoke_failed(execution, tick, exc)
            return self._persist(execution, base, tick, release=True)

        if grant is not None:
            grant.revoked_at = tick
            grant.archived = True
        execution.error_code = None
        execution.error_message = None
        execution.next_attempt_at = None
        execution.transition(GrantState.REVOKED, at=tick, note=f"after {execution.attempts + 1} attempt(s)")
        telemetry.increment_counter("grants_revoked_total", provider=execution.provider_id)
        LOG.info("grants.revoked execution=%s provider=%s", execution.id, execution.provider_id)
        return self._persist(execution, base, tick, release=True)

    def _revoke_failed(self, execution: Execution, tick: datetime, exc: BaseException) -> None:
        cfg = self._config
        execution.attempts += 1
        execution.error_code = "revoke_retry"
        execution.error_message = _truncate_error_message(f"{type(exc).__name__}: {exc}")
        telemetry.increment_counter("grants_revoke_retry_total", provider=execution.provider_id)
        if execution.attempts >= cfg.revoke_alert_threshold:
            self._raise_alert_once(execution, f"revoke failing after {execution.attempts} attempts")
        if cfg.revoke_max_attempts is not None and execution.attempts >= cfg.revoke_max_attempts:
            self._raise_alert_once(execution, f"revoke parked after {execution.attempts} attempts")
            execution.parked = True
            execution.next_attempt_at = None
            LOG.error(
                "grants.revoke.parked execution=%s attempts=%s error=%s",
                execution.id,
                execution.attempts,
                execution.error_message,
            )
            return
        delay = self._backoff(execution.attempts)
        execution.next_attempt_at = tick + delay
        LOG.warning(
            "grants.revoke.retry execution=%s attempt=%s next_attempt_at=%s error=%s",
            execution.id,
            execution.attempts,
            execution.next_attempt_at.isoformat(),
            execution.error_message,
        )

    def _raise_alert_once(self, execution: Execution, message: str) -> None:
        if execution.alert_raised:
            return
        execution.alert_raised = True
        telemetry.increment_counter("grants_revoke_alert_total", provider=execution.provider_id)
        self._alerts.raise_alert(execution_id=execution.id, code="revoke_failing", message=message)

    # ------------------------------ Helpers ---------------------------------

    def _backoff(self, attempt: int) -> timedelta:
        """Exponential backoff `base * 2**(attempt-1)` capped at the ceiling."""
        cfg = self._config
        exponent = min(max(attempt - 1, 0), 30)
        return timedelta(seconds=min(cfg.backoff_ceiling_seconds, cfg.backoff_seconds * (2**exponent)))

    def _schedule_retry(self, execution: Execution, tick: datetime, *, phase: str, message: str) -> None:
        execution.error_message = _truncate_error_message(message)
        execution.next_attempt_at = tick + self._backoff(execution.attempts)
        execution.updated_at = tick
        telemetry.increment_counter(f"grants_{phase}_retry_total", provider=execution.provider_id)
        LOG.warning(
            "grants.%s.retry execution=%s attempt=%s next_attempt_at=%s",
            phase,
            execution.id,
            execution.attempts,
            execution.next_attempt_at.isoformat(),
        )

    def _fail(self, execution: Execution, tick: datetime, error_code: str, message: str) -> None:
        execution.error_code = error_code
        execution.error_message = _truncate_error_message(message)
        execution.next_attempt_at = None
        execution.pending_signal = None
        execution.transition(GrantState.FAILED, at=tick, note=error_code)
        telemetry.increment_counter("grants_failed_total", error_code=error_code)
        LOG.warning("grants.failed execution=%s error_code=%s", execution.id, error_code)

    @staticmethod
    def _release(execution: Execution) -> None:
        execution.lease_owner = None
        execution.leased_until = None

    def _persist(self, execution: Execution, base: GrantState, tick: datetime, *, release: bool) -> Execution:
        """Save a worker step, folding in signals that landed since the lease.

        While leased in `granting`/`active` the only field signals change is
        `revoke_requested`; any other concurrent change means the step lost
        and ConcurrentUpdateError propagates.
        """
        if release:
            self._release(execution)
        expected = execution.version
        for _ in range(_PERSIST_RETRIES):
            try:
                return self._store.save(execution, expected_version=expected)
            except ConcurrentUpdateError:
                fresh = self._store.get(execution.id)
                if fresh is None or fresh.state is not base or fresh.lease_owner != self.worker_id:
                    raise
                if fresh.revoke_requested and not execution.revoke_requested:
                    execution.revoke_requested = True
                    if execution.state is GrantState.ACTIVE:
                        execution.next_attempt_at = tick
                expected = fresh.version
        raise ConcurrentUpdateError(f"could not persist execution {execution.id}")

    # ------------------------------ Queries ---------------------------------

    def get(self, execution_id: str) -> Execution:
        execution = self._store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def list_executions(self, states: Optional[Iterable[GrantState]] = None) -> List[Execution]:
        return self._store.list_executions(states)

    def list_active(self) -> List[Grant]:
        return self._store.list_grants(archived=False)

    def list_archived(self) -> List[Grant]:
        return self._store.list_grants(archived=True)


__all__ = ["AlertSink", "GrantOrchestrator", "LoggingAlertSink"]
