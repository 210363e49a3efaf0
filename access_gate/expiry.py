"""
Password Expiry Sweep Module

Daily pass over active identities that marks expired passwords and sends expiry
warnings, plus the single-flight scheduler that runs it at a fixed wall-clock time.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock
from .errors import CorruptRecordError
from .identity import Identity, IdentityStore
from .lifecycle import check_password_lifecycle
from .logging_config import get_logger, log_action
from .notifier import NotificationDispatcher, NotificationKind


logger = get_logger("access_gate.expiry")


@dataclass
class SweepResult:
    checked: int
    warnings_sent: int
    expired_marked: int
    started_at: datetime
    finished_at: datetime


class PasswordExpirySweep:
    """One pass of the expiry check over all active, not-yet-expired identities"""

    def __init__(self, identities: IdentityStore, dispatcher: NotificationDispatcher,
                 clock: Optional[Clock] = None, audit: Optional[AuditTrail] = None,
                 expiry_days: int = 90, warning_days: Optional[List[int]] = None):
        self.identities = identities
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.audit = audit
        self.expiry_days = expiry_days
        self.warning_days = [7, 3, 1] if warning_days is None else list(warning_days)

    def _check_identity(self, identity: Identity) -> Optional[str]:
        """Apply the expiry rules to one identity: "expired", "warned" or None"""
        if identity.last_password_change is None:
            self.identities.record_password_change_time(identity.id)
            return None

        status = check_password_lifecycle(identity, self.clock.now(),
                                          self.expiry_days, self.warning_days)
        if status.expired:
            # Flagged and notified by a login or another sweep
            if not self.identities.mark_password_expired(identity.id):
                return None
            self.dispatcher.dispatch(NotificationKind.PASSWORD_EXPIRED, identity.email,
                                     {"name": identity.name})
            if self.audit:
                self.audit.log_event(AuditEventType.PASSWORD_EXPIRED, 'identity',
                                     identity.id, {'trigger': 'sweep'}, 'system')
            return "expired"
        if status.warn_days_remaining is not None:
            self.dispatcher.dispatch(NotificationKind.PASSWORD_EXPIRY_WARNING,
                                     identity.email,
                                     {"name": identity.name,
                                      "days_remaining": status.warn_days_remaining})
            if self.audit:
                self.audit.log_event(AuditEventType.PASSWORD_EXPIRY_WARNING, 'identity',
                                     identity.id,
                                     {'days_remaining': status.warn_days_remaining},
                                     'system')
            return "warned"
        return None

    def run(self) -> SweepResult:
        started_at = self.clock.now()
        candidates = self.identities.list_identities(is_active=True)
        checked = warnings = expired = 0

        for identity in candidates:
            if identity.password_expired:
                continue
            checked += 1
            try:
                outcome = self._check_identity(identity)
            except CorruptRecordError as e:
                log_action(logger, "error", f"Expiry sweep skipped identity: {e}",
                           identity_id=identity.id, action="expiry_sweep",
                           reason="corrupt_record")
                continue
            if outcome == "expired":
                expired += 1
            elif outcome == "warned":
                warnings += 1

        result = SweepResult(checked=checked, warnings_sent=warnings,
                             expired_marked=expired, started_at=started_at,
                             finished_at=self.clock.now())
        log_action(logger, "info", "Password expiry sweep completed", action="expiry_sweep",
                   extra={"checked": checked, "warnings_sent": warnings,
                          "expired_marked": expired})
        if self.audit:
            self.audit.log_event(AuditEventType.SWEEP_COMPLETED, 'sweep', 'password_expiry',
                                 {'checked': checked, 'warnings_sent': warnings,
                                  'expired_marked': expired}, 'system')
        return result


class SweepScheduler:
    """
    Runs a job once a day at a fixed UTC hour and minute.

    Single-flight: a tick that fires while the previous run is still executing is
    skipped and logged, never run alongside it.
    """

    def __init__(self, job: Callable[[], SweepResult], clock: Optional[Clock] = None,
                 hour: int = 2, minute: int = 0, poll_seconds: float = 60.0,
                 audit: Optional[AuditTrail] = None):
        self.job = job
        self.clock = clock or SystemClock()
        self.audit = audit
        self.hour = hour
        self.minute = minute
        self.poll_seconds = poll_seconds
        self.last_result: Optional[SweepResult] = None
        self.skipped_runs = 0
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None

    def next_run_at(self, now: Optional[datetime] = None) -> datetime:
        now = now or self.clock.now()
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def _skip(self) -> None:
        self.skipped_runs += 1
        log_action(logger, "warning", "Expiry sweep still running, tick skipped",
                   action="expiry_sweep", reason="single_flight")
        if self.audit:
            self.audit.log_event(AuditEventType.SWEEP_SKIPPED, 'sweep', 'password_expiry',
                                 {'skipped_runs': self.skipped_runs}, 'system')

    def _execute(self) -> SweepResult:
        try:
            self.last_result = self.job()
            return self.last_result
        finally:
            self._running.release()

    def run_now(self) -> Optional[SweepResult]:
        """Run synchronously. Returns None if a run is already in progress."""
        if not self._running.acquire(blocking=False):
            self._skip()
            return None
        return self._execute()

    def _run_in_background(self) -> None:
        try:
            self._execute()
        except Exception as e:
            log_action(logger, "error", f"Expiry sweep failed: {e}", action="expiry_sweep")

    def trigger(self) -> bool:
        """Start a run in the background. Returns False if one is already in progress."""
        if not self._running.acquire(blocking=False):
            self._skip()
            return False
        self._worker = threading.Thread(target=self._run_in_background,
                                        name="access-gate-sweep", daemon=True)
        self._worker.start()
        return True

    def _loop(self) -> None:
        due = self.next_run_at()
        while not self._stop.is_set():
            now = self.clock.now()
            if now >= due:
                self.trigger()
                due = self.next_run_at(now)
                continue
            wait_seconds = min((due - now).total_seconds(), self.poll_seconds)
            self._stop.wait(max(wait_seconds, 0.01))

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="access-gate-scheduler",
                                        daemon=True)
        self._thread.start()
        log_action(logger, "info", "Expiry sweep scheduler started", action="scheduler_start",
                   extra={"next_run_at": self.next_run_at().isoformat()})

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the schedule loop and wait for an in-flight run to finish"""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
            if worker.is_alive():
                log_action(logger, "warning", "Expiry sweep still running at stop",
                           action="scheduler_stop", reason="timeout")
        log_action(logger, "info", "Expiry sweep scheduler stopped", action="scheduler_stop")
