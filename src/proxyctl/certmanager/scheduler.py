"""Background certificate renewal with exponential backoff."""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from ..shared.config import Config
from ..shared.logger import log_critical, log_error, log_info, log_warning
from .models import AssignmentState
from .providers import Clock, utcnow


class RenewalAlert(BaseModel):
    """Raised when the retry schedule would run past a certificate's expiry."""
    host: str
    expires_at: datetime
    next_attempt_at: datetime
    error: str
    raised_at: datetime


class RetryState(BaseModel):
    next_attempt_at: datetime
    backoff_seconds: float
    attempts: int = 0
    tls_key: Optional[str] = None


class RenewalScheduler:
    """Periodically renews certificates through the convergence engine.

    The scheduler never touches proxy state directly; ``engine.renew`` takes
    the convergence lock for the apply step.
    """

    def __init__(
        self,
        engine,
        check_interval: float = Config.RENEWAL_CHECK_INTERVAL,
        backoff_initial: float = Config.RENEWAL_BACKOFF_INITIAL,
        backoff_max: float = Config.RENEWAL_BACKOFF_MAX,
        clock: Clock = utcnow,
        alert_sink: Optional[Callable[[RenewalAlert], None]] = None,
    ):
        self.engine = engine
        self.check_interval = check_interval
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.clock = clock
        self.alert_sink = alert_sink
        self.alerts: List[RenewalAlert] = []
        self.retries: Dict[str, RetryState] = {}
        self.renewal_task: Optional[asyncio.Task] = None
        self.running = False

    def is_running(self) -> bool:
        return self.running

    async def start(self):
        """Start the renewal loop."""
        if self.running:
            log_warning("Renewal scheduler already running", component="scheduler")
            return

        self.running = True
        self.renewal_task = asyncio.create_task(self._renewal_loop())
        log_info(f"Renewal scheduler started (interval {self.check_interval}s)", component="scheduler")

    async def stop(self):
        """Stop the renewal loop."""
        self.running = False

        if self.renewal_task:
            self.renewal_task.cancel()
            try:
                await self.renewal_task
            except asyncio.CancelledError:
                pass
            self.renewal_task = None

        log_info("Renewal scheduler stopped", component="scheduler")

    def due_hosts(self, now: datetime) -> List[str]:
        """Hosts whose renewal or retry is due at ``now``."""
        due = []
        for assignment in self.engine.assignments():
            host = assignment.host
            retry = self.retries.get(host)

            # Recovered outside the scheduler, or redeclared
            if retry and (assignment.state == AssignmentState.ACTIVE or retry.tls_key != assignment.tls_key):
                del self.retries[host]
                retry = None

            if assignment.state == AssignmentState.FAILED and retry is None:
                retry = RetryState(
                    next_attempt_at=assignment.updated_at + timedelta(seconds=self.backoff_initial),
                    backoff_seconds=self.backoff_initial,
                    attempts=1,
                    tls_key=assignment.tls_key
                )
                self.retries[host] = retry

            if retry and retry.next_attempt_at > now:
                continue

            if assignment.state == AssignmentState.FAILED:
                due.append(host)
                continue

            provider = self.engine.provider_for(assignment.source)
            if provider and provider.needs_renewal(assignment, now):
                due.append(host)
        return due

    def _schedule_retry(self, host: str, error: Exception, now: datetime) -> RetryState:
        previous = self.retries.get(host)
        if previous is None:
            backoff = self.backoff_initial
        else:
            backoff = min(previous.backoff_seconds * 2, self.backoff_max)
        assignment = self.engine.assignment(host)
        retry = RetryState(
            next_attempt_at=now + timedelta(seconds=backoff),
            backoff_seconds=backoff,
            attempts=(previous.attempts if previous else 0) + 1,
            tls_key=assignment.tls_key if assignment else None
        )
        self.retries[host] = retry
        log_warning(f"Renewal failed, retrying in {backoff:.0f}s", component="scheduler",
                    host=host, attempts=retry.attempts, error_type=type(error).__name__)

        expiry = assignment.expiry if assignment else None
        if expiry and retry.next_attempt_at >= expiry:
            self._alert(host, expiry, retry, error, now)
        return retry

    def _alert(self, host: str, expiry: datetime, retry: RetryState, error: Exception, now: datetime) -> None:
        alert = RenewalAlert(
            host=host,
            expires_at=expiry,
            next_attempt_at=retry.next_attempt_at,
            error=str(error),
            raised_at=now
        )
        self.alerts.append(alert)
        log_critical("Certificate will expire before the next renewal attempt", component="scheduler",
                     host=host, expires_at=expiry.isoformat(),
                     next_attempt_at=retry.next_attempt_at.isoformat())
        if self.alert_sink:
            self.alert_sink(alert)

    async def run_once(self) -> Dict[str, str]:
        """Run one renewal sweep.

        Returns:
            Mapping of host to ``renewed``, ``failed`` or ``stale``.
        """
        now = self.clock()
        outcomes: Dict[str, str] = {}

        dropped = await self.engine.drop_expired()
        for host in dropped:
            log_critical("Host withdrawn: certificate expired", component="scheduler", host=host)

        for host in self.due_hosts(now):
            try:
                assignment = await self.engine.renew(host)
            except Exception as e:
                self._schedule_retry(host, e, now)
                outcomes[host] = "failed"
                continue

            self.retries.pop(host, None)
            if assignment is None:
                outcomes[host] = "stale"
            else:
                outcomes[host] = "renewed"
                log_info("Certificate renewed", component="scheduler", host=host,
                         expires_at=assignment.expiry.isoformat() if assignment.expiry else None)

        # Forget retry state of hosts that no longer hold an assignment
        for host in list(self.retries):
            if self.engine.assignment(host) is None:
                del self.retries[host]

        return outcomes

    def next_wakeup_delay(self, now: datetime) -> float:
        """Seconds until the next retry, hard expiry or regular check."""
        candidates = [float(self.check_interval)]
        for retry in self.retries.values():
            if retry.next_attempt_at > now:
                candidates.append((retry.next_attempt_at - now).total_seconds())
        for host in self.engine.state.hosts():
            binding = self.engine.state.tls_binding(host)
            if binding and binding.expires_at > now:
                candidates.append((binding.expires_at - now).total_seconds())
        return max(1.0, min(candidates))

    async def _renewal_loop(self):
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                log_error("Renewal sweep failed", component="scheduler", error=e)

            await asyncio.sleep(self.next_wakeup_delay(self.clock()))
