"""
Rule scheduler - periodic driver thread plus worker pool

Every tick the driver reads all enabled rules, works out which are due and
hands each due rule to a thread pool. A rule never runs twice at once: the
set of running rule IDs is owned here and only changed under a lock, for
scheduled and manual runs alike.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.triggers.cron import CronTrigger as APSCronTrigger

from torbox_rules.api import DEFAULT_API_BASE, TorboxClient
from torbox_rules.engine import RulesEngine
from torbox_rules.errors import (
    CredentialNotFoundError,
    DecryptionError,
    DownloadServiceError,
    PersistenceError,
)
from torbox_rules.logging import get_logger
from torbox_rules.models import (
    EXECUTION_MANUAL,
    EXECUTION_SCHEDULED,
    AutomationRule,
    CronTrigger,
    ExecutionLog,
    IntervalTrigger,
    Trigger,
    utcnow,
)

logger = get_logger(__name__)

CLEANUP_INTERVAL = timedelta(hours=24)
CRON_FIELDS = ('second', 'minute', 'hour', 'day', 'month', 'day_of_week')


def build_cron_trigger(expression: str) -> APSCronTrigger:
    """
    Parse a cron expression into an APScheduler trigger (UTC)

    Six fields: second minute hour day month day_of_week. A classic
    five-field crontab line is accepted with second = 0.

    Raises:
        ValueError: Wrong field count or invalid field value
    """
    fields = expression.split()
    if len(fields) == 5:
        fields = ['0'] + fields
    if len(fields) != 6:
        raise ValueError(
            f"Cron expression must have 6 fields (second minute hour day month day_of_week), "
            f"got {len(fields)}"
        )

    return APSCronTrigger(timezone=timezone.utc, **dict(zip(CRON_FIELDS, fields)))


def compute_next_run(trigger: Trigger, after: datetime) -> Optional[datetime]:
    """
    Next due time for a trigger

    Interval triggers are due `minutes` after `after`; cron triggers at the
    first matching second strictly after `after`.
    """
    if isinstance(trigger, IntervalTrigger):
        return after + timedelta(minutes=trigger.minutes)

    if isinstance(trigger, CronTrigger):
        cron = build_cron_trigger(trigger.expression)
        return cron.get_next_fire_time(None, after + timedelta(microseconds=1))

    raise TypeError(f"Unsupported trigger: {trigger!r}")


class _ScheduleEntry:
    """Next due time for one rule, valid while the rule's updated_at is unchanged"""

    __slots__ = ('next_run', 'updated_at')

    def __init__(self, next_run: Optional[datetime], updated_at: Optional[datetime]):
        self.next_run = next_run
        self.updated_at = updated_at


class Scheduler:
    """
    Dispatches due rules and serves manual runs

    Per rule: Idle -> Due (now >= next run) -> Running -> Idle, with the next
    run recomputed from the trigger when a scheduled run completes.
    """

    def __init__(
        self,
        store,
        engine: Optional[RulesEngine] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
        tick_interval: float = 60.0,
        max_concurrent_runs: int = 4,
        execution_timeout: float = 130.0,
        log_retention_days: int = 90,
        api_base: str = DEFAULT_API_BASE,
        api_timeout: int = 10,
    ):
        """
        Initialize scheduler

        Args:
            store: RuleStore instance
            engine: Rules engine (created if not provided)
            client_factory: Builds a TorBox client from a raw API key
            tick_interval: Seconds between driver sweeps
            max_concurrent_runs: Worker pool size
            execution_timeout: Seconds after which a run stops attempting items
            log_retention_days: Execution log retention (pruned daily)
            api_base: TorBox API root URL for the default client factory
            api_timeout: Request timeout for the default client factory
        """
        self.store = store
        self.engine = engine or RulesEngine()
        self.client_factory = client_factory or (
            lambda api_key: TorboxClient(api_key, api_base=api_base, timeout=api_timeout)
        )
        self.tick_interval = tick_interval
        self.max_concurrent_runs = max_concurrent_runs
        self.execution_timeout = execution_timeout
        self.log_retention_days = log_retention_days

        self._lock = threading.Lock()
        self._running: Set[int] = set()
        self._schedule: Dict[int, _ScheduleEntry] = {}
        self._futures = {}

        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop_event = threading.Event()
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.last_tick: Optional[datetime] = None
        self.last_cleanup: Optional[datetime] = None

        logger.info("Scheduler initialized")

    # ========================================================================
    # Running set
    # ========================================================================

    def _try_mark_running(self, rule_id: int) -> bool:
        """Claim a rule for one run; False if it is already running"""
        with self._lock:
            if rule_id in self._running:
                return False
            self._running.add(rule_id)
            return True

    def _mark_idle(self, rule: AutomationRule, next_run: Optional[datetime] = None):
        """Release a rule, optionally moving its next due time"""
        with self._lock:
            entry = self._schedule.get(rule.id)
            if next_run is not None and entry is not None and entry.updated_at == rule.updated_at:
                entry.next_run = next_run
            self._running.discard(rule.id)
            self._futures.pop(rule.id, None)

    def is_running(self, rule_id: int) -> bool:
        with self._lock:
            return rule_id in self._running

    # ========================================================================
    # Scheduling
    # ========================================================================

    def _safe_next_run(self, rule: AutomationRule, after: datetime) -> Optional[datetime]:
        try:
            return compute_next_run(rule.trigger, after)
        except ValueError as e:
            logger.warning(f"Rule {rule.id} '{rule.name}' has an unusable trigger: {e}")
            return None

    def _first_run(self, rule: AutomationRule, now: datetime) -> Optional[datetime]:
        """
        Next due time for a rule the driver has not tracked yet

        Interval rules continue from their last scheduled run, so a restart
        does not push them back by a full interval.
        """
        if isinstance(rule.trigger, IntervalTrigger):
            try:
                last_run = self.store.get_last_run_time(rule.id, EXECUTION_SCHEDULED)
            except PersistenceError as e:
                logger.warning(f"Cannot read last run of rule {rule.id}: {e.message}")
                last_run = None
            if last_run is not None:
                return self._safe_next_run(rule, last_run)

        return self._safe_next_run(rule, now)

    def _claim_if_due(self, rule: AutomationRule, now: datetime) -> bool:
        """Mark a due, idle rule as running; due check and claim share one lock"""
        with self._lock:
            entry = self._schedule.get(rule.id)
            if entry is None or entry.updated_at != rule.updated_at:
                # Edited rules start over from now
                next_run = self._first_run(rule, now) if entry is None else self._safe_next_run(rule, now)
                entry = _ScheduleEntry(next_run, rule.updated_at)
                self._schedule[rule.id] = entry
                logger.debug(f"Scheduled rule {rule.id} '{rule.name}' for {entry.next_run}")

            if entry.next_run is None or now < entry.next_run:
                return False
            if rule.id in self._running:
                logger.debug(f"Rule {rule.id} '{rule.name}' is still running, skipping")
                return False

            self._running.add(rule.id)
            return True

    def get_next_run_time(self, rule_id: int, rule: Optional[AutomationRule] = None) -> Optional[datetime]:
        """
        Next due time for a rule

        Uses the tracked schedule; for a rule the driver has not seen yet (or
        that changed since), projects from the trigger when `rule` is given.
        """
        with self._lock:
            entry = self._schedule.get(rule_id)
            if entry is not None and (rule is None or entry.updated_at == rule.updated_at):
                return entry.next_run

        if rule is None:
            return None

        if entry is not None:
            return self._safe_next_run(rule, utcnow())
        return self._first_run(rule, utcnow())

    def tick(self, now: Optional[datetime] = None) -> List[int]:
        """
        One driver sweep: dispatch every due, idle rule to the pool

        Never waits for a run to finish.

        Returns:
            IDs of the rules dispatched
        """
        now = now or utcnow()
        self.last_tick = now

        rules = self.store.get_all_enabled_rules()
        enabled_ids = {rule.id for rule in rules}

        # Disabled or deleted rules drop out of the bookkeeping
        with self._lock:
            for rule_id in list(self._schedule):
                if rule_id not in enabled_ids:
                    del self._schedule[rule_id]

        dispatched = []
        for rule in rules:
            if not self._claim_if_due(rule, now):
                continue

            future = self._get_executor().submit(self._run_scheduled, rule)
            with self._lock:
                if rule.id in self._running:
                    self._futures[rule.id] = future
            dispatched.append(rule.id)

        if dispatched:
            logger.info(f"Dispatched {len(dispatched)} rules: {dispatched}")

        self._cleanup_if_due(now)
        return dispatched

    def _cleanup_if_due(self, now: datetime):
        if self.last_cleanup is not None and now - self.last_cleanup < CLEANUP_INTERVAL:
            return

        try:
            self.store.cleanup_old_logs(self.log_retention_days)
        except PersistenceError as e:
            logger.error(f"Execution log cleanup failed: {e.message}")
            return

        self.last_cleanup = now

    # ========================================================================
    # Running rules
    # ========================================================================

    def _run_scheduled(self, rule: AutomationRule):
        """Worker pool entry point for scheduled runs"""
        try:
            self._execute(rule, EXECUTION_SCHEDULED)
        except Exception as e:
            logger.error(f"Scheduled run of rule {rule.id} '{rule.name}' failed: {e}", exc_info=True)
        finally:
            self._mark_idle(rule, self._safe_next_run(rule, utcnow()))

    def run_now(self, rule: AutomationRule, credential: Optional[str] = None) -> Optional[ExecutionLog]:
        """
        Run a rule immediately on the calling thread

        Args:
            rule: Rule to run
            credential: Caller's raw API key (skips the stored-key lookup)

        Returns:
            The persisted ExecutionLog, or None if the rule is already running
        """
        if not self._try_mark_running(rule.id):
            logger.info(f"Rule {rule.id} '{rule.name}' is already running, manual run skipped")
            return None

        try:
            return self._execute(rule, EXECUTION_MANUAL, credential)
        finally:
            self._mark_idle(rule)

    def _execute(self, rule: AutomationRule, execution_type: str,
                 credential: Optional[str] = None) -> ExecutionLog:
        """Fetch items, run the engine and persist the log"""
        logger.info(f"Running rule {rule.id} '{rule.name}' ({execution_type})")
        deadline = time.monotonic() + self.execution_timeout

        log = None
        api_key = credential
        if api_key is None:
            try:
                api_key = self.store.get_credential(rule.tenant_hash)
            except (CredentialNotFoundError, DecryptionError) as e:
                logger.error(f"Cannot load API key for rule {rule.id}: {e.message}")
                log = ExecutionLog.failure(rule, execution_type, f"Failed to load API key: {e.message}")

        if log is None:
            client = self.client_factory(api_key)
            try:
                items = client.list_items()
            except DownloadServiceError as e:
                logger.error(f"Failed to fetch items for rule {rule.id}: {e.summary}")
                log = ExecutionLog.failure(rule, execution_type, f"Failed to fetch items: {e.summary}")
            else:
                logger.info(f"Fetched {len(items)} items for rule '{rule.name}'")
                log = self.engine.execute(rule, items, client, execution_type, deadline)
            finally:
                client.close()

        self.store.log_execution(log)
        return log

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent_runs,
                thread_name_prefix='rule-run'
            )
        return self._executor

    def wait_for_runs(self, timeout: Optional[float] = None) -> bool:
        """
        Block until dispatched runs finish

        Returns:
            True if nothing is left running
        """
        with self._lock:
            futures = list(self._futures.values())
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def start(self):
        """Start driver thread"""
        if self.running and self.thread and self.thread.is_alive():
            logger.warning("Scheduler already running")
            return

        self.running = True
        self._stop_event.clear()
        self._get_executor()
        self.thread = threading.Thread(target=self._run_loop, daemon=True, name="scheduler")
        self.thread.start()
        logger.info(f"Scheduler started (tick every {self.tick_interval}s, "
                    f"{self.max_concurrent_runs} workers)")

    def stop(self, timeout: float = 30.0):
        """
        Stop driver thread; in-flight runs are allowed to finish

        Args:
            timeout: Maximum seconds to wait for the driver and running rules
        """
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.running = False
        self._stop_event.set()

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f"Scheduler did not stop within {timeout}s timeout")

        if not self.wait_for_runs(timeout):
            logger.warning("Some rule runs were still in progress at shutdown")

        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

        logger.info("Scheduler stopped")

    def restart_after_fork(self):
        """Rebuild thread state copied from the parent process and start again"""
        with self._lock:
            self._running.clear()
            self._futures.clear()
        self._executor = None
        self.thread = None
        self.running = False
        self.start()

    def is_alive(self) -> bool:
        """Check if driver thread is alive"""
        return self.thread is not None and self.thread.is_alive()

    def get_status(self) -> Dict[str, Any]:
        """
        Get scheduler status

        Returns:
            Dictionary with scheduler status information
        """
        with self._lock:
            running_rules = sorted(self._running)
            tracked = len(self._schedule)

        return {
            'running': self.running,
            'thread_alive': self.is_alive(),
            'running_rules': running_rules,
            'scheduled_rules': tracked,
            'last_tick': self.last_tick.isoformat() if self.last_tick else None,
            'last_cleanup': self.last_cleanup.isoformat() if self.last_cleanup else None,
        }

    def _run_loop(self):
        """Main driver loop - runs in separate thread"""
        logger.info("Scheduler loop started")

        while self.running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Unexpected error in scheduler loop: {e}", exc_info=True)

            self._stop_event.wait(self.tick_interval)

        logger.info("Scheduler loop exited")

    def __repr__(self) -> str:
        return f"<Scheduler running={self.running} alive={self.is_alive()}>"
