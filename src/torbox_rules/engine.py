"""
Rule evaluation and action execution

Evaluates one rule against a snapshot of a tenant's download items, applies
the rule's action to every selected item and summarizes the run as a single
ExecutionLog. Persisting the log is the caller's job.
"""

import time
from datetime import datetime
from typing import Iterable, List, Optional

from torbox_rules.errors import DownloadServiceError, RateLimitError
from torbox_rules.logging import get_logger
from torbox_rules.models import (
    EXECUTION_SCHEDULED,
    ActionConfig,
    AutomationRule,
    Condition,
    ConditionType,
    DownloadItem,
    ExecutionLog,
    Operator,
    ProcessedItem,
    parse_timestamp,
    utcnow,
)

logger = get_logger(__name__)

GIB = 1024 ** 3
EQUAL_TOLERANCE = 0.001
STALLED_SPEED_THRESHOLD = 1024  # bytes/s
CHECKING_STALLED_SECONDS = 6 * 3600
RATE_LIMIT_RETRY_DELAY = 2  # seconds
MAX_LISTED_ERRORS = 3
PROGRESS_LOG_EVERY = 10

# Condition type -> (attribute, divisor)
NUMERIC_CONDITIONS = {
    ConditionType.DOWNLOAD_SPEED: ('download_speed', 1),
    ConditionType.UPLOAD_SPEED: ('upload_speed', 1),
    ConditionType.FILE_SIZE: ('size', GIB),
    ConditionType.PROGRESS: ('progress', 1),
    ConditionType.SEEDS: ('seeds', 1),
    ConditionType.PEERS: ('peers', 1),
    ConditionType.TOTAL_UPLOADED: ('total_uploaded', GIB),
    ConditionType.TOTAL_DOWNLOADED: ('total_downloaded', GIB),
    ConditionType.ETA: ('eta', 3600),
    ConditionType.AVAILABILITY: ('availability', 1),
}

# Condition type -> boolean attribute compared as 1.0 / 0.0
BOOLEAN_CONDITIONS = {
    ConditionType.DOWNLOAD_FINISHED: 'download_finished',
    ConditionType.CACHED: 'cached',
    ConditionType.PRIVATE: 'private',
    ConditionType.LONG_TERM_SEEDING: 'long_term_seeding',
    ConditionType.SEED_TORRENT: 'seed_torrent',
    ConditionType.DOWNLOAD_PRESENT: 'download_present',
    ConditionType.TORRENT_FILE: 'torrent_file',
    ConditionType.ALLOW_ZIPPED: 'allow_zipped',
}

# DownloadState condition value -> accepted download_state strings
DOWNLOAD_STATE_CODES = {
    0: ('downloading',),
    1: ('uploading', 'uploading (no peers)'),
    2: ('stopped seeding', 'stopped'),
    3: ('cached',),
}

_FAILED_STATES = ('reported missing', 'missingfiles', 'error')
_ACTIVE_STATE_WORDS = ('cached', 'completed', 'uploading', 'seeding', 'stalled')
_STOPPED_STATES = ('stopped seeding', 'stopped', 'error', 'failed')


def compare(measured: float, operator: Operator, threshold: float) -> bool:
    """Apply a condition operator (Equal uses an absolute tolerance)"""
    if operator is Operator.GREATER_THAN:
        return measured > threshold
    if operator is Operator.LESS_THAN:
        return measured < threshold
    if operator is Operator.GREATER_THAN_OR_EQUAL:
        return measured >= threshold
    if operator is Operator.LESS_THAN_OR_EQUAL:
        return measured <= threshold
    if operator is Operator.EQUAL:
        return abs(measured - threshold) < EQUAL_TOLERANCE
    raise ValueError(f"Unsupported operator: {operator}")


def _seconds_since(timestamp, now: datetime) -> Optional[float]:
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return None
    return (now - parsed).total_seconds()


def _hours_since(timestamp, now: datetime) -> Optional[float]:
    seconds = _seconds_since(timestamp, now)
    return None if seconds is None else seconds / 3600.0


def _state(item: DownloadItem) -> str:
    return (item.download_state or '').lower()


def _is_downloading_state(state: str) -> bool:
    return state == 'active' or 'downloading' in state


class ConditionEvaluator:
    """
    Decide whether download items satisfy a rule's conditions

    A condition on an attribute the item's kind does not carry (or that the
    API returned as null) never matches.
    """

    def matches(self, item: DownloadItem, conditions: Iterable[Condition],
                now: Optional[datetime] = None) -> bool:
        """True when the item satisfies every condition"""
        now = now or utcnow()
        return all(self.evaluate(item, condition, now) for condition in conditions)

    def evaluate(self, item: DownloadItem, condition: Condition, now: datetime) -> bool:
        ctype = condition.type

        if not condition.is_finite:
            return False

        if ctype in BOOLEAN_CONDITIONS:
            attribute = BOOLEAN_CONDITIONS[ctype]
            if not item.supports(attribute) or getattr(item, attribute) is None:
                return False
            return (1.0 if getattr(item, attribute) else 0.0) == condition.value

        if ctype is ConditionType.HAS_MAGNET:
            if not item.supports('magnet'):
                return False
            return (1.0 if item.magnet else 0.0) == condition.value

        if ctype is ConditionType.DOWNLOAD_STATE:
            accepted = DOWNLOAD_STATE_CODES.get(int(condition.value), ())
            return item.download_state in accepted

        measured = self.measure(item, ctype, now)
        if measured is None:
            return False

        return compare(measured, condition.operator, condition.value)

    def measure(self, item: DownloadItem, ctype: ConditionType, now: datetime) -> Optional[float]:
        """
        Numeric value of a condition's attribute for one item

        Times are in hours, sizes in GiB, speeds in bytes/s.

        Returns:
            The value, or None when the condition cannot apply to this item
        """
        if ctype in NUMERIC_CONDITIONS:
            attribute, divisor = NUMERIC_CONDITIONS[ctype]
            value = getattr(item, attribute)
            if not item.supports(attribute) or value is None:
                return None
            return float(value) / divisor

        if ctype is ConditionType.SEEDING_TIME:
            if not item.active or not item.download_finished:
                return None
            # Seeding starts when the item was cached, else at its last update
            if item.cached_at:
                return _hours_since(item.cached_at, now)
            return _hours_since(item.updated_at, now)

        if ctype is ConditionType.SEEDING_RATIO:
            if not item.supports('ratio') or item.ratio is None or not item.active:
                return None
            return float(item.ratio)

        if ctype is ConditionType.STALLED_TIME:
            return self._stalled_hours(item, now)

        if ctype is ConditionType.AGE:
            return _hours_since(item.created_at, now)

        if ctype is ConditionType.INACTIVE:
            return 1.0 if self.is_inactive(item, now) else 0.0

        if ctype is ConditionType.EXPIRES_AT:
            expires = parse_timestamp(item.expires_at)
            if expires is None:
                return None
            return max(0.0, (expires - now).total_seconds() / 3600.0)

        raise ValueError(f"Unsupported condition type: {ctype}")

    def _looks_stalled(self, item: DownloadItem, state: str, now: datetime) -> bool:
        """Checking for over six hours, or downloading with no traffic and no swarm"""
        if state == 'checking':
            elapsed = _seconds_since(item.updated_at, now)
            return elapsed is not None and elapsed > CHECKING_STALLED_SECONDS

        if _is_downloading_state(state):
            no_speed = (item.download_speed or 0) < STALLED_SPEED_THRESHOLD
            no_swarm = not item.seeds and not item.peers
            return no_speed and not item.upload_speed and (no_swarm or not item.active)

        return False

    def _stalled_hours(self, item: DownloadItem, now: datetime) -> Optional[float]:
        state = _state(item)

        if 'stalled' in state:
            hours = _hours_since(item.created_at, now)
            return 0.0 if hours is None else hours

        if not self._looks_stalled(item, state, now):
            return None

        return _hours_since(item.updated_at, now)

    def is_inactive(self, item: DownloadItem, now: datetime) -> bool:
        """Failed, expired, stopped, or stalled while not active"""
        state = _state(item)

        if state in _FAILED_STATES or state.startswith('failed'):
            return True

        if item.download_finished:
            return False

        if state == 'checking' or _is_downloading_state(state):
            stalled = self._looks_stalled(item, state, now)
        else:
            stalled = 'stalled' in state

        if stalled and not item.active:
            return True

        expires = parse_timestamp(item.expires_at)
        if (expires is not None and expires < now) or state == 'expired':
            return True

        if not item.active and not any(word in state for word in _ACTIVE_STATE_WORDS):
            return True

        return state in _STOPPED_STATES


class ActionExecutor:
    """Apply one action to one item through the TorBox client"""

    def __init__(self, client, rate_limit_delay: float = RATE_LIMIT_RETRY_DELAY):
        self.client = client
        self.rate_limit_delay = rate_limit_delay

    def execute(self, item: DownloadItem, action: ActionConfig) -> ProcessedItem:
        """
        Run the action against the item

        Downstream failures are recorded on the returned ProcessedItem rather
        than raised. A rate-limited call is retried once after a short pause.
        """
        label = action.action_type.label
        operation = item.operation_for(action.action_type)

        result = ProcessedItem(
            id=item.id,
            name=item.name or '',
            action=label,
            success=False,
            kind=item.kind.value,
        )

        if operation is None:
            result.error = f"{label} is not supported for {item.kind.value} items"
            return result

        try:
            try:
                self.client.control_item(item, operation)
            except RateLimitError:
                logger.warning(f"Rate limit hit on {item.kind.value} {item.id}, "
                               f"retrying in {self.rate_limit_delay}s")
                time.sleep(self.rate_limit_delay)
                self.client.control_item(item, operation)
        except DownloadServiceError as e:
            result.error = f"Failed to {label.lower()}: {e.summary}"
            logger.warning(f"{label} failed for {item.kind.value} {item.id} ({result.name}): {e.summary}")
            return result

        result.success = True
        return result


class RulesEngine:
    """Evaluate a rule, act on matching items and summarize the run"""

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None,
                 rate_limit_delay: float = RATE_LIMIT_RETRY_DELAY):
        self.evaluator = evaluator or ConditionEvaluator()
        self.rate_limit_delay = rate_limit_delay

    def select_items(self, rule: AutomationRule, items: Iterable[DownloadItem],
                     now: Optional[datetime] = None) -> List[DownloadItem]:
        """Items whose kind supports the rule's action and that meet every condition"""
        now = now or utcnow()
        return [
            item for item in items
            if item.operation_for(rule.action.action_type) is not None
            and self.evaluator.matches(item, rule.conditions, now)
        ]

    def execute(self, rule: AutomationRule, items: Iterable[DownloadItem], client,
                execution_type: str = EXECUTION_SCHEDULED, deadline: Optional[float] = None,
                now: Optional[datetime] = None) -> ExecutionLog:
        """
        Run a rule against an item snapshot

        Args:
            rule: Rule to run
            items: Tenant's current items
            client: TorBox client used for control calls
            execution_type: 'scheduled' or 'manual'
            deadline: time.monotonic() value after which no further items
                      are attempted
            now: Evaluation time (defaults to current UTC time)

        Returns:
            ExecutionLog for this run (not persisted)
        """
        eligible = self.select_items(rule, items, now)
        total_items = len(eligible)
        logger.info(f"Rule '{rule.name}' matched {total_items} items")

        executor = ActionExecutor(client, self.rate_limit_delay)
        processed = []

        for index, item in enumerate(eligible):
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Rule '{rule.name}' hit its execution timeout after {index}/{total_items} items")
                break
            if index and index % PROGRESS_LOG_EVERY == 0:
                logger.info(f"Processed {index}/{total_items} items for rule '{rule.name}'")
            processed.append(executor.execute(item, rule.action))

        log = self.summarize(rule, execution_type, processed, total_items)
        logger.info(
            f"Completed rule '{rule.name}': {log.items_processed}/{total_items} items, "
            f"success={log.success}, partial={log.partial}"
        )
        return log

    @staticmethod
    def summarize(rule: AutomationRule, execution_type: str,
                  processed: List[ProcessedItem], total_items: int) -> ExecutionLog:
        """Aggregate per-item outcomes into an ExecutionLog"""
        items_processed = len(processed)
        errors = [p.error or 'Unknown error' for p in processed if not p.success]
        succeeded = items_processed - len(errors)
        incomplete = items_processed < total_items

        message_parts = []
        if incomplete:
            message_parts.append(f"Only processed {items_processed}/{total_items} items")
        if errors:
            if len(errors) <= MAX_LISTED_ERRORS:
                error_summary = '; '.join(errors)
            else:
                error_summary = f"{len(errors)} errors occurred (see processed items for details)"
            message_parts.append(f"{len(errors)} of {items_processed} actions failed. {error_summary}")

        return ExecutionLog(
            rule_id=rule.id,
            rule_name=rule.name,
            tenant_hash=rule.tenant_hash,
            execution_type=execution_type,
            items_processed=items_processed,
            total_items=total_items,
            success=not errors and not incomplete,
            partial=incomplete or (bool(errors) and succeeded > 0),
            error_message='. '.join(message_parts) if message_parts else None,
            processed_items=processed,
        )
