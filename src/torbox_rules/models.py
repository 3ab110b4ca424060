"""
Data model for automation rules, execution logs and download items

Rules and logs are dataclasses that round-trip through the externally tagged
JSON form stored in the database and exchanged over HTTP:

    {"Interval": {"minutes": 60}}
    {"Cron": {"expression": "0 0 * * * *"}}
    [{"type": "Inactive", "operator": "Equal", "value": 1.0}]
    {"action_type": "Delete", "params": null}

Tags are closed enums; an unknown tag raises RuleValidationError.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from torbox_rules.errors import RuleValidationError

MIN_INTERVAL_MINUTES = 30
MAX_INTERVAL_MINUTES = 525600

DB_TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'

EXECUTION_SCHEDULED = 'scheduled'
EXECUTION_MANUAL = 'manual'


# ============================================================================
# Timestamps
# ============================================================================

def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an RFC 3339 / ISO 8601 / SQLite timestamp into an aware UTC datetime

    Naive values are taken as UTC. Returns None for empty or unparseable input.

    Examples:
        >>> parse_timestamp('2024-01-15T10:00:00Z')
        datetime.datetime(2024, 1, 15, 10, 0, tzinfo=datetime.timezone.utc)
        >>> parse_timestamp('not a date') is None
        True
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_db_timestamp(value: datetime) -> str:
    """Format datetime the way SQLite's datetime() does, so text comparison works"""
    return value.astimezone(timezone.utc).strftime(DB_TIMESTAMP_FORMAT)


def format_iso_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format datetime for JSON output (millisecond precision, Z suffix)"""
    if value is None:
        return None
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f'{value.microsecond // 1000:03d}Z'


# ============================================================================
# Enums
# ============================================================================

class ConditionType(Enum):
    SEEDING_TIME = 'SeedingTime'
    SEEDING_RATIO = 'SeedingRatio'
    STALLED_TIME = 'StalledTime'
    AGE = 'Age'
    DOWNLOAD_SPEED = 'DownloadSpeed'
    UPLOAD_SPEED = 'UploadSpeed'
    FILE_SIZE = 'FileSize'
    PROGRESS = 'Progress'
    SEEDS = 'Seeds'
    PEERS = 'Peers'
    TOTAL_UPLOADED = 'TotalUploaded'
    TOTAL_DOWNLOADED = 'TotalDownloaded'
    DOWNLOAD_STATE = 'DownloadState'
    INACTIVE = 'Inactive'
    DOWNLOAD_FINISHED = 'DownloadFinished'
    CACHED = 'Cached'
    PRIVATE = 'Private'
    LONG_TERM_SEEDING = 'LongTermSeeding'
    SEED_TORRENT = 'SeedTorrent'
    ETA = 'ETA'
    AVAILABILITY = 'Availability'
    EXPIRES_AT = 'ExpiresAt'
    DOWNLOAD_PRESENT = 'DownloadPresent'
    TORRENT_FILE = 'TorrentFile'
    ALLOW_ZIPPED = 'AllowZipped'
    HAS_MAGNET = 'HasMagnet'


class Operator(Enum):
    GREATER_THAN = 'GreaterThan'
    LESS_THAN = 'LessThan'
    GREATER_THAN_OR_EQUAL = 'GreaterThanOrEqual'
    LESS_THAN_OR_EQUAL = 'LessThanOrEqual'
    EQUAL = 'Equal'


class ActionType(Enum):
    STOP_SEEDING = 'StopSeeding'
    STOP = 'Stop'
    RESUME = 'Resume'
    RESTART = 'Restart'
    FORCE_START = 'ForceStart'
    REANNOUNCE = 'Reannounce'
    DELETE = 'Delete'

    @property
    def label(self) -> str:
        """Human readable name recorded on processed items"""
        return ACTION_LABELS[self]


ACTION_LABELS = {
    ActionType.STOP_SEEDING: 'Stop Seeding',
    ActionType.STOP: 'Stop',
    ActionType.RESUME: 'Resume',
    ActionType.RESTART: 'Restart',
    ActionType.FORCE_START: 'Force Start',
    ActionType.REANNOUNCE: 'Reannounce',
    ActionType.DELETE: 'Delete',
}


class ItemKind(Enum):
    TORRENT = 'torrent'
    USENET = 'usenet'
    WEB = 'web'


def _parse_enum(enum_cls, value: Any, what: str, rule_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise RuleValidationError(rule_name, f"Unknown {what}: {value!r}")


# ============================================================================
# Rule components
# ============================================================================

@dataclass
class IntervalTrigger:
    """Run every N minutes (raised to the 30 minute minimum)"""

    minutes: int

    def __post_init__(self):
        self.minutes = max(int(self.minutes), MIN_INTERVAL_MINUTES)

    def to_dict(self) -> Dict[str, Any]:
        return {'Interval': {'minutes': self.minutes}}


@dataclass
class CronTrigger:
    """Run on a cron schedule (sec min hour day month day_of_week)"""

    expression: str

    def to_dict(self) -> Dict[str, Any]:
        return {'Cron': {'expression': self.expression}}


Trigger = Union[IntervalTrigger, CronTrigger]


def trigger_from_dict(data: Any, rule_name: str = '') -> Trigger:
    """
    Parse externally tagged trigger config

    Raises:
        RuleValidationError: Unknown tag or malformed payload
    """
    if not isinstance(data, dict) or len(data) != 1:
        raise RuleValidationError(rule_name, "Trigger must be an object with exactly one of 'Interval' or 'Cron'")

    tag, body = next(iter(data.items()))
    if not isinstance(body, dict):
        raise RuleValidationError(rule_name, f"Trigger '{tag}' must be an object")

    if tag == 'Interval':
        minutes = body.get('minutes')
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 0:
            raise RuleValidationError(rule_name, "Interval minutes must be a non-negative integer")
        return IntervalTrigger(minutes)

    if tag == 'Cron':
        expression = body.get('expression')
        if not isinstance(expression, str):
            raise RuleValidationError(rule_name, "Cron expression must be a string")
        return CronTrigger(expression)

    raise RuleValidationError(rule_name, f"Unknown trigger type: {tag!r}")


@dataclass
class Condition:
    """Single predicate: attribute, operator, threshold"""

    type: ConditionType
    operator: Operator
    value: float

    @classmethod
    def from_dict(cls, data: Any, rule_name: str = '') -> 'Condition':
        if not isinstance(data, dict):
            raise RuleValidationError(rule_name, "Condition must be an object")

        value = data.get('value')
        if isinstance(value, bool):
            value = 1.0 if value else 0.0
        if not isinstance(value, (int, float)):
            raise RuleValidationError(rule_name, "Condition value must be a number")

        return cls(
            type=_parse_enum(ConditionType, data.get('type'), 'condition type', rule_name),
            operator=_parse_enum(Operator, data.get('operator'), 'operator', rule_name),
            value=float(value),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'operator': self.operator.value, 'value': self.value}

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.value)


@dataclass
class ActionConfig:
    """Control operation applied to every selected item"""

    action_type: ActionType
    params: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Any, rule_name: str = '') -> 'ActionConfig':
        if not isinstance(data, dict):
            raise RuleValidationError(rule_name, "Action config must be an object")
        return cls(
            action_type=_parse_enum(ActionType, data.get('action_type'), 'action type', rule_name),
            params=data.get('params'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'action_type': self.action_type.value, 'params': self.params}


@dataclass
class AutomationRule:
    """A tenant's trigger, conditions and action"""

    tenant_hash: str
    name: str
    trigger: Trigger
    conditions: List[Condition]
    action: ActionConfig
    enabled: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, data: Any, tenant_hash: str) -> 'AutomationRule':
        """
        Build a rule from an HTTP request body

        Expected keys: name, enabled (optional, default true), trigger_config,
        conditions, action_config.
        """
        if not isinstance(data, dict):
            raise RuleValidationError('', "Request body must be a JSON object")

        name = data.get('name')
        if not isinstance(name, str):
            raise RuleValidationError('', "Rule name is required")

        conditions = data.get('conditions')
        if not isinstance(conditions, list):
            raise RuleValidationError(name, "Conditions must be a list")

        enabled = data.get('enabled')
        return cls(
            tenant_hash=tenant_hash,
            name=name,
            enabled=True if enabled is None else bool(enabled),
            trigger=trigger_from_dict(data.get('trigger_config'), name),
            conditions=[Condition.from_dict(c, name) for c in conditions],
            action=ActionConfig.from_dict(data.get('action_config'), name),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON form returned over HTTP (never includes the tenant hash)"""
        return {
            'id': self.id,
            'name': self.name,
            'enabled': self.enabled,
            'trigger_config': self.trigger.to_dict(),
            'conditions': [c.to_dict() for c in self.conditions],
            'action_config': self.action.to_dict(),
            'created_at': format_iso_timestamp(self.created_at),
            'updated_at': format_iso_timestamp(self.updated_at),
        }


# ============================================================================
# Execution records
# ============================================================================

@dataclass
class ProcessedItem:
    """Outcome of one action attempt"""

    id: int
    name: str
    action: str
    success: bool
    error: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessedItem':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            action=data.get('action', ''),
            success=bool(data.get('success')),
            error=data.get('error'),
            kind=data.get('kind'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'action': self.action,
            'success': self.success,
            'error': self.error,
            'kind': self.kind,
        }


@dataclass
class ExecutionLog:
    """Audit record of one rule run"""

    rule_id: int
    rule_name: str
    tenant_hash: str
    execution_type: str
    items_processed: int
    total_items: int
    success: bool
    error_message: Optional[str] = None
    processed_items: Optional[List[ProcessedItem]] = field(default_factory=list)
    partial: bool = False
    executed_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def failure(cls, rule: AutomationRule, execution_type: str, error_message: str) -> 'ExecutionLog':
        """Run that could not start (fetch or decrypt failed)"""
        return cls(
            rule_id=rule.id,
            rule_name=rule.name,
            tenant_hash=rule.tenant_hash,
            execution_type=execution_type,
            items_processed=0,
            total_items=0,
            success=False,
            error_message=error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'rule_id': self.rule_id,
            'rule_name': self.rule_name,
            'execution_type': self.execution_type,
            'items_processed': self.items_processed,
            'total_items': self.total_items,
            'success': self.success,
            'partial': self.partial,
            'error_message': self.error_message,
            'processed_items': (
                [p.to_dict() for p in self.processed_items]
                if self.processed_items is not None else None
            ),
            'executed_at': format_iso_timestamp(self.executed_at),
        }


@dataclass
class RuleLimit:
    """Per-tenant rule count against the configured maximum"""

    current_count: int
    max_rules: int

    @property
    def reached(self) -> bool:
        return self.current_count >= self.max_rules

    def to_dict(self) -> Dict[str, int]:
        return {'current_count': self.current_count, 'max_rules': self.max_rules}


# ============================================================================
# Download items
# ============================================================================

class DownloadItem:
    """
    Snapshot of one remote download as returned by the TorBox list endpoints

    Subclasses declare which API attributes their kind carries (FIELDS) and
    which control operation each action maps to (OPERATIONS). Attributes a
    kind does not carry read as None and supports() reports False for them.
    """

    KIND: ItemKind = None
    FIELDS: tuple = ()
    OPERATIONS: Dict[ActionType, str] = {}

    def __init__(self, **attributes):
        unknown = set(attributes) - set(self.FIELDS)
        if unknown:
            raise TypeError(f"{type(self).__name__} has no attributes {sorted(unknown)}")
        for name in self.FIELDS:
            setattr(self, name, attributes.get(name))

    def __getattr__(self, name):
        # Only reached for attributes outside FIELDS
        if name.startswith('_'):
            raise AttributeError(name)
        return None

    def __repr__(self):
        return f"{type(self).__name__}(id={self.id!r}, name={self.name!r})"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'DownloadItem':
        """Build from an API list entry, ignoring keys this kind does not model"""
        return cls(**{name: data.get(name) for name in cls.FIELDS})

    @classmethod
    def supports(cls, attribute: str) -> bool:
        return attribute in cls.FIELDS

    @classmethod
    def operation_for(cls, action_type: ActionType) -> Optional[str]:
        """Control operation name for an action, None when unsupported"""
        return cls.OPERATIONS.get(action_type)

    @property
    def kind(self) -> ItemKind:
        return self.KIND


_COMMON_FIELDS = (
    'id', 'hash', 'name', 'size', 'active', 'created_at', 'updated_at',
    'download_state', 'progress', 'download_speed', 'eta', 'expires_at',
    'download_present', 'download_finished',
)


class TorrentItem(DownloadItem):
    KIND = ItemKind.TORRENT
    FIELDS = _COMMON_FIELDS + (
        'magnet', 'seeds', 'peers', 'ratio', 'upload_speed', 'torrent_file',
        'availability', 'total_uploaded', 'total_downloaded', 'cached',
        'seed_torrent', 'allow_zipped', 'long_term_seeding', 'cached_at',
        'private',
    )
    OPERATIONS = {
        ActionType.STOP_SEEDING: 'stop_seeding',
        ActionType.STOP: 'stop',
        ActionType.RESUME: 'resume',
        ActionType.RESTART: 'restart',
        ActionType.FORCE_START: 'start',
        ActionType.REANNOUNCE: 'reannounce',
        ActionType.DELETE: 'delete',
    }


class UsenetItem(DownloadItem):
    KIND = ItemKind.USENET
    FIELDS = _COMMON_FIELDS + ('cached', 'cached_at')
    OPERATIONS = {
        ActionType.STOP: 'pause',
        ActionType.RESUME: 'resume',
        ActionType.DELETE: 'delete',
    }


class WebDownloadItem(DownloadItem):
    KIND = ItemKind.WEB
    FIELDS = _COMMON_FIELDS + ('upload_speed', 'torrent_file', 'availability', 'error')
    OPERATIONS = {
        ActionType.DELETE: 'delete',
    }


ITEM_CLASSES = {
    ItemKind.TORRENT: TorrentItem,
    ItemKind.USENET: UsenetItem,
    ItemKind.WEB: WebDownloadItem,
}
