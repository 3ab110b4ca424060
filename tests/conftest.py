"""Pytest configuration and shared fixtures for the torbox-rules test suite."""

import os
import pytest
from datetime import datetime, timedelta, timezone

from torbox_rules.encryption import hash_credential
from torbox_rules.models import (
    ActionConfig,
    ActionType,
    AutomationRule,
    Condition,
    ConditionType,
    IntervalTrigger,
    Operator,
    TorrentItem,
    UsenetItem,
    WebDownloadItem,
)
from torbox_rules.store import RuleStore

TEST_API_KEY = 'test-torbox-key-0001'
OTHER_API_KEY = 'test-torbox-key-0002'
NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_environment_variables(monkeypatch):
    """Remove environment overrides that would leak into configuration tests."""
    for name in ('LOG_LEVEL', 'TRACE_MODE', 'LOG_FILE', 'CONFIG_DIR'):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith('TORBOX_RULES_'):
            monkeypatch.delenv(name, raising=False)


# ============================================================================
# Mock TorBox client
# ============================================================================

class MockTorboxClient:
    """Stand-in for TorboxClient that records control calls."""

    def __init__(self, items=None):
        self.items = list(items or [])
        self.control_calls = []
        self.failures = {}  # item id -> exceptions raised by successive calls
        self.list_error = None
        self.closed = False

    def list_items(self, kinds=None):
        if self.list_error is not None:
            raise self.list_error
        return list(self.items)

    def control_item(self, item, operation):
        self.control_calls.append((item.kind.value, item.id, operation))
        pending = self.failures.get(item.id)
        if pending:
            raise pending.pop(0)
        return True

    def close(self):
        self.closed = True


@pytest.fixture
def mock_client():
    return MockTorboxClient()


# ============================================================================
# Tenants and time
# ============================================================================

@pytest.fixture
def api_key():
    return TEST_API_KEY


@pytest.fixture
def tenant_hash():
    return hash_credential(TEST_API_KEY)


@pytest.fixture
def other_tenant_hash():
    return hash_credential(OTHER_API_KEY)


@pytest.fixture
def now():
    return NOW


# ============================================================================
# Store
# ============================================================================

@pytest.fixture
def store(tmp_path):
    """Rule store on a temporary database with encryption ready."""
    rule_store = RuleStore(db_path=tmp_path / 'torbox.db')
    rule_store.initialize_encryption()
    yield rule_store
    rule_store.close()


# ============================================================================
# Item factories
# ============================================================================

def _iso(value):
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


@pytest.fixture
def make_torrent():
    """Factory for seeding torrents; override any field by keyword."""
    counter = {'next_id': 1000}

    def _make(**overrides):
        counter['next_id'] += 1
        fields = {
            'id': counter['next_id'],
            'hash': f"hash{counter['next_id']}",
            'name': f"Torrent {counter['next_id']}",
            'size': 2 * 1024 ** 3,
            'active': True,
            'created_at': _iso(NOW - timedelta(hours=48)),
            'updated_at': _iso(NOW - timedelta(hours=24)),
            'download_state': 'uploading',
            'progress': 1.0,
            'download_speed': 0,
            'upload_speed': 0,
            'eta': 0,
            'expires_at': None,
            'download_present': True,
            'download_finished': True,
            'magnet': 'magnet:?xt=urn:btih:abc',
            'seeds': 5,
            'peers': 2,
            'ratio': 1.5,
            'torrent_file': True,
            'availability': 1.0,
            'total_uploaded': 3 * 1024 ** 3,
            'total_downloaded': 2 * 1024 ** 3,
            'cached': True,
            'seed_torrent': True,
            'allow_zipped': True,
            'long_term_seeding': False,
            'cached_at': None,
            'private': False,
        }
        fields.update(overrides)
        return TorrentItem(**fields)

    return _make


@pytest.fixture
def make_usenet():
    counter = {'next_id': 2000}

    def _make(**overrides):
        counter['next_id'] += 1
        fields = {
            'id': counter['next_id'],
            'hash': f"nzb{counter['next_id']}",
            'name': f"Usenet {counter['next_id']}",
            'size': 1024 ** 3,
            'active': True,
            'created_at': _iso(NOW - timedelta(hours=10)),
            'updated_at': _iso(NOW - timedelta(hours=5)),
            'download_state': 'completed',
            'progress': 1.0,
            'download_speed': 0,
            'eta': 0,
            'expires_at': None,
            'download_present': True,
            'download_finished': True,
            'cached': True,
            'cached_at': None,
        }
        fields.update(overrides)
        return UsenetItem(**fields)

    return _make


@pytest.fixture
def make_web():
    counter = {'next_id': 3000}

    def _make(**overrides):
        counter['next_id'] += 1
        fields = {
            'id': counter['next_id'],
            'hash': f"web{counter['next_id']}",
            'name': f"Web {counter['next_id']}",
            'size': 512 * 1024 ** 2,
            'active': False,
            'created_at': _iso(NOW - timedelta(hours=3)),
            'updated_at': _iso(NOW - timedelta(hours=1)),
            'download_state': 'completed',
            'progress': 1.0,
            'download_speed': 0,
            'eta': 0,
            'expires_at': None,
            'download_present': True,
            'download_finished': True,
            'upload_speed': 0,
            'torrent_file': False,
            'availability': 1.0,
            'error': None,
        }
        fields.update(overrides)
        return WebDownloadItem(**fields)

    return _make


# ============================================================================
# Rule factory
# ============================================================================

@pytest.fixture
def make_rule(tenant_hash):
    """Factory for rules; defaults to 'delete when inactive' every hour."""

    def _make(name='Test rule', conditions=None, action=ActionType.DELETE,
              trigger=None, enabled=True, owner=None, rule_id=None):
        if conditions is None:
            conditions = [Condition(ConditionType.INACTIVE, Operator.EQUAL, 1.0)]
        return AutomationRule(
            tenant_hash=owner or tenant_hash,
            name=name,
            trigger=trigger or IntervalTrigger(60),
            conditions=conditions,
            action=ActionConfig(action),
            enabled=enabled,
            id=rule_id,
        )

    return _make


def rule_payload(name='Delete inactive', minutes=60, conditions=None, action='Delete', enabled=None):
    """JSON body for POST/PUT /rules."""
    payload = {
        'name': name,
        'trigger_config': {'Interval': {'minutes': minutes}},
        'conditions': conditions if conditions is not None else [
            {'type': 'Inactive', 'operator': 'Equal', 'value': 1.0}
        ],
        'action_config': {'action_type': action, 'params': None},
    }
    if enabled is not None:
        payload['enabled'] = enabled
    return payload


@pytest.fixture
def payload():
    return rule_payload
