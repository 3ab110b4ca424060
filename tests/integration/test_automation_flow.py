"""
End-to-end rule lifecycle: HTTP API, store, scheduler and engine together.

Only the TorBox client is replaced; everything else is the real stack on a
temporary SQLite database.
"""

import threading
from datetime import timedelta

import pytest

from torbox_rules.encryption import hash_credential
from torbox_rules.engine import RulesEngine
from torbox_rules.errors import DownloadServiceError
from torbox_rules.models import ExecutionLog, utcnow
from torbox_rules.scheduler import Scheduler
from torbox_rules.server import create_app


PREFIX = '/api/automation'
TEST_API_KEY = 'flow-test-key-1'
OTHER_API_KEY = 'flow-test-key-2'


def auth(api_key=TEST_API_KEY):
    return {'Authorization': f'Bearer {api_key}'}


class RecordingFactory:
    """Client factory handing out one shared mock client and noting the keys used."""

    def __init__(self, client):
        self.client = client
        self.api_keys = []

    def __call__(self, api_key):
        self.api_keys.append(api_key)
        return self.client


class BlockingClient:
    """Holds list_items until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def list_items(self, kinds=None):
        self.entered.set()
        self.release.wait(5)
        return []

    def control_item(self, item, operation):
        return True

    def close(self):
        pass


@pytest.fixture
def factory(mock_client):
    return RecordingFactory(mock_client)


@pytest.fixture
def scheduler(store, factory):
    rule_scheduler = Scheduler(
        store=store,
        engine=RulesEngine(rate_limit_delay=0),
        client_factory=factory,
        tick_interval=3600,
    )
    yield rule_scheduler
    rule_scheduler.wait_for_runs(timeout=5)
    rule_scheduler.stop()


@pytest.fixture
def client(store, scheduler):
    app = create_app(store, scheduler, max_rules=2)
    app.config['TESTING'] = True
    return app.test_client()


def create_rule(client, payload, api_key=TEST_API_KEY, **kwargs):
    response = client.post(f'{PREFIX}/rules', json=payload(**kwargs), headers=auth(api_key))
    assert response.status_code == 201
    return response.get_json()['data']


class TestManualRun:

    def test_create_run_and_read_logs(self, client, factory, payload, make_torrent):
        broken = make_torrent(name='Broken', download_state='error')
        healthy = make_torrent(name='Healthy')
        factory.client.items = [broken, healthy]

        rule = create_rule(client, payload)

        response = client.post(f"{PREFIX}/rules/{rule['id']}/run", headers=auth())
        assert response.status_code == 200
        log = response.get_json()['data']
        assert log['success'] is True
        assert log['execution_type'] == 'manual'
        assert log['items_processed'] == 1
        assert [item['name'] for item in log['processed_items']] == ['Broken']
        assert factory.client.control_calls == [('torrent', broken.id, 'delete')]
        assert factory.api_keys == [TEST_API_KEY]
        assert factory.client.closed is True

        logs = client.get(f"{PREFIX}/rules/{rule['id']}/logs", headers=auth()).get_json()['data']
        assert len(logs) == 1
        assert logs[0]['id'] == log['id']
        assert logs[0]['processed_items'][0]['name'] == 'Broken'

    def test_partial_failure_is_recorded(self, client, factory, payload, make_torrent):
        items = [make_torrent(download_state='error') for _ in range(2)]
        factory.client.items = items
        factory.client.failures[items[0].id] = [DownloadServiceError('/api/torrents/controltorrent', 500, 'oops')]
        rule = create_rule(client, payload)

        log = client.post(f"{PREFIX}/rules/{rule['id']}/run", headers=auth()).get_json()['data']

        assert log['success'] is False
        assert log['partial'] is True
        assert log['error_message'] == '1 of 2 actions failed. Failed to delete: HTTP 500: oops'

    def test_fetch_failure_logged(self, client, factory, payload):
        factory.client.list_error = DownloadServiceError('/api/torrents/mylist', 503, 'maintenance')
        rule = create_rule(client, payload)

        log = client.post(f"{PREFIX}/rules/{rule['id']}/run", headers=auth()).get_json()['data']

        assert log['success'] is False
        assert log['items_processed'] == 0
        assert log['error_message'] == 'Failed to fetch items: HTTP 503: maintenance'

    def test_other_tenant_cannot_run(self, client, payload):
        rule = create_rule(client, payload)
        response = client.post(f"{PREFIX}/rules/{rule['id']}/run", headers=auth(OTHER_API_KEY))
        assert response.status_code == 404


class TestScheduledRun:

    def test_due_rule_runs_with_stored_key(self, client, scheduler, factory, payload, make_torrent):
        factory.client.items = [make_torrent(download_state='error')]
        rule = create_rule(client, payload, minutes=30)

        start = utcnow()
        assert scheduler.tick(start) == []
        assert scheduler.tick(start + timedelta(minutes=31)) == [rule['id']]
        assert scheduler.wait_for_runs(timeout=5)

        assert factory.api_keys == [TEST_API_KEY]
        logs = client.get(f"{PREFIX}/rules/{rule['id']}/logs", headers=auth()).get_json()['data']
        assert [log['execution_type'] for log in logs] == ['scheduled']
        assert logs[0]['items_processed'] == 1

    def test_two_due_rules_run_on_one_tick(self, client, scheduler, store, factory, payload, make_torrent):
        factory.client.items = [make_torrent(download_state='error')]
        first = create_rule(client, payload, name='first', minutes=30)
        second = create_rule(client, payload, name='second', minutes=45)

        start = utcnow()
        assert scheduler.tick(start) == []
        dispatched = scheduler.tick(start + timedelta(minutes=46))
        assert sorted(dispatched) == sorted([first['id'], second['id']])
        assert scheduler.wait_for_runs(timeout=5)

        logs = store.get_execution_logs(None, hash_credential(TEST_API_KEY))
        assert sorted(log.rule_id for log in logs) == sorted([first['id'], second['id']])
        assert {log.rule_name for log in logs} == {'first', 'second'}
        assert all(log.execution_type == 'scheduled' for log in logs)

    def test_restart_resumes_interval_from_last_run(self, client, store, factory, payload):
        rule = create_rule(client, payload, minutes=60)
        store.log_execution(ExecutionLog(
            rule_id=rule['id'], rule_name=rule['name'], tenant_hash=hash_credential(TEST_API_KEY),
            execution_type='scheduled', items_processed=0, total_items=0, success=True,
            executed_at=utcnow() - timedelta(hours=5),
        ))
        restarted = Scheduler(store=store, engine=RulesEngine(rate_limit_delay=0), client_factory=factory)

        assert restarted.tick() == [rule['id']]
        assert restarted.wait_for_runs(timeout=5)
        assert factory.api_keys == [TEST_API_KEY]

    def test_disabled_rule_not_dispatched(self, client, scheduler, factory, payload):
        rule = create_rule(client, payload, minutes=1, enabled=False)

        start = utcnow()
        scheduler.tick(start)
        assert scheduler.tick(start + timedelta(hours=1)) == []

        assert client.get(f"{PREFIX}/rules/{rule['id']}/next-run", headers=auth()).get_json()['data'] is None
        assert factory.api_keys == []

    def test_manual_run_while_scheduled_run_in_flight(self, client, scheduler, store, factory, payload):
        blocking = BlockingClient()
        scheduler.client_factory = lambda api_key: blocking
        rule = create_rule(client, payload, minutes=5)

        start = utcnow()
        scheduler.tick(start)
        scheduler.tick(start + timedelta(minutes=6))
        assert blocking.entered.wait(5)

        response = client.post(f"{PREFIX}/rules/{rule['id']}/run", headers=auth())
        assert response.status_code == 409
        assert response.get_json()['error'] == f"Rule {rule['id']} is already running"

        blocking.release.set()
        assert scheduler.wait_for_runs(timeout=5)
        assert len(store.get_execution_logs(rule['id'], hash_credential(TEST_API_KEY))) == 1


class TestRuleLimit:

    def test_limit_is_per_api_key(self, client, payload):
        create_rule(client, payload, name='one')
        create_rule(client, payload, name='two')

        response = client.post(f'{PREFIX}/rules', json=payload(name='three'), headers=auth())
        assert response.status_code == 403
        assert response.get_json()['error'] == 'Maximum rule limit (2) reached for this API key'

        create_rule(client, payload, api_key=OTHER_API_KEY, name='theirs')

        limit = client.get(f'{PREFIX}/rules/limit', headers=auth()).get_json()['data']
        assert limit == {'current_count': 2, 'max_rules': 2}

    def test_delete_frees_a_slot(self, client, payload):
        first = create_rule(client, payload, name='one')
        create_rule(client, payload, name='two')

        assert client.delete(f"{PREFIX}/rules/{first['id']}", headers=auth()).status_code == 200
        create_rule(client, payload, name='three')
