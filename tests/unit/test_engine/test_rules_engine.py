"""Tests for RulesEngine in engine.py - selection, execution and summaries."""

import time

import pytest

from torbox_rules.engine import RulesEngine
from torbox_rules.errors import DownloadServiceError
from torbox_rules.models import (
    ActionType,
    Condition,
    ConditionType,
    Operator,
    ProcessedItem,
)


@pytest.fixture(autouse=True)
def no_sleep(mocker):
    mocker.patch('torbox_rules.engine.time.sleep')


@pytest.fixture
def engine():
    return RulesEngine(rate_limit_delay=0)


def ratio_rule(make_rule, action=ActionType.STOP_SEEDING, threshold=2.0):
    return make_rule(
        name='Ratio cap',
        conditions=[Condition(ConditionType.SEEDING_RATIO, Operator.GREATER_THAN_OR_EQUAL, threshold)],
        action=action,
        rule_id=1,
    )


def failed(error='boom'):
    return ProcessedItem(id=1, name='x', action='Delete', success=False, error=error)


def ok():
    return ProcessedItem(id=1, name='x', action='Delete', success=True)


class TestSelectItems:

    def test_only_matching_items(self, engine, make_rule, make_torrent, now):
        rule = ratio_rule(make_rule)
        high, low = make_torrent(ratio=3.0), make_torrent(ratio=0.5)
        assert engine.select_items(rule, [high, low], now) == [high]

    def test_kinds_without_action_excluded(self, engine, make_rule, make_torrent, make_web, now):
        rule = make_rule(
            conditions=[Condition(ConditionType.AGE, Operator.GREATER_THAN_OR_EQUAL, 0)],
            action=ActionType.STOP,
        )
        torrent, web = make_torrent(), make_web()
        assert engine.select_items(rule, [torrent, web], now) == [torrent]


class TestExecute:

    def test_all_succeed(self, engine, make_rule, make_torrent, mock_client, now):
        rule = ratio_rule(make_rule)
        items = [make_torrent(ratio=2.5), make_torrent(ratio=4.0), make_torrent(ratio=1.0)]

        log = engine.execute(rule, items, mock_client, 'scheduled', now=now)

        assert log.success is True
        assert log.partial is False
        assert log.items_processed == 2
        assert log.total_items == 2
        assert log.error_message is None
        assert [op for _, _, op in mock_client.control_calls] == ['stop_seeding', 'stop_seeding']
        assert [p.action for p in log.processed_items] == ['Stop Seeding', 'Stop Seeding']

    def test_no_matches(self, engine, make_rule, make_torrent, mock_client, now):
        log = engine.execute(ratio_rule(make_rule), [make_torrent(ratio=0.1)], mock_client, 'manual', now=now)

        assert log.success is True
        assert log.items_processed == 0
        assert log.total_items == 0
        assert log.processed_items == []
        assert log.execution_type == 'manual'
        assert mock_client.control_calls == []

    def test_partial_failure(self, engine, make_rule, make_torrent, mock_client, now):
        rule = ratio_rule(make_rule, action=ActionType.DELETE)
        items = [make_torrent(ratio=3.0) for _ in range(3)]
        mock_client.failures[items[1].id] = [DownloadServiceError('/x', 500, 'nope')]

        log = engine.execute(rule, items, mock_client, now=now)

        assert log.success is False
        assert log.partial is True
        assert log.items_processed == 3
        assert log.error_message == '1 of 3 actions failed. Failed to delete: HTTP 500: nope'
        assert [p.success for p in log.processed_items] == [True, False, True]

    def test_deadline_stops_run(self, engine, make_rule, make_torrent, mock_client, now):
        rule = ratio_rule(make_rule)
        items = [make_torrent(ratio=3.0) for _ in range(3)]

        log = engine.execute(rule, items, mock_client, deadline=time.monotonic() - 1, now=now)

        assert log.items_processed == 0
        assert log.total_items == 3
        assert log.partial is True
        assert log.success is False
        assert log.error_message == 'Only processed 0/3 items'
        assert mock_client.control_calls == []

    def test_ids_and_tenant_copied(self, engine, make_rule, mock_client, tenant_hash, now):
        log = engine.execute(ratio_rule(make_rule), [], mock_client, now=now)
        assert log.rule_id == 1
        assert log.rule_name == 'Ratio cap'
        assert log.tenant_hash == tenant_hash


class TestSummarize:

    def test_all_failed_is_not_partial(self, make_rule):
        log = RulesEngine.summarize(make_rule(), 'scheduled', [failed('a'), failed('b')], 2)
        assert log.success is False
        assert log.partial is False
        assert log.error_message == '2 of 2 actions failed. a; b'

    def test_many_errors_summarized(self, make_rule):
        processed = [failed(str(i)) for i in range(4)] + [ok()]
        log = RulesEngine.summarize(make_rule(), 'scheduled', processed, 5)
        assert log.partial is True
        assert log.error_message == (
            '4 of 5 actions failed. 4 errors occurred (see processed items for details)'
        )

    def test_incomplete_and_errors(self, make_rule):
        log = RulesEngine.summarize(make_rule(), 'scheduled', [ok(), failed('x')], 4)
        assert log.error_message == 'Only processed 2/4 items. 1 of 2 actions failed. x'
        assert log.partial is True

    def test_missing_error_text(self, make_rule):
        log = RulesEngine.summarize(make_rule(), 'scheduled', [failed(None)], 1)
        assert log.error_message == '1 of 1 actions failed. Unknown error'
