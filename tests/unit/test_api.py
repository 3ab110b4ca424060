"""Tests for api.py - TorBox REST client."""

import pytest
import requests

from torbox_rules.api import CONTROL_ENDPOINTS, LIST_ENDPOINTS, TorboxClient
from torbox_rules.errors import (
    AuthenticationError,
    ConnectionError,
    DownloadServiceError,
    RateLimitError,
)
from torbox_rules.models import ItemKind, TorrentItem, UsenetItem, WebDownloadItem


def make_response(mocker, status=200, body=None, text=''):
    response = mocker.MagicMock()
    response.status_code = status
    response.text = text
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


def envelope(data):
    return {'success': True, 'error': None, 'detail': 'ok', 'data': data}


@pytest.fixture
def session(mocker):
    session = mocker.MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def client(session, mocker):
    mocker.patch('torbox_rules.api.time.sleep')
    return TorboxClient('tenant-key', api_base='https://torbox.test/', timeout=5, session=session)


class TestTorboxClientInit:

    def test_sets_auth_headers(self, client, session):
        assert session.headers['Authorization'] == 'Bearer tenant-key'
        assert session.headers['User-Agent'].startswith('torbox-rules/')

    def test_strips_trailing_slash(self, client):
        assert client.api_base == 'https://torbox.test'


class TestRequest:

    def test_unwraps_data(self, client, session, mocker):
        session.request.return_value = make_response(mocker, body=envelope([{'id': 1}]))
        assert client._request('GET', '/v1/x') == [{'id': 1}]
        session.request.assert_called_once_with('GET', 'https://torbox.test/v1/x', timeout=5)

    @pytest.mark.parametrize('status', [401, 403])
    def test_auth_failures(self, client, session, mocker, status):
        session.request.return_value = make_response(mocker, status=status, text='bad token')
        with pytest.raises(AuthenticationError):
            client._request('GET', '/v1/x')

    def test_rate_limit(self, client, session, mocker):
        session.request.return_value = make_response(mocker, status=429)
        with pytest.raises(RateLimitError):
            client._request('GET', '/v1/x')

    def test_server_error(self, client, session, mocker):
        session.request.return_value = make_response(mocker, status=500, text='oops')
        with pytest.raises(DownloadServiceError) as exc_info:
            client._request('GET', '/v1/x')
        assert exc_info.value.status_code == 500

    def test_network_failure(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectTimeout('timed out')
        with pytest.raises(ConnectionError):
            client._request('GET', '/v1/x')

    def test_invalid_json(self, client, session, mocker):
        session.request.return_value = make_response(mocker, body=ValueError('no json'))
        with pytest.raises(DownloadServiceError):
            client._request('GET', '/v1/x')

    def test_unsuccessful_envelope(self, client, session, mocker):
        session.request.return_value = make_response(
            mocker, body={'success': False, 'error': 'ITEM_NOT_FOUND', 'detail': 'No such torrent', 'data': None}
        )
        with pytest.raises(DownloadServiceError) as exc_info:
            client._request('POST', '/v1/x')
        assert exc_info.value.response_text == 'No such torrent'


class TestListItems:

    def test_fetches_all_kinds(self, client, session, mocker):
        session.request.side_effect = [
            make_response(mocker, body=envelope([{'id': 1, 'name': 't', 'ratio': 2.0}])),
            make_response(mocker, body=envelope([{'id': 2, 'name': 'u'}])),
            make_response(mocker, body=envelope([{'id': 3, 'name': 'w'}, 'junk'])),
        ]

        items = client.list_items()

        assert [type(item) for item in items] == [TorrentItem, UsenetItem, WebDownloadItem]
        assert items[0].ratio == 2.0
        urls = [call.args[1] for call in session.request.call_args_list]
        assert urls == [f"https://torbox.test{LIST_ENDPOINTS[kind]}" for kind in ItemKind]
        assert session.request.call_args.kwargs['params'] == {'bypass_cache': 'true'}

    def test_null_data_is_empty(self, client, session, mocker):
        session.request.return_value = make_response(mocker, body=envelope(None))
        assert client.list_items([ItemKind.USENET]) == []

    def test_retries_gateway_errors(self, client, session, mocker):
        session.request.side_effect = [
            make_response(mocker, status=502),
            make_response(mocker, body=envelope([{'id': 1}])),
        ]

        items = client.list_items([ItemKind.TORRENT])

        assert len(items) == 1
        assert session.request.call_count == 2

    def test_gives_up_after_max_retries(self, client, session, mocker):
        session.request.return_value = make_response(mocker, status=503)
        with pytest.raises(DownloadServiceError):
            client.list_items([ItemKind.TORRENT])
        assert session.request.call_count == 3

    def test_does_not_retry_auth_failure(self, client, session, mocker):
        session.request.return_value = make_response(mocker, status=401)
        with pytest.raises(AuthenticationError):
            client.list_items([ItemKind.TORRENT])
        assert session.request.call_count == 1


class TestControlItem:

    @pytest.mark.parametrize('item,id_field', [
        (TorrentItem(id=7, name='t'), 'torrent_id'),
        (UsenetItem(id=8, name='u'), 'usenet_id'),
        (WebDownloadItem(id=9, name='w'), 'webdl_id'),
    ])
    def test_posts_operation(self, client, session, mocker, item, id_field):
        session.request.return_value = make_response(mocker, body=envelope(None))

        assert client.control_item(item, 'delete') is True

        path, _ = CONTROL_ENDPOINTS[item.kind]
        session.request.assert_called_once_with(
            'POST', f'https://torbox.test{path}', timeout=5,
            json={'operation': 'delete', id_field: item.id, 'all': False}
        )

    def test_failure_raises(self, client, session, mocker):
        session.request.return_value = make_response(mocker, status=500, text='fail')
        with pytest.raises(DownloadServiceError):
            client.control_item(TorrentItem(id=1), 'stop_seeding')


def test_close_closes_session(client, session):
    client.close()
    session.close.assert_called_once()
