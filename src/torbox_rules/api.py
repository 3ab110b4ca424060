"""
TorBox REST API client - requests wrapper

Lists a tenant's torrents, usenet jobs and web downloads and issues control
operations against single items. Responses follow the TorBox envelope:
{"success": bool, "error": str|null, "detail": str, "data": ...}
"""

import time
from typing import Any, Dict, Iterable, List, Optional

import requests

from torbox_rules.__version__ import __version__
from torbox_rules.errors import (
    AuthenticationError,
    ConnectionError,
    DownloadServiceError,
    RateLimitError,
)
from torbox_rules.logging import get_logger
from torbox_rules.models import ITEM_CLASSES, DownloadItem, ItemKind

logger = get_logger(__name__)

DEFAULT_API_BASE = 'https://api.torbox.app'

LIST_ENDPOINTS = {
    ItemKind.TORRENT: '/v1/api/torrents/mylist',
    ItemKind.USENET: '/v1/api/usenet/mylist',
    ItemKind.WEB: '/v1/api/webdl/mylist',
}

# Control endpoint and the body field carrying the item ID
CONTROL_ENDPOINTS = {
    ItemKind.TORRENT: ('/v1/api/torrents/controltorrent', 'torrent_id'),
    ItemKind.USENET: ('/v1/api/usenet/controlusenetdownload', 'usenet_id'),
    ItemKind.WEB: ('/v1/api/webdl/controlwebdownload', 'webdl_id'),
}


class TorboxClient:
    """
    TorBox API client for one tenant

    Uses a requests.Session with bearer authentication. List calls are
    retried on gateway errors and network failures; control calls are not.
    """

    def __init__(self, api_key: str, api_base: str = DEFAULT_API_BASE, timeout: int = 10,
                 max_retries: int = 3, session: Optional[requests.Session] = None):
        """
        Initialize API client

        Args:
            api_key: Tenant's raw TorBox API key
            api_base: API root URL (e.g., 'https://api.torbox.app')
            timeout: Per-request timeout in seconds
            max_retries: Attempts for list calls on transient failures
            session: Pre-built session (tests)
        """
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries

        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {api_key}',
            'User-Agent': f'torbox-rules/{__version__}',
        })

    def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Perform one API call and unwrap the response envelope

        Returns:
            The envelope's 'data' member

        Raises:
            AuthenticationError: 401/403
            RateLimitError: 429
            ConnectionError: Network failure or timeout
            DownloadServiceError: Any other failure
        """
        url = f"{self.api_base}{path}"

        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ConnectionError(path, str(e))

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(path, status, response.text)
        if status == 429:
            raise RateLimitError(path, response.text)
        if status >= 400:
            raise DownloadServiceError(path, status, response.text)

        try:
            body = response.json()
        except ValueError:
            raise DownloadServiceError(path, status, "Invalid JSON in response")

        if not isinstance(body, dict):
            return body

        if body.get('success') is False:
            raise DownloadServiceError(path, status, body.get('detail') or body.get('error') or "Request failed")

        return body.get('data')

    def _get_with_retry(self, path: str, params: Dict[str, Any]) -> Any:
        for attempt in range(1, self.max_retries + 1):
            try:
                data = self._request('GET', path, params=params)
                if attempt > 1:
                    logger.info(f"Fetched {path} on attempt {attempt}")
                return data
            except DownloadServiceError as e:
                if not e.is_transient or attempt == self.max_retries:
                    raise
                logger.warning(
                    f"Transient error fetching {path} (attempt {attempt}/{self.max_retries}): "
                    f"{e.summary}. Retrying in {attempt} seconds..."
                )
                time.sleep(attempt)

    def list_items(self, kinds: Optional[Iterable[ItemKind]] = None) -> List[DownloadItem]:
        """
        Fetch current items of the given kinds (all kinds by default)

        Returns:
            Torrent, usenet and web download items, in that order
        """
        items = []
        for kind in kinds or ItemKind:
            data = self._get_with_retry(LIST_ENDPOINTS[kind], {'bypass_cache': 'true'})
            item_class = ITEM_CLASSES[kind]
            entries = [entry for entry in (data or []) if isinstance(entry, dict)]
            items.extend(item_class.from_api(entry) for entry in entries)
            logger.debug(f"Fetched {len(entries)} {kind.value} items")

        return items

    def control_item(self, item: DownloadItem, operation: str) -> bool:
        """
        Apply a control operation to one item

        Args:
            item: Target item (its kind selects the endpoint)
            operation: TorBox operation name (e.g., 'delete', 'stop_seeding')

        Returns:
            True on success (failures raise)
        """
        path, id_field = CONTROL_ENDPOINTS[item.kind]
        self._request('POST', path, json={'operation': operation, id_field: item.id, 'all': False})
        logger.debug(f"{operation} {item.kind.value} {item.id} ({item.name})")
        return True

    def close(self):
        self.session.close()
