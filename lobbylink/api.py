"""HTTP API module for the lobby client (server RPC calls)."""

from __future__ import annotations
import json
import logging
import time
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import ClientConfig
from .constants import RPC_PATH
from .protocol import LobbyLinkError, ProtocolError
from .proxy_utils import to_requests_proxies, mask_proxy_for_log
from .version import __version__

log = logging.getLogger(__name__)


class ApiError(LobbyLinkError):
    """HTTP-level failure talking to the server."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def default_headers() -> Dict[str, str]:
    return {
        "Accept": "application/json",
        "Content-Type": "application/json; charset=utf-8",
        "User-Agent": f"lobbylink/{__version__}",
    }


class LobbyAPI:
    """Blocking HTTP client for server RPCs.

    Requests are authenticated with the shared server key (HTTP basic auth,
    key as user name, empty password), which identifies the client population
    rather than a player.
    """

    def __init__(self, config: ClientConfig, *, retries: int = 3):
        self.config = config
        self.base_url = config.http_base_url.rstrip("/")
        self.timeout = config.timeout
        self.session = requests.Session()

        retry_strategy = Retry(
            total=retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self.session.headers.update(default_headers())
        self.session.auth = (config.server_key, "")
        self.proxies = to_requests_proxies(config.proxy)

    def _request(self, method: str, path: str, *, params=None, data: Optional[str] = None) -> Any:
        """Make an HTTP request and return the decoded JSON body.

        Raises:
            ApiError: On connection problems or HTTP status >= 400
            ProtocolError: If the body is not JSON"""
        url = self.base_url + path
        log.debug(f"🌐 HTTP {method} {url}")
        if params:
            log.debug(f"   📤 Query params: {params}")
        if self.proxies:
            log.debug(f"   🔀 Proxy: {mask_proxy_for_log(self.proxies['https'])}")

        start_time = time.time()
        try:
            r = self.session.request(
                method, url,
                params=params,
                data=data,
                proxies=self.proxies,
                timeout=self.timeout,
            )
        except requests.exceptions.ProxyError as e:
            log.error(f"❌ Proxy error calling {url}: {e}")
            raise ApiError(f"Proxy error: {e}") from e
        except requests.exceptions.Timeout as e:
            log.error(f"❌ Timeout calling {url}: {e}")
            raise ApiError(f"Timeout: {e}") from e
        except requests.exceptions.RequestException as e:
            log.error(f"❌ Connection error calling {url}: {e}")
            raise ApiError(f"Connection error: {e}") from e
        request_time = time.time() - start_time

        log.info(f"HTTP {method} {path} -> {r.status_code} ({request_time:.3f}s)")
        log.debug(f"   📥 Response body: {r.text[:2000]}")

        if r.status_code >= 400:
            log.error(f"❌ HTTP Error {r.status_code}: {r.text[:500]}")
            raise ApiError(f"{r.status_code} {r.text}", status=r.status_code)
        try:
            return r.json()
        except ValueError as e:
            raise ProtocolError(f"Response from {path} is not JSON: {e}") from e

    def rpc(self, rpc_id: str, payload: Dict[str, Any]) -> Any:
        """Call a server RPC and return its reply payload.

        The server expects the RPC input as a JSON-encoded string inside the
        JSON body. The reply payload is returned as delivered: usually a JSON
        string, sometimes an already-decoded object.
        """
        body = json.dumps(json.dumps(payload, separators=(",", ":")))
        data = self._request("POST", RPC_PATH.format(rpc_id=rpc_id), data=body)
        if isinstance(data, dict) and "payload" in data:
            return data["payload"]
        return data

    def close(self) -> None:
        self.session.close()
