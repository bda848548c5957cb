"""Access to the fleet cluster scheduler.

The orchestrator only ever needs two scheduler operations, listing unit states
and setting a unit's desired state, so they are captured by :class:`FleetAPI`.
:class:`FleetHTTPClient` implements them over fleet's v1 HTTP API and tests
substitute their own implementation.
"""
from __future__ import annotations

import logging
import re
import socket
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection

from .errors import ConnectivityError

LOGGER = logging.getLogger(__name__)

DIAL_TIMEOUT = 30
KEEPALIVE = 30
TLS_HANDSHAKE_TIMEOUT = 10
MAX_IDLE_CONNS_PER_HOST = 100

TARGET_INACTIVE = "inactive"
TARGET_LAUNCHED = "launched"

_PROXY_RE = re.compile(r"^(?P<host>[^:\s/]+|\[[0-9a-fA-F:]+\]):(?P<port>\d{1,5})$")


class SchedulerError(Exception):
    """Raised when the scheduler is reachable but rejects or fails a request."""


class ProxyConfigError(Exception):
    """Raised when the configured SOCKS proxy cannot be used."""


@dataclass(frozen=True)
class UnitState:
    name: str
    active_state: str
    load_state: str = ""
    sub_state: str = ""
    machine_id: str = ""

    @property
    def is_active(self) -> bool:
        return self.active_state == "active"

    @classmethod
    def from_dict(cls, data: Dict) -> "UnitState":
        if "name" not in data:
            raise SchedulerError(f"Unit state without a name: {data!r}")
        return cls(
            name=data["name"],
            active_state=data.get("systemdActiveState") or "unknown",
            load_state=data.get("systemdLoadState") or "",
            sub_state=data.get("systemdSubState") or "",
            machine_id=data.get("machineID") or "",
        )


class FleetAPI(Protocol):
    def unit_states(self) -> List[UnitState]:
        ...

    def set_unit_target_state(self, name: str, target: str) -> None:
        ...


# ---------------------------------------------------------------------------
class KeepAliveAdapter(HTTPAdapter):
    """HTTP adapter enabling TCP keepalive on every pooled connection."""

    socket_options = HTTPConnection.default_socket_options + [(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)]
    if hasattr(socket, "TCP_KEEPIDLE"):
        socket_options = socket_options + [
            (socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEPALIVE),
            (socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, KEEPALIVE),
        ]

    def init_poolmanager(self, *args, **kwargs):
        kwargs.setdefault("socket_options", self.socket_options)
        super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs.setdefault("socket_options", self.socket_options)
        return super().proxy_manager_for(proxy, **proxy_kwargs)


def build_http_session(socks_proxy: str = "") -> requests.Session:
    """Create the HTTP session used for every scheduler call of a run."""

    session = requests.Session()
    adapter = KeepAliveAdapter(pool_connections=1, pool_maxsize=MAX_IDLE_CONNS_PER_HOST)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    if socks_proxy:
        if not _PROXY_RE.match(socks_proxy):
            raise ProxyConfigError(f"SOCKS proxy '{socks_proxy}' is not in HOST:PORT format.")
        port = int(socks_proxy.rsplit(":", 1)[1])
        if not 0 < port < 65536:
            raise ProxyConfigError(f"SOCKS proxy '{socks_proxy}' has an invalid port.")
        proxy_url = f"socks5h://{socks_proxy}"
        session.proxies = {"http": proxy_url, "https": proxy_url}
        # Only the explicit proxy is honoured, never *_PROXY variables.
        session.trust_env = False
        LOGGER.info("Using SOCKS proxy %s for fleet API traffic.", socks_proxy)
    return session


class FleetHTTPClient:
    """Minimal client for the fleet v1 HTTP API."""

    timeout = (DIAL_TIMEOUT + TLS_HANDSHAKE_TIMEOUT, DIAL_TIMEOUT)

    def __init__(self, endpoint: str, session: Optional[requests.Session] = None) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.session = session or build_http_session()
        LOGGER.info("Connecting to fleet API at url=%s.", self.endpoint)

    def _url(self, path: str) -> str:
        return f"{self.endpoint}/fleet/v1/{path}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ConnectivityError(f"Could not reach fleet API at {url}: {exc}") from exc
        except requests.RequestException as exc:
            raise SchedulerError(f"Fleet API request {method} {url} failed: {exc}") from exc
        if not response.ok:
            raise SchedulerError(
                f"Fleet API request {method} {url} failed: HTTP {response.status_code} {response.text.strip()}"
            )
        return response

    def unit_states(self) -> List[UnitState]:
        states: List[UnitState] = []
        params: Dict[str, str] = {}
        while True:
            response = self._request("GET", self._url("state"), params=params)
            try:
                payload = response.json()
            except ValueError as exc:
                raise SchedulerError(f"Fleet API returned invalid JSON: {exc}") from exc
            if not isinstance(payload, dict):
                raise SchedulerError(f"Fleet API returned a {type(payload).__name__} instead of a state page.")
            items = payload.get("states") or []
            if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
                raise SchedulerError(f"Fleet API returned malformed unit states: {items!r}")
            states.extend(UnitState.from_dict(item) for item in items)
            token = payload.get("nextPageToken")
            if not token:
                return states
            params = {"nextPageToken": token}

    def set_unit_target_state(self, name: str, target: str) -> None:
        self._request(
            "PUT",
            self._url(f"units/{quote(name, safe='@')}"),
            json={"desiredState": target},
        )


# ---------------------------------------------------------------------------
class ServiceController:
    """Query and change the run state of fleet units."""

    def __init__(self, api: FleetAPI, logger: logging.Logger = LOGGER) -> None:
        self.api = api
        self.logger = logger

    def query_unit_states(self) -> List[UnitState]:
        try:
            states = self.api.unit_states()
        except ConnectivityError:
            self.logger.error(
                "Could not retrieve list of units from fleet API, do you need to start a SOCKS proxy?"
            )
            raise
        self.logger.info("Retrieved services from fleet API: num=%d.", len(states))
        return states

    def set_unit_target_state(self, name: str, target: str) -> None:
        try:
            self.api.set_unit_target_state(name, target)
        except (ConnectivityError, SchedulerError) as exc:
            self.logger.error(
                "Problem setting unit target state: unit=%s target=%s err=%s", name, target, exc
            )
            raise
        self.logger.info("Set unit target state successfully: unit=%s target=%s", name, target)

    def find_unit(self, name: str) -> Optional[UnitState]:
        for index, state in enumerate(self.query_unit_states()):
            if state.name == name:
                self.logger.info(
                    "Processing service: index=%d name=%s active=%s load=%s",
                    index,
                    state.name,
                    state.active_state,
                    state.load_state,
                )
                return state
        return None

    def is_service_active(self, name: str) -> bool:
        state = self.find_unit(name)
        if state is None:
            self.logger.warning(
                "Could not find service %s in list of services, assuming the service is inactive.", name
            )
            return False
        return state.is_active


__all__ = [
    "ConnectivityError",
    "FleetAPI",
    "FleetHTTPClient",
    "ProxyConfigError",
    "SchedulerError",
    "ServiceController",
    "TARGET_INACTIVE",
    "TARGET_LAUNCHED",
    "UnitState",
    "build_http_session",
]
