import logging

import pytest
import requests

from cold_backup.errors import ConnectivityError
from cold_backup.fleet import (
    MAX_IDLE_CONNS_PER_HOST,
    FleetHTTPClient,
    ProxyConfigError,
    SchedulerError,
    ServiceController,
    UnitState,
    build_http_session,
)
from conftest import FakeFleet


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, responses=(), error=None):
        self.responses = list(responses)
        self.error = error
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs, timeout))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


def unit(name, active="active", load="loaded"):
    return UnitState(name=name, active_state=active, load_state=load)


# ---------------------------------------------------------------------------
class TestIsServiceActive:
    def test_active_unit(self):
        controller = ServiceController(FakeFleet([unit("a.service", "inactive"), unit("deployer.service")]))
        assert controller.is_service_active("deployer.service") is True

    def test_inactive_unit(self):
        controller = ServiceController(FakeFleet([unit("deployer.service", "inactive")]))
        assert controller.is_service_active("deployer.service") is False

    @pytest.mark.parametrize("state", ["failed", "activating", "unknown", ""])
    def test_other_states_are_not_active(self, state):
        controller = ServiceController(FakeFleet([unit("deployer.service", state)]))
        assert controller.is_service_active("deployer.service") is False

    @pytest.mark.parametrize("size", [0, 1, 250])
    def test_missing_unit_is_inactive_with_warning(self, size, caplog):
        roster = [unit(f"unit-{i}.service") for i in range(size)]
        controller = ServiceController(FakeFleet(roster))
        with caplog.at_level(logging.WARNING):
            assert controller.is_service_active("deployer.service") is False
        assert "assuming the service is inactive" in caplog.text

    def test_first_match_wins(self):
        roster = [unit("deployer.service", "inactive"), unit("deployer.service", "active")]
        assert ServiceController(FakeFleet(roster)).is_service_active("deployer.service") is False

    def test_query_failure_propagates(self):
        controller = ServiceController(FakeFleet(error=ConnectivityError("no route to host")))
        with pytest.raises(ConnectivityError):
            controller.is_service_active("deployer.service")


class TestSetUnitTargetState:
    def test_success_is_forwarded(self, caplog):
        fleet = FakeFleet()
        with caplog.at_level(logging.INFO):
            ServiceController(fleet).set_unit_target_state("neo4j-red@1.service", "inactive")
        assert fleet.requests == [("neo4j-red@1.service", "inactive")]
        assert "unit=neo4j-red@1.service target=inactive" in caplog.text

    def test_failure_is_logged_and_raised(self, caplog):
        fleet = FakeFleet(set_errors={"launched": SchedulerError("HTTP 500")})
        with pytest.raises(SchedulerError):
            ServiceController(fleet).set_unit_target_state("neo4j-red@1.service", "launched")
        assert "Problem setting unit target state" in caplog.text


# ---------------------------------------------------------------------------
class TestFleetHTTPClient:
    def test_unit_states_follows_pagination(self):
        session = FakeSession([
            FakeResponse(payload={
                "states": [{"name": "a.service", "systemdActiveState": "active", "systemdLoadState": "loaded"}],
                "nextPageToken": "page-2",
            }),
            FakeResponse(payload={
                "states": [{"name": "b.service", "systemdActiveState": "inactive", "machineID": "m1"}],
            }),
        ])
        client = FleetHTTPClient("http://fleet:49153/", session)
        states = client.unit_states()

        assert [s.name for s in states] == ["a.service", "b.service"]
        assert states[0].is_active and not states[1].is_active
        assert states[1].machine_id == "m1"
        assert session.calls[0][1] == "http://fleet:49153/fleet/v1/state"
        assert session.calls[1][2]["params"] == {"nextPageToken": "page-2"}
        assert session.calls[0][3] == FleetHTTPClient.timeout

    def test_missing_active_state_is_unknown(self):
        session = FakeSession([FakeResponse(payload={"states": [{"name": "a.service"}]})])
        assert FleetHTTPClient("http://fleet", session).unit_states()[0].active_state == "unknown"

    def test_empty_roster(self):
        session = FakeSession([FakeResponse(payload={})])
        assert FleetHTTPClient("http://fleet", session).unit_states() == []

    def test_set_unit_target_state_puts_desired_state(self):
        session = FakeSession([FakeResponse(status_code=204)])
        FleetHTTPClient("http://fleet", session).set_unit_target_state("neo4j-red@1.service", "launched")
        method, url, kwargs, _ = session.calls[0]
        assert method == "PUT"
        assert url == "http://fleet/fleet/v1/units/neo4j-red@1.service"
        assert kwargs["json"] == {"desiredState": "launched"}

    def test_rejected_request_is_scheduler_error(self):
        session = FakeSession([FakeResponse(status_code=400, text="bad desiredState")])
        with pytest.raises(SchedulerError, match="HTTP 400"):
            FleetHTTPClient("http://fleet", session).set_unit_target_state("x.service", "bogus")

    def test_invalid_json_is_scheduler_error(self):
        session = FakeSession([FakeResponse(payload=None)])
        with pytest.raises(SchedulerError):
            FleetHTTPClient("http://fleet", session).unit_states()

    @pytest.mark.parametrize(
        "payload",
        [["deployer.service"], {"states": "deployer.service"}, {"states": ["deployer.service"]}],
    )
    def test_malformed_roster_is_scheduler_error(self, payload):
        session = FakeSession([FakeResponse(payload=payload)])
        with pytest.raises(SchedulerError, match="Fleet API returned"):
            FleetHTTPClient("http://fleet", session).unit_states()

    @pytest.mark.parametrize("error", [requests.ConnectionError("refused"), requests.Timeout("slow")])
    def test_transport_failure_is_connectivity_error(self, error):
        with pytest.raises(ConnectivityError) as excinfo:
            FleetHTTPClient("http://fleet", FakeSession(error=error)).unit_states()
        assert excinfo.value.__cause__ is error


class TestBuildHttpSession:
    def test_without_proxy(self):
        session = build_http_session("")
        assert not session.proxies
        assert session.get_adapter("http://fleet")._pool_maxsize == MAX_IDLE_CONNS_PER_HOST

    def test_with_proxy_routes_through_socks(self):
        session = build_http_session("127.0.0.1:1080")
        assert session.proxies == {"http": "socks5h://127.0.0.1:1080", "https": "socks5h://127.0.0.1:1080"}
        assert session.trust_env is False

    @pytest.mark.parametrize("proxy", ["localhost", "http://proxy:1080", "proxy:notaport", "proxy:70000", "proxy:0"])
    def test_invalid_proxy_is_rejected(self, proxy):
        with pytest.raises(ProxyConfigError):
            build_http_session(proxy)
