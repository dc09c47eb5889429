"""Pytest fixtures for TamaPortal.

Unit tests run against FakeRadio, a stand-in for the wifi_controller module.
Tests marked requires_radio drive the real wlan0 and are skipped unless
--run-radio is given (run them as root on the Pi).
"""

import random

import pytest

from message_injector import MessageInjector
from message_store import MessageStore
from network_scanner import NetworkScanner
from portal_controller import PortalController
from portal_driver import PortalDriver
from portal_host import PortalHost


def pytest_addoption(parser):
    parser.addoption(
        "--run-radio",
        action="store_true",
        default=False,
        help="Run tests that drive the real WiFi radio",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "requires_radio: test needs root and a real wlan interface",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-radio", default=False):
        return
    skip_radio = pytest.mark.skip(reason="Requires the WiFi radio (use --run-radio)")
    for item in items:
        if "requires_radio" in item.keywords:
            item.add_marker(skip_radio)


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now=0):
        self.now = now

    def __call__(self):
        return self.now


class FakeRadio:
    """Records what the portal asks of the radio and answers from canned data."""

    def __init__(self):
        self.networks = []
        self.scan_error = None
        self.join_error = None
        self.ap_error = None
        self.gateway = "10.0.0.1"
        self.http_status = 200
        self.http_error = None
        self.calls = []
        self.posts = []
        self.ap_starts = 0
        self.ap_active = False
        self.ap_ssid = ""

    def scan(self):
        self.calls.append("scan")
        if self.scan_error is not None:
            raise self.scan_error
        return {"networks": [dict(n) for n in self.networks]}

    def sta_join(self, ssid, timeout=5.0, dhcp_timeout=10.0):
        self.calls.append(("sta_join", ssid))
        if self.join_error is not None:
            raise self.join_error
        return {"ip": "10.0.0.23", "gateway": self.gateway}

    def sta_leave(self):
        self.calls.append("sta_leave")

    def http_post_form(self, url, fields, timeout=2.0):
        self.posts.append((url, dict(fields), timeout))
        if self.http_error is not None:
            raise self.http_error
        return self.http_status

    def ap_start(self, ssid, channel=6, wildcard_dns=True):
        self.calls.append(("ap_start", ssid))
        if self.ap_error is not None:
            raise self.ap_error
        self.ap_starts += 1
        self.ap_active = True
        self.ap_ssid = ssid
        return {"ip": "192.168.4.1"}

    def ap_stop(self):
        self.calls.append("ap_stop")
        self.ap_active = False
        self.ap_ssid = ""


def open_net(ssid, rssi=-50):
    return {"ssid": ssid, "rssi": rssi, "auth": "OPEN"}


def secured_net(ssid, rssi=-50, auth="WPA2"):
    return {"ssid": ssid, "rssi": rssi, "auth": auth}


@pytest.fixture
def clock():
    return FakeClock(now=10_000)


@pytest.fixture
def radio():
    return FakeRadio()


@pytest.fixture
def store(clock):
    return MessageStore(display_duration=5000, clock=clock)


@pytest.fixture
def injector(radio):
    return MessageInjector(radio, sleep=lambda s: None, rng=random.Random(7))


@pytest.fixture
def host(radio, store):
    """PortalHost serving on an ephemeral localhost port."""
    h = PortalHost(store, radio=radio, http_port=0, bind_address="127.0.0.1",
                   rng=random.Random(3))
    yield h
    h.stop()


@pytest.fixture
def controller(radio, injector, host):
    return PortalController(
        NetworkScanner(radio), injector, host,
        scan_interval=30_000, sleep=lambda s: None,
    )


@pytest.fixture
def portal(host):
    """A started PortalHost and a driver pointed at its HTTP server."""
    assert host.start()
    addr, port = host.server_address
    driver = PortalDriver(f"http://{addr}:{port}")
    yield driver
    host.stop()
