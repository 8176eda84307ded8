"""Tests for the ping and pong reference services."""

import ssl

import httpx
import pytest
from fastapi.testclient import TestClient

from svidrotator.credentials import CredentialStore
from svidrotator.server import build_app
from svidrotator.services import SERVICES, ping, pong

from conftest import write_svid


class FakeClient:
    """Stands in for ``httpx.Client``; records how it was built."""

    def __init__(self, response=None, error=None, **kwargs):
        self.kwargs = kwargs
        self.response = response
        self.error = error
        self.urls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def get(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.response


def _response(status, text, url="https://pong-service:3001/pong"):
    return httpx.Response(status, text=text, request=httpx.Request("GET", url))


@pytest.fixture()
def clients():
    return []


def _factory(clients, **behaviour):
    def factory(**kwargs):
        client = FakeClient(**behaviour, **kwargs)
        clients.append(client)
        return client

    return factory


class TestPong:
    @pytest.fixture()
    def client(self):
        return TestClient(build_app(pong.routes()))

    def test_pong(self, client):
        response = client.get("/pong")
        assert response.status_code == 200
        assert response.text == "pong"

    def test_health(self, client):
        assert client.get("/health").text == "Pong service is healthy"

    def test_config_defaults(self):
        config = pong.build_config({})
        assert config.name == "pong-service"
        assert config.port == 3001
        assert [(r.method, r.path) for r in config.routes] == [("GET", "/pong"), ("GET", "/health")]

    def test_port_from_env(self):
        assert pong.build_config({"PORT": "9001"}).port == 9001


class TestPing:
    def test_health(self, paths):
        client = TestClient(build_app(ping.routes(CredentialStore(paths))))
        assert client.get("/health").text == "Ping service is healthy"

    def test_ping_relays_pong(self, paths, svid, clients):
        routes = ping.routes(
            CredentialStore(paths),
            pong_url="https://pong.test:3001/pong",
            client_factory=_factory(clients, response=_response(200, "pong")),
        )
        response = TestClient(build_app(routes)).get("/ping")

        assert response.status_code == 200
        assert response.text == "Ping sent, received: pong"
        assert clients[0].urls == ["https://pong.test:3001/pong"]
        assert clients[0].kwargs["verify"].verify_mode == ssl.CERT_REQUIRED

    def test_ping_without_credentials(self, paths, clients):
        routes = ping.routes(CredentialStore(paths), client_factory=_factory(clients))
        response = TestClient(build_app(routes)).get("/ping")

        assert response.status_code == 500
        assert response.text == "Server credentials not available"
        assert clients == []

    def test_ping_connection_error(self, paths, svid, clients):
        routes = ping.routes(
            CredentialStore(paths),
            client_factory=_factory(clients, error=httpx.ConnectError("connection refused")),
        )
        response = TestClient(build_app(routes)).get("/ping")

        assert response.status_code == 500
        assert response.text == "Error communicating with pong service"

    def test_ping_upstream_error_status(self, paths, svid, clients):
        routes = ping.routes(
            CredentialStore(paths),
            client_factory=_factory(clients, response=_response(503, "down")),
        )
        response = TestClient(build_app(routes)).get("/ping")
        assert response.status_code == 500

    def test_fresh_credentials_per_request(self, paths, svid, pki, clients):
        routes = ping.routes(
            CredentialStore(paths),
            client_factory=_factory(clients, response=_response(200, "pong")),
        )
        client = TestClient(build_app(routes))
        client.get("/ping")
        write_svid(paths, pki.issue())
        client.get("/ping")

        assert len(clients) == 2
        assert clients[0].kwargs["verify"] is not clients[1].kwargs["verify"]

    def test_pong_url_from_env(self, monkeypatch, paths, svid, clients):
        monkeypatch.setenv("PONG_SERVICE_URL", "https://elsewhere:4000/pong")
        routes = ping.routes(
            CredentialStore(paths),
            client_factory=_factory(clients, response=_response(200, "pong")),
        )
        TestClient(build_app(routes)).get("/ping")
        assert clients[0].urls == ["https://elsewhere:4000/pong"]

    def test_config_defaults(self):
        config = ping.build_config({})
        assert config.name == "ping-service"
        assert config.port == 3000
        assert [r.path for r in config.routes] == ["/ping", "/health"]


def test_service_registry():
    assert SERVICES == {"ping": ping, "pong": pong}
