"""Tests for configuration models."""

import pytest

from svidrotator.config import (
    DEFAULT_BUNDLE_PATH,
    DEFAULT_CERT_PATH,
    DEFAULT_KEY_PATH,
    CredentialPaths,
    Route,
    ServiceConfig,
)
from svidrotator.exceptions import ConfigError


def _handler():
    return "ok"


class TestCredentialPaths:
    def test_defaults(self):
        paths = CredentialPaths.from_env({})
        assert paths.cert == DEFAULT_CERT_PATH == "/run/spire/x509svid/svid.0.pem"
        assert paths.key == DEFAULT_KEY_PATH == "/run/spire/x509svid/svid.0.key"
        assert paths.bundle == DEFAULT_BUNDLE_PATH == "/run/spire/x509svid/bundle.0.pem"

    def test_each_path_overridable(self):
        paths = CredentialPaths.from_env({
            "SVID_CERT_PATH": "/custom/cert/path",
            "SVID_KEY_PATH": "/custom/key/path",
            "SVID_BUNDLE_PATH": "/custom/bundle/path",
        })
        assert paths.all() == ("/custom/cert/path", "/custom/key/path", "/custom/bundle/path")

    def test_partial_override_keeps_other_defaults(self):
        paths = CredentialPaths.from_env({"SVID_KEY_PATH": "/k"})
        assert paths.cert == DEFAULT_CERT_PATH
        assert paths.key == "/k"

    def test_directories_and_basenames(self):
        paths = CredentialPaths(cert="/a/c.pem", key="/a/k.pem", bundle="/b/ca.pem")
        assert paths.directories() == ["/a", "/b"]
        assert paths.basenames() == {"c.pem", "k.pem", "ca.pem"}

    def test_all_exist(self, paths, svid):
        assert paths.all_exist()

    def test_all_exist_false_when_one_missing(self, paths):
        assert not paths.all_exist()


class TestRoute:
    def test_method_is_normalised(self):
        assert Route("get", "/x", _handler).method == "GET"

    def test_rejects_unknown_method(self):
        with pytest.raises(ConfigError):
            Route("PATCH", "/x", _handler)

    def test_rejects_relative_path(self):
        with pytest.raises(ConfigError):
            Route("GET", "x", _handler)


class TestServiceConfig:
    def test_defaults(self):
        config = ServiceConfig.from_env({})
        assert config.port == 3000
        assert config.host == "0.0.0.0"
        assert config.routes == ()
        assert config.retry_interval_seconds == 5.0

    def test_env_overrides(self):
        config = ServiceConfig.from_env({
            "PORT": "8443",
            "HOST": "127.0.0.1",
            "SVID_DEBOUNCE_SECONDS": "0.05",
            "SVID_REUSE_PORT": "off",
            "SVID_CERT_PATH": "/c",
        })
        assert config.port == 8443
        assert config.host == "127.0.0.1"
        assert config.debounce_seconds == 0.05
        assert config.reuse_port is False
        assert config.paths.cert == "/c"

    def test_precedence(self):
        config = ServiceConfig.from_env(
            {"PORT": "4000"},
            defaults={"port": 3001, "name": "pong-service"},
            port=None,
        )
        assert config.port == 4000
        assert config.name == "pong-service"

        config = ServiceConfig.from_env({"PORT": "4000"}, port=5000)
        assert config.port == 5000

    def test_unparseable_env_value(self):
        with pytest.raises(ConfigError, match="PORT"):
            ServiceConfig.from_env({"PORT": "eighty"})

    def test_out_of_range_port(self):
        with pytest.raises(ConfigError):
            ServiceConfig.from_env({"PORT": "70000"})

    def test_bad_bool(self):
        with pytest.raises(ConfigError, match="SVID_REUSE_PORT"):
            ServiceConfig.from_env({"SVID_REUSE_PORT": "maybe"})

    def test_routes_kept_in_order(self):
        routes = (Route("GET", "/a", _handler), Route("POST", "/b", _handler))
        config = ServiceConfig(routes=routes)
        assert [r.path for r in config.routes] == ["/a", "/b"]
        assert config.routes[0].handler is _handler
