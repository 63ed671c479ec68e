"""Unit tests for the HTTP request guards."""

import pytest

from roadster.server.auth import (
    check_endpoint_secret,
    is_fetch_site_allowed,
    is_origin_allowed,
    is_using_legacy_secret_only,
    parse_allowed_origins,
    resolve_endpoint_secret,
)


class TestSecretResolution:
    def test_primary_secret(self):
        env = {"ROBOFLOW_ENDPOINT_SECRET": " s1 ", "SYNC_ROBOFLOW_SECRET": "s2"}
        assert resolve_endpoint_secret(env) == "s1"
        assert not is_using_legacy_secret_only(env)

    def test_legacy_secret(self):
        env = {"SYNC_ROBOFLOW_SECRET": "s2"}
        assert resolve_endpoint_secret(env) == "s2"
        assert is_using_legacy_secret_only(env)

    def test_no_secret(self):
        assert resolve_endpoint_secret({}) == ""


class TestCheckEndpointSecret:
    def test_open_when_unconfigured(self):
        assert check_endpoint_secret({}, "")

    def test_matching_header(self):
        assert check_endpoint_secret({"x-roboflow-endpoint-secret": "s3cret"}, "s3cret")

    def test_wrong_header(self):
        assert not check_endpoint_secret({"x-roboflow-endpoint-secret": "nope"}, "s3cret")
        assert not check_endpoint_secret({}, "s3cret")

    def test_trusted_same_origin(self):
        headers = {"sec-fetch-site": "same-origin"}
        assert check_endpoint_secret(headers, "s3cret", allow_trusted_client=True)
        assert not check_endpoint_secret(headers, "s3cret")

    def test_trusted_requires_same_origin(self):
        headers = {"sec-fetch-site": "same-site"}
        assert not check_endpoint_secret(headers, "s3cret", allow_trusted_client=True)


class TestFetchSite:
    @pytest.mark.parametrize("value", [None, "", "same-origin", "Same-Site", "none"])
    def test_allowed(self, value):
        assert is_fetch_site_allowed(value)

    def test_cross_site(self):
        assert not is_fetch_site_allowed("cross-site")


class TestOrigin:
    def test_no_origin(self):
        assert is_origin_allowed(None, "roadster.local")

    def test_same_host(self):
        assert is_origin_allowed("https://roadster.local:8443", "roadster.local:8443")

    def test_missing_host(self):
        assert not is_origin_allowed("https://roadster.local", None)

    def test_malformed_origin(self):
        assert not is_origin_allowed("not a url", "roadster.local")

    def test_allowlist(self):
        allowed = parse_allowed_origins(" https://ops.example , ,https://b.example")
        assert allowed == ["https://ops.example", "https://b.example"]
        assert is_origin_allowed("https://ops.example", "roadster.local", allowed)
        assert not is_origin_allowed("https://evil.example", "roadster.local", allowed)

    def test_allowlist_from_environment(self, monkeypatch):
        monkeypatch.setenv("ROBOFLOW_ALLOWED_ORIGINS", "https://ops.example")
        assert is_origin_allowed("https://ops.example", "roadster.local")
