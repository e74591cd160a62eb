"""Tests for reachability probes."""

from __future__ import annotations

import httpx
import pytest
import respx

from egresswall.errors import VerificationError
from egresswall.verify import HttpProber, verify_allowed, verify_blocked

from .conftest import FakeProber


class TestHttpProber:
    @respx.mock
    def test_ok_response_reachable(self):
        respx.get("https://api.github.com/zen").mock(
            return_value=httpx.Response(200, text="Keep it logically awesome.")
        )
        assert HttpProber().reachable("https://api.github.com/zen", 5.0) is True

    @respx.mock
    def test_error_status_still_reachable(self):
        respx.get("https://registry.npmjs.org/").mock(return_value=httpx.Response(403))
        assert HttpProber().reachable("https://registry.npmjs.org/", 5.0) is True

    @respx.mock
    def test_connect_error_unreachable(self):
        respx.get("https://example.com").mock(side_effect=httpx.ConnectError("refused"))
        assert HttpProber().reachable("https://example.com", 5.0) is False

    @respx.mock
    def test_timeout_unreachable(self):
        respx.get("https://example.com").mock(side_effect=httpx.ConnectTimeout("timed out"))
        assert HttpProber().reachable("https://example.com", 5.0) is False

    @respx.mock
    def test_network_error_unreachable(self):
        respx.get("https://example.com").mock(side_effect=httpx.ReadError("connection reset"))
        assert HttpProber().reachable("https://example.com", 5.0) is False

    def test_unsupported_scheme_raises(self):
        with pytest.raises(VerificationError, match="Cannot probe example.com"):
            HttpProber().reachable("example.com", 1.0)

    def test_unsupported_scheme_does_not_pass_blocked_check(self):
        with pytest.raises(VerificationError):
            verify_blocked(HttpProber(), "example.com", 1.0)

    @respx.mock
    def test_uses_injected_client(self):
        route = respx.get("https://example.com").mock(return_value=httpx.Response(200))
        with httpx.Client() as client:
            assert HttpProber(client).reachable("https://example.com", 1.0) is True
        assert route.called


class TestVerifyFunctions:
    def test_blocked_passes_when_unreachable(self, caplog):
        caplog.set_level("INFO")
        verify_blocked(FakeProber({"https://example.com": False}), "https://example.com", 5.0)
        assert "unable to reach https://example.com as expected" in caplog.text

    def test_blocked_fails_when_reachable(self):
        with pytest.raises(VerificationError) as exc_info:
            verify_blocked(FakeProber({"https://example.com": True}), "https://example.com", 5.0)
        assert exc_info.value.url == "https://example.com"

    def test_allowed_passes_when_reachable(self, caplog):
        caplog.set_level("INFO")
        url = "https://api.github.com/zen"
        verify_allowed(FakeProber({url: True}), url, 5.0)
        assert "able to reach https://api.github.com" in caplog.text

    def test_allowed_fails_when_unreachable(self):
        with pytest.raises(VerificationError, match="unable to reach"):
            verify_allowed(FakeProber(), "https://api.github.com/zen", 5.0)
