"""Tests for the HaveIBeenPwned range-API password check."""

import hashlib
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.config import settings
from app.core.errors import ServiceError
from app.services import breached_password

PASSWORD = "Correct-Horse-9!"
DIGEST = hashlib.sha1(PASSWORD.encode()).hexdigest().upper()
PREFIX, SUFFIX = DIGEST[:5], DIGEST[5:]


def range_body(count: int) -> str:
    return f"0018A45C4D1DEF81644B54AB7F969B88D65:3\r\n{SUFFIX}:{count}\r\nFFFFA45C4D1DEF81644B54AB7F969B88D65:0\r\n"


@pytest.fixture
def check_enabled(monkeypatch):
    monkeypatch.setattr(settings, "BREACHED_PASSWORD_CHECK_ENABLED", True)
    monkeypatch.setattr(settings, "BREACHED_PASSWORD_BLOCK", True)
    monkeypatch.setattr(settings, "BREACHED_PASSWORD_MIN_COUNT", 1)


@pytest.mark.unit
class TestParseBreachCount:
    def test_finds_suffix(self):
        assert breached_password.parse_breach_count(range_body(42), SUFFIX) == 42

    def test_match_is_case_insensitive(self):
        assert breached_password.parse_breach_count(f"{SUFFIX.lower()}:7\n", SUFFIX) == 7

    def test_missing_suffix(self):
        assert breached_password.parse_breach_count("ABCDEF:12\n", SUFFIX) == 0

    def test_malformed_count(self):
        assert breached_password.parse_breach_count(f"{SUFFIX}:lots\n", SUFFIX) == 0


@pytest.mark.unit
class TestBreachCheck:
    async def test_only_prefix_is_sent(self, check_enabled):
        with patch(
            "app.services.breached_password.fetch_hash_suffixes",
            new_callable=AsyncMock,
            return_value=range_body(5),
        ) as fetch:
            count = await breached_password.get_breach_count(PASSWORD)

        assert count == 5
        fetch.assert_awaited_once_with(PREFIX)

    async def test_breached_password_rejected(self, check_enabled):
        with patch(
            "app.services.breached_password.fetch_hash_suffixes",
            new_callable=AsyncMock,
            return_value=range_body(3),
        ):
            with pytest.raises(ServiceError) as exc_info:
                await breached_password.ensure_not_breached(PASSWORD)

        assert exc_info.value.code == "PASSWORD_BREACHED"
        assert exc_info.value.status_code == 400

    async def test_padding_entries_are_not_breaches(self, check_enabled):
        with patch(
            "app.services.breached_password.fetch_hash_suffixes",
            new_callable=AsyncMock,
            return_value=range_body(0),
        ):
            await breached_password.ensure_not_breached(PASSWORD)

    async def test_below_threshold_allowed(self, check_enabled, monkeypatch):
        monkeypatch.setattr(settings, "BREACHED_PASSWORD_MIN_COUNT", 10)
        with patch(
            "app.services.breached_password.fetch_hash_suffixes",
            new_callable=AsyncMock,
            return_value=range_body(9),
        ):
            await breached_password.ensure_not_breached(PASSWORD)

    async def test_warn_only_mode(self, check_enabled, monkeypatch):
        monkeypatch.setattr(settings, "BREACHED_PASSWORD_BLOCK", False)
        with patch(
            "app.services.breached_password.fetch_hash_suffixes",
            new_callable=AsyncMock,
            return_value=range_body(100),
        ):
            await breached_password.ensure_not_breached(PASSWORD)

    async def test_fails_open_when_api_unreachable(self, check_enabled):
        with (
            patch(
                "app.services.breached_password.fetch_hash_suffixes",
                new_callable=AsyncMock,
                side_effect=httpx.ConnectError("unreachable"),
            ),
            patch("app.services.breached_password.logger") as logger,
        ):
            assert await breached_password.get_breach_count(PASSWORD) is None
            await breached_password.ensure_not_breached(PASSWORD)

        assert logger.warning.call_args.args[0] == "breached_password_check_unavailable"

    async def test_disabled_skips_api(self, monkeypatch):
        monkeypatch.setattr(settings, "BREACHED_PASSWORD_CHECK_ENABLED", False)
        with patch(
            "app.services.breached_password.fetch_hash_suffixes", new_callable=AsyncMock
        ) as fetch:
            assert await breached_password.get_breach_count(PASSWORD) is None

        fetch.assert_not_awaited()


@pytest.mark.unit
class TestFetchHashSuffixes:
    async def test_requests_range_with_padding(self, monkeypatch):
        monkeypatch.setattr(settings, "BREACHED_PASSWORD_API_URL", "https://pwned.test/range/")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=range_body(2))

        real_client = httpx.AsyncClient
        transport = httpx.MockTransport(handler)
        with patch(
            "app.services.breached_password.httpx.AsyncClient",
            lambda **kwargs: real_client(transport=transport, **kwargs),
        ):
            body = await breached_password.fetch_hash_suffixes(PREFIX)

        assert body == range_body(2)
        assert str(seen[0].url) == f"https://pwned.test/range/{PREFIX}"
        assert seen[0].headers["Add-Padding"] == "true"

    async def test_server_error_raises_http_error(self):
        real_client = httpx.AsyncClient
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        with patch(
            "app.services.breached_password.httpx.AsyncClient",
            lambda **kwargs: real_client(transport=transport, **kwargs),
        ):
            with pytest.raises(httpx.HTTPStatusError):
                await breached_password.fetch_hash_suffixes(PREFIX)
