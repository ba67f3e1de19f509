"""Tests for TOTP generation and verification."""

from datetime import UTC, datetime, timedelta

import pyotp
import pytest

from app.services import totp

AT = datetime(2026, 1, 15, 12, 0, 0)


def code_at(secret: str, when: datetime) -> str:
    return pyotp.TOTP(secret).at(when.replace(tzinfo=UTC))


@pytest.mark.unit
class TestTotp:
    def test_secret_is_base32(self):
        secret = totp.generate_secret()
        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_provisioning_uri(self):
        uri = totp.provisioning_uri("JBSWY3DPEHPK3PXP", "alice@example.com")
        assert uri.startswith("otpauth://totp/")
        assert "secret=JBSWY3DPEHPK3PXP" in uri
        assert "issuer=" in uri

    def test_current_code_verifies(self):
        secret = totp.generate_secret()
        assert totp.verify_code(secret, code_at(secret, AT), AT)

    @pytest.mark.parametrize("offset", [-30, 30])
    def test_adjacent_step_tolerated(self, offset):
        secret = totp.generate_secret()
        assert totp.verify_code(secret, code_at(secret, AT + timedelta(seconds=offset)), AT)

    @pytest.mark.parametrize("offset", [-90, 90])
    def test_distant_step_rejected(self, offset):
        secret = totp.generate_secret()
        assert not totp.verify_code(secret, code_at(secret, AT + timedelta(seconds=offset)), AT)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456", "abcdef"])
    def test_malformed_codes_rejected(self, code):
        assert not totp.verify_code(totp.generate_secret(), code, AT)

    def test_spaces_are_ignored(self):
        secret = totp.generate_secret()
        code = code_at(secret, AT)
        assert totp.verify_code(secret, f"{code[:3]} {code[3:]}", AT)
