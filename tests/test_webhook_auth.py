"""Tests for billing webhook signature validation."""

import pytest

from kwcoord.core.config import WebhookSettings
from kwcoord.core.errors import ConfigurationAppError, ValidationAppError
from kwcoord.core.webhook_auth import compute_signature, validate_signature

SECRET = "whsec_unit_0123456789abcdef0123456789abcdef"
BODY = b'{"id":"evt_1","type":"invoice.paid","data":{}}'
NOW = 1_700_000_000


@pytest.fixture
def webhook_settings() -> WebhookSettings:
    return WebhookSettings(secret=SECRET, tolerance_seconds=300)


def _header(timestamp: int = NOW, secret: str = SECRET, body: bytes = BODY) -> str:
    return f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"


def test_valid_signature_passes(webhook_settings) -> None:
    validate_signature(BODY, _header(), webhook_settings, now=NOW + 10)


def test_any_matching_signature_passes_during_rotation(webhook_settings) -> None:
    old = compute_signature("whsec_old_secret_value_000000000000000000", NOW, BODY)
    header = f"t={NOW},v1={old},v1={compute_signature(SECRET, NOW, BODY)}"

    validate_signature(BODY, header, webhook_settings, now=NOW)


def test_tampered_body_is_rejected(webhook_settings) -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        validate_signature(BODY.replace(b"evt_1", b"evt_2"), _header(), webhook_settings, now=NOW)
    assert exc_info.value.code == "invalid_signature"


@pytest.mark.parametrize("offset", [301, -301])
def test_timestamp_outside_tolerance_is_rejected(webhook_settings, offset: int) -> None:
    with pytest.raises(ValidationAppError):
        validate_signature(BODY, _header(), webhook_settings, now=NOW + offset)


@pytest.mark.parametrize("header", ["garbage", "t=abc,v1=deadbeef", f"t={NOW}", "v1=deadbeef"])
def test_malformed_header_is_rejected(webhook_settings, header: str) -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        validate_signature(BODY, header, webhook_settings, now=NOW)
    assert exc_info.value.code == "invalid_signature"


@pytest.mark.parametrize("header", [None, ""])
def test_missing_header_is_rejected(webhook_settings, header) -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        validate_signature(BODY, header, webhook_settings, now=NOW)
    assert exc_info.value.code == "missing_signature"


def test_unconfigured_secret_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationAppError) as exc_info:
        validate_signature(BODY, _header(), WebhookSettings(secret=None), now=NOW)
    assert exc_info.value.code == "webhook_secret_missing"
