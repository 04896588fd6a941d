from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dm_automation.operator_tokens import (
    OperatorTokenError,
    create_operator_token,
    decode_operator_token,
    encode_operator_token,
)


def test_operator_token_round_trip() -> None:
    now = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    payload = create_operator_token(operator_id="owner-001", role="operator", ttl_minutes=60, now=now)
    token = encode_operator_token(payload, secret="secret-123")

    decoded = decode_operator_token(token, secret="secret-123", now=now + timedelta(minutes=30))

    assert decoded.operator_id == "owner-001"
    assert decoded.role == "operator"
    assert decoded.expires_at == now + timedelta(minutes=60)


def test_operator_token_expired() -> None:
    now = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    payload = create_operator_token(operator_id="owner-001", role="viewer", ttl_minutes=1, now=now)
    token = encode_operator_token(payload, secret="secret-123")

    with pytest.raises(OperatorTokenError, match="token expired"):
        decode_operator_token(token, secret="secret-123", now=now + timedelta(minutes=2))


def test_operator_token_signature_mismatch() -> None:
    now = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    payload = create_operator_token(operator_id="owner-001", role="admin", ttl_minutes=60, now=now)
    token = encode_operator_token(payload, secret="secret-123")

    with pytest.raises(OperatorTokenError, match="token signature mismatch"):
        decode_operator_token(token, secret="wrong-secret", now=now)


def test_operator_token_invalid_format() -> None:
    with pytest.raises(OperatorTokenError, match="invalid token format"):
        decode_operator_token("bad-token", secret="secret-123")


def test_operator_token_rejects_unknown_role() -> None:
    with pytest.raises(OperatorTokenError, match="unknown role"):
        create_operator_token(operator_id="owner-001", role="superuser", ttl_minutes=5)


def test_operator_token_requires_operator_id() -> None:
    with pytest.raises(OperatorTokenError, match="operator_id is required"):
        create_operator_token(operator_id="  ", role="operator", ttl_minutes=5)
