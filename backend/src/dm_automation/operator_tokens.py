from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

OPERATOR_ROLES = frozenset({"admin", "operator", "viewer"})


class OperatorTokenError(ValueError):
    """Raised when operator session tokens are invalid or expired."""


@dataclass(frozen=True)
class OperatorTokenPayload:
    operator_id: str
    role: str
    expires_at: datetime


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def create_operator_token(
    *,
    operator_id: str,
    role: str,
    ttl_minutes: int,
    now: datetime | None = None,
) -> OperatorTokenPayload:
    normalized_id = operator_id.strip()
    if not normalized_id:
        raise OperatorTokenError("operator_id is required")
    if role not in OPERATOR_ROLES:
        raise OperatorTokenError(f"unknown role: {role}")
    if ttl_minutes < 1:
        raise OperatorTokenError("ttl_minutes must be >= 1")
    issued_at = now or datetime.now(timezone.utc)
    return OperatorTokenPayload(
        operator_id=normalized_id,
        role=role,
        expires_at=issued_at + timedelta(minutes=ttl_minutes),
    )


def encode_operator_token(payload: OperatorTokenPayload, *, secret: str) -> str:
    if not secret:
        raise OperatorTokenError("operator token secret is empty")

    payload_json = json.dumps(
        {
            "sub": payload.operator_id,
            "role": payload.role,
            "exp": int(payload.expires_at.timestamp()),
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def decode_operator_token(token: str, *, secret: str, now: datetime | None = None) -> OperatorTokenPayload:
    if not token or "." not in token:
        raise OperatorTokenError("invalid token format")
    if not secret:
        raise OperatorTokenError("operator token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    try:
        expected = _sign(payload_b64, secret)
    except UnicodeEncodeError as exc:
        raise OperatorTokenError("invalid token format") from exc
    if not hmac.compare_digest(signature, expected):
        raise OperatorTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise OperatorTokenError("token payload decoding failed") from exc
    if not isinstance(payload_obj, dict):
        raise OperatorTokenError("token payload decoding failed")

    operator_id = str(payload_obj.get("sub", "")).strip()
    if not operator_id:
        raise OperatorTokenError("token subject missing")

    role = str(payload_obj.get("role", "")).strip()
    if role not in OPERATOR_ROLES:
        raise OperatorTokenError("token role invalid")

    try:
        exp = int(payload_obj["exp"])
    except (KeyError, TypeError, ValueError) as exc:
        raise OperatorTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise OperatorTokenError("token expired")

    return OperatorTokenPayload(operator_id=operator_id, role=role, expires_at=expires_at)
