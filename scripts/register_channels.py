#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dm_automation.operator_tokens import create_operator_token, encode_operator_token

ROOT_DIR = Path(__file__).resolve().parents[1]


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("DM_API_BASE_URL", "").strip() or "http://localhost:8000"
    prefix = os.getenv("DM_API_PREFIX", "/api/v1").rstrip("/")
    if candidate.endswith(f"{prefix}/dm"):
        return candidate
    return f"{candidate.rstrip('/')}{prefix}/dm"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
    token: str | None = None,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def _parse_channel(value: str) -> dict[str, str | None]:
    parts = [item.strip() for item in value.split(":", 2)]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise argparse.ArgumentTypeError("expected CHANNEL_ID:OWNER_ID[:DISPLAY_NAME]")
    return {
        "channel_id": parts[0],
        "owner_id": parts[1],
        "display_name": parts[2] if len(parts) == 3 and parts[2] else None,
    }


def _mint(operator_id: str, role: str, secret: str, ttl_minutes: int) -> dict[str, str]:
    payload = create_operator_token(operator_id=operator_id, role=role, ttl_minutes=ttl_minutes)
    return {
        "operator_id": payload.operator_id,
        "role": payload.role,
        "token": encode_operator_token(payload, secret=secret),
        "expires_at": payload.expires_at.isoformat().replace("+00:00", "Z"),
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Register channels with the DM automation API and mint operator tokens "
            "for their owners. Tokens are exported to a JSON file."
        )
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help="Backend base URL (e.g. http://localhost:8000) or the full /api/v1/dm prefix.",
    )
    parser.add_argument(
        "--channel",
        dest="channels",
        action="append",
        type=_parse_channel,
        default=[],
        help="CHANNEL_ID:OWNER_ID[:DISPLAY_NAME]; repeat for several channels.",
    )
    parser.add_argument(
        "--owner-role",
        choices=("operator", "viewer"),
        default="operator",
        help="Role written into the owner tokens (default: operator).",
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=int(os.getenv("OPERATOR_TOKEN_TTL_MINUTES", "480")),
        help="Token lifetime in minutes (default: OPERATOR_TOKEN_TTL_MINUTES or 480).",
    )
    parser.add_argument(
        "--output-path",
        type=Path,
        default=None,
        help="Where to write JSON export. Defaults to ./operator_tokens_<utc timestamp>.json.",
    )
    return parser.parse_args()


def main() -> int:
    _load_dotenv(ROOT_DIR / ".env")
    args = parse_args()

    if not args.channels:
        raise SystemExit("at least one --channel is required")
    if args.ttl_minutes < 1:
        raise SystemExit("--ttl-minutes must be >= 1")

    secret = os.getenv("OPERATOR_SESSION_SECRET", "").strip()
    if not secret:
        raise SystemExit("OPERATOR_SESSION_SECRET is required (set .env or environment)")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    admin_token = _mint("__registration__", "admin", secret, 15)["token"]

    registered: list[dict[str, Any]] = []
    for channel in args.channels:
        response = _request_json("POST", api_base_url, "channels", payload=channel, token=admin_token)
        registered.append(response)

    owners = sorted({str(item["owner_id"]) for item in registered})
    tokens = [_mint(owner_id, args.owner_role, secret, args.ttl_minutes) for owner_id in owners]

    if args.output_path is None:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        output_path = Path.cwd() / f"operator_tokens_{timestamp}.json"
    else:
        output_path = args.output_path.expanduser().resolve()

    payload = {
        "generated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "api_base_url": api_base_url,
        "channels": registered,
        "tokens": tokens,
    }
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    os.chmod(output_path, 0o600)

    print(f"Registered {len(registered)} channels, minted {len(tokens)} tokens: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
