"""
CLI utility to hand a bearer token to a running bridge in client token mode.

When the bridge runs with USE_CLIENT_TOKEN=true, some other party has to sign
the user in and deliver the resulting access token. This script does the
delivery over the bridge's HTTP route (POST /api/auth/token), using the
token's own "exp" claim as the expiry when it is a JWT.

Usage examples:

    # Push a token, expiry taken from the token's exp claim
    python -m scripts.push_token --token "$ACCESS_TOKEN"

    # Push to a bridge on another host
    python -m scripts.push_token --token "$ACCESS_TOKEN" --url http://bridge:8080

    # Override the expiry (ISO 8601)
    python -m scripts.push_token --token "$ACCESS_TOKEN" --expires-on 2026-10-19T18:00:00Z

    # Only show what the token carries, do not send it
    python -m scripts.push_token --token "$ACCESS_TOKEN" --dry-run
"""

import argparse
import sys
from datetime import datetime

import httpx

from graph_bridge.credentials import inspect_token


def build_payload(token: str, expires_on: datetime | None = None) -> dict:
    """
    Build the JSON body for POST /api/auth/token.

    Args:
        token: The raw bearer token
        expires_on: Explicit expiry; falls back to the token's exp claim,
                    and is omitted when neither is known (the bridge then
                    applies its default lifetime)
    """
    payload = {"accessToken": token}
    expiry = expires_on or inspect_token(token).expires_on
    if expiry is not None:
        payload["expiresOn"] = expiry.isoformat()
    return payload


def push_token(
    base_url: str,
    token: str,
    expires_on: datetime | None = None,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Response:
    with httpx.Client(base_url=base_url, timeout=30.0, transport=transport) as client:
        return client.post("/api/auth/token", json=build_payload(token, expires_on))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Send a bearer token to a running graph-mcp-bridge (client token mode).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  From an environment variable:
    %(prog)s --token "$ACCESS_TOKEN"

  Inspect only:
    %(prog)s --token "$ACCESS_TOKEN" --dry-run
        """,
    )
    parser.add_argument("--token", required=True, help="The bearer access token to deliver")
    parser.add_argument(
        "--url",
        default="http://localhost:8080",
        help="Base URL of the bridge (default: http://localhost:8080)",
    )
    parser.add_argument(
        "--expires-on",
        type=datetime.fromisoformat,
        default=None,
        help="Token expiry in ISO 8601 (default: the token's exp claim)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the token's claims without sending it",
    )

    args = parser.parse_args(argv)

    claims = inspect_token(args.token)
    expiry = args.expires_on or claims.expires_on
    print(f"Audience:   {claims.audience or 'unknown'}")
    print(f"Scopes:     {' '.join(claims.scopes) or 'unknown'}")
    print(f"Expires:    {expiry.isoformat() if expiry else 'unknown (bridge default applies)'}")

    if args.dry_run:
        return 0

    try:
        response = push_token(args.url, args.token, args.expires_on)
    except httpx.HTTPError as e:
        print(f"Could not reach the bridge at {args.url}: {e}", file=sys.stderr)
        return 1

    if response.status_code != 200:
        print(f"Bridge rejected the token ({response.status_code}): {response.text}", file=sys.stderr)
        return 1

    print()
    print(f"Token accepted: {response.json().get('tokenStatus')}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
