#!/usr/bin/env python3
"""
Dev helper: send a test email-capture request to the local backend.

Builds a POST /email-capture body the way the landing-page form does and
prints the JSON response. Use --repeat to exercise the dedup path (the second
request reports isNew=false) or the rate limiter (the 11th request in a minute
is rejected with 429).

Usage
-----
# Basic - capture test@highleveragehumans.com against localhost:8000
python scripts/send_test_capture.py

# Custom address, source and campaign
python scripts/send_test_capture.py --email you@gmail.com --source footer --campaign launch

# Send the same request 11 times to see the rate limit kick in
python scripts/send_test_capture.py --repeat 11

# Target a deployed backend
python scripts/send_test_capture.py --url https://api.highleveragehumans.com
"""

import argparse
import json
import sys
import textwrap

import httpx


def _build_payload(email: str, source: str, campaign: str | None) -> dict:
    payload = {
        "email": email,
        "source": source,
        "metadata": {"formType": "email-capture", "sentBy": "send_test_capture.py"},
    }
    if campaign:
        payload["campaign"] = campaign
    return payload


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if response.is_success else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    if "Retry-After" in response.headers:
        print(f"Retry-After: {response.headers['Retry-After']}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="send_test_capture.py",
        description="Send a test email-capture request to the backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_capture.py
              python scripts/send_test_capture.py --email you@gmail.com
              python scripts/send_test_capture.py --repeat 11
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--email",
        default="test@highleveragehumans.com",
        help="Email address to capture (default: test@highleveragehumans.com)",
    )
    parser.add_argument("--source", default="website", help='Lead source (default: "website")')
    parser.add_argument("--campaign", default=None, help="Optional campaign label")
    parser.add_argument(
        "--repeat",
        type=int,
        default=1,
        metavar="N",
        help="Send the request N times (default: 1)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the payload JSON without sending it.",
    )
    args = parser.parse_args()

    payload = _build_payload(args.email, args.source, args.campaign)
    endpoint = f"{args.url.rstrip('/')}/email-capture"

    print(f"Endpoint : {endpoint}")
    print(f"Email    : {args.email}")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        return 0

    exit_code = 0
    with httpx.Client(timeout=30) as client:
        for _ in range(max(1, args.repeat)):
            try:
                response = client.post(endpoint, json=payload)
            except httpx.ConnectError:
                print(
                    f"\nERROR: Could not connect to {endpoint}\n"
                    "Is the backend running? Start it with:\n"
                    "  cd backend && uvicorn app.main:app --reload",
                    file=sys.stderr,
                )
                return 1
            _print_response(response)
            if not response.is_success:
                exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
