# chat_client.py
"""
Command-line client for a running concierge API.

Usage (from project root):
    python chat_client.py "What's on my plate today?"
    python chat_client.py --archive
    python chat_client.py --search "trip to Lisbon"
    python chat_client.py --spend

This script:
  - Checks that the API is up via /health.
  - Sends one message to /chat, or queries the archive / spend endpoints.
  - Prints a short human-readable summary instead of raw JSON.
"""

import argparse
import json
import sys
from typing import Any, Optional

import requests

# Must match the FastAPI server address & port
DEFAULT_API_BASE = "http://127.0.0.1:8000"

# A turn may run many tool rounds; keep this generous
CHAT_TIMEOUT_SECONDS = 600


def health_check(api_base: str) -> None:
    url = f"{api_base.rstrip('/')}/health"
    resp = requests.get(url, timeout=5)
    if resp.status_code != 200:
        raise RuntimeError(f"/health returned status {resp.status_code}: {resp.text!r}")
    print(f"[health] OK. Response: {resp.json()}")


def _request(method: str, api_base: str, path: str, payload: Optional[dict] = None,
             timeout: float = 30) -> Any:
    url = f"{api_base.rstrip('/')}{path}"
    resp = requests.request(method, url, json=payload, timeout=timeout)
    try:
        data = resp.json()
    except ValueError as e:
        raise RuntimeError(f"Response from {url} is not valid JSON: {e}, raw text={resp.text!r}") from e

    if resp.status_code != 200:
        print(f"[error] {method} {path} -> {resp.status_code}")
        print(json.dumps(data, indent=2, ensure_ascii=False))
        raise RuntimeError("Server returned error status.")
    return data


def send_message(api_base: str, message: str, reply_to_id: Optional[str]) -> None:
    payload = {"message": message}
    if reply_to_id:
        payload["reply_to_id"] = reply_to_id
    data = _request("POST", api_base, "/chat", payload, timeout=CHAT_TIMEOUT_SECONDS)
    print("\n[reply]")
    print(f"  State:  {data.get('state')}")
    print(f"  Rounds: {data.get('rounds')}")
    print(f"  Cost:   ${data.get('cost_usd', 0.0):.6f}")
    if data.get("error"):
        print(f"  Error:  {data['error']}")
    print(f"\n{data.get('reply', '')}")


def print_archive(api_base: str) -> None:
    chunks = _request("GET", api_base, "/archive/chunks")
    if not chunks:
        print("[archive] empty")
        return
    for i, c in enumerate(chunks, start=1):
        print(f"[{i}] {c['id']} {c['kind']} {c['token_count']} tokens, "
              f"{c['message_count']} messages ({c['start']} .. {c['end']})")
        print(f"    {c['summary']}")


def search_archive(api_base: str, query: str) -> None:
    matches = _request("POST", api_base, "/archive/search", {"query": query}, timeout=120)
    if not matches:
        print("[search] no candidate chunks")
        return
    for m in matches:
        print(f"- {m['chunk_id']}: {m['relevance']}")


def print_spend(api_base: str) -> None:
    data = _request("GET", api_base, "/spend")
    print(f"[spend] today=${data['today_usd']:.4f} (limit {data['daily_limit_usd']}) "
          f"month=${data['month_usd']:.4f} (limit {data['monthly_limit_usd']})")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Client for the concierge API.")
    parser.add_argument("message", nargs="?", default=None, help="Message to send to /chat.")
    parser.add_argument("--api-base", default=DEFAULT_API_BASE,
                        help=f"Base URL for the API (default: {DEFAULT_API_BASE})")
    parser.add_argument("--reply-to", default=None, help="Id of the message being replied to.")
    parser.add_argument("--archive", action="store_true", help="List archived chunk summaries.")
    parser.add_argument("--search", default=None, help="Find archived chunks relevant to a query.")
    parser.add_argument("--spend", action="store_true", help="Show today's and this month's spend.")
    args = parser.parse_args(argv)

    try:
        health_check(args.api_base)
        if args.archive:
            print_archive(args.api_base)
        elif args.search:
            search_archive(args.api_base, args.search)
        elif args.spend:
            print_spend(args.api_base)
        elif args.message:
            send_message(args.api_base, args.message, args.reply_to)
        else:
            parser.print_help()
            return 2
    except (requests.RequestException, RuntimeError) as e:
        print(f"[error] {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
