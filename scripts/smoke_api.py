"""Drive a running Prophet API through initialize -> card -> bet -> reads.

Usage: python scripts/smoke_api.py [BASE_URL]

The service wallet signs everything, so the bet is placed with the service
wallet's own public key (read from /status).
"""
import json
import sys
import time
from typing import Callable, List, Tuple

import requests

BACKEND_URL = "http://127.0.0.1:3000"
API = "/api/betting"
TIMEOUT = 60


def call(method: str, base: str, path: str, **kwargs) -> dict:
    resp = requests.request(method, f"{base}{API}{path}", timeout=TIMEOUT, **kwargs)
    body = resp.json()
    print(f"{method} {path} -> {resp.status_code}")
    print(json.dumps(body, indent=2)[:2000])
    return {"status": resp.status_code, "body": body}


def expect_success(result: dict) -> dict:
    if result["status"] != 200 or not result["body"].get("success"):
        raise RuntimeError(result["body"].get("message", "request failed"))
    return result["body"]["data"]


def main():
    base = sys.argv[1] if len(sys.argv) > 1 else BACKEND_URL
    card_id = int(time.time() * 1000)
    state = {}

    def health():
        expect_success(call("GET", base, "/health"))

    def status():
        state["wallet"] = expect_success(call("GET", base, "/status"))["wallet"]["address"]

    def initialize():
        result = call("POST", base, "/platform/initialize", json={"platformFeeRate": 500, "creatorRewardRate": 300})
        # Already initialized is fine on a shared devnet deployment.
        if result["status"] != 200 and "already initialized" not in result["body"].get("message", ""):
            raise RuntimeError(result["body"].get("message"))

    def create_card():
        payload = {
            "cardId": card_id,
            "assetSymbol": "BTC/USD",
            "currentPrice": 50_000_000_000,
            "deadline": int(time.time()) + 3600,
            "minBetAmount": 10_000_000,
            "description": "BTC above 50k in an hour?",
        }
        expect_success(call("POST", base, "/prediction-card", json=payload))

    def get_card():
        card = expect_success(call("GET", base, f"/prediction-card/{card_id}"))
        if card["id"] != str(card_id):
            raise RuntimeError(f"unexpected card id {card['id']}")

    def place_bet():
        payload = {
            "cardId": card_id,
            "predictedPrice": 51_000_000_000,
            "betAmount": 20_000_000,
            "userPublicKey": state["wallet"],
        }
        expect_success(call("POST", base, "/bet", json=payload))

    def get_bet():
        expect_success(call("GET", base, f"/bet/{card_id}/{state['wallet']}"))

    def listings():
        expect_success(call("GET", base, "/cards", params={"limit": 5, "sortBy": "totalPool"}))
        expect_success(call("GET", base, "/cards/active"))
        expect_success(call("GET", base, "/cards/search", params={"q": "BTC"}))
        expect_success(call("GET", base, f"/cards/range/{card_id - 5}/{card_id + 5}"))
        expect_success(call("GET", base, "/cards/stats"))

    def missing_card():
        result = call("GET", base, "/prediction-card/999999")
        if result["status"] == 200 or result["body"].get("success"):
            raise RuntimeError("expected a failure for a card that does not exist")

    steps: List[Tuple[str, Callable[[], None]]] = [
        ("health", health),
        ("status", status),
        ("initialize platform", initialize),
        ("create card", create_card),
        ("get card", get_card),
        ("place bet", place_bet),
        ("get bet", get_bet),
        ("listings", listings),
        ("missing card", missing_card),
    ]
    failed = 0
    for name, step in steps:
        print(f"\n== {name}")
        try:
            step()
            print(f"ok: {name}")
        except (RuntimeError, requests.RequestException, KeyError, ValueError) as exc:
            failed += 1
            print(f"FAILED: {name}: {exc}")
    print(f"\n{len(steps) - failed}/{len(steps)} steps passed")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
