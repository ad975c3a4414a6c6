"""List or replay settlement events parked in the review queue."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for poison queue review."""

    parser = argparse.ArgumentParser(description="Inspect or replay poisoned settlement events.")
    parser.add_argument("--settlement-url", default="http://localhost:8003")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--external-id", default=None, help="Replay this event; omit to list the queue")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    if args.external_id:
        resp = httpx.post(
            f"{args.settlement_url}/ops/poison/{args.external_id}/replay",
            headers=headers,
            timeout=10.0,
        )
    else:
        resp = httpx.get(
            f"{args.settlement_url}/ops/poison",
            params={"limit": args.limit},
            headers=headers,
            timeout=10.0,
        )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2, default=str))


if __name__ == "__main__":
    main()
