"""Trigger a reconciliation window and print the resulting runs."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for on-demand reconciliation."""

    parser = argparse.ArgumentParser(description="Reconcile one window against the payment provider.")
    parser.add_argument("--reconciliation-url", default="http://localhost:8004")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--window-start", default=None, help="ISO-8601; defaults to previous aligned window")
    parser.add_argument("--window-end", default=None, help="ISO-8601; defaults to previous aligned window")
    args = parser.parse_args()

    body = {"window_start": args.window_start, "window_end": args.window_end}
    resp = httpx.post(
        f"{args.reconciliation_url}/ops/reconciliation/run",
        json=body,
        headers={"x-api-key": args.api_key},
        timeout=60.0,
    )
    resp.raise_for_status()
    runs = resp.json()
    print(json.dumps(runs, indent=2, default=str))
    drifted = [run for run in runs if run["status"] in ("adjusted", "unresolved", "failed")]
    raise SystemExit(1 if drifted else 0)


if __name__ == "__main__":
    main()
