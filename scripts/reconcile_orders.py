"""Trigger one checkout reconciliation pass and print the result JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for on-demand reconciliation."""

    parser = argparse.ArgumentParser(description="Run a checkout reconciliation pass.")
    parser.add_argument("--checkout-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--show-attention", action="store_true", help="Also list orders flagged for an operator")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    resp = httpx.post(f"{args.checkout_url}/internal/reconcile", headers=headers, timeout=60.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))

    if args.show_attention:
        resp = httpx.get(f"{args.checkout_url}/internal/orders/attention", headers=headers, timeout=10.0)
        resp.raise_for_status()
        print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
