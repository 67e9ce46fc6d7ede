"""Fire concurrent duplicate checkouts to exercise idempotency.

Each simulated customer submits the same payload (same idempotency key)
`--copies` times at once; every copy must come back with the same order ID.
"""

import argparse
import asyncio
import statistics
import time
from uuid import uuid4

import httpx


def build_payload(customer_idx: int) -> dict:
    return {
        "cart": [
            {"item_id": "evt-hackathon", "kind": "event", "title": "Hackathon", "unit_price": 50000, "quantity": 1},
            {"item_id": "combo-tech", "kind": "combo", "title": "Tech Combo", "unit_price": 120000, "quantity": 1},
        ],
        "customer_details": {
            "name": f"Load Customer {customer_idx}",
            "email": f"load{customer_idx}@example.com",
            "phone": f"9{customer_idx:09d}",
        },
        "idempotency_key": f"load-{uuid4()}",
    }


async def send_one(client: httpx.AsyncClient, base_url: str, payload: dict):
    """Send one checkout and return (status_code, order_id, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(f"{base_url}/orders", json=payload, headers={"x-correlation-id": str(uuid4())})
        latency = (time.perf_counter() - started) * 1000
        order_id = resp.json().get("order_id") if resp.status_code == 200 else None
        return resp.status_code, order_id, latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, None, latency


async def run(customers: int, copies: int, base_url: str) -> int:
    """Submit every customer's payload `copies` times concurrently and check the answers agree."""

    mismatches = 0
    codes = []
    lats = []
    async with httpx.AsyncClient(timeout=30.0) as client:
        for idx in range(customers):
            payload = build_payload(idx)
            results = await asyncio.gather(*(send_one(client, base_url, payload) for _ in range(copies)))
            codes.extend(code for code, _, _ in results)
            lats.extend(latency for _, _, latency in results)
            order_ids = {order_id for code, order_id, _ in results if code == 200}
            if len(order_ids) > 1:
                mismatches += 1
                print(f"duplicate orders for key={payload['idempotency_key']}: {sorted(order_ids)}")

    total = len(codes)
    success = sum(1 for c in codes if 200 <= c < 300)
    print(f"requests={total}")
    print(f"success={success}")
    print(f"errors={total - success}")
    print(f"duplicate_keys={mismatches}")
    if lats:
        print(f"avg_ms={statistics.mean(lats):.2f}")
        print(f"max_ms={max(lats):.2f}")
    return mismatches


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--customers", type=int, default=20)
    parser.add_argument("--copies", type=int, default=5)
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()
    raise SystemExit(1 if asyncio.run(run(args.customers, args.copies, args.base_url)) else 0)
