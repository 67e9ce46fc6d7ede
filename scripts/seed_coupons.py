"""Load coupon definitions from a JSON file into the checkout database.

The file holds a list of objects with `code`, `discount_type`,
`discount_value` and optional `min_order_amount`, `max_discount_amount`,
`valid_until` (ISO-8601), `usage_limit`, `is_active`, `description`.
Existing codes are updated in place; `usage_count` is never touched.
"""

import argparse
import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from festpay.common.db import SessionLocal
from festpay.services.checkout.coupons import CouponRule, normalize_code
from festpay.services.checkout.models import Coupon


def load_rules(path: Path) -> list[CouponRule]:
    rows = json.loads(path.read_text(encoding="utf-8"))
    rules = []
    for row in rows:
        valid_until = row.get("valid_until")
        rules.append(
            CouponRule(
                code=normalize_code(row["code"]),
                discount_type=row["discount_type"].upper(),
                discount_value=Decimal(str(row["discount_value"])),
                min_order_amount=row.get("min_order_amount"),
                max_discount_amount=row.get("max_discount_amount"),
                valid_until=datetime.fromisoformat(valid_until) if valid_until else None,
                usage_limit=row.get("usage_limit"),
                is_active=row.get("is_active", True),
            )
        )
    return rules


def main() -> None:
    parser = argparse.ArgumentParser(description="Upsert coupons from a JSON file.")
    parser.add_argument("path", type=Path)
    args = parser.parse_args()

    descriptions = {
        normalize_code(row["code"]): row.get("description")
        for row in json.loads(args.path.read_text(encoding="utf-8"))
    }
    rules = load_rules(args.path)
    with SessionLocal() as db:
        for rule in rules:
            coupon = db.get(Coupon, rule.code)
            if coupon is None:
                coupon = Coupon(code=rule.code, usage_count=0)
                db.add(coupon)
            coupon.discount_type = rule.discount_type
            coupon.discount_value = rule.discount_value
            coupon.min_order_amount = rule.min_order_amount
            coupon.max_discount_amount = rule.max_discount_amount
            coupon.valid_until = rule.valid_until
            coupon.usage_limit = rule.usage_limit
            coupon.is_active = rule.is_active
            coupon.description = descriptions.get(rule.code)
        db.commit()
    print(f"seeded {len(rules)} coupons")


if __name__ == "__main__":
    main()
