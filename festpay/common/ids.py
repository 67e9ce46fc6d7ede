"""Order identifier generation.

IDs look like `ORD_20261019T153012_k3x9q2mzp0ab7c1d`: a UTC timestamp for
operational sorting plus 16 random base36 characters (~82 bits from
`secrets`). Only the random part is relied on for uniqueness. The alphabet is
URL/gateway safe and stays within the gateway's 50 character order ID limit.
"""

import re
import secrets
import string
from datetime import datetime, timezone


ORDER_ID_PREFIX = "ORD"
RANDOM_ALPHABET = string.digits + string.ascii_lowercase
RANDOM_LENGTH = 16

ORDER_ID_PATTERN = re.compile(r"^ORD_\d{8}T\d{6}_[0-9a-z]{16}$")


def generate_order_id(now: datetime | None = None) -> str:
    """Return a new, customer-safe, collision-resistant order ID."""

    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(RANDOM_ALPHABET) for _ in range(RANDOM_LENGTH))
    return f"{ORDER_ID_PREFIX}_{now.strftime('%Y%m%dT%H%M%S')}_{suffix}"


def is_order_id(value: str) -> bool:
    return bool(ORDER_ID_PATTERN.match(value))
