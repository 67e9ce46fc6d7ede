from datetime import datetime, timezone

from festpay.common.ids import generate_order_id, is_order_id


def test_order_id_format():
    order_id = generate_order_id(datetime(2026, 3, 1, 10, 0, 5, tzinfo=timezone.utc))

    assert order_id.startswith("ORD_20260301T100005_")
    assert is_order_id(order_id)
    assert len(order_id) <= 50


def test_order_ids_unique_within_same_second():
    now = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    ids = {generate_order_id(now) for _ in range(5000)}

    assert len(ids) == 5000


def test_is_order_id_rejects_other_shapes():
    assert not is_order_id("ORD_1700000000000_ab12cd")
    assert not is_order_id("")
