from __future__ import annotations

import pytest

from accumbot.domain.models import OrderSide
from accumbot.services.client_order_id_service import ClientOrderIdGenerator, is_engine_client_id


def test_ids_are_prefixed_by_side_and_env() -> None:
    generator = ClientOrderIdGenerator(env="testnet", now_ms_fn=lambda: 1_772_366_400_000)

    assert generator.next_id(OrderSide.SELL) == "ASELL_testnet_1772366400000"
    assert generator.next_id(OrderSide.BUY) == "ABUY_testnet_1772366400001"


def test_ids_increase_even_when_clock_goes_back() -> None:
    stamps = iter([2_000, 1_000, 1_500])
    generator = ClientOrderIdGenerator(env="live", now_ms_fn=lambda: next(stamps))

    ids = [generator.next_id(OrderSide.BUY) for _ in range(3)]

    assert ids == ["ABUY_live_2000", "ABUY_live_2001", "ABUY_live_2002"]


def test_overlong_id_is_rejected() -> None:
    generator = ClientOrderIdGenerator(env="x" * 30, now_ms_fn=lambda: 1_772_366_400_000)

    with pytest.raises(ValueError, match="too long"):
        generator.next_id(OrderSide.SELL)


@pytest.mark.parametrize(
    ("client_order_id", "env", "expected"),
    [
        ("ASELL_testnet_1772366400000", "testnet", True),
        ("ABUY_live_1", "live", True),
        ("ABUY_live_1", "testnet", False),
        ("ABUY_testnet_", "testnet", False),
        ("web_ABUY_testnet_1", "testnet", False),
        (None, "testnet", False),
    ],
)
def test_is_engine_client_id(client_order_id, env, expected) -> None:
    assert is_engine_client_id(client_order_id, env) is expected
