# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Platform fee policy."""

from protocol import PLATFORM_FEE_PERCENT


def split_price(price: int, fee_percent: int = PLATFORM_FEE_PERCENT) -> tuple[int, int]:
    """Split a price into (platform_fee, publisher_amount).

    Fee is floor(price * fee_percent / 100); the platform absorbs the
    rounding, so the two parts always sum to the price.
    """
    platform_fee = price * fee_percent // 100
    return platform_fee, price - platform_fee
