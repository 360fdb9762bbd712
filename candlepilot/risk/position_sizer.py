"""Position sizing — pure math, no I/O.

Converts a quote-currency trade amount into a base-asset quantity.
"""


def calculate_quantity(trade_amount: float, price: float) -> float:
    """Calculate position size in base units.

    Formula::

        quantity = trade_amount / price

    Args:
        trade_amount: Notional to deploy (e.g. 1_000.0 USDT).
        price: Execution price.

    Returns:
        Quantity in base units.  ``0.0`` when *price* or *trade_amount*
        is not positive, so callers never divide by zero.
    """
    if price <= 0 or trade_amount <= 0:
        return 0.0
    return trade_amount / price
