"""
helpers.py - Shared test helpers for marketplace tests

Plain functions (not fixtures) so that property tests, which cannot take
function-scoped fixtures, can build their own worlds the same way.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from marketplace import Category, Ledger, LogicalClock, Registry


T0 = datetime(2025, 1, 1)

ADMIN = "admin"
TREASURY = "treasury"
STARTING_BALANCE = Decimal("100000")


def make_world(
    wallets: Iterable[str] = ("alice", "bob", "carol"),
    balance: Decimal = STARTING_BALANCE,
    **registry_kwargs,
) -> Tuple[Ledger, LogicalClock, Registry]:
    """Fresh ledger, clock and registry with each wallet funded."""
    ledger = Ledger("test", verbose=False, test_mode=True)
    for wallet in wallets:
        ledger.mint(wallet, balance)
    clock = LogicalClock(T0)
    registry_kwargs.setdefault("verbose", False)
    registry = Registry(ledger, clock, admin=ADMIN, fee_recipient=TREASURY, **registry_kwargs)
    return ledger, clock, registry


def create_listing(
    registry: Registry,
    seller: str = "alice",
    price: Decimal = Decimal("1000"),
    category: Category = Category.ELECTRONICS,
    delivery_hours: int = 48,
    title: str = "Camera",
) -> int:
    """List an item with sensible defaults."""
    return registry.create_listing(
        seller, title, "Mirrorless body, barely used", "ipfs://camera",
        price, category, delivery_hours,
    )


def approve_purchase(registry: Registry, buyer: str, listing_id: int) -> Tuple[Decimal, Decimal]:
    """
    Authorize the price to the listing's escrow and the fee to the registry.

    Returns:
        (price, fee)
    """
    escrow = registry.get_escrow(listing_id)
    fee = registry.quote_fee(listing_id)
    registry.ledger.approve(buyer, escrow.address, escrow.price)
    registry.ledger.approve(buyer, registry.address, fee)
    return escrow.price, fee


def list_and_buy(
    registry: Registry,
    seller: str = "alice",
    buyer: str = "bob",
    price: Decimal = Decimal("1000"),
    category: Category = Category.ELECTRONICS,
    delivery_hours: int = 48,
) -> int:
    """Create a listing and buy it. Returns the listing id."""
    listing_id = create_listing(registry, seller, price, category, delivery_hours)
    approve_purchase(registry, buyer, listing_id)
    registry.buy(buyer, listing_id)
    return listing_id


def verify_conservation(ledger: Ledger, expected_circulating: Optional[Decimal] = None) -> None:
    """Assert that no operation created or destroyed tokens."""
    result = ledger.verify_double_entry(expected_circulating=expected_circulating)
    assert result['valid'], result['discrepancies']
