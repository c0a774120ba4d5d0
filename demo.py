#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Escrow Marketplace Step by Step

This is a pedagogical demonstration of how the marketplace works.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Foundation      - Token ledger, clock, registry
  4-6:   Happy Path      - Listing, authorization, purchase, delivery
  7-8:   Protection      - Timeout refund, administrator cancellation
  9-10:  Safety          - Atomic purchases, conservation proof
  11:    Enumeration     - Bounded pages and filtered scans

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from marketplace import (
    # Components
    Ledger, LogicalClock, Registry,
    # Types
    Category, EscrowState,
    # Errors
    MarketplaceError, DeadlineNotReachedError,
    # Constants
    SYSTEM_WALLET,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    # Timing
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    # Initial funding
    alice_initial: Decimal = Decimal("5000.00")
    bob_initial: Decimal = Decimal("30000.00")
    carol_initial: Decimal = Decimal("1000.00")

    # Listings
    camera_price: Decimal = Decimal("1000.00")
    watch_price: Decimal = Decimal("20000.00")
    delivery_hours: int = 48

    # Fees
    platform_fee_bps: int = 250
    premium_fee_bps: int = 500

    # Enumeration step
    page_size: int = 3
    bulk_listings: int = 8


CONFIG = DemoConfig()

# Global state for interactive mode
QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def show_balances(ledger: Ledger, *wallets: str):
    for wallet in wallets:
        print(f"  {wallet:<12} {ledger.balance_of(wallet):>12}")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_ledger():
    """Create the token ledger and fund the participants."""
    step_header(1, "The Token Ledger",
        "All value lives in a ledger. Tokens enter only through the system wallet.")

    print("""
    The marketplace never holds money itself. It moves tokens on a ledger
    through two primitives:

    1. transfer(sender, to, amount)                - move your own tokens
    2. transfer_from(spender, owner, to, amount)   - move tokens someone authorized

    Let's create a ledger and issue tokens to Alice, Bob and Carol.
    """)

    wait_for_enter()

    print('>>> ledger = Ledger("tutorial", verbose=True)')
    ledger = Ledger("tutorial", verbose=True)
    print('>>> ledger.mint("alice", ...), ledger.mint("bob", ...), ledger.mint("carol", ...)')
    ledger.mint("alice", CONFIG.alice_initial)
    ledger.mint("bob", CONFIG.bob_initial)
    ledger.mint("carol", CONFIG.carol_initial)

    section_header("Balances")
    show_balances(ledger, "alice", "bob", "carol", SYSTEM_WALLET)

    section_header("Key Insight")
    print("""
    The system wallet is negative by exactly the amount issued.
    Sum over ALL identities = 0, always. No marketplace operation changes that.
    """)
    return ledger


def step_02_clock():
    """Create the logical clock."""
    step_header(2, "Logical Time",
        "Deadlines are measured against a clock the environment owns.")

    print(f">>> clock = LogicalClock({CONFIG.start_time!r})")
    clock = LogicalClock(CONFIG.start_time)
    print(f"Current time: {clock.current_time}")

    print("""
    Time only moves forward: clock.advance_to() refuses to go backwards.
    Delivery deadlines and refund eligibility are computed from this clock.
    """)
    return clock


def step_03_registry(ledger: Ledger, clock: LogicalClock):
    """Create the registry."""
    step_header(3, "The Registry",
        "One registry creates every listing, owns every escrow and collects fees.")

    print('>>> registry = Registry(ledger, clock, admin="admin", fee_recipient="treasury")')
    registry = Registry(
        ledger, clock,
        admin="admin",
        fee_recipient="treasury",
        platform_fee_bps=CONFIG.platform_fee_bps,
        premium_fee_bps=CONFIG.premium_fee_bps,
    )

    section_header("Fee Schedule")
    schedule = registry.fee_schedule
    print(f"Platform fee:    {schedule.platform_fee_bps} bps")
    print(f"High-value fee:  +{schedule.high_value_fee_bps} bps (price >= 10,000)")
    print(f"Premium fee:     +{schedule.premium_fee_bps} bps (premium category)")
    return registry


# ============================================================================
# PHASE 2: HAPPY PATH (Steps 4-6)
# ============================================================================

def step_04_create_listing(registry: Registry):
    """Alice lists a camera."""
    step_header(4, "Creating a Listing",
        "A listing is immutable terms plus its own escrow, starting in CREATED.")

    listing_id = registry.create_listing(
        "alice", "Camera", "Mirrorless body, barely used", "ipfs://camera",
        CONFIG.camera_price, Category.ELECTRONICS, CONFIG.delivery_hours,
    )
    info = registry.get_listing(listing_id)

    section_header("Listing")
    print(f"Id:             {info.listing_id}")
    print(f"Escrow address: {info.escrow_address}")
    print(f"State:          {info.state.value}")
    print(f"High value:     {info.is_high_value}")
    return listing_id


def step_05_buy(registry: Registry, listing_id: int):
    """Bob authorizes and buys."""
    step_header(5, "Buying",
        "The price moves into escrow custody and the fee to the treasury, together.")

    escrow = registry.get_escrow(listing_id)
    fee = registry.quote_fee(listing_id)
    print(f"""
    Before buying, Bob authorizes two amounts:
      - the price ({escrow.price}) to the escrow address {escrow.address}
      - the fee   ({fee}) to the registry address {registry.address}
    """)

    wait_for_enter()

    registry.ledger.approve("bob", escrow.address, escrow.price)
    registry.ledger.approve("bob", registry.address, fee)
    registry.buy("bob", listing_id)

    section_header("After Purchase")
    show_balances(registry.ledger, "bob", escrow.address, "treasury")
    print(f"\nDelivery deadline: {escrow.status.delivery_deadline}")
    print(f"Time remaining:    {escrow.time_remaining()}")


def step_06_deliver(registry: Registry, listing_id: int):
    """Bob confirms delivery."""
    step_header(6, "Confirming Delivery",
        "Only the buyer can release funds to the seller.")

    try:
        registry.confirm_delivery("alice", listing_id)
    except MarketplaceError as e:
        print(f"Alice tries to confirm her own sale: {type(e).__name__}: {e}")

    registry.confirm_delivery("bob", listing_id)
    section_header("After Delivery")
    show_balances(registry.ledger, "alice", registry.get_escrow(listing_id).address)


# ============================================================================
# PHASE 3: PROTECTION (Steps 7-8)
# ============================================================================

def step_07_timeout_refund(registry: Registry, clock: LogicalClock):
    """A seller who never ships: the buyer reclaims funds after the deadline."""
    step_header(7, "Timeout Refund",
        "After the delivery deadline passes, the buyer can take the price back.")

    listing_id = registry.create_listing(
        "alice", "Headphones", "Noise cancelling", "ipfs://headphones",
        Decimal("300"), Category.ELECTRONICS, 24,
    )
    escrow = registry.get_escrow(listing_id)
    registry.ledger.approve("bob", escrow.address, escrow.price)
    registry.ledger.approve("bob", registry.address, registry.quote_fee(listing_id))
    registry.buy("bob", listing_id)

    clock.advance(timedelta(hours=24))
    try:
        escrow.request_refund("bob")
    except DeadlineNotReachedError as e:
        print(f"Exactly at the deadline: {e}")

    clock.advance(timedelta(seconds=1))
    escrow.request_refund("bob")
    print(f"One second later: {escrow.state.value} ({escrow.status.cancel_reason})")


def step_08_emergency_cancel(registry: Registry):
    """Administrator resolves a dispute on a premium, high-value listing."""
    step_header(8, "Emergency Cancellation",
        "The administrator can refund a sold listing, even while the registry is paused.")

    listing_id = registry.create_listing(
        "alice", "Vintage watch", "1960s automatic", "ipfs://watch",
        CONFIG.watch_price, Category.PREMIUM, 72,
    )
    escrow = registry.get_escrow(listing_id)
    fee = registry.quote_fee(listing_id)
    print(f"Premium high-value fee on {escrow.price}: {fee}")
    registry.ledger.approve("bob", escrow.address, escrow.price)
    registry.ledger.approve("bob", registry.address, fee)
    registry.buy("bob", listing_id)

    registry.pause("admin")
    registry.cancel("admin", listing_id, "Authenticity dispute")
    registry.unpause("admin")
    print(f"State: {escrow.state.value}, reason: {escrow.status.cancel_reason}")


# ============================================================================
# PHASE 4: SAFETY (Steps 9-10)
# ============================================================================

def step_09_atomic_purchase(registry: Registry):
    """Carol can afford the price but not the fee."""
    step_header(9, "Atomic Purchase",
        "If the fee cannot be collected, the price capture is undone.")

    listing_id = registry.create_listing(
        "alice", "Lamp", "Brass desk lamp", "ipfs://lamp",
        CONFIG.carol_initial, Category.HOME, 48,
    )
    escrow = registry.get_escrow(listing_id)
    registry.ledger.approve("carol", escrow.address, escrow.price)
    registry.ledger.approve("carol", registry.address, registry.quote_fee(listing_id))

    try:
        registry.buy("carol", listing_id)
    except MarketplaceError as e:
        print(f"Purchase failed: {type(e).__name__}: {e}")

    print(f"Carol balance:  {registry.ledger.balance_of('carol')}")
    print(f"Escrow balance: {registry.ledger.balance_of(escrow.address)}")
    print(f"Listing state:  {escrow.state.value}")


def step_10_conservation(registry: Registry):
    """Prove no tokens were created or destroyed."""
    step_header(10, "Conservation Proof",
        "Every operation redistributes; none creates or destroys.")

    issued = CONFIG.alice_initial + CONFIG.bob_initial + CONFIG.carol_initial
    result = registry.ledger.verify_double_entry(expected_circulating=issued)
    print(f"Total supply (must be 0): {result['total_supply']}")
    print(f"Circulating:              {result['circulating']}")
    print(f"Valid:                    {result['valid']}")

    stats = registry.statistics()
    section_header("Registry Statistics")
    print(f"Listings: {stats.total_listings}, sales: {stats.total_sales}")
    print(f"Volume:   {stats.total_volume}, fees: {stats.total_fees_collected}")
    for state in EscrowState:
        print(f"  {state.value:<10} {stats.count(state)}")


# ============================================================================
# PHASE 5: ENUMERATION (Step 11)
# ============================================================================

def step_11_enumeration(registry: Registry):
    """Page through listings without ever loading them all."""
    step_header(11, "Bounded Enumeration",
        "Listings are read in fixed-size pages; filters scan with a cursor.")

    verbose = registry.verbose
    registry.verbose = False
    for i in range(CONFIG.bulk_listings):
        registry.create_listing(
            "carol", f"Book #{i}", "", "", Decimal("15"), Category.BOOKS, 120,
        )
    registry.verbose = verbose

    offset = 0
    while offset is not None:
        page = registry.list_page(CONFIG.page_size, offset)
        print(f"offset={page.offset:<3} ids={page.listing_ids}")
        offset = page.next_offset

    books = registry.listings_by_category(Category.BOOKS, limit=CONFIG.page_size)
    print(f"\nFirst {CONFIG.page_size} books: {books.listing_ids}, resume at {books.next_offset}")


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       ESCROW MARKETPLACE - INTERACTIVE TUTORIAL")
    print("=" * 70)
    print("""
    Welcome! This tutorial walks through a custodial escrow marketplace.

    PHASES:
      1-3:   Foundation   - Ledger, clock, registry
      4-6:   Happy Path   - List, buy, deliver
      7-8:   Protection   - Timeout refund, emergency cancel
      9-10:  Safety       - Atomic purchase, conservation
      11:    Enumeration  - Pages and filters
    """)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    ledger = step_01_ledger()
    wait_for_enter()

    clock = step_02_clock()
    wait_for_enter()

    registry = step_03_registry(ledger, clock)
    wait_for_enter()

    listing_id = step_04_create_listing(registry)
    wait_for_enter()

    step_05_buy(registry, listing_id)
    wait_for_enter()

    step_06_deliver(registry, listing_id)
    wait_for_enter()

    step_07_timeout_refund(registry, clock)
    wait_for_enter()

    step_08_emergency_cancel(registry)
    wait_for_enter()

    step_09_atomic_purchase(registry)
    wait_for_enter()

    step_10_conservation(registry)
    wait_for_enter()

    step_11_enumeration(registry)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See marketplace/registry.py and marketplace/escrow.py
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
