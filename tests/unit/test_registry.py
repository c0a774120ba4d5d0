"""
test_registry.py - Unit tests for the listing Registry

Tests:
- create_listing: validation bounds, sequential ids, high-value flag
- buy: fee collection, authorization checks, events, statistics
- confirm_delivery, cancel, delist through the registry
- Administration: pause, fee rates, fee recipient, admin hand-over, withdrawal
- Queries and bounded enumeration
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from marketplace import (
    Ledger, Registry, Category, EscrowState, EventType, MAX_PAGE_SIZE,
    ValidationError, UnauthorizedError, InvalidStateError, NotFoundError,
    PausedError, InsufficientAuthorizationError, InsufficientFundsError,
    SelfPurchaseError, LedgerTransferError,
)

from tests.helpers import (
    ADMIN, TREASURY, create_listing, approve_purchase, list_and_buy, verify_conservation,
)


class _PauseOnAllowanceLedger(Ledger):
    """Pauses the attached registry the first time an allowance is read."""

    registry = None

    def allowance(self, owner, spender):
        if self.registry is not None and not self.registry.paused:
            self.registry.pause(ADMIN)
        return super().allowance(owner, spender)


def _create(registry, **overrides):
    args = dict(
        caller="alice",
        title="Camera",
        description="Mirrorless body",
        media_ref="ipfs://camera",
        price=Decimal("1000"),
        category=Category.ELECTRONICS,
        delivery_hours=48,
    )
    args.update(overrides)
    return registry.create_listing(**args)


# ============================================================================
# create_listing
# ============================================================================

class TestCreateListing:

    def test_ids_are_sequential_from_one(self, registry):
        assert [create_listing(registry) for _ in range(3)] == [1, 2, 3]
        assert registry.listing_count == 3

    def test_listing_starts_created(self, registry, clock):
        listing_id = create_listing(registry)
        info = registry.get_listing(listing_id)
        assert info.state == EscrowState.CREATED
        assert info.seller == "alice"
        assert info.buyer is None
        assert info.created_at == clock.current_time

    def test_high_value_flag_at_threshold(self, registry):
        below = _create(registry, price=Decimal("9999.99"))
        at = _create(registry, price=Decimal("10000"))
        assert not registry.get_listing(below).is_high_value
        assert registry.get_listing(at).is_high_value

    def test_category_accepts_string(self, registry):
        listing_id = _create(registry, category="books")
        assert registry.get_listing(listing_id).category == Category.BOOKS

    def test_emits_listing_created(self, registry):
        listing_id = create_listing(registry)
        event = registry.events.last()
        assert event.event_type == EventType.LISTING_CREATED
        assert event.listing_id == listing_id
        assert event.get("escrow") == "escrow:1"
        assert event.get("seller") == "alice"

    @pytest.mark.parametrize("overrides", [
        {"title": ""},
        {"title": "   "},
        {"title": "x" * 101},
        {"description": "x" * 1001},
        {"media_ref": "x" * 257},
        {"price": Decimal("0")},
        {"price": Decimal("-1")},
        {"price": Decimal("1000000000.01")},
        {"price": Decimal("1.001")},
        {"category": "spaceships"},
        {"delivery_hours": 0},
        {"delivery_hours": 721},
        {"delivery_hours": 1.5},
        {"caller": ""},
    ])
    def test_invalid_input_rejected(self, registry, overrides):
        with pytest.raises(ValidationError):
            _create(registry, **overrides)
        assert registry.listing_count == 0
        assert len(registry.events) == 0

    @pytest.mark.parametrize("overrides", [
        {"title": "x" * 100},
        {"description": ""},
        {"description": "x" * 1000},
        {"media_ref": "x" * 256},
        {"price": Decimal("1000000000")},
        {"price": Decimal("0.01")},
        {"delivery_hours": 1},
        {"delivery_hours": 720},
    ])
    def test_boundaries_accepted(self, registry, overrides):
        assert _create(registry, **overrides) == 1

    def test_paused_registry_rejects(self, registry):
        registry.pause(ADMIN)
        with pytest.raises(PausedError):
            create_listing(registry)


# ============================================================================
# buy
# ============================================================================

class TestBuy:

    def test_buy_moves_price_and_fee(self, listed, ledger):
        registry, listing_id = listed
        approve_purchase(registry, "bob", listing_id)
        fee = registry.buy("bob", listing_id)

        assert fee == Decimal("25")
        assert ledger.balance_of("bob") == Decimal("100000") - Decimal("1025")
        assert ledger.balance_of("escrow:1") == Decimal("1000")
        assert ledger.balance_of(TREASURY) == Decimal("25")
        info = registry.get_listing(listing_id)
        assert info.state == EscrowState.SOLD
        assert info.buyer == "bob"

    def test_buy_emits_sold_and_fee_events(self, listed):
        registry, listing_id = listed
        approve_purchase(registry, "bob", listing_id)
        registry.buy("bob", listing_id)
        sold, fee = registry.events[-2], registry.events[-1]
        assert sold.event_type == EventType.LISTING_SOLD
        assert sold.get("buyer") == "bob"
        assert sold.get("price") == Decimal("1000")
        assert sold.get("fee") == Decimal("25")
        assert fee.event_type == EventType.FEE_COLLECTED
        assert fee.get("recipient") == TREASURY

    def test_zero_fee_needs_no_fee_authorization(self, ledger, clock):
        registry = Registry(
            ledger, clock, admin=ADMIN, fee_recipient=TREASURY,
            platform_fee_bps=0, verbose=False,
        )
        listing_id = create_listing(registry)
        ledger.approve("bob", registry.get_escrow(listing_id).address, Decimal("1000"))
        assert registry.buy("bob", listing_id) == Decimal("0")
        assert registry.events.of_type(EventType.FEE_COLLECTED) == []

    def test_premium_high_value_fee(self, registry, ledger):
        listing_id = _create(registry, price=Decimal("20000"), category=Category.PREMIUM)
        approve_purchase(registry, "bob", listing_id)
        assert registry.buy("bob", listing_id) == Decimal("1700")
        assert ledger.balance_of(TREASURY) == Decimal("1700")

    def test_missing_price_authorization(self, listed):
        registry, listing_id = listed
        registry.ledger.approve("bob", registry.address, Decimal("25"))
        with pytest.raises(InsufficientAuthorizationError, match="price"):
            registry.buy("bob", listing_id)

    def test_missing_fee_authorization(self, listed):
        registry, listing_id = listed
        registry.ledger.approve("bob", "escrow:1", Decimal("1000"))
        registry.ledger.approve("bob", registry.address, Decimal("24.99"))
        with pytest.raises(InsufficientAuthorizationError, match="fee"):
            registry.buy("bob", listing_id)
        assert registry.get_listing(listing_id).state == EscrowState.CREATED

    def test_unknown_listing(self, registry):
        with pytest.raises(NotFoundError):
            registry.buy("bob", 42)

    def test_self_purchase(self, listed):
        registry, listing_id = listed
        approve_purchase(registry, "alice", listing_id)
        with pytest.raises(SelfPurchaseError):
            registry.buy("alice", listing_id)

    def test_buyer_short_of_fee_rolls_back(self, listed, ledger):
        registry, listing_id = listed
        ledger.mint("dave", Decimal("1000"))
        approve_purchase(registry, "dave", listing_id)

        with pytest.raises(LedgerTransferError):
            registry.buy("dave", listing_id)

        assert ledger.balance_of("dave") == Decimal("1000")
        assert ledger.balance_of("escrow:1") == Decimal("0")
        assert registry.get_listing(listing_id).state == EscrowState.CREATED
        assert registry.statistics().total_sales == 0

    def test_buyer_without_funds(self, listed, ledger):
        registry, listing_id = listed
        approve_purchase(registry, "nobody", listing_id)
        with pytest.raises(InsufficientFundsError):
            registry.buy("nobody", listing_id)

    def test_paused_registry_rejects_buy(self, listed):
        registry, listing_id = listed
        approve_purchase(registry, "bob", listing_id)
        registry.pause(ADMIN)
        with pytest.raises(PausedError):
            registry.buy("bob", listing_id)

    def test_fee_change_after_listing_applies_at_purchase(self, listed):
        registry, listing_id = listed
        registry.set_platform_fee_bps(ADMIN, 100)
        assert registry.quote_fee(listing_id) == Decimal("10")
        approve_purchase(registry, "bob", listing_id)
        assert registry.buy("bob", listing_id) == Decimal("10")

    def test_fee_recipient_can_buy(self, listed, ledger):
        registry, listing_id = listed
        ledger.mint(TREASURY, Decimal("5000"))
        approve_purchase(registry, TREASURY, listing_id)

        assert registry.buy(TREASURY, listing_id) == Decimal("25")

        # The fee is paid to itself: only the price leaves the treasury.
        assert ledger.balance_of(TREASURY) == Decimal("4000")
        assert ledger.allowance(TREASURY, registry.address) == Decimal("0")
        assert ledger.balance_of("escrow:1") == Decimal("1000")
        assert registry.get_listing(listing_id).buyer == TREASURY
        assert registry.statistics().total_fees_collected == Decimal("25")
        verify_conservation(ledger, Decimal("305000"))

    def test_admin_can_buy_with_default_fee_recipient(self, ledger, clock):
        registry = Registry(ledger, clock, admin="carol", verbose=False)
        listing_id = create_listing(registry)
        approve_purchase(registry, "carol", listing_id)
        registry.buy("carol", listing_id)
        assert ledger.balance_of("carol") == Decimal("99000")
        assert registry.get_listing(listing_id).state == EscrowState.SOLD

    def test_pause_landing_mid_buy_is_honoured(self, clock):
        ledger = _PauseOnAllowanceLedger("race", verbose=False)
        ledger.mint("alice", Decimal("1000"))
        ledger.mint("bob", Decimal("5000"))
        registry = Registry(ledger, clock, admin=ADMIN, fee_recipient=TREASURY, verbose=False)
        listing_id = create_listing(registry)
        approve_purchase(registry, "bob", listing_id)
        ledger.registry = registry

        with pytest.raises(PausedError):
            registry.buy("bob", listing_id)

        assert registry.paused
        assert registry.get_listing(listing_id).state == EscrowState.CREATED
        assert ledger.balance_of("bob") == Decimal("5000")

    def test_failing_subscriber_does_not_fail_buy(self, listed, ledger):
        registry, listing_id = listed

        def indexer(event):
            if event.event_type == EventType.LISTING_SOLD:
                raise RuntimeError("indexer down")

        registry.events.subscribe(indexer)
        approve_purchase(registry, "bob", listing_id)

        assert registry.buy("bob", listing_id) == Decimal("25")
        assert registry.get_listing(listing_id).state == EscrowState.SOLD
        assert ledger.balance_of("escrow:1") == Decimal("1000")
        assert registry.events.last().event_type == EventType.FEE_COLLECTED
        [failure] = registry.events.failures
        assert failure.event.event_type == EventType.LISTING_SOLD
        assert str(failure.error) == "indexer down"

    def test_sale_totals_change_with_sold_count(self, listed):
        registry, listing_id = listed
        escrow = registry.get_escrow(listing_id)
        record = escrow._on_transition
        seen = []

        def spy(target, change):
            record(target, change)
            seen.append(registry.statistics())

        escrow._on_transition = spy
        approve_purchase(registry, "bob", listing_id)
        registry.buy("bob", listing_id)

        [stats] = seen
        assert stats.count(EscrowState.SOLD) == 1
        assert stats.total_sales == 1
        assert stats.total_volume == Decimal("1000")
        assert stats.total_fees_collected == Decimal("25")


# ============================================================================
# Post-sale operations
# ============================================================================

class TestPostSale:

    def test_confirm_delivery_pays_seller(self, sold, ledger):
        registry, listing_id = sold
        registry.confirm_delivery("bob", listing_id)
        assert ledger.balance_of("alice") == Decimal("101000")
        assert registry.get_listing(listing_id).state == EscrowState.DELIVERED
        assert registry.events.last().event_type == EventType.DELIVERY_CONFIRMED

    def test_confirm_by_non_buyer(self, sold):
        registry, listing_id = sold
        for caller in ("alice", ADMIN, "carol"):
            with pytest.raises(UnauthorizedError):
                registry.confirm_delivery(caller, listing_id)

    def test_confirm_blocked_when_paused(self, sold):
        registry, listing_id = sold
        registry.pause(ADMIN)
        with pytest.raises(PausedError):
            registry.confirm_delivery("bob", listing_id)

    def test_admin_cancel_refunds_buyer(self, sold, ledger):
        registry, listing_id = sold
        registry.cancel(ADMIN, listing_id, "Counterfeit item")
        info = registry.get_listing(listing_id)
        assert info.state == EscrowState.CANCELLED
        assert info.cancel_reason == "Counterfeit item"
        # Price refunded, fee is not
        assert ledger.balance_of("bob") == Decimal("99975")
        event = registry.events.last()
        assert event.event_type == EventType.ESCROW_CANCELLED
        assert event.get("reason") == "Counterfeit item"

    def test_cancel_works_while_paused(self, sold):
        registry, listing_id = sold
        registry.pause(ADMIN)
        registry.cancel(ADMIN, listing_id, "Dispute")
        assert registry.get_listing(listing_id).state == EscrowState.CANCELLED

    def test_cancel_requires_admin(self, sold):
        registry, listing_id = sold
        with pytest.raises(UnauthorizedError):
            registry.cancel("bob", listing_id, "I changed my mind")

    def test_cancel_requires_reason(self, sold):
        registry, listing_id = sold
        with pytest.raises(ValidationError):
            registry.cancel(ADMIN, listing_id, "")

    def test_cancel_unsold_listing_rejected(self, listed):
        registry, listing_id = listed
        with pytest.raises(InvalidStateError):
            registry.cancel(ADMIN, listing_id, "Spam")

    def test_delist(self, listed):
        registry, listing_id = listed
        registry.delist("alice", listing_id)
        info = registry.get_listing(listing_id)
        assert info.state == EscrowState.CANCELLED
        assert info.cancel_reason == "Delisted by seller"

    def test_delist_by_stranger(self, listed):
        registry, listing_id = listed
        with pytest.raises(UnauthorizedError):
            registry.delist("bob", listing_id)

    def test_refund_through_escrow_updates_statistics(self, past_deadline):
        registry, listing_id = past_deadline
        registry.get_escrow(listing_id).request_refund("bob")
        stats = registry.statistics()
        assert stats.count(EscrowState.SOLD) == 0
        assert stats.count(EscrowState.CANCELLED) == 1


# ============================================================================
# Administration
# ============================================================================

class TestAdministration:

    def test_pause_and_unpause(self, registry):
        registry.pause(ADMIN)
        assert registry.paused
        with pytest.raises(InvalidStateError):
            registry.pause(ADMIN)
        registry.unpause(ADMIN)
        assert not registry.paused
        with pytest.raises(InvalidStateError):
            registry.unpause(ADMIN)
        types = [e.event_type for e in registry.events]
        assert types == [EventType.PAUSED, EventType.UNPAUSED]

    def test_admin_only_operations(self, registry):
        for call in (
            lambda: registry.pause("bob"),
            lambda: registry.unpause("bob"),
            lambda: registry.set_platform_fee_bps("bob", 100),
            lambda: registry.set_premium_fee_bps("bob", 100),
            lambda: registry.set_fee_recipient("bob", "bob"),
            lambda: registry.transfer_admin("bob", "bob"),
            lambda: registry.emergency_withdraw("bob", "MKT", Decimal("1")),
        ):
            with pytest.raises(UnauthorizedError):
                call()

    def test_platform_fee_ceiling(self, registry):
        registry.set_platform_fee_bps(ADMIN, 1000)
        assert registry.fee_schedule.platform_fee_bps == 1000
        with pytest.raises(ValidationError):
            registry.set_platform_fee_bps(ADMIN, 1001)
        assert registry.fee_schedule.platform_fee_bps == 1000

    def test_premium_fee_update_event(self, registry):
        registry.set_premium_fee_bps(ADMIN, 300)
        event = registry.events.last()
        assert event.event_type == EventType.FEE_UPDATED
        assert (event.get("tier"), event.get("old_bps"), event.get("new_bps")) == ("premium", 500, 300)

    def test_fee_recipient(self, registry):
        registry.set_fee_recipient(ADMIN, "new-treasury")
        assert registry.fee_recipient == "new-treasury"
        with pytest.raises(ValidationError):
            registry.set_fee_recipient(ADMIN, "")
        with pytest.raises(ValidationError):
            registry.set_fee_recipient(ADMIN, registry.address)

    def test_two_step_admin_transfer(self, registry):
        registry.transfer_admin(ADMIN, "carol")
        assert registry.admin == ADMIN
        assert registry.pending_admin == "carol"
        with pytest.raises(UnauthorizedError):
            registry.accept_admin("bob")
        registry.accept_admin("carol")
        assert registry.admin == "carol"
        assert registry.pending_admin is None
        with pytest.raises(UnauthorizedError):
            registry.pause(ADMIN)
        registry.pause("carol")

    def test_accept_without_nomination(self, registry):
        with pytest.raises(UnauthorizedError):
            registry.accept_admin(ADMIN)

    def test_emergency_withdraw_recovers_stray_tokens(self, registry, ledger):
        ledger.transfer("carol", registry.address, Decimal("50"))
        registry.emergency_withdraw(ADMIN, "MKT", Decimal("50"))
        assert ledger.balance_of(registry.address) == Decimal("0")
        assert ledger.balance_of(ADMIN) == Decimal("50")
        assert registry.events.last().event_type == EventType.EMERGENCY_WITHDRAWAL

    def test_emergency_withdraw_cannot_touch_escrow_custody(self, sold, ledger):
        registry, _ = sold
        with pytest.raises(InsufficientFundsError):
            registry.emergency_withdraw(ADMIN, "MKT", Decimal("1"))
        assert ledger.balance_of("escrow:1") == Decimal("1000")

    def test_emergency_withdraw_other_token(self, registry):
        with pytest.raises(ValidationError):
            registry.emergency_withdraw(ADMIN, "USDC", Decimal("1"))

    def test_constructor_rejects_registry_as_recipient(self, ledger, clock):
        with pytest.raises(ValidationError):
            Registry(ledger, clock, admin=ADMIN, fee_recipient="marketplace", verbose=False)

    def test_fee_recipient_defaults_to_admin(self, ledger, clock):
        registry = Registry(ledger, clock, admin=ADMIN, verbose=False)
        assert registry.fee_recipient == ADMIN


# ============================================================================
# Queries and enumeration
# ============================================================================

class TestQueries:

    def test_get_listing_unknown(self, registry):
        with pytest.raises(NotFoundError):
            registry.get_listing(1)
        with pytest.raises(NotFoundError):
            registry.get_escrow(0)

    @pytest.mark.parametrize("listing_id", [True, "1", 1.0, None])
    def test_get_escrow_requires_integer_id(self, listed, listing_id):
        registry, _ = listed
        with pytest.raises(NotFoundError):
            registry.get_escrow(listing_id)
        assert registry.get_escrow(1).listing_id == 1

    def test_statistics(self, registry, ledger, circulating):
        first = list_and_buy(registry)
        list_and_buy(registry, price=Decimal("20000"), category=Category.PREMIUM)
        create_listing(registry)
        registry.confirm_delivery("bob", first)

        stats = registry.statistics()
        assert stats.total_listings == 3
        assert stats.total_sales == 2
        assert stats.total_volume == Decimal("21000")
        assert stats.total_fees_collected == Decimal("1725")
        assert stats.count(EscrowState.CREATED) == 1
        assert stats.count(EscrowState.SOLD) == 1
        assert stats.count(EscrowState.DELIVERED) == 1
        verify_conservation(ledger, circulating)

    def test_list_page(self, registry):
        for _ in range(5):
            create_listing(registry)
        page = registry.list_page(2, 0)
        assert page.listing_ids == (1, 2)
        assert page.next_offset == 2
        last = registry.list_page(2, 4)
        assert last.listing_ids == (5,)
        assert last.next_offset is None
        assert last.total == 5

    @pytest.mark.parametrize("limit,offset", [
        (0, 0), (MAX_PAGE_SIZE + 1, 0), (1, -1), (1, 3), (True, 0),
    ])
    def test_list_page_bounds(self, registry, limit, offset):
        for _ in range(3):
            create_listing(registry)
        with pytest.raises(ValidationError):
            registry.list_page(limit, offset)

    def test_list_page_on_empty_registry(self, registry):
        with pytest.raises(ValidationError):
            registry.list_page(10, 0)

    def test_filters(self, registry):
        list_and_buy(registry, seller="alice", buyer="bob")
        list_and_buy(registry, seller="carol", buyer="bob", category=Category.BOOKS)
        create_listing(registry, seller="carol", price=Decimal("50"))

        assert registry.listings_by_seller("carol").listing_ids == (2, 3)
        assert registry.listings_by_buyer("bob").listing_ids == (1, 2)
        assert registry.listings_by_category("books").listing_ids == (2,)
        assert registry.listings_by_state(EscrowState.CREATED).listing_ids == (3,)
        assert registry.listings_in_price_range(Decimal("10"), Decimal("100")).listing_ids == (3,)

    def test_price_range_must_be_ordered(self, registry):
        with pytest.raises(ValidationError):
            registry.listings_in_price_range(Decimal("10"), Decimal("1"))

    def test_find_listings_cursor(self, registry):
        for i in range(6):
            create_listing(registry, seller="alice" if i % 2 == 0 else "carol")
        first = registry.listings_by_seller("alice", limit=2)
        assert first.listing_ids == (1, 3)
        assert first.next_offset == 3
        second = registry.listings_by_seller("alice", limit=2, offset=first.next_offset)
        assert second.listing_ids == (5,)
        assert second.next_offset is None

    def test_find_listings_on_empty_registry(self, registry):
        page = registry.find_listings(lambda info: True)
        assert page.items == ()
        assert page.next_offset is None

    def test_verbose_output(self, ledger, clock, capsys):
        registry = Registry(ledger, clock, admin=ADMIN, fee_recipient=TREASURY)
        listing_id = create_listing(registry)
        approve_purchase(registry, "bob", listing_id)
        registry.buy("bob", listing_id)
        out = capsys.readouterr().out
        assert "📝 Listed #1" in out
        assert "✓ SOLD #1" in out
