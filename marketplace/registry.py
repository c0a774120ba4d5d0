"""
registry.py - Listing Registry and Escrow Factory

The Registry is the marketplace's front door. It is the only component that
creates escrows, and it forwards every controlled escrow operation.

Key responsibilities:
    - Validates listing input and allocates sequential, never-reused identifiers
    - Creates one Escrow per listing with the registry as its sole controller
    - Applies the tiered fee policy at purchase time and pulls the fee in the
      same atomic ledger scope as the price capture
    - Administrator controls: pause, fee rates, fee recipient, administrator
      hand-over, recovery of tokens sent to the registry by mistake
    - Aggregate statistics kept current on every escrow transition
    - Bounded enumeration: fixed-size pages and predicate scans, never list-all
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import threading

from .core import (
    # Types
    Category, EscrowState, EventType, Identity, ListingInfo, ListingPage,
    ListingTerms, RegistryStats, StateChange, TokenLedger, Clock,
    # Constants
    MAX_TITLE_LENGTH, MAX_DESCRIPTION_LENGTH, MAX_MEDIA_REF_LENGTH,
    MAX_PRICE, MIN_DELIVERY_HOURS, MAX_DELIVERY_HOURS, HIGH_VALUE_THRESHOLD,
    DEFAULT_PLATFORM_FEE_BPS, DEFAULT_PREMIUM_FEE_BPS,
    MAX_PLATFORM_FEE_BPS, MAX_PREMIUM_FEE_BPS, MAX_PAGE_SIZE,
    # Exceptions
    ValidationError, UnauthorizedError, InvalidStateError, NotFoundError,
    PausedError, InsufficientAuthorizationError, InsufficientFundsError,
    LedgerTransferError,
    # Helpers
    to_amount,
)
from .escrow import Escrow
from .events import EventLog
from .fees import FeeSchedule, calculate_fee, validate_bps
from .guard import ReentrancyGuard


# Predicate over a listing projection, used by bounded scans.
ListingPredicate = Callable[[ListingInfo], bool]


class Registry:
    """
    Factory, fee collector and index for all listings.

    Thread Safety:
        Listing operations serialize on the target escrow's guard. Registry-wide
        mutable fields (id counter, administrator, pause flag, fee schedule) are
        changed under the registry guard; statistics under a separate lock that
        escrow transition callbacks can take.

    Example:
        registry = Registry(ledger, clock, admin="admin", fee_recipient="treasury")
        listing_id = registry.create_listing(
            "alice", "Camera", "Mirrorless body", "ipfs://...",
            Decimal("1000"), Category.ELECTRONICS, 48,
        )
        ledger.approve("bob", registry.get_escrow(listing_id).address, Decimal("1000"))
        ledger.approve("bob", registry.address, registry.quote_fee(listing_id))
        registry.buy("bob", listing_id)
    """

    def __init__(
        self,
        ledger: TokenLedger,
        clock: Clock,
        admin: Identity,
        fee_recipient: Optional[Identity] = None,
        address: Identity = "marketplace",
        platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS,
        premium_fee_bps: int = DEFAULT_PREMIUM_FEE_BPS,
        events: Optional[EventLog] = None,
        verbose: bool = True,
    ):
        """
        Args:
            ledger: Token ledger holding all custody
            clock: Logical time source
            admin: Initial administrator identity
            fee_recipient: Identity receiving fees (default: admin)
            address: Registry's own ledger identity; buyers authorize fees to it
            platform_fee_bps: Base fee rate (default: 250 = 2.5%)
            premium_fee_bps: Surcharge for the premium category (default: 500 = 5%)
            events: Event sink (a fresh EventLog if not provided)
            verbose: Print one line per listing operation (default: True)
        """
        _require_identity(admin, "admin")
        _require_identity(address, "address")
        fee_recipient = fee_recipient or admin
        _require_identity(fee_recipient, "fee_recipient")
        if fee_recipient == address:
            raise ValidationError("fee_recipient cannot be the registry itself")

        self.ledger = ledger
        self.clock = clock
        self.address = address
        self.events = events if events is not None else EventLog(verbose=verbose)
        self.verbose = verbose

        self._admin: Identity = admin
        self._pending_admin: Optional[Identity] = None
        self._fee_recipient: Identity = fee_recipient
        self._fee_schedule = FeeSchedule(
            platform_fee_bps=platform_fee_bps, premium_fee_bps=premium_fee_bps
        )
        self._paused = False

        self._escrows: Dict[int, Escrow] = {}
        self._ids: List[int] = []
        self._next_id = 1
        self._guard = ReentrancyGuard("registry")

        self._stats_lock = threading.Lock()
        self._total_sales = 0
        self._total_volume = Decimal("0")
        self._total_fees = Decimal("0")
        self._fees_in_flight: Dict[int, Decimal] = {}
        self._state_counts: Dict[EscrowState, int] = {state: 0 for state in EscrowState}

    # ========================================================================
    # CONFIGURATION VIEWS
    # ========================================================================

    @property
    def admin(self) -> Identity:
        return self._admin

    @property
    def pending_admin(self) -> Optional[Identity]:
        return self._pending_admin

    @property
    def fee_recipient(self) -> Identity:
        return self._fee_recipient

    @property
    def fee_schedule(self) -> FeeSchedule:
        return self._fee_schedule

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def listing_count(self) -> int:
        return len(self._ids)

    # ========================================================================
    # LISTING OPERATIONS
    # ========================================================================

    def create_listing(
        self,
        caller: Identity,
        title: str,
        description: str,
        media_ref: str,
        price: Any,
        category: Any,
        delivery_hours: int,
    ) -> int:
        """
        List an item for sale and create its escrow.

        Returns:
            The new listing identifier (1, 2, 3, ... never reused)

        Raises:
            PausedError: registry is paused
            ValidationError: any input outside its bounds
        """
        self._require_not_paused("create listings")
        _require_identity(caller, "seller")
        title = _require_text(title, "title", MAX_TITLE_LENGTH, allow_empty=False)
        description = _require_text(description, "description", MAX_DESCRIPTION_LENGTH)
        media_ref = _require_text(media_ref, "media_ref", MAX_MEDIA_REF_LENGTH)
        amount = to_amount(price)
        if amount <= 0 or amount > MAX_PRICE:
            raise ValidationError(f"price must be in (0, {MAX_PRICE}], got {amount}")
        if self.ledger.decimal_places is not None and amount != amount.quantize(
            Decimal(10) ** -self.ledger.decimal_places
        ):
            raise ValidationError(
                f"price {amount} has more than {self.ledger.decimal_places} decimal places"
            )
        category = Category.parse(category)
        if isinstance(delivery_hours, bool) or not isinstance(delivery_hours, int):
            raise ValidationError(f"delivery_hours must be an integer, got {delivery_hours!r}")
        if not MIN_DELIVERY_HOURS <= delivery_hours <= MAX_DELIVERY_HOURS:
            raise ValidationError(
                f"delivery_hours must be in [{MIN_DELIVERY_HOURS}, {MAX_DELIVERY_HOURS}], "
                f"got {delivery_hours}"
            )

        with self._guard:
            # Re-checked under the guard: pause() may have landed since the fast check.
            self._require_not_paused("create listings")
            now = self.clock.current_time
            terms = ListingTerms(
                title=title,
                description=description,
                media_ref=media_ref,
                category=category,
                price=amount,
                delivery_hours=delivery_hours,
                seller=caller,
                is_high_value=amount >= HIGH_VALUE_THRESHOLD,
                created_at=now,
            )
            listing_id = self._next_id
            escrow = Escrow(
                listing_id,
                terms,
                self.ledger,
                self.clock,
                controller=self.address,
                events=self.events,
                on_transition=self._record_transition,
                verbose=self.verbose,
            )
            self._next_id += 1
            self._escrows[listing_id] = escrow
            self._ids.append(listing_id)
            with self._stats_lock:
                self._state_counts[EscrowState.CREATED] += 1

            self.events.emit(
                EventType.LISTING_CREATED,
                listing_id,
                now,
                escrow=escrow.address,
                seller=caller,
                category=category.value,
                price=amount,
                is_high_value=terms.is_high_value,
            )

        if self.verbose:
            flag = " [high-value]" if terms.is_high_value else ""
            print(f"📝 Listed #{listing_id}: {title} @ {amount} {self.ledger.symbol} "
                  f"[{category.value}]{flag}")
        return listing_id

    def buy(self, caller: Identity, listing_id: int) -> Decimal:
        """
        Purchase a listing: capture the price into escrow and pull the fee.

        The buyer must have authorized at least the price to the listing's escrow
        address and, when the fee is non-zero, at least the fee to the registry.

        Returns:
            The fee charged

        Raises:
            NotFoundError: no such listing
            PausedError: registry is paused
            InsufficientAuthorizationError: either authorization is short
            InvalidStateError, SelfPurchaseError, InsufficientFundsError: from the escrow
        """
        escrow = self.get_escrow(listing_id)
        self._require_not_paused("buy")
        _require_identity(caller, "buyer")

        terms = escrow.terms
        fee = self._fee_for(terms)
        recipient = self._fee_recipient

        price_granted = self.ledger.allowance(caller, escrow.address)
        if price_granted < terms.price:
            raise InsufficientAuthorizationError(
                f"{caller} authorized {price_granted} < price {terms.price} to {escrow.address}"
            )
        if fee > 0:
            fee_granted = self.ledger.allowance(caller, self.address)
            if fee_granted < fee:
                raise InsufficientAuthorizationError(
                    f"{caller} authorized {fee_granted} < fee {fee} to {self.address}"
                )

        def collect_fee(buyer: Identity) -> None:
            if fee > 0 and not self.ledger.transfer_from(self.address, buyer, recipient, fee):
                raise LedgerTransferError(
                    f"Ledger rejected fee {fee} from {buyer} to {recipient}"
                )
            # Picked up by _record_transition when the sale commits.
            with self._stats_lock:
                self._fees_in_flight[listing_id] = fee

        status = escrow.buy(
            self.address, caller,
            collect_fee=collect_fee,
            precondition=lambda: self._require_not_paused("buy"),
        )

        self.events.emit(
            EventType.LISTING_SOLD,
            listing_id,
            status.purchase_time,
            buyer=caller,
            price=terms.price,
            fee=fee,
            delivery_deadline=status.delivery_deadline,
        )
        if fee > 0:
            self.events.emit(
                EventType.FEE_COLLECTED,
                listing_id,
                status.purchase_time,
                payer=caller,
                recipient=recipient,
                fee=fee,
            )
        if self.verbose:
            print(f"✓ SOLD #{listing_id} to {caller}: {terms.price} in escrow, fee {fee}")
        return fee

    def confirm_delivery(self, caller: Identity, listing_id: int) -> None:
        """
        Buyer confirms delivery; the escrow releases the price to the seller.

        Raises:
            NotFoundError, PausedError
            UnauthorizedError: caller is not the recorded buyer
            InvalidStateError: listing is not SOLD
        """
        escrow = self.get_escrow(listing_id)
        self._require_not_paused("confirm delivery")
        escrow.confirm_delivery(
            self.address, caller,
            precondition=lambda: self._require_not_paused("confirm delivery"),
        )
        self.events.emit(
            EventType.DELIVERY_CONFIRMED,
            listing_id,
            self.clock.current_time,
            buyer=caller,
            seller=escrow.seller,
            released=escrow.price,
        )
        if self.verbose:
            print(f"✓ DELIVERED #{listing_id}: {escrow.price} released to {escrow.seller}")

    def cancel(self, caller: Identity, listing_id: int, reason: str) -> None:
        """
        Administrator emergency cancellation of a sold listing; refunds the buyer.

        Available while paused.

        Raises:
            UnauthorizedError: caller is not the administrator
            ValidationError: empty reason
            NotFoundError
            InvalidStateError: listing is not SOLD
        """
        self._require_admin(caller)
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("Cancellation reason cannot be empty")
        escrow = self.get_escrow(listing_id)
        escrow.emergency_cancel(self.address, reason)
        if self.verbose:
            print(f"✗ CANCELLED #{listing_id}: {reason}")

    def delist(self, caller: Identity, listing_id: int) -> None:
        """
        Seller withdraws a listing that has not been bought.

        Raises:
            NotFoundError, PausedError
            UnauthorizedError: caller is not the seller
            InvalidStateError: listing is not CREATED
        """
        escrow = self.get_escrow(listing_id)
        self._require_not_paused("delist")
        escrow.delist(
            self.address, caller,
            precondition=lambda: self._require_not_paused("delist"),
        )
        if self.verbose:
            print(f"✗ DELISTED #{listing_id} by {caller}")

    # ========================================================================
    # FEES
    # ========================================================================

    def calculate_fee(self, price: Any, category: Any, is_high_value: bool) -> Decimal:
        """Fee under the current schedule. Pure: reads the schedule, changes nothing."""
        return calculate_fee(
            price, category, is_high_value,
            schedule=self._fee_schedule,
            decimal_places=self.ledger.decimal_places,
        )

    def quote_fee(self, listing_id: int) -> Decimal:
        """Fee a purchase of listing_id would be charged right now."""
        return self._fee_for(self.get_escrow(listing_id).terms)

    def _fee_for(self, terms: ListingTerms) -> Decimal:
        return self.calculate_fee(terms.price, terms.category, terms.is_high_value)

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def pause(self, caller: Identity) -> None:
        """Block create_listing, buy, confirm_delivery and delist. cancel stays available."""
        self._require_admin(caller)
        with self._guard:
            if self._paused:
                raise InvalidStateError("Registry is already paused")
            self._paused = True
            self.events.emit(EventType.PAUSED, None, self.clock.current_time, by=caller)

    def unpause(self, caller: Identity) -> None:
        self._require_admin(caller)
        with self._guard:
            if not self._paused:
                raise InvalidStateError("Registry is not paused")
            self._paused = False
            self.events.emit(EventType.UNPAUSED, None, self.clock.current_time, by=caller)

    def set_platform_fee_bps(self, caller: Identity, bps: int) -> None:
        """Change the base fee rate for future purchases (at most MAX_PLATFORM_FEE_BPS)."""
        self._require_admin(caller)
        validate_bps(bps, MAX_PLATFORM_FEE_BPS, "platform_fee_bps")
        with self._guard:
            old = self._fee_schedule.platform_fee_bps
            self._fee_schedule = self._fee_schedule.with_platform_fee(bps)
            self.events.emit(
                EventType.FEE_UPDATED, None, self.clock.current_time,
                tier="platform", old_bps=old, new_bps=bps,
            )

    def set_premium_fee_bps(self, caller: Identity, bps: int) -> None:
        """Change the premium-category surcharge (at most MAX_PREMIUM_FEE_BPS)."""
        self._require_admin(caller)
        validate_bps(bps, MAX_PREMIUM_FEE_BPS, "premium_fee_bps")
        with self._guard:
            old = self._fee_schedule.premium_fee_bps
            self._fee_schedule = self._fee_schedule.with_premium_fee(bps)
            self.events.emit(
                EventType.FEE_UPDATED, None, self.clock.current_time,
                tier="premium", old_bps=old, new_bps=bps,
            )

    def set_fee_recipient(self, caller: Identity, recipient: Identity) -> None:
        self._require_admin(caller)
        _require_identity(recipient, "fee_recipient")
        if recipient == self.address:
            raise ValidationError("fee_recipient cannot be the registry itself")
        with self._guard:
            old = self._fee_recipient
            self._fee_recipient = recipient
            self.events.emit(
                EventType.FEE_RECIPIENT_UPDATED, None, self.clock.current_time,
                old=old, new=recipient,
            )

    def transfer_admin(self, caller: Identity, new_admin: Identity) -> None:
        """Nominate a new administrator. Takes effect when they call accept_admin()."""
        self._require_admin(caller)
        _require_identity(new_admin, "new_admin")
        if new_admin == self._admin:
            raise ValidationError(f"{new_admin} is already the administrator")
        with self._guard:
            self._pending_admin = new_admin
            self.events.emit(
                EventType.ADMIN_TRANSFER_STARTED, None, self.clock.current_time,
                current=caller, pending=new_admin,
            )

    def accept_admin(self, caller: Identity) -> None:
        with self._guard:
            if self._pending_admin is None or caller != self._pending_admin:
                raise UnauthorizedError(f"{caller} is not the pending administrator")
            previous = self._admin
            self._admin = caller
            self._pending_admin = None
            self.events.emit(
                EventType.ADMIN_TRANSFERRED, None, self.clock.current_time,
                previous=previous, new=caller,
            )

    def emergency_withdraw(self, caller: Identity, token_symbol: str, amount: Any) -> None:
        """
        Recover tokens sent to the registry's own identity by mistake.

        Restricted to the registry's ledger token and to the registry's own
        balance; escrow custody lives under escrow identities and is unreachable.

        Raises:
            UnauthorizedError: caller is not the administrator
            ValidationError: another token, or non-positive amount
            InsufficientFundsError: amount exceeds the registry's balance
        """
        self._require_admin(caller)
        if token_symbol != self.ledger.symbol:
            raise ValidationError(
                f"Only {self.ledger.symbol} can be withdrawn, got {token_symbol!r}"
            )
        quantity = to_amount(amount)
        if quantity <= 0:
            raise ValidationError(f"amount must be positive, got {quantity}")
        with self._guard:
            held = self.ledger.balance_of(self.address)
            if quantity > held:
                raise InsufficientFundsError(
                    f"Registry holds {held} {token_symbol}, cannot withdraw {quantity}"
                )
            if not self.ledger.transfer(self.address, self._admin, quantity):
                raise LedgerTransferError(f"Ledger rejected withdrawal of {quantity}")
            self.events.emit(
                EventType.EMERGENCY_WITHDRAWAL, None, self.clock.current_time,
                to=self._admin, amount=quantity,
            )

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_escrow(self, listing_id: int) -> Escrow:
        """
        Raises:
            NotFoundError: no listing with that identifier
        """
        escrow = None
        if isinstance(listing_id, int) and not isinstance(listing_id, bool):
            escrow = self._escrows.get(listing_id)
        if escrow is None:
            raise NotFoundError(f"Listing {listing_id} does not exist")
        return escrow

    def get_listing(self, listing_id: int) -> ListingInfo:
        return self.get_escrow(listing_id).get_info()

    def statistics(self) -> RegistryStats:
        with self._stats_lock:
            return RegistryStats(
                total_listings=len(self._ids),
                total_sales=self._total_sales,
                total_volume=self._total_volume,
                total_fees_collected=self._total_fees,
                state_counts=dict(self._state_counts),
            )

    def list_page(self, limit: int, offset: int) -> ListingPage:
        """
        A bounded slice of listings in creation order.

        Raises:
            ValidationError: limit outside (0, MAX_PAGE_SIZE], or offset outside [0, total)
        """
        _require_limit(limit)
        total = len(self._ids)
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0 or offset >= total:
            raise ValidationError(f"offset must be in [0, {total}), got {offset!r}")
        ids = self._ids[offset:offset + limit]
        end = offset + len(ids)
        return ListingPage(
            items=tuple(self._escrows[i].get_info() for i in ids),
            offset=offset,
            limit=limit,
            next_offset=end if end < total else None,
            total=total,
        )

    def find_listings(
        self,
        predicate: ListingPredicate,
        limit: int = MAX_PAGE_SIZE,
        offset: int = 0,
    ) -> ListingPage:
        """
        Scan listings in creation order from offset, collecting at most limit matches.

        The result's next_offset is the position after the last listing examined,
        so repeated calls walk the whole sequence in bounded steps.

        Raises:
            ValidationError: limit outside (0, MAX_PAGE_SIZE], or offset outside [0, total]
        """
        _require_limit(limit)
        total = len(self._ids)
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0 or offset > total:
            raise ValidationError(f"offset must be in [0, {total}], got {offset!r}")
        matches: List[ListingInfo] = []
        position = offset
        while position < total and len(matches) < limit:
            info = self._escrows[self._ids[position]].get_info()
            position += 1
            if predicate(info):
                matches.append(info)
        return ListingPage(
            items=tuple(matches),
            offset=offset,
            limit=limit,
            next_offset=position if position < total else None,
            total=total,
        )

    def listings_by_seller(self, seller: Identity, limit: int = MAX_PAGE_SIZE, offset: int = 0) -> ListingPage:
        return self.find_listings(lambda info: info.seller == seller, limit, offset)

    def listings_by_buyer(self, buyer: Identity, limit: int = MAX_PAGE_SIZE, offset: int = 0) -> ListingPage:
        return self.find_listings(lambda info: info.buyer == buyer, limit, offset)

    def listings_by_category(self, category: Any, limit: int = MAX_PAGE_SIZE, offset: int = 0) -> ListingPage:
        category = Category.parse(category)
        return self.find_listings(lambda info: info.category == category, limit, offset)

    def listings_by_state(self, state: EscrowState, limit: int = MAX_PAGE_SIZE, offset: int = 0) -> ListingPage:
        return self.find_listings(lambda info: info.state == state, limit, offset)

    def listings_in_price_range(
        self,
        min_price: Any,
        max_price: Any,
        limit: int = MAX_PAGE_SIZE,
        offset: int = 0,
    ) -> ListingPage:
        low, high = to_amount(min_price), to_amount(max_price)
        if low > high:
            raise ValidationError(f"min_price {low} > max_price {high}")
        return self.find_listings(lambda info: low <= info.price <= high, limit, offset)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _require_admin(self, caller: Identity) -> None:
        if caller != self._admin:
            raise UnauthorizedError(f"{caller} is not the administrator")

    def _require_not_paused(self, action: str) -> None:
        if self._paused:
            raise PausedError(f"Cannot {action}: registry is paused")

    def _record_transition(self, escrow: Escrow, change: StateChange) -> None:
        with self._stats_lock:
            if change.new_status.state == EscrowState.SOLD:
                self._total_sales += 1
                self._total_volume += escrow.price
                self._total_fees += self._fees_in_flight.pop(escrow.listing_id, Decimal("0"))
            self._state_counts[change.old_status.state] -= 1
            self._state_counts[change.new_status.state] += 1

    def __repr__(self) -> str:
        return f"Registry({self.address}, listings={len(self._ids)}, paused={self._paused})"


def _require_identity(identity: Any, name: str) -> None:
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationError(f"{name} must be a non-empty identity")


def _require_text(value: Any, name: str, max_length: int, allow_empty: bool = True) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        raise ValidationError(f"{name} cannot be empty")
    if len(value) > max_length:
        raise ValidationError(f"{name} exceeds {max_length} characters ({len(value)})")
    return value


def _require_limit(limit: Any) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 0 < limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be in (0, {MAX_PAGE_SIZE}], got {limit!r}")
