"""
escrow.py - Per-Listing Escrow State Machine

=== LIFECYCLE ===

    CREATED --buy--> SOLD --confirm_delivery--> DELIVERED
                       |
                       +--request_refund (after deadline)--> CANCELLED ("Delivery timeout")
                       +--emergency_cancel (administrator)--> CANCELLED (given reason)
    CREATED --delist (seller)--> CANCELLED ("Delisted by seller")

DELIVERED and CANCELLED are terminal. Nothing leaves them.

=== CUSTODY ===

On buy the price moves from the buyer into the escrow's own ledger identity
(escrow:<id>), which is the holder of record until delivery releases it to the
seller or a cancellation refunds it to the buyer.

=== CONTROL ===

buy, confirm_delivery, emergency_cancel and delist only accept the controller
(the registry that created the escrow) as caller. request_refund is the one
operation a buyer calls directly.

Every mutating operation runs under the escrow's ReentrancyGuard and commits
the new EscrowStatus only after all ledger movements succeeded, so a failure at
any step leaves the escrow exactly as it was.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from .core import (
    # Types
    ListingTerms, EscrowStatus, EscrowState, StateChange, ListingInfo,
    TokenLedger, Clock, Identity, EventType,
    # Constants
    TIMEOUT_REASON, DELIST_REASON,
    # Exceptions
    InvalidStateError, UnauthorizedError, SelfPurchaseError,
    InsufficientFundsError, LedgerTransferError, DeadlineNotReachedError,
    ValidationError,
    # Helpers
    escrow_address,
)
from .events import EventLog
from .guard import ReentrancyGuard


# Called with (escrow, change) after every committed transition.
TransitionListener = Callable[['Escrow', StateChange], None]

# Called with the buyer inside the purchase's atomic ledger scope.
FeeCollector = Callable[[Identity], None]

# Called under the escrow guard before any change; raises to refuse the operation.
Precondition = Callable[[], None]


class Escrow:
    """
    Custodian and state machine for a single listing.

    Reads (status, is_expired, time_remaining, get_info) are side-effect-free and
    never block: the status is a frozen record replaced wholesale on commit.
    """

    def __init__(
        self,
        listing_id: int,
        terms: ListingTerms,
        ledger: TokenLedger,
        clock: Clock,
        controller: Identity,
        events: Optional[EventLog] = None,
        on_transition: Optional[TransitionListener] = None,
        verbose: bool = False,
    ):
        """
        Args:
            listing_id: Registry-assigned identifier
            terms: Immutable listing terms
            ledger: Token ledger holding custody
            clock: Logical time source
            controller: Only identity allowed to drive buy/confirm/cancel/delist
            events: Event sink for cancellations (optional)
            on_transition: Listener notified after each committed transition
            verbose: Print one line per transition
        """
        self.listing_id = listing_id
        self.terms = terms
        self.address: Identity = escrow_address(listing_id)
        self.controller = controller
        self._ledger = ledger
        self._clock = clock
        self._events = events
        self._on_transition = on_transition
        self._status = EscrowStatus()
        self._guard = ReentrancyGuard(f"escrow {listing_id}")
        self.history: List[StateChange] = []
        self.verbose = verbose

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def status(self) -> EscrowStatus:
        return self._status

    @property
    def state(self) -> EscrowState:
        return self._status.state

    @property
    def buyer(self) -> Optional[Identity]:
        return self._status.buyer

    @property
    def seller(self) -> Identity:
        return self.terms.seller

    @property
    def price(self) -> Decimal:
        return self.terms.price

    def is_expired(self) -> bool:
        """True once a sold listing is past its delivery deadline."""
        status = self._status
        return (
            status.state == EscrowState.SOLD
            and self._clock.current_time > status.delivery_deadline
        )

    def time_remaining(self) -> timedelta:
        """Time left before the delivery deadline; zero unless SOLD and not yet due."""
        status = self._status
        if status.state != EscrowState.SOLD:
            return timedelta(0)
        remaining = status.delivery_deadline - self._clock.current_time
        return max(remaining, timedelta(0))

    def get_info(self) -> ListingInfo:
        return ListingInfo.from_parts(self.listing_id, self.terms, self._status)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def buy(
        self,
        caller: Identity,
        buyer: Identity,
        collect_fee: Optional[FeeCollector] = None,
        precondition: Optional[Precondition] = None,
    ) -> EscrowStatus:
        """
        Capture the price from buyer into escrow custody.

        collect_fee, if given, runs inside the same atomic ledger scope right after
        the price capture; if it raises, the capture is rolled back and the escrow
        stays CREATED.

        precondition, if given, is checked under the guard before anything else.

        Raises:
            UnauthorizedError: caller is not the controller
            InvalidStateError: not CREATED
            SelfPurchaseError: buyer is the seller
            InsufficientFundsError: buyer's balance or allowance to this escrow < price
        """
        self._require_controller(caller)
        _require_identity(buyer, "buyer")
        with self._guard:
            _check(precondition)
            self._require_state(EscrowState.CREATED, "buy")
            if buyer == self.terms.seller:
                raise SelfPurchaseError(f"Seller {buyer} cannot buy listing {self.listing_id}")

            price = self.terms.price
            balance = self._ledger.balance_of(buyer)
            if balance < price:
                raise InsufficientFundsError(
                    f"{buyer} balance {balance} < price {price} for listing {self.listing_id}"
                )
            granted = self._ledger.allowance(buyer, self.address)
            if granted < price:
                raise InsufficientFundsError(
                    f"{buyer} authorized {granted} < price {price} to {self.address}"
                )

            now = self._clock.current_time
            with self._ledger.atomic():
                if not self._ledger.transfer_from(self.address, buyer, self.address, price):
                    raise LedgerTransferError(
                        f"Ledger rejected capture of {price} from {buyer} into {self.address}"
                    )
                if collect_fee is not None:
                    collect_fee(buyer)

            return self._transition(
                now,
                state=EscrowState.SOLD,
                buyer=buyer,
                purchase_time=now,
                delivery_deadline=now + self.terms.delivery_window,
            )

    def confirm_delivery(
        self,
        caller: Identity,
        confirmer: Identity,
        precondition: Optional[Precondition] = None,
    ) -> EscrowStatus:
        """
        Release the price to the seller on the buyer's confirmation.

        Raises:
            UnauthorizedError: caller is not the controller, or confirmer is not the buyer
            InvalidStateError: not SOLD
        """
        self._require_controller(caller)
        with self._guard:
            _check(precondition)
            self._require_state(EscrowState.SOLD, "confirm delivery")
            if confirmer != self._status.buyer:
                raise UnauthorizedError(
                    f"Only the buyer can confirm delivery of listing {self.listing_id}"
                )
            now = self._clock.current_time
            self._release(self.terms.seller, "release to seller")
            return self._transition(now, state=EscrowState.DELIVERED)

    def request_refund(self, caller: Identity) -> EscrowStatus:
        """
        Buyer-initiated refund once the delivery deadline has strictly passed.

        Raises:
            InvalidStateError: not SOLD
            UnauthorizedError: caller is not the buyer
            DeadlineNotReachedError: now <= delivery deadline
        """
        with self._guard:
            self._require_state(EscrowState.SOLD, "refund")
            status = self._status
            if caller != status.buyer:
                raise UnauthorizedError(
                    f"Only the buyer can request a refund of listing {self.listing_id}"
                )
            now = self._clock.current_time
            if now <= status.delivery_deadline:
                raise DeadlineNotReachedError(
                    f"Listing {self.listing_id} deadline {status.delivery_deadline} not passed at {now}"
                )
            self._release(status.buyer, "timeout refund")
            new_status = self._transition(
                now, state=EscrowState.CANCELLED, cancel_reason=TIMEOUT_REASON
            )
            self._emit_cancelled(now, TIMEOUT_REASON, refunded=self.terms.price)
            return new_status

    def emergency_cancel(self, caller: Identity, reason: str) -> EscrowStatus:
        """
        Administrator cancellation of a sold listing, refunding the buyer.

        Only legal after a sale: a never-purchased listing is withdrawn with delist().

        Raises:
            UnauthorizedError: caller is not the controller
            ValidationError: empty reason
            InvalidStateError: not SOLD
        """
        self._require_controller(caller)
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason cannot be empty")
        with self._guard:
            self._require_state(EscrowState.SOLD, "cancel")
            now = self._clock.current_time
            refunded = Decimal("0")
            if self._status.buyer is not None:
                self._release(self._status.buyer, "emergency refund")
                refunded = self.terms.price
            new_status = self._transition(
                now, state=EscrowState.CANCELLED, cancel_reason=reason
            )
            self._emit_cancelled(now, reason, refunded=refunded)
            return new_status

    def delist(
        self,
        caller: Identity,
        seller: Identity,
        precondition: Optional[Precondition] = None,
    ) -> EscrowStatus:
        """
        Seller withdrawal of a listing nobody has bought. No funds move.

        Raises:
            UnauthorizedError: caller is not the controller, or seller does not match
            InvalidStateError: not CREATED
        """
        self._require_controller(caller)
        with self._guard:
            _check(precondition)
            self._require_state(EscrowState.CREATED, "delist")
            if seller != self.terms.seller:
                raise UnauthorizedError(
                    f"Only the seller can delist listing {self.listing_id}"
                )
            now = self._clock.current_time
            new_status = self._transition(
                now, state=EscrowState.CANCELLED, cancel_reason=DELIST_REASON
            )
            self._emit_cancelled(now, DELIST_REASON, refunded=Decimal("0"))
            return new_status

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _require_controller(self, caller: Identity) -> None:
        if caller != self.controller:
            raise UnauthorizedError(
                f"{caller} is not the controller of listing {self.listing_id}"
            )

    def _require_state(self, expected: EscrowState, action: str) -> None:
        current = self._status.state
        if current != expected:
            raise InvalidStateError(
                f"Cannot {action} listing {self.listing_id}: state is {current.value}, "
                f"expected {expected.value}"
            )

    def _release(self, to: Identity, what: str) -> None:
        """Move the full price out of custody."""
        if not self._ledger.transfer(self.address, to, self.terms.price):
            raise LedgerTransferError(
                f"Ledger rejected {what} of {self.terms.price} from {self.address} to {to}"
            )

    def _transition(self, now: datetime, **changes) -> EscrowStatus:
        """Commit a new status, record it, and notify the listener."""
        old_status = self._status
        new_status = replace(old_status, **changes)
        change = StateChange(self.listing_id, old_status, new_status, now)
        self._status = new_status
        self.history.append(change)
        if self.verbose:
            print(f"  #{self.listing_id}: {old_status.state.value} → {new_status.state.value}")
        if self._on_transition is not None:
            self._on_transition(self, change)
        return new_status

    def _emit_cancelled(self, now: datetime, reason: str, refunded: Decimal) -> None:
        if self._events is None:
            return
        self._events.emit(
            EventType.ESCROW_CANCELLED,
            self.listing_id,
            now,
            buyer=self._status.buyer,
            seller=self.terms.seller,
            reason=reason,
            refunded=refunded,
        )

    def __repr__(self) -> str:
        return f"Escrow(#{self.listing_id}, {self.state.value}, price={self.terms.price})"


def _require_identity(identity: Identity, name: str) -> None:
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationError(f"{name} must be a non-empty identity")


def _check(precondition: Optional[Precondition]) -> None:
    if precondition is not None:
        precondition()
