"""
Core types and pure functions for the escrow marketplace.

This module provides the foundational data structures and protocols for the marketplace:
1. Protocols: TokenLedger for the value-transfer collaborator, Clock for logical time
2. Immutable data structures: Token, Move, ListingTerms, EscrowStatus, StateChange
3. Read models: ListingInfo, ListingPage, RegistryStats
4. Exceptions: MarketplaceError taxonomy and LedgerError for ledger misuse
5. Constants: listing limits, fee tiers, pagination bounds

Nothing in this module mutates marketplace state. Escrow and Registry are the
only classes that drive transitions, and they do so by replacing frozen records
wholesale so that any reader always sees a consistent snapshot.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
from typing import (
    Any, ContextManager, Dict, Optional, Protocol, Tuple, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Amounts are Decimal throughout. The global context is configured once at
# import time so fee arithmetic is reproducible.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_MARKETPLACE_DECIMAL_CONTEXT = getcontext()
_MARKETPLACE_DECIMAL_CONTEXT.prec = 50
_MARKETPLACE_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for token issuance. Exempt from balance validation.
SYSTEM_WALLET = "system"

# Listing input limits.
MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000
MAX_MEDIA_REF_LENGTH = 256
MAX_PRICE = Decimal("1000000000")
MIN_DELIVERY_HOURS = 1
MAX_DELIVERY_HOURS = 720

# Listings priced at or above this are flagged high-value at creation.
HIGH_VALUE_THRESHOLD = Decimal("10000")

# Fee tiers, in basis points of the price.
BPS_DENOMINATOR = 10_000
DEFAULT_PLATFORM_FEE_BPS = 250
MAX_PLATFORM_FEE_BPS = 1000
HIGH_VALUE_FEE_BPS = 100
DEFAULT_PREMIUM_FEE_BPS = 500
MAX_PREMIUM_FEE_BPS = 1000

# Upper bound on any page or filtered scan result.
MAX_PAGE_SIZE = 100

TIMEOUT_REASON = "Delivery timeout"
DELIST_REASON = "Delisted by seller"

# Default precision for the marketplace token.
TOKEN_DECIMAL_PLACES = 2


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Opaque authenticated principal (wallet address, user id, ...).
Identity = str

# Mapping from identity to token balance.
BalanceMap = Dict[str, Decimal]


# ============================================================================
# ENUMS
# ============================================================================

class EscrowState(Enum):
    """
    Lifecycle state of a single listing's escrow.

    CREATED:   Listed, no buyer, no funds in custody.
    SOLD:      Price captured into escrow custody, awaiting delivery.
    DELIVERED: Buyer confirmed delivery, price released to seller. Terminal.
    CANCELLED: Refunded (timeout or emergency) or delisted. Terminal.
    """
    CREATED = "created"
    SOLD = "sold"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EscrowState.DELIVERED, EscrowState.CANCELLED)


class Category(Enum):
    """Closed set of listing categories."""
    ELECTRONICS = "electronics"
    FASHION = "fashion"
    HOME = "home"
    BOOKS = "books"
    SPORTS = "sports"
    COLLECTIBLES = "collectibles"
    SERVICES = "services"
    PREMIUM = "premium"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> 'Category':
        """Accept a Category or its string value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError(f"Unknown category: {value!r}")


# Listings in this category pay the premium fee tier.
PREMIUM_CATEGORY = Category.PREMIUM


class EventType(Enum):
    """Kinds of events published for off-core indexing."""
    LISTING_CREATED = "listing_created"
    LISTING_SOLD = "listing_sold"
    FEE_COLLECTED = "fee_collected"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    ESCROW_CANCELLED = "escrow_cancelled"
    PAUSED = "paused"
    UNPAUSED = "unpaused"
    FEE_UPDATED = "fee_updated"
    FEE_RECIPIENT_UPDATED = "fee_recipient_updated"
    ADMIN_TRANSFER_STARTED = "admin_transfer_started"
    ADMIN_TRANSFERRED = "admin_transferred"
    EMERGENCY_WITHDRAWAL = "emergency_withdrawal"


class ExecuteResult(Enum):
    """
    Outcome of a ledger execution attempt.

    APPLIED: All moves were validated and applied.
    REJECTED: Validation failed (insufficient balance or allowance); nothing changed.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class MarketplaceError(Exception):
    """Base exception for all marketplace errors."""
    pass


class ValidationError(MarketplaceError):
    """Malformed input. No state change occurred; retry with corrected input."""
    pass


class SelfPurchaseError(ValidationError):
    """Raised when a seller attempts to buy their own listing."""
    pass


class InvalidStateError(MarketplaceError):
    """Operation is illegal for the listing's current state. No state change occurred."""
    pass


class UnauthorizedError(MarketplaceError):
    """Caller identity is not allowed to perform the operation."""
    pass


class InsufficientFundsError(MarketplaceError):
    """Ledger balance or authorization of the payer is below the required amount."""
    pass


class LedgerTransferError(InsufficientFundsError):
    """A ledger primitive reported failure; the enclosing operation was aborted."""
    pass


class InsufficientAuthorizationError(MarketplaceError):
    """Buyer has not pre-authorized the price to the escrow or the fee to the registry."""
    pass


class DeadlineNotReachedError(MarketplaceError):
    """Timeout refund requested at or before the delivery deadline."""
    pass


class NotFoundError(MarketplaceError):
    """No listing exists with the given identifier."""
    pass


class PausedError(MarketplaceError):
    """The registry is administratively paused."""
    pass


class ReentrancyError(MarketplaceError):
    """An operation re-entered a guard already held by the same thread."""
    pass


class LedgerError(Exception):
    """Base exception for misuse of the token ledger itself."""
    pass


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Clock(Protocol):
    """Monotonically non-decreasing logical time source supplied by the environment."""

    @property
    def current_time(self) -> datetime:
        ...


@runtime_checkable
class TokenLedger(Protocol):
    """
    Value-transfer collaborator consumed by the escrow engine.

    The marketplace only ever moves value through transfer() and transfer_from(),
    and treats both as fallible: a False return aborts the calling operation.

    atomic() opens a scope in which every ledger mutation is rolled back if the
    scope exits with an exception. The escrow engine relies on it to make
    "capture price, then debit fee" indivisible.
    """

    @property
    def symbol(self) -> str:
        ...

    @property
    def decimal_places(self) -> Optional[int]:
        ...

    def balance_of(self, owner: Identity) -> Decimal:
        ...

    def allowance(self, owner: Identity, spender: Identity) -> Decimal:
        ...

    def transfer(self, sender: Identity, to: Identity, amount: Decimal) -> bool:
        ...

    def transfer_from(
        self, spender: Identity, owner: Identity, to: Identity, amount: Decimal
    ) -> bool:
        ...

    def atomic(self) -> ContextManager[Any]:
        ...


# ============================================================================
# TOKEN AND MOVE
# ============================================================================

@dataclass(frozen=True, slots=True)
class Token:
    """
    Definition of the fungible value unit held by a ledger.

    Attributes:
        symbol: Short identifier (e.g., "MKT", "USDC").
        name: Human-readable name.
        decimal_places: Rounding precision for balances (None = no rounding).
    """
    symbol: str
    name: str
    decimal_places: Optional[int] = TOKEN_DECIMAL_PLACES

    def round(self, value: Decimal) -> Decimal:
        """Quantize a value to this token's precision (banker's rounding)."""
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        return value.quantize(quantizer, rounding=ROUND_HALF_EVEN)


def token(symbol: str, name: str, decimal_places: Optional[int] = TOKEN_DECIMAL_PLACES) -> Token:
    """
    Create a token definition.

    Args:
        symbol: Token code (e.g., "MKT").
        name: Full name of the token.
        decimal_places: Number of decimal places for amounts (default: 2).
    """
    if not symbol or not symbol.strip():
        raise ValueError("Token symbol cannot be empty")
    if decimal_places is not None and decimal_places < 0:
        raise ValueError(f"decimal_places must be non-negative, got {decimal_places}")
    return Token(symbol=symbol, name=name, decimal_places=decimal_places)


def to_amount(value: Any) -> Decimal:
    """
    Convert an int, str or Decimal amount to a finite Decimal.

    Floats are converted through str() to avoid binary artifacts. Booleans are
    rejected even though they are ints.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Amount must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        try:
            amount = Decimal(str(value))
        except ArithmeticError:
            raise ValidationError(f"Amount is not a number: {value!r}") from None
    else:
        raise ValidationError(f"Amount must be numeric, got {type(value).__name__}")
    if not amount.is_finite():
        raise ValidationError(f"Amount must be finite, got {value!r}")
    return amount


@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of tokens between two identities.

    Attributes:
        quantity: The amount to transfer (must be a finite, positive Decimal).
        source: Identity debited.
        dest: Identity credited.
        reference: What generated the move (e.g., "escrow:7:capture").

    All fields are validated in __post_init__.
    """
    quantity: Decimal
    source: str
    dest: str
    reference: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.reference or not self.reference.strip():
            raise ValueError("Move reference cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if not self.quantity.is_finite():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity}: {self.source}→{self.dest} [{self.reference}])"


# ============================================================================
# LISTING RECORDS
# ============================================================================

def escrow_address(listing_id: int) -> Identity:
    """Ledger identity that holds custody for a listing."""
    return f"escrow:{listing_id}"


@dataclass(frozen=True, slots=True)
class ListingTerms:
    """
    Immutable sale offer captured at listing creation.

    Attributes:
        title: Short listing title.
        description: Free-text description.
        media_ref: Reference to off-core media (URI, content hash, ...).
        category: One of the closed Category set.
        price: Sale price in ledger tokens.
        delivery_hours: Delivery window granted after purchase.
        seller: Identity that created the listing and receives the price.
        is_high_value: price >= HIGH_VALUE_THRESHOLD, computed once.
        created_at: Logical time of creation.
    """
    title: str
    description: str
    media_ref: str
    category: Category
    price: Decimal
    delivery_hours: int
    seller: Identity
    is_high_value: bool
    created_at: datetime

    @property
    def delivery_window(self) -> timedelta:
        return timedelta(hours=self.delivery_hours)


@dataclass(frozen=True, slots=True)
class EscrowStatus:
    """
    Mutable-by-replacement state of one escrow.

    buyer, purchase_time and delivery_deadline are None until SOLD.
    cancel_reason is None unless CANCELLED.
    """
    state: EscrowState = EscrowState.CREATED
    buyer: Optional[Identity] = None
    purchase_time: Optional[datetime] = None
    delivery_deadline: Optional[datetime] = None
    cancel_reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StateChange:
    """
    Record of one escrow transition for the audit trail.

    Stores complete before/after snapshots so the history can be replayed
    or diffed without consulting the escrow.
    """
    listing_id: int
    old_status: EscrowStatus
    new_status: EscrowStatus
    timestamp: datetime

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Fields that differ between old and new status, as (old, new) pairs."""
        changes = {}
        for f in fields(EscrowStatus):
            name = f.name
            old_val = getattr(self.old_status, name)
            new_val = getattr(self.new_status, name)
            if old_val != new_val:
                changes[name] = (old_val, new_val)
        return changes

    def __repr__(self) -> str:
        return (
            f"StateChange(#{self.listing_id}: "
            f"{self.old_status.state.value}→{self.new_status.state.value} @ {self.timestamp})"
        )


@dataclass(frozen=True, slots=True)
class ListingInfo:
    """Side-effect-free projection of a listing's terms and escrow status."""
    listing_id: int
    escrow_address: Identity
    title: str
    description: str
    media_ref: str
    category: Category
    price: Decimal
    delivery_hours: int
    seller: Identity
    is_high_value: bool
    created_at: datetime
    state: EscrowState
    buyer: Optional[Identity]
    purchase_time: Optional[datetime]
    delivery_deadline: Optional[datetime]
    cancel_reason: Optional[str]

    @classmethod
    def from_parts(
        cls,
        listing_id: int,
        terms: ListingTerms,
        status: EscrowStatus,
    ) -> 'ListingInfo':
        return cls(
            listing_id=listing_id,
            escrow_address=escrow_address(listing_id),
            title=terms.title,
            description=terms.description,
            media_ref=terms.media_ref,
            category=terms.category,
            price=terms.price,
            delivery_hours=terms.delivery_hours,
            seller=terms.seller,
            is_high_value=terms.is_high_value,
            created_at=terms.created_at,
            state=status.state,
            buyer=status.buyer,
            purchase_time=status.purchase_time,
            delivery_deadline=status.delivery_deadline,
            cancel_reason=status.cancel_reason,
        )


@dataclass(frozen=True, slots=True)
class ListingPage:
    """
    One bounded slice of listings in creation order.

    Attributes:
        items: Listings on this page.
        offset: Position in the id sequence where the scan started.
        limit: Maximum number of items requested.
        next_offset: Where to resume, or None when the sequence is exhausted.
        total: Number of listings in the registry when the page was read.
    """
    items: Tuple[ListingInfo, ...]
    offset: int
    limit: int
    next_offset: Optional[int]
    total: int

    @property
    def listing_ids(self) -> Tuple[int, ...]:
        return tuple(info.listing_id for info in self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True, slots=True)
class RegistryStats:
    """Aggregate registry counters. Per-state counts are kept on every transition."""
    total_listings: int
    total_sales: int
    total_volume: Decimal
    total_fees_collected: Decimal
    state_counts: Dict[EscrowState, int] = field(default_factory=dict)

    def count(self, state: EscrowState) -> int:
        return self.state_counts.get(state, 0)
