"""
marketplace - Custodial Escrow Marketplace

Sellers list items, buyers pay into a per-listing escrow, and the escrow
releases funds to the seller on confirmed delivery or refunds the buyer on
timeout or administrator cancellation. A tiered platform fee is collected at
purchase time.

Usage:
    from decimal import Decimal
    from marketplace import Ledger, LogicalClock, Registry, Category

    ledger = Ledger("main", verbose=False)
    clock = LogicalClock()
    registry = Registry(ledger, clock, admin="admin", fee_recipient="treasury")

    ledger.mint("bob", Decimal("5000"))
    listing_id = registry.create_listing(
        "alice", "Camera", "Mirrorless body", "ipfs://camera",
        Decimal("1000"), Category.ELECTRONICS, 48,
    )

    # Buyer authorizes the price to the escrow and the fee to the registry
    escrow = registry.get_escrow(listing_id)
    ledger.approve("bob", escrow.address, Decimal("1000"))
    ledger.approve("bob", registry.address, registry.quote_fee(listing_id))
    registry.buy("bob", listing_id)

    registry.confirm_delivery("bob", listing_id)   # 1000 released to alice
"""

# Core types
from .core import (
    TokenLedger,
    Clock,
    Identity,
    Token,
    Move,
    ListingTerms,
    EscrowStatus,
    StateChange,
    ListingInfo,
    ListingPage,
    RegistryStats,
    EscrowState,
    Category,
    EventType,
    ExecuteResult,
    MarketplaceError,
    ValidationError,
    SelfPurchaseError,
    InvalidStateError,
    UnauthorizedError,
    InsufficientFundsError,
    LedgerTransferError,
    InsufficientAuthorizationError,
    DeadlineNotReachedError,
    NotFoundError,
    PausedError,
    ReentrancyError,
    LedgerError,
    token,
    to_amount,
    escrow_address,
    SYSTEM_WALLET,
    PREMIUM_CATEGORY,
    HIGH_VALUE_THRESHOLD,
    MAX_PAGE_SIZE,
    TIMEOUT_REASON,
    DELIST_REASON,
)

# Collaborators
from .clock import LogicalClock
from .guard import ReentrancyGuard
from .events import DeliveryFailure, Event, EventLog, EventSubscriber
from .ledger import Ledger, LedgerEntry

# Fees
from .fees import FeeSchedule, DEFAULT_FEE_SCHEDULE, calculate_fee

# Escrow and registry
from .escrow import Escrow
from .registry import Registry, ListingPredicate

__all__ = [
    # Protocols
    'TokenLedger', 'Clock', 'Identity',
    # Records
    'Token', 'Move', 'ListingTerms', 'EscrowStatus', 'StateChange',
    'ListingInfo', 'ListingPage', 'RegistryStats',
    # Enums
    'EscrowState', 'Category', 'EventType', 'ExecuteResult',
    # Exceptions
    'MarketplaceError', 'ValidationError', 'SelfPurchaseError',
    'InvalidStateError', 'UnauthorizedError', 'InsufficientFundsError',
    'LedgerTransferError', 'InsufficientAuthorizationError',
    'DeadlineNotReachedError', 'NotFoundError', 'PausedError',
    'ReentrancyError', 'LedgerError',
    # Helpers and constants
    'token', 'to_amount', 'escrow_address', 'SYSTEM_WALLET',
    'PREMIUM_CATEGORY', 'HIGH_VALUE_THRESHOLD', 'MAX_PAGE_SIZE',
    'TIMEOUT_REASON', 'DELIST_REASON',
    # Components
    'LogicalClock', 'ReentrancyGuard', 'Event', 'EventLog', 'EventSubscriber',
    'DeliveryFailure',
    'Ledger', 'LedgerEntry', 'FeeSchedule', 'DEFAULT_FEE_SCHEDULE',
    'calculate_fee', 'Escrow', 'Registry', 'ListingPredicate',
]

__version__ = '1.0.0'
