"""
ledger.py - In-Process Token Ledger

The Ledger is the value-transfer collaborator the escrow engine consumes through
the TokenLedger protocol. It is deliberately small: one fungible token, balances,
allowances, and two ways to move value.

Key responsibilities:
    - Implements TokenLedger (balance_of, allowance, transfer, transfer_from, atomic)
    - Applies each transfer atomically: validated first, then applied, or rejected untouched
    - Provides atomic() scopes that roll back every mutation if the scope raises
    - Always validates and always logs: every applied batch lands in transaction_log
    - Verifies conservation: issuance is the only way tokens enter circulation
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple, Any
import threading
from decimal import Decimal

from .core import (
    # Types
    Move, Token, ExecuteResult, BalanceMap, Identity,
    # Constants
    SYSTEM_WALLET,
    # Exceptions
    LedgerError,
    # Helpers
    token, to_amount,
)


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """
    An applied, immutable batch of moves.

    Attributes:
        sequence_number: Monotonic position within the ledger
        moves: Transfers applied together
        kind: Operation that produced the batch ("mint", "transfer", "transfer_from")
        spender: Identity that spent an allowance, for transfer_from entries
    """
    sequence_number: int
    moves: Tuple[Move, ...]
    kind: str
    spender: Optional[Identity] = None

    def __repr__(self) -> str:
        moves = "; ".join(repr(m) for m in self.moves)
        return f"LedgerEntry(#{self.sequence_number} {self.kind}: {moves})"


class Ledger:
    """
    Single-token ledger with allowances, atomic scopes and an audit trail.

    Identities do not need registering: any non-empty string can hold a balance.
    SYSTEM_WALLET issues tokens and is exempt from the non-negative balance check,
    so the sum over every identity, system included, is always zero.

    Thread Safety:
        All mutations take an internal re-entrant lock. atomic() holds that lock
        for the whole scope, so a scope is never interleaved with another thread's
        transfers.

    Example:
        ledger = Ledger("main", verbose=False)
        ledger.mint("alice", Decimal("1000"))
        ledger.approve("alice", "escrow:1", Decimal("250"))
        ledger.transfer_from("escrow:1", "alice", "escrow:1", Decimal("250"))
    """

    def __init__(
        self,
        name: str,
        unit: Optional[Token] = None,
        verbose: bool = True,
        test_mode: bool = False,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            unit: Token held by this ledger (default: MKT, 2 decimal places)
            verbose: Print one line per applied or rejected operation (default: True)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        self.name = name
        self.token: Token = unit or token("MKT", "Marketplace Token")
        self.balances: Dict[Identity, Decimal] = defaultdict(lambda: Decimal("0"))
        self.allowances: Dict[Tuple[Identity, Identity], Decimal] = {}
        self.transaction_log: List[LedgerEntry] = []
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        self._lock = threading.RLock()

    # ========================================================================
    # TokenLedger PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def symbol(self) -> str:
        return self.token.symbol

    @property
    def decimal_places(self) -> Optional[int]:
        return self.token.decimal_places

    def balance_of(self, owner: Identity) -> Decimal:
        """Current balance (Decimal("0") for identities never seen)."""
        return self.balances.get(owner, Decimal("0"))

    def allowance(self, owner: Identity, spender: Identity) -> Decimal:
        """Amount spender may still move out of owner's balance."""
        return self.allowances.get((owner, spender), Decimal("0"))

    def get_balances(self) -> BalanceMap:
        """All non-zero balances, system wallet included."""
        return {w: b for w, b in self.balances.items() if b != 0}

    def total_supply(self) -> Decimal:
        """
        Sum of balances across every identity, system wallet included.

        Identities are sorted before summation for a deterministic accumulation
        order. Conservation requires this to be exactly zero.
        """
        return sum((self.balances[w] for w in sorted(self.balances)), Decimal("0"))

    def circulating_supply(self) -> Decimal:
        """Tokens issued out of the system wallet and not yet redeemed."""
        return -self.balance_of(SYSTEM_WALLET)

    def verify_double_entry(
        self,
        expected_circulating: Optional[Decimal] = None,
        tolerance: Decimal = Decimal("1e-9"),
    ) -> Dict[str, Any]:
        """
        Verify that no transfer created or destroyed value.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation checks hold
            - 'total_supply': Decimal - Sum over every identity (must be zero)
            - 'circulating': Decimal - Tokens issued out of the system wallet
            - 'discrepancies': List[str] - Human-readable violations

        Example:
            result = ledger.verify_double_entry(expected_circulating=Decimal("30000"))
            assert result['valid'], result['discrepancies']
        """
        discrepancies = []
        total = self.total_supply()
        circulating = self.circulating_supply()
        if abs(total) > tolerance:
            discrepancies.append(f"total supply {total} != 0")
        if expected_circulating is not None and abs(circulating - expected_circulating) > tolerance:
            discrepancies.append(
                f"circulating {circulating} != expected {expected_circulating}"
            )
        for wallet, balance in self.balances.items():
            if wallet != SYSTEM_WALLET and balance < 0:
                discrepancies.append(f"{wallet} has negative balance {balance}")
        return {
            'valid': len(discrepancies) == 0,
            'total_supply': total,
            'circulating': circulating,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def mint(self, to: Identity, amount: Decimal) -> None:
        """
        Issue new tokens to an identity out of SYSTEM_WALLET.

        Raises:
            ValueError: If amount is not positive
        """
        quantity = self.token.round(to_amount(amount))
        move = Move(quantity, SYSTEM_WALLET, to, "mint")
        self.execute([move], kind="mint")

    def approve(self, owner: Identity, spender: Identity, amount: Decimal) -> None:
        """Set the amount spender may move out of owner's balance (overwrites)."""
        if not owner or not spender:
            raise ValueError("owner and spender cannot be empty")
        quantity = to_amount(amount)
        if quantity < 0:
            raise ValueError(f"Allowance cannot be negative, got {quantity}")
        with self._lock:
            self.allowances[(owner, spender)] = quantity

    def transfer(self, sender: Identity, to: Identity, amount: Decimal) -> bool:
        """
        Move sender's own tokens. Returns False (and changes nothing) if rejected.

        A transfer onto the sender itself changes no balance: it succeeds when
        the sender holds the amount and is not logged.
        """
        quantity = self.token.round(to_amount(amount))
        if sender == to:
            with self._lock:
                return self._covers(sender, quantity)
        move = Move(quantity, sender, to, "transfer")
        return self.execute([move], kind="transfer") == ExecuteResult.APPLIED

    def transfer_from(
        self, spender: Identity, owner: Identity, to: Identity, amount: Decimal
    ) -> bool:
        """
        Move owner's tokens on the strength of an allowance granted to spender.

        Returns False (and changes nothing) if the allowance or the balance is
        short. On success the allowance is reduced by amount, including when
        owner and to are the same identity and no balance changes.
        """
        quantity = self.token.round(to_amount(amount))
        with self._lock:
            granted = self.allowance(owner, spender)
            if granted < quantity:
                if self.verbose:
                    print(f"✗ REJECTED: allowance {owner}→{spender} {granted} < {quantity}")
                return False
            if owner == to:
                if not self._covers(owner, quantity):
                    return False
            else:
                move = Move(quantity, owner, to, f"transfer_from:{spender}")
                result = self.execute([move], kind="transfer_from", spender=spender)
                if result != ExecuteResult.APPLIED:
                    return False
            self.allowances[(owner, spender)] = granted - quantity
            return True

    def _covers(self, owner: Identity, quantity: Decimal) -> bool:
        if not quantity.is_finite() or quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {quantity}")
        held = self.balance_of(owner)
        if owner != SYSTEM_WALLET and held < quantity:
            if self.verbose:
                print(f"✗ REJECTED: {owner} holds {held} < {quantity}")
            return False
        return True

    def set_balance(self, wallet_id: Identity, quantity: Decimal) -> None:
        """
        Set a balance directly.

        WARNING: This bypasses double-entry accounting and is only available in
        test mode. Use mint() and transfer() otherwise.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use mint() and transfer() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        with self._lock:
            self.balances[wallet_id] = to_amount(quantity)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def execute(
        self,
        moves: List[Move],
        kind: str = "batch",
        spender: Optional[Identity] = None,
    ) -> ExecuteResult:
        """
        Apply a batch of moves atomically.

        All moves succeed together or all fail together. A batch is rejected if
        any non-system identity would end with a negative balance.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.REJECTED if validation failed
        """
        if not moves:
            return ExecuteResult.APPLIED

        with self._lock:
            valid, reason = self._validate(moves)
            if not valid:
                if self.verbose:
                    print(f"✗ REJECTED: {reason}")
                return ExecuteResult.REJECTED

            sequence = self._next_sequence
            self._next_sequence += 1
            entry = LedgerEntry(
                sequence_number=sequence,
                moves=tuple(moves),
                kind=kind,
                spender=spender,
            )
            self._execute_moves(entry.moves)
            self.transaction_log.append(entry)

        if self.verbose:
            print(f"✓ APPLIED: {entry!r}")
        return ExecuteResult.APPLIED

    def _validate(self, moves: List[Move]) -> Tuple[bool, str]:
        """
        Validate a batch against balance constraints.

        Returns:
            Tuple of (success: bool, reason: str)
        """
        net: Dict[Identity, Decimal] = {}
        for move in moves:
            net[move.source] = self.token.round(net.get(move.source, Decimal("0")) - move.quantity)
            net[move.dest] = self.token.round(net.get(move.dest, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt: it is the issuance counterparty
        for wallet, delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            proposed = self.token.round(self.balance_of(wallet) + delta)
            if proposed < 0:
                return False, f"{wallet} {self.symbol}: {proposed} < 0"
        return True, ""

    def _execute_moves(self, moves) -> None:
        for move in moves:
            self.balances[move.source] = self.token.round(self.balances[move.source] - move.quantity)
            self.balances[move.dest] = self.token.round(self.balances[move.dest] + move.quantity)

    # ========================================================================
    # ATOMIC SCOPES
    # ========================================================================

    @contextmanager
    def atomic(self) -> Iterator['Ledger']:
        """
        Run a block of ledger operations as one unit.

        Balances, allowances and the transaction log are snapshotted on entry and
        restored if the block raises; the exception is then re-raised unchanged.
        Scopes nest: an inner failure caught inside an outer scope restores the
        inner snapshot only.
        """
        with self._lock:
            balances = dict(self.balances)
            allowances = dict(self.allowances)
            log_length = len(self.transaction_log)
            next_sequence = self._next_sequence
            try:
                yield self
            except BaseException:
                self.balances = defaultdict(lambda: Decimal("0"), balances)
                self.allowances = allowances
                del self.transaction_log[log_length:]
                self._next_sequence = next_sequence
                if self.verbose:
                    print("✗ ROLLED BACK: atomic scope raised")
                raise

    def __repr__(self) -> str:
        return f"Ledger({self.name}, {self.symbol}, entries={len(self.transaction_log)})"
