"""
ledger.py - Stateful Double-Entry Ledger backing custody and payments

The Ledger holds every wallet balance the loan registry's collaborators act on:
the cash unit paid through the PaymentRail and one unit per collateral token.

Key responsibilities:
    - Executes transactions atomically (all moves succeed or all fail)
    - Runs wallet receive hooks after applying a transaction; a hook that
      raises or returns False rejects and unwinds the whole transaction
    - Maintains wallet balances and unit (asset) definitions
    - Tracks logical time (advance_time) for deadline checks
    - Provides checkpoint() / rollback() by unwinding the transaction log
"""

from __future__ import annotations
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Set, Optional, Any
import logging

from .core import (
    # Types
    Move, Transaction, Unit, PendingTransaction, ExecuteResult, ReceiveHook,
    # Constants
    SYSTEM_WALLET,
    # Exceptions
    LedgerError, UnitNotRegistered, WalletNotRegistered,
)

logger = logging.getLogger(__name__)


class Ledger:
    """
    Double-entry ledger with full validation and audit trail.

    Implements the Clock protocol, so the registry can read deadlines off the
    same logical time the ledger stamps its transactions with.

    Design Principles:
        - Always validates: every transaction is checked against registration
          and balance constraints before anything changes.
        - Always logs: every applied transaction is recorded, which is what
          makes rollback() possible.

    Thread Safety:
        Not thread-safe on its own. The registry serializes the operations that
        drive it.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(cash("ETH", "Ether"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        tx = build_transaction(ledger, [
            Move(100, "ETH", "alice", "bob", "payment_001")
        ])
        result = ledger.execute(tx)
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Log every applied transaction at INFO (default: True)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.receive_hooks: Dict[str, ReceiveHook] = {}
        self.transaction_log: List[Transaction] = []
        self.last_rejection: Optional[str] = None
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        # Monotonic sequence counter for execution ordering
        self._next_sequence: int = 0
        # Inverted index mapping unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, int]] = defaultdict(dict)

        # Auto-register the system wallet (used for issuance)
        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(int)

    # ========================================================================
    # READ-ONLY METHODS
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, 0)

    def get_positions(self, unit_symbol: str) -> Dict[str, int]:
        """Get all non-zero positions for a unit, as {wallet: quantity}."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> Dict[str, int]:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return {sym: qty for sym, qty in self.balances[wallet_id].items() if qty}

    def total_supply(self, unit_symbol: str) -> int:
        """
        Total supply of a unit across all wallets, SYSTEM_WALLET included.

        Always zero for units only ever moved by transactions (double entry).
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(self.balances[w].get(unit_symbol, 0) for w in sorted(self.registered_wallets))

    def verify_double_entry(self) -> Dict[str, Any]:
        """
        Verify that conservation holds for all units.

        Every unit's balances must sum to zero across all wallets including
        SYSTEM_WALLET, which carries the negative of everything issued.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[str, int] - Current total for each unit
            - 'discrepancies': List[Dict] - Units whose total is non-zero

        Example:
            result = ledger.verify_double_entry()
            assert result['valid'], f"Conservation violated: {result['discrepancies']}"
        """
        supplies = {}
        discrepancies = []
        for unit_symbol in self.units:
            total = self.total_supply(unit_symbol)
            supplies[unit_symbol] = total
            if total != 0:
                discrepancies.append({'unit': unit_symbol, 'actual': total})
        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str, on_receive: Optional[ReceiveHook] = None) -> str:
        """
        Register a new wallet in the ledger.

        Args:
            wallet_id: Unique identifier for the wallet
            on_receive: Optional hook called as on_receive(ledger, move) for every
                        move credited to this wallet. Returning False or raising
                        rejects the transaction.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(int)
        if on_receive is not None:
            self.receive_hooks[wallet_id] = on_receive
        return wallet_id

    def set_receive_hook(self, wallet_id: str, hook: Optional[ReceiveHook]) -> None:
        """Install, replace, or (with None) remove a wallet's receive hook."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if hook is None:
            self.receive_hooks.pop(wallet_id, None)
        else:
            self.receive_hooks[wallet_id] = hook

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (asset type) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            logger.info("Registered unit %s (%s) [%s]", unit.symbol, unit.name, unit.unit_type)

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """
        Set a wallet's balance for a unit directly.

        WARNING: This bypasses double-entry accounting and is only available in
        test mode. Use build_transaction() and execute() otherwise.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}"""
        return f"exec:{self.name}:{sequence:012d}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves succeed together or all fail together. After the moves are
        applied, the receive hook of every credited wallet runs (in move order).
        A hook may itself execute further transactions; if any hook rejects,
        this transaction and everything executed after it is unwound.

        Args:
            pending: PendingTransaction to execute

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.REJECTED if validation failed or a hook declined;
            the reason is kept in last_rejection
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        valid, reason = self._validate_pending(pending)
        if not valid:
            return self._reject(reason)

        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            moves=pending.moves,
            timestamp=pending.timestamp,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )
        self._execute_moves(tx.moves)
        self.transaction_log.append(tx)

        reason = self._run_receive_hooks(tx)
        if reason:
            self.rollback(sequence)
            return self._reject(reason)

        self.last_rejection = None
        if self.verbose:
            logger.info("Applied %r", tx, extra={"event": "ledger.applied", "exec_id": tx.exec_id})
        return ExecuteResult.APPLIED

    def _reject(self, reason: str) -> ExecuteResult:
        self.last_rejection = reason
        logger.warning("Rejected ledger transaction: %s", reason,
                       extra={"event": "ledger.rejected"})
        return ExecuteResult.REJECTED

    def _run_receive_hooks(self, tx: Transaction) -> str:
        """Run receive hooks for credited wallets. Returns a rejection reason or ''."""
        for move in tx.moves:
            hook = self.receive_hooks.get(move.dest)
            if hook is None:
                continue
            try:
                accepted = hook(self, move)
            except Exception as exc:  # hook code is untrusted; any failure rejects
                return f"{move.dest} receive hook raised {type(exc).__name__}: {exc}"
            if accepted is False:
                return f"{move.dest} declined {move.quantity} {move.unit_symbol}"
        return ""

    def _validate_pending(self, pending: PendingTransaction) -> tuple:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Balance constraint validation (min/max balance limits)

        Returns:
            Tuple of (success: bool, reason: str)
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

        net: Dict[tuple, int] = {}
        for move in pending.moves:
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = net.get(key_src, 0) - move.quantity
            net[key_dst] = net.get(key_dst, 0) + move.quantity

        # SYSTEM_WALLET is exempt from balance validation (issuance)
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = self.balances[wallet][unit_sym] + delta
            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if unit.max_balance is not None and proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """Keep the unit -> {wallet -> quantity} index in step; zero positions are dropped."""
        if quantity:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _apply_move(self, source: str, dest: str, unit_symbol: str, quantity: int) -> None:
        new_src = self.balances[source][unit_symbol] - quantity
        self.balances[source][unit_symbol] = new_src
        self._update_position_index(source, unit_symbol, new_src)
        new_dst = self.balances[dest][unit_symbol] + quantity
        self.balances[dest][unit_symbol] = new_dst
        self._update_position_index(dest, unit_symbol, new_dst)

    def _execute_moves(self, moves) -> None:
        for move in moves:
            self._apply_move(move.source, move.dest, move.unit_symbol, move.quantity)

    # ========================================================================
    # CHECKPOINT / ROLLBACK
    # ========================================================================

    def checkpoint(self) -> int:
        """Return a token for the current position in the transaction log."""
        return self._next_sequence

    def rollback(self, checkpoint: int) -> None:
        """
        Undo every transaction executed since `checkpoint`.

        Walks the transaction log backwards, reversing each transaction's moves,
        and truncates the log. Rolling back to a checkpoint at or beyond the
        current position is a no-op.

        Raises:
            LedgerError: If checkpoint is negative
        """
        if checkpoint < 0:
            raise LedgerError(f"Invalid checkpoint {checkpoint}")
        while self.transaction_log and self.transaction_log[-1].sequence_number >= checkpoint:
            tx = self.transaction_log.pop()
            for move in reversed(tx.moves):
                self._apply_move(move.dest, move.source, move.unit_symbol, move.quantity)
            if self.verbose:
                logger.info("Rolled back %s", tx.exec_id, extra={"event": "ledger.rollback"})
        self._next_sequence = min(self._next_sequence, checkpoint)
