"""
Core types and pure functions for the NFT-collateralized loan registry.

This module provides the foundational data structures and protocols:
1. Protocols: Clock, AssetCustodian, PaymentRail, Reversible
2. Immutable records: Loan, LoanEvent, RegistryConfig
3. Ledger records: Move, PendingTransaction, Transaction, Unit
4. Exceptions: LoanError, CollaboratorError, LedgerError hierarchies
5. Pure functions: interest, repayment amount, deadline and window checks

All functions in this module are pure. No function can mutate registry
or ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import (
    Dict, List, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Interest is charged per whole unit of principal: floor(principal / 100) * rate.
INTEREST_DIVISOR = 100

# Smallest principal for which the interest formula is meaningful
# (one whole unit of the payment rail, expressed in minor units).
MIN_PRINCIPAL = 100

# Wallet identity of the registry when it acts as escrow custodian.
DEFAULT_REGISTRY_ADDRESS = "loan_registry"

# Reserved wallet for issuance (minting NFTs, seeding cash).
SYSTEM_WALLET = "system"

# Default payment currency symbol on the ledger.
DEFAULT_CURRENCY = "ETH"

# Unit type constants (strings, not enum).
UNIT_TYPE_CASH = "CASH"
UNIT_TYPE_NFT = "NFT"

# Notification types
EVENT_LOAN_REQUESTED = "LOAN_REQUESTED"
EVENT_LOAN_FUNDED = "LOAN_FUNDED"
EVENT_REQUEST_CLOSED = "REQUEST_CLOSED"
EVENT_LOAN_REPAID = "LOAN_REPAID"
EVENT_NFT_CEASED = "NFT_CEASED"


# ============================================================================
# ENUMS
# ============================================================================

class LoanStatus(str, Enum):
    """Lifecycle status of a loan."""
    OPEN = "open"         # Collateral escrowed, waiting for a lender
    ACTIVE = "active"     # Funded, deadline running
    CLOSED = "closed"     # Terminal


class Closure(str, Enum):
    """How a loan reached CLOSED."""
    CANCELLED = "cancelled"   # Borrower withdrew the request
    REPAID = "repaid"         # Borrower repaid before the deadline
    SEIZED = "seized"         # Lender took the collateral after the deadline


class ExecuteResult(Enum):
    """
    Outcome of a ledger transaction execution attempt.

    APPLIED: Transaction was validated, applied, and accepted by every recipient.
    REJECTED: Transaction failed validation or a recipient hook declined it.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LoanError(Exception):
    """Base exception for all registry errors."""
    pass


class LoanNotFound(LoanError):
    """Raised when a loan identifier has never been assigned."""
    pass


class WrongState(LoanError):
    """Raised when the loan's status does not allow the operation."""
    pass


class DeadlinePassed(WrongState):
    """Raised when repayment is attempted at or after the deadline."""
    pass


class DeadlineNotReached(WrongState):
    """Raised when seizure is attempted at or before the deadline."""
    pass


class Unauthorized(LoanError):
    """Raised when the caller is not the party the operation requires."""
    pass


class InvalidInput(LoanError, ValueError):
    """Raised for zero duration, empty asset address, or below-minimum principal."""
    pass


class AmountMismatch(LoanError):
    """Raised when the supplied payment differs from the required amount."""

    def __init__(self, expected: int, supplied: int):
        super().__init__(f"payment must be exactly {expected}, got {supplied}")
        self.expected = expected
        self.supplied = supplied


class CustodyTransferFailed(LoanError):
    """Raised when the asset custodian refuses a transfer."""
    pass


class PaymentFailed(LoanError):
    """Raised when the payment rail refuses a payment."""
    pass


class ReentrancyError(LoanError):
    """Raised when a state-changing operation is entered while another is in progress."""
    pass


class CollaboratorError(Exception):
    """Base exception for errors raised by custodians and payment rails."""
    pass


class NotOwner(CollaboratorError):
    """The source wallet does not hold the asset."""
    pass


class NotApproved(CollaboratorError):
    """The operator was not approved by the owner to move the asset."""
    pass


class RecipientRejected(CollaboratorError):
    """The destination wallet cannot accept the asset."""
    pass


class PaymentRejected(CollaboratorError):
    """The payment could not be delivered or collected."""
    pass


class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    pass


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Clock(Protocol):
    """Anything exposing the current logical time. The Ledger implements this."""

    @property
    def current_time(self) -> datetime:
        ...


@runtime_checkable
class AssetCustodian(Protocol):
    """
    Capability to move a non-fungible asset between wallets.

    transfer_asset raises NotOwner if `owner` does not hold the asset,
    NotApproved if `operator` acts without the owner's approval, and
    RecipientRejected if `to` cannot accept it.
    """

    def transfer_asset(
        self,
        owner: str,
        to: str,
        asset_id: int,
        operator: Optional[str] = None,
    ) -> None:
        ...


@runtime_checkable
class PaymentRail(Protocol):
    """
    Capability to move currency in and out of the registry's account.

    pay() delivers `amount` from the registry to `to` and raises
    PaymentRejected if the recipient declines. receive() collects the
    payment a caller attached to an operation.
    """

    def pay(self, to: str, amount: int) -> None:
        ...

    def receive(self, payer: str, amount: int) -> None:
        ...


@runtime_checkable
class Reversible(Protocol):
    """Collaborators that can undo everything done since a checkpoint."""

    def checkpoint(self) -> Any:
        ...

    def rollback(self, checkpoint: Any) -> None:
        ...


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class RegistryConfig:
    """
    Registry parameters fixed at construction.

    Attributes:
        min_principal: Smallest principal accepted by request_loan.
        max_interest_rate_percent: Optional cap on the interest rate.
        max_duration_minutes: Optional cap on the loan duration.
    """
    min_principal: int = MIN_PRINCIPAL
    max_interest_rate_percent: Optional[int] = None
    max_duration_minutes: Optional[int] = None

    def __post_init__(self):
        if self.min_principal < INTEREST_DIVISOR:
            raise ValueError(
                f"min_principal must be at least {INTEREST_DIVISOR}, got {self.min_principal}"
            )


# ============================================================================
# LOAN RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Loan:
    """
    Immutable snapshot of one loan.

    The registry never mutates a Loan in place: every transition stores a new
    instance built with dataclasses.replace(), so a Loan returned by
    get_details() is a stable snapshot.

    Attributes:
        loan_id: Sequential identifier, never reused
        loan_amount: Principal in minor units of the payment rail
        interest_rate_percent: Integer percentage applied per whole unit
        amount_to_be_repaid: Principal plus interest, fixed at request time
        asset_id: Collateral token identifier
        asset_address: Collateral collection address
        loan_duration_minutes: Requested duration
        borrower: Wallet that requested the loan
        status: OPEN, ACTIVE or CLOSED
        lender: Wallet that funded the loan (None until funded)
        loan_duration_end_timestamp: Deadline (None until funded)
        closure: How the loan closed (None until CLOSED)
        requested_at / funded_at / closed_at: Audit timestamps
    """
    loan_id: int
    loan_amount: int
    interest_rate_percent: int
    amount_to_be_repaid: int
    asset_id: int
    asset_address: str
    loan_duration_minutes: int
    borrower: str
    status: LoanStatus = LoanStatus.OPEN
    lender: Optional[str] = None
    loan_duration_end_timestamp: Optional[datetime] = None
    closure: Optional[Closure] = None
    requested_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_funded(self) -> bool:
        return self.loan_duration_end_timestamp is not None

    @property
    def collateral_holder(self) -> Optional[str]:
        """Wallet entitled to the collateral once CLOSED (None while escrowed)."""
        if self.status != LoanStatus.CLOSED:
            return None
        if self.closure == Closure.SEIZED:
            return self.lender
        return self.borrower

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'loan_amount': self.loan_amount,
            'interest_rate_percent': self.interest_rate_percent,
            'amount_to_be_repaid': self.amount_to_be_repaid,
            'asset_id': self.asset_id,
            'asset_address': self.asset_address,
            'loan_duration_minutes': self.loan_duration_minutes,
            'loan_duration_end_timestamp': self.loan_duration_end_timestamp,
            'borrower': self.borrower,
            'lender': self.lender,
            'status': self.status.value,
            'closure': self.closure.value if self.closure else None,
            'requested_at': self.requested_at,
            'funded_at': self.funded_at,
            'closed_at': self.closed_at,
        }


@dataclass(frozen=True, slots=True)
class LoanEvent:
    """
    Notification emitted once per committed transition.

    Attributes:
        event_type: One of the EVENT_* constants
        loan_id: Loan the transition applied to
        borrower: Borrower of the loan
        lender: Lender, for events after funding
        amount: Principal, for LOAN_FUNDED and LOAN_REPAID
        timestamp: Clock time of the transition
        sequence_number: Monotonic within the registry
    """
    event_type: str
    loan_id: int
    borrower: str
    lender: Optional[str] = None
    amount: Optional[int] = None
    timestamp: Optional[datetime] = None
    sequence_number: int = 0

    def __repr__(self) -> str:
        parts = [f"{self.event_type}#{self.sequence_number}", f"loan={self.loan_id}",
                 f"borrower={self.borrower}"]
        if self.lender:
            parts.append(f"lender={self.lender}")
        if self.amount is not None:
            parts.append(f"amount={self.amount}")
        return f"LoanEvent({', '.join(parts)})"


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def _require_non_negative_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidInput(f"{name} cannot be negative, got {value}")


def compute_interest(
    principal: int,
    rate_percent: int,
    min_principal: int = MIN_PRINCIPAL,
) -> int:
    """
    Compute simple interest on a principal.

    interest = floor(principal / 100) * rate_percent

    Args:
        principal: Loan principal in minor units
        rate_percent: Integer interest percentage
        min_principal: Smallest principal for which the division is meaningful

    Returns:
        Interest in minor units

    Raises:
        InvalidInput: If principal is below min_principal or either input is
                      not a non-negative integer

    Example:
        compute_interest(100, 5)   -> 5
        compute_interest(250, 10)  -> 20   (floor(2.5) * 10)
    """
    _require_non_negative_int("principal", principal)
    _require_non_negative_int("rate_percent", rate_percent)
    if principal < min_principal:
        raise InvalidInput(
            f"principal {principal} is below the minimum of {min_principal}"
        )
    return (principal // INTEREST_DIVISOR) * rate_percent


def compute_amount_to_be_repaid(
    principal: int,
    rate_percent: int,
    min_principal: int = MIN_PRINCIPAL,
) -> int:
    """Principal plus interest: principal + floor(principal / 100) * rate_percent."""
    return principal + compute_interest(principal, rate_percent, min_principal)


def compute_deadline(funded_at: datetime, duration_minutes: int) -> datetime:
    """Deadline set at funding time."""
    return funded_at + timedelta(minutes=duration_minutes)


def can_repay(loan: Loan, now: datetime) -> bool:
    """True while the borrower may still repay (strictly before the deadline)."""
    return (
        loan.status == LoanStatus.ACTIVE
        and loan.loan_duration_end_timestamp is not None
        and now < loan.loan_duration_end_timestamp
    )


def can_seize(loan: Loan, now: datetime) -> bool:
    """
    True once the lender may seize (strictly after the deadline).

    At the exact deadline instant neither can_repay nor can_seize holds.
    """
    return (
        loan.status == LoanStatus.ACTIVE
        and loan.loan_duration_end_timestamp is not None
        and now > loan.loan_duration_end_timestamp
    )


def time_remaining(loan: Loan, now: datetime) -> Optional[timedelta]:
    """Time left to repay, clipped at zero. None unless the loan is ACTIVE."""
    if loan.status != LoanStatus.ACTIVE or loan.loan_duration_end_timestamp is None:
        return None
    return max(loan.loan_duration_end_timestamp - now, timedelta(0))


# ============================================================================
# LEDGER RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (positive integer minor units).
        unit_symbol: The symbol of the unit being transferred (e.g., "ETH", "PUNK#7").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
    """
    quantity: int
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Move quantity must be int, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction description before execution - represents INTENT.

    Attributes:
        moves: Tuple of value transfers between wallets
        timestamp: When this pending transaction was created
    """
    moves: Tuple[Move, ...]
    timestamp: datetime

    def is_empty(self) -> bool:
        return not self.moves

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves)"


def build_transaction(view: Clock, moves: List[Move]) -> PendingTransaction:
    """
    Build a PendingTransaction stamped with the view's current time.

    Example:
        tx = build_transaction(ledger, [
            Move(100, "ETH", "alice", "bob", "payment_001")
        ])
        ledger.execute(tx)
    """
    return PendingTransaction(moves=tuple(moves), timestamp=view.current_time)


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        timestamp: When the PendingTransaction was created
        exec_id: Unique execution identifier (ledger + sequence)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger (for ordering and rollback)
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    timestamp: datetime
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves:
            raise ValueError("Transaction must have moves")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        moves = ", ".join(repr(m) for m in self.moves)
        return f"Transaction({self.exec_id}: {moves})"


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit (asset type) in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g., "ETH", "PUNK#7").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (CASH, NFT).
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet (None = unbounded).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: int = 0
    max_balance: Optional[int] = None


# Receive hooks run after a transaction is applied and before it is final.
# Returning False (or raising) rejects the whole transaction.
ReceiveHook = Callable[[Any, Move], Optional[bool]]


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def cash(symbol: str = DEFAULT_CURRENCY, name: str = "Ether") -> Unit:
    """
    Create a cash currency unit.

    Balances are integer minor units and cannot go negative.
    """
    return Unit(symbol=symbol, name=name, unit_type=UNIT_TYPE_CASH, min_balance=0)
