"""
nftloan - Peer-to-peer NFT-collateralized loan registry

A borrower escrows a non-fungible token, a lender funds the principal, and
the registry enforces repayment with interest before a deadline, or hands
the collateral to the lender on default.

Usage:
    from nftloan import (
        Ledger, LoanRegistry, NFTCollection, LedgerPaymentRail, cash,
    )

    ledger = Ledger("chain", verbose=False)
    ledger.register_unit(cash("ETH", "Ether"))
    for wallet in ("alice", "bob", "loan_registry"):
        ledger.register_wallet(wallet)

    punks = NFTCollection(ledger, "punks")
    punks.mint("alice", 7)
    punks.approve("alice", "loan_registry", 7)
    rail = LedgerPaymentRail(ledger, "loan_registry", "ETH")
    rail.fund("bob", 1_000)
    rail.fund("alice", 1_000)

    registry = LoanRegistry({"punks": punks}, rail, ledger)
    loan_id = registry.request_loan("alice", 7, "punks", 100, 10, 5)
    registry.fund_loan("bob", loan_id, value=100)
    registry.repay_loan("alice", loan_id, value=105)
"""

# Core types
from .core import (
    Loan,
    LoanEvent,
    LoanStatus,
    Closure,
    RegistryConfig,
    Clock,
    AssetCustodian,
    PaymentRail,
    Reversible,
    Move,
    PendingTransaction,
    Transaction,
    Unit,
    ExecuteResult,
    build_transaction,
    cash,
    compute_interest,
    compute_amount_to_be_repaid,
    compute_deadline,
    can_repay,
    can_seize,
    time_remaining,
    LoanError,
    LoanNotFound,
    WrongState,
    DeadlinePassed,
    DeadlineNotReached,
    Unauthorized,
    InvalidInput,
    AmountMismatch,
    CustodyTransferFailed,
    PaymentFailed,
    ReentrancyError,
    CollaboratorError,
    NotOwner,
    NotApproved,
    RecipientRejected,
    PaymentRejected,
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    MIN_PRINCIPAL,
    INTEREST_DIVISOR,
    SYSTEM_WALLET,
    DEFAULT_REGISTRY_ADDRESS,
    DEFAULT_CURRENCY,
    UNIT_TYPE_CASH,
    UNIT_TYPE_NFT,
    EVENT_LOAN_REQUESTED,
    EVENT_LOAN_FUNDED,
    EVENT_REQUEST_CLOSED,
    EVENT_LOAN_REPAID,
    EVENT_NFT_CEASED,
)

# Ledger
from .ledger import Ledger

# Collaborators
from .collaborators import (
    NFTCollection,
    LedgerPaymentRail,
    SystemClock,
    create_nft_unit,
    nft_symbol,
)

# Registry
from .registry import LoanRegistry

__all__ = [
    # Core
    'Loan', 'LoanEvent', 'LoanStatus', 'Closure', 'RegistryConfig',
    'Clock', 'AssetCustodian', 'PaymentRail', 'Reversible',
    'Move', 'PendingTransaction', 'Transaction', 'Unit', 'ExecuteResult',
    'build_transaction', 'cash',
    'compute_interest', 'compute_amount_to_be_repaid', 'compute_deadline',
    'can_repay', 'can_seize', 'time_remaining',
    # Errors
    'LoanError', 'LoanNotFound', 'WrongState', 'DeadlinePassed', 'DeadlineNotReached',
    'Unauthorized', 'InvalidInput', 'AmountMismatch', 'CustodyTransferFailed',
    'PaymentFailed', 'ReentrancyError',
    'CollaboratorError', 'NotOwner', 'NotApproved', 'RecipientRejected', 'PaymentRejected',
    'LedgerError',
    'UnitNotRegistered', 'WalletNotRegistered',
    # Constants
    'MIN_PRINCIPAL', 'INTEREST_DIVISOR', 'SYSTEM_WALLET', 'DEFAULT_REGISTRY_ADDRESS',
    'DEFAULT_CURRENCY', 'UNIT_TYPE_CASH', 'UNIT_TYPE_NFT',
    'EVENT_LOAN_REQUESTED', 'EVENT_LOAN_FUNDED', 'EVENT_REQUEST_CLOSED',
    'EVENT_LOAN_REPAID', 'EVENT_NFT_CEASED',
    # Ledger
    'Ledger',
    # Collaborators
    'NFTCollection', 'LedgerPaymentRail', 'SystemClock', 'create_nft_unit', 'nft_symbol',
    # Registry
    'LoanRegistry',
]

__version__ = '1.0.0'
