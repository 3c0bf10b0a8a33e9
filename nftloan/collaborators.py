"""
collaborators.py - Ledger-backed AssetCustodian and PaymentRail

=== MODEL ===

Every collateral token is a ledger Unit with max balance 1, named
"{collection}#{asset_id}". Whoever holds the single unit owns the token.
Cash is a single CASH unit with integer minor-unit balances.

    NFTCollection      - AssetCustodian for one collection address
    LedgerPaymentRail  - PaymentRail paying out of the registry's wallet
    SystemClock        - wall-clock time for deployments without a ledger clock

Both adapters are Reversible: checkpoint() / rollback() delegate to the
ledger's transaction log, so the registry can unwind a half-finished
operation the way a reverted transaction would be unwound.

Example:
    ledger = Ledger("chain", verbose=False)
    ledger.register_unit(cash("ETH", "Ether"))
    for wallet in ("alice", "bob", "loan_registry"):
        ledger.register_wallet(wallet)

    punks = NFTCollection(ledger, "punks")
    punks.mint("alice", 7)
    punks.approve("alice", "loan_registry", 7)

    rail = LedgerPaymentRail(ledger, "loan_registry", "ETH")
    rail.fund("bob", 1_000)
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Dict, Optional, Set, Tuple

from .core import (
    Move, Unit, ExecuteResult, build_transaction,
    SYSTEM_WALLET, UNIT_TYPE_NFT, DEFAULT_CURRENCY,
    NotOwner, NotApproved, RecipientRejected, PaymentRejected,
    UnitNotRegistered,
)
from .ledger import Ledger


def nft_symbol(collection: str, asset_id: int) -> str:
    return f"{collection}#{asset_id}"


def create_nft_unit(collection: str, asset_id: int) -> Unit:
    """
    Create the ledger unit for one non-fungible token.

    The unit can be held by exactly one wallet at a time (max_balance=1).
    """
    if not collection or not collection.strip():
        raise ValueError("collection cannot be empty")
    return Unit(
        symbol=nft_symbol(collection, asset_id),
        name=f"{collection} token {asset_id}",
        unit_type=UNIT_TYPE_NFT,
        min_balance=0,
        max_balance=1,
    )


class SystemClock:
    """Clock reading the current UTC wall-clock time."""

    @property
    def current_time(self) -> datetime:
        return datetime.now(timezone.utc)


class NFTCollection:
    """
    AssetCustodian for one NFT collection on a Ledger.

    Approvals follow the usual NFT semantics: a per-token approved operator,
    cleared on every transfer, plus per-owner operators approved for all
    tokens.
    """

    def __init__(self, ledger: Ledger, address: str):
        if not address or not address.strip():
            raise ValueError("collection address cannot be empty")
        self.ledger = ledger
        self.address = address
        self._token_approvals: Dict[int, str] = {}
        self._operators: Set[Tuple[str, str]] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, asset_id: int) -> bool:
        return nft_symbol(self.address, asset_id) in self.ledger.units

    def owner_of(self, asset_id: int) -> Optional[str]:
        """Wallet holding the token, or None if it was never minted."""
        if not self.exists(asset_id):
            return None
        holders = [
            wallet for wallet, qty in
            self.ledger.get_positions(nft_symbol(self.address, asset_id)).items()
            if qty > 0 and wallet != SYSTEM_WALLET
        ]
        return holders[0] if holders else None

    def get_approved(self, asset_id: int) -> Optional[str]:
        return self._token_approvals.get(asset_id)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return (owner, operator) in self._operators

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mint(self, to: str, asset_id: int) -> str:
        """
        Issue a new token to `to`.

        Returns:
            The token's ledger symbol

        Raises:
            ValueError: If the token already exists
            RecipientRejected: If `to` declines the token
        """
        unit = create_nft_unit(self.address, asset_id)
        self.ledger.register_unit(unit)
        tx = build_transaction(self.ledger, [
            Move(1, unit.symbol, SYSTEM_WALLET, to, f"mint_{unit.symbol}")
        ])
        if self.ledger.execute(tx) != ExecuteResult.APPLIED:
            del self.ledger.units[unit.symbol]
            raise RecipientRejected(f"{to} cannot receive {unit.symbol}: {self.ledger.last_rejection}")
        return unit.symbol

    def approve(self, owner: str, operator: Optional[str], asset_id: int) -> None:
        """Approve `operator` to move one token (None clears the approval)."""
        if self.owner_of(asset_id) != owner:
            raise NotOwner(f"{owner} does not own {nft_symbol(self.address, asset_id)}")
        if operator is None:
            self._token_approvals.pop(asset_id, None)
        else:
            self._token_approvals[asset_id] = operator

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        if approved:
            self._operators.add((owner, operator))
        else:
            self._operators.discard((owner, operator))

    def transfer_asset(
        self,
        owner: str,
        to: str,
        asset_id: int,
        operator: Optional[str] = None,
    ) -> None:
        """
        Move a token from `owner` to `to`.

        Args:
            owner: Current holder
            to: Recipient wallet
            asset_id: Token identifier
            operator: Wallet performing the transfer (defaults to owner)

        Raises:
            NotOwner: If owner does not hold the token (or it does not exist)
            NotApproved: If operator is neither owner nor approved
            RecipientRejected: If the ledger rejects the move
        """
        symbol = nft_symbol(self.address, asset_id)
        if self.owner_of(asset_id) != owner:
            raise NotOwner(f"{owner} does not own {symbol}")
        operator = operator or owner
        if operator != owner and not (
            self._token_approvals.get(asset_id) == operator
            or self.is_approved_for_all(owner, operator)
        ):
            raise NotApproved(f"{operator} is not approved to move {symbol} for {owner}")

        tx = build_transaction(self.ledger, [
            Move(1, symbol, owner, to, f"transfer_{symbol}")
        ])
        if self.ledger.execute(tx) != ExecuteResult.APPLIED:
            raise RecipientRejected(f"{to} cannot receive {symbol}: {self.ledger.last_rejection}")
        self._token_approvals.pop(asset_id, None)

    # ------------------------------------------------------------------
    # Reversible
    # ------------------------------------------------------------------

    def checkpoint(self) -> tuple:
        return self.ledger.checkpoint(), dict(self._token_approvals), set(self._operators)

    def rollback(self, checkpoint: tuple) -> None:
        sequence, approvals, operators = checkpoint
        self.ledger.rollback(sequence)
        self._token_approvals = dict(approvals)
        self._operators = set(operators)


class LedgerPaymentRail:
    """
    PaymentRail moving a cash unit in and out of one account wallet.

    The account is the registry's own wallet: receive() collects a caller's
    attached payment into it and pay() delivers from it.
    """

    def __init__(self, ledger: Ledger, account: str, currency: str = DEFAULT_CURRENCY):
        if currency not in ledger.units:
            raise UnitNotRegistered(f"Unit {currency} not registered")
        self.ledger = ledger
        self.account = account
        self.currency = currency

    def balance_of(self, wallet: str) -> int:
        return self.ledger.get_balance(wallet, self.currency)

    def fund(self, wallet: str, amount: int) -> None:
        """Issue `amount` of the currency to `wallet` (setup helper)."""
        self._transfer(SYSTEM_WALLET, wallet, amount, f"issue_{wallet}")

    def pay(self, to: str, amount: int) -> None:
        """
        Pay `amount` from the account to `to`.

        Raises:
            PaymentRejected: If the account cannot cover it or `to` declines it
        """
        self._transfer(self.account, to, amount, f"pay_{to}")

    def receive(self, payer: str, amount: int) -> None:
        """
        Collect `amount` from `payer` into the account.

        Raises:
            PaymentRejected: If the payer cannot cover it
        """
        self._transfer(payer, self.account, amount, f"receive_{payer}")

    def _transfer(self, source: str, dest: str, amount: int, contract_id: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise PaymentRejected(f"invalid payment amount {amount!r}")
        if amount == 0:
            return
        for wallet in (source, dest):
            if not self.ledger.is_registered(wallet):
                raise PaymentRejected(f"wallet not registered: {wallet}")
        if source != SYSTEM_WALLET and self.balance_of(source) < amount:
            raise PaymentRejected(
                f"{source} has insufficient {self.currency}: {self.balance_of(source)} < {amount}"
            )
        tx = build_transaction(self.ledger, [
            Move(amount, self.currency, source, dest, contract_id)
        ])
        if self.ledger.execute(tx) != ExecuteResult.APPLIED:
            raise PaymentRejected(
                f"payment of {amount} {self.currency} to {dest} rejected: {self.ledger.last_rejection}"
            )

    def checkpoint(self) -> int:
        return self.ledger.checkpoint()

    def rollback(self, checkpoint: int) -> None:
        self.ledger.rollback(checkpoint)
