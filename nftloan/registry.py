"""
registry.py - LoanRegistry, the NFT-collateralized loan state machine

The LoanRegistry is the only component that mutates loans. Collateral and
cash move through external capabilities (AssetCustodian, PaymentRail); the
registry decides when they move and keeps the table of Loan records.

State machine:

    OPEN   --fund_loan-------> ACTIVE --repay_loan--------> CLOSED
    OPEN   --cancel_request--> CLOSED
    ACTIVE --seize_collateral-------------------------------> CLOSED

Every state-changing operation follows the same shape:
    1. Enter the critical section (re-entrant calls are rejected)
    2. Check preconditions in order: existence, state, authorization,
       timing, amount. The first violation raises.
    3. Stage the new Loan with dataclasses.replace()
    4. Call the collaborators. If any call fails, every Reversible
       collaborator is rolled back to its checkpoint; on non-reversible
       rails collected payments are refunded and payouts reclaimed
    5. Commit the staged Loan and record the notification
    6. Leave the critical section, then notify subscribers

Timing is asymmetric: repay requires now < deadline, seize requires
now > deadline, so at the exact deadline instant neither is possible.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional
import logging
import threading

from .core import (
    # Types
    Loan, LoanEvent, LoanStatus, Closure, RegistryConfig,
    AssetCustodian, PaymentRail, Clock, Reversible,
    # Constants
    DEFAULT_REGISTRY_ADDRESS,
    EVENT_LOAN_REQUESTED, EVENT_LOAN_FUNDED, EVENT_REQUEST_CLOSED,
    EVENT_LOAN_REPAID, EVENT_NFT_CEASED,
    # Exceptions
    LoanError, LoanNotFound, WrongState, DeadlinePassed, DeadlineNotReached,
    Unauthorized, InvalidInput, AmountMismatch, CustodyTransferFailed,
    PaymentFailed, ReentrancyError, CollaboratorError,
    # Pure functions
    compute_amount_to_be_repaid, compute_deadline, can_seize,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[LoanEvent], None]


class LoanRegistry:
    """
    Table of Loan records keyed by a monotonically increasing identifier.

    Args:
        custodians: Mapping of collateral asset address -> AssetCustodian
        payment_rail: PaymentRail moving currency in and out of `address`
        clock: Source of the current time (a Ledger or SystemClock)
        address: The registry's own wallet identity (escrow custodian)
        config: RegistryConfig limits

    Thread Safety:
        State-changing operations are serialized by a registry-wide lock.
        A call made from inside a running operation (for example from a
        payment receive hook) raises ReentrancyError. Reads take no lock.

    Example:
        registry = LoanRegistry({"punks": punks}, rail, ledger)
        loan_id = registry.request_loan("alice", 7, "punks", 100, 10, 5)
        registry.fund_loan("bob", loan_id, value=100)
        registry.repay_loan("alice", loan_id, value=105)
    """

    def __init__(
        self,
        custodians: Mapping[str, AssetCustodian],
        payment_rail: PaymentRail,
        clock: Clock,
        address: str = DEFAULT_REGISTRY_ADDRESS,
        config: Optional[RegistryConfig] = None,
    ):
        if not address or not address.strip():
            raise ValueError("registry address cannot be empty")
        self.custodians: Dict[str, AssetCustodian] = dict(custodians)
        self.payment_rail = payment_rail
        self.clock = clock
        self.address = address
        self.config = config or RegistryConfig()
        self._loans: Dict[int, Loan] = {}
        self._next_id: int = 0
        self._event_log: List[LoanEvent] = []
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._active_thread: Optional[int] = None

    def __repr__(self) -> str:
        return f"LoanRegistry({self.address}, loans={len(self._loans)})"

    # ========================================================================
    # READ-ONLY QUERIES
    # ========================================================================

    def get_details(self, loan_id: int) -> Loan:
        """
        Return the stored Loan.

        Raises:
            LoanNotFound: If the identifier was never assigned
        """
        try:
            return self._loans[loan_id]
        except (KeyError, TypeError):
            raise LoanNotFound(f"Loan {loan_id!r} does not exist") from None

    def next_id(self) -> int:
        """The identifier the next successful request_loan will assign."""
        return self._next_id

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """All loans ordered by id, optionally filtered by status."""
        loans = [self._loans[i] for i in sorted(self._loans)]
        if status is None:
            return loans
        return [loan for loan in loans if loan.status == status]

    def loans_for(self, wallet: str, role: Optional[str] = None) -> List[Loan]:
        """
        Loans where `wallet` is the borrower and/or lender.

        Args:
            wallet: Wallet to look up
            role: "borrower", "lender", or None for both
        """
        if role not in (None, "borrower", "lender"):
            raise ValueError(f"role must be 'borrower', 'lender' or None, got {role!r}")
        result = []
        for loan in self.list_loans():
            if role in (None, "borrower") and loan.borrower == wallet:
                result.append(loan)
            elif role in (None, "lender") and loan.lender == wallet:
                result.append(loan)
        return result

    def get_seizable(self, now: Optional[datetime] = None) -> List[int]:
        """Ids of ACTIVE loans whose deadline has passed. Inspection only."""
        now = now or self.clock.current_time
        return [loan.loan_id for loan in self.list_loans(LoanStatus.ACTIVE) if can_seize(loan, now)]

    def events(self, loan_id: Optional[int] = None) -> List[LoanEvent]:
        """The notification log, optionally filtered to one loan."""
        if loan_id is None:
            return list(self._event_log)
        return [e for e in self._event_log if e.loan_id == loan_id]

    def verify_custody(self) -> Dict[str, Any]:
        """
        Check every loan's collateral against its status.

        OPEN and ACTIVE loans must have the asset with the registry. A CLOSED
        loan's asset must have left the registry unless a later loan escrowed
        the same asset again. Custodians without an owner_of() query are skipped.

        Returns:
            Dict with keys:
            - 'valid': bool - True if no discrepancy was found
            - 'checked': int - number of loans verified
            - 'discrepancies': List[Dict] - loan_id, expected, actual

        Example:
            result = registry.verify_custody()
            assert result['valid'], result['discrepancies']
        """
        checked = 0
        discrepancies = []
        loans = self.list_loans()
        escrowed = {
            (loan.asset_address, loan.asset_id) for loan in loans
            if loan.status != LoanStatus.CLOSED
        }
        for loan in loans:
            custodian = self.custodians.get(loan.asset_address)
            owner_of = getattr(custodian, "owner_of", None)
            if owner_of is None:
                continue
            checked += 1
            actual = owner_of(loan.asset_id)
            if loan.status != LoanStatus.CLOSED:
                expected = self.address
                ok = actual == self.address
            else:
                expected = loan.collateral_holder
                ok = actual != self.address or (loan.asset_address, loan.asset_id) in escrowed
            if not ok:
                discrepancies.append({
                    'loan_id': loan.loan_id,
                    'expected': expected,
                    'actual': actual,
                })
        return {
            'valid': len(discrepancies) == 0,
            'checked': checked,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def subscribe(self, callback: Subscriber) -> None:
        """Call `callback(event)` after every committed transition."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers.remove(callback)

    def register_custodian(self, asset_address: str, custodian: AssetCustodian) -> None:
        """Accept collateral from another collection."""
        if not asset_address or not asset_address.strip():
            raise ValueError("asset_address cannot be empty")
        if asset_address in self.custodians:
            raise ValueError(f"Custodian for {asset_address} already registered")
        self.custodians[asset_address] = custodian

    # ========================================================================
    # STATE-CHANGING OPERATIONS
    # ========================================================================

    def request_loan(
        self,
        caller: str,
        asset_id: int,
        asset_address: str,
        principal: int,
        duration_minutes: int,
        interest_rate_percent: int,
    ) -> int:
        """
        Escrow the caller's asset and open a loan request.

        Args:
            caller: Borrower; must own the asset and have approved the registry
            asset_id: Collateral token id
            asset_address: Collateral collection address
            principal: Amount requested, at least config.min_principal
            duration_minutes: Loan duration once funded, > 0
            interest_rate_percent: Integer percentage

        Returns:
            The new loan id

        Raises:
            InvalidInput: Zero duration, empty address, below-minimum principal
            CustodyTransferFailed: Unknown collection, or the custodian refused
        """
        with self._non_reentrant("request_loan"):
            self._require_caller(caller)
            if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) \
                    or duration_minutes <= 0:
                raise InvalidInput(f"duration_minutes must be a positive integer, got {duration_minutes!r}")
            if not isinstance(asset_address, str) or not asset_address.strip():
                raise InvalidInput("asset_address cannot be empty")
            cfg = self.config
            if cfg.max_duration_minutes is not None and duration_minutes > cfg.max_duration_minutes:
                raise InvalidInput(
                    f"duration_minutes {duration_minutes} exceeds maximum {cfg.max_duration_minutes}"
                )
            if cfg.max_interest_rate_percent is not None \
                    and isinstance(interest_rate_percent, int) \
                    and interest_rate_percent > cfg.max_interest_rate_percent:
                raise InvalidInput(
                    f"interest_rate_percent {interest_rate_percent} exceeds maximum "
                    f"{cfg.max_interest_rate_percent}"
                )
            amount_to_be_repaid = compute_amount_to_be_repaid(
                principal, interest_rate_percent, cfg.min_principal
            )
            custodian = self._custodian(asset_address)

            now = self.clock.current_time
            staged = Loan(
                loan_id=self._next_id,
                loan_amount=principal,
                interest_rate_percent=interest_rate_percent,
                amount_to_be_repaid=amount_to_be_repaid,
                asset_id=asset_id,
                asset_address=asset_address,
                loan_duration_minutes=duration_minutes,
                borrower=caller,
                requested_at=now,
            )
            with self._external_phase(custodian) as compensations:
                self._move_asset(custodian, caller, self.address, asset_id, compensations)
            event = self._commit(staged, EVENT_LOAN_REQUESTED)
        self._notify(event)
        return staged.loan_id

    def fund_loan(self, caller: str, loan_id: int, value: int) -> None:
        """
        Fund an OPEN loan with exactly its principal.

        The caller becomes the lender, the principal is paid to the borrower,
        and the deadline starts running.

        Raises:
            LoanNotFound, WrongState, Unauthorized (self-funding),
            AmountMismatch, PaymentFailed
        """
        with self._non_reentrant("fund_loan"):
            self._require_caller(caller)
            loan = self.get_details(loan_id)
            self._require_status(loan, LoanStatus.OPEN, "fund")
            if caller == loan.borrower:
                raise Unauthorized(f"borrower {caller} cannot fund their own loan {loan_id}")
            self._require_amount(loan.loan_amount, value)

            now = self.clock.current_time
            staged = replace(
                loan,
                status=LoanStatus.ACTIVE,
                lender=caller,
                loan_duration_end_timestamp=compute_deadline(now, loan.loan_duration_minutes),
                funded_at=now,
            )
            with self._external_phase(self.payment_rail) as compensations:
                self._collect(caller, value, compensations)
                self._pay(loan.borrower, loan.loan_amount, compensations)
            event = self._commit(staged, EVENT_LOAN_FUNDED, amount=loan.loan_amount)
        self._notify(event)

    def cancel_request(self, caller: str, loan_id: int) -> None:
        """
        Withdraw an OPEN request and return the collateral to the borrower.

        Raises:
            LoanNotFound, WrongState, Unauthorized, CustodyTransferFailed
        """
        with self._non_reentrant("cancel_request"):
            self._require_caller(caller)
            loan = self.get_details(loan_id)
            self._require_status(loan, LoanStatus.OPEN, "cancel")
            self._require_party(caller, loan.borrower, "borrower", loan_id)

            staged = self._closed(loan, Closure.CANCELLED)
            custodian = self._custodian(loan.asset_address)
            with self._external_phase(custodian) as compensations:
                self._move_asset(custodian, self.address, loan.borrower, loan.asset_id, compensations)
            event = self._commit(staged, EVENT_REQUEST_CLOSED)
        self._notify(event)

    def repay_loan(self, caller: str, loan_id: int, value: int) -> None:
        """
        Repay an ACTIVE loan before its deadline.

        Returns the collateral to the borrower, then pays amount_to_be_repaid
        to the lender.

        Raises:
            LoanNotFound, WrongState, Unauthorized,
            DeadlinePassed (now >= deadline), AmountMismatch,
            PaymentFailed, CustodyTransferFailed
        """
        with self._non_reentrant("repay_loan"):
            self._require_caller(caller)
            loan = self.get_details(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, "repay")
            self._require_party(caller, loan.borrower, "borrower", loan_id)
            now = self.clock.current_time
            if not now < loan.loan_duration_end_timestamp:
                raise DeadlinePassed(
                    f"loan {loan_id} deadline {loan.loan_duration_end_timestamp} has passed (now {now})"
                )
            self._require_amount(loan.amount_to_be_repaid, value)

            staged = self._closed(loan, Closure.REPAID)
            custodian = self._custodian(loan.asset_address)
            with self._external_phase(self.payment_rail, custodian) as compensations:
                self._collect(caller, value, compensations)
                self._move_asset(custodian, self.address, loan.borrower, loan.asset_id, compensations)
                self._pay(loan.lender, loan.amount_to_be_repaid, compensations)
            event = self._commit(staged, EVENT_LOAN_REPAID, amount=loan.loan_amount)
        self._notify(event)

    def seize_collateral(self, caller: str, loan_id: int) -> None:
        """
        Transfer the collateral of a defaulted loan to its lender.

        Raises:
            LoanNotFound, WrongState, Unauthorized,
            DeadlineNotReached (now <= deadline), CustodyTransferFailed
        """
        with self._non_reentrant("seize_collateral"):
            self._require_caller(caller)
            loan = self.get_details(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, "seize")
            self._require_party(caller, loan.lender, "lender", loan_id)
            now = self.clock.current_time
            if not now > loan.loan_duration_end_timestamp:
                raise DeadlineNotReached(
                    f"loan {loan_id} deadline {loan.loan_duration_end_timestamp} not passed (now {now})"
                )

            staged = self._closed(loan, Closure.SEIZED)
            custodian = self._custodian(loan.asset_address)
            with self._external_phase(custodian) as compensations:
                self._move_asset(custodian, self.address, loan.lender, loan.asset_id, compensations)
            event = self._commit(staged, EVENT_NFT_CEASED)
        self._notify(event)

    # ========================================================================
    # GUARDS AND PRECONDITIONS
    # ========================================================================

    @contextmanager
    def _non_reentrant(self, operation: str) -> Iterator[None]:
        """
        Critical section held for the whole of a state-changing operation.

        Other threads wait for the lock; the thread already inside is refused.
        """
        if self._active_thread == threading.get_ident():
            logger.warning("Re-entrant %s rejected", operation,
                           extra={"event": f"loan.{operation}.reentrant"})
            raise ReentrancyError(f"{operation} called while another registry operation is in progress")
        with self._lock:
            self._active_thread = threading.get_ident()
            try:
                yield
            except LoanError as exc:
                logger.warning("%s rejected: %s", operation, exc,
                               extra={"event": f"loan.{operation}.rejected"})
                raise
            except Exception:
                logger.exception("%s failed unexpectedly", operation,
                                 extra={"event": f"loan.{operation}.failed"})
                raise
            finally:
                self._active_thread = None

    @contextmanager
    def _external_phase(self, *collaborators: Any) -> Iterator[List[Callable[[], None]]]:
        """
        Run collaborator calls; on failure undo everything they did.

        Reversible collaborators are rolled back to the checkpoint taken on
        entry (shared collaborators are checkpointed once). Steps against
        non-reversible collaborators may append compensating actions to the
        yielded list; they run in reverse order after the rollbacks. A
        compensation that fails is logged and the original error propagates.
        """
        checkpoints = []
        seen = set()
        for collaborator in collaborators:
            if id(collaborator) in seen or not isinstance(collaborator, Reversible):
                continue
            seen.add(id(collaborator))
            checkpoints.append((collaborator, collaborator.checkpoint()))
        compensations: List[Callable[[], None]] = []
        try:
            yield compensations
        except Exception:
            for collaborator, checkpoint in reversed(checkpoints):
                collaborator.rollback(checkpoint)
            for undo in reversed(compensations):
                try:
                    undo()
                except Exception:
                    # the original failure is re-raised below
                    logger.exception("Compensation %r failed", undo,
                                     extra={"event": "loan.compensation.failed"})
            raise

    def _require_caller(self, caller: str) -> None:
        if not isinstance(caller, str) or not caller.strip():
            raise InvalidInput("caller cannot be empty")
        if caller == self.address:
            raise Unauthorized(f"the registry {caller} cannot act as a party to a loan")

    @staticmethod
    def _require_status(loan: Loan, expected: LoanStatus, action: str) -> None:
        if loan.status != expected:
            raise WrongState(
                f"cannot {action} loan {loan.loan_id}: status is {loan.status.value}, "
                f"expected {expected.value}"
            )

    @staticmethod
    def _require_party(caller: str, party: Optional[str], role: str, loan_id: int) -> None:
        if caller != party:
            raise Unauthorized(f"{caller} is not the {role} of loan {loan_id}")

    @staticmethod
    def _require_amount(expected: int, supplied: int) -> None:
        if isinstance(supplied, bool) or not isinstance(supplied, int) or supplied != expected:
            raise AmountMismatch(expected, supplied)

    def _custodian(self, asset_address: str) -> AssetCustodian:
        custodian = self.custodians.get(asset_address)
        if custodian is None:
            raise CustodyTransferFailed(f"no custodian for asset address {asset_address!r}")
        return custodian

    # ========================================================================
    # COLLABORATOR CALLS
    # ========================================================================

    def _move_asset(
        self,
        custodian: AssetCustodian,
        owner: str,
        to: str,
        asset_id: int,
        compensations: List[Callable[[], None]],
    ) -> None:
        try:
            custodian.transfer_asset(owner, to, asset_id, operator=self.address)
        except CollaboratorError as exc:
            raise CustodyTransferFailed(f"transfer of asset {asset_id} from {owner} to {to} failed: {exc}") from exc
        if not isinstance(custodian, Reversible):
            # the recipient hands the asset back
            compensations.append(lambda: custodian.transfer_asset(to, owner, asset_id))

    def _collect(self, payer: str, amount: int, compensations: List[Callable[[], None]]) -> None:
        try:
            self.payment_rail.receive(payer, amount)
        except CollaboratorError as exc:
            raise PaymentFailed(f"could not collect {amount} from {payer}: {exc}") from exc
        if not isinstance(self.payment_rail, Reversible):
            compensations.append(lambda: self.payment_rail.pay(payer, amount))

    def _pay(self, to: str, amount: int, compensations: List[Callable[[], None]]) -> None:
        try:
            self.payment_rail.pay(to, amount)
        except CollaboratorError as exc:
            raise PaymentFailed(f"payment of {amount} to {to} failed: {exc}") from exc
        if not isinstance(self.payment_rail, Reversible):
            compensations.append(lambda: self.payment_rail.receive(to, amount))

    # ========================================================================
    # COMMIT AND NOTIFY
    # ========================================================================

    def _closed(self, loan: Loan, closure: Closure) -> Loan:
        return replace(loan, status=LoanStatus.CLOSED, closure=closure,
                       closed_at=self.clock.current_time)

    def _commit(self, staged: Loan, event_type: str, amount: Optional[int] = None) -> LoanEvent:
        """Store the staged loan and append its notification to the log."""
        if staged.loan_id == self._next_id:
            self._next_id += 1
        self._loans[staged.loan_id] = staged
        event = LoanEvent(
            event_type=event_type,
            loan_id=staged.loan_id,
            borrower=staged.borrower,
            lender=staged.lender,
            amount=amount,
            timestamp=self.clock.current_time,
            sequence_number=len(self._event_log),
        )
        self._event_log.append(event)
        logger.info("%r", event, extra={"event": event_type, "loan_id": staged.loan_id})
        return event

    def _notify(self, event: LoanEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed on %r", callback, event)
