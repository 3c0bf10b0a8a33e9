"""
test_registry.py - Unit tests for LoanRegistry operations

Tests:
- request_loan / fund_loan / cancel_request / repay_loan / seize_collateral
- Precondition order (existence, state, authorization, timing, amount)
- Read-only queries and the notification log
- Subscribers
- Custody audit
"""

import logging
import pytest
from datetime import timedelta

from nftloan import (
    LoanRegistry, LoanStatus, Closure, RegistryConfig, NFTCollection,
    LoanNotFound, WrongState, DeadlinePassed, DeadlineNotReached, Unauthorized,
    InvalidInput, AmountMismatch, CustodyTransferFailed, PaymentFailed,
    NotApproved, NotOwner,
    EVENT_LOAN_REQUESTED, EVENT_LOAN_FUNDED, EVENT_REQUEST_CLOSED,
    EVENT_LOAN_REPAID, EVENT_NFT_CEASED,
)

from tests.market import make_market, START, REGISTRY, STARTING_CASH


class TestRequestLoan:
    """Tests for request_loan."""

    def test_first_id_is_zero(self, market):
        assert market.registry.next_id() == 0
        assert market.open_loan() == 0
        assert market.open_loan(asset_id=8) == 1
        assert market.registry.next_id() == 2

    def test_loan_recorded(self, market):
        loan = market.registry.get_details(market.open_loan(principal=250, rate=10))
        assert loan.status == LoanStatus.OPEN
        assert loan.loan_amount == 250
        assert loan.amount_to_be_repaid == 270
        assert loan.borrower == "alice"
        assert loan.lender is None
        assert loan.loan_duration_end_timestamp is None
        assert loan.asset_address == "punks"
        assert loan.requested_at == START

    def test_asset_escrowed(self, market):
        market.open_loan()
        assert market.punks.owner_of(7) == REGISTRY

    def test_event(self, market):
        loan_id = market.open_loan()
        (event,) = market.registry.events(loan_id)
        assert event.event_type == EVENT_LOAN_REQUESTED
        assert event.borrower == "alice"
        assert event.lender is None

    @pytest.mark.parametrize("duration", [0, -5, 1.5, True])
    def test_invalid_duration(self, market, duration):
        with pytest.raises(InvalidInput, match="duration"):
            market.open_loan(duration_minutes=duration)
        assert market.registry.next_id() == 0
        assert market.punks.owner_of(7) == "alice"

    def test_empty_asset_address(self, registry):
        with pytest.raises(InvalidInput, match="asset_address"):
            registry.request_loan("alice", 7, "", 100, 10, 5)

    def test_empty_caller(self, registry):
        with pytest.raises(InvalidInput, match="caller"):
            registry.request_loan("", 7, "punks", 100, 10, 5)

    def test_registry_cannot_borrow(self, market):
        market.open_loan()
        with pytest.raises(Unauthorized, match="registry"):
            market.registry.request_loan(REGISTRY, 7, "punks", 100, 10, 5)
        assert market.registry.next_id() == 1
        assert market.punks.owner_of(7) == REGISTRY

    def test_registry_cannot_fund(self, market):
        loan_id = market.open_loan()
        with pytest.raises(Unauthorized):
            market.registry.fund_loan(REGISTRY, loan_id, value=100)
        assert market.registry.get_details(loan_id).status == LoanStatus.OPEN

    def test_unexpected_custodian_error_logged(self, market, caplog):
        class Broken:
            def transfer_asset(self, owner, to, asset_id, operator=None):
                raise RuntimeError("custodian offline")

        market.registry.register_custodian("broken", Broken())
        with pytest.raises(RuntimeError, match="custodian offline"):
            market.registry.request_loan("alice", 1, "broken", 100, 10, 5)
        assert "request_loan failed unexpectedly" in caplog.text
        assert market.registry.next_id() == 0

    def test_principal_below_minimum(self, market):
        with pytest.raises(InvalidInput):
            market.open_loan(principal=99)
        assert market.registry.next_id() == 0
        assert market.punks.owner_of(7) == "alice"

    def test_unknown_collection(self, registry):
        with pytest.raises(CustodyTransferFailed, match="no custodian"):
            registry.request_loan("alice", 7, "apes", 100, 10, 5)
        assert registry.next_id() == 0

    def test_not_approved(self, registry, punks):
        with pytest.raises(CustodyTransferFailed) as exc_info:
            registry.request_loan("alice", 7, "punks", 100, 10, 5)
        assert isinstance(exc_info.value.__cause__, NotApproved)
        assert registry.next_id() == 0
        assert punks.owner_of(7) == "alice"

    def test_not_owner(self, registry):
        with pytest.raises(CustodyTransferFailed) as exc_info:
            registry.request_loan("bob", 7, "punks", 100, 10, 5)
        assert isinstance(exc_info.value.__cause__, NotOwner)

    def test_escrowed_asset_cannot_be_pledged_twice(self, market):
        market.open_loan()
        with pytest.raises(CustodyTransferFailed):
            market.registry.request_loan("alice", 7, "punks", 100, 10, 5)
        assert market.registry.next_id() == 1

    def test_config_caps(self):
        market = make_market(RegistryConfig(
            min_principal=1_000, max_interest_rate_percent=20, max_duration_minutes=60,
        ))
        with pytest.raises(InvalidInput, match="exceeds maximum"):
            market.open_loan(principal=1_000, duration_minutes=61)
        with pytest.raises(InvalidInput, match="exceeds maximum"):
            market.open_loan(principal=1_000, rate=21)
        with pytest.raises(InvalidInput, match="below the minimum"):
            market.open_loan(principal=999)
        assert market.open_loan(principal=1_000, duration_minutes=60, rate=20) == 0

    def test_rejection_logged(self, registry, caplog):
        caplog.set_level(logging.WARNING, logger="nftloan.registry")
        with pytest.raises(CustodyTransferFailed):
            registry.request_loan("alice", 7, "apes", 100, 10, 5)
        assert "request_loan rejected" in caplog.text


class TestFundLoan:
    """Tests for fund_loan."""

    def test_fund(self, market):
        loan_id = market.open_loan()
        market.advance(minutes=3)
        market.registry.fund_loan("bob", loan_id, value=100)

        loan = market.registry.get_details(loan_id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.lender == "bob"
        assert loan.funded_at == START + timedelta(minutes=3)
        assert loan.loan_duration_end_timestamp == START + timedelta(minutes=13)
        assert market.balance("alice") == STARTING_CASH + 100
        assert market.balance("bob") == STARTING_CASH - 100
        assert market.balance(REGISTRY) == 0

    def test_event(self, market):
        loan_id = market.active_loan()
        event = market.registry.events(loan_id)[-1]
        assert event.event_type == EVENT_LOAN_FUNDED
        assert event.lender == "bob"
        assert event.amount == 100

    @pytest.mark.parametrize("loan_id", [99, -1, "0", None])
    def test_not_found(self, registry, loan_id):
        with pytest.raises(LoanNotFound):
            registry.fund_loan("bob", loan_id, value=100)

    def test_borrower_cannot_fund(self, market):
        loan_id = market.open_loan()
        with pytest.raises(Unauthorized):
            market.registry.fund_loan("alice", loan_id, value=100)

    @pytest.mark.parametrize("value", [0, 99, 101, 105, 100.0])
    def test_amount_must_match_principal(self, market, value):
        loan_id = market.open_loan()
        with pytest.raises(AmountMismatch) as exc_info:
            market.registry.fund_loan("bob", loan_id, value=value)
        assert exc_info.value.expected == 100
        assert market.registry.get_details(loan_id).status == LoanStatus.OPEN
        assert market.balance("bob") == STARTING_CASH

    def test_fund_twice(self, market):
        loan_id = market.active_loan()
        with pytest.raises(WrongState):
            market.registry.fund_loan("carol", loan_id, value=100)
        assert market.registry.get_details(loan_id).lender == "bob"

    def test_state_checked_before_authorization(self, market):
        loan_id = market.active_loan()
        with pytest.raises(WrongState):
            market.registry.fund_loan("alice", loan_id, value=1)

    def test_lender_cannot_cover(self, market):
        loan_id = market.open_loan(principal=STARTING_CASH + 100)
        with pytest.raises(PaymentFailed):
            market.registry.fund_loan("carol", loan_id, value=STARTING_CASH + 100)
        assert market.registry.get_details(loan_id).status == LoanStatus.OPEN
        assert market.balance("carol") == STARTING_CASH


class TestCancelRequest:
    """Tests for cancel_request."""

    def test_cancel(self, market):
        loan_id = market.open_loan()
        market.registry.cancel_request("alice", loan_id)
        loan = market.registry.get_details(loan_id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.closure == Closure.CANCELLED
        assert loan.closed_at == START
        assert market.punks.owner_of(7) == "alice"
        assert market.registry.events(loan_id)[-1].event_type == EVENT_REQUEST_CLOSED

    def test_only_borrower(self, market):
        loan_id = market.open_loan()
        with pytest.raises(Unauthorized):
            market.registry.cancel_request("bob", loan_id)
        assert market.punks.owner_of(7) == REGISTRY

    def test_active_loan_cannot_be_cancelled(self, market):
        loan_id = market.active_loan()
        with pytest.raises(WrongState):
            market.registry.cancel_request("alice", loan_id)

    def test_cancel_twice(self, market):
        loan_id = market.open_loan()
        market.registry.cancel_request("alice", loan_id)
        with pytest.raises(WrongState):
            market.registry.cancel_request("alice", loan_id)

    def test_ids_never_reused(self, market):
        first = market.open_loan()
        market.registry.cancel_request("alice", first)
        assert market.open_loan() == first + 1


class TestRepayLoan:
    """Tests for repay_loan."""

    def test_repay(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=5)
        market.registry.repay_loan("alice", loan_id, value=105)

        loan = market.registry.get_details(loan_id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.closure == Closure.REPAID
        assert market.punks.owner_of(7) == "alice"
        assert market.balance("alice") == STARTING_CASH - 5
        assert market.balance("bob") == STARTING_CASH + 5
        assert market.balance(REGISTRY) == 0

        event = market.registry.events(loan_id)[-1]
        assert event.event_type == EVENT_LOAN_REPAID
        assert event.amount == 100

    def test_only_borrower(self, market):
        loan_id = market.active_loan()
        with pytest.raises(Unauthorized):
            market.registry.repay_loan("bob", loan_id, value=105)

    def test_open_loan(self, market):
        loan_id = market.open_loan()
        with pytest.raises(WrongState):
            market.registry.repay_loan("alice", loan_id, value=105)

    @pytest.mark.parametrize("value", [100, 104, 106])
    def test_amount_must_match(self, market, value):
        loan_id = market.active_loan()
        with pytest.raises(AmountMismatch) as exc_info:
            market.registry.repay_loan("alice", loan_id, value=value)
        assert exc_info.value.expected == 105
        assert exc_info.value.supplied == value
        assert market.registry.get_details(loan_id).status == LoanStatus.ACTIVE

    def test_after_deadline(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=11)
        with pytest.raises(DeadlinePassed):
            market.registry.repay_loan("alice", loan_id, value=105)

    def test_authorization_checked_before_timing(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=11)
        with pytest.raises(Unauthorized):
            market.registry.repay_loan("carol", loan_id, value=105)

    def test_timing_checked_before_amount(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=11)
        with pytest.raises(DeadlinePassed):
            market.registry.repay_loan("alice", loan_id, value=1)


class TestSeizeCollateral:
    """Tests for seize_collateral."""

    def test_seize(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=11)
        market.registry.seize_collateral("bob", loan_id)

        loan = market.registry.get_details(loan_id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.closure == Closure.SEIZED
        assert market.punks.owner_of(7) == "bob"
        assert market.balance("bob") == STARTING_CASH - 100
        assert market.registry.events(loan_id)[-1].event_type == EVENT_NFT_CEASED

    def test_before_deadline(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=9)
        with pytest.raises(DeadlineNotReached):
            market.registry.seize_collateral("bob", loan_id)
        assert market.punks.owner_of(7) == REGISTRY

    def test_only_lender(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=11)
        with pytest.raises(Unauthorized):
            market.registry.seize_collateral("alice", loan_id)

    def test_open_loan(self, market):
        loan_id = market.open_loan()
        market.advance(days=1)
        with pytest.raises(WrongState):
            market.registry.seize_collateral("bob", loan_id)

    def test_seized_loan_is_terminal(self, market):
        loan_id = market.active_loan()
        market.advance(minutes=11)
        market.registry.seize_collateral("bob", loan_id)
        with pytest.raises(WrongState):
            market.registry.seize_collateral("bob", loan_id)
        with pytest.raises(WrongState):
            market.registry.repay_loan("alice", loan_id, value=105)


class TestQueries:
    """Tests for read-only queries."""

    def test_snapshots_are_stable(self, market):
        loan_id = market.open_loan()
        before = market.registry.get_details(loan_id)
        market.registry.fund_loan("bob", loan_id, value=100)
        assert before.status == LoanStatus.OPEN
        assert market.registry.get_details(loan_id).status == LoanStatus.ACTIVE

    def test_list_and_filter(self, market):
        a = market.open_loan()
        b = market.active_loan(asset_id=8)
        c = market.open_loan(borrower="bob", asset_id=9)
        market.registry.cancel_request("bob", c)
        registry = market.registry
        assert [l.loan_id for l in registry.list_loans()] == [a, b, c]
        assert [l.loan_id for l in registry.list_loans(LoanStatus.OPEN)] == [a]
        assert [l.loan_id for l in registry.list_loans(LoanStatus.ACTIVE)] == [b]
        assert [l.loan_id for l in registry.list_loans(LoanStatus.CLOSED)] == [c]

    def test_loans_for(self, market):
        a = market.open_loan()
        b = market.active_loan(asset_id=8)
        c = market.open_loan(borrower="bob", asset_id=9)
        registry = market.registry
        assert [l.loan_id for l in registry.loans_for("alice")] == [a, b]
        assert [l.loan_id for l in registry.loans_for("bob")] == [b, c]
        assert [l.loan_id for l in registry.loans_for("bob", "lender")] == [b]
        assert [l.loan_id for l in registry.loans_for("bob", "borrower")] == [c]
        with pytest.raises(ValueError):
            registry.loans_for("bob", "guarantor")

    def test_get_seizable(self, market):
        short = market.active_loan(duration_minutes=5)
        market.active_loan(asset_id=8, duration_minutes=60)
        registry = market.registry
        assert registry.get_seizable() == []
        market.advance(minutes=6)
        assert registry.get_seizable() == [short]
        assert registry.get_seizable(START + timedelta(hours=2)) == [0, 1]
        assert registry.get_details(short).status == LoanStatus.ACTIVE

    def test_event_sequence(self, market):
        loan_id = market.active_loan()
        market.open_loan(asset_id=8)
        events = market.registry.events()
        assert [e.sequence_number for e in events] == [0, 1, 2]
        assert [e.event_type for e in market.registry.events(loan_id)] == [
            EVENT_LOAN_REQUESTED, EVENT_LOAN_FUNDED,
        ]

    def test_repr(self, market):
        market.open_loan()
        assert repr(market.registry) == "LoanRegistry(loan_registry, loans=1)"

    def test_register_custodian(self, market):
        apes = NFTCollection(market.ledger, "apes")
        apes.mint("carol", 1)
        market.registry.register_custodian("apes", apes)
        with pytest.raises(ValueError):
            market.registry.register_custodian("apes", apes)
        apes.approve("carol", REGISTRY, 1)
        loan_id = market.registry.request_loan("carol", 1, "apes", 100, 10, 5)
        assert apes.owner_of(1) == REGISTRY
        assert market.registry.get_details(loan_id).asset_address == "apes"

    def test_empty_registry_address(self, rail, punks, ledger):
        with pytest.raises(ValueError):
            LoanRegistry({"punks": punks}, rail, ledger, address=" ")


class TestSubscribers:

    def test_events_delivered_in_order(self, market):
        seen = []
        market.registry.subscribe(seen.append)
        loan_id = market.active_loan()
        market.advance(minutes=1)
        market.registry.repay_loan("alice", loan_id, value=105)
        assert [e.event_type for e in seen] == [
            EVENT_LOAN_REQUESTED, EVENT_LOAN_FUNDED, EVENT_LOAN_REPAID,
        ]

    def test_not_notified_on_failure(self, market):
        seen = []
        market.registry.subscribe(seen.append)
        with pytest.raises(CustodyTransferFailed):
            market.registry.request_loan("alice", 7, "punks", 100, 10, 5)
        assert seen == []

    def test_unsubscribe(self, market):
        seen = []
        market.registry.subscribe(seen.append)
        market.open_loan()
        market.registry.unsubscribe(seen.append)
        market.open_loan(asset_id=8)
        assert len(seen) == 1

    def test_failing_subscriber_does_not_undo(self, market, caplog):
        def broken(event):
            raise RuntimeError("observer down")

        market.registry.subscribe(broken)
        loan_id = market.open_loan()
        assert market.registry.get_details(loan_id).status == LoanStatus.OPEN
        assert "Subscriber" in caplog.text
        assert "observer down" in caplog.text


class TestVerifyCustody:

    def test_valid_through_lifecycle(self, market):
        registry = market.registry
        a = market.active_loan()
        market.open_loan(asset_id=8)
        c = market.active_loan(lender="alice", borrower="bob", asset_id=9, duration_minutes=1)
        market.advance(minutes=2)
        registry.repay_loan("alice", a, value=105)
        registry.seize_collateral("alice", c)
        result = registry.verify_custody()
        assert result['valid'], result['discrepancies']
        assert result['checked'] == 3

    def test_reused_asset(self, market):
        first = market.open_loan()
        market.registry.cancel_request("alice", first)
        market.open_loan()
        assert market.registry.verify_custody()['valid']

    def test_detects_missing_collateral(self, fake_registry, custodian):
        loan_id = fake_registry.request_loan("alice", 7, "punks", 100, 10, 5)
        custodian.owners[7] = "mallory"
        result = fake_registry.verify_custody()
        assert not result['valid']
        assert result['discrepancies'] == [
            {'loan_id': loan_id, 'expected': REGISTRY, 'actual': "mallory"},
        ]

    def test_detects_collateral_left_in_escrow(self, fake_registry, custodian):
        loan_id = fake_registry.request_loan("alice", 7, "punks", 100, 10, 5)
        fake_registry.cancel_request("alice", loan_id)
        custodian.owners[7] = REGISTRY
        result = fake_registry.verify_custody()
        assert result['discrepancies'] == [
            {'loan_id': loan_id, 'expected': "alice", 'actual': REGISTRY},
        ]

    def test_skips_custodians_without_owner_query(self, market):
        class Opaque:
            def transfer_asset(self, owner, to, asset_id, operator=None):
                pass

        market.registry.register_custodian("opaque", Opaque())
        market.registry.request_loan("alice", 1, "opaque", 100, 10, 5)
        result = market.registry.verify_custody()
        assert result['valid']
        assert result['checked'] == 0


class TestWithFakes:
    """The registry against non-reversible collaborators."""

    def test_registry_acts_as_operator(self, fake_registry, custodian):
        fake_registry.request_loan("alice", 7, "punks", 100, 10, 5)
        assert custodian.calls == [("alice", REGISTRY, 7, REGISTRY)]

    def test_full_repayment(self, fake_registry, fake_rail, custodian, clock):
        loan_id = fake_registry.request_loan("alice", 7, "punks", 100, 10, 5)
        fake_registry.fund_loan("bob", loan_id, value=100)
        clock.advance(minutes=9, seconds=59)
        fake_registry.repay_loan("alice", loan_id, value=105)
        assert custodian.owners[7] == "alice"
        assert fake_rail.balances["bob"] == 1_005
        assert fake_rail.balances["alice"] == 995
        assert fake_rail.balances[REGISTRY] == 0
        assert fake_rail.payments == [
            ("receive", "bob", 100), ("pay", "alice", 100),
            ("receive", "alice", 105), ("pay", "bob", 105),
        ]
