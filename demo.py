#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: NFT-Collateralized Loans Step by Step

Walks through the loan registry on a ledger-backed market. Each step builds
on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Setup          - The ledger, an NFT collection, the payment rail
  4-6:  Happy path     - Request, fund, repay before the deadline
  7-8:  Default        - Missed deadline, lender seizes the collateral
  9-10: Safety         - Rejected operations and all-or-nothing rollback

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import sys

from nftloan import (
    Ledger, LoanRegistry, NFTCollection, LedgerPaymentRail, cash,
    LoanError, time_remaining, can_seize,
    DEFAULT_REGISTRY_ADDRESS,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    starting_cash: int = 10_000
    principal: int = 100
    interest_rate_percent: int = 5
    duration_minutes: int = 10


CONFIG = DemoConfig()
REGISTRY = DEFAULT_REGISTRY_ADDRESS

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def show_balances(rail: LedgerPaymentRail, punks: NFTCollection):
    for wallet in ("alice", "bob", REGISTRY):
        print(f"  {wallet:<14} {rail.balance_of(wallet):>8} ETH")
    for asset_id in (7, 8):
        print(f"  punk #{asset_id} held by {punks.owner_of(asset_id)}")


# ============================================================================
# PHASE 1: SETUP (Steps 1-3)
# ============================================================================

def step_01_ledger() -> Ledger:
    step_header(1, "The Ledger", "A double-entry ledger holds every balance and the logical clock")
    ledger = Ledger("tutorial", initial_time=CONFIG.start_time, verbose=False)
    ledger.register_unit(cash("ETH", "Ether"))
    for wallet in ("alice", "bob", REGISTRY):
        ledger.register_wallet(wallet)
    print(f"Current time:       {ledger.current_time}")
    print(f"Registered wallets: {sorted(ledger.list_wallets())}")
    print(f"Registered units:   {ledger.list_units()}")
    return ledger


def step_02_collection(ledger: Ledger) -> NFTCollection:
    step_header(2, "An NFT Collection", "Each token is a ledger unit with max balance 1")
    punks = NFTCollection(ledger, "punks")
    punks.mint("alice", 7)
    punks.mint("alice", 8)
    print(">>> punks.mint('alice', 7); punks.mint('alice', 8)")
    print(f"Units now: {ledger.list_units()}")
    return punks


def step_03_rail(ledger: Ledger, punks: NFTCollection) -> LedgerPaymentRail:
    step_header(3, "The Payment Rail", "Cash moves in and out of the registry's own wallet")
    rail = LedgerPaymentRail(ledger, REGISTRY, "ETH")
    for wallet in ("alice", "bob"):
        rail.fund(wallet, CONFIG.starting_cash)
    show_balances(rail, punks)
    return rail


# ============================================================================
# PHASE 2: HAPPY PATH (Steps 4-6)
# ============================================================================

def step_04_request(registry: LoanRegistry, punks: NFTCollection) -> int:
    step_header(4, "Request a Loan", "The borrower escrows the NFT and names the terms")
    punks.approve("alice", REGISTRY, 7)
    loan_id = registry.request_loan(
        "alice", 7, "punks",
        CONFIG.principal, CONFIG.duration_minutes, CONFIG.interest_rate_percent,
    )
    loan = registry.get_details(loan_id)
    print(f"Loan {loan_id}: status={loan.status.value} "
          f"principal={loan.loan_amount} repay={loan.amount_to_be_repaid}")
    print(f"punk #7 now held by {punks.owner_of(7)}")
    return loan_id


def step_05_fund(registry: LoanRegistry, rail: LedgerPaymentRail, punks: NFTCollection, loan_id: int):
    step_header(5, "Fund the Loan", "The lender pays exactly the principal; the clock starts")
    registry.fund_loan("bob", loan_id, value=CONFIG.principal)
    loan = registry.get_details(loan_id)
    print(f"Deadline: {loan.loan_duration_end_timestamp}")
    show_balances(rail, punks)


def step_06_repay(registry: LoanRegistry, ledger: Ledger, rail: LedgerPaymentRail,
                  punks: NFTCollection, loan_id: int):
    step_header(6, "Repay", "Principal plus interest, strictly before the deadline")
    ledger.advance_time(ledger.current_time + timedelta(minutes=5))
    loan = registry.get_details(loan_id)
    print(f"Time remaining: {time_remaining(loan, ledger.current_time)}")
    registry.repay_loan("alice", loan_id, value=loan.amount_to_be_repaid)
    print(f"Loan {loan_id}: {registry.get_details(loan_id).closure.value}")
    show_balances(rail, punks)


# ============================================================================
# PHASE 3: DEFAULT (Steps 7-8)
# ============================================================================

def step_07_default(registry: LoanRegistry, ledger: Ledger, punks: NFTCollection) -> int:
    step_header(7, "Miss the Deadline", "Once the deadline passes, repayment is refused")
    punks.approve("alice", REGISTRY, 8)
    loan_id = registry.request_loan(
        "alice", 8, "punks",
        CONFIG.principal, CONFIG.duration_minutes, CONFIG.interest_rate_percent,
    )
    registry.fund_loan("bob", loan_id, value=CONFIG.principal)
    ledger.advance_time(ledger.current_time + timedelta(minutes=CONFIG.duration_minutes + 1))
    loan = registry.get_details(loan_id)
    try:
        registry.repay_loan("alice", loan_id, value=loan.amount_to_be_repaid)
    except LoanError as exc:
        print(f"Repay refused: {type(exc).__name__}: {exc}")
    print(f"Seizable now: {can_seize(loan, ledger.current_time)}")
    return loan_id


def step_08_seize(registry: LoanRegistry, rail: LedgerPaymentRail, punks: NFTCollection, loan_id: int):
    step_header(8, "Seize the Collateral", "The lender takes the NFT instead of repayment")
    registry.seize_collateral("bob", loan_id)
    print(f"Loan {loan_id}: {registry.get_details(loan_id).closure.value}")
    show_balances(rail, punks)


# ============================================================================
# PHASE 4: SAFETY (Steps 9-10)
# ============================================================================

def step_09_rejections(registry: LoanRegistry):
    step_header(9, "Rejected Operations", "Every precondition failure is a typed LoanError")
    attempts = [
        ("fund a closed loan", lambda: registry.fund_loan("bob", 0, value=100)),
        ("unknown loan", lambda: registry.get_details(42)),
        ("zero duration", lambda: registry.request_loan("bob", 8, "punks", 100, 0, 5)),
        ("tiny principal", lambda: registry.request_loan("bob", 8, "punks", 99, 10, 5)),
    ]
    for label, attempt in attempts:
        try:
            attempt()
        except LoanError as exc:
            print(f"  {label:<18} -> {type(exc).__name__}")


def step_10_rollback(registry: LoanRegistry, ledger: Ledger, rail: LedgerPaymentRail,
                     punks: NFTCollection):
    step_header(10, "All or Nothing", "A borrower that refuses the principal undoes the whole funding")
    punks.approve("bob", REGISTRY, 8)
    loan_id = registry.request_loan("bob", 8, "punks", 200, 10, 5)
    ledger.set_receive_hook("bob", lambda ledger, move: move.unit_symbol != "ETH")
    try:
        registry.fund_loan("alice", loan_id, value=200)
    except LoanError as exc:
        print(f"Funding failed: {type(exc).__name__}")
    ledger.set_receive_hook("bob", None)
    print(f"Loan {loan_id} still {registry.get_details(loan_id).status.value}")
    show_balances(rail, punks)
    print(f"\nCustody audit:      {registry.verify_custody()['valid']}")
    print(f"Double-entry audit: {ledger.verify_double_entry()['valid']}")


def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    print("=" * 70)
    print("       NFT-COLLATERALIZED LOANS TUTORIAL")
    print("=" * 70)

    ledger = step_01_ledger()
    wait_for_enter()
    punks = step_02_collection(ledger)
    wait_for_enter()
    rail = step_03_rail(ledger, punks)
    wait_for_enter()

    registry = LoanRegistry({"punks": punks}, rail, ledger)
    loan_id = step_04_request(registry, punks)
    wait_for_enter()
    step_05_fund(registry, rail, punks, loan_id)
    wait_for_enter()
    step_06_repay(registry, ledger, rail, punks, loan_id)
    wait_for_enter()

    loan_id = step_07_default(registry, ledger, punks)
    wait_for_enter()
    step_08_seize(registry, rail, punks, loan_id)
    wait_for_enter()

    step_09_rejections(registry)
    wait_for_enter()
    step_10_rollback(registry, ledger, rail, punks)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    You've learned:
      - Collateral sits with the registry while a loan is OPEN or ACTIVE
      - Repayment must arrive strictly before the deadline, seizure strictly after
      - Failed operations leave loans, cash and tokens exactly as they were

    Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
