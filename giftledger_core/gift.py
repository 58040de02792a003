"""
Time-locked gift ledgers for GiftLedger.

An administrator escrows funds for a set of beneficiaries.  Each
beneficiary holds exactly one ``GiftRecord`` (amount + unlock time) and
may claim it once the unlock time has strictly passed.  The
administrator may top up a gift or claw it back at any time.

Funds live in a custodial sub-account created per ledger; only the
ledger holds the ``EscrowCapability`` that can move them out.

Every entry operation validates first, then moves funds, then commits
the mapping change.  Claim and remove detach the record before paying
out and put it back if the transfer raises, so a record can never be
paid twice and a failed operation leaves no trace.  With invariant
checking on, an operation that breaks an invariant is undone before
``InvariantViolation`` is raised.

Custodial accounts can never be beneficiaries: an escrow only receives
funds from its own ledger.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from giftledger_core.clock import Clock, SystemClock
from giftledger_core.custody import (
    CustodialAccountService,
    EscrowCapability,
    TransientSigner,
)
from giftledger_core.errors import (
    AlreadyInitialized,
    CustodyError,
    GiftLedgerError,
    GiftNotFound,
    InvalidBeneficiary,
    InvariantViolation,
    LengthMismatch,
    NotInitialized,
    NotYetUnlocked,
)
from giftledger_core.invariants import InvariantChecker
from giftledger_core.precision import checked_add, checked_sum, validate_amount

logger = logging.getLogger("giftledger")


# ═══════════════════════════════════════════════════════════════════
#  Records
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GiftRecord:
    """A pending gift owed to one beneficiary."""
    amount: int          # currency units held for the beneficiary
    unlock_time: int     # claimable strictly after this Unix timestamp

    def is_unlocked(self, now: int) -> bool:
        return is_unlocked(self, now)

    def merged(self, amount: int, unlock_time: int) -> GiftRecord:
        """Top up this gift; the new unlock time always replaces the old one."""
        return replace(
            self,
            amount=checked_add(self.amount, amount),
            unlock_time=unlock_time,
        )

    def to_dict(self) -> dict:
        return {"amount": self.amount, "unlock_time": self.unlock_time}


# ── Assertion helpers ───────────────────────────────────────────────

def is_unlocked(record: GiftRecord, now: int) -> bool:
    """Claim eligibility: the unlock time must have strictly passed."""
    return now > record.unlock_time


def assert_unlocked(beneficiary: str, record: GiftRecord, now: int) -> None:
    if not is_unlocked(record, now):
        raise NotYetUnlocked(beneficiary, record.unlock_time, now)


def assert_lengths_match(
    beneficiaries: Sequence[str],
    amounts: Sequence[int],
    unlock_times: Sequence[int],
) -> None:
    if not (len(beneficiaries) == len(amounts) == len(unlock_times)):
        raise LengthMismatch(len(beneficiaries), len(amounts), len(unlock_times))


def validate_unlock_time(value) -> int:
    """Unlock times share the amount domain: non-negative 64-bit integers."""
    return validate_amount(value, name="unlock_time")


# ═══════════════════════════════════════════════════════════════════
#  Ledger
# ═══════════════════════════════════════════════════════════════════

class GiftLedger:
    """
    Beneficiary → gift mapping for one administrator, plus the capability
    controlling its custodial account.
    """

    def __init__(
        self,
        administrator: str,
        escrow_account: str,
        capability: EscrowCapability,
        beneficiaries: dict[str, GiftRecord] | None = None,
    ):
        self.administrator = administrator
        self.escrow_account = escrow_account
        self.beneficiaries: dict[str, GiftRecord] = dict(beneficiaries or {})
        self._capability = capability

    def get(self, beneficiary: str) -> GiftRecord:
        record = self.beneficiaries.get(beneficiary)
        if record is None:
            raise GiftNotFound(self.administrator, beneficiary)
        return record

    def take(self, beneficiary: str) -> GiftRecord:
        """Detach and return the beneficiary's record."""
        record = self.get(beneficiary)
        del self.beneficiaries[beneficiary]
        return record

    def total_liabilities(self) -> int:
        return sum(r.amount for r in self.beneficiaries.values())

    def signer(self, custody: CustodialAccountService) -> TransientSigner:
        return custody.sign_as(self._capability)

    def to_dict(self) -> dict:
        return {
            "administrator": self.administrator,
            "escrow_account": self.escrow_account,
            "gifts": {b: r.to_dict() for b, r in self.beneficiaries.items()},
            "total_liabilities": self.total_liabilities(),
        }

    def __len__(self) -> int:
        return len(self.beneficiaries)

    def __repr__(self) -> str:
        return f"GiftLedger({self.administrator}, gifts={len(self.beneficiaries)})"


# ═══════════════════════════════════════════════════════════════════
#  Registry (entry operations)
# ═══════════════════════════════════════════════════════════════════

class GiftRegistry:
    """
    Holds at most one ``GiftLedger`` per administrator and exposes the
    four entry operations.  Callers must serialise operations; the
    registry itself takes no locks.
    """

    def __init__(
        self,
        custody: CustodialAccountService,
        clock: Clock | None = None,
        *,
        check_invariants: bool = False,
    ):
        self.custody = custody
        self.clock = clock or SystemClock()
        self.ledgers: dict[str, GiftLedger] = {}
        self.check_invariants = check_invariants
        self._checker = InvariantChecker()

    # ---- lookups ----

    def has_ledger(self, administrator: str) -> bool:
        return administrator in self.ledgers

    def get_ledger(self, administrator: str) -> GiftLedger:
        ledger = self.ledgers.get(administrator)
        if ledger is None:
            raise NotInitialized(administrator)
        return ledger

    def assert_not_initialized(self, administrator: str) -> None:
        if administrator in self.ledgers:
            raise AlreadyInitialized(administrator)

    def assert_valid_beneficiary(self, beneficiary: str) -> None:
        """Escrow accounts may only be funded by their own ledger."""
        if self.custody.is_custodial(beneficiary) or any(
            ledger.escrow_account == beneficiary for ledger in self.ledgers.values()
        ):
            raise InvalidBeneficiary(beneficiary)

    # ---- entry operations ----

    def initialize(
        self,
        administrator: str,
        beneficiaries: Sequence[str],
        amounts: Sequence[int],
        unlock_times: Sequence[int],
    ) -> GiftLedger:
        """
        Create the administrator's ledger and escrow the sum of *amounts*
        in one transfer.  A beneficiary listed twice keeps its last entry;
        the escrowed total still counts every listed amount.
        """
        self.assert_not_initialized(administrator)
        assert_lengths_match(beneficiaries, amounts, unlock_times)
        for beneficiary in beneficiaries:
            self.assert_valid_beneficiary(beneficiary)
        amounts = [validate_amount(a) for a in amounts]
        unlock_times = [validate_unlock_time(t) for t in unlock_times]
        total = checked_sum(amounts)

        records: dict[str, GiftRecord] = {}
        for beneficiary, amount, unlock_time in zip(beneficiaries, amounts, unlock_times):
            records[beneficiary] = GiftRecord(amount, unlock_time)

        self._capture()
        account, capability = self.custody.create_account(administrator, os.urandom(16))
        try:
            self.custody.register_currency(account)
            self.custody.transfer(administrator, account, total)
        except CustodyError:
            self.custody.discard_account(account, capability)
            raise

        ledger = GiftLedger(administrator, account, capability, records)
        self.ledgers[administrator] = ledger

        def rollback() -> None:
            del self.ledgers[administrator]
            self.custody.transfer(
                account, administrator, total, signer=ledger.signer(self.custody),
            )
            self.custody.discard_account(account, capability)

        self._verify(rollback)
        logger.info(
            f"Initialized gift ledger for {administrator}: "
            f"{len(records)} gifts, {total} escrowed in {account}",
            extra={"administrator": administrator, "amount": total},
        )
        return ledger

    def add_gift(
        self,
        administrator: str,
        beneficiary: str,
        amount: int,
        unlock_time: int,
    ) -> GiftRecord:
        """
        Add *amount* to the beneficiary's gift (creating it if absent) and
        set its unlock time to *unlock_time*, even if that is earlier than
        the previous one.
        """
        ledger = self.get_ledger(administrator)
        self.assert_valid_beneficiary(beneficiary)
        amount = validate_amount(amount)
        unlock_time = validate_unlock_time(unlock_time)
        existing = ledger.beneficiaries.get(beneficiary)
        if existing is not None:
            record = existing.merged(amount, unlock_time)
        else:
            record = GiftRecord(amount, unlock_time)

        self._capture()
        self.custody.transfer(administrator, ledger.escrow_account, amount)
        ledger.beneficiaries[beneficiary] = record

        def rollback() -> None:
            if existing is None:
                del ledger.beneficiaries[beneficiary]
            else:
                ledger.beneficiaries[beneficiary] = existing
            self.custody.transfer(
                ledger.escrow_account, administrator, amount,
                signer=ledger.signer(self.custody),
            )

        self._verify(rollback)
        logger.info(
            f"Gift to {beneficiary} from {administrator}: +{amount} "
            f"(now {record.amount}, unlocks after {record.unlock_time})",
            extra={"administrator": administrator, "beneficiary": beneficiary,
                   "amount": amount, "unlock_time": record.unlock_time},
        )
        return record

    def remove_gift(self, administrator: str, beneficiary: str) -> GiftRecord:
        """Claw back a gift regardless of its unlock time; refunds in full."""
        ledger = self.get_ledger(administrator)

        self._capture()
        record = ledger.take(beneficiary)
        try:
            self.custody.transfer(
                ledger.escrow_account, administrator, record.amount,
                signer=ledger.signer(self.custody),
            )
        except Exception:
            ledger.beneficiaries[beneficiary] = record
            raise

        def rollback() -> None:
            self.custody.transfer(administrator, ledger.escrow_account, record.amount)
            ledger.beneficiaries[beneficiary] = record

        self._verify(rollback)
        logger.info(
            f"Removed gift to {beneficiary}; refunded {record.amount} to {administrator}",
            extra={"administrator": administrator, "beneficiary": beneficiary,
                   "amount": record.amount},
        )
        return record

    def claim_gift(self, beneficiary: str, administrator: str) -> GiftRecord:
        """Pay the beneficiary's gift out once its unlock time has passed."""
        ledger = self.get_ledger(administrator)
        record = ledger.get(beneficiary)
        now = self.clock.now()
        assert_unlocked(beneficiary, record, now)

        self._capture()
        del ledger.beneficiaries[beneficiary]
        try:
            self.custody.transfer(
                ledger.escrow_account, beneficiary, record.amount,
                signer=ledger.signer(self.custody),
            )
        except Exception:
            ledger.beneficiaries[beneficiary] = record
            raise

        def rollback() -> None:
            self.custody.transfer(beneficiary, ledger.escrow_account, record.amount)
            ledger.beneficiaries[beneficiary] = record

        self._verify(rollback)
        logger.info(
            f"{beneficiary} claimed {record.amount} from ledger of {administrator}",
            extra={"administrator": administrator, "beneficiary": beneficiary,
                   "amount": record.amount},
        )
        return record

    # ---- views ----

    def get_gift(self, administrator: str, beneficiary: str) -> GiftRecord:
        return self.get_ledger(administrator).get(beneficiary)

    def list_gifts(self, administrator: str) -> dict[str, GiftRecord]:
        return dict(self.get_ledger(administrator).beneficiaries)

    def total_liabilities(self, administrator: str) -> int:
        return self.get_ledger(administrator).total_liabilities()

    def escrow_balance(self, administrator: str) -> int:
        return self.custody.balance_of(self.get_ledger(administrator).escrow_account)

    def is_claimable(self, beneficiary: str, administrator: str) -> bool:
        ledger = self.ledgers.get(administrator)
        if ledger is None:
            return False
        record = ledger.beneficiaries.get(beneficiary)
        return record is not None and record.is_unlocked(self.clock.now())

    # ---- invariant hooks ----

    def _capture(self) -> None:
        if self.check_invariants:
            self._checker.capture(self)

    def _verify(self, rollback: Callable[[], None]) -> None:
        """Check invariants; on failure undo the operation, then raise."""
        if not self.check_invariants:
            return
        ok, msg = self._checker.verify(self)
        if ok:
            return
        logger.error(f"Invariant check failed, rolling back: {msg}")
        try:
            rollback()
        except GiftLedgerError as exc:
            logger.critical(f"Rollback failed, ledger state is inconsistent: {exc}")
            raise InvariantViolation(f"{msg}; rollback failed: {exc}") from exc
        raise InvariantViolation(msg)
