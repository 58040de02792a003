"""
Exception hierarchy for GiftLedger.

Every failure an entry operation can report is a subclass of
``GiftLedgerError``.  Operations check their preconditions before touching
any state, so catching one of these means nothing was changed.
"""

from __future__ import annotations


class GiftLedgerError(Exception):
    """Base class for all gift-ledger errors."""


class AlreadyInitialized(GiftLedgerError):
    """A ledger already exists for this administrator."""

    def __init__(self, administrator: str):
        self.administrator = administrator
        super().__init__(f"Gift ledger already initialized for {administrator}")


class NotInitialized(GiftLedgerError):
    """No ledger exists for this administrator."""

    def __init__(self, administrator: str):
        self.administrator = administrator
        super().__init__(f"No gift ledger for {administrator}")


class LengthMismatch(GiftLedgerError):
    """Bulk-initialize input sequences differ in length."""

    def __init__(self, beneficiaries: int, amounts: int, unlock_times: int):
        self.lengths = (beneficiaries, amounts, unlock_times)
        super().__init__(
            f"Input lengths differ: beneficiaries={beneficiaries}, "
            f"amounts={amounts}, unlock_times={unlock_times}"
        )


class GiftNotFound(GiftLedgerError):
    """The beneficiary has no pending gift in this ledger."""

    def __init__(self, administrator: str, beneficiary: str):
        self.administrator = administrator
        self.beneficiary = beneficiary
        super().__init__(f"No gift for {beneficiary} in ledger of {administrator}")


class NotYetUnlocked(GiftLedgerError):
    """Claim attempted at or before the gift's unlock time."""

    def __init__(self, beneficiary: str, unlock_time: int, now: int):
        self.beneficiary = beneficiary
        self.unlock_time = unlock_time
        self.now = now
        super().__init__(
            f"Gift for {beneficiary} unlocks after {unlock_time} (now {now})"
        )


class InvalidAmount(GiftLedgerError):
    """Amount is not an unsigned 64-bit integer, or arithmetic overflowed."""


class InvalidBeneficiary(GiftLedgerError):
    """Beneficiary is a custodial escrow account and cannot hold a gift."""

    def __init__(self, beneficiary: str):
        self.beneficiary = beneficiary
        super().__init__(f"{beneficiary} is a custodial account and cannot receive gifts")


# ── Raised by the custody service ────────────────────────────────────

class CustodyError(GiftLedgerError):
    """Base class for errors surfaced by the custodial account service."""


class InsufficientFunds(CustodyError):
    """Source account balance cannot cover the transfer."""

    def __init__(self, account: str, balance: int, amount: int):
        self.account = account
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient funds in {account}: balance {balance}, need {amount}"
        )


class AccountExists(CustodyError):
    """Account creation collided with an existing account."""


class UnknownAccount(CustodyError):
    """Referenced account does not exist or cannot hold the currency."""


class UnauthorizedSigner(CustodyError):
    """Outgoing custodial transfer was not signed by the account's capability."""


class InvariantViolation(GiftLedgerError):
    """A post-operation ledger invariant check failed."""
