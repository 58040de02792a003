"""
Custodial account service for GiftLedger.

The gift core treats account management and currency movement as an
external service.  This module defines that boundary and ships an
in-memory implementation used by the server and the test suite.

Custodial sub-accounts are controlled by an ``EscrowCapability``, an
ECDSA (secp256k1) signing key.  The service keeps only the verifying
key, so any transfer *out* of a custodial account must be signed by a
``TransientSigner`` minted from the capability.  Plain accounts
(administrators, beneficiaries) are authenticated by the hosting
environment and may send without a signer.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Protocol

from ecdsa import SECP256k1, BadSignatureError, SigningKey, VerifyingKey

from giftledger_core.errors import (
    AccountExists,
    CustodyError,
    InsufficientFunds,
    UnauthorizedSigner,
    UnknownAccount,
)
from giftledger_core.precision import checked_add, validate_amount

logger = logging.getLogger("giftledger_custody")

DEFAULT_NAMESPACE = "giftledger::escrow"
DEFAULT_CURRENCY = "GFT"


def derive_account_address(namespace: str, owner: str, seed: bytes) -> str:
    """Derive a custodial address from ``sha256(namespace | owner | seed)``."""
    h = hashlib.sha256()
    h.update(namespace.encode("utf-8"))
    h.update(b"\x00")
    h.update(owner.encode("utf-8"))
    h.update(b"\x00")
    h.update(seed)
    return "g" + h.hexdigest()[:40]


# ═══════════════════════════════════════════════════════════════════
#  Capability / signer
# ═══════════════════════════════════════════════════════════════════

class EscrowCapability:
    """Exclusive authority to act as one custodial account.

    Holders must not hand this object out; callers that only need to
    authorise a single transfer get a ``TransientSigner`` via
    ``CustodialAccountService.sign_as``.
    """

    __slots__ = ("account", "_key")

    def __init__(self, account: str, signing_key: SigningKey):
        self.account = account
        self._key = signing_key

    @classmethod
    def generate(cls, account: str) -> EscrowCapability:
        return cls(account, SigningKey.generate(curve=SECP256k1))

    @classmethod
    def from_secret(cls, account: str, secret: bytes) -> EscrowCapability:
        """Rebuild a capability from its raw 32-byte secret (storage only)."""
        return cls(account, SigningKey.from_string(secret, curve=SECP256k1))

    @property
    def verifying_key(self) -> bytes:
        return self._key.get_verifying_key().to_string()

    def secret(self) -> bytes:
        """Raw secret exponent, for encrypted persistence."""
        return self._key.to_string()

    def _sign(self, message: bytes) -> bytes:
        return self._key.sign_deterministic(message, hashfunc=hashlib.sha256)

    def __repr__(self) -> str:
        return f"EscrowCapability({self.account})"


class TransientSigner:
    """Short-lived signing handle for a custodial account."""

    __slots__ = ("account", "_capability")

    def __init__(self, capability: EscrowCapability):
        self.account = capability.account
        self._capability = capability

    def sign(self, message: bytes) -> bytes:
        return self._capability._sign(message)

    def __repr__(self) -> str:
        return f"TransientSigner({self.account})"


# ═══════════════════════════════════════════════════════════════════
#  Service interface
# ═══════════════════════════════════════════════════════════════════

class CustodialAccountService(Protocol):
    """Account and currency primitives the gift core depends on."""

    def create_account(self, owner: str, seed: bytes) -> tuple[str, EscrowCapability]: ...

    def register_currency(self, account: str) -> None: ...

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        signer: TransientSigner | None = None,
    ) -> None: ...

    def sign_as(self, capability: EscrowCapability) -> TransientSigner: ...

    def balance_of(self, account: str) -> int: ...

    def is_custodial(self, account: str) -> bool: ...

    def discard_account(self, account: str, capability: EscrowCapability) -> None: ...


# ═══════════════════════════════════════════════════════════════════
#  In-memory implementation
# ═══════════════════════════════════════════════════════════════════

@dataclass
class AccountState:
    """Balance and custody metadata for one account."""
    address: str
    balance: int = 0
    registered: bool = True
    verifying_key: bytes | None = None   # set only for custodial accounts
    nonce: int = 0

    @property
    def is_custodial(self) -> bool:
        return self.verifying_key is not None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "balance": self.balance,
            "registered": self.registered,
            "custodial": self.is_custodial,
            "nonce": self.nonce,
        }


class InMemoryCustodyService:
    """Dict-backed implementation of ``CustodialAccountService``."""

    def __init__(self, namespace: str = DEFAULT_NAMESPACE, currency: str = DEFAULT_CURRENCY):
        self.namespace = namespace
        self.currency = currency
        self.accounts: dict[str, AccountState] = {}

    # ---- account lifecycle ----

    def create_account(self, owner: str, seed: bytes) -> tuple[str, EscrowCapability]:
        """Create a custodial sub-account for *owner*; not yet registered."""
        address = derive_account_address(self.namespace, owner, seed)
        if address in self.accounts:
            raise AccountExists(f"Account {address} already exists")
        capability = EscrowCapability.generate(address)
        self.accounts[address] = AccountState(
            address=address,
            registered=False,
            verifying_key=capability.verifying_key,
        )
        logger.debug(f"Created custodial account {address} for {owner}")
        return address, capability

    def register_currency(self, account: str) -> None:
        state = self.accounts.get(account)
        if state is None:
            raise UnknownAccount(f"Account {account} does not exist")
        state.registered = True

    def discard_account(self, account: str, capability: EscrowCapability) -> None:
        """Remove an empty custodial account (rollback of a failed setup)."""
        state = self._require_custodial(account, capability)
        if state.balance != 0:
            raise CustodyError(f"Account {account} still holds {state.balance}")
        del self.accounts[account]
        logger.debug(f"Discarded custodial account {account}")

    def sign_as(self, capability: EscrowCapability) -> TransientSigner:
        self._require_custodial(capability.account, capability)
        return TransientSigner(capability)

    # ---- balances ----

    def balance_of(self, account: str) -> int:
        state = self.accounts.get(account)
        return state.balance if state is not None else 0

    def is_custodial(self, account: str) -> bool:
        state = self.accounts.get(account)
        return state is not None and state.is_custodial

    def deposit(self, account: str, amount: int) -> int:
        """Credit *account* from outside the ledger (genesis / faucet)."""
        amount = validate_amount(amount)
        state = self._receiver(account)
        state.balance = checked_add(state.balance, amount)
        return state.balance

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        signer: TransientSigner | None = None,
    ) -> None:
        """Move *amount* between accounts, all-or-nothing."""
        amount = validate_amount(amount)
        src = self.accounts.get(from_account)
        if src is not None and src.is_custodial:
            self._verify_signer(src, to_account, amount, signer)
        balance = src.balance if src is not None else 0
        if balance < amount:
            raise InsufficientFunds(from_account, balance, amount)
        dst = self.accounts.get(to_account)
        if dst is not None and not dst.registered:
            raise UnknownAccount(f"Account {to_account} cannot hold {self.currency}")
        if amount == 0 or from_account == to_account:
            return
        new_dst_balance = checked_add(dst.balance if dst is not None else 0, amount)
        # Everything validated; apply.
        if dst is None:
            dst = self._receiver(to_account)
        src.balance -= amount
        dst.balance = new_dst_balance
        if src.is_custodial:
            src.nonce += 1
        logger.debug(f"Transfer {amount} {self.currency}: {from_account} -> {to_account}")

    # ---- internals ----

    def _receiver(self, account: str) -> AccountState:
        state = self.accounts.get(account)
        if state is None:
            state = AccountState(address=account)
            self.accounts[account] = state
        return state

    def _require_custodial(self, account: str, capability: EscrowCapability) -> AccountState:
        state = self.accounts.get(account)
        if state is None or not state.is_custodial:
            raise UnknownAccount(f"{account} is not a custodial account")
        if capability.account != account or capability.verifying_key != state.verifying_key:
            raise UnauthorizedSigner(f"Capability does not control {account}")
        return state

    @staticmethod
    def _transfer_message(state: AccountState, to_account: str, amount: int) -> bytes:
        return (
            f"{state.address}|{to_account}|{amount}|{state.nonce}".encode("utf-8")
        )

    def _verify_signer(
        self,
        state: AccountState,
        to_account: str,
        amount: int,
        signer: TransientSigner | None,
    ) -> None:
        if signer is None or signer.account != state.address:
            raise UnauthorizedSigner(f"Transfer from {state.address} requires its signer")
        message = self._transfer_message(state, to_account, amount)
        vk = VerifyingKey.from_string(state.verifying_key, curve=SECP256k1)
        try:
            vk.verify(signer.sign(message), message, hashfunc=hashlib.sha256)
        except BadSignatureError:
            raise UnauthorizedSigner(f"Bad signature for {state.address}") from None
