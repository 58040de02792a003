"""
GiftLedger node: wires the registry, custody service, clock and
optional SQLite store into one object the API server drives.

Every committed entry operation is followed by a store snapshot, so the
on-disk state always matches the last successful operation.
"""

from __future__ import annotations

import logging
from typing import Sequence

from giftledger_core.clock import Clock, SystemClock
from giftledger_core.config import GiftLedgerConfig
from giftledger_core.custody import InMemoryCustodyService
from giftledger_core.gift import GiftLedger, GiftRecord, GiftRegistry
from giftledger_core.precision import format_amount
from giftledger_core.storage import LedgerStore

logger = logging.getLogger("giftledger")


class GiftNode:
    """Registry + custody + persistence for one server process."""

    def __init__(
        self,
        config: GiftLedgerConfig | None = None,
        clock: Clock | None = None,
        store: LedgerStore | None = None,
    ):
        self.config = config or GiftLedgerConfig()
        self.custody = InMemoryCustodyService(
            namespace=self.config.ledger.seed_namespace,
            currency=self.config.ledger.currency,
        )
        self.registry = GiftRegistry(
            self.custody,
            clock or SystemClock(),
            check_invariants=self.config.ledger.check_invariants,
        )
        self.store = store
        if store is None and self.config.storage.enabled:
            self.store = LedgerStore(
                self.config.storage.path, passphrase=self.config.storage.passphrase,
            )

    @property
    def currency(self) -> str:
        return self.custody.currency

    def start(self) -> None:
        """Restore persisted state, or apply genesis funding on a fresh store."""
        restored = 0
        if self.store is not None:
            restored = self.store.restore(self.registry)
        if restored == 0 and not self.custody.accounts:
            for address, amount in self.config.genesis.accounts.items():
                self.custody.deposit(address, int(amount))
                logger.info(f"Genesis funded {address} with {format_amount(int(amount), self.currency)}")
            self._persist()

    def stop(self) -> None:
        if self.store is not None:
            self._persist()
            self.store.close()
            self.store = None

    # ---- operations (persisted) ----

    def initialize(
        self,
        administrator: str,
        beneficiaries: Sequence[str],
        amounts: Sequence[int],
        unlock_times: Sequence[int],
    ) -> GiftLedger:
        ledger = self.registry.initialize(administrator, beneficiaries, amounts, unlock_times)
        self._persist()
        return ledger

    def add_gift(self, administrator: str, beneficiary: str, amount: int, unlock_time: int) -> GiftRecord:
        record = self.registry.add_gift(administrator, beneficiary, amount, unlock_time)
        self._persist()
        return record

    def remove_gift(self, administrator: str, beneficiary: str) -> GiftRecord:
        record = self.registry.remove_gift(administrator, beneficiary)
        self._persist()
        return record

    def claim_gift(self, beneficiary: str, administrator: str) -> GiftRecord:
        record = self.registry.claim_gift(beneficiary, administrator)
        self._persist()
        return record

    def fund(self, address: str, amount: int) -> int:
        """Credit an account from outside the ledger (dev faucet)."""
        balance = self.custody.deposit(address, amount)
        self._persist()
        return balance

    # ---- views ----

    def balance_of(self, address: str) -> int:
        return self.custody.balance_of(address)

    def status(self) -> dict:
        return {
            "currency": self.currency,
            "ledgers": len(self.registry.ledgers),
            "pending_gifts": sum(len(ledger) for ledger in self.registry.ledgers.values()),
            "now": self.registry.clock.now(),
            "storage": self.store.db_path if self.store is not None else None,
        }

    def _persist(self) -> None:
        if self.store is not None:
            self.store.snapshot(self.registry)
