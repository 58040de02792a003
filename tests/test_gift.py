"""
Test suite for giftledger_core.gift — time-locked gift ledgers.

Covers:
  - GiftRecord merge and eligibility
  - initialize: funding, duplicates, AlreadyInitialized, LengthMismatch
  - add_gift merge semantics (amount sum, unlock_time overwrite)
  - remove_gift clawback regardless of lock
  - claim_gift boundary, single payout, restore on failed transfer
  - Balance conservation across an operation sequence
  - Read-only views
"""

import unittest

import pytest

from giftledger_core.clock import ManualClock
from giftledger_core.custody import InMemoryCustodyService
from giftledger_core.errors import (
    AlreadyInitialized,
    GiftNotFound,
    InsufficientFunds,
    InvalidAmount,
    InvalidBeneficiary,
    LengthMismatch,
    NotInitialized,
    NotYetUnlocked,
)
from giftledger_core.gift import (
    GiftRecord,
    GiftRegistry,
    assert_lengths_match,
    is_unlocked,
)
from giftledger_core.precision import MAX_AMOUNT


class TestGiftRecord(unittest.TestCase):

    def test_strictly_after_unlock(self):
        r = GiftRecord(amount=10, unlock_time=1000)
        self.assertFalse(is_unlocked(r, 999))
        self.assertFalse(r.is_unlocked(1000))
        self.assertTrue(r.is_unlocked(1001))

    def test_merged_adds_amount_and_replaces_time(self):
        r = GiftRecord(100, 2000).merged(50, 500)
        self.assertEqual(r, GiftRecord(150, 500))

    def test_merged_overflow_rejected(self):
        with self.assertRaises(InvalidAmount):
            GiftRecord(MAX_AMOUNT, 0).merged(1, 0)

    def test_to_dict(self):
        self.assertEqual(GiftRecord(7, 9).to_dict(), {"amount": 7, "unlock_time": 9})

    def test_assert_lengths_match(self):
        assert_lengths_match(["a"], [1], [2])
        with self.assertRaises(LengthMismatch) as ctx:
            assert_lengths_match(["a", "b"], [1], [2])
        self.assertEqual(ctx.exception.lengths, (2, 1, 1))


class TestRegistryScenarios(unittest.TestCase):
    """End-to-end walkthrough of a single administrator's ledger."""

    def setUp(self):
        self.clock = ManualClock(0)
        self.custody = InMemoryCustodyService()
        self.custody.deposit("rAdmin", 1_000)
        self.reg = GiftRegistry(self.custody, self.clock, check_invariants=True)
        self.reg.initialize("rAdmin", ["rB1", "rB2"], [100, 200], [1000, 2000])

    def test_initialize_creates_records_and_escrow(self):
        self.assertEqual(
            self.reg.list_gifts("rAdmin"),
            {"rB1": GiftRecord(100, 1000), "rB2": GiftRecord(200, 2000)},
        )
        self.assertEqual(self.reg.escrow_balance("rAdmin"), 300)
        self.assertEqual(self.custody.balance_of("rAdmin"), 700)

    def test_add_merges_into_existing(self):
        record = self.reg.add_gift("rAdmin", "rB1", 50, 1500)
        self.assertEqual(record, GiftRecord(150, 1500))
        self.assertEqual(self.reg.escrow_balance("rAdmin"), 350)

    def test_claim_after_unlock(self):
        self.reg.add_gift("rAdmin", "rB1", 50, 1500)
        self.clock.set(1600)
        paid = self.reg.claim_gift("rB1", "rAdmin")
        self.assertEqual(paid.amount, 150)
        self.assertEqual(self.custody.balance_of("rB1"), 150)
        self.assertNotIn("rB1", self.reg.list_gifts("rAdmin"))

    def test_claim_before_unlock(self):
        self.reg.add_gift("rAdmin", "rB1", 50, 1500)
        self.clock.set(1400)
        with self.assertRaises(NotYetUnlocked):
            self.reg.claim_gift("rB1", "rAdmin")
        self.assertEqual(self.reg.get_gift("rAdmin", "rB1"), GiftRecord(150, 1500))

    def test_remove_before_unlock_refunds(self):
        self.clock.set(10)
        record = self.reg.remove_gift("rAdmin", "rB2")
        self.assertEqual(record.amount, 200)
        self.assertEqual(self.custody.balance_of("rAdmin"), 900)
        self.assertEqual(self.reg.escrow_balance("rAdmin"), 100)
        with self.assertRaises(GiftNotFound):
            self.reg.get_gift("rAdmin", "rB2")

    def test_second_initialize_rejected(self):
        before = self.reg.list_gifts("rAdmin")
        with self.assertRaises(AlreadyInitialized):
            self.reg.initialize("rAdmin", ["rB3"], [5], [5])
        self.assertEqual(self.reg.list_gifts("rAdmin"), before)
        self.assertEqual(self.reg.escrow_balance("rAdmin"), 300)
        self.assertEqual(self.custody.balance_of("rAdmin"), 700)


# ═══════════════════════════════════════════════════════════════════
#  initialize
# ═══════════════════════════════════════════════════════════════════

class TestInitialize:

    def test_length_mismatch(self, registry):
        with pytest.raises(LengthMismatch):
            registry.initialize("rAdmin", ["rB1", "rB2"], [1, 2], [1])
        assert not registry.has_ledger("rAdmin")

    def test_duplicate_beneficiary_last_write_wins(self, registry, custody):
        ledger = registry.initialize("rAdmin", ["rB1", "rB1"], [10, 30], [5, 7])
        assert ledger.beneficiaries == {"rB1": GiftRecord(30, 7)}
        # Every listed amount is still escrowed.
        assert custody.balance_of(ledger.escrow_account) == 40

    def test_empty_ledger(self, registry):
        ledger = registry.initialize("rAdmin", [], [], [])
        assert len(ledger) == 0
        assert registry.escrow_balance("rAdmin") == 0

    def test_insufficient_funds_leaves_nothing(self, registry, custody):
        accounts_before = set(custody.accounts)
        with pytest.raises(InsufficientFunds):
            registry.initialize("rAdmin", ["rB1"], [10_001], [5])
        assert not registry.has_ledger("rAdmin")
        assert set(custody.accounts) == accounts_before
        assert custody.balance_of("rAdmin") == 10_000

    def test_unfunded_administrator(self, registry):
        with pytest.raises(InsufficientFunds):
            registry.initialize("rNobody", ["rB1"], [1], [5])
        # Zero-amount ledgers need no funds.
        registry.initialize("rNobody", ["rB1"], [0], [5])
        assert registry.has_ledger("rNobody")

    def test_invalid_amounts(self, registry):
        with pytest.raises(InvalidAmount):
            registry.initialize("rAdmin", ["rB1"], [-1], [5])
        with pytest.raises(InvalidAmount):
            registry.initialize("rAdmin", ["rB1"], [1.5], [5])
        with pytest.raises(InvalidAmount):
            registry.initialize("rAdmin", ["rB1", "rB2"], [MAX_AMOUNT, 1], [5, 5])
        assert not registry.has_ledger("rAdmin")

    def test_separate_administrators_get_separate_escrows(self, registry, custody):
        custody.deposit("rOther", 50)
        a = registry.initialize("rAdmin", ["rB1"], [10], [5])
        b = registry.initialize("rOther", ["rB1"], [20], [5])
        assert a.escrow_account != b.escrow_account
        assert registry.escrow_balance("rAdmin") == 10
        assert registry.escrow_balance("rOther") == 20

    def test_escrow_account_cannot_be_beneficiary(self, seeded_registry, custody):
        escrow = seeded_registry.get_ledger("rAdmin").escrow_account
        custody.deposit("rOther", 50)
        accounts_before = set(custody.accounts)
        with pytest.raises(InvalidBeneficiary):
            seeded_registry.initialize("rOther", ["rB1", escrow], [10, 20], [5, 5])
        assert not seeded_registry.has_ledger("rOther")
        assert set(custody.accounts) == accounts_before
        assert custody.balance_of("rOther") == 50
        assert custody.balance_of(escrow) == 300



# ═══════════════════════════════════════════════════════════════════
#  add / remove / claim
# ═══════════════════════════════════════════════════════════════════

class TestAddGift:

    def test_not_initialized(self, registry):
        with pytest.raises(NotInitialized):
            registry.add_gift("rAdmin", "rB1", 1, 1)

    def test_new_beneficiary(self, seeded_registry):
        record = seeded_registry.add_gift("rAdmin", "rB3", 25, 3000)
        assert record == GiftRecord(25, 3000)
        assert seeded_registry.escrow_balance("rAdmin") == 325

    def test_merge_can_shorten_lock(self, seeded_registry, clock):
        seeded_registry.add_gift("rAdmin", "rB2", 1, 0)
        clock.set(1)
        assert seeded_registry.is_claimable("rB2", "rAdmin")
        assert seeded_registry.claim_gift("rB2", "rAdmin").amount == 201

    def test_merge_can_extend_lock(self, seeded_registry):
        record = seeded_registry.add_gift("rAdmin", "rB1", 0, 9000)
        assert record == GiftRecord(100, 9000)

    def test_insufficient_funds_keeps_record(self, seeded_registry):
        with pytest.raises(InsufficientFunds):
            seeded_registry.add_gift("rAdmin", "rB1", 1_000_000, 1)
        assert seeded_registry.get_gift("rAdmin", "rB1") == GiftRecord(100, 1000)
        assert seeded_registry.escrow_balance("rAdmin") == 300

    def test_own_escrow_rejected(self, seeded_registry, custody, clock):
        escrow = seeded_registry.get_ledger("rAdmin").escrow_account
        with pytest.raises(InvalidBeneficiary):
            seeded_registry.add_gift("rAdmin", escrow, 10, 0)
        clock.set(5)
        with pytest.raises(GiftNotFound):
            seeded_registry.claim_gift(escrow, "rAdmin")
        assert custody.balance_of(escrow) == 300
        assert custody.balance_of("rAdmin") == 9_700

    def test_other_ledger_escrow_rejected(self, seeded_registry, custody):
        custody.deposit("rOther", 50)
        other = seeded_registry.initialize("rOther", ["rB1"], [20], [5])
        with pytest.raises(InvalidBeneficiary):
            seeded_registry.add_gift("rAdmin", other.escrow_account, 10, 0)
        assert other.escrow_account not in seeded_registry.list_gifts("rAdmin")
        assert seeded_registry.escrow_balance("rAdmin") == 300
        assert seeded_registry.escrow_balance("rOther") == 20


class TestRemoveGift:

    def test_failed_refund_restores_record(self, seeded_registry, custody):
        ledger = seeded_registry.get_ledger("rAdmin")
        custody.transfer(
            ledger.escrow_account, "rElsewhere", 300, signer=ledger.signer(custody),
        )
        with pytest.raises(InsufficientFunds):
            seeded_registry.remove_gift("rAdmin", "rB1")
        assert seeded_registry.get_gift("rAdmin", "rB1") == GiftRecord(100, 1000)
        assert custody.balance_of("rAdmin") == 9_700
        assert custody.balance_of(ledger.escrow_account) == 0

    def test_missing_gift(self, seeded_registry):
        with pytest.raises(GiftNotFound):
            seeded_registry.remove_gift("rAdmin", "rNobody")

    def test_not_initialized(self, registry):
        with pytest.raises(NotInitialized):
            registry.remove_gift("rAdmin", "rB1")

    def test_remove_after_unlock_still_allowed(self, seeded_registry, clock, custody):
        clock.set(5000)
        seeded_registry.remove_gift("rAdmin", "rB1")
        assert custody.balance_of("rAdmin") == 9_800


class TestClaimGift:

    def test_boundary_is_strict(self, seeded_registry, clock):
        clock.set(1000)
        with pytest.raises(NotYetUnlocked) as exc:
            seeded_registry.claim_gift("rB1", "rAdmin")
        assert exc.value.unlock_time == 1000
        clock.set(1001)
        assert seeded_registry.claim_gift("rB1", "rAdmin").amount == 100

    def test_second_claim_fails(self, seeded_registry, clock):
        clock.set(3000)
        seeded_registry.claim_gift("rB1", "rAdmin")
        with pytest.raises(GiftNotFound):
            seeded_registry.claim_gift("rB1", "rAdmin")

    def test_claim_unknown_ledger(self, registry):
        with pytest.raises(NotInitialized):
            registry.claim_gift("rB1", "rAdmin")

    def test_failed_transfer_restores_record(self, seeded_registry, custody, clock):
        ledger = seeded_registry.get_ledger("rAdmin")
        # Drain escrow behind the ledger's back.
        custody.accounts[ledger.escrow_account].balance = 0
        seeded_registry.check_invariants = False
        clock.set(3000)
        with pytest.raises(InsufficientFunds):
            seeded_registry.claim_gift("rB1", "rAdmin")
        assert seeded_registry.get_gift("rAdmin", "rB1") == GiftRecord(100, 1000)


# ═══════════════════════════════════════════════════════════════════
#  Conservation and views
# ═══════════════════════════════════════════════════════════════════

class TestConservation:

    def test_balance_matches_liabilities_after_every_step(self, seeded_registry, clock):
        reg = seeded_registry
        steps = [
            lambda: reg.add_gift("rAdmin", "rB3", 40, 100),
            lambda: reg.add_gift("rAdmin", "rB1", 60, 50),
            lambda: clock.set(200),
            lambda: reg.claim_gift("rB3", "rAdmin"),
            lambda: reg.remove_gift("rAdmin", "rB2"),
            lambda: reg.claim_gift("rB1", "rAdmin"),
            lambda: reg.add_gift("rAdmin", "rB2", 5, 10_000),
        ]
        for step in steps:
            step()
            assert reg.escrow_balance("rAdmin") == reg.total_liabilities("rAdmin")
        assert reg.total_liabilities("rAdmin") == 5


class TestViews:

    def test_is_claimable_never_raises(self, seeded_registry, clock):
        assert not seeded_registry.is_claimable("rB1", "rNobody")
        assert not seeded_registry.is_claimable("rNobody", "rAdmin")
        clock.set(1001)
        assert seeded_registry.is_claimable("rB1", "rAdmin")
        assert not seeded_registry.is_claimable("rB2", "rAdmin")

    def test_list_gifts_is_a_copy(self, seeded_registry):
        gifts = seeded_registry.list_gifts("rAdmin")
        gifts.clear()
        assert len(seeded_registry.get_ledger("rAdmin")) == 2

    def test_to_dict_hides_capability(self, seeded_registry):
        d = seeded_registry.get_ledger("rAdmin").to_dict()
        assert d["total_liabilities"] == 300
        assert set(d) == {"administrator", "escrow_account", "gifts", "total_liabilities"}

    def test_get_ledger_missing(self, registry):
        with pytest.raises(NotInitialized):
            registry.get_ledger("rAdmin")


if __name__ == "__main__":
    unittest.main()
