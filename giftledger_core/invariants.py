"""
Post-operation invariant checks for GiftLedger.

Checked after every entry operation when the registry runs with
``check_invariants=True``:
  - Each escrow account covers its ledger's recorded liabilities
  - Escrow balance and liabilities move by the same amount (conservation)
  - Ledgers are never removed once created
  - Gift amounts stay within the 64-bit range
  - No account balance goes negative
"""

from __future__ import annotations

from dataclasses import dataclass, field

from giftledger_core.precision import MAX_AMOUNT


@dataclass
class RegistrySnapshot:
    """Per-ledger balances and liabilities before an operation."""
    escrow_balances: dict[str, int] = field(default_factory=dict)
    liabilities: dict[str, int] = field(default_factory=dict)


class InvariantChecker:
    """
    Captures a pre-operation snapshot of a ``GiftRegistry`` and validates
    invariants after the operation is applied.
    """

    def __init__(self):
        self._snapshot: RegistrySnapshot | None = None

    def capture(self, registry) -> None:
        """Take a snapshot of every ledger before an operation."""
        snap = RegistrySnapshot()
        for admin, ledger in registry.ledgers.items():
            snap.escrow_balances[admin] = registry.custody.balance_of(ledger.escrow_account)
            snap.liabilities[admin] = ledger.total_liabilities()
        self._snapshot = snap

    def verify(self, registry) -> tuple[bool, str]:
        """
        Verify all invariants against the current registry state.
        Returns (passed, error_message).
        """
        errors: list[str] = []
        for check in (
            self._check_escrow_covers_liabilities,
            self._check_conservation,
            self._check_no_ledger_removed,
            self._check_amount_bounds,
            self._check_no_negative_balances,
        ):
            ok, msg = check(registry)
            if not ok:
                errors.append(msg)

        if errors:
            return False, "; ".join(errors)
        return True, ""

    # ── individual checks ───────────────────────────────────────

    def _check_escrow_covers_liabilities(self, registry) -> tuple[bool, str]:
        for admin, ledger in registry.ledgers.items():
            balance = registry.custody.balance_of(ledger.escrow_account)
            owed = ledger.total_liabilities()
            if balance < owed:
                return False, (
                    f"Escrow of {admin} holds {balance} but owes {owed}"
                )
        return True, ""

    def _check_conservation(self, registry) -> tuple[bool, str]:
        if self._snapshot is None:
            return True, ""
        for admin, before_balance in self._snapshot.escrow_balances.items():
            ledger = registry.ledgers.get(admin)
            if ledger is None:
                continue
            balance_delta = registry.custody.balance_of(ledger.escrow_account) - before_balance
            liability_delta = ledger.total_liabilities() - self._snapshot.liabilities[admin]
            if balance_delta != liability_delta:
                return False, (
                    f"Ledger of {admin}: escrow moved {balance_delta} "
                    f"but liabilities moved {liability_delta}"
                )
        return True, ""

    def _check_no_ledger_removed(self, registry) -> tuple[bool, str]:
        if self._snapshot is None:
            return True, ""
        missing = set(self._snapshot.escrow_balances) - set(registry.ledgers)
        if missing:
            return False, f"Ledgers disappeared: {sorted(missing)}"
        return True, ""

    def _check_amount_bounds(self, registry) -> tuple[bool, str]:
        for admin, ledger in registry.ledgers.items():
            for beneficiary, record in ledger.beneficiaries.items():
                if not 0 <= record.amount <= MAX_AMOUNT:
                    return False, (
                        f"Gift {admin}->{beneficiary} amount {record.amount} out of range"
                    )
        return True, ""

    def _check_no_negative_balances(self, registry) -> tuple[bool, str]:
        accounts = getattr(registry.custody, "accounts", {})
        for addr, state in accounts.items():
            if state.balance < 0:
                return False, f"Account {addr} has negative balance {state.balance}"
        return True, ""
