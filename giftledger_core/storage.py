"""
SQLite-based persistence for GiftLedger state.

Stores custody accounts, gift ledgers and their gift records so a server
can recover after restart.  Escrow capability secrets are sealed with
AES-256-GCM under a key derived from the configured passphrase.

Amounts are stored as TEXT: SQLite integers are signed 64-bit and gift
amounts use the full unsigned range.

Usage:
    with LedgerStore("data/giftledger.db", passphrase="...") as store:
        store.snapshot(registry)
        ...
        store.restore(registry)
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any

from Crypto.Cipher import AES

from giftledger_core.custody import AccountState, EscrowCapability
from giftledger_core.gift import GiftLedger, GiftRecord

logger = logging.getLogger("giftledger_storage")

KDF_ITERATIONS = 200_000


class LedgerStore:
    """Thin SQLite wrapper for persisting gift ledgers and custody accounts."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/giftledger.db", passphrase: str = ""):
        self.db_path = db_path
        self._passphrase = passphrase
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        if not passphrase:
            logger.warning("Storage passphrase is empty; capability secrets stored unsealed")
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                address       TEXT PRIMARY KEY,
                balance       TEXT NOT NULL DEFAULT '0',
                registered    INTEGER NOT NULL DEFAULT 1,
                verifying_key TEXT,
                nonce         INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS ledgers (
                administrator  TEXT PRIMARY KEY,
                escrow_account TEXT NOT NULL,
                cap_kdf        TEXT NOT NULL,
                cap_salt       TEXT NOT NULL DEFAULT '',
                cap_nonce      TEXT NOT NULL DEFAULT '',
                cap_tag        TEXT NOT NULL DEFAULT '',
                cap_blob       TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS gifts (
                administrator TEXT NOT NULL,
                beneficiary   TEXT NOT NULL,
                amount        TEXT NOT NULL,
                unlock_time   TEXT NOT NULL,
                PRIMARY KEY (administrator, beneficiary)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade GiftLedger."
            )

    # ── capability sealing ───────────────────────────────────────

    def _derive_key(self, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac(
            "sha256", self._passphrase.encode("utf-8"), salt, KDF_ITERATIONS,
        )

    def _seal(self, secret: bytes) -> dict[str, str]:
        if not self._passphrase:
            return {"cap_kdf": "none", "cap_salt": "", "cap_nonce": "",
                    "cap_tag": "", "cap_blob": secret.hex()}
        salt = os.urandom(16)
        nonce = os.urandom(12)
        cipher = AES.new(self._derive_key(salt), AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(secret)
        return {
            "cap_kdf": "pbkdf2-sha256",
            "cap_salt": salt.hex(),
            "cap_nonce": nonce.hex(),
            "cap_tag": tag.hex(),
            "cap_blob": ciphertext.hex(),
        }

    def _unseal(self, row: sqlite3.Row) -> bytes:
        """Recover a capability secret.  Raises ValueError on a wrong passphrase."""
        if row["cap_kdf"] == "none":
            return bytes.fromhex(row["cap_blob"])
        if not self._passphrase:
            raise ValueError(
                f"Capability for {row['administrator']} is sealed; passphrase required"
            )
        cipher = AES.new(
            self._derive_key(bytes.fromhex(row["cap_salt"])),
            AES.MODE_GCM,
            nonce=bytes.fromhex(row["cap_nonce"]),
        )
        return cipher.decrypt_and_verify(
            bytes.fromhex(row["cap_blob"]), bytes.fromhex(row["cap_tag"]),
        )

    # ── loaders ──────────────────────────────────────────────────

    def load_accounts(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM accounts").fetchall()
        return [dict(r) for r in rows]

    def load_gifts(self, administrator: str | None = None) -> list[dict[str, Any]]:
        if administrator is not None:
            rows = self._conn.execute(
                "SELECT * FROM gifts WHERE administrator = ? ORDER BY beneficiary",
                (administrator,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM gifts ORDER BY administrator, beneficiary"
            ).fetchall()
        return [dict(r) for r in rows]

    def ledger_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM ledgers").fetchone()
        return row["n"]

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot(self, registry: Any) -> None:
        """Persist the registry and its custody accounts in one transaction.

        Gift rows are rewritten per ledger so that removed and claimed
        gifts disappear from the store.
        """
        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")

            for addr, acc in getattr(registry.custody, "accounts", {}).items():
                c.execute(
                    """INSERT OR REPLACE INTO accounts
                       (address, balance, registered, verifying_key, nonce)
                       VALUES (?, ?, ?, ?, ?)""",
                    (addr, str(acc.balance), int(acc.registered),
                     acc.verifying_key.hex() if acc.verifying_key else None,
                     acc.nonce),
                )

            for admin, ledger in registry.ledgers.items():
                exists = c.execute(
                    "SELECT 1 FROM ledgers WHERE administrator = ?", (admin,)
                ).fetchone()
                if exists is None:
                    sealed = self._seal(ledger._capability.secret())
                    c.execute(
                        """INSERT INTO ledgers
                           (administrator, escrow_account, cap_kdf, cap_salt,
                            cap_nonce, cap_tag, cap_blob)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (admin, ledger.escrow_account, sealed["cap_kdf"],
                         sealed["cap_salt"], sealed["cap_nonce"],
                         sealed["cap_tag"], sealed["cap_blob"]),
                    )
                c.execute("DELETE FROM gifts WHERE administrator = ?", (admin,))
                c.executemany(
                    """INSERT INTO gifts (administrator, beneficiary, amount, unlock_time)
                       VALUES (?, ?, ?, ?)""",
                    [(admin, b, str(r.amount), str(r.unlock_time))
                     for b, r in ledger.beneficiaries.items()],
                )

            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.debug(f"Snapshot written: {len(registry.ledgers)} ledgers")

    def restore(self, registry: Any) -> int:
        """
        Load custody accounts and ledgers into an empty registry.
        Returns the number of ledgers restored.
        """
        accounts = getattr(registry.custody, "accounts", None)
        if accounts is not None:
            for row in self.load_accounts():
                accounts[row["address"]] = AccountState(
                    address=row["address"],
                    balance=int(row["balance"]),
                    registered=bool(row["registered"]),
                    verifying_key=(bytes.fromhex(row["verifying_key"])
                                   if row["verifying_key"] else None),
                    nonce=row["nonce"],
                )

        restored = 0
        for row in self._conn.execute("SELECT * FROM ledgers").fetchall():
            admin = row["administrator"]
            capability = EscrowCapability.from_secret(row["escrow_account"], self._unseal(row))
            records = {
                g["beneficiary"]: GiftRecord(int(g["amount"]), int(g["unlock_time"]))
                for g in self.load_gifts(admin)
            }
            registry.ledgers[admin] = GiftLedger(
                admin, row["escrow_account"], capability, records,
            )
            restored += 1
        logger.info(f"Restored {restored} gift ledgers from {self.db_path}")
        return restored

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
