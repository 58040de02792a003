"""
GiftLedger - custodial, time-locked gift distribution.

Key features:
- One escrow ledger per administrator, funded in a single transfer
- Per-beneficiary gifts released strictly after their unlock time
- Administrator top-up and clawback of pending gifts
- Capability-controlled custodial accounts (ECDSA-signed outgoing transfers)
- Post-operation invariant checks, SQLite persistence, REST API
"""

__version__ = "0.3.0"
__all__ = [
    "api",
    "clock",
    "config",
    "custody",
    "errors",
    "gift",
    "invariants",
    "logging_config",
    "node",
    "precision",
    "storage",
]
