"""
Portion backend: spend staked-stablecoin yield on pay-per-call AI services.

Resolves spendable yield from Solana balances and yield aggregators, drives
x402 payments through an external facilitator (verify, then settle), and keeps
a persisted, size-bounded ledger of every payment attempt plus an audit trail.
"""

__version__ = "0.1.0"
