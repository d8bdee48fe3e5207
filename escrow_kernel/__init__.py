"""
Escrow Kernel - marketplace connection fees and milestone escrow

A ledger-backed payment core with:
- Idempotent, append-only escrow ledger per account
- Bid acceptance with expiring payment windows and fallback promotion
- Connection-fee charging through a retrying processor adapter
- Milestone escrow with a compensating release saga
- Dispute freeze and split settlement
"""

__version__ = "0.1.0"
