"""
Galerie

Marketplace engine for single-unit ledger collectibles:
- Input validation (asset codes, prices, schedules)
- Transaction assembly for list / bid / buy / accept / cancel
- Bid reconciliation across off-chain records and the order book
- Timed auction lifecycle with idempotent finalization
"""

__version__ = "0.1.0"
