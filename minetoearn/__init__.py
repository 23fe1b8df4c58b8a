"""
Mine To Earn Backend

Backend service for an idle mining game:
- Offline mining accrual and reward rolls
- Player ledger with atomic balance mutations
- In-app purchases verified against the payment app
- Daily cashout rounds settled through a payment rail
"""

__version__ = "0.1.0"
