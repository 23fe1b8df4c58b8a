"""
Cashout rounds, payout execution and payment rails.
"""
