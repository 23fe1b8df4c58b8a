"""
Mining: offline accrual, reward rolls and the per-player accrual pass.
"""
