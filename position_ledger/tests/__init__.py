"""
Position Ledger Test Suite
"""
