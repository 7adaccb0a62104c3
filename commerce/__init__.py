"""
Commerce Core - Balance ledger, inventory, first-come coupons and order payment saga.
"""

__version__ = "0.1.0"
