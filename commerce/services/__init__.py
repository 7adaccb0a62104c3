"""
Services - Balance ledger, inventory, coupons and the order orchestrator.
"""

from commerce.services.coupons import CouponAllocator
from commerce.services.inventory import InventoryManager
from commerce.services.ledger import BalanceLedger
from commerce.services.orders import OrderOrchestrator

__all__ = [
    "BalanceLedger",
    "CouponAllocator",
    "InventoryManager",
    "OrderOrchestrator",
]
