"""
Business logic services for the RewardsPro cashback engine.
"""
from .ledger_service import LedgerService
from .tier_service import TierService, TierCatalog
from .order_import import OrderImportService
from .migration_jobs import JobTracker, ImportTask
from .reconciliation import ReconciliationService
from .order_events import OrderEventService

__all__ = [
    'LedgerService',
    'TierService',
    'TierCatalog',
    'OrderImportService',
    'JobTracker',
    'ImportTask',
    'ReconciliationService',
    'OrderEventService',
]
