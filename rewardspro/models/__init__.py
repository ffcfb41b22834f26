"""
Database models for the RewardsPro cashback engine.
"""
from .tenant import Tenant
from .customer import Customer
from .tier import (
    Tier,
    CustomerMembership,
    TierChangeLog,
    EvaluationPeriod,
    AssignmentType,
    TierChangeType,
)
from .transaction import CashbackTransaction, TransactionStatus, SPEND_STATUSES
from .ledger import StoreCreditLedger, LedgerEntryType, LedgerSource, NON_NEGATIVE_TYPES
from .migration import MigrationHistory, MigrationStatus, JobKind
from .analytics import CustomerAnalytics

__all__ = [
    'Tenant',
    'Customer',
    'Tier',
    'CustomerMembership',
    'TierChangeLog',
    'EvaluationPeriod',
    'AssignmentType',
    'TierChangeType',
    'CashbackTransaction',
    'TransactionStatus',
    'SPEND_STATUSES',
    'StoreCreditLedger',
    'LedgerEntryType',
    'LedgerSource',
    'NON_NEGATIVE_TYPES',
    'MigrationHistory',
    'MigrationStatus',
    'JobKind',
    'CustomerAnalytics',
]
