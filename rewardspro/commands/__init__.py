"""
CLI Commands for RewardsPro.

Usage:
    flask tiers seed --tenant-id 1          # Create default Bronze/Silver/Gold tiers
    flask tiers evaluate --tenant-id 1      # Re-evaluate every customer's tier
    flask tiers expire                      # Revert expired manual tier assignments
    flask tiers distribution --tenant-id 1  # Customers per tier

    flask ledger verify --tenant-id 1       # Replay ledgers and check balances
    flask reconcile run --tenant-id 1       # Reconcile stale balances with Shopify
"""
from .tiers import init_app as init_tier_commands
from .ledger import init_app as init_ledger_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_tier_commands(app)
    init_ledger_commands(app)
