"""
Shared pytest fixtures.

Every test gets a fresh app bound to an in-memory SQLite database.
Fixture rows are committed and returned detached with their attributes
loaded, so tests can read ``.id`` outside an app context.
"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal


@pytest.fixture
def app():
    from rewardspro import create_app
    from rewardspro.extensions import db

    app = create_app('testing')
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sample_tenant(app):
    from rewardspro.extensions import db
    from rewardspro.models import Tenant

    with app.app_context():
        tenant = Tenant(
            shop_name='Test Shop',
            shopify_domain='test-shop.myshopify.com',
            shopify_access_token='shpat_test_token',
            settings={},
            is_active=True
        )
        db.session.add(tenant)
        db.session.commit()
        db.session.refresh(tenant)
        return tenant


@pytest.fixture
def sample_tiers(app, sample_tenant):
    """Bronze (base, 1%), Silver (500, 2%), Gold (1000, 3%)."""
    from rewardspro.extensions import db
    from rewardspro.models import Tier

    with app.app_context():
        tiers = [
            Tier(tenant_id=sample_tenant.id, name='Bronze', cashback_percent=Decimal('1.00'),
                 min_spend=None),
            Tier(tenant_id=sample_tenant.id, name='Silver', cashback_percent=Decimal('2.00'),
                 min_spend=Decimal('500.00')),
            Tier(tenant_id=sample_tenant.id, name='Gold', cashback_percent=Decimal('3.00'),
                 min_spend=Decimal('1000.00')),
        ]
        db.session.add_all(tiers)
        db.session.commit()
        for tier in tiers:
            db.session.refresh(tier)
        return {tier.name: tier for tier in tiers}


@pytest.fixture
def sample_customer(app, sample_tenant, sample_tiers):
    """Customer on the base tier with no credit."""
    from rewardspro.extensions import db
    from rewardspro.models import Customer
    from rewardspro.services.tier_service import TierService

    with app.app_context():
        customer = Customer(
            tenant_id=sample_tenant.id,
            shopify_customer_id='7001',
            email='jane@example.com',
            store_credit=Decimal('0'),
            total_earned=Decimal('0')
        )
        db.session.add(customer)
        db.session.flush()
        TierService(sample_tenant.id).assign_initial_tier(customer)
        db.session.commit()
        db.session.refresh(customer)
        return customer


@pytest.fixture
def auth_headers(sample_tenant):
    return {
        'X-Shop-Domain': sample_tenant.shopify_domain,
        'X-Staff-Email': 'staff@test-shop.com',
        'Content-Type': 'application/json'
    }


@pytest.fixture
def make_order():
    """Factory for Shopify ``orders`` edge nodes."""
    def _make(number, amount='100.00', customer_id='7001', created_at=None,
              status='PAID', email='jane@example.com'):
        created_at = created_at or (datetime.utcnow() - timedelta(days=1)).replace(microsecond=0)
        node = {
            'id': f'gid://shopify/Order/{5000 + number}',
            'name': f'#{1000 + number}',
            'createdAt': created_at.strftime('%Y-%m-%dT%H:%M:%SZ'),
            'displayFinancialStatus': status,
            'totalPriceSet': {'shopMoney': {'amount': amount, 'currencyCode': 'USD'}},
            'customer': {'id': f'gid://shopify/Customer/{customer_id}', 'email': email} if customer_id else None,
        }
        return node
    return _make


@pytest.fixture
def order_connection():
    """Wrap nodes in a GraphQL connection page."""
    def _wrap(nodes, has_next_page=False, end_cursor=None):
        return {
            'edges': [{'cursor': f'c{i}', 'node': node} for i, node in enumerate(nodes)],
            'pageInfo': {'hasNextPage': has_next_page, 'endCursor': end_cursor},
        }
    return _wrap
