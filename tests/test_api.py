"""
Tests for the HTTP API.

Tests cover:
- Shop scoping on admin endpoints
- Manual credit adjustments and the error envelope
- Import job start, conflict, status and cancel
- Reconciliation endpoints
- Public storefront lookup
"""
import json
from decimal import Decimal
from unittest.mock import patch, MagicMock


class TestShopScoping:

    def test_missing_shop_is_unauthorized(self, client, sample_customer):
        response = client.get(f'/api/customers/{sample_customer.id}')
        assert response.status_code == 401
        assert response.get_json()['error']['code'] == 'AUTH_REQUIRED'

    def test_unknown_shop(self, client, sample_customer):
        response = client.get(
            f'/api/customers/{sample_customer.id}',
            headers={'X-Shop-Domain': 'nobody.myshopify.com'}
        )
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'SHOP_NOT_FOUND'

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'


class TestCustomerCreditAPI:

    def test_get_customer(self, client, auth_headers, sample_customer):
        response = client.get(f'/api/customers/{sample_customer.id}', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()['customer']
        assert data['shopify_customer_id'] == '7001'
        assert data['tier']['name'] == 'Bronze'
        assert data['tier_info']['next_tier']['name'] == 'Silver'

    @patch('rewardspro.services.ledger_service.ShopifyClient')
    def test_manual_add(self, mock_shopify_class, client, auth_headers, sample_customer):
        mock_client = MagicMock()
        mock_client.add_store_credit.return_value = {
            'transaction_id': 'gid://shopify/StoreCreditAccountCreditTransaction/9',
            'new_balance': Decimal('25.00'),
        }
        mock_shopify_class.for_tenant.return_value = mock_client

        response = client.post(
            f'/api/customers/{sample_customer.id}/credit',
            headers=auth_headers,
            data=json.dumps({'amount': 25, 'direction': 'add', 'reason': 'Goodwill'})
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data['success'] is True
        assert data['store_credit'] == 25.0
        assert data['entry']['created_by'] == 'staff@test-shop.com'

        ledger = client.get(f'/api/customers/{sample_customer.id}/ledger', headers=auth_headers).get_json()
        assert ledger['total'] == 1
        assert ledger['entries'][0]['type'] == 'MANUAL_ADJUSTMENT'

    @patch('rewardspro.services.ledger_service.ShopifyClient')
    def test_manual_add_over_cap(self, mock_shopify_class, client, auth_headers, sample_customer):
        response = client.post(
            f'/api/customers/{sample_customer.id}/credit',
            headers=auth_headers,
            data=json.dumps({'amount': 20000, 'direction': 'add'})
        )

        assert response.status_code == 422
        assert response.get_json()['error']['code'] == 'MANUAL_CREDIT_LIMIT_EXCEEDED'
        mock_shopify_class.for_tenant.return_value.add_store_credit.assert_not_called()

    @patch('rewardspro.services.ledger_service.ShopifyClient')
    def test_manual_remove_overdraw(self, mock_shopify_class, client, auth_headers, sample_customer):
        response = client.post(
            f'/api/customers/{sample_customer.id}/credit',
            headers=auth_headers,
            data=json.dumps({'amount': 5, 'direction': 'remove'})
        )

        assert response.status_code == 422
        assert response.get_json()['error']['code'] == 'INSUFFICIENT_BALANCE'

    def test_missing_amount(self, client, auth_headers, sample_customer):
        response = client.post(
            f'/api/customers/{sample_customer.id}/credit',
            headers=auth_headers,
            data=json.dumps({'direction': 'add'})
        )
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'MISSING_FIELD'

    def test_unknown_customer_ledger(self, client, auth_headers, sample_tenant):
        response = client.get('/api/customers/999/ledger', headers=auth_headers)
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'CUSTOMER_NOT_FOUND'


class TestImportAPI:

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_start_and_poll(self, mock_shopify_class, client, auth_headers, sample_tiers,
                            make_order, order_connection):
        mock_client = MagicMock()
        mock_client.get_orders.return_value = order_connection([make_order(1, '80.00')])
        mock_client.add_store_credit.return_value = {
            'transaction_id': 'gid://shopify/StoreCreditAccountCreditTransaction/1',
            'new_balance': Decimal('0.80'),
        }
        mock_shopify_class.for_tenant.return_value = mock_client

        response = client.post('/api/imports', headers=auth_headers, data=json.dumps({
            'start_date': '2000-01-01',
            'end_date': '2099-12-31',
            'mode': 'new',
        }))

        assert response.status_code == 202
        job = response.get_json()['job']
        assert job['type'] == 'order_import'
        assert job['metadata']['startedBy'] == 'staff@test-shop.com'

        status = client.get(f"/api/imports/{job['id']}", headers=auth_headers).get_json()['job']
        assert status['status'] == 'COMPLETED'
        assert status['processed_records'] == 1
        assert status['progress_percent'] == 100.0

        listing = client.get('/api/imports?type=order_import', headers=auth_headers).get_json()
        assert listing['total'] == 1

    def test_start_conflicts_with_active_job(self, app, client, auth_headers, sample_tenant, sample_tiers):
        with app.app_context():
            from rewardspro.models import JobKind
            from rewardspro.services.migration_jobs import JobTracker

            running = JobTracker(sample_tenant.id).create_job(JobKind.RECONCILIATION)
            running_id = running.id

        response = client.post('/api/imports', headers=auth_headers, data=json.dumps({
            'start_date': '2024-01-01',
            'end_date': '2024-01-31',
        }))

        assert response.status_code == 409
        error = response.get_json()['error']
        assert error['code'] == 'IMPORT_ALREADY_RUNNING'
        assert str(running_id) in error['message']

    def test_start_without_tiers(self, client, auth_headers, sample_tenant):
        response = client.post('/api/imports', headers=auth_headers, data=json.dumps({
            'start_date': '2024-01-01',
            'end_date': '2024-01-31',
        }))
        assert response.status_code == 422
        assert response.get_json()['error']['code'] == 'NO_ACTIVE_TIERS'

    def test_start_with_bad_dates(self, client, auth_headers, sample_tiers):
        response = client.post('/api/imports', headers=auth_headers, data=json.dumps({
            'start_date': 'last week',
            'end_date': '2024-01-31',
        }))
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_FIELD'

    def test_cancel(self, app, client, auth_headers, sample_tenant):
        with app.app_context():
            from rewardspro.models import JobKind
            from rewardspro.services.migration_jobs import JobTracker

            job_id = JobTracker(sample_tenant.id).create_job(JobKind.ORDER_IMPORT).id

        response = client.post(f'/api/imports/{job_id}/cancel', headers=auth_headers)
        assert response.status_code == 200
        assert response.get_json()['job']['status'] == 'CANCELLED'

        again = client.post(f'/api/imports/{job_id}/cancel', headers=auth_headers)
        assert again.status_code == 409
        assert again.get_json()['error']['code'] == 'INVALID_STATUS_TRANSITION'

    def test_unknown_job(self, client, auth_headers):
        response = client.get('/api/imports/404', headers=auth_headers)
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'JOB_NOT_FOUND'


class TestReconcileAPI:

    @patch('rewardspro.services.reconciliation.ShopifyClient')
    def test_reconcile_customer_and_publish(self, mock_shopify_class, client, auth_headers, sample_customer):
        mock_client = MagicMock()
        mock_client.get_store_credit_balance.return_value = {
            'balance': Decimal('7.50'),
            'account_id': 'gid://shopify/StoreCreditAccount/3',
        }
        mock_shopify_class.for_tenant.return_value = mock_client

        response = client.post(
            f'/api/reconciliation/customers/{sample_customer.id}',
            headers=auth_headers,
            data=json.dumps({'publish': True})
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data['reconciliation']['delta'] == 7.5
        assert data['reconciliation']['adjusted'] is True
        assert data['published'] is True
        mock_client.set_balance_metafield.assert_called_once_with('7001', Decimal('7.50'))

    @patch('rewardspro.services.reconciliation.ShopifyClient')
    def test_shopify_failure_maps_to_502(self, mock_shopify_class, client, auth_headers, sample_customer):
        from rewardspro.utils.exceptions import ShopifyError

        mock_shopify_class.for_tenant.return_value.get_store_credit_balance.side_effect = ShopifyError(
            'Shopify returned HTTP 500'
        )

        response = client.post(f'/api/reconciliation/customers/{sample_customer.id}', headers=auth_headers)
        assert response.status_code == 502
        assert response.get_json()['error']['code'] == 'SHOPIFY_ERROR'

    @patch('rewardspro.services.reconciliation.ShopifyClient')
    def test_bulk_reconcile(self, mock_shopify_class, client, auth_headers, sample_customer):
        mock_shopify_class.for_tenant.return_value.get_store_credit_balance.return_value = {
            'balance': Decimal('0'),
            'account_id': None,
        }

        response = client.post('/api/reconciliation', headers=auth_headers, data=json.dumps({'mode': 'all'}))

        assert response.status_code == 202
        job = response.get_json()['job']
        assert job['type'] == 'reconciliation'
        assert job['status'] == 'COMPLETED'
        assert job['metadata']['results']['unchanged'] == 1


class TestPublicAPI:

    def test_known_customer(self, app, client, sample_customer):
        with app.app_context():
            from rewardspro.extensions import db
            from rewardspro.models import Customer

            customer = Customer.query.get(sample_customer.id)
            customer.store_credit = Decimal('12.50')
            customer.total_earned = Decimal('30.00')
            db.session.commit()

        response = client.get('/api/public/customers/7001?shop=test-shop.myshopify.com')

        assert response.status_code == 200
        data = response.get_json()
        assert data['exists'] is True
        assert data['storeCredit'] == 12.5
        assert data['totalEarned'] == 30.0
        assert data['tier'] == {'name': 'Bronze', 'cashbackPercent': 1.0}

    def test_unknown_customer_gets_defaults(self, client, sample_tiers):
        response = client.get('/api/public/customers/424242?shop=test-shop.myshopify.com')

        assert response.status_code == 200
        data = response.get_json()
        assert data['exists'] is False
        assert data['storeCredit'] == 0.0
        assert data['tier']['name'] == 'Bronze'

    def test_missing_shop(self, client, sample_tenant):
        response = client.get('/api/public/customers/7001')
        assert response.status_code == 400

    def test_unknown_shop(self, client, sample_tenant):
        response = client.get('/api/public/customers/7001?shop=nobody.myshopify.com')
        assert response.status_code == 404

    def test_cors_open_to_storefronts(self, client, sample_tiers):
        response = client.get(
            '/api/public/customers/7001?shop=test-shop.myshopify.com',
            headers={'Origin': 'https://test-shop.com'}
        )
        assert response.headers.get('Access-Control-Allow-Origin') in ('*', 'https://test-shop.com')
