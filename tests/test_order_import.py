"""
Tests for the order import orchestrator.

Shopify is mocked at the ShopifyClient class used by the import worker;
in testing, submitted import tasks run inline so each start_import call
returns a finished job.
"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch, MagicMock


def _window():
    today = datetime.utcnow().date()
    return today - timedelta(days=30), today


def _start(tenant_id, mode='new', update_tiers=True):
    from rewardspro.services.order_import import OrderImportService

    start_date, end_date = _window()
    return OrderImportService(tenant_id).start_import(
        start_date, end_date, mode=mode, update_tiers=update_tiers, started_by='test'
    )


def _store_credit_result(customer_id, amount, currency='USD'):
    return {
        'transaction_id': f'gid://shopify/StoreCreditAccountCreditTransaction/{customer_id}-{amount}',
        'new_balance': Decimal(amount),
        'currency': currency,
    }


def _client_returning(*pages):
    client = MagicMock()
    client.get_orders.side_effect = list(pages)
    client.add_store_credit.side_effect = _store_credit_result
    return client


class TestCalculateCashback:

    @pytest.mark.parametrize('amount,percent,expected', [
        ('100.00', '1', '1.00'),
        ('99.99', '1.5', '1.49'),
        ('250.55', '1', '2.50'),
        ('0.40', '2', '0.00'),
    ])
    def test_rounds_down_to_cent(self, amount, percent, expected):
        from rewardspro.services.order_import import calculate_cashback

        assert calculate_cashback(Decimal(amount), Decimal(percent)) == Decimal(expected)


class TestRunImport:

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_import_creates_cashback_and_upgrades_tier(self, mock_shopify_class, app, sample_tenant,
                                                       sample_tiers, make_order, order_connection):
        with app.app_context():
            from rewardspro.models import Customer, CashbackTransaction, StoreCreditLedger

            mock_shopify_class.for_tenant.return_value = _client_returning(
                order_connection([make_order(1, '100.00'), make_order(2, '450.00')])
            )

            job = _start(sample_tenant.id)

            assert job.status == 'COMPLETED'
            assert job.total_records == 2
            assert job.processed_records == 2
            assert job.failed_records == 0
            results = job.job_metadata['results']
            assert results['created'] == 2
            assert results['customers'] == 1
            assert results['tierChanges'] == 1

            customer = Customer.query.filter_by(tenant_id=sample_tenant.id, shopify_customer_id='7001').one()
            assert customer.store_credit == Decimal('5.50')
            assert customer.total_earned == Decimal('5.50')
            assert customer.current_tier.name == 'Silver'
            assert customer.analytics.order_count == 2

            assert CashbackTransaction.query.filter_by(customer_id=customer.id).count() == 2
            entries = StoreCreditLedger.query.filter_by(customer_id=customer.id).all()
            assert sorted(e.type for e in entries) == ['CASHBACK_EARNED', 'CASHBACK_EARNED']

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_reimport_is_idempotent(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                    make_order, order_connection):
        with app.app_context():
            from rewardspro.models import Customer, StoreCreditLedger

            orders = [make_order(1, '100.00'), make_order(2, '200.00')]
            mock_shopify_class.for_tenant.return_value = _client_returning(
                order_connection(orders), order_connection(orders)
            )

            _start(sample_tenant.id)
            second = _start(sample_tenant.id)

            assert second.status == 'COMPLETED'
            assert second.processed_records == 2
            assert second.job_metadata['results']['created'] == 0
            assert second.job_metadata['results']['skipped'] == {'existing': 2}

            customer = Customer.query.filter_by(shopify_customer_id='7001').one()
            assert customer.store_credit == Decimal('3.00')
            assert StoreCreditLedger.query.filter_by(customer_id=customer.id).count() == 2

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_mode_all_updates_in_place(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                       make_order, order_connection):
        with app.app_context():
            from rewardspro.models import CashbackTransaction, StoreCreditLedger

            mock_shopify_class.for_tenant.return_value = _client_returning(
                order_connection([make_order(1, '100.00')]),
                order_connection([make_order(1, '300.00')]),
            )

            _start(sample_tenant.id, update_tiers=False)
            second = _start(sample_tenant.id, mode='all', update_tiers=False)

            assert second.job_metadata['results']['updated'] == 1

            transaction = CashbackTransaction.query.filter_by(tenant_id=sample_tenant.id).one()
            assert transaction.order_amount == Decimal('300.00')
            assert transaction.cashback_amount == Decimal('3.00')
            assert StoreCreditLedger.query.count() == 1

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_malformed_order_fails_alone(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                         make_order, order_connection):
        with app.app_context():
            from rewardspro.models import CashbackTransaction

            orders = [make_order(n, '10.00') for n in range(1, 11)]
            orders[3]['totalPriceSet'] = None

            mock_shopify_class.for_tenant.return_value = _client_returning(order_connection(orders))

            job = _start(sample_tenant.id)

            assert job.status == 'COMPLETED'
            assert job.total_records == 10
            assert job.processed_records == 9
            assert job.failed_records == 1
            assert len(job.errors) == 1
            assert job.errors[0].startswith('Order #1004')
            assert CashbackTransaction.query.filter_by(tenant_id=sample_tenant.id).count() == 9

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_write_failure_rolls_back_one_order(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                                make_order, order_connection):
        with app.app_context():
            from rewardspro.models import CashbackTransaction, StoreCreditLedger
            from rewardspro.services.ledger_service import LedgerService

            orders = [make_order(n, '10.00') for n in range(1, 11)]
            mock_shopify_class.for_tenant.return_value = _client_returning(order_connection(orders))

            original_append = LedgerService.append_entry
            calls = []

            def failing_fourth(self, *args, **kwargs):
                calls.append(args)
                if len(calls) == 4:
                    raise RuntimeError('write conflict')
                return original_append(self, *args, **kwargs)

            with patch.object(LedgerService, 'append_entry', failing_fourth):
                job = _start(sample_tenant.id, update_tiers=False)

            assert job.status == 'COMPLETED'
            assert job.processed_records == 9
            assert job.failed_records == 1
            assert job.errors == ['Order #1004: write conflict']
            assert StoreCreditLedger.query.count() == 9
            assert CashbackTransaction.query.filter_by(shopify_order_name='#1004').count() == 0

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_guest_orders_are_skipped(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                      make_order, order_connection):
        with app.app_context():
            mock_shopify_class.for_tenant.return_value = _client_returning(
                order_connection([make_order(1, '50.00', customer_id=None), make_order(2, '50.00')])
            )

            job = _start(sample_tenant.id)

            assert job.processed_records == 2
            assert job.failed_records == 0
            assert job.job_metadata['results']['skipped'] == {'no_customer': 1}

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_feed_error_fails_job_and_keeps_committed_orders(self, mock_shopify_class, app, sample_tenant,
                                                             sample_tiers, make_order, order_connection):
        with app.app_context():
            from rewardspro.models import CashbackTransaction
            from rewardspro.utils.exceptions import ShopifyError

            client = _client_returning(
                order_connection([make_order(1), make_order(2)], has_next_page=True, end_cursor='page-2'),
                ShopifyError('GraphQL errors: [{"message": "Throttled"}]'),
            )
            mock_shopify_class.for_tenant.return_value = client

            job = _start(sample_tenant.id)

            assert job.status == 'FAILED'
            assert any('page 2' in error for error in job.errors)
            assert job.processed_records == 2
            assert CashbackTransaction.query.filter_by(tenant_id=sample_tenant.id).count() == 2
            assert client.get_orders.call_args.kwargs['after'] == 'page-2'

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_page_timeout_is_retried(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                     make_order, order_connection):
        with app.app_context():
            from rewardspro.utils.exceptions import ShopifyTimeoutError

            client = _client_returning(
                ShopifyTimeoutError('Shopify request timed out after 30s'),
                order_connection([make_order(1)]),
            )
            mock_shopify_class.for_tenant.return_value = client

            job = _start(sample_tenant.id)

            assert job.status == 'COMPLETED'
            assert client.get_orders.call_count == 2

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_cancel_stops_at_page_boundary(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                           make_order, order_connection):
        with app.app_context():
            from rewardspro.services.migration_jobs import JobTracker

            tracker = JobTracker(sample_tenant.id)

            def first_page(**kwargs):
                tracker.cancel(tracker.active_job().id)
                return order_connection([make_order(1)], has_next_page=True, end_cursor='page-2')

            client = MagicMock()
            client.get_orders.side_effect = first_page
            client.add_store_credit.side_effect = _store_credit_result
            mock_shopify_class.for_tenant.return_value = client

            job = _start(sample_tenant.id)

            assert job.status == 'CANCELLED'
            assert job.processed_records == 1
            assert client.get_orders.call_count == 1


class TestShopifyCredit:

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_cashback_is_issued_as_store_credit(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                                make_order, order_connection):
        with app.app_context():
            from rewardspro.models import CashbackTransaction

            client = _client_returning(order_connection([make_order(1, '100.00'), make_order(2, '450.00')]))
            mock_shopify_class.for_tenant.return_value = client

            _start(sample_tenant.id)

            credited = [c.args for c in client.add_store_credit.call_args_list]
            assert credited == [('7001', Decimal('1.00')), ('7001', Decimal('4.50'))]

            for transaction in CashbackTransaction.query.filter_by(tenant_id=sample_tenant.id):
                assert transaction.status == 'SYNCED_TO_SHOPIFY'
                assert transaction.shopify_transaction_id.startswith('gid://shopify/StoreCreditAccountCreditTransaction/')

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_reconcile_after_import_keeps_cashback(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                                   make_order, order_connection):
        with app.app_context():
            from rewardspro.models import Customer, StoreCreditLedger
            from rewardspro.services.reconciliation import ReconciliationService

            client = _client_returning(order_connection([make_order(1, '100.00'), make_order(2, '450.00')]))
            mock_shopify_class.for_tenant.return_value = client

            _start(sample_tenant.id)

            shopify_total = sum(c.args[1] for c in client.add_store_credit.call_args_list)
            client.get_store_credit_balance.return_value = {
                'balance': shopify_total,
                'currency': 'USD',
                'account_id': 'gid://shopify/StoreCreditAccount/1',
            }

            customer = Customer.query.filter_by(tenant_id=sample_tenant.id, shopify_customer_id='7001').one()
            delta = ReconciliationService(sample_tenant.id, shopify_client=client).reconcile(customer.id)

            assert delta.adjusted is False
            customer = Customer.query.get(customer.id)
            assert customer.store_credit == Decimal('5.50')
            assert StoreCreditLedger.query.filter_by(customer_id=customer.id, type='SHOPIFY_SYNC').count() == 0

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_rejected_credit_fails_only_that_order(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                                   make_order, order_connection):
        with app.app_context():
            from rewardspro.models import Customer, CashbackTransaction
            from rewardspro.utils.exceptions import ShopifyError

            client = _client_returning(order_connection([make_order(1, '100.00'), make_order(2, '200.00')]))
            client.add_store_credit.side_effect = [
                _store_credit_result('7001', Decimal('1.00')),
                ShopifyError('Store credit operation failed: account disabled'),
            ]
            mock_shopify_class.for_tenant.return_value = client

            job = _start(sample_tenant.id, update_tiers=False)

            assert job.status == 'COMPLETED'
            assert job.processed_records == 1
            assert job.failed_records == 1
            assert job.errors[0].startswith('Order #1002')

            transaction = CashbackTransaction.query.filter_by(tenant_id=sample_tenant.id).one()
            assert transaction.shopify_order_name == '#1001'
            customer = Customer.query.filter_by(tenant_id=sample_tenant.id, shopify_customer_id='7001').one()
            assert customer.store_credit == Decimal('1.00')

    @patch('rewardspro.services.order_import.ShopifyClient')
    def test_credit_issue_can_be_switched_off(self, mock_shopify_class, app, sample_tenant, sample_tiers,
                                              make_order, order_connection):
        with app.app_context():
            from rewardspro.models import CashbackTransaction

            app.config['ISSUE_SHOPIFY_CREDIT'] = False
            client = _client_returning(order_connection([make_order(1, '100.00')]))
            mock_shopify_class.for_tenant.return_value = client

            _start(sample_tenant.id)

            client.add_store_credit.assert_not_called()
            transaction = CashbackTransaction.query.filter_by(tenant_id=sample_tenant.id).one()
            assert transaction.status == 'COMPLETED'
            assert transaction.shopify_transaction_id is None


class TestStartImport:

    def test_requires_active_tiers(self, app, sample_tenant):
        with app.app_context():
            from rewardspro.models import MigrationHistory
            from rewardspro.utils.exceptions import NoActiveTiersError

            with pytest.raises(NoActiveTiersError):
                _start(sample_tenant.id)

            assert MigrationHistory.query.count() == 0

    def test_rejects_unknown_mode(self, app, sample_tenant, sample_tiers):
        with app.app_context():
            from rewardspro.utils.exceptions import ValidationError

            with pytest.raises(ValidationError):
                _start(sample_tenant.id, mode='everything')

    def test_rejects_reversed_dates(self, app, sample_tenant, sample_tiers):
        with app.app_context():
            from datetime import date
            from rewardspro.services.order_import import OrderImportService
            from rewardspro.utils.exceptions import ValidationError

            with pytest.raises(ValidationError):
                OrderImportService(sample_tenant.id).start_import(date(2024, 2, 1), date(2024, 1, 1))

    def test_one_active_job_per_shop(self, app, sample_tenant, sample_tiers):
        with app.app_context():
            from rewardspro.models import JobKind
            from rewardspro.services.migration_jobs import JobTracker
            from rewardspro.utils.exceptions import ImportAlreadyRunningError

            running = JobTracker(sample_tenant.id).create_job(JobKind.ORDER_IMPORT, {})

            with pytest.raises(ImportAlreadyRunningError) as exc_info:
                _start(sample_tenant.id)

            assert exc_info.value.job_id == running.id
