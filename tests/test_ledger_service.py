"""
Tests for the store credit LedgerService.

Covers:
- Balance chaining on append
- Non-negative entry types
- Manual adjustments (cap, overdraw, Shopify-first ordering)
- Ledger replay verification
"""
import pytest
from decimal import Decimal
from unittest.mock import patch, MagicMock


def _shopify_mock(new_balance='25.00'):
    client = MagicMock()
    client.add_store_credit.return_value = {
        'transaction_id': 'gid://shopify/StoreCreditAccountCreditTransaction/1',
        'new_balance': Decimal(new_balance),
    }
    client.debit_store_credit.return_value = {
        'transaction_id': 'gid://shopify/StoreCreditAccountDebitTransaction/2',
        'new_balance': Decimal(new_balance),
    }
    return client


class TestAppendEntry:

    def test_balances_chain(self, app, sample_customer):
        """Each entry stores the balance after applying it."""
        with app.app_context():
            from rewardspro.extensions import db
            from rewardspro.models import Customer, LedgerEntryType, LedgerSource
            from rewardspro.services.ledger_service import LedgerService

            service = LedgerService(sample_customer.tenant_id)
            first = service.append_entry(sample_customer.id, Decimal('10.00'),
                                         LedgerEntryType.CASHBACK_EARNED, LedgerSource.APP_CASHBACK)
            second = service.append_entry(sample_customer.id, Decimal('5.50'),
                                          LedgerEntryType.CASHBACK_EARNED, LedgerSource.APP_CASHBACK)
            third = service.append_entry(sample_customer.id, Decimal('-3.00'),
                                         LedgerEntryType.ORDER_PAYMENT, LedgerSource.SHOPIFY_ORDER)
            db.session.commit()

            assert first.balance == Decimal('10.00')
            assert second.balance == Decimal('15.50')
            assert third.balance == Decimal('12.50')

            customer = Customer.query.get(sample_customer.id)
            assert customer.store_credit == Decimal('12.50')

    def test_order_payment_cannot_overdraw(self, app, sample_customer):
        with app.app_context():
            from rewardspro.models import LedgerEntryType, LedgerSource, StoreCreditLedger
            from rewardspro.services.ledger_service import LedgerService
            from rewardspro.utils.exceptions import InsufficientBalanceError

            service = LedgerService(sample_customer.tenant_id)

            with pytest.raises(InsufficientBalanceError):
                service.append_entry(sample_customer.id, Decimal('-1.00'),
                                     LedgerEntryType.ORDER_PAYMENT, LedgerSource.SHOPIFY_ORDER)

            assert StoreCreditLedger.query.filter_by(customer_id=sample_customer.id).count() == 0

    def test_sync_entry_may_go_negative(self, app, sample_customer):
        """Reconciliation deltas mirror Shopify even below zero."""
        with app.app_context():
            from rewardspro.extensions import db
            from rewardspro.models import LedgerEntryType, LedgerSource
            from rewardspro.services.ledger_service import LedgerService

            service = LedgerService(sample_customer.tenant_id)
            entry = service.append_entry(sample_customer.id, Decimal('-4.00'),
                                         LedgerEntryType.SHOPIFY_SYNC, LedgerSource.RECONCILIATION)
            db.session.commit()

            assert entry.balance == Decimal('-4.00')

    def test_unknown_customer(self, app, sample_tenant):
        with app.app_context():
            from rewardspro.models import LedgerEntryType, LedgerSource
            from rewardspro.services.ledger_service import LedgerService
            from rewardspro.utils.exceptions import CustomerNotFoundError

            with pytest.raises(CustomerNotFoundError):
                LedgerService(sample_tenant.id).append_entry(
                    99999, Decimal('1.00'), LedgerEntryType.CASHBACK_EARNED, LedgerSource.APP_CASHBACK
                )


class TestManualAdjust:

    def test_add_writes_shopify_then_ledger(self, app, sample_customer):
        with app.app_context():
            from rewardspro.models import Customer
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_ADD

            client = _shopify_mock('25.00')
            service = LedgerService(sample_customer.tenant_id, shopify_client=client)

            entry = service.manual_adjust(sample_customer.id, '25', DIRECTION_ADD,
                                          reason='Goodwill', created_by='staff@test-shop.com')

            client.add_store_credit.assert_called_once_with('7001', Decimal('25.00'))
            assert entry.amount == Decimal('25.00')
            assert entry.balance == Decimal('25.00')
            assert entry.type == 'MANUAL_ADJUSTMENT'
            assert entry.source == 'APP_MANUAL'
            assert entry.shopify_reference.endswith('/1')
            assert entry.created_by == 'staff@test-shop.com'
            assert Customer.query.get(sample_customer.id).store_credit == Decimal('25.00')

    def test_add_above_cap_is_rejected_before_shopify(self, app, sample_customer):
        with app.app_context():
            from rewardspro.models import StoreCreditLedger
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_ADD
            from rewardspro.utils.exceptions import LimitExceededError

            client = _shopify_mock()
            service = LedgerService(sample_customer.tenant_id, shopify_client=client)

            with pytest.raises(LimitExceededError):
                service.manual_adjust(sample_customer.id, Decimal('20000'), DIRECTION_ADD)

            client.add_store_credit.assert_not_called()
            assert StoreCreditLedger.query.filter_by(customer_id=sample_customer.id).count() == 0

    def test_tenant_cap_override(self, app, sample_customer):
        with app.app_context():
            from rewardspro.extensions import db
            from rewardspro.models import Tenant
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_ADD
            from rewardspro.utils.exceptions import LimitExceededError

            tenant = Tenant.query.get(sample_customer.tenant_id)
            tenant.settings = {'max_manual_credit': 100}
            db.session.commit()

            service = LedgerService(tenant.id, shopify_client=_shopify_mock())
            with pytest.raises(LimitExceededError):
                service.manual_adjust(sample_customer.id, Decimal('150'), DIRECTION_ADD)

    def test_remove_more_than_balance(self, app, sample_customer):
        with app.app_context():
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_REMOVE
            from rewardspro.utils.exceptions import InsufficientBalanceError

            client = _shopify_mock()
            service = LedgerService(sample_customer.tenant_id, shopify_client=client)

            with pytest.raises(InsufficientBalanceError):
                service.manual_adjust(sample_customer.id, Decimal('5.00'), DIRECTION_REMOVE)

            client.debit_store_credit.assert_not_called()

    def test_remove_within_balance(self, app, sample_customer):
        with app.app_context():
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_ADD, DIRECTION_REMOVE

            service = LedgerService(sample_customer.tenant_id, shopify_client=_shopify_mock())
            service.manual_adjust(sample_customer.id, Decimal('30.00'), DIRECTION_ADD)
            entry = service.manual_adjust(sample_customer.id, Decimal('12.25'), DIRECTION_REMOVE)

            assert entry.amount == Decimal('-12.25')
            assert entry.balance == Decimal('17.75')

    def test_shopify_failure_records_nothing(self, app, sample_customer):
        with app.app_context():
            from rewardspro.models import Customer, StoreCreditLedger
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_ADD
            from rewardspro.utils.exceptions import ShopifyError

            client = MagicMock()
            client.add_store_credit.side_effect = ShopifyError('storeCreditAccountCredit failed')
            service = LedgerService(sample_customer.tenant_id, shopify_client=client)

            with pytest.raises(ShopifyError):
                service.manual_adjust(sample_customer.id, Decimal('10.00'), DIRECTION_ADD)

            assert StoreCreditLedger.query.filter_by(customer_id=sample_customer.id).count() == 0
            assert Customer.query.get(sample_customer.id).store_credit == Decimal('0')

    def test_customer_row_locked_only_after_shopify_answers(self, app, sample_customer):
        with app.app_context():
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_ADD

            calls = []
            original_lock = LedgerService.lock_customer

            def tracking_lock(self, customer_id):
                calls.append('lock')
                return original_lock(self, customer_id)

            client = _shopify_mock()
            result = client.add_store_credit.return_value
            client.add_store_credit.side_effect = lambda *args: calls.append('shopify') or result

            service = LedgerService(sample_customer.tenant_id, shopify_client=client)
            with patch.object(LedgerService, 'lock_customer', tracking_lock):
                service.manual_adjust(sample_customer.id, Decimal('10.00'), DIRECTION_ADD)

            assert calls == ['shopify', 'lock']

    def test_balance_rechecked_under_lock(self, app, sample_customer):
        with app.app_context():
            from rewardspro.models import Customer, LedgerEntryType, LedgerSource
            from rewardspro.services.ledger_service import LedgerService, DIRECTION_ADD, DIRECTION_REMOVE
            from rewardspro.utils.exceptions import InsufficientBalanceError

            client = _shopify_mock()
            service = LedgerService(sample_customer.tenant_id, shopify_client=client)
            service.manual_adjust(sample_customer.id, Decimal('20.00'), DIRECTION_ADD)

            # Credit is spent at checkout while the debit is in flight
            def spend_during_debit(*args):
                LedgerService(sample_customer.tenant_id).append_entry(
                    sample_customer.id, Decimal('-15.00'),
                    LedgerEntryType.ORDER_PAYMENT, LedgerSource.SHOPIFY_ORDER
                )
                return {'transaction_id': 'gid://shopify/StoreCreditAccountDebitTransaction/3'}

            client.debit_store_credit.side_effect = spend_during_debit

            with pytest.raises(InsufficientBalanceError):
                service.manual_adjust(sample_customer.id, Decimal('10.00'), DIRECTION_REMOVE)

            assert Customer.query.get(sample_customer.id).store_credit == Decimal('20.00')

    @pytest.mark.parametrize('amount,direction', [
        ('0', 'add'),
        ('-5', 'add'),
        ('abc', 'add'),
        ('5', 'sideways'),
    ])
    def test_invalid_input(self, app, sample_customer, amount, direction):
        with app.app_context():
            from rewardspro.services.ledger_service import LedgerService
            from rewardspro.utils.exceptions import ValidationError

            client = _shopify_mock()
            service = LedgerService(sample_customer.tenant_id, shopify_client=client)

            with pytest.raises(ValidationError):
                service.manual_adjust(sample_customer.id, amount, direction)

            client.add_store_credit.assert_not_called()


class TestVerification:

    def test_replay_matches(self, app, sample_customer):
        with app.app_context():
            from rewardspro.extensions import db
            from rewardspro.models import LedgerEntryType, LedgerSource
            from rewardspro.services.ledger_service import LedgerService

            service = LedgerService(sample_customer.tenant_id)
            for amount in ('1.00', '2.50', '-0.75'):
                service.append_entry(sample_customer.id, Decimal(amount),
                                     LedgerEntryType.SHOPIFY_SYNC, LedgerSource.RECONCILIATION)
            db.session.commit()

            result = service.verify_ledger(sample_customer.id)
            assert result['entries'] == 3
            assert result['balance'] == 2.75

    def test_tampered_cached_balance_detected(self, app, sample_customer):
        with app.app_context():
            from rewardspro.extensions import db
            from rewardspro.models import Customer, LedgerEntryType, LedgerSource
            from rewardspro.services.ledger_service import LedgerService
            from rewardspro.utils.exceptions import LedgerInvariantError

            service = LedgerService(sample_customer.tenant_id)
            service.append_entry(sample_customer.id, Decimal('10.00'),
                                 LedgerEntryType.CASHBACK_EARNED, LedgerSource.APP_CASHBACK)
            db.session.commit()

            customer = Customer.query.get(sample_customer.id)
            customer.store_credit = Decimal('99.00')
            db.session.commit()

            with pytest.raises(LedgerInvariantError):
                service.verify_ledger(sample_customer.id)

            result = service.verify_all()
            assert result['checked'] == 1
            assert len(result['violations']) == 1
            assert result['violations'][0]['customer_id'] == sample_customer.id

    def test_get_ledger_newest_first(self, app, sample_customer):
        with app.app_context():
            from rewardspro.extensions import db
            from rewardspro.models import LedgerEntryType, LedgerSource
            from rewardspro.services.ledger_service import LedgerService

            service = LedgerService(sample_customer.tenant_id)
            service.append_entry(sample_customer.id, Decimal('1.00'),
                                 LedgerEntryType.CASHBACK_EARNED, LedgerSource.APP_CASHBACK)
            service.append_entry(sample_customer.id, Decimal('2.00'),
                                 LedgerEntryType.CASHBACK_EARNED, LedgerSource.APP_CASHBACK)
            db.session.commit()

            history = service.get_ledger(sample_customer.id, limit=1)
            assert history['total'] == 2
            assert history['store_credit'] == 3.0
            assert len(history['entries']) == 1
            assert history['entries'][0]['balance'] == 3.0
