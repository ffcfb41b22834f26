"""
Shopify Admin API client.
Handles order paging, native store credit and customer metafields.
"""
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

import httpx

from ..utils.exceptions import ShopifyError, ShopifyTimeoutError, ShopifyUserError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = '2025-01'
DEFAULT_TIMEOUT = 30.0

# Namespace/key of the customer metafield mirroring the local balance
BALANCE_METAFIELD_NAMESPACE = 'cashback'
BALANCE_METAFIELD_KEY = 'store_credit_balance'


def to_customer_gid(customer_id) -> str:
    customer_id = str(customer_id)
    if customer_id.startswith('gid://'):
        return customer_id
    return f'gid://shopify/Customer/{customer_id}'


def to_order_gid(order_id) -> str:
    order_id = str(order_id)
    if order_id.startswith('gid://'):
        return order_id
    return f'gid://shopify/Order/{order_id}'


def _raise_user_errors(operation: str, user_errors: List[Dict[str, Any]]) -> None:
    if not user_errors:
        return
    typed = [ShopifyUserError.from_dict(e) for e in user_errors]
    messages = '; '.join(e.message for e in typed)
    raise ShopifyError(f'{operation} failed: {messages}', user_errors=typed)


class ShopifyClient:
    """
    Client for Shopify Admin GraphQL API.

    Supports:
    - Paid order paging for cashback imports
    - Native store credit accounts (balance, credit, debit)
    - Customer metafields
    """

    def __init__(
        self,
        tenant_id_or_domain,
        access_token: str = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT
    ):
        """
        Initialize Shopify client.

        Can be initialized either with:
        - tenant_id (int): Will fetch credentials from database
        - shop_domain + access_token: Direct initialization
        """
        if isinstance(tenant_id_or_domain, int):
            from ..models.tenant import Tenant
            tenant = Tenant.query.get(tenant_id_or_domain)
            if not tenant:
                raise ValueError(f"Tenant {tenant_id_or_domain} not found")
            if not tenant.shopify_domain or not tenant.shopify_access_token:
                raise ValueError(f"Tenant {tenant_id_or_domain} missing Shopify credentials")

            self.shop_domain = tenant.shopify_domain.replace('https://', '').replace('http://', '').rstrip('/')
            self.access_token = tenant.shopify_access_token
        else:
            self.shop_domain = tenant_id_or_domain.replace('https://', '').replace('http://', '').rstrip('/')
            self.access_token = access_token

        self.api_version = api_version
        self.timeout = timeout
        self.graphql_url = f'https://{self.shop_domain}/admin/api/{api_version}/graphql.json'

    @classmethod
    def for_tenant(cls, tenant_id: int) -> 'ShopifyClient':
        """Build a client using the app's configured API version and timeout."""
        from flask import current_app
        return cls(
            tenant_id,
            api_version=current_app.config.get('SHOPIFY_API_VERSION', DEFAULT_API_VERSION),
            timeout=current_app.config.get('SHOPIFY_TIMEOUT', DEFAULT_TIMEOUT)
        )

    def _execute_query(self, query: str, variables: Optional[Dict] = None) -> Dict[str, Any]:
        """Execute a GraphQL query."""
        headers = {
            'X-Shopify-Access-Token': self.access_token,
            'Content-Type': 'application/json'
        }

        payload = {'query': query}
        if variables:
            payload['variables'] = variables

        try:
            with httpx.Client() as client:
                response = client.post(
                    self.graphql_url,
                    headers=headers,
                    json=payload,
                    timeout=self.timeout
                )
                response.raise_for_status()
                result = response.json()
        except httpx.TimeoutException as e:
            raise ShopifyTimeoutError(f'Shopify request timed out after {self.timeout}s', original_error=e)
        except httpx.HTTPStatusError as e:
            raise ShopifyError(f'Shopify returned HTTP {e.response.status_code}', original_error=e)
        except httpx.HTTPError as e:
            raise ShopifyError(f'Shopify request failed: {e}', original_error=e)

        if 'errors' in result:
            raise ShopifyError(f"GraphQL errors: {result['errors']}")

        return result.get('data', {})

    # ==================== Orders ====================

    def get_orders(self, first: int, after: Optional[str] = None, query: str = None) -> Dict[str, Any]:
        """
        Fetch one page of orders sorted by creation date.

        Returns:
            The raw ``orders`` connection: {'edges': [...], 'pageInfo': {...}}
        """
        gql = """
        query getOrders($first: Int!, $after: String, $query: String) {
            orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT) {
                edges {
                    cursor
                    node {
                        id
                        name
                        createdAt
                        displayFinancialStatus
                        totalPriceSet {
                            shopMoney {
                                amount
                                currencyCode
                            }
                        }
                        customer {
                            id
                            email
                        }
                    }
                }
                pageInfo {
                    hasNextPage
                    endCursor
                }
            }
        }
        """

        variables = {'first': first, 'after': after, 'query': query}
        result = self._execute_query(gql, variables)

        return result.get('orders') or {'edges': [], 'pageInfo': {'hasNextPage': False, 'endCursor': None}}

    def get_order_transactions(self, order_id: str) -> List[Dict[str, Any]]:
        """
        Payment transactions of one order, flattened.

        Returns:
            List of dicts with id, gateway, status, kind, amount (Decimal)
            and parent_id
        """
        query = """
        query getOrderTransactions($id: ID!) {
            order(id: $id) {
                id
                transactions(first: 250) {
                    id
                    gateway
                    status
                    kind
                    amountSet {
                        shopMoney {
                            amount
                            currencyCode
                        }
                    }
                    parentTransaction {
                        id
                    }
                }
            }
        }
        """

        result = self._execute_query(query, {'id': to_order_gid(order_id)})
        order = result.get('order')
        if not order:
            raise ShopifyError(f'Order {order_id} not found')

        transactions = []
        for tx in order.get('transactions') or []:
            money = (tx.get('amountSet') or {}).get('shopMoney') or {}
            transactions.append({
                'id': tx.get('id'),
                'gateway': tx.get('gateway') or '',
                'status': tx.get('status'),
                'kind': tx.get('kind'),
                'amount': Decimal(str(money.get('amount', '0'))),
                'parent_id': (tx.get('parentTransaction') or {}).get('id'),
            })
        return transactions

    # ==================== Store Credit ====================

    def get_store_credit_account_id(self, customer_id: str) -> Optional[str]:
        """
        Get the store credit account ID for a customer.

        Returns:
            Store credit account GID or None if no account exists
        """
        account = self._get_store_credit_account(customer_id)
        return account.get('id') if account else None

    def _get_store_credit_account(self, customer_id: str) -> Optional[Dict[str, Any]]:
        query = """
        query getCustomerStoreCreditAccount($customerId: ID!) {
            customer(id: $customerId) {
                id
                storeCreditAccounts(first: 1) {
                    edges {
                        node {
                            id
                            balance {
                                amount
                                currencyCode
                            }
                        }
                    }
                }
            }
        }
        """

        result = self._execute_query(query, {'customerId': to_customer_gid(customer_id)})
        customer = result.get('customer') or {}
        accounts = customer.get('storeCreditAccounts', {}).get('edges', [])

        if accounts:
            return accounts[0].get('node', {})

        return None

    def get_store_credit_balance(self, customer_id: str) -> Dict[str, Any]:
        """
        Get customer's native store credit balance.

        A customer without a store credit account has a balance of zero.

        Returns:
            Dict with 'balance' (Decimal), 'currency' and 'account_id'
        """
        account = self._get_store_credit_account(customer_id)

        if not account:
            return {
                'customer_id': to_customer_gid(customer_id),
                'account_id': None,
                'balance': Decimal('0'),
                'currency': 'USD'
            }

        balance_data = account.get('balance', {})

        return {
            'customer_id': to_customer_gid(customer_id),
            'account_id': account.get('id'),
            'balance': Decimal(str(balance_data.get('amount', '0'))),
            'currency': balance_data.get('currencyCode', 'USD')
        }

    def add_store_credit(self, customer_id: str, amount: Decimal, currency: str = 'USD') -> Dict[str, Any]:
        """
        Add store credit to a customer account.

        If the customer has no store credit account yet, crediting by
        customer GID makes Shopify create one.

        Raises:
            ShopifyError: With ``user_errors`` populated if Shopify rejects the mutation
        """
        customer_gid = to_customer_gid(customer_id)
        account_id = self.get_store_credit_account_id(customer_gid)

        query = """
        mutation storeCreditAccountCredit($id: ID!, $creditInput: StoreCreditAccountCreditInput!) {
            storeCreditAccountCredit(id: $id, creditInput: $creditInput) {
                storeCreditAccountTransaction {
                    id
                    amount {
                        amount
                        currencyCode
                    }
                    account {
                        id
                        balance {
                            amount
                            currencyCode
                        }
                    }
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """

        variables = {
            'id': account_id or customer_gid,
            'creditInput': {
                'creditAmount': {
                    'amount': str(amount),
                    'currencyCode': currency
                }
            }
        }

        result = self._execute_query(query, variables)
        mutation_result = result.get('storeCreditAccountCredit') or {}
        _raise_user_errors('storeCreditAccountCredit', mutation_result.get('userErrors', []))

        return self._transaction_result(mutation_result)

    def debit_store_credit(self, customer_id: str, amount: Decimal, currency: str = 'USD') -> Dict[str, Any]:
        """
        Debit (remove) store credit from a customer account.

        Raises:
            ShopifyError: If the customer has no account, or Shopify rejects the debit
        """
        account_id = self.get_store_credit_account_id(customer_id)

        if not account_id:
            raise ShopifyError("Customer has no store credit account")

        query = """
        mutation storeCreditAccountDebit($id: ID!, $debitInput: StoreCreditAccountDebitInput!) {
            storeCreditAccountDebit(id: $id, debitInput: $debitInput) {
                storeCreditAccountTransaction {
                    id
                    amount {
                        amount
                        currencyCode
                    }
                    account {
                        id
                        balance {
                            amount
                            currencyCode
                        }
                    }
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """

        variables = {
            'id': account_id,
            'debitInput': {
                'debitAmount': {
                    'amount': str(amount),
                    'currencyCode': currency
                }
            }
        }

        result = self._execute_query(query, variables)
        mutation_result = result.get('storeCreditAccountDebit') or {}
        _raise_user_errors('storeCreditAccountDebit', mutation_result.get('userErrors', []))

        return self._transaction_result(mutation_result)

    @staticmethod
    def _transaction_result(mutation_result: Dict[str, Any]) -> Dict[str, Any]:
        transaction = mutation_result.get('storeCreditAccountTransaction') or {}
        account = transaction.get('account', {})

        return {
            'success': True,
            'transaction_id': transaction.get('id'),
            'amount': Decimal(str(transaction.get('amount', {}).get('amount', '0'))),
            'currency': transaction.get('amount', {}).get('currencyCode'),
            'account_id': account.get('id'),
            'new_balance': Decimal(str(account.get('balance', {}).get('amount', '0')))
        }

    # ==================== Metafields ====================

    def set_customer_metafields(self, customer_id: str, metafields: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Set metafields on a Shopify customer.

        Args:
            customer_id: Shopify customer ID (numeric or GID)
            metafields: List of dicts with namespace, key, value and type

        Raises:
            ShopifyError: With ``user_errors`` populated if Shopify rejects the update
        """
        mutation = """
        mutation customerUpdate($input: CustomerInput!) {
            customerUpdate(input: $input) {
                customer {
                    id
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """

        metafield_inputs = []
        for mf in metafields:
            metafield_inputs.append({
                'namespace': mf.get('namespace', BALANCE_METAFIELD_NAMESPACE),
                'key': mf['key'],
                'value': str(mf['value']),
                'type': mf.get('type', 'single_line_text_field')
            })

        variables = {
            'input': {
                'id': to_customer_gid(customer_id),
                'metafields': metafield_inputs
            }
        }

        result = self._execute_query(mutation, variables)
        mutation_result = result.get('customerUpdate') or {}
        _raise_user_errors('customerUpdate', mutation_result.get('userErrors', []))

        return {
            'success': True,
            'customer_id': (mutation_result.get('customer') or {}).get('id'),
        }

    def set_balance_metafield(self, customer_id: str, balance: Decimal) -> Dict[str, Any]:
        return self.set_customer_metafields(customer_id, [{
            'namespace': BALANCE_METAFIELD_NAMESPACE,
            'key': BALANCE_METAFIELD_KEY,
            'value': f'{balance:.2f}',
            'type': 'number_decimal'
        }])
