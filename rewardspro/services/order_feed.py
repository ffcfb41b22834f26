"""
Paged Shopify order feed for cashback imports.

Each order node is parsed into exactly one result variant:

- EligibleOrder: paid, has a customer, inside the date range
- SkippedOrder: valid but not eligible (reason says why)
- MalformedOrder: could not be parsed; counted as a per-order failure
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, date, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Union

from .shopify_client import ShopifyClient

MAX_PAGE_SIZE = 250
DEFAULT_PAGE_SIZE = 50

PAID_STATUSES = frozenset({'PAID'})

SKIP_OUTSIDE_RANGE = 'outside_date_range'
SKIP_NO_CUSTOMER = 'no_customer'
SKIP_NOT_PAID = 'not_paid'


@dataclass(frozen=True)
class DateRange:
    """Half-open UTC interval [start, end)."""
    start: datetime
    end: datetime

    @classmethod
    def from_dates(cls, start_date: date, end_date: date) -> 'DateRange':
        """Both calendar dates inclusive."""
        if end_date < start_date:
            raise ValueError('end_date must not be before start_date')
        start = datetime(start_date.year, start_date.month, start_date.day)
        end = datetime(end_date.year, end_date.month, end_date.day) + timedelta(days=1)
        return cls(start=start, end=end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def to_search_query(self) -> str:
        return (
            f"created_at:>='{self.start.strftime('%Y-%m-%dT%H:%M:%SZ')}' "
            f"AND created_at:<'{self.end.strftime('%Y-%m-%dT%H:%M:%SZ')}'"
        )


@dataclass(frozen=True)
class PageCursor:
    """Position in the order feed. Advancing returns a new cursor."""
    page_size: int = DEFAULT_PAGE_SIZE
    after: Optional[str] = None
    page_number: int = 0

    def __post_init__(self):
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f'page_size must be between 1 and {MAX_PAGE_SIZE}')

    def advance(self, end_cursor: Optional[str]) -> 'PageCursor':
        return replace(self, after=end_cursor, page_number=self.page_number + 1)


@dataclass
class EligibleOrder:
    order_id: str
    order_name: str
    customer_id: str
    customer_email: Optional[str]
    total_amount: Decimal
    created_at: datetime


@dataclass
class SkippedOrder:
    order_id: str
    order_name: str
    reason: str


@dataclass
class MalformedOrder:
    order_id: Optional[str]
    order_name: Optional[str]
    error: str

    @property
    def label(self) -> str:
        return self.order_name or self.order_id or 'unknown'


OrderResult = Union[EligibleOrder, SkippedOrder, MalformedOrder]


@dataclass
class OrderPage:
    results: List[OrderResult] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None


def shopify_id(gid: str) -> str:
    """'gid://shopify/Customer/123' -> '123'."""
    return str(gid).rsplit('/', 1)[-1]


def parse_shopify_datetime(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_order_node(node: dict, date_range: DateRange) -> OrderResult:
    """Classify one ``orders`` edge node."""
    order_id = node.get('id')
    order_name = node.get('name')

    if not order_id:
        return MalformedOrder(order_id=None, order_name=order_name, error='missing order id')

    try:
        created_at = parse_shopify_datetime(node['createdAt'])
    except (KeyError, TypeError, ValueError):
        return MalformedOrder(order_id, order_name, 'invalid createdAt')

    if not date_range.contains(created_at):
        return SkippedOrder(order_id, order_name, SKIP_OUTSIDE_RANGE)

    status = (node.get('displayFinancialStatus') or '').upper()
    if status not in PAID_STATUSES:
        return SkippedOrder(order_id, order_name, SKIP_NOT_PAID)

    customer = node.get('customer')
    if not customer or not customer.get('id'):
        return SkippedOrder(order_id, order_name, SKIP_NO_CUSTOMER)

    try:
        amount = Decimal(str(node['totalPriceSet']['shopMoney']['amount']))
    except (KeyError, TypeError, InvalidOperation):
        return MalformedOrder(order_id, order_name, 'invalid order total')

    if amount < 0:
        return MalformedOrder(order_id, order_name, f'negative order total {amount}')

    return EligibleOrder(
        order_id=order_id,
        order_name=order_name or shopify_id(order_id),
        customer_id=shopify_id(customer['id']),
        customer_email=customer.get('email'),
        total_amount=amount,
        created_at=created_at,
    )


class OrderFeed:
    """Pages paid orders in a date range out of Shopify."""

    def __init__(self, client: ShopifyClient, date_range: DateRange):
        self.client = client
        self.date_range = date_range
        self.search_query = f'financial_status:paid AND {date_range.to_search_query()}'

    def fetch_page(self, cursor: PageCursor) -> OrderPage:
        """
        Fetch and classify one page.

        Raises:
            ShopifyError: On transport, HTTP or GraphQL errors
        """
        connection = self.client.get_orders(
            first=cursor.page_size,
            after=cursor.after,
            query=self.search_query
        )

        results = [
            parse_order_node(edge.get('node') or {}, self.date_range)
            for edge in connection.get('edges', [])
        ]
        page_info = connection.get('pageInfo') or {}

        return OrderPage(
            results=results,
            has_next_page=bool(page_info.get('hasNextPage')),
            end_cursor=page_info.get('endCursor'),
        )
