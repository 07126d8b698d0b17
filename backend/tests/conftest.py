"""
Shared fixtures: billing-export row factories and an in-memory stand-in for the
Mongo collections used by the service.
"""
import copy
import os

import pytest

os.environ.setdefault('MONGO_URL', 'mongodb://localhost:27017')
os.environ.setdefault('DB_NAME', 'reconciliation_test')

from engine import parse_datetime  # noqa: E402


def charge_row(**overrides):
    row = {
        'item_id': 'ITEM-1', 'charge_name': 'Users', 'charge_amount': '100', 'quantity': '10',
        'service_start_date': '2024-01-01', 'service_end_date': '2024-02-01',
        'applied_to_item_id': '', 'accounting_code': 'MONTHLYFEE', 'tax_amount': '0',
        'subscription_id': 'sub-1', 'subscription_name': 'A-S00001', 'subscription_cancelled_date': '',
        'invoice_number': 'INV-001', 'invoice_posted_date': '2024-01-01', 'invoice_due_date': '2024-01-31',
        'invoice_amount': '100', 'invoice_balance': '0', 'invoice_status': 'Posted',
        'account_id': 'ACC-1', 'account_currency': 'USD',
    }
    row.update(overrides)
    return row


def payment_row(**overrides):
    row = {'payment_number': 'P-1', 'invoice_number': 'INV-001', 'created_date': '2024-01-05',
           'status': 'Processed', 'amount': '100'}
    row.update(overrides)
    return row


def credit_row(**overrides):
    row = {'id': 'CBA-1', 'account_id': 'ACC-1', 'invoice_number': '', 'type': 'Decrease',
           'amount': '50', 'status': 'Processed', 'created_date': '2024-03-01',
           'refund_number': 'RF1', 'refund_date': '2024-03-01'}
    row.update(overrides)
    return row


def make_invoice(external_id, posted, *amounts, subscription='A-S00001', start=None, end=None, plan='Generic Monthly'):
    """Reconciled-invoice dict with one line item per amount (in cents)."""
    start = parse_datetime(start or posted)
    end = parse_datetime(end) if end else start.replace(month=start.month % 12 + 1,
                                                        year=start.year + start.month // 12)
    return {
        'external_id': external_id,
        'date': parse_datetime(posted),
        'due_date': parse_datetime(posted),
        'currency': 'USD',
        'line_items': [{
            'type': 'subscription',
            'subscription_external_id': subscription,
            'plan_uuid': plan,
            'service_period_start': start,
            'service_period_end': end,
            'amount_in_cents': amount,
            'cancelled_at': None,
            'prorated': False,
            'quantity': 1,
            'discount_amount_in_cents': 0,
            'tax_amount_in_cents': 0,
            'external_id': f"{external_id}-item{i}",
        } for i, amount in enumerate(amounts)],
        'transactions': [],
    }


@pytest.fixture
def row():
    return charge_row


@pytest.fixture
def payment():
    return payment_row


@pytest.fixture
def credit():
    return credit_row


@pytest.fixture
def invoice():
    return make_invoice


class FakeCollection:
    """The subset of the Motor collection API the service uses."""

    def __init__(self):
        self.docs = []

    @staticmethod
    def _matches(doc, query):
        return all(doc.get(key) == value for key, value in query.items())

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if self._matches(doc, query):
                return copy.deepcopy({k: v for k, v in doc.items() if k != '_id'})
        return None

    async def insert_one(self, doc):
        self.docs.append(copy.deepcopy(doc))

    async def update_one(self, query, update, upsert=False):
        doc = next((d for d in self.docs if self._matches(d, query)), None)
        if doc is None:
            if not upsert:
                return
            doc = dict(query)
            self.docs.append(doc)
        for key, value in update.get('$set', {}).items():
            target = doc
            *parents, last = key.split('.')
            for part in parents:
                target = target.setdefault(part, {})
            target[last] = copy.deepcopy(value)


class FakeDatabase:
    def __init__(self):
        self.runs = FakeCollection()
        self.run_data = FakeCollection()


@pytest.fixture
def api_client(monkeypatch):
    """TestClient against the app with Mongo replaced by FakeDatabase."""
    from fastapi.testclient import TestClient
    import server

    monkeypatch.setattr(server, 'db', FakeDatabase())
    return TestClient(server.app)
