"""
Synthetic Billing Snapshot Generator
Builds a deterministic billing export: regular monthly accounts plus one account
per reconciliation edge case, each listed in metadata with its expected outcome.
"""
import random
from collections import defaultdict
from datetime import date, timedelta

SNAPSHOT_KEYS = ['invoice_items', 'payments', 'refunds', 'item_adjustments',
                 'invoice_adjustments', 'credit_adjustments', 'plans']

PLANS = [
    {'plan_id': 'PLAN-TEAM', 'plan_name': 'Team', 'charge_id': 'CHG-TEAM-M', 'billing_period': 'Month'},
    {'plan_id': 'PLAN-TEAM', 'plan_name': 'Team', 'charge_id': 'CHG-TEAM-A', 'billing_period': 'Annual'},
    {'plan_id': 'PLAN-PERSONAL', 'plan_name': 'Personal Plus', 'charge_id': 'CHG-PERSONAL', 'billing_period': 'Month'},
    {'plan_id': 'PLAN-STORAGE', 'plan_name': 'Storage', 'charge_id': 'CHG-STORAGE', 'billing_period': 'Month'},
]

SEAT_PRICE = 10


def gen_date(y, m, d):
    return f"{y:04d}-{m:02d}-{d:02d}"


def month_start(m, offset=0):
    total = 2024 * 12 + (m - 1) + offset
    return gen_date(total // 12, total % 12 + 1, 1)


def days_after(day, days):
    return (date.fromisoformat(day) + timedelta(days=days)).isoformat()


class SyntheticLedger:
    """Accumulates snapshot rows and hands out sequential identifiers."""

    def __init__(self):
        self.snapshot = {key: [] for key in SNAPSHOT_KEYS}
        self._counters = defaultdict(int)

    def next_id(self, prefix, width=6):
        self._counters[prefix] += 1
        return f"{prefix}{self._counters[prefix]:0{width}d}"

    def invoice(self, account_id, posted, amount, balance=0, currency='USD'):
        return {
            'invoice_number': self.next_id('INV', 8),
            'invoice_posted_date': posted,
            'invoice_due_date': days_after(posted, 30),
            'invoice_amount': str(amount),
            'invoice_balance': str(balance),
            'invoice_status': 'Posted',
            'account_id': account_id,
            'account_currency': currency,
        }

    def charge(self, header, name, amount, quantity, start, end, subscription, code='MONTHLYFEE', **extra):
        row = dict(
            header,
            item_id=self.next_id('ITEM'),
            charge_name=name,
            charge_amount=str(amount),
            quantity=str(quantity),
            service_start_date=start,
            service_end_date=end,
            applied_to_item_id='',
            accounting_code=code,
            tax_amount='0',
            subscription_id=f"sub-{subscription}" if subscription else '',
            subscription_name=subscription or '',
            subscription_cancelled_date='',
        )
        row.update(extra)
        self.snapshot['invoice_items'].append(row)
        return row

    def payment(self, header, amount, days=5, status='Processed'):
        self.snapshot['payments'].append({
            'payment_number': self.next_id('P'),
            'invoice_number': header['invoice_number'],
            'created_date': days_after(header['invoice_posted_date'], days),
            'status': status,
            'amount': str(amount),
        })

    def refund(self, header, amount, days=10):
        self.snapshot['refunds'].append({
            'refund_number': self.next_id('R'),
            'invoice_number': header['invoice_number'],
            'refund_date': days_after(header['invoice_posted_date'], days),
            'status': 'Processed',
            'refund_amount': str(amount),
        })

    def adjustment(self, kind, header, amount, adjustment_type='Credit', **extra):
        record = {
            'id': self.next_id('ADJ'),
            'invoice_number': header['invoice_number'],
            'type': adjustment_type,
            'amount': str(amount),
            'status': 'Processed',
        }
        record.update(extra)
        self.snapshot[kind].append(record)

    def credit_adjustment(self, account_id, amount, created, invoice_number='', refund=True):
        self.snapshot['credit_adjustments'].append({
            'id': self.next_id('CBA'),
            'account_id': account_id,
            'invoice_number': invoice_number,
            'type': 'Decrease',
            'amount': str(amount),
            'status': 'Processed',
            'created_date': created,
            'refund_number': self.next_id('RF') if refund else '',
            'refund_date': created if refund else '',
        })

    def monthly(self, account_id, subscription, m, seats, paid=True, name='Users', currency='USD'):
        amount = seats * SEAT_PRICE
        header = self.invoice(account_id, month_start(m), amount, 0 if paid else amount, currency)
        self.charge(header, name, amount, seats, month_start(m), month_start(m, 1), subscription)
        if paid:
            self.payment(header, amount)
        return header


def generate_synthetic(seed=42, regular_accounts=20, months=6):
    rng = random.Random(seed)
    ledger = SyntheticLedger()
    scenarios = {}

    # Regular accounts: monthly seats, some with storage or the personal plan
    for i in range(regular_accounts):
        aid = f"ACC-{i + 1:03d}"
        sub = f"A-S{i + 1:05d}"
        seats = rng.randint(1, 20)
        name = 'Personal Plus' if i % 7 == 6 else 'Users'
        currency = 'Euro' if i == 3 else 'USD'
        with_storage = i % 4 == 0
        for m in range(1, months + 1):
            amount = seats * SEAT_PRICE + (5 if with_storage else 0)
            header = ledger.invoice(aid, month_start(m), amount, currency=currency)
            ledger.charge(header, name, seats * SEAT_PRICE, seats, month_start(m), month_start(m, 1), sub)
            if with_storage:
                ledger.charge(header, 'Additional Storage: 10GB', 5, 1, month_start(m), month_start(m, 1), sub)
                ledger.charge(header, 'Initial 250 GB of storage', 0, 1, month_start(m), month_start(m, 1), sub)
            ledger.payment(header, amount)

    # Discount folded into the charge it applies to
    header = ledger.invoice('ACC-DISCOUNT', month_start(1), 180)
    users = ledger.charge(header, 'Users', 200, 20, month_start(1), month_start(2), 'D-S00001')
    ledger.charge(header, 'Initial Discount: 1 Month', -20, 1, month_start(1), month_start(2), 'D-S00001',
                  applied_to_item_id=users['item_id'])
    ledger.payment(header, 180)
    scenarios['ACC-DISCOUNT'] = 'discount of 20.00 folded into a 200.00 charge'

    # Mid-month upgrade: proration charge offset by the credit for the old seats
    ledger.monthly('ACC-PRORATION', 'P-S00001', 1, 10)
    header = ledger.invoice('ACC-PRORATION', gen_date(2024, 1, 15), 25)
    ledger.charge(header, 'Users -- Proration', 75, 15, gen_date(2024, 1, 15), month_start(2), 'P-S00001')
    ledger.charge(header, 'Users -- Proration Credit', -50, 10, gen_date(2024, 1, 15), month_start(2), 'P-S00001')
    ledger.payment(header, 25)
    ledger.monthly('ACC-PRORATION', 'P-S00001', 2, 15)
    scenarios['ACC-PRORATION'] = 'upgrade from 10 to 15 seats, prorated line of 25.00 for 5 seats'

    # Downgrade to zero: a lone user credit becomes a negative prorated line
    for m in range(1, 4):
        ledger.monthly('ACC-DOWNGRADE', 'G-S00001', m, 3)
    header = ledger.invoice('ACC-DOWNGRADE', gen_date(2024, 3, 15), '-16.45', '-16.45')
    ledger.charge(header, 'Users -- Proration Credit', '-16.45', 3, gen_date(2024, 3, 15), month_start(4),
                  'G-S00001')
    scenarios['ACC-DOWNGRADE'] = 'downgrade to zero seats, prorated line of -16.45 for -3 seats'

    # Invoice-level adjustment allocated against the charge
    header = ledger.invoice('ACC-INVADJ', month_start(1), 100)
    ledger.charge(header, 'Users', 100, 10, month_start(1), month_start(2), 'I-S00001')
    ledger.adjustment('invoice_adjustments', header, 10)
    ledger.payment(header, 90)
    scenarios['ACC-INVADJ'] = 'invoice adjustment of 10.00, line of 90.00'

    # Item-level adjustment on the charge
    header = ledger.invoice('ACC-ITEMADJ', month_start(1), 120)
    users = ledger.charge(header, 'Users', 120, 12, month_start(1), month_start(2), 'J-S00001')
    ledger.adjustment('item_adjustments', header, 20, item_id=users['item_id'])
    ledger.payment(header, 100)
    scenarios['ACC-ITEMADJ'] = 'item adjustment of 20.00, line of 100.00'

    # Standalone refund matching one invoice exactly
    ledger.monthly('ACC-REFUND-EXACT', 'E-S00001', 1, 3)
    ledger.credit_adjustment('ACC-REFUND-EXACT', 30, gen_date(2024, 1, 20))
    scenarios['ACC-REFUND-EXACT'] = 'standalone refund of 30.00 attached to the only invoice'

    # Standalone refund smaller than the invoice: invoice split in two
    ledger.monthly('ACC-REFUND-SPLIT', 'F-S00001', 1, 10)
    ledger.credit_adjustment('ACC-REFUND-SPLIT', 40, gen_date(2024, 1, 25))
    scenarios['ACC-REFUND-SPLIT'] = 'standalone refund of 40.00 splits a 100.00 invoice into 60.00 and 40.00'

    # Standalone refund larger than the newest invoice: residual goes to the older one
    ledger.monthly('ACC-REFUND-RESIDUAL', 'H-S00001', 1, 3)
    ledger.monthly('ACC-REFUND-RESIDUAL', 'H-S00001', 2, 4)
    ledger.credit_adjustment('ACC-REFUND-RESIDUAL', 50, month_start(3))
    scenarios['ACC-REFUND-RESIDUAL'] = 'refund of 50.00 covers the 40.00 invoice, 10.00 split off the 30.00 one'

    # Invoice reversed by a negative invoice for the same term
    ledger.monthly('ACC-ANNUL', 'N-S00001', 1, 1)
    ledger.monthly('ACC-ANNUL', 'N-S00001', 2, 1, paid=False)
    header = ledger.invoice('ACC-ANNUL', month_start(2), -10, -10)
    ledger.charge(header, 'Users', -10, -1, month_start(2), month_start(3), 'N-S00001')
    scenarios['ACC-ANNUL'] = 'second invoice and its reversal removed as an annulling pair'

    # Unpaid for months: subscription cancelled at the unpaid period start
    ledger.monthly('ACC-OVERDUE', 'O-S00001', 1, 5)
    ledger.monthly('ACC-OVERDUE', 'O-S00001', 2, 5, paid=False)
    scenarios['ACC-OVERDUE'] = 'February invoice unpaid, cancelled at its period start'

    # Paid from the credit balance instead of a payment
    header = ledger.invoice('ACC-CREDIT-PAID', month_start(1), 40)
    ledger.charge(header, 'Users', 40, 4, month_start(1), month_start(2), 'C-S00001')
    ledger.credit_adjustment('ACC-CREDIT-PAID', 40, days_after(month_start(1), 3),
                             invoice_number=header['invoice_number'], refund=False)
    scenarios['ACC-CREDIT-PAID'] = 'invoice settled by a credit-balance adjustment'

    # Subscription record deleted: its invoice is dropped
    ledger.monthly('ACC-DELETED-SUB', 'X-S00001', 1, 2)
    ledger.monthly('ACC-DELETED-SUB', None, 2, 2)
    scenarios['ACC-DELETED-SUB'] = 'invoice without subscription link dropped'

    # Overpaid then partially refunded: refund stripped, payment kept
    header = ledger.invoice('ACC-OVERPAID', month_start(1), 100)
    ledger.charge(header, 'Users', 100, 10, month_start(1), month_start(2), 'V-S00001')
    ledger.payment(header, 130)
    ledger.refund(header, 30)
    scenarios['ACC-OVERPAID'] = 'overpayment of 30.00 refunded, refund transaction removed'

    # Charge the engine does not know about
    header = ledger.invoice('ACC-UNKNOWN-CHARGE', month_start(1), 500)
    ledger.charge(header, 'Consulting Hours', 500, 1, month_start(1), month_start(2), 'U-S00001')
    ledger.payment(header, 500)
    scenarios['ACC-UNKNOWN-CHARGE'] = 'unknown charge name, account fails'

    # Free plan only: filtered out before reconciliation
    header = ledger.invoice('ACC-FREE', month_start(1), 0)
    ledger.charge(header, 'Users', 0, 1, month_start(1), month_start(2), 'Z-S00001', code='FREE')
    scenarios['ACC-FREE'] = 'free account, never reconciled'

    snapshot = ledger.snapshot
    snapshot['plans'] = [dict(plan) for plan in PLANS]

    return {
        'snapshot': snapshot,
        'period_start': '2024-01', 'period_end': f"2024-{months:02d}",
        'metadata': {
            'scenarios': scenarios,
            'expected_failures': ['ACC-UNKNOWN-CHARGE'],
            'expected_skipped': ['ACC-FREE'],
            'total_accounts': regular_accounts + len(scenarios),
            'total_invoice_items': len(snapshot['invoice_items']),
            'total_payments': len(snapshot['payments']),
            'total_credit_adjustments': len(snapshot['credit_adjustments']),
        },
    }
