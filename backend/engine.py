"""
Invoice Reconciliation Engine
Deterministic, rule-based assembly of billing-export rows into invoices.
Money is Decimal until the final conversion to cents; totals must match exactly.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from types import MappingProxyType

from dateutil.relativedelta import relativedelta

from errors import (
    DataIntegrityError,
    InvoiceBuildError,
    MissingFieldError,
    PaymentCaseError,
    TotalMismatchError,
    UnknownChargeError,
    UnknownCurrencyError,
    UnsupportedCaseError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================
ZERO = Decimal('0')
ONE_DAY = timedelta(days=1)
MONTHS_UNPAID_TO_CANCEL = 2

USERS = 'users'
USERS_PRORATION = 'users_proration'
USERS_PRORATION_CREDIT = 'users_proration_credit'
STORAGE = 'storage'
STORAGE_PRORATION = 'storage_proration'
STORAGE_PRORATION_CREDIT = 'storage_proration_credit'
PERSONAL = 'personal'
DISCOUNT = 'discount'

CHARGE_CATEGORIES = MappingProxyType({
    'Users': USERS,
    'Users -- Proration': USERS_PRORATION,
    'Users -- Proration Credit': USERS_PRORATION_CREDIT,
    'Personal Plus': PERSONAL,
    'Personal Plus -- Proration Credit': USERS_PRORATION_CREDIT,
    'Extra storage: 500 GB': STORAGE,
    'Additional Storage: 500GB': STORAGE,
    'Additional Storage: 10GB': STORAGE,
    'Initial 250 GB of storage': STORAGE,
    'Extra storage: 500 GB -- Proration': STORAGE_PRORATION,
    'Additional Storage: 500GB -- Proration': STORAGE_PRORATION,
    'Additional Storage: 10GB -- Proration': STORAGE_PRORATION,
    'Extra storage: 500 GB -- Proration Credit': STORAGE_PRORATION_CREDIT,
    'Additional Storage: 500GB -- Proration Credit': STORAGE_PRORATION_CREDIT,
    'Additional Storage: 10GB -- Proration Credit': STORAGE_PRORATION_CREDIT,
    'Initial Discount: 1 Year': DISCOUNT,
    'Initial Discount: 1 Month': DISCOUNT,
    'Initial Fixed Discount : 1 Month': DISCOUNT,
    'Initial Fixed Discount : 1 Year': DISCOUNT,
})

# Proration charges first, then plain charges
CHARGE_ORDER = (USERS_PRORATION, STORAGE_PRORATION, USERS, PERSONAL, STORAGE)
CREDIT_CATEGORIES = (USERS_PRORATION_CREDIT, STORAGE_PRORATION_CREDIT)
PRORATION_CATEGORIES = (USERS_PRORATION, STORAGE_PRORATION)

CREDIT_POOL_FOR = MappingProxyType({
    USERS: USERS_PRORATION_CREDIT,
    USERS_PRORATION: USERS_PRORATION_CREDIT,
    PERSONAL: USERS_PRORATION_CREDIT,
    STORAGE: STORAGE_PRORATION_CREDIT,
    STORAGE_PRORATION: STORAGE_PRORATION_CREDIT,
})

DOWNGRADE_CHARGE_NAME = 'Users -- Proration'

CURRENCIES = MappingProxyType({
    'USD': 'USD',
    'US Dollar': 'USD',
    'EUR': 'EUR',
    'Euro': 'EUR',
})

PLAN_GENERIC_ANNUALLY = 'Generic Annually'
PLAN_GENERIC_MONTHLY = 'Generic Monthly'
PLAN_GENERIC_QUARTERLY = 'Generic Quarterly'

RATE_TO_PLANS = MappingProxyType({
    'ANNUALFEE': PLAN_GENERIC_ANNUALLY,
    'MONTHLYFEE': PLAN_GENERIC_MONTHLY,
    'QUARTERLYFEE': PLAN_GENERIC_QUARTERLY,
})

PAYMENT = 'payment'
REFUND = 'refund'
SUCCESSFUL = 'successful'
FAILED = 'failed'


# =============================================================================
# HELPERS
# =============================================================================
def to_decimal(value):
    if value is None or (isinstance(value, str) and not value.strip()):
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as err:
        raise DataIntegrityError(f"Invalid amount: {value!r}") from err


def to_cents(amount):
    """Major currency units to integer cents, rounding half-up."""
    return int((to_decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def parse_datetime(value):
    """Normalize a date/datetime/ISO string to an aware UTC datetime, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return parse_datetime(datetime.fromisoformat(text))
    except ValueError:
        return None


def _same(value, expected):
    return str(value or '').strip().lower() == expected.lower()


def is_processed(record):
    return _same(record.get('status'), 'Processed')


def signed_amount(amount, kind, positive_kind):
    """Amount as-is when ``kind`` is ``positive_kind``, negated otherwise."""
    amount = to_decimal(amount)
    return amount if _same(kind, positive_kind) else -amount


def line_items_total(invoice):
    return sum(item['amount_in_cents'] for item in invoice['line_items'])


def get_currency(code):
    currency = CURRENCIES.get(str(code or '').strip())
    if not currency:
        raise UnknownCurrencyError(code)
    return currency


# =============================================================================
# ITEM CLASSIFIER
# =============================================================================
def classify_items(rows):
    """
    Bucket the charge rows of one invoice by charge category.

    Zero-amount rows are ignored and discounts are dropped (they are folded in
    through resolve_discounts). An unknown charge name is fatal.
    """
    buckets = {category: [] for category in CHARGE_ORDER + CREDIT_CATEGORIES}
    for row in rows:
        if not to_decimal(row.get('charge_amount')):
            continue
        name = row.get('charge_name')
        category = CHARGE_CATEGORIES.get(name)
        if category is None:
            raise UnknownChargeError(name, row.get('invoice_number'))
        if category == DISCOUNT:
            continue
        buckets[category].append(row)
    return buckets


def order_charge_rows(buckets):
    return [row for category in CHARGE_ORDER for row in buckets[category]]


# =============================================================================
# DISCOUNT / ADJUSTMENT RESOLVER
# =============================================================================
def resolve_discounts(rows):
    """Map target item id -> discount (always a reduction, so negative)."""
    discounts = {}
    for row in rows or []:
        if CHARGE_CATEGORIES.get(row.get('charge_name')) != DISCOUNT:
            continue
        target = row.get('applied_to_item_id')
        amount = -abs(to_decimal(row.get('charge_amount')))
        discounts[target] = discounts.get(target, ZERO) + amount
    return discounts


def resolve_item_adjustments(adjustments):
    adjustment_map = {}
    total = ZERO
    for adjustment in adjustments or []:
        if not is_processed(adjustment):
            continue
        amount = signed_amount(adjustment.get('amount'), adjustment.get('type'), 'Charge')
        item_id = adjustment.get('item_id')
        adjustment_map[item_id] = adjustment_map.get(item_id, ZERO) + amount
        total += amount
    return adjustment_map, total


def resolve_invoice_adjustment(adjustments):
    return sum(
        (signed_amount(a.get('amount'), a.get('type'), 'Charge')
         for a in adjustments or [] if is_processed(a)),
        ZERO,
    )


def resolve_credit_balance_adjustment(adjustments):
    return sum(
        (signed_amount(a.get('amount'), a.get('type'), 'Increase')
         for a in adjustments or [] if is_processed(a)),
        ZERO,
    )


# =============================================================================
# PRORATION MATCHER
# =============================================================================
def widen_instant_period(row):
    """Copy of ``row`` with a zero-length service period widened by one day."""
    start = parse_datetime(row.get('service_start_date'))
    end = parse_datetime(row.get('service_end_date'))
    if start is not None and start == end:
        return dict(row, service_end_date=end + ONE_DAY)
    return row


def service_overlap_days(first, second):
    start = max(parse_datetime(first['service_start_date']), parse_datetime(second['service_start_date']))
    end = min(parse_datetime(first['service_end_date']), parse_datetime(second['service_end_date']))
    if end <= start:
        return 0
    return (end - start).days


def match_proration_credits(row, credits, discounts, adjustments):
    """
    Consume the credits in ``credits`` that offset ``row``.

    The pool is scanned from the end. A credit matches when it belongs to the
    same subscription and its service period overlaps the row's by at least one
    whole day. Matched credits are removed from the pool; every pool entry that
    is looked at is replaced by its widened copy, never edited in place.

    Returns (amount, quantity, prorated): the summed credit amount including the
    credit's own discounts and adjustments, the summed credit quantity and
    whether anything matched.
    """
    amount, quantity, prorated = ZERO, ZERO, False
    for index in range(len(credits) - 1, -1, -1):
        credit = widen_instant_period(credits[index])
        credits[index] = credit
        if credit.get('subscription_name') != row.get('subscription_name'):
            continue
        if service_overlap_days(credit, row) < 1:
            continue
        credit_id = credit.get('item_id')
        amount += (to_decimal(credit.get('charge_amount'))
                   + discounts.get(credit_id, ZERO)
                   + adjustments.get(credit_id, ZERO))
        quantity += to_decimal(credit.get('quantity'))
        prorated = True
        logger.debug("Credit %s matched to item %s", credit_id, row.get('item_id'))
        del credits[index]
    return amount, quantity, prorated


# =============================================================================
# INVOICE BUILDER
# =============================================================================
def check_item_sanity(row):
    for field in ('service_start_date', 'service_end_date'):
        if parse_datetime(row.get(field)) is None:
            raise MissingFieldError(field, row.get('item_id'))


def subscription_canceled_date(row, assume_deleted_cancelled=True):
    """
    Cancellation date for the subscription behind ``row``.

    The subscription's own cancel date wins. A row that lost its subscription
    link (the subscription record was deleted) is assumed cancelled at the end
    of its service period; that guess can be switched off.
    """
    cancelled = parse_datetime(row.get('subscription_cancelled_date'))
    if cancelled is not None:
        return cancelled
    if assume_deleted_cancelled and not row.get('subscription_id'):
        return parse_datetime(row.get('service_end_date'))
    return None


def allocate_invoice_adjustment(amount, remainder):
    """
    Apply the running invoice-level adjustment ``remainder`` to one row.

    Only acts when the two have opposite signs: the smaller magnitude is used
    up entirely and the other is reduced by it. Returns (amount, remainder).
    """
    if not remainder or not amount or (amount > 0) == (remainder > 0):
        return amount, remainder
    if abs(remainder) >= abs(amount):
        return ZERO, remainder + amount
    return amount + remainder, ZERO


def make_line_item(row, amount, discount, quantity, prorated, context):
    if quantity != quantity.to_integral_value():
        raise DataIntegrityError(f"Fractional quantity {quantity} on item {row['item_id']}",
                                 details={'item_id': row['item_id'], 'quantity': str(quantity)})
    policy = context.get('canceled_date_policy')
    plan_id = RATE_TO_PLANS.get(row.get('accounting_code'))
    plan = context['plans_by_id'].get(plan_id)
    return {
        'type': 'subscription',
        'subscription_external_id': row.get('subscription_name') or None,
        'plan_uuid': plan['external_id'] if plan else None,
        'service_period_start': parse_datetime(row['service_start_date']),
        'service_period_end': parse_datetime(row['service_end_date']),
        'amount_in_cents': to_cents(amount),
        'cancelled_at': policy(row) if policy else None,
        'prorated': prorated,
        'quantity': int(quantity),
        'discount_amount_in_cents': to_cents(-discount),
        'tax_amount_in_cents': to_cents(row.get('tax_amount')),
        'external_id': row['item_id'],
    }


def process_items(rows, credit_pools, context):
    """Resolve each charge row into a line item, consuming matching credits."""
    line_items = []
    for row in rows:
        check_item_sanity(row)
        row = widen_instant_period(row)
        item_id = row['item_id']
        category = CHARGE_CATEGORIES[row['charge_name']]

        discount = context['discounts'].get(item_id, ZERO) + context['adjustments'].get(item_id, ZERO)
        amount = to_decimal(row.get('charge_amount')) + discount
        quantity = to_decimal(row.get('quantity'))

        credit_amount, credit_quantity, prorated = match_proration_credits(
            row, credit_pools[CREDIT_POOL_FOR[category]], context['discounts'], context['adjustments'])
        amount += credit_amount
        quantity -= credit_quantity
        if category in PRORATION_CATEGORIES and not prorated:
            logger.warning("No proration credit found for item %s (%s)", item_id, row.get('charge_name'))

        remainder = context['invoice_adjustment']
        allocated, context['invoice_adjustment'] = allocate_invoice_adjustment(amount, remainder)
        if remainder < 0:
            discount -= amount - allocated
        amount = allocated

        line_items.append(make_line_item(row, amount, discount, quantity, prorated, context))
    return line_items


def handle_unmatched_credits(credit_pools, context):
    """
    Turn leftover user credits into downgrade-to-zero line items.

    Each leftover user credit gets a synthetic zero-amount proration charge
    that consumes it, together with any other leftover credit of the same
    subscription it overlaps. A credit already consumed that way gets no charge
    of its own. Anything still unmatched afterwards is unsupported.
    """
    line_items = []
    user_credits = credit_pools[USERS_PRORATION_CREDIT]
    for credit in list(user_credits):
        pending = {pooled.get('item_id') for pooled in user_credits}
        if credit.get('item_id') not in pending:
            continue
        downgrade = dict(credit, charge_name=DOWNGRADE_CHARGE_NAME, charge_amount=ZERO, quantity=ZERO,
                         item_id=f"{credit['item_id']}-a")
        line_items.extend(process_items([downgrade], credit_pools, context))
    if user_credits:
        raise UnsupportedCaseError(
            f"Unmatched user credit items: {len(user_credits)}",
            item_ids=[credit.get('item_id') for credit in user_credits])
    storage_credits = credit_pools[STORAGE_PRORATION_CREDIT]
    if storage_credits:
        raise UnsupportedCaseError(
            f"Unmatched storage credit items: {len(storage_credits)}",
            item_ids=[credit.get('item_id') for credit in storage_credits])
    return line_items


def items_for_invoice(rows, context):
    buckets = classify_items(rows)
    credit_pools = {category: list(buckets[category]) for category in CREDIT_CATEGORIES}
    for credits in credit_pools.values():
        for credit in credits:
            check_item_sanity(credit)
    line_items = process_items(order_charge_rows(buckets), credit_pools, context)
    line_items.extend(handle_unmatched_credits(credit_pools, context))
    return line_items


def check_line_items_total(first_row, line_items, item_adjustment_total, invoice_adjustment_total):
    invoice_amount = to_decimal(first_row.get('invoice_amount'))
    expected = to_cents(invoice_amount + item_adjustment_total + invoice_adjustment_total)
    total = sum(item['amount_in_cents'] for item in line_items)
    if total != expected:
        logger.error("Invoice %s: line items total %s, expected %s",
                     first_row.get('invoice_number'), total, expected)
        raise TotalMismatchError(
            total, expected,
            invoice_amount=str(invoice_amount),
            item_adjustment_total=str(item_adjustment_total),
            invoice_adjustment_total=str(invoice_adjustment_total),
        )


def cancel_long_due_items(first_row, line_items, now=None, months=MONTHS_UNPAID_TO_CANCEL):
    """
    Force-cancel the subscription of an invoice left unpaid for too long.

    Applies when amount and balance are both positive, the due date is at least
    ``months`` in the past and the first positive line item is not already
    cancelled. Every line item is stamped with that item's period start.
    """
    now = now or datetime.now(timezone.utc)
    due = parse_datetime(first_row.get('invoice_due_date'))
    positive = [item for item in line_items if item['amount_in_cents'] > 0]
    if due is None or not positive or positive[0]['cancelled_at']:
        return line_items
    unpaid = to_decimal(first_row.get('invoice_amount')) > 0 and to_decimal(first_row.get('invoice_balance')) > 0
    if unpaid and due + relativedelta(months=months) <= now:
        cancelled_at = positive[0]['service_period_start']
        logger.info("Invoice %s unpaid since %s, cancelling at %s",
                    first_row.get('invoice_number'), due.date(), cancelled_at.date())
        for item in line_items:
            item['cancelled_at'] = cancelled_at
    return line_items


def add_invoice_items(rows, invoice, item_adjustments, invoice_adjustments, plans_by_id,
                      overdue_policy, canceled_date_policy):
    adjustment_map, item_adjustment_total = resolve_item_adjustments(item_adjustments)
    invoice_adjustment_total = resolve_invoice_adjustment(invoice_adjustments)
    context = {
        'discounts': resolve_discounts(rows),
        'adjustments': adjustment_map,
        'invoice_adjustment': invoice_adjustment_total,
        'plans_by_id': plans_by_id or {},
        'canceled_date_policy': canceled_date_policy,
    }
    line_items = items_for_invoice(rows, context)
    check_line_items_total(rows[0], line_items, item_adjustment_total, invoice_adjustment_total)
    if overdue_policy:
        overdue_policy(rows[0], line_items)
    invoice['line_items'].extend(line_items)


def build_invoice(invoice_number, rows, posted_date, due_date, currency,
                  item_adjustments=None, invoice_adjustments=None, credit_adjustments=None,
                  payments=None, refunds=None, plans_by_id=None,
                  overdue_policy=cancel_long_due_items,
                  canceled_date_policy=subscription_canceled_date):
    """
    Build one normalized invoice from its charge rows and transactions.

    Any failure is re-raised as InvoiceBuildError naming the invoice, with the
    original error as its cause.
    """
    try:
        posted = parse_datetime(posted_date)
        if posted is None:
            raise MissingFieldError('invoice_posted_date', invoice_number)
        due = parse_datetime(due_date)
        if due is None:
            raise MissingFieldError('invoice_due_date', invoice_number)

        invoice = {
            'external_id': invoice_number,
            'date': posted,
            'due_date': due,
            'currency': get_currency(currency),
            'line_items': [],
            'transactions': [],
        }
        add_invoice_items(rows, invoice, item_adjustments, invoice_adjustments, plans_by_id,
                          overdue_policy, canceled_date_policy)

        total_payments = add_payments(payments, invoice, PAYMENT)
        total_refunds = add_payments(refunds, invoice, REFUND)
        total_credit_adjusted = check_credit_adjustment(
            invoice, credit_adjustments, total_payments, total_refunds)
        remove_partial_refunds(invoice, total_payments, total_refunds, total_credit_adjusted)
        return invoice
    except Exception as err:
        raise InvoiceBuildError(invoice_number) from err


# =============================================================================
# TRANSACTIONS
# =============================================================================
def _transaction(row, invoice, kind):
    if kind == PAYMENT:
        number, occurred, amount = row.get('payment_number'), row.get('created_date'), row.get('amount')
    else:
        number = row.get('refund_number')
        occurred = row.get('refund_date') or row.get('created_date')
        amount = row.get('refund_amount')
        if amount is None or amount == '':
            amount = row.get('amount')
    if not number:
        raise MissingFieldError(f'{kind}_number', row.get('id'))
    occurred = parse_datetime(occurred)
    if occurred is None:
        raise MissingFieldError('date', number)
    transaction = {
        'date': occurred,
        'type': kind,
        'result': SUCCESSFUL if is_processed(row) else FAILED,
        'external_id': f"{number}-{invoice['external_id']}",
    }
    if transaction['result'] == SUCCESSFUL and (amount is None or amount == ''):
        raise MissingFieldError('amount', number)
    return transaction, to_decimal(amount)


def add_payments(rows, invoice, kind):
    """Append a transaction per row; return the successful total in cents."""
    total = ZERO
    for row in rows or []:
        try:
            transaction, amount = _transaction(row, invoice, kind)
        except DataIntegrityError as err:
            raise DataIntegrityError(f"Invalid {kind}", details={'row': row.get('id')}) from err
        if transaction['result'] == SUCCESSFUL:
            total += amount
        invoice['transactions'].append(transaction)
    return to_cents(total)


def check_credit_adjustment(invoice, credit_adjustments, total_payments, total_refunds):
    """
    Validate a credit-balance adjustment used as payment; return it in cents.

    Mixed with real payments or refunds it is accepted with a warning.
    Otherwise it has to cover the invoice exactly with nothing already paid.
    """
    credit_adjusted = resolve_credit_balance_adjustment(credit_adjustments)
    if not credit_adjusted:
        return 0
    credit_adjusted = to_cents(-credit_adjusted)
    invoice_id = invoice['external_id']
    if total_payments or total_refunds:
        logger.warning("Invoice %s has payments/refunds and a credit adjustment, cashflow will be approximate",
                       invoice_id)
        return credit_adjusted

    invoice_total = line_items_total(invoice)
    if credit_adjusted != invoice_total:
        raise PaymentCaseError(
            'Credit adjusted, but not the same as invoice amount!',
            invoice_number=invoice_id, credit_adjusted=credit_adjusted, invoice_total=invoice_total)
    if any(t['result'] == SUCCESSFUL for t in invoice['transactions']):
        raise PaymentCaseError('Partially refunded/paid and credit adjusted!', invoice_number=invoice_id)
    return credit_adjusted


def remove_partial_refunds(invoice, total_payments, total_refunds, total_credit_adjusted):
    """
    Keep only payments on invoices that are not cleanly paid/refunded.

    The destination cannot represent partial refunds: an invoice whose clear
    payment (payments - refunds + credit adjustment) still equals its total
    loses its refunds. Any other mismatch is fatal.
    """
    if not total_payments and not total_refunds:
        return
    invoice_total = line_items_total(invoice)
    if (invoice_total == total_payments and total_refunds in (0, total_payments)
            and not total_credit_adjusted):
        return
    clear_payment = total_payments - total_refunds + total_credit_adjusted
    if clear_payment and clear_payment == invoice_total:
        logger.info("Invoice %s partially refunded, keeping payments only", invoice['external_id'])
        invoice['transactions'] = [t for t in invoice['transactions'] if t['type'] == PAYMENT]
        return
    raise PaymentCaseError(
        'Unexpected payment case!',
        invoice_number=invoice['external_id'], invoice_total=invoice_total,
        total_payments=total_payments, total_refunds=total_refunds,
        total_credit_adjusted=total_credit_adjusted, clear_payment=clear_payment)
