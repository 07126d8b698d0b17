"""
Account reconciliation orchestrator.

Groups a complete billing-export snapshot by account, builds every invoice of
an account in issue order and applies the account-level clean-ups: standalone
refunds, annulling pairs, nonsense invoices, colliding timestamps and the final
sanity checks. Accounts fail independently.
"""
import logging
from collections import defaultdict
from datetime import timedelta
from functools import partial

from engine import (
    MONTHS_UNPAID_TO_CANCEL,
    PLAN_GENERIC_ANNUALLY,
    PLAN_GENERIC_MONTHLY,
    PLAN_GENERIC_QUARTERLY,
    build_invoice,
    cancel_long_due_items,
    is_processed,
    line_items_total,
    subscription_canceled_date,
    to_decimal,
)
from errors import (
    AccountReconciliationError,
    DataIntegrityError,
    InvalidInvoiceError,
    MissingFieldError,
    ReconciliationError,
    UnsupportedCaseError,
)
from refunds import attach_standalone_refunds

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================
BILLING_PERIODS = {
    'Month': (1, 'month'),
    'Quarter': (3, 'month'),
    'Semi-Annual': (6, 'month'),
    'Annual': (1, 'year'),
    'Eighteen Months': (18, 'month'),
    'Two Years': (2, 'year'),
    'Three Years': (3, 'year'),
    'Five Years': (5, 'year'),
    'Specific Months': (1, 'month'),
    'Week': (7, 'day'),
    'Specific Weeks': (7, 'day'),
}
UNSUPPORTED_BILLING_PERIODS = ['Subscription Term']

GENERIC_PLANS = [
    {'name': PLAN_GENERIC_ANNUALLY, 'external_id': PLAN_GENERIC_ANNUALLY, 'interval_count': 1, 'interval_unit': 'year'},
    {'name': PLAN_GENERIC_MONTHLY, 'external_id': PLAN_GENERIC_MONTHLY, 'interval_count': 1, 'interval_unit': 'month'},
    {'name': PLAN_GENERIC_QUARTERLY, 'external_id': PLAN_GENERIC_QUARTERLY, 'interval_count': 3, 'interval_unit': 'month'},
]

ANNUL_FIELDS = ('subscription_external_id', 'service_period_start', 'service_period_end', 'plan_uuid')
NONSENSE_FIELDS = ('subscription_external_id', 'service_period_start', 'service_period_end', 'plan_uuid')
SHIFTED_FIELDS = ('service_period_start', 'cancelled_at')

DEFAULT_SETTINGS = {
    'include_accounts': None,
    'exclude_accounts': [],
    'exclude_invoices': [],
    'months_unpaid_to_cancel': MONTHS_UNPAID_TO_CANCEL,
    'cancel_overdue': True,
    'assume_deleted_cancelled': True,
}


def group_by(rows, key):
    groups = defaultdict(list)
    for row in rows or []:
        groups[row.get(key)].append(row)
    return dict(groups)


# =============================================================================
# SNAPSHOT GROUPING
# =============================================================================
def filter_and_group_items(rows, include_accounts=None, exclude_accounts=None, exclude_invoices=None):
    """
    Posted, non-free charge rows grouped by account.

    Accounts that never had an invoice with a positive amount are dropped,
    then the include/exclude account lists apply.
    """
    excluded_invoices = set(exclude_invoices or [])
    excluded_accounts = set(exclude_accounts or [])
    kept = []
    for row in rows or []:
        if not row.get('invoice_number'):
            raise MissingFieldError('invoice_number', row.get('item_id'))
        if not row.get('account_id'):
            raise MissingFieldError('account_id', row.get('item_id'))
        if str(row.get('invoice_status') or '').lower() != 'posted':
            continue
        if row.get('accounting_code') == 'FREE':
            continue
        if row['invoice_number'] in excluded_invoices:
            continue
        kept.append(row)

    grouped = {}
    for account_id, account_rows in group_by(kept, 'account_id').items():
        if not any(to_decimal(row.get('invoice_amount')) > 0 for row in account_rows):
            logger.debug("Account %s never paid anything, skipping", account_id)
            continue
        if include_accounts is not None and account_id not in include_accounts:
            continue
        if account_id in excluded_accounts:
            continue
        grouped[account_id] = account_rows
    return grouped


def group_snapshot(snapshot, exclude_invoices=None):
    """Transactions and adjustments of a snapshot, grouped for lookup by invoice."""
    excluded = set(exclude_invoices or [])
    credit_adjustments = [
        adjustment for adjustment in snapshot.get('credit_adjustments') or []
        if is_processed(adjustment) and adjustment.get('invoice_number') not in excluded
    ]
    linked = [a for a in credit_adjustments if a.get('invoice_number')]
    standalone = [a for a in credit_adjustments if a.get('refund_number') and not a.get('invoice_number')]
    return {
        'payments': group_by(snapshot.get('payments'), 'invoice_number'),
        'refunds': group_by([r for r in snapshot.get('refunds') or [] if is_processed(r)], 'invoice_number'),
        'item_adjustments': group_by(
            [a for a in snapshot.get('item_adjustments') or [] if is_processed(a)], 'invoice_number'),
        'invoice_adjustments': group_by(
            [a for a in snapshot.get('invoice_adjustments') or [] if is_processed(a)], 'invoice_number'),
        'credit_adjustments': group_by(linked, 'invoice_number'),
        'standalone_credits': group_by(standalone, 'account_id'),
    }


def transform_plans(plans):
    """
    Plan catalog rows to destination plans with interval count and unit.

    A plan id seen again with another billing period is emitted under its
    charge id; exact duplicates are skipped.
    """
    seen = {}
    result = []
    for plan in plans or []:
        billing_period = plan.get('billing_period')
        if not billing_period:
            continue
        if billing_period in UNSUPPORTED_BILLING_PERIODS:
            raise UnsupportedCaseError(
                f"Unsupported billing period: {billing_period}", plan_id=plan.get('plan_id'))
        if billing_period not in BILLING_PERIODS:
            raise DataIntegrityError(
                f"Unknown billing period: {billing_period}", details={'plan_id': plan.get('plan_id')})
        interval_count, interval_unit = BILLING_PERIODS[billing_period]

        plan_id = plan.get('plan_id')
        if plan_id in seen:
            if seen[plan_id] == billing_period:
                continue
            logger.debug("Plan %s also billed %s, using charge %s", plan_id, billing_period, plan.get('charge_id'))
            name, external_id = f"{plan.get('plan_name')} - {billing_period}", plan.get('charge_id')
        else:
            seen[plan_id] = billing_period
            name, external_id = plan.get('plan_name'), plan_id

        result.append({
            'name': name,
            'external_id': external_id,
            'interval_count': interval_count,
            'interval_unit': interval_unit,
        })
    return result


def plan_lookup(plans):
    return {plan['external_id']: plan for plan in transform_plans(plans) + GENERIC_PLANS}


# =============================================================================
# ACCOUNT CLEAN-UPS
# =============================================================================
def do_invoices_annul(first, second):
    """Equal and opposite totals over the same subscriptions, periods and plans."""
    if line_items_total(first) != -line_items_total(second):
        return False
    return all(
        {item[field] for item in first['line_items']} == {item[field] for item in second['line_items']}
        for field in ANNUL_FIELDS
    )


def remove_annulling_invoices(invoices):
    result = list(invoices)
    index = 1
    while index < len(result):
        if do_invoices_annul(result[index - 1], result[index]):
            logger.info("Removing annulling invoices %s and %s",
                        result[index - 1]['external_id'], result[index]['external_id'])
            del result[index - 1:index + 1]
            index = max(index - 1, 1)
        else:
            index += 1
    return result


def remove_nonsense_invoices(invoices):
    result = []
    for invoice in invoices:
        items = invoice['line_items']
        if not all(item['subscription_external_id'] for item in items):
            logger.warning("Removing invoice %s with deleted subscriptions", invoice['external_id'])
            continue
        single_term = all(len({item[field] for item in items}) == 1 for field in NONSENSE_FIELDS)
        if single_term and line_items_total(invoice) == 0:
            logger.warning("Removing nonsense invoice %s", invoice['external_id'])
            continue
        result.append(invoice)
    return result


def shift_dates(invoices):
    """Push timestamps landing on an already used second forward by whole seconds."""
    used = set()
    for invoice in invoices:
        for item in invoice['line_items']:
            for field in SHIFTED_FIELDS:
                value = item.get(field)
                if value is None:
                    continue
                shifted = value
                while shifted.replace(microsecond=0) in used:
                    shifted += timedelta(seconds=1)
                used.add(shifted.replace(microsecond=0))
                if shifted != value:
                    logger.debug("Shifted %s of %s by %s", field, item['external_id'], shifted - value)
                    item[field] = shifted
    return invoices


def validate_invoices(invoices):
    for invoice in invoices:
        invoice_id = invoice['external_id']
        for item in invoice['line_items']:
            if not item['quantity']:
                raise InvalidInvoiceError("Invoice can't have zero quantity!", invoice_id)
            if not item['prorated'] and item['amount_in_cents'] < 0:
                raise InvalidInvoiceError("Invoice can't be unprorated with negative amount!", invoice_id)
            if item['service_period_start'] >= item['service_period_end']:
                raise InvalidInvoiceError("The service period start date must be before the end date.", invoice_id)


# =============================================================================
# ORCHESTRATION
# =============================================================================
def reconcile_account(account_id, rows, grouped, plans_by_id=None, settings=None, now=None):
    """
    Reconcile one account's charge rows into its final list of invoices.

    ``grouped`` is the output of group_snapshot. Any failure is re-raised as
    AccountReconciliationError with the original error as its cause.
    """
    settings = {**DEFAULT_SETTINGS, **(settings or {})}
    overdue_policy = None
    if settings['cancel_overdue']:
        overdue_policy = partial(cancel_long_due_items, now=now, months=settings['months_unpaid_to_cancel'])
    canceled_date_policy = partial(
        subscription_canceled_date, assume_deleted_cancelled=settings['assume_deleted_cancelled'])

    try:
        invoices = []
        rows_by_invoice = group_by(rows, 'invoice_number')
        for invoice_number in sorted(rows_by_invoice):
            items = rows_by_invoice[invoice_number]
            if not any(row.get('subscription_id') for row in items):
                logger.debug("Invoice %s lost all subscription links, skipping", invoice_number)
                continue
            first = items[0]
            invoice = build_invoice(
                invoice_number, items,
                first.get('invoice_posted_date'), first.get('invoice_due_date'), first.get('account_currency'),
                item_adjustments=grouped['item_adjustments'].get(invoice_number),
                invoice_adjustments=grouped['invoice_adjustments'].get(invoice_number),
                credit_adjustments=grouped['credit_adjustments'].get(invoice_number),
                payments=grouped['payments'].get(invoice_number),
                refunds=grouped['refunds'].get(invoice_number),
                plans_by_id=plans_by_id,
                overdue_policy=overdue_policy,
                canceled_date_policy=canceled_date_policy,
            )
            if invoice['line_items']:
                invoices.append(invoice)

        standalone = [
            credit for credit in grouped['standalone_credits'].get(account_id, [])
            if str(credit.get('type') or '').lower() == 'decrease'
        ]
        if standalone:
            invoices = attach_standalone_refunds(standalone, invoices)

        invoices = remove_annulling_invoices(invoices)
        invoices = remove_nonsense_invoices(invoices)
        invoices = shift_dates(invoices)
        validate_invoices(invoices)
    except Exception as err:
        raise AccountReconciliationError(account_id) from err
    return invoices


def reconcile_snapshot(snapshot, settings=None, now=None):
    """
    Reconcile every account of a billing-export snapshot.

    Snapshot keys: invoice_items, payments, refunds, item_adjustments,
    invoice_adjustments, credit_adjustments, plans. A failing account is
    recorded in ``errors`` and the others carry on.
    """
    settings = {**DEFAULT_SETTINGS, **(settings or {})}
    rows_by_account = filter_and_group_items(
        snapshot.get('invoice_items'),
        include_accounts=settings['include_accounts'],
        exclude_accounts=settings['exclude_accounts'],
        exclude_invoices=settings['exclude_invoices'],
    )
    grouped = group_snapshot(snapshot, settings['exclude_invoices'])
    plans_by_id = plan_lookup(snapshot.get('plans'))

    accounts, errors = {}, []
    for account_id in sorted(rows_by_account):
        try:
            accounts[account_id] = reconcile_account(
                account_id, rows_by_account[account_id], grouped, plans_by_id, settings, now)
        except ReconciliationError as err:
            logger.error("%s", err.chain_message())
            errors.append({'account_id': account_id, **err.to_dict()})

    invoices = [invoice for account_invoices in accounts.values() for invoice in account_invoices]
    summary = {
        'accounts': len(rows_by_account),
        'reconciled': len(accounts),
        'failed': len(errors),
        'invoices': len(invoices),
        'line_items': sum(len(invoice['line_items']) for invoice in invoices),
        'total_in_cents': sum(line_items_total(invoice) for invoice in invoices),
    }
    logger.info("Reconciled %d/%d accounts, %d invoices", summary['reconciled'], summary['accounts'],
                summary['invoices'])
    return {'accounts': accounts, 'errors': errors, 'summary': summary}
