"""
Pending-refund resolver.

Refunds booked as standalone credit-balance adjustments carry no invoice link.
They are attached heuristically: invoices are walked newest first and each one
takes the first pending credit created on or after its posted date, splitting
the invoice or the credit when the amounts differ.
"""
import copy
import logging
from decimal import Decimal

from engine import REFUND, add_payments, line_items_total, parse_datetime, to_cents, to_decimal
from errors import UnmatchedCreditError, UnsupportedCaseError

logger = logging.getLogger(__name__)


def attach_standalone_refunds(pending_credits, invoices):
    """
    Attach every standalone refund credit to an invoice of the account.

    After a split the invoice keeping the non-refunded remainder is matched
    again; the fully refunded split joins the result as is. Returns the
    invoices sorted ascending by external id; a credit that finds no invoice
    is fatal.
    """
    pending = list(pending_credits or [])
    working = sorted(invoices, key=lambda invoice: invoice['external_id'], reverse=True)
    splits = []

    index = 0
    while index < len(working):
        pending, split = attach_refund_from_credit(pending, working[index])
        if split is None:
            index += 1
        else:
            splits.append(split)

    working.extend(splits)
    working.sort(key=lambda invoice: invoice['external_id'])
    if pending:
        numbers = ', '.join(str(credit.get('refund_number')) for credit in pending)
        raise UnmatchedCreditError(
            f"Pending extra-invoice refunds: {numbers}",
            credits=[{
                'id': credit.get('id'),
                'refund_number': credit.get('refund_number'),
                'amount': str(to_decimal(credit.get('amount'))),
            } for credit in pending],
        )
    return working


def attach_refund_from_credit(credits, invoice):
    """
    Try to refund ``invoice`` from one of ``credits``.

    Returns (remaining credits, split invoice or None).
    """
    if not credits:
        return credits, None
    invoice_total = line_items_total(invoice)
    if invoice_total <= 0:
        return credits, None

    found = None
    for credit in credits:
        created = parse_datetime(credit.get('created_date'))
        if created is not None and created >= invoice['date']:
            found = credit
            break
    if found is None:
        return credits, None

    remaining = [credit for credit in credits if credit is not found]
    refunded = to_cents(found.get('amount'))

    if refunded == invoice_total:
        logger.debug("Refund %s attached to invoice %s", found.get('refund_number'), invoice['external_id'])
        add_payments([found], invoice, REFUND)
        return remaining, None

    if refunded < invoice_total:
        split = split_invoice(invoice, refunded, found.get('refund_number'))
        add_payments([found], split, REFUND)
        return remaining, split

    remaining.append(split_credit(invoice, invoice_total, found))
    return remaining, None


def split_invoice(invoice, refunded, suffix):
    """
    Carve ``refunded`` cents out of a single-line invoice into a new invoice.

    The original keeps the remainder and its transactions. The copy carries
    exactly the refunded amount, no transactions, and has its external ids
    suffixed with ``-<suffix>``. Quantity is left as is on both: they bill the
    same seats over the same period.
    """
    if len(invoice['line_items']) != 1:
        raise UnsupportedCaseError(
            f"Not yet implemented: multiple items in invoice {invoice['external_id']} to be split!",
            invoice_number=invoice['external_id'], line_items=len(invoice['line_items']))

    split = copy.deepcopy(invoice)
    invoice['line_items'][0]['amount_in_cents'] -= refunded
    split['line_items'][0]['amount_in_cents'] = refunded
    # payments stay on the original only
    split['transactions'] = []

    tag = f"-{suffix}"
    split['external_id'] += tag
    for item in split['line_items']:
        item['external_id'] += tag

    logger.debug("Invoice %s split, %s cents moved to %s", invoice['external_id'], refunded, split['external_id'])
    return split


def split_credit(invoice, invoice_total, credit):
    """
    Refund ``invoice`` in full from part of ``credit``; return the residual credit.

    The part used now gets refund number suffix ``a``, the residual ``b``.
    """
    number = credit.get('refund_number')
    used = Decimal(invoice_total) / 100
    refund_now = dict(credit, refund_number=f"{number}a", amount=used)
    residual = dict(credit, refund_number=f"{number}b", amount=to_decimal(credit.get('amount')) - used)
    add_payments([refund_now], invoice, REFUND)
    logger.debug("Credit %s split, %s refunded to %s", number, used, invoice['external_id'])
    return residual
