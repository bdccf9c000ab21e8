import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from django.db import DatabaseError, transaction

from .cache import BalanceCache, get_balance_cache
from .exceptions import InvalidInput, LoanNotFound, NoPendingRepayment, TransactionFailed
from .models import Loan, Repayment

logger = logging.getLogger(__name__)

INTEREST_RATE = Decimal("0.10")
SCHEDULE_WEEKS = 50
MAX_AMOUNT = Decimal("9999999999.99")
MAX_BORROWER_ID = 2**63 - 1


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def compute_terms(amount: Decimal) -> Tuple[Decimal, Decimal]:
    """Return ``(weekly_payment, total_due)`` for a principal.

    With a two-place principal both values are exact at six places, so the
    schedule's installments sum to the total without a rounding remainder.
    """

    total_due = amount * (1 + INTEREST_RATE)
    return total_due / SCHEDULE_WEEKS, total_due


def _validate_origination(borrower_id, amount) -> Decimal:
    if isinstance(borrower_id, bool) or not isinstance(borrower_id, int) or borrower_id <= 0:
        raise InvalidInput("borrower_id must be a positive integer.")
    if borrower_id > MAX_BORROWER_ID:
        raise InvalidInput("borrower_id is too large.")
    if isinstance(amount, bool) or not isinstance(amount, (int, Decimal, str)):
        raise InvalidInput("amount must be a decimal value.")
    try:
        amount = Decimal(amount)
    except ArithmeticError as exc:
        raise InvalidInput("amount must be a decimal value.") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidInput("amount must be positive.")
    if amount != quantize_money(amount):
        raise InvalidInput("amount must have at most two decimal places.")
    if amount > MAX_AMOUNT:
        raise InvalidInput("amount is too large.")
    return amount


def originate_loan(borrower_id: int, amount) -> Loan:
    """Create a loan and its full weekly repayment schedule in one unit of work."""

    amount = _validate_origination(borrower_id, amount)
    weekly_payment, total_due = compute_terms(amount)
    try:
        with transaction.atomic():
            loan = Loan.objects.create(
                borrower_id=borrower_id,
                amount=amount,
                interest_rate=INTEREST_RATE,
                weekly_payment=weekly_payment,
                remaining_balance=total_due,
            )
            Repayment.objects.bulk_create(
                Repayment(loan=loan, week_no=week_no, paid=False)
                for week_no in range(1, SCHEDULE_WEEKS + 1)
            )
    except DatabaseError as exc:
        logger.exception("Origination failed for borrower %s", borrower_id)
        raise TransactionFailed() from exc

    logger.info(
        "Originated loan %s for borrower %s: amount=%s weekly_payment=%s",
        loan.pk,
        borrower_id,
        amount,
        weekly_payment,
    )
    return loan


@dataclass(frozen=True)
class PaymentResult:
    loan_id: int
    week_no: int
    remaining_balance: Decimal


def apply_payment(loan_id: int, balance_cache: Optional[BalanceCache] = None) -> PaymentResult:
    """Retire the earliest unpaid week of a loan.

    Not idempotent: every successful call consumes one repayment. Concurrent
    calls for the same loan are serialized on the loan row lock, so weeks are
    always retired in ascending order.
    """

    balance_cache = balance_cache or get_balance_cache()
    try:
        with transaction.atomic():
            try:
                loan = Loan.objects.select_for_update().get(pk=loan_id)
            except Loan.DoesNotExist as exc:
                raise LoanNotFound() from exc

            repayment = (
                Repayment.objects.filter(loan=loan, paid=False)
                .order_by("week_no")
                .first()
            )
            if repayment is None:
                raise NoPendingRepayment()

            repayment.paid = True
            repayment.save(update_fields=["paid"])

            # never below zero, even if the stored terms were edited by hand
            loan.remaining_balance = max(
                loan.remaining_balance - loan.weekly_payment, Decimal("0")
            )
            loan.save(update_fields=["remaining_balance"])
    except (LoanNotFound, NoPendingRepayment):
        logger.info("Payment rejected for loan %s", loan_id)
        raise
    except DatabaseError as exc:
        logger.exception("Payment transaction failed for loan %s", loan_id)
        raise TransactionFailed() from exc

    balance_cache.set_outstanding(loan.pk, loan.remaining_balance)
    balance_cache.invalidate_delinquent(loan.pk)

    logger.info(
        "Applied week %s payment to loan %s, remaining balance %s",
        repayment.week_no,
        loan.pk,
        loan.remaining_balance,
    )
    return PaymentResult(
        loan_id=loan.pk,
        week_no=repayment.week_no,
        remaining_balance=loan.remaining_balance,
    )


def get_outstanding(loan_id: int, balance_cache: Optional[BalanceCache] = None) -> Decimal:
    """Outstanding balance, possibly stale by up to the cache TTL.

    A miss only fills an empty entry, so a balance read here just before a
    payment commits cannot replace the value that payment wrote.
    """

    balance_cache = balance_cache or get_balance_cache()
    cached = balance_cache.get_outstanding(loan_id)
    if cached is not None:
        return cached

    balance = (
        Loan.objects.filter(pk=loan_id)
        .values_list("remaining_balance", flat=True)
        .first()
    )
    if balance is None:
        raise LoanNotFound()

    balance_cache.populate_outstanding(loan_id, balance)
    return balance


def is_delinquent(loan_id: int, balance_cache: Optional[BalanceCache] = None) -> bool:
    """True when the two most recent pending weeks are both unpaid.

    A flag computed just before a payment commits can still land after that
    payment's invalidation; it then lives until the TTL expires.
    """

    balance_cache = balance_cache or get_balance_cache()
    cached = balance_cache.get_delinquent(loan_id)
    if cached is not None:
        return cached

    if not Loan.objects.filter(pk=loan_id).exists():
        raise LoanNotFound()

    latest_unpaid = (
        Repayment.objects.filter(loan_id=loan_id, paid=False)
        .order_by("-week_no")
        .values_list("week_no", flat=True)[:2]
    )
    delinquent = len(latest_unpaid) >= 2

    balance_cache.populate_delinquent(loan_id, delinquent)
    return delinquent
