import threading
from decimal import Decimal
from unittest import mock

from django.core.cache import caches
from django.db import DatabaseError, connections, transaction
from django.test import TestCase, TransactionTestCase, skipUnlessDBFeature
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from .cache import BalanceCache, delinquent_key, outstanding_key
from .exceptions import InvalidInput, LoanNotFound, NoPendingRepayment, TransactionFailed
from .models import Loan, Repayment
from .services import (
    SCHEDULE_WEEKS,
    apply_payment,
    compute_terms,
    get_outstanding,
    is_delinquent,
    originate_loan,
)


class CacheMixin:
    def setUp(self):
        super().setUp()
        self.backend = caches["default"]
        self.backend.clear()
        self.balance_cache = BalanceCache(self.backend, ttl=600)

    def settle_weeks(self, loan, through_week):
        Repayment.objects.filter(loan=loan, week_no__lte=through_week).update(paid=True)
        remaining = loan.weekly_payment * (SCHEDULE_WEEKS - through_week)
        Loan.objects.filter(pk=loan.pk).update(remaining_balance=remaining)
        loan.refresh_from_db()


class OriginationTest(CacheMixin, TestCase):
    def test_creates_full_unpaid_schedule(self):
        loan = originate_loan(borrower_id=7, amount=Decimal("1000"))
        loan.refresh_from_db()

        self.assertEqual(loan.borrower_id, 7)
        self.assertEqual(loan.interest_rate, Decimal("0.1000"))
        self.assertEqual(loan.weekly_payment, Decimal("22.000000"))
        self.assertEqual(loan.remaining_balance, Decimal("1100.000000"))

        weeks = list(loan.repayments.values_list("week_no", "paid"))
        self.assertEqual(weeks, [(week, False) for week in range(1, 51)])

    def test_installments_sum_to_total_due(self):
        weekly_payment, total_due = compute_terms(Decimal("1234.57"))
        self.assertEqual(total_due, Decimal("1358.027"))
        self.assertEqual(weekly_payment * SCHEDULE_WEEKS, total_due)

    def test_does_not_touch_cache(self):
        loan = originate_loan(borrower_id=1, amount=Decimal("500.00"))
        self.assertIsNone(self.backend.get(outstanding_key(loan.pk)))
        self.assertIsNone(self.backend.get(delinquent_key(loan.pk)))

    def test_rejects_invalid_input_without_writes(self):
        cases = [
            (1, Decimal("0")),
            (1, Decimal("-10")),
            (1, "abc"),
            (1, "10.005"),
            (1, 10.5),
            (0, Decimal("100")),
            ("7", Decimal("100")),
            (True, Decimal("100")),
            (2**63, Decimal("100")),
            (2**64, Decimal("100")),
        ]
        for borrower_id, amount in cases:
            with self.subTest(borrower_id=borrower_id, amount=amount):
                with self.assertRaises(InvalidInput):
                    originate_loan(borrower_id=borrower_id, amount=amount)
        self.assertEqual(Loan.objects.count(), 0)
        self.assertEqual(Repayment.objects.count(), 0)

    def test_schedule_failure_rolls_back_loan(self):
        with mock.patch.object(
            Repayment.objects, "bulk_create", side_effect=DatabaseError("disk full")
        ):
            with self.assertLogs("loans.services", level="ERROR"):
                with self.assertRaises(TransactionFailed):
                    originate_loan(borrower_id=1, amount=Decimal("1000"))

        self.assertEqual(Loan.objects.count(), 0)
        self.assertEqual(Repayment.objects.count(), 0)

    def test_due_dates_are_weekly(self):
        loan = originate_loan(borrower_id=1, amount=Decimal("1000"))
        first, second = loan.repayments.all()[:2]
        self.assertEqual((second.due_date - first.due_date).days, 7)
        self.assertEqual((first.due_date - first.created_at.date()).days, 7)


class PaymentTest(CacheMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.loan = originate_loan(borrower_id=3, amount=Decimal("1000"))

    def test_first_payment_retires_week_one(self):
        result = apply_payment(self.loan.pk, balance_cache=self.balance_cache)

        self.assertEqual(result.week_no, 1)
        self.assertEqual(result.remaining_balance, Decimal("1078"))
        self.loan.refresh_from_db()
        self.assertEqual(self.loan.remaining_balance, Decimal("1078.000000"))
        self.assertTrue(self.loan.repayments.get(week_no=1).paid)
        self.assertEqual(self.loan.repayments.filter(paid=True).count(), 1)
        self.assertEqual(self.backend.get(outstanding_key(self.loan.pk)), "1078.000000")

    def test_weeks_are_retired_in_order(self):
        weeks = [
            apply_payment(self.loan.pk, balance_cache=self.balance_cache).week_no
            for _ in range(3)
        ]
        self.assertEqual(weeks, [1, 2, 3])
        paid = list(self.loan.repayments.filter(paid=True).values_list("week_no", flat=True))
        self.assertEqual(paid, [1, 2, 3])

    def test_full_schedule_reaches_zero(self):
        for _ in range(SCHEDULE_WEEKS):
            result = apply_payment(self.loan.pk, balance_cache=self.balance_cache)

        self.assertEqual(result.week_no, 50)
        self.assertEqual(result.remaining_balance, Decimal("0"))
        self.assertFalse(self.loan.repayments.filter(paid=False).exists())

        with self.assertRaises(NoPendingRepayment):
            apply_payment(self.loan.pk, balance_cache=self.balance_cache)
        self.loan.refresh_from_db()
        self.assertEqual(self.loan.remaining_balance, Decimal("0"))

    def test_balance_never_goes_negative(self):
        Loan.objects.filter(pk=self.loan.pk).update(remaining_balance=Decimal("5"))
        result = apply_payment(self.loan.pk, balance_cache=self.balance_cache)
        self.assertEqual(result.remaining_balance, Decimal("0"))

    def test_missing_loan(self):
        with self.assertRaises(LoanNotFound):
            apply_payment(999999, balance_cache=self.balance_cache)

    def test_invalidates_delinquency_entry(self):
        self.balance_cache.set_delinquent(self.loan.pk, True)
        apply_payment(self.loan.pk, balance_cache=self.balance_cache)
        self.assertIsNone(self.backend.get(delinquent_key(self.loan.pk)))

    def test_failure_rolls_back_whole_payment(self):
        self.balance_cache.set_outstanding(self.loan.pk, Decimal("1100"))
        with mock.patch.object(Loan, "save", side_effect=DatabaseError("connection lost")):
            with self.assertLogs("loans.services", level="ERROR"):
                with self.assertRaises(TransactionFailed) as ctx:
                    apply_payment(self.loan.pk, balance_cache=self.balance_cache)

        self.assertNotIn("connection lost", str(ctx.exception.detail))
        self.loan.refresh_from_db()
        self.assertEqual(self.loan.remaining_balance, Decimal("1100"))
        self.assertFalse(self.loan.repayments.filter(paid=True).exists())
        self.assertEqual(self.backend.get(outstanding_key(self.loan.pk)), "1100.000000")

    def test_cache_outage_does_not_fail_committed_payment(self):
        backend = mock.Mock()
        backend.set.side_effect = ConnectionError("cache down")
        backend.delete.side_effect = ConnectionError("cache down")
        with self.assertLogs("loans.cache", level="WARNING"):
            result = apply_payment(self.loan.pk, balance_cache=BalanceCache(backend))
        self.assertEqual(result.remaining_balance, Decimal("1078"))

    def test_writes_use_configured_ttl(self):
        backend = mock.Mock()
        apply_payment(self.loan.pk, balance_cache=BalanceCache(backend, ttl=120))
        backend.set.assert_called_once_with(
            outstanding_key(self.loan.pk), "1078.000000", timeout=120
        )
        backend.delete.assert_called_once_with(delinquent_key(self.loan.pk))


class StatusQueryTest(CacheMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.loan = originate_loan(borrower_id=4, amount=Decimal("1000"))

    def test_outstanding_populates_cache_on_miss(self):
        balance = get_outstanding(self.loan.pk, balance_cache=self.balance_cache)
        self.assertEqual(balance, Decimal("1100"))
        self.assertEqual(self.backend.get(outstanding_key(self.loan.pk)), "1100.000000")

    def test_outstanding_served_from_cache_on_hit(self):
        self.backend.set(outstanding_key(self.loan.pk), "42.500000")
        balance = get_outstanding(self.loan.pk, balance_cache=self.balance_cache)
        self.assertEqual(balance, Decimal("42.5"))

    def test_outstanding_reflects_payment_within_ttl(self):
        get_outstanding(self.loan.pk, balance_cache=self.balance_cache)
        apply_payment(self.loan.pk, balance_cache=self.balance_cache)
        balance = get_outstanding(self.loan.pk, balance_cache=self.balance_cache)
        self.assertEqual(balance, Decimal("1078"))

    def test_miss_does_not_replace_newer_balance(self):
        backend = mock.Mock()
        backend.get.return_value = None
        get_outstanding(self.loan.pk, balance_cache=BalanceCache(backend, ttl=90))
        backend.add.assert_called_once_with(
            outstanding_key(self.loan.pk), "1100.000000", timeout=90
        )
        backend.set.assert_not_called()

    def test_late_miss_keeps_payment_balance(self):
        self.balance_cache.set_outstanding(self.loan.pk, Decimal("1078"))
        self.balance_cache.populate_outstanding(self.loan.pk, Decimal("1100"))
        self.assertEqual(self.backend.get(outstanding_key(self.loan.pk)), "1078.000000")

    def test_outstanding_missing_loan(self):
        with self.assertRaises(LoanNotFound):
            get_outstanding(999999, balance_cache=self.balance_cache)
        self.assertIsNone(self.backend.get(outstanding_key(999999)))

    def test_malformed_entry_falls_back_to_store(self):
        self.backend.set(outstanding_key(self.loan.pk), "not-a-number")
        with self.assertLogs("loans.cache", level="WARNING"):
            balance = get_outstanding(self.loan.pk, balance_cache=self.balance_cache)
        self.assertEqual(balance, Decimal("1100"))

    def test_unreachable_cache_falls_back_to_store(self):
        backend = mock.Mock()
        backend.get.side_effect = ConnectionError("cache down")
        backend.add.side_effect = ConnectionError("cache down")
        with self.assertLogs("loans.cache", level="WARNING"):
            balance = get_outstanding(self.loan.pk, balance_cache=BalanceCache(backend))
        self.assertEqual(balance, Decimal("1100"))

    def test_fresh_loan_is_delinquent(self):
        self.assertTrue(is_delinquent(self.loan.pk, balance_cache=self.balance_cache))
        self.assertEqual(self.backend.get(delinquent_key(self.loan.pk)), "true")

    def test_two_unpaid_weeks_is_delinquent(self):
        self.settle_weeks(self.loan, 48)
        self.assertTrue(is_delinquent(self.loan.pk, balance_cache=self.balance_cache))

    def test_single_unpaid_week_is_not_delinquent(self):
        self.settle_weeks(self.loan, 49)
        self.assertFalse(is_delinquent(self.loan.pk, balance_cache=self.balance_cache))
        self.assertEqual(self.backend.get(delinquent_key(self.loan.pk)), "false")

    def test_repaid_loan_is_not_delinquent(self):
        self.settle_weeks(self.loan, 50)
        self.assertFalse(is_delinquent(self.loan.pk, balance_cache=self.balance_cache))

    def test_payment_forces_delinquency_recompute(self):
        self.settle_weeks(self.loan, 48)
        self.assertTrue(is_delinquent(self.loan.pk, balance_cache=self.balance_cache))

        apply_payment(self.loan.pk, balance_cache=self.balance_cache)

        self.assertFalse(is_delinquent(self.loan.pk, balance_cache=self.balance_cache))

    def test_delinquency_served_from_cache_on_hit(self):
        self.backend.set(delinquent_key(self.loan.pk), "false")
        self.assertFalse(is_delinquent(self.loan.pk, balance_cache=self.balance_cache))

    def test_delinquency_missing_loan(self):
        with self.assertRaises(LoanNotFound):
            is_delinquent(999999, balance_cache=self.balance_cache)

    def test_reads_have_no_side_effects_on_store(self):
        for _ in range(3):
            get_outstanding(self.loan.pk, balance_cache=self.balance_cache)
            is_delinquent(self.loan.pk, balance_cache=self.balance_cache)
        self.loan.refresh_from_db()
        self.assertEqual(self.loan.remaining_balance, Decimal("1100"))
        self.assertFalse(self.loan.repayments.filter(paid=True).exists())


class LoanAPITest(CacheMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def create_loan(self, amount="1000"):
        response = self.client.post(
            reverse("loan-create"),
            data={"borrower_id": 11, "amount": amount},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        return response.data

    def test_create_loan(self):
        data = self.create_loan()
        self.assertEqual(data["borrower_id"], 11)
        self.assertEqual(data["amount"], "1000.00")
        self.assertEqual(data["weekly_payment"], "22.000000")
        self.assertEqual(data["remaining_balance"], "1100.000000")
        self.assertEqual(Repayment.objects.filter(loan_id=data["id"]).count(), 50)

    def test_create_loan_invalid_input(self):
        payloads = [
            {"borrower_id": 11},
            {"amount": "100"},
            {"borrower_id": 11, "amount": "-1"},
            {"borrower_id": 11, "amount": "0"},
            {"borrower_id": "x", "amount": "100"},
            {"borrower_id": 2**63, "amount": "100"},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                response = self.client.post(reverse("loan-create"), data=payload, format="json")
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(Loan.objects.count(), 0)

    def test_loan_detail_includes_schedule(self):
        loan_id = self.create_loan()["id"]
        response = self.client.get(reverse("loan-detail", args=[loan_id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        schedule = response.data["schedule"]
        self.assertEqual(len(schedule), 50)
        self.assertEqual(schedule[0]["week_no"], 1)
        self.assertFalse(schedule[0]["paid"])
        self.assertIn("due_date", schedule[0])

    def test_loan_detail_missing(self):
        response = self.client.get(reverse("loan-detail", args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_make_payment(self):
        loan_id = self.create_loan()["id"]
        response = self.client.post(reverse("loan-payment", args=[loan_id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            response.data,
            {"message": "Payment successful", "remaining_balance": "1078.000000"},
        )

        response = self.client.get(reverse("loan-outstanding", args=[loan_id]))
        self.assertEqual(response.data, {"remaining_balance": "1078.000000"})

    def test_payment_on_missing_loan(self):
        response = self.client.post(reverse("loan-payment", args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_payment_on_repaid_loan(self):
        loan_id = self.create_loan()["id"]
        Repayment.objects.filter(loan_id=loan_id).update(paid=True)
        response = self.client.post(reverse("loan-payment", args=[loan_id]))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(str(response.data["detail"]), "No pending repayments.")

    def test_payment_transaction_failure_is_generic(self):
        loan_id = self.create_loan()["id"]
        with mock.patch.object(Loan, "save", side_effect=DatabaseError("relation locked")):
            with self.assertLogs("loans.services", level="ERROR"):
                response = self.client.post(reverse("loan-payment", args=[loan_id]))
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(str(response.data["detail"]), "Transaction failed.")

    def test_outstanding(self):
        loan_id = self.create_loan()["id"]
        miss = self.client.get(reverse("loan-outstanding", args=[loan_id]))
        hit = self.client.get(reverse("loan-outstanding", args=[loan_id]))
        self.assertEqual(miss.data, {"remaining_balance": "1100.000000"})
        self.assertEqual(hit.data, miss.data)

    def test_outstanding_missing_loan(self):
        response = self.client.get(reverse("loan-outstanding", args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_delinquent(self):
        loan_id = self.create_loan()["id"]
        response = self.client.get(reverse("loan-delinquent", args=[loan_id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"is_delinquent": True})

    def test_delinquent_missing_loan(self):
        response = self.client.get(reverse("loan-delinquent", args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class ConcurrentPaymentTest(CacheMixin, TransactionTestCase):
    def pay_concurrently(self, loan_id, callers):
        barrier = threading.Barrier(callers)
        outcomes = []
        lock = threading.Lock()

        def worker():
            try:
                barrier.wait()
                outcome = apply_payment(loan_id, balance_cache=self.balance_cache)
            except (NoPendingRepayment, TransactionFailed) as exc:
                outcome = exc
            finally:
                connections.close_all()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_never_pays_more_than_pending(self):
        loan = originate_loan(borrower_id=5, amount=Decimal("1000"))
        self.settle_weeks(loan, 47)

        outcomes = self.pay_concurrently(loan.pk, callers=8)

        paid = [o for o in outcomes if not isinstance(o, Exception)]
        self.assertEqual(len(outcomes), 8)
        self.assertEqual(len(paid), 3)
        rejected = [o for o in outcomes if isinstance(o, Exception)]
        self.assertTrue(all(isinstance(o, NoPendingRepayment) for o in rejected))
        self.assertEqual(
            Repayment.objects.filter(loan=loan, paid=True).count(), 47 + len(paid)
        )
        loan.refresh_from_db()
        self.assertEqual(
            loan.remaining_balance, loan.weekly_payment * (3 - len(paid))
        )

    def test_weeks_retired_in_ascending_order(self):
        loan = originate_loan(borrower_id=6, amount=Decimal("1000"))

        outcomes = self.pay_concurrently(loan.pk, callers=6)

        paid = [o for o in outcomes if not isinstance(o, Exception)]
        self.assertEqual(len(paid), 6)
        by_balance = sorted(paid, key=lambda r: r.remaining_balance, reverse=True)
        self.assertEqual(
            [r.week_no for r in by_balance], list(range(1, len(paid) + 1))
        )
        paid_weeks = list(
            Repayment.objects.filter(loan=loan, paid=True).values_list("week_no", flat=True)
        )
        self.assertEqual(paid_weeks, list(range(1, len(paid) + 1)))
        loan.refresh_from_db()
        self.assertEqual(
            loan.remaining_balance, Decimal("1100") - loan.weekly_payment * len(paid)
        )

    def test_payments_on_separate_loans_all_apply(self):
        first = originate_loan(borrower_id=7, amount=Decimal("1000"))
        second = originate_loan(borrower_id=8, amount=Decimal("2000"))
        barrier = threading.Barrier(6)
        outcomes = []
        lock = threading.Lock()

        def worker(loan_id):
            try:
                barrier.wait()
                outcome = apply_payment(loan_id, balance_cache=self.balance_cache)
            finally:
                connections.close_all()
            with lock:
                outcomes.append(outcome)

        threads = [
            threading.Thread(target=worker, args=(loan.pk,))
            for loan in (first, second, first, second, first, second)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(outcomes), 6)
        for loan, total in ((first, Decimal("1100")), (second, Decimal("2200"))):
            weeks = sorted(o.week_no for o in outcomes if o.loan_id == loan.pk)
            self.assertEqual(weeks, [1, 2, 3])
            loan.refresh_from_db()
            self.assertEqual(loan.remaining_balance, total - loan.weekly_payment * 3)

    @skipUnlessDBFeature("has_select_for_update")
    def test_lock_on_one_loan_does_not_block_another(self):
        held = originate_loan(borrower_id=9, amount=Decimal("1000"))
        other = originate_loan(borrower_id=10, amount=Decimal("1000"))
        locked = threading.Event()
        release = threading.Event()

        def hold_lock():
            try:
                with transaction.atomic():
                    Loan.objects.select_for_update().get(pk=held.pk)
                    locked.set()
                    release.wait(10)
            finally:
                connections.close_all()

        holder = threading.Thread(target=hold_lock)
        holder.start()
        try:
            self.assertTrue(locked.wait(10))
            result = apply_payment(other.pk, balance_cache=self.balance_cache)
        finally:
            release.set()
            holder.join()

        self.assertEqual(result.week_no, 1)
        self.assertFalse(Repayment.objects.filter(loan=held, paid=True).exists())
