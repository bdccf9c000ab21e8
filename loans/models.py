from dateutil.relativedelta import relativedelta
from django.db import models


class Loan(models.Model):
    borrower_id = models.PositiveBigIntegerField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    interest_rate = models.DecimalField(max_digits=5, decimal_places=4)
    weekly_payment = models.DecimalField(max_digits=18, decimal_places=6)
    remaining_balance = models.DecimalField(max_digits=18, decimal_places=6)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "loans"

    def __str__(self) -> str:
        return f"Loan {self.pk}"


class Repayment(models.Model):
    loan = models.ForeignKey(Loan, related_name="repayments", on_delete=models.PROTECT)
    week_no = models.PositiveIntegerField()
    paid = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "repayments"
        ordering = ["week_no"]
        unique_together = ("loan", "week_no")

    @property
    def due_date(self):
        # Repayments are created together with their loan, so this tracks
        # the loan's origination time.
        return (self.created_at + relativedelta(weeks=self.week_no)).date()

    def __str__(self) -> str:
        return f"Repayment {self.week_no} for Loan {self.loan_id}"
