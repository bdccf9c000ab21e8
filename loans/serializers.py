from decimal import Decimal

from rest_framework import serializers

from .models import Loan, Repayment
from .services import MAX_BORROWER_ID


class LoanCreateSerializer(serializers.Serializer):
    borrower_id = serializers.IntegerField(min_value=1, max_value=MAX_BORROWER_ID)
    amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal("0.01")
    )


class RepaymentSerializer(serializers.ModelSerializer):
    due_date = serializers.DateField(read_only=True)

    class Meta:
        model = Repayment
        fields = ["week_no", "due_date", "paid"]


class LoanSerializer(serializers.ModelSerializer):
    class Meta:
        model = Loan
        fields = [
            "id",
            "borrower_id",
            "amount",
            "interest_rate",
            "weekly_payment",
            "remaining_balance",
            "created_at",
        ]


class LoanDetailSerializer(LoanSerializer):
    schedule = RepaymentSerializer(source="repayments", many=True, read_only=True)

    class Meta(LoanSerializer.Meta):
        fields = LoanSerializer.Meta.fields + ["schedule"]
