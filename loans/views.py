from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .cache import encode_balance
from .exceptions import LoanNotFound
from .models import Loan
from .serializers import LoanCreateSerializer, LoanDetailSerializer, LoanSerializer
from .services import (
    apply_payment,
    get_outstanding,
    is_delinquent,
    originate_loan,
)


class LoanCreateView(generics.CreateAPIView):
    serializer_class = LoanCreateSerializer

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        loan = originate_loan(**serializer.validated_data)
        return Response(LoanSerializer(loan).data, status=status.HTTP_201_CREATED)


class LoanDetailView(generics.RetrieveAPIView):
    serializer_class = LoanDetailSerializer

    def get_queryset(self):
        return Loan.objects.prefetch_related("repayments")

    def get_object(self):
        try:
            return self.get_queryset().get(pk=self.kwargs["loan_id"])
        except Loan.DoesNotExist as exc:
            raise LoanNotFound() from exc


class LoanPaymentView(APIView):
    def post(self, request, loan_id: int, *args, **kwargs):
        result = apply_payment(loan_id)
        return Response(
            {
                "message": "Payment successful",
                "remaining_balance": encode_balance(result.remaining_balance),
            },
            status=status.HTTP_200_OK,
        )


class LoanOutstandingView(APIView):
    def get(self, request, loan_id: int, *args, **kwargs):
        balance = get_outstanding(loan_id)
        return Response({"remaining_balance": encode_balance(balance)})


class LoanDelinquencyView(APIView):
    def get(self, request, loan_id: int, *args, **kwargs):
        return Response({"is_delinquent": is_delinquent(loan_id)})
