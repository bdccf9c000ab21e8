from django.urls import path

from .views import (
    LoanCreateView,
    LoanDelinquencyView,
    LoanDetailView,
    LoanOutstandingView,
    LoanPaymentView,
)

urlpatterns = [
    path("loans", LoanCreateView.as_view(), name="loan-create"),
    path("loans/<int:loan_id>", LoanDetailView.as_view(), name="loan-detail"),
    path(
        "loans/<int:loan_id>/payments",
        LoanPaymentView.as_view(),
        name="loan-payment",
    ),
    path(
        "loans/<int:loan_id>/outstanding",
        LoanOutstandingView.as_view(),
        name="loan-outstanding",
    ),
    path(
        "loans/<int:loan_id>/delinquent",
        LoanDelinquencyView.as_view(),
        name="loan-delinquent",
    ),
]
