from rest_framework import status
from rest_framework.exceptions import APIException


class LedgerError(APIException):
    """Base for every failure a ledger operation reports to its caller."""


class InvalidInput(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input."
    default_code = "invalid_input"


class LoanNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Loan not found."
    default_code = "not_found"


class NoPendingRepayment(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "No pending repayments."
    default_code = "no_pending_repayment"


class TransactionFailed(LedgerError):
    """The unit of work was rolled back; nothing was applied.

    The detail never carries the underlying database error.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Transaction failed."
    default_code = "transaction_failed"
