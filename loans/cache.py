"""Read-through projections of loan state kept in the Django cache.

Entries are disposable: the database is the source of truth and a missing,
expired or unreachable entry simply sends the caller back to it.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

DEFAULT_TTL = 600


def outstanding_key(loan_id: int) -> str:
    return f"loan:{loan_id}:outstanding"


def delinquent_key(loan_id: int) -> str:
    return f"loan:{loan_id}:delinquent"


def encode_balance(value: Decimal) -> str:
    return f"{Decimal(value):.6f}"


def decode_balance(raw: str) -> Decimal:
    return Decimal(raw)


def encode_flag(value: bool) -> str:
    return "true" if value else "false"


def decode_flag(raw: str) -> bool:
    if raw == "true":
        return True
    if raw == "false":
        return False
    raise ValueError(f"Unexpected delinquency flag {raw!r}")


class BalanceCache:
    def __init__(self, backend, ttl: int = DEFAULT_TTL):
        self.backend = backend
        self.ttl = ttl

    def _get(self, key: str) -> Optional[str]:
        try:
            return self.backend.get(key)
        except Exception:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            return None

    def _set(self, key: str, raw: str) -> None:
        try:
            self.backend.set(key, raw, timeout=self.ttl)
        except Exception:
            logger.warning("Cache write failed for %s", key, exc_info=True)

    def _add(self, key: str, raw: str) -> None:
        try:
            self.backend.add(key, raw, timeout=self.ttl)
        except Exception:
            logger.warning("Cache write failed for %s", key, exc_info=True)

    def _delete(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except Exception:
            logger.warning("Cache delete failed for %s", key, exc_info=True)

    def get_outstanding(self, loan_id: int) -> Optional[Decimal]:
        raw = self._get(outstanding_key(loan_id))
        if raw is None:
            return None
        try:
            return decode_balance(raw)
        except InvalidOperation:
            logger.warning("Discarding malformed balance entry for loan %s", loan_id)
            self._delete(outstanding_key(loan_id))
            return None

    def set_outstanding(self, loan_id: int, balance: Decimal) -> None:
        self._set(outstanding_key(loan_id), encode_balance(balance))

    def populate_outstanding(self, loan_id: int, balance: Decimal) -> None:
        """Fill a missing entry without replacing one a payment wrote meanwhile."""
        self._add(outstanding_key(loan_id), encode_balance(balance))

    def get_delinquent(self, loan_id: int) -> Optional[bool]:
        raw = self._get(delinquent_key(loan_id))
        if raw is None:
            return None
        try:
            return decode_flag(raw)
        except ValueError:
            logger.warning("Discarding malformed delinquency entry for loan %s", loan_id)
            self._delete(delinquent_key(loan_id))
            return None

    def set_delinquent(self, loan_id: int, delinquent: bool) -> None:
        self._set(delinquent_key(loan_id), encode_flag(delinquent))

    def populate_delinquent(self, loan_id: int, delinquent: bool) -> None:
        self._add(delinquent_key(loan_id), encode_flag(delinquent))

    def invalidate_delinquent(self, loan_id: int) -> None:
        self._delete(delinquent_key(loan_id))


def get_balance_cache() -> BalanceCache:
    alias = getattr(settings, "LOANS_CACHE_ALIAS", "default")
    ttl = getattr(settings, "LOANS_CACHE_TTL", DEFAULT_TTL)
    return BalanceCache(caches[alias], ttl=ttl)
