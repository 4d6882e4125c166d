"""
Utility functions for the bank token service.

Includes the input normalizer (phone numbers, monetary amounts, ledger
addresses), webhook signature checks and small concurrency helpers.
"""

import hashlib
import hmac
import logging
import re
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Iterator, Optional, Union

from web3 import Web3

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_AMOUNT_PATTERN = re.compile(r"^-?\d+([.,]\d+)?$")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
PRECISE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: PLUGGY_WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


# =============================================================================
# Normalizer
# =============================================================================

def normalize_phone_number(raw: str, country_code: str = "55") -> str:
    """
    Canonicalize a phone number into an E.164-like string.

    All non-digits are stripped. Domestic numbers (10 or 11 digits) get the
    default country code; everything else is kept as typed. Never fails:
    malformed input still yields a best-effort "+<digits>" string.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) in (10, 11):
        digits = country_code + digits
    return "+" + digits


def parse_amount(text: str) -> Optional[Decimal]:
    """
    Parse a user-typed amount ("10.50" or "10,50").

    Returns None for anything that is not a finite, strictly positive number.
    """
    if text is None:
        return None
    candidate = text.strip()
    if not _AMOUNT_PATTERN.match(candidate):
        return None
    try:
        amount = Decimal(candidate.replace(",", "."))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def to_minor_units(value: Union[Decimal, float, int]) -> int:
    """Convert a currency amount to integer cents, flooring fractions."""
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return int((amount * 100).to_integral_value(rounding=ROUND_FLOOR))


def format_minor_units(minor: int) -> str:
    """Render cents as a BRL amount, e.g. 1050 -> "R$ 10.50"."""
    return f"R$ {Decimal(minor) / 100:.2f}"


def is_valid_address(value: Optional[str]) -> bool:
    """True if value is a well-formed 20-byte hex ledger address."""
    if not value or not isinstance(value, str):
        return False
    return Web3.is_address(value)


def mask_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


# =============================================================================
# Time helpers
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime, precise: bool = False) -> str:
    """
    ISO-8601 UTC string with Z suffix, as stored in the database.

    precise=True keeps microseconds; strings of the same precision sort
    chronologically.
    """
    fmt = PRECISE_TIMESTAMP_FORMAT if precise else TIMESTAMP_FORMAT
    return moment.astimezone(timezone.utc).strftime(fmt)


# =============================================================================
# Concurrency
# =============================================================================

class KeyedLock:
    """
    Per-key mutual exclusion inside one process.

    Used to serialize work on a single session or token while leaving
    unrelated keys fully concurrent.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)
        self._waiters = defaultdict(int)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks[key]
            self._waiters[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]
