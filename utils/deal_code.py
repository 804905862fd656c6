"""Deal code generation and input validation helpers"""

import re
import secrets
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional

from config import Config
from utils.exceptions import ValidationError

# No 0/O or 1/I, so codes survive being read aloud or retyped
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEAL_CODE_PATTERN = re.compile(r"^[A-Z]{2,5}-[A-Z0-9]{4,8}$")
WALLET_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
AMOUNT_QUANTUM = Decimal("0.000001")


def generate_deal_code(prefix: Optional[str] = None, length: Optional[int] = None) -> str:
    prefix = (prefix or Config.DEAL_CODE_PREFIX).upper()
    length = length or Config.DEAL_CODE_LENGTH
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def normalize_deal_code(raw: Optional[str]) -> str:
    """Trim and upper-case a user-supplied code; raise ValidationError if malformed"""
    code = (raw or "").strip().upper()
    if not DEAL_CODE_PATTERN.match(code):
        raise ValidationError(f"Invalid deal code: {raw!r}")
    return code


def parse_amount(raw, minimum: Optional[Decimal] = None, maximum: Optional[Decimal] = None) -> Decimal:
    """Parse a deal amount, quantised to 6 decimal places and bounded"""
    minimum = Config.DEAL_MIN_AMOUNT if minimum is None else minimum
    maximum = Config.DEAL_MAX_AMOUNT if maximum is None else maximum
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {raw!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {raw!r}")

    amount = amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
    if amount < minimum or amount > maximum:
        raise ValidationError(f"Amount must be between {minimum} and {maximum}")
    return amount


def normalize_wallet(raw: Optional[str]) -> str:
    address = (raw or "").strip()
    if not WALLET_PATTERN.match(address):
        raise ValidationError("Invalid wallet address, expected 0x followed by 40 hex characters")
    return address.lower()
