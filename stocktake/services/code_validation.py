"""
Scanned line validation and aggregation.

Raw scans are normalized, checked as a whole (so every bad line is reported
at once), then collapsed into one canonical line per product code.
"""
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence, Tuple

from stocktake.core.errors import FieldError

CODE_MIN_LENGTH = 5
CODE_MAX_LENGTH = 20

# Letters, digits, space and _ # ° ' .
CODE_PATTERN = re.compile(r"^[\w #°'.]{%d,%d}$" % (CODE_MIN_LENGTH, CODE_MAX_LENGTH))

# Matches count_lines.quantity, Numeric(15, 3)
QUANTITY_SCALE = 3
QUANTITY_STEP = Decimal(1).scaleb(-QUANTITY_SCALE)
QUANTITY_LIMIT = Decimal(10) ** 12


@dataclass
class ScanLine:
    """One raw scan as submitted by the counting device."""
    code: Optional[str]
    quantity: Decimal
    is_manual: bool = False


@dataclass
class AggregatedLine:
    code: str
    quantity: Decimal
    is_manual: bool


def normalize_code(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_code(code: Optional[str]) -> Optional[str]:
    """Return an error message for an invalid normalized code, else None."""
    if not code:
        return "Product code is required."
    if not CODE_PATTERN.match(code):
        return (
            f"Product code \"{code}\" must be {CODE_MIN_LENGTH} to {CODE_MAX_LENGTH} "
            "characters of letters, digits, spaces, _, #, °, ' or ."
        )
    return None


def parse_quantity(value) -> Tuple[Optional[Decimal], Optional[str]]:
    """
    Convert a submitted quantity to a storable Decimal.

    Returns the quantity and None, or None and an error message. Stored
    quantities keep at most three decimals and stay below 10^12, so a value
    is never rounded on its way to the database.
    """
    try:
        quantity = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None, "Quantity must be a number."

    if not quantity.is_finite():
        return None, "Quantity must be a finite number."
    if quantity < 0:
        return None, "Quantity must be positive or zero."
    if quantity >= QUANTITY_LIMIT:
        return None, "Quantity must be lower than 1000000000000."
    if quantity != quantity.quantize(QUANTITY_STEP):
        return None, f"Quantity cannot have more than {QUANTITY_SCALE} decimal places."
    return quantity, None


def validate_lines(lines: Sequence[ScanLine]) -> Tuple[List[ScanLine], List[FieldError]]:
    """
    Normalize every line and collect field-indexed errors.

    Returns the normalized lines and the errors; callers reject the whole
    request when any error is present.
    """
    errors: List[FieldError] = []
    normalized: List[ScanLine] = []

    if not lines:
        errors.append(FieldError(field="items", message="At least one line is required."))
        return normalized, errors

    totals: Dict[str, Decimal] = {}
    last_index: Dict[str, int] = {}
    for index, line in enumerate(lines):
        code = normalize_code(line.code)
        message = validate_code(code)
        if message:
            errors.append(FieldError(field=f"items[{index}].ean", message=message))

        quantity, message = parse_quantity(line.quantity)
        if message:
            errors.append(FieldError(field=f"items[{index}].quantity", message=message))

        if code and quantity is not None:
            normalized.append(ScanLine(code=code, quantity=quantity, is_manual=line.is_manual))
            totals[code] = totals.get(code, Decimal("0")) + quantity
            last_index[code] = index

    # Duplicate scans are summed before storage, so the sum must fit too
    for code, total in totals.items():
        if total >= QUANTITY_LIMIT:
            errors.append(FieldError(
                field=f"items[{last_index[code]}].quantity",
                message=f"Total quantity for \"{code}\" must be lower than 1000000000000.",
            ))

    return normalized, errors


def aggregate_lines(lines: Sequence[ScanLine]) -> List[AggregatedLine]:
    """Sum quantities per code; a product is manual if any of its scans was."""
    groups: Dict[str, AggregatedLine] = {}
    for line in lines:
        group = groups.get(line.code)
        if group is None:
            groups[line.code] = AggregatedLine(
                code=line.code,
                quantity=Decimal(line.quantity),
                is_manual=line.is_manual,
            )
            continue
        group.quantity += Decimal(line.quantity)
        group.is_manual = group.is_manual or line.is_manual
    return list(groups.values())
