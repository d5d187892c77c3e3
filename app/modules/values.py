# -*- coding: utf-8 -*-
"""
Incentra - Tagged scalar values

Imported rows are loosely typed ("1,250.00", 1250, "2025-01-31", "Store 12").
Every value entering the engine is coerced once into a Scalar tagged
NUMBER, TEXT or DATE, so the resolver never guesses types twice.
"""

import enum
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

_NUMERIC_RE = re.compile(r'^[+-]?[$€£]?\s*[\d,]*\.?\d+%?$')
_ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}')


class ScalarKind(enum.Enum):
    NUMBER = 'number'
    TEXT = 'text'
    DATE = 'date'


@dataclass(frozen=True)
class Scalar:
    kind: ScalarKind
    value: Any

    @property
    def is_number(self) -> bool:
        return self.kind is ScalarKind.NUMBER

    def as_number(self) -> Optional[Decimal]:
        return self.value if self.kind is ScalarKind.NUMBER else None

    def join_key(self) -> str:
        """Normalised form used for equality joins (store ids, entity ids)"""
        if self.kind is ScalarKind.NUMBER:
            # 12 and 12.0 must join
            normalized = self.value.normalize()
            return format(normalized, 'f')
        if self.kind is ScalarKind.DATE:
            return self.value.isoformat()
        return str(self.value).strip().lower()

    def to_json(self):
        if self.kind is ScalarKind.NUMBER:
            return float(self.value)
        if self.kind is ScalarKind.DATE:
            return self.value.isoformat()
        return self.value


def _parse_number(text: str) -> Optional[Decimal]:
    if not _NUMERIC_RE.match(text):
        return None
    cleaned = text.replace(',', '').replace('$', '').replace('€', '').replace('£', '').replace(' ', '')
    percent = cleaned.endswith('%')
    if percent:
        cleaned = cleaned[:-1]
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return None
    return number / 100 if percent else number


def coerce(value: Any) -> Scalar:
    """
    Coerce a raw row_data value into a Scalar.

    Raises:
        ValueError: nested structures (dict/list) are not valid row values
    """
    if isinstance(value, (dict, list, tuple, set)):
        raise ValueError(f"row_data values must be scalars, got {type(value).__name__}")
    if value is None:
        return Scalar(ScalarKind.TEXT, '')
    if isinstance(value, bool):
        return Scalar(ScalarKind.NUMBER, Decimal(int(value)))
    if isinstance(value, Decimal):
        return Scalar(ScalarKind.NUMBER, value)
    if isinstance(value, (int, float)):
        return Scalar(ScalarKind.NUMBER, Decimal(str(value)))
    if isinstance(value, datetime):
        return Scalar(ScalarKind.DATE, value.date())
    if isinstance(value, date):
        return Scalar(ScalarKind.DATE, value)

    text = str(value).strip()
    number = _parse_number(text)
    if number is not None:
        return Scalar(ScalarKind.NUMBER, number)
    if _ISO_DATE_RE.match(text):
        try:
            return Scalar(ScalarKind.DATE, date.fromisoformat(text[:10]))
        except ValueError:
            pass
    return Scalar(ScalarKind.TEXT, text)


def coerce_row(row_data: Mapping[str, Any]) -> Mapping[str, Scalar]:
    return {str(k): coerce(v) for k, v in (row_data or {}).items()}


def decimal_to_float(obj):
    """Convert Decimal (and dates) to JSON-friendly values, recursively"""
    if isinstance(obj, Decimal):
        return float(obj)
    elif isinstance(obj, (date, datetime)):
        return obj.isoformat()
    elif isinstance(obj, dict):
        return {k: decimal_to_float(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [decimal_to_float(i) for i in obj]
    return obj
