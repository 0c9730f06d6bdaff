"""
Chinese budget amount parser.

Handles the conventions found in budget spreadsheets and OCR text:
- 1,234.56 / 1234.56 / 1，234.56 (full-width comma)
- (1,234.56) / （1,234.56）  -> negative (parentheses)
- -1,234.56 / −1,234.56      -> negative (leading minus)
- 1,234.56万元 / ¥1,234.56   -> unit suffix / currency prefix stripped, unit reported
- "-" / "--" / ""            -> no amount
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from pydantic import BaseModel

# Scale factors that convert a declared unit to 万元
UNIT_TO_SCALE_WANYUAN = {
    "yuan": Decimal("0.0001"),
    "qianyuan": Decimal("0.1"),
    "wanyuan": Decimal("1"),
}

_STRICT_NUMBER = re.compile(r'^[-+]?\d+(\.\d+)?$')
_PAREN_NUMBER = re.compile(r'^\([-+]?\d+(\.\d+)?\)$')
_UNIT_SUFFIX = re.compile(r'(万元|千元|元)$')
_TWO_PLACES = Decimal("0.01")


class AmountParseResult(BaseModel):
    amount: Optional[Decimal] = None
    raw_text: str
    is_negative: bool = False
    sign_convention: Optional[str] = None  # PARENTHESES, MINUS, NONE
    unit: Optional[str] = None  # yuan, qianyuan, wanyuan when a suffix was present
    confidence: float = 0.0


def _clean(raw: str) -> str:
    s = raw.strip()
    s = s.replace('，', ',').replace('（', '(').replace('）', ')')
    s = s.replace(chr(8722), '-')  # unicode minus
    return s


def parse_amount_cn(raw: str) -> AmountParseResult:
    """
    Parse a monetary amount written in Chinese budget conventions.
    """
    s = _clean(raw or "")

    if not s or s in ('-', '--', '---', '—'):
        return AmountParseResult(amount=None, raw_text=raw or "", confidence=0.0)

    # Currency symbols
    s = s.replace('¥', '').replace('￥', '').replace('RMB', '').strip()

    unit = None
    m = _UNIT_SUFFIX.search(s)
    if m:
        unit = {"万元": "wanyuan", "千元": "qianyuan", "元": "yuan"}[m.group(1)]
        s = s[: m.start()].strip()

    if s.endswith('%'):
        # Ratios are never budget amounts
        return AmountParseResult(amount=None, raw_text=raw, confidence=0.0)

    is_negative = False
    sign_convention = 'NONE'

    if s.startswith('(') and s.endswith(')'):
        s = s[1:-1].strip()
        is_negative = True
        sign_convention = 'PARENTHESES'

    if not is_negative and s.startswith('-'):
        s = s[1:].strip()
        is_negative = True
        sign_convention = 'MINUS'

    s = s.replace(',', '').replace(' ', '')

    if not _STRICT_NUMBER.match(s):
        return AmountParseResult(amount=None, raw_text=raw, confidence=0.0)

    try:
        amount = Decimal(s)
    except (InvalidOperation, ValueError):
        return AmountParseResult(amount=None, raw_text=raw, confidence=0.0)

    if is_negative:
        amount = amount * Decimal('-1')

    confidence = 0.95
    if sign_convention != 'NONE':
        confidence = 0.90
    if amount == 0:
        confidence = 0.80  # blank formula cells often serialize as 0

    return AmountParseResult(
        amount=amount,
        raw_text=raw,
        is_negative=is_negative,
        sign_convention=sign_convention,
        unit=unit,
        confidence=confidence,
    )


def is_numeric_like(text: Optional[str]) -> bool:
    """Cell-level numeric test used by the table builder (commas allowed)."""
    normalized = (text or "").replace(',', '').strip()
    if not normalized:
        return False
    return bool(_STRICT_NUMBER.match(normalized) or _PAREN_NUMBER.match(normalized))


def parse_number(value) -> Optional[Decimal]:
    """Strict cell parse: commas/whitespace removed, parentheses negative, else None."""
    if value is None:
        return None
    raw = re.sub(r'\s+', '', str(value).replace(',', ''))
    if not raw or raw == '-':
        return None
    paren = re.match(r'^\((.+)\)$', raw)
    if paren:
        raw = f"-{paren.group(1)}"
    if not _STRICT_NUMBER.match(raw):
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def round_amount(value: Decimal) -> Decimal:
    return value.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Two decimals at most, trailing zeros stripped: 15.50 -> '15.5', 17.00 -> '17'."""
    text = f"{round_amount(value):.2f}"
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return text or "0"
