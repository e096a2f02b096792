"""Parse Korean won amounts out of free-text program listings."""

from __future__ import annotations

import re
from typing import Optional

_UNITS = {
    "억": 100_000_000,
    "천만": 10_000_000,
    "백만": 1_000_000,
    "만": 10_000,
}

_NON_NUMERIC_PREFIX = re.compile(r"^(별도|공고|추후|예산|미정|해당|없음|명시|정보|-)")
_NON_MONETARY_PREFIX = re.compile(r"^(무료|무상임대|컨설팅|멘토링|교육|입주|네트워킹)")
_RANGE = re.compile(r"(\d+(?:\.\d+)?)[~\-–](\d+(?:\.\d+)?)(억|천만|백만|만)?원?")
_WITH_UNIT = re.compile(r"(\d+(?:\.\d+)?)(억|천만|백만|만)원?")
_PLAIN_WON = re.compile(r"(\d+)원")
_PER_COMPANY = re.compile(
    r"(?:기업당|업체당|팀당|개사당|과제당|최대|한도)[^0-9]{0,20}(\d+(?:[.,]\d+)?)\s*(억|천만|백만|만)\s*원"
)

# Anything above this is a programme-wide budget, not a per-company grant.
_PER_COMPANY_CAP = 5_000_000_000


def apply_unit(number: float, unit: Optional[str]) -> int:
    if not number:
        return 0
    return int(round(number * _UNITS.get(unit or "", 1)))


def parse_amount(raw: str) -> int:
    """Parse a support-scale string into won.

    Handles:
      - "최대 1억원" -> 100_000_000
      - "5,000만원 이내" -> 50_000_000
      - "1~3억원" -> 300_000_000 (upper bound)
      - "50000000원" -> 50_000_000
      - "추후 공고", "컨설팅 지원", "50%" -> 0
    """
    if not raw or not isinstance(raw, str):
        return 0
    text = raw.strip()
    if _NON_NUMERIC_PREFIX.match(text) or _NON_MONETARY_PREFIX.match(text):
        return 0
    if "%" in text and not re.search(r"[만억천백]\s*원", text):
        return 0

    cleaned = re.sub(r"[,\s]", "", text)

    range_match = _RANGE.search(cleaned)
    if range_match:
        return apply_unit(float(range_match.group(2)), range_match.group(3))

    unit_match = _WITH_UNIT.search(cleaned)
    if unit_match:
        return apply_unit(float(unit_match.group(1)), unit_match.group(2))

    won_match = _PLAIN_WON.search(cleaned)
    if won_match and int(won_match.group(1)) >= 100_000:
        return int(won_match.group(1))

    return 0


def extract_grant_from_text(text: str) -> int:
    """Smallest plausible per-company amount mentioned in a description."""
    if not text or len(text) < 4:
        return 0
    amounts = [
        apply_unit(float(m.group(1).replace(",", "")), m.group(2))
        for m in _PER_COMPANY.finditer(text)
    ]
    plausible = [a for a in amounts if 1_000_000 <= a <= _PER_COMPANY_CAP]
    return min(plausible) if plausible else 0


def expected_grant(*sources: str, description: str = "") -> int:
    """First positive amount from the given fields, else from the description."""
    for source in sources:
        amount = parse_amount(source)
        if amount > 0:
            return amount
    return extract_grant_from_text(description)

