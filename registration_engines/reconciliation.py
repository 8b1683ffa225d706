"""
registration_engines.reconciliation -- Pure row-to-record matching rules.

Responsibility:
    Normalize natural-key values per field type, extract a row's key,
    filter ERP search results down to exact key matches, and classify a
    row from its match count.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import registration_kernel/domain/ types.

Invariants enforced:
    - 0 matches -> NEW; exactly 1 -> ALTERATION with the matched
      identifier; 2 or more -> ERROR ``AMBIGUOUS_KEY``.
    - Any empty key field -> the row has an incomplete key and is never
      sent to the matcher.
    - Normalization is total and deterministic: strings are trimmed and
      case-folded, numbers become canonical decimals, dates become ISO
      dates, booleans become ``true``/``false``.  Two values that
      normalize alike are the same key.

Failure modes:
    - None raised; unparseable key values normalize to their trimmed,
      case-folded text so type errors surface from field validation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from registration_kernel.domain.external import (
    ExternalRecord,
    FieldType,
    TemplateDefinition,
)
from registration_kernel.domain.reconciliation import (
    MatchOutcome,
    RowErrorCode,
    RowOperation,
)

_TRUE_WORDS = frozenset({"true", "1", "yes", "y", "sim", "s", "x"})
_FALSE_WORDS = frozenset({"false", "0", "no", "n", "nao", "não"})
_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%Y/%m/%d")


def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings."""
    return value is None or (isinstance(value, str) and not value.strip())


def parse_decimal(value: Any) -> Decimal | None:
    """Parse a number from a cell value; accepts a decimal comma."""
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).strip()
    if "," in text and "." not in text:
        text = text.replace(",", ".")
    try:
        d = Decimal(text)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def parse_date(value: Any) -> date | None:
    """Parse a date from a cell value (date, datetime, ISO or dd/mm/yyyy)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def parse_boolean(value: Any) -> bool | None:
    """Parse a boolean from a cell value; None if not recognizable."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().casefold()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    return None


def normalize_key_value(value: Any, field_type: FieldType) -> str:
    """Canonical text form of one key value for comparison."""
    if field_type == FieldType.NUMBER:
        d = parse_decimal(value)
        if d is not None:
            normalized = d.normalize()
            # Decimal('1E+1') -> '10'
            return format(normalized, "f")
    elif field_type == FieldType.DATE:
        parsed = parse_date(value)
        if parsed is not None:
            return parsed.isoformat()
    elif field_type == FieldType.BOOLEAN:
        b = parse_boolean(value)
        if b is not None:
            return "true" if b else "false"
    return str(value).strip().casefold()


@dataclass(frozen=True)
class KeyExtraction:
    """A row's natural key: raw values for the ERP, normalized for comparison."""

    raw: dict[str, Any]
    normalized: tuple[str, ...]
    missing_fields: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.missing_fields


def extract_key(
    row: Mapping[str, Any],
    template: TemplateDefinition,
) -> KeyExtraction:
    """Pull the template's key fields out of a row."""
    raw: dict[str, Any] = {}
    normalized: list[str] = []
    missing: list[str] = []
    for name in template.key_fields:
        value = row.get(name)
        if is_blank(value):
            missing.append(name)
            continue
        tf = template.field(name)
        ftype = tf.field_type if tf is not None else FieldType.STRING
        raw[name] = value.strip() if isinstance(value, str) else value
        normalized.append(normalize_key_value(value, ftype))
    return KeyExtraction(
        raw=raw,
        normalized=tuple(normalized),
        missing_fields=tuple(missing),
    )


def _search_forms(value: Any, field_type: FieldType) -> tuple[Any, Any]:
    """Two alternative spellings of a key value as an ERP may store it."""
    if field_type == FieldType.NUMBER:
        d = parse_decimal(value)
        if d is not None:
            return format(d.normalize(), "f"), str(d)
    elif field_type == FieldType.DATE:
        parsed = parse_date(value)
        if parsed is not None:
            return parsed.isoformat(), parsed.isoformat()
    elif field_type == FieldType.STRING:
        text = str(value).strip()
        return text.upper(), text.lower()
    return value, value


def lookup_filters(
    key: KeyExtraction,
    template: TemplateDefinition,
) -> list[dict[str, Any]]:
    """ERP search filters for a key, the row's own spelling first.

    The ERP compares literally, so a key typed ``p-001`` or ``10,50`` is
    also searched as ``P-001`` / ``p-001`` and ``10.5`` / ``10.50``.
    Results must still go through ``filter_exact_matches``.
    """
    first: dict[str, Any] = {}
    second: dict[str, Any] = {}
    for name, value in key.raw.items():
        tf = template.field(name)
        ftype = tf.field_type if tf is not None else FieldType.STRING
        first[name], second[name] = _search_forms(value, ftype)

    filters: list[dict[str, Any]] = []
    for candidate in (dict(key.raw), first, second):
        if candidate not in filters:
            filters.append(candidate)
    return filters


def filter_exact_matches(
    records: Sequence[ExternalRecord],
    key: KeyExtraction,
    template: TemplateDefinition,
) -> list[ExternalRecord]:
    """Keep only records whose key fields normalize to the row's key.

    ERP search may be looser than the key (prefix, padding, collation);
    the row is only matched against records that are the same key.
    """
    matched: list[ExternalRecord] = []
    for record in records:
        candidate: list[str] = []
        for name in template.key_fields:
            tf = template.field(name)
            ftype = tf.field_type if tf is not None else FieldType.STRING
            value = record.values.get(name)
            candidate.append("" if is_blank(value) else normalize_key_value(value, ftype))
        if tuple(candidate) == key.normalized:
            matched.append(record)
    return matched


def classify_matches(matches: Sequence[ExternalRecord]) -> MatchOutcome:
    """Classify a row from its exact matches."""
    count = len(matches)
    if count == 0:
        return MatchOutcome(operation=RowOperation.NEW, match_count=0)
    if count == 1:
        return MatchOutcome(
            operation=RowOperation.ALTERATION,
            match_count=1,
            external_record_id=matches[0].identifier,
        )
    return MatchOutcome(
        operation=RowOperation.ERROR,
        match_count=count,
        error_code=RowErrorCode.AMBIGUOUS_KEY,
        message=f"ambiguous key: matches {count} records",
    )
