"""
Row validators for bulk uploads.

Checks one row against the template's field definitions: required,
type (string/number/date/boolean), max length, min/max value, pattern,
and allowed options.  Returns the parsed, JSON-native values together
with every problem found; never raises for bad data.

Key fields are not checked for presence here: an empty key field is
reported by key extraction as ``INCOMPLETE_KEY``.

Architecture: registration_ingestion/domain. ZERO I/O.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from registration_engines.reconciliation import (
    is_blank,
    parse_boolean,
    parse_date,
    parse_decimal,
)
from registration_kernel.domain.external import (
    FieldType,
    TemplateDefinition,
    TemplateField,
)
from registration_kernel.domain.reconciliation import RowError, RowErrorCode


def _parse_value(
    tf: TemplateField,
    value: Any,
    row_number: int,
) -> tuple[Any, list[RowError]]:
    """Parse one non-blank value to its JSON-native form and check its rules."""
    errors: list[RowError] = []
    rules = tf.rules

    if tf.field_type == FieldType.NUMBER:
        number = parse_decimal(value)
        if number is None:
            return None, [RowError(
                row_number, RowErrorCode.INVALID_NUMBER,
                f"{tf.label}: {value!r} is not a number", tf.name,
            )]
        if rules.min_value is not None and number < rules.min_value:
            errors.append(RowError(
                row_number, RowErrorCode.BELOW_MIN_VALUE,
                f"{tf.label}: {number} is below the minimum {rules.min_value}", tf.name,
            ))
        if rules.max_value is not None and number > rules.max_value:
            errors.append(RowError(
                row_number, RowErrorCode.ABOVE_MAX_VALUE,
                f"{tf.label}: {number} is above the maximum {rules.max_value}", tf.name,
            ))
        parsed: Any = str(number)
        text = parsed
    elif tf.field_type == FieldType.DATE:
        day = parse_date(value)
        if day is None:
            return None, [RowError(
                row_number, RowErrorCode.INVALID_DATE,
                f"{tf.label}: {value!r} is not a date", tf.name,
            )]
        parsed = day.isoformat()
        text = parsed
    elif tf.field_type == FieldType.BOOLEAN:
        flag = parse_boolean(value)
        if flag is None:
            return None, [RowError(
                row_number, RowErrorCode.INVALID_BOOLEAN,
                f"{tf.label}: {value!r} is not a yes/no value", tf.name,
            )]
        parsed = flag
        text = "true" if flag else "false"
    else:
        parsed = str(value).strip()
        text = parsed

    if rules.max_length is not None and len(text) > rules.max_length:
        errors.append(RowError(
            row_number, RowErrorCode.MAX_LENGTH_EXCEEDED,
            f"{tf.label}: longer than {rules.max_length} characters", tf.name,
        ))
    if rules.pattern and re.fullmatch(rules.pattern, text) is None:
        errors.append(RowError(
            row_number, RowErrorCode.PATTERN_MISMATCH,
            f"{tf.label}: {text!r} does not match the expected format", tf.name,
        ))
    if rules.options and text not in rules.options:
        errors.append(RowError(
            row_number, RowErrorCode.INVALID_OPTION,
            f"{tf.label}: {text!r} is not one of {', '.join(rules.options)}", tf.name,
        ))
    return parsed, errors


def validate_row(
    row: Mapping[str, Any],
    row_number: int,
    template: TemplateDefinition,
) -> tuple[dict[str, Any], list[RowError]]:
    """Validate one row against every template field.

    Returns:
        (parsed values keyed by field name, list of RowError).  Blank
        optional fields are omitted from the parsed values.
    """
    parsed: dict[str, Any] = {}
    errors: list[RowError] = []
    key_fields = frozenset(template.key_fields)

    for tf in template.fields:
        value = row.get(tf.name)
        if is_blank(value):
            if tf.required and tf.name not in key_fields:
                errors.append(RowError(
                    row_number, RowErrorCode.REQUIRED_FIELD_MISSING,
                    f"{tf.label} is required", tf.name,
                ))
            continue
        field_value, field_errors = _parse_value(tf, value, row_number)
        errors.extend(field_errors)
        if not field_errors:
            parsed[tf.name] = field_value

    return parsed, errors
