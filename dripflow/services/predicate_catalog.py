"""Static registry of segment filter fields.

The catalog is built once at import time and exposed read-only. Callers
validate predicates through :func:`validate_predicate` instead of repeating
field/operator tables at each call site.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from dripflow.core.errors import ConfigurationError, ValidationError

# About a century. Far larger windows overflow datetime arithmetic.
MAX_DAYS_AGO = 36_500


class FieldType(str, Enum):
    BOOLEAN = "boolean"
    NUMBER = "number"
    SELECT = "select"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"


class FieldId(str, Enum):
    HAS_PURCHASED = "has_purchased"
    TOTAL_SPENT = "total_spent"
    TOTAL_EVENTS_ATTENDED = "total_events_attended"
    LAST_PURCHASE_DAYS_AGO = "last_purchase_days_ago"
    PASS_TYPE = "pass_type"
    ENGAGEMENT_LEVEL = "engagement_level"
    EMAIL_OPENS = "email_opens"
    EMAIL_CLICKS = "email_clicks"


OPERATORS_BY_TYPE: Mapping[FieldType, tuple[Operator, ...]] = MappingProxyType(
    {
        FieldType.BOOLEAN: (Operator.EQUALS,),
        FieldType.NUMBER: (Operator.GREATER_THAN, Operator.LESS_THAN, Operator.EQUALS, Operator.BETWEEN),
        FieldType.SELECT: (Operator.EQUALS, Operator.NOT_EQUALS),
    }
)


@dataclass(frozen=True)
class FieldSpec:
    field_id: FieldId
    label: str
    field_type: FieldType
    options: tuple[str, ...] = ()
    integer_only: bool = False

    @property
    def operators(self) -> tuple[Operator, ...]:
        return OPERATORS_BY_TYPE[self.field_type]


@dataclass(frozen=True)
class Predicate:
    """A validated ``(field, operator, value)`` condition.

    ``value`` is normalised: ``bool`` for boolean fields, ``float`` (or a
    ``(low, high)`` tuple for ``between``) for numeric fields, ``str`` for
    select fields.
    """

    field: FieldId
    operator: Operator
    value: Any

    def as_json(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field.value, "operator": self.operator.value, "value": value}


CATALOG: Mapping[FieldId, FieldSpec] = MappingProxyType(
    {
        spec.field_id: spec
        for spec in (
            FieldSpec(FieldId.HAS_PURCHASED, "Has Made Purchase", FieldType.BOOLEAN),
            FieldSpec(FieldId.TOTAL_SPENT, "Total Spent", FieldType.NUMBER),
            FieldSpec(FieldId.TOTAL_EVENTS_ATTENDED, "Events Attended", FieldType.NUMBER, integer_only=True),
            FieldSpec(FieldId.LAST_PURCHASE_DAYS_AGO, "Days Since Last Purchase", FieldType.NUMBER, integer_only=True),
            FieldSpec(
                FieldId.PASS_TYPE,
                "Pass Type",
                FieldType.SELECT,
                options=("all_access", "monthly", "single_event"),
            ),
            FieldSpec(
                FieldId.ENGAGEMENT_LEVEL,
                "Engagement Level",
                FieldType.SELECT,
                options=("active", "at_risk", "dormant", "inactive"),
            ),
            FieldSpec(FieldId.EMAIL_OPENS, "Email Opens", FieldType.NUMBER, integer_only=True),
            FieldSpec(FieldId.EMAIL_CLICKS, "Email Clicks", FieldType.NUMBER, integer_only=True),
        )
    }
)


def get_field_spec(field: str | FieldId) -> FieldSpec:
    try:
        field_id = FieldId(field)
    except ValueError:
        available = ", ".join(sorted(item.value for item in CATALOG))
        raise ConfigurationError(f"Unknown segment field '{field}'. Available: {available}") from None
    spec = CATALOG.get(field_id)
    if spec is None:
        raise ConfigurationError(f"Segment field '{field_id.value}' has no catalog entry")
    return spec


def list_catalog() -> list[dict[str, Any]]:
    return [
        {
            "field": spec.field_id.value,
            "label": spec.label,
            "type": spec.field_type.value,
            "operators": [operator.value for operator in spec.operators],
            "options": list(spec.options),
        }
        for spec in CATALOG.values()
    ]


def _coerce_bool(field: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in {"true", "false"}:
        return raw.strip().lower() == "true"
    raise ValidationError(f"Field '{field}' expects true or false, got {raw!r}")


def _coerce_number(spec: FieldSpec, raw: Any) -> float:
    if isinstance(raw, bool):
        raise ValidationError(f"Field '{spec.field_id.value}' expects a number, got {raw!r}")
    try:
        number = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Field '{spec.field_id.value}' expects a number, got {raw!r}") from None
    if number != number or number in {float("inf"), float("-inf")}:
        raise ValidationError(f"Field '{spec.field_id.value}' expects a finite number")
    if spec.integer_only and not number.is_integer():
        raise ValidationError(f"Field '{spec.field_id.value}' expects a whole number, got {raw!r}")
    if spec.field_id == FieldId.LAST_PURCHASE_DAYS_AGO and number < 0:
        raise ValidationError("Field 'last_purchase_days_ago' cannot be negative")
    if spec.field_id == FieldId.LAST_PURCHASE_DAYS_AGO and number > MAX_DAYS_AGO:
        raise ValidationError(f"Field 'last_purchase_days_ago' cannot exceed {MAX_DAYS_AGO} days")
    return number


def validate_predicate(raw: Mapping[str, Any]) -> Predicate:
    """Turn a raw ``{field, operator, value}`` mapping into a :class:`Predicate`.

    Unknown fields and operators outside the field type's legal set raise
    ConfigurationError; malformed values raise ValidationError.
    """
    spec = get_field_spec(raw.get("field") or "")
    field = spec.field_id.value

    try:
        operator = Operator(raw.get("operator") or "")
    except ValueError:
        raise ConfigurationError(f"Unknown operator {raw.get('operator')!r} for field '{field}'") from None
    if operator not in spec.operators:
        legal = ", ".join(item.value for item in spec.operators)
        raise ConfigurationError(
            f"Operator '{operator.value}' is not allowed for {spec.field_type.value} field '{field}'. Allowed: {legal}"
        )

    raw_value = raw.get("value")
    if spec.field_type == FieldType.BOOLEAN:
        return Predicate(spec.field_id, operator, _coerce_bool(field, raw_value))

    if spec.field_type == FieldType.SELECT:
        value = str(raw_value or "").strip()
        if value not in spec.options:
            allowed = ", ".join(spec.options)
            raise ValidationError(f"Field '{field}' expects one of: {allowed}; got {raw_value!r}")
        return Predicate(spec.field_id, operator, value)

    if operator == Operator.BETWEEN:
        if not isinstance(raw_value, (list, tuple)) or len(raw_value) != 2:
            raise ValidationError(f"Operator 'between' on field '{field}' requires a [low, high] pair")
        low = _coerce_number(spec, raw_value[0])
        high = _coerce_number(spec, raw_value[1])
        if low > high:
            raise ValidationError(f"Operator 'between' on field '{field}' requires low <= high")
        return Predicate(spec.field_id, operator, (low, high))

    return Predicate(spec.field_id, operator, _coerce_number(spec, raw_value))


def validate_predicates(raw_predicates: list[Mapping[str, Any]] | None) -> list[Predicate]:
    if not raw_predicates:
        raise ValidationError("A segment requires at least one predicate")
    return [validate_predicate(item) for item in raw_predicates]


def compare(actual: float, operator: Operator, expected: Any) -> bool:
    if operator == Operator.GREATER_THAN:
        return actual > expected
    if operator == Operator.LESS_THAN:
        return actual < expected
    if operator == Operator.EQUALS:
        return actual == expected
    if operator == Operator.BETWEEN:
        low, high = expected
        return low <= actual <= high
    raise ConfigurationError(f"Operator '{operator.value}' cannot compare numeric values")
