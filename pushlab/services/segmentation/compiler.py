"""
Segmentation rule compiler.

Turns an ordered list of rule documents into a single predicate over a
directory user's profile. Rule values are parsed here, once, into the
operand each operator needs (numbers, timezone-aware datetimes, value
sets). A value that cannot be parsed for its operator raises
``ValidationError`` carrying the index of the offending rule, which is how
segment creation rejects malformed rules before anything is stored.

Matching follows document-store semantics for multi-valued paths: a rule
matches when any value at the path satisfies it, while the negated
operators (``notEquals``, ``notContains``, ``notIn``) match only when no
value does, including when the attribute is missing.
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pushlab.core.exceptions import ValidationError
from pushlab.services.segmentation.fields import (
    FieldAccessor,
    FieldKind,
    MappedField,
    RuleType,
    resolve_field,
)


class Operator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "notIn"
    EXISTS = "exists"
    NOT_EXISTS = "notExists"
    DAYS_AGO = "daysAgo"
    OLDER_THAN_DAYS = "olderThanDays"


VALUELESS_OPERATORS = {Operator.EXISTS, Operator.NOT_EXISTS}

# Value kinds each operator may be applied to (catalogued fields only)
OPERATOR_KINDS: Dict[Operator, Tuple[FieldKind, ...]] = {
    Operator.EQUALS: (FieldKind.STRING, FieldKind.NUMBER, FieldKind.ENUM, FieldKind.BOOLEAN),
    Operator.NOT_EQUALS: (FieldKind.STRING, FieldKind.NUMBER, FieldKind.ENUM, FieldKind.BOOLEAN),
    Operator.CONTAINS: (FieldKind.STRING,),
    Operator.NOT_CONTAINS: (FieldKind.STRING,),
    Operator.GREATER_THAN: (FieldKind.NUMBER, FieldKind.DATE),
    Operator.LESS_THAN: (FieldKind.NUMBER, FieldKind.DATE),
    Operator.BETWEEN: (FieldKind.NUMBER, FieldKind.DATE),
    Operator.IN: (FieldKind.STRING, FieldKind.NUMBER, FieldKind.ENUM),
    Operator.NOT_IN: (FieldKind.STRING, FieldKind.NUMBER, FieldKind.ENUM),
    Operator.EXISTS: tuple(FieldKind),
    Operator.NOT_EXISTS: tuple(FieldKind),
    Operator.DAYS_AGO: (FieldKind.DATE,),
    Operator.OLDER_THAN_DAYS: (FieldKind.DATE,),
}

OPERATOR_LABELS: Dict[Operator, str] = {
    Operator.EQUALS: "Equals",
    Operator.NOT_EQUALS: "Does not equal",
    Operator.CONTAINS: "Contains",
    Operator.NOT_CONTAINS: "Does not contain",
    Operator.GREATER_THAN: "Greater than",
    Operator.LESS_THAN: "Less than",
    Operator.BETWEEN: "Between",
    Operator.IN: "Is one of",
    Operator.NOT_IN: "Is not one of",
    Operator.EXISTS: "Exists",
    Operator.NOT_EXISTS: "Does not exist",
    Operator.DAYS_AGO: "Within the last N days",
    Operator.OLDER_THAN_DAYS: "More than N days ago",
}

_NUMBER_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?(Z|[+-]\d{2}:?\d{2})?$")

Comparable = Union[int, float, datetime]


@dataclass(frozen=True)
class SegmentationRule:
    rule_type: RuleType
    field: str
    operator: Operator
    value: Any = None

    @classmethod
    def from_document(cls, document: Dict[str, Any], index: int = 0) -> "SegmentationRule":
        try:
            rule_type = RuleType(document.get("type"))
        except ValueError:
            raise ValidationError(
                f"Rule {index}: unknown rule type {document.get('type')!r}", rule_index=index
            )
        try:
            operator = Operator(document.get("operator"))
        except ValueError:
            raise ValidationError(
                f"Rule {index}: unknown operator {document.get('operator')!r}", rule_index=index
            )
        rule_field = document.get("field")
        if not isinstance(rule_field, str) or not rule_field.strip():
            raise ValidationError(f"Rule {index}: field is required", rule_index=index)
        return cls(rule_type, rule_field.strip(), operator, document.get("value"))

    def to_document(self) -> Dict[str, Any]:
        return {
            "type": self.rule_type.value,
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
        }


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_number(value: Any) -> Optional[Union[int, float]]:
    if _is_number(value):
        return value
    if isinstance(value, str) and _NUMBER_RE.match(value):
        number = float(value)
        return int(number) if number.is_integer() and "." not in value and "e" not in value.lower() else number
    return None


def parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and _ISO_DATE_RE.match(value.strip()):
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _parse_comparable(value: Any, kind: Optional[FieldKind]) -> Optional[Comparable]:
    if kind == FieldKind.NUMBER:
        return parse_number(value)
    if kind == FieldKind.DATE:
        return parse_datetime(value)
    number = parse_number(value)
    if number is not None:
        return number
    return parse_datetime(value)


def _parse_scalar(value: Any, kind: Optional[FieldKind]) -> Any:
    """Parse an equality/membership operand for the field's kind."""
    if kind == FieldKind.NUMBER:
        return parse_number(value)
    if kind == FieldKind.BOOLEAN:
        return _parse_boolean(value)
    if kind in (FieldKind.STRING, FieldKind.ENUM):
        return value if isinstance(value, str) else None
    if isinstance(value, (dict, list, tuple, set)):
        return None
    return value


def _same(left: Any, right: Any) -> bool:
    # bools are ints in Python; keep True distinct from 1
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    return left == right


def _as_comparable(value: Any, like: Comparable) -> Optional[Comparable]:
    if isinstance(like, datetime):
        return parse_datetime(value)
    return value if _is_number(value) else None


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


Test = Callable[[List[Any]], bool]


@dataclass(frozen=True)
class CompiledRule:
    index: int
    rule: SegmentationRule
    accessor: FieldAccessor
    operand: Any
    test: Test = field(repr=False)

    def matches(self, record: Dict[str, Any]) -> bool:
        return self.test(self.accessor.resolve(record))


@dataclass(frozen=True)
class SegmentPredicate:
    """Logical AND of compiled rules, callable on a profile document."""

    rules: Tuple[CompiledRule, ...]

    def __call__(self, record: Dict[str, Any]) -> bool:
        return all(rule.matches(record) for rule in self.rules)

    @property
    def paths(self) -> List[str]:
        return [rule.accessor.path for rule in self.rules]


def _fail(index: int, message: str) -> ValidationError:
    return ValidationError(f"Rule {index}: {message}", rule_index=index)


def _compile_test(
    rule: SegmentationRule, kind: Optional[FieldKind], index: int, now: datetime
) -> Tuple[Any, Test]:
    op = rule.operator
    value = rule.value

    if op in VALUELESS_OPERATORS:
        if op == Operator.EXISTS:
            return None, lambda values: any(v is not None for v in values)
        return None, lambda values: len(values) == 0

    if value is None:
        raise _fail(index, f"operator '{op.value}' requires a value")

    if op in (Operator.EQUALS, Operator.NOT_EQUALS):
        operand = _parse_scalar(value, kind)
        if operand is None:
            raise _fail(index, f"value {value!r} is not a valid {kind.value if kind else 'scalar'}")
        if op == Operator.EQUALS:
            return operand, lambda values: any(_same(v, operand) for v in values)
        return operand, lambda values: not any(_same(v, operand) for v in values)

    if op in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        if not isinstance(value, str):
            raise _fail(index, f"operator '{op.value}' requires a string value")
        needle = value.lower()

        def contains(values: List[Any]) -> bool:
            return any(isinstance(v, str) and needle in v.lower() for v in values)

        if op == Operator.CONTAINS:
            return value, contains
        return value, lambda values: not contains(values)

    if op in (Operator.GREATER_THAN, Operator.LESS_THAN):
        operand = _parse_comparable(value, kind)
        if operand is None:
            raise _fail(index, f"operator '{op.value}' requires a number or ISO date, got {value!r}")

        def compare(values: List[Any]) -> bool:
            for v in values:
                candidate = _as_comparable(v, operand)
                if candidate is None:
                    continue
                if op == Operator.GREATER_THAN and candidate > operand:
                    return True
                if op == Operator.LESS_THAN and candidate < operand:
                    return True
            return False

        return operand, compare

    if op == Operator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise _fail(index, "operator 'between' requires a [lower, upper] pair")
        lower = _parse_comparable(value[0], kind)
        upper = _parse_comparable(value[1], kind)
        if lower is None or upper is None:
            raise _fail(index, f"bounds {list(value)!r} are not numbers or ISO dates")
        if isinstance(lower, datetime) != isinstance(upper, datetime):
            raise _fail(index, "between bounds must be of the same type")
        if lower > upper:
            raise _fail(index, "between lower bound is greater than upper bound")

        def within(values: List[Any]) -> bool:
            for v in values:
                candidate = _as_comparable(v, lower)
                if candidate is not None and lower <= candidate <= upper:
                    return True
            return False

        return (lower, upper), within

    if op in (Operator.IN, Operator.NOT_IN):
        if isinstance(value, (str, bytes, dict)) or not isinstance(value, (list, tuple, set)):
            raise _fail(index, f"operator '{op.value}' requires a list of values")
        members = []
        for item in value:
            parsed = _parse_scalar(item, kind)
            if parsed is None:
                raise _fail(index, f"value {item!r} is not a valid {kind.value if kind else 'scalar'}")
            members.append(parsed)
        operand = tuple(members)

        def member(values: List[Any]) -> bool:
            return any(_same(v, m) for v in values for m in operand)

        if op == Operator.IN:
            return operand, member
        return operand, lambda values: not member(values)

    # daysAgo / olderThanDays
    days = parse_number(value)
    if days is None or days < 0:
        raise _fail(index, f"operator '{op.value}' requires a non-negative number of days")
    try:
        cutoff = now - timedelta(days=days)
    except (OverflowError, ValueError):
        raise _fail(index, f"operator '{op.value}' day count {value!r} is out of range")

    def since(values: List[Any]) -> bool:
        for v in values:
            moment = parse_datetime(v)
            if moment is None:
                continue
            if op == Operator.DAYS_AGO and moment >= cutoff:
                return True
            if op == Operator.OLDER_THAN_DAYS and moment < cutoff:
                return True
        return False

    return cutoff, since


def compile_rule(
    rule: SegmentationRule, index: int = 0, now: Optional[datetime] = None
) -> CompiledRule:
    accessor = resolve_field(rule.rule_type, rule.field)
    kind = accessor.kind if isinstance(accessor, MappedField) else None

    if kind is not None and kind not in OPERATOR_KINDS[rule.operator]:
        raise _fail(
            index,
            f"operator '{rule.operator.value}' does not apply to {kind.value} field "
            f"'{rule.rule_type.value}.{rule.field}'",
        )

    operand, test = _compile_test(rule, kind, index, now or datetime.now(timezone.utc))
    return CompiledRule(index=index, rule=rule, accessor=accessor, operand=operand, test=test)


def parse_rules(documents: Iterable[Union[Dict[str, Any], SegmentationRule]]) -> List[SegmentationRule]:
    rules = []
    for index, document in enumerate(documents):
        if isinstance(document, SegmentationRule):
            rules.append(document)
        else:
            rules.append(SegmentationRule.from_document(document, index))
    return rules


def compile_rules(
    rules: Sequence[Union[Dict[str, Any], SegmentationRule]], now: Optional[datetime] = None
) -> SegmentPredicate:
    parsed = parse_rules(rules)
    if not parsed:
        raise ValidationError("A segment requires at least one rule", field="rules")
    now = now or datetime.now(timezone.utc)
    return SegmentPredicate(tuple(compile_rule(rule, i, now) for i, rule in enumerate(parsed)))


def validate_rules(rules: Sequence[Union[Dict[str, Any], SegmentationRule]]) -> List[Dict[str, Any]]:
    """
    Check a rule set the way segment creation does.

    Returns the normalized rule documents to persist. Values are kept as
    supplied; they are parsed again on every compilation.
    """
    predicate = compile_rules(rules)
    return [compiled.rule.to_document() for compiled in predicate.rules]
