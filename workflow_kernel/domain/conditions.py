"""
Guard conditions (``workflow_kernel.domain.conditions``).

Responsibility
--------------
A tiny, closed expression language for transition guards: field
comparisons looked up by dotted path in the workflow context, composed
with ``AllOf`` / ``AnyOf``.  Evaluation is an exhaustive ``match`` over
the condition union and over ``Comparison``.

Architecture position
---------------------
**Kernel domain layer** -- pure functions over frozen values.  Imported
by ``state_node`` and by the declarative config compiler.

Invariants enforced
-------------------
* Unknown operator tags parse to ``Comparison.EQUALS`` (lenient, logged).
* A field condition declared without a value, or with an explicit
  ``None`` (YAML ``null``), is a presence test: it passes iff the
  looked-up value is truthy.  A null comparison value is not expressible
  declaratively; use a callable guard for that.
* A malformed guard never raises; it parses to ``Unconditional`` and
  passes.
* A callable guard that raises evaluates to ``False``.
* A comparison between incomparable values evaluates to ``False``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from workflow_kernel.logging_config import get_logger

logger = get_logger("domain.conditions")


class _Missing:
    """Sentinel for "no value": an absent context field or an omitted guard value."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class Comparison(str, Enum):
    """Field comparison operators."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    CONTAINS = "contains"
    IN = "in"

    @classmethod
    def parse(cls, tag: Any) -> Comparison:
        """Parse an operator tag; unknown or missing tags fall back to EQUALS."""
        if isinstance(tag, cls):
            return tag
        try:
            return cls(tag)
        except ValueError:
            if tag is not None:
                logger.warning("guard_unknown_operator", extra={"operator": str(tag)})
            return cls.EQUALS


@dataclass(frozen=True)
class FieldCondition:
    """Compare the value at ``field`` (dotted path) against ``value``."""

    field: str
    comparison: Comparison = Comparison.EQUALS
    value: Any = MISSING


@dataclass(frozen=True)
class AllOf:
    """Passes when every sub-condition passes (``and``)."""

    conditions: tuple[Condition, ...]


@dataclass(frozen=True)
class AnyOf:
    """Passes when at least one sub-condition passes (``or``)."""

    conditions: tuple[Condition, ...]


@dataclass(frozen=True)
class Unconditional:
    """A guard that could not be understood. Always passes."""

    reason: str = ""


Condition = Union[FieldCondition, AllOf, AnyOf, Unconditional]

GuardPredicate = Callable[[Mapping[str, Any]], Any]
Guard = Union[Condition, GuardPredicate, Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Path lookup
# ---------------------------------------------------------------------------


def get_nested_value(obj: Any, path: str) -> Any:
    """Resolve a dotted path over mappings and attribute objects.

    Returns ``MISSING`` as soon as a segment is absent or the current
    value is ``None``.
    """
    current = obj
    for key in path.split("."):
        if current is None or current is MISSING:
            return MISSING
        if isinstance(current, Mapping):
            current = current.get(key, MISSING)
        else:
            current = getattr(current, key, MISSING)
    return current


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def condition_from_dict(data: Any) -> Condition:
    """Parse a declarative guard mapping into a ``Condition``."""
    if not isinstance(data, Mapping):
        return Unconditional(reason=f"not a mapping: {type(data).__name__}")

    operator = data.get("operator")
    if operator in ("and", "or"):
        children = data.get("conditions")
        if not isinstance(children, Sequence) or isinstance(children, str):
            return Unconditional(reason=f"'{operator}' without a conditions list")
        parsed = tuple(condition_from_dict(child) for child in children)
        return AllOf(parsed) if operator == "and" else AnyOf(parsed)

    field_path = data.get("field")
    if not field_path or not isinstance(field_path, str):
        return Unconditional(reason="no field and no and/or operator")

    value = data.get("value")
    return FieldCondition(
        field=field_path,
        comparison=Comparison.parse(operator),
        value=MISSING if value is None else value,
    )


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    """Inverse of ``condition_from_dict`` for plain-data snapshots."""
    match condition:
        case FieldCondition(field=field_path, comparison=comparison, value=value):
            out: dict[str, Any] = {"field": field_path, "operator": comparison.value}
            if value is not MISSING:
                out["value"] = value
            return out
        case AllOf(conditions=children):
            return {"operator": "and", "conditions": [condition_to_dict(c) for c in children]}
        case AnyOf(conditions=children):
            return {"operator": "or", "conditions": [condition_to_dict(c) for c in children]}
        case Unconditional():
            return {}
    raise TypeError(f"Not a condition: {condition!r}")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate_condition(condition: Condition, context: Any) -> bool:
    """Evaluate a parsed condition against ``context``."""
    match condition:
        case AllOf(conditions=children):
            return all(evaluate_condition(c, context) for c in children)
        case AnyOf(conditions=children):
            return any(evaluate_condition(c, context) for c in children)
        case FieldCondition(field=field_path, comparison=comparison, value=expected):
            actual = get_nested_value(context, field_path)
            if expected is MISSING:
                return bool(actual)
            return _compare(comparison, actual, expected)
        case Unconditional():
            return True
    raise TypeError(f"Not a condition: {condition!r}")


def _compare(comparison: Comparison, actual: Any, expected: Any) -> bool:
    try:
        match comparison:
            case Comparison.EQUALS:
                return actual is not MISSING and actual == expected
            case Comparison.NOT_EQUALS:
                return actual is MISSING or actual != expected
            case Comparison.GREATER_THAN:
                return actual is not MISSING and actual > expected
            case Comparison.LESS_THAN:
                return actual is not MISSING and actual < expected
            case Comparison.GREATER_EQUAL:
                return actual is not MISSING and actual >= expected
            case Comparison.LESS_EQUAL:
                return actual is not MISSING and actual <= expected
            case Comparison.CONTAINS:
                return bool(actual) and expected in actual
            case Comparison.IN:
                return (
                    isinstance(expected, (list, tuple, set, frozenset))
                    and actual in expected
                )
    except TypeError:
        return False
    raise ValueError(f"Unknown comparison: {comparison}")


def evaluate_guard(guard: Any, context: Any) -> bool:
    """Evaluate one guard: condition, mapping, or predicate.

    Anything unrecognised passes.  A predicate that raises fails.
    """
    if isinstance(guard, (FieldCondition, AllOf, AnyOf, Unconditional)):
        return evaluate_condition(guard, context)
    if isinstance(guard, Mapping):
        return evaluate_condition(condition_from_dict(guard), context)
    if callable(guard):
        try:
            return bool(guard(context))
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "guard_evaluation_error",
                extra={
                    "guard_name": getattr(guard, "__name__", repr(guard)),
                    "error": str(e),
                },
            )
            return False
    logger.warning("guard_malformed", extra={"guard_type": type(guard).__name__})
    return True


def evaluate_guards(guards: Sequence[Any], context: Any) -> bool:
    """True when every guard passes (vacuously true for no guards)."""
    return all(evaluate_guard(g, context) for g in guards)
