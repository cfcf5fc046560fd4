"""Registry of diagnostic test definitions and their parameter schemas."""
from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from devicelab.diagnostics.definitions import CATEGORIES, DEFINITIONS
from devicelab.diagnostics.models import ParameterKind, ParameterSpec, TestDefinition
from devicelab.errors import NotFoundError, ParameterValidationError

ALL_CATEGORIES = "all"


class TestCatalog:
    """Read-only lookup of test definitions, loaded once at start-up."""

    __test__ = False

    def __init__(
        self,
        definitions: Iterable[TestDefinition] = DEFINITIONS,
        categories: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> None:
        self._definitions: Dict[str, TestDefinition] = {}
        for definition in definitions:
            if definition.id in self._definitions:
                raise ValueError(f"Duplicate test id: {definition.id}")
            self._definitions[definition.id] = definition
        self._categories = dict(CATEGORIES if categories is None else categories)
        for definition in self._definitions.values():
            for component in definition.components:
                if component not in self._definitions:
                    raise ValueError(f"{definition.id} references unknown test {component}")

    def list_all(self) -> List[TestDefinition]:
        return list(self._definitions.values())

    def list_by_category(self, category: str) -> List[TestDefinition]:
        if not category or category == ALL_CATEGORIES:
            return self.list_all()
        return [item for item in self._definitions.values() if item.category == category]

    def get(self, test_id: str) -> TestDefinition:
        definition = self._definitions.get(test_id)
        if definition is None:
            raise NotFoundError(f"Unknown test: {test_id}")
        return definition

    def categories(self) -> Dict[str, Dict[str, Any]]:
        grouped: Dict[str, Dict[str, Any]] = {}
        for definition in self._definitions.values():
            meta = self._categories.get(definition.category, {})
            entry = grouped.setdefault(
                definition.category,
                {
                    "name": meta.get("name", definition.category.title()),
                    "icon": meta.get("icon", ""),
                    "tests": [],
                },
            )
            entry["tests"].append(definition.to_dict())
        return grouped

    # ------------------------------------------------------------------
    # Parameter validation
    # ------------------------------------------------------------------
    def validate(self, test_id: str, supplied: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Return a normalised copy of *supplied* with defaults filled in.

        Raises ``NotFoundError`` for unknown tests and
        ``ParameterValidationError`` listing every rejected parameter.
        Names the definition does not declare are dropped.
        """
        definition = self.get(test_id)
        supplied = supplied or {}
        normalized: Dict[str, Any] = {}
        errors: List[str] = []
        for spec in definition.parameters:
            value = supplied.get(spec.name)
            if _is_blank(value):
                if spec.required:
                    errors.append(f"{spec.name} is required")
                elif spec.default is not None:
                    normalized[spec.name] = spec.default
                continue
            try:
                normalized[spec.name] = _coerce(spec, value)
            except ValueError as exc:
                errors.append(f"{spec.name} {exc}")
        if errors:
            raise ParameterValidationError(errors)
        return normalized


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coerce(spec: ParameterSpec, value: Any) -> Any:
    if spec.kind is ParameterKind.NUMBER:
        return _coerce_number(spec, value)
    if spec.kind is ParameterKind.ENUM:
        text = str(value)
        if text not in spec.choices:
            raise ValueError(f"must be one of {', '.join(spec.choices)}")
        return text
    if not isinstance(value, str):
        raise ValueError("must be a string")
    if spec.pattern and not re.fullmatch(spec.pattern, value):
        raise ValueError(f"does not match {spec.pattern}")
    return value


def _coerce_number(spec: ParameterSpec, value: Any):
    if isinstance(value, bool):
        raise ValueError("must be a number")
    try:
        number = float(value if isinstance(value, (int, float)) else str(value).strip())
    except OverflowError:
        raise ValueError("must be a finite number") from None
    except ValueError:
        raise ValueError("must be a number") from None
    if math.isnan(number) or math.isinf(number):
        raise ValueError("must be a finite number")
    if spec.integer:
        if not number.is_integer():
            raise ValueError("must be a whole number")
    if spec.minimum is not None and number < spec.minimum:
        raise ValueError(f"must be >= {_fmt(spec.minimum)}")
    if spec.maximum is not None and number > spec.maximum:
        raise ValueError(f"must be <= {_fmt(spec.maximum)}")
    if spec.integer or (isinstance(value, int) and number.is_integer()):
        return int(number)
    return number


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)
