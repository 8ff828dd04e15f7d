from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, get_args, get_origin

from routewire.exceptions import CastError
from routewire.markers import split_annotated
from routewire.providers import unwrap_optional

_ARRAY_TYPES: frozenset[Any] = frozenset({list, tuple, set, frozenset})
_UNCAST_TYPES: frozenset[Any] = frozenset({Any, object, None})


class TypeCaster:
    """Convert raw string inputs (path, query, header values) into declared types.

    Rules, in order:

    * array targets (``list``, ``tuple``, ``set``, ``list[T]``) cast every item
      to the item type; item errors are reported as ``name[index]``;
    * any other target given a list of values uses its first value;
    * enum targets (``Enum`` subclasses, ``Literal[...]`` or explicit
      ``enum_values``) accept an allowed value as is, or its numeric form;
    * ``int``/``float``, ``bool`` (``"true"``/``"1"``), ``datetime``/``date``
      (ISO 8601) and ``str`` (identity);
    * everything else is decoded as JSON.

    In strict mode a failed conversion raises ``CastError`` (HTTP 400) naming
    the parameter. In lenient mode numbers fall back to ``nan``, dates to the
    raw value, enums and JSON to ``None``.
    """

    __slots__ = ("strict",)

    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict

    def cast(
        self,
        raw: Any,
        declared_type: Any,
        param_name: str,
        *,
        items_type: Any = None,
        enum_values: Any = None,
    ) -> Any:
        target = _normalize(declared_type)
        if target in _UNCAST_TYPES:
            return raw

        origin = get_origin(target) or target
        if origin in _ARRAY_TYPES:
            return self._cast_array(raw, target, origin, param_name, items_type)

        value = raw[0] if isinstance(raw, list) else raw

        allowed = _allowed_enum_values(target, enum_values)
        if allowed is not None:
            return self._cast_enum(value, target, allowed, param_name)

        if target is bool:
            return value in ("true", "1")
        if target in (int, float):
            return self._cast_number(value, target, param_name)
        if isinstance(target, type) and issubclass(target, (datetime, date)):
            return self._cast_date(value, target, param_name)
        if target is str:
            return value
        return self._cast_json(value, param_name)

    def _cast_array(
        self,
        raw: Any,
        target: Any,
        origin: Any,
        param_name: str,
        items_type: Any,
    ) -> Any:
        values = raw if isinstance(raw, list) else [raw]
        if items_type is None:
            args = [arg for arg in get_args(target) if arg is not Ellipsis]
            items_type = args[0] if args else None
        if items_type is not None:
            values = [
                self.cast(item, items_type, f"{param_name}[{index}]")
                for index, item in enumerate(values)
            ]
        if origin is list:
            return list(values)
        return origin(values)

    def _cast_enum(self, value: Any, target: Any, allowed: list[Any], param_name: str) -> Any:
        enum_type = target if _is_enum_type(target) else None
        if value in allowed:
            return enum_type(value) if enum_type is not None else value

        if any(_is_number(item) for item in allowed):
            number = _to_number(value)
            if not math.isnan(number):
                for item in allowed:
                    if _is_number(item) and item == number:
                        return enum_type(item) if enum_type is not None else item

        if self.strict:
            expected = "one of [" + ", ".join(str(item) for item in allowed) + "]"
            raise CastError(param_name or "value", expected, value)
        return None

    def _cast_number(self, value: Any, target: Any, param_name: str) -> Any:
        number = _to_number(value)
        if math.isnan(number):
            if self.strict:
                raise CastError(param_name or "value", "number", value)
            return number
        if target is float:
            return number
        if number.is_integer():
            return int(number)
        if self.strict:
            raise CastError(param_name or "value", "integer", value)
        return number

    def _cast_date(self, value: Any, target: Any, param_name: str) -> Any:
        parsed = _parse_datetime(value)
        if parsed is None:
            if self.strict:
                raise CastError(param_name or "value", "valid date", value)
            return value
        if issubclass(target, datetime):
            return parsed
        return parsed.date()

    def _cast_json(self, value: Any, param_name: str) -> Any:
        try:
            return json.loads(value)
        except (TypeError, ValueError) as error:
            if self.strict:
                raise CastError(param_name or "value", "valid JSON", value) from error
            return None


def _normalize(declared_type: Any) -> Any:
    inner, _metadata = split_annotated(declared_type)
    inner, _nullable = unwrap_optional(inner)
    return inner


def _is_enum_type(target: Any) -> bool:
    return isinstance(target, type) and issubclass(target, Enum)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _allowed_enum_values(target: Any, enum_values: Any) -> list[Any] | None:
    """Return the allowed values of an enum-like target, or ``None`` for plain targets."""
    if enum_values is not None:
        if _is_enum_type(enum_values):
            return [member.value for member in enum_values]
        if isinstance(enum_values, Mapping):
            # Mixed name/number mappings keep their numbers only
            values = list(enum_values.values())
            if any(_is_number(item) for item in values) and any(isinstance(item, str) for item in values):
                return [item for item in values if _is_number(item)]
            return values
        if isinstance(enum_values, Sequence) and not isinstance(enum_values, str):
            return list(enum_values)
        msg = f"enum_values must be an Enum, a mapping or a sequence, got {enum_values!r}"
        raise TypeError(msg)
    if _is_enum_type(target):
        return [member.value for member in target]
    if get_origin(target) is Literal:
        return list(get_args(target))
    return None


def _to_number(value: Any) -> float:
    """Convert like a lenient numeric parse: blank text is 0, garbage is ``nan``."""
    if _is_number(value):
        return float(value)
    if not isinstance(value, str):
        return math.nan
    text = value.strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return math.nan


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None
