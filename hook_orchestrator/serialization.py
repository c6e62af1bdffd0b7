"""Lossless JSON encoding for cached operation results.

A cache hit must hand back the value the first execution returned, so
anything plain JSON would flatten is written as a tagged object:

- tuples, and dicts whose keys are not all strings
- dataclass instances, restored by importing their class
- enum members and datetimes

Values that cannot be restored (arbitrary objects, classes defined inside
functions, circular structures) are rejected at encode time rather than
cached in a lossy form.
"""

from __future__ import annotations

import importlib
import json
import math
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Protocol

TYPE_TAG = "__type__"


class ResultCodec(Protocol):
    def encode(self, value: Any) -> str: ...

    def decode(self, data: str) -> Any: ...


class TaggedJSONCodec:
    """Encode results as JSON with type tags for non-JSON-native values.

    Raises:
        TypeError: From ``encode`` for values that cannot be restored.
        ValueError: From ``encode`` for circular or non-finite values, and
            from ``decode`` for tags whose class no longer resolves.
    """

    def encode(self, value: Any) -> str:
        return json.dumps(self._to_json(value, "result", set()), separators=(",", ":"), allow_nan=False)

    def decode(self, data: str) -> Any:
        return self._from_json(json.loads(data))

    # ========== Encoding ==========

    def _to_json(self, value: Any, path: str, active: set[int]) -> Any:
        if value is None or (isinstance(value, (bool, int, str)) and not isinstance(value, Enum)):
            return value
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError(f"{path}: float values must be finite")
            return value
        if isinstance(value, Enum):
            return {
                TYPE_TAG: "enum",
                "class": _class_path(type(value), path),
                "value": self._to_json(value.value, f"{path}.value", active),
            }
        if isinstance(value, datetime):
            return {TYPE_TAG: "datetime", "value": value.isoformat()}
        if isinstance(value, date):
            return {TYPE_TAG: "date", "value": value.isoformat()}

        if id(value) in active:
            raise ValueError(f"{path}: circular reference")
        active.add(id(value))
        try:
            return self._container_to_json(value, path, active)
        finally:
            active.discard(id(value))

    def _container_to_json(self, value: Any, path: str, active: set[int]) -> Any:
        if isinstance(value, list):
            return [self._to_json(item, f"{path}[{i}]", active) for i, item in enumerate(value)]
        if isinstance(value, tuple) and not hasattr(value, "_fields"):
            return {
                TYPE_TAG: "tuple",
                "items": [self._to_json(item, f"{path}[{i}]", active) for i, item in enumerate(value)],
            }
        if isinstance(value, dict):
            if all(isinstance(k, str) for k in value) and TYPE_TAG not in value:
                return {k: self._to_json(v, f"{path}.{k}", active) for k, v in value.items()}
            return {
                TYPE_TAG: "dict",
                "items": [
                    [self._to_json(k, f"{path}.<key>", active), self._to_json(v, f"{path}[{k!r}]", active)]
                    for k, v in value.items()
                ],
            }
        if is_dataclass(value) and not isinstance(value, type):
            return {
                TYPE_TAG: "dataclass",
                "class": _class_path(type(value), path),
                "fields": {
                    f.name: self._to_json(getattr(value, f.name), f"{path}.{f.name}", active)
                    for f in fields(value)
                },
            }
        raise TypeError(f"{path}: cannot cache value of type {type(value).__name__}")

    # ========== Decoding ==========

    def _from_json(self, data: Any) -> Any:
        if isinstance(data, list):
            return [self._from_json(item) for item in data]
        if not isinstance(data, dict):
            return data

        tag = data.get(TYPE_TAG)
        if tag is None:
            return {k: self._from_json(v) for k, v in data.items()}
        if tag == "tuple":
            return tuple(self._from_json(item) for item in data["items"])
        if tag == "dict":
            return {self._from_json(k): self._from_json(v) for k, v in data["items"]}
        if tag == "datetime":
            return datetime.fromisoformat(data["value"])
        if tag == "date":
            return date.fromisoformat(data["value"])
        if tag == "enum":
            return _resolve_class(data["class"])(self._from_json(data["value"]))
        if tag == "dataclass":
            return _build_dataclass(
                _resolve_class(data["class"]),
                {name: self._from_json(v) for name, v in data["fields"].items()},
            )
        raise ValueError(f"Unknown type tag {tag!r} in cached result")


def _class_path(cls: type, path: str) -> str:
    if "<locals>" in cls.__qualname__:
        raise TypeError(f"{path}: {cls.__qualname__} is defined inside a function and cannot be restored")
    return f"{cls.__module__}:{cls.__qualname__}"


def _resolve_class(class_path: str) -> type:
    module_name, _, qualname = class_path.partition(":")
    try:
        obj: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as exc:
        raise ValueError(f"Cannot resolve cached result class {class_path}: {exc}") from exc
    return obj


def _build_dataclass(cls: type, values: dict[str, Any]) -> Any:
    init_values = {f.name: values[f.name] for f in fields(cls) if f.init and f.name in values}
    instance = cls(**init_values)
    for f in fields(cls):
        if not f.init and f.name in values:
            # Frozen dataclasses reject setattr
            object.__setattr__(instance, f.name, values[f.name])
    return instance

