"""
CHANGE DIFF

Structural diff between two document snapshots, used to build audit entries
and to reject updates that change nothing.

Rules:
- Paths use dot notation through nested dicts
- Lists are compared as whole values; a changed list is one path
- An absent key and a key holding UNDEFINED are the same thing
- None is a real value, not "absent"
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Mapping
import copy
import math


class _Undefined:
    """Marker for a value that was not supplied"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNDEFINED"

    def __bool__(self):
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNDEFINED = _Undefined()

ADDED = "added"
REMOVED = "removed"
CHANGED = "changed"


@dataclass
class FieldChange:
    field: str
    kind: str
    old_value: Any = UNDEFINED
    new_value: Any = UNDEFINED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "kind": self.kind,
            "old_value": None if self.old_value is UNDEFINED else self.old_value,
            "new_value": None if self.new_value is UNDEFINED else self.new_value,
        }


@dataclass
class ChangeSet:
    """Ordered list of field changes between two snapshots"""
    data: List[FieldChange] = field(default_factory=list)

    @property
    def fields(self) -> List[str]:
        return [change.field for change in self.data]

    @property
    def summary(self) -> Dict[str, Any]:
        return {
            "fields": self.fields,
            "added": sum(1 for change in self.data if change.kind == ADDED),
            "removed": sum(1 for change in self.data if change.kind == REMOVED),
            "changed": sum(1 for change in self.data if change.kind == CHANGED),
        }

    @property
    def is_empty(self) -> bool:
        return not self.data

    def get(self, path: str) -> Optional[FieldChange]:
        for change in self.data:
            if change.field == path:
                return change
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "data": [change.to_dict() for change in self.data],
        }


def _is_document(value: Any) -> bool:
    return isinstance(value, Mapping)


def strip_undefined(value: Any) -> Any:
    """Deep copy of value with every UNDEFINED dict entry dropped"""
    if _is_document(value):
        return {
            key: strip_undefined(item)
            for key, item in value.items()
            if item is not UNDEFINED
        }
    if isinstance(value, (list, tuple)):
        return [strip_undefined(item) for item in value]
    return copy.deepcopy(value)


def values_equal(left: Any, right: Any) -> bool:
    """
    Deep structural equality.

    Unlike ==, a bool never equals a number (True vs 1), two NaN floats are
    equal, and dict entries holding UNDEFINED are ignored.
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right

    if _is_document(left) and _is_document(right):
        left_keys = {key for key, item in left.items() if item is not UNDEFINED}
        right_keys = {key for key, item in right.items() if item is not UNDEFINED}
        if left_keys != right_keys:
            return False
        return all(values_equal(left[key], right[key]) for key in left_keys)

    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))

    if _is_document(left) or _is_document(right):
        return False
    if isinstance(left, (list, tuple)) or isinstance(right, (list, tuple)):
        return False

    # NaN never changes into itself
    if isinstance(left, float) and isinstance(right, float) and math.isnan(left) and math.isnan(right):
        return True

    return left == right


def merge_defined(base: Optional[Mapping[str, Any]], patch: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Overlay the supplied values of `patch` onto a copy of `base`.

    Patch entries holding UNDEFINED are skipped. Nested dicts merge
    recursively; lists and scalars replace the base value wholesale.
    Neither input is mutated.
    """
    result = strip_undefined(base or {})

    for key, value in (patch or {}).items():
        if value is UNDEFINED:
            continue
        current = result.get(key, UNDEFINED)
        if _is_document(value) and _is_document(current):
            result[key] = merge_defined(current, value)
        else:
            result[key] = strip_undefined(value)

    return result


def _leaf_changes(prefix: str, value: Any, kind: str, out: List[FieldChange]):
    """Enumerate every leaf path of a value that exists on one side only"""
    if _is_document(value):
        defined = [(key, item) for key, item in value.items() if item is not UNDEFINED]
        if defined:
            for key, item in defined:
                _leaf_changes(f"{prefix}.{key}", item, kind, out)
            return

    if kind == ADDED:
        out.append(FieldChange(prefix, ADDED, UNDEFINED, strip_undefined(value)))
    else:
        out.append(FieldChange(prefix, REMOVED, strip_undefined(value), UNDEFINED))


def _walk(prefix: str, before: Mapping[str, Any], after: Mapping[str, Any], out: List[FieldChange]):
    for key, new in after.items():
        if new is UNDEFINED:
            continue
        path = f"{prefix}{key}"
        old = before.get(key, UNDEFINED)

        if old is UNDEFINED:
            _leaf_changes(path, new, ADDED, out)
        elif _is_document(old) and _is_document(new):
            _walk(f"{path}.", old, new, out)
        elif not values_equal(old, new):
            out.append(FieldChange(path, CHANGED, strip_undefined(old), strip_undefined(new)))

    for key, old in before.items():
        if old is UNDEFINED:
            continue
        if after.get(key, UNDEFINED) is UNDEFINED:
            _leaf_changes(f"{prefix}{key}", old, REMOVED, out)


def build_changes(before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]) -> ChangeSet:
    """
    Diff two snapshots field path by field path.

    Order: keys of `after` as encountered (depth first), then keys that only
    exist in `before`. None inputs are treated as empty documents.
    """
    changes: List[FieldChange] = []
    _walk("", before or {}, after or {}, changes)
    return ChangeSet(changes)
