"""
Query key canonicalization.

A query key is a closed tagged union:

- Scalar: ``str``, ``int``, ``float``, ``bool`` or ``None``
- Sequence: ``list`` or ``tuple`` of query key values
- Mapping: any ``Mapping`` whose values are query key values

A string key is used verbatim. A top-level sequence is canonicalized element
by element and joined with ``,`` so that ``["todos", 1]`` and ``"todos,1"``
land in the same hierarchy. Everything else is compact JSON with mapping keys
sorted at every depth.
"""

import json
from collections.abc import Mapping
from typing import Any, List, Sequence, Set, Union

from shared.errors import KeyCanonicalizationError

KEY_DELIMITER = ","

QueryKey = Union[str, Sequence[Any], Mapping]

_SCALARS = (str, int, float, bool, type(None))


def resolve_key(key: Any) -> Any:
    """De-reference observables held directly in a sequence key."""
    if hasattr(key, "get") and hasattr(key, "on_change"):
        key = key.get()
    if isinstance(key, (list, tuple)):
        return [_deref(item) for item in key]
    return key


def _deref(value: Any) -> Any:
    if hasattr(value, "get") and hasattr(value, "on_change"):
        return value.get()
    return value


def canonicalize(key: Any) -> str:
    """Turn a query key into its canonical string form."""
    if isinstance(key, str):
        return key

    key = resolve_key(key)

    if isinstance(key, list):
        return KEY_DELIMITER.join(_canonical_element(item) for item in key)

    return _dumps(_normalize(key, set()))


def _canonical_element(value: Any) -> str:
    if isinstance(value, str):
        return value
    return _dumps(_normalize(value, set()))


def _normalize(value: Any, active: Set[int]) -> Any:
    """Rebuild ``value`` as plain JSON data, rejecting anything outside the union."""
    if isinstance(value, _SCALARS):
        return value

    if isinstance(value, (list, tuple, Mapping)):
        marker = id(value)
        if marker in active:
            raise KeyCanonicalizationError(
                "Circular reference in query key",
                details={"type": type(value).__name__}
            )
        active.add(marker)
        try:
            if isinstance(value, Mapping):
                return {
                    _mapping_key(k): _normalize(v, active)
                    for k, v in sorted(value.items(), key=lambda item: _mapping_key(item[0]))
                }
            return [_normalize(item, active) for item in value]
        finally:
            active.discard(marker)

    raise KeyCanonicalizationError(
        f"Unsupported query key value of type {type(value).__name__}",
        details={"type": type(value).__name__}
    )


def _mapping_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, _SCALARS):
        return json.dumps(key)
    raise KeyCanonicalizationError(
        f"Unsupported mapping key of type {type(key).__name__}",
        details={"type": type(key).__name__}
    )


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False, allow_nan=True)
    except (TypeError, ValueError) as exc:
        raise KeyCanonicalizationError(str(exc)) from exc


def is_group_member(key: Any, prefix: Any) -> bool:
    """True when ``key`` equals ``prefix`` or sits below it in the key hierarchy."""
    canonical = canonicalize(key)
    root = canonicalize(prefix)
    return canonical == root or canonical.startswith(root + KEY_DELIMITER)


def filter_group(keys: Sequence[str], prefix: Any) -> List[str]:
    """Canonical keys from ``keys`` that belong to the group rooted at ``prefix``."""
    root = canonicalize(prefix)
    return [k for k in keys if k == root or k.startswith(root + KEY_DELIMITER)]
