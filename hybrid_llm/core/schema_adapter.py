"""Adapt JSON Schemas for a local model's constrained decoding.

On-device models degrade on deeply nested, disjunctive or very wide schemas.
The adapter inlines references, drops meta keywords, collapses unions to a
single branch and caps the number of properties at the top level and inside
array items. Array items that look like action variants (mostly optional
properties, one of which is set per element) are never capped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 3
DEFAULT_MAX_PROPERTIES = 5

# Tunable: fraction of optional properties above which array items are treated
# as action variants and exempted from capping.
ACTION_OPTIONAL_RATIO = 0.8

_META_KEYS = ("$schema", "additionalProperties", "definitions", "$defs", "$ref")
_REF_PREFIXES = ("#/definitions/", "#/$defs/")
_COMPOSITE_KEYS = ("anyOf", "oneOf", "allOf")
_UNION_KEYS = ("anyOf", "oneOf")
_PREFERRED_BRANCH_TYPES = ("object", "string")


class SchemaKind(str, Enum):
    OBJECT = "object"
    ARRAY = "array"
    UNION = "union"
    PRIMITIVE = "primitive"


def schema_kind(schema: dict[str, Any]) -> SchemaKind:
    if any(isinstance(schema.get(key), list) for key in _UNION_KEYS):
        return SchemaKind.UNION
    if schema.get("type") == "object" or "properties" in schema:
        return SchemaKind.OBJECT
    if schema.get("type") == "array" or "items" in schema:
        return SchemaKind.ARRAY
    return SchemaKind.PRIMITIVE


def is_action_schema(
    schema: dict[str, Any],
    threshold: float = ACTION_OPTIONAL_RATIO,
) -> bool:
    """Return True when more than ``threshold`` of the properties are optional."""

    properties = schema.get("properties")
    if not isinstance(properties, dict) or not properties:
        return False

    required = set(schema.get("required") or ())
    optional = sum(
        1
        for name, prop in properties.items()
        if name not in required or (isinstance(prop, dict) and prop.get("nullable"))
    )
    return optional / len(properties) > threshold


def cap_properties(schema: dict[str, Any], limit: int) -> dict[str, Any]:
    """Keep every required property plus the first optional ones up to ``limit``."""

    properties: dict[str, Any] = schema.get("properties") or {}
    if len(properties) <= limit:
        return schema

    required = set(schema.get("required") or ())
    kept = {name for name in properties if name in required}
    for name in properties:
        if len(kept) >= limit:
            break
        kept.add(name)

    capped = dict(schema)
    capped["properties"] = {
        name: value for name, value in properties.items() if name in kept
    }
    logger.debug(
        "Capped schema properties from %d to %d", len(properties), len(capped["properties"])
    )
    return capped


def resolve_refs(
    schema: Any,
    definitions: dict[str, Any],
    _resolving: tuple[str, ...] = (),
) -> Any:
    if not isinstance(schema, dict):
        return schema

    ref = schema.get("$ref")
    if isinstance(ref, str):
        name = _ref_name(ref)
        target = definitions.get(name) if name is not None else None
        if target is not None:
            if name in _resolving:
                logger.warning("Recursive schema reference %s replaced by a plain object", ref)
                return {"type": "object"}
            return resolve_refs(target, definitions, _resolving + (name,))

    resolved = dict(schema)

    properties = resolved.get("properties")
    if isinstance(properties, dict):
        resolved["properties"] = {
            key: resolve_refs(value, definitions, _resolving)
            for key, value in properties.items()
        }

    items = resolved.get("items")
    if isinstance(items, list):
        resolved["items"] = [resolve_refs(item, definitions, _resolving) for item in items]
    elif isinstance(items, dict):
        resolved["items"] = resolve_refs(items, definitions, _resolving)

    for key in _COMPOSITE_KEYS:
        branches = resolved.get(key)
        if isinstance(branches, list):
            resolved[key] = [resolve_refs(branch, definitions, _resolving) for branch in branches]

    return resolved


def strip_meta(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return schema

    stripped = {key: value for key, value in schema.items() if key not in _META_KEYS}

    properties = stripped.get("properties")
    if isinstance(properties, dict):
        stripped["properties"] = {
            key: strip_meta(value) for key, value in properties.items()
        }

    items = stripped.get("items")
    if isinstance(items, list):
        stripped["items"] = [strip_meta(item) for item in items]
    elif isinstance(items, dict):
        stripped["items"] = strip_meta(items)

    for key in _COMPOSITE_KEYS:
        branches = stripped.get(key)
        if isinstance(branches, list):
            stripped[key] = [strip_meta(branch) for branch in branches]

    return stripped


@dataclass(slots=True)
class SchemaAdapter:
    max_depth: int = DEFAULT_MAX_DEPTH
    max_properties: int = DEFAULT_MAX_PROPERTIES
    action_ratio: float = ACTION_OPTIONAL_RATIO

    def adapt(self, schema: dict[str, Any]) -> dict[str, Any]:
        """Clean then simplify; the result is reference-free."""

        return self.simplify(self.clean(schema))

    def clean(self, schema: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(schema, dict):
            return schema

        definitions: dict[str, Any] = {}
        for key in ("definitions", "$defs"):
            if isinstance(schema.get(key), dict):
                definitions.update(schema[key])

        return strip_meta(resolve_refs(schema, definitions))

    def simplify(self, schema: dict[str, Any], depth: int = 0) -> dict[str, Any]:
        if not isinstance(schema, dict) or depth >= self.max_depth:
            return schema

        kind = schema_kind(schema)
        if kind is SchemaKind.UNION:
            branch = _collapse_union(schema)
            if branch is not None:
                return self.simplify(branch, depth + 1)

        simplified = dict(schema)

        items = simplified.get("items")
        if (
            simplified.get("type") == "array"
            and isinstance(items, dict)
            and isinstance(items.get("properties"), dict)
        ):
            if is_action_schema(items, self.action_ratio):
                logger.debug(
                    "Keeping all %d properties of action-like array items",
                    len(items["properties"]),
                )
            else:
                simplified["items"] = cap_properties(items, self.max_properties)

        if (
            depth == 0
            and simplified.get("type") == "object"
            and isinstance(simplified.get("properties"), dict)
        ):
            simplified = cap_properties(simplified, self.max_properties)

        properties = simplified.get("properties")
        if isinstance(properties, dict):
            simplified["properties"] = {
                key: self.simplify(value, depth + 1) for key, value in properties.items()
            }

        items = simplified.get("items")
        if isinstance(items, dict):
            simplified["items"] = self.simplify(items, depth + 1)

        return simplified


def _collapse_union(schema: dict[str, Any]) -> dict[str, Any] | None:
    for key in _UNION_KEYS:
        branches = schema.get(key)
        if not isinstance(branches, list):
            continue

        live = [
            branch
            for branch in branches
            if isinstance(branch, dict) and branch.get("type") != "null"
        ]
        if not live:
            continue
        if len(live) == 1:
            return live[0]

        for preferred in _PREFERRED_BRANCH_TYPES:
            for branch in live:
                if branch.get("type") == preferred:
                    return branch
        return live[0]

    return None


def _ref_name(ref: str) -> str | None:
    for prefix in _REF_PREFIXES:
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return None
