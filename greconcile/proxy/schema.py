"""
JSON Schema simplification for tool declarations.

The gateway validates tool parameters against a Proto-backed subset of
OpenAPI schema: no ``$ref``, no combinators, no type arrays and only a few
constraint keywords. Host tool schemas routinely use all of those, so they
are rewritten into the subset before sending. Constraints that cannot be
expressed are kept as a hint in the description so the model still sees
them.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Dropped outright.
UNSUPPORTED_KEYS = {
    "$schema",
    "$id",
    "$comment",
    "$defs",
    "definitions",
    "additionalProperties",
    "patternProperties",
    "unevaluatedProperties",
    "propertyNames",
    "dependentRequired",
    "dependentSchemas",
    "if",
    "then",
    "else",
    "not",
    "examples",
    "default",
    "deprecated",
    "readOnly",
    "writeOnly",
    "title",
}

# Dropped, but surfaced in the description.
HINT_KEYS = (
    "minLength",
    "maxLength",
    "pattern",
    "format",
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "multipleOf",
    "minItems",
    "maxItems",
    "uniqueItems",
    "minProperties",
    "maxProperties",
)

MAX_REF_DEPTH = 16


def _resolve_ref(ref: str, root: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not isinstance(ref, str) or not ref.startswith("#/"):
        return None
    node: Any = root
    for token in ref[2:].split("/"):
        token = token.replace("~1", "/").replace("~0", "~")
        if not isinstance(node, dict) or token not in node:
            return None
        node = node[token]
    return node if isinstance(node, dict) else None


def _append_description(schema: Dict[str, Any], hint: str) -> None:
    existing = schema.get("description")
    schema["description"] = f"{existing} ({hint})" if existing else hint


def _merge_all_of(schemas: List[Dict[str, Any]]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for part in schemas:
        if not isinstance(part, dict):
            continue
        properties.update(part.get("properties") or {})
        for name in part.get("required") or []:
            if name not in required:
                required.append(name)
        for key, value in part.items():
            if key not in ("properties", "required"):
                merged.setdefault(key, value)
    if properties:
        merged["properties"] = properties
        merged.setdefault("type", "object")
    if required:
        merged["required"] = required
    return merged


def _flatten_variants(variants: List[Any]) -> Dict[str, Any]:
    """Collapse anyOf/oneOf into one schema the gateway accepts."""
    options = [v for v in variants if isinstance(v, dict) and v.get("type") != "null"]
    if not options:
        return {"type": "string"}

    enums: List[Any] = []
    for option in options:
        if "const" in option:
            enums.append(option["const"])
        elif isinstance(option.get("enum"), list):
            enums.extend(option["enum"])
        else:
            break
    else:
        return {"type": options[0].get("type", "string"), "enum": enums}

    chosen = dict(options[0])
    types = [o.get("type") for o in options if isinstance(o.get("type"), str)]
    if len(set(types)) > 1:
        _append_description(chosen, "accepts: " + " | ".join(dict.fromkeys(types)))
    return chosen


def _simplify(node: Any, root: Dict[str, Any], depth: int) -> Any:
    if isinstance(node, list):
        return [_simplify(item, root, depth) for item in node]
    if not isinstance(node, dict):
        return node

    if "$ref" in node:
        target = _resolve_ref(node["$ref"], root) if depth < MAX_REF_DEPTH else None
        if target is None:
            logger.debug("Unresolvable schema reference %s", node.get("$ref"))
            replacement = {"type": "object"}
        else:
            replacement = {**target, **{k: v for k, v in node.items() if k != "$ref"}}
        return _simplify(replacement, root, depth + 1)

    if isinstance(node.get("allOf"), list):
        rest = {k: v for k, v in node.items() if k != "allOf"}
        merged = _merge_all_of([rest] + [_simplify(p, root, depth + 1) for p in node["allOf"]])
        return _simplify(merged, root, depth + 1)

    for combinator in ("anyOf", "oneOf"):
        if isinstance(node.get(combinator), list):
            rest = {k: v for k, v in node.items() if k != combinator}
            variants = [_simplify(v, root, depth + 1) for v in node[combinator]]
            flattened = _flatten_variants(variants)
            for key, value in rest.items():
                if key == "description" and "description" in flattened:
                    flattened["description"] = f"{value} ({flattened['description']})"
                else:
                    flattened.setdefault(key, value)
            return _simplify(flattened, root, depth + 1)

    result: Dict[str, Any] = {}
    hints = []
    for key, value in node.items():
        if key in UNSUPPORTED_KEYS:
            continue
        if key in HINT_KEYS:
            hints.append(f"{key}: {value}")
            continue
        if key == "type" and isinstance(value, list):
            non_null = [t for t in value if t != "null"]
            result["type"] = non_null[0] if non_null else "string"
        elif key == "const":
            result["enum"] = [value]
        elif key == "properties" and isinstance(value, dict):
            result["properties"] = {
                name: _simplify(prop, root, depth) for name, prop in value.items()
            }
        elif key == "items":
            result["items"] = _simplify(value, root, depth)
        else:
            result[key] = value

    if hints:
        _append_description(result, ", ".join(hints))

    if isinstance(result.get("required"), list):
        props = result.get("properties") or {}
        required = [name for name in result["required"] if name in props]
        if required:
            result["required"] = required
        else:
            result.pop("required")
    return result


def simplify_schema(schema: Any) -> Any:
    """Rewrite a tool parameter schema into the subset the gateway accepts.

    Returns a new schema; the input is left as it was.
    """
    if not isinstance(schema, dict):
        return schema
    root = copy.deepcopy(schema)
    simplified = _simplify(root, root, 0)
    if "type" not in simplified and "properties" in simplified:
        simplified["type"] = "object"
    return simplified
