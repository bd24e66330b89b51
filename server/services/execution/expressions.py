"""Expression resolution - ``{{ ... }}`` references in node configuration.

Resolution is pure and synchronous: it reads a context snapshot produced by
the state store and never mutates it. Supported roots:

    {{ $node.fetch.body.items[0]["name"] }}   output of a SUCCESS node
    {{ fetch.body.status }}                   same, without the $node prefix
    {{ $vars.region }}                        workflow variables
    {{ $trigger.headers.x-request-id }}       trigger payload
    {{ $execution.id }}
    {{ $workflow.id }} / {{ $workflow.version }}
    {{ $now }}                                ISO timestamp of the snapshot

A string that is exactly one template keeps the referenced value's type.
Templates embedded in longer strings are stringified (JSON for objects,
arrays, booleans and null). Anything that cannot be resolved raises
``UnresolvedReferenceError``; nothing is ever substituted with an empty
value.
"""

import json
import re
from typing import Any, Dict, List, Union

from services.execution.exceptions import UnresolvedReferenceError

TEMPLATE_PATTERN = re.compile(r'\{\{\s*([^{}]+?)\s*\}\}')

_SEGMENT_PATTERN = re.compile(
    r'''
      \.?(?P<name>[\w$][\w$-]*)          # identifier, optionally dotted
    | \[\s*(?P<index>-?\d+)\s*\]          # [0]
    | \[\s*"(?P<dq>[^"]*)"\s*\]           # ["key"]
    | \[\s*'(?P<sq>[^']*)'\s*\]           # ['key']
    ''',
    re.VERBOSE,
)

PathSegment = Union[str, int]


def parse_path(expression: str) -> List[PathSegment]:
    """Split ``a.b[0]["c"]`` into ``['a', 'b', 0, 'c']``."""
    segments: List[PathSegment] = []
    position = 0
    while position < len(expression):
        match = _SEGMENT_PATTERN.match(expression, position)
        if not match or match.end() == position:
            raise UnresolvedReferenceError(expression, f"invalid syntax at offset {position}")
        if match.group("name") is not None:
            if position == 0 and expression.startswith("."):
                raise UnresolvedReferenceError(expression, "path cannot start with '.'")
            segments.append(match.group("name"))
        elif match.group("index") is not None:
            segments.append(int(match.group("index")))
        elif match.group("dq") is not None:
            segments.append(match.group("dq"))
        else:
            segments.append(match.group("sq"))
        position = match.end()

    if not segments:
        raise UnresolvedReferenceError(expression, "empty expression")
    return segments


def _walk(value: Any, path: List[PathSegment], expression: str) -> Any:
    current = value
    for segment in path:
        if isinstance(current, dict):
            if segment not in current:
                raise UnresolvedReferenceError(expression, f"missing field '{segment}'")
            current = current[segment]
        elif isinstance(current, list):
            if isinstance(segment, str) and segment.lstrip("-").isdigit():
                segment = int(segment)
            if not isinstance(segment, int):
                raise UnresolvedReferenceError(expression, f"cannot read '{segment}' of a list")
            if not -len(current) <= segment < len(current):
                raise UnresolvedReferenceError(expression, f"index {segment} out of range")
            current = current[segment]
        else:
            raise UnresolvedReferenceError(
                expression, f"cannot read '{segment}' of {type(current).__name__}"
            )
    return current


def _node_output(node_id: PathSegment, context: Dict[str, Any], expression: str) -> Any:
    statuses = context.get("node_status", {})
    if node_id not in statuses:
        raise UnresolvedReferenceError(expression, f"unknown node '{node_id}'")
    status = statuses[node_id]
    if status != "SUCCESS":
        raise UnresolvedReferenceError(
            expression, f"node '{node_id}' has not completed successfully (status {status})"
        )
    return context.get("nodes", {}).get(node_id)


def evaluate(expression: str, context: Dict[str, Any]) -> Any:
    """Evaluate one reference (without braces) against a context snapshot."""
    path = parse_path(expression.strip())
    root, rest = path[0], path[1:]

    if root == "$node":
        if not rest:
            raise UnresolvedReferenceError(expression, "$node requires a node id")
        return _walk(_node_output(rest[0], context, expression), rest[1:], expression)
    if root == "$vars":
        return _walk(context.get("vars", {}), rest, expression)
    if root == "$trigger":
        return _walk(context.get("trigger", {}), rest, expression)
    if root == "$execution":
        return _walk(context.get("execution", {}), rest, expression)
    if root == "$workflow":
        return _walk(context.get("workflow", {}), rest, expression)
    if root == "$now":
        if rest:
            raise UnresolvedReferenceError(expression, "$now has no fields")
        return context["now"]
    if isinstance(root, str) and root.startswith("$"):
        raise UnresolvedReferenceError(expression, f"unknown root '{root}'")

    return _walk(_node_output(root, context, expression), rest, expression)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value, default=str)
    return str(value)


def resolve_string(template: str, context: Dict[str, Any]) -> Any:
    whole = TEMPLATE_PATTERN.fullmatch(template.strip())
    if whole:
        return evaluate(whole.group(1), context)
    return TEMPLATE_PATTERN.sub(lambda match: _stringify(evaluate(match.group(1), context)), template)


def resolve_value(value: Any, context: Dict[str, Any]) -> Any:
    """Resolve templates anywhere inside a config value (dict keys are left as-is)."""
    if isinstance(value, str):
        if "{{" not in value:
            return value
        return resolve_string(value, context)
    if isinstance(value, dict):
        return {key: resolve_value(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, context) for item in value]
    return value


def resolve_config(config: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
    """Return a resolved copy of a node's config."""
    return resolve_value(config, context)
