"""Template resolution for ``{{ path.to.value }}`` placeholders.

Paths are dotted property lookups rooted at the current actor, the run's
variables or the recorded output of an earlier node (addressed by node id).
Lookups never raise: a path that does not exist resolves to ``UNDEFINED``
and the executor consuming the value decides whether that is an error.
"""

import copy
import json
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from ..models.core import Actor, WorkflowDefinition


class _Undefined:
    """Sentinel for a template path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "UNDEFINED"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNDEFINED = _Undefined()

REDACTED = "***"

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

ACTOR_ROOTS = ("currentUser", "actor")
VARIABLE_ROOT = "variables"
OUTPUT_ROOTS = ("previousOutputs", "nodes")
PREVIOUS_OUTPUT_ROOT = "previousOutput"
CONNECTION_ROOT = "connectionId"

BUILTIN_ROOTS = frozenset(
    ACTOR_ROOTS + (VARIABLE_ROOT,) + OUTPUT_ROOTS + (PREVIOUS_OUTPUT_ROOT, CONNECTION_ROOT)
)


class TemplateContext:
    """Layered lookup context for placeholder resolution."""

    def __init__(
        self,
        actor: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        node_outputs: Optional[Dict[str, Any]] = None,
        previous_output: Any = None,
        connection_id: Optional[str] = None,
    ):
        self.actor = actor or {}
        self.variables = variables if variables is not None else {}
        self.node_outputs = node_outputs if node_outputs is not None else {}
        self.previous_output = previous_output
        self.connection_id = connection_id


def create_context(
    actor: Optional[Actor] = None,
    variables: Optional[Dict[str, Any]] = None,
    node_outputs: Optional[Dict[str, Any]] = None,
    previous_output: Any = None,
    connection_id: Optional[str] = None,
) -> TemplateContext:
    """Build a ``TemplateContext`` from engine-side values."""
    actor_data: Dict[str, Any] = {}
    if actor is not None:
        actor_data = actor.model_dump()
        actor_data["teamId"] = actor.team_id
    return TemplateContext(
        actor=actor_data,
        variables=variables,
        node_outputs=node_outputs,
        previous_output=previous_output,
        connection_id=connection_id,
    )


def walk_path(value: Any, path: List[str]) -> Any:
    for segment in path:
        if value is UNDEFINED or value is None:
            return UNDEFINED
        if isinstance(value, dict):
            if segment not in value:
                return UNDEFINED
            value = value[segment]
        elif isinstance(value, (list, tuple)):
            if not segment.lstrip("-").isdigit():
                if segment == "length":
                    value = len(value)
                    continue
                return UNDEFINED
            index = int(segment)
            if index < -len(value) or index >= len(value):
                return UNDEFINED
            value = value[index]
        elif isinstance(value, str) and segment == "length":
            value = len(value)
        else:
            return UNDEFINED
    return value


def resolve_path(path: str, context: TemplateContext, fallback_to_previous: bool = False) -> Any:
    """Resolve a dotted path against the context.

    With ``fallback_to_previous`` a root that matches nothing else is looked
    up inside the most recent node output, so ``count`` finds
    ``previousOutput.count``.
    """
    parts = [part.strip() for part in path.strip().split(".")]
    if not parts or any(not part for part in parts):
        return UNDEFINED

    root, rest = parts[0], parts[1:]

    if root in ACTOR_ROOTS:
        base = context.actor
    elif root == VARIABLE_ROOT:
        base = context.variables
    elif root in OUTPUT_ROOTS:
        base = context.node_outputs
    elif root == PREVIOUS_OUTPUT_ROOT:
        base = context.previous_output
    elif root == CONNECTION_ROOT and root not in context.variables:
        base = context.connection_id
    elif root in context.variables:
        base = context.variables[root]
    elif root in context.node_outputs:
        base = context.node_outputs[root]
    elif fallback_to_previous and isinstance(context.previous_output, dict):
        return walk_path(context.previous_output, parts)
    else:
        return UNDEFINED

    if base is None and not rest:
        return None
    return walk_path(base, rest)


def _stringify(value: Any) -> str:
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple, bool)):
        return json.dumps(to_jsonable(value), default=str)
    return str(value)


def resolve(template: str, context: TemplateContext) -> str:
    """Replace every placeholder in ``template`` with its string value."""
    if not isinstance(template, str):
        return template
    return PLACEHOLDER_PATTERN.sub(
        lambda match: _stringify(resolve_path(match.group(1), context)),
        template,
    )


def resolve_object(value: Any, context: TemplateContext) -> Any:
    """Resolve placeholders inside nested dicts and lists.

    A string consisting of exactly one placeholder resolves to the raw value
    so numbers, lists and objects keep their type.
    """
    if isinstance(value, str):
        match = PLACEHOLDER_PATTERN.fullmatch(value.strip())
        if match:
            return copy.deepcopy(resolve_path(match.group(1), context))
        return resolve(value, context)
    if isinstance(value, dict):
        return {key: resolve_object(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_object(item, context) for item in value]
    return value


def extract_variables(value: Any) -> List[str]:
    """List the placeholder paths used anywhere inside ``value``."""
    found: List[str] = []

    def visit(item: Any):
        if isinstance(item, str):
            for match in PLACEHOLDER_PATTERN.finditer(item):
                path = match.group(1).strip()
                if path not in found:
                    found.append(path)
        elif isinstance(item, dict):
            for nested in item.values():
                visit(nested)
        elif isinstance(item, list):
            for nested in item:
                visit(nested)

    visit(value)
    return found


def validate_variables(definition: WorkflowDefinition) -> List[str]:
    """Return template roots that are not declared variables, node ids or built-ins."""
    known = set(BUILTIN_ROOTS)
    known.update(variable.name for variable in definition.variables)
    known.update(node.id for node in definition.nodes)

    missing: List[str] = []
    for node in definition.nodes:
        for path in extract_variables(node.data):
            root = path.split(".", 1)[0].strip()
            if root not in known and root not in missing:
                missing.append(root)
    return missing


def collect_secret_values(definition: WorkflowDefinition, variables: Dict[str, Any]) -> List[Any]:
    """Values of secret variables to scrub from anything persisted.

    Plaintext strings come first, longest first. Numbers, lists and objects
    follow; they are matched whole, while their text form and the strings
    nested inside them are scrubbed like plaintext.
    """
    texts = set()
    structured: List[Any] = []

    def collect(value: Any):
        if value is None or value is UNDEFINED or isinstance(value, bool):
            return
        if isinstance(value, str):
            if value:
                texts.add(value)
            return
        if isinstance(value, (dict, list, tuple)):
            if not value:
                return
            for item in (value.values() if isinstance(value, dict) else value):
                collect(item)
        texts.add(_stringify(value))
        value = to_jsonable(value)
        if value not in structured:
            structured.append(value)

    for name in definition.secret_variable_names():
        collect(variables.get(name))
    return sorted(texts, key=len, reverse=True) + structured


def redact(value: Any, secrets: Iterable[Any]) -> Any:
    """Replace secret values anywhere inside ``value``.

    String secrets are replaced wherever they occur in a string; any other
    item equal to a structured secret is replaced whole.
    """
    secrets = list(secrets)
    texts = [secret for secret in secrets if isinstance(secret, str) and secret]
    structured = [secret for secret in secrets if secret is not None and not isinstance(secret, str)]
    if not texts and not structured:
        return value

    def scrub(item: Any) -> Any:
        if isinstance(item, str):
            for secret in texts:
                if secret in item:
                    item = item.replace(secret, REDACTED)
            return item
        if item is not None and not isinstance(item, bool) and any(item == secret for secret in structured):
            return REDACTED
        if isinstance(item, dict):
            return {key: scrub(nested) for key, nested in item.items()}
        if isinstance(item, (list, tuple)):
            return [scrub(nested) for nested in item]
        return item

    return scrub(value)


def redact_variables(variables: Dict[str, Any], secret_names: Iterable[str]) -> Dict[str, Any]:
    """Copy of ``variables`` with every secret-named value masked."""
    names = set(secret_names)
    return {
        name: (REDACTED if name in names and value is not None else value)
        for name, value in variables.items()
    }


def to_jsonable(value: Any) -> Any:
    """Convert a resolved value into something a JSON column accepts."""
    if value is UNDEFINED:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
