"""Contract-driven routing and request validation.

The interface document (an OpenAPI 3.0 YAML file) is the single source of
truth for routes and payload shapes. :func:`load_contract` turns it into a
:class:`Contract` of :class:`Operation` objects, and
:class:`ContractDispatcher` mounts one FastAPI route per operation. Each route
coerces and validates path parameters, query parameters and the JSON body
before calling the handler registered under the operation's name.

Coercion follows the usual "coerce, default, strip" behaviour of
contract-first servers:

* numeric strings become integers or numbers, ``"true"``/``"false"`` become
  booleans, numbers become strings where a string is declared and single
  values become one-element arrays;
* declared defaults fill absent properties and parameters;
* properties not declared by an object schema are removed.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from jsonschema import Draft7Validator
from starlette.concurrency import run_in_threadpool

from .errors import BadRequestError, translate_error

logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "patch", "head", "options")

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_TEMPLATE_RE = re.compile(r"\{[^}/]+\}")
_UNCHANGED = object()

# Draft 7 only annotates ``format``; integer formats are checked as bounds.
INTEGER_FORMAT_BOUNDS: Dict[str, Tuple[int, int]] = {
    "int32": (-(2**31), 2**31 - 1),
    "int64": (-(2**63), 2**63 - 1),
}


class ContractError(RuntimeError):
    """The interface document cannot be turned into a working route table."""


@dataclass(frozen=True)
class OperationInput:
    """Validated request data handed to an operation handler."""

    path_params: Dict[str, Any] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None


# Schema resolution


def _follow_pointer(document: Mapping[str, Any], ref: str) -> Any:
    if not ref.startswith("#/"):
        raise ContractError(f"Only local references are supported, got {ref!r}")
    node: Any = document
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(node, Mapping) or part not in node:
            raise ContractError(f"Unresolvable reference {ref!r}")
        node = node[part]
    return node


def resolve_schema(document: Mapping[str, Any], schema: Any, _trail: Tuple[str, ...] = ()) -> Any:
    """Return ``schema`` with local ``$ref``s inlined and ``nullable`` normalized.

    Keys written beside a ``$ref`` are merged over the referenced schema.
    ``int32``/``int64`` integer formats become ``minimum``/``maximum`` bounds.
    """

    if isinstance(schema, list):
        return [resolve_schema(document, item, _trail) for item in schema]
    if not isinstance(schema, Mapping):
        return schema

    if "$ref" in schema:
        ref = schema["$ref"]
        if ref in _trail:
            raise ContractError(f"Recursive schema reference {ref!r}")
        target = resolve_schema(document, _follow_pointer(document, ref), _trail + (ref,))
        resolved = dict(target)
        resolved.update({key: value for key, value in schema.items() if key != "$ref"})
        schema = resolved
        _trail = _trail + (ref,)

    resolved = {}
    for key, value in schema.items():
        if key in ("properties", "patternProperties", "definitions"):
            resolved[key] = {name: resolve_schema(document, sub, _trail) for name, sub in value.items()}
        elif key in ("items", "additionalProperties", "not", "allOf", "anyOf", "oneOf"):
            resolved[key] = resolve_schema(document, value, _trail)
        else:
            resolved[key] = value

    if resolved.pop("nullable", False):
        declared = resolved.get("type")
        if isinstance(declared, str):
            resolved["type"] = [declared, "null"]
        elif isinstance(declared, list) and "null" not in declared:
            resolved["type"] = declared + ["null"]
        if isinstance(resolved.get("enum"), list) and None not in resolved["enum"]:
            resolved["enum"] = resolved["enum"] + [None]

    bounds = INTEGER_FORMAT_BOUNDS.get(resolved.get("format"))
    if bounds is not None and "integer" in _declared_types(resolved):
        resolved.setdefault("minimum", bounds[0])
        resolved.setdefault("maximum", bounds[1])
    return resolved


# Coercion


def _declared_types(schema: Mapping[str, Any]) -> List[str]:
    declared = schema.get("type")
    if declared is None:
        return []
    return [declared] if isinstance(declared, str) else list(declared)


def _is_type(value: Any, kind: str) -> bool:
    if kind == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == "string":
        return isinstance(value, str)
    if kind == "boolean":
        return isinstance(value, bool)
    if kind == "array":
        return isinstance(value, list)
    if kind == "object":
        return isinstance(value, dict)
    if kind == "null":
        return value is None
    return False


def _convert(value: Any, kind: str) -> Any:
    if kind == "integer":
        if isinstance(value, str) and _INTEGER_RE.match(value.strip()):
            return int(value)
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, bool):
            return int(value)
    elif kind == "number":
        if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
            return int(value) if _INTEGER_RE.match(value.strip()) else float(value)
        if isinstance(value, bool):
            return int(value)
    elif kind == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
    elif kind == "boolean":
        if value in ("true", "false"):
            return value == "true"
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value in (0, 1):
            return bool(value)
    elif kind == "array":
        if not isinstance(value, (list, dict)):
            return [value]
    return _UNCHANGED


def coerce(schema: Mapping[str, Any], value: Any) -> Any:
    """Apply type coercion, defaults and property stripping to ``value``.

    Values that cannot be coerced are returned untouched so that validation
    reports them.
    """

    types = _declared_types(schema)
    if types and not any(_is_type(value, kind) for kind in types):
        for kind in types:
            converted = _convert(value, kind)
            if converted is not _UNCHANGED:
                value = converted
                break

    if isinstance(value, dict) and isinstance(schema.get("properties"), Mapping):
        properties = schema["properties"]
        result = {key: coerce(properties[key], item) for key, item in value.items() if key in properties}
        for key, sub in properties.items():
            if key not in result and isinstance(sub, Mapping) and "default" in sub:
                result[key] = copy.deepcopy(sub["default"])
        return result
    if isinstance(value, list) and isinstance(schema.get("items"), Mapping):
        return [coerce(schema["items"], item) for item in value]
    return value


def prune(schema: Optional[Mapping[str, Any]], value: Any) -> Any:
    """Drop properties ``schema`` does not declare, recursively."""

    if not schema:
        return value
    if isinstance(value, dict) and isinstance(schema.get("properties"), Mapping):
        properties = schema["properties"]
        return {key: prune(properties[key], item) for key, item in value.items() if key in properties}
    if isinstance(value, list) and isinstance(schema.get("items"), Mapping):
        return [prune(schema["items"], item) for item in value]
    return value


def _error_path(error: Any) -> str:
    return "/" + "/".join(str(part) for part in error.absolute_path)


class SchemaBinding:
    """A resolved schema for one request location, with its validator."""

    def __init__(self, location: str, schema: Dict[str, Any]) -> None:
        self.location = location
        self.schema = schema
        self.validator = Draft7Validator(schema)

    def bind(self, value: Any) -> Tuple[Any, List[Dict[str, str]]]:
        """Coerce ``value`` and return it together with any validation failures."""

        value = coerce(self.schema, value)
        failures = [
            {"location": self.location, "path": _error_path(error), "message": error.message}
            for error in self.validator.iter_errors(value)
        ]
        failures.sort(key=lambda failure: failure["path"])
        return value, failures


@dataclass(frozen=True)
class Operation:
    """One method + path pair declared in the interface document."""

    operation_id: str
    method: str
    path: str
    path_params: Optional[SchemaBinding] = None
    query: Optional[SchemaBinding] = None
    body: Optional[SchemaBinding] = None
    body_required: bool = False
    response_schema: Optional[Dict[str, Any]] = None
    query_arrays: Tuple[str, ...] = ()

    @property
    def route_key(self) -> Tuple[str, str]:
        return self.method, _TEMPLATE_RE.sub("{}", self.path)

    def shape_response(self, payload: Any) -> Any:
        return prune(self.response_schema, payload)


@dataclass(frozen=True)
class Contract:
    """The parsed interface document."""

    document: Dict[str, Any]
    operations: Tuple[Operation, ...]
    source: Optional[Path] = None

    @property
    def route_table(self) -> Dict[Tuple[str, str], str]:
        """Map ``(METHOD, path)`` to operation names."""

        return {(op.method, op.path): op.operation_id for op in self.operations}

    def operation(self, operation_id: str) -> Operation:
        for op in self.operations:
            if op.operation_id == operation_id:
                return op
        raise KeyError(operation_id)


def _parameters(document: Mapping[str, Any], *groups: Any) -> List[Dict[str, Any]]:
    merged: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for group in groups:
        for raw in group or []:
            param = _follow_pointer(document, raw["$ref"]) if "$ref" in raw else raw
            merged[(param["name"], param["in"])] = param
    return list(merged.values())


def _location_binding(
    document: Mapping[str, Any], params: List[Dict[str, Any]], location: str
) -> Optional[SchemaBinding]:
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param in params:
        if param["in"] != location:
            continue
        properties[param["name"]] = resolve_schema(document, param.get("schema", {}))
        if param.get("required") or location == "path":
            required.append(param["name"])
    if not properties:
        return None
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return SchemaBinding(location, schema)


def _json_schema(document: Mapping[str, Any], node: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not node:
        return None
    if "$ref" in node:
        node = _follow_pointer(document, node["$ref"])
    media = (node.get("content") or {}).get("application/json")
    if not media or "schema" not in media:
        return None
    return resolve_schema(document, media["schema"])


def parse_contract(document: Dict[str, Any], source: Optional[Path] = None) -> Contract:
    """Build a :class:`Contract` from an already-parsed interface document."""

    if not isinstance(document, dict) or not isinstance(document.get("paths"), dict):
        raise ContractError("Interface document declares no paths")

    operations: List[Operation] = []
    seen_ids: Dict[str, str] = {}
    seen_routes: Dict[Tuple[str, str], str] = {}
    for path, item in document["paths"].items():
        for method in HTTP_METHODS:
            declared = item.get(method)
            if declared is None:
                continue
            operation_id = declared.get("operationId")
            if not operation_id:
                raise ContractError(f"{method.upper()} {path} has no operationId")
            if operation_id in seen_ids:
                raise ContractError(f"Duplicate operationId {operation_id!r} ({seen_ids[operation_id]} and {path})")

            params = _parameters(document, item.get("parameters"), declared.get("parameters"))
            query = _location_binding(document, params, "query")
            request_body = declared.get("requestBody") or {}
            if "$ref" in request_body:
                request_body = _follow_pointer(document, request_body["$ref"])
            body_schema = _json_schema(document, request_body)
            responses = declared.get("responses") or {}
            success = responses.get("200", responses.get(200))

            operation = Operation(
                operation_id=operation_id,
                method=method.upper(),
                path=path,
                path_params=_location_binding(document, params, "path"),
                query=query,
                body=SchemaBinding("body", body_schema) if body_schema is not None else None,
                body_required=bool(request_body.get("required")),
                response_schema=_json_schema(document, success),
                query_arrays=tuple(
                    name
                    for name, sub in (query.schema["properties"].items() if query else ())
                    if "array" in _declared_types(sub)
                ),
            )
            if operation.route_key in seen_routes:
                raise ContractError(
                    f"{operation.method} {path} duplicates the route of {seen_routes[operation.route_key]!r}"
                )
            seen_ids[operation_id] = path
            seen_routes[operation.route_key] = operation_id
            operations.append(operation)

    return Contract(document=document, operations=tuple(operations), source=source)


def load_contract(path: Union[str, Path]) -> Contract:
    """Read and parse the interface document at ``path``."""

    source = Path(path)
    with source.open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle)
    contract = parse_contract(document, source)
    logger.info("Loaded %d operations from %s", len(contract.operations), source)
    return contract


# Dispatch

Handler = Callable[[OperationInput, Any], Any]
ScopeFactory = Callable[[], AbstractContextManager]


class ContractDispatcher:
    """Bind every operation of a :class:`Contract` to its registered handler.

    ``scope_factory`` returns a context manager yielding whatever the
    handlers need (services bound to a database session); it is entered once
    per request, in the worker thread that runs the handler.
    """

    def __init__(self, contract: Contract, handlers: Mapping[str, Handler], scope_factory: ScopeFactory) -> None:
        self.contract = contract
        self.handlers = dict(handlers)
        self.scope_factory = scope_factory

    def check_handlers(self) -> None:
        """Fail unless every declared operation has a handler."""

        missing = sorted(op.operation_id for op in self.contract.operations if op.operation_id not in self.handlers)
        if missing:
            raise ContractError(f"No handler registered for operation(s): {', '.join(missing)}")
        declared = {op.operation_id for op in self.contract.operations}
        for name in sorted(set(self.handlers) - declared):
            logger.warning("Handler %r is registered but not declared in the interface document", name)

    def mount(self, app: FastAPI) -> None:
        """Register one route per operation, literal paths before templated ones."""

        self.check_handlers()
        for op in sorted(self.contract.operations, key=lambda o: len(_TEMPLATE_RE.findall(o.path))):
            app.add_api_route(
                op.path,
                self._endpoint(op, self.handlers[op.operation_id]),
                methods=[op.method],
                name=op.operation_id,
                include_in_schema=False,
            )
            logger.debug("Bound %s %s -> %s", op.method, op.path, op.operation_id)

    async def bind_request(self, operation: Operation, request: Request) -> OperationInput:
        """Coerce and validate ``request`` against ``operation``.

        Raises :class:`BadRequestError` listing every failure.
        """

        failures: List[Dict[str, str]] = []
        path_params: Dict[str, Any] = dict(request.path_params)
        query: Dict[str, Any] = {}
        body: Any = None

        if operation.path_params is not None:
            path_params, found = operation.path_params.bind(path_params)
            failures.extend(found)

        if operation.query is not None:
            raw_query: Dict[str, Any] = {}
            for name in operation.query.schema["properties"]:
                if name in request.query_params:
                    values = request.query_params.getlist(name)
                    raw_query[name] = values if name in operation.query_arrays else values[-1]
            query, found = operation.query.bind(raw_query)
            failures.extend(found)

        if operation.body is not None:
            raw = await request.body()
            if raw.strip():
                try:
                    body = json.loads(raw)
                except ValueError as exc:
                    raise BadRequestError("Request body is not valid JSON", {"error": str(exc)}) from exc
            if body is None:
                if operation.body_required:
                    failures.append({"location": "body", "path": "/", "message": "Request body is required"})
            else:
                body, found = operation.body.bind(body)
                failures.extend(found)

        if failures:
            raise BadRequestError("Request validation failed", failures)
        return OperationInput(path_params=path_params, query=query, body=body)

    def _invoke(self, handler: Handler, payload: OperationInput) -> Any:
        with self.scope_factory() as scope:
            return handler(payload, scope)

    def _endpoint(self, operation: Operation, handler: Handler) -> Callable[[Request], Any]:
        async def endpoint(request: Request) -> Response:
            try:
                payload = await self.bind_request(operation, request)
                result = await run_in_threadpool(self._invoke, handler, payload)
                content = operation.shape_response(result)
            except Exception as exc:
                return translate_error(exc)
            return JSONResponse(status_code=status.HTTP_200_OK, content=content)

        endpoint.__name__ = operation.operation_id
        return endpoint
