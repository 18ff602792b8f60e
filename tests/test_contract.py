"""Tests for interface-document loading, coercion and route binding."""

from __future__ import annotations

import copy
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Dict, List

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from petstore.contract import (
    ContractDispatcher,
    ContractError,
    OperationInput,
    coerce,
    load_contract,
    parse_contract,
    prune,
    resolve_schema,
)
from petstore.handlers import HANDLERS
from petstore.main import PACKAGE_DIR

CONTRACT_PATH = PACKAGE_DIR / "contracts" / "petstore.yaml"

WIDGETS: Dict[str, Any] = {
    "openapi": "3.0.3",
    "info": {"title": "Widgets", "version": "1"},
    "paths": {
        "/widget": {
            "post": {
                "operationId": "addWidget",
                "requestBody": {
                    "required": True,
                    "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Widget"}}},
                },
                "responses": {
                    "200": {
                        "description": "ok",
                        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Widget"}}},
                    }
                },
            }
        },
        "/widget/search": {
            "get": {
                "operationId": "searchWidgets",
                "parameters": [
                    {"name": "limit", "in": "query", "schema": {"type": "integer", "default": 10}},
                    {"name": "tag", "in": "query", "schema": {"type": "array", "items": {"type": "string"}}},
                ],
                "responses": {"200": {"description": "ok"}},
            }
        },
        "/widget/{widgetId}": {
            "get": {
                "operationId": "getWidget",
                "parameters": [
                    {"name": "widgetId", "in": "path", "required": True, "schema": {"type": "integer"}}
                ],
                "responses": {"200": {"description": "ok"}},
            }
        },
    },
    "components": {
        "schemas": {
            "Widget": {
                "type": "object",
                "required": ["name"],
                "properties": {
                    "id": {"type": "integer"},
                    "name": {"type": "string"},
                    "size": {"type": "number", "default": 1},
                    "active": {"type": "boolean"},
                },
            }
        }
    },
}


def _widget_app(calls: List[OperationInput]) -> TestClient:
    def add_widget(request: OperationInput, scope: Any) -> Dict[str, Any]:
        calls.append(request)
        return {**request.body, "id": 1, "secret": "hidden"}

    def search_widgets(request: OperationInput, scope: Any) -> Dict[str, Any]:
        calls.append(request)
        return request.query

    def get_widget(request: OperationInput, scope: Any) -> Dict[str, Any]:
        calls.append(request)
        return {"id": request.path_params["widgetId"]}

    app = FastAPI()
    handlers = {"addWidget": add_widget, "searchWidgets": search_widgets, "getWidget": get_widget}
    ContractDispatcher(parse_contract(copy.deepcopy(WIDGETS)), handlers, nullcontext).mount(app)
    return TestClient(app)


def test_bundled_contract_declares_the_http_surface() -> None:
    contract = load_contract(CONTRACT_PATH)
    assert contract.route_table == {
        ("POST", "/pet"): "addPet",
        ("PUT", "/pet"): "updatePet",
        ("GET", "/pet/findByStatus"): "findPetsByStatus",
        ("GET", "/pet/listAll"): "getAllPets",
        ("GET", "/pet/{petId}"): "getPetById",
        ("POST", "/pet/{petId}"): "updatePetWithForm",
        ("DELETE", "/pet/{petId}"): "deletePet",
        ("POST", "/category"): "addCategory",
        ("PUT", "/category"): "updateCategory",
        ("GET", "/category/listAll"): "getAllCategories",
        ("GET", "/category/{categoryId}"): "getCategoryById",
        ("DELETE", "/category/{categoryId}"): "deleteCategory",
        ("GET", "/category/{categoryId}/pets"): "getCategoryPets",
    }


def test_every_bundled_operation_has_a_handler() -> None:
    contract = load_contract(CONTRACT_PATH)
    ContractDispatcher(contract, HANDLERS, nullcontext).check_handlers()


def test_path_level_parameters_are_inherited() -> None:
    operation = load_contract(CONTRACT_PATH).operation("deletePet")
    assert operation.path_params is not None
    assert operation.path_params.schema["required"] == ["petId"]
    assert operation.path_params.schema["properties"]["petId"]["type"] == "integer"


def test_resolve_schema_inlines_refs_and_nullable_siblings() -> None:
    contract = load_contract(CONTRACT_PATH)
    pet = resolve_schema(contract.document, {"$ref": "#/components/schemas/Pet"})
    assert pet["required"] == ["name"]
    assert pet["properties"]["category"]["type"] == ["object", "null"]
    assert pet["properties"]["category"]["properties"]["id"]["type"] == "integer"


def test_resolve_schema_bounds_integer_formats() -> None:
    contract = load_contract(CONTRACT_PATH)
    category_id = resolve_schema(contract.document, {"$ref": "#/components/schemas/Category"})["properties"]["id"]
    assert (category_id["minimum"], category_id["maximum"]) == (-(2**63), 2**63 - 1)

    small = resolve_schema({}, {"type": "integer", "format": "int32", "minimum": 1})
    assert (small["minimum"], small["maximum"]) == (1, 2**31 - 1)
    assert "maximum" not in resolve_schema({}, {"type": "string", "format": "int64"})


def test_resolve_schema_rejects_cycles() -> None:
    document = {"components": {"schemas": {"Node": {"type": "object", "properties": {"next": {"$ref": "#/components/schemas/Node"}}}}}}
    with pytest.raises(ContractError):
        resolve_schema(document, {"$ref": "#/components/schemas/Node"})


def test_coerce_converts_declared_types() -> None:
    schema = {
        "type": "object",
        "properties": {
            "count": {"type": "integer"},
            "ratio": {"type": "number"},
            "flag": {"type": "boolean"},
            "label": {"type": "string"},
            "tags": {"type": "array", "items": {"type": "integer"}},
        },
    }
    value = {"count": "42", "ratio": "0.5", "flag": "true", "label": 7, "tags": "3"}
    assert coerce(schema, value) == {"count": 42, "ratio": 0.5, "flag": True, "label": "7", "tags": [3]}


def test_coerce_leaves_unconvertible_values_for_validation() -> None:
    assert coerce({"type": "integer"}, "abc") == "abc"
    assert coerce({"type": "integer"}, "1.5") == "1.5"


def test_coerce_applies_defaults_and_strips_unknown_properties() -> None:
    schema = {
        "type": "object",
        "properties": {"name": {"type": "string"}, "status": {"type": "string", "default": "available"}},
    }
    assert coerce(schema, {"name": "Rex", "owner": "me"}) == {"name": "Rex", "status": "available"}


def test_prune_drops_undeclared_response_fields() -> None:
    schema = {
        "type": "array",
        "items": {"type": "object", "properties": {"id": {"type": "integer"}, "name": {"type": "string"}}},
    }
    assert prune(schema, [{"id": 1, "name": "Dogs", "created_at": "x"}]) == [{"id": 1, "name": "Dogs"}]
    assert prune(None, {"anything": 1}) == {"anything": 1}


def test_missing_handler_fails_at_startup() -> None:
    contract = parse_contract(copy.deepcopy(WIDGETS))
    dispatcher = ContractDispatcher(contract, {"addWidget": lambda request, scope: {}}, nullcontext)
    with pytest.raises(ContractError, match="getWidget, searchWidgets"):
        dispatcher.mount(FastAPI())


def test_duplicate_routes_are_rejected() -> None:
    document = copy.deepcopy(WIDGETS)
    document["paths"]["/widget/{otherId}"] = {
        "get": {"operationId": "getOtherWidget", "responses": {"200": {"description": "ok"}}}
    }
    with pytest.raises(ContractError, match="duplicates"):
        parse_contract(document)


def test_duplicate_operation_ids_are_rejected() -> None:
    document = copy.deepcopy(WIDGETS)
    document["paths"]["/widget"]["put"] = {"operationId": "addWidget", "responses": {}}
    with pytest.raises(ContractError, match="Duplicate operationId"):
        parse_contract(document)


def test_operations_need_an_id() -> None:
    document = copy.deepcopy(WIDGETS)
    del document["paths"]["/widget"]["post"]["operationId"]
    with pytest.raises(ContractError, match="no operationId"):
        parse_contract(document)


def test_document_without_paths_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("openapi: 3.0.3\n", encoding="utf-8")
    with pytest.raises(ContractError):
        load_contract(path)


def test_body_is_coerced_stripped_and_response_filtered() -> None:
    calls: List[OperationInput] = []
    client = _widget_app(calls)
    resp = client.post("/widget", json={"name": 5, "active": "false", "colour": "red"})
    assert resp.status_code == 200
    assert calls[0].body == {"name": "5", "active": False, "size": 1}
    assert resp.json() == {"name": "5", "active": False, "size": 1, "id": 1}


def test_schema_failure_is_bad_request_and_skips_handler() -> None:
    calls: List[OperationInput] = []
    client = _widget_app(calls)
    resp = client.post("/widget", json={"size": "large"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "BAD_REQUEST"
    assert body["message"] == "Request validation failed"
    assert {(d["location"], d["path"]) for d in body["details"]} == {("body", "/"), ("body", "/size")}
    assert calls == []


def test_missing_and_malformed_bodies() -> None:
    calls: List[OperationInput] = []
    client = _widget_app(calls)
    resp = client.post("/widget")
    assert resp.status_code == 400
    assert resp.json()["details"] == [{"location": "body", "path": "/", "message": "Request body is required"}]

    resp = client.post("/widget", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Request body is not valid JSON"
    assert calls == []


def test_query_parameters_get_defaults_coercion_and_arrays() -> None:
    calls: List[OperationInput] = []
    client = _widget_app(calls)
    resp = client.get("/widget/search", params={"tag": ["a", "b"], "unknown": "x"})
    assert resp.status_code == 200
    assert resp.json() == {"limit": 10, "tag": ["a", "b"]}

    resp = client.get("/widget/search", params={"limit": "3"})
    assert resp.json() == {"limit": 3}

    resp = client.get("/widget/search", params={"limit": "many"})
    assert resp.status_code == 400
    assert resp.json()["details"][0]["location"] == "query"


def test_path_parameters_are_coerced_and_literal_paths_win() -> None:
    calls: List[OperationInput] = []
    client = _widget_app(calls)
    assert client.get("/widget/17").json() == {"id": 17}
    assert client.get("/widget/search").status_code == 200

    resp = client.get("/widget/seventeen")
    assert resp.status_code == 400
    assert resp.json()["details"][0] == {
        "location": "path",
        "path": "/widgetId",
        "message": "'seventeen' is not of type 'integer'",
    }


def test_handler_failures_go_through_the_translator() -> None:
    def explode(request: OperationInput, scope: Any) -> Any:
        raise RuntimeError("db password is hunter2")

    app = FastAPI()
    handlers = {"addWidget": explode, "searchWidgets": explode, "getWidget": explode}
    ContractDispatcher(parse_contract(copy.deepcopy(WIDGETS)), handlers, nullcontext).mount(app)
    resp = TestClient(app).get("/widget/1")
    assert resp.status_code == 500
    assert resp.json() == {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
