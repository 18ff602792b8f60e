"""Operation handlers, registered by the operation names of the interface document."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, List, Optional

from .categories import CategoryService
from .contract import Handler, OperationInput
from .database import CategoryRecord, Database, PetRecord
from .errors import BadRequestError
from .models import CategoryCreate, CategoryOut, CategoryWithPetsOut, MessageResponse, PetCreate, PetOut, PetUpdate
from .pets import PetService

HANDLERS: Dict[str, Handler] = {}


def operation(operation_id: str) -> Callable[[Handler], Handler]:
    """Register the decorated function as the handler for ``operation_id``."""

    def register(func: Handler) -> Handler:
        if operation_id in HANDLERS:
            raise ValueError(f"Handler for {operation_id!r} already registered")
        HANDLERS[operation_id] = func
        return func

    return register


@dataclass
class Services:
    """Services bound to the session of the current request."""

    pets: PetService
    categories: CategoryService


@contextmanager
def service_scope(db: Database) -> Generator[Services, None, None]:
    """Open a session on ``db`` and yield services bound to it."""

    with db.session_scope() as session:
        yield Services(pets=PetService(session), categories=CategoryService(session))


# Formatting


def format_category(category: CategoryRecord) -> Dict[str, Any]:
    return CategoryOut.model_validate(category, from_attributes=True).model_dump()


def format_pet(pet: PetRecord) -> Dict[str, Any]:
    """Entity fields only; the category is embedded or omitted."""

    return PetOut.model_validate(pet, from_attributes=True).model_dump(exclude_none=True)


def _category_ref(body: Dict[str, Any]) -> Optional[int]:
    category = body.get("category")
    if not category:
        return None
    return category.get("id")


def _require_body_id(body: Dict[str, Any], entity: str) -> Any:
    if body.get("id") is None:
        raise BadRequestError(f"{entity} ID is required", {"id": None})
    return body["id"]


# Pets


@operation("addPet")
def add_pet(request: OperationInput, services: Services) -> Dict[str, Any]:
    body = request.body
    pet = services.pets.create(
        PetCreate(name=body.get("name"), status=body.get("status"), category_id=_category_ref(body))
    )
    return format_pet(pet)


@operation("updatePet")
def update_pet(request: OperationInput, services: Services) -> Dict[str, Any]:
    body = request.body
    fields: Dict[str, Any] = {"id": _require_body_id(body, "Pet")}
    for key in ("name", "status"):
        if key in body:
            fields[key] = body[key]
    if "category" in body:
        fields["category_id"] = _category_ref(body)
    return format_pet(services.pets.update(PetUpdate(**fields)))


@operation("findPetsByStatus")
def find_pets_by_status(request: OperationInput, services: Services) -> List[Dict[str, Any]]:
    return [format_pet(pet) for pet in services.pets.find_by_status(request.query.get("status"))]


@operation("getAllPets")
def get_all_pets(request: OperationInput, services: Services) -> List[Dict[str, Any]]:
    return [format_pet(pet) for pet in services.pets.list_all()]


@operation("getPetById")
def get_pet_by_id(request: OperationInput, services: Services) -> Dict[str, Any]:
    return format_pet(services.pets.get_by_id(request.path_params["petId"]))


@operation("updatePetWithForm")
def update_pet_with_form(request: OperationInput, services: Services) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"id": request.path_params["petId"]}
    fields.update({key: value for key, value in request.query.items() if value is not None})
    return format_pet(services.pets.update(PetUpdate(**fields)))


@operation("deletePet")
def delete_pet(request: OperationInput, services: Services) -> Dict[str, Any]:
    services.pets.delete(request.path_params["petId"])
    return MessageResponse(message="Pet deleted").model_dump()


# Categories


@operation("addCategory")
def add_category(request: OperationInput, services: Services) -> Dict[str, Any]:
    category = services.categories.create(CategoryCreate(name=request.body.get("name")))
    return format_category(category)


@operation("updateCategory")
def update_category(request: OperationInput, services: Services) -> Dict[str, Any]:
    body = request.body
    category_id = _require_body_id(body, "Category")
    category = services.categories.update(category_id, CategoryCreate(name=body.get("name")))
    return format_category(category)


@operation("getAllCategories")
def get_all_categories(request: OperationInput, services: Services) -> List[Dict[str, Any]]:
    return [format_category(category) for category in services.categories.list_all()]


@operation("getCategoryById")
def get_category_by_id(request: OperationInput, services: Services) -> Dict[str, Any]:
    return format_category(services.categories.get_by_id(request.path_params["categoryId"]))


@operation("getCategoryPets")
def get_category_pets(request: OperationInput, services: Services) -> Dict[str, Any]:
    category = services.categories.get_with_pets(request.path_params["categoryId"])
    return CategoryWithPetsOut.model_validate(category, from_attributes=True).model_dump(exclude_none=True)


@operation("deleteCategory")
def delete_category(request: OperationInput, services: Services) -> Dict[str, Any]:
    services.categories.delete(request.path_params["categoryId"])
    return MessageResponse(message="Category deleted").model_dump()
