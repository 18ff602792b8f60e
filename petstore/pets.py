"""Business rules for pets."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import database
from .categories import is_valid_id
from .database import PetRecord, RecordNotFoundError
from .errors import BadRequestError, NotFoundError, ValidationError, storage_guard
from .models import DEFAULT_PET_STATUS, PET_STATUSES, PetCreate, PetUpdate

logger = logging.getLogger(__name__)


class PetService:
    """CRUD and integrity rules for :class:`~petstore.database.PetRecord`.

    Pets are always returned joined with their category.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _check_id(self, pet_id: Any) -> int:
        if not is_valid_id(pet_id):
            raise BadRequestError("Invalid pet ID", {"id": pet_id})
        return pet_id

    def _check_name(self, name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Pet name is required", {"name": name})
        return name

    def _check_status(self, status: Any) -> str:
        if status not in PET_STATUSES:
            raise ValidationError("Invalid status value", {"status": status, "validStatuses": list(PET_STATUSES)})
        return status

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        if not is_valid_id(category_id) or database.get_category(self.session, category_id) is None:
            raise ValidationError("Category not found", {"categoryId": category_id})

    def _load(self, pet_id: int) -> PetRecord:
        pet = database.get_pet(self.session, pet_id, with_category=True)
        if pet is None:
            raise NotFoundError("Pet not found", {"id": pet_id})
        return pet

    @storage_guard
    def create(self, data: PetCreate) -> PetRecord:
        """Create a pet, defaulting its status to ``available``."""

        name = self._check_name(data.name)
        self._check_category(data.category_id)
        status = DEFAULT_PET_STATUS if data.status is None else self._check_status(data.status)
        try:
            pet = database.insert_pet(self.session, name, status, data.category_id)
        except IntegrityError as exc:
            # The category vanished between the check and the insert.
            raise ValidationError("Category not found", {"categoryId": data.category_id}) from exc
        logger.info("Created pet %s (%r, %s)", pet.id, pet.name, pet.status)
        return self._load(pet.id)

    @storage_guard
    def update(self, data: PetUpdate) -> PetRecord:
        """Apply the fields supplied in ``data``; omitted fields stay unchanged."""

        pet_id = self._check_id(data.id)
        if database.get_pet(self.session, pet_id) is None:
            raise NotFoundError("Pet not found", {"id": pet_id})

        supplied = data.model_fields_set
        values: Dict[str, Any] = {}
        if "name" in supplied and data.name is not None:
            values["name"] = self._check_name(data.name)
        if "status" in supplied and data.status is not None:
            values["status"] = self._check_status(data.status)
        if "category_id" in supplied:
            self._check_category(data.category_id)
            values["category_id"] = data.category_id

        try:
            database.update_pet(self.session, pet_id, values)
        except RecordNotFoundError as exc:
            raise NotFoundError("Pet not found", {"id": pet_id}) from exc
        except IntegrityError as exc:
            raise ValidationError("Category not found", {"categoryId": data.category_id}) from exc
        logger.info("Updated pet %s (%s)", pet_id, ", ".join(sorted(values)) or "no fields")
        return self._load(pet_id)

    @storage_guard
    def find_by_status(self, status: Optional[str] = DEFAULT_PET_STATUS) -> List[PetRecord]:
        """Return pets in ``status``, newest first.

        An unknown status is a malformed query, hence BadRequest rather than
        the Validation error raised for the same value in a request body.
        """

        if status is None:
            status = DEFAULT_PET_STATUS
        if status not in PET_STATUSES:
            raise BadRequestError("Invalid status value", {"status": status, "validStatuses": list(PET_STATUSES)})
        return database.list_pets(self.session, status=status, with_category=True)

    @storage_guard
    def get_by_id(self, pet_id: Any) -> PetRecord:
        return self._load(self._check_id(pet_id))

    @storage_guard
    def delete(self, pet_id: Any) -> None:
        pet_id = self._check_id(pet_id)
        if database.get_pet(self.session, pet_id) is None:
            raise NotFoundError("Pet not found", {"id": pet_id})
        try:
            database.delete_pet(self.session, pet_id)
        except RecordNotFoundError as exc:
            raise NotFoundError("Pet not found", {"id": pet_id}) from exc
        logger.info("Deleted pet %s", pet_id)

    @storage_guard
    def list_all(self) -> List[PetRecord]:
        return database.list_pets(self.session, with_category=True)
