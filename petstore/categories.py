"""Business rules for categories."""

from __future__ import annotations

import logging
from typing import Any, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import database
from .database import CategoryRecord, RecordNotFoundError
from .errors import BadRequestError, NotFoundError, ValidationError, storage_guard
from .models import CategoryCreate

logger = logging.getLogger(__name__)

DUPLICATE_NAME_MESSAGE = "Category with this name already exists"
MAX_ID = 2**63 - 1


def is_valid_id(value: Any) -> bool:
    """Return whether ``value`` is a positive integer identifier that fits a 64-bit column."""

    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= MAX_ID


def _require_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Category name is required", {"name": name})
    return name.strip()


class CategoryService:
    """CRUD and integrity rules for :class:`~petstore.database.CategoryRecord`."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _check_id(self, category_id: Any) -> int:
        if not is_valid_id(category_id):
            raise BadRequestError("Invalid category ID", {"id": category_id})
        return category_id

    @storage_guard
    def list_all(self) -> List[CategoryRecord]:
        return database.list_categories(self.session)

    @storage_guard
    def get_by_id(self, category_id: Any) -> CategoryRecord:
        category_id = self._check_id(category_id)
        category = database.get_category(self.session, category_id)
        if category is None:
            raise NotFoundError("Category not found", {"id": category_id})
        return category

    @storage_guard
    def create(self, data: CategoryCreate) -> CategoryRecord:
        """Create a category with a unique, trimmed name."""

        name = _require_name(data.name)
        if database.find_category_by_name(self.session, name) is not None:
            raise ValidationError(DUPLICATE_NAME_MESSAGE, {"name": name})
        try:
            category = database.insert_category(self.session, name)
        except IntegrityError as exc:
            # Lost the race against a concurrent insert.
            raise ValidationError(DUPLICATE_NAME_MESSAGE, {"name": name}) from exc
        logger.info("Created category %s (%r)", category.id, category.name)
        return category

    @storage_guard
    def update(self, category_id: Any, data: CategoryCreate) -> CategoryRecord:
        """Rename a category, keeping names unique."""

        category_id = self._check_id(category_id)
        name = _require_name(data.name)
        if database.get_category(self.session, category_id) is None:
            raise NotFoundError("Category not found", {"id": category_id})
        if database.find_category_by_name(self.session, name, exclude_id=category_id) is not None:
            raise ValidationError(DUPLICATE_NAME_MESSAGE, {"name": name})
        try:
            database.update_category(self.session, category_id, name)
        except RecordNotFoundError as exc:
            raise NotFoundError("Category not found", {"id": category_id}) from exc
        except IntegrityError as exc:
            raise ValidationError(DUPLICATE_NAME_MESSAGE, {"name": name}) from exc
        logger.info("Renamed category %s to %r", category_id, name)
        return self.get_by_id(category_id)

    @storage_guard
    def delete(self, category_id: Any) -> None:
        """Delete a category that no pet references."""

        category_id = self._check_id(category_id)
        if database.get_category(self.session, category_id) is None:
            raise NotFoundError("Category not found", {"id": category_id})
        pet_count = database.count_category_pets(self.session, category_id)
        if pet_count > 0:
            raise ValidationError(
                f"Cannot delete category with {pet_count} associated pet(s). "
                "Please remove or reassign pets first.",
                {"id": category_id, "petCount": pet_count},
            )
        try:
            database.delete_category(self.session, category_id)
        except RecordNotFoundError as exc:
            raise NotFoundError("Category not found", {"id": category_id}) from exc
        logger.info("Deleted category %s", category_id)

    @storage_guard
    def get_with_pets(self, category_id: Any) -> CategoryRecord:
        category_id = self._check_id(category_id)
        category = database.get_category(self.session, category_id, with_pets=True)
        if category is None:
            raise NotFoundError("Category not found", {"id": category_id})
        return category
