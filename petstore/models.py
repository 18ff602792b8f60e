"""Pydantic models for service inputs and response payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

PET_STATUSES: Tuple[str, ...] = ("available", "pending", "sold")
DEFAULT_PET_STATUS = "available"


class CategoryCreate(BaseModel):
    """Input for creating or renaming a category."""

    name: Optional[str] = Field(None, description="Category name, trimmed before persistence")


class PetCreate(BaseModel):
    """Input for creating a pet.

    Values are deliberately loose: the pet service applies the business rules
    and raises typed errors for anything out of range.
    """

    name: Optional[str] = None
    status: Optional[str] = None
    category_id: Optional[int] = None


class PetUpdate(BaseModel):
    """Input for updating a pet.

    Only fields present in ``model_fields_set`` are applied. Passing
    ``category_id=None`` explicitly detaches the pet from its category.
    """

    id: Any
    name: Optional[str] = None
    status: Optional[str] = None
    category_id: Optional[int] = None


class CategoryOut(BaseModel):
    """Category as returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class PetOut(BaseModel):
    """Pet as returned to clients, with its category embedded."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    status: Optional[str] = None
    category: Optional[CategoryOut] = None


class CategoryWithPetsOut(CategoryOut):
    """Category with the pets that reference it."""

    pets: List[PetOut] = Field(default_factory=list)


class MessageResponse(BaseModel):
    """Acknowledgement for deletions."""

    message: str


class HealthResponse(BaseModel):
    """Liveness probe result."""

    status: Literal["healthy", "unhealthy"]
    timestamp: datetime
    database: Literal["connected", "disconnected"]


class ServiceInfo(BaseModel):
    """Static service metadata served from the root endpoint."""

    name: str
    version: str
    description: str
    documentation: str
    endpoints: Dict[str, str]
