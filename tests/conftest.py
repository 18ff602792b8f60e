"""Shared fixtures: an in-memory database per test and a client bound to it."""

from __future__ import annotations

import dataclasses
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from petstore.categories import CategoryService
from petstore.database import Database
from petstore.main import create_app, get_settings
from petstore.pets import PetService


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def session(db: Database) -> Generator[Session, None, None]:
    session = db.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def categories(session: Session) -> CategoryService:
    return CategoryService(session)


@pytest.fixture
def pets(session: Session) -> PetService:
    return PetService(session)


@pytest.fixture
def client(db: Database) -> Generator[TestClient, None, None]:
    settings = dataclasses.replace(get_settings(), database_url="sqlite://")
    app = create_app(settings, db)
    with TestClient(app) as test_client:
        yield test_client
