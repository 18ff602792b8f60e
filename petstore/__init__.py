"""Petstore API package.

The package exposes a FastAPI application whose pet and category routes are
generated from the interface document under ``petstore/contracts/petstore.yaml``.
Run it with uvicorn:

>>> uvicorn petstore.main:app --reload

or with ``python -m petstore``.
"""

from .main import app, create_app  # noqa: F401
