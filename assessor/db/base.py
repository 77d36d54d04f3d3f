"""ORM base. Feature model modules register themselves on import."""

from __future__ import annotations

import importlib
import logging

from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base mold."""
    pass


_MODEL_MODULES = (
    "assessor.features.assessments.models",
    "assessor.features.certificates.models",
)


def load_models() -> None:
    for name in _MODEL_MODULES:
        importlib.import_module(name)


def list_models():  # pragma: no cover
    return [cls.__name__ for cls in Base.registry._class_registry.values() if hasattr(cls, "__table__")]


__all__ = ["Base", "list_models", "load_models"]
