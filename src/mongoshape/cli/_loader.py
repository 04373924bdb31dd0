"""Model loader: import a Python module and discover collection schemas."""

from __future__ import annotations

import importlib
import sys
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel


def load_collections(
    models: str | None = None,
    models_path: str | None = None,
) -> dict[str, type[BaseModel]]:
    """Load collection models from a Python module.

    A module-level ``COLLECTIONS`` mapping of collection name to model wins.
    Otherwise every pydantic model class defined in the module is a
    collection named after the class.

    Args:
        models: Dotted Python import path (e.g. 'myapp.models')
        models_path: Filesystem path to a Python file

    Returns:
        Models keyed by collection name
    """
    if models_path:
        path = Path(models_path).resolve()
        if not path.exists():
            raise FileNotFoundError(f"Models path not found: {models_path}")
        # Add parent to sys.path so import works
        parent = str(path.parent)
        if parent not in sys.path:
            sys.path.insert(0, parent)
        module = importlib.import_module(path.stem)
    elif models:
        module = importlib.import_module(models)
    else:
        raise ValueError("One of --models or --models-path is required")

    declared = getattr(module, "COLLECTIONS", None)
    if declared is not None:
        if not isinstance(declared, Mapping):
            raise TypeError(f"{module.__name__}.COLLECTIONS must be a mapping")
        return dict(declared)

    collections: dict[str, type[BaseModel]] = {}
    for attr_name in dir(module):
        obj = getattr(module, attr_name)
        if (
            isinstance(obj, type)
            and issubclass(obj, BaseModel)
            and obj is not BaseModel
            and obj.__module__ == module.__name__
        ):
            collections[obj.__name__] = obj
    return collections
