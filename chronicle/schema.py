"""JSON Schema validation for persisted ledger documents.

Schemas live in ``chronicle/schemas``. Every ``*.schema.json`` file there is
registered under its ``$id`` so documents can ``$ref`` shared definitions
(``common.schema.json``) across files.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from chronicle.core import PACKAGE_ROOT, load_json

SCHEMAS_DIR = PACKAGE_ROOT / "schemas"
STATE_SCHEMA = SCHEMAS_DIR / "state.schema.json"


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Registry of every schema in ``schemas_dir``, keyed by ``$id``."""
    if not schemas_dir.is_dir():
        return Registry()

    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        if not isinstance(schema, dict):
            continue
        schema_id = schema.get("$id") or f"https://chronicle.local/schemas/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))

    return Registry().with_resources(resources)


@lru_cache(maxsize=8)
def schema_validator(schema_path: Path = STATE_SCHEMA) -> Draft202012Validator:
    schema = load_json(schema_path)
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_against_schema(obj: Any, schema_path: Path = STATE_SCHEMA) -> List[str]:
    """Validate ``obj``. Returns error messages (empty if valid)."""
    validator = schema_validator(schema_path)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
