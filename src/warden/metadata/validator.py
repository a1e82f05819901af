"""
metadata/validator.py: validation of warden YAML schema documents.

Two passes:

1. the document is checked against ``schemas/schema.schema.json`` (JSON Schema,
   draft 2020-12),
2. a structurally valid document is resolved with ``SchemaLoader`` so model
   invariants (single base, back-links, id fields, discriminators) are reported
   as findings too.

Usage:
    from warden.metadata.validator import validate_schema_file

    for issue in validate_schema_file(Path("schema.yaml")):
        print(issue)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

from warden.errors import UsageError
from warden.metadata.loader import LoadedSchema, SchemaLoader
from warden.policy.templates import iter_references

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Public data types
# ---------------------------------------------------------------------------

_SCHEMA_PATH = Path(__file__).parent / "schemas" / "schema.schema.json"


@dataclass
class SchemaIssue:
    """A single validation finding for a schema document."""

    file: Path
    message: str
    path: str = ""           # location within the document, e.g. "models/Post/fields"
    severity: str = "error"  # "error" | "warning"

    def __str__(self) -> str:
        loc = f" at {self.path}" if self.path else ""
        return f"[{self.severity.upper()}] {self.file}{loc}: {self.message}"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _load_json_schema() -> dict[str, Any]:
    with _SCHEMA_PATH.open() as fh:
        return json.load(fh)


def _json_path(error: ValidationError) -> str:
    """Convert a jsonschema ValidationError path to a readable string."""
    parts = []
    for p in error.absolute_path:
        if isinstance(p, int):
            parts.append(f"[{p}]")
        else:
            parts.append(str(p))
    return "/".join(parts).replace("/[", "[")


def _auth_reference_issues(file: Path, loaded: LoadedSchema) -> list[SchemaIssue]:
    """Warn about ``$auth`` paths whose first segment isn't a field of the auth model."""
    auth_model = loaded.policy.auth_model
    if not auth_model:
        return []
    auth_fields = loaded.meta.get_fields(auth_model)
    issues = []
    for model, location, guard in loaded.policy.iter_guards():
        for ref in iter_references(guard):
            head = ref.split(".", 1)[0]
            if head not in auth_fields:
                issues.append(
                    SchemaIssue(
                        file=file,
                        message=f"$auth reference '{ref}' is not a field of '{auth_model}'",
                        path=f"models/{model}/{location}",
                        severity="warning",
                    )
                )
    return issues


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_document(doc: Any, file: Path) -> list[SchemaIssue]:
    """
    Validate a parsed schema document.

    Args:
        doc:  The parsed YAML document.
        file: Path reported in findings.

    Returns:
        A list of :class:`SchemaIssue` objects (empty on success).
    """
    if doc is None:
        return [SchemaIssue(file=file, message="File is empty or contains only whitespace")]

    validator = Draft202012Validator(_load_json_schema())
    issues = [
        SchemaIssue(file=file, message=error.message, path=_json_path(error))
        for error in sorted(validator.iter_errors(doc), key=_json_path)
    ]
    if issues:
        return issues

    try:
        loaded = SchemaLoader(file).load_document(doc)
    except UsageError as exc:
        return [SchemaIssue(file=file, message=exc.message)]
    return _auth_reference_issues(file, loaded)


def validate_schema_file(path: Path, *, strict: bool = False) -> list[SchemaIssue]:
    """
    Validate a YAML schema file.

    Args:
        path:   Path to the YAML file.
        strict: If ``True``, warnings are escalated to errors.

    Returns:
        A list of :class:`SchemaIssue` objects (empty on success).
    """
    try:
        with path.open() as fh:
            doc = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        return [SchemaIssue(file=path, message=f"YAML parse error: {exc}")]

    issues = validate_document(doc, path)
    if strict:
        for issue in issues:
            if issue.severity == "warning":
                issue.severity = "error"
    logger.debug("Validated %s: %d issue(s)", path, len(issues))
    return issues
