"""Schema checks for model YAML files.

Every file under ``entities/`` and ``services/`` is checked against the
JSON Schemas in ``servforge/metadata/schemas`` before the loader builds
definitions from it. Findings are collected, not raised, so a single
run reports everything wrong with a model directory:

    for issue in validate_model_dir(Path("model")):
        print(issue)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import cache
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as SchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).parent / "schemas"

# model subdirectory, schema file, top-level name key
_KINDS = (
    ("entities", "entity.schema.json", "entity"),
    ("services", "service.schema.json", "service"),
)


@dataclass
class ValidationIssue:
    """One finding. ``path`` locates it inside the document, e.g. ``fields[0].type``."""

    file: Path
    message: str
    path: str = ""
    severity: str = "error"  # or "warning"

    def __str__(self) -> str:
        where = f"{self.file} at {self.path}" if self.path else str(self.file)
        return f"[{self.severity.upper()}] {where}: {self.message}"


@cache
def _validator(schema_name: str) -> Draft202012Validator:
    schema = json.loads((SCHEMA_DIR / schema_name).read_text())
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _restore_on_keys(node: Any) -> Any:
    # YAML 1.1 reads a bare `on:` key as the boolean True
    if isinstance(node, dict):
        return {("on" if k is True else k): _restore_on_keys(v) for k, v in node.items()}
    if isinstance(node, list):
        return [_restore_on_keys(v) for v in node]
    return node


def _location(error: SchemaError) -> str:
    location = ""
    for part in error.absolute_path:
        if isinstance(part, int):
            location += f"[{part}]"
        else:
            location += f".{part}" if location else str(part)
    return location


def _read(path: Path) -> tuple[Any, ValidationIssue | None]:
    try:
        document = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        return None, ValidationIssue(path, f"YAML parse error: {e}")
    if document is None:
        return None, ValidationIssue(path, "File is empty")
    return _restore_on_keys(document), None


def _check(yaml_path: Path, schema_name: str) -> tuple[Any, list[ValidationIssue]]:
    document, problem = _read(yaml_path)
    if problem is not None:
        return None, [problem]
    errors = sorted(_validator(schema_name).iter_errors(document), key=lambda e: list(e.path))
    return document, [ValidationIssue(yaml_path, e.message, _location(e)) for e in errors]


def validate_yaml_file(yaml_path: Path, schema_name: str) -> list[ValidationIssue]:
    """Check one YAML file against a schema from SCHEMA_DIR.

    Returns:
        Issues ordered by document location; empty when the file is valid
    """
    return _check(yaml_path, schema_name)[1]


def validate_model_dir(model_dir: Path, *, strict: bool = False) -> list[ValidationIssue]:
    """Check every model file under *model_dir*.

    Besides the schema checks this reports entity or service names that
    are declared by more than one file (error) and service files with
    no implementation module (warning).

    Args:
        strict: Report warnings as errors
    """
    model_dir = Path(model_dir)
    if not model_dir.is_dir():
        return [ValidationIssue(model_dir, f"Model directory does not exist: {model_dir}")]

    issues: list[ValidationIssue] = []
    for subdir, schema_name, name_key in _KINDS:
        declared: dict[str, Path] = {}
        for yaml_file in sorted((model_dir / subdir).glob("*.yaml")):
            document, found = _check(yaml_file, schema_name)
            issues.extend(found)
            if found:
                continue

            name = document[name_key]
            if name in declared:
                issues.append(
                    ValidationIssue(
                        yaml_file,
                        f"{name_key.capitalize()} '{name}' is already declared in {declared[name].name}",
                        name_key,
                    )
                )
            declared.setdefault(name, yaml_file)

            if subdir == "services" and not _has_impl(yaml_file, document.get("impl")):
                issues.append(
                    ValidationIssue(
                        yaml_file,
                        "No implementation module found for service file",
                        severity="warning",
                    )
                )

    if strict:
        for issue in issues:
            issue.severity = "error"

    logger.debug("Validated %s: %d issue(s)", model_dir, len(issues))
    return issues


def _has_impl(service_file: Path, explicit: str | None) -> bool:
    if explicit:
        return (service_file.parent / explicit).exists()
    stems = {service_file.stem, service_file.stem.replace("-", "_")}
    return any(service_file.with_name(f"{stem}.py").exists() for stem in stems)
