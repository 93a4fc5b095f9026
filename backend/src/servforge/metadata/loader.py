"""Load entity and service definitions from YAML files."""

import importlib.util
import logging
from pathlib import Path
from types import ModuleType
from typing import Any

import yaml

from servforge.metadata.model import (
    AssociationDefinition,
    Cardinality,
    CustomOperation,
    EntityDefinition,
    FieldDefinition,
    OperationKind,
    Parameter,
    Projection,
    Restrictions,
    ReturnShape,
    ServiceDefinition,
    default_service_path,
)
from servforge.metadata.registry import ModelRegistry

logger = logging.getLogger(__name__)


class ModelLoadError(ValueError):
    """A model file could not be read or is structurally broken."""


class ModelLoader:
    """Loads entity and service definitions from a model directory.

    Layout:
        model/
          entities/*.yaml     one entity per file
          services/*.yaml     one service per file, optionally with an
                              implementation module beside it
    """

    def __init__(self, model_path: Path):
        self.model_path = Path(model_path)
        self.entities: dict[str, EntityDefinition] = {}
        self.services: dict[str, ServiceDefinition] = {}

    def load_all(self) -> None:
        """Load all entities, then all services."""
        self._load_entities()
        self._load_services()

    def build_registry(self) -> ModelRegistry:
        """Load everything and return a frozen ModelRegistry."""
        if not self.entities and not self.services:
            self.load_all()

        registry = ModelRegistry()
        for entity in self.entities.values():
            registry.register(entity)
        for service in self.services.values():
            registry.register_service(service)
        registry.freeze()
        return registry

    def _load_entities(self) -> None:
        entities_path = self.model_path / "entities"
        if not entities_path.exists():
            return

        for yaml_file in sorted(entities_path.glob("*.yaml")):
            data = self._read_yaml(yaml_file)
            if data and "entity" in data:
                entity = self._resolve_entity(data, yaml_file)
                self.entities[entity.name] = entity

    def _load_services(self) -> None:
        services_path = self.model_path / "services"
        if not services_path.exists():
            return

        for yaml_file in sorted(services_path.glob("*.yaml")):
            data = self._read_yaml(yaml_file)
            if data and "service" in data:
                service = self._resolve_service(data, yaml_file)
                self.services[service.name] = service

    def _read_yaml(self, path: Path) -> dict[str, Any] | None:
        try:
            with open(path) as f:
                return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ModelLoadError(f"{path}: YAML parse error: {e}") from e

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def _resolve_entity(self, data: dict, source: Path) -> EntityDefinition:
        name = data["entity"]
        fields = tuple(self._resolve_field(f) for f in data.get("fields", []))
        associations = tuple(
            self._resolve_link(a, composition=False)
            for a in data.get("associations", [])
        )
        compositions = tuple(
            self._resolve_link(c, composition=True)
            for c in data.get("compositions", [])
        )
        try:
            return EntityDefinition(
                name=name,
                fields=fields,
                associations=associations,
                compositions=compositions,
            )
        except ValueError as e:
            raise ModelLoadError(f"{source}: {e}") from e

    def _resolve_field(self, data: dict) -> FieldDefinition:
        key = data.get("key", False)
        return FieldDefinition(
            name=data["name"],
            type=data.get("type", "String"),
            key=key,
            # Keys are never nullable
            nullable=False if key else data.get("nullable", True),
            default=data.get("default"),
            length=data.get("length"),
        )

    def _resolve_link(self, data: dict, composition: bool) -> AssociationDefinition:
        on = self._get_on(data)
        return AssociationDefinition(
            name=data["name"],
            target=data["target"],
            cardinality=Cardinality(data.get("cardinality", "many" if composition else "one")),
            on=tuple((str(t), str(s)) for t, s in on.items()),
            composition=composition,
        )

    def _get_on(self, data: dict) -> dict:
        """Extract the 'on' block from a YAML dict.

        PyYAML parses the bare key `on:` as boolean True, so we check
        both the string key "on" and the boolean key True.
        """
        return data.get("on") or data.get(True) or {}

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def _resolve_service(self, data: dict, source: Path) -> ServiceDefinition:
        name = data["service"]
        members: list[Projection | CustomOperation] = []

        for p in data.get("projections", []):
            members.append(self._resolve_projection(p))
        for a in data.get("actions", []):
            members.append(self._resolve_operation(a, OperationKind.ACTION))
        for f in data.get("functions", []):
            members.append(self._resolve_operation(f, OperationKind.FUNCTION))

        return ServiceDefinition(
            name=name,
            path=data.get("path") or default_service_path(name),
            members=tuple(members),
            requires=self._roles(data.get("requires")),
            impl=self._find_impl(data, source),
        )

    def _resolve_projection(self, data: dict) -> Projection:
        if data.get("readonly"):
            restrictions = Restrictions.readonly()
        else:
            restrictions = Restrictions(
                insertable=data.get("insertable", True),
                updatable=data.get("updatable", True),
                deletable=data.get("deletable", True),
            )
        columns = data.get("columns")
        return Projection(
            alias=data["as"],
            source=data.get("on") or data.get(True) or data["as"],
            restrictions=restrictions,
            columns=tuple(columns) if columns else None,
            requires=self._roles(data.get("requires")),
        )

    def _resolve_operation(self, data: dict, kind: OperationKind) -> CustomOperation:
        params = tuple(self._resolve_parameter(p) for p in data.get("params", []))
        return CustomOperation(
            name=data["name"],
            kind=kind,
            params=params,
            returns=self._resolve_returns(data.get("returns")),
            requires=self._roles(data.get("requires")),
        )

    def _resolve_parameter(self, data: dict) -> Parameter:
        return Parameter(
            name=data["name"],
            type=data.get("type", "String"),
            nullable=data.get("nullable", True),
        )

    def _resolve_returns(self, data: Any) -> ReturnShape:
        if not data:
            return ReturnShape()
        if isinstance(data, str):
            return ReturnShape(type=data)
        return ReturnShape(
            type=data.get("type"),
            entity=data.get("entity"),
            fields=tuple(self._resolve_parameter(f) for f in data.get("fields", [])),
            many=data.get("many", False),
        )

    def _roles(self, value: Any) -> tuple[str, ...]:
        if not value:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(value)

    def _find_impl(self, data: dict, source: Path) -> str | None:
        """Locate the implementation module for a service file.

        An explicit `impl:` key wins; otherwise a .py file with the same
        stem (dashes or underscores) sitting beside the YAML file is used.
        """
        explicit = data.get("impl")
        if explicit:
            return str((source.parent / explicit).resolve())

        for stem in (source.stem, source.stem.replace("-", "_")):
            candidate = source.parent / f"{stem}.py"
            if candidate.exists():
                return str(candidate.resolve())
        return None

    # ------------------------------------------------------------------

    def get_entity(self, name: str) -> EntityDefinition | None:
        return self.entities.get(name)

    def list_entities(self) -> list[str]:
        return list(self.entities.keys())

    def list_services(self) -> list[str]:
        return list(self.services.keys())


def load_impl_module(path: str | Path) -> ModuleType:
    """Import a service implementation file as a module.

    Raises:
        ModelLoadError: If the file does not exist or fails to import
    """
    path = Path(path)
    if not path.exists():
        raise ModelLoadError(f"Service implementation not found: {path}")

    module_name = f"servforge_impl_{path.stem.replace('-', '_')}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ModelLoadError(f"Cannot load service implementation: {path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise ModelLoadError(f"Error importing {path}: {e}") from e

    logger.debug("Loaded service implementation %s", path)
    return module
