"""Service definition compiler.

Projects entities from the model registry into a service's exposed
surface. The resulting CompiledService is what the pipeline resolves
requests against.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from servforge.errors import (
    DuplicateEntity,
    DuplicateOperation,
    ValidationError,
)
from servforge.metadata.model import (
    CustomOperation,
    EntityDefinition,
    Projection,
    Restrictions,
    ServiceDefinition,
)
from servforge.metadata.registry import ModelRegistry

CRUD_EVENTS = ("CREATE", "READ", "UPDATE", "DELETE")


@dataclass(frozen=True)
class ExposedEntity:
    """A projection bound to its resolved source entity."""

    alias: str
    entity: EntityDefinition
    restrictions: Restrictions
    columns: tuple[str, ...] | None
    requires: tuple[str, ...]

    @property
    def name(self) -> str:
        return self.alias

    def allows(self, event: str) -> bool:
        if event == "CREATE":
            return self.restrictions.insertable
        if event == "UPDATE":
            return self.restrictions.updatable
        if event == "DELETE":
            return self.restrictions.deletable
        return True

    def exposes(self, field_name: str) -> bool:
        if self.columns is None:
            return True
        return field_name in self.columns or field_name in self.entity.keys


@dataclass(frozen=True)
class ExposedOperation:
    operation: CustomOperation
    requires: tuple[str, ...]

    @property
    def name(self) -> str:
        return self.operation.name


@dataclass(frozen=True)
class CompiledService:
    """The frozen exposed surface of one service."""

    name: str
    path: str
    entities: Mapping[str, ExposedEntity]
    operations: Mapping[str, ExposedOperation]
    requires: tuple[str, ...]
    impl: str | None = None

    def member(self, name: str) -> ExposedEntity | ExposedOperation | None:
        if name in self.entities:
            return self.entities[name]
        return self.operations.get(name)

    def describe(self) -> dict:
        """Summary of the exposed surface for discovery endpoints."""
        return {
            "service": self.name,
            "path": self.path,
            "entities": [
                {
                    "name": e.alias,
                    "source": e.entity.name,
                    "keys": list(e.entity.keys),
                    "insertable": e.restrictions.insertable,
                    "updatable": e.restrictions.updatable,
                    "deletable": e.restrictions.deletable,
                }
                for e in self.entities.values()
            ],
            "operations": [
                {"name": o.name, "kind": o.operation.kind.value}
                for o in self.operations.values()
            ],
        }


def compile_service(service: ServiceDefinition, registry: ModelRegistry) -> CompiledService:
    """Compile a service definition against a model registry.

    Raises:
        UnknownEntity: If a projection's source entity is missing
        DuplicateEntity: If two projections share an alias
        DuplicateOperation: If two operations share a name, or an
            operation name collides with a projection alias
        ValidationError: If projection columns name unknown fields
    """
    entities: dict[str, ExposedEntity] = {}
    operations: dict[str, ExposedOperation] = {}

    for member in service.members:
        if isinstance(member, Projection):
            if member.alias in entities:
                raise DuplicateEntity(
                    f"Service '{service.name}' exposes '{member.alias}' twice"
                )
            entities[member.alias] = _compile_projection(service, member, registry)

    for member in service.members:
        if isinstance(member, CustomOperation):
            if member.name in operations or member.name in entities:
                raise DuplicateOperation(
                    f"Service '{service.name}' declares '{member.name}' twice"
                )
            operations[member.name] = ExposedOperation(
                operation=member,
                requires=member.requires,
            )

    return CompiledService(
        name=service.name,
        path=service.path.rstrip("/") or "/",
        entities=MappingProxyType(entities),
        operations=MappingProxyType(operations),
        requires=service.requires,
        impl=service.impl,
    )


def _compile_projection(
    service: ServiceDefinition, projection: Projection, registry: ModelRegistry
) -> ExposedEntity:
    entity = registry.resolve(projection.source)

    if projection.columns is not None:
        for column in projection.columns:
            if entity.get_field(column) is None and entity.get_link(column) is None:
                raise ValidationError(
                    f"{service.name}.{projection.alias}: '{column}' is not an "
                    f"element of {entity.name}",
                    target=f"{service.name}.{projection.alias}",
                )

    return ExposedEntity(
        alias=projection.alias,
        entity=entity,
        restrictions=projection.restrictions,
        columns=projection.columns,
        requires=projection.requires,
    )


class ServiceCompiler:
    """Compiles every service of a frozen model registry."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def compile(self, service: ServiceDefinition) -> CompiledService:
        return compile_service(service, self.registry)

    def compile_all(self) -> dict[str, CompiledService]:
        return {
            name: self.compile(service)
            for name, service in self.registry.services().items()
        }
