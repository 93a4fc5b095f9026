"""Model registry: compiled entity and service definitions.

The registry is filled once at startup and frozen before any request is
served. After ``freeze()`` it is read-only, so concurrent readers need
no locking.
"""

import logging
from types import MappingProxyType
from typing import Mapping

from servforge.core.types import is_known_type
from servforge.errors import (
    DuplicateEntity,
    DuplicateOperation,
    RegistryFrozen,
    UnknownEntity,
    ValidationError,
)
from servforge.metadata.model import CustomOperation, EntityDefinition, ServiceDefinition

logger = logging.getLogger(__name__)


class ModelRegistry:
    """Holds entity and service definitions addressed by name or index.

    Example:
        registry = ModelRegistry()
        registry.register(orders)
        registry.register(order_items)
        registry.register_service(catalog)
        registry.freeze()

        registry.resolve("Orders")
    """

    def __init__(self) -> None:
        self._entities: list[EntityDefinition] = []
        self._entity_index: dict[str, int] = {}
        self._services: dict[str, ServiceDefinition] = {}
        self._frozen = False

    # ------------------------------------------------------------------
    # Mutation (startup only)
    # ------------------------------------------------------------------

    def register(self, entity: EntityDefinition) -> int:
        """Register an entity definition.

        Returns:
            The entity's index in the registry

        Raises:
            RegistryFrozen: If called after freeze()
            DuplicateEntity: If an entity with the same name exists
            ValidationError: If a field uses an unknown primitive type
        """
        self._check_mutable()
        if entity.name in self._entity_index:
            raise DuplicateEntity(f"Entity '{entity.name}' is already registered")

        for f in entity.fields:
            if not is_known_type(f.type):
                raise ValidationError(
                    f"Unknown type '{f.type}' on {entity.name}.{f.name}",
                    target=f"{entity.name}.{f.name}",
                )

        self._entities.append(entity)
        index = len(self._entities) - 1
        self._entity_index[entity.name] = index
        return index

    def register_service(self, service: ServiceDefinition) -> None:
        """Register a service definition.

        Raises:
            RegistryFrozen: If called after freeze()
            UnknownEntity: If a projection source or a returned entity is not registered
            DuplicateOperation: If two custom operations share a name
            ValidationError: If an operation uses an unknown primitive type
        """
        self._check_mutable()
        if service.name in self._services:
            raise DuplicateEntity(f"Service '{service.name}' is already registered")

        for projection in service.projections:
            if projection.source not in self._entity_index:
                raise UnknownEntity(
                    f"Projection '{service.name}.{projection.alias}' refers to "
                    f"unknown entity '{projection.source}'"
                )

        seen: set[str] = set()
        for operation in service.operations:
            if operation.name in seen:
                raise DuplicateOperation(
                    f"Operation '{operation.name}' is declared twice in "
                    f"service '{service.name}'"
                )
            seen.add(operation.name)
            self._check_signature(service.name, operation)

        self._services[service.name] = service

    def freeze(self) -> None:
        """Validate cross-entity references and make the registry read-only.

        Raises:
            UnknownEntity: If an association or composition target is missing
            ValidationError: If a join predicate names a missing field
        """
        self._check_mutable()
        for entity in self._entities:
            for link in entity.links():
                target = self._entities_by_name().get(link.target)
                if target is None:
                    raise UnknownEntity(
                        f"{entity.name}.{link.name} targets unknown entity "
                        f"'{link.target}'"
                    )
                for target_field, source_field in link.on:
                    if target.get_field(target_field) is None:
                        raise ValidationError(
                            f"{entity.name}.{link.name}: '{target_field}' is not "
                            f"a field of {target.name}",
                            target=f"{entity.name}.{link.name}",
                        )
                    if entity.get_field(source_field) is None:
                        raise ValidationError(
                            f"{entity.name}.{link.name}: '{source_field}' is not "
                            f"a field of {entity.name}",
                            target=f"{entity.name}.{link.name}",
                        )
        self._frozen = True
        logger.debug(
            "Model registry frozen with %d entities and %d services",
            len(self._entities),
            len(self._services),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str) -> EntityDefinition:
        """Get an entity by name.

        Raises:
            UnknownEntity: If no entity with that name is registered
        """
        index = self._entity_index.get(name)
        if index is None:
            raise UnknownEntity(f"Entity '{name}' is not registered")
        return self._entities[index]

    def index_of(self, name: str) -> int:
        self.resolve(name)
        return self._entity_index[name]

    def entity_at(self, index: int) -> EntityDefinition:
        return self._entities[index]

    def has_entity(self, name: str) -> bool:
        return name in self._entity_index

    def list_entities(self) -> list[str]:
        """List entity names in registration order."""
        return [e.name for e in self._entities]

    def entities(self) -> tuple[EntityDefinition, ...]:
        return tuple(self._entities)

    def get_service(self, name: str) -> ServiceDefinition:
        if name not in self._services:
            raise UnknownEntity(f"Service '{name}' is not registered")
        return self._services[name]

    def list_services(self) -> list[str]:
        return list(self._services.keys())

    def services(self) -> Mapping[str, ServiceDefinition]:
        return MappingProxyType(self._services)

    # ------------------------------------------------------------------

    def _entities_by_name(self) -> dict[str, EntityDefinition]:
        return {e.name: e for e in self._entities}

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RegistryFrozen("Model registry is frozen")

    def _check_signature(self, service_name: str, operation: CustomOperation) -> None:
        prefix = f"{service_name}.{operation.name}"
        returns = operation.returns
        typed = [(p.type, f"{prefix}.{p.name}") for p in operation.params]
        if returns.type is not None:
            typed.append((returns.type, f"{prefix}.returns"))
        typed.extend((f.type, f"{prefix}.returns.{f.name}") for f in returns.fields)

        for type_name, target in typed:
            if not is_known_type(type_name):
                raise ValidationError(f"Unknown type '{type_name}' on {target}", target=target)

        if returns.entity is not None and returns.entity not in self._entity_index:
            raise UnknownEntity(
                f"Operation '{prefix}' returns unknown entity '{returns.entity}'",
                target=prefix,
            )
