"""Entity and service definitions.

Definitions are immutable once built. The loader builds them from YAML;
tests and applications may also build them directly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Cardinality(Enum):
    ONE = "one"
    MANY = "many"


class OperationKind(Enum):
    ACTION = "action"
    FUNCTION = "function"


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: str = "String"
    key: bool = False
    nullable: bool = True
    default: Any = None
    length: int | None = None


@dataclass(frozen=True)
class AssociationDefinition:
    """A link from one entity to another.

    Attributes:
        name: Element name on the source entity (e.g., "items")
        target: Target entity name
        cardinality: ONE or MANY
        on: Join predicate as {target_field: source_field} equalities
        composition: True when the target's lifecycle is owned by the source
    """

    name: str
    target: str
    cardinality: Cardinality = Cardinality.ONE
    on: tuple[tuple[str, str], ...] = ()
    composition: bool = False

    @property
    def many(self) -> bool:
        return self.cardinality is Cardinality.MANY

    def join_values(self, source_record: dict[str, Any]) -> dict[str, Any]:
        """Target field values implied by a source record."""
        return {
            target_field: source_record.get(source_field)
            for target_field, source_field in self.on
        }


@dataclass(frozen=True)
class EntityDefinition:
    name: str
    fields: tuple[FieldDefinition, ...]
    associations: tuple[AssociationDefinition, ...] = ()
    compositions: tuple[AssociationDefinition, ...] = ()

    def __post_init__(self) -> None:
        if not self.keys:
            raise ValueError(f"Entity '{self.name}' declares no key fields")
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Entity '{self.name}' declares a field twice")

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields if f.key)

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def get_field(self, name: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def links(self) -> tuple[AssociationDefinition, ...]:
        """Associations followed by compositions."""
        return self.associations + self.compositions

    def get_link(self, name: str) -> AssociationDefinition | None:
        for link in self.links():
            if link.name == name:
                return link
        return None

    def key_of(self, record: dict[str, Any]) -> dict[str, Any]:
        return {k: record.get(k) for k in self.keys}


@dataclass(frozen=True)
class Restrictions:
    insertable: bool = True
    updatable: bool = True
    deletable: bool = True

    @classmethod
    def readonly(cls) -> "Restrictions":
        return cls(insertable=False, updatable=False, deletable=False)


@dataclass(frozen=True)
class Projection:
    """A service-exposed view on an entity.

    Attributes:
        alias: Name the service exposes (e.g., "Products")
        source: Source entity name in the model registry
        restrictions: Which write operations the projection allows
        columns: Exposed field subset, or None for all fields
        requires: Roles of which the principal needs at least one
    """

    alias: str
    source: str
    restrictions: Restrictions = field(default_factory=Restrictions)
    columns: tuple[str, ...] | None = None
    requires: tuple[str, ...] = ()


@dataclass(frozen=True)
class Parameter:
    name: str
    type: str = "String"
    nullable: bool = True


@dataclass(frozen=True)
class ReturnShape:
    """Declared return type of a custom operation.

    Exactly one of type (a primitive), entity (an entity name) or
    fields (an inline structure) is set; all None means no return value.
    """

    type: str | None = None
    entity: str | None = None
    fields: tuple[Parameter, ...] = ()
    many: bool = False


@dataclass(frozen=True)
class CustomOperation:
    name: str
    kind: OperationKind = OperationKind.ACTION
    params: tuple[Parameter, ...] = ()
    returns: ReturnShape = field(default_factory=ReturnShape)
    requires: tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceDefinition:
    """A declarative service.

    Attributes:
        name: Service name (e.g., "CatalogService")
        path: Route path (e.g., "/catalog")
        members: Projections and custom operations, in declared order
        requires: Roles required for every member of the service
        impl: Optional path to the implementation module
    """

    name: str
    path: str
    members: tuple[Projection | CustomOperation, ...] = ()
    requires: tuple[str, ...] = ()
    impl: str | None = None

    @property
    def projections(self) -> tuple[Projection, ...]:
        return tuple(m for m in self.members if isinstance(m, Projection))

    @property
    def operations(self) -> tuple[CustomOperation, ...]:
        return tuple(m for m in self.members if isinstance(m, CustomOperation))


def default_service_path(service_name: str) -> str:
    """Derive a route path from a service name.

    "CatalogService" -> "/catalog", "OrderManagementService" -> "/order-management"
    """
    name = service_name
    if name.endswith("Service") and name != "Service":
        name = name[: -len("Service")]
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("-")
        result.append(char.lower())
    return "/" + "".join(result)
