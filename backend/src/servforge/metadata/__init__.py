"""Declarative model: definitions, registry, and YAML loading."""

from servforge.metadata.loader import ModelLoader, ModelLoadError, load_impl_module
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
)
from servforge.metadata.registry import ModelRegistry

__all__ = [
    "AssociationDefinition",
    "Cardinality",
    "CustomOperation",
    "EntityDefinition",
    "FieldDefinition",
    "ModelLoadError",
    "ModelLoader",
    "ModelRegistry",
    "OperationKind",
    "Parameter",
    "Projection",
    "Restrictions",
    "ReturnShape",
    "ServiceDefinition",
    "load_impl_module",
]
