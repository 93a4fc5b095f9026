"""Service definition compiler."""

from servforge.services.compiler import (
    CRUD_EVENTS,
    CompiledService,
    ExposedEntity,
    ExposedOperation,
    ServiceCompiler,
    compile_service,
)

__all__ = [
    "CRUD_EVENTS",
    "CompiledService",
    "ExposedEntity",
    "ExposedOperation",
    "ServiceCompiler",
    "compile_service",
]
