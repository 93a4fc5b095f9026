"""Runtime assembly.

Startup order:
    1. freeze the model registry
    2. compile every service into its exposed surface
    3. initialize storage for every entity
    4. run the custom operation registrations (register(hooks, model))
    5. freeze the hook registries and report operations without an on handler
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from servforge.errors import NotFound
from servforge.hooks.registry import HookRegistry
from servforge.hooks.types import Phase
from servforge.metadata.loader import ModelLoader, ModelLoadError, load_impl_module
from servforge.metadata.registry import ModelRegistry
from servforge.persistence.adapter import PersistenceAdapter
from servforge.persistence.config import create_adapter
from servforge.persistence.memory import InMemoryAdapter
from servforge.persistence.transactions import TransactionManager
from servforge.runtime.context import Request, Response
from servforge.runtime.pipeline import RequestPipeline
from servforge.services.compiler import CompiledService, ServiceCompiler

if TYPE_CHECKING:
    from servforge.config import RuntimeConfig

logger = logging.getLogger(__name__)

RegisterFn = Callable[[HookRegistry, ModelRegistry], Any]


class ServiceRuntime:
    """A live, frozen set of services ready to handle requests.

    Example:
        runtime = build_runtime(ModelLoader(Path("model")).build_registry())
        response = await runtime.handle(
            Request(service="/catalog", target="Products", event="READ")
        )
    """

    def __init__(
        self,
        model: ModelRegistry,
        services: Mapping[str, CompiledService],
        hooks: Mapping[str, HookRegistry],
        adapter: PersistenceAdapter,
        warnings: list[str] | None = None,
    ):
        self.model = model
        self.services = dict(services)
        self.hooks = dict(hooks)
        self.adapter = adapter
        self.warnings = list(warnings or [])
        self.transactions = TransactionManager(adapter)
        self.pipeline = RequestPipeline(model, self.hooks, self.transactions)

    async def handle(self, request: Request) -> Response:
        """Execute one request. Service errors come back in the Response."""
        service = self.services.get(request.service) or self.service_for_path(request.service)
        if service is None:
            error = NotFound(f"No service at '{request.service}'", target=request.service)
            return Response(request_id=request.request_id, error=error.info(), status=error.status)
        return await self.pipeline.execute(service, request)

    def service_for_path(self, path: str) -> CompiledService | None:
        path = "/" + path.strip("/")
        for service in self.services.values():
            if service.path == path:
                return service
        return None

    def close(self) -> None:
        self.adapter.close()


def build_runtime(
    model: ModelRegistry,
    adapter: PersistenceAdapter | None = None,
    registrations: Mapping[str, RegisterFn | Iterable[RegisterFn]] | None = None,
    load_impls: bool = True,
) -> ServiceRuntime:
    """Assemble a ServiceRuntime from a model registry.

    Args:
        model: Model registry; frozen here if it isn't yet
        adapter: Persistence adapter (default: a fresh InMemoryAdapter)
        registrations: register(hooks, model) functions per service name,
                       run after the service's implementation module
        load_impls: Import each service's implementation module and run
                    its register(hooks, model)

    Raises:
        ModelLoadError: If an implementation module can't be loaded
    """
    if not model.frozen:
        model.freeze()
    adapter = adapter if adapter is not None else InMemoryAdapter()

    services = ServiceCompiler(model).compile_all()
    for entity in model.entities():
        adapter.initialize_entity(entity)

    hooks: dict[str, HookRegistry] = {}
    for name, service in services.items():
        registry = HookRegistry(name)
        for register in _registrars(service, registrations, load_impls):
            register(registry, model)
        registry.freeze()
        hooks[name] = registry
        logger.info(
            "Service %s at %s: %d entities, %d operations, %d hooks",
            name,
            service.path,
            len(service.entities),
            len(service.operations),
            len(registry),
        )

    warnings = find_missing_handlers(services, hooks)
    return ServiceRuntime(model, services, hooks, adapter, warnings)


def _registrars(
    service: CompiledService,
    registrations: Mapping[str, RegisterFn | Iterable[RegisterFn]] | None,
    load_impls: bool,
) -> list[RegisterFn]:
    found: list[RegisterFn] = []
    if load_impls and service.impl:
        module = load_impl_module(service.impl)
        register = getattr(module, "register", None)
        if not callable(register):
            raise ModelLoadError(
                f"{service.impl} has no register(hooks, model) function"
            )
        found.append(register)

    extra = (registrations or {}).get(service.name)
    if callable(extra):
        found.append(extra)
    elif extra:
        found.extend(extra)
    return found


def find_missing_handlers(
    services: Mapping[str, CompiledService], hooks: Mapping[str, HookRegistry]
) -> list[str]:
    """NoHandler warnings: custom operations that nothing can execute."""
    warnings = []
    for name, service in services.items():
        registry = hooks.get(name)
        for operation in service.operations:
            if registry is None or not registry.has_handler(Phase.ON, operation, operation):
                message = f"NoHandler: {name}.{operation} has no 'on' handler"
                logger.warning(message)
                warnings.append(message)
    return warnings


def build_runtime_from_config(config: RuntimeConfig) -> ServiceRuntime:
    """Load the model directory and build a runtime on the configured database."""
    model = ModelLoader(config.model_path).build_registry()
    return build_runtime(model, adapter=create_adapter(config.database))
