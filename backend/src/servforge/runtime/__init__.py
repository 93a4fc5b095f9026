"""Request execution: context, pipeline and runtime assembly."""

from servforge.runtime.bootstrap import (
    ServiceRuntime,
    build_runtime,
    build_runtime_from_config,
    find_missing_handlers,
)
from servforge.runtime.context import (
    PipelineState,
    Request,
    RequestContext,
    Response,
)
from servforge.runtime.pipeline import RequestPipeline

__all__ = [
    "PipelineState",
    "Request",
    "RequestContext",
    "RequestPipeline",
    "Response",
    "ServiceRuntime",
    "build_runtime",
    "build_runtime_from_config",
    "find_missing_handlers",
]
