"""servforge CLI entry point."""

import logging
from pathlib import Path

import click

from servforge.config import RuntimeConfig
from servforge.errors import ServiceError
from servforge.metadata.loader import ModelLoader, ModelLoadError
from servforge.metadata.validator import validate_model_dir
from servforge.persistence.memory import InMemoryAdapter


def _model_path(model: Path | None, config: RuntimeConfig) -> Path:
    return model if model is not None else config.model_path


@click.group()
def cli():
    """servforge: model-driven service runtime CLI."""
    logging.basicConfig(level=RuntimeConfig.from_env().log_level)


@cli.command()
@click.option(
    "--model",
    "model",
    default=None,
    type=click.Path(path_type=Path),
    help="Model directory (default: $SERVFORGE_MODEL_PATH or ./model).",
)
@click.option(
    "--strict",
    is_flag=True,
    default=False,
    help="Treat warnings as errors.",
)
def check(model: Path | None, strict: bool):
    """Validate, load and compile the model, and run the registrations."""
    from servforge.runtime.bootstrap import build_runtime

    config = RuntimeConfig.from_env()
    model_path = _model_path(model, config)
    if not model_path.exists():
        click.echo(f"Error: Model directory not found at {model_path}", err=True)
        raise SystemExit(1)

    # ── Schema (JSON Schema) validation ─────────────────────────────────────
    issues = validate_model_dir(model_path, strict=strict)
    errors = [i for i in issues if i.severity == "error"]
    warnings = [i for i in issues if i.severity == "warning"]

    for issue in issues:
        colour = "red" if issue.severity == "error" else "yellow"
        click.echo(click.style(str(issue), fg=colour))

    if errors:
        click.echo(
            click.style(
                f"\n{len(errors)} schema error(s) found"
                + (f", {len(warnings)} warning(s)" if warnings else ""),
                fg="red",
                bold=True,
            )
        )
        raise SystemExit(1)

    # ── Semantic validation: registry, compiler, registrations ──────────────
    try:
        registry = ModelLoader(model_path).build_registry()
        runtime = build_runtime(registry, adapter=InMemoryAdapter())
    except (ModelLoadError, ServiceError, ValueError) as e:
        click.echo(click.style(f"\nModel check failed: {e}", fg="red"), err=True)
        raise SystemExit(1)

    click.echo(f"\nLoaded {len(registry.list_entities())} entities:")
    for entity in registry.entities():
        click.echo(f"  ✓ {entity.name} ({len(entity.fields)} fields, key: {', '.join(entity.keys)})")

    click.echo(f"Compiled {len(runtime.services)} services:")
    for service in runtime.services.values():
        click.echo(
            f"  ✓ {service.name} at {service.path} "
            f"({len(service.entities)} entities, {len(service.operations)} operations)"
        )

    for warning in runtime.warnings:
        click.echo(click.style(f"[WARNING] {warning}", fg="yellow"))
    warnings.extend(runtime.warnings)

    if warnings and strict:
        click.echo(click.style(f"\n{len(warnings)} warning(s) with --strict", fg="red", bold=True))
        raise SystemExit(1)

    click.echo(click.style("\nModel is valid.", fg="green", bold=True))


@cli.command()
@click.option(
    "--model",
    "model",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="Model directory (default: $SERVFORGE_MODEL_PATH or ./model).",
)
@click.option("--host", default=None, help="Bind address (default: $SERVFORGE_HOST).")
@click.option("--port", default=None, type=int, help="Port (default: $SERVFORGE_PORT).")
def serve(model: Path | None, host: str | None, port: int | None):
    """Build the runtime and serve it over HTTP."""
    import uvicorn

    from servforge.api.app import create_app
    from servforge.auth.headers import HeaderAuthenticator
    from servforge.runtime.bootstrap import build_runtime_from_config

    config = RuntimeConfig.from_env()
    if model is not None:
        config.model_path = model

    runtime = build_runtime_from_config(config)
    app = create_app(runtime, authenticator=HeaderAuthenticator())
    uvicorn.run(
        app,
        host=host or config.host,
        port=port or config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    cli()
