"""CLI entry point for integration health checks."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, cast, get_args

import typer

from sixty.integration_health.backend.base import Backend, BackendError
from sixty.integration_health.backend.supabase import SupabaseBackend
from sixty.integration_health.health import HealthAggregator
from sixty.integration_health.integrations.registry import SUITE_NAMES, list_suites
from sixty.integration_health.models.settings import BackendConfig, MonitorSettings
from sixty.integration_health.models.test_result import TriggeredBy
from sixty.integration_health.runner import SuiteRunner
from sixty.integration_health.settings_loader import load_settings_or_default
from sixty.integration_health.store import (
    AlertNotFoundError,
    AlertStateError,
    ResultStore,
)

# Configure logging - force reconfiguration
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
    force=True,
)
logger = logging.getLogger(__name__)

app = typer.Typer(help="Run and inspect integration health checks.")

BACKEND_CONFIG_ENV = "SIXTY_BACKEND_CONFIG"

backend_config_option = typer.Option(
    ...,
    envvar=BACKEND_CONFIG_ENV,
    help="JSON configuration for the backend (url, api_key, access_token)",
)


def _fail(message: str) -> typer.Exit:
    logger.error(message)
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _create_backend(config_json: str) -> Backend:
    """Create the backend from its JSON configuration."""
    try:
        config_dict = json.loads(config_json)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in backend-config: {e}")

    if not isinstance(config_dict, dict):
        raise ValueError("backend-config must be a JSON object")

    return SupabaseBackend(BackendConfig(**config_dict))


def _load(
    config_json: str, settings_file: Path | None
) -> tuple[Backend, MonitorSettings]:
    try:
        backend = _create_backend(config_json)
        settings = load_settings_or_default(settings_file)
    except (ValueError, FileNotFoundError) as e:
        raise _fail(str(e))
    return backend, settings


@app.command()
def run(
    integration: str = typer.Option(
        ..., help=f"Integration to test ({', '.join(SUITE_NAMES)})"
    ),
    tenant_id: str = typer.Option(
        ..., help="Organization id, or user id for Google"
    ),
    org_id: str | None = typer.Option(None, help="Org id recorded with results"),
    user_id: str | None = typer.Option(None, help="User triggering the run"),
    triggered_by: str = typer.Option("manual", help="Run trigger"),
    settings_file: Path | None = typer.Option(None, help="YAML settings file"),  # noqa: B008
    backend_config: str = backend_config_option,
) -> None:
    """Run one integration's health checks and record the results."""
    if triggered_by not in get_args(TriggeredBy):
        raise _fail(
            f"Unknown trigger: {triggered_by}. "
            f"Must be one of: {', '.join(get_args(TriggeredBy))}"
        )
    if integration.lower() not in SUITE_NAMES:
        raise _fail(
            f"Unknown integration: {integration}. "
            f"Must be one of: {', '.join(SUITE_NAMES)}"
        )

    backend, settings = _load(backend_config, settings_file)
    runner = SuiteRunner(ResultStore(backend), settings)

    logger.info(f"Running {integration} checks for tenant {tenant_id}")
    try:
        run_result = asyncio.run(
            runner.run_integration(
                integration,
                tenant_id,
                triggered_by=cast(TriggeredBy, triggered_by),
                org_id=org_id,
                user_id=user_id,
            )
        )
    except Exception as e:
        logger.exception("Test run failed")
        typer.echo(f"Error running tests: {e}", err=True)
        raise typer.Exit(code=1)

    for result in run_result.results:
        line = f"{result.test_id}: {result.status} - {result.message}"
        if result.is_failure:
            logger.error(f"✗ {line}")
        else:
            logger.info(f"✓ {line}")

    summary = run_result.summary
    _echo_json(
        {
            "integration": run_result.integration_name,
            "summary": summary.model_dump(),
            "results": [r.model_dump(mode="json") for r in run_result.results],
            "alert": (
                run_result.alert.model_dump(mode="json") if run_result.alert else None
            ),
        }
    )

    if summary.failure_count > 0:
        logger.error(f"Tests failed: {summary.failure_count}/{summary.total}")
        raise typer.Exit(code=1)


@app.command()
def health(
    backend_config: str = backend_config_option,
) -> None:
    """Print the current health of every integration."""
    backend, _ = _load(backend_config, None)
    try:
        summaries = asyncio.run(HealthAggregator(ResultStore(backend)).summarize_all())
    except BackendError as e:
        raise _fail(str(e))
    _echo_json([s.model_dump(mode="json") for s in summaries])


@app.command()
def history(
    integration: str = typer.Option(..., help="Integration name"),
    limit: int = typer.Option(50, min=1, help="Number of records"),
    backend_config: str = backend_config_option,
) -> None:
    """Print recent results of an integration, newest first."""
    backend, _ = _load(backend_config, None)
    try:
        records = asyncio.run(ResultStore(backend).history(integration, limit))
    except BackendError as e:
        raise _fail(str(e))
    _echo_json([r.model_dump(mode="json") for r in records])


@app.command()
def alerts(
    integration: str | None = typer.Option(None, help="Only this integration"),
    backend_config: str = backend_config_option,
) -> None:
    """Print unresolved alerts, newest first."""
    backend, _ = _load(backend_config, None)
    try:
        active = asyncio.run(ResultStore(backend).list_active(integration))
    except BackendError as e:
        raise _fail(str(e))
    _echo_json([a.model_dump(mode="json") for a in active])


@app.command()
def acknowledge(
    alert_id: str = typer.Argument(..., help="Alert id"),
    user_id: str = typer.Option(..., help="User acknowledging the alert"),
    backend_config: str = backend_config_option,
) -> None:
    """Acknowledge an alert."""
    backend, _ = _load(backend_config, None)
    try:
        alert = asyncio.run(ResultStore(backend).acknowledge(alert_id, user_id))
    except (AlertNotFoundError, AlertStateError, BackendError) as e:
        raise _fail(str(e))
    _echo_json(alert.model_dump(mode="json"))


@app.command()
def resolve(
    alert_id: str = typer.Argument(..., help="Alert id"),
    user_id: str = typer.Option(..., help="User resolving the alert"),
    backend_config: str = backend_config_option,
) -> None:
    """Resolve an alert."""
    backend, _ = _load(backend_config, None)
    try:
        alert = asyncio.run(ResultStore(backend).resolve(alert_id, user_id))
    except (AlertNotFoundError, BackendError) as e:
        raise _fail(str(e))
    _echo_json(alert.model_dump(mode="json"))


@app.command()
def suites() -> None:
    """List the available integration suites."""
    _echo_json([info.model_dump() for info in list_suites()])


if __name__ == "__main__":  # pragma: no cover
    app()
