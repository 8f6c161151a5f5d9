"""
Command Line Interface for stackup.
"""
import click
from pydantic import ValidationError

from ..EXECUTORS.factory import create_executor
from ..exceptions import (
    CatalogError,
    ClassificationError,
    ConnectivityError,
    PartialTeardownError,
    PrerequisiteError,
)
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.service_orchestrator import LifecycleController
from ..MANAGERS.status_reporter import StatusReporter
from ..MANAGERS.teardown_controller import TeardownController
from ..MODELS.lifecycle_session import LifecycleState
from ..MODELS.orchestration_config import GatingPolicy, OrchestratorConfig
from ..MODELS.reports import TeardownOptions
from ..PARSERS.catalog_parser import ServiceCatalog
from ..RUNNERS.dependency_resolver import DependencyClassifier
from ..UTILS.log_setup import configure_logging

CONTEXT_SETTINGS = dict(help_option_names=['-h', '--help'])

EXIT_FAILED = 1
EXIT_SETUP_ERROR = 2
EXIT_ABORTED = 130

SETUP_ERRORS = (PrerequisiteError, ConnectivityError, CatalogError, ClassificationError)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option('--file', '-f', 'catalog_file', default=None, help='Service catalog path')
@click.option('--executor', '-e', type=click.Choice(['compose', 'kubectl']), default=None,
              help='Executor driving the services')
@click.option('--compose-file', default=None, help='Compose file used by the compose executor')
@click.option('--context', 'kubectl_context', default=None, envvar='KUBECTL_CONTEXT',
              help='kubectl context (default: current context)')
@click.option('--namespace', '-n', default=None, help='Kubernetes namespace')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              default=None, help='Log level')
@click.option('--log-format', type=click.Choice(['console', 'json']), default=None, help='Log output format')
@click.pass_context
def cli(ctx, catalog_file, executor, compose_file, kubectl_context, namespace, log_level, log_format):
    """
    stackup - phased lifecycle orchestrator for multi-service stacks.

    Brings services up tier by tier (database, backend, gateway, frontend),
    waiting for each tier to be ready before starting the next.
    """
    ctx.ensure_object(dict)
    overrides = {
        'catalog_file': catalog_file,
        'executor': executor,
        'compose_file': compose_file,
        'kubectl_context': kubectl_context,
        'namespace': namespace,
        'log_level': log_level.upper() if log_level else None,
        'log_format': log_format,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    try:
        settings = OrchestratorConfig(**overrides)
    except ValidationError as e:
        raise click.UsageError(f"Invalid settings: {e}")

    configure_logging(settings.log_level, settings.log_format)
    ctx.obj['settings'] = settings
    ctx.obj['classifier'] = DependencyClassifier(infer_tiers=settings.infer_tiers)


def _load_services(ctx):
    """
    Loads the catalog once per invocation, interpolated with the .env file.
    """
    if 'services' not in ctx.obj:
        settings = ctx.obj['settings']
        context = EnvironmentManager().get_interpolation_context([settings.env_file])
        ctx.obj['services'] = ServiceCatalog(context).load(settings.catalog_file)
    return ctx.obj['services']


def _get_executor(ctx, services):
    if 'executor' not in ctx.obj:
        ctx.obj['executor'] = create_executor(ctx.obj['settings'], services)
    return ctx.obj['executor']


def _fail(ctx, error, code):
    click.echo(f"Error: {error}", err=True)
    ctx.exit(code)


@cli.command()
@click.option('--apps-only', 'stack', flag_value='apps', help='Only the application services')
@click.option('--monitoring-only', 'stack', flag_value='monitoring', help='Only the monitoring stack')
@click.option('--gitops-only', 'stack', flag_value='gitops', help='Only the GitOps stack')
@click.option('--gating', type=click.Choice(['strict', 'optimistic']), default=None,
              help='Abort on the first unready tier (strict) or keep going (optimistic)')
@click.option('--concurrency', type=click.IntRange(min=1), default=None,
              help='Parallel start/probe workers per tier')
@click.option('--init-env', is_flag=True, help='Create the .env file from its template when missing')
@click.pass_context
def up(ctx, stack, gating, concurrency, init_env):
    """Start the stack tier by tier, waiting for readiness."""
    settings = ctx.obj['settings']
    updates = {}
    if gating:
        updates['gating'] = GatingPolicy(gating)
    if concurrency:
        updates['concurrency'] = concurrency
    if updates:
        settings = settings.model_copy(update=updates)

    if init_env:
        try:
            if EnvironmentManager().ensure_env_file(settings.env_file, settings.env_template):
                click.echo(f"Created {settings.env_file} from {settings.env_template}. "
                           "Update it with your values if needed.")
        except FileNotFoundError as e:
            _fail(ctx, e, EXIT_SETUP_ERROR)

    try:
        services = _load_services(ctx)
    except CatalogError as e:
        _fail(ctx, e, EXIT_SETUP_ERROR)
    if stack:
        services = ServiceCatalog.select(services, [stack])

    executor = _get_executor(ctx, services)
    classifier = ctx.obj['classifier']
    controller = LifecycleController(executor, settings, classifier)
    session = controller.run(services)

    reporter = StatusReporter(executor, classifier)
    click.echo(reporter.render(reporter.report(session)))

    if session.state is LifecycleState.RUNNING:
        return
    if session.state is LifecycleState.ABORTED:
        _fail(ctx, session.error, EXIT_ABORTED)
    if isinstance(session.error, SETUP_ERRORS):
        _fail(ctx, session.error, EXIT_SETUP_ERROR)
    _fail(ctx, session.error, EXIT_FAILED)


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove volumes (deletes all data)')
@click.option('--prune-images', is_flag=True, help='Prune unused images afterwards')
@click.option('--stop-cluster', is_flag=True, help='Stop minikube afterwards (kubectl executor)')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def down(ctx, volumes, prune_images, stop_cluster, yes):
    """Stop every running service of the stack, frontend first."""
    try:
        services = _load_services(ctx)
    except CatalogError as e:
        _fail(ctx, e, EXIT_SETUP_ERROR)

    if volumes:
        click.echo("WARNING: volumes will be removed. All data will be lost.")
    if not yes and not click.confirm("Stop all services?", default=False):
        click.echo("Cancelled.")
        return

    executor = _get_executor(ctx, services)
    options = TeardownOptions(remove_volumes=volumes, prune_images=prune_images, stop_cluster=stop_cluster)
    teardown = TeardownController(executor, services, ctx.obj['classifier'])
    try:
        result = teardown.teardown([svc.name for svc in services], options)
    except (PrerequisiteError, ConnectivityError) as e:
        _fail(ctx, e, EXIT_SETUP_ERROR)

    for name in result.stopped:
        click.echo(f"Stopped {name}")
    if result.not_running:
        click.echo(f"Not running: {', '.join(result.not_running)}")

    try:
        result.raise_for_failures()
    except PartialTeardownError as e:
        _fail(ctx, e, EXIT_FAILED)
    click.echo("Teardown complete.")


@cli.command()
@click.pass_context
def status(ctx):
    """Show what is running and where to reach it."""
    try:
        services = _load_services(ctx)
    except CatalogError as e:
        click.echo(f"Error: {e}", err=True)
        return

    executor = _get_executor(ctx, services)
    reporter = StatusReporter(executor, ctx.obj['classifier'])
    click.echo(reporter.render(reporter.query(services)))


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
