"""Operator CLI for the Service Lifecycle Agent."""

import asyncio
import json
import sys
from typing import Optional

import click
from tabulate import tabulate

from service_lifecycle import __version__
from service_lifecycle.audit.recorder import AuditRecorder
from service_lifecycle.clients.broker_client import BrokerClientFactory
from service_lifecycle.config import Config, load_config
from service_lifecycle.exceptions import LifecycleError
from service_lifecycle.logging_config import setup_logging
from service_lifecycle.services.lifecycle import InstanceLifecycleService
from service_lifecycle.services.orchestrator import LifecycleOrchestrator
from service_lifecycle.services.worker import LifecycleWorker
from service_lifecycle.storage.factory import StorageFactory


class Runtime:
    """Wires stores, queue, broker clients and services from configuration."""

    def __init__(self, config: Config):
        self.config = config
        self.metadata_store = None
        self.audit_store = None
        self.work_queue = None
        self.broker_clients = None
        self.audit_recorder = None

    async def __aenter__(self) -> 'Runtime':
        self.metadata_store, self.audit_store, self.work_queue = await StorageFactory.create_stores(
            self.config.database
        )
        self.broker_clients = BrokerClientFactory(self.config.broker)
        self.audit_recorder = AuditRecorder(
            self.audit_store, self.metadata_store, log_audit_events=self.config.logging.log_audit_events
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.broker_clients.close()
        await self.metadata_store.close()

    def lifecycle_service(self) -> InstanceLifecycleService:
        return InstanceLifecycleService(
            self.metadata_store, self.work_queue, self.audit_recorder, self.broker_clients
        )

    def worker(self) -> LifecycleWorker:
        orchestrator = LifecycleOrchestrator(
            self.metadata_store, self.work_queue, self.broker_clients, self.audit_recorder,
            self.config.orchestrator
        )
        return LifecycleWorker(self.work_queue, orchestrator, self.config.worker)


@click.group()
@click.option('--config-file', '-c', default=None, help='YAML configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, config_file, verbose):
    """Service Lifecycle Agent CLI - Drive service instances through their broker."""

    ctx.ensure_object(dict)

    try:
        config = load_config(config_file)
    except LifecycleError as e:
        click.echo(f"❌ {e.message}", err=True)
        raise click.Abort()

    if verbose:
        config.logging.level = 'DEBUG'
    setup_logging(config.logging)

    ctx.obj['config'] = config


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the database schema."""

    async def _init_db():
        async with Runtime(ctx.obj['config']):
            pass

    try:
        asyncio.run(_init_db())
    except LifecycleError as e:
        click.echo(f"❌ Failed to initialize database: {e.message}", err=True)
        raise click.Abort()

    click.echo(f"✅ Database initialized at {ctx.obj['config'].database.sqlite_path}")


@cli.command()
@click.argument('instance_guid')
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.pass_context
def status(ctx, instance_guid, output_format):
    """Show a service instance and its last operation."""

    async def _status():
        async with Runtime(ctx.obj['config']) as runtime:
            return await runtime.metadata_store.get_instance(instance_guid)

    try:
        instance = asyncio.run(_status())
    except LifecycleError as e:
        click.echo(f"❌ Failed to read instance: {e.message}", err=True)
        raise click.Abort()

    if instance is None:
        click.echo(f"❌ Service instance '{instance_guid}' not found", err=True)
        raise click.Abort()

    last_operation = instance.last_operation.to_status_dict() if instance.last_operation else {}

    if output_format == 'json':
        data = instance.model_dump(mode='json', exclude={'credentials', 'last_operation'})
        data['last_operation'] = last_operation
        click.echo(json.dumps(data, indent=2))
        return

    rows = [
        ['GUID', instance.guid],
        ['Name', instance.name],
        ['Type', instance.type.value],
        ['Space', instance.space_guid],
        ['Plan', instance.service_plan_guid or '-'],
        ['Dashboard URL', instance.dashboard_url or '-'],
        ['Operation', last_operation.get('type', '-')],
        ['State', last_operation.get('state', '-')],
        ['Description', last_operation.get('description') or '-'],
        ['Updated', last_operation.get('updated_at', '-')],
    ]
    click.echo(tabulate(rows, tablefmt='grid'))


@cli.command()
@click.option('--instance', '-i', 'instance_guid', help='Only events for this service instance')
@click.option('--type', '-t', 'event_type', help='Only events of this type')
@click.option('--limit', '-l', default=50, show_default=True, help='Maximum number of events')
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.pass_context
def events(ctx, instance_guid, event_type, limit, output_format):
    """List audit events."""

    async def _events():
        async with Runtime(ctx.obj['config']) as runtime:
            return await runtime.audit_recorder.list_events(actee=instance_guid, event_type=event_type, limit=limit)

    try:
        audit_events = asyncio.run(_events())
    except LifecycleError as e:
        click.echo(f"❌ Failed to list events: {e.message}", err=True)
        raise click.Abort()

    if output_format == 'json':
        click.echo(json.dumps([event.model_dump(mode='json') for event in audit_events], indent=2))
        return

    if not audit_events:
        click.echo("No audit events found")
        return

    rows = [
        [
            event.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
            event.type,
            event.actee_name,
            event.actor_name or event.actor,
            event.metadata.get('state', '-')
        ]
        for event in audit_events
    ]
    headers = ['Timestamp', 'Type', 'Instance', 'Actor', 'State']
    click.echo(tabulate(rows, headers=headers, tablefmt='grid'))


@cli.command()
@click.argument('instance_guid')
@click.pass_context
def parameters(ctx, instance_guid):
    """Fetch a managed instance's parameters from its broker."""

    async def _parameters():
        async with Runtime(ctx.obj['config']) as runtime:
            return await runtime.lifecycle_service().get_instance_parameters(instance_guid)

    try:
        params = asyncio.run(_parameters())
    except LifecycleError as e:
        click.echo(f"❌ Failed to fetch parameters: {e.message}", err=True)
        raise click.Abort()

    click.echo(json.dumps(params, indent=2))


@cli.command()
@click.option('--once', is_flag=True, help='Run due units once and exit')
@click.pass_context
def worker(ctx, once):
    """Run the lifecycle worker."""

    async def _worker() -> Optional[int]:
        async with Runtime(ctx.obj['config']) as runtime:
            lifecycle_worker = runtime.worker()
            if once:
                results = await lifecycle_worker.run_once()
                return len(results)
            await lifecycle_worker.run_forever()
            return None

    try:
        processed = asyncio.run(_worker())
    except LifecycleError as e:
        click.echo(f"❌ Worker failed: {e.message}", err=True)
        raise click.Abort()

    if processed is not None:
        click.echo(f"✅ Processed {processed} unit(s)")


@cli.command()
def version():
    """Show version information."""

    click.echo("Service Lifecycle Agent CLI")
    click.echo(f"Version: {__version__}")


def main():
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\n👋 Operation cancelled by user")
        sys.exit(1)


if __name__ == '__main__':
    main()
