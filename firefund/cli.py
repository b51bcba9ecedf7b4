#!/usr/bin/env python3
"""
FireFund CLI - field client and server entry point
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import click

from firefund.config.config_loader import load_config
from firefund.core.logging_manager import setup_logging
from firefund.client import (
    LocalStorage, OfflineQueueManager, HttpTransactionStore, ConnectivityMonitor,
    DonationRecorder, TransactionDraft, RemoteStoreError, sign_in
)

SESSION_KEY = "session"
PAYMENT_METHODS = ['cash', 'check', 'card', 'transfer']


class ClientContext:
    """Field client components built from configuration"""

    def __init__(self, config: Dict[str, Any]):
        client_config = config['client']
        self.config = config
        self.server_url = client_config['server_url']
        self.storage = LocalStorage(client_config['storage_path'])
        self.session = self.storage.get_item(SESSION_KEY) or {}
        self.store = HttpTransactionStore(
            self.server_url,
            token=client_config.get('token') or self.session.get('access_token'),
            timeout=float(client_config.get('request_timeout', 30.0))
        )
        self.manager = OfflineQueueManager.from_config(config, self.store, self.storage, is_online=False)
        self.monitor = ConnectivityMonitor(
            self.manager, self.server_url,
            check_interval=float(client_config.get('check_interval', 15.0))
        )

    async def aclose(self):
        await self.manager.close()
        await self.monitor.stop()
        await self.store.aclose()


def _print_queue(manager: OfflineQueueManager):
    click.echo(f"Pending: {manager.pending_count} transaction(s), "
               f"{manager.total_pending_amount:.2f} EUR, "
               f"{manager.total_pending_calendars} calendar(s)")
    for item in manager.pending_transactions:
        line = f"  - {item.id} {item.amount:.2f} {item.payment_method} attempts={item.sync_attempts}"
        if item.sync_error:
            line += f" error={item.sync_error}"
        click.echo(line)
    last = manager.last_sync_at.isoformat() if manager.last_sync_at else "never"
    click.echo(f"Last sync: {last}")


@click.group()
@click.option('--config', 'config_path', type=click.Path(path_type=Path), default=None,
              help='YAML configuration file')
@click.pass_context
def cli(ctx, config_path: Optional[Path]):
    """FireFund Command Line Interface"""
    config = load_config(config_path)
    setup_logging(config)
    ctx.obj = config


@cli.command()
@click.option('--email', prompt=True, help='Account email')
@click.option('--password', prompt=True, hide_input=True, help='Account password')
@click.pass_obj
def login(config: Dict[str, Any], email: str, password: str):
    """Sign in and remember the session on this device"""

    async def run_login():
        server_url = config['client']['server_url']
        try:
            result = await sign_in(server_url, email, password)
        except RemoteStoreError as e:
            click.echo(f"Login failed: {e}", err=True)
            raise click.Abort()

        profile = result['profile']
        LocalStorage(config['client']['storage_path']).set_item(SESSION_KEY, {
            'access_token': result['access_token'],
            'expires_at': result['expires_at'],
            'user_id': profile['id'],
            'team_id': profile.get('team_id'),
            'email': profile['email'],
        })
        click.echo(f"Signed in as {profile['email']} ({profile['role']})")

    asyncio.run(run_login())


@cli.command()
@click.option('--amount', type=float, required=True, help='Donation amount')
@click.option('--calendars', type=int, default=1, show_default=True, help='Calendars given')
@click.option('--method', type=click.Choice(PAYMENT_METHODS), default='cash', show_default=True)
@click.option('--name', 'donator_name', default=None, help='Donor name')
@click.option('--email', 'donator_email', default=None, help='Donor email')
@click.option('--notes', default=None)
@click.option('--tour', 'tournee_id', default=None, help='Tour id')
@click.pass_obj
def donate(config: Dict[str, Any], amount: float, calendars: int, method: str,
           donator_name: Optional[str], donator_email: Optional[str],
           notes: Optional[str], tournee_id: Optional[str]):
    """Record a donation, queueing it when the server is unreachable"""

    async def run_donate():
        client = ClientContext(config)
        try:
            if not client.session.get('user_id'):
                click.echo("Not signed in, run 'firefund login' first", err=True)
                raise click.Abort()

            await client.monitor.check()
            recorder = DonationRecorder(client.manager, client.store)
            result = await recorder.record(TransactionDraft(
                user_id=client.session['user_id'],
                team_id=client.session.get('team_id'),
                tournee_id=tournee_id,
                amount=amount,
                calendars_given=calendars,
                payment_method=method,
                donator_name=donator_name,
                donator_email=donator_email,
                notes=notes,
            ))
        finally:
            await client.aclose()

        if result.status == 'synced':
            click.echo(f"Donation recorded: {result.transaction_id}")
        else:
            reason = f" ({result.error})" if result.error else ""
            click.echo(f"Donation queued offline: {result.offline_id}{reason}")

    asyncio.run(run_donate())


@cli.command()
@click.pass_obj
def queue(config: Dict[str, Any]):
    """Show the offline queue"""

    async def run_queue():
        client = ClientContext(config)
        try:
            _print_queue(client.manager)
        finally:
            await client.aclose()

    asyncio.run(run_queue())


@cli.command()
@click.pass_obj
def sync(config: Dict[str, Any]):
    """Flush the offline queue now"""

    async def run_sync():
        client = ClientContext(config)
        try:
            if not await client.monitor.is_reachable():
                click.echo("Server unreachable, nothing synced", err=True)
                raise click.Abort()

            before = client.manager.pending_count
            client.manager.set_online_status(True)
            await client.manager.sync_pending_transactions()
            click.echo(f"Synced {before - client.manager.pending_count}/{before} transaction(s)")
            _print_queue(client.manager)
        finally:
            await client.aclose()

    asyncio.run(run_sync())


@cli.command()
@click.pass_obj
def watch(config: Dict[str, Any]):
    """Check connectivity and flush the queue until interrupted"""

    async def run_watch():
        client = ClientContext(config)
        client.manager.subscribe(
            lambda m: click.echo(
                f"[{'online' if m.is_online else 'offline'}] pending={m.pending_count} "
                f"amount={m.total_pending_amount:.2f} syncing={m.sync_in_progress}"
            )
        )
        client.manager.start()
        client.monitor.start()
        try:
            await asyncio.Event().wait()
        finally:
            await client.aclose()

    try:
        asyncio.run(run_watch())
    except KeyboardInterrupt:
        click.echo("Stopped")


@cli.command()
def serve():
    """Run the FireFund server"""
    from firefund.main import main
    main()


if __name__ == '__main__':
    cli()
