"""Flask CLI commands for subscription billing.

Usage:
    flask billing reconcile
    flask billing reconcile --at 2026-03-01T00:00:00+00:00
    flask billing show <subdomain>
"""

from __future__ import annotations

import json
import sys
from typing import Optional

import click

from utils import parse_datetime


def register_billing_commands(app):
    """Register the ``flask billing`` command group on *app*."""

    @app.cli.group("billing")
    def billing_cli():
        """Subscription billing tools."""
        pass

    @billing_cli.command("reconcile")
    @click.option("--at", "at", help="Run as if it were this ISO-8601 time (UTC).")
    def reconcile_command(at: Optional[str]):
        """Run one reconciliation pass and print the result."""
        from services.reconciliation import reconcile

        now = None
        if at:
            now = parse_datetime(at)
            if now is None:
                click.echo(f"Error: invalid timestamp {at!r}", err=True)
                sys.exit(1)
        result = reconcile(now=now)
        click.echo(f"Lapsed: {result.lapsed.processed}")
        click.echo(f"Expired: {result.expired.processed}")
        for error in result.errors:
            click.echo(f"  tenant {error['tenant_id']}: {error['error']}", err=True)
        if result.errors:
            sys.exit(1)

    @billing_cli.command("show")
    @click.argument("subdomain")
    def show_command(subdomain: str):
        """Print the subscription snapshot of a tenant."""
        from models import Tenant
        from services.billing import get_lifecycle

        tenant = Tenant.query.filter_by(subdomain=subdomain.lower()).first()
        if tenant is None:
            click.echo(f"Error: no tenant with subdomain {subdomain!r}", err=True)
            sys.exit(1)
        sub = get_lifecycle().get(tenant.id)
        click.echo(f"Tenant: {tenant.name} ({tenant.subdomain}) active={tenant.is_active}")
        if sub is None:
            click.echo("No subscription.")
            return
        click.echo(json.dumps(get_lifecycle().snapshot(sub), indent=2))
