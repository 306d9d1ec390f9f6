"""CLI tools for integration operations."""

import asyncio
import json
from uuid import UUID

import click

from crm_api.core.errors import IntegrationError
from crm_api.core.structured_logging import configure_logging
from crm_api.db.enums import AccountKind
from crm_api.db.session import SessionLocal


@click.group()
def cli():
    """CRM integration CLI tools."""
    configure_logging()


@cli.command()
@click.option("--org-id", default=None, help="Limit to one organization")
@click.option("--limit", default=100, show_default=True, help="Max tokens per run")
def reconcile_tokens(org_id: str | None, limit: int):
    """
    Re-encrypt fallback-cipher tokens under their tenant DEK.

    Example:
        python -m crm_api.cli reconcile-tokens --limit 500
    """
    from crm_api.services import secure_token_service

    with SessionLocal() as db:
        counts = secure_token_service.reconcile_fallback_tokens(
            db, org_id=UUID(org_id) if org_id else None, limit=limit
        )
    click.echo(
        f"✓ Reconciled {counts['reconciled']}, skipped {counts['skipped']}, failed {counts['failed']}"
    )


@cli.command()
def sweep_renewals():
    """Enqueue channel renewals that are past their due time."""
    from crm_api.services import watch_channel_service

    with SessionLocal() as db:
        result = watch_channel_service.sweep_due_renewals(db)
    click.echo(f"✓ {result['jobs_created']} renewal job(s) created, {result['already_pending']} already pending")


@cli.command()
def schedule_probes():
    """Enqueue health probes for every account."""
    from crm_api.services import health_probe_service

    with SessionLocal() as db:
        result = health_probe_service.schedule_health_probes(db)
    click.echo(f"✓ {result['jobs_created']} probe job(s) created, {result['duplicates_skipped']} skipped")


@cli.command()
def schedule_refreshes():
    """Enqueue access token refreshes for tokens close to expiry."""
    from crm_api.services import oauth_callback_service

    with SessionLocal() as db:
        result = oauth_callback_service.schedule_token_refreshes(db)
    click.echo(f"✓ {result['jobs_created']} refresh job(s) created, {result['already_scheduled']} already scheduled")


@cli.command()
@click.option("--org-id", required=True, help="Organization ID")
def token_status(org_id: str):
    """Print token encryption totals for an organization."""
    from crm_api.services import secure_token_service

    with SessionLocal() as db:
        report = secure_token_service.get_token_encryption_status(db, UUID(org_id))
    click.echo(json.dumps(report, indent=2))


@cli.command()
@click.option("--org-id", default=None, help="Limit to one organization")
def queue_stats(org_id: str | None):
    """Print job counts per type and status."""
    from crm_api.services import job_service

    with SessionLocal() as db:
        stats = job_service.get_queue_stats(db, org_id=UUID(org_id) if org_id else None)
    for job_type, counts in stats.items():
        summary = ", ".join(f"{status}={count}" for status, count in counts.items())
        click.echo(f"{job_type}: {summary}")


@cli.command()
@click.option("--account-id", required=True, help="Email or calendar account ID")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in AccountKind]),
    default=AccountKind.EMAIL.value,
    show_default=True,
)
def refresh_account(account_id: str, kind: str):
    """
    Refresh an account's Google access token.

    Example:
        python -m crm_api.cli refresh-account --account-id <uuid> --kind calendar
    """
    from crm_api.services import oauth_callback_service, watch_channel_service

    model = watch_channel_service.ACCOUNT_MODELS[AccountKind(kind)]
    with SessionLocal() as db:
        account = db.get(model, UUID(account_id))
        if not account:
            click.echo(f"❌ Account not found: {account_id}")
            raise SystemExit(1)
        try:
            refreshed = asyncio.run(oauth_callback_service.refresh_account_tokens(db, account))
        except IntegrationError as e:
            click.echo(f"❌ Refresh failed ({e.code}): {e}")
            raise SystemExit(1)
    if not refreshed:
        click.echo("❌ No usable refresh token; reconnect required")
        raise SystemExit(1)
    click.echo(f"✓ Refreshed access token for {account_id}")


@cli.command()
@click.option("--older-than-days", default=None, type=int, help="Retention window (default: JOB_RETENTION_DAYS)")
def purge_jobs(older_than_days: int | None):
    """Delete completed and dead-lettered jobs past retention."""
    from crm_api.services import job_service

    with SessionLocal() as db:
        deleted = job_service.purge_finished_jobs(db, older_than_days=older_than_days)
    click.echo(f"✓ Deleted {deleted} finished job(s)")


if __name__ == "__main__":
    cli()
