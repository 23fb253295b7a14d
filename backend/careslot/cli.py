"""
Operational commands: create the schema, seed providers, run sweeps by hand.

    careslot init-db --seed
    careslot sweep
"""

from decimal import Decimal
import json
import logging
from typing import Optional

import click
from sqlalchemy.orm import Session, sessionmaker

from careslot.core.logging import setup_logging
from careslot.database import Base, build_engine
from careslot.models import Provider
from careslot.services.dependencies import build_reconciliation_service

logger = logging.getLogger(__name__)

SAMPLE_PROVIDERS = [
    ("Dr. Sarah Johnson", "Family Medicine", Decimal("50.00")),
    ("Dr. Michael Chen", "Cardiology", Decimal("75.00")),
    ("Dr. Emily Rodriguez", "Dermatology", Decimal("60.00")),
    ("Dr. James Wilson", "General Medicine", Decimal("45.00")),
]


def seed_providers(db: Session, currency: str = "USD") -> int:
    """Insert the sample providers unless providers already exist."""
    if db.query(Provider).count():
        return 0
    for display_name, specialty, fee in SAMPLE_PROVIDERS:
        db.add(
            Provider(
                display_name=display_name,
                specialty=specialty,
                consultation_fee=fee,
                currency=currency,
                is_active=True,
            )
        )
    db.commit()
    return len(SAMPLE_PROVIDERS)


@click.group()
@click.option("--database-url", default=None, help="Override DATABASE_URL")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx: click.Context, database_url: Optional[str], log_level: Optional[str]) -> None:
    setup_logging(log_level)
    engine = build_engine(database_url)
    ctx.obj = {"engine": engine, "session_factory": sessionmaker(bind=engine, autoflush=False)}


@cli.command("init-db")
@click.option("--seed/--no-seed", default=False, help="Insert sample providers")
@click.pass_context
def init_db(ctx: click.Context, seed: bool) -> None:
    """Create all tables (idempotent)."""
    import careslot.models  # noqa: F401  (registers tables)

    Base.metadata.create_all(ctx.obj["engine"])
    click.echo("Schema ready")
    if seed:
        db = ctx.obj["session_factory"]()
        try:
            created = seed_providers(db)
        finally:
            db.close()
        click.echo(f"Seeded {created} provider(s)")


@cli.command()
@click.option("--limit", type=int, default=None, help="Maximum jobs per sweep")
@click.pass_context
def sweep(ctx: click.Context, limit: Optional[int]) -> None:
    """Run the settlement and confirmation sweeps once."""
    db = ctx.obj["session_factory"]()
    try:
        service = build_reconciliation_service(db)
        settlements = service.process_due_settlements(limit)
        confirmed = service.redrive_unconfirmed(limit)
    finally:
        db.close()
    click.echo(json.dumps({"settlements": settlements, "confirmed": confirmed}))


if __name__ == "__main__":
    cli()
