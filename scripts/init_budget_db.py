#!/usr/bin/env python3
"""
Create (or reset) the budget schema and optionally seed a demo budget.

Settings come from load_settings(): an optional YAML file (--config or
BUDGET_CONFIG_FILE) plus BUDGET_DATABASE_URL / BUDGET_TRANSACTION_MODE.

Usage:
  python3 scripts/init_budget_db.py [--config FILE] [--db-url URL] [--reset] [--demo]
"""

import argparse
import logging
import sys
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

logger = logging.getLogger("budget_kernel.scripts.init_budget_db")


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create the budget schema")
    p.add_argument("--config", default=None, help="Settings YAML file")
    p.add_argument("--db-url", default=None, help="Database URL (overrides settings)")
    p.add_argument("--reset", action="store_true", help="Drop all tables first")
    p.add_argument("--demo", action="store_true", help="Seed one demo budget group")
    return p.parse_args()


def _seed_demo(settings) -> str:
    from budget_kernel.db.engine import session_scope
    from budget_kernel.domain.values import ResourceType
    from budget_services import BudgetServices, ResourceInput

    with session_scope() as session:
        services = BudgetServices.build(session, settings)
        v1 = services.lifecycle.create_parent("PRY0000000001", "Demo warehouse")
        title = services.titles.create(v1.budget_id, "01", "Earthworks")
        item = services.line_items.create(
            title.title_id, "01.01", "Excavation", unit="m3", quantity=Decimal("120")
        )
        labor = services.prices.create_price(
            v1.budget_id, "RES-LAB-01", "MO-01", "Laborer", "hh", ResourceType.LABOR, Decimal("18.50")
        )
        services.analyses.create_analysis(
            item.line_item_id,
            yield_per_shift=Decimal("8"),
            resources=[
                ResourceInput(
                    resource_type=ResourceType.LABOR,
                    quantity=Decimal("1"),
                    unit="hh",
                    description="Laborer",
                    resource_id=labor.resource_id,
                    price_id=labor.price_id,
                    crew_size=Decimal("2"),
                )
            ],
        )
        return v1.budget_id


def main() -> int:
    args = _parse_args()

    from dataclasses import replace

    from budget_kernel.config import load_settings
    from budget_kernel.db.engine import create_tables, drop_tables, init_engine_from_url
    from budget_kernel.logging_config import configure_logging

    settings = load_settings(args.config)
    if args.db_url:
        settings = replace(settings, database_url=args.db_url)
    configure_logging(level=settings.log_level)

    engine = init_engine_from_url(settings.database_url)
    if args.reset:
        drop_tables(engine)
        logger.info("tables_dropped", extra={"dialect": engine.dialect.name})
    create_tables(engine)

    if args.demo:
        budget_id = _seed_demo(settings)
        logger.info("demo_budget_seeded", extra={"budget_id": budget_id})
    return 0


if __name__ == "__main__":
    sys.exit(main())
