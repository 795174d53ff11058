"""
Release phase for the procurement service.

Steps:
  1. alembic upgrade head against DATABASE_URL
  2. seed_only(): permissions, roles, admin user, withholding job types,
     scoring types, evaluation questions and the default request workflow
  3. print a short inventory of the reference data so a broken seed is
     visible in the deploy log

SQLite is refused when ENV=production.

Usage:
  python scripts/release.py [--skip-migrations] [--skip-seed]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set; refusing to release against an implicit SQLite file.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("ENV=production requires a Postgres DATABASE_URL.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def reference_inventory(db_url: str) -> dict[str, int]:
    """Row counts of the seeded lookup tables."""
    from app.procurement.models import Role
    from app.procurement.modules.approvals.models import ApprovalWorkflow
    from app.procurement.modules.evaluations.models import EvaluationQuestion, ScoringType
    from app.procurement.modules.invoices.models import WithholdingJobType
    from app.procurement.db import engine_session

    with engine_session(db_url) as s:
        return {
            "roles": s.query(Role).count(),
            "approval_workflows": s.query(ApprovalWorkflow).count(),
            "withholding_job_types": s.query(WithholdingJobType).count(),
            "scoring_types": s.query(ScoringType).count(),
            "evaluation_questions": s.query(EvaluationQuestion).count(),
        }


def run_release(*, skip_migrations: bool = False, skip_seed: bool = False) -> dict[str, int]:
    db_url = _database_url()
    print(f"=== Procurement release (ENV={os.environ.get('ENV') or 'unset'}) ===", flush=True)

    if skip_migrations:
        print("Skipping migrations.", flush=True)
    else:
        print("alembic upgrade head ...", flush=True)
        migrate(db_url)

    if skip_seed:
        print("Skipping seed.", flush=True)
    else:
        print("Seeding reference data ...", flush=True)
        from scripts import init_db

        init_db.seed_only(database_url=db_url)

    inventory = reference_inventory(db_url)
    for name, count in inventory.items():
        print(f"  {name}: {count}", flush=True)
    if not skip_seed and not inventory["roles"]:
        raise RuntimeError("Seed finished but no roles exist.")
    print("=== Release done ===", flush=True)
    return inventory


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Migrate and seed the procurement database")
    parser.add_argument("--skip-migrations", action="store_true")
    parser.add_argument("--skip-seed", action="store_true")
    args = parser.parse_args(argv)
    run_release(skip_migrations=args.skip_migrations, skip_seed=args.skip_seed)


if __name__ == "__main__":
    main()
