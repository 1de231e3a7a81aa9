#!/usr/bin/env python3
"""Print onboarding migrations for the SQL editor and check which tables exist."""

import sys
from pathlib import Path

from blueprint.db.client import get_service_client

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

REQUIRED_TABLES = (
    "users",
    "user_metrics_and_goals",
    "user_diet_and_meal_preferences",
    "calorie_calculations",
    "meal_plans",
    "groceries",
    "conversations",
    "shared_meal_plans",
)


def migration_files(selected: list[str]) -> list[Path]:
    if selected:
        return [Path(name) for name in selected]
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


def show_migration(path: Path) -> bool:
    if not path.exists():
        print(f"[ERROR] Migration file not found: {path}")
        return False

    sql = path.read_text()
    print(f"Migration: {path.name}")
    print("-" * 50)
    print(sql)
    print("-" * 50)
    return True


def check_tables() -> list[str]:
    """Return the required tables the database does not have."""
    client = get_service_client()
    missing = []
    for table in REQUIRED_TABLES:
        try:
            client.table(table).select("*").limit(0).execute()
            print(f"  [OK] {table}")
        except Exception as e:
            print(f"  [MISSING] {table}: {e}")
            missing.append(table)
    return missing


if __name__ == "__main__":
    # The Supabase client has no raw SQL endpoint; run the SQL in the
    # dashboard SQL editor (or `supabase db push`), then re-run with --check.
    if "--check" in sys.argv:
        missing = check_tables()
        sys.exit(1 if missing else 0)

    files = migration_files([arg for arg in sys.argv[1:] if not arg.startswith("--")])
    if not files:
        print(f"No migrations found in {MIGRATIONS_DIR}")
        sys.exit(1)
    ok = all(show_migration(path) for path in files)
    print("\n[INFO] Run the SQL above in Supabase Dashboard > SQL Editor, then: run_migration.py --check")
    sys.exit(0 if ok else 1)
