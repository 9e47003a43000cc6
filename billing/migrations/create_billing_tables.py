"""
Database Migration Script for Billing Tables

Balances and transactions live in Stripe; this script creates the local
table the webhook endpoint relies on:
- Creates stripe_webhook_events table (processed event log)

Run this script once to set up billing tables.
For production, consider using Alembic for proper migrations.

Usage:
    python -m billing.migrations.create_billing_tables
"""

import sys

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from db.database import engine
from db import models


REQUIRED_TABLES = ["stripe_webhook_events"]


def run_migration(bind=None) -> bool:
    """Run the billing migration."""
    bind = bind or engine

    print("=" * 60)
    print("BILLING TABLES MIGRATION")
    print("=" * 60)

    # Create all tables defined in models
    print("\n1. Creating tables...")
    try:
        models.Base.metadata.create_all(bind=bind)
        print("   ✓ All tables created successfully")
    except SQLAlchemyError as e:
        print(f"   ✗ Error creating tables: {e}")
        return False

    # Verify tables exist
    print("\n2. Verifying tables...")
    existing = set(inspect(bind).get_table_names())
    ok = True
    for table in REQUIRED_TABLES:
        if table in existing:
            print(f"   ✓ Table '{table}' exists")
        else:
            print(f"   ✗ Table '{table}' missing")
            ok = False

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE" if ok else "MIGRATION INCOMPLETE")
    print("=" * 60)

    return ok


def show_migration_sql():
    """Print SQL statements for manual migration."""
    print("\n" + "=" * 60)
    print("MANUAL MIGRATION SQL (if needed)")
    print("=" * 60)

    sql = """
-- Create stripe_webhook_events table
CREATE TABLE IF NOT EXISTS stripe_webhook_events (
    id VARCHAR(26) PRIMARY KEY,
    stripe_event_id VARCHAR(255) NOT NULL UNIQUE,
    event_type VARCHAR(100) NOT NULL,
    status VARCHAR(50),
    received_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    processed_at DATETIME,
    result_json JSON
);
CREATE INDEX idx_stripe_webhook_events_event_id ON stripe_webhook_events (stripe_event_id);
"""
    print(sql)


if __name__ == "__main__":
    if "--sql" in sys.argv:
        show_migration_sql()
        sys.exit(0)
    sys.exit(0 if run_migration() else 1)
