#!/usr/bin/env python3
"""Seed demo accounts and a sample prescription.

Usage:
    # In-memory store (state snapshot under SHARED_FS_ROOT):
    python scripts/seed_demo.py

    # Against PostgreSQL, applying the schema first:
    DATABASE_URL=postgresql://rx:rx@localhost/rxportal python scripts/seed_demo.py --apply-schema

Creates admin@test.com, dr@test.com and patient@test.com. Existing accounts
are left untouched, so the script can be run repeatedly.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEMO_USERS = [
    {"email": "admin@test.com", "password": "admin123", "name": "Admin", "role": "admin"},
    {
        "email": "dr@test.com",
        "password": "dr123",
        "name": "Dr. Demo",
        "role": "doctor",
        "specialty": "Cardiology",
    },
    {
        "email": "patient@test.com",
        "password": "patient123",
        "name": "Demo Patient",
        "role": "patient",
        "birth_date": date(1985, 8, 15),
    },
]

DEMO_ITEMS = [
    {"name": "Amoxicillin", "dosage": "500mg", "quantity": 21, "instructions": "One every 8 hours"},
    {"name": "Ibuprofen", "dosage": "400mg", "quantity": 10, "instructions": "After meals if needed"},
]


async def seed(*, dry_run: bool = False, apply_schema: bool = False) -> dict:
    """Create the demo data; returns a summary of what happened per account."""
    # Import here so env defaults are in place before settings load
    from rxportal.service.prescriptions import ItemInput
    from rxportal.service.runtime import get_runtime
    from rxportal.storage.postgres import apply_schema as run_ddl

    dsn = os.environ.get("DATABASE_URL")
    if apply_schema and dsn and not dry_run:
        run_ddl(dsn, ROOT / "schema" / "001_init.sql")

    runtime = get_runtime()

    summary: dict = {"users": {}, "prescription": None}
    users = {}
    for account in DEMO_USERS:
        existing = runtime.store.get_user_by_email(account["email"])
        if existing:
            users[account["role"]] = existing
            summary["users"][account["email"]] = "exists"
            continue
        if dry_run:
            summary["users"][account["email"]] = "dry_run"
            continue
        record = await runtime.users.create_user(
            account["email"],
            account["password"],
            account["name"],
            account["role"],
            specialty=account.get("specialty"),
            birth_date=account.get("birth_date"),
        )
        users[account["role"]] = record.user
        summary["users"][account["email"]] = "created"

    doctor, patient = users.get("doctor"), users.get("patient")
    if dry_run or not doctor or not patient:
        return summary

    patient_profile = runtime.store.get_patient_profile(patient.id)
    mine = runtime.prescriptions.list_for_patient(patient, limit=1)
    if mine.total:
        summary["prescription"] = "exists"
        return summary
    rx = await runtime.prescriptions.create(
        doctor,
        patient_profile.id,
        [ItemInput(**item) for item in DEMO_ITEMS],
        notes="Demo prescription",
    )
    summary["prescription"] = rx.code
    return summary


def main():
    parser = argparse.ArgumentParser(
        description="Seed RxPortal demo data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Apply schema/001_init.sql before seeding (PostgreSQL only)",
    )
    args = parser.parse_args()

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/rxportal-seed"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(seed(dry_run=args.dry_run, apply_schema=args.apply_schema))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for email, status in result["users"].items():
        print(f"  {email}: {status}")
    if result["prescription"]:
        print(f"  prescription: {result['prescription']}")


if __name__ == "__main__":
    main()
