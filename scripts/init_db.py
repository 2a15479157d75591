"""Script to initialize a development database.

Creates all tables from the table metadata and, with ``--seed-doctor``,
inserts a doctor account that can be booked.

Usage:
    python scripts/init_db.py [--seed-doctor EMAIL PHONE]
"""

import asyncio
import sys

from sqlalchemy import insert, select, text

from app.database import engine
from app.models import metadata, users


async def init_db(doctor_email: str | None = None, doctor_phone: str | None = None) -> None:
    """Create all tables and optionally seed a doctor."""
    async with engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        await conn.run_sync(metadata.create_all)
        print("✓ Database initialized successfully!")

        if doctor_email:
            existing = await conn.execute(select(users.c.id).where(users.c.email == doctor_email))
            doctor_id = existing.scalar()
            if doctor_id is None:
                result = await conn.execute(
                    insert(users)
                    .values(
                        email=doctor_email,
                        full_name="Seeded Doctor",
                        phone=doctor_phone,
                        role="doctor",
                        is_active=True,
                    )
                    .returning(users.c.id)
                )
                doctor_id = result.scalar_one()
            print(f"✓ Doctor {doctor_email}: {doctor_id}")

    await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "--seed-doctor":
        if len(sys.argv) != 4:
            print("Usage: python scripts/init_db.py [--seed-doctor EMAIL PHONE]")
            sys.exit(1)
        asyncio.run(init_db(sys.argv[2], sys.argv[3]))
    else:
        asyncio.run(init_db())
