"""
Database seeding script for development users.

Creates an ADMIN and two marketplace members (one to post packages, one
to post trips) and prints a bearer token for each, since accounts and
logins are owned by the auth service.

Run with: python -m carrypool.seed_users
"""

import asyncio
from datetime import timedelta

from sqlalchemy import select

from carrypool.app.core.jwt import create_access_token
from carrypool.app.db.session import AsyncSessionLocal, engine, Base
from carrypool.app.models.user import User
from carrypool.app.models.enums import UserRole

# Register every table before create_all
import carrypool.app.main  # noqa: F401

SEED_USERS = [
    {"email": "admin@carrypool.dev", "username": "admin", "full_name": "Platform Admin", "role": UserRole.ADMIN},
    {"email": "sender@carrypool.dev", "username": "sender", "full_name": "Sam Sender", "role": UserRole.USER},
    {"email": "traveler@carrypool.dev", "username": "traveler", "full_name": "Tia Traveler", "role": UserRole.USER},
]


async def seed_users():
    """
    Seed development users and print a 24h token for each.

    Existing usernames are left untouched.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting user seeding...")

        users = []
        for data in SEED_USERS:
            result = await db.execute(select(User).where(User.username == data["username"]))
            user = result.scalar_one_or_none()
            if user:
                print(f"ℹ️  {data['username']} already exists, skipping")
            else:
                user = User(is_active=True, **data)
                db.add(user)
                print(f"✅ Created {data['role'].value} user {data['username']}")
            users.append(user)

        await db.commit()

        print("\n🎉 User seeding completed successfully!")
        print("\nBearer tokens (24h):")
        for user in users:
            token = create_access_token(
                {"sub": user.username, "user_id": user.id, "role": user.role.value},
                expires_delta=timedelta(hours=24)
            )
            print(f"  - {user.username:<9} {token}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_users())
