"""
Database seeding script for initial users.

Creates an ADMIN, a REQUESTER and two AGENT users for local development.
Profiles normally come from the user service; run this after the database
is set up to get accounts the API will accept tokens for.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.db.session import AsyncSessionLocal, engine, Base
from backend.app.models.user import User
from backend.app.models.enums import UserRole
from backend.app.core.jwt import create_access_token
from backend.app.core.security import get_password_hash
from sqlalchemy import select

SEED_USERS = [
    ("admin", "Green Admin", UserRole.ADMIN, "admin123"),
    ("riya", "Riya Sharma", UserRole.REQUESTER, "riya123"),
    ("arjun", "Arjun Patel", UserRole.AGENT, "arjun123"),
    ("meera", "Meera Iyer", UserRole.AGENT, "meera123"),
]


async def seed_users():
    """
    Seed one user per role (two agents so offers can move between them)
    and print a development token for each.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting user seeding...")

        result = await db.execute(select(User).where(User.username == "admin"))
        if result.scalar_one_or_none():
            print("ℹ️  ADMIN user already exists, skipping seeding")
            return

        users = []
        for username, full_name, role, password in SEED_USERS:
            user = User(
                email=f"{username}@cleangreen.dev",
                username=username,
                full_name=full_name,
                hashed_password=get_password_hash(password),
                role=role,
                is_active=True,
            )
            db.add(user)
            users.append(user)
            print(f"✅ Created {role.value} user (username: {username}, password: {password})")

        await db.commit()

        print("\n🎉 User seeding completed successfully!")
        print("\nDevelopment tokens:")
        for user in users:
            token = create_access_token({"sub": user.username, "user_id": user.id, "role": user.role.value})
            print(f"  - {user.role.value:<9} {user.username:<6} {token}")


if __name__ == "__main__":
    asyncio.run(seed_users())
