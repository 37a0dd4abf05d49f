#!/usr/bin/env python3
"""CLI script to create a platform user and print an API access token.

Usage:
    python scripts/create_user.py --email owner@example.com --name "Owner" --password changeme
    python scripts/create_user.py --email owner@example.com --name "Owner" --password changeme --role ADMIN

Connects directly to the database using DATABASE_URL from environment or .env file.
Creates the tables if needed, inserts the user with a bcrypt password hash and
prints a Bearer token for the API (the platform has no login endpoint).
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def create_user(email: str, name: str, password: str, role: str) -> None:
    """Create the user through the platform repository."""
    from src.app.core.database import close_db, get_session, init_db
    from src.app.core.security import create_access_token, hash_password
    from src.app.platform.repository import PlatformRepository
    from src.app.platform.schemas import UserCreate

    await init_db()
    repository = PlatformRepository(session_factory=get_session)

    existing = await repository.users.find_first({"email": email})
    if existing is not None:
        print(f"User already exists: {email} (id={existing.id})")
        user = existing
    else:
        user = await repository.users.create(
            UserCreate(email=email, name=name, password_hash=hash_password(password), role=role)
        )
        print("User created successfully:")
        print(f"  ID:    {user.id}")
        print(f"  Email: {user.email}")
        print(f"  Role:  {user.role}")

    print(f"  Token: {create_access_token({'sub': user.id})}")

    # Clean up
    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a platform user")
    parser.add_argument("--email", required=True, help="User email (unique)")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--password", required=True, help="Initial password")
    parser.add_argument("--role", default="USER", choices=["USER", "ADMIN"], help="User role")
    args = parser.parse_args()

    asyncio.run(create_user(args.email, args.name, args.password, args.role))


if __name__ == "__main__":
    main()
