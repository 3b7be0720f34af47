"""Database seed script: creates tables and the default admin user.

Run: python -m scripts.seed [--viewer-username NAME --viewer-email EMAIL --viewer-password PW]
"""

import argparse
import asyncio
import os
import sys

# Ensure project root is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def seed(viewer: dict = None):
    """Seed the database with default data."""
    from app.config import get_settings
    from core.exceptions import ConflictError
    from core.rbac import Role
    from db.database import close_db, init_db
    from services.auth_service import AuthService
    from services.credential_store import CredentialStore

    settings = get_settings()

    # Initialize DB tables
    await init_db()

    auth_svc = AuthService(CredentialStore())
    try:
        created = await auth_svc.bootstrap_admin(
            username=settings.ADMIN_USERNAME,
            email=settings.ADMIN_EMAIL,
            password=settings.ADMIN_PASSWORD,
        )
        if created:
            print(f"[seed] Created admin user: {settings.ADMIN_USERNAME}")
        else:
            print("[seed] Admin user exists")

        if viewer:
            try:
                await auth_svc.create_user(role=Role.VIEWER, **viewer)
                print(f"[seed] Created viewer user: {viewer['username']}")
            except ConflictError:
                print(f"[seed] Viewer user exists: {viewer['username']}")
    finally:
        await close_db()

    print("[seed] Done.")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Seed the speed monitor database")
    parser.add_argument("--viewer-username")
    parser.add_argument("--viewer-email")
    parser.add_argument("--viewer-password")
    args = parser.parse_args(argv)

    viewer = None
    if args.viewer_username:
        if not (args.viewer_email and args.viewer_password):
            parser.error("--viewer-email and --viewer-password are required with --viewer-username")
        viewer = {
            "username": args.viewer_username,
            "email": args.viewer_email,
            "password": args.viewer_password,
        }

    asyncio.run(seed(viewer))


if __name__ == "__main__":
    main()
