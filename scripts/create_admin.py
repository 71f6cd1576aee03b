#!/usr/bin/env python3
"""
Script to create or reset the admin login and commission settings
"""
import asyncio
import getpass
import sys
import os

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from taskinn.core.config import settings
from taskinn.core.security import get_password_hash
from taskinn.db.database import Database
from taskinn.models.admin_settings import AdminSettings, SETTINGS_ROW_ID


async def create_admin():
    """Create the admin settings row, or reset its login"""

    username = input("Enter admin username [admin]: ").strip() or "admin"

    password = getpass.getpass("Enter admin password: ").strip()
    if not password or len(password) < 8:
        print("Password must be at least 8 characters")
        return

    email = input("Enter admin email (optional): ").strip() or None

    database = Database.from_settings(settings)
    try:
        async with database.transaction() as db:
            admin_settings = await db.get(AdminSettings, SETTINGS_ROW_ID)

            if admin_settings is None:
                admin_settings = AdminSettings(
                    id=SETTINGS_ROW_ID,
                    commission_rate=settings.DEFAULT_COMMISSION_RATE,
                    total_earnings=0,
                )
                db.add(admin_settings)
                print("Created admin settings with default commission rate")
            else:
                print("Admin settings exist, resetting login only")

            admin_settings.admin_username = username
            admin_settings.admin_password_hash = get_password_hash(password)
            admin_settings.admin_email = email

        print(f"Admin login ready!")
        print(f"Username: {username}")
        print(f"Commission rate: {admin_settings.commission_rate}")
    finally:
        await database.dispose()


if __name__ == "__main__":
    print("Setting up TaskInn admin...")
    try:
        asyncio.run(create_admin())
    except KeyboardInterrupt:
        print("\nOperation cancelled")
    except Exception as e:
        print(f"Error creating admin: {e}")
