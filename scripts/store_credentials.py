#!/usr/bin/env python3
"""
Store encrypted login credentials for an external system in provider_credentials.
Stored credentials take precedence over ERP_USERNAME/ERP_PASSWORD and SPEC_B2B_USERNAME/SPEC_B2B_PASSWORD.

Usage:
    python scripts/store_credentials.py erp <username>
    python scripts/store_credentials.py specialized_b2b <username>
The password is read from the terminal (or STORE_CREDENTIALS_PASSWORD when set).
"""

import argparse
import getpass
import os
import sys

from backoffice.database import Base, SessionLocal, engine
from backoffice.services.credentials import (
    B2B_PROVIDER,
    ERP_PROVIDER,
    get_provider_credentials,
    save_provider_credentials,
)

PROVIDERS = (ERP_PROVIDER, B2B_PROVIDER)


def store_credentials(provider_id: str, username: str, password: str) -> bool:
    """Encrypt and save credentials, then read them back to verify"""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        save_provider_credentials(db, provider_id, {"username": username, "password": password})
        db.commit()

        stored = get_provider_credentials(db, provider_id)
        if stored and stored.get("username") == username:
            print(f"✅ Credentials for {provider_id} verified in database")
            print(f"   Username: {username}")
            print(f"   Password: {'*' * 8}")
            return True
        print(f"❌ ERROR: Failed to verify credentials for {provider_id}")
        return False
    except Exception as e:
        print(f"❌ ERROR: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Store encrypted credentials for an external system")
    parser.add_argument("provider", choices=PROVIDERS)
    parser.add_argument("username")
    args = parser.parse_args(argv)

    password = os.getenv("STORE_CREDENTIALS_PASSWORD") or getpass.getpass(f"{args.provider} password: ")
    if not password:
        print("❌ Password must not be empty")
        return 1

    if not store_credentials(args.provider, args.username.strip(), password):
        return 1
    print("Restart the application to drop any cached session/token.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
