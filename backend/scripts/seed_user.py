#!/usr/bin/env python3
"""
User Seed Script
Creates (or re-roles) a user and prints a bearer token for the API.

Usage:
    python -m scripts.seed_user <email> <role> [display name]

Example:
    python -m scripts.seed_user reviewer@example.org verifier "Dana Reviewer"
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from landcredit.auth import create_access_token
from landcredit.database import SessionLocal, init_db
from landcredit.models.db_models import UserDB
from landcredit.models.domain import UserRole


def seed_user(email: str, role: UserRole, display_name: str = None) -> str:
    """Create the user if missing, set its role, return a fresh token."""
    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        user = db.query(UserDB).filter(UserDB.email == email).first()

        if user is None:
            user = UserDB(
                id=str(uuid4()),
                email=email,
                display_name=display_name,
                role=role,
            )
            db.add(user)
            print(f"Created {role.value} '{email}'.")
        elif user.role != role:
            print(f"Changed role of '{email}' from {user.role.value} to {role.value}.")
            user.role = role
        else:
            print(f"User '{email}' already exists as {role.value}.")

        if display_name:
            user.display_name = display_name
        db.commit()

        return create_access_token(user.id, user.email, user.role.value)

    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def main():
    if len(sys.argv) not in (3, 4):
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1]
    role_name = sys.argv[2]
    display_name = sys.argv[3] if len(sys.argv) == 4 else None

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    try:
        role = UserRole(role_name)
    except ValueError:
        print(f"Error: role must be one of {', '.join(r.value for r in UserRole)}.")
        sys.exit(1)

    token = seed_user(email, role, display_name)
    print(f"  Token: {token}")


if __name__ == "__main__":
    main()
