"""
Seed demo departments, users, roles and workflow templates.

Usage:
    python scripts/seed_workflows.py                 # Uses development DB
    python scripts/seed_workflows.py --env production
    python scripts/seed_workflows.py --tokens        # Also print access tokens

This script is idempotent — safe to run multiple times.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from app import create_app
from app.models import db
from app.models.organization import User
from app.services.jwt_service import generate_access_token
from app.services.seed_service import seed_demo_data


def main():
    parser = argparse.ArgumentParser(description="Seed file-workflow demo data")
    parser.add_argument(
        "--env", default="development",
        choices=["development", "production", "testing"],
        help="Config environment (default: development)",
    )
    parser.add_argument(
        "--tokens", action="store_true",
        help="Print a bearer token for every seeded user",
    )
    args = parser.parse_args()

    app = create_app(args.env)
    with app.app_context():
        db.create_all()
        print("Seeding file-workflow demo data...")
        counts = seed_demo_data()
        db.session.commit()
        for entity, created in counts.items():
            print(f"  {entity.capitalize()}: {created} created")

        if args.tokens:
            print("\nAccess tokens:")
            for user in db.session.execute(select(User).order_by(User.id)).scalars():
                print(f"  {user.email:<22} {generate_access_token(user.id)}")

        print("\nDone.")


if __name__ == "__main__":
    main()
