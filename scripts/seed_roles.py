"""
Seed roles, permissions, notification event types and templates.

Usage:
    python scripts/seed_roles.py              # Uses development DB
    python scripts/seed_roles.py --env production

This script is idempotent.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from app.services.seed_service import seed_all


def main():
    parser = argparse.ArgumentParser(description="Seed approval workflow reference data")
    parser.add_argument("--env", default=os.getenv("APP_ENV", "development"),
                        choices=["development", "testing", "production"])
    args = parser.parse_args()

    app = create_app(args.env)
    with app.app_context():
        counts = seed_all()

    print("Seed complete:")
    for key, value in counts.items():
        print(f"  {key:<16} {value}")


if __name__ == "__main__":
    main()
