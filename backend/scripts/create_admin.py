#!/usr/bin/env python3
"""
Create a dealership company and its first admin user.

Usage:
  python scripts/create_admin.py --company "Prime Motors" --slug prime-motors --email admin@prime.com --password "StrongPass123!"

Run with DATABASE_URL set to the target database.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlmodel import select  # noqa: E402

from esign.db.session import init_db, open_session  # noqa: E402
from esign.models.company import Company, User, UserRole  # noqa: E402
from esign.utils.security import get_password_hash  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a company admin user")
    parser.add_argument("--company", required=True, help="Company display name")
    parser.add_argument("--slug", required=True, help="Unique company slug")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--name", default="Administrator", help="Admin full name")
    args = parser.parse_args()

    init_db()
    with open_session() as session:
        company = session.exec(select(Company).where(Company.slug == args.slug)).first()
        if company is None:
            company = Company(name=args.company, slug=args.slug)
            session.add(company)
            session.flush()
            print(f"Company {company.name} created (id={company.id})")

        email = args.email.strip().lower()
        existing = session.exec(select(User).where(User.email == email)).first()
        if existing is not None:
            print(f"User {email} already exists")
            return 1

        user = User(
            company_id=company.id,
            email=email,
            full_name=args.name,
            password_hash=get_password_hash(args.password),
            role=UserRole.ADMIN.value,
        )
        session.add(user)
        session.commit()
        print(f"Admin {email} created (id={user.id})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
