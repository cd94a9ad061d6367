"""
Seed Authorization — default matrix + one directory user per role.

Usage:
    python scripts/seed_authorization.py              # Uses development DB
    python scripts/seed_authorization.py --env prod   # Uses production DB
    python scripts/seed_authorization.py --no-users   # Matrix only

This script is idempotent — safe to run multiple times.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from app.models import db
from app.models.auth import Role, User
from app.models.authorization import AuthorizationMatrixRule
from app.services.authorization_matrix import list_rules, seed_default_matrix
from app.services.user_service import create_user


# ═══════════════════════════════════════════════════════════════
# DIRECTORY: one user per role
# ═══════════════════════════════════════════════════════════════
DEMO_USERS = [
    ("operativo@example.com", "Ana Operativo", Role.OPERATIVO, "Obra", 5000),
    ("supervisor@example.com", "Luis Supervisor", Role.SUPERVISOR, "Obra", 25000),
    ("gerente@example.com", "Marta Gerente", Role.GERENTE, "Finanzas", 100000),
    ("director@example.com", "Jorge Director", Role.DIRECTOR, "Finanzas", 500000),
    ("ejecutivo@example.com", "Elena Ejecutiva", Role.EJECUTIVO, "Dirección General", None),
    ("admin@example.com", "Admin Plataforma", Role.ADMIN, "Sistemas", None),
]


def seed_users():
    created = 0
    for email, name, role, dept, limit in DEMO_USERS:
        if User.query.filter_by(email=email).first():
            print(f"  = {email} (exists)")
            continue
        create_user({
            "email": email,
            "full_name": name,
            "role": role.value,
            "department": dept,
            "authorization_limit": limit,
        })
        created += 1
        print(f"  + {email} [{role.value}]")
    return created


def main():
    parser = argparse.ArgumentParser(description="Seed authorization matrix and directory users")
    parser.add_argument("--env", default="development", help="App environment")
    parser.add_argument("--no-users", action="store_true", help="Skip directory users")
    args = parser.parse_args()

    os.environ.setdefault("APP_ENV", args.env)
    app = create_app(args.env)

    with app.app_context():
        print("=" * 60)
        print("  SEED: Authorization Matrix & Directory")
        print("=" * 60)

        print("\n📋 Seeding authorization matrix...")
        added = seed_default_matrix()
        print(f"  {added} rule(s) added")

        if not args.no_users:
            print("\n👥 Seeding directory users...")
            seed_users()

        db.session.commit()

        print("\n" + "=" * 60)
        print("  SUMMARY")
        print("=" * 60)
        print(f"  Matrix rules: {AuthorizationMatrixRule.query.count()}")
        print(f"  Users:        {User.query.count()}")

        print("\n📊 Matrix:")
        for rule in list_rules(active_only=True):
            hi = f"{rule.max_amount:,.0f}" if rule.max_amount is not None else "∞"
            print(f"  {rule.workflow_type:20s} {rule.min_amount or 0:>12,.0f} – {hi:>12s}  "
                  f"→ {rule.required_level:10s} ({rule.escalation_hours}h)")

        print("\n✅ Seed complete!")


if __name__ == "__main__":
    main()
