from __future__ import annotations

import argparse
import asyncio
import sys

from supportiq.persistence.db import SessionLocal
from supportiq.persistence.repos import users as users_repo
from supportiq.services.auth import issue_session, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    # Operators mint tokens for support staff or service accounts.
    parser = argparse.ArgumentParser(description="Create a bearer session token for a user")
    parser.add_argument("--email", required=True, help="User email; created if missing")
    parser.add_argument("--name", default=None, help="Full name for new users")
    parser.add_argument("--company", default=None, help="Company for new users")
    parser.add_argument("--role", default="user", help="Role: user|admin")
    parser.add_argument("--ttl-days", type=int, default=None, help="Token lifetime in days (0 = no expiry)")
    return parser


async def _create_token(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    async with SessionLocal() as session:
        user, created = await users_repo.get_or_create_by_email(
            session, args.email, full_name=args.name, company=args.company
        )
        if user.role != role:
            user.role = role
        raw_token, record = await issue_session(session, user, ttl_days=args.ttl_days)
        await session.commit()

    print("Session token created:")
    print(f"  user_id: {user.id}")
    print(f"  email: {user.email}")
    print(f"  role: {user.role}")
    print(f"  new_user: {created}")
    print(f"  expires_at: {record.expires_at.isoformat() if record.expires_at else 'never'}")
    print("  token: ")
    print(f"    {raw_token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_token(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_session_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
