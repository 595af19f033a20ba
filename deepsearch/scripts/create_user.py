from __future__ import annotations

import argparse
from typing import cast

from sqlalchemy.orm import Session

from deepsearch.core.config import settings
from deepsearch.core.security import encode_access_token
from deepsearch.db.models import User
from deepsearch.db.session import SessionLocal


def create_or_update_user(
    db: Session,
    *,
    user_id: str | None,
    email: str | None,
    name: str | None,
    is_admin: bool | None,
) -> tuple[User, str]:
    user = db.get(User, user_id) if user_id else None
    if user is None:
        user = User(email=email, name=name, is_admin=bool(is_admin))
        if user_id:
            user.id = user_id
        db.add(user)
        db.flush()
        return user, "created"

    if email is not None:
        user.email = email
    if name is not None:
        user.name = name
    if is_admin is not None:
        user.is_admin = bool(is_admin)
    db.flush()
    return user, "updated"


def mint_token(user_id: str, *, ttl_seconds: int | None = None) -> str:
    ttl = int(ttl_seconds or settings.auth_access_token_ttl_seconds)
    return encode_access_token({"sub": user_id}, settings.auth_access_token_secret, ttl)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create or update a local user and print a bearer token for it (dev tooling)."
    )
    _ = parser.add_argument("--id", dest="user_id", default=None, help="User id (default: random uuid)")
    _ = parser.add_argument("--email", default=None)
    _ = parser.add_argument("--name", default=None)
    admin_group = parser.add_mutually_exclusive_group()
    _ = admin_group.add_argument("--admin", dest="is_admin", action="store_true", help="Exempt from the daily quota.")
    _ = admin_group.add_argument("--no-admin", dest="is_admin", action="store_false")
    parser.set_defaults(is_admin=None)
    _ = parser.add_argument("--ttl", type=int, default=None, help="Token lifetime in seconds.")
    return parser


def main() -> None:
    args = _build_parser().parse_args()

    db = SessionLocal()
    try:
        user, action = create_or_update_user(
            db,
            user_id=cast(str | None, args.user_id),
            email=cast(str | None, args.email),
            name=cast(str | None, args.name),
            is_admin=cast(bool | None, args.is_admin),
        )
        db.commit()
        token = mint_token(user.id, ttl_seconds=cast(int | None, args.ttl))
        print(f"action={action} user_id={user.id} is_admin={user.is_admin}")
        print(f"token={token}")
    except Exception as exc:
        db.rollback()
        raise SystemExit(f"create_user failed: {type(exc).__name__}: {exc}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
