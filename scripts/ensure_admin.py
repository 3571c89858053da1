"""Ensure a bootstrap admin account exists and print an access token for it."""

import asyncio
import os
import sys

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
BACKEND_DIR = os.path.join(ROOT_DIR, "backend")
if BACKEND_DIR not in sys.path:
    sys.path.append(BACKEND_DIR)

from docdesk.domain.accounts.repo import AccountRepository
from docdesk.infra import jwt as jwt_helper
from docdesk.infra.postgres import close_pool, init_pool

ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@docdesk.local")
ADMIN_NAME = os.environ.get("ADMIN_NAME", "Administrator")


async def ensure_admin() -> None:
    await init_pool()
    try:
        accounts = AccountRepository()
        user = await accounts.find_user_by_email(ADMIN_EMAIL)
        if user is None:
            user = await accounts.create_user(name=ADMIN_NAME, email=ADMIN_EMAIL, role="admin")
            print(f"Created admin {ADMIN_EMAIL} ({user.id})")
        elif user.role != "admin":
            raise SystemExit(f"{ADMIN_EMAIL} exists with role {user.role!r}; refusing to promote")
        else:
            print(f"Admin {ADMIN_EMAIL} already exists ({user.id})")
        print(jwt_helper.encode_access({"sub": user.id}))
    finally:
        await close_pool()


if __name__ == "__main__":
    asyncio.run(ensure_admin())
