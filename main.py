#!/usr/bin/env python3
"""
AuthX -- Authentication and user management service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py create-admin --email admin@example.com --password 'S3cure!pass' \
      --first-name Ada --last-name Admin

Configuration comes from the environment or a .env file (see core/config.py).
Production mode requires SECRET_KEY, JWT_ACCESS_SECRET and JWT_REFRESH_SECRET;
set DEBUG=true to run locally with generated secrets.
"""

import argparse
import sys

from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _create_admin(args: argparse.Namespace) -> int:
    """Create the first admin account, or promote an existing user.

    This is the recovery path when no admin exists: the HTTP API can only
    grant the admin role to callers who already hold it.
    """
    from pydantic import ValidationError

    from api.models import RegisterRequest
    from auth.service import AuthService
    from auth.store import UserStore

    try:
        body = RegisterRequest(
            email=args.email,
            password=args.password,
            first_name=args.first_name,
            last_name=args.last_name,
        )
    except ValidationError as exc:
        for err in exc.errors():
            field = ".".join(str(p) for p in err["loc"])
            print(f"  [!] {field}: {err['msg']}")
        return 2

    settings = get_settings()
    store = UserStore(settings.database_url, settings.db_pool_timeout_seconds)
    try:
        service = AuthService.from_settings(settings, store)
        user, status = service.ensure_admin(body.email, body.password, body.first_name, body.last_name)
    finally:
        store.close()

    messages = {
        "created": f"Admin account created for {user.email} (id={user.id}).",
        "promoted": f"Existing user {user.email} (id={user.id}) promoted to admin.",
        "already_admin": f"{user.email} (id={user.id}) is already an admin. Nothing to do.",
    }
    print(messages[status])
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authx",
        description="AuthX -- authentication and user management service.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development).")
    serve.set_defaults(func=_serve)

    admin = subparsers.add_parser("create-admin", help="Create or promote an admin account.")
    admin.add_argument("--email", required=True)
    admin.add_argument("--password", required=True)
    admin.add_argument("--first-name", required=True)
    admin.add_argument("--last-name", required=True)
    admin.set_defaults(func=_create_admin)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
