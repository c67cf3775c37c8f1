"""Command-line entry point for termhist."""

import argparse
import asyncio
import json
import logging
import sys

import uvicorn
from pydantic import ValidationError

from . import schemas
from .client import HistoryClient
from .config import HistorySettings
from .errors import HistoryStoreError, is_input_error
from .identity import MachineIdentity


def serve(args):
    """Starts the uvicorn server for the termhist FastAPI application."""
    uvicorn.run("termhist.main:app", host=args.host, port=args.port, reload=args.dev)


async def _with_client(action):
    async with HistoryClient(HistorySettings()) as client:
        return await action(client)


def user_command(args):
    async def action(client: HistoryClient):
        if args.user_action == "create":
            user = await client.users.create_user(
                schemas.UserCreate(username=args.username, name=args.name, email=args.email)
            )
            print(f"User {user.username} created")
        elif args.user_action == "list":
            for user in await client.users.list_users(active_only=not args.all):
                state = "" if user.is_active else " (inactive)"
                print(f"{user.username}\t{user.name}\t{user.email}{state}")
        elif args.user_action == "deactivate":
            await client.users.deactivate_user(args.username)
            print(f"User {args.username} deactivated")
        elif args.user_action == "reactivate":
            await client.users.reactivate_user(args.username)
            print(f"User {args.username} reactivated")

    asyncio.run(_with_client(action))


def machine_command(args):
    identity = MachineIdentity(HistorySettings().machine_id_dir)
    if args.invalidate:
        removed = identity.invalidate_cache()
        print("Machine id cache cleared" if removed else "No cached machine id")
    elif args.info:
        print(json.dumps(identity.get_machine_info().model_dump(), indent=2))
    else:
        print(identity.get_machine_id())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="termhist", description="Distributed command history store."
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging.")
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the HTTP API server.")
    serve_parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="The host to bind to."
    )
    serve_parser.add_argument(
        "--port", type=int, default=8128, help="The port to run on."
    )
    serve_parser.add_argument(
        "--dev",
        "--reload",
        action="store_true",
        help="Enable development mode with auto-reload (higher CPU usage).",
    )
    serve_parser.set_defaults(func=serve)

    user_parser = sub.add_parser("user", help="Manage users.")
    user_sub = user_parser.add_subparsers(dest="user_action", required=True)
    create = user_sub.add_parser("create", help="Create a user.")
    create.add_argument("--username", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--email", required=True)
    listing = user_sub.add_parser("list", help="List users.")
    listing.add_argument("--all", action="store_true", help="Include inactive users.")
    for action in ("deactivate", "reactivate"):
        p = user_sub.add_parser(action, help=f"{action.capitalize()} a user.")
        p.add_argument("username")
    user_parser.set_defaults(func=user_command)

    machine_parser = sub.add_parser("machine-id", help="Show this machine's id.")
    machine_parser.add_argument("--info", action="store_true")
    machine_parser.add_argument("--invalidate", action="store_true")
    machine_parser.set_defaults(func=machine_command)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    try:
        args.func(args)
    except ValidationError as exc:
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"]) or "input"
            print(f"error: {field}: {error['msg']}", file=sys.stderr)
        return 2
    except HistoryStoreError as exc:
        # Input errors are the user's to fix; anything else means the store is degraded
        prefix = "error" if is_input_error(exc) else "store unavailable"
        print(f"{prefix}: {exc}", file=sys.stderr)
        return 2 if is_input_error(exc) else 3
    return 0


if __name__ == "__main__":
    sys.exit(main())
