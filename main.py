"""Command-line interface for the user management microservice."""

from __future__ import annotations
import argparse
import logging
import sys
from typing import Sequence

import anyio

from usersvc.config import Settings, load_settings
from usersvc.pool import create_pool
from usersvc.schema import initialize_schema

logger = logging.getLogger("usersvc.main")


def _parse_args(argv: Sequence[str] | None, settings: Settings | None = None) -> argparse.Namespace:
    default_port = settings.port if settings is not None else 3000

    parser = argparse.ArgumentParser(description="User management microservice")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the users table, retrying with backoff")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=default_port,
        help=f"Port for the HTTP API (default: {default_port}, or $PORT)",
    )
    serve_parser.add_argument(
        "--skip-init-db",
        action="store_true",
        help="Do not run the background schema initializer on startup",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _serve(*, settings: Settings, host: str, port: int, initialize_database: bool) -> None:
    from usersvc.api import create_app
    import uvicorn

    logger.info("Server running on port %s", port)

    app = create_app(
        pool=create_pool(settings),
        settings=settings,
        initialize_database=initialize_database,
    )
    uvicorn.run(app, host=host, port=port, log_level="info")


def _init_db(settings: Settings) -> int:
    pool = create_pool(settings)
    try:
        succeeded = anyio.run(_run_initializer, pool, settings.init_attempts)
    finally:
        pool.close()
    if not succeeded:
        return 1
    print("Database initialisation complete.")
    return 0


async def _run_initializer(pool, attempts: int) -> bool:
    return await initialize_schema(pool, attempts=attempts)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    try:
        settings = load_settings()
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    args = _parse_args(argv, settings)

    if args.command == "serve":
        _serve(
            settings=settings,
            host=args.host,
            port=args.port,
            initialize_database=not args.skip_init_db,
        )
    elif args.command == "init-db":
        raise SystemExit(_init_db(settings))


if __name__ == "__main__":
    main()
