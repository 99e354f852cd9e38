"""Entry point for the poller package.

Usage::

    python -m mailpoll serve          # scheduler loop + health server
    python -m mailpoll pass           # one ingestion pass, then exit
    python -m mailpoll fetch <id>     # fetch one account now
    python -m mailpoll verify <id>    # test an account's IMAP login
    python -m mailpoll init-db        # create the database tables
"""

from __future__ import annotations

import asyncio
import sys
import uuid

USAGE = "Usage: python -m mailpoll <serve|pass|fetch <account-id>|verify <account-id>|init-db>"


def main() -> None:
    args = sys.argv[1:]
    if not args or args[0] not in ("serve", "pass", "fetch", "verify", "init-db"):
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    mode = args[0]
    account_id: uuid.UUID | None = None
    if mode in ("fetch", "verify"):
        if len(args) < 2:
            print(USAGE, file=sys.stderr)
            sys.exit(1)
        try:
            account_id = uuid.UUID(args[1])
        except ValueError:
            print(f"Not an account id: {args[1]}", file=sys.stderr)
            sys.exit(1)

    from .config import PollerConfig
    from .errors import AccountUnavailableError, PersistenceError
    from .logging import setup_logging
    from .service import PollerService

    config = PollerConfig()
    service = PollerService(config)

    if mode == "serve":
        asyncio.run(service.run())
        return

    setup_logging(json=config.log_json, level=config.log_level)

    if mode == "init-db":
        asyncio.run(service.init_db())

    elif mode == "pass":
        result = asyncio.run(service.run_pass())
        if result is None or result.has_errors:
            sys.exit(2)

    elif mode == "fetch":
        assert account_id is not None
        try:
            fetched = asyncio.run(service.fetch_now(account_id))
        except AccountUnavailableError as exc:
            print(str(exc), file=sys.stderr)
            sys.exit(1)
        except PersistenceError as exc:
            print(str(exc), file=sys.stderr)
            sys.exit(2)
        if fetched.error is not None or fetched.skipped:
            sys.exit(2)

    elif mode == "verify":
        assert account_id is not None
        try:
            verified = asyncio.run(service.verify(account_id))
        except AccountUnavailableError as exc:
            print(str(exc), file=sys.stderr)
            sys.exit(1)
        except PersistenceError as exc:
            print(str(exc), file=sys.stderr)
            sys.exit(2)
        print("ok" if verified.ok else f"failed: {verified.error}")
        if not verified.ok:
            sys.exit(2)


if __name__ == "__main__":
    main()
