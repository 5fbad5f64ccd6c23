"""Main entry point for the Presensi application.

Handles command-line argument parsing and dispatches execution to the
requested module (track, register, toggle, remove, or status).
"""

import argparse
import asyncio
import getpass
import signal

from loguru import logger

from fazuh.presensi.config import Config
from fazuh.presensi.error import ConfigError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Presensi SIMA Bot")
    sub = parser.add_subparsers(dest="module", required=True)

    sub.add_parser("track", help="Run the sync scheduler.")

    register = sub.add_parser("register", help="Log in once and store an account.")
    register.add_argument("account_id", help="Discord user ID to notify.")
    register.add_argument("nim", help="SIMA login ID (NIM).")
    register.add_argument("--username", help="Display name of the Discord user.")

    toggle = sub.add_parser("toggle", help="Enable or disable automatic attendance.")
    toggle.add_argument("account_id")
    state = toggle.add_mutually_exclusive_group()
    state.add_argument("--on", dest="active", action="store_const", const=True)
    state.add_argument("--off", dest="active", action="store_const", const=False)

    remove = sub.add_parser("remove", help="Delete an account and its snapshots.")
    remove.add_argument("account_id")

    status = sub.add_parser("status", help="Show an account's status and stats.")
    status.add_argument("account_id")

    return parser


async def run_tracker(scheduler):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers.
            pass
    await scheduler.start()


async def main():
    """Async entry point.

    Parses arguments, initializes configuration and logging, wires the stores
    and the notifier, and runs the selected module.
    """
    args = build_parser().parse_args()

    conf = Config()
    logger.add("log/{time}.log", rotation="1 day")

    from fazuh.presensi.module.account_manager import AccountManager
    from fazuh.presensi.module.sync.notifier import create_notifier
    from fazuh.presensi.module.sync_scheduler import SyncScheduler
    from fazuh.presensi.store.credential_store import CredentialStore
    from fazuh.presensi.store.credential_store import load_or_create_salt
    from fazuh.presensi.store.crypto import Cipher
    from fazuh.presensi.store.snapshot import SnapshotStore

    try:
        if not conf.master_secret:
            raise ConfigError("MASTER_SECRET must be set.")

        cipher = Cipher(conf.master_secret, load_or_create_salt(conf.salt_file))
        store = CredentialStore(conf.accounts_file, cipher)
        snapshots = SnapshotStore(conf.snapshots_file)
        notifier = create_notifier(conf.notifier_discord_webhook_url)
        manager = AccountManager(conf, store, snapshots, notifier)

        if args.module == "track":
            await run_tracker(SyncScheduler(conf, store, snapshots, notifier))

        elif args.module == "register":
            password = getpass.getpass(f"SIMA password for {args.nim}: ")
            account = await manager.register(
                args.account_id, args.nim, password, username=args.username
            )
            logger.success(f"Registered {account.login_id} as {account.student_name}")

        elif args.module == "toggle":
            account = await manager.set_active(args.account_id, args.active)
            logger.info(f"{account.login_id}: {'Aktif' if account.is_active else 'Nonaktif'}")

        elif args.module == "remove":
            await manager.remove(args.account_id)

        elif args.module == "status":
            account = await manager.status(args.account_id)
            logger.info(
                f"{account.student_name or 'Unknown'} ({account.login_id}) | "
                f"{'Aktif' if account.is_active else 'Nonaktif'} | "
                f"last login {account.last_login or '-'} | last check {account.last_check or '-'} | "
                f"checks {account.stats.total_checks}, absences {account.stats.total_absences}, "
                f"failed {account.stats.failed_attempts}"
            )
    except Exception as e:
        logger.error(e)


def main_sync():
    """Synchronous wrapper for the async main function."""
    asyncio.run(main())


if __name__ == "__main__":
    main_sync()
