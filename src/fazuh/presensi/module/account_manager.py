from typing import Optional

from loguru import logger

from fazuh.presensi.config import Config
from fazuh.presensi.error import AccountNotFound
from fazuh.presensi.model import Account
from fazuh.presensi.model import now_iso
from fazuh.presensi.module.sync.notifier import NotificationSink
from fazuh.presensi.module.sync_scheduler import ClientFactory
from fazuh.presensi.sima.client import SimaClient
from fazuh.presensi.store.credential_store import CredentialStore
from fazuh.presensi.store.snapshot import SnapshotStore


class AccountManager:
    """Registration and housekeeping of accounts, used by the command front end."""

    def __init__(
        self,
        config: Config,
        store: CredentialStore,
        snapshots: SnapshotStore,
        notifier: NotificationSink,
        client_factory: ClientFactory | None = None,
    ):
        self.conf = config
        self.store = store
        self.snapshots = snapshots
        self.notifier = notifier
        self.client_factory = client_factory or (
            lambda session: SimaClient(config, session=session)
        )

    async def register(
        self,
        account_id: str,
        login_id: str,
        password: str,
        username: Optional[str] = None,
    ) -> Account:
        """Logs in once with the given credentials and stores the account.

        Registering an existing account replaces its credentials and session
        but keeps its stats and registration time.

        Raises:
            ValueError: If the login ID is not numeric.
            LoginFailed: If the portal rejected the credentials.
            LoginTimeout: If the login budget ran out.
        """
        login_id = login_id.strip()
        if not login_id.isdigit():
            raise ValueError("NIM must contain digits only.")

        logger.info(f"Registration attempt for NIM: {login_id}")
        async with self.store.account_lock(account_id):
            client = self.client_factory(None)
            async with client:
                result = await client.login(login_id, password)
                courses = await client.list_courses()

                existing = await self.store.get(account_id)
                account = Account(
                    account_id=account_id,
                    login_id=login_id,
                    password=password,
                    session=client.session,
                    student_name=result.student_name or "Unknown",
                    username=username,
                    is_active=True,
                    last_login=now_iso(),
                )
                if existing is not None:
                    account.registered_at = existing.registered_at
                    account.last_check = existing.last_check
                    account.stats = existing.stats
                await self.store.save(account)

        logger.success(f"User registered successfully: {login_id} ({account.student_name})")
        try:
            await self.notifier.notify_registered(account_id, login_id, len(courses))
        except Exception as e:
            logger.error(f"Notification failed: {e}")
        return account

    async def set_active(self, account_id: str, active: Optional[bool] = None) -> Account:
        """Sets the active flag, or flips it when `active` is None."""
        async with self.store.account_lock(account_id):
            account = await self.status(account_id)
            new_status = not account.is_active if active is None else active
            account = await self.store.update(account_id, is_active=new_status)

        logger.info(f"User {account.login_id} {'activated' if new_status else 'deactivated'} system")
        return account

    async def remove(self, account_id: str):
        async with self.store.account_lock(account_id):
            await self.store.delete(account_id)
        await self.snapshots.delete_account(account_id)

    async def status(self, account_id: str) -> Account:
        account = await self.store.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account
