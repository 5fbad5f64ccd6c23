import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from fazuh.presensi.config import Config
from fazuh.presensi.error import DecryptionError
from fazuh.presensi.error import PortalError
from fazuh.presensi.error import VerificationUnresolved
from fazuh.presensi.model import Account
from fazuh.presensi.model import ContentItem
from fazuh.presensi.model import Course
from fazuh.presensi.model import Session
from fazuh.presensi.model import now_iso
from fazuh.presensi.module.sync.diff import build_snapshot
from fazuh.presensi.module.sync.diff import find_new_items
from fazuh.presensi.module.sync.notifier import NotificationSink
from fazuh.presensi.sima.client import SimaClient
from fazuh.presensi.store.credential_store import CredentialStore
from fazuh.presensi.store.snapshot import SnapshotStore

ClientFactory = Callable[[Optional[Session]], SimaClient]


class SyncScheduler:
    """Periodically sweeps every active account for new materi and checks in.

    One sweep runs at a time. A tick that fires while a sweep is still running
    is dropped, not queued. Accounts, and the courses of one account, are
    processed strictly one after another.
    """

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

        self._sweep_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._sweeps: set[asyncio.Task] = set()

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_lock.locked()

    async def start(self):
        """Runs one sweep immediately, then one per `sync_interval` until `stop()`.

        Ticks spawn sweeps without awaiting them, so a slow sweep makes later
        ticks drop instead of delaying the schedule.
        """
        logger.info(f"Starting scheduler with {self.conf.sync_interval} second interval")
        self._stop_event.clear()

        while not self._stop_event.is_set():
            task = asyncio.create_task(self.trigger())
            self._sweeps.add(task)
            task.add_done_callback(self._sweeps.discard)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.conf.sync_interval)
            except asyncio.TimeoutError:
                pass

        # The in-flight sweep finishes its current account, then skips the rest.
        if self._sweeps:
            await asyncio.gather(*self._sweeps)
        logger.info("Scheduler stopped")

    def stop(self):
        logger.info("Stopping scheduler...")
        self._stop_event.set()

    async def trigger(self) -> bool:
        """Starts a sweep unless one is already running.

        Returns:
            bool: False when the tick was dropped.
        """
        if self._sweep_lock.locked():
            logger.warning("Previous sweep still running, skipping this tick.")
            return False

        async with self._sweep_lock:
            await self.sweep()
        return True

    async def sweep(self):
        logger.info("Starting sweep for all active accounts...")
        try:
            account_ids = await self.store.list_active()
        except Exception as e:
            logger.error(f"Failed to list active accounts: {e}")
            return

        if not account_ids:
            logger.info("No active accounts to check")
            return

        logger.info(f"Checking {len(account_ids)} active account(s)")
        for index, account_id in enumerate(account_ids):
            if self._stop_event.is_set():
                logger.info(f"Shutdown requested, skipping {len(account_ids) - index} account(s)")
                break
            if index > 0:
                await asyncio.sleep(self.conf.account_delay)
            await self._run_account(account_id)

        logger.success("Sweep completed")

    async def _notify(self, event: Awaitable[None]):
        try:
            await event
        except Exception as e:
            logger.error(f"Notification failed: {e}")

    async def _run_account(self, account_id: str):
        """Processes one account. Nothing raised here escapes to the sweep."""
        async with self.store.account_lock(account_id):
            try:
                account = await self.store.get(account_id)
            except DecryptionError as e:
                logger.error(f"Cannot decrypt account {account_id}: {e}")
                await self._notify(
                    self.notifier.notify_error(
                        account_id, f"Data akun tidak dapat didekripsi: {e}"
                    )
                )
                return
            except Exception as e:
                logger.error(f"Failed to load account {account_id}: {e}")
                return

            # Removed or deactivated since the sweep listed it.
            if account is None or not account.is_active:
                return

            try:
                await self._process_account(account)
            except Exception as e:
                logger.error(f"Failed to check account {account.login_id}: {e}")
                try:
                    await self.store.increment_stat(account_id, "failed_attempts")
                except Exception as store_error:
                    logger.error(f"Failed to record failed attempt: {store_error}")
                await self._notify(self.notifier.notify_error(account_id, str(e)))

    async def _process_account(self, account: Account):
        account_id = account.account_id
        name = account.student_name or "Unknown"
        logger.info(f"Checking materi for {account.login_id} ({name})...")

        account = await self.store.update(account_id, last_check=now_iso())
        await self.store.increment_stat(account_id, "total_checks")

        client = self.client_factory(account.session)
        async with client:
            try:
                account, courses = await self._list_courses(account, client)
                logger.info(f"Found {len(courses)} mata kuliah for {account.login_id}")

                new_total = 0
                confirmed_total = 0
                listed = [course for course in courses if course.content_id]
                for index, course in enumerate(listed):
                    if index > 0:
                        await asyncio.sleep(self.conf.course_delay)
                    new_count, confirmed = await self._process_course(account, client, course)
                    new_total += new_count
                    confirmed_total += confirmed

                if new_total > 0:
                    await self._notify(
                        self.notifier.notify_sweep_summary(account_id, new_total, confirmed_total)
                    )
            finally:
                # Cookies rotated before an abort are kept too.
                await self._save_session(account_id, account.session, client.session)

        logger.success(
            f"Check completed for {account.login_id}: "
            f"{new_total} new, {confirmed_total} absences"
        )

    async def _save_session(self, account_id: str, stored: Session, current: Session):
        if current == stored:
            return
        try:
            await self.store.update(account_id, session=current)
        except Exception as e:
            logger.error(f"Failed to persist session for {account_id}: {e}")

    async def _list_courses(
        self, account: Account, client: SimaClient
    ) -> tuple[Account, list[Course]]:
        """Lists courses, re-authenticating once when the stored session fails."""
        try:
            return account, await client.list_courses()
        except PortalError as e:
            logger.warning(f"Session expired for {account.login_id}, re-logging in... ({e})")

        # LoginFailed and LoginTimeout abort this account.
        result = await client.login(account.login_id, account.password)
        changes = {"session": result.session, "last_login": now_iso()}
        if result.student_name:
            changes["student_name"] = result.student_name
        account = await self.store.update(account.account_id, **changes)

        return account, await client.list_courses()

    async def _process_course(
        self, account: Account, client: SimaClient, course: Course
    ) -> tuple[int, int]:
        """Diffs one course against its snapshot and handles the new items.

        Returns:
            tuple[int, int]: New item count and confirmed check-in count.
        """
        account_id = account.account_id
        try:
            items = await client.list_content_items(course.content_id)
        except Exception as e:
            # Snapshot stays as it was, so the course is retried from scratch next sweep.
            logger.error(f"Error processing mata kuliah {course.name}: {e}")
            await self._notify(
                self.notifier.notify_error(
                    account_id, f"Gagal mengambil materi mata kuliah {course.name}: {e}"
                )
            )
            return 0, 0

        previous = await self.snapshots.get(account_id, course.content_id)
        new_items = find_new_items(items, previous)
        if new_items:
            logger.info(f"Found {len(new_items)} new materi in {course.name}")

        confirmed = 0
        try:
            for item in new_items:
                if await self._process_item(account, client, course, item):
                    confirmed += 1
        finally:
            # Saved even when an item failed, so the same item never triggers twice.
            snapshot = build_snapshot(items, now_iso(), previous)
            await self.snapshots.save(account_id, course.content_id, snapshot)

        return len(new_items), confirmed

    async def _process_item(
        self, account: Account, client: SimaClient, course: Course, item: ContentItem
    ) -> bool:
        """Notifies about a new item and checks in when possible.

        Returns:
            bool: True only when the roster confirmed the check-in.
        """
        account_id = account.account_id
        logger.info(f"Processing new materi: {item.title}")
        await self._notify(self.notifier.notify_new_content(account_id, course, item))

        if item.is_manual:
            logger.info("Manual attendance by lecturer, skipping auto-absen")
            return False
        if not item.is_active:
            logger.info("Attendance period ended, skipping")
            return False
        if not item.checkin_link:
            logger.warning("No discussion link found, cannot auto-absen")
            return False

        try:
            await client.check_in(item.checkin_link)
            await asyncio.sleep(self.conf.checkin_settle_delay)
            timestamp = await self._verify(client, account.login_id, item)
        except VerificationUnresolved as e:
            logger.warning(f"Attendance for {item.title} not verified: {e}")
            await self._notify(self.notifier.notify_check_in_unverified(account_id, course, item))
            return False
        except Exception as e:
            logger.error(f"Failed to process materi {item.title}: {e}")
            await self._notify(
                self.notifier.notify_error(
                    account_id, f'Gagal memproses materi "{item.title}": {e}'
                )
            )
            return False

        await self.store.increment_stat(account_id, "total_absences")
        await self._notify(
            self.notifier.notify_check_in_success(account_id, course, item, timestamp)
        )
        return True

    async def _verify(self, client: SimaClient, login_id: str, item: ContentItem) -> Optional[str]:
        """Polls the roster until it lists `login_id`.

        Returns:
            The attendance timestamp shown by the roster, if any.

        Raises:
            VerificationUnresolved: No roster link, or the roster never listed the student.
        """
        if not item.roster_link:
            raise VerificationUnresolved("No roster link to verify against")

        attempts = self.conf.verify_attempts
        for attempt in range(1, attempts + 1):
            logger.info(f"Verifying attendance (attempt {attempt}/{attempts})...")
            try:
                status = await client.check_attendance(item.roster_link, login_id)
            except PortalError as e:
                logger.warning(f"Roster read failed: {e}")
            else:
                if status.is_present:
                    logger.success(
                        f"Attendance verified for {item.title}"
                        + (f" at {status.timestamp}" if status.timestamp else "")
                    )
                    return status.timestamp

            if attempt < attempts:
                logger.warning("Attendance not found yet, waiting before retry...")
                await asyncio.sleep(self.conf.verify_delay)

        raise VerificationUnresolved(f"Not on the roster after {attempts} attempts")
