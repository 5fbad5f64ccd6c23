import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from fazuh.presensi.error import LoginFailed
from fazuh.presensi.error import ParseError
from fazuh.presensi.error import PortalUnreachable
from fazuh.presensi.error import SessionInvalid
from fazuh.presensi.model import Account
from fazuh.presensi.model import AttendanceStatus
from fazuh.presensi.model import CheckInResult
from fazuh.presensi.model import ContentItem
from fazuh.presensi.model import Course
from fazuh.presensi.model import LoginResult
from fazuh.presensi.model import Session
from fazuh.presensi.model import SnapshotEntry
from fazuh.presensi.module.sync_scheduler import SyncScheduler
from fazuh.presensi.store.credential_store import CredentialStore
from fazuh.presensi.store.crypto import Cipher
from fazuh.presensi.store.snapshot import SnapshotStore

BASE = "https://sima.unsiq.ac.id/kuliah/"
COURSE_X = Course(code="TI301", name="Pemrograman Web", content_id="101")
COURSE_Y = Course(code="TI305", name="Basis Data", content_id="102")
COURSE_NO_LINK = Course(code="TI999", name="Kerja Praktik")

MANUAL_ITEM = ContentItem(
    item_id="501",
    title="Pertemuan 1",
    attendance_window="Absensi manual oleh dosen",
    is_manual=True,
    checkin_link=f"{BASE}?dm=501",
)
AUTO_ITEM = ContentItem(
    item_id="601",
    title="Pertemuan 2",
    attendance_window="01-09-2025 08:00 s/d 07-09-2025 23:59",
    checkin_link=f"{BASE}?dm=601",
    roster_link=f"{BASE}materi_hadir.php?id=601",
)


class FakePortal:
    """Stands in for SimaClient. Acts as its own factory so tests can inspect it."""

    def __init__(self):
        self.courses = [COURSE_X, COURSE_Y, COURSE_NO_LINK]
        self.items: dict[str, list[ContentItem] | Exception] = {
            "101": [MANUAL_ITEM],
            "102": [AUTO_ITEM],
        }
        self.course_failures = 0
        self.login_error: Exception | None = None
        self.present_after: int | None = 1
        self.check_in_error: Exception | None = None

        self.session: Session | None = None
        self.logins = 0
        self.course_listings = 0
        self.checked_in: list[str] = []
        self.roster_reads = 0

    def __call__(self, session):
        self.session = session or Session(user_agent="TestAgent/1.0")
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        pass

    async def list_courses(self):
        self.course_listings += 1
        if self.course_failures:
            self.course_failures -= 1
            raise SessionInvalid("Redirected to login")
        return self.courses

    async def login(self, login_id, password):
        self.logins += 1
        if self.login_error:
            raise self.login_error
        self.session = Session(cookies={"PHPSESSID": "fresh"}, user_agent="TestAgent/1.0")
        return LoginResult(session=self.session, student_name="AHMAD FAUZI")

    async def list_content_items(self, content_id):
        result = self.items[content_id]
        if isinstance(result, Exception):
            raise result
        return result

    async def check_in(self, action_link):
        if self.check_in_error:
            raise self.check_in_error
        self.checked_in.append(action_link)
        return CheckInResult(page_title="Diskusi")

    async def check_attendance(self, roster_link, login_id):
        self.roster_reads += 1
        if self.present_after is not None and self.roster_reads >= self.present_after:
            return AttendanceStatus(is_present=True, timestamp="2025-09-01 08:15")
        return AttendanceStatus(is_present=False)


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "accounts.json", Cipher("master-secret", b"s" * 16))


@pytest.fixture
def snapshots(tmp_path):
    return SnapshotStore(tmp_path / "snapshots.json")


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def portal():
    return FakePortal()


@pytest.fixture
def scheduler(conf, store, snapshots, notifier, portal):
    return SyncScheduler(conf, store, snapshots, notifier, client_factory=portal)


async def _register(store, account_id="1001", login_id="2021110001", **kwargs):
    await store.save(
        Account(
            account_id=account_id,
            login_id=login_id,
            password="hunter2",
            session=Session(cookies={"PHPSESSID": "stored"}, user_agent="TestAgent/1.0"),
            **kwargs,
        )
    )


@pytest.mark.asyncio
async def test_manual_and_auto_items(scheduler, store, snapshots, notifier, portal):
    await _register(store)

    await scheduler.sweep()

    assert notifier.notify_new_content.await_count == 2
    assert portal.checked_in == [AUTO_ITEM.checkin_link]
    notifier.notify_check_in_success.assert_awaited_once_with(
        "1001", COURSE_Y, AUTO_ITEM, "2025-09-01 08:15"
    )
    notifier.notify_sweep_summary.assert_awaited_once_with("1001", 2, 1)
    notifier.notify_error.assert_not_awaited()

    account = await store.get("1001")
    assert account.stats.total_checks == 1
    assert account.stats.total_absences == 1
    assert account.stats.failed_attempts == 0
    assert account.last_check is not None

    assert [e.item_id for e in await snapshots.get("1001", "101")] == ["501"]
    assert [e.item_id for e in await snapshots.get("1001", "102")] == ["601"]


@pytest.mark.asyncio
async def test_second_sweep_finds_nothing_new(scheduler, store, notifier, portal):
    await _register(store)

    await scheduler.sweep()
    await scheduler.sweep()

    assert notifier.notify_new_content.await_count == 2
    assert notifier.notify_sweep_summary.await_count == 1
    assert len(portal.checked_in) == 1
    assert (await store.get("1001")).stats.total_checks == 2


@pytest.mark.asyncio
async def test_reauthenticates_once_when_session_expired(scheduler, store, notifier, portal):
    await _register(store)
    portal.course_failures = 1

    await scheduler.sweep()

    assert portal.logins == 1
    assert portal.course_listings == 2
    notifier.notify_error.assert_not_awaited()
    notifier.notify_sweep_summary.assert_awaited_once_with("1001", 2, 1)

    account = await store.get("1001")
    assert account.session.cookies == {"PHPSESSID": "fresh"}
    assert account.student_name == "AHMAD FAUZI"
    assert account.last_login is not None
    assert account.stats.failed_attempts == 0


@pytest.mark.asyncio
async def test_failure_after_reauthentication_aborts_account(scheduler, store, notifier, portal):
    await _register(store)
    portal.course_failures = 2

    await scheduler.sweep()

    assert portal.logins == 1
    notifier.notify_error.assert_awaited_once()
    notifier.notify_new_content.assert_not_awaited()
    assert (await store.get("1001")).stats.failed_attempts == 1


@pytest.mark.asyncio
async def test_login_failure_aborts_account(scheduler, store, notifier, portal):
    await _register(store)
    portal.course_failures = 1
    portal.login_error = LoginFailed("NIM atau password salah")

    await scheduler.sweep()

    notifier.notify_error.assert_awaited_once()
    assert "salah" in notifier.notify_error.await_args.args[1]
    account = await store.get("1001")
    assert account.stats.failed_attempts == 1
    assert account.session.cookies == {"PHPSESSID": "stored"}


@pytest.mark.asyncio
async def test_unverified_check_in_is_not_a_failure(scheduler, store, notifier, portal, conf):
    await _register(store)
    portal.present_after = None

    await scheduler.sweep()

    assert portal.roster_reads == conf.verify_attempts
    notifier.notify_check_in_unverified.assert_awaited_once_with("1001", COURSE_Y, AUTO_ITEM)
    notifier.notify_check_in_success.assert_not_awaited()
    notifier.notify_sweep_summary.assert_awaited_once_with("1001", 2, 0)

    account = await store.get("1001")
    assert account.stats.failed_attempts == 0
    assert account.stats.total_absences == 0


@pytest.mark.asyncio
async def test_roster_lag_is_retried(scheduler, store, notifier, portal):
    await _register(store)
    portal.present_after = 3

    await scheduler.sweep()

    assert portal.roster_reads == 3
    notifier.notify_check_in_success.assert_awaited_once()


@pytest.mark.asyncio
async def test_item_without_roster_link_is_unverified(scheduler, store, notifier, portal):
    item = ContentItem(item_id="701", title="Pertemuan 3", checkin_link=f"{BASE}?dm=701")
    portal.items["102"] = [item]
    await _register(store)

    await scheduler.sweep()

    assert portal.checked_in == [item.checkin_link]
    assert portal.roster_reads == 0
    notifier.notify_check_in_unverified.assert_awaited_once_with("1001", COURSE_Y, item)
    assert (await store.get("1001")).stats.total_absences == 0


@pytest.mark.asyncio
async def test_course_error_leaves_its_snapshot_alone(
    scheduler, store, snapshots, notifier, portal
):
    await _register(store)
    prior = [SnapshotEntry(item_id="500", title="Pertemuan 0", timestamp="t0")]
    await snapshots.save("1001", "101", prior)
    portal.items["101"] = ParseError("Unexpected page")

    await scheduler.sweep()

    assert await snapshots.get("1001", "101") == prior
    assert [e.item_id for e in await snapshots.get("1001", "102")] == ["601"]

    notifier.notify_error.assert_awaited_once()
    assert COURSE_X.name in notifier.notify_error.await_args.args[1]
    notifier.notify_check_in_success.assert_awaited_once()
    assert (await store.get("1001")).stats.failed_attempts == 0


@pytest.mark.asyncio
async def test_maintenance_page_does_not_reset_the_snapshot(
    scheduler, store, snapshots, notifier, portal
):
    await _register(store)
    await scheduler.sweep()
    assert [e.item_id for e in await snapshots.get("1001", "102")] == ["601"]

    portal.items["102"] = ParseError("Unexpected content listing page: Sedang dalam perbaikan")
    await scheduler.sweep()
    assert [e.item_id for e in await snapshots.get("1001", "102")] == ["601"]

    portal.items["102"] = [AUTO_ITEM]
    await scheduler.sweep()

    announced = [call.args[2] for call in notifier.notify_new_content.await_args_list]
    assert announced.count(AUTO_ITEM) == 1
    assert portal.checked_in == [AUTO_ITEM.checkin_link]


@pytest.mark.asyncio
async def test_session_rotated_before_abort_is_persisted(scheduler, store, notifier, portal):
    await _register(store)

    async def rotate_then_fail():
        portal.course_listings += 1
        portal.session = portal.session.merged({"PHPSESSID": "rotated"})
        raise PortalUnreachable("GET failed")

    portal.list_courses = rotate_then_fail

    await scheduler.sweep()

    assert portal.logins == 1
    notifier.notify_error.assert_awaited_once()
    account = await store.get("1001")
    assert account.stats.failed_attempts == 1
    assert account.session.cookies == {"PHPSESSID": "rotated"}


@pytest.mark.asyncio
async def test_item_error_still_updates_snapshot(scheduler, store, snapshots, notifier, portal):
    await _register(store)
    portal.check_in_error = PortalUnreachable("GET failed")

    await scheduler.sweep()

    notifier.notify_error.assert_awaited_once()
    assert AUTO_ITEM.title in notifier.notify_error.await_args.args[1]
    assert [e.item_id for e in await snapshots.get("1001", "102")] == ["601"]

    # The broken item is not retried on the next sweep.
    await scheduler.sweep()
    assert notifier.notify_error.await_count == 1


@pytest.mark.asyncio
async def test_tampered_account_does_not_stop_the_sweep(scheduler, store, notifier):
    await _register(store, "1001", "2021110001")
    await _register(store, "1002", "2021110002")

    data = json.loads(store.file_path.read_text())
    tag = bytearray(bytes.fromhex(data["1001"]["password"]["tag"]))
    tag[0] ^= 0xFF
    data["1001"]["password"]["tag"] = tag.hex()
    store.file_path.write_text(json.dumps(data))

    await scheduler.sweep()

    notifier.notify_error.assert_awaited_once()
    assert notifier.notify_error.await_args.args[0] == "1001"
    notifier.notify_sweep_summary.assert_awaited_once_with("1002", 2, 1)


@pytest.mark.asyncio
async def test_sink_failures_do_not_abort_the_sweep(scheduler, store, notifier, portal):
    await _register(store)
    notifier.notify_new_content.side_effect = RuntimeError("webhook down")

    await scheduler.sweep()

    assert portal.checked_in == [AUTO_ITEM.checkin_link]
    notifier.notify_check_in_success.assert_awaited_once()
    assert (await store.get("1001")).stats.total_absences == 1


@pytest.mark.asyncio
async def test_inactive_accounts_are_skipped(scheduler, store, notifier, portal):
    await _register(store, is_active=False)

    await scheduler.sweep()

    assert portal.course_listings == 0
    notifier.notify_new_content.assert_not_awaited()


@pytest.mark.asyncio
async def test_rotated_session_is_persisted(scheduler, store, portal):
    await store.save(Account(account_id="1001", login_id="2021110001", password="hunter2"))

    await scheduler.sweep()

    account = await store.get("1001")
    assert account.session == Session(user_agent="TestAgent/1.0")


@pytest.mark.asyncio
async def test_overlapping_trigger_is_dropped(scheduler):
    release = asyncio.Event()
    calls = 0

    async def slow_sweep():
        nonlocal calls
        calls += 1
        await release.wait()

    scheduler.sweep = slow_sweep

    first = asyncio.create_task(scheduler.trigger())
    await asyncio.sleep(0)
    assert scheduler.is_sweeping

    assert await scheduler.trigger() is False

    release.set()
    assert await first is True
    assert calls == 1
    assert not scheduler.is_sweeping

    # The next tick runs normally.
    assert await scheduler.trigger() is True
    assert calls == 2


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stops(scheduler):
    scheduler.sweep = AsyncMock()

    task = asyncio.create_task(scheduler.start())
    for _ in range(5):
        await asyncio.sleep(0)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    scheduler.sweep.assert_awaited_once()


@pytest.mark.asyncio
async def test_stop_finishes_current_account_and_skips_the_rest(scheduler, store, notifier):
    await _register(store, "1001", "2021110001")
    await _register(store, "1002", "2021110002")

    async def stop_on_new_content(*args):
        scheduler.stop()

    notifier.notify_new_content.side_effect = stop_on_new_content

    await scheduler.sweep()

    # The first account ran to completion.
    notifier.notify_sweep_summary.assert_awaited_once_with("1001", 2, 1)
    assert (await store.get("1002")).stats.total_checks == 0
