from types import SimpleNamespace

import pytest

from fazuh.presensi.config import DEFAULT_USER_AGENTS


def pytest_addoption(parser):
    parser.addoption(
        "--run-live", action="store_true", default=False, help="run tests against the real portal"
    )
    parser.addoption("--nim", action="store", default=None, help="NIM for live tests")
    parser.addoption("--password", action="store", default=None, help="password for live tests")


def pytest_configure(config):
    config.addinivalue_line("markers", "live: mark test as hitting the real SIMA portal")


def pytest_collection_modifyitems(config, items):
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    run_live = config.getoption("--run-live")

    for item in items:
        if "live" in item.keywords and not run_live:
            item.add_marker(skip_live)


@pytest.fixture
def conf(tmp_path):
    """Config stand-in with every delay at zero."""
    return SimpleNamespace(
        master_secret="test-master-secret",
        data_dir=tmp_path,
        sync_interval=600,
        account_delay=0,
        course_delay=0,
        verify_attempts=3,
        verify_delay=0,
        checkin_settle_delay=0,
        request_delay_min=0,
        request_delay_max=0,
        request_timeout=5,
        login_max_attempts=3,
        login_timeout=25,
        login_retry_delay=0,
        user_agents=list(DEFAULT_USER_AGENTS),
        notifier_discord_webhook_url=None,
        accounts_file=tmp_path / "accounts.json",
        snapshots_file=tmp_path / "snapshots.json",
        salt_file=tmp_path / "salt.bin",
    )


@pytest.fixture
def live_credentials(request):
    nim = request.config.getoption("--nim")
    password = request.config.getoption("--password")
    if not nim or not password:
        pytest.fail("--nim and --password options are required for live tests")
    return nim, password
