import os
from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from loguru import logger
import requests

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]


class Config:
    """Application configuration manager.

    Handles loading and validation of environment variables for the Presensi
    application: the master secret for the credential store, portal throttling
    and retry budgets, scheduler timing, and Discord notification settings.
    """

    _instance: Self | None = None

    def load(self):
        """Load environment variables

        The priority is .env file > environment variables
        See .env-example for the required variables
        """
        load_dotenv()

        self.master_secret = os.getenv("MASTER_SECRET")
        if not self.master_secret:
            logger.error("MASTER_SECRET environment variable is not set.")

        self.data_dir = Path(os.getenv("DATA_DIR", "data"))

        # Sync scheduler
        self.sync_interval = int(os.getenv("SYNC_INTERVAL", 600))
        self.account_delay = float(os.getenv("ACCOUNT_DELAY", 2))
        self.course_delay = float(os.getenv("COURSE_DELAY", 1))
        self.verify_attempts = int(os.getenv("VERIFY_ATTEMPTS", 3))
        self.verify_delay = float(os.getenv("VERIFY_DELAY", 5))
        self.checkin_settle_delay = float(os.getenv("CHECKIN_SETTLE_DELAY", 3))

        # SIMA portal
        self.request_delay_min = float(os.getenv("REQUEST_DELAY_MIN", 1))
        self.request_delay_max = float(os.getenv("REQUEST_DELAY_MAX", 3))
        if self.request_delay_max < self.request_delay_min:
            logger.warning("REQUEST_DELAY_MAX is lower than REQUEST_DELAY_MIN. Swapping them.")
            self.request_delay_min, self.request_delay_max = (
                self.request_delay_max,
                self.request_delay_min,
            )
        self.request_timeout = float(os.getenv("REQUEST_TIMEOUT", 30))
        self.login_max_attempts = int(os.getenv("LOGIN_MAX_ATTEMPTS", 3))
        self.login_timeout = float(os.getenv("LOGIN_TIMEOUT", 25))
        self.login_retry_delay = float(os.getenv("LOGIN_RETRY_DELAY", 1))

        user_agents = os.getenv("USER_AGENTS")
        self.user_agents = (
            [ua.strip() for ua in user_agents.split("|") if ua.strip()]
            if user_agents
            else list(DEFAULT_USER_AGENTS)
        )

        # Notifications
        self.notifier_discord_webhook_url = os.getenv("NOTIFIER_DISCORD_WEBHOOK_URL")
        if self.notifier_discord_webhook_url and not self._is_webhook_valid(
            self.notifier_discord_webhook_url
        ):
            logger.error("Invalid NOTIFIER_DISCORD_WEBHOOK_URL. Falling back to log notifications.")
            self.notifier_discord_webhook_url = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super(Config, cls).__new__(cls)

            cls._instance.load()
        return cls._instance

    @property
    def accounts_file(self) -> Path:
        return self.data_dir / "accounts.json"

    @property
    def snapshots_file(self) -> Path:
        return self.data_dir / "snapshots.json"

    @property
    def salt_file(self) -> Path:
        return self.data_dir / "salt.bin"

    @staticmethod
    def _is_webhook_valid(url: str) -> bool:
        try:
            resp = requests.head(url, timeout=5)
            return resp.status_code == 200
        except requests.RequestException:
            return False
