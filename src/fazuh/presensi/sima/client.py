import asyncio
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
import random
import time
from typing import Optional
from urllib.parse import urljoin

import aiohttp
from loguru import logger

from fazuh.presensi.config import Config
from fazuh.presensi.error import LoginFailed
from fazuh.presensi.error import LoginTimeout
from fazuh.presensi.error import PortalError
from fazuh.presensi.error import PortalUnreachable
from fazuh.presensi.error import SessionInvalid
from fazuh.presensi.model import AttendanceStatus
from fazuh.presensi.model import CheckInResult
from fazuh.presensi.model import ContentItem
from fazuh.presensi.model import Course
from fazuh.presensi.model import LoginResult
from fazuh.presensi.model import Session
from fazuh.presensi.sima import parser
from fazuh.presensi.sima.captcha import CaptchaSolver
from fazuh.presensi.sima.path import Path

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "id-ID,id;q=0.9,en-US;q=0.8,en;q=0.7",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}
REDIRECT_STATUSES = (301, 302, 303, 307, 308)


class LoginPhase(Enum):
    INIT = "init"
    SESSION_ACQUIRED = "session_acquired"
    CAPTCHA_FETCHED = "captcha_fetched"
    CAPTCHA_SOLVED = "captcha_solved"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass(frozen=True)
class PortalResponse:
    """One portal response together with the cookies it set."""

    url: str
    status: int
    body: bytes
    cookies: dict[str, str] = field(default_factory=dict)
    location: Optional[str] = None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass
class LoginAttempt:
    """State of a single pass through the login sequence."""

    number: int
    phase: LoginPhase = LoginPhase.INIT
    session: Session = field(default_factory=Session)
    captcha_image: bytes = b""
    captcha_answer: Optional[int] = None
    response: Optional[PortalResponse] = None
    student_name: Optional[str] = None


class SimaClient:
    """Owns one account's HTTP session against the SIMA portal.

    Every request goes through `_request`, which returns the cookies the portal
    set; the public operations merge those into `self.session`. Callers persist
    `self.session` when they need it to survive the process.
    """

    def __init__(
        self,
        config: Config,
        session: Session | None = None,
        solver: CaptchaSolver | None = None,
    ):
        self.config = config
        self.solver = solver or CaptchaSolver()
        session = session or Session()
        if not session.user_agent:
            session = Session(cookies=session.cookies, user_agent=random.choice(config.user_agents))
        self.session = session
        self._http: aiohttp.ClientSession | None = None
        self._clock = time.monotonic

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            # Cookies are carried explicitly per request, never by a shared jar.
            self._http = aiohttp.ClientSession(
                cookie_jar=aiohttp.DummyCookieJar(),
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
                headers=DEFAULT_HEADERS,
            )
        return self._http

    async def _delay(self, seconds: float | None = None):
        if seconds is None:
            seconds = random.uniform(self.config.request_delay_min, self.config.request_delay_max)
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def _request(
        self,
        method: str,
        url: str,
        session: Session,
        data: dict[str, str] | None = None,
        allow_redirects: bool = True,
    ) -> PortalResponse:
        """Issues one throttled request carrying `session`'s cookies.

        Raises:
            PortalUnreachable: On connection errors, timeouts, and 5xx responses.
        """
        await self._delay()
        headers = {"User-Agent": session.user_agent}
        if session.cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in session.cookies.items())

        try:
            async with self._get_http().request(
                method, url, headers=headers, data=data, allow_redirects=allow_redirects
            ) as resp:
                body = await resp.read()
                cookies: dict[str, str] = {}
                for hop in (*resp.history, resp):
                    cookies.update({name: morsel.value for name, morsel in hop.cookies.items()})
                final_url = str(resp.url)
                status = resp.status
                location = resp.headers.get("Location")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PortalUnreachable(f"{method} {url} failed: {e!r}") from e

        if status >= 500:
            raise PortalUnreachable(f"{method} {url} returned HTTP {status}")

        logger.debug(f"{method} {url} -> {status} ({len(body)} bytes)")
        return PortalResponse(
            url=final_url, status=status, body=body, cookies=cookies, location=location
        )

    def _elapsed(self, started: float) -> float:
        return self._clock() - started

    def _check_budget(self, started: float):
        elapsed = self._elapsed(started)
        if elapsed >= self.config.login_timeout:
            raise LoginTimeout(elapsed, self.config.login_timeout)

    def _advance(self, attempt: LoginAttempt, phase: LoginPhase, started: float):
        self._check_budget(started)
        logger.debug(f"Login attempt {attempt.number}: {attempt.phase.value} -> {phase.value}")
        attempt.phase = phase

    async def _run_attempt(
        self, attempt: LoginAttempt, login_id: str, password: str, started: float
    ) -> LoginAttempt:
        # Init -> SessionAcquired
        resp = await self._request("GET", Path.LOGIN, attempt.session)
        attempt.session = attempt.session.merged(resp.cookies)
        self._advance(attempt, LoginPhase.SESSION_ACQUIRED, started)

        # SessionAcquired -> CaptchaFetched
        resp = await self._request("GET", Path.CAPTCHA, attempt.session)
        attempt.session = attempt.session.merged(resp.cookies)
        attempt.captcha_image = resp.body
        self._advance(attempt, LoginPhase.CAPTCHA_FETCHED, started)

        # CaptchaFetched -> CaptchaSolved
        attempt.captcha_answer = await asyncio.to_thread(self.solver.solve, attempt.captcha_image)
        logger.info(f"CAPTCHA solved: {attempt.captcha_answer}")
        self._advance(attempt, LoginPhase.CAPTCHA_SOLVED, started)

        # CaptchaSolved -> Submitted
        payload = {"txUser": login_id, "txPass": password, "kdc": str(attempt.captcha_answer)}
        resp = await self._request(
            "POST", Path.LOGIN_CHECK, attempt.session, data=payload, allow_redirects=False
        )
        attempt.session = attempt.session.merged(resp.cookies)
        if resp.status in REDIRECT_STATUSES and resp.location:
            # Follow by hand so cookies set on the redirect reach its target.
            target = urljoin(Path.LOGIN_CHECK, resp.location)
            resp = await self._request("GET", target, attempt.session)
            attempt.session = attempt.session.merged(resp.cookies)
        attempt.response = resp
        self._advance(attempt, LoginPhase.SUBMITTED, started)

        # Submitted -> Verified
        html = resp.text
        error = parser.find_login_error(html)
        if error:
            raise LoginFailed(error)
        if not parser.has_login_succeeded(html, resp.url):
            raise LoginFailed("Login verification failed")

        attempt.student_name = parser.extract_student_name(html, login_id)
        attempt.phase = LoginPhase.VERIFIED
        return attempt

    async def login(self, login_id: str, password: str) -> LoginResult:
        """Logs in, retrying the whole sequence up to `login_max_attempts` times.

        Every attempt starts with no cookies. The wall-clock budget
        `login_timeout` spans all attempts and is checked at each phase
        transition and at each failure.

        Returns:
            LoginResult: The fresh session and, when found, the student's name.

        Raises:
            LoginTimeout: The budget ran out, regardless of attempts left.
            LoginFailed: Every attempt failed.
        """
        started = self._clock()
        max_attempts = self.config.login_max_attempts
        last_error: Exception | None = None

        for number in range(1, max_attempts + 1):
            logger.info(f"Login attempt {number}/{max_attempts} for NIM: {login_id}")
            attempt = LoginAttempt(number, session=Session(user_agent=self.session.user_agent))

            try:
                await self._run_attempt(attempt, login_id, password, started)
            except LoginTimeout:
                attempt.phase = LoginPhase.FAILED
                raise
            except PortalError as e:
                failed_at = attempt.phase
                attempt.phase = LoginPhase.FAILED
                last_error = e
                logger.warning(f"Login attempt {number} failed after {failed_at.value}: {e}")
                self._check_budget(started)

                if number < max_attempts:
                    await self._delay(self.config.login_retry_delay)
                    self._check_budget(started)
                continue

            self.session = attempt.session
            logger.success(f"Login successful for NIM: {login_id}")
            return LoginResult(session=attempt.session, student_name=attempt.student_name)

        reason = str(last_error) if last_error else "Maximum login attempts reached"
        raise LoginFailed(reason)

    async def _get_page(self, url: str) -> PortalResponse:
        resp = await self._request("GET", url, self.session)
        self.session = self.session.merged(resp.cookies)
        if parser.is_login_page(resp.text):
            raise SessionInvalid(f"Redirected to login while fetching {url}")
        return resp

    async def list_courses(self) -> list[Course]:
        logger.info("Fetching mata kuliah list...")
        resp = await self._get_page(Path.ELEARNING)
        courses = parser.parse_courses(resp.text)
        logger.success(f"Found {len(courses)} mata kuliah")
        return courses

    async def list_content_items(self, content_id: str) -> list[ContentItem]:
        logger.info(f"Fetching materi for ID: {content_id}")
        resp = await self._get_page(Path.content_listing(content_id))
        items = parser.parse_content_items(resp.text)
        logger.success(f"Found {len(items)} materi")
        return items

    async def check_in(self, action_link: str) -> CheckInResult:
        """Opens the item's discussion page, which registers self-attendance."""
        logger.info(f"Attending materi: {action_link}")
        resp = await self._get_page(action_link)
        title = parser.parse_page_title(resp.text)
        logger.success(f"Accessed discussion page: {title}")
        return CheckInResult(page_title=title)

    async def check_attendance(self, roster_link: str, login_id: str) -> AttendanceStatus:
        logger.info(f"Checking attendance: {roster_link}")
        resp = await self._get_page(roster_link)
        status = parser.parse_attendance(resp.text, login_id)
        logger.info(
            f"Attendance status for {login_id}: {'Present' if status.is_present else 'Absent'}"
        )
        return status

