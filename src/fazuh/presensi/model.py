from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from datetime import timezone
from typing import Any, Optional, Self


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Session:
    """Cookies obtained from the portal plus the user agent that obtained them."""

    cookies: dict[str, str] = field(default_factory=dict)
    user_agent: str = ""

    def merged(self, cookies: dict[str, str]) -> Self:
        """Returns a new session with `cookies` layered over the current ones."""
        if not cookies:
            return self
        return replace(self, cookies={**self.cookies, **cookies})

    def to_dict(self) -> dict[str, Any]:
        return {"cookies": dict(self.cookies), "user_agent": self.user_agent}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(cookies=dict(data.get("cookies") or {}), user_agent=data.get("user_agent", ""))


@dataclass
class AccountStats:
    total_checks: int = 0
    total_absences: int = 0
    failed_attempts: int = 0


@dataclass
class Account:
    """A registered SIMA account, keyed by the front end's user identifier."""

    account_id: str
    login_id: str
    password: str
    session: Optional[Session] = None
    student_name: Optional[str] = None
    username: Optional[str] = None
    is_active: bool = True
    registered_at: str = field(default_factory=now_iso)
    last_login: Optional[str] = None
    last_check: Optional[str] = None
    stats: AccountStats = field(default_factory=AccountStats)


@dataclass(frozen=True)
class CourseLinks:
    content: Optional[str] = None
    assignment: Optional[str] = None
    discussion: Optional[str] = None


@dataclass(frozen=True)
class Course:
    """One enrolled class ("makul") from the e-learning listing page."""

    code: str
    name: str
    semester: str = ""
    credits: str = ""
    class_name: str = ""
    lecturer: str = ""
    contact: str = ""
    links: CourseLinks = field(default_factory=CourseLinks)
    content_id: Optional[str] = None

    def __repr__(self):
        return f"[{self.code}] {self.name}"


@dataclass(frozen=True)
class ContentItem:
    """One published unit ("materi") of a course."""

    item_id: str
    title: str
    topic: str = ""
    attendance_window: str = ""
    discussion_window: str = ""
    is_manual: bool = False
    is_active: bool = True
    checkin_link: Optional[str] = None
    roster_link: Optional[str] = None

    @property
    def is_eligible(self) -> bool:
        """Whether self check-in may be attempted for this item."""
        return not self.is_manual and self.is_active and bool(self.checkin_link)


@dataclass(frozen=True)
class SnapshotEntry:
    item_id: str
    title: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {"itemId": self.item_id, "title": self.title, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> Self:
        return cls(
            item_id=str(data["itemId"]),
            title=data.get("title", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass(frozen=True)
class AttendanceStatus:
    is_present: bool
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class CheckInResult:
    page_title: str


@dataclass(frozen=True)
class LoginResult:
    session: Session
    student_name: Optional[str] = None
