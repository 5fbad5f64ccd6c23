import re
from typing import List, Optional

from bs4 import BeautifulSoup
from bs4 import Tag

from fazuh.presensi.error import ParseError
from fazuh.presensi.model import AttendanceStatus
from fazuh.presensi.model import ContentItem
from fazuh.presensi.model import Course
from fazuh.presensi.model import CourseLinks
from fazuh.presensi.sima.path import Path

LOGIN_ERROR_KEYWORDS = ("salah", "gagal", "tidak valid", "invalid", "wrong")
DASHBOARD_MARKERS = ("Dashboard",)
LOGOUT_SELECTOR = 'a[href*="logout"], a[href*="Logout"], a[href*="keluar"]'
USER_PANEL_SELECTORS = (".user-panel", ".user-info", ".user-menu", "#user-panel")
NAME_WIDGET_SELECTORS = (
    ".user-panel .info p",
    ".user-panel .info",
    ".user-menu .hidden-xs",
    ".user-header p",
    ".profile-name",
    ".user-name",
)

_TIMESTAMP_PATTERNS = (
    re.compile(r"\d{4}-\d{2}-\d{2}[ T]\d{1,2}[:.]\d{2}(?:[:.]\d{2})?"),
    re.compile(r"\d{1,2}[/-]\d{1,2}[/-]\d{2,4},?\s+\d{1,2}[:.]\d{2}(?:[:.]\d{2})?"),
    re.compile(r"\d{1,2}\s+\w+\s+\d{4},?\s+\d{1,2}[:.]\d{2}(?:[:.]\d{2})?"),
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\b"),
)


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _text(element: Tag | None) -> str:
    return element.get_text(" ", strip=True) if element else ""


def _href(block: Tag, pattern: str) -> Optional[str]:
    link = block.select_one(f'a[href*="{pattern}"]')
    if link is None:
        return None
    href = link.get("href")
    return href if isinstance(href, str) and href else None


def _query_value(href: str, key: str) -> str:
    """Returns the value of `key` in an href like "?dm=123&x=1"."""
    match = re.search(rf"[?&]{re.escape(key)}=([^&#]*)", href)
    return match.group(1) if match else ""


def _form_group_value(block: Tag, label: str) -> str:
    """Returns the `.controls` text of the labeled `.form-group` inside a block."""
    for group in block.select(".form-group"):
        label_el = group.find("label")
        if label_el is not None and label in label_el.get_text():
            return _text(group.select_one(".controls"))
    return ""


def is_login_page(html: str) -> bool:
    """Check if the markup is SIMA's login form (the session was not honored)."""
    soup = _soup(html)
    if soup.select_one('input[name="txUser"], input[name="txPass"]') is not None:
        return True
    return soup.select_one('form[action*="cekadm.php"]') is not None


def find_login_error(html: str) -> Optional[str]:
    """Returns the alert text when the page shows a credential error.

    Only alerts containing one of `LOGIN_ERROR_KEYWORDS` count; informational
    alerts are ignored.
    """
    soup = _soup(html)
    for alert in soup.select(".alert-danger, .alert, .error"):
        message = _text(alert)
        if message and any(kw in message.lower() for kw in LOGIN_ERROR_KEYWORDS):
            return message
    return None


def has_login_succeeded(html: str, final_url: str) -> bool:
    """Checks the independent success signals after submitting credentials.

    Any single signal is enough: a final URL on the portal index, a dashboard
    marker in the title or body, a logout link, or a user panel element.
    """
    if "index.php" in final_url and "login.php" not in final_url:
        return True

    soup = _soup(html)
    title = _text(soup.title)
    body = _text(soup.body) if soup.body else _text(soup)
    if any(marker in title or marker in body for marker in DASHBOARD_MARKERS):
        return True

    return _has_portal_chrome(soup)


def _has_portal_chrome(soup: BeautifulSoup) -> bool:
    """Check for the logout link or user panel every logged-in page carries."""
    if soup.select_one(LOGOUT_SELECTOR) is not None:
        return True
    return any(soup.select_one(selector) is not None for selector in USER_PANEL_SELECTORS)


def _listing_blocks(soup: BeautifulSoup, page: str) -> List[Tag]:
    """Returns the `.room-box` blocks of an e-learning listing.

    A listing without blocks is only accepted as empty when the page still
    carries the logged-in portal chrome.

    Raises:
        ParseError: When the page is neither a listing nor an empty one.
    """
    blocks = soup.select(".room-box")
    if not blocks and not _has_portal_chrome(soup):
        title = _text(soup.title) or _text(soup.find(["h1", "h2", "h3"]))
        raise ParseError(f"Unexpected {page} page: {title or 'no listing structure'}")
    return blocks


def _is_plausible_name(candidate: str, login_id: str) -> bool:
    candidate = candidate.strip()
    if len(candidate) <= 3:
        return False
    if login_id in candidate or candidate.replace(" ", "").isdigit():
        return False
    return any(ch.isalpha() for ch in candidate)


def _clean_name(text: str, login_id: str) -> str:
    text = text.replace(login_id, " ")
    text = re.sub(r"[()\[\]|:\-–]+", " ", text)
    text = re.sub(r"\b(NIM|Nama|Mahasiswa|Online)\b", " ", text, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", text).strip()


def _name_from_widget(soup: BeautifulSoup, login_id: str) -> Optional[str]:
    for selector in NAME_WIDGET_SELECTORS:
        widget = soup.select_one(selector)
        if widget is None:
            continue
        # The first text line of the widget holds the name; status lines follow.
        for line in widget.stripped_strings:
            name = _clean_name(line, login_id)
            if _is_plausible_name(name, login_id):
                return name
    return None


def _name_from_login_id_text(soup: BeautifulSoup, login_id: str) -> Optional[str]:
    for string in soup.find_all(string=re.compile(re.escape(login_id))):
        text = str(string)
        # "NAME (NIM)", "NAME - NIM", "NIM - NAME"
        for pattern in (
            rf"([A-Za-z][A-Za-z .'`]+?)\s*[(\-|–]\s*{re.escape(login_id)}",
            rf"{re.escape(login_id)}\s*[)\-|–:]\s*([A-Za-z][A-Za-z .'`]+)",
        ):
            match = re.search(pattern, text)
            if match:
                name = _clean_name(match.group(1), login_id)
                if _is_plausible_name(name, login_id):
                    return name
    return None


def _name_from_nearby_element(soup: BeautifulSoup, login_id: str) -> Optional[str]:
    for string in soup.find_all(string=re.compile(re.escape(login_id))):
        element = string.parent
        if not isinstance(element, Tag):
            continue
        neighbours = [
            element.find_previous_sibling(),
            element.find_next_sibling(),
            element.parent.find_previous_sibling() if element.parent else None,
        ]
        for neighbour in neighbours:
            if not isinstance(neighbour, Tag):
                continue
            name = _clean_name(_text(neighbour), login_id)
            if _is_plausible_name(name, login_id):
                return name
    return None


def extract_student_name(html: str, login_id: str) -> Optional[str]:
    """Extracts the student's display name from a post-login page.

    Heuristics run in priority order: a structured name widget, a text search
    anchored on the login ID, then the text of elements next to the login ID.
    The first plausible result (longer than three characters) wins.

    Returns:
        The name, or None if no heuristic found one.
    """
    soup = _soup(html)
    for heuristic in (_name_from_widget, _name_from_login_id_text, _name_from_nearby_element):
        name = heuristic(soup, login_id)
        if name:
            return name
    return None


def parse_courses(html: str) -> List[Course]:
    """Parses the e-learning listing page into courses.

    Every course is a `.room-box` block whose `h4.text-primary b` title reads
    "semester | code | name | credits | class". Blocks without a title are
    layout placeholders and are skipped.

    Raises:
        ParseError: When the page is not a listing, e.g. a maintenance notice.
    """
    soup = _soup(html)
    courses: List[Course] = []

    for block in _listing_blocks(soup, "course listing"):
        title = _text(block.select_one("h4.text-primary b"))
        if not title:
            continue

        parts = [part.strip() for part in title.split("|")]
        parts += [""] * (5 - len(parts))

        content_href = _href(block, "?m=")
        assignment_href = _href(block, "?t=")
        discussion_href = _href(block, "?dk=")

        contact = block.select_one("p.message")
        courses.append(
            Course(
                semester=parts[0],
                code=parts[1],
                name=parts[2],
                credits=parts[3],
                class_name=parts[4],
                lecturer=_text(block.find("name")),
                contact=_text(contact),
                links=CourseLinks(
                    content=Path.elearning_link(content_href) if content_href else None,
                    assignment=Path.elearning_link(assignment_href) if assignment_href else None,
                    discussion=Path.elearning_link(discussion_href) if discussion_href else None,
                ),
                content_id=(_query_value(content_href, "m") or None) if content_href else None,
            )
        )

    return courses


def parse_content_items(html: str) -> List[ContentItem]:
    """Parses a course's content page into content items.

    Each item is a `.room-box` block with labeled `.form-group` rows
    ("Bahasan", "Waktu Kehadiran", "Waktu Diskusi"), a discussion link
    (`?dm=`) that doubles as the check-in action, and a roster link
    (`materi_hadir.php`). An unrecognised page raises `ParseError` rather
    than reading as a course with no items.
    """
    soup = _soup(html)
    items: List[ContentItem] = []

    for block in _listing_blocks(soup, "content listing"):
        title = _text(block.select_one("h4.text-primary b"))
        if not title:
            continue

        window = _form_group_value(block, "Waktu Kehadiran")
        discussion_href = _href(block, "?dm=")
        roster_href = _href(block, "materi_hadir.php")

        # Items without a discussion link are keyed by title so diffing stays stable.
        item_id = _query_value(discussion_href, "dm") if discussion_href else ""

        items.append(
            ContentItem(
                item_id=item_id or title,
                title=title,
                topic=_form_group_value(block, "Bahasan"),
                attendance_window=window,
                discussion_window=_form_group_value(block, "Waktu Diskusi"),
                is_manual="manual" in window.lower(),
                is_active="selesai" not in window.lower(),
                checkin_link=Path.elearning_link(discussion_href) if discussion_href else None,
                roster_link=Path.elearning_link(roster_href) if roster_href else None,
            )
        )

    return items


def parse_page_title(html: str) -> str:
    soup = _soup(html)
    return _text(soup.select_one("h4.text-primary b")) or _text(soup.title)


def find_timestamp(text: str) -> Optional[str]:
    """Returns the first timestamp-shaped token in `text`."""
    for pattern in _TIMESTAMP_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()
    return None


def parse_attendance(html: str, login_id: str) -> AttendanceStatus:
    """Finds `login_id` in the attendance roster table.

    Rows are scanned first: the row whose first cell, or failing that any
    cell, equals the login ID is the student's row, and its remaining cells
    are searched for a timestamp. When no row matches, the raw table text is
    searched for the login ID and a timestamp following it.

    Raises:
        ParseError: When the page has no table at all.
    """
    soup = _soup(html)
    tables = soup.find_all("table")
    if not tables:
        raise ParseError("Attendance page has no table.")

    rows = [row for table in tables for row in table.find_all("tr")]
    matched: list[str] | None = None

    for row in rows:
        cells = [cell.get_text(" ", strip=True) for cell in row.find_all(["td", "th"])]
        if cells and cells[0] == login_id:
            matched = cells[1:]
            break

    if matched is None:
        for row in rows:
            cells = [cell.get_text(" ", strip=True) for cell in row.find_all(["td", "th"])]
            if login_id in cells:
                matched = [cell for cell in cells if cell != login_id]
                break

    if matched is not None:
        for cell in reversed(matched):
            timestamp = find_timestamp(cell)
            if timestamp:
                return AttendanceStatus(is_present=True, timestamp=timestamp)
        return AttendanceStatus(is_present=True)

    raw = " ".join(table.get_text(" ", strip=True) for table in tables)
    position = raw.find(login_id)
    if position == -1:
        return AttendanceStatus(is_present=False)
    return AttendanceStatus(
        is_present=True, timestamp=find_timestamp(raw[position + len(login_id) :])
    )
