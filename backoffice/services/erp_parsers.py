"""
Pure parsers over legacy ERP HTML. The ERP has no structured status: results are
scraped from form inputs and outcomes inferred from marker text in the page.
"""
import enum
import re
from dataclasses import dataclass
from typing import Iterable, Optional

MEMBER_COUNT_RE = re.compile(r"查詢共(\d+)筆會員")


def _input_value_re(field: str) -> re.Pattern:
    return re.compile(r"name='%s'\s+value=\s*'([^']*)'" % re.escape(field))


MEMBER_NAME_RE = _input_value_re("scnm")
MEMBER_PHONE_RE = _input_value_re("mobile")
MEMBER_ID_RE = _input_value_re("scno")


@dataclass(frozen=True)
class ErpMember:
    name: str
    phone: str
    id: str

    def to_dict(self) -> dict:
        return {"name": self.name, "phone": self.phone, "id": self.id}


class WriteOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    LIKELY_FAILED = "likely_failed"
    UNKNOWN = "unknown"


def parse_member_lookup(html: str) -> Optional[ErpMember]:
    """
    Parse the member search result page. Returns None when the count marker is
    missing or zero, or when the name input is absent.
    """
    if not html:
        return None
    count_match = MEMBER_COUNT_RE.search(html)
    if not count_match or int(count_match.group(1)) == 0:
        return None
    name_match = MEMBER_NAME_RE.search(html)
    if not name_match:
        return None
    phone_match = MEMBER_PHONE_RE.search(html)
    id_match = MEMBER_ID_RE.search(html)
    return ErpMember(
        name=name_match.group(1).strip(),
        phone=phone_match.group(1).strip() if phone_match else "",
        id=id_match.group(1).strip() if id_match else "",
    )


def _contains_any(html: str, markers: Iterable[str]) -> bool:
    lowered = html.lower()
    return any(m and m.lower() in lowered for m in markers)


def looks_like_login_page(html: str, markers: Iterable[str]) -> bool:
    """True when the ERP served its login form instead of the requested page."""
    if not html:
        return False
    return _contains_any(html, markers)


def classify_write_response(
    html: str,
    failure_markers: Iterable[str],
    success_markers: Iterable[str] = (),
) -> WriteOutcome:
    """
    Classify an ERP write response (HTTP 200 either way).
    Failure markers win over success markers; no marker at all is UNKNOWN.
    """
    if not html:
        return WriteOutcome.UNKNOWN
    if _contains_any(html, failure_markers):
        return WriteOutcome.LIKELY_FAILED
    if _contains_any(html, success_markers):
        return WriteOutcome.CONFIRMED
    return WriteOutcome.UNKNOWN
