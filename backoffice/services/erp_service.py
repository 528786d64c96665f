"""
Legacy ERP integration (cookie session + HTML forms).
- Session: POST actionlogin.php (form) → Set-Cookie, or a 3xx redirect as implicit success.
  One process-wide session, renewed after ERP_SESSION_TTL_SEC or when a response looks like the login page.
- Member lookup: POST orderprodvipnewget.php, scrape the result page.
- Customer order / repair ticket: POST orderprodvipnew_finish.php / ccp_finish.php with an order number
  of store code + YYYYMMDDHHMMSS (UTC+8). The ERP never confirms a write; outcome is inferred from markers.
"""
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.services.credentials import ERP_PROVIDER, resolve_login
from backoffice.services.erp_parsers import (
    ErpMember,
    WriteOutcome,
    classify_write_response,
    looks_like_login_page,
    parse_member_lookup,
)
from backoffice.services.exceptions import ErpSessionExpired, ErpUnavailable, NotConfiguredError
from backoffice.services.http_client import post_no_retry
from backoffice.services.token_cache import ExpiringCache

logger = logging.getLogger(__name__)

TW_TZ = timezone(timedelta(hours=8))

LOGIN_ENDPOINT = "actionlogin.php"
MEMBER_LOOKUP_ENDPOINT = "orderprodvipnewget.php"
ORDER_ENDPOINT = "orderprodvipnew_finish.php"
REPAIR_ENDPOINT = "ccp_finish.php"

# Store name -> ERP store code
STORE_CODES: dict[str, str] = {
    "台南": "001",
    "崇明": "008",
    "高雄": "002",
    "美術": "007",
    "台中": "005",
    "台北": "006",
}
STORE_NAMES: dict[str, str] = {code: name for name, code in STORE_CODES.items()}

# Order type -> lead time in days (in stock / assembly / special order)
DELIVERY_DAYS = {"現貨": 3, "組裝": 7, "客訂": 21}
DEFAULT_ORDER_TYPE = "客訂"
FALLBACK_DELIVERY_DAYS = 14
DEFAULT_CLERK = "Hamm"


def generate_order_number(store_code: str, now: Optional[datetime] = None) -> str:
    """Store code + YYYYMMDDHHMMSS in Taiwan time."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return store_code + now.astimezone(TW_TZ).strftime("%Y%m%d%H%M%S")


def calculate_delivery_date(order_type: Optional[str] = None, today: Optional[date] = None) -> str:
    """Expected delivery date as YYYY/MM/DD from the order type's lead time."""
    days = DELIVERY_DAYS.get(order_type or DEFAULT_ORDER_TYPE, FALLBACK_DELIVERY_DAYS)
    base = today or datetime.now(TW_TZ).date()
    return (base + timedelta(days=days)).strftime("%Y/%m/%d")


def _cookie_header(resp: httpx.Response) -> str:
    """Join every Set-Cookie into a Cookie header value (name=value pairs only)."""
    pairs = []
    for raw in resp.headers.get_list("set-cookie"):
        pair = raw.split(";", 1)[0].strip()
        if pair:
            pairs.append(pair)
    return "; ".join(pairs)


class ErpSessionManager:
    """
    Keeps one authenticated ERP session for the whole process.
    A failed downstream call never retries in-call; it clears the session so the next call logs in again.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        login_markers: Optional[list[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 20.0,
    ):
        self.base_url = (base_url or settings.ERP_BASE_URL).rstrip("/")
        self.username = (username if username is not None else settings.ERP_USERNAME or "").strip()
        self.password = password if password is not None else settings.ERP_PASSWORD or ""
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else settings.ERP_SESSION_TTL_SEC)
        self.login_markers = login_markers if login_markers is not None else list(settings.ERP_LOGIN_MARKERS)
        self.transport = transport
        self.timeout = timeout
        self.cache: ExpiringCache[str] = ExpiringCache("ERP session", safety_margin=0.0, clock=clock)

    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def _login(self) -> tuple[str, float]:
        logger.info("[ERP] Logging in")
        try:
            resp = await post_no_retry(
                self._url(LOGIN_ENDPOINT),
                data={"scno": self.username.upper(), "pass": self.password, "submit": "Login"},
                timeout=self.timeout,
                transport=self.transport,
            )
        except httpx.HTTPError as e:
            logger.error("[ERP] Login request failed: %s", e)
            raise ErpUnavailable("Unable to connect to the ERP system") from e

        cookie = _cookie_header(resp)
        if cookie:
            logger.info("[ERP] Login succeeded")
            return cookie, self.ttl_seconds
        if resp.status_code in (301, 302, 303, 307, 308):
            logger.info("[ERP] Login succeeded (redirect)")
            return "", self.ttl_seconds
        logger.error("[ERP] Login failed: no session cookie (HTTP %s)", resp.status_code)
        raise ErpUnavailable("ERP login failed: no session obtained")

    async def ensure_authenticated(self) -> str:
        """Return the cookie header for a valid session, logging in if absent or older than the TTL."""
        if not self.is_configured():
            raise NotConfiguredError("ERP credentials not configured (ERP_USERNAME, ERP_PASSWORD)")
        return await self.cache.get_or_refresh(self._login)

    def invalidate(self) -> None:
        self.cache.clear()

    async def call(self, endpoint: str, form: dict) -> str:
        """POST a form with the session cookie and return the raw HTML body."""
        cookie = await self.ensure_authenticated()
        headers = {"Cookie": cookie} if cookie else {}
        try:
            resp = await post_no_retry(
                self._url(endpoint),
                data={k: "" if v is None else str(v) for k, v in form.items()},
                headers=headers,
                timeout=self.timeout,
                transport=self.transport,
            )
        except httpx.HTTPError as e:
            logger.error("[ERP] %s request failed: %s", endpoint, e)
            raise ErpUnavailable("Unable to connect to the ERP system") from e

        html = resp.text
        if resp.status_code in (401, 403) or looks_like_login_page(html, self.login_markers):
            self.invalidate()
            logger.warning("[ERP] %s answered with the login page (HTTP %s); session cleared", endpoint, resp.status_code)
            raise ErpSessionExpired("ERP session expired; please retry")
        logger.debug("[ERP] %s -> HTTP %s (%d bytes)", endpoint, resp.status_code, len(html))
        return html


@dataclass
class StaffInfo:
    store_code: str
    employee_name: str = ""
    employee_id: str = ""

    @property
    def clerk(self) -> str:
        return self.employee_name or self.employee_id or DEFAULT_CLERK


@dataclass
class OrderData:
    phone: str
    member_name: str
    product_desc: str
    price: float
    member_id: str = ""
    order_type: Optional[str] = None
    delivery_date: Optional[str] = None
    prepay_cash: float = 0
    prepay_card: float = 0
    prepay_transfer: float = 0
    prepay_remit: float = 0


@dataclass
class RepairData:
    phone: str
    member_name: str
    repair_desc: str
    member_id: str = ""
    estimate: float = 0
    prepayment: float = 0
    technician: Optional[str] = None


@dataclass
class ErpWriteResult:
    outcome: WriteOutcome
    number: str

    @property
    def success(self) -> bool:
        return self.outcome != WriteOutcome.LIKELY_FAILED

    @property
    def confirmed(self) -> bool:
        return self.outcome == WriteOutcome.CONFIRMED


def _amount(value) -> str:
    """Form value for money: integers without a trailing .0"""
    number = float(value or 0)
    return str(int(number)) if number.is_integer() else str(number)


class ErpService:
    """Domain operations on top of the ERP session."""

    def __init__(
        self,
        session: ErpSessionManager,
        failure_markers: Optional[list[str]] = None,
        success_markers: Optional[list[str]] = None,
    ):
        self.session = session
        self.failure_markers = failure_markers if failure_markers is not None else list(settings.ERP_FAILURE_MARKERS)
        self.success_markers = success_markers if success_markers is not None else list(settings.ERP_SUCCESS_MARKERS)

    async def lookup_member(self, phone: str, store_code: str = "001") -> Optional[ErpMember]:
        html = await self.session.call(
            MEMBER_LOOKUP_ENDPOINT,
            {"smobile": phone, "sston": store_code, "sscnm": "", "submit": "查詢"},
        )
        return parse_member_lookup(html)

    async def _submit(self, endpoint: str, payload: dict, number: str, label: str) -> ErpWriteResult:
        html = await self.session.call(endpoint, payload)
        outcome = classify_write_response(html, self.failure_markers, self.success_markers)
        if outcome == WriteOutcome.LIKELY_FAILED:
            logger.warning("[ERP] %s %s: failure marker in response", label, number)
        else:
            logger.info("[ERP] %s %s written (%s)", label, number, outcome.value)
        return ErpWriteResult(outcome=outcome, number=number)

    async def create_order(self, order: OrderData, staff: StaffInfo, now: Optional[datetime] = None) -> ErpWriteResult:
        number = generate_order_number(staff.store_code, now)
        payload = {
            "ston": staff.store_code,
            "arman": staff.clerk,
            "mobile": order.phone,
            "scnm": order.member_name,
            "scno": order.member_id or "",
            "memo1": order.product_desc,
            "pamt01": _amount(order.price),
            "urdate": order.delivery_date or calculate_delivery_date(order.order_type),
            "pamt02": _amount(order.prepay_cash),
            "pamt03": _amount(order.prepay_card),
            "pamt04": _amount(order.prepay_transfer),
            "pamt05": _amount(order.prepay_remit),
            "fnoa": number,
        }
        logger.info("[ERP] Creating customer order %s for %s: %s", number, order.member_name, order.product_desc)
        return await self._submit(ORDER_ENDPOINT, payload, number, "Customer order")

    async def create_repair(self, repair: RepairData, staff: StaffInfo, now: Optional[datetime] = None) -> ErpWriteResult:
        number = generate_order_number(staff.store_code, now)
        payload = {
            "ston": staff.store_code,
            "mobile": repair.phone,
            "scnm": repair.member_name,
            "scno": repair.member_id or "",
            "arman": staff.clerk,
            "memo1": repair.repair_desc,
            "pamt01": _amount(repair.estimate),
            "pamt02": _amount(repair.prepayment),
            "memo4": repair.technician or staff.clerk,
            "fnoa": number,
        }
        logger.info("[ERP] Creating repair ticket %s for %s: %s", number, repair.member_name, repair.repair_desc)
        return await self._submit(REPAIR_ENDPOINT, payload, number, "Repair ticket")


_erp_session: Optional[ErpSessionManager] = None


def get_erp_session(db: Optional[Session] = None) -> ErpSessionManager:
    """Process-wide session manager (one shared ERP session, not per user)."""
    global _erp_session
    if _erp_session is None or not _erp_session.is_configured():
        username, password = resolve_login(db, ERP_PROVIDER, settings.ERP_USERNAME, settings.ERP_PASSWORD)
        _erp_session = ErpSessionManager(username=username or "", password=password or "")
    return _erp_session


def get_erp_service(db: Optional[Session] = None) -> ErpService:
    return ErpService(get_erp_session(db))
