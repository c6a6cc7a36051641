"""Microsoft Graph calendar source (calendarView + calendarView/delta) via requests."""

import logging
from collections.abc import Callable
from collections.abc import Iterator
from datetime import datetime
from urllib.parse import parse_qs
from urllib.parse import urlparse
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import requests

from graph_calendar_sync.models import ContinuationToken
from graph_calendar_sync.models import RemoteEvent
from graph_calendar_sync.models import RemoteSourceError
from graph_calendar_sync.models import ShowAs
from graph_calendar_sync.models import TokenExpiredError
from graph_calendar_sync.remote import DeltaPage
from graph_calendar_sync.remote import RemoteCalendarSource
from graph_calendar_sync.sync.utils import normalize_categories
from graph_calendar_sync.sync.utils import parse_instant

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"

SELECT_FIELDS = "id,subject,start,end,isAllDay,showAs,categories,body,lastModifiedDateTime"

# Error codes Graph uses when a delta token can no longer be honoured.
_EXPIRED_TOKEN_CODES = frozenset(
    {
        "syncstatenotfound",
        "syncstateinvalid",
        "fullsyncrequired",
        "resyncrequired",
    }
)


def extract_delta_token(delta_link: str | None) -> ContinuationToken | None:
    """Pull ``$deltatoken`` out of an ``@odata.deltaLink`` URL."""
    if not delta_link:
        return None
    query = parse_qs(urlparse(delta_link).query)
    values = query.get("$deltatoken") or query.get("deltatoken")
    return ContinuationToken(values[0]) if values else None


def graph_datetime(value: dict | None) -> str:
    """Render a Graph ``dateTimeTimeZone`` object as an ISO string.

    UTC and IANA zone names get an explicit offset; anything else (Windows
    zone names) is returned as-is and later read as UTC, which is what the
    ``outlook.timezone`` preference asks Graph to send.
    """
    if not value or not value.get("dateTime"):
        return ""
    text = value["dateTime"]
    zone = value.get("timeZone") or "UTC"
    if zone.upper() in ("UTC", "ETC/UTC", "Z"):
        return text if text.endswith("Z") or "+" in text[10:] else text + "+00:00"
    try:
        tz = ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError):
        return text
    return parse_instant(text, assume_tz=tz).isoformat()


def parse_graph_event(item: dict) -> RemoteEvent | None:
    """Map a Graph event resource to a RemoteEvent.

    Returns None for items that carry neither subject nor start nor end.
    """
    event_id = item.get("id")
    if not event_id:
        return None

    if "@removed" in item:
        return RemoteEvent.removed(event_id)

    subject = item.get("subject")
    start = graph_datetime(item.get("start"))
    end = graph_datetime(item.get("end"))
    if not subject and not start and not end:
        logger.debug(f"Skipping invalid event {event_id}: no subject, start or end")
        return None
    if not start:
        logger.warning(f"Skipping event {event_id}: no start time")
        return None

    body = item.get("body") or {}
    return RemoteEvent(
        external_id=event_id,
        title=subject or "Untitled Event",
        description=body.get("content") or "",
        start=start,
        end=end or start,
        is_all_day=bool(item.get("isAllDay", False)),
        show_as=ShowAs.parse(item.get("showAs")),
        categories=normalize_categories(item.get("categories") or []),
        last_modified=item.get("lastModifiedDateTime"),
    )


class GraphCalendarSource(RemoteCalendarSource):
    """Microsoft Graph calendar, read-only.

    ``token_provider`` returns a bearer token on every call; acquiring and
    refreshing it is the caller's business.
    """

    name = "Microsoft Graph"

    def __init__(
        self,
        token_provider: Callable[[], str],
        calendar_id: str = "",
        page_size: int = 100,
        session: requests.Session | None = None,
        base_url: str = GRAPH_URL,
        timeout: float = 30.0,
    ):
        self.token_provider = token_provider
        self.calendar_id = calendar_id
        self.page_size = page_size
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _view_url(self) -> str:
        if self.calendar_id:
            return f"{self.base_url}/me/calendars/{self.calendar_id}/calendarView"
        return f"{self.base_url}/me/calendarView"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token_provider()}",
            "Accept": "application/json",
            "Prefer": f'outlook.timezone="UTC", odata.maxpagesize={self.page_size}',
        }

    def _get(self, url: str, params: dict | None = None, delta: bool = False) -> dict:
        try:
            resp = self.session.get(
                url, headers=self._headers(), params=params, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise RemoteSourceError(f"Request to Microsoft Graph failed: {e}") from e

        if resp.status_code == 200:
            try:
                return resp.json()
            except ValueError as e:
                raise RemoteSourceError("Microsoft Graph returned a non-JSON response") from e

        code, message = _error_details(resp)
        if delta and (resp.status_code == 410 or code.lower() in _EXPIRED_TOKEN_CODES):
            raise TokenExpiredError(
                f"Sync token expired or invalid ({code or resp.status_code}); "
                f"a full sync is required"
            )
        raise RemoteSourceError(
            f"Microsoft Graph error {resp.status_code}"
            + (f" {code}" if code else "")
            + (f": {message}" if message else "")
        )

    def _pages(self, url: str, params: dict | None, delta: bool = False) -> Iterator[dict]:
        """Yield raw response bodies, following @odata.nextLink."""
        data = self._get(url, params=params, delta=delta)
        yield data
        while data.get("@odata.nextLink"):
            # nextLink already carries every query parameter.
            data = self._get(data["@odata.nextLink"], delta=delta)
            yield data

    @staticmethod
    def _parse_items(data: dict) -> list[RemoteEvent]:
        events = []
        for item in data.get("value", []):
            event = parse_graph_event(item)
            if event is not None:
                events.append(event)
        return events

    def fetch_events_in_range(self, start: datetime, end: datetime) -> Iterator[list[RemoteEvent]]:
        params = {
            "startDateTime": start.isoformat(),
            "endDateTime": end.isoformat(),
            "$select": SELECT_FIELDS,
            "$orderby": "start/dateTime",
            "$top": self.page_size,
        }
        for data in self._pages(self._view_url(), params):
            events = self._parse_items(data)
            logger.debug(f"Fetched calendarView page with {len(events)} event(s)")
            yield [e for e in events if not e.deleted]

    def fetch_baseline_token(self, start: datetime, end: datetime) -> ContinuationToken | None:
        """Walk a fresh calendarView/delta round to its deltaLink and return the token."""
        params = {
            "startDateTime": start.isoformat(),
            "endDateTime": end.isoformat(),
        }
        token = None
        for data in self._pages(f"{self._view_url()}/delta", params, delta=True):
            token = extract_delta_token(data.get("@odata.deltaLink")) or token
        return token

    def fetch_delta_since(self, token: ContinuationToken) -> Iterator[DeltaPage]:
        params = {"$deltatoken": token}
        for data in self._pages(f"{self._view_url()}/delta", params, delta=True):
            delta_link = data.get("@odata.deltaLink")
            yield DeltaPage(
                events=self._parse_items(data),
                delta_token=extract_delta_token(delta_link),
                done=delta_link is not None or not data.get("@odata.nextLink"),
            )


def _error_details(resp: requests.Response) -> tuple[str, str]:
    """Return (code, message) from a Graph error body, or empty strings."""
    try:
        error = resp.json().get("error") or {}
    except (ValueError, AttributeError):
        return "", (resp.text or "")[:200]
    return str(error.get("code") or ""), str(error.get("message") or "")


def is_online(url: str = GRAPH_URL, timeout: float = 5.0) -> bool:
    """Best-effort connectivity signal: any HTTP answer from Graph counts as online."""
    try:
        requests.head(url, timeout=timeout)
    except requests.RequestException as e:
        logger.debug(f"Connectivity check failed: {e}")
        return False
    return True
