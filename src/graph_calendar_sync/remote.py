"""Remote calendar source contract consumed by the sync engine."""

from abc import ABC
from abc import abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime

from graph_calendar_sync.models import ContinuationToken
from graph_calendar_sync.models import RemoteEvent


@dataclass
class DeltaPage:
    """One page of changes since a continuation token.

    ``delta_token`` is only meaningful on the last page (``done=True``).
    """

    events: list[RemoteEvent] = field(default_factory=list)
    delta_token: ContinuationToken | None = None
    done: bool = False

    @property
    def upserts(self) -> list[RemoteEvent]:
        return [e for e in self.events if not e.deleted]

    @property
    def deletions(self) -> list[RemoteEvent]:
        return [e for e in self.events if e.deleted]


class RemoteCalendarSource(ABC):
    """Abstract base class for remote calendars.

    Implementations raise TokenExpiredError when a continuation token is
    rejected and RemoteSourceError for every other failure.
    """

    name = "remote"

    @abstractmethod
    def fetch_events_in_range(
        self, start: datetime, end: datetime
    ) -> Iterator[list[RemoteEvent]]:
        """Yield pages of every event overlapping [start, end]."""
        ...

    @abstractmethod
    def fetch_delta_since(self, token: ContinuationToken) -> Iterator[DeltaPage]:
        """Yield pages of upserts and deletion markers since ``token``."""
        ...

    def fetch_baseline_token(
        self, start: datetime, end: datetime
    ) -> ContinuationToken | None:
        """Return a token marking "now" for the window, if delta is supported."""
        return None

    def __repr__(self):
        return f"<{self.__class__.__name__} '{self.name}'>"
