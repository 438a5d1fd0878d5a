"""Expected events feed clients (the invoicing / ledger collaborator)."""
import dataclasses
import json
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml

from .config import FeedConfig, config
from .exceptions import ConfigurationError, DataError, EventAlreadySettledError, FeedError
from .logging_config import get_logger
from .models import DateWindow, ExpectedEvent

logger = get_logger("feeds")


class ExpectedEventsFeed(ABC):
    """Read and settle expected events owned by another subsystem."""

    @abstractmethod
    def query(self, account_id: str, window: DateWindow) -> List[ExpectedEvent]:
        """Events for ``account_id`` expected within ``window``."""

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[ExpectedEvent]:
        """A single event, or None if the collaborator does not know it."""

    @abstractmethod
    def mark_matched(self, event_id: str, transaction_id: str, amount: Optional[Decimal] = None):
        """
        Tell the collaborator that ``event_id`` was settled by ``transaction_id``.

        Raises:
            EventAlreadySettledError: the event is already fully matched
            FeedError: the collaborator could not be reached
        """


class InMemoryExpectedEventsFeed(ExpectedEventsFeed):
    """Feed backed by a dict, loaded from code or from a YAML/JSON events file."""

    def __init__(self, events: Optional[List[ExpectedEvent]] = None):
        self._lock = threading.Lock()
        self._events: Dict[str, ExpectedEvent] = {}
        self._settled_amounts: Dict[str, Decimal] = {}
        self.matched_by: Dict[str, List[str]] = {}
        if events:
            self.add_events(events)

    def add_events(self, events: List[ExpectedEvent]):
        with self._lock:
            for event in events:
                self._events[event.id] = event

    def load_events_file(self, path: Path) -> List[ExpectedEvent]:
        """Load events from a YAML or JSON file holding a list (or an ``events`` key)."""
        path = Path(path)
        if not path.exists():
            raise DataError(f"Events file not found: {path}", field="events_file", value=str(path))

        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                document = json.load(f)
            else:
                document = yaml.safe_load(f)

        entries = document.get("events", []) if isinstance(document, dict) else (document or [])
        events = [ExpectedEvent.from_dict(entry) for entry in entries]
        self.add_events(events)
        logger.info(f"Loaded {len(events)} expected events from {path.name}")
        return events

    def query(self, account_id: str, window: DateWindow) -> List[ExpectedEvent]:
        with self._lock:
            events = [
                e for e in self._events.values()
                if (e.account_id is None or e.account_id == account_id)
                and window.contains(e.expected_date)
            ]
        return sorted(events, key=lambda e: (e.expected_date, e.id))

    def get_event(self, event_id: str) -> Optional[ExpectedEvent]:
        with self._lock:
            return self._events.get(event_id)

    def all_events(self) -> List[ExpectedEvent]:
        with self._lock:
            return sorted(self._events.values(), key=lambda e: (e.expected_date, e.id))

    def mark_matched(self, event_id: str, transaction_id: str, amount: Optional[Decimal] = None):
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise FeedError(f"Unknown expected event {event_id}", status_code=404, event_id=event_id)
            if event.fully_matched and not event.allows_partial_settlements:
                raise EventAlreadySettledError(event_id, transaction_id)

            self.matched_by.setdefault(event_id, []).append(transaction_id)
            if event.allows_partial_settlements and amount is not None:
                settled = self._settled_amounts.get(event_id, Decimal("0")) + abs(amount)
                self._settled_amounts[event_id] = settled
                fully_matched = settled >= abs(event.expected_amount)
            else:
                fully_matched = True
            self._events[event_id] = dataclasses.replace(event, fully_matched=fully_matched)


class HttpExpectedEventsFeed(ExpectedEventsFeed):
    """Client for a collaborator exposing expected events over HTTP/JSON."""

    def __init__(self, cfg: Optional[FeedConfig] = None, session: Optional[requests.Session] = None):
        self.config = cfg or config.feed
        if not self.config.is_configured():
            raise ConfigurationError("EVENTS_FEED_URL is not set", setting="EVENTS_FEED_URL")
        self.base_url = self.config.base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if self.config.token:
            self.session.headers.update({"Authorization": f"Bearer {self.config.token}"})

    def _send_request(self, method: str, path: str, event_id: str = None, **kwargs) -> requests.Response:
        """Send request to the collaborator, translating transport failures to FeedError."""
        try:
            return self.session.request(
                method,
                f"{self.base_url}{path}",
                timeout=self.config.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            raise FeedError(f"HTTP request failed: {e}", event_id=event_id)

    @staticmethod
    def _json(response: requests.Response, event_id: str = None) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise FeedError(f"Invalid JSON response: {e}", status_code=response.status_code, event_id=event_id)

    def query(self, account_id: str, window: DateWindow) -> List[ExpectedEvent]:
        response = self._send_request(
            "GET",
            f"/accounts/{account_id}/expected-events",
            params={"from": window.start.isoformat(), "to": window.end.isoformat()},
        )
        if response.status_code != 200:
            raise FeedError(f"query returned {response.status_code}", status_code=response.status_code)

        payload = self._json(response)
        entries = payload.get("events", []) if isinstance(payload, dict) else payload
        events = [ExpectedEvent.from_dict(entry) for entry in entries]
        return sorted(events, key=lambda e: (e.expected_date, e.id))

    def get_event(self, event_id: str) -> Optional[ExpectedEvent]:
        response = self._send_request("GET", f"/expected-events/{event_id}", event_id=event_id)
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise FeedError(f"lookup returned {response.status_code}", status_code=response.status_code,
                            event_id=event_id)
        return ExpectedEvent.from_dict(self._json(response, event_id))

    def mark_matched(self, event_id: str, transaction_id: str, amount: Optional[Decimal] = None):
        body = {"transaction_id": transaction_id}
        if amount is not None:
            body["amount"] = str(amount)

        response = self._send_request(
            "POST", f"/expected-events/{event_id}/match", event_id=event_id, json=body
        )
        if response.status_code == 409:
            raise EventAlreadySettledError(event_id, transaction_id)
        if response.status_code not in (200, 201, 204):
            raise FeedError(f"mark matched returned {response.status_code}",
                            status_code=response.status_code, event_id=event_id)
