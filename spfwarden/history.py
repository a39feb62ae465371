# -*- coding: utf-8 -*-
"""Historical SPF update and IP change storage"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from spfwarden.utils import normalize_domain

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

ChangeType = Literal["added", "removed", "modified"]
ImpactLevel = Literal["low", "medium", "high", "critical"]

CHANGE_TYPES = ("added", "removed", "modified")
IMPACT_LEVELS = ("low", "medium", "high", "critical")


class RateLimitExceeded(Exception):
    """Raised when an update would exceed a domain's daily or weekly limit"""

    def __init__(self, domain: str, daily_count: int, weekly_count: int, msg: str):
        self.domain = domain
        self.daily_count = daily_count
        self.weekly_count = weekly_count
        super().__init__(msg)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IPChangeEvent:
    """A detected change in the addresses an included domain authorizes"""

    domain: str
    include_domain: str
    change_type: ChangeType
    previous_ips: tuple[str, ...] = ()
    current_ips: tuple[str, ...] = ()
    impact: ImpactLevel = "low"
    esp_name: Optional[str] = None
    risk_factors: tuple[str, ...] = ()
    recommended_action: str = ""
    auto_update_safe: bool = False
    timestamp: datetime = field(default_factory=_utc_now)

    def __post_init__(self):
        if self.change_type not in CHANGE_TYPES:
            raise ValueError(f"Invalid change type: {self.change_type}")
        if self.impact not in IMPACT_LEVELS:
            raise ValueError(f"Invalid impact level: {self.impact}")

    @classmethod
    def from_dict(cls, data: dict) -> IPChangeEvent:
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        if timestamp is None:
            timestamp = _utc_now()
        elif timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            domain=normalize_domain(data["domain"]),
            include_domain=normalize_domain(data["include_domain"]),
            change_type=data["change_type"],
            previous_ips=tuple(data.get("previous_ips", ())),
            current_ips=tuple(data.get("current_ips", ())),
            impact=data.get("impact", "low"),
            esp_name=data.get("esp_name"),
            risk_factors=tuple(data.get("risk_factors", ())),
            recommended_action=data.get("recommended_action", ""),
            auto_update_safe=data.get("auto_update_safe", False),
            timestamp=timestamp,
        )

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "include_domain": self.include_domain,
            "change_type": self.change_type,
            "previous_ips": list(self.previous_ips),
            "current_ips": list(self.current_ips),
            "impact": self.impact,
            "esp_name": self.esp_name,
            "risk_factors": list(self.risk_factors),
            "recommended_action": self.recommended_action,
            "auto_update_safe": self.auto_update_safe,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class UpdateRecord:
    domain: str
    record: str
    timestamp: datetime


class HistoryStore(object):
    """
    The historical store collaborator

    Subclasses provide update counts for rate limiting and recent change
    events for anomaly detection. ``record_update`` must check the limits and
    register the update as a single atomic step.
    """

    def count_updates(self, domain: str, since: datetime) -> int:
        raise NotImplementedError

    def recent_changes(self, domain: str, limit: int = 50) -> list[IPChangeEvent]:
        raise NotImplementedError

    def include_changes(
        self, include_domain: str, limit: int = 50
    ) -> list[IPChangeEvent]:
        raise NotImplementedError

    def add_change_events(self, events: Iterable[IPChangeEvent]) -> None:
        raise NotImplementedError

    def record_update(
        self,
        domain: str,
        record: str,
        max_per_day: int,
        max_per_week: int,
        now: Optional[datetime] = None,
    ) -> int:
        raise NotImplementedError


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def week_start(now: datetime) -> datetime:
    return now - timedelta(days=7)


class InMemoryHistoryStore(HistoryStore):
    """
    A thread-safe, process-local ``HistoryStore``

    Args:
        updates (list): Previously deployed ``UpdateRecord`` objects
        events (list): Previously detected ``IPChangeEvent`` objects
    """

    def __init__(
        self,
        updates: Optional[Sequence[UpdateRecord]] = None,
        events: Optional[Sequence[IPChangeEvent]] = None,
    ):
        self._lock = threading.Lock()
        self._updates: list[UpdateRecord] = list(updates or [])
        self._events: list[IPChangeEvent] = list(events or [])

    def _count(self, domain: str, since: datetime) -> int:
        domain = normalize_domain(domain)
        return len(
            [u for u in self._updates if u.domain == domain and u.timestamp >= since]
        )

    def count_updates(self, domain: str, since: datetime) -> int:
        with self._lock:
            return self._count(domain, since)

    def recent_changes(self, domain: str, limit: int = 50) -> list[IPChangeEvent]:
        domain = normalize_domain(domain)
        with self._lock:
            events = [e for e in self._events if e.domain == domain]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def include_changes(
        self, include_domain: str, limit: int = 50
    ) -> list[IPChangeEvent]:
        include_domain = normalize_domain(include_domain)
        with self._lock:
            events = [e for e in self._events if e.include_domain == include_domain]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def add_change_events(self, events: Iterable[IPChangeEvent]) -> None:
        with self._lock:
            self._events += list(events)

    def record_update(
        self,
        domain: str,
        record: str,
        max_per_day: int,
        max_per_week: int,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Registers a deployed update if the domain is still within its limits

        Args:
            domain (str): The domain that was updated
            record (str): The deployed record
            max_per_day (int): The maximum number of updates per day
            max_per_week (int): The maximum number of updates per 7 days
            now (datetime): The time of the update

        Returns:
            int: The number of updates for the domain today, this one included

        Raises:
            :exc:`spfwarden.history.RateLimitExceeded`
        """
        domain = normalize_domain(domain)
        now = now or _utc_now()
        with self._lock:
            daily = self._count(domain, day_start(now))
            weekly = self._count(domain, week_start(now))
            if daily >= max_per_day or weekly >= max_per_week:
                raise RateLimitExceeded(
                    domain,
                    daily,
                    weekly,
                    f"Update limit reached for {domain}: {daily}/{max_per_day} "
                    f"today, {weekly}/{max_per_week} this week",
                )
            self._updates.append(UpdateRecord(domain, record, now))
            logging.debug(f"Recorded SPF update {daily + 1} of the day for {domain}")
            return daily + 1
