# -*- coding: utf-8 -*-
"""Email service provider risk profiles"""

from __future__ import annotations

import copy
import dataclasses
import ipaddress
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional, TypedDict

from expiringdict import ExpiringDict

from spfwarden.history import HistoryStore, IPChangeEvent
from spfwarden.utils import get_base_domain, normalize_domain

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

ESPType = Literal["transactional", "marketing", "enterprise", "infrastructure", "unknown"]
ChangeFrequency = Literal["rare", "monthly", "weekly", "daily"]
RiskLevel = Literal["low", "medium", "high"]

PROFILE_CACHE_MAX_AGE_SECONDS = 6 * 60 * 60

# include domain: (name, type, stable)
KNOWN_ESPS = {
    "_spf.google.com": ("Google Workspace", "enterprise", True),
    "spf.protection.outlook.com": ("Microsoft 365", "enterprise", True),
    "sendgrid.net": ("SendGrid", "transactional", True),
    "mailgun.org": ("Mailgun", "transactional", True),
    "amazonses.com": ("Amazon SES", "infrastructure", True),
    "_spf.salesforce.com": ("Salesforce", "enterprise", True),
    "mandrillapp.com": ("Mandrill", "transactional", True),
    "mail.zendesk.com": ("Zendesk", "transactional", True),
    "spf.mtasv.net": ("Postmark", "transactional", True),
    "servers.mcsv.net": ("Mailchimp", "marketing", True),
    "spf.mailchimp.com": ("Mailchimp", "marketing", True),
    "spf.constantcontact.com": ("Constant Contact", "marketing", True),
    "_spf.hubspot.com": ("HubSpot", "marketing", False),
    "spf.sparkpostmail.com": ("SparkPost", "transactional", True),
}

MAINTENANCE_WINDOWS = {
    "sendgrid": ["Sunday 02:00-04:00 UTC"],
    "mailgun": ["Sunday 01:00-03:00 UTC"],
    "mandrill": ["Saturday 23:00-01:00 UTC"],
}

BUSINESS_CONTEXTS = {
    "transactional": (
        ["Order confirmations", "Password resets", "System notifications"],
        "medium",
        "high",
    ),
    "marketing": (
        ["Newsletters", "Promotional campaigns", "Customer engagement"],
        "high",
        "medium",
    ),
    "enterprise": (
        ["Business communications", "Internal systems", "Customer support"],
        "medium",
        "critical",
    ),
    "infrastructure": (
        ["System alerts", "Monitoring", "Infrastructure notifications"],
        "low",
        "high",
    ),
}


@dataclass
class MonitoringRecommendation:
    check_interval: Literal["hourly", "daily", "weekly"] = "daily"
    alert_threshold: int = 5
    auto_update_safe: bool = False
    confidence_threshold: int = 80


@dataclass
class BusinessContext:
    primary_use: list[str] = field(default_factory=lambda: ["Unknown"])
    expected_volume: Literal["low", "medium", "high", "very_high"] = "medium"
    criticality: Literal["low", "medium", "high", "critical"] = "medium"


@dataclass
class ChangePattern:
    pattern_type: Literal["expansion", "migration", "maintenance", "rotation", "unknown"]
    frequency: float
    predictability: Literal["high", "medium", "low"]
    seasonality: bool
    risk_level: RiskLevel


@dataclass
class ESPProfile:
    """What is known about an included email service provider"""

    name: str
    include_domain: str
    type: ESPType = "unknown"
    stability_rating: float = 5.0
    change_frequency: ChangeFrequency = "monthly"
    monitoring_recommendation: MonitoringRecommendation = field(
        default_factory=MonitoringRecommendation
    )
    known_ip_ranges: list[str] = field(default_factory=list)
    business_context: BusinessContext = field(default_factory=BusinessContext)
    maintenance_windows: list[str] = field(default_factory=list)
    last_known_change: Optional[datetime] = None
    change_pattern: Optional[str] = None

    def to_dict(self) -> dict:
        profile = dataclasses.asdict(self)
        if self.last_known_change is not None:
            profile["last_known_change"] = self.last_known_change.isoformat()
        return profile


class ChangeImpactPrediction(TypedDict):
    risk_level: RiskLevel
    reasoning: list[str]
    recommended_response: str
    confidence_level: int


class ESPRiskAssessment(TypedDict):
    include_domain: str
    risk_level: RiskLevel
    risk_factors: list[str]
    mitigations: list[str]
    monitoring_recommendations: list[str]


@dataclass(frozen=True)
class ESPLearningPolicy:
    """
    How update outcomes move an ESP's stability rating

    Args:
        success_adjustment (float): Added after a successful update
        large_success_adjustment (float): Added after a successful update
                                          with many changes
        failure_adjustment (float): Added after a failed update
        large_failure_adjustment (float): Added after a failed update with
                                          many changes
        large_change_count (int): More changes than this count as many
        min_rating (float): The lowest stability rating
        max_rating (float): The highest stability rating
        auto_update_safe_rating (float): The rating at which automatic updates
                                         are considered safe
    """

    success_adjustment: float = 0.2
    large_success_adjustment: float = 0.1
    failure_adjustment: float = -0.3
    large_failure_adjustment: float = -0.5
    large_change_count: int = 10
    min_rating: float = 1.0
    max_rating: float = 10.0
    auto_update_safe_rating: float = 7.0

    def adjustment(self, success: bool, change_count: int) -> float:
        many = change_count > self.large_change_count
        if success:
            return self.large_success_adjustment if many else self.success_adjustment
        return self.large_failure_adjustment if many else self.failure_adjustment

    def bound(self, rating: float) -> float:
        return max(self.min_rating, min(self.max_rating, rating))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify_esp(include_domain: str) -> tuple[str, ESPType, bool]:
    """
    Looks up the provider behind an include domain

    Unknown providers are named after the base domain of the include.

    Returns:
        tuple: ``(name, type, stable)``
    """
    include_domain = normalize_domain(include_domain)
    for domain, classification in KNOWN_ESPS.items():
        if include_domain == domain or include_domain.endswith(f".{domain}"):
            return classification
    return f"Unknown ESP ({get_base_domain(include_domain)})", "unknown", False


def analyze_change_pattern(
    events: Sequence[IPChangeEvent], now: Optional[datetime] = None
) -> ChangePattern:
    if len(events) == 0:
        return ChangePattern("unknown", 0.0, "low", False, "medium")
    now = now or _utc_now()
    oldest = min(event.timestamp for event in events)
    months = max(1.0, (now - oldest) / timedelta(days=30))
    frequency = len(events) / months

    added = len([e for e in events if e.change_type == "added"])
    removed = len([e for e in events if e.change_type == "removed"])
    pattern_type = "unknown"
    if added > removed * 2:
        pattern_type = "expansion"
    elif removed > added:
        pattern_type = "rotation"
    elif any(e.impact in ("high", "critical") for e in events):
        pattern_type = "migration"

    if frequency > 2:
        predictability = "low"
    elif frequency > 0.5:
        predictability = "medium"
    else:
        predictability = "high"

    months_seen: dict[int, int] = {}
    for event in events:
        months_seen[event.timestamp.month] = months_seen.get(event.timestamp.month, 0) + 1
    seasonality = any(count > len(events) * 0.4 for count in months_seen.values())

    if frequency > 4:
        risk_level = "high"
    elif frequency > 1:
        risk_level = "medium"
    else:
        risk_level = "low"
    return ChangePattern(pattern_type, frequency, predictability, seasonality, risk_level)


def group_ips_into_ranges(ips: Sequence[str]) -> list[str]:
    """Groups addresses into their IPv4 /24 or IPv6 /64 networks"""
    ranges = []
    for ip in ips:
        try:
            network = ipaddress.ip_network(ip, strict=False)
        except ValueError:
            logging.debug(f"Ignoring invalid IP address {ip}")
            continue
        prefix = 24 if network.version == 4 else 64
        if network.prefixlen >= prefix:
            network = network.supernet(new_prefix=prefix)
        if str(network) not in ranges:
            ranges.append(str(network))
    return ranges


def ip_in_ranges(ip: str, ranges: Sequence[str]) -> bool:
    try:
        network = ipaddress.ip_network(ip, strict=False)
    except ValueError:
        return False
    for value in ranges:
        try:
            known = ipaddress.ip_network(value, strict=False)
        except ValueError:
            continue
        if known.version == network.version and network.subnet_of(known):
            return True
    return False


def is_maintenance_window(now: datetime) -> bool:
    """Most providers do maintenance early on weekend mornings, UTC"""
    now = now.astimezone(timezone.utc)
    return now.weekday() >= 5 and 0 <= now.hour <= 6


def minimal_esp_profile(include_domain: str) -> ESPProfile:
    return ESPProfile(
        name="Unknown ESP",
        include_domain=normalize_domain(include_domain),
        monitoring_recommendation=MonitoringRecommendation(confidence_threshold=90),
    )


class ESPIntelligence(object):
    """
    Builds ESP risk profiles and predicts the impact of IP changes

    Profiles combine the known provider classification with the change
    history of the include domain. Outcomes passed to
    ``learn_from_update_result`` adjust later profiles.

    Args:
        history (HistoryStore): Change history used to infer patterns
        learning_policy (ESPLearningPolicy): Stability rating adjustments
        clock (callable): Returns the current time
    """

    def __init__(
        self,
        history: Optional[HistoryStore] = None,
        learning_policy: Optional[ESPLearningPolicy] = None,
        clock: Callable[[], datetime] = _utc_now,
        cache_max_age_seconds: float = PROFILE_CACHE_MAX_AGE_SECONDS,
    ):
        self.history = history
        self.learning_policy = learning_policy or ESPLearningPolicy()
        self.clock = clock
        self.cache = ExpiringDict(max_len=10000, max_age_seconds=cache_max_age_seconds)
        self._learned: dict[str, dict] = {}
        self._lock = threading.RLock()

    def _change_history(self, include_domain: str) -> list[IPChangeEvent]:
        if self.history is None:
            return []
        return self.history.include_changes(include_domain)

    def get_esp_profile(self, include_domain: str) -> ESPProfile:
        """
        Returns the risk profile of an include domain

        Args:
            include_domain (str): The included domain

        Returns:
            ESPProfile: A copy of the profile; a conservative minimal profile
            when the change history cannot be read
        """
        include_domain = normalize_domain(include_domain)
        with self._lock:
            cached = self.cache.get(include_domain)
            if cached is not None:
                return copy.deepcopy(cached)
        logging.debug(f"Building ESP profile for {include_domain}")
        try:
            events = self._change_history(include_domain)
        except Exception as error:
            logging.warning(
                f"Change history unavailable for {include_domain}: {error}"
            )
            return minimal_esp_profile(include_domain)

        name, esp_type, stable = classify_esp(include_domain)
        pattern = analyze_change_pattern(events, self.clock())
        known_ips = []
        for event in events[:20]:
            known_ips += list(event.current_ips) + list(event.previous_ips)

        rating = 7.0 if stable else 4.0
        if pattern.frequency > 4:
            rating -= 3
        elif pattern.frequency > 1:
            rating -= 1
        if pattern.predictability == "high":
            rating += 1
        elif pattern.predictability == "low":
            rating -= 2

        if pattern.frequency > 4:
            frequency = "daily"
        elif pattern.frequency > 1:
            frequency = "weekly"
        elif pattern.frequency > 0.25:
            frequency = "monthly"
        else:
            frequency = "rare"

        recommendation = MonitoringRecommendation()
        if stable and pattern.predictability == "high":
            recommendation.check_interval = "weekly"
            recommendation.auto_update_safe = pattern.risk_level == "low"
            recommendation.confidence_threshold = 70
        if pattern.frequency > 2:
            recommendation.check_interval = "daily"
            recommendation.alert_threshold = 3
            recommendation.confidence_threshold = 90

        context = BusinessContext()
        if esp_type in BUSINESS_CONTEXTS:
            primary_use, volume, criticality = BUSINESS_CONTEXTS[esp_type]
            context = BusinessContext(list(primary_use), volume, criticality)

        windows = []
        for key, value in MAINTENANCE_WINDOWS.items():
            if key in include_domain:
                windows = list(value)
                break

        profile = ESPProfile(
            name=name,
            include_domain=include_domain,
            type=esp_type,
            stability_rating=self.learning_policy.bound(rating),
            change_frequency=frequency,
            monitoring_recommendation=recommendation,
            known_ip_ranges=group_ips_into_ranges(known_ips),
            business_context=context,
            maintenance_windows=windows,
            last_known_change=max((e.timestamp for e in events), default=None),
            change_pattern=pattern.pattern_type,
        )
        with self._lock:
            learned = self._learned.get(include_domain, {})
            if "stability_rating" in learned:
                profile.stability_rating = learned["stability_rating"]
            if "change_frequency" in learned:
                profile.change_frequency = learned["change_frequency"]
            if "auto_update_safe" in learned:
                profile.monitoring_recommendation.auto_update_safe = learned[
                    "auto_update_safe"
                ]
            self.cache[include_domain] = profile
            return copy.deepcopy(profile)

    @staticmethod
    def expected_change_volume(profile: ESPProfile) -> int:
        volume = {"daily": 10, "weekly": 5, "monthly": 2}.get(profile.change_frequency, 1)
        if profile.business_context.expected_volume == "high":
            volume *= 2
        return volume

    def predict_change_impact(
        self, profile: ESPProfile, changed_ips: Sequence[str]
    ) -> ChangeImpactPrediction:
        """
        Predicts how risky a set of changed addresses is for a provider

        Args:
            profile (ESPProfile): The provider's profile
            changed_ips (list): The provider's current addresses

        Returns:
            dict: ``risk_level``, ``reasoning``, ``recommended_response`` and
            ``confidence_level`` (0-100)
        """
        logging.debug(
            f"Predicting impact of {len(changed_ips)} changes for {profile.name}"
        )
        reasoning = []
        risk_level = "low"
        confidence = profile.stability_rating * 10

        volume = len(changed_ips)
        expected = self.expected_change_volume(profile)
        if volume > expected * 3:
            risk_level = "high"
            reasoning.append(
                f"Unusually high change volume: {volume} vs expected {expected}"
            )
            confidence -= 20
        elif volume > expected * 1.5:
            risk_level = "medium"
            reasoning.append(
                f"Above normal change volume: {volume} vs expected {expected}"
            )
            confidence -= 10

        if profile.stability_rating <= 3:
            risk_level = "high"
            reasoning.append(
                f"Low stability ESP ({profile.stability_rating:g}/10) - changes "
                "are inherently risky"
            )
        elif profile.stability_rating <= 6:
            if risk_level != "high":
                risk_level = "medium"
            reasoning.append(
                f"Medium stability ESP ({profile.stability_rating:g}/10) - "
                "monitor closely"
            )

        if (
            profile.type == "transactional"
            and profile.business_context.criticality == "critical"
        ):
            if risk_level == "low":
                risk_level = "medium"
            reasoning.append(
                "Critical transactional ESP - changes may impact important emails"
            )

        if profile.change_frequency == "rare" and not is_maintenance_window(
            self.clock()
        ):
            risk_level = "medium" if risk_level == "low" else "high"
            reasoning.append("Unexpected timing - changes outside normal patterns")
            confidence -= 15

        new_ips = [ip for ip in changed_ips if not ip_in_ranges(ip, profile.known_ip_ranges)]
        if len(new_ips) > 0:
            reasoning.append("IP range expansion detected - generally safe")
            confidence += 5
        elif volume > 0:
            risk_level = "medium" if risk_level == "low" else "high"
            reasoning.append("IP range contraction - potential service disruption")
            confidence -= 10

        if risk_level == "high":
            response = (
                f"Immediate manual review required for {profile.name}. Monitor "
                "for authentication failures and consider rollback plan."
            )
        elif risk_level == "medium":
            response = (
                f"Review changes for {profile.name} within 24 hours. Consider "
                "gradual deployment with monitoring."
            )
        else:
            response = (
                f"Changes for {profile.name} appear safe. Monitor for 48 hours "
                "after deployment."
            )
        return {
            "risk_level": risk_level,
            "reasoning": reasoning,
            "recommended_response": response,
            "confidence_level": int(round(max(0, min(100, confidence)))),
        }

    def assess_esp_risks(
        self, include_domains: Sequence[str]
    ) -> dict[str, ESPRiskAssessment]:
        assessments = {}
        for include_domain in include_domains:
            profile = self.get_esp_profile(include_domain)
            risk_factors = []
            mitigations = []
            monitoring = []
            if profile.stability_rating <= 5:
                risk_factors.append("Low stability rating")
                mitigations.append("Require manual approval for all changes")
            if profile.change_frequency == "daily":
                risk_factors.append("Frequent changes expected")
                monitoring.append("Daily monitoring recommended")
            if profile.business_context.criticality == "critical":
                risk_factors.append("Critical business function")
                mitigations.append("Implement rollback procedures")
            risk_level = "low"
            if len(risk_factors) > 2 or profile.stability_rating <= 3:
                risk_level = "high"
            elif len(risk_factors) > 0 or profile.stability_rating <= 6:
                risk_level = "medium"
            assessments[profile.include_domain] = {
                "include_domain": profile.include_domain,
                "risk_level": risk_level,
                "risk_factors": risk_factors,
                "mitigations": mitigations,
                "monitoring_recommendations": monitoring,
            }
        return assessments

    def update_esp_classification(
        self,
        include_domain: str,
        stability_rating: Optional[float] = None,
        change_frequency: Optional[ChangeFrequency] = None,
        auto_update_safe: Optional[bool] = None,
    ) -> None:
        include_domain = normalize_domain(include_domain)
        with self._lock:
            learned = self._learned.setdefault(include_domain, {})
            if stability_rating is not None:
                learned["stability_rating"] = self.learning_policy.bound(
                    stability_rating
                )
            if change_frequency is not None:
                learned["change_frequency"] = change_frequency
            if auto_update_safe is not None:
                learned["auto_update_safe"] = auto_update_safe
            self.cache.pop(include_domain, None)

    def learn_from_update_result(
        self,
        include_domain: str,
        success: bool,
        changes: Sequence[IPChangeEvent],
    ) -> ESPProfile:
        """
        Adjusts a provider's profile after an update succeeded or failed

        Args:
            include_domain (str): The included domain
            success (bool): Whether the update succeeded
            changes (list): The change events the update applied

        Returns:
            ESPProfile: The adjusted profile
        """
        outcome = "successful" if success else "failed"
        logging.debug(f"Learning from {outcome} update for {include_domain}")
        policy = self.learning_policy
        with self._lock:
            profile = self.get_esp_profile(include_domain)
            rating = policy.bound(
                profile.stability_rating + policy.adjustment(success, len(changes))
            )
            auto_update_safe = (
                success
                and rating >= policy.auto_update_safe_rating
                and all(c.impact != "critical" for c in changes)
            )
            frequency = profile.change_frequency
            if success and len(changes) > policy.large_change_count:
                frequency = {"rare": "monthly", "monthly": "weekly"}.get(
                    frequency, frequency
                )
            self.update_esp_classification(
                include_domain,
                stability_rating=round(rating, 2),
                change_frequency=frequency,
                auto_update_safe=auto_update_safe,
            )
            return self.get_esp_profile(include_domain)
