# -*- coding: utf-8 -*-
"""Safeguards for automatic SPF record updates"""

from __future__ import annotations

import dataclasses
import ipaddress
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Literal, Optional, TypedDict, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from spfwarden._constants import MAX_DNS_LOOKUPS, MAX_RECORD_LENGTH
from spfwarden.esp import ESPIntelligence
from spfwarden.flattening import SPFResolver
from spfwarden.history import HistoryStore, IPChangeEvent, day_start, week_start
from spfwarden.spf import parse_spf_record_from_string
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

ImpactLevel = Literal["low", "medium", "high", "critical"]
DecisionState = Literal["approved", "held", "denied", "denied-requires-approval"]
DeploymentState = Literal["stable", "rollback-triggered", "rolled-back", "monitoring-failed"]

IMPACT_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}
CRITICAL_ESP_NAMES = ("Google Workspace", "Microsoft 365")
CRITICAL_INCLUDE_DOMAINS = ("_spf.google.com", "spf.protection.outlook.com")
TIME_FORMAT = "%H:%M"


class SafeguardPolicyError(ValueError):
    """Raised when a safeguard policy or business-hours window is invalid"""


def _parse_clock(value: str) -> int:
    try:
        parsed = datetime.strptime(value, TIME_FORMAT)
    except ValueError:
        raise SafeguardPolicyError(f"Invalid time of day: {value} (expected HH:MM)")
    return parsed.hour * 60 + parsed.minute


def _parse_blackout(period: str) -> tuple[datetime, datetime]:
    """Returns the ``[start, end)`` interval of a blackout period"""
    try:
        if "/" in period:
            start, end = period.split("/", 1)
            start = datetime.fromisoformat(start.strip())
            end = datetime.fromisoformat(end.strip())
        else:
            start = datetime.combine(date.fromisoformat(period.strip()), datetime.min.time())
            end = start + timedelta(days=1)
    except ValueError:
        raise SafeguardPolicyError(f"Invalid blackout period: {period}")
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    if end <= start:
        raise SafeguardPolicyError(f"Blackout period ends before it starts: {period}")
    return start, end


@dataclass(frozen=True)
class BusinessHours:
    """
    A recurring window in which changes may be deployed

    Args:
        start (str): Opening time, ``HH:MM``
        end (str): Closing time, ``HH:MM``
        timezone (str): An IANA time zone name
        business_days (tuple): Weekdays, Monday = 0
    """

    start: str = "09:00"
    end: str = "17:00"
    timezone: str = "UTC"
    business_days: tuple[int, ...] = (0, 1, 2, 3, 4)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.start_minutes > self.end_minutes:
            raise SafeguardPolicyError(
                f"Business hours start ({self.start}) after they end ({self.end})"
            )
        for day in self.business_days:
            if day not in range(7):
                raise SafeguardPolicyError(f"Invalid business day: {day}")
        if self.tz is None:
            raise SafeguardPolicyError(f"Unknown time zone: {self.timezone}")

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise SafeguardPolicyError(f"Unknown time zone: {self.timezone}")

    @property
    def start_minutes(self) -> int:
        return _parse_clock(self.start)

    @property
    def end_minutes(self) -> int:
        return _parse_clock(self.end)

    def localize(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def contains(self, moment: datetime) -> bool:
        local = self.localize(moment)
        minutes = local.hour * 60 + local.minute
        return (
            local.weekday() in self.business_days
            and self.start_minutes <= minutes <= self.end_minutes
        )

    def minutes_until_open(self, moment: datetime) -> int:
        """The delay until the next opening, or 0 when already open"""
        if self.contains(moment):
            return 0
        local = self.localize(moment)
        minutes = local.hour * 60 + local.minute
        weekday = local.weekday()
        if weekday in self.business_days and minutes < self.start_minutes:
            return self.start_minutes - minutes
        days = 1
        for offset in range(1, 8):
            if (weekday + offset) % 7 in self.business_days:
                days = offset
                break
        return max(0, days * 24 * 60 + self.start_minutes - minutes)


@dataclass(frozen=True)
class SafeguardPolicy:
    """
    Thresholds that gate automatic SPF updates

    Args:
        max_changes_per_day (int): Updates allowed per domain per day
        max_changes_per_week (int): Updates allowed per domain per 7 days
        require_human_approval (bool): Always require a human to approve
        rollback_on_failure (bool): Roll back automatically when monitoring
                                    detects a failure
        test_before_apply (bool): Require pre-deployment testing
        notify_before_change (bool): Notify before deploying
        confidence_threshold (int): The lowest acceptable ESP prediction
                                    confidence, 0-100
        impact_threshold (str): The highest impact allowed without approval
        business_hours_only (bool): Only deploy inside business hours
        blackout_periods (tuple): ISO dates or ``start/end`` ISO datetimes
        holidays (tuple): ISO dates treated like weekends
        auth_failure_rate_threshold (float): Rollback trigger, percent
        delivery_failure_rate_threshold (float): Rollback trigger, percent
        bounce_rate_increase_threshold (float): Rollback trigger, percentage
                                                points
    """

    max_changes_per_day: int = 3
    max_changes_per_week: int = 10
    require_human_approval: bool = False
    rollback_on_failure: bool = True
    test_before_apply: bool = False
    notify_before_change: bool = True
    confidence_threshold: int = 80
    impact_threshold: ImpactLevel = "medium"
    business_hours_only: bool = True
    blackout_periods: tuple[str, ...] = ()
    holidays: tuple[str, ...] = ()
    auth_failure_rate_threshold: float = 5.0
    delivery_failure_rate_threshold: float = 2.0
    bounce_rate_increase_threshold: float = 10.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            :exc:`spfwarden.safeguards.SafeguardPolicyError`
        """
        if self.max_changes_per_day < 0 or self.max_changes_per_week < 0:
            raise SafeguardPolicyError("Change limits cannot be negative")
        if self.max_changes_per_day > self.max_changes_per_week:
            raise SafeguardPolicyError(
                "max_changes_per_day cannot exceed max_changes_per_week"
            )
        if not 0 <= self.confidence_threshold <= 100:
            raise SafeguardPolicyError("confidence_threshold must be between 0 and 100")
        if self.impact_threshold not in IMPACT_ORDER:
            raise SafeguardPolicyError(
                f"Invalid impact_threshold: {self.impact_threshold}"
            )
        for period in self.blackout_periods:
            _parse_blackout(period)
        for holiday in self.holidays:
            try:
                date.fromisoformat(holiday)
            except ValueError:
                raise SafeguardPolicyError(f"Invalid holiday date: {holiday}")

    @classmethod
    def from_dict(cls, data: dict, base: Optional[SafeguardPolicy] = None) -> SafeguardPolicy:
        fields = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data.keys()) - fields)
        if unknown:
            raise SafeguardPolicyError(f"Unknown policy keys: {', '.join(unknown)}")
        values = dict(data)
        for key in ("blackout_periods", "holidays"):
            if key in values:
                values[key] = tuple(values[key])
        try:
            return dataclasses.replace(base or cls(), **values)
        except TypeError as error:
            raise SafeguardPolicyError(str(error))

    def to_dict(self) -> dict:
        policy = dataclasses.asdict(self)
        policy["blackout_periods"] = list(self.blackout_periods)
        policy["holidays"] = list(self.holidays)
        return policy


CONSERVATIVE = SafeguardPolicy(
    max_changes_per_day=1,
    max_changes_per_week=3,
    require_human_approval=True,
    test_before_apply=True,
    confidence_threshold=95,
    impact_threshold="low",
    business_hours_only=True,
)
BALANCED = SafeguardPolicy(
    max_changes_per_day=3,
    max_changes_per_week=10,
    confidence_threshold=80,
    impact_threshold="medium",
    business_hours_only=True,
)
AGGRESSIVE = SafeguardPolicy(
    max_changes_per_day=10,
    max_changes_per_week=25,
    notify_before_change=False,
    confidence_threshold=70,
    impact_threshold="high",
    business_hours_only=False,
)
SAFEGUARD_PRESETS = {
    "conservative": CONSERVATIVE,
    "balanced": BALANCED,
    "aggressive": AGGRESSIVE,
}


def load_policy(source: str) -> SafeguardPolicy:
    """
    Loads a safeguard policy from a preset name or a JSON file

    A JSON policy may name a ``preset`` to start from; its other keys
    override that preset's values.

    Args:
        source (str): A preset name or the path to a JSON file

    Returns:
        SafeguardPolicy: The policy

    Raises:
        :exc:`spfwarden.safeguards.SafeguardPolicyError`
    """
    if source.lower() in SAFEGUARD_PRESETS:
        return SAFEGUARD_PRESETS[source.lower()]
    try:
        with open(source) as policy_file:
            data = json.load(policy_file)
    except OSError as error:
        raise SafeguardPolicyError(f"Unable to read policy {source}: {error}")
    except json.JSONDecodeError as error:
        raise SafeguardPolicyError(f"Invalid JSON in policy {source}: {error}")
    if not isinstance(data, dict):
        raise SafeguardPolicyError("A policy must be a JSON object")
    base = None
    if "preset" in data:
        preset = str(data.pop("preset")).lower()
        if preset not in SAFEGUARD_PRESETS:
            raise SafeguardPolicyError(f"Unknown policy preset: {preset}")
        base = SAFEGUARD_PRESETS[preset]
    return SafeguardPolicy.from_dict(data, base)


@dataclass(frozen=True)
class EmergencyContact:
    email: str
    phone: Optional[str] = None
    webhook: Optional[str] = None


@dataclass(frozen=True)
class AutomationContext:
    """The circumstances of a proposed automatic update"""

    domain: str
    current_time: datetime
    business_hours: BusinessHours = BusinessHours()
    emergency_contact: Optional[EmergencyContact] = None

    @property
    def local_time(self) -> datetime:
        return self.business_hours.localize(self.current_time)


@dataclass(frozen=True)
class DeploymentMetrics:
    """One sample of post-deployment mail health, rates in percent"""

    authentication_failure_rate: float = 0.0
    delivery_failure_rate: float = 0.0
    bounce_rate_delta: float = 0.0
    dmarc_failure_reports: int = 0

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


class SafeguardResult(TypedDict):
    approved: bool
    state: DecisionState
    reasoning: list[str]
    requires_approval: bool
    recommended_delay: int
    additional_checks: list[str]
    risk_mitigations: list[str]


class CheckResult(TypedDict):
    approved: bool
    reasons: list[str]


class TimingCheckResult(TypedDict):
    approved: bool
    can_delay: bool
    delay_minutes: int
    reasons: list[str]


class ImpactCheckResult(TypedDict):
    exceeds_threshold: bool
    severity: ImpactLevel
    reasons: list[str]


class ESPCheckResult(TypedDict):
    all_safe: bool
    has_high_risk: bool
    warnings: list[str]
    mitigations: list[str]


class ChangeValidation(TypedDict):
    is_valid: bool
    validation_errors: list[str]
    potential_issues: list[str]
    recommendations: list[str]
    testing_required: bool
    monitoring_required: bool


class PatternCheckResult(TypedDict):
    has_anomaly: bool
    severity: Literal["low", "medium", "high"]
    warnings: list[str]


class DependencyCheckResult(TypedDict):
    has_risks: bool
    warnings: list[str]
    mitigations: list[str]


class RollbackPlan(TypedDict):
    rollback_record: str
    rollback_instructions: list[str]
    verification_steps: list[str]
    rollback_triggers: list[str]
    emergency_contacts: list[str]
    estimated_time_to_rollback: int


class SafetyTestResult(TypedDict):
    test: str
    passed: bool
    details: str


class SafetyTestReport(TypedDict):
    passed: bool
    results: list[SafetyTestResult]
    recommendations: list[str]


class DeploymentMonitoringResult(TypedDict):
    deployment_id: str
    state: DeploymentState
    success: bool
    rollback_triggered: bool
    reason: Optional[str]
    actions: list[str]
    samples: list[dict]


def _unique(items: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(items))


def severity_exceeds(current: str, threshold: str) -> bool:
    return IMPACT_ORDER[current] > IMPACT_ORDER[threshold]


def evaluate_rollback_conditions(
    metrics: DeploymentMetrics, policy: SafeguardPolicy
) -> Optional[str]:
    """
    Compares a metrics sample against the policy's rollback triggers

    Returns:
        str: The reason to roll back, or ``None``
    """
    if metrics.authentication_failure_rate > policy.auth_failure_rate_threshold:
        return (
            f"Authentication failure rate {metrics.authentication_failure_rate:g}% "
            f"exceeds {policy.auth_failure_rate_threshold:g}%"
        )
    if metrics.delivery_failure_rate > policy.delivery_failure_rate_threshold:
        return (
            f"Email delivery failure rate {metrics.delivery_failure_rate:g}% "
            f"exceeds {policy.delivery_failure_rate_threshold:g}%"
        )
    if metrics.bounce_rate_delta > policy.bounce_rate_increase_threshold:
        return (
            f"Bounce rate increased by {metrics.bounce_rate_delta:g} percentage "
            f"points, more than {policy.bounce_rate_increase_threshold:g}"
        )
    if metrics.dmarc_failure_reports > 0:
        return f"DMARC failure notifications received ({metrics.dmarc_failure_reports})"
    return None


def _is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError:
        return False
    return True


class SPFAutomationSafeguards(object):
    """
    Decides whether a proposed SPF change may be deployed automatically

    Every check reads from the injected collaborators; nothing here deploys a
    record. Any unexpected error while validating results in a denial that
    requires manual approval.

    Args:
        history (HistoryStore): Update counts and change history
        esp_intelligence (ESPIntelligence): ESP risk profiles
        resolver (SPFResolver): Used to check that changed includes still
                                publish SPF records
        sleep (callable): Called between deployment monitoring samples
    """

    def __init__(
        self,
        history: HistoryStore,
        esp_intelligence: Optional[ESPIntelligence] = None,
        resolver: Optional[SPFResolver] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.history = history
        self.esp_intelligence = esp_intelligence or ESPIntelligence(history)
        self.resolver = resolver
        self.sleep = sleep

    def validate_automatic_update(
        self,
        domain: str,
        proposed_record: str,
        changes: Sequence[IPChangeEvent],
        policy: SafeguardPolicy,
        context: AutomationContext,
    ) -> SafeguardResult:
        """
        Runs every safeguard check against a proposed record change

        The checks run in this order: rate limits, timing, impact, ESP risk,
        record safety, historical patterns and external dependencies.

        Args:
            domain (str): The domain whose record would change
            proposed_record (str): The new SPF record
            changes (list): The ``IPChangeEvent`` objects behind the change
            policy (SafeguardPolicy): The policy to enforce
            context (AutomationContext): When and where the change happens

        Returns:
            dict: A ``SafeguardResult``
        """
        domain = normalize_domain(domain)
        logging.debug(f"Validating automatic SPF update for {domain}")
        try:
            return self._validate(domain, proposed_record, changes, policy, context)
        except Exception as error:
            logging.error(f"Safeguard validation failed for {domain}: {error}")
            return {
                "approved": False,
                "state": "denied-requires-approval",
                "reasoning": [f"Safeguard validation failed: {error}"],
                "requires_approval": True,
                "recommended_delay": 0,
                "additional_checks": ["Manual validation required due to system error"],
                "risk_mitigations": ["Conservative manual approach recommended"],
            }

    def _validate(
        self,
        domain: str,
        proposed_record: str,
        changes: Sequence[IPChangeEvent],
        policy: SafeguardPolicy,
        context: AutomationContext,
    ) -> SafeguardResult:
        reasoning = []
        additional_checks = []
        risk_mitigations = []
        approved = True
        requires_approval = False
        recommended_delay = 0

        rate_limits = self.check_rate_limits(domain, policy, context)
        if not rate_limits["approved"]:
            approved = False
            reasoning += rate_limits["reasons"]

        timing = self.check_business_hours(context, policy)
        if not timing["approved"]:
            reasoning += timing["reasons"]
            recommended_delay = timing["delay_minutes"]
            if not timing["can_delay"]:
                approved = False
                requires_approval = True

        impact = self.assess_update_impact(changes, policy)
        if impact["exceeds_threshold"]:
            if impact["severity"] == "critical":
                approved = False
                requires_approval = True
                reasoning.append("Critical impact detected - human approval required")
            elif impact["severity"] == "high":
                requires_approval = True
                reasoning.append("High impact detected - approval recommended")
            reasoning += impact["reasons"]

        esp = self.validate_with_esp_intelligence(changes, policy)
        if not esp["all_safe"]:
            reasoning += esp["warnings"]
            risk_mitigations += esp["mitigations"]
            if esp["has_high_risk"]:
                approved = False
                requires_approval = True

        record = self.validate_record_safety(proposed_record, policy)
        if not record["is_valid"]:
            approved = False
            reasoning += record["validation_errors"]
        additional_checks += record["recommendations"]

        patterns = self.analyze_historical_patterns(domain, changes, context)
        if patterns["has_anomaly"]:
            reasoning += patterns["warnings"]
            if patterns["severity"] == "high":
                requires_approval = True
        else:
            additional_checks += patterns["warnings"]

        dependencies = self.check_external_dependencies(changes, policy, context)
        if dependencies["has_risks"]:
            reasoning += dependencies["warnings"]
            risk_mitigations += dependencies["mitigations"]

        if policy.require_human_approval:
            requires_approval = True
            reasoning.append("Human approval required by policy")

        if len(reasoning) > 5 and not requires_approval:
            requires_approval = True
            reasoning.append("Multiple risk factors detected - approval recommended")

        approved = approved and not requires_approval
        if requires_approval:
            state = "denied-requires-approval"
        elif not approved:
            state = "denied"
        elif recommended_delay > 0:
            # Deployable only once the window opens
            state = "held"
            approved = False
        else:
            state = "approved"
        logging.debug(f"Safeguard decision for {domain}: {state}")
        return {
            "approved": approved,
            "state": state,
            "reasoning": _unique(reasoning),
            "requires_approval": requires_approval,
            "recommended_delay": recommended_delay,
            "additional_checks": _unique(additional_checks),
            "risk_mitigations": _unique(risk_mitigations),
        }

    def check_rate_limits(
        self, domain: str, policy: SafeguardPolicy, context: AutomationContext
    ) -> CheckResult:
        reasons = []
        now = context.local_time
        try:
            daily = self.history.count_updates(domain, day_start(now))
            weekly = self.history.count_updates(domain, week_start(now))
        except Exception as error:
            logging.warning(f"Unable to read update history for {domain}: {error}")
            return {
                "approved": False,
                "reasons": ["Failed to check rate limits - assuming exceeded"],
            }
        if daily >= policy.max_changes_per_day:
            reasons.append(
                f"Daily update limit exceeded: {daily}/{policy.max_changes_per_day}"
            )
        if weekly >= policy.max_changes_per_week:
            reasons.append(
                f"Weekly update limit exceeded: {weekly}/{policy.max_changes_per_week}"
            )
        logging.debug(f"{domain} has {daily} update(s) today, {weekly} this week")
        return {"approved": len(reasons) == 0, "reasons": reasons}

    def check_business_hours(
        self, context: AutomationContext, policy: SafeguardPolicy
    ) -> TimingCheckResult:
        now = context.current_time
        if now.tzinfo is None:
            now = context.local_time
        for period in policy.blackout_periods:
            start, end = _parse_blackout(period)
            if start <= now < end:
                return {
                    "approved": False,
                    "can_delay": False,
                    "delay_minutes": 0,
                    "reasons": [f"Deployment blocked by blackout period {period}"],
                }
        if not policy.business_hours_only:
            return {"approved": True, "can_delay": False, "delay_minutes": 0, "reasons": []}
        hours = context.business_hours
        if hours.contains(now):
            return {"approved": True, "can_delay": False, "delay_minutes": 0, "reasons": []}
        return {
            "approved": False,
            "can_delay": True,
            "delay_minutes": hours.minutes_until_open(now),
            "reasons": [
                f"Outside business hours ({hours.start}-{hours.end}, {hours.timezone})"
            ],
        }

    def assess_update_impact(
        self, changes: Sequence[IPChangeEvent], policy: SafeguardPolicy
    ) -> ImpactCheckResult:
        reasons = []
        severity = "low"
        impacts = [change.impact for change in changes]
        for level in ("critical", "high", "medium"):
            if level in impacts:
                severity = level
                reasons.append(f"{level.capitalize()} impact changes detected")
                break

        if len(changes) > 20:
            severity = {"low": "medium", "medium": "high"}.get(severity, severity)
            reasons.append(f"Large number of changes: {len(changes)}")

        critical_esps = _unique(
            [c.esp_name for c in changes if c.esp_name in CRITICAL_ESP_NAMES]
        )
        if critical_esps:
            if severity == "low":
                severity = "medium"
            reasons.append(f"Critical ESPs affected: {', '.join(critical_esps)}")

        return {
            "exceeds_threshold": severity_exceeds(severity, policy.impact_threshold),
            "severity": severity,
            "reasons": reasons,
        }

    def validate_with_esp_intelligence(
        self, changes: Sequence[IPChangeEvent], policy: SafeguardPolicy
    ) -> ESPCheckResult:
        warnings = []
        mitigations = []
        all_safe = True
        has_high_risk = False
        for change in changes:
            try:
                profile = self.esp_intelligence.get_esp_profile(change.include_domain)
                prediction = self.esp_intelligence.predict_change_impact(
                    profile, change.current_ips
                )
            except Exception as error:
                logging.warning(
                    f"ESP analysis failed for {change.include_domain}: {error}"
                )
                all_safe = False
                has_high_risk = True
                warnings.append(
                    f"ESP analysis unavailable for {change.include_domain} - "
                    "treating as high risk"
                )
                mitigations.append("Manual review recommended")
                continue
            reasons = ", ".join(prediction["reasoning"])
            if prediction["risk_level"] == "high":
                all_safe = False
                has_high_risk = True
                warnings.append(
                    f"High risk predicted for {change.include_domain}: {reasons}"
                )
            elif prediction["risk_level"] == "medium":
                all_safe = False
                warnings.append(f"Medium risk for {change.include_domain}: {reasons}")
            if prediction["confidence_level"] < policy.confidence_threshold:
                all_safe = False
                has_high_risk = True
                warnings.append(
                    f"Low confidence ({prediction['confidence_level']}%) for "
                    f"{change.include_domain}"
                )
            mitigations.append(prediction["recommended_response"])
        return {
            "all_safe": all_safe,
            "has_high_risk": has_high_risk,
            "warnings": _unique(warnings),
            "mitigations": _unique(mitigations),
        }

    @staticmethod
    def validate_record_safety(
        proposed_record: str, policy: SafeguardPolicy
    ) -> ChangeValidation:
        parsed = parse_spf_record_from_string(proposed_record)
        validation_errors = list(parsed.errors)
        potential_issues = []
        recommendations = []
        if 8 < parsed.total_lookups <= MAX_DNS_LOOKUPS:
            potential_issues.append(
                f"SPF record approaching DNS lookup limit: {parsed.total_lookups}"
            )
        testing_required = policy.test_before_apply or len(validation_errors) > 0
        monitoring_required = len(potential_issues) > 0 or parsed.total_lookups > 6
        if testing_required:
            recommendations.append("Pre-deployment testing required")
        if monitoring_required:
            recommendations.append("Enhanced monitoring recommended")
        return {
            "is_valid": len(validation_errors) == 0,
            "validation_errors": validation_errors,
            "potential_issues": potential_issues,
            "recommendations": recommendations,
            "testing_required": testing_required,
            "monitoring_required": monitoring_required,
        }

    def analyze_historical_patterns(
        self,
        domain: str,
        changes: Sequence[IPChangeEvent],
        context: AutomationContext,
    ) -> PatternCheckResult:
        warnings = []
        severity = "low"
        has_anomaly = False
        try:
            history = self.history.recent_changes(domain, 50)
        except Exception as error:
            logging.warning(f"Unable to read change history for {domain}: {error}")
            return {
                "has_anomaly": False,
                "severity": "low",
                "warnings": ["Historical analysis failed - proceeding with caution"],
            }
        if len(history) < 5:
            return {
                "has_anomaly": False,
                "severity": "low",
                "warnings": ["Limited historical data - cannot detect patterns"],
            }

        week_ago = context.current_time - timedelta(days=7)
        recent = [event for event in history if event.timestamp > week_ago]
        if len(recent) > 10:
            has_anomaly = True
            severity = "high"
            warnings.append(
                f"Unusually high change frequency: {len(recent)} changes in last 7 days"
            )

        per_include: dict[str, int] = {}
        for change in changes:
            per_include[change.include_domain] = per_include.get(change.include_domain, 0) + 1
        for include_domain, count in per_include.items():
            historical = len([e for e in history if e.include_domain == include_domain])
            average = historical / max(1, len(history) / 7)
            if count > average * 3:
                has_anomaly = True
                if severity != "high":
                    severity = "medium"
                warnings.append(
                    f"Unusual change volume for {include_domain}: {count} vs avg "
                    f"{average:.1f}/week"
                )
        return {"has_anomaly": has_anomaly, "severity": severity, "warnings": warnings}

    @staticmethod
    def check_external_dependencies(
        changes: Sequence[IPChangeEvent],
        policy: SafeguardPolicy,
        context: AutomationContext,
    ) -> DependencyCheckResult:
        warnings = []
        mitigations = []
        if any(c.include_domain in CRITICAL_INCLUDE_DOMAINS for c in changes):
            warnings.append("Changes affect critical email service providers")
            mitigations += ["Monitor email delivery closely", "Have rollback plan ready"]
        local = context.local_time
        if local.weekday() >= 5:
            warnings.append("Deployment during weekend - limited support availability")
            mitigations.append("Ensure 24/7 monitoring capability")
        elif local.date().isoformat() in policy.holidays:
            warnings.append(
                f"Deployment on a holiday ({local.date().isoformat()}) - limited "
                "support availability"
            )
            mitigations.append("Ensure 24/7 monitoring capability")
        return {
            "has_risks": len(warnings) > 0,
            "warnings": warnings,
            "mitigations": mitigations,
        }

    @staticmethod
    def generate_rollback_triggers(
        changes: Sequence[IPChangeEvent], policy: SafeguardPolicy
    ) -> list[str]:
        triggers = [
            f"Authentication failure rate > {policy.auth_failure_rate_threshold:g}%",
            f"Email delivery failure rate > {policy.delivery_failure_rate_threshold:g}%",
            f"Bounce rate increase > {policy.bounce_rate_increase_threshold:g} "
            "percentage points",
            "DMARC failure notifications",
        ]
        if any(c.impact in ("high", "critical") for c in changes):
            triggers.append("Any authentication issues with critical ESPs")
        return triggers

    @staticmethod
    def estimate_rollback_time(
        changes: Sequence[IPChangeEvent], context: AutomationContext
    ) -> int:
        minutes = 15
        if len(changes) > 10:
            minutes += 10
        if not context.business_hours.contains(context.current_time):
            minutes += 30
        return minutes

    def create_rollback_plan(
        self,
        domain: str,
        current_record: str,
        proposed_record: str,
        changes: Sequence[IPChangeEvent],
        policy: SafeguardPolicy,
        context: AutomationContext,
    ) -> RollbackPlan:
        """
        Builds the plan for reverting a deployment

        Args:
            domain (str): The domain being updated
            current_record (str): The record in place before the change
            proposed_record (str): The record being deployed
            changes (list): The ``IPChangeEvent`` objects behind the change
            policy (SafeguardPolicy): Supplies the rollback triggers
            context (AutomationContext): Supplies the emergency contact

        Returns:
            dict: A ``RollbackPlan``
        """
        domain = normalize_domain(domain)
        logging.debug(f"Creating rollback plan for {domain}")
        instructions = [
            f"1. Immediately revert SPF record for {domain}",
            f"   FROM: {proposed_record}",
            f"   TO: {current_record}",
            "2. Wait 5-10 minutes for DNS propagation",
            "3. Test email authentication with major providers",
            "4. Monitor authentication success rates for 1 hour",
            "5. Document rollback reason and lessons learned",
        ]
        verification_steps = [
            "Verify DNS TXT record has been updated",
            "Check SPF record propagation with online tools",
            "Send test emails through affected ESPs",
            "Monitor DMARC reports for authentication failures",
            "Check email delivery to major providers (Gmail, Outlook, Yahoo)",
            "Verify no increase in bounce rates or spam reports",
        ]
        contact = context.emergency_contact
        contacts = [contact.email if contact else "No emergency contact configured"]
        if contact and contact.phone:
            contacts.append(contact.phone)
        if contact and contact.webhook:
            contacts.append(contact.webhook)
        contacts += ["DNS provider support", "Email service provider support"]
        return {
            "rollback_record": current_record,
            "rollback_instructions": instructions,
            "verification_steps": verification_steps,
            "rollback_triggers": self.generate_rollback_triggers(changes, policy),
            "emergency_contacts": contacts,
            "estimated_time_to_rollback": self.estimate_rollback_time(changes, context),
        }

    def _test_esp_reachability(self, changes: Sequence[IPChangeEvent]) -> SafetyTestResult:
        esp_names = _unique([c.esp_name for c in changes if c.esp_name])
        includes = _unique([c.include_domain for c in changes])
        if self.resolver is None:
            return {
                "test": "ESP Reachability",
                "passed": True,
                "details": f"Tested {len(esp_names)} ESP(s): {', '.join(esp_names)}",
            }
        results = self.resolver.lookup_many([(i, "TXT") for i in includes])
        unreachable = [
            include
            for include, result in zip(includes, results)
            if not result["success"]
            or not any(r.lower().startswith("v=spf1") for r in result["records"])
        ]
        if unreachable:
            return {
                "test": "ESP Reachability",
                "passed": False,
                "details": f"No SPF record found for: {', '.join(unreachable)}",
            }
        return {
            "test": "ESP Reachability",
            "passed": True,
            "details": f"Resolved SPF records for {len(includes)} include(s)",
        }

    def perform_safety_testing(
        self,
        domain: str,
        proposed_record: str,
        changes: Sequence[IPChangeEvent],
    ) -> SafetyTestReport:
        """
        Runs the pre-deployment tests of a proposed record

        Args:
            domain (str): The domain being updated
            proposed_record (str): The record to test
            changes (list): The ``IPChangeEvent`` objects behind the change

        Returns:
            dict: ``passed``, the individual ``results`` and
            ``recommendations``
        """
        logging.debug(f"Performing safety testing for {normalize_domain(domain)}")
        results: list[SafetyTestResult] = []
        try:
            parsed = parse_spf_record_from_string(proposed_record)
            results.append(
                {
                    "test": "SPF Record Syntax",
                    "passed": parsed.is_valid,
                    "details": "Valid SPF syntax"
                    if parsed.is_valid
                    else f"Invalid: {', '.join(parsed.errors)}",
                }
            )
            lookups_ok = parsed.total_lookups <= MAX_DNS_LOOKUPS
            results.append(
                {
                    "test": "DNS Lookup Count",
                    "passed": lookups_ok,
                    "details": f"{parsed.total_lookups}/{MAX_DNS_LOOKUPS} DNS lookups"
                    + (" (OK)" if lookups_ok else " (EXCEEDED)"),
                }
            )
            size = len(proposed_record)
            size_ok = size <= MAX_RECORD_LENGTH
            results.append(
                {
                    "test": "Record Size",
                    "passed": size_ok,
                    "details": f"{size}/{MAX_RECORD_LENGTH} characters"
                    + (" (OK)" if size_ok else " (TOO LARGE)")
                    + (" (large)" if size > 200 else ""),
                }
            )
            ips = [ip for change in changes for ip in change.current_ips]
            invalid = [ip for ip in ips if not _is_valid_ip(ip)]
            results.append(
                {
                    "test": "IP Range Validity",
                    "passed": len(invalid) == 0,
                    "details": f"{len(ips)} valid IP addresses"
                    if len(invalid) == 0
                    else f"{len(invalid)}/{len(ips)} invalid IP addresses",
                }
            )
            results.append(self._test_esp_reachability(changes))
        except Exception as error:
            logging.error(f"Safety testing failed: {error}")
            return {
                "passed": False,
                "results": [
                    {
                        "test": "Safety Testing",
                        "passed": False,
                        "details": f"Testing failed: {error}",
                    }
                ],
                "recommendations": ["Manual testing required due to system error"],
            }

        recommendations = []
        failed = [result for result in results if not result["passed"]]
        if failed:
            recommendations.append(
                f"{len(failed)} test(s) failed - review before deployment"
            )
            recommendations += [f"Fix: {r['test']} - {r['details']}" for r in failed]
        if any(r["test"] == "DNS Lookup Count" and not r["passed"] for r in results):
            recommendations.append("Consider SPF flattening to reduce DNS lookups")
        if any(r["test"] == "Record Size" and "(large)" in r["details"] for r in results):
            recommendations.append("Monitor DNS propagation time due to record size")
        return {
            "passed": len(failed) == 0,
            "results": results,
            "recommendations": recommendations,
        }

    def register_deployment(
        self,
        domain: str,
        record: str,
        policy: SafeguardPolicy,
        context: AutomationContext,
    ) -> int:
        """
        Records an approved deployment against the domain's rate limits

        Returns:
            int: The number of updates for the domain today

        Raises:
            :exc:`spfwarden.history.RateLimitExceeded`
        """
        return self.history.record_update(
            domain,
            record,
            policy.max_changes_per_day,
            policy.max_changes_per_week,
            context.local_time,
        )

    def monitor_deployment(
        self,
        domain: str,
        deployment_id: str,
        rollback_plan: RollbackPlan,
        policy: SafeguardPolicy,
        metrics_provider: Callable[[], DeploymentMetrics],
        rollback_executor: Optional[Callable[[str], None]] = None,
        duration_seconds: Union[int, float] = 30 * 60,
        interval_seconds: Union[int, float] = 5 * 60,
    ) -> DeploymentMonitoringResult:
        """
        Watches a deployment for a fixed window and rolls back on failure

        ``metrics_provider`` is sampled once per interval until the window
        closes. The first sample that breaches a rollback trigger ends
        monitoring; when the policy allows it, ``rollback_executor`` is called
        with the rollback record.

        Args:
            domain (str): The deployed domain
            deployment_id (str): Identifies the deployment in the actions log
            rollback_plan (dict): The plan made before deploying
            policy (SafeguardPolicy): Supplies the rollback thresholds
            metrics_provider (callable): Returns a ``DeploymentMetrics`` sample
            rollback_executor (callable): Applies the rollback record
            duration_seconds (float): The length of the monitoring window
            interval_seconds (float): The time between samples

        Returns:
            dict: A ``DeploymentMonitoringResult``
        """
        domain = normalize_domain(domain)
        logging.debug(f"Monitoring deployment {deployment_id} for {domain}")
        actions = [
            f"Started monitoring deployment {deployment_id} at "
            f"{datetime.now(timezone.utc).isoformat()}"
        ]
        samples = []
        result: DeploymentMonitoringResult = {
            "deployment_id": deployment_id,
            "state": "stable",
            "success": True,
            "rollback_triggered": False,
            "reason": None,
            "actions": actions,
            "samples": samples,
        }
        checks = max(1, int(duration_seconds // max(interval_seconds, 1)))
        for check in range(checks):
            if check > 0:
                self.sleep(interval_seconds)
            try:
                metrics = metrics_provider()
            except Exception as error:
                logging.error(f"Unable to collect metrics for {domain}: {error}")
                actions.append(f"Monitoring error: {error}")
                result.update(state="monitoring-failed", success=False)
                return result
            samples.append(metrics.to_dict())
            reason = evaluate_rollback_conditions(metrics, policy)
            if reason is None:
                continue
            logging.warning(f"Rollback triggered for {domain}: {reason}")
            actions.append(f"ROLLBACK TRIGGERED: {reason}")
            result.update(
                state="rollback-triggered",
                success=False,
                rollback_triggered=True,
                reason=reason,
            )
            if not policy.rollback_on_failure:
                actions.append(
                    "Automatic rollback disabled by policy - manual rollback required"
                )
            elif rollback_executor is None:
                actions.append(
                    f"Manual rollback required to: {rollback_plan['rollback_record']}"
                )
            else:
                actions.append("Executing rollback plan...")
                rollback_executor(rollback_plan["rollback_record"])
                actions.append(
                    f"Reverted SPF record to: {rollback_plan['rollback_record']}"
                )
                result["state"] = "rolled-back"
            return result
        actions.append("No rollback conditions detected")
        actions.append("Deployment appears successful")
        return result
