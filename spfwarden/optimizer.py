# -*- coding: utf-8 -*-
"""SPF record optimization suggestions"""

from __future__ import annotations

import ipaddress
import logging
from typing import Literal, Optional, TypedDict

from spfwarden._constants import LOOKUP_WARNING_THRESHOLD, MAX_DNS_LOOKUPS
from spfwarden.spf import (
    SPFMechanism,
    SPFRecord,
    parse_spf_record_from_string,
)
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

# Email service providers with historically stable sending ranges
COMMON_ESP_INCLUDES = (
    "_spf.google.com",
    "spf.protection.outlook.com",
    "include.mailgun.org",
    "_spf.salesforce.com",
    "spf1.mailgun.org",
    "sendgrid.net",
    "_spf.mandrillapp.com",
    "mail.zendesk.com",
    "spf.constantcontact.com",
    "_spf.hubspot.com",
    "spf.mailchimp.com",
    "spf.aweber.com",
    "spf.getresponse.com",
    "spf.mailerlite.com",
    "spf.convertkit.com",
)

SEVERITY_ORDER = {"high": 3, "medium": 2, "low": 1}
CONSOLIDATION_MIN_IPS = 3

SuggestionType = Literal["flatten_include", "remove_redundant", "use_ip4", "remove_ptr"]


class OptimizationSuggestion(TypedDict):
    type: SuggestionType
    severity: Literal["low", "medium", "high"]
    description: str
    mechanism: str
    index: Optional[int]
    current_lookups: int
    estimated_savings: int
    implementation: str


class RiskAssessment(TypedDict):
    current_risk: str
    lookup_utilization: float
    failure_risk: str
    recommended_actions: list[str]


class OptimizedRecordValidation(TypedDict):
    valid: bool
    lookup_count: int
    warnings: list[str]
    errors: list[str]


def _suggestion(
    suggestion_type: SuggestionType,
    severity: str,
    description: str,
    mechanism: str,
    implementation: str,
    current_lookups: int = 0,
    estimated_savings: int = 0,
    index: Optional[int] = None,
) -> OptimizationSuggestion:
    return {
        "type": suggestion_type,
        "severity": severity,
        "description": description,
        "mechanism": mechanism,
        "index": index,
        "current_lookups": current_lookups,
        "estimated_savings": estimated_savings,
        "implementation": implementation,
    }


def is_common_esp(domain: str) -> bool:
    """Checks if an include points at a well known email service provider"""
    domain = normalize_domain(domain)
    return any(
        domain == esp or domain.endswith(f".{esp}") for esp in COMMON_ESP_INCLUDES
    )


def identify_flattening_opportunities(
    record: SPFRecord, flattening: Optional[dict] = None
) -> list[OptimizationSuggestion]:
    """
    Suggests includes that could be replaced with literal addresses

    Args:
        record (SPFRecord): A parsed record
        flattening (dict): An optional ``FlatteningResult`` for the record.
                           Includes that failed to resolve are not suggested.

    Returns:
        list: Flattening suggestions
    """
    suggestions = []
    details = {}
    if flattening is not None:
        details = {d["domain"]: d for d in flattening.get("includes", [])}
    total_lookups = record.total_lookups
    for index, mechanism in enumerate(record.mechanisms):
        if mechanism.type != "include":
            continue
        domain = mechanism.value
        detail = details.get(normalize_domain(domain))
        if detail is not None and detail["state"] != "resolved":
            continue
        resolved_note = ""
        if detail is not None:
            resolved_note = f" It currently resolves to {len(detail['ips'])} address(es)."
        if is_common_esp(domain):
            suggestions.append(
                _suggestion(
                    "flatten_include",
                    "medium",
                    f"Flatten {domain} to reduce DNS lookups. "
                    f"This ESP has relatively stable IP ranges.{resolved_note}",
                    domain,
                    f'Replace "include:{domain}" with direct ip4/ip6 mechanisms '
                    "for their IP ranges. Monitor for changes monthly.",
                    current_lookups=1,
                    estimated_savings=1,
                    index=index,
                )
            )
        elif total_lookups >= LOOKUP_WARNING_THRESHOLD:
            suggestions.append(
                _suggestion(
                    "flatten_include",
                    "high",
                    f"Consider flattening {domain} as you're approaching the "
                    f"{MAX_DNS_LOOKUPS} DNS lookup limit.{resolved_note}",
                    domain,
                    f"Resolve {domain}'s SPF record and replace with direct IP "
                    "mechanisms. Requires regular monitoring for changes.",
                    current_lookups=1,
                    estimated_savings=1,
                    index=index,
                )
            )
    return suggestions


def _ip4_network(mechanism: SPFMechanism) -> Optional[ipaddress.IPv4Network]:
    try:
        network = ipaddress.ip_network(mechanism.value, strict=False)
    except ValueError:
        return None
    if network.version != 4:
        return None
    return network


def find_redundant_mechanisms(record: SPFRecord) -> list[OptimizationSuggestion]:
    """
    Flags duplicate mechanisms and overlapping ``ip4`` ranges

    The first occurrence of a duplicate is kept; every later occurrence is
    flagged with its index.
    """
    suggestions = []
    seen = set()
    duplicate_indexes = set()
    for index, mechanism in enumerate(record.mechanisms):
        key = mechanism.key()
        if key not in seen:
            seen.add(key)
            continue
        duplicate_indexes.add(index)
        suggestions.append(
            _suggestion(
                "remove_redundant",
                "low",
                f"Duplicate {mechanism.type} mechanism found",
                key,
                f'Remove the duplicate "{mechanism.to_string()}" mechanism',
                current_lookups=mechanism.lookup_count,
                estimated_savings=mechanism.lookup_count,
                index=index,
            )
        )

    ip4 = [
        (index, mechanism, _ip4_network(mechanism))
        for index, mechanism in enumerate(record.mechanisms)
        if mechanism.type == "ip4" and index not in duplicate_indexes
    ]
    ip4 = [entry for entry in ip4 if entry[2] is not None]
    for i, (_, first, first_network) in enumerate(ip4):
        for index, second, second_network in ip4[i + 1 :]:
            if not first_network.overlaps(second_network):
                continue
            if first_network == second_network:
                description = "Identical IP ranges detected"
            elif second_network.subnet_of(first_network):
                description = f"{second.value} is contained in {first.value}"
            elif first_network.subnet_of(second_network):
                description = f"{first.value} is contained in {second.value}"
            else:
                description = "Overlapping IP ranges detected"
            suggestions.append(
                _suggestion(
                    "remove_redundant",
                    "low",
                    description,
                    f"{first.value} and {second.value}",
                    "Consolidate overlapping IP ranges: "
                    f"{first.value} and {second.value}",
                    index=index,
                )
            )
    return suggestions


def find_cidr_consolidation_opportunities(
    ips: list[str], min_ips: int = CONSOLIDATION_MIN_IPS
) -> list[dict]:
    """
    Groups individual IPv4 addresses by their /24 network

    Args:
        ips (list): IPv4 addresses
        min_ips (int): The minimum group size worth reporting

    Returns:
        list: ``{"ips": [...], "cidr": "x.y.z.0/24"}`` for each group
    """
    groups: dict[str, list[str]] = {}
    for ip in ips:
        try:
            address = ipaddress.IPv4Address(ip)
        except ValueError:
            continue
        subnet = str(ipaddress.ip_network(f"{address}/24", strict=False))
        groups.setdefault(subnet, []).append(ip)
    return [
        {"ips": group, "cidr": subnet}
        for subnet, group in groups.items()
        if len(group) >= min_ips
    ]


def suggest_ip_consolidation(record: SPFRecord) -> list[OptimizationSuggestion]:
    suggestions = []
    ips = []
    for mechanism in record.mechanisms:
        if mechanism.type != "ip4":
            continue
        value = mechanism.value
        if value.endswith("/32"):
            value = value[:-3]
        if "/" not in value:
            ips.append(value)
    for opportunity in find_cidr_consolidation_opportunities(ips):
        listed = ", ".join(opportunity["ips"])
        suggestions.append(
            _suggestion(
                "use_ip4",
                "low",
                "Multiple individual IPs could be consolidated into CIDR blocks",
                listed,
                f"Replace individual IPs {listed} with CIDR block {opportunity['cidr']}",
            )
        )
    return suggestions


def detect_unnecessary_ptr(record: SPFRecord) -> list[OptimizationSuggestion]:
    suggestions = []
    for index, mechanism in enumerate(record.mechanisms):
        if mechanism.type != "ptr":
            continue
        suggestions.append(
            _suggestion(
                "remove_ptr",
                "high",
                "PTR mechanism is deprecated, slow, and unreliable",
                mechanism.value or "ptr",
                "Remove PTR mechanism and replace with specific ip4/ip6 "
                "mechanisms for authorized sending IPs. PTR mechanisms are "
                "deprecated in RFC 7208.",
                current_lookups=mechanism.lookup_count,
                estimated_savings=mechanism.lookup_count,
                index=index,
            )
        )
    return suggestions


def generate_optimization_suggestions(
    record: SPFRecord, flattening: Optional[dict] = None
) -> list[OptimizationSuggestion]:
    """
    Builds the ranked optimization suggestions for a record

    Args:
        record (SPFRecord): A parsed record
        flattening (dict): An optional ``FlatteningResult`` for the record

    Returns:
        list: Suggestions sorted by severity, then estimated savings
    """
    logging.debug(f"Looking for optimizations in SPF record: {record.raw}")
    suggestions = identify_flattening_opportunities(record, flattening)
    suggestions += find_redundant_mechanisms(record)
    suggestions += suggest_ip_consolidation(record)
    suggestions += detect_unnecessary_ptr(record)
    # sort() is stable, so ties keep their discovery order
    suggestions.sort(
        key=lambda s: (SEVERITY_ORDER[s["severity"]], s["estimated_savings"]),
        reverse=True,
    )
    return suggestions


def generate_optimized_record(
    record: SPFRecord, suggestions: list[OptimizationSuggestion]
) -> str:
    """
    Applies the high severity suggestions and reserializes the record

    PTR mechanisms and flagged duplicates are removed. Everything else keeps
    its qualifier and position.

    Args:
        record (SPFRecord): The original record
        suggestions (list): Suggestions for the record

    Returns:
        str: The rewritten record
    """
    removed = set()
    for suggestion in suggestions:
        if suggestion["severity"] != "high":
            continue
        if suggestion["type"] == "remove_ptr":
            index = suggestion["index"]
            if index is not None:
                removed.add(index)
                continue
            for i, mechanism in enumerate(record.mechanisms):
                if mechanism.type == "ptr" and (mechanism.value or "ptr") == (
                    suggestion["mechanism"]
                ):
                    removed.add(i)
        elif suggestion["type"] == "remove_redundant":
            index = suggestion["index"]
            if index is not None and record.mechanisms[index].key() == suggestion[
                "mechanism"
            ]:
                removed.add(index)
    mechanisms = [m for i, m in enumerate(record.mechanisms) if i not in removed]
    optimized = SPFRecord(
        raw="",
        version=record.version,
        mechanisms=mechanisms,
        modifiers=list(record.modifiers),
    )
    return optimized.to_string()


def estimate_lookup_reduction(suggestions: list[OptimizationSuggestion]) -> int:
    return sum(s["estimated_savings"] for s in suggestions)


def calculate_risk_assessment(record: SPFRecord) -> RiskAssessment:
    """
    Rates how close a record is to failing because of the lookup limit

    Args:
        record (SPFRecord): A parsed record

    Returns:
        dict: ``current_risk``, ``lookup_utilization`` (percent),
        ``failure_risk`` and ``recommended_actions``
    """
    total = record.total_lookups
    actions = []
    if total >= MAX_DNS_LOOKUPS:
        current_risk, failure_risk = "Critical", "Immediate"
        actions.append(
            "SPF record is exceeding lookup limit - emails will fail SPF authentication"
        )
        actions.append(
            "Immediate action required to flatten includes or remove unnecessary mechanisms"
        )
    elif total >= LOOKUP_WARNING_THRESHOLD:
        current_risk, failure_risk = "High", "High"
        actions.append("Close to lookup limit - implement optimizations soon")
        actions.append(
            "Monitor for any additional includes that might push over the limit"
        )
    elif total >= 6:
        current_risk, failure_risk = "Medium", "Medium"
        actions.append("Consider optimization to maintain buffer for future changes")
    else:
        current_risk, failure_risk = "Low", "Low"
        actions.append("SPF record is healthy - maintain current configuration")
    if any(m.type == "ptr" for m in record.mechanisms):
        actions.append("Remove deprecated PTR mechanisms")
    if len([m for m in record.mechanisms if m.type == "include"]) > 5:
        actions.append("High number of includes may impact performance")
    return {
        "current_risk": current_risk,
        "lookup_utilization": total / MAX_DNS_LOOKUPS * 100,
        "failure_risk": failure_risk,
        "recommended_actions": actions,
    }


def validate_optimized_record(optimized_record: str) -> OptimizedRecordValidation:
    parsed = parse_spf_record_from_string(optimized_record)
    return {
        "valid": parsed.is_valid,
        "lookup_count": parsed.total_lookups,
        "warnings": list(parsed.warnings),
        "errors": list(parsed.errors),
    }
