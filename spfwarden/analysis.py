# -*- coding: utf-8 -*-
"""SPF macro security, performance and complexity analysis"""

from __future__ import annotations

import logging
import re
from typing import Literal, Optional, TypedDict

from spfwarden.macros import (
    RISK_LEVELS,
    DEFAULT_MACRO_CONTEXT,
    MacroAnalysisResult,
    MacroExpansionContext,
    SPFMacro,
    calculate_complexity_score,
    expand_macros_in_text,
    max_risk,
    parse_spf_macros,
)
from spfwarden.optimizer import OptimizationSuggestion, generate_optimization_suggestions
from spfwarden.spf import (
    LookupBreakdown,
    SPFRecord,
    calculate_compliance_status,
    calculate_risk_level,
    lookup_breakdown,
)

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

OVERHEAD_LEVELS = ["minimal", "moderate", "significant", "severe"]
DNS_LOOKUP_MECHANISMS = ("exists", "a", "mx")
SUSPICIOUS_DELIMITER_REGEX = re.compile(r"[<>'\"&;|`$()\[\]\\]")
PRIORITY_ORDER = {"critical": 4, "high": 3, "medium": 2, "low": 1}

VulnerabilityType = Literal[
    "dns_amplification",
    "information_disclosure",
    "enumeration",
    "injection",
    "resource_exhaustion",
]


class SecurityVulnerability(TypedDict):
    type: VulnerabilityType
    severity: str
    description: str
    affected_macros: list[str]
    impact: str
    remediation: str


class SecurityAssessment(TypedDict):
    risk_level: str
    vulnerabilities: list[SecurityVulnerability]
    mitigation_suggestions: list[str]
    threat_vectors: list[str]


class PerformanceImpact(TypedDict):
    dns_lookups_per_email: float
    processing_overhead: str
    scalability_concerns: list[str]
    recommended_alternatives: list[str]


class SPFMacroMechanism(TypedDict):
    mechanism_index: int
    mechanism_type: str
    original_value: str
    macros: list[SPFMacro]
    expanded_example: str
    security_assessment: SecurityAssessment
    performance_impact: PerformanceImpact
    optimization_notes: list[str]


class MacroComplexityAnalysis(TypedDict):
    total_macros: int
    unique_macro_types: int
    average_modifiers_per_macro: float
    complexity_score: int
    readability_score: int
    maintenance_risk: str


class OptimizationRecommendation(TypedDict):
    priority: str
    category: Literal["security", "performance", "maintainability", "compliance"]
    title: str
    description: str
    current_issue: str
    suggested_fix: str
    impact_estimate: str
    estimated_impact: float
    effort_estimate: str


class SPFRecordMacroAnalysis(TypedDict):
    record: SPFRecord
    macro_mechanisms: list[SPFMacroMechanism]
    overall_analysis: MacroAnalysisResult
    security_assessment: SecurityAssessment
    performance_impact: PerformanceImpact
    complexity_analysis: MacroComplexityAnalysis
    optimization_recommendations: list[OptimizationRecommendation]


class MacroSummary(TypedDict):
    count: int
    risk_level: str
    has_high_risk_macros: bool
    primary_concerns: list[str]


class SPFAnalysis(TypedDict):
    record: SPFRecord
    lookup_breakdown: LookupBreakdown
    optimization_suggestions: list[OptimizationSuggestion]
    risk_level: str
    compliance_status: str


def _unique(items: list) -> list:
    return list(dict.fromkeys(items))


def _vulnerability(
    vulnerability_type: VulnerabilityType,
    severity: str,
    description: str,
    macro: SPFMacro,
    impact: str,
    remediation: str,
) -> SecurityVulnerability:
    return {
        "type": vulnerability_type,
        "severity": severity,
        "description": description,
        "affected_macros": [macro.raw],
        "impact": impact,
        "remediation": remediation,
    }


def assess_mechanism_security(
    macros: list[SPFMacro], mechanism_type: str
) -> SecurityAssessment:
    """
    Finds the vulnerabilities introduced by the macros of one term

    Args:
        macros (list): The macros of the term
        mechanism_type (str): The mechanism or modifier type

    Returns:
        dict: A ``SecurityAssessment``
    """
    vulnerabilities = []
    threat_vectors = []
    mitigations = []
    for macro in macros:
        if macro.type == "p" and mechanism_type in DNS_LOOKUP_MECHANISMS:
            vulnerabilities.append(
                _vulnerability(
                    "dns_amplification",
                    "high",
                    "PTR macro in DNS lookup mechanism can cause amplification attacks",
                    macro,
                    "Attackers can trigger multiple DNS queries per SPF check",
                    "Replace PTR macro with static IP ranges or trusted domains",
                )
            )
            threat_vectors.append("DNS amplification via PTR lookups")
        if macro.type in ("c", "t"):
            vulnerabilities.append(
                _vulnerability(
                    "information_disclosure",
                    "medium",
                    "Macro exposes sensitive system information",
                    macro,
                    "Leakage of IP addresses, timestamps, or system details",
                    "Avoid using %{c} and %{t} macros in public SPF records",
                )
            )
            threat_vectors.append("Information leakage")
        if macro.type == "s" and mechanism_type == "exists":
            vulnerabilities.append(
                _vulnerability(
                    "enumeration",
                    "medium",
                    "Sender macro in exists mechanism allows email enumeration",
                    macro,
                    "Attackers can probe for valid email addresses",
                    "Implement rate limiting or use alternative validation methods",
                )
            )
            threat_vectors.append("Email address enumeration")
        if len(macro.modifiers) > 3:
            vulnerabilities.append(
                _vulnerability(
                    "resource_exhaustion",
                    "medium",
                    "Complex macro with many modifiers increases processing time",
                    macro,
                    "Potential DoS through CPU-intensive macro processing",
                    "Simplify macro modifiers and add processing timeouts",
                )
            )
        # Valid delimiter sets are restricted by the grammar, so dangerous
        # characters can only show up in tokens that failed to parse
        suspicious = macro.delimiters if macro.is_valid else macro.raw[2:-1]
        if SUSPICIOUS_DELIMITER_REGEX.search(suspicious):
            vulnerabilities.append(
                _vulnerability(
                    "injection",
                    "high",
                    "Delimiter contains potentially dangerous characters",
                    macro,
                    "Possible injection attacks in downstream systems",
                    "Use only safe delimiter characters (.-_/)",
                )
            )
            threat_vectors.append("Injection into downstream systems")

    if vulnerabilities:
        mitigations += [
            "Regular security audit of SPF macro usage",
            "Implement DNS query rate limiting",
            "Monitor for unusual SPF evaluation patterns",
        ]
    types = set(v["type"] for v in vulnerabilities)
    if "dns_amplification" in types:
        mitigations.append("Replace PTR-based macros with static IP lists")
    if "information_disclosure" in types:
        mitigations.append("Audit SPF records for information leakage")

    risk_level = max_risk(
        [v["severity"] for v in vulnerabilities] + [m.security_risk for m in macros]
    )
    return {
        "risk_level": risk_level,
        "vulnerabilities": vulnerabilities,
        "mitigation_suggestions": _unique(mitigations),
        "threat_vectors": _unique(threat_vectors),
    }


def _classify_mechanism_overhead(macros: list[SPFMacro]) -> str:
    total_modifiers = sum(len(m.modifiers) for m in macros)
    complex_macros = [m for m in macros if len(m.modifiers) > 2]
    if total_modifiers > 10 or len(complex_macros) > 2:
        return "severe"
    if total_modifiers > 5 or len(macros) > 5:
        return "significant"
    if len(macros) > 2:
        return "moderate"
    return "minimal"


def assess_performance_impact(
    macros: list[SPFMacro], mechanism_type: str
) -> PerformanceImpact:
    """
    Estimates the per-email cost of the macros of one term

    Args:
        macros (list): The macros of the term
        mechanism_type (str): The mechanism or modifier type

    Returns:
        dict: A ``PerformanceImpact``
    """
    lookups = 0.0
    for macro in macros:
        if macro.type == "p":
            lookups += 1
            # The PTR answer is validated with a forward lookup
            if mechanism_type in DNS_LOOKUP_MECHANISMS:
                lookups += 1
        if macro.type == "i" and macro.reverse:
            lookups += 0.5

    overhead = _classify_mechanism_overhead(macros)
    concerns = []
    alternatives = []
    if overhead == "severe":
        concerns.append("Complex macro processing may not scale well under high load")
    elif overhead == "significant":
        concerns.append("Multiple complex macros increase per-email processing time")
    if lookups > 2:
        concerns.append("High DNS lookup count may cause timeouts and delays")
    if any(m.type == "p" for m in macros):
        concerns.append("PTR lookups are slow and unreliable")
        alternatives.append("Replace %{p} macros with static trusted domain lists")
    if len(macros) > 3:
        alternatives.append("Consolidate multiple macros into fewer, simpler expressions")
    if any(len(m.modifiers) > 2 for m in macros):
        alternatives.append("Simplify macro modifiers to improve processing speed")

    return {
        "dns_lookups_per_email": lookups,
        "processing_overhead": overhead,
        "scalability_concerns": concerns,
        "recommended_alternatives": alternatives,
    }


def generate_optimization_notes(macros: list[SPFMacro], mechanism_type: str) -> list[str]:
    notes = []
    for macro in macros:
        if macro.type == "p":
            notes.append("PTR macro causes DNS lookups that may fail or timeout")
        if len(macro.modifiers) > 2:
            notes.append(
                f"Complex macro {macro.raw} could be simplified for better performance"
            )
        if macro.type == "s" and mechanism_type == "exists":
            notes.append(
                "Sender macro in exists mechanism allows email enumeration attacks"
            )
        if not macro.is_valid:
            notes.append(f"Malformed macro {macro.raw} should be corrected")
    return notes


def _analyze_term(
    index: int,
    term_type: str,
    macro_type: str,
    value: str,
    macros: list[SPFMacro],
    context: MacroExpansionContext,
) -> SPFMacroMechanism:
    return {
        "mechanism_index": index,
        "mechanism_type": term_type,
        "original_value": value,
        "macros": macros,
        "expanded_example": expand_macros_in_text(value, context),
        "security_assessment": assess_mechanism_security(macros, macro_type),
        "performance_impact": assess_performance_impact(macros, macro_type),
        "optimization_notes": generate_optimization_notes(macros, macro_type),
    }


def generate_security_assessment(
    mechanisms: list[SPFMacroMechanism],
) -> SecurityAssessment:
    """Aggregates the per-term assessments into a record-level assessment"""
    vulnerabilities = []
    threat_vectors = []
    mitigations = []
    risk_level = "low"
    for mechanism in mechanisms:
        assessment = mechanism["security_assessment"]
        vulnerabilities += assessment["vulnerabilities"]
        threat_vectors += assessment["threat_vectors"]
        mitigations += assessment["mitigation_suggestions"]
        risk_level = max_risk([assessment["risk_level"]], risk_level)
    if len([v for v in vulnerabilities if v["severity"] == "high"]) > 1:
        risk_level = "critical"

    unique_vulnerabilities = []
    seen = set()
    for vulnerability in vulnerabilities:
        key = (vulnerability["type"], vulnerability["description"])
        if key in seen:
            continue
        seen.add(key)
        unique_vulnerabilities.append(vulnerability)

    return {
        "risk_level": risk_level,
        "vulnerabilities": unique_vulnerabilities,
        "mitigation_suggestions": _unique(mitigations),
        "threat_vectors": _unique(threat_vectors),
    }


def generate_performance_impact(
    macros: list[SPFMacro], mechanisms: list[SPFMacroMechanism]
) -> PerformanceImpact:
    """Aggregates the per-term performance estimates"""
    total_lookups = sum(
        m["performance_impact"]["dns_lookups_per_email"] for m in mechanisms
    )
    concerns = []
    alternatives = []
    for mechanism in mechanisms:
        concerns += mechanism["performance_impact"]["scalability_concerns"]
        alternatives += mechanism["performance_impact"]["recommended_alternatives"]

    if total_lookups > 5 or len(macros) > 8:
        overhead = "severe"
    elif total_lookups > 3 or len(macros) > 5:
        overhead = "significant"
    elif total_lookups > 1 or len(macros) > 2:
        overhead = "moderate"
    else:
        overhead = "minimal"

    return {
        "dns_lookups_per_email": round(total_lookups, 1),
        "processing_overhead": overhead,
        "scalability_concerns": _unique(concerns),
        "recommended_alternatives": _unique(alternatives),
    }


def generate_complexity_analysis(macros: list[SPFMacro]) -> MacroComplexityAnalysis:
    """
    Scores how hard the macros of a record are to read and maintain

    Args:
        macros (list): Every macro in the record

    Returns:
        dict: A ``MacroComplexityAnalysis``
    """
    total_modifiers = sum(len(m.modifiers) for m in macros)
    average = total_modifiers / len(macros) if macros else 0
    complexity_score = calculate_complexity_score(macros)
    if complexity_score > 70 or len(macros) > 6:
        maintenance_risk = "high"
    elif complexity_score > 40 or len(macros) > 3:
        maintenance_risk = "medium"
    else:
        maintenance_risk = "low"
    return {
        "total_macros": len(macros),
        "unique_macro_types": len(set(m.type for m in macros if m.type)),
        "average_modifiers_per_macro": round(average, 1),
        "complexity_score": complexity_score,
        "readability_score": max(0, 100 - complexity_score),
        "maintenance_risk": maintenance_risk,
    }


def generate_optimization_recommendations(
    mechanisms: list[SPFMacroMechanism],
    security_assessment: SecurityAssessment,
    performance_impact: PerformanceImpact,
    complexity_analysis: MacroComplexityAnalysis,
) -> list[OptimizationRecommendation]:
    """
    Builds the ranked recommendations for a record's macros

    Recommendations are sorted by priority, then by their estimated impact.
    """
    recommendations: list[OptimizationRecommendation] = []
    for vulnerability in security_assessment["vulnerabilities"]:
        if vulnerability["severity"] in ("critical", "high"):
            priority = vulnerability["severity"]
        else:
            priority = "medium"
        recommendations.append(
            {
                "priority": priority,
                "category": "security",
                "title": f"Fix {vulnerability['type'].replace('_', ' ')} vulnerability",
                "description": vulnerability["description"],
                "current_issue": vulnerability["impact"],
                "suggested_fix": vulnerability["remediation"],
                "impact_estimate": "Improves security posture and reduces attack surface",
                "estimated_impact": float(len(vulnerability["affected_macros"])),
                "effort_estimate": "high"
                if vulnerability["type"] == "dns_amplification"
                else "medium",
            }
        )

    lookups = performance_impact["dns_lookups_per_email"]
    if lookups > 3:
        recommendations.append(
            {
                "priority": "high",
                "category": "performance",
                "title": "Reduce DNS lookups per email",
                "description": f"Current: {lookups} lookups per email",
                "current_issue": "High DNS lookup count causes delays and potential timeouts",
                "suggested_fix": "Replace dynamic macros with static IP ranges where possible",
                "impact_estimate": "Significantly faster SPF evaluation and better reliability",
                "estimated_impact": lookups,
                "effort_estimate": "medium",
            }
        )
    if performance_impact["processing_overhead"] == "severe":
        recommendations.append(
            {
                "priority": "high",
                "category": "performance",
                "title": "Simplify complex macro processing",
                "description": "Current macro configuration causes severe processing overhead",
                "current_issue": "Complex macros slow down email processing",
                "suggested_fix": "Reduce macro complexity and consolidate similar patterns",
                "impact_estimate": "Faster email processing and better scalability",
                "estimated_impact": float(complexity_analysis["total_macros"]),
                "effort_estimate": "medium",
            }
        )
    if complexity_analysis["maintenance_risk"] == "high":
        score = complexity_analysis["complexity_score"]
        recommendations.append(
            {
                "priority": "medium",
                "category": "maintainability",
                "title": "Reduce SPF record complexity",
                "description": f"Complexity score: {score}/100",
                "current_issue": "High complexity makes the record difficult to maintain and debug",
                "suggested_fix": "Simplify macros, reduce modifier usage, and improve documentation",
                "impact_estimate": "Easier maintenance and reduced risk of configuration errors",
                "estimated_impact": score / 10,
                "effort_estimate": "medium",
            }
        )
    malformed = [
        macro for m in mechanisms for macro in m["macros"] if not macro.is_valid
    ]
    if malformed:
        recommendations.append(
            {
                "priority": "high",
                "category": "compliance",
                "title": "Fix malformed macro syntax",
                "description": f"{len(malformed)} macro(s) have syntax errors",
                "current_issue": "Malformed macros may cause SPF evaluation failures",
                "suggested_fix": "Correct macro syntax according to RFC 7208",
                "impact_estimate": "Ensures reliable SPF evaluation across all email receivers",
                "estimated_impact": float(len(malformed)),
                "effort_estimate": "low",
            }
        )

    recommendations.sort(
        key=lambda r: (PRIORITY_ORDER[r["priority"]], r["estimated_impact"]),
        reverse=True,
    )
    return recommendations


def analyze_spf_record_macros(
    record: SPFRecord, context: Optional[MacroExpansionContext] = None
) -> SPFRecordMacroAnalysis:
    """
    Analyzes every macro in a parsed SPF record

    Args:
        record (SPFRecord): A parsed record
        context (MacroExpansionContext): The context used for the expanded
                                         examples; defaults to
                                         ``DEFAULT_MACRO_CONTEXT``

    Returns:
        dict: A ``SPFRecordMacroAnalysis``
    """
    context = context or DEFAULT_MACRO_CONTEXT
    logging.debug(f"Analyzing macros in SPF record: {record.raw}")
    macro_mechanisms: list[SPFMacroMechanism] = []
    macros: list[SPFMacro] = []
    for index, mechanism in enumerate(record.mechanisms):
        if not mechanism.macros:
            continue
        macro_mechanisms.append(
            _analyze_term(
                index,
                mechanism.type,
                mechanism.type,
                mechanism.value,
                mechanism.macros,
                context,
            )
        )
        macros += mechanism.macros
    for index, modifier in enumerate(record.modifiers):
        if not modifier.macros:
            continue
        macro_mechanisms.append(
            _analyze_term(
                len(record.mechanisms) + index,
                f"modifier:{modifier.type}",
                modifier.type,
                modifier.value,
                modifier.macros,
                context,
            )
        )
        macros += modifier.macros

    security_assessment = generate_security_assessment(macro_mechanisms)
    performance_impact = generate_performance_impact(macros, macro_mechanisms)
    complexity_analysis = generate_complexity_analysis(macros)
    results: SPFRecordMacroAnalysis = {
        "record": record,
        "macro_mechanisms": macro_mechanisms,
        "overall_analysis": parse_spf_macros(record.raw),
        "security_assessment": security_assessment,
        "performance_impact": performance_impact,
        "complexity_analysis": complexity_analysis,
        "optimization_recommendations": generate_optimization_recommendations(
            macro_mechanisms,
            security_assessment,
            performance_impact,
            complexity_analysis,
        ),
    }
    return results


def has_spf_macros(record: SPFRecord) -> bool:
    return record.has_macros


def get_macro_summary(record: SPFRecord) -> MacroSummary:
    """
    Summarizes the macros of a record for a dashboard or CLI line

    Args:
        record (SPFRecord): A parsed record

    Returns:
        dict: ``count``, ``risk_level``, ``has_high_risk_macros`` and up to
        three ``primary_concerns``
    """
    if not has_spf_macros(record):
        return {
            "count": 0,
            "risk_level": "low",
            "has_high_risk_macros": False,
            "primary_concerns": [],
        }
    analysis = analyze_spf_record_macros(record)
    concerns = []
    if analysis["security_assessment"]["vulnerabilities"]:
        concerns.append("Security vulnerabilities detected")
    if analysis["performance_impact"]["dns_lookups_per_email"] > 3:
        concerns.append("High DNS lookup overhead")
    if analysis["complexity_analysis"]["maintenance_risk"] == "high":
        concerns.append("High maintenance complexity")
    risk_level = analysis["security_assessment"]["risk_level"]
    return {
        "count": record.macro_count,
        "risk_level": risk_level,
        "has_high_risk_macros": RISK_LEVELS.index(risk_level) >= 2,
        "primary_concerns": concerns[:3],
    }


def analyze_spf_record(record: SPFRecord) -> SPFAnalysis:
    """
    Summarizes the lookup usage, risk and compliance of a record

    Args:
        record (SPFRecord): A parsed record

    Returns:
        dict: The lookup breakdown, optimizer suggestions, risk level and
        compliance status (``compliant``, ``warning`` or ``failing``)
    """
    results: SPFAnalysis = {
        "record": record,
        "lookup_breakdown": lookup_breakdown(record),
        "optimization_suggestions": generate_optimization_suggestions(record),
        "risk_level": calculate_risk_level(record.total_lookups),
        "compliance_status": calculate_compliance_status(record),
    }
    return results
