# -*- coding: utf-8 -*-

"""Analyzes, flattens and safely updates SPF records"""

from __future__ import annotations

import json
import logging
from csv import DictWriter
from io import StringIO
from time import sleep
from typing import Optional, Union
from collections.abc import Sequence

import spfwarden._constants
from spfwarden.analysis import (
    analyze_spf_record,
    analyze_spf_record_macros,
    get_macro_summary,
    has_spf_macros,
)
from spfwarden.esp import ESPIntelligence, ESPLearningPolicy, ESPProfile
from spfwarden.flattening import (
    FlatteningOptions,
    SPFResolver,
    consolidate_ip_addresses,
    flatten_spf_includes,
    flatten_spf_record,
    validate_flattened_record,
)
from spfwarden.history import (
    HistoryStore,
    InMemoryHistoryStore,
    IPChangeEvent,
    RateLimitExceeded,
)
from spfwarden.macros import (
    DEFAULT_MACRO_CONTEXT,
    MacroExpansionContext,
    expand_macros_in_text,
    parse_spf_macros,
    preview_macro_expansion,
)
from spfwarden.optimizer import (
    calculate_risk_assessment,
    generate_optimization_suggestions,
    generate_optimized_record,
    validate_optimized_record,
)
from spfwarden.safeguards import (
    AGGRESSIVE,
    BALANCED,
    CONSERVATIVE,
    AutomationContext,
    BusinessHours,
    DeploymentMetrics,
    SafeguardPolicy,
    SafeguardPolicyError,
    SPFAutomationSafeguards,
    load_policy,
)
from spfwarden.spf import (
    SPFError,
    SPFRecord,
    parse_spf_record,
    parse_spf_record_from_string,
    validate_spf_syntax,
)
from spfwarden.utils import (
    DNSCache,
    DNSException,
    DNSLookup,
    DNSPythonLookup,
    HTTPDNSLookup,
    StaticDNSLookup,
    normalize_domain,
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


__version__ = spfwarden._constants.__version__


def analyze_record(
    record: Union[str, SPFRecord],
    *,
    context: Optional[MacroExpansionContext] = None,
) -> dict:
    """
    Parses an SPF record and runs every analysis on it

    Args:
        record: An SPF record string or a parsed ``SPFRecord``
        context (MacroExpansionContext): The context used to test macro
                                         expansion

    Returns:
        dict: ``record``, ``analysis``, ``macro_analysis`` and
        ``risk_assessment``
    """
    if isinstance(record, str):
        record = parse_spf_record_from_string(record)
    return {
        "record": record.to_dict(),
        "analysis": analyze_spf_record(record),
        "macro_analysis": analyze_spf_record_macros(record, context),
        "risk_assessment": calculate_risk_assessment(record),
    }


def analyze_domains(
    domains: Sequence[str],
    *,
    resolver: Optional[SPFResolver] = None,
    context: Optional[MacroExpansionContext] = None,
    wait: float = 0.0,
) -> Union[dict, list[dict]]:
    """
    Retrieves, parses and analyzes the SPF records of the given domains

    Args:
        domains (list): A list of domains to check
        resolver (SPFResolver): The resolver used for DNS lookups
        context (MacroExpansionContext): The context used to test macro
                                         expansion
        wait (float): Number of seconds to wait between checking domains

    Returns:
        A dictionary of results for a single domain, or a list of them
    """
    domains = sorted(set(map(normalize_domain, domains)))
    owns_resolver = resolver is None
    resolver = resolver or SPFResolver()
    results = []
    try:
        for domain in domains:
            logging.debug(f"Checking: {domain}")
            record = parse_spf_record(domain, resolver)
            domain_results = {"domain": domain}
            if record.version:
                domain_results.update(analyze_record(record, context=context))
            else:
                domain_results["record"] = record.to_dict()
            results.append(domain_results)
            if wait > 0.0 and domain != domains[-1]:
                logging.debug(f"Sleeping for {wait} seconds")
                sleep(wait)
    finally:
        if owns_resolver:
            resolver.close()
    if len(results) == 1:
        return results[0]
    return results


def _json_default(value):
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def results_to_json(
    results: Union[dict[str, object], list[dict[str, object]]],
) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2, default=_json_default)


def results_to_csv(rows: Sequence[dict]) -> str:
    """
    Converts a list of flat result rows, such as optimization suggestions, to
    CSV

    Args:
        rows (list): Dictionaries that share the same keys

    Returns:
        str: Results in CSV format
    """
    output = StringIO(newline="\n")
    if len(rows) == 0:
        return ""
    fields = list(rows[0].keys())
    writer = DictWriter(output, fieldnames=fields, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(
            {
                key: "|".join(map(str, value)) if isinstance(value, list) else value
                for key, value in row.items()
            }
        )
    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)


__all__ = [
    "__version__",
    "AGGRESSIVE",
    "BALANCED",
    "CONSERVATIVE",
    "DEFAULT_MACRO_CONTEXT",
    "AutomationContext",
    "BusinessHours",
    "DNSCache",
    "DNSException",
    "DNSLookup",
    "DNSPythonLookup",
    "DeploymentMetrics",
    "ESPIntelligence",
    "ESPLearningPolicy",
    "ESPProfile",
    "FlatteningOptions",
    "HTTPDNSLookup",
    "HistoryStore",
    "IPChangeEvent",
    "InMemoryHistoryStore",
    "MacroExpansionContext",
    "RateLimitExceeded",
    "SPFAutomationSafeguards",
    "SPFError",
    "SPFRecord",
    "SPFResolver",
    "SafeguardPolicy",
    "SafeguardPolicyError",
    "StaticDNSLookup",
    "analyze_domains",
    "analyze_record",
    "analyze_spf_record",
    "analyze_spf_record_macros",
    "calculate_risk_assessment",
    "consolidate_ip_addresses",
    "expand_macros_in_text",
    "flatten_spf_includes",
    "flatten_spf_record",
    "generate_optimization_suggestions",
    "generate_optimized_record",
    "get_macro_summary",
    "has_spf_macros",
    "load_policy",
    "output_to_file",
    "parse_spf_macros",
    "parse_spf_record",
    "parse_spf_record_from_string",
    "preview_macro_expansion",
    "results_to_csv",
    "results_to_json",
    "validate_flattened_record",
    "validate_optimized_record",
    "validate_spf_syntax",
]
