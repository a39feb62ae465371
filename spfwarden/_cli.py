#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Analyzes, flattens and safely updates SPF records"""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
from argparse import ArgumentParser
from datetime import datetime, timezone

from spfwarden import (
    __version__,
    analyze_domains,
    analyze_record,
    output_to_file,
    results_to_csv,
    results_to_json,
)
from spfwarden.flattening import (
    FlatteningOptions,
    SPFResolver,
    flatten_spf_includes,
    flatten_spf_record,
    validate_flattened_record,
)
from spfwarden.history import InMemoryHistoryStore, IPChangeEvent, UpdateRecord
from spfwarden.macros import DEFAULT_MACRO_CONTEXT
from spfwarden.optimizer import (
    calculate_risk_assessment,
    estimate_lookup_reduction,
    generate_optimization_suggestions,
    generate_optimized_record,
    validate_optimized_record,
)
from spfwarden.safeguards import (
    AutomationContext,
    BusinessHours,
    EmergencyContact,
    SPFAutomationSafeguards,
    load_policy,
)
from spfwarden.spf import parse_spf_record, parse_spf_record_from_string
from spfwarden.utils import DNSPythonLookup, HTTPDNSLookup, normalize_domain

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


def _is_record(value: str) -> bool:
    return value.strip().strip('"').lower().startswith("v=spf1")


def _build_resolver(args) -> SPFResolver:
    if args.doh_url:
        dns_lookup = HTTPDNSLookup(args.doh_url, timeout=args.timeout)
    else:
        dns_lookup = DNSPythonLookup(
            nameservers=args.nameserver, timeout=args.timeout, timeout_retries=0
        )
    return SPFResolver(dns_lookup, timeout=args.timeout)


def _macro_context(args, domain: str = None):
    values = {}
    if args.sender_ip:
        values["sender_ip"] = args.sender_ip
    if args.sender:
        values["sender_email"] = args.sender
    if args.helo:
        values["helo_domain"] = args.helo
    if domain:
        values["current_domain"] = normalize_domain(domain)
        values["validated_domain"] = normalize_domain(domain)
    return dataclasses.replace(DEFAULT_MACRO_CONTEXT, **values)


def _parse(args, resolver: SPFResolver):
    if _is_record(args.target[0]):
        return analyze_record(" ".join(args.target), context=_macro_context(args))
    return analyze_domains(
        args.target, resolver=resolver, context=_macro_context(args), wait=args.wait
    )


def _flatten(args, resolver: SPFResolver):
    target = " ".join(args.target)
    domain = args.domain
    options = FlatteningOptions(
        consolidate_cidr=not args.no_consolidate,
        include_nested=args.nested,
        max_depth=args.max_depth,
        context=_macro_context(args, domain) if domain else None,
    )
    if _is_record(target):
        result = flatten_spf_record(
            target, args.include, domain=domain, resolver=resolver, options=options
        )
    else:
        options = dataclasses.replace(options, context=_macro_context(args, target))
        result = flatten_spf_includes(
            target, args.include, resolver=resolver, options=options
        )
    if result["success"]:
        result["validation"] = validate_flattened_record(result["flattened_record"])
    return result


def _optimize(args, resolver: SPFResolver):
    target = " ".join(args.target)
    if _is_record(target):
        record = parse_spf_record_from_string(target)
    else:
        record = parse_spf_record(target, resolver)
        if not record.version:
            return {"domain": target, "errors": record.errors}
    suggestions = generate_optimization_suggestions(record)
    optimized = generate_optimized_record(record, suggestions)
    return {
        "record": record.raw,
        "suggestions": suggestions,
        "estimated_lookup_reduction": estimate_lookup_reduction(suggestions),
        "optimized_record": optimized,
        "validation": validate_optimized_record(optimized),
        "risk_assessment": calculate_risk_assessment(record),
    }


def _parse_time(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _load_change_set(path: str) -> dict:
    with open(path) as change_file:
        return json.load(change_file)


def _validate(args, resolver: SPFResolver):
    change_set = _load_change_set(args.changes)
    policy = load_policy(args.policy)
    domain = normalize_domain(change_set["domain"])
    changes = [IPChangeEvent.from_dict(c) for c in change_set.get("changes", [])]
    updates = [
        UpdateRecord(domain, u.get("record", ""), _parse_time(u["timestamp"]))
        for u in change_set.get("previous_updates", [])
    ]
    history = InMemoryHistoryStore(
        updates=updates,
        events=[IPChangeEvent.from_dict(e) for e in change_set.get("history", [])],
    )
    current_time = datetime.now(timezone.utc)
    if "current_time" in change_set:
        current_time = _parse_time(change_set["current_time"])
    start, end = args.business_hours.split("-", 1)
    contact = None
    if args.emergency_contact:
        contact = EmergencyContact(args.emergency_contact)
    context = AutomationContext(
        domain=domain,
        current_time=current_time,
        business_hours=BusinessHours(start, end, args.timezone),
        emergency_contact=contact,
    )
    safeguards = SPFAutomationSafeguards(history, resolver=resolver)
    proposed = change_set["proposed_record"]
    return {
        "domain": domain,
        "policy": policy.to_dict(),
        "decision": safeguards.validate_automatic_update(
            domain, proposed, changes, policy, context
        ),
        "safety_tests": safeguards.perform_safety_testing(domain, proposed, changes),
        "rollback_plan": safeguards.create_rollback_plan(
            domain,
            change_set.get("current_record", ""),
            proposed,
            changes,
            policy,
            context,
        ),
    }


def _csv_rows(command: str, results) -> list[dict]:
    if command == "optimize":
        return results.get("suggestions", [])
    if command == "flatten":
        return [
            {key: value for key, value in include.items() if key != "nested"}
            for include in results.get("includes", [])
        ]
    if command == "parse":
        if isinstance(results, dict):
            results = [results]
        rows = []
        for result in results:
            breakdown = result.get("analysis", {}).get("lookup_breakdown", {})
            for item in breakdown.get("detailed_breakdown", []):
                rows.append(dict(domain=result.get("domain", ""), **item))
        return rows
    return []


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "-f",
        "--format",
        default="json",
        help="specify JSON or CSV screen output format",
    )
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more file paths to output to "
        "(must end in .json or .csv) "
        "(silences screen output)",
    )
    arg_parser.add_argument(
        "-n", "--nameserver", nargs="+", help="nameservers to query"
    )
    arg_parser.add_argument(
        "--doh-url", help="the URL of an HTTP DNS lookup service to use instead"
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help="number of seconds to wait for an answer from DNS (default 2.0)",
        type=float,
        default=2.0,
    )
    arg_parser.add_argument("--sender-ip", help="the sender IP used to expand macros")
    arg_parser.add_argument("--sender", help="the sender address used to expand macros")
    arg_parser.add_argument("--helo", help="the HELO domain used to expand macros")
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )
    subparsers = arg_parser.add_subparsers(dest="command", required=True)

    parse_parser = subparsers.add_parser(
        "parse", help="parse and analyze SPF records or the records of domains"
    )
    parse_parser.add_argument("target", nargs="+", help="an SPF record or domains")
    parse_parser.add_argument(
        "-w",
        "--wait",
        type=float,
        help="number of seconds to wait between checking domains (default 0.0)",
        default=0.0,
    )

    flatten_parser = subparsers.add_parser(
        "flatten", help="replace include mechanisms with IP addresses"
    )
    flatten_parser.add_argument("target", nargs="+", help="an SPF record or a domain")
    flatten_parser.add_argument(
        "-i", "--include", nargs="+", help="the includes to flatten (default all)"
    )
    flatten_parser.add_argument(
        "-d", "--domain", help="the domain a record given as text is published on"
    )
    flatten_parser.add_argument(
        "--no-consolidate", action="store_true", help="do not merge IPs into CIDR ranges"
    )
    flatten_parser.add_argument(
        "--nested", action="store_true", help="also flatten nested includes"
    )
    flatten_parser.add_argument(
        "--max-depth", type=int, default=3, help="deepest nested include (default 3)"
    )

    optimize_parser = subparsers.add_parser(
        "optimize", help="suggest optimizations for an SPF record"
    )
    optimize_parser.add_argument("target", nargs="+", help="an SPF record or a domain")

    validate_parser = subparsers.add_parser(
        "validate", help="run the automatic update safeguards on a change set"
    )
    validate_parser.add_argument("changes", help="path to a JSON change set")
    validate_parser.add_argument(
        "-p",
        "--policy",
        default="balanced",
        help="conservative, balanced, aggressive, or a JSON policy file "
        "(default balanced)",
    )
    validate_parser.add_argument(
        "--business-hours", default="09:00-17:00", help="HH:MM-HH:MM (default 09:00-17:00)"
    )
    validate_parser.add_argument(
        "--timezone", default="UTC", help="the business hours time zone (default UTC)"
    )
    validate_parser.add_argument(
        "--emergency-contact", help="an emergency contact email address"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")

    commands = {
        "parse": _parse,
        "flatten": _flatten,
        "optimize": _optimize,
        "validate": _validate,
    }
    with _build_resolver(args) as resolver:
        try:
            results = commands[args.command](args, resolver)
        except (OSError, ValueError, KeyError) as error:
            logging.error(f"Unable to {args.command}: {error}")
            sys.exit(1)

    if args.output is None:
        if args.format.lower() == "csv":
            print(results_to_csv(_csv_rows(args.command, results)))
        else:
            print(results_to_json(results))
    else:
        for path in args.output:
            json_path = path.lower().endswith(".json")
            csv_path = path.lower().endswith(".csv")

            if not json_path and not csv_path:
                logging.error(f"Output path {path} must end in .json or .csv")
            else:
                if json_path:
                    output_to_file(path, results_to_json(results))
                elif csv_path:
                    output_to_file(path, results_to_csv(_csv_rows(args.command, results)))


if __name__ == "__main__":
    _main()
