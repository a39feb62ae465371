# -*- coding: utf-8 -*-
"""SPF include resolution and record flattening"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import ipaddress
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Optional, TypedDict

from spfwarden._constants import (
    CIDR_CONSOLIDATION_THRESHOLD,
    DNS_LOOKUP_TIMEOUT,
    DNS_MAX_WORKERS,
    MAX_DNS_LOOKUPS,
    MAX_IPS_PER_RECORD,
    MAX_RECORD_LENGTH,
)
from spfwarden.macros import (
    DEFAULT_MACRO_CONTEXT,
    MacroExpansionContext,
    expand_macros_in_text,
)
from spfwarden.spf import (
    SPFError,
    SPFMechanism,
    SPFRecord,
    parse_spf_record,
    parse_spf_record_from_string,
    select_spf_record,
)
from spfwarden.utils import (
    DNSCache,
    DNSLookup,
    DNSLookupResult,
    DNSPythonLookup,
    lookup_failure,
    lookup_success,
    normalize_domain,
    parse_mx_record,
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

IncludeState = Literal["pending", "resolving", "resolved", "failed", "cycle-detected"]


class IncludeResolution(TypedDict):
    domain: str
    state: IncludeState
    depth: int
    ips: list[str]
    nested_includes: list[str]
    nested: list[IncludeResolution]
    errors: list[str]


class ConsolidationResult(TypedDict):
    consolidated_ranges: list[str]
    original_count: int
    consolidated_count: int


class FlatteningResult(TypedDict):
    success: bool
    flattened_record: str
    original_lookups: int
    new_lookups: int
    ip_count: int
    resolved_ips: list[str]
    includes: list[IncludeResolution]
    warnings: list[str]
    errors: list[str]


class FlattenedRecordValidation(TypedDict):
    valid: bool
    lookup_count: int
    ip_count: int
    record_size: int
    warnings: list[str]
    errors: list[str]


@dataclass(frozen=True)
class FlatteningOptions:
    """
    Options for flattening a record

    Args:
        consolidate_cidr (bool): Merge dense /24 groups into CIDR blocks
        max_ips_per_record (int): Warn when the flattened record lists more
                                  addresses than this
        include_nested (bool): Also resolve includes found inside flattened
                               includes, down to ``max_depth``
        max_depth (int): The deepest nested include to resolve
        context (MacroExpansionContext): Used to expand macros in include
                                         targets before they are looked up
    """

    consolidate_cidr: bool = True
    max_ips_per_record: int = MAX_IPS_PER_RECORD
    include_nested: bool = False
    max_depth: int = 3
    context: Optional[MacroExpansionContext] = None


class SPFResolver(object):
    """
    Resolves SPF mechanisms to IP addresses through a DNS collaborator

    Lookups run on a bounded thread pool and each one is given its own
    timeout. Successful answers are kept in the injected ``DNSCache``.
    Setting ``cancel_event`` (or calling ``cancel``) abandons the lookups
    that have not completed yet; answers that are already cached stay valid.

    Args:
        dns_lookup (DNSLookup): The DNS collaborator; defaults to dnspython
        cache (DNSCache): The answer cache; defaults to a fresh cache
        timeout (float): Seconds to wait for each lookup
        max_workers (int): The maximum number of concurrent lookups
        cancel_event (threading.Event): Set to abandon in-flight resolution
    """

    def __init__(
        self,
        dns_lookup: Optional[DNSLookup] = None,
        *,
        cache: Optional[DNSCache] = None,
        timeout: float = DNS_LOOKUP_TIMEOUT,
        max_workers: int = DNS_MAX_WORKERS,
        cancel_event: Optional[threading.Event] = None,
    ):
        # The resolver enforces the timeout, so dnspython does not retry
        self.dns_lookup = dns_lookup or DNSPythonLookup(
            timeout=timeout, timeout_retries=0
        )
        self.cache = cache if cache is not None else DNSCache()
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="spfwarden-dns"
        )
        self._lock = threading.Lock()
        self.query_count = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def cancel(self) -> None:
        logging.debug("Cancelling SPF resolution")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _query(self, domain: str, record_type: str) -> DNSLookupResult:
        with self._lock:
            self.query_count += 1
        try:
            result = self.dns_lookup.lookup(domain, record_type)
        except Exception as error:
            # A misbehaving collaborator only fails its own branch
            logging.debug(f"DNS lookup of {record_type} {domain} raised {error!r}")
            return lookup_failure(error)
        if result["success"]:
            self.cache.set(record_type, domain, result["records"])
        return result

    def lookup_many(
        self, queries: Sequence[tuple[str, str]]
    ) -> list[DNSLookupResult]:
        """
        Runs several lookups concurrently

        Args:
            queries (list): ``(domain, record_type)`` pairs

        Returns:
            list: One tagged result per query, in the same order
        """
        results: list[Optional[DNSLookupResult]] = [None] * len(queries)
        futures = {}
        for i, (domain, record_type) in enumerate(queries):
            domain = normalize_domain(domain)
            record_type = record_type.upper()
            if self.cancelled:
                results[i] = lookup_failure("Resolution cancelled", soft=True)
                continue
            cached = self.cache.get(record_type, domain)
            if cached is not None:
                logging.debug(f"Cache hit for {record_type} records of {domain}")
                results[i] = lookup_success(cached)
                continue
            logging.debug(f"Looking up {record_type} records for {domain}")
            futures[i] = (
                domain,
                record_type,
                self._executor.submit(self._query, domain, record_type),
            )
        for i, (domain, record_type, future) in futures.items():
            if self.cancelled:
                future.cancel()
                results[i] = lookup_failure("Resolution cancelled", soft=True)
                continue
            try:
                results[i] = future.result(timeout=self.timeout)
            except concurrent.futures.TimeoutError:
                future.cancel()
                results[i] = lookup_failure(
                    f"{record_type} lookup for {domain} timed out after "
                    f"{self.timeout} seconds",
                    soft=True,
                )
            except concurrent.futures.CancelledError:
                results[i] = lookup_failure("Resolution cancelled", soft=True)
        return results

    def lookup(self, domain: str, record_type: str) -> DNSLookupResult:
        return self.lookup_many([(domain, record_type)])[0]

    def resolve_txt(self, domain: str) -> DNSLookupResult:
        return self.lookup(domain, "TXT")

    def resolve_a(self, domain: str) -> DNSLookupResult:
        return self.lookup(domain, "A")

    def resolve_mx(self, domain: str) -> DNSLookupResult:
        return self.lookup(domain, "MX")

    def _resolve_mx_hosts(self, domain: str) -> tuple[list[str], list[str]]:
        ips = []
        errors = []
        mx = self.resolve_mx(domain)
        if not mx["success"]:
            return ips, [f"Failed to resolve MX record for {domain}: {mx['error']}"]
        hosts = []
        for answer in mx["records"]:
            try:
                hosts.append(parse_mx_record(answer)[1])
            except ValueError:
                errors.append(f"Invalid MX answer for {domain}: {answer}")
        for host, result in zip(hosts, self.lookup_many([(h, "A") for h in hosts])):
            if result["success"]:
                ips += result["records"]
            else:
                errors.append(
                    f"Failed to resolve MX hostname {host} for {domain}: "
                    f"{result['error']}"
                )
        return ips, errors

    def resolve_mechanisms(
        self,
        mechanisms: Sequence[SPFMechanism],
        current_domain: str,
        context: Optional[MacroExpansionContext] = None,
    ) -> tuple[list[str], list[str]]:
        """
        Resolves ``ip4``, ``ip6``, ``a`` and ``mx`` mechanisms to addresses

        ``a`` and ``mx`` lookups run concurrently. Each mechanism's
        ``resolved_ips`` is filled in, whatever its qualifier. A failed lookup
        is reported in the returned errors and does not stop the other
        mechanisms.

        Args:
            mechanisms (list): Parsed mechanisms
            current_domain (str): The domain the mechanisms were published on
            context (MacroExpansionContext): Used to expand macro targets

        Returns:
            tuple: ``(ips, errors)``, where ``ips`` only holds the addresses
            of ``+`` mechanisms
        """
        ips = []
        errors = []
        a_targets = []
        mx_targets = []
        for mechanism in mechanisms:
            if mechanism.type in ("ip4", "ip6"):
                mechanism.resolved_ips = [mechanism.value]
            elif mechanism.type in ("a", "mx"):
                target = mechanism.value or current_domain
                if mechanism.has_macros:
                    if context is None:
                        errors.append(
                            f"Cannot resolve {mechanism.to_string()} without a "
                            "macro expansion context"
                        )
                        continue
                    target = expand_macros_in_text(target, context)
                if mechanism.type == "a":
                    a_targets.append((mechanism, target))
                else:
                    mx_targets.append((mechanism, target))

        a_results = self.lookup_many([(target, "A") for _, target in a_targets])
        for (mechanism, target), result in zip(a_targets, a_results):
            if result["success"]:
                mechanism.resolved_ips = list(result["records"])
            else:
                errors.append(
                    f"Failed to resolve A record for {target}: {result['error']}"
                )
        # Warm the cache so the MX hosts below are resolved concurrently
        self.lookup_many([(target, "MX") for _, target in mx_targets])
        for mechanism, target in mx_targets:
            mx_ips, mx_errors = self._resolve_mx_hosts(target)
            mechanism.resolved_ips = mx_ips
            errors += mx_errors

        for mechanism in mechanisms:
            if mechanism.qualifier == "+":
                ips += _mechanism_ips(mechanism)
        return ips, errors

    def resolve_include_chain(
        self,
        include_domain: str,
        visited: tuple[str, ...] = (),
        *,
        depth: int = 0,
        include_nested: bool = False,
        max_depth: int = 3,
        context: Optional[MacroExpansionContext] = None,
    ) -> IncludeResolution:
        """
        Resolves an included domain's SPF record to IP addresses

        Nested includes are reported in ``nested_includes`` and only
        resolved when ``include_nested`` is set. ``visited`` holds the
        ancestors of this include; each recursive call receives a new tuple
        so sibling branches never see each other.

        Args:
            include_domain (str): The included domain
            visited (tuple): Domains already on the path to this include
            depth (int): The nesting depth of this include
            include_nested (bool): Resolve nested includes as well
            max_depth (int): The deepest nested include to resolve
            context (MacroExpansionContext): Used to expand macro targets

        Returns:
            dict: An ``IncludeResolution``
        """
        domain = normalize_domain(include_domain)
        resolution: IncludeResolution = {
            "domain": domain,
            "state": "pending",
            "depth": depth,
            "ips": [],
            "nested_includes": [],
            "nested": [],
            "errors": [],
        }
        if domain in visited:
            chain = " -> ".join(visited + (domain,))
            resolution["state"] = "cycle-detected"
            resolution["errors"].append(f"Circular dependency detected: {chain}")
            logging.debug(f"Include loop: {chain}")
            return resolution

        resolution["state"] = "resolving"
        logging.debug(f"Resolving SPF include {domain}")
        if self.cancelled:
            resolution["state"] = "failed"
            resolution["errors"].append("Resolution cancelled")
            return resolution
        txt = self.resolve_txt(domain)
        if not txt["success"]:
            resolution["state"] = "failed"
            resolution["errors"].append(
                f"Failed to retrieve SPF record for {domain}: {txt['error']}"
            )
            return resolution
        try:
            record_text = select_spf_record(txt["records"], domain)
        except SPFError as error:
            resolution["state"] = "failed"
            resolution["errors"].append(str(error))
            return resolution
        record = parse_spf_record_from_string(record_text)
        if not record.is_valid:
            resolution["state"] = "failed"
            resolution["errors"].append(
                f"Invalid SPF record for {domain}: {', '.join(record.errors)}"
            )
            return resolution

        include_context = context
        if context is not None:
            include_context = dataclasses.replace(context, current_domain=domain)
        ips, errors = self.resolve_mechanisms(
            record.mechanisms, domain, include_context
        )
        resolution["ips"] = ips
        resolution["errors"] += errors
        # Only pass results make an include match, so other terms drop out
        # unless they would have rejected an address a later term passes
        conflicts = _shadowed_pass_terms(record.mechanisms)
        if conflicts:
            resolution["state"] = "failed"
            resolution["ips"] = []
            resolution["errors"] += [
                f"{domain} cannot be flattened without authorizing addresses "
                f"it rejects: {conflict}"
                for conflict in conflicts
            ]
            return resolution
        ignored = [
            m.to_string()
            for m in record.mechanisms
            if m.qualifier != "+" and m.type != "all"
        ]
        if ignored:
            resolution["errors"].append(
                f"Ignored non-pass terms of {domain}: {', '.join(ignored)}"
            )
        nested = [
            m.value
            for m in record.mechanisms
            if m.type == "include" and m.qualifier == "+"
        ]
        nested += [m.value for m in record.modifiers if m.type == "redirect"]
        resolution["nested_includes"] = nested

        if include_nested and nested:
            if depth + 1 > max_depth:
                resolution["errors"].append(
                    f"Nested includes of {domain} exceed the maximum depth of {max_depth}"
                )
            else:
                # Prefetch the nested records concurrently
                self.lookup_many([(n, "TXT") for n in nested if "%" not in n])
                for nested_domain in nested:
                    if "%" in nested_domain:
                        if include_context is None:
                            resolution["errors"].append(
                                f"Cannot resolve include:{nested_domain} without a "
                                "macro expansion context"
                            )
                            continue
                        nested_domain = expand_macros_in_text(
                            nested_domain, include_context
                        )
                    child = self.resolve_include_chain(
                        nested_domain,
                        visited + (domain,),
                        depth=depth + 1,
                        include_nested=include_nested,
                        max_depth=max_depth,
                        context=context,
                    )
                    resolution["nested"].append(child)
                    resolution["ips"] += child["ips"]
                    resolution["errors"] += child["errors"]

        if resolution["ips"]:
            resolution["state"] = "resolved"
        else:
            resolution["state"] = "failed"
            resolution["errors"].append(f"Failed to resolve any IPs for {domain}")
        return resolution


def _dedupe(items: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _mechanism_ips(mechanism: SPFMechanism) -> list[str]:
    cidr = mechanism.cidr.split("//")[0] if mechanism.type in ("a", "mx") else ""
    ips = []
    for ip in mechanism.resolved_ips:
        if cidr and ":" not in ip:
            ip = f"{ip}{cidr}"
        ips.append(ip)
    return ips


def _mechanism_networks(mechanism: SPFMechanism) -> list:
    if mechanism.type == "all":
        return [ipaddress.ip_network("0.0.0.0/0"), ipaddress.ip_network("::/0")]
    networks = []
    for ip in _mechanism_ips(mechanism):
        try:
            networks.append(ipaddress.ip_network(ip, strict=False))
        except ValueError:
            continue
    return networks


def _shadowed_pass_terms(mechanisms: Sequence[SPFMechanism]) -> list[str]:
    """
    Finds non-pass terms that reject addresses a later pass term authorizes

    A term whose addresses are unknown, such as ``-exists`` or a failed
    ``-a`` lookup, shadows every later pass term.

    Args:
        mechanisms (list): Mechanisms with ``resolved_ips`` filled in

    Returns:
        list: ``"<term> precedes <term>"`` descriptions
    """
    conflicts = []
    for index, blocker in enumerate(mechanisms):
        if blocker.qualifier == "+":
            continue
        passing = [
            m
            for m in mechanisms[index + 1 :]
            if m.qualifier == "+" and m.resolved_ips
        ]
        if not passing:
            continue
        blocked = _mechanism_networks(blocker)
        for mechanism in passing:
            overlap = not blocked or any(
                rejected.version == allowed.version and rejected.overlaps(allowed)
                for rejected in blocked
                for allowed in _mechanism_networks(mechanism)
            )
            if overlap:
                conflicts.append(
                    f"{blocker.to_string()} precedes {mechanism.to_string()}"
                )
    return conflicts


def consolidate_ip_addresses(
    ips: Sequence[str], threshold: int = CIDR_CONSOLIDATION_THRESHOLD
) -> ConsolidationResult:
    """
    Merges dense groups of IPv4 addresses into /24 blocks

    Single IPv4 addresses are grouped by their /24 network. A group becomes
    ``x.y.z.0/24`` once it holds at least ``threshold`` addresses; smaller
    groups are kept as individual addresses. IPv6 addresses and existing
    ranges are passed through unchanged.

    Args:
        ips (list): IP addresses and CIDR ranges
        threshold (int): The group size that triggers consolidation

    Returns:
        dict: ``consolidated_ranges``, ``original_count`` and
        ``consolidated_count``
    """
    groups: dict[str, list[str]] = {}
    ipv6 = []
    ranges = []
    for ip in _dedupe(ips):
        value = ip[:-3] if ip.endswith("/32") else ip
        if "/" in value:
            ranges.append(ip)
            continue
        try:
            address = ipaddress.ip_address(value)
        except ValueError:
            ranges.append(ip)
            continue
        if address.version == 6:
            ipv6.append(ip)
            continue
        subnet = str(ipaddress.ip_network(f"{address}/24", strict=False))
        groups.setdefault(subnet, []).append(ip)
    consolidated = []
    for subnet, group in groups.items():
        if len(group) >= threshold:
            consolidated.append(subnet)
        else:
            consolidated += group
    consolidated += ipv6 + ranges
    return {
        "consolidated_ranges": consolidated,
        "original_count": len(ips),
        "consolidated_count": len(consolidated),
    }


def _ip_mechanism(ip: str, qualifier: str) -> str:
    prefix = "" if qualifier == "+" else qualifier
    mechanism_type = "ip6" if ":" in ip else "ip4"
    return f"{prefix}{mechanism_type}:{ip}"


def build_flattened_record(
    record: SPFRecord,
    resolved_includes: dict[int, list[str]],
    consolidate_cidr: bool = True,
) -> str:
    """
    Rebuilds a record with resolved includes replaced by IP mechanisms

    Each resolved include is replaced in place by ``ip4``/``ip6``
    mechanisms that carry the include's qualifier. Every other term is kept
    as it was, in its original order.

    Args:
        record (SPFRecord): The original record
        resolved_includes (dict): Addresses keyed by mechanism index
        consolidate_cidr (bool): Consolidate each include's addresses

    Returns:
        str: The flattened record
    """
    terms = [record.version]
    for index, mechanism in enumerate(record.mechanisms):
        if mechanism.type == "include" and index in resolved_includes:
            ips = _dedupe(resolved_includes[index])
            if consolidate_cidr:
                ips = consolidate_ip_addresses(ips)["consolidated_ranges"]
            terms += [_ip_mechanism(ip, mechanism.qualifier) for ip in ips]
        else:
            terms.append(mechanism.to_string())
    terms += [modifier.to_string() for modifier in record.modifiers]
    return " ".join(terms)


def _empty_result() -> FlatteningResult:
    return {
        "success": False,
        "flattened_record": "",
        "original_lookups": 0,
        "new_lookups": 0,
        "ip_count": 0,
        "resolved_ips": [],
        "includes": [],
        "warnings": [],
        "errors": [],
    }


def flatten_spf_record(
    record_text: str,
    includes: Optional[Sequence[str]] = None,
    *,
    domain: Optional[str] = None,
    resolver: Optional[SPFResolver] = None,
    options: Optional[FlatteningOptions] = None,
) -> FlatteningResult:
    """
    Replaces include mechanisms of a record with the addresses they resolve to

    Args:
        record_text (str): The SPF record to flatten
        includes (list): The include targets to flatten; all when ``None``
        domain (str): The domain the record is published on, if known
        resolver (SPFResolver): The resolver to use
        options (FlatteningOptions): Flattening options

    Returns:
        dict: A ``FlatteningResult``. Lookup failures of individual includes
        are reported in ``errors`` while the others are still flattened;
        ``success`` is ``True`` when at least one include was flattened.
    """
    options = options or FlatteningOptions()
    result = _empty_result()
    record = parse_spf_record_from_string(record_text)
    if record.version == "" or record.parse_errors:
        result["errors"].append(
            f"Invalid original SPF record: {', '.join(record.errors)}"
        )
        return result
    result["original_lookups"] = record.total_lookups

    context = options.context
    if context is None and domain is not None:
        context = dataclasses.replace(
            DEFAULT_MACRO_CONTEXT,
            current_domain=normalize_domain(domain),
            validated_domain=normalize_domain(domain),
        )

    requested = None
    if includes is not None:
        requested = [normalize_domain(i) for i in includes]
    targets: list[tuple[int, SPFMechanism, str]] = []
    matched = set()
    for index, mechanism in enumerate(record.mechanisms):
        if mechanism.type != "include":
            continue
        value = normalize_domain(mechanism.value)
        target = value
        if mechanism.has_macros and context is not None:
            target = normalize_domain(expand_macros_in_text(mechanism.value, context))
        if requested is not None:
            if value in requested:
                matched.add(value)
            elif target in requested:
                matched.add(target)
            else:
                continue
        targets.append((index, mechanism, target))
    if requested is not None:
        missing = [i for i in requested if i not in matched]
        if missing:
            result["warnings"].append(
                f"Includes not found in record: {', '.join(missing)}"
            )
    if not targets:
        result["errors"].append("No valid includes found to flatten")
        return result

    owns_resolver = resolver is None
    resolver = resolver or SPFResolver()
    visited = (normalize_domain(domain),) if domain else ()
    try:
        resolved: dict[int, list[str]] = {}
        all_ips = []
        resolver.lookup_many(
            [(target, "TXT") for _, _, target in targets if "%" not in target]
        )
        for index, mechanism, target in targets:
            if "%" in target:
                result["errors"].append(
                    f"Cannot resolve include:{mechanism.value} without a macro "
                    "expansion context"
                )
                continue
            resolution = resolver.resolve_include_chain(
                target,
                visited,
                include_nested=options.include_nested,
                max_depth=options.max_depth,
                context=context,
            )
            result["includes"].append(resolution)
            if resolution["state"] != "resolved":
                result["errors"].append(
                    f"Error resolving {target}: {'; '.join(resolution['errors'])}"
                )
                continue
            mechanism.resolved_ips = list(resolution["ips"])
            resolved[index] = resolution["ips"]
            all_ips += resolution["ips"]
            if resolution["errors"]:
                result["warnings"].append(
                    f"Partial resolution for {target}: {', '.join(resolution['errors'])}"
                )
            if resolution["nested_includes"] and not options.include_nested:
                result["warnings"].append(
                    f"{target} contains nested includes: "
                    f"{', '.join(resolution['nested_includes'])}"
                )
        if resolver.cancelled:
            result["errors"].append("Resolution cancelled")
            return result
    finally:
        if owns_resolver:
            resolver.close()

    if not resolved:
        result["errors"].append("Failed to resolve any includes")
        return result

    final_ips = _dedupe(all_ips)
    if options.consolidate_cidr:
        consolidated = consolidate_ip_addresses(final_ips)
        final_ips = consolidated["consolidated_ranges"]
        if consolidated["original_count"] != consolidated["consolidated_count"]:
            result["warnings"].append(
                f"Consolidated {consolidated['original_count']} IPs into "
                f"{consolidated['consolidated_count']} ranges"
            )
    if len(final_ips) > options.max_ips_per_record:
        result["warnings"].append(
            f"High IP count ({len(final_ips)}) may create large SPF record. "
            "Consider further consolidation."
        )

    flattened = build_flattened_record(record, resolved, options.consolidate_cidr)
    result["flattened_record"] = flattened
    result["new_lookups"] = parse_spf_record_from_string(flattened).total_lookups
    result["resolved_ips"] = final_ips
    result["ip_count"] = len(final_ips)
    result["success"] = True
    logging.debug(
        f"Flattened {len(resolved)} include(s): {result['original_lookups']} -> "
        f"{result['new_lookups']} DNS lookups"
    )

    if result["new_lookups"] >= result["original_lookups"]:
        result["warnings"].append(
            "Flattening did not reduce DNS lookups. Consider flattening more "
            "includes or other optimizations."
        )
    if result["ip_count"] > 20:
        result["warnings"].append(
            "High IP count may impact SPF record performance. Monitor record size."
        )
    if len(flattened) > MAX_RECORD_LENGTH:
        result["warnings"].append(
            f"Flattened SPF record is {len(flattened)} characters, which exceeds "
            f"the {MAX_RECORD_LENGTH} character limit of a single TXT string."
        )
    return result


def flatten_spf_includes(
    domain: str,
    includes: Optional[Sequence[str]] = None,
    *,
    resolver: Optional[SPFResolver] = None,
    options: Optional[FlatteningOptions] = None,
) -> FlatteningResult:
    """
    Fetches a domain's SPF record and flattens the given includes

    Args:
        domain (str): A domain name
        includes (list): The include targets to flatten; all when ``None``
        resolver (SPFResolver): The resolver to use
        options (FlatteningOptions): Flattening options

    Returns:
        dict: A ``FlatteningResult``
    """
    owns_resolver = resolver is None
    resolver = resolver or SPFResolver()
    try:
        record = parse_spf_record(domain, resolver)
        if not record.version:
            result = _empty_result()
            result["errors"].append(
                f"Invalid original SPF record: {', '.join(record.errors)}"
            )
            return result
        return flatten_spf_record(
            record.raw,
            includes,
            domain=domain,
            resolver=resolver,
            options=options,
        )
    finally:
        if owns_resolver:
            resolver.close()


def validate_flattened_record(flattened_record: str) -> FlattenedRecordValidation:
    """
    Checks a flattened record against the size and lookup limits

    Args:
        flattened_record (str): A flattened SPF record

    Returns:
        dict: ``valid``, ``lookup_count``, ``ip_count``, ``record_size``,
        ``warnings`` and ``errors``
    """
    parsed = parse_spf_record_from_string(flattened_record)
    record_size = len(flattened_record)
    warnings = []
    if record_size > MAX_RECORD_LENGTH:
        warnings.append(
            f"SPF record is {record_size} characters. DNS TXT records should be "
            f"under {MAX_RECORD_LENGTH} characters."
        )
    if parsed.total_lookups > MAX_DNS_LOOKUPS:
        warnings.append(
            f"Record still exceeds {MAX_DNS_LOOKUPS} DNS lookup limit "
            f"({parsed.total_lookups})"
        )
    ip_count = len([m for m in parsed.mechanisms if m.type in ("ip4", "ip6")])
    if ip_count > MAX_IPS_PER_RECORD:
        warnings.append(
            f"Record contains {ip_count} IP mechanisms. Consider consolidating "
            "addresses into CIDR ranges."
        )
    return {
        "valid": parsed.is_valid,
        "lookup_count": parsed.total_lookups,
        "ip_count": ip_count,
        "record_size": record_size,
        "warnings": warnings + [w for w in parsed.warnings if w not in warnings],
        "errors": list(parsed.errors),
    }
