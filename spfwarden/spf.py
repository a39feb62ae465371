# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record model and parser"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, TypedDict, Union

from spfwarden._constants import (
    LOOKUP_WARNING_THRESHOLD,
    MAX_DNS_LOOKUPS,
    MAX_RECORD_LENGTH,
)
from spfwarden.macros import (
    SPFMacro,
    calculate_complexity_score,
    find_macros,
    mask_macros,
    max_risk,
)
from spfwarden.utils import is_valid_domain, normalize_domain

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

SPF_VERSION_TAG = "v=spf1"

SPF_MECHANISM_TYPES = ("include", "a", "mx", "ip4", "ip6", "exists", "ptr", "all")
SPF_MODIFIER_TYPES = ("redirect", "exp")

SPF_MECHANISM_REGEX = re.compile(
    r"^([+\-~?])?(include|all|a|mx|ip4|ip6|exists|ptr)(?=$|[:/])(.*)$",
    re.IGNORECASE,
)
SPF_MODIFIER_REGEX = re.compile(r"^(redirect|exp)=(.*)$", re.IGNORECASE)
SPF_DUAL_CIDR_REGEX = re.compile(r"^(/\d{1,2})?(//\d{1,3})?$")
CIDR_SUFFIX_REGEX = re.compile(r"(?:/\d{1,2})?(?://\d{1,3})?$")

LOOKUP_COSTS = {
    "include": 1,
    "a": 1,
    "mx": 1,
    "exists": 1,
    "ptr": 1,
    "ip4": 0,
    "ip6": 0,
    "all": 0,
    "redirect": 1,
    "exp": 1,
}

spf_qualifiers: dict[str, str] = {
    "": "pass",
    "?": "neutral",
    "+": "pass",
    "-": "fail",
    "~": "softfail",
}


class SPFError(Exception):
    """Raised when a fatal SPF error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFRecordNotFound(SPFError):
    """Raised when an SPF record could not be found"""

    def __init__(self, error: Union[Exception, str], domain: str):
        self.error = error
        self.domain = domain
        SPFError.__init__(self, str(error), data={"domain": domain})

    def __str__(self):
        return str(self.error)


class MultipleSPFRTXTRecords(SPFError):
    """Raised when multiple TXT spf1 records are found"""


class SPFSyntaxError(SPFError):
    """Raised when an SPF syntax error is found"""


@dataclass
class SPFMechanism:
    """A single SPF mechanism such as ``~all`` or ``include:_spf.example.com``"""

    type: str
    qualifier: str = "+"
    value: str = ""
    cidr: str = ""
    subdomain: Optional[str] = None
    resolved_ips: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    macros: list[SPFMacro] = field(default_factory=list)

    @property
    def lookup_count(self) -> int:
        return LOOKUP_COSTS.get(self.type, 0)

    @property
    def has_macros(self) -> bool:
        return len(self.macros) > 0

    @property
    def macro_patterns(self) -> list[str]:
        return [macro.raw for macro in self.macros]

    @property
    def action(self) -> str:
        return spf_qualifiers[self.qualifier]

    def key(self) -> str:
        """The ``type:value`` identity used for duplicate detection"""
        return f"{self.type}:{self.value}{self.cidr}"

    def to_string(self) -> str:
        qualifier = "" if self.qualifier == "+" else self.qualifier
        value = f":{self.value}" if self.value else ""
        return f"{qualifier}{self.type}{value}{self.cidr}"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "qualifier": self.qualifier,
            "action": self.action,
            "value": self.value,
            "cidr": self.cidr or None,
            "subdomain": self.subdomain,
            "lookup_count": self.lookup_count,
            "resolved_ips": list(self.resolved_ips),
            "has_macros": self.has_macros,
            "macro_patterns": self.macro_patterns,
            "errors": list(self.errors),
        }


@dataclass
class SPFModifier:
    """A ``redirect=`` or ``exp=`` modifier"""

    type: str
    value: str
    macros: list[SPFMacro] = field(default_factory=list)

    @property
    def lookup_count(self) -> int:
        return LOOKUP_COSTS.get(self.type, 0)

    @property
    def has_macros(self) -> bool:
        return len(self.macros) > 0

    @property
    def macro_patterns(self) -> list[str]:
        return [macro.raw for macro in self.macros]

    def key(self) -> str:
        return f"{self.type}={self.value}"

    def to_string(self) -> str:
        return self.key()

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "value": self.value,
            "lookup_count": self.lookup_count,
            "has_macros": self.has_macros,
            "macro_patterns": self.macro_patterns,
        }


@dataclass
class SPFRecord:
    """
    A parsed SPF record

    ``total_lookups`` and the macro statistics are derived from the
    mechanisms and modifiers every time they are read. Call ``recompute``
    after changing either list to refresh ``errors``, ``warnings`` and
    ``is_valid``.
    """

    raw: str
    version: str = ""
    mechanisms: list[SPFMechanism] = field(default_factory=list)
    modifiers: list[SPFModifier] = field(default_factory=list)
    is_valid: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    parse_errors: list[str] = field(default_factory=list)

    @property
    def total_lookups(self) -> int:
        return count_dns_lookups(self.mechanisms) + sum(
            m.lookup_count for m in self.modifiers
        )

    @property
    def macros(self) -> list[SPFMacro]:
        terms = list(self.mechanisms) + list(self.modifiers)
        return [macro for term in terms for macro in term.macros]

    @property
    def has_macros(self) -> bool:
        return len(self.macros) > 0

    @property
    def macro_count(self) -> int:
        return len(self.macros)

    @property
    def complexity_score(self) -> int:
        return calculate_complexity_score(self.macros)

    @property
    def security_risk(self) -> str:
        return max_risk(m.security_risk for m in self.macros)

    def to_string(self) -> str:
        terms = [m.to_string() for m in self.mechanisms]
        terms += [m.to_string() for m in self.modifiers]
        return " ".join([self.version or SPF_VERSION_TAG] + terms)

    def recompute(self) -> SPFRecord:
        """Refreshes the derived validation state and returns the record"""
        errors = list(self.parse_errors)
        warnings = []
        total_lookups = self.total_lookups
        if total_lookups > MAX_DNS_LOOKUPS:
            errors.append(
                f"SPF record exceeds {MAX_DNS_LOOKUPS} DNS lookups ({total_lookups}). "
                "This will cause SPF authentication to fail."
            )
        elif total_lookups > LOOKUP_WARNING_THRESHOLD:
            warnings.append(
                f"SPF record is close to {MAX_DNS_LOOKUPS} DNS lookup limit "
                f"({total_lookups}). Consider optimization."
            )
        if len(self.raw) > MAX_RECORD_LENGTH:
            errors.append(
                f"SPF record is {len(self.raw)} characters long, which exceeds "
                f"the {MAX_RECORD_LENGTH} character limit of a single TXT string."
            )

        all_mechanisms = [m for m in self.mechanisms if m.type == "all"]
        redirects = [m for m in self.modifiers if m.type == "redirect"]
        if not all_mechanisms and not redirects:
            warnings.append(
                'SPF record does not contain an "all" mechanism. '
                "This may allow unauthorized senders."
            )
        if len(all_mechanisms) > 1:
            warnings.append("The all mechanism should only be used once.")
        if len(redirects) > 1:
            warnings.append("Multiple redirect modifiers; only the first is used.")
        if all_mechanisms and redirects:
            warnings.append(
                "The redirect modifier is ignored when an all mechanism is present."
            )
        if any(m.type == "ptr" for m in self.mechanisms):
            warnings.append(
                "SPF record contains PTR mechanism which is deprecated and slow. "
                "Consider replacing with ip4/ip6."
            )

        macros = self.macros
        high_risk = [m for m in macros if m.security_risk == "high"]
        if high_risk:
            patterns = ", ".join(m.raw for m in high_risk)
            warnings.append(
                f"SPF record contains {len(high_risk)} high-risk macro(s): {patterns}"
            )
        if len(macros) > 5:
            warnings.append(
                f"SPF record contains {len(macros)} macros, which may impact "
                "DNS resolution performance."
            )
        if self.complexity_score > 70:
            warnings.append(
                f"SPF macro complexity score is {self.complexity_score}/100. "
                "Complex macros make this record harder to maintain."
            )

        self.errors = errors
        self.warnings = warnings
        self.is_valid = self.version == SPF_VERSION_TAG and len(errors) == 0
        return self

    def to_dict(self) -> dict:
        return {
            "raw": self.raw,
            "version": self.version,
            "mechanisms": [m.to_dict() for m in self.mechanisms],
            "modifiers": [m.to_dict() for m in self.modifiers],
            "total_lookups": self.total_lookups,
            "valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "has_macros": self.has_macros,
            "macro_count": self.macro_count,
            "complexity_score": self.complexity_score,
            "security_risk": self.security_risk,
        }


class LookupBreakdownItem(TypedDict):
    mechanism: str
    lookups: int
    source: str


class LookupBreakdown(TypedDict):
    include_count: int
    a_count: int
    mx_count: int
    exists_count: int
    ptr_count: int
    redirect_count: int
    total_count: int
    detailed_breakdown: list[LookupBreakdownItem]


class SPFSyntaxResult(TypedDict):
    valid: bool
    errors: list[str]


def count_dns_lookups(mechanisms: list[SPFMechanism]) -> int:
    """Sums the lookup cost of a list of mechanisms"""
    return sum(mechanism.lookup_count for mechanism in mechanisms)


def _validate_domain_spec(value: str, mechanism_type: str) -> None:
    # Macros are checked separately, so mask them before checking the labels
    masked = mask_macros(value)
    if not is_valid_domain(masked):
        raise SPFSyntaxError(f"Invalid domain in {mechanism_type} mechanism: {value}")


def _validate_ip_network(value: str, version: int) -> None:
    if "%" in value:
        raise SPFSyntaxError(
            f"SPF macros are not allowed in ip{version} mechanisms: {value}"
        )
    try:
        network = ipaddress.ip_network(value, strict=False)
    except ValueError:
        raise SPFSyntaxError(f"{value} is not a valid ipv{version} value.")
    if network.version != version:
        other = 6 if version == 4 else 4
        raise SPFSyntaxError(
            f"{value} is not a valid ipv{version} value. Looks like ipv{other}."
        )


def parse_mechanism(term: str) -> SPFMechanism:
    """
    Parses a single mechanism term

    Args:
        term (str): A term such as ``-ip4:192.0.2.0/24``

    Returns:
        SPFMechanism: The parsed mechanism

    Raises:
        :exc:`spfwarden.spf.SPFSyntaxError`
    """
    match = SPF_MECHANISM_REGEX.match(term)
    if match is None:
        raise SPFSyntaxError(f"Invalid mechanism: {term}")
    qualifier = match.group(1) or "+"
    mechanism_type = match.group(2).lower()
    rest = match.group(3)
    mechanism = SPFMechanism(type=mechanism_type, qualifier=qualifier)

    if mechanism_type == "all":
        if rest:
            raise SPFSyntaxError(f"The all mechanism does not take a value: {term}")
        return mechanism

    if rest.startswith(":"):
        value = rest[1:]
    elif rest.startswith("/") and mechanism_type in ("a", "mx"):
        value = ""
        mechanism.cidr = rest
    elif rest == "":
        value = ""
    else:
        raise SPFSyntaxError(f"Invalid mechanism: {term}")

    if mechanism_type in ("include", "exists"):
        if value == "":
            raise SPFSyntaxError(f"{mechanism_type} must have a value")
        _validate_domain_spec(value, mechanism_type)
    elif mechanism_type == "ip4":
        _validate_ip_network(value, 4)
    elif mechanism_type == "ip6":
        _validate_ip_network(value, 6)
    elif mechanism_type in ("a", "mx", "ptr"):
        if rest.startswith(":"):
            if value == "":
                raise SPFSyntaxError(f"{mechanism_type} mechanism has an empty domain")
            if mechanism_type in ("a", "mx"):
                cidr_start = CIDR_SUFFIX_REGEX.search(value).start()
                value, mechanism.cidr = value[:cidr_start], value[cidr_start:]
            _validate_domain_spec(value, mechanism_type)
            mechanism.subdomain = value
        if mechanism.cidr and not SPF_DUAL_CIDR_REGEX.match(mechanism.cidr):
            raise SPFSyntaxError(f"Invalid CIDR length in {term}")

    mechanism.value = value
    mechanism.macros = find_macros(value, mechanism_type)
    return mechanism


def parse_spf_record_from_string(spf_string: str) -> SPFRecord:
    """
    Parses an SPF record string into an ``SPFRecord``

    The parser never raises. Syntax problems are reported in the record's
    ``errors`` and the remaining terms are still parsed.

    Args:
        spf_string (str): An SPF record

    Returns:
        SPFRecord: The parsed record
    """
    raw = (spf_string or "").strip()
    # Collapse RFC-style split TXT strings
    raw = re.sub(r'"\s+"', "", raw).replace('"', "")
    record = SPFRecord(raw=raw)
    if not raw:
        record.errors.append("Empty SPF record")
        return record
    parts = raw.split()
    if parts[0] != SPF_VERSION_TAG:
        record.errors.append(f'SPF record must start with "{SPF_VERSION_TAG}"')
        return record
    record.version = SPF_VERSION_TAG
    logging.debug(f"Parsing SPF record: {raw}")

    for part in parts[1:]:
        try:
            modifier_match = SPF_MODIFIER_REGEX.match(part)
            if modifier_match and ":" not in part:
                modifier_type = modifier_match.group(1).lower()
                value = modifier_match.group(2)
                if value == "":
                    raise SPFSyntaxError(f"The {modifier_type} modifier is missing a value")
                _validate_domain_spec(value, modifier_type)
                record.modifiers.append(
                    SPFModifier(
                        type=modifier_type,
                        value=value,
                        macros=find_macros(value, modifier_type),
                    )
                )
                continue
            if "=" in part and ":" not in part:
                raise SPFSyntaxError(f"Unknown modifier: {part}")
            record.mechanisms.append(parse_mechanism(part))
        except SPFSyntaxError as error:
            record.parse_errors.append(str(error))

    for term in list(record.mechanisms) + list(record.modifiers):
        for macro in term.macros:
            if not macro.is_valid:
                for error in macro.errors:
                    record.parse_errors.append(f"{term.to_string()}: {error}")

    return record.recompute()


def select_spf_record(txt_records: list[str], domain: str) -> str:
    """
    Picks the SPF record out of a domain's TXT records

    Args:
        txt_records (list): The TXT answers for the domain
        domain (str): The domain the answers came from

    Returns:
        str: The SPF record

    Raises:
        :exc:`spfwarden.spf.SPFRecordNotFound`
        :exc:`spfwarden.spf.MultipleSPFRTXTRecords`
    """
    spf_txt_records = []
    for record in txt_records:
        record = record.strip('"')
        # https://datatracker.ietf.org/doc/html/rfc7208#section-4.5
        # A version section is terminated by a space or the end of the record.
        if record.lower() == SPF_VERSION_TAG or record.lower().startswith(
            f"{SPF_VERSION_TAG} "
        ):
            spf_txt_records.append(record)
    if len(spf_txt_records) > 1:
        raise MultipleSPFRTXTRecords(
            f"The domain {domain} has multiple SPF TXT records",
            data={"domain": domain},
        )
    if len(spf_txt_records) == 0:
        raise SPFRecordNotFound(f"No SPF record found for domain: {domain}", domain)
    return spf_txt_records[0]


def parse_spf_record(domain: str, resolver) -> SPFRecord:
    """
    Retrieves and parses the SPF record of a domain

    Args:
        domain (str): A domain name
        resolver: A ``spfwarden.flattening.SPFResolver``

    Returns:
        SPFRecord: The parsed record. Lookup failures are reported in
        ``errors`` of an otherwise empty, invalid record.
    """
    domain = normalize_domain(domain)
    if not is_valid_domain(domain):
        record = SPFRecord(raw="")
        record.errors.append(f"Invalid domain format: {domain}")
        return record
    result = resolver.resolve_txt(domain)
    if not result["success"]:
        record = SPFRecord(raw="")
        record.errors.append(
            f"Failed to retrieve SPF record for domain {domain}: {result['error']}"
        )
        return record
    try:
        spf_record = select_spf_record(result["records"], domain)
    except SPFError as error:
        record = SPFRecord(raw="")
        record.errors.append(str(error))
        return record
    return parse_spf_record_from_string(spf_record)


def validate_spf_syntax(record: str) -> SPFSyntaxResult:
    """
    Performs a quick, syntax-only check of an SPF record

    Args:
        record (str): An SPF record

    Returns:
        dict: ``valid`` and a list of ``errors``
    """
    errors = []
    if not (record or "").strip():
        return {"valid": False, "errors": ["Empty SPF record"]}
    parts = record.strip().split()
    if parts[0].lower() != SPF_VERSION_TAG:
        errors.append(f'SPF record must start with "{SPF_VERSION_TAG}"')
    for part in parts[1:]:
        if "=" in part and ":" not in part and not SPF_MODIFIER_REGEX.match(part):
            errors.append(f"Unknown modifier: {part}")
    return {"valid": len(errors) == 0, "errors": errors}


def lookup_breakdown(record: SPFRecord) -> LookupBreakdown:
    """
    Counts the DNS lookups of a record by mechanism type

    Args:
        record (SPFRecord): A parsed record

    Returns:
        dict: Per type counts, the total, and a detailed list
    """
    breakdown: LookupBreakdown = {
        "include_count": 0,
        "a_count": 0,
        "mx_count": 0,
        "exists_count": 0,
        "ptr_count": 0,
        "redirect_count": 0,
        "total_count": record.total_lookups,
        "detailed_breakdown": [],
    }
    for mechanism in record.mechanisms:
        key = f"{mechanism.type}_count"
        if key in breakdown:
            breakdown[key] += mechanism.lookup_count
        if mechanism.lookup_count > 0:
            breakdown["detailed_breakdown"].append(
                {
                    "mechanism": mechanism.to_string().lstrip("+-~?"),
                    "lookups": mechanism.lookup_count,
                    "source": "mechanism",
                }
            )
    for modifier in record.modifiers:
        if modifier.type == "redirect":
            breakdown["redirect_count"] += modifier.lookup_count
        if modifier.lookup_count > 0:
            breakdown["detailed_breakdown"].append(
                {
                    "mechanism": modifier.to_string(),
                    "lookups": modifier.lookup_count,
                    "source": "modifier",
                }
            )
    return breakdown


def calculate_risk_level(total_lookups: int) -> str:
    if total_lookups >= MAX_DNS_LOOKUPS:
        return "critical"
    if total_lookups >= LOOKUP_WARNING_THRESHOLD:
        return "high"
    if total_lookups >= 6:
        return "medium"
    return "low"


def calculate_compliance_status(record: SPFRecord) -> str:
    if record.errors or record.total_lookups > MAX_DNS_LOOKUPS:
        return "failing"
    if record.warnings or record.total_lookups > LOOKUP_WARNING_THRESHOLD:
        return "warning"
    return "compliant"
