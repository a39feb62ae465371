# -*- coding: utf-8 -*-
"""DNS utility functions"""

from __future__ import annotations

import logging
import re
import threading
import unicodedata
from typing import Literal, Optional, TypedDict, Union
from collections.abc import Sequence

import dns.exception
import dns.resolver
from dns.nameserver import Nameserver
import publicsuffixlist
import requests
from expiringdict import ExpiringDict

from spfwarden._constants import (
    DEFAULT_HTTP_TIMEOUT,
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
    USER_AGENT,
)

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

RECORD_TYPES = ("TXT", "A", "AAAA", "MX")

DOMAIN_LABEL_REGEX_STRING = r"[a-z0-9_]([a-z0-9_\-]*[a-z0-9])?"
DOMAIN_REGEX = re.compile(
    rf"^{DOMAIN_LABEL_REGEX_STRING}(\.{DOMAIN_LABEL_REGEX_STRING})*$", re.IGNORECASE
)
ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM
PSL = publicsuffixlist.PublicSuffixList()


class DNSLookupSuccess(TypedDict):
    success: Literal[True]
    records: list[str]


class DNSLookupFailure(TypedDict):
    success: Literal[False]
    error: str
    soft: bool


DNSLookupResult = Union[
    DNSLookupSuccess,
    DNSLookupFailure,
]


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout) and "timeout" in error.kwargs:
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        Exception.__init__(self, str(error))


class DNSExceptionNXDOMAIN(DNSException):
    """Raised when a NXDOMAIN DNS error (RCODE:3) occurs"""


class DNSRateLimited(DNSException):
    """Raised when the DNS service refuses a query because of rate limiting"""


def lookup_failure(error: Union[str, Exception], soft: bool = False) -> DNSLookupFailure:
    """Builds a failed lookup result"""
    return {"success": False, "error": str(error), "soft": soft}


def lookup_success(records: Sequence[str]) -> DNSLookupSuccess:
    """Builds a successful lookup result"""
    return {"success": True, "records": list(records)}


def get_base_domain(domain: str) -> str:
    """
    Gets the base domain name for the given domain

    .. note::
        Results are based on a list of public domain suffixes at
        https://publicsuffix.org/list/public_suffix_list.dat.

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: The base domain of the given domain

    """
    domain = normalize_domain(domain)
    return PSL.privatesuffix(domain) or domain


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by removing zero-width characters, trailing
    dots and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    return domain.strip().rstrip(".").lower()


def is_valid_domain(domain: str) -> bool:
    """
    Checks a domain name against the DNS label grammar

    Labels are alphanumerics, hyphens and underscores (for service labels
    such as ``_spf``), dot-separated, and the whole name is at most 253
    characters.

    Args:
        domain (str): A domain name

    Returns:
        bool: ``True`` if the name is well-formed
    """
    if not domain or len(domain) > 253:
        return False
    return DOMAIN_REGEX.match(domain.rstrip(".")) is not None


def parse_mx_record(record: str) -> tuple[int, str]:
    """
    Splits an MX answer into its preference and exchange

    Args:
        record (str): An MX answer such as ``10 mail.example.com.``

    Returns:
        tuple: ``(preference, hostname)``
    """
    parts = record.split()
    if len(parts) == 1:
        return 0, parts[0].rstrip(".").lower()
    return int(parts[0]), parts[1].rstrip(".").lower()


class DNSCache(object):
    """
    A time-to-live cache of DNS answers keyed by ``(record_type, domain)``

    Writes replace the previous entry for a key; reads never block writers
    for longer than a single dictionary operation.
    """

    def __init__(
        self,
        max_len: int = DNS_CACHE_MAX_LEN,
        max_age_seconds: float = DNS_CACHE_MAX_AGE_SECONDS,
    ):
        self.max_age_seconds = max_age_seconds
        self._entries = ExpiringDict(max_len=max_len, max_age_seconds=max_age_seconds)

    @staticmethod
    def _key(record_type: str, domain: str) -> tuple[str, str]:
        return record_type.upper(), normalize_domain(domain)

    def get(self, record_type: str, domain: str) -> Optional[list[str]]:
        records = self._entries.get(self._key(record_type, domain))
        if isinstance(records, list):
            return list(records)
        return None

    def set(self, record_type: str, domain: str, records: Sequence[str]) -> None:
        self._entries[self._key(record_type, domain)] = list(records)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return self.get(*key) is not None


class DNSLookup(object):
    """The DNS lookup collaborator used by the resolver"""

    def lookup(self, domain: str, record_type: str) -> DNSLookupResult:
        """
        Looks up records of the given type

        Args:
            domain (str): The domain to query
            record_type (str): ``TXT``, ``A``, ``AAAA`` or ``MX``

        Returns:
            dict: ``{"success": True, "records": [...]}`` or
            ``{"success": False, "error": "...", "soft": bool}``
        """
        raise NotImplementedError


def query_dns(
    domain: str,
    record_type: str,
    *,
    resolver: dns.resolver.Resolver,
    timeout: float = 2.0,
    timeout_retries: int = 2,
    _attempt: int = 0,
) -> list[str]:
    """
    Queries DNS

    Args:
        domain (str): The domain or subdomain to query about
        record_type (str): The record type to query for
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): Sets the DNS timeout in seconds
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: A list of answers
    """
    domain = normalize_domain(domain)
    record_type = record_type.upper()
    try:
        answers = resolver.resolve(domain, record_type, lifetime=timeout)
    except dns.resolver.LifetimeTimeout as e:
        _attempt += 1
        if _attempt > timeout_retries:
            raise e
        return query_dns(
            domain,
            record_type,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
            _attempt=_attempt,
        )
    if record_type == "TXT":
        records = []
        for answer in answers:
            if not answer.strings:
                continue
            # Join each sequence of byte chunks into a single string
            try:
                records.append(b"".join(answer.strings).decode())
            except UnicodeDecodeError:
                records.append("Undecodable characters")
        return records
    return list(map(lambda r: r.to_text().rstrip("."), answers))


class DNSPythonLookup(DNSLookup):
    """Performs lookups with dnspython"""

    def __init__(
        self,
        *,
        nameservers: Optional[Sequence[str | Nameserver]] = None,
        resolver: Optional[dns.resolver.Resolver] = None,
        timeout: float = 2.0,
        timeout_retries: int = 2,
    ):
        if not resolver:
            resolver = dns.resolver.Resolver()
            timeout = float(timeout)
            if nameservers is not None:
                resolver.nameservers = nameservers
            resolver.timeout = timeout
            resolver.lifetime = timeout
        self.resolver = resolver
        self.timeout = timeout
        self.timeout_retries = timeout_retries

    def lookup(self, domain: str, record_type: str) -> DNSLookupResult:
        logging.debug(f"Getting {record_type} records for {domain}")
        try:
            records = query_dns(
                domain,
                record_type,
                resolver=self.resolver,
                timeout=self.timeout,
                timeout_retries=self.timeout_retries,
            )
        except dns.resolver.NXDOMAIN:
            return lookup_failure(DNSExceptionNXDOMAIN("The domain does not exist."))
        except dns.resolver.NoAnswer:
            return lookup_success([])
        except dns.exception.Timeout as error:
            return lookup_failure(DNSException(error), soft=True)
        except dns.exception.DNSException as error:
            return lookup_failure(DNSException(error))
        return lookup_success(records)


class HTTPDNSLookup(DNSLookup):
    """
    Performs lookups through an HTTP DNS lookup service

    The service accepts a JSON body of ``{"domain", "recordType"}`` and
    answers ``{"success", "records", "error"}``. Rate limiting (HTTP 429) and
    timeouts are soft failures.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        if api_key:
            self.session.headers.update({"Authorization": f"Bearer {api_key}"})

    def lookup(self, domain: str, record_type: str) -> DNSLookupResult:
        domain = normalize_domain(domain)
        logging.debug(f"Requesting {record_type} records for {domain} from {self.url}")
        try:
            response = self.session.post(
                self.url,
                json={"domain": domain, "recordType": record_type.upper()},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as error:
            return lookup_failure(DNSException(error), soft=True)
        except requests.exceptions.RequestException as error:
            return lookup_failure(DNSException(error))
        if response.status_code == 429:
            logging.warning(f"DNS lookup service rate limited the query for {domain}")
            return lookup_failure(
                DNSRateLimited(f"Rate limited while looking up {domain}"), soft=True
            )
        if not response.ok:
            return lookup_failure(
                f"DNS lookup failed: {response.status_code} - {response.text}"
            )
        try:
            payload = response.json()
        except ValueError:
            return lookup_failure(f"Invalid response from DNS lookup service for {domain}")
        if not payload.get("success"):
            return lookup_failure(payload.get("error") or "DNS lookup failed")
        return lookup_success(payload.get("records") or [])


class StaticDNSLookup(DNSLookup):
    """
    Answers lookups from an in-memory zone table

    Args:
        zone (dict): ``{domain: {record_type: [answers]}}``; a domain missing
                     from the table does not exist
        failures (dict): ``{(domain, record_type): DNSLookupFailure}`` answers
                         that override the zone
    """

    def __init__(
        self,
        zone: dict[str, dict[str, list[str]]],
        failures: Optional[dict[tuple[str, str], DNSLookupFailure]] = None,
    ):
        self.zone = {
            normalize_domain(domain): {
                record_type.upper(): list(records)
                for record_type, records in types.items()
            }
            for domain, types in zone.items()
        }
        self.failures = {
            (normalize_domain(domain), record_type.upper()): failure
            for (domain, record_type), failure in (failures or {}).items()
        }
        self.queries: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def lookup(self, domain: str, record_type: str) -> DNSLookupResult:
        domain = normalize_domain(domain)
        record_type = record_type.upper()
        with self._lock:
            self.queries.append((domain, record_type))
        if (domain, record_type) in self.failures:
            return self.failures[(domain, record_type)]
        if domain not in self.zone:
            return lookup_failure(DNSExceptionNXDOMAIN("The domain does not exist."))
        return lookup_success(self.zone[domain].get(record_type, []))
