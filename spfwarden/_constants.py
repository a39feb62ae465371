# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import platform
import os

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

__version__ = "1.0.0"

OS = platform.system()
OS_RELEASE = platform.release()
USER_AGENT = f"Mozilla/5.0 (({OS} {OS_RELEASE})) spfwarden/{__version__}"
SYNTAX_ERROR_MARKER = "➞"
DEFAULT_HTTP_TIMEOUT = 2.0

# RFC 7208 § 4.6.4
MAX_DNS_LOOKUPS = 10
LOOKUP_WARNING_THRESHOLD = 8
# RFC 7208 § 3.3, a single TXT character-string
MAX_RECORD_LENGTH = 255

DNS_CACHE_MAX_LEN = 200000
DNS_CACHE_MAX_AGE_SECONDS = 3600
DNS_LOOKUP_TIMEOUT = 2.0
DNS_MAX_WORKERS = 8
CIDR_CONSOLIDATION_THRESHOLD = 8
MAX_IPS_PER_RECORD = 50

env = os.environ

if "DNS_CACHE_MAX_LEN" in env:
    DNS_CACHE_MAX_LEN = int(env["DNS_CACHE_MAX_LEN"])
if "DNS_CACHE_MAX_AGE_SECONDS" in env:
    DNS_CACHE_MAX_AGE_SECONDS = int(env["DNS_CACHE_MAX_AGE_SECONDS"])
if "DNS_LOOKUP_TIMEOUT" in env:
    DNS_LOOKUP_TIMEOUT = float(env["DNS_LOOKUP_TIMEOUT"])
if "DNS_MAX_WORKERS" in env:
    DNS_MAX_WORKERS = int(env["DNS_MAX_WORKERS"])
if "MAX_DNS_LOOKUPS" in env:
    MAX_DNS_LOOKUPS = int(env["MAX_DNS_LOOKUPS"])
if "LOOKUP_WARNING_THRESHOLD" in env:
    LOOKUP_WARNING_THRESHOLD = int(env["LOOKUP_WARNING_THRESHOLD"])
if "MAX_RECORD_LENGTH" in env:
    MAX_RECORD_LENGTH = int(env["MAX_RECORD_LENGTH"])
if "CIDR_CONSOLIDATION_THRESHOLD" in env:
    CIDR_CONSOLIDATION_THRESHOLD = int(env["CIDR_CONSOLIDATION_THRESHOLD"])
if "MAX_IPS_PER_RECORD" in env:
    MAX_IPS_PER_RECORD = int(env["MAX_IPS_PER_RECORD"])
