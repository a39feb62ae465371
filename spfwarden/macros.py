# -*- coding: utf-8 -*-
"""SPF macro parsing, validation, expansion and risk scoring (RFC 7208 § 7)"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Literal, Optional, TypedDict, Union
from urllib.parse import quote

import pyleri

from spfwarden._constants import SYNTAX_ERROR_MARKER

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

MACRO_LETTERS = "slodiphcrtv"
MACRO_DELIMS = ".-+,/_="
MAX_MACRO_DIGITS = 128

MACRO_REGEX_STRING = r"%\{([slodiphcrtv])(\d*)(r?)([.\-+,/_=]*)\}"
MACRO_REGEX = re.compile(MACRO_REGEX_STRING, re.IGNORECASE)

# Escapes are matched first so that "%%{d}" is a literal "%" followed by "{d}"
MACRO_TOKEN_REGEX = re.compile(r"%%|%_|%-|%\{[^}]*\}")
MACRO_ESCAPES = {"%%": "%", "%_": " ", "%-": "%20"}

RISK_LEVELS = ["low", "medium", "high", "critical"]

MACRO_DESCRIPTIONS = {
    "s": "sender",
    "l": "local-part",
    "o": "sender-domain",
    "d": "domain",
    "i": "ip",
    "p": "validated-domain",
    "v": "ip-version",
    "h": "helo",
    "c": "smtp-client-ip",
    "r": "receiving-domain",
    "t": "timestamp",
}

MacroRisk = Literal["low", "medium", "high"]


class _SPFMacroGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for a single SPF macro-expand token"""

    open_brace = pyleri.Token("%{")
    letter = pyleri.Regex(f"[{MACRO_LETTERS}]", re.IGNORECASE)
    digits = pyleri.Regex(r"[0-9]+")
    reverse = pyleri.Regex("[rR]")
    delimiters = pyleri.Regex(r"[.\-+,/_=]+")
    close_brace = pyleri.Token("}")

    START = pyleri.Sequence(
        open_brace,
        letter,
        pyleri.Optional(digits),
        pyleri.Optional(reverse),
        pyleri.Optional(delimiters),
        close_brace,
    )


_MACRO_GRAMMAR = _SPFMacroGrammar()


@dataclass(frozen=True)
class MacroModifier:
    """A transformer or delimiter set attached to a macro"""

    type: Literal["digits", "reverse", "delimiter"]
    value: Union[int, str]


@dataclass
class SPFMacro:
    """A single ``%{...}`` token found in a mechanism or modifier value"""

    raw: str
    type: Optional[str]
    modifiers: list[MacroModifier]
    position: int
    length: int
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    security_risk: MacroRisk = "low"
    url_escape: bool = False

    @property
    def digits(self) -> Optional[int]:
        for modifier in self.modifiers:
            if modifier.type == "digits":
                return int(modifier.value)
        return None

    @property
    def reverse(self) -> bool:
        return any(m.type == "reverse" for m in self.modifiers)

    @property
    def delimiters(self) -> str:
        for modifier in self.modifiers:
            if modifier.type == "delimiter":
                return str(modifier.value)
        return ""

    def to_dict(self) -> dict:
        return {
            "raw": self.raw,
            "type": self.type,
            "digits": self.digits,
            "reverse": self.reverse,
            "delimiters": list(self.delimiters),
            "position": self.position,
            "length": self.length,
            "valid": self.is_valid,
            "errors": list(self.errors),
            "security_risk": self.security_risk,
        }


@dataclass(frozen=True)
class MacroExpansionContext:
    """
    Per-evaluation input used to expand macros

    Instances are immutable; build a new one for every analysis call.
    """

    sender_ip: str
    sender_email: str
    current_domain: str
    helo_domain: Optional[str] = None
    validated_domain: Optional[str] = None
    recipient_domain: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


def default_macro_context() -> MacroExpansionContext:
    """Returns the example context used when a caller does not supply one"""
    return MacroExpansionContext(
        sender_ip="192.168.1.100",
        sender_email="test@example.com",
        current_domain="company.com",
        helo_domain="mail.example.com",
        validated_domain="company.com",
        recipient_domain="company.com",
    )


DEFAULT_MACRO_CONTEXT = default_macro_context()


class MacroAnalysisResult(TypedDict):
    macros: list[SPFMacro]
    total_macros: int
    complexity_score: int
    security_risks: list[str]
    performance_warnings: list[str]
    optimization_suggestions: list[str]
    dns_lookups_per_email: float


class MacroExpansionPreview(TypedDict):
    expanded: str
    valid: bool
    errors: list[str]
    security_risk: MacroRisk


def max_risk(risks, default: str = "low") -> str:
    """Returns the highest of the given risk levels"""
    highest = default
    for risk in risks:
        if RISK_LEVELS.index(risk) > RISK_LEVELS.index(highest):
            highest = risk
    return highest


def assess_security_risk(
    macro_type: Optional[str],
    modifiers: list[MacroModifier],
    mechanism_type: Optional[str] = None,
) -> MacroRisk:
    """
    Assigns the static security risk of a macro

    Args:
        macro_type (str): The macro letter
        modifiers (list): The macro's modifiers
        mechanism_type (str): The mechanism or modifier the macro is used in

    Returns:
        str: ``low``, ``medium`` or ``high``
    """
    # PTR lookups can be abused for DNS amplification
    if macro_type == "p":
        return "high"
    # Client IP and timestamp leak information
    if macro_type in ("c", "t"):
        return "high"
    if macro_type in ("i", "h"):
        return "medium"
    if macro_type == "s" and mechanism_type == "exists":
        return "medium"
    if len(modifiers) > 2:
        return "medium"
    return "low"


def _validate_macro(macro: SPFMacro) -> list[str]:
    errors = []
    digits = macro.digits
    if digits is not None:
        if digits == 0:
            errors.append("Digits modifier cannot be zero")
        elif digits > MAX_MACRO_DIGITS:
            errors.append(f"Digits modifier cannot exceed {MAX_MACRO_DIGITS}")
    if len(macro.delimiters) > 10:
        errors.append("Excessive delimiter length may cause issues")
    if macro.type == "p" and len(macro.modifiers) > 2:
        errors.append("Complex modifiers on %{p} macro can cause DNS amplification")
    if macro.type == "v" and digits is not None:
        errors.append("%{v} macro should not use digits modifier")
    return errors


def _malformed_macro(token: str, position: int, error: str) -> SPFMacro:
    return SPFMacro(
        raw=token,
        type=None,
        modifiers=[],
        position=position,
        length=len(token),
        is_valid=False,
        errors=[error],
        security_risk="medium",
    )


def parse_macro(
    token: str,
    position: int = 0,
    mechanism_type: Optional[str] = None,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> SPFMacro:
    """
    Parses a single ``%{...}`` token

    Tokens that do not conform to the macro grammar are returned as invalid
    macros with a ``medium`` risk instead of raising an exception.

    Args:
        token (str): The macro text, including ``%{`` and ``}``
        position (int): The offset of the token in its owning string
        mechanism_type (str): The mechanism or modifier the token is used in
        syntax_error_marker (str): The marker for pointing out syntax errors

    Returns:
        SPFMacro: The parsed macro
    """
    parsed = _MACRO_GRAMMAR.parse(token)
    if not parsed.is_valid or any(c.isspace() for c in token):
        pos = parsed.pos if not parsed.is_valid else 0
        marked = token[:pos] + syntax_error_marker + token[pos:]
        return _malformed_macro(
            token,
            position,
            f"Malformed macro syntax at position {pos} "
            f"(marked with {syntax_error_marker}): {marked}",
        )
    match = MACRO_REGEX.fullmatch(token)
    letter, digits, reverse, delimiters = match.groups()
    modifiers = []
    if digits:
        modifiers.append(MacroModifier("digits", int(digits)))
    if reverse:
        modifiers.append(MacroModifier("reverse", "r"))
    if delimiters:
        modifiers.append(MacroModifier("delimiter", delimiters))
    macro_type = letter.lower()
    macro = SPFMacro(
        raw=token,
        type=macro_type,
        modifiers=modifiers,
        position=position,
        length=len(token),
        security_risk=assess_security_risk(macro_type, modifiers, mechanism_type),
        url_escape=letter.isupper(),
    )
    macro.errors = _validate_macro(macro)
    macro.is_valid = len(macro.errors) == 0
    return macro


def find_macros(text: str, mechanism_type: Optional[str] = None) -> list[SPFMacro]:
    """
    Finds every macro in a mechanism or modifier value

    Args:
        text (str): The text to scan
        mechanism_type (str): The mechanism or modifier the text belongs to

    Returns:
        list: ``SPFMacro`` objects in source order
    """
    macros = []
    for match in MACRO_TOKEN_REGEX.finditer(text or ""):
        token = match.group(0)
        if token in MACRO_ESCAPES:
            continue
        macros.append(parse_macro(token, match.start(), mechanism_type))
    return macros


def calculate_complexity_score(macros: list[SPFMacro]) -> int:
    """
    Scores the complexity of a set of macros from 0 to 100

    ``8 x macros + 3 x modifiers + 2 x unique types + 10 x high-risk macros``
    """
    total_modifiers = sum(len(m.modifiers) for m in macros)
    unique_types = len(set(m.type for m in macros if m.type))
    high_risk = len([m for m in macros if m.security_risk == "high"])
    score = 8 * len(macros) + 3 * total_modifiers + 2 * unique_types + 10 * high_risk
    return min(score, 100)


def estimate_macro_dns_lookups(macros: list[SPFMacro]) -> float:
    """Extra DNS lookups per evaluated email caused by the given macros"""
    lookups = 0.0
    for macro in macros:
        if macro.type == "p":
            lookups += 1
        # Heuristic for a possible reverse-IP lookup
        if macro.type == "i" and macro.reverse:
            lookups += 0.5
    return lookups


def parse_spf_macros(
    text: str, mechanism_type: Optional[str] = None
) -> MacroAnalysisResult:
    """
    Finds and summarizes the macros in a text string

    Args:
        text (str): A mechanism value, modifier value, or whole record
        mechanism_type (str): The mechanism or modifier the text belongs to

    Returns:
        dict: A ``MacroAnalysisResult``
    """
    macros = find_macros(text, mechanism_type)

    security_risks = []
    high_risk = [m for m in macros if m.security_risk == "high"]
    medium_risk = [m for m in macros if m.security_risk == "medium"]
    invalid = [m for m in macros if not m.is_valid]
    if high_risk:
        security_risks.append(f"{len(high_risk)} high-risk macro(s) detected")
    if medium_risk:
        security_risks.append(f"{len(medium_risk)} medium-risk macro(s) detected")
    if invalid:
        security_risks.append(f"{len(invalid)} malformed macro(s) found")

    performance_warnings = []
    ptr_macros = [m for m in macros if m.type == "p"]
    complex_macros = [m for m in macros if len(m.modifiers) > 2]
    if ptr_macros:
        performance_warnings.append(
            "PTR macros (%{p}) cause additional DNS lookups per email"
        )
    if complex_macros:
        performance_warnings.append("Complex macros may slow SPF processing")
    if len(macros) > 5:
        performance_warnings.append(
            f"{len(macros)} macros in a single term may impact DNS resolution performance"
        )

    optimization_suggestions = []
    if ptr_macros:
        optimization_suggestions.append(
            "Consider replacing %{p} macros with static IP ranges for better performance"
        )
    if complex_macros:
        optimization_suggestions.append(
            "Simplify macro modifiers where possible to improve readability"
        )
    if len([m for m in macros if m.type == "s"]) > 2:
        optimization_suggestions.append(
            "Multiple %{s} macros may be redundant - consider consolidation"
        )
    if invalid:
        optimization_suggestions.append(
            "Fix malformed macro syntax to ensure proper SPF evaluation"
        )

    result: MacroAnalysisResult = {
        "macros": macros,
        "total_macros": len(macros),
        "complexity_score": calculate_complexity_score(macros),
        "security_risks": security_risks,
        "performance_warnings": performance_warnings,
        "optimization_suggestions": optimization_suggestions,
        "dns_lookups_per_email": round(1 + estimate_macro_dns_lookups(macros), 1),
    }
    return result


def _ip_to_hex(ip: ipaddress._BaseAddress) -> str:
    width = 8 if ip.version == 4 else 32
    return format(int(ip), f"0{width}X")


def _macro_base_value(macro_type: str, context: MacroExpansionContext) -> str:
    try:
        ip = ipaddress.ip_address(context.sender_ip)
    except ValueError:
        ip = None
    local_part, _, sender_domain = context.sender_email.rpartition("@")
    if macro_type == "s":
        return context.sender_email
    if macro_type == "l":
        return local_part or "postmaster"
    if macro_type == "o":
        return sender_domain
    if macro_type == "d":
        return context.current_domain
    if macro_type == "i":
        if ip is not None and ip.version == 6:
            # RFC 7208 § 7.3: dot-separated nibbles
            return ".".join(ip.exploded.replace(":", ""))
        return context.sender_ip
    if macro_type == "p":
        return context.validated_domain or "unknown"
    if macro_type == "v":
        if ip is not None:
            return "ip6" if ip.version == 6 else "in-addr"
        return "ip6" if ":" in context.sender_ip else "in-addr"
    if macro_type == "h":
        return context.helo_domain or context.sender_ip
    if macro_type == "c":
        if ip is None:
            return context.sender_ip.replace(":", "").replace(".", "")
        return _ip_to_hex(ip)
    if macro_type == "r":
        return context.recipient_domain or "unknown"
    if macro_type == "t":
        return str(int(context.timestamp))
    return ""


def apply_macro_modifiers(value: str, modifiers: list[MacroModifier]) -> str:
    """
    Applies macro transformers to an expanded value

    Labels are split on the delimiter set (``.`` by default), reversed when
    requested, then truncated to the rightmost *digits* labels, and joined
    with ``.``.
    """
    delimiters = "."
    digits = None
    reverse = False
    for modifier in modifiers:
        if modifier.type == "delimiter":
            delimiters = str(modifier.value)
        elif modifier.type == "reverse":
            reverse = True
        elif modifier.type == "digits":
            digits = int(modifier.value)
    if not modifiers:
        return value
    labels = re.split(f"[{re.escape(delimiters)}]", value)
    if reverse:
        labels.reverse()
    if digits:
        labels = labels[-digits:]
    return ".".join(labels)


def expand_macro(macro: SPFMacro, context: MacroExpansionContext) -> str:
    """
    Expands a parsed macro against a context

    Args:
        macro (SPFMacro): A valid macro
        context (MacroExpansionContext): The evaluation context

    Returns:
        str: The expansion
    """
    if macro.type is None:
        return macro.raw
    expanded = apply_macro_modifiers(
        _macro_base_value(macro.type, context), macro.modifiers
    )
    if macro.url_escape:
        expanded = quote(expanded, safe="")
    return expanded


def expand_macros_in_text(text: str, context: MacroExpansionContext) -> str:
    """
    Expands every valid macro and escape in a string

    Replacements are spliced in from the rightmost token to the leftmost so
    that the source offsets of earlier tokens stay correct. Invalid macros
    are left as they are.

    Args:
        text (str): A mechanism or modifier value
        context (MacroExpansionContext): The evaluation context

    Returns:
        str: The expanded text
    """
    replacements = []
    for match in MACRO_TOKEN_REGEX.finditer(text or ""):
        token = match.group(0)
        if token in MACRO_ESCAPES:
            replacements.append((match.start(), len(token), MACRO_ESCAPES[token]))
            continue
        macro = parse_macro(token, match.start())
        if macro.is_valid:
            replacements.append(
                (macro.position, macro.length, expand_macro(macro, context))
            )
    result = text
    for position, length, replacement in sorted(replacements, reverse=True):
        result = result[:position] + replacement + result[position + length :]
    return result


def preview_macro_expansion(
    text: str, context: Optional[MacroExpansionContext] = None
) -> MacroExpansionPreview:
    """
    Expands a macro string with sample data and reports on it

    Args:
        text (str): Text containing one or more macros
        context (MacroExpansionContext): The evaluation context; defaults to
                                         ``DEFAULT_MACRO_CONTEXT``

    Returns:
        dict: ``expanded``, ``valid``, ``errors`` and ``security_risk``
    """
    context = context or DEFAULT_MACRO_CONTEXT
    macros = find_macros(text)
    logging.debug(f"Previewing expansion of {len(macros)} macro(s) in {text}")
    result: MacroExpansionPreview = {
        "expanded": expand_macros_in_text(text, context),
        "valid": len(macros) > 0 and all(m.is_valid for m in macros),
        "errors": [error for m in macros for error in m.errors],
        "security_risk": max_risk(m.security_risk for m in macros),
    }
    return result


def mask_macros(text: str, placeholder: str = "x") -> str:
    """Replaces every macro and escape with a placeholder label"""
    return MACRO_TOKEN_REGEX.sub(placeholder, text or "")
