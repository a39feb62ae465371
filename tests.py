#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import dataclasses
import json
import os
import tempfile
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import spfwarden
import spfwarden.analysis
import spfwarden.esp
import spfwarden.flattening
import spfwarden.history
import spfwarden.macros
import spfwarden.optimizer
import spfwarden.safeguards
import spfwarden.spf
import spfwarden.utils

# A Wednesday, inside the default 09:00-17:00 UTC business hours
WEDNESDAY_NOON = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)

NINE_LOOKUPS = (
    "v=spf1 include:a.example.com include:b.example.com include:c.example.com "
    "include:d.example.com include:e.example.com include:f.example.com "
    "include:g.example.com include:h.example.com include:i.example.com -all"
)
ELEVEN_LOOKUPS = NINE_LOOKUPS.replace(
    "-all", "include:j.example.com include:k.example.com -all"
)


def _resolver(zone, failures=None, **kwargs):
    dns_lookup = spfwarden.utils.StaticDNSLookup(zone, failures)
    resolver = spfwarden.flattening.SPFResolver(
        dns_lookup, cache=spfwarden.utils.DNSCache(), **kwargs
    )
    return dns_lookup, resolver


def _context(moment=WEDNESDAY_NOON, **kwargs):
    return spfwarden.safeguards.AutomationContext(
        domain="example.com", current_time=moment, **kwargs
    )


def _change(include_domain="sendgrid.net", impact="low", **kwargs):
    return spfwarden.history.IPChangeEvent(
        domain="example.com",
        include_domain=include_domain,
        change_type="added",
        current_ips=kwargs.pop("current_ips", ("198.51.100.1",)),
        impact=impact,
        timestamp=WEDNESDAY_NOON,
        **kwargs,
    )


class SlowDNSLookup(spfwarden.utils.DNSLookup):
    def lookup(self, domain, record_type):
        time.sleep(0.5)
        return spfwarden.utils.lookup_success([])


class BrokenDNSLookup(spfwarden.utils.DNSLookup):
    def lookup(self, domain, record_type):
        raise RuntimeError("resolver exploded")


class BrokenHistoryStore(spfwarden.history.InMemoryHistoryStore):
    def count_updates(self, domain, since):
        raise RuntimeError("database unavailable")


class StubESPIntelligence(object):
    def __init__(self, prediction=None, error=None):
        self.prediction = prediction
        self.error = error

    def get_esp_profile(self, include_domain):
        if self.error is not None:
            raise self.error
        return spfwarden.esp.ESPProfile(name="Stub", include_domain=include_domain)

    def predict_change_impact(self, profile, changed_ips):
        return dict(self.prediction)


class FakeResponse(object):
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self.ok = 200 <= status_code < 400
        self.payload = payload
        self.text = text

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON")
        return self.payload


class FakeSession(object):
    def __init__(self, response):
        self.headers = {}
        self.response = response
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append((url, json, timeout))
        return self.response


class Test(unittest.TestCase):
    def testNineLookupsIsValidWithWarning(self):
        """A record with 9 lookups is valid but close to the limit"""

        record = spfwarden.spf.parse_spf_record_from_string(NINE_LOOKUPS)
        self.assertEqual(record.total_lookups, 9)
        self.assertTrue(record.is_valid)
        self.assertIn(
            "SPF record is close to 10 DNS lookup limit (9). Consider optimization.",
            record.warnings,
        )
        self.assertEqual(spfwarden.spf.calculate_compliance_status(record), "warning")

    def testElevenLookupsIsInvalid(self):
        """A record with 11 lookups is invalid"""

        record = spfwarden.spf.parse_spf_record_from_string(ELEVEN_LOOKUPS)
        self.assertEqual(record.total_lookups, 11)
        self.assertFalse(record.is_valid)
        self.assertIn(
            "SPF record exceeds 10 DNS lookups (11). "
            "This will cause SPF authentication to fail.",
            record.errors,
        )

    def testLookupCosts(self):
        """Lookup costs are summed over mechanisms and modifiers"""

        record = spfwarden.spf.parse_spf_record_from_string(
            "v=spf1 include:a.example.com a mx ptr exists:x.example.com "
            "ip4:192.0.2.1 ip6:2001:db8::1 redirect=b.example.com exp=c.example.com"
        )
        self.assertEqual(record.total_lookups, 7)
        breakdown = spfwarden.spf.lookup_breakdown(record)
        self.assertEqual(breakdown["include_count"], 1)
        self.assertEqual(breakdown["ptr_count"], 1)
        self.assertEqual(breakdown["redirect_count"], 1)
        self.assertEqual(breakdown["total_count"], 7)
        self.assertEqual(len(breakdown["detailed_breakdown"]), 7)

    def testLookupsAfterMutation(self):
        """Total lookups track the mechanisms after they change"""

        record = spfwarden.spf.parse_spf_record_from_string(NINE_LOOKUPS)
        record.mechanisms.insert(
            0, spfwarden.spf.parse_mechanism("include:j.example.com")
        )
        record.recompute()
        self.assertEqual(record.total_lookups, 10)
        self.assertTrue(record.is_valid)
        record.mechanisms.insert(0, spfwarden.spf.parse_mechanism("mx"))
        record.recompute()
        self.assertEqual(record.total_lookups, 11)
        self.assertFalse(record.is_valid)

    def testRecordRoundTrip(self):
        """Serialized records parse back to the same terms in the same order"""

        spf_record = (
            "v=spf1 ip4:192.0.2.0/24 a:mail.example.com/24 mx "
            "?include:_spf.example.com -exists:%{i}._spf.example.com ~all"
        )
        record = spfwarden.spf.parse_spf_record_from_string(spf_record)
        self.assertEqual(record.to_string(), spf_record)
        reparsed = spfwarden.spf.parse_spf_record_from_string(record.to_string())
        self.assertEqual(
            [m.key() for m in reparsed.mechanisms],
            [m.key() for m in record.mechanisms],
        )
        self.assertEqual(
            [m.qualifier for m in reparsed.mechanisms],
            ["+", "+", "+", "?", "-", "~"],
        )

    def testModifiersAndMechanisms(self):
        """Tokens containing a colon are always mechanisms"""

        record = spfwarden.spf.parse_spf_record_from_string(
            "v=spf1 include:foo=bar.example.com redirect=_spf.example.com"
        )
        self.assertNotIn("Unknown modifier: include:foo=bar.example.com", record.errors)
        self.assertIn(
            "Invalid domain in include mechanism: foo=bar.example.com", record.errors
        )
        self.assertEqual(record.modifiers[0].type, "redirect")
        self.assertEqual(record.total_lookups, 1)
        # A redirect stands in for the all mechanism
        self.assertFalse(any('"all"' in w for w in record.warnings))

    def testSyntaxErrors(self):
        """Syntax errors invalidate the record without raising"""

        record = spfwarden.spf.parse_spf_record_from_string(
            "v=spf1 ip4:2001:db8::1 foo=bar -all"
        )
        self.assertFalse(record.is_valid)
        self.assertIn(
            "2001:db8::1 is not a valid ipv4 value. Looks like ipv6.", record.errors
        )
        self.assertIn("Unknown modifier: foo=bar", record.errors)
        self.assertEqual(len(record.mechanisms), 1)

        for spf_record in ("spf1 -all", "V=SPF1 -all", "v=SPF1 -all"):
            with self.subTest(spf_record=spf_record):
                record = spfwarden.spf.parse_spf_record_from_string(spf_record)
                self.assertFalse(record.is_valid)
                self.assertEqual(record.version, "")
                self.assertEqual(record.errors, ['SPF record must start with "v=spf1"'])

        result = spfwarden.spf.validate_spf_syntax("v=spf1 foo=bar -all")
        self.assertFalse(result["valid"])
        self.assertEqual(result["errors"], ["Unknown modifier: foo=bar"])

    def testPTRWarning(self):
        """PTR mechanisms are deprecated"""

        record = spfwarden.spf.parse_spf_record_from_string("v=spf1 ptr -all")
        self.assertTrue(record.is_valid)
        self.assertTrue(any("PTR" in w for w in record.warnings))

    def testSelectSPFRecord(self):
        """The SPF record is picked out of the TXT answers"""

        records = ["google-site-verification=abc", "v=spf1 -all"]
        self.assertEqual(
            spfwarden.spf.select_spf_record(records, "example.com"), "v=spf1 -all"
        )
        self.assertRaises(
            spfwarden.spf.MultipleSPFRTXTRecords,
            spfwarden.spf.select_spf_record,
            ["v=spf1 -all", "v=spf1 ~all"],
            "example.com",
        )
        self.assertRaises(
            spfwarden.spf.SPFRecordNotFound,
            spfwarden.spf.select_spf_record,
            ["v=spf10 -all"],
            "example.com",
        )

    def testParseDomainRecord(self):
        """Domain records are retrieved through the resolver"""

        zone = {
            "example.com": {
                "TXT": ["google-site-verification=abc", "v=spf1 include:_spf.google.com ~all"]
            },
            "nospf.example.com": {"TXT": ["hello"]},
        }
        _, resolver = _resolver(zone)
        with resolver:
            record = spfwarden.spf.parse_spf_record("Example.com.", resolver)
            self.assertTrue(record.is_valid)
            self.assertEqual(record.total_lookups, 1)

            record = spfwarden.spf.parse_spf_record("nospf.example.com", resolver)
            self.assertFalse(record.is_valid)
            self.assertEqual(
                record.errors, ["No SPF record found for domain: nospf.example.com"]
            )

            record = spfwarden.spf.parse_spf_record("missing.example.com", resolver)
            self.assertTrue(record.errors[0].startswith("Failed to retrieve"))

    def testMacroExpansion(self):
        """Macros expand against the context"""

        context = spfwarden.macros.MacroExpansionContext(
            sender_ip="192.168.1.1",
            sender_email="strong-bad@email.example.com",
            current_domain="example.com",
        )
        expand = spfwarden.macros.expand_macros_in_text
        self.assertEqual(expand("%{d}", context), "example.com")
        self.assertEqual(expand("%{ir}", context), "1.1.168.192")
        self.assertEqual(
            expand("%{ir}.%{v}._spf.%{d}", context),
            "1.1.168.192.in-addr._spf.example.com",
        )
        self.assertEqual(expand("%{l1r+-}", context), "strong")
        self.assertEqual(expand("%{lr-}", context), "bad.strong")
        self.assertEqual(expand("%{o2}", context), "example.com")
        self.assertEqual(expand("%{S}", context), "strong-bad%40email.example.com")
        self.assertEqual(expand("%%%_%-", context), "% %20")

        context = dataclasses.replace(context, sender_email="user.name@example.com")
        self.assertEqual(expand("%{l1r+-}", context), "user.name")

    def testMacroExpansionIsDeterministic(self):
        """The same macro and context always expand the same way"""

        context = spfwarden.macros.MacroExpansionContext(
            sender_ip="2001:db8::cb01",
            sender_email="user@example.com",
            current_domain="example.com",
            timestamp=1700000000,
        )
        text = "%{ir}.%{v}.%{t}.%{d}"
        first = spfwarden.macros.expand_macros_in_text(text, context)
        self.assertEqual(first, spfwarden.macros.expand_macros_in_text(text, context))
        self.assertTrue(first.startswith("1.0.b.c.0.0.0.0"))
        self.assertTrue(first.endswith(".ip6.1700000000.example.com"))

    def testMacroValidation(self):
        """Invalid macros are reported, not raised"""

        result = spfwarden.macros.preview_macro_expansion("%{x}")
        self.assertFalse(result["valid"])
        self.assertEqual(result["expanded"], "%{x}")
        self.assertTrue(result["errors"][0].startswith("Malformed macro syntax"))

        result = spfwarden.macros.preview_macro_expansion("%{d0}")
        self.assertFalse(result["valid"])
        self.assertIn("Digits modifier cannot be zero", result["errors"])

        result = spfwarden.macros.preview_macro_expansion("%{v5}")
        self.assertIn("%{v} macro should not use digits modifier", result["errors"])

        self.assertEqual(spfwarden.macros.find_macros("%%{d}"), [])

        self.assertIn("preview_macro_expansion", spfwarden.__all__)
        self.assertEqual([n for n in spfwarden.__all__ if n.startswith("test")], [])

    def testMacroRisk(self):
        """Macros are assigned a static security risk"""

        def risk(text, mechanism_type=None):
            return spfwarden.macros.find_macros(text, mechanism_type)[0].security_risk

        self.assertEqual(risk("%{d}"), "low")
        self.assertEqual(risk("%{i}"), "medium")
        self.assertEqual(risk("%{s}", "exists"), "medium")
        self.assertEqual(risk("%{s}", "include"), "low")
        self.assertEqual(risk("%{p}"), "high")
        self.assertEqual(risk("%{c}"), "high")

        macros = spfwarden.macros.find_macros("%{ir}")
        self.assertEqual(spfwarden.macros.calculate_complexity_score(macros), 13)

        analysis = spfwarden.macros.parse_spf_macros("%{p}.%{ir}.example.com")
        self.assertEqual(analysis["total_macros"], 2)
        self.assertEqual(analysis["dns_lookups_per_email"], 2.5)
        self.assertIn("1 high-risk macro(s) detected", analysis["security_risks"])

    def testRecordMacroAnalysis(self):
        """Macro vulnerabilities are found per mechanism and ranked"""

        record = spfwarden.spf.parse_spf_record_from_string(
            "v=spf1 a:%{p}.example.com exists:%{s}.spf.example.com -all"
        )
        analysis = spfwarden.analysis.analyze_spf_record_macros(record)
        self.assertEqual(len(analysis["macro_mechanisms"]), 2)
        types = [v["type"] for v in analysis["security_assessment"]["vulnerabilities"]]
        self.assertIn("dns_amplification", types)
        self.assertIn("enumeration", types)
        self.assertEqual(analysis["security_assessment"]["risk_level"], "high")
        self.assertEqual(
            analysis["optimization_recommendations"][0]["title"],
            "Fix dns amplification vulnerability",
        )
        self.assertEqual(
            analysis["macro_mechanisms"][0]["expanded_example"], "company.com.example.com"
        )

        summary = spfwarden.analysis.get_macro_summary(record)
        self.assertEqual(summary["count"], 2)
        self.assertTrue(summary["has_high_risk_macros"])
        self.assertIn("Security vulnerabilities detected", summary["primary_concerns"])

    def testInjectionInMalformedMacro(self):
        """Dangerous characters in a malformed macro are flagged"""

        macro = spfwarden.macros.parse_macro("%{d;}", mechanism_type="exists")
        self.assertFalse(macro.is_valid)
        assessment = spfwarden.analysis.assess_mechanism_security([macro], "exists")
        types = [v["type"] for v in assessment["vulnerabilities"]]
        self.assertIn("injection", types)
        self.assertEqual(assessment["risk_level"], "high")

    def testRecordAnalysis(self):
        """Records are rated by lookup usage and compliance"""

        record = spfwarden.spf.parse_spf_record_from_string("v=spf1 ip4:192.0.2.1 -all")
        analysis = spfwarden.analysis.analyze_spf_record(record)
        self.assertEqual(analysis["risk_level"], "low")
        self.assertEqual(analysis["compliance_status"], "compliant")

        record = spfwarden.spf.parse_spf_record_from_string(NINE_LOOKUPS)
        analysis = spfwarden.analysis.analyze_spf_record(record)
        self.assertEqual(analysis["risk_level"], "high")
        self.assertEqual(analysis["compliance_status"], "warning")

        record = spfwarden.spf.parse_spf_record_from_string(ELEVEN_LOOKUPS)
        analysis = spfwarden.analysis.analyze_spf_record(record)
        self.assertEqual(analysis["risk_level"], "critical")
        self.assertEqual(analysis["compliance_status"], "failing")

    def testAnalyzeRecordToJSON(self):
        """Full analysis results serialize to JSON"""

        results = spfwarden.analyze_record("v=spf1 include:_spf.%{d} ~all")
        parsed = json.loads(spfwarden.results_to_json(results))
        self.assertEqual(parsed["record"]["macro_count"], 1)
        self.assertEqual(
            parsed["macro_analysis"]["macro_mechanisms"][0]["macros"][0]["type"], "d"
        )
        self.assertEqual(parsed["risk_assessment"]["current_risk"], "Low")

    def testAnalyzeDomains(self):
        """Domains are deduplicated, sorted and analyzed"""

        zone = {
            "example.com": {"TXT": ["v=spf1 ip4:192.0.2.1 -all"]},
            "example.net": {"TXT": ["v=spf1 mx -all"]},
        }
        _, resolver = _resolver(zone)
        with resolver:
            results = spfwarden.analyze_domains(
                ["example.net", "Example.com", "example.com."], resolver=resolver
            )
        self.assertEqual([r["domain"] for r in results], ["example.com", "example.net"])
        self.assertEqual(results[1]["record"]["total_lookups"], 1)
        self.assertEqual(results[0]["analysis"]["compliance_status"], "compliant")

    def testOptimizationSuggestions(self):
        """Suggestions are ranked and high severity ones are applied"""

        record = spfwarden.spf.parse_spf_record_from_string(
            "v=spf1 ptr include:sendgrid.net include:sendgrid.net ip4:192.0.2.1 "
            "ip4:192.0.2.2 ip4:192.0.2.3 ip4:192.0.2.0/24 -all"
        )
        suggestions = spfwarden.optimizer.generate_optimization_suggestions(record)
        self.assertEqual(suggestions[0]["type"], "remove_ptr")
        self.assertEqual(suggestions[0]["index"], 0)
        self.assertTrue(
            any(
                s["type"] == "remove_redundant"
                and s["index"] == 2
                and s["mechanism"] == "include:sendgrid.net"
                for s in suggestions
            )
        )
        descriptions = [s["description"] for s in suggestions]
        self.assertIn("192.0.2.1 is contained in 192.0.2.0/24", descriptions)
        consolidation = [s for s in suggestions if s["type"] == "use_ip4"]
        self.assertEqual(len(consolidation), 1)
        self.assertTrue(consolidation[0]["implementation"].endswith("192.0.2.0/24"))
        self.assertEqual(spfwarden.optimizer.estimate_lookup_reduction(suggestions), 4)

        optimized = spfwarden.optimizer.generate_optimized_record(record, suggestions)
        self.assertEqual(
            optimized,
            "v=spf1 include:sendgrid.net include:sendgrid.net ip4:192.0.2.1 "
            "ip4:192.0.2.2 ip4:192.0.2.3 ip4:192.0.2.0/24 -all",
        )
        validation = spfwarden.optimizer.validate_optimized_record(optimized)
        self.assertTrue(validation["valid"])
        self.assertEqual(validation["lookup_count"], 2)

        assessment = spfwarden.optimizer.calculate_risk_assessment(record)
        self.assertEqual(assessment["current_risk"], "Low")
        self.assertEqual(assessment["lookup_utilization"], 30.0)
        self.assertIn("Remove deprecated PTR mechanisms", assessment["recommended_actions"])

    def testFlattenSuggestionsNearLimit(self):
        """Every include gets a high severity suggestion near the limit"""

        record = spfwarden.spf.parse_spf_record_from_string(NINE_LOOKUPS)
        suggestions = spfwarden.optimizer.generate_optimization_suggestions(record)
        flatten = [s for s in suggestions if s["type"] == "flatten_include"]
        self.assertEqual(len(flatten), 9)
        self.assertTrue(all(s["severity"] == "high" for s in flatten))
        assessment = spfwarden.optimizer.calculate_risk_assessment(record)
        self.assertEqual(assessment["failure_risk"], "High")

    def testFlattenMacroInclude(self):
        """An include with a macro is expanded, resolved and flattened"""

        spf_record = "v=spf1 include:_spf.%{d} ip4:192.168.1.0/24 ~all"
        record = spfwarden.spf.parse_spf_record_from_string(spf_record)
        self.assertTrue(record.has_macros)
        self.assertEqual(record.macro_count, 1)
        self.assertEqual(record.total_lookups, 1)
        analysis = spfwarden.analysis.analyze_spf_record_macros(record)
        self.assertEqual(analysis["security_assessment"]["risk_level"], "low")

        zone = {"_spf.example.com": {"TXT": ["v=spf1 ip4:10.0.0.1 ip4:10.0.0.2 ~all"]}}
        _, resolver = _resolver(zone)
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                spf_record, domain="example.com", resolver=resolver
            )
        self.assertTrue(result["success"])
        self.assertEqual(
            result["flattened_record"],
            "v=spf1 ip4:10.0.0.1 ip4:10.0.0.2 ip4:192.168.1.0/24 ~all",
        )
        self.assertEqual(result["original_lookups"], 1)
        self.assertEqual(result["new_lookups"], 0)
        self.assertEqual(result["ip_count"], 2)
        self.assertEqual(result["includes"][0]["state"], "resolved")
        self.assertEqual(result["errors"], [])

    def testFlattenMacroIncludeWithoutContext(self):
        """A macro include cannot be resolved without a context"""

        _, resolver = _resolver({})
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:_spf.%{d} ~all", resolver=resolver
            )
        self.assertFalse(result["success"])
        self.assertIn(
            "Cannot resolve include:_spf.%{d} without a macro expansion context",
            result["errors"],
        )
        self.assertIn("Failed to resolve any includes", result["errors"])

    def testIncludeCycle(self):
        """An include loop is detected and ends that branch only"""

        zone = {
            "a.example.com": {"TXT": ["v=spf1 include:b.example.com ip4:10.0.0.1 -all"]},
            "b.example.com": {"TXT": ["v=spf1 include:a.example.com ip4:10.0.0.2 -all"]},
        }
        _, resolver = _resolver(zone)
        options = spfwarden.flattening.FlatteningOptions(include_nested=True)
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:a.example.com -all", resolver=resolver, options=options
            )
        self.assertTrue(result["success"])
        a = result["includes"][0]
        b = a["nested"][0]
        self.assertEqual(a["state"], "resolved")
        self.assertEqual(b["state"], "resolved")
        self.assertEqual(b["nested"][0]["state"], "cycle-detected")
        self.assertEqual(
            b["nested"][0]["errors"],
            [
                "Circular dependency detected: "
                "a.example.com -> b.example.com -> a.example.com"
            ],
        )
        self.assertEqual(sorted(result["resolved_ips"]), ["10.0.0.1", "10.0.0.2"])
        self.assertTrue(
            any(w.startswith("Partial resolution for a.example.com") for w in result["warnings"])
        )

    def testSiblingIncludesAreNotCycles(self):
        """Two branches including the same domain do not see each other"""

        zone = {
            "c.example.com": {"TXT": ["v=spf1 include:shared.example.com -all"]},
            "d.example.com": {"TXT": ["v=spf1 include:shared.example.com -all"]},
            "shared.example.com": {"TXT": ["v=spf1 ip4:192.0.2.1 -all"]},
        }
        _, resolver = _resolver(zone)
        with resolver:
            for include in ("c.example.com", "d.example.com"):
                resolution = resolver.resolve_include_chain(
                    include, ("example.com",), include_nested=True
                )
                self.assertEqual(resolution["state"], "resolved")
                self.assertEqual(resolution["nested"][0]["state"], "resolved")
                self.assertEqual(resolution["ips"], ["192.0.2.1"])

    def testNestedIncludesAreReported(self):
        """Nested includes are reported but not resolved by default"""

        zone = {
            "outer.example.com": {
                "TXT": ["v=spf1 ip4:192.0.2.1 include:inner.example.com -all"]
            },
        }
        dns_lookup, resolver = _resolver(zone)
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:outer.example.com -all", resolver=resolver
            )
        self.assertEqual(result["includes"][0]["nested_includes"], ["inner.example.com"])
        self.assertIn(
            "outer.example.com contains nested includes: inner.example.com",
            result["warnings"],
        )
        self.assertNotIn(("inner.example.com", "TXT"), dns_lookup.queries)

    def testFlattenPartialFailure(self):
        """A failed include does not stop the others from being flattened"""

        zone = {"good.example.com": {"TXT": ["v=spf1 ip4:192.0.2.10 -all"]}}
        _, resolver = _resolver(zone)
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:good.example.com -include:missing.example.com -all",
                resolver=resolver,
            )
        self.assertTrue(result["success"])
        self.assertEqual(
            result["flattened_record"],
            "v=spf1 ip4:192.0.2.10 -include:missing.example.com -all",
        )
        self.assertEqual(result["original_lookups"], 2)
        self.assertEqual(result["new_lookups"], 1)
        self.assertEqual(result["includes"][1]["state"], "failed")
        self.assertIn(
            "Error resolving missing.example.com: Failed to retrieve SPF record for "
            "missing.example.com: The domain does not exist.",
            result["errors"],
        )

    def testFlattenKeepsIncludedFailTerms(self):
        """Addresses an included record rejects are never authorized"""

        zone = {
            "esp.example.net": {"TXT": ["v=spf1 -ip4:10.0.0.9 ip4:10.0.0.1 ~all"]},
            "shadow.example.net": {"TXT": ["v=spf1 -ip4:10.0.0.9 ip4:10.0.0.0/24 ~all"]},
            "lookup.example.net": {"TXT": ["v=spf1 ~exists:%{i}.bl.example.net ip4:10.0.1.1 -all"]},
        }
        _, resolver = _resolver(zone)
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:esp.example.net -all", resolver=resolver
            )
            self.assertTrue(result["success"])
            self.assertEqual(result["flattened_record"], "v=spf1 ip4:10.0.0.1 -all")
            self.assertNotIn("10.0.0.9", result["resolved_ips"])
            self.assertIn(
                "Ignored non-pass terms of esp.example.net: -ip4:10.0.0.9",
                result["includes"][0]["errors"],
            )

            for domain, term in (
                ("shadow.example.net", "-ip4:10.0.0.9 precedes ip4:10.0.0.0/24"),
                ("lookup.example.net", "~exists:%{i}.bl.example.net precedes ip4:10.0.1.1"),
            ):
                with self.subTest(domain=domain):
                    result = spfwarden.flattening.flatten_spf_record(
                        f"v=spf1 include:{domain} -all", resolver=resolver
                    )
                    self.assertFalse(result["success"])
                    self.assertEqual(result["includes"][0]["state"], "failed")
                    self.assertEqual(result["includes"][0]["ips"], [])
                    self.assertIn(
                        f"{domain} cannot be flattened without authorizing addresses "
                        f"it rejects: {term}",
                        result["includes"][0]["errors"],
                    )

    def testFlattenSelectedIncludes(self):
        """Only the requested includes are flattened"""

        zone = {
            "one.example.com": {"TXT": ["v=spf1 ip4:192.0.2.1 -all"]},
            "two.example.com": {"TXT": ["v=spf1 ip4:192.0.2.2 -all"]},
        }
        _, resolver = _resolver(zone)
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:one.example.com ~include:two.example.com -all",
                ["two.example.com", "three.example.com"],
                resolver=resolver,
            )
        self.assertEqual(
            result["flattened_record"],
            "v=spf1 include:one.example.com ~ip4:192.0.2.2 -all",
        )
        self.assertIn(
            "Includes not found in record: three.example.com", result["warnings"]
        )

        with self.subTest("no includes"):
            result = spfwarden.flattening.flatten_spf_record("v=spf1 ip4:192.0.2.1 -all")
            self.assertFalse(result["success"])
            self.assertEqual(result["errors"], ["No valid includes found to flatten"])

    def testFlattenAddressMechanisms(self):
        """a, mx, ip4 and ip6 mechanisms of an include become addresses"""

        zone = {
            "inc.example.com": {
                "TXT": ["v=spf1 a mx:mail.example.com/28 ip6:2001:db8::1 -all"],
                "A": ["192.0.2.20"],
            },
            "mail.example.com": {"MX": ["10 mx1.example.com."]},
            "mx1.example.com": {"A": ["192.0.2.30"]},
        }
        _, resolver = _resolver(zone)
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:inc.example.com -all", resolver=resolver
            )
        self.assertTrue(result["success"])
        self.assertEqual(
            sorted(result["resolved_ips"]),
            sorted(["192.0.2.20", "192.0.2.30/28", "2001:db8::1"]),
        )
        self.assertIn("ip6:2001:db8::1", result["flattened_record"])
        self.assertIn("ip4:192.0.2.30/28", result["flattened_record"])

    def testFlattenDomain(self):
        """A domain's published record is fetched and flattened"""

        zone = {
            "example.com": {"TXT": ["v=spf1 include:_spf.example.com -all"]},
            "_spf.example.com": {"TXT": ["v=spf1 ip4:192.0.2.1 -all"]},
        }
        _, resolver = _resolver(zone)
        with resolver:
            result = spfwarden.flattening.flatten_spf_includes(
                "example.com", resolver=resolver
            )
        self.assertEqual(result["flattened_record"], "v=spf1 ip4:192.0.2.1 -all")
        validation = spfwarden.flattening.validate_flattened_record(
            result["flattened_record"]
        )
        self.assertTrue(validation["valid"])
        self.assertEqual(validation["lookup_count"], 0)
        self.assertEqual(validation["ip_count"], 1)

    def testCancelledResolution(self):
        """A cancelled resolver issues no further lookups"""

        zone = {"_spf.example.com": {"TXT": ["v=spf1 ip4:192.0.2.1 -all"]}}
        cancel_event = threading.Event()
        dns_lookup, resolver = _resolver(zone, cancel_event=cancel_event)
        cancel_event.set()
        with resolver:
            result = spfwarden.flattening.flatten_spf_record(
                "v=spf1 include:_spf.example.com -all", resolver=resolver
            )
        self.assertFalse(result["success"])
        self.assertIn("Resolution cancelled", result["errors"])
        self.assertEqual(dns_lookup.queries, [])

    def testLookupTimeout(self):
        """Each lookup is bounded by the resolver timeout"""

        resolver = spfwarden.flattening.SPFResolver(
            SlowDNSLookup(), cache=spfwarden.utils.DNSCache(), timeout=0.05
        )
        with resolver:
            result = resolver.resolve_txt("slow.example.com")
        self.assertFalse(result["success"])
        self.assertTrue(result["soft"])
        self.assertIn("timed out", result["error"])

    def testBrokenCollaborator(self):
        """Exceptions from the DNS collaborator become failed lookups"""

        resolver = spfwarden.flattening.SPFResolver(
            BrokenDNSLookup(), cache=spfwarden.utils.DNSCache()
        )
        with resolver:
            result = resolver.resolve_a("example.com")
        self.assertFalse(result["success"])
        self.assertEqual(result["error"], "resolver exploded")

    def testDNSCache(self):
        """Only successful answers are cached"""

        zone = {"example.com": {"TXT": ["v=spf1 -all"]}}
        dns_lookup, resolver = _resolver(zone)
        with resolver:
            resolver.resolve_txt("example.com")
            resolver.resolve_txt("EXAMPLE.com.")
            resolver.resolve_txt("missing.example.com")
            resolver.resolve_txt("missing.example.com")
        self.assertEqual(dns_lookup.queries.count(("example.com", "TXT")), 1)
        self.assertEqual(dns_lookup.queries.count(("missing.example.com", "TXT")), 2)
        self.assertIn(("TXT", "example.com"), resolver.cache)
        self.assertNotIn(("TXT", "missing.example.com"), resolver.cache)

    def testHTTPDNSLookup(self):
        """HTTP rate limiting is a soft failure"""

        session = FakeSession(FakeResponse(200, {"success": True, "records": ["v=spf1 -all"]}))
        dns_lookup = spfwarden.utils.HTTPDNSLookup(
            "https://dns.example.com/lookup", api_key="secret", session=session
        )
        self.assertEqual(
            dns_lookup.lookup("Example.com", "txt"),
            {"success": True, "records": ["v=spf1 -all"]},
        )
        self.assertEqual(
            session.requests[0][1], {"domain": "example.com", "recordType": "TXT"}
        )
        self.assertEqual(session.headers["Authorization"], "Bearer secret")

        session.response = FakeResponse(429)
        result = dns_lookup.lookup("example.com", "TXT")
        self.assertFalse(result["success"])
        self.assertTrue(result["soft"])

        session.response = FakeResponse(500, text="boom")
        result = dns_lookup.lookup("example.com", "TXT")
        self.assertFalse(result["soft"])
        self.assertEqual(result["error"], "DNS lookup failed: 500 - boom")

    def testConsolidateIPAddresses(self):
        """Dense /24 groups are consolidated"""

        ips = [f"192.0.2.{i}" for i in range(1, 9)] + ["198.51.100.1", "2001:db8::1"]
        result = spfwarden.flattening.consolidate_ip_addresses(ips)
        self.assertEqual(
            result["consolidated_ranges"], ["192.0.2.0/24", "198.51.100.1", "2001:db8::1"]
        )
        self.assertEqual(result["original_count"], 10)
        self.assertEqual(result["consolidated_count"], 3)

        result = spfwarden.flattening.consolidate_ip_addresses(ips[:7])
        self.assertEqual(result["consolidated_ranges"], ips[:7])

    def testRateLimitDenial(self):
        """A change is denied once the daily limit is reached"""

        updates = [
            spfwarden.history.UpdateRecord(
                "example.com", "v=spf1 -all", WEDNESDAY_NOON - timedelta(hours=h)
            )
            for h in (1, 2, 3)
        ]
        history = spfwarden.history.InMemoryHistoryStore(updates=updates)
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(history)
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 ip4:192.0.2.1 ~all",
            [],
            spfwarden.safeguards.BALANCED,
            _context(),
        )
        self.assertFalse(result["approved"])
        self.assertEqual(result["state"], "denied")
        self.assertIn("Daily update limit exceeded: 3/3", result["reasoning"])

    def testApprovedUpdate(self):
        """A quiet, valid change inside business hours is approved"""

        history = spfwarden.history.InMemoryHistoryStore()
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(history)
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 ip4:192.0.2.1 ~all",
            [],
            spfwarden.safeguards.BALANCED,
            _context(),
        )
        self.assertTrue(result["approved"])
        self.assertEqual(result["state"], "approved")
        self.assertEqual(result["reasoning"], [])
        self.assertIn(
            "Limited historical data - cannot detect patterns", result["additional_checks"]
        )

    def testOutsideBusinessHours(self):
        """Changes outside business hours are held until the next window"""

        history = spfwarden.history.InMemoryHistoryStore()
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(history)
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 ip4:192.0.2.1 ~all",
            [],
            spfwarden.safeguards.BALANCED,
            _context(WEDNESDAY_NOON.replace(hour=7)),
        )
        self.assertFalse(result["approved"])
        self.assertFalse(result["requires_approval"])
        self.assertEqual(result["state"], "held")
        self.assertEqual(result["recommended_delay"], 120)
        self.assertIn("Outside business hours (09:00-17:00, UTC)", result["reasoning"])

        # Friday evening waits for Monday morning
        friday = datetime(2026, 10, 16, 18, 0, tzinfo=timezone.utc)
        hours = spfwarden.safeguards.BusinessHours()
        self.assertEqual(hours.minutes_until_open(friday), 3 * 24 * 60 - 9 * 60)

    def testBusinessHoursTimeZone(self):
        """Business hours are evaluated in their own time zone"""

        hours = spfwarden.safeguards.BusinessHours(timezone="America/New_York")
        self.assertTrue(hours.contains(WEDNESDAY_NOON.replace(hour=14)))
        self.assertFalse(hours.contains(WEDNESDAY_NOON))
        self.assertEqual(hours.minutes_until_open(WEDNESDAY_NOON), 60)
        self.assertRaises(
            spfwarden.safeguards.SafeguardPolicyError,
            spfwarden.safeguards.BusinessHours,
            timezone="Mars/Olympus_Mons",
        )
        self.assertRaises(
            spfwarden.safeguards.SafeguardPolicyError,
            spfwarden.safeguards.BusinessHours,
            start="18:00",
        )

    def testBlackoutPeriod(self):
        """Blackout periods deny a change outright"""

        policy = dataclasses.replace(
            spfwarden.safeguards.BALANCED, blackout_periods=("2026-10-14",)
        )
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore()
        )
        result = safeguards.validate_automatic_update(
            "example.com", "v=spf1 -all", [], policy, _context()
        )
        self.assertFalse(result["approved"])
        self.assertEqual(result["state"], "denied-requires-approval")
        self.assertIn(
            "Deployment blocked by blackout period 2026-10-14", result["reasoning"]
        )

    def testFailClosed(self):
        """Unexpected errors deny the change and require approval"""

        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore()
        )
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 -all",
            [None],
            spfwarden.safeguards.AGGRESSIVE,
            _context(),
        )
        self.assertFalse(result["approved"])
        self.assertTrue(result["requires_approval"])
        self.assertEqual(result["state"], "denied-requires-approval")
        self.assertTrue(result["reasoning"][0].startswith("Safeguard validation failed"))

    def testHistoryFailureDenies(self):
        """An unreadable update history counts as an exceeded limit"""

        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(BrokenHistoryStore())
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 -all",
            [],
            spfwarden.safeguards.AGGRESSIVE,
            _context(),
        )
        self.assertFalse(result["approved"])
        self.assertIn(
            "Failed to check rate limits - assuming exceeded", result["reasoning"]
        )

    def testESPRisk(self):
        """High risk or unavailable ESP verdicts require approval"""

        history = spfwarden.history.InMemoryHistoryStore()
        high_risk = StubESPIntelligence(
            {
                "risk_level": "high",
                "reasoning": ["Low stability ESP"],
                "recommended_response": "Immediate manual review required",
                "confidence_level": 90,
            }
        )
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(history, high_risk)
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 include:sendgrid.net -all",
            [_change()],
            spfwarden.safeguards.BALANCED,
            _context(),
        )
        self.assertEqual(result["state"], "denied-requires-approval")
        self.assertIn(
            "High risk predicted for sendgrid.net: Low stability ESP", result["reasoning"]
        )
        self.assertIn("Immediate manual review required", result["risk_mitigations"])

        unavailable = StubESPIntelligence(error=RuntimeError("profile service down"))
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(history, unavailable)
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 include:sendgrid.net -all",
            [_change()],
            spfwarden.safeguards.BALANCED,
            _context(),
        )
        self.assertEqual(result["state"], "denied-requires-approval")
        self.assertIn(
            "ESP analysis unavailable for sendgrid.net - treating as high risk",
            result["reasoning"],
        )

        low_confidence = StubESPIntelligence(
            {
                "risk_level": "low",
                "reasoning": [],
                "recommended_response": "Monitor",
                "confidence_level": 50,
            }
        )
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(history, low_confidence)
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 include:sendgrid.net -all",
            [_change()],
            spfwarden.safeguards.BALANCED,
            _context(),
        )
        self.assertTrue(result["requires_approval"])
        self.assertIn("Low confidence (50%) for sendgrid.net", result["reasoning"])

    def testCriticalImpact(self):
        """Critical impact changes require approval"""

        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore(),
            StubESPIntelligence(
                {
                    "risk_level": "low",
                    "reasoning": [],
                    "recommended_response": "Monitor",
                    "confidence_level": 100,
                }
            ),
        )
        changes = [
            _change(
                "_spf.google.com", impact="critical", esp_name="Google Workspace"
            )
        ]
        impact = safeguards.assess_update_impact(changes, spfwarden.safeguards.BALANCED)
        self.assertEqual(impact["severity"], "critical")
        self.assertIn("Critical ESPs affected: Google Workspace", impact["reasons"])
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 include:_spf.google.com -all",
            changes,
            spfwarden.safeguards.BALANCED,
            _context(),
        )
        self.assertEqual(result["state"], "denied-requires-approval")
        self.assertIn("Changes affect critical email service providers", result["reasoning"])

    def testPolicyRequiresApproval(self):
        """The conservative preset always asks a human"""

        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore()
        )
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 ip4:192.0.2.1 -all",
            [],
            spfwarden.safeguards.CONSERVATIVE,
            _context(),
        )
        self.assertEqual(result["state"], "denied-requires-approval")
        self.assertIn("Human approval required by policy", result["reasoning"])
        self.assertIn("Pre-deployment testing required", result["additional_checks"])

    def testManyReasonsRequireApproval(self):
        """More than five reasons force approval"""

        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore()
        )
        result = safeguards.validate_automatic_update(
            "example.com",
            "v=spf1 a=1 b=2 c=3 d=4 e=5 f=6 -all",
            [],
            spfwarden.safeguards.AGGRESSIVE,
            _context(),
        )
        self.assertTrue(result["requires_approval"])
        self.assertEqual(result["state"], "denied-requires-approval")
        self.assertIn(
            "Multiple risk factors detected - approval recommended", result["reasoning"]
        )

    def testHolidayDependencyCheck(self):
        """Holidays are treated like weekends"""

        policy = dataclasses.replace(
            spfwarden.safeguards.BALANCED, holidays=("2026-10-14",)
        )
        check = spfwarden.safeguards.SPFAutomationSafeguards.check_external_dependencies
        result = check([], policy, _context())
        self.assertTrue(result["has_risks"])
        self.assertIn(
            "Deployment on a holiday (2026-10-14) - limited support availability",
            result["warnings"],
        )
        sunday = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
        result = check([], spfwarden.safeguards.BALANCED, _context(sunday))
        self.assertIn(
            "Deployment during weekend - limited support availability",
            result["warnings"],
        )

    def testRollbackPlan(self):
        """Rollback plans restore the current record"""

        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore()
        )
        contact = spfwarden.safeguards.EmergencyContact(
            "ops@example.com", phone="+1 555 0100"
        )
        plan = safeguards.create_rollback_plan(
            "example.com",
            "v=spf1 include:_spf.example.com -all",
            "v=spf1 ip4:192.0.2.1 -all",
            [_change(impact="high")],
            spfwarden.safeguards.BALANCED,
            _context(emergency_contact=contact),
        )
        self.assertEqual(plan["rollback_record"], "v=spf1 include:_spf.example.com -all")
        self.assertIn("   TO: v=spf1 include:_spf.example.com -all", plan["rollback_instructions"])
        self.assertEqual(plan["emergency_contacts"][:2], ["ops@example.com", "+1 555 0100"])
        self.assertIn("Authentication failure rate > 5%", plan["rollback_triggers"])
        self.assertIn(
            "Any authentication issues with critical ESPs", plan["rollback_triggers"]
        )
        self.assertEqual(plan["estimated_time_to_rollback"], 15)

        plan = safeguards.create_rollback_plan(
            "example.com",
            "v=spf1 -all",
            "v=spf1 ~all",
            [],
            spfwarden.safeguards.BALANCED,
            _context(WEDNESDAY_NOON.replace(hour=22)),
        )
        self.assertEqual(plan["estimated_time_to_rollback"], 45)
        self.assertEqual(plan["emergency_contacts"][0], "No emergency contact configured")

    def testSafetyTesting(self):
        """Pre-deployment tests report every failure"""

        zone = {"sendgrid.net": {"TXT": ["v=spf1 ip4:198.51.100.0/24 -all"]}}
        _, resolver = _resolver(zone)
        with resolver:
            safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
                spfwarden.history.InMemoryHistoryStore(), resolver=resolver
            )
            report = safeguards.perform_safety_testing(
                "example.com",
                "v=spf1 include:sendgrid.net -all",
                [_change(current_ips=("198.51.100.1",))],
            )
            self.assertTrue(report["passed"])
            self.assertEqual(len(report["results"]), 5)

            report = safeguards.perform_safety_testing(
                "example.com",
                ELEVEN_LOOKUPS,
                [
                    _change(current_ips=("198.51.100.1", "not-an-ip")),
                    _change("spf.missing.example.com"),
                ],
            )
        self.assertFalse(report["passed"])
        results = {r["test"]: r for r in report["results"]}
        self.assertFalse(results["SPF Record Syntax"]["passed"])
        self.assertEqual(results["DNS Lookup Count"]["details"], "11/10 DNS lookups (EXCEEDED)")
        self.assertEqual(
            results["IP Range Validity"]["details"], "1/3 invalid IP addresses"
        )
        self.assertEqual(
            results["ESP Reachability"]["details"],
            "No SPF record found for: spf.missing.example.com",
        )
        self.assertIn(
            "Consider SPF flattening to reduce DNS lookups", report["recommendations"]
        )

    def testMonitorDeploymentRollback(self):
        """A breached threshold rolls the deployment back"""

        sleeps = []
        rolled_back = []
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore(), sleep=sleeps.append
        )
        plan = safeguards.create_rollback_plan(
            "example.com",
            "v=spf1 include:_spf.example.com -all",
            "v=spf1 ip4:192.0.2.1 -all",
            [],
            spfwarden.safeguards.BALANCED,
            _context(),
        )
        samples = iter(
            [
                spfwarden.safeguards.DeploymentMetrics(),
                spfwarden.safeguards.DeploymentMetrics(authentication_failure_rate=7.5),
            ]
        )
        result = safeguards.monitor_deployment(
            "example.com",
            "deploy-1",
            plan,
            spfwarden.safeguards.BALANCED,
            lambda: next(samples),
            rolled_back.append,
        )
        self.assertEqual(result["state"], "rolled-back")
        self.assertFalse(result["success"])
        self.assertEqual(result["reason"], "Authentication failure rate 7.5% exceeds 5%")
        self.assertEqual(rolled_back, ["v=spf1 include:_spf.example.com -all"])
        self.assertEqual(sleeps, [300])
        self.assertEqual(len(result["samples"]), 2)

        policy = dataclasses.replace(
            spfwarden.safeguards.BALANCED, rollback_on_failure=False
        )
        result = safeguards.monitor_deployment(
            "example.com",
            "deploy-2",
            plan,
            policy,
            lambda: spfwarden.safeguards.DeploymentMetrics(dmarc_failure_reports=2),
            rolled_back.append,
        )
        self.assertEqual(result["state"], "rollback-triggered")
        self.assertEqual(len(rolled_back), 1)

    def testMonitorDeploymentStable(self):
        """Healthy samples leave the deployment in place"""

        sleeps = []
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore(), sleep=sleeps.append
        )
        plan = {"rollback_record": "v=spf1 -all"}
        result = safeguards.monitor_deployment(
            "example.com",
            "deploy-3",
            plan,
            spfwarden.safeguards.BALANCED,
            spfwarden.safeguards.DeploymentMetrics,
        )
        self.assertEqual(result["state"], "stable")
        self.assertTrue(result["success"])
        self.assertEqual(len(result["samples"]), 6)
        self.assertEqual(len(sleeps), 5)
        self.assertIn("Deployment appears successful", result["actions"])

        def broken():
            raise RuntimeError("metrics unavailable")

        result = safeguards.monitor_deployment(
            "example.com", "deploy-4", plan, spfwarden.safeguards.BALANCED, broken
        )
        self.assertEqual(result["state"], "monitoring-failed")

    def testRegisterDeployment(self):
        """Deployments are counted against the limits atomically"""

        policy = dataclasses.replace(
            spfwarden.safeguards.BALANCED, max_changes_per_day=1
        )
        safeguards = spfwarden.safeguards.SPFAutomationSafeguards(
            spfwarden.history.InMemoryHistoryStore()
        )
        self.assertEqual(
            safeguards.register_deployment("example.com", "v=spf1 -all", policy, _context()),
            1,
        )
        self.assertRaises(
            spfwarden.history.RateLimitExceeded,
            safeguards.register_deployment,
            "example.com",
            "v=spf1 ~all",
            policy,
            _context(),
        )

        # Days start at midnight in the business hours time zone
        new_york = spfwarden.safeguards.BusinessHours(timezone="America/New_York")
        for previous, now, allowed in (
            (datetime(2026, 10, 14, 23, 0), datetime(2026, 10, 15, 1, 0), False),
            (datetime(2026, 10, 15, 3, 30), datetime(2026, 10, 15, 5, 0), True),
        ):
            with self.subTest(previous=previous, now=now):
                history = spfwarden.history.InMemoryHistoryStore(
                    updates=[
                        spfwarden.history.UpdateRecord(
                            "example.com",
                            "v=spf1 -all",
                            previous.replace(tzinfo=timezone.utc),
                        )
                    ]
                )
                safeguards = spfwarden.safeguards.SPFAutomationSafeguards(history)
                context = _context(
                    now.replace(tzinfo=timezone.utc), business_hours=new_york
                )
                checked = safeguards.check_rate_limits("example.com", policy, context)
                self.assertEqual(checked["approved"], allowed)
                if allowed:
                    self.assertEqual(
                        safeguards.register_deployment(
                            "example.com", "v=spf1 ~all", policy, context
                        ),
                        1,
                    )
                else:
                    self.assertRaises(
                        spfwarden.history.RateLimitExceeded,
                        safeguards.register_deployment,
                        "example.com",
                        "v=spf1 ~all",
                        policy,
                        context,
                    )

    def testConcurrentRecordUpdate(self):
        """Concurrent updates never exceed the daily limit"""

        store = spfwarden.history.InMemoryHistoryStore()

        def attempt(_):
            try:
                store.record_update("example.com", "v=spf1 -all", 5, 10, WEDNESDAY_NOON)
            except spfwarden.history.RateLimitExceeded:
                return False
            return True

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(attempt, range(20)))
        self.assertEqual(results.count(True), 5)
        self.assertEqual(
            store.count_updates(
                "example.com", spfwarden.history.day_start(WEDNESDAY_NOON)
            ),
            5,
        )

    def testWeeklyLimit(self):
        """Updates from earlier in the week count toward the weekly limit"""

        updates = [
            spfwarden.history.UpdateRecord(
                "example.com", "v=spf1 -all", WEDNESDAY_NOON - timedelta(days=6)
            )
            for _ in range(10)
        ]
        store = spfwarden.history.InMemoryHistoryStore(updates=updates)
        with self.assertRaises(spfwarden.history.RateLimitExceeded) as error:
            store.record_update("example.com", "v=spf1 -all", 3, 10, WEDNESDAY_NOON)
        self.assertEqual(error.exception.daily_count, 0)
        self.assertEqual(error.exception.weekly_count, 10)

    def testChangeEvents(self):
        """Change events are validated and loaded from JSON data"""

        self.assertRaises(
            ValueError,
            spfwarden.history.IPChangeEvent,
            "example.com",
            "sendgrid.net",
            "renamed",
        )
        event = spfwarden.history.IPChangeEvent.from_dict(
            {
                "domain": "Example.com",
                "include_domain": "sendgrid.net",
                "change_type": "removed",
                "previous_ips": ["198.51.100.1"],
                "timestamp": "2026-10-14T12:00:00",
            }
        )
        self.assertEqual(event.domain, "example.com")
        self.assertEqual(event.timestamp, WEDNESDAY_NOON)
        self.assertEqual(event.to_dict()["previous_ips"], ["198.51.100.1"])

    def testPolicies(self):
        """Policies load from presets and JSON files"""

        load_policy = spfwarden.safeguards.load_policy
        self.assertIs(load_policy("Balanced"), spfwarden.safeguards.BALANCED)

        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "policy.json")
            with open(path, "w") as policy_file:
                json.dump({"preset": "conservative", "max_changes_per_day": 5}, policy_file)
            self.assertRaises(spfwarden.safeguards.SafeguardPolicyError, load_policy, path)

            with open(path, "w") as policy_file:
                json.dump(
                    {"preset": "conservative", "max_changes_per_week": 5, "holidays": ["2026-12-25"]},
                    policy_file,
                )
            policy = load_policy(path)
            self.assertEqual(policy.max_changes_per_day, 1)
            self.assertEqual(policy.max_changes_per_week, 5)
            self.assertTrue(policy.require_human_approval)
            self.assertEqual(policy.holidays, ("2026-12-25",))

            with open(path, "w") as policy_file:
                json.dump({"max_changes_per_hour": 2}, policy_file)
            with self.assertRaises(spfwarden.safeguards.SafeguardPolicyError) as error:
                load_policy(path)
            self.assertEqual(
                str(error.exception), "Unknown policy keys: max_changes_per_hour"
            )

        self.assertRaises(
            spfwarden.safeguards.SafeguardPolicyError,
            spfwarden.safeguards.SafeguardPolicy,
            impact_threshold="extreme",
        )
        self.assertRaises(
            spfwarden.safeguards.SafeguardPolicyError,
            spfwarden.safeguards.SafeguardPolicy,
            blackout_periods=("2026-10-15T00:00/2026-10-14T00:00",),
        )

    def testClassifyESP(self):
        """Include domains are matched to known providers"""

        self.assertEqual(
            spfwarden.esp.classify_esp("_spf.google.com"),
            ("Google Workspace", "enterprise", True),
        )
        self.assertEqual(spfwarden.esp.classify_esp("u123.sendgrid.net")[0], "SendGrid")
        self.assertEqual(
            spfwarden.esp.classify_esp("spf.unknown-provider.example.com"),
            ("Unknown ESP (example.com)", "unknown", False),
        )

    def testESPProfile(self):
        """Profiles combine the provider and its change history"""

        intelligence = spfwarden.esp.ESPIntelligence(clock=lambda: WEDNESDAY_NOON)
        profile = intelligence.get_esp_profile("sendgrid.net")
        self.assertEqual(profile.name, "SendGrid")
        self.assertEqual(profile.type, "transactional")
        self.assertEqual(profile.stability_rating, 5.0)
        self.assertEqual(profile.change_frequency, "rare")

        events = [
            dataclasses.replace(
                _change(), timestamp=WEDNESDAY_NOON - timedelta(days=d)
            )
            for d in range(0, 60, 2)
        ]
        history = spfwarden.history.InMemoryHistoryStore(events=events)
        intelligence = spfwarden.esp.ESPIntelligence(history, clock=lambda: WEDNESDAY_NOON)
        profile = intelligence.get_esp_profile("sendgrid.net")
        self.assertEqual(profile.change_frequency, "daily")
        self.assertEqual(profile.known_ip_ranges, ["198.51.100.0/24"])
        self.assertEqual(profile.change_pattern, "expansion")

        risks = intelligence.assess_esp_risks(["_spf.hubspot.com"])
        self.assertEqual(risks["_spf.hubspot.com"]["risk_level"], "high")

    def testPredictChangeImpact(self):
        """New addresses are an expansion, known ones a contraction"""

        intelligence = spfwarden.esp.ESPIntelligence(clock=lambda: WEDNESDAY_NOON)
        profile = spfwarden.esp.ESPProfile(
            name="SendGrid",
            include_domain="sendgrid.net",
            type="transactional",
            stability_rating=9.0,
            change_frequency="monthly",
            known_ip_ranges=["198.51.100.0/24"],
        )
        prediction = intelligence.predict_change_impact(profile, ["203.0.113.5"])
        self.assertEqual(prediction["risk_level"], "low")
        self.assertEqual(prediction["confidence_level"], 95)
        self.assertIn("IP range expansion detected - generally safe", prediction["reasoning"])

        prediction = intelligence.predict_change_impact(profile, ["198.51.100.7"])
        self.assertEqual(prediction["risk_level"], "medium")
        self.assertEqual(prediction["confidence_level"], 80)

        profile.change_frequency = "rare"
        prediction = intelligence.predict_change_impact(profile, ["203.0.113.5"])
        self.assertEqual(prediction["risk_level"], "medium")
        self.assertIn(
            "Unexpected timing - changes outside normal patterns", prediction["reasoning"]
        )

    def testESPLearning(self):
        """Update outcomes adjust the stability rating within bounds"""

        intelligence = spfwarden.esp.ESPIntelligence(clock=lambda: WEDNESDAY_NOON)
        profile = intelligence.learn_from_update_result("sendgrid.net", True, [_change()])
        self.assertAlmostEqual(profile.stability_rating, 5.2)
        self.assertFalse(profile.monitoring_recommendation.auto_update_safe)
        profile = intelligence.learn_from_update_result("sendgrid.net", False, [])
        self.assertAlmostEqual(profile.stability_rating, 4.9)

        many = [_change() for _ in range(11)]
        profile = intelligence.learn_from_update_result("sendgrid.net", True, many)
        self.assertAlmostEqual(profile.stability_rating, 5.0)
        self.assertEqual(profile.change_frequency, "monthly")

        learning_policy = spfwarden.esp.ESPLearningPolicy(
            success_adjustment=2.5, failure_adjustment=-9.0
        )
        intelligence = spfwarden.esp.ESPIntelligence(
            learning_policy=learning_policy, clock=lambda: WEDNESDAY_NOON
        )
        profile = intelligence.learn_from_update_result("sendgrid.net", True, [_change()])
        self.assertAlmostEqual(profile.stability_rating, 7.5)
        self.assertTrue(profile.monitoring_recommendation.auto_update_safe)
        profile = intelligence.learn_from_update_result("sendgrid.net", False, [])
        self.assertEqual(profile.stability_rating, 1.0)
        self.assertFalse(profile.monitoring_recommendation.auto_update_safe)

    def testESPProfilesAreNotShared(self):
        """Callers get their own profile copies and concurrent learning is kept"""

        intelligence = spfwarden.esp.ESPIntelligence(clock=lambda: WEDNESDAY_NOON)
        profile = intelligence.get_esp_profile("sendgrid.net")
        profile.stability_rating = 1.0
        profile.monitoring_recommendation.auto_update_safe = True
        profile = intelligence.get_esp_profile("sendgrid.net")
        self.assertEqual(profile.stability_rating, 5.0)
        self.assertFalse(profile.monitoring_recommendation.auto_update_safe)

        def learn(_):
            intelligence.learn_from_update_result("sendgrid.net", True, [_change()])

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(learn, range(20)))
        profile = intelligence.get_esp_profile("sendgrid.net")
        self.assertAlmostEqual(profile.stability_rating, 9.0)
        self.assertTrue(profile.monitoring_recommendation.auto_update_safe)

    def testResultsToCSV(self):
        """Rows are written as CSV with list values joined"""

        csv = spfwarden.results_to_csv(
            [{"domain": "example.com", "ips": ["192.0.2.1", "192.0.2.2"]}]
        )
        self.assertEqual(csv, "domain,ips\nexample.com,192.0.2.1|192.0.2.2\n")
        self.assertEqual(spfwarden.results_to_csv([]), "")


if __name__ == "__main__":
    unittest.main(verbosity=2)
