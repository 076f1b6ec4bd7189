#!/usr/bin/env python3
"""Unit tests for the query router"""

from unittest.mock import Mock

from twisted.internet import defer
from twisted.names import dns
from twisted.trial.unittest import SynchronousTestCase

from dns_helpers import a_record, make_query, metric_value, reply
from docker_dns_proxy.config import ProxyConfig
from docker_dns_proxy.errors import MalformedQueryError, UpstreamTransportError
from docker_dns_proxy.forwarder import Relay
from docker_dns_proxy.metrics import MetricsCollector
from docker_dns_proxy.resolver import Lookup
from docker_dns_proxy.router import QueryRouter, build_reply

NAME_SERVICE = ("127.0.0.11", 53)
UPSTREAM = ("8.8.8.8", 53)


class RouterTestCase(SynchronousTestCase):
    """Router with mocked upstream clients"""

    def make_router(self, enable_upstream=False, strip_suffix=".docker", metrics=None):
        self.resolver = Mock()
        self.resolver.resolve.return_value = defer.succeed(Lookup())
        self.forwarder = Mock()
        self.forwarder.forward.return_value = defer.succeed(Relay(reply()))
        config = ProxyConfig(enable_upstream=enable_upstream, strip_suffix=strip_suffix)
        return QueryRouter(config, self.resolver, self.forwarder, metrics=metrics)

    def route(self, router, message):
        return self.successResultOf(router.handle(message))


class TestSuffixMatching(RouterTestCase):
    """Label-boundary suffix stripping"""

    def test_strips_suffix(self):
        router = self.make_router()
        self.assertEqual(router.strip_suffix(b"web.docker."), b"web")
        self.assertEqual(router.strip_suffix(b"web.docker"), b"web")
        self.assertEqual(router.strip_suffix(b"db.backend.docker."), b"db.backend")

    def test_comparison_is_case_insensitive(self):
        router = self.make_router()
        self.assertEqual(router.strip_suffix(b"Web.DOCKER."), b"web")

    def test_suffix_must_consume_whole_label(self):
        router = self.make_router()
        self.assertIsNone(router.strip_suffix(b"mydocker."))
        self.assertIsNone(router.strip_suffix(b"docker.com."))
        self.assertIsNone(router.strip_suffix(b"example.com."))

    def test_leading_dot_is_optional(self):
        dotted = self.make_router(strip_suffix=".docker")
        bare = self.make_router(strip_suffix="docker")
        for name in (b"web.docker.", b"mydocker.", b"example.com."):
            self.assertEqual(dotted.strip_suffix(name), bare.strip_suffix(name))

    def test_suffix_alone_is_malformed(self):
        router = self.make_router()
        self.assertRaises(MalformedQueryError, router.strip_suffix, b"docker.")
        self.assertRaises(MalformedQueryError, router.strip_suffix, b".docker.")

    def test_multi_label_suffix(self):
        router = self.make_router(strip_suffix="svc.local")
        self.assertEqual(router.strip_suffix(b"api.svc.local."), b"api")
        self.assertIsNone(router.strip_suffix(b"api.local."))


class TestReplySkeleton(RouterTestCase):

    def test_copies_id_and_first_question(self):
        query = make_query(b"web.docker.", msg_id=777)
        query.queries.append(dns.Query(b"other.docker.", dns.A, dns.IN))

        response = build_reply(query)

        self.assertEqual(response.id, 777)
        self.assertEqual(response.answer, 1)
        self.assertEqual(response.recAv, 1)
        self.assertEqual(response.auth, 0)
        self.assertEqual(response.recDes, 1)
        self.assertEqual(len(response.queries), 1)
        self.assertEqual(response.queries[0].name.name, b"web.docker.")


class TestNamespacePath(RouterTestCase):
    """Queries ending in the strip-suffix go to the name service"""

    def test_scenario_a_answer_owned_by_original_name(self):
        router = self.make_router()
        self.resolver.resolve.return_value = defer.succeed(Lookup(answers=[a_record(b"web.")]))

        response = self.route(router, make_query(b"Web.docker.", dns.A))

        self.resolver.resolve.assert_called_once_with(b"web", dns.A)
        self.assertEqual(response.rCode, dns.OK)
        self.assertEqual(len(response.answers), 1)
        self.assertEqual(response.answers[0].name.name, b"Web.docker.")
        self.assertEqual(response.answers[0].payload.dottedQuad(), "172.18.0.2")
        self.assertEqual(response.recAv, 1)
        self.assertEqual(response.auth, 0)

    def test_every_answer_is_renamed(self):
        router = self.make_router()
        answers = [a_record(b"web.", "172.18.0.2"), a_record(b"web.", "172.18.0.3")]
        self.resolver.resolve.return_value = defer.succeed(Lookup(answers=answers))

        response = self.route(router, make_query(b"WEB.Docker."))

        self.assertEqual([rr.name.name for rr in response.answers],
                         [b"WEB.Docker.", b"WEB.Docker."])

    def test_record_type_is_passed_through(self):
        router = self.make_router()
        self.route(router, make_query(b"web.docker.", dns.AAAA))
        self.resolver.resolve.assert_called_once_with(b"web", dns.AAAA)

    def test_scenario_b_miss_is_nxdomain(self):
        router = self.make_router()

        response = self.route(router, make_query(b"missing.docker."))

        self.assertEqual(response.rCode, dns.ENAME)
        self.assertEqual(response.answers, [])
        self.assertEqual(router.snapshot(), (1, 0))

    def test_miss_is_not_forwarded_even_with_fallback(self):
        router = self.make_router(enable_upstream=True)

        response = self.route(router, make_query(b"missing.docker."))

        self.assertEqual(response.rCode, dns.ENAME)
        self.forwarder.forward.assert_not_called()

    def test_transport_error_counts_and_answers_nxdomain(self):
        router = self.make_router()
        error = UpstreamTransportError(NAME_SERVICE, OSError("unreachable"))
        self.resolver.resolve.return_value = defer.succeed(
            Lookup(rcode=dns.ESERVER, error=error)
        )

        response = self.route(router, make_query(b"web.docker."))

        self.assertEqual(response.rCode, dns.ENAME)
        self.assertEqual(router.snapshot(), (1, 1))

    def test_scenario_d_suffix_only_is_malformed(self):
        router = self.make_router()

        response = self.route(router, make_query(b"docker."))

        self.assertEqual(response.rCode, dns.EFORMAT)
        self.resolver.resolve.assert_not_called()
        self.assertEqual(router.snapshot(), (1, 1))


class TestFallbackPath(RouterTestCase):
    """Queries outside the namespace"""

    def test_scenario_c_disabled_fallback_is_nxdomain(self):
        router = self.make_router(enable_upstream=False)

        response = self.route(router, make_query(b"example.com."))

        self.assertEqual(response.rCode, dns.ENAME)
        self.resolver.resolve.assert_not_called()
        self.forwarder.forward.assert_not_called()
        self.assertEqual(router.snapshot(), (1, 0))

    def test_forwards_original_message(self):
        router = self.make_router(enable_upstream=True)
        query = make_query(b"Example.COM.", dns.MX)

        self.route(router, query)

        self.forwarder.forward.assert_called_once_with(query)
        self.assertEqual(query.queries[0].name.name, b"Example.COM.")
        self.resolver.resolve.assert_not_called()

    def test_mirrors_forwarder_sections_and_rcode(self):
        router = self.make_router(enable_upstream=True)
        answer = a_record(b"example.com", "93.184.216.34")
        authority = dns.RRHeader(name=b"example.com", type=dns.NS,
                                 payload=dns.Record_NS(b"a.iana-servers.net"))
        additional = a_record(b"a.iana-servers.net", "199.43.135.53")
        upstream = reply([answer], [authority], [additional], rcode=dns.OK)
        self.forwarder.forward.return_value = defer.succeed(Relay(upstream))

        response = self.route(router, make_query(b"example.com."))

        self.assertEqual(response.answers, [answer])
        self.assertEqual(response.authority, [authority])
        self.assertEqual(response.additional, [additional])
        self.assertEqual(response.rCode, dns.OK)
        # Relayed verbatim, no renaming
        self.assertEqual(response.answers[0].name.name, b"example.com")

    def test_keeps_upstream_truncation_flag(self):
        router = self.make_router(enable_upstream=True)
        upstream = reply([a_record(b"big.example", "192.0.2.7")])
        upstream.trunc = 1
        self.forwarder.forward.return_value = defer.succeed(Relay(upstream))

        response = self.route(router, make_query(b"big.example."))

        self.assertEqual(response.trunc, 1)
        self.assertEqual(len(response.answers), 1)

    def test_mirrors_upstream_nxdomain(self):
        router = self.make_router(enable_upstream=True)
        self.forwarder.forward.return_value = defer.succeed(Relay(reply(rcode=dns.ENAME)))

        response = self.route(router, make_query(b"nope.example."))

        self.assertEqual(response.rCode, dns.ENAME)
        self.assertEqual(router.snapshot(), (1, 0))

    def test_transport_error_is_servfail(self):
        router = self.make_router(enable_upstream=True)
        error = UpstreamTransportError(UPSTREAM, OSError("timeout"))
        self.forwarder.forward.return_value = defer.succeed(
            Relay(dns.Message(rCode=dns.ESERVER), error=error)
        )

        response = self.route(router, make_query(b"example.com."))

        self.assertEqual(response.rCode, dns.ESERVER)
        self.assertEqual(response.answers, [])
        self.assertEqual(response.authority, [])
        self.assertEqual(response.additional, [])
        self.assertEqual(router.snapshot(), (1, 1))


class TestFailurePolicy(RouterTestCase):

    def test_zero_questions_is_format_error(self):
        router = self.make_router()
        message = dns.Message(id=99)

        response = self.route(router, message)

        self.assertEqual(response.rCode, dns.EFORMAT)
        self.assertEqual(response.id, 99)
        self.assertEqual(response.queries, [])
        self.assertEqual(router.snapshot(), (1, 1))

    def test_only_first_question_is_used(self):
        router = self.make_router()
        query = make_query(b"web.docker.")
        query.queries.append(dns.Query(b"db.docker.", dns.A, dns.IN))

        self.route(router, query)

        self.resolver.resolve.assert_called_once_with(b"web", dns.A)

    def test_unexpected_exception_becomes_servfail(self):
        router = self.make_router()
        self.resolver.resolve.side_effect = RuntimeError("bug")

        response = self.route(router, make_query(b"web.docker."))

        self.assertEqual(response.rCode, dns.ESERVER)
        self.assertEqual(router.snapshot(), (1, 1))

    def test_query_counter_increments_once_per_call(self):
        router = self.make_router()
        for name in (b"web.docker.", b"example.com.", b"docker."):
            self.route(router, make_query(name))
        self.route(router, dns.Message())

        queries, errors = router.snapshot()
        self.assertEqual(queries, 4)
        self.assertEqual(errors, 2)

    def test_routing_is_repeatable(self):
        router = self.make_router()
        self.resolver.resolve.side_effect = lambda hostname, qtype: defer.succeed(
            Lookup(answers=[a_record(b"web.")])
        )

        first = self.route(router, make_query(b"Web.docker.", msg_id=1))
        second = self.route(router, make_query(b"Web.docker.", msg_id=2))

        self.assertEqual(first.rCode, second.rCode)
        self.assertEqual([rr.name.name for rr in first.answers],
                         [rr.name.name for rr in second.answers])
        self.assertEqual((first.id, second.id), (1, 2))


class TestRouterMetrics(RouterTestCase):

    def test_records_route_and_rcode(self):
        metrics = MetricsCollector()
        router = self.make_router(metrics=metrics)
        self.resolver.resolve.return_value = defer.succeed(Lookup(answers=[a_record()]))

        self.route(router, make_query(b"web.docker."))
        self.route(router, make_query(b"example.com."))
        self.route(router, make_query(b"docker."))

        self.assertEqual(metric_value(metrics, "docker_dns_proxy_queries_total",
                                      {"route": "namespace", "rcode": "NOERROR"}), 1.0)
        self.assertEqual(metric_value(metrics, "docker_dns_proxy_queries_total",
                                      {"route": "no_fallback", "rcode": "NXDOMAIN"}), 1.0)
        self.assertEqual(metric_value(metrics, "docker_dns_proxy_queries_total",
                                      {"route": "malformed", "rcode": "FORMERR"}), 1.0)
        self.assertEqual(metric_value(metrics, "docker_dns_proxy_errors_total",
                                      {"kind": "malformed"}), 1.0)
