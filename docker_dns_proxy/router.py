# docker_dns_proxy/router.py
# Version: 1.0.0
# Per-query routing: namespace suffix -> name service, everything else -> fallback

"""
Query Router

Decides, for each query, whether it belongs to the container namespace
(its name ends with the strip-suffix), should be relayed to the fallback
resolver, or answered NXDOMAIN directly, and builds the response.

Every path ends in a valid DNS message. Failures are classified here and
counted; nothing propagates to the transport as an exception.
"""

import logging
import time
from typing import Optional, Tuple

from twisted.internet import defer
from twisted.names import dns

from docker_dns_proxy.config import ProxyConfig
from docker_dns_proxy.errors import MalformedQueryError
from docker_dns_proxy.forwarder import FallbackForwarder
from docker_dns_proxy.metrics import MetricsCollector
from docker_dns_proxy.resolver import NameServiceResolver, rcode_name
from docker_dns_proxy.stats import QueryCounters

logger = logging.getLogger(__name__)

ROUTE_NAMESPACE = "namespace"
ROUTE_FALLBACK = "fallback"
ROUTE_NO_FALLBACK = "no_fallback"
ROUTE_MALFORMED = "malformed"
ROUTE_INTERNAL = "internal"


def build_reply(request: dns.Message) -> dns.Message:
    """Reply skeleton: same ID and first question, never authoritative, recursion available"""
    response = dns.Message(
        id=request.id,
        answer=1,
        opCode=request.opCode,
        recDes=request.recDes,
        recAv=1,
        auth=0,
        rCode=dns.OK,
    )
    response.queries = list(request.queries[:1])
    return response


def _display(name: bytes) -> str:
    return name.decode("ascii", "replace")


class QueryRouter:
    """Routes one query at a time; the counters are the only shared state"""

    def __init__(
        self,
        config: ProxyConfig,
        resolver: NameServiceResolver,
        forwarder: Optional[FallbackForwarder] = None,
        counters: Optional[QueryCounters] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.resolver = resolver
        self.forwarder = forwarder if config.enable_upstream else None
        self.counters = counters or QueryCounters()
        self.metrics = metrics
        self._suffix = config.suffix_label.encode("idna")

    @classmethod
    def from_config(cls, config: ProxyConfig, metrics: Optional[MetricsCollector] = None):
        """Router with upstream clients built from the configuration"""
        resolver = NameServiceResolver(config.docker_dns, config.timeout)
        forwarder = None
        if config.enable_upstream:
            forwarder = FallbackForwarder(config.upstream_dns, config.timeout)
        return cls(config, resolver, forwarder, metrics=metrics)

    def snapshot(self) -> Tuple[int, int]:
        return self.counters.snapshot()

    def strip_suffix(self, name: bytes) -> Optional[bytes]:
        """Bare hostname for a namespaced name, None if the suffix doesn't match

        The comparison is case-insensitive and on a label boundary: with
        suffix 'docker', 'web.docker.' gives 'web' while 'mydocker.' does
        not match. A name that is only the suffix raises MalformedQueryError.
        """
        lowered = name.lower().rstrip(b".")
        if lowered == self._suffix:
            raise MalformedQueryError(f"Empty hostname after stripping suffix from: {_display(name)}")
        if not lowered.endswith(b"." + self._suffix):
            return None

        hostname = lowered[: -(len(self._suffix) + 1)]
        if not hostname:
            raise MalformedQueryError(f"Empty hostname after stripping suffix from: {_display(name)}")
        return hostname

    def handle(self, request: dns.Message, client: Optional[Tuple[str, int]] = None) -> defer.Deferred:
        """Route a query; the Deferred always fires with a response message"""
        query_number = self.counters.record_query()
        started = time.monotonic()

        d = self._route(request, query_number, client)
        d.addErrback(self._internal_failure, request)
        d.addCallback(self._finish, started)
        return d

    @defer.inlineCallbacks
    def _route(self, request: dns.Message, query_number: int, client: Optional[Tuple[str, int]] = None):
        if not request.queries:
            logger.error("Received query with no questions")
            return self._malformed(request)

        question = request.queries[0]
        name = question.name.name
        domain = _display(name)

        source = f" from {client[0]}:{client[1]}" if client else ""
        logger.info(f"Query #{query_number} for: {domain.lower()} "
                    f"(type: {dns.QUERY_TYPES.get(question.type, question.type)}){source}")

        response = build_reply(request)

        try:
            hostname = self.strip_suffix(name)
        except MalformedQueryError as e:
            logger.error(str(e))
            return self._malformed(request)

        if hostname is not None:
            logger.debug(f"Stripping suffix '{self.config.strip_suffix}' from '{domain}', "
                         f"querying name service for: {_display(hostname)}")

            lookup = yield self.resolver.resolve(hostname, question.type)
            if lookup.error is not None:
                self._record_error("namespace_transport")

            if lookup.found:
                # Clients must see the name they asked for, not the internal one
                for rr in lookup.answers:
                    rr.name = dns.Name(name)
                response.answers = lookup.answers
                logger.debug(f"Successfully resolved {domain} via name service")
            else:
                logger.debug(f"No answer from name service for: {_display(hostname)}")
                response.rCode = dns.ENAME
            return response, ROUTE_NAMESPACE

        if self.forwarder is not None:
            logger.debug(f"Forwarding to upstream DNS: {domain}")
            relay = yield self.forwarder.forward(request)
            if relay.error is not None:
                self._record_error("fallback_transport")

            response.answers = relay.message.answers
            response.authority = relay.message.authority
            response.additional = relay.message.additional
            response.rCode = relay.message.rCode
            response.trunc = relay.message.trunc
            return response, ROUTE_FALLBACK

        logger.debug(f"Upstream DNS disabled, returning NXDOMAIN for: {domain}")
        response.rCode = dns.ENAME
        return response, ROUTE_NO_FALLBACK

    def _malformed(self, request: dns.Message):
        self._record_error("malformed")
        response = build_reply(request)
        response.rCode = dns.EFORMAT
        return response, ROUTE_MALFORMED

    def _internal_failure(self, failure, request: dns.Message):
        logger.error(f"Unexpected error routing query {request.id}: {failure.getErrorMessage()}")
        logger.debug(failure.getTraceback())
        self._record_error("internal")
        response = build_reply(request)
        response.rCode = dns.ESERVER
        return response, ROUTE_INTERNAL

    def _record_error(self, kind: str):
        self.counters.record_error()
        if self.metrics is not None:
            self.metrics.record_error(kind)

    def _finish(self, outcome, started: float) -> dns.Message:
        response, route = outcome
        if self.metrics is not None:
            self.metrics.record_query_complete(
                route, rcode_name(response.rCode), time.monotonic() - started
            )
        return response
