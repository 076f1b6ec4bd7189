# docker_dns_proxy/metrics.py
# Version: 1.0.0
# Prometheus metrics for the docker DNS proxy

"""
Docker DNS Proxy Metrics Module

Prometheus counters mirroring the router's decisions, and an optional HTTP
server exposing them at /metrics.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Histogram
from prometheus_client.twisted import MetricsResource
from twisted.internet import reactor
from twisted.web import server
from twisted.web.resource import Resource

from docker_dns_proxy.constants import LATENCY_BUCKETS, METRIC_NAMESPACE

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Prometheus metrics for routed queries

    Each collector owns its registry, so several routers (tests, embedding)
    can coexist in one process.
    """

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.queries_total = Counter(
            f"{METRIC_NAMESPACE}_queries_total",
            "Total DNS queries answered, by routing decision and response code",
            ["route", "rcode"],
            registry=self.registry,
        )

        self.errors_total = Counter(
            f"{METRIC_NAMESPACE}_errors_total",
            "Total errors counted by the router",
            ["kind"],
            registry=self.registry,
        )

        self.query_duration = Histogram(
            f"{METRIC_NAMESPACE}_query_duration_seconds",
            "Time from receiving a query to having its response ready",
            ["route"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )

    def record_query_complete(self, route: str, rcode: str, duration: float):
        self.queries_total.labels(route=route, rcode=rcode).inc()
        self.query_duration.labels(route=route).observe(duration)

    def record_error(self, kind: str):
        self.errors_total.labels(kind=kind).inc()


class MetricsServer:
    """HTTP server for the Prometheus metrics endpoint"""

    def __init__(self, collector: MetricsCollector, listen_address: str = "0.0.0.0",
                 listen_port: int = 9090):
        self.collector = collector
        self.listen_address = listen_address
        self.listen_port = listen_port
        self.port = None

    def start(self):
        root = Resource()
        root.putChild(b"metrics", MetricsResource(registry=self.collector.registry))
        factory = server.Site(root)

        self.port = reactor.listenTCP(self.listen_port, factory, interface=self.listen_address)

        logger.info(f"Metrics server listening on {self.listen_address}:{self.listen_port}/metrics")

    def stop(self):
        if self.port:
            self.port.stopListening()
            self.port = None
            logger.info("Metrics server stopped")
