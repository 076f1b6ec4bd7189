# docker_dns_proxy/resolver.py
# Version: 1.0.0
# Client for the container name service (Docker's embedded DNS)

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from twisted.internet import defer
from twisted.names import client, dns

from docker_dns_proxy.config import Address
from docker_dns_proxy.constants import DEFAULT_QUERY_TIMEOUT, RCODE_NAMES
from docker_dns_proxy.errors import UpstreamTransportError

logger = logging.getLogger(__name__)


@dataclass
class Lookup:
    """Outcome of one name-service query

    A lookup without answers is a miss, whatever the reason. ``error`` is set
    only when the name service could not be reached at all.
    """

    answers: List[dns.RRHeader] = field(default_factory=list)
    rcode: int = dns.OK
    error: Optional[UpstreamTransportError] = None

    @property
    def found(self) -> bool:
        return bool(self.answers)


def copy_record(rr: dns.RRHeader) -> dns.RRHeader:
    """Fresh RRHeader with the same content, safe to rename"""
    return dns.RRHeader(
        name=rr.name.name,
        type=rr.type,
        cls=rr.cls,
        ttl=rr.ttl,
        payload=rr.payload,
        auth=rr.auth,
    )


class NameServiceResolver:
    """Resolves bare container names against the internal name service"""

    def __init__(self, address: Address, timeout: float = DEFAULT_QUERY_TIMEOUT):
        self.address = address
        self.timeout = timeout
        # A single-element timeout tuple means exactly one attempt
        self._client = client.Resolver(servers=[address], timeout=(timeout,))

    def resolve(self, hostname: Union[str, bytes], query_type: int) -> defer.Deferred:
        """Query the name service for ``hostname``

        The name is made fully qualified before sending. Returns a Deferred
        firing with a ``Lookup``; it never errbacks.
        """
        if isinstance(hostname, str):
            hostname = hostname.encode("idna")
        if not hostname.endswith(b"."):
            hostname += b"."
        query = dns.Query(hostname, query_type, dns.IN)
        name = hostname.decode("ascii", "replace")

        logger.debug(f"Querying name service {self._server()} for: {name} "
                     f"({dns.QUERY_TYPES.get(query_type, query_type)})")

        d = defer.maybeDeferred(self._client.queryUDP, [query], timeout=(self.timeout,))
        d.addCallbacks(self._classify, self._transport_failed,
                       callbackArgs=(name,), errbackArgs=(name,))
        return d

    def _classify(self, reply: dns.Message, hostname: str) -> Lookup:
        if reply.rCode != dns.OK:
            logger.debug(f"Name service returned {rcode_name(reply.rCode)} for {hostname}")
            return Lookup(rcode=reply.rCode)

        if not reply.answers:
            logger.debug(f"No answer from name service for: {hostname}")
            return Lookup(rcode=reply.rCode)

        logger.debug(f"Got {len(reply.answers)} answers from name service for {hostname}")
        return Lookup(answers=[copy_record(rr) for rr in reply.answers], rcode=reply.rCode)

    def _transport_failed(self, failure, hostname: str) -> Lookup:
        error = UpstreamTransportError(self.address, failure.value)
        logger.error(f"Name service query failed for {hostname}: {error}")
        return Lookup(rcode=dns.ESERVER, error=error)

    def _server(self) -> str:
        host, port = self.address
        return f"{host}:{port}"


def rcode_name(rcode: int) -> str:
    return RCODE_NAMES.get(rcode, str(rcode))
