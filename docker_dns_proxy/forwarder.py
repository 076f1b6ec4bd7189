# docker_dns_proxy/forwarder.py
# Version: 1.0.0
# Transparent relay to the fallback recursive resolver

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from twisted.internet import defer, protocol
from twisted.internet import reactor as global_reactor
from twisted.names import dns
from twisted.names.error import DNSQueryTimeoutError

from docker_dns_proxy.config import Address
from docker_dns_proxy.constants import DEFAULT_QUERY_TIMEOUT
from docker_dns_proxy.errors import UpstreamTransportError

logger = logging.getLogger(__name__)


@dataclass
class Relay:
    """Fallback reply, or the SERVFAIL stand-in when the resolver was unreachable"""

    message: dns.Message
    error: Optional[UpstreamTransportError] = None


class RelayProtocol(protocol.DatagramProtocol):
    """Waits on its own ephemeral port for the reply to one relayed message

    Replies are matched by message ID, like twisted.names does; anything
    else arriving on the port is ignored.
    """

    noisy = False

    def __init__(self, message_id: int):
        self.message_id = message_id
        self.deferred = defer.Deferred()

    def datagramReceived(self, data: bytes, addr: Tuple[str, int]):
        try:
            reply = dns.Message()
            reply.fromStr(data)
        except Exception as e:
            logger.debug(f"Ignoring undecodable datagram from {addr}: {e}")
            return

        if reply.id != self.message_id or self.deferred.called:
            logger.debug(f"Ignoring unexpected reply {reply.id} from {addr}")
            return
        self.deferred.callback(reply)

    def timedOut(self):
        if not self.deferred.called:
            self.deferred.errback(DNSQueryTimeoutError(self.message_id))


class FallbackForwarder:
    """Forwards non-namespaced queries to a general-purpose resolver"""

    def __init__(self, address: Address, timeout: float = DEFAULT_QUERY_TIMEOUT, reactor=None):
        self.address = address
        self.timeout = timeout
        self._reactor = reactor if reactor is not None else global_reactor

    def forward(self, request: dns.Message) -> defer.Deferred:
        """Relay the client's message unchanged, one attempt

        ID, header flags and every section (EDNS OPT record included) go
        out exactly as received. Returns a Deferred firing with a
        ``Relay``; it never errbacks.
        """
        domain = _display_name(request)
        host, port = self.address
        logger.debug(f"Querying upstream DNS {host}:{port} for: {domain}")

        d = defer.maybeDeferred(self._exchange, request)
        d.addCallbacks(self._relay, self._transport_failed,
                       callbackArgs=(domain,), errbackArgs=(domain,))
        return d

    def _exchange(self, request: dns.Message) -> defer.Deferred:
        relay = RelayProtocol(request.id)
        interface = "::" if ":" in self.address[0] else ""
        port = self._reactor.listenUDP(0, relay, interface=interface)

        # Encoded whole; twisted's default 512-byte maxSize would cut it mid-record
        request.maxSize = 0
        try:
            relay.transport.write(request.toStr(), self.address)
        except Exception:
            port.stopListening()
            raise

        timer = self._reactor.callLater(self.timeout, relay.timedOut)

        def _cleanup(result):
            if timer.active():
                timer.cancel()
            port.stopListening()
            return result

        relay.deferred.addBoth(_cleanup)
        return relay.deferred

    def _relay(self, reply: dns.Message, domain: str) -> Relay:
        message = dns.Message(rCode=reply.rCode, trunc=reply.trunc)
        message.answers = list(reply.answers)
        message.authority = list(reply.authority)
        message.additional = list(reply.additional)

        if reply.trunc:
            logger.debug(f"Upstream DNS reply for {domain} is truncated")
        logger.debug(f"Upstream DNS returned {len(reply.answers)} answers for {domain}")
        return Relay(message)

    def _transport_failed(self, failure, domain: str) -> Relay:
        error = UpstreamTransportError(self.address, failure.value)
        logger.error(f"Upstream DNS query failed for {domain}: {error}")
        return Relay(dns.Message(rCode=dns.ESERVER), error=error)


def _display_name(request: dns.Message) -> str:
    if not request.queries:
        return "<no question>"
    return request.queries[0].name.name.decode("ascii", "replace")
