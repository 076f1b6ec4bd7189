# docker_dns_proxy/server.py
# Version: 1.0.0
# UDP listener feeding the query router

import logging
from typing import Tuple

from twisted.internet import protocol
from twisted.names import dns

from docker_dns_proxy.constants import DNS_UDP_MAX_SIZE, EDNS_MAX_UDP_SIZE
from docker_dns_proxy.router import QueryRouter

logger = logging.getLogger(__name__)


def udp_size_limit(request: dns.Message) -> int:
    """Largest reply the client accepts over UDP

    512 bytes unless the query carries an EDNS OPT record, whose class
    field holds the advertised buffer size.
    """
    for record in request.additional:
        if record.type == dns.OPT:
            return min(max(record.cls, DNS_UDP_MAX_SIZE), EDNS_MAX_UDP_SIZE)
    return DNS_UDP_MAX_SIZE


class DNSProxyProtocol(protocol.DatagramProtocol):
    """UDP DNS proxy protocol"""

    def __init__(self, router: QueryRouter):
        self.router = router

    def datagramReceived(self, data: bytes, addr: Tuple[str, int]):
        """Handle incoming DNS query"""
        try:
            message = dns.Message()
            message.fromStr(data)
        except Exception as e:
            logger.error(f"Error parsing UDP DNS query from {addr}: {e}")
            return

        if message.queries:
            query = message.queries[0]
            logger.debug(f"UDP Query from {addr}: {query.name.name.decode('ascii', 'replace')} "
                         f"({dns.QUERY_TYPES.get(query.type, query.type)})")

        d = self.router.handle(message, addr)
        d.addCallback(self._send_response, addr, udp_size_limit(message))
        d.addErrback(self._write_failed, addr)

    def _send_response(self, response: dns.Message, addr: Tuple[str, int],
                       limit: int = DNS_UDP_MAX_SIZE):
        """Send DNS response back to client"""
        # Whole records are shed below; twisted's own maxSize cuts mid-record
        response.maxSize = 0
        response_data = response.toStr()

        if len(response_data) > limit:
            logger.debug(f"Response too large for UDP ({len(response_data)} bytes), truncating")
            response.trunc = 1
            # Shed additional records first, then answers, until it fits
            while len(response_data) > limit and response.additional:
                response.additional.pop()
                response_data = response.toStr()
            while len(response_data) > limit and response.authority:
                response.authority.pop()
                response_data = response.toStr()
            while len(response_data) > limit and response.answers:
                response.answers.pop()
                response_data = response.toStr()

        self.transport.write(response_data, addr)
        logger.debug(f"Sent UDP response to {addr} ({len(response_data)} bytes)")

    def _write_failed(self, failure, addr: Tuple[str, int]):
        logger.error(f"Failed to send UDP response to {addr}: {failure.getErrorMessage()}")
