# docker_dns_proxy/errors.py
"""Exceptions raised inside the proxy.

None of these escape the query path: the router turns each of them into a DNS
status code. Only ``ConfigurationError`` can stop the process, at startup.
"""


class ProxyError(Exception):
    """Base class for proxy errors"""


class ConfigurationError(ProxyError):
    """Configuration source could not be read"""


class MalformedQueryError(ProxyError):
    """Query cannot be routed: no question, or nothing left after the suffix"""


class UpstreamTransportError(ProxyError):
    """Network or timeout failure talking to an upstream resolver"""

    def __init__(self, address, cause):
        self.address = address
        self.cause = cause
        host, port = address
        super().__init__(f"{host}:{port}: {cause}")
