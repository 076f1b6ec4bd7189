# docker_dns_proxy/constants.py
# Version: 1.0.0
# Proxy constants - default values and protocol limits in one place

"""
Docker DNS Proxy Constants

Every default the configuration loader falls back to is defined here, so the
behaviour of an unconfigured proxy can be read from a single file.
"""

# =============================================================================
# DNS PROTOCOL CONSTANTS
# =============================================================================
DNS_DEFAULT_PORT = 53
DNS_UDP_MAX_SIZE = 512  # RFC 1035 standard UDP DNS message size
EDNS_MAX_UDP_SIZE = 4096  # cap on a client's advertised EDNS buffer

# =============================================================================
# LISTENER DEFAULTS
# =============================================================================
DEFAULT_LISTEN_ADDRESS = "127.0.0.1"
DEFAULT_LISTEN_PORT = 5353

# =============================================================================
# UPSTREAM DEFAULTS
# =============================================================================
DEFAULT_DOCKER_DNS = "127.0.0.11:53"  # Docker's embedded resolver
DEFAULT_UPSTREAM_DNS = "8.8.8.8:53"
DEFAULT_ENABLE_UPSTREAM = False
DEFAULT_QUERY_TIMEOUT = 2.0  # Seconds, one attempt per upstream query

# =============================================================================
# NAMESPACE SUFFIX
# =============================================================================
DEFAULT_STRIP_SUFFIX = ".docker"

# =============================================================================
# LOGGING
# =============================================================================
DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5

# =============================================================================
# METRICS
# =============================================================================
DEFAULT_ENABLE_METRICS = False
DEFAULT_METRICS_INTERVAL = 30.0  # Seconds between [METRICS] log lines
DEFAULT_METRICS_PORT = 0  # 0 disables the Prometheus HTTP endpoint
METRIC_NAMESPACE = "docker_dns_proxy"
LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

# =============================================================================
# PORT VALIDATION
# =============================================================================
MIN_PORT_NUMBER = 1
MAX_PORT_NUMBER = 65535

# =============================================================================
# RESPONSE CODES (for logs and metric labels)
# =============================================================================
RCODE_NAMES = {
    0: "NOERROR",
    1: "FORMERR",
    2: "SERVFAIL",
    3: "NXDOMAIN",
    4: "NOTIMP",
    5: "REFUSED",
}
