"""
Docker DNS Proxy
Resolves <name>.docker through the container name service, optionally
forwarding all other names to a recursive resolver
"""

from .version import __author__, __version__

__all__ = ["__author__", "__version__"]
