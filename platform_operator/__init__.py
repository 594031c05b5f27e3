"""Platform deployment operator.

Reconciles declared platform resources (system, hosts, interfaces, networks,
storage, certificates, PTP) against a remote system-inventory API.
"""

from platform_operator.version import __version__

__all__ = ["__version__"]
