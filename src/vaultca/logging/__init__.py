"""Logging subsystem for the CA toolkit.

Public API::

    from vaultca.logging import configure_logging

    configure_logging(settings.logging)
"""

from vaultca.logging.sanitize import sanitize_for_logs
from vaultca.logging.setup import bind_operation, configure_logging

__all__ = ["bind_operation", "configure_logging", "sanitize_for_logs"]
