"""
Dedicated log channels for events that must not drown in request logs.

- ``security``: every failed signature/HMAC check, kept apart from ordinary
  validation errors so it can be routed to a SIEM.
- ``operator``: ledger/view divergence and reconciliation anomalies that need
  a human (refund a double charge, repair a roster by hand).
"""
from __future__ import annotations

from core.logging_config import get_logger


_security_logger = get_logger("security")
_operator_logger = get_logger("operator")


def security_event(event: str, **kwargs) -> None:
    _security_logger.warning(event, channel="security", **kwargs)


def operator_alert(event: str, **kwargs) -> None:
    _operator_logger.critical(event, channel="operator", **kwargs)
