"""Logging setup for the provisioner."""

from provisioner.telemetry.json_formatter import JSONFormatter
from provisioner.telemetry.log_config import RedactingFilter, configure_logging, redact

__all__ = ["JSONFormatter", "RedactingFilter", "configure_logging", "redact"]
