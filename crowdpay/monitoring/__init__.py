"""Monitoring package for crowdpay."""
from .health import HealthCheck, HealthCheckError
from .logging import setup_logging
from .metrics import metrics

__all__ = ["HealthCheck", "HealthCheckError", "metrics", "setup_logging"]
