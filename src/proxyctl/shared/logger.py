"""Component-tagged logging helpers.

Usage:
    from proxyctl.shared.logger import log_info, log_error, log_warning

    log_info("Route declared", component="route_table", host="app.example")
    log_error("Acquisition failed", component="convergence", error=e)

Each helper routes to the ``proxyctl.<component>`` logger and renders the
structured keyword fields after the message, so console output stays greppable
by ``host=...`` or ``error_type=...``.
"""

import logging
from typing import Any, Dict, Optional

from .log_levels import TRACE

_ROOT = "proxyctl"


def _get_logger(component: Optional[str]) -> logging.Logger:
    if component:
        return logging.getLogger(f"{_ROOT}.{component}")
    return logging.getLogger(_ROOT)


def _format(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    rendered = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
    return f"{message} [{rendered}]" if rendered else message


def _log(level: int, message: str, component: Optional[str], fields: Dict[str, Any]) -> None:
    logger = _get_logger(component)
    if logger.isEnabledFor(level):
        logger.log(level, _format(message, fields), extra={"fields": fields})


def log_trace(message: str, component: Optional[str] = None, **kwargs):
    """Trace log (very verbose debugging)."""
    _log(TRACE, message, component, kwargs)


def log_debug(message: str, component: Optional[str] = None, **kwargs):
    """Debug log."""
    _log(logging.DEBUG, message, component, kwargs)


def log_info(message: str, component: Optional[str] = None, **kwargs):
    """Info log."""
    _log(logging.INFO, message, component, kwargs)


def log_warning(message: str, component: Optional[str] = None, **kwargs):
    """Warning log."""
    _log(logging.WARNING, message, component, kwargs)


def log_error(message: str, component: Optional[str] = None, error: Optional[Exception] = None, **kwargs):
    """Error log.

    Args:
        message: Log message
        component: Optional component name
        error: Optional exception to log
        **kwargs: Additional structured data
    """
    if error:
        kwargs['error'] = str(error)
        kwargs['error_type'] = type(error).__name__
    _log(logging.ERROR, message, component, kwargs)


def log_critical(message: str, component: Optional[str] = None, **kwargs):
    """Critical log, used for operator-visible alerts."""
    _log(logging.CRITICAL, message, component, kwargs)
