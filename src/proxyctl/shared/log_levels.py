"""TRACE logging level, used for per-entry proxy mutation output."""

import logging

TRACE = 5

logging.addLevelName(TRACE, "TRACE")
