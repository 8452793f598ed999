"""
Environment-driven server configuration.

Every setting has an environment variable and a default; command line
flags passed to ``glitch`` take precedence over both.
"""

import logging
import os

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9870
DEFAULT_LAYOUT_DIRECTION = "LR"
DEFAULT_LAYOUT_MARGIN = 20.0

HOST_ENV_VAR = "GLITCH_HOST"
PORT_ENV_VARS = ("GLITCH_PORT", "PORT")
LAYOUT_DIRECTION_ENV_VAR = "GLITCH_LAYOUT_DIRECTION"
LAYOUT_MARGIN_ENV_VAR = "GLITCH_LAYOUT_MARGIN"

LAYOUT_DIRECTIONS = ("LR", "TB")


def get_host() -> str:
    return os.environ.get(HOST_ENV_VAR) or DEFAULT_HOST


def get_port() -> int:
    """
    Get the port to listen on.

    ``GLITCH_PORT`` wins over the generic ``PORT``. Invalid values fall back
    to the default with a warning.
    """
    for name in PORT_ENV_VARS:
        value = os.environ.get(name)
        if not value:
            continue
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring invalid {name}={value!r}")
    return DEFAULT_PORT


def get_layout_direction() -> str:
    value = os.environ.get(LAYOUT_DIRECTION_ENV_VAR, DEFAULT_LAYOUT_DIRECTION).upper()
    if value not in LAYOUT_DIRECTIONS:
        logger.warning(
            f"Ignoring invalid {LAYOUT_DIRECTION_ENV_VAR}={value!r}, "
            f"expected one of {', '.join(LAYOUT_DIRECTIONS)}"
        )
        return DEFAULT_LAYOUT_DIRECTION
    return value


def get_layout_margin() -> float:
    value = os.environ.get(LAYOUT_MARGIN_ENV_VAR)
    if not value:
        return DEFAULT_LAYOUT_MARGIN
    try:
        margin = float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {LAYOUT_MARGIN_ENV_VAR}={value!r}")
        return DEFAULT_LAYOUT_MARGIN
    return max(margin, 0.0)
