import argparse
import logging
import os
import subprocess
import sys
from importlib.metadata import PackageNotFoundError, version
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .api_server import run_api_server
from .config import (
    LAYOUT_DIRECTION_ENV_VAR,
    LAYOUT_DIRECTIONS,
    LAYOUT_MARGIN_ENV_VAR,
    get_host,
    get_layout_direction,
    get_layout_margin,
    get_port,
)
from .logs_config import cleanup_old_logs, ensure_logs_dir, get_current_log_file

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

APP_LOGGERS = ("glitch", "uvicorn.error")
VERBOSE_LOGGERS = ("uvicorn.access", "fastapi")
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5

logger = logging.getLogger(__name__)


def configure_logging() -> Path:
    """Log INFO from glitch to the console and to a fresh rotating file.

    Third-party loggers stay at WARNING unless VERBOSE_LOGGING is set.
    Returns the path of the new log file.
    """
    ensure_logs_dir()
    cleanup_old_logs(max_age_days=1)
    log_file = get_current_log_file()

    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if type(handler) is logging.StreamHandler:
            handler.setLevel(logging.INFO)

    file_handler = RotatingFileHandler(
        log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(file_handler)

    names = APP_LOGGERS + VERBOSE_LOGGERS if os.getenv("VERBOSE_LOGGING") else APP_LOGGERS
    for name in names:
        logging.getLogger(name).setLevel(logging.INFO)

    return log_file


def get_git_commit_hash() -> str:
    """Short hash of the checkout the package runs from, if there is one."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=Path(__file__).parent,
        )
    except FileNotFoundError:
        return "unknown (git not installed)"
    except subprocess.TimeoutExpired:
        return "unknown (git error)"
    if result.returncode != 0:
        return "unknown (not a git repository)"
    return result.stdout.strip()


def print_version_info():
    try:
        pkg_version = version("glitch-viewer")
    except PackageNotFoundError:
        pkg_version = "unknown"

    print(f"glitch-viewer: {pkg_version}")
    print(f"git commit: {get_git_commit_hash()}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Glitch - live pipeline graph viewer server"
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version information and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (default: False)",
    )
    parser.add_argument(
        "--host",
        default=get_host(),
        help="Host to bind to (default: GLITCH_HOST env var or 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=get_port(),
        help="Port to bind to (default: GLITCH_PORT/PORT env var or 9870)",
    )
    parser.add_argument(
        "--direction",
        choices=LAYOUT_DIRECTIONS,
        default=get_layout_direction(),
        help="Layout direction: LR (left to right) or TB (top to bottom)",
    )
    parser.add_argument(
        "--margin",
        type=float,
        default=get_layout_margin(),
        help="Spacing between layers and between nodes of a layer",
    )
    return parser


def main():
    """Main entry point for the glitch command."""
    args = build_parser().parse_args()

    if args.version:
        print_version_info()
        sys.exit(0)

    log_file = configure_logging()
    logger.info(f"Logging to {log_file}")

    # The app (and reload workers) build their layout from the environment.
    os.environ[LAYOUT_DIRECTION_ENV_VAR] = args.direction
    os.environ[LAYOUT_MARGIN_ENV_VAR] = str(args.margin)

    try:
        run_api_server(port=args.port, host=args.host, reload=args.reload)
    except KeyboardInterrupt:
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
