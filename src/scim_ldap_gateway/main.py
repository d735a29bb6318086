"""SCIM LDAP gateway entrypoint.

Sets up logging, starts the application, runs a connectivity/health report
against the directory and exits with a non-zero status when it fails.
"""
import logging
import os
import sys

from scim_ldap_gateway.config import Config
from scim_ldap_gateway.core.application import Application
from scim_ldap_gateway.core.constants import YES_VALUES
from scim_ldap_gateway.core.errors import ScimLdapError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _setup_logging() -> logging.Logger:
    """Configure and return the application logger."""

    debug = os.getenv("DEBUG", "").upper() in YES_VALUES

    # Configure only the application logger, not the root logger
    app_logger = logging.getLogger("scim_ldap_gateway")
    app_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    app_logger.propagate = False

    for h in list(app_logger.handlers):
        app_logger.removeHandler(h)

    formatter = logging.Formatter(
        fmt="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S %d.%m.%y",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(formatter)
    app_logger.addHandler(console_handler)

    return app_logger

# ---------------------------------------------------------------------------
# Main entrypoint
# ---------------------------------------------------------------------------

def main() -> None:
    """Start the gateway, report directory health once and exit."""
    logger = _setup_logging()
    try:
        cfg = Config()
    except ValueError as exc:
        logger.critical(f"Invalid configuration: {exc}")
        sys.exit(2)

    app = Application(config=cfg)
    try:
        app.start()
        report = app.health_report()
    except ScimLdapError as exc:
        logger.critical(f"Gateway failed to start: {exc}")
        sys.exit(1)
    finally:
        app.close()

    if report.pool is not None:
        logger.info(str(report.pool))
    if not report.success:
        for error in report.errors:
            logger.error(error)
        sys.exit(1)
    logger.info("Health check finished, exiting")


if __name__ == "__main__":
    main()
