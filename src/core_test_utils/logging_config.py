"""Apply tracing filter strings to the standard library loggers.

A filter is a comma separated list of directives. ``target=LEVEL`` sets the
level of the logger named ``target`` and a bare ``LEVEL`` sets the root
logger. This is the same shape as the ``RUST_LOG`` filters integration
environments already export, e.g. ``core_test_utils=DEBUG,temporalio=WARN``.
"""

import logging

logger = logging.getLogger(__name__)

_OFF = logging.CRITICAL + 10

LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "OFF": _OFF,
}


def parse_tracing_filter(directives: str) -> dict[str, int]:
    """Parse a filter string into a mapping of logger name to level.

    The root logger is keyed by the empty string. Raises ``ValueError`` on an
    unknown level or an empty target.
    """
    levels: dict[str, int] = {}
    for directive in directives.split(","):
        directive = directive.strip()
        if not directive:
            continue

        if "=" in directive:
            target, _, level_name = directive.partition("=")
            target = target.strip()
            if not target:
                raise ValueError(f"Empty target in tracing directive '{directive}'")
        else:
            target, level_name = "", directive

        level = LEVELS.get(level_name.strip().upper())
        if level is None:
            raise ValueError(f"Unknown log level '{level_name}' in tracing directive '{directive}'")
        levels[target] = level

    return levels


def apply_tracing_filter(directives: str) -> dict[str, int]:
    """Set logger levels from a filter string and return what was applied."""
    levels = parse_tracing_filter(directives)
    for target, level in levels.items():
        logging.getLogger(target or None).setLevel(level)
    logger.debug(f"Applied tracing filter '{directives}'")
    return levels
