# logging_config.py
# Diagnostic logging. User-facing output belongs to display.py; this is the
# side channel (stderr) for warnings such as failed audit writes.

import logging
import sys

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "asyncio")


def setup_logging(level: str = "WARNING", verbose: bool = False, quiet: bool = False) -> None:
    if quiet:
        log_level = logging.ERROR
    elif verbose:
        log_level = logging.DEBUG
    else:
        numeric = getattr(logging, level.upper(), None)
        if not isinstance(numeric, int):
            raise ValueError(f"Invalid log level: {level}")
        log_level = numeric

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)-8s %(name)s: %(message)s"))
    handler.setLevel(log_level)
    root.addHandler(handler)
    root.setLevel(log_level)

    if log_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)
