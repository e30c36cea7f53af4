#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Colored console logging for orchestrator runs.

Level colors:
- DEBUG: Cyan
- INFO: Green
- WARNING: Yellow
- ERROR / CRITICAL: Red / Bold Red

Records emitted by the audit logger are tagged in magenta so confirmation
events stand out in long cycle logs. Colors are disabled when stderr is not a
TTY or when NO_COLOR is set.
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Iterable, Optional, TextIO

DEFAULT_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s:%(module)s.%(funcName)s:%(lineno)d] - %(message)s'
AUDIT_LOGGER_NAME = "escrow_orchestrator.audit"

# Third-party loggers that flood DEBUG output with connection chatter
NOISY_LOGGERS = ("urllib3", "requests")


class ColoredFormatter(logging.Formatter):
    """Formatter that adds ANSI colors to level names and audit records."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[1;31m',
    }
    AUDIT = '\033[35m'
    RESET = '\033[0m'

    def __init__(self, fmt: str = DEFAULT_FORMAT, datefmt: Optional[str] = None, use_colors: bool = True, stream: Optional[TextIO] = None):
        super().__init__(fmt, datefmt)
        target = stream if stream is not None else sys.stderr
        self.use_colors = (
            use_colors
            and not os.environ.get("NO_COLOR")
            and hasattr(target, 'isatty')
            and target.isatty()
        )

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors or record.levelname not in self.COLORS:
            return super().format(record)
        orig_levelname = record.levelname
        color = self.AUDIT if record.name == AUDIT_LOGGER_NAME else self.COLORS[record.levelname]
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = orig_levelname


def setup_colored_logging(
    level: int = logging.INFO,
    fmt: str = DEFAULT_FORMAT,
    datefmt: Optional[str] = None,
    stream: Optional[TextIO] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Configure the root logger with a single colored stream handler.

    Args:
        level: Logging level for the root logger
        fmt: Format string for log messages
        datefmt: Format string for timestamps
        stream: Target stream (defaults to stderr)
        quiet: Logger names capped at WARNING
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    target = stream if stream is not None else sys.stderr
    console_handler = logging.StreamHandler(target)
    console_handler.setFormatter(ColoredFormatter(fmt=fmt, datefmt=datefmt, stream=target))

    root.setLevel(level)
    root.addHandler(console_handler)
    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
