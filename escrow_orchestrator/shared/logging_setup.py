#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import logging
from .colored_logging import setup_colored_logging, DEFAULT_FORMAT


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Module logger; installs the colored root handler on first use."""
    logger = logging.getLogger(name)
    if not logging.getLogger().handlers:
        setup_colored_logging(level=level, fmt=DEFAULT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    return logger
