"""Tests for CLI logging setup."""

import logging

from erpsync.utils.logging_setup import configure_logging


def test_sets_package_logger_level():
    package_logger = logging.getLogger("erpsync")
    previous = package_logger.level
    try:
        configure_logging("debug")
        assert package_logger.level == logging.DEBUG
        configure_logging("error", "timestamped")
        assert package_logger.level == logging.ERROR
    finally:
        package_logger.setLevel(previous)


def test_unknown_level_falls_back_to_info():
    package_logger = logging.getLogger("erpsync")
    previous = package_logger.level
    try:
        configure_logging("chatty")
        assert package_logger.level == logging.INFO
    finally:
        package_logger.setLevel(previous)
