#!/usr/bin/env python3
import sys
from types import TracebackType
from typing import Type

import loguru
from loguru import logger

from softpatch.cli.main import cli
from softpatch.utils.app_info import AppInfo
from softpatch.utils.constants import EXIT_FAILED


def handle_exception(
    exc_type: Type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
) -> None:
    """
    This function is called (through excepthook) when a command fails with
    an uncaught exception. The error is logged to the log file before exiting.
    """

    # Ignore KeyboardInterrupt exceptions, for when running through the terminal
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.opt(exception=(exc_type, exc_value, exc_traceback)).error(
        f"{AppInfo().app_name} failed with an uncaught exception"
    )
    sys.exit(EXIT_FAILED)


def formatter(record: "loguru.Record") -> str:
    """Custom formatter for loguru logger"""
    format_string = (
        "[{level}]"
        "[{time:YYYY-MM-DD HH:mm:ss}]"
        "[{process.id}]"
        "[{thread.name}]"
        "[{module}]"
        "[{function}][{line}]"
        " : "
        "{message}\n"
    )
    if record["exception"] is not None:
        format_string += "{exception}\n"
    return format_string


def setup_logging() -> None:
    # Set the log level from the presence (or absence) of a "DEBUG" file in the app_storage_folder
    debug_file_path = AppInfo().app_storage_folder / "DEBUG"
    debug_mode = debug_file_path.exists() and debug_file_path.is_file()

    # We have log_file (foo.log) and old_log_file (foo.old.log). If old_log_file exists,
    # remove it. If log_file exists, rename it to old_log_file. When we pass log_file to
    # the logger as an argument, it will automatically be created.
    log_file = AppInfo().user_log_folder / (AppInfo().app_name + ".log")
    old_log_file = AppInfo().user_log_folder / (AppInfo().app_name + ".old.log")
    try:
        if old_log_file.exists() and old_log_file.is_file():
            old_log_file.unlink()
        if log_file.exists() and log_file.is_file():
            log_file.rename(old_log_file)
    except OSError:
        # Another cooperating process still writes to it, keep appending
        pass

    # Remove the default stderr logger
    logger.remove()

    # Create the file logger
    logger.add(log_file, level="DEBUG" if debug_mode else "INFO", format=formatter)

    # Add a "WARNING" or higher stderr logger
    logger.add(
        sys.stderr,
        level="WARNING",
        format=formatter,
        colorize=False,
    )


def main() -> None:
    setup_logging()
    sys.excepthook = handle_exception
    logger.debug(f"{AppInfo().app_name} {AppInfo().app_version}: {sys.argv[1:]}")
    cli()


if __name__ == "__main__":
    main()
