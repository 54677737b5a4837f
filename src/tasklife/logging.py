"""
Copyright 2024 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

import logging
import logging.config
import os
import sys
from collections.abc import Mapping, Sequence
from typing import Optional, TextIO

import colorlog
import yaml
from colorlog.formatter import LogColors

from tasklife import const

LOGGER = logging.getLogger(__name__)


def _is_on_tty() -> bool:
    return (hasattr(sys.stdout, "isatty") and sys.stdout.isatty()) or const.ENVIRON_FORCE_TTY in os.environ


def python_log_level_to_name(python_log_level: int) -> str:
    """Convert a python log level to a human readable version that works in log config files"""
    result = logging.getLevelName(python_log_level)
    if isinstance(result, str) and not result.startswith("Level "):
        return result
    return str(python_log_level)


"""
This dictionary maps the verbosity given on the command line to the corresponding Python log levels
"""
log_levels = {
    "0": logging.WARNING,
    "1": logging.INFO,
    "2": logging.DEBUG,
    "3": const.LOG_LEVEL_TRACE,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": const.LOG_LEVEL_TRACE,
}

logging.addLevelName(const.LOG_LEVEL_TRACE, "TRACE")


def convert_verbosity(verbosity: int) -> int:
    """
    Convert the number of -v flags to a python log level. The CLI never logs below WARNING.
    """
    return log_levels[str(max(0, min(verbosity, 3)))]


class FullLoggingConfig:
    """
    A logging config that can be applied on Python's logging framework.

    This class supports only version 1 of Python's dictConfig format.
    """

    def __init__(
        self,
        *,
        formatters: Optional[Mapping[str, object]] = None,
        handlers: Optional[Mapping[str, object]] = None,
        loggers: Optional[Mapping[str, object]] = None,
        root_handlers: Optional[list[str]] = None,
        root_log_level: Optional[int | str] = None,
    ) -> None:
        self.formatters = formatters if formatters else {}
        self.handlers = handlers if handlers else {}
        self.loggers = loggers if loggers else {}
        self.root_handlers = root_handlers if root_handlers else []
        self.root_log_level = root_log_level

    def apply_config(self) -> None:
        """
        Configure the logging system with this logging config.
        """
        logging.config.dictConfig(self._to_dict_config())

    def _to_dict_config(self) -> dict[str, object]:
        """
        Convert this object into a dictionary format that can be passed to logging.config.dictConfig() method
        to configure logging.
        """
        return {
            "version": 1,
            "formatters": dict(self.formatters),
            "handlers": dict(self.handlers),
            "loggers": dict(self.loggers),
            "root": {
                "handlers": self.root_handlers,
                **({"level": self.root_log_level} if self.root_log_level else {}),
            },
            "disable_existing_loggers": False,
        }


class LoggingConfigBuilder:
    def get_console_logging_config(
        self,
        stream: TextIO = sys.stdout,
        python_log_level: int = logging.WARNING,
        timed: bool = False,
    ) -> FullLoggingConfig:
        """
        Return the logging config that sends all log records of the given level or higher to the given stream.

        :param stream: The TextIO stream where the logs will be sent to.
        :param python_log_level: python log level to configure for the console handler
        :param timed: Prefix every record with a timestamp.
        """
        name_root_handler = "tasklife_console_handler"
        log_level_name = python_log_level_to_name(python_log_level)
        return FullLoggingConfig(
            formatters={
                "tasklife_console_formatter": self._get_multiline_formatter_config(timed),
            },
            handlers={
                name_root_handler: {
                    "class": "logging.StreamHandler",
                    "formatter": "tasklife_console_formatter",
                    "level": log_level_name,
                    "stream": stream,
                },
            },
            root_handlers=[name_root_handler],
            root_log_level=log_level_name,
        )

    @classmethod
    def _get_multiline_formatter_config(cls, timed: bool) -> dict[str, object]:
        """
        Returns the dict-based formatter config for logs that will be sent to the console.
        """
        log_format = "%(asctime)s " if timed else ""
        if _is_on_tty():
            log_format += "%(log_color)s%(name)-25s%(levelname)-8s%(reset)s%(blue)s%(message)s"
            log_colors = {"DEBUG": "cyan", "INFO": "green", "WARNING": "yellow", "ERROR": "red", "CRITICAL": "red"}
        else:
            log_format += "%(name)-25s%(levelname)-8s%(message)s"
            log_colors = None

        return {
            "()": "tasklife.logging.MultiLineFormatter",
            "fmt": log_format,
            "log_colors": log_colors,
            "reset": _is_on_tty(),
            "no_color": not _is_on_tty(),
        }


class LoggingConfigFromFile:
    """
    A dictConfig based logging config in a yaml file
    """

    def __init__(self, file_name: str) -> None:
        self.file_name = os.path.abspath(file_name)

    def read_logging_config(self) -> dict[str, object]:
        try:
            with open(self.file_name, "r", encoding="utf-8") as fh:
                logging_config_as_str = fh.read()
        except FileNotFoundError:
            raise Exception(f"Logging config file {self.file_name} doesn't exist.")

        try:
            result = yaml.safe_load(logging_config_as_str)
        except yaml.YAMLError as e:
            raise Exception(f"Failed to parse logging config file from {self.file_name} as yaml.") from e
        if not isinstance(result, dict):
            raise Exception(f"Logging config file {self.file_name} should contain a mapping, got {type(result).__name__}.")
        return result


class TasklifeLoggerConfig:
    """
    This class is the entry-point for configuring the Python logging framework.

    Call `get_instance` first, it installs a console handler at WARNING level. Once the command line is parsed, call
    `apply_options` to set the final configuration.
    """

    _instance: Optional["TasklifeLoggerConfig"] = None

    def __init__(self, stream: TextIO = sys.stdout) -> None:
        self._stream = stream
        self._handlers: Sequence[logging.Handler] = self._apply_logging_config(
            LoggingConfigBuilder().get_console_logging_config(stream)
        )

    @classmethod
    def get_instance(cls, stream: TextIO = sys.stdout) -> "TasklifeLoggerConfig":
        """
        This method should be used to obtain an instance of this class, because this class is a singleton.

        :param stream: The stream to send log messages to. Default is standard output (sys.stdout)
        """
        if cls._instance:
            if cls._instance._stream != stream:
                raise Exception("Instance already exists with a different stream")
        else:
            cls._instance = cls(stream)
        return cls._instance

    @classmethod
    def clean_instance(cls) -> None:
        """
        Remove the handlers installed by the current instance and forget it
        """
        if cls._instance is not None:
            for handler in cls._instance._handlers:
                logging.root.removeHandler(handler)
                handler.close()
        cls._instance = None

    def get_handler(self) -> logging.Handler:
        if not self._handlers:
            raise Exception("No handlers found.")
        return self._handlers[0]

    def apply_options(self, verbosity: int = 0, logging_config: Optional[str] = None, timed: bool = False) -> None:
        """
        Apply the logging options given on the command line

        :param verbosity: The number of -v flags.
        :param logging_config: A yaml file with a dictConfig logging configuration. Overrides the other options.
        :param timed: Prefix every record with a timestamp.
        """
        for handler in self._handlers:
            logging.root.removeHandler(handler)
            handler.close()
        if logging_config is not None:
            dict_config = LoggingConfigFromFile(logging_config).read_logging_config()
            handlers_before = list(logging.root.handlers)
            logging.config.dictConfig(dict_config)
            self._handlers = [handler for handler in logging.root.handlers if handler not in handlers_before]
            LOGGER.debug("Applied logging config from %s", logging_config)
            return
        log_config = LoggingConfigBuilder().get_console_logging_config(
            self._stream, python_log_level=convert_verbosity(verbosity), timed=timed
        )
        self._handlers = self._apply_logging_config(log_config)

    def _apply_logging_config(self, logging_config: FullLoggingConfig) -> Sequence[logging.Handler]:
        """
        Apply the given logging_config as the current configuration of the logging system.
        """
        handlers_before = list(logging.root.handlers)
        logging_config.apply_config()
        return [handler for handler in logging.root.handlers if handler not in handlers_before]


class MultiLineFormatter(colorlog.ColoredFormatter):
    """
    Formatter for multi-line log records.

    This class extends the `colorlog.ColoredFormatter` class to indent the continuation lines of a record to the width of
    its header.
    """

    def __init__(
        self,
        fmt: Optional[str] = None,
        *,
        log_colors: Optional[LogColors] = None,
        reset: bool = True,
        no_color: bool = False,
    ):
        """
        Initialize a new `MultiLineFormatter` instance.

        :param fmt: Optional string specifying the log record format.
        :param log_colors: Optional `LogColors` object mapping log level names to color codes.
        :param reset: Boolean indicating whether to reset terminal colors at the end of each log record.
        :param no_color: Boolean indicating whether to disable colors in the output.
        """
        super().__init__(fmt, log_colors=log_colors, reset=reset, no_color=no_color)
        self.fmt = fmt

    def get_header_length(self, record: logging.LogRecord) -> int:
        """
        Get the header length of a given log record.

        :param record: The `logging.LogRecord` object for which to calculate the header length.
        :return: The length of the header in the log record, without color codes.
        """
        # to get the length of the header we want to get the header without the color codes
        formatter = colorlog.ColoredFormatter(
            fmt=self.fmt,
            log_colors=self.log_colors,
            reset=False,
            no_color=True,
        )
        header = formatter.format(
            logging.LogRecord(
                record.name,
                record.levelno,
                record.pathname,
                record.lineno,
                "",
                (),
                None,
            )
        )
        return len(header)

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record with added indentation.

        :param record: The `logging.LogRecord` object to format.
        :return: The formatted log record as a string.
        """
        indent: str = " " * self.get_header_length(record)
        head, *tail = super().format(record).splitlines(True)
        return head + "".join(indent + line for line in tail)
