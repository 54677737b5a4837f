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
import os
from collections import defaultdict
from configparser import ConfigParser, Interpolation
from typing import Callable, Dict, Generic, List, Optional, TypeVar, Union

from tasklife import const

LOGGER = logging.getLogger(__name__)


def _normalize_name(name: str) -> str:
    return name.replace("_", "-")


def _get_from_env(section: str, name: str) -> Optional[str]:
    return os.environ.get(f"{const.ENVIRON_CONFIG_PREFIX}_{section}_{name}".replace("-", "_").upper(), default=None)


class LenientConfigParser(ConfigParser):
    def optionxform(self, name: str) -> str:
        name = _normalize_name(name)
        return super(LenientConfigParser, self).optionxform(name)


class Config(object):
    __instance: Optional[ConfigParser] = None
    __config_definition: Dict[str, Dict[str, "Option"]] = defaultdict(lambda: {})

    @classmethod
    def get_config_options(cls) -> Dict[str, Dict[str, "Option"]]:
        return cls.__config_definition

    @classmethod
    def load_config(cls, config_file: Optional[str] = None, main_cfg_file: str = "/etc/tasklife/tasklife.cfg") -> None:
        """
        Load the configuration file
        """
        local_dot_cfg_files: List[str] = [os.path.expanduser("~/.tasklife.cfg"), ".tasklife", ".tasklife.cfg"]

        # Files with a higher index in the list, override config options defined by files with a lower index
        files: List[str] = [main_cfg_file] + local_dot_cfg_files
        if config_file is not None:
            files.append(config_file)

        config = LenientConfigParser(interpolation=Interpolation())
        loaded = config.read(files)
        LOGGER.debug("Loaded config from %s", loaded)
        cls.__instance = config

    @classmethod
    def _get_instance(cls) -> ConfigParser:
        if cls.__instance is None:
            cls.load_config()

        return cls.__instance

    @classmethod
    def _reset(cls) -> None:
        cls.__instance = None

    @classmethod
    def set(cls, section: str, name: str, value: str) -> None:
        """
        Override a value
        """
        name = _normalize_name(name)

        if section not in cls._get_instance():
            cls._get_instance().add_section(section)
        cls._get_instance().set(section, name, value)

    @classmethod
    def register_option(cls, option: "Option") -> None:
        cls.__config_definition[option.section][option.name] = option


def is_float(value: str) -> float:
    """float"""
    return float(value)


def is_positive_int(value: str) -> int:
    """int, at least 1"""
    out = int(value)
    if out < 1:
        raise ValueError("%s is not a positive integer" % value)
    return out


def is_non_negative_float(value: str) -> float:
    """float, 0 or larger"""
    out = float(value)
    if out < 0:
        raise ValueError("%s is negative" % value)
    return out


def is_timeout(value: str) -> Optional[float]:
    """Time in seconds as a float value, 0 disables the timeout"""
    out = is_non_negative_float(value)
    if out == 0:
        return None
    return out


def is_str(value: str) -> str:
    """str"""
    return str(value)


T = TypeVar("T")


class Option(Generic[T]):
    """
    Defines an option and exposes it for use

    All config options should be defined prior to use, at the module level, so `tasklife show-config` lists them.

    :param section: section in the config file
    :param name: name of the option
    :param default: default value for this option
        the default value is either a value or a function.
        If it is a value, `str(default)` will be used a default value.
        If it is a function, its doc string will be used to represent the value in documentation.
        and its return value as the actual default value
    :param documentation: the documentation for this option
    :param validator: a function responsible for turning the string representation of the option into the correct type.
        Its docstring is used as representation for the type of the option.
    """

    def __init__(
        self,
        section: str,
        name: str,
        default: Union[T, None, Callable[[], T]],
        documentation: str,
        validator: Callable[[str], T] = is_str,
    ) -> None:
        self.section = section
        self.name = _normalize_name(name)
        self.validator = validator
        self.documentation = documentation
        self.default = default
        Config.register_option(self)

    def get(self) -> T:
        val = _get_from_env(self.section, self.name)
        if val is not None:
            return self.validate(val)
        cfg = Config._get_instance()
        out = cfg.get(self.section, self.name, fallback=self.get_default_value())
        return self.validate(out)

    def get_type(self) -> Optional[str]:
        if callable(self.validator):
            return self.validator.__doc__
        return None

    def get_default_desc(self) -> str:
        defa = self.default
        if callable(defa):
            return "%s" % defa.__doc__
        else:
            return str(defa)

    def validate(self, value: Union[str, T]) -> T:
        if not isinstance(value, str):
            # defaults are given as typed values
            value = str(value)
        return self.validator(value)

    def get_default_value(self) -> Optional[T]:
        defa = self.default
        if callable(defa):
            return defa()
        else:
            return defa

    def set(self, value: str) -> None:
        """Only for tests"""
        Config.set(self.section, self.name, value)


#############################
# Client
#############################
client_namespace = Option("client", "namespace", const.DEFAULT_NAMESPACE, "The namespace the client operates in", is_str)
client_request_timeout = Option(
    "client",
    "request-timeout",
    30,
    "The time in seconds a single operation, including all its retries, may take. 0 means no limit.",
    is_timeout,
)

#############################
# Retry on conflict
#############################
retry_max_attempts = Option(
    "retry", "max-attempts", 5, "The number of times an update is attempted before giving up on conflicts", is_positive_int
)
retry_base_delay = Option(
    "retry", "base-delay", 0.01, "The delay in seconds before the first retry of a conflicting update", is_non_negative_float
)
retry_factor = Option("retry", "factor", 2.0, "The factor the delay is multiplied with after every retry", is_float)
retry_max_delay = Option("retry", "max-delay", 1.0, "The upper bound in seconds of the delay between retries", is_float)
retry_jitter = Option(
    "retry",
    "jitter",
    0.1,
    "Random fraction added to every delay, so concurrent updaters don't retry in lockstep",
    is_non_negative_float,
)
