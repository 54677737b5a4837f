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
import random
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from tasklife import config

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for updates that conflict with a concurrent writer.

    The delay before retry n (n >= 1) is ``min(base_delay * factor ** (n - 1), max_delay)`` increased by a random fraction of
    at most ``jitter`` of that value.

    :param max_attempts: The total number of attempts, including the first one.
    :param base_delay: The delay in seconds before the first retry.
    :param factor: The delay is multiplied with this factor after every retry.
    :param max_delay: The upper bound for the delay, before jitter is added.
    :param jitter: The maximal fraction of the delay that is added at random.
    """

    max_attempts: int = 5
    base_delay: float = 0.01
    factor: float = 2.0
    max_delay: float = 1.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts should be at least 1, got %d" % self.max_attempts)
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays can not be negative")
        if self.factor < 1:
            raise ValueError("factor should be at least 1, got %s" % self.factor)
        if self.jitter < 0:
            raise ValueError("jitter can not be negative, got %s" % self.jitter)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        """
        Build the policy defined by the retry section of the configuration
        """
        return cls(
            max_attempts=config.retry_max_attempts.get(),
            base_delay=config.retry_base_delay.get(),
            factor=config.retry_factor.get(),
            max_delay=config.retry_max_delay.get(),
            jitter=config.retry_jitter.get(),
        )

    def get_delay(self, retry: int, rand: Callable[[], float] = random.random) -> float:
        """
        Return the time to wait before the given retry

        :param retry: The number of the retry, 1 for the retry that follows the first attempt.
        :param rand: Source of random numbers in [0, 1)
        """
        if retry < 1:
            raise ValueError("retry numbers start at 1, got %d" % retry)
        delay = min(self.base_delay * self.factor ** (retry - 1), self.max_delay)
        if self.jitter > 0:
            delay += delay * self.jitter * rand()
        return delay

    def delays(self, rand: Callable[[], float] = random.random) -> Iterator[float]:
        """
        Iterate over the delays between all attempts this policy allows
        """
        for retry in range(1, self.max_attempts):
            yield self.get_delay(retry, rand)
