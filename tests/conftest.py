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
from collections.abc import AsyncIterator

import pytest
from click import testing

import tasklife.main
from tasklife.client import ResourceLifecycleClient
from tasklife.config import Config
from tasklife.data.model import Step, TaskSpec
from tasklife.logging import TasklifeLoggerConfig
from tasklife.retry import RetryPolicy
from tasklife.store import InMemoryResourceStore


@pytest.fixture(autouse=True)
def clean_config(tmp_path, monkeypatch):
    """
    Isolate the tests from the config files and environment variables of the machine running them
    """
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for key in [k for k in os.environ if k.startswith("TASKLIFE_")]:
        monkeypatch.delenv(key)
    Config.load_config(main_cfg_file=str(tmp_path / "main.cfg"))
    yield
    Config._reset()


@pytest.fixture(autouse=True)
def cleanup_logger():
    root_log_level = logging.root.level
    yield
    TasklifeLoggerConfig.clean_instance()
    # Make sure we maintain the initial root log level, so that logging in pytest works as expected.
    logging.root.setLevel(root_log_level)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=20, base_delay=0.001, factor=2.0, max_delay=0.01, jitter=0.1)


@pytest.fixture
async def store() -> AsyncIterator[InMemoryResourceStore]:
    store = InMemoryResourceStore()
    yield store
    await store.stop()


@pytest.fixture
def client(store: InMemoryResourceStore, fast_retry: RetryPolicy) -> ResourceLifecycleClient:
    return ResourceLifecycleClient(store, namespace="default", retry_policy=fast_retry, request_timeout=10)


@pytest.fixture
def sample_spec() -> TaskSpec:
    return TaskSpec(steps=[Step(name="step1", image="ubuntu", command=["echo", "Hello"])])


class CLI(object):
    def run(self, *args: str, **kwargs: object) -> testing.Result:
        # every invocation installs its own console handler on the stream of the runner
        TasklifeLoggerConfig.clean_instance()
        runner = testing.CliRunner()
        return runner.invoke(cli=tasklife.main.cmd, args=list(args), catch_exceptions=False, **kwargs)


@pytest.fixture
def cli(caplog, monkeypatch):
    # set column width very wide so lines are not wrapped
    monkeypatch.setenv("COLUMNS", "1000")
    # caplog will break this code when emitting any log line to cli
    # due to mysterious interference when juggling with sys.stdout
    # https://github.com/pytest-dev/pytest/issues/10553
    with caplog.at_level(logging.FATAL):
        yield CLI()
