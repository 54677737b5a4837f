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
import shutil
from typing import List, Optional

import click
import texttable

from tasklife import config as tasklife_config
from tasklife.client import ResourceLifecycleClient, SyncResourceLifecycleClient
from tasklife.config import Config
from tasklife.const import PropagationPolicy
from tasklife.data.model import Step, Task, TaskSpec
from tasklife.exceptions import LifecycleException
from tasklife.logging import TasklifeLoggerConfig
from tasklife.store import InMemoryResourceStore

LOGGER = logging.getLogger(__name__)


class CliContext(object):
    def __init__(self, namespace: Optional[str]) -> None:
        self._namespace = namespace

    @property
    def namespace(self) -> str:
        if self._namespace is None:
            return tasklife_config.client_namespace.get()
        return self._namespace


def print_table(header: List[str], rows: List[List[str]], data_type: Optional[List[str]] = None) -> None:
    click.echo(get_table(header, rows, data_type))


def get_table(header: List[str], rows: List[List[str]], data_type: Optional[List[str]] = None) -> str:
    """
    Returns a table that would fit in the current terminal.
    """
    width, _ = shutil.get_terminal_size()

    table = texttable.Texttable(max_width=width)
    table.set_deco(texttable.Texttable.HEADER | texttable.Texttable.BORDER | texttable.Texttable.VLINES)
    if data_type is not None:
        table.set_cols_dtype(data_type)
    table.header(header)
    for row in rows:
        table.add_row(row)
    return table.draw()


def print_task(task: Task) -> None:
    print_table(
        ["Step", "Image", "Command"],
        [[step.name, step.image, " ".join(step.command)] for step in task.spec.steps],
        ["t", "t", "t"],
    )


def prompt(pause: bool) -> None:
    if pause:
        click.prompt("-> Press Return key to continue.", default="", show_default=False, prompt_suffix="")
        click.echo()


def update_first_step(spec: TaskSpec) -> TaskSpec:
    """Switch the first step to busybox and change its message"""
    if not spec.steps:
        raise click.ClickException("The task has no steps to update")
    spec.steps[0].image = "busybox"
    spec.steps[0].command = ["echo", "Updated Hello"]
    return spec


@click.group(help="Manage the lifecycle of tasks in a resource store")
@click.option("--config", "-c", "config_file", help="Use this config file", type=click.Path(dir_okay=False))
@click.option("--namespace", "-n", help="The namespace to operate in (default: the client.namespace config option)")
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Log level for messages going to the console. Default is warnings only. -v info, -vv debug and -vvv trace",
)
@click.option(
    "--logging-config",
    type=click.Path(exists=True, dir_okay=False),
    help="A yaml file with a python dictConfig logging configuration. Overrides -v",
)
@click.option("--timed-logs", is_flag=True, help="Add timestamps to logs")
@click.pass_context
def cmd(
    ctx: click.Context,
    config_file: Optional[str],
    namespace: Optional[str],
    verbose: int,
    logging_config: Optional[str],
    timed_logs: bool,
) -> None:
    logger_config = TasklifeLoggerConfig.get_instance(click.get_text_stream("stderr"))
    logger_config.apply_options(verbosity=verbose, logging_config=logging_config, timed=timed_logs)
    Config.load_config(config_file)
    ctx.obj = CliContext(namespace)


@cmd.command(name="demo")
@click.option("--name", default="sample-task", show_default=True, help="The name of the task to manage")
@click.option("--pause", is_flag=True, help="Wait for the Return key between the steps")
@click.pass_obj
def demo(ctx: CliContext, name: str, pause: bool) -> None:
    """
    Create, update, list and delete a task in an in-memory resource store
    """
    store = InMemoryResourceStore()
    client = SyncResourceLifecycleClient(ResourceLifecycleClient(store, namespace=ctx.namespace))
    try:
        click.echo("Creating task...")
        task = client.create(name, TaskSpec(steps=[Step(name="step1", image="ubuntu", command=["echo", "Hello"])]))
        click.echo(f"Created task {task.name!r} at version {task.version}.")
        print_task(task)

        prompt(pause)
        click.echo("Updating task...")
        task = client.update(name, update_first_step)
        click.echo(f"Updated task {task.name!r} to version {task.version}.")
        print_task(task)

        prompt(pause)
        click.echo(f"Listing tasks in namespace {client.namespace!r}:")
        print_table(["Name", "Version", "Generation"], [[t.name, t.version, str(t.metadata.generation)] for t in client.list()])

        prompt(pause)
        click.echo("Deleting task...")
        client.delete(name, PropagationPolicy.foreground)
        client.wait_for_deletion(name, interval=0.1)
        click.echo("Deleted task.")
    except LifecycleException as e:
        raise click.ClickException(str(e))
    finally:
        client.run(store.stop())
        client.close()


@cmd.command(name="show-config")
def show_config() -> None:
    """
    Show the value of every config option
    """
    rows = []
    for section, options in sorted(Config.get_config_options().items()):
        for name, option in sorted(options.items()):
            rows.append(
                [
                    f"{section}.{name}",
                    str(option.get()),
                    option.get_default_desc(),
                    option.get_type() or "",
                    option.documentation,
                ]
            )
    print_table(["Option", "Value", "Default", "Type", "Description"], rows, ["t", "t", "t", "t", "t"])


def main() -> None:
    cmd()


if __name__ == "__main__":
    main()
