from __future__ import annotations

import abc
import logging
import os
import shlex
import shutil
import subprocess
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

import click

from gh_container.sources import (
    SCRIPT_SOURCE_STDIN,
    SECRET_SOURCE_ENV_FILE,
    SECRET_SOURCE_ENV_STDIN,
    SECRET_SOURCE_ENV_VAR,
    PAYLOAD_ENCODING,
    PAYLOAD_ERRORS,
    ScriptPayload,
    SecretPayload,
    printable,
    wrap_script,
)


DEFAULT_IMAGE = "ghcr.io/supportpal/github-gh-cli"
CONTAINER_NAME = "gh"
ENTRYPOINT = "bash"
CONTAINER_CONFIG_PATH = "/root/.config/gh"
CONTAINER_SCRIPT_PATH = "/root/tmp/bash.sh"
CONTAINER_SECRETS_PATH = "/root/tmp/secrets.env"
PAYLOAD_FILE_MODE = 0o600
DRY_RUN_MESSAGE = "Dry run enabled, not running the container."

LOGGER = logging.getLogger("gh_container")
LOGGER.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class Mount:
    host_path: str
    container_path: str
    read_only: bool = False

    def volume_spec(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.host_path}:{self.container_path}{suffix}"


@dataclass(frozen=True)
class FilePayload:
    container_path: str
    content: str


@dataclass(frozen=True)
class ContainerInvocationSpec:
    name: str
    image: str
    mounts: tuple[Mount, ...]
    entrypoint: str = ENTRYPOINT
    command: tuple[str, ...] = ()
    args: tuple[str, ...] = ()
    interactive: bool = False
    files: tuple[FilePayload, ...] = ()


def default_credentials_dir() -> Path:
    return Path(sys.argv[0]).resolve().parent / CONTAINER_NAME


def _credentials_mount(credentials_dir: Path) -> Mount:
    return Mount(str(credentials_dir), CONTAINER_CONFIG_PATH)


def _format_args(args: Iterable[str]) -> str:
    return " ".join(str(arg) for arg in args)


class ModeExecutor(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The mode identifier used in diagnostics (e.g., 'file', 'inline')."""
        pass

    @abc.abstractmethod
    def describe(self) -> list[str]:
        """Returns the lines printed before running in verbose or dry-run mode."""
        pass

    @abc.abstractmethod
    def build_spec(self, credentials_dir: Path) -> ContainerInvocationSpec:
        """Builds the container invocation for this mode."""
        pass


class InteractiveExecutor(ModeExecutor):
    @property
    def name(self) -> str:
        return "interactive"

    def describe(self) -> list[str]:
        return ["Running container interactively (no arguments or scripts)."]

    def build_spec(self, credentials_dir: Path) -> ContainerInvocationSpec:
        return ContainerInvocationSpec(
            name=CONTAINER_NAME,
            image=DEFAULT_IMAGE,
            mounts=(_credentials_mount(credentials_dir),),
            interactive=True,
        )


class FileScriptExecutor(ModeExecutor):
    def __init__(self, payload: ScriptPayload) -> None:
        if payload.path is None:
            raise ValueError("file-backed scripts need a host path")
        self.payload = payload

    @property
    def name(self) -> str:
        return "file"

    def describe(self) -> list[str]:
        return [
            f"Running script from file: {self.payload.path}",
            f"Script arguments: {_format_args(self.payload.args)}",
            printable(self.payload.text.rstrip("\n")),
        ]

    def build_spec(self, credentials_dir: Path) -> ContainerInvocationSpec:
        return ContainerInvocationSpec(
            name=CONTAINER_NAME,
            image=DEFAULT_IMAGE,
            mounts=(
                _credentials_mount(credentials_dir),
                Mount(str(self.payload.path), CONTAINER_SCRIPT_PATH, read_only=True),
            ),
            command=(CONTAINER_SCRIPT_PATH,),
            args=self.payload.args,
        )


class StdinScriptExecutor(ModeExecutor):
    """Runs script text that only exists in memory.

    The text is handed to the invoker as a file payload; it is never spliced
    into the container command line.
    """

    label = "Running script from stdin"

    def __init__(self, payload: ScriptPayload) -> None:
        self.payload = payload

    @property
    def name(self) -> str:
        return "stdin"

    def describe(self) -> list[str]:
        lines = [self.label]
        if self.payload.args:
            lines.append(f"Script arguments: {_format_args(self.payload.args)}")
        lines.append(printable(self.payload.text.rstrip("\n")))
        return lines

    def extra_files(self) -> tuple[FilePayload, ...]:
        return ()

    def build_spec(self, credentials_dir: Path) -> ContainerInvocationSpec:
        return ContainerInvocationSpec(
            name=CONTAINER_NAME,
            image=DEFAULT_IMAGE,
            mounts=(_credentials_mount(credentials_dir),),
            command=(CONTAINER_SCRIPT_PATH,),
            args=self.payload.args,
            files=(FilePayload(CONTAINER_SCRIPT_PATH, self.payload.text), *self.extra_files()),
        )


class InlineScriptExecutor(StdinScriptExecutor):
    label = "Running inline script"

    @property
    def name(self) -> str:
        return "inline"


def secret_injection_script() -> str:
    return wrap_script(
        f"cat {CONTAINER_SECRETS_PATH} > .env\n"
        'gh secret set -f .env -R "$1"'
    )


class SecretInjectionExecutor(StdinScriptExecutor):
    _SOURCE_LABELS = {
        SECRET_SOURCE_ENV_FILE: "file",
        SECRET_SOURCE_ENV_STDIN: "stdin",
        SECRET_SOURCE_ENV_VAR: "arguments",
    }

    def __init__(self, secrets: SecretPayload, repo_name: str) -> None:
        super().__init__(
            ScriptPayload(kind=SCRIPT_SOURCE_STDIN, text=secret_injection_script(), args=(repo_name,))
        )
        self.secrets = secrets
        self.repo_name = repo_name

    @property
    def name(self) -> str:
        return self.secrets.kind

    def describe(self) -> list[str]:
        source = self._SOURCE_LABELS.get(self.secrets.kind, self.secrets.kind)
        if self.secrets.path is not None:
            source = f"{source}: {self.secrets.path}"
        return [
            f"Setting secrets from {source}",
            f"Target repository: {self.repo_name}",
            f"Secret names: {printable(', '.join(self.secrets.names))}",
        ]

    def extra_files(self) -> tuple[FilePayload, ...]:
        return (FilePayload(CONTAINER_SECRETS_PATH, self.secrets.content),)


def build_docker_command(spec: ContainerInvocationSpec, extra_mounts: Iterable[Mount] = ()) -> list[str]:
    cmd = ["docker", "run", "--rm"]
    if spec.interactive:
        cmd.extend(["-i", "-t"])
    cmd.extend(["--name", spec.name])
    for mount in (*spec.mounts, *extra_mounts):
        cmd.extend(["--volume", mount.volume_spec()])
    cmd.extend(["--entrypoint", spec.entrypoint, spec.image, *spec.command, *spec.args])
    return cmd


@contextmanager
def _materialized_files(files: Iterable[FilePayload]) -> Iterator[list[Mount]]:
    created: list[str] = []
    mounts: list[Mount] = []
    try:
        for payload in files:
            fd, path = tempfile.mkstemp(prefix="gh-container-", suffix=Path(payload.container_path).suffix)
            created.append(path)
            os.chmod(path, PAYLOAD_FILE_MODE)
            with os.fdopen(fd, "w", encoding=PAYLOAD_ENCODING, errors=PAYLOAD_ERRORS) as handle:
                handle.write(payload.content)
            LOGGER.debug("Materialized %s at %s", payload.container_path, path)
            mounts.append(Mount(path, payload.container_path, read_only=True))
        yield mounts
    finally:
        for path in created:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass


def _run_container(cmd: list[str]) -> int:
    return subprocess.run(cmd, check=False).returncode


def _exit_status(returncode: int) -> int:
    # A child killed by signal N reports -N; shells report 128 + N.
    return 128 - returncode if returncode < 0 else returncode


def invoke(spec: ContainerInvocationSpec, credentials_dir: Path) -> int:
    if shutil.which("docker") is None:
        raise click.ClickException("docker command not found in PATH")
    try:
        credentials_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise click.ClickException(f"Unable to create credential directory {credentials_dir}: {exc}") from exc

    with _materialized_files(spec.files) as file_mounts:
        cmd = build_docker_command(spec, file_mounts)
        LOGGER.debug("Running %s", " ".join(shlex.quote(part) for part in cmd))
        returncode = _run_container(cmd)
    LOGGER.debug("Container exited with status %s", returncode)
    return _exit_status(returncode)


def execute(executor: ModeExecutor, *, credentials_dir: Path, verbose: bool, dry_run: bool) -> int:
    if verbose or dry_run:
        for line in executor.describe():
            click.echo(line)
    if dry_run:
        click.echo(DRY_RUN_MESSAGE)
        return 0
    return invoke(executor.build_spec(credentials_dir), credentials_dir)
