from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable

import click

from gh_container.executors import (
    LOGGER,
    FileScriptExecutor,
    InlineScriptExecutor,
    InteractiveExecutor,
    ModeExecutor,
    SecretInjectionExecutor,
    StdinScriptExecutor,
    default_credentials_dir,
    execute,
)
from gh_container.sources import (
    SCRIPT_SOURCE_FILE,
    SCRIPT_SOURCE_INLINE,
    SCRIPT_SOURCE_NONE,
    SCRIPT_SOURCE_STDIN,
    SECRET_SOURCE_ENV_FILE,
    SECRET_SOURCE_ENV_STDIN,
    SECRET_SOURCE_ENV_VAR,
    SECRET_SOURCE_NONE,
    inline_script,
    read_script_file,
    read_script_stdin,
    secrets_from_args,
    secrets_from_file,
    secrets_from_stdin,
)


MODE_FILE = SCRIPT_SOURCE_FILE
MODE_STDIN = SCRIPT_SOURCE_STDIN
MODE_ENV_FILE = SECRET_SOURCE_ENV_FILE
MODE_ENV_STDIN = SECRET_SOURCE_ENV_STDIN
MODE_ENV_VAR = SECRET_SOURCE_ENV_VAR
MODE_INLINE = SCRIPT_SOURCE_INLINE
MODE_INTERACTIVE = "interactive"
MODE_PRIORITY = (
    MODE_FILE,
    MODE_STDIN,
    MODE_ENV_FILE,
    MODE_ENV_STDIN,
    MODE_ENV_VAR,
    MODE_INLINE,
)
SECRET_MODE_FLAGS = {
    MODE_ENV_FILE: "--env-file",
    MODE_ENV_STDIN: "--env-stdin",
    MODE_ENV_VAR: "-e/--env",
}
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

HELP_EPILOG = """\
Secrets options (--env, --env-file, --env-stdin) require the -r, --repo option.

\b
If no options are provided and no arguments, just run the container.
If arguments are provided without -f or --stdin, treat them as script content:
the first argument is the script body, the rest are passed to it.
Use -- to treat the rest of the arguments as script content.
"""


@dataclass(frozen=True)
class InvocationRequest:
    verbose: bool = False
    dry_run: bool = False
    script_source_kind: str = SCRIPT_SOURCE_NONE
    file_path: Path | None = None
    repo_name: str | None = None
    secret_source_kind: str = SECRET_SOURCE_NONE
    env_file_path: Path | None = None
    secret_entries: tuple[str, ...] = ()
    positional_args: tuple[str, ...] = ()
    requested_modes: tuple[str, ...] = ()


class GhContainerCommand(click.Command):
    """Command that keeps the flag contract of the wrapper script.

    ``-h``/``--help`` as the first token wins over anything that follows it,
    and every usage error exits with status 1.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if args and args[0] in ctx.help_option_names:
            click.echo(ctx.get_help(), color=ctx.color)
            ctx.exit(0)
        try:
            return super().parse_args(ctx, args)
        except click.NoSuchOption as exc:
            raise click.ClickException(f"Unknown option: {exc.option_name}") from exc
        except click.UsageError as exc:
            exc.exit_code = 1
            raise


def _require_value(what: str):
    def callback(ctx: click.Context, param: click.Parameter, value):
        values = value if isinstance(value, tuple) else (value,)
        if any(item is not None and not str(item) for item in values):
            raise click.ClickException(f"{'/'.join(param.opts)} requires a {what} argument.")
        return value

    return callback


def _to_absolute(value: str, cwd: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (cwd / path).resolve()


def _requested_modes(
    *,
    file_path: str | None,
    stdin: bool,
    env_file: str | None,
    env_stdin: bool,
    env_vars: Iterable[str],
    positional_args: Iterable[str],
) -> tuple[str, ...]:
    # Positional args are forwarded script arguments in file and stdin mode.
    has_script_source = file_path is not None or stdin
    requested = {
        MODE_FILE: file_path is not None,
        MODE_STDIN: stdin,
        MODE_ENV_FILE: env_file is not None,
        MODE_ENV_STDIN: env_stdin,
        MODE_ENV_VAR: bool(tuple(env_vars)),
        MODE_INLINE: bool(tuple(positional_args)) and not has_script_source,
    }
    return tuple(mode for mode in MODE_PRIORITY if requested[mode])


def build_request(
    *,
    verbose: bool = False,
    dry_run: bool = False,
    file_path: str | None = None,
    stdin: bool = False,
    repo_name: str | None = None,
    env_file: str | None = None,
    env_stdin: bool = False,
    env_vars: Iterable[str] = (),
    positional_args: Iterable[str] = (),
    cwd: Path | None = None,
) -> InvocationRequest:
    base_dir = cwd or Path.cwd().resolve()
    parsed_env_vars = tuple(str(entry) for entry in env_vars)
    parsed_args = tuple(str(arg) for arg in positional_args)
    requested = _requested_modes(
        file_path=file_path,
        stdin=stdin,
        env_file=env_file,
        env_stdin=env_stdin,
        env_vars=parsed_env_vars,
        positional_args=parsed_args,
    )

    script_kind = next(
        (mode for mode in requested if mode in {MODE_FILE, MODE_STDIN, MODE_INLINE}),
        SCRIPT_SOURCE_NONE,
    )
    secret_kind = next(
        (mode for mode in requested if mode in SECRET_MODE_FLAGS),
        SECRET_SOURCE_NONE,
    )
    return InvocationRequest(
        verbose=verbose,
        dry_run=dry_run,
        script_source_kind=script_kind,
        file_path=_to_absolute(file_path, base_dir) if file_path is not None else None,
        repo_name=repo_name,
        secret_source_kind=secret_kind,
        env_file_path=_to_absolute(env_file, base_dir) if env_file is not None else None,
        secret_entries=parsed_env_vars,
        positional_args=parsed_args,
        requested_modes=requested,
    )


def select_mode(request: InvocationRequest) -> str:
    if request.script_source_kind == SCRIPT_SOURCE_FILE:
        return MODE_FILE
    if request.script_source_kind == SCRIPT_SOURCE_STDIN:
        return MODE_STDIN
    if request.secret_source_kind != SECRET_SOURCE_NONE:
        return request.secret_source_kind
    if request.script_source_kind == SCRIPT_SOURCE_INLINE:
        return MODE_INLINE
    return MODE_INTERACTIVE


def build_executor(request: InvocationRequest, mode: str, *, stdin: BinaryIO | None = None) -> ModeExecutor:
    if mode == MODE_FILE:
        return FileScriptExecutor(read_script_file(request.file_path, request.positional_args))
    if mode == MODE_STDIN:
        return StdinScriptExecutor(read_script_stdin(request.positional_args, stream=stdin))

    if mode in SECRET_MODE_FLAGS:
        if not request.repo_name:
            raise click.ClickException(f"{SECRET_MODE_FLAGS[mode]} requires -r/--repo to be set.")
        if mode == MODE_ENV_FILE:
            secrets = secrets_from_file(request.env_file_path)
        elif mode == MODE_ENV_STDIN:
            secrets = secrets_from_stdin(stream=stdin)
        else:
            secrets = secrets_from_args(request.secret_entries)
        return SecretInjectionExecutor(secrets, request.repo_name)

    if mode == MODE_INLINE:
        return InlineScriptExecutor(inline_script(request.positional_args))
    return InteractiveExecutor()


def dispatch(
    request: InvocationRequest,
    *,
    credentials_dir: Path | None = None,
    stdin: BinaryIO | None = None,
) -> int:
    mode = select_mode(request)
    ignored = [requested for requested in request.requested_modes if requested != mode]
    if ignored:
        click.echo(
            f"Warning: multiple execution modes requested ({', '.join(request.requested_modes)}); using {mode}.",
            err=True,
        )
    LOGGER.debug("Selected %s mode", mode)

    executor = build_executor(request, mode, stdin=stdin)
    return execute(
        executor,
        credentials_dir=credentials_dir or default_credentials_dir(),
        verbose=request.verbose,
        dry_run=request.dry_run,
    )


def _configure_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(logging.DEBUG if verbose else logging.WARNING)
    LOGGER.propagate = False


@click.command(
    cls=GhContainerCommand,
    help="Run the GitHub CLI container interactively, run a script inside it, or set repository secrets.",
    epilog=HELP_EPILOG,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option(
    "-f",
    "file_path",
    default=None,
    metavar="FILE_PATH",
    callback=_require_value("file path"),
    help="Run the script inside the container from FILE_PATH.",
)
@click.option("--stdin", is_flag=True, default=False, help="Read the script content from stdin and run it in the container.")
@click.option(
    "-r",
    "--repo",
    "repo_name",
    default=None,
    metavar="REPO_NAME",
    callback=_require_value("repository name"),
    help="Set the repository name for the script.",
)
@click.option(
    "-e",
    "--env",
    "env_vars",
    multiple=True,
    metavar="VAR=VAL",
    callback=_require_value("variable assignment"),
    help="Set a secret with VAR=VAL (repeatable).",
)
@click.option(
    "--env-file",
    default=None,
    metavar="FILE_PATH",
    callback=_require_value("file path"),
    help="Set secrets from a file.",
)
@click.option("--env-stdin", is_flag=True, default=False, help="Set secrets from stdin.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable verbose mode (show script before running).")
@click.option(
    "-d",
    "--dry-run",
    is_flag=True,
    default=False,
    help="Show the script content and arguments without running the container.",
)
@click.argument("script_args", nargs=-1)
@click.pass_context
def main(
    ctx: click.Context,
    file_path: str | None,
    stdin: bool,
    repo_name: str | None,
    env_vars: tuple[str, ...],
    env_file: str | None,
    env_stdin: bool,
    verbose: bool,
    dry_run: bool,
    script_args: tuple[str, ...],
) -> None:
    _configure_logging(verbose)
    request = build_request(
        verbose=verbose,
        dry_run=dry_run,
        file_path=file_path,
        stdin=stdin,
        repo_name=repo_name,
        env_file=env_file,
        env_stdin=env_stdin,
        env_vars=env_vars,
        positional_args=script_args,
    )
    ctx.exit(dispatch(request))


if __name__ == "__main__":
    main()
