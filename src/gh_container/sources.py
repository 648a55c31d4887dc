from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable

import click


SCRIPT_SHEBANG = "#!/usr/bin/env bash"
PAYLOAD_ENCODING = "utf-8"
# Undecodable bytes survive a decode/encode round trip unchanged.
PAYLOAD_ERRORS = "surrogateescape"
SECRET_ENTRY_PATTERN = re.compile(r"^[^=]+=[^=]+$")

SCRIPT_SOURCE_NONE = "none"
SCRIPT_SOURCE_FILE = "file"
SCRIPT_SOURCE_STDIN = "stdin"
SCRIPT_SOURCE_INLINE = "inline"

SECRET_SOURCE_NONE = "none"
SECRET_SOURCE_ENV_FILE = "env-file"
SECRET_SOURCE_ENV_STDIN = "env-stdin"
SECRET_SOURCE_ENV_VAR = "env-var"


@dataclass(frozen=True)
class ScriptPayload:
    kind: str
    text: str
    args: tuple[str, ...] = ()
    path: Path | None = None


@dataclass(frozen=True)
class SecretPayload:
    kind: str
    content: str
    path: Path | None = None

    @property
    def names(self) -> list[str]:
        return [line.split("=", 1)[0] for line in self.content.splitlines()]


def wrap_script(body: str) -> str:
    return f"{SCRIPT_SHEBANG}\n{body}\n"


def decode_payload(raw: bytes) -> str:
    return raw.decode(PAYLOAD_ENCODING, PAYLOAD_ERRORS)


def encode_payload(text: str) -> bytes:
    return text.encode(PAYLOAD_ENCODING, PAYLOAD_ERRORS)


def printable(text: str) -> str:
    return encode_payload(text).decode(PAYLOAD_ENCODING, "replace")


def _stdin_stream(stream: BinaryIO | None) -> BinaryIO:
    return stream if stream is not None else click.get_binary_stream("stdin")


def _read_text(path: Path, label: str) -> str:
    if not path.is_file():
        raise click.ClickException(f"{label} '{path}' not found.")
    try:
        return decode_payload(path.read_bytes())
    except OSError as exc:
        raise click.ClickException(f"Unable to read {label.lower()} {path}: {exc}") from exc


def read_script_file(path: Path, args: Iterable[str] = ()) -> ScriptPayload:
    return ScriptPayload(
        kind=SCRIPT_SOURCE_FILE,
        text=_read_text(path, "Script file"),
        args=tuple(args),
        path=path,
    )


def read_script_stdin(args: Iterable[str] = (), *, stream: BinaryIO | None = None) -> ScriptPayload:
    # Trailing newlines are dropped before wrapping, like shell command substitution.
    content = decode_payload(_stdin_stream(stream).read()).rstrip("\n")
    return ScriptPayload(kind=SCRIPT_SOURCE_STDIN, text=wrap_script(content), args=tuple(args))


def inline_script(positional_args: Iterable[str]) -> ScriptPayload:
    parsed_args = [str(arg) for arg in positional_args]
    if not parsed_args:
        raise click.ClickException("No script content provided.")
    body, *script_args = parsed_args
    return ScriptPayload(kind=SCRIPT_SOURCE_INLINE, text=wrap_script(body), args=tuple(script_args))


def validate_secret_entry(entry: str, label: str = "Argument") -> str:
    if not SECRET_ENTRY_PATTERN.fullmatch(entry):
        raise click.ClickException(f"{label} '{printable(entry)}' is not in VAR=VAL format.")
    return entry


def _secret_content(entries: Iterable[str]) -> str:
    lines = list(entries)
    if not lines:
        raise click.ClickException("No secrets provided.")
    return "\n".join(lines) + "\n"


def parse_dotenv_content(raw: str) -> str:
    """Normalize ``.env`` text into one validated ``VAR=VAL`` line per secret.

    Blank lines and ``#`` comments are dropped; every other line has to match
    the same pattern as ``-e`` arguments.
    """
    entries: list[str] = []
    for raw_line in raw.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        entries.append(validate_secret_entry(line, "Line"))
    return _secret_content(entries)


def secrets_from_args(entries: Iterable[str]) -> SecretPayload:
    validated = [validate_secret_entry(str(entry)) for entry in entries]
    return SecretPayload(kind=SECRET_SOURCE_ENV_VAR, content=_secret_content(validated))


def secrets_from_file(path: Path) -> SecretPayload:
    return SecretPayload(
        kind=SECRET_SOURCE_ENV_FILE,
        content=parse_dotenv_content(_read_text(path, "File")),
        path=path,
    )


def secrets_from_stdin(*, stream: BinaryIO | None = None) -> SecretPayload:
    source = _stdin_stream(stream)
    if source.isatty():
        raise click.ClickException("No data provided via stdin.")
    raw = decode_payload(source.read())
    if not raw.strip():
        raise click.ClickException("No data provided via stdin.")
    return SecretPayload(kind=SECRET_SOURCE_ENV_STDIN, content=parse_dotenv_content(raw))
