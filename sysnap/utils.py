from __future__ import annotations

import argparse
import datetime
import getpass
import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from sysnap.exceptions import OutputError, OverwriteDeclined

log = logging.getLogger(__name__)

DEFAULT_OUTPUT_NAME = "system-snapshot.txt"
DEFAULT_STATIC_INFO_NAME = ".system-info.private"
DEFAULT_KEEP = 5
DEFAULT_TIMEOUT = 60

ARCHIVE_TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"


class StrEnum(str, Enum):
    """Sortable and serializible string-based enum"""

    def __str__(self) -> str:
        return self.value


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sysnap",
        description="Write a plain-text snapshot of this system's hardware, software and configuration.",
        epilog=(
            "Without --auto or --output the destination is asked for interactively.\n\n"
            "Default arguments can be set in $XDG_CONFIG_HOME/sysnap/config.json, e.g.:\n"
            '  {"arguments": ["--keep", "10"]}'
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        fromfile_prefix_chars="@",
    )

    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument(
        "--auto",
        action="store_true",
        help=f"write to ~/{DEFAULT_OUTPUT_NAME}, archiving a previous snapshot",
    )
    output_group.add_argument("-o", "--output", type=Path, help="output file (no prompts)")

    parser.add_argument("--force", action="store_true", help="overwrite an existing --output file")
    parser.add_argument(
        "--keep",
        type=int,
        default=DEFAULT_KEEP,
        help=f"number of archived snapshots to keep in --auto mode (default: {DEFAULT_KEEP})",
    )
    parser.add_argument("--root", type=Path, default=Path("/"), help="filesystem root to collect files from")
    parser.add_argument("--home", type=Path, default=None, help="home directory to collect (default: current user)")
    parser.add_argument(
        "--static-info",
        type=Path,
        default=None,
        help=f"static hardware & user information file (default: ~/{DEFAULT_STATIC_INFO_NAME})",
    )
    parser.add_argument(
        "--max-file-size",
        type=int,
        default=None,
        help="largest file in bytes whose content is included (default: 50MiB)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help=f"seconds a single command may run (default: {DEFAULT_TIMEOUT})",
    )
    parser.add_argument("--json-report", type=Path, help="also write a JSON collection report to this path")
    parser.add_argument("-l", "--log", type=Path, help="log file location")
    parser.add_argument("-v", "--verbose", action="count", default=3, help="increase output verbosity")
    return parser


def get_config_path() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME") or Path.home().joinpath(".config")
    return Path(config_home).joinpath("sysnap", "config.json")


def load_config(path: Path | None = None) -> dict[str, Any]:
    path = path or get_config_path()
    if not path.is_file():
        return {}

    try:
        config = json.loads(path.read_text())
    except (OSError, ValueError):
        log.warning("Ignoring unreadable configuration file %s", path, exc_info=True)
        return {}

    if not isinstance(config, dict):
        log.warning("Ignoring configuration file %s, it does not contain an object", path)
        return {}

    return config


def parse_sysnap_args(
    parser: argparse.ArgumentParser,
    config: dict[str, Any],
    argv: list[str] | None = None,
) -> argparse.Namespace:
    """Parse the sysnap command line arguments.

    The arguments are set to values supplied in ``config[arguments]``, when not
    changed from the default values specified in ``parser``.

    The ``config`` dict is added to the parsed command line arguments for
    convenience of later use.

    Args:
        parser: A parser for sysnap command line arguments.
        config: A dict of global configuration values.
        argv: The arguments to parse, ``sys.argv[1:]`` when not given.

    Returns:
        A command line arguments namespace
    """
    args = parser.parse_args(argv)
    _merge_args_and_config(parser, args, config)

    return args


def _merge_args_and_config(
    parser: argparse.ArgumentParser,
    command_line_args: argparse.Namespace,
    config: dict[str, Any],
) -> None:
    config_defaults = config.get("arguments")
    if not config_defaults:
        config_defaults = config["arguments"] = []

    config_defaults_args = parser.parse_args(config_defaults)

    for argument, value in command_line_args._get_kwargs():
        if parser.get_default(argument) == value:
            config_argument = getattr(config_defaults_args, argument, value)
            setattr(command_line_args, argument, config_argument)

    setattr(command_line_args, "config", config)


def get_user_name() -> str:
    try:
        return getpass.getuser()
    except Exception:
        return "unknown"


def get_utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def get_utc_now_str() -> str:
    return get_utc_now().strftime(ARCHIVE_TIMESTAMP_FORMAT)


def display_path(path: str, home: str) -> str:
    """Abbreviate ``home`` in ``path`` to ``~``."""
    home = home.rstrip("/")
    if home and (path == home or path.startswith(f"{home}/")):
        return f"~{path[len(home):]}"
    return path


def expand_home(value: str, home: Path) -> Path:
    if value == "~" or value.startswith("~/"):
        return home.joinpath(value[2:])
    return Path(value)


def prompt_output_path(home: Path, input_func: Callable[[str], str] = input) -> Path:
    filename = input_func(f"Enter output filename (default: {DEFAULT_OUTPUT_NAME}): ").strip()
    directory = input_func(f"Enter output directory (default: {home}): ").strip()

    return expand_home(directory or str(home), home).joinpath(filename or DEFAULT_OUTPUT_NAME)


def confirm_overwrite(path: Path, input_func: Callable[[str], str] = input) -> None:
    answer = input_func(f"File {path} exists. Overwrite? (y/n): ").strip()
    if answer not in ("y", "Y"):
        raise OverwriteDeclined(f"Not overwriting existing file {path}")


def ensure_directory(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise OutputError(f"Can not create output directory {path}: {error}") from error


def _archive_name_re(path: Path) -> re.Pattern:
    return re.compile(rf"^{re.escape(path.stem)}-\d{{4}}-\d{{2}}-\d{{2}}-\d{{6}}(?:-\d+)?{re.escape(path.suffix)}$")


def archive_existing(path: Path, timestamp: str | None = None) -> Path | None:
    """Rename an existing ``path`` to ``<stem>-<timestamp><suffix>`` next to it.

    An archive that already exists under that name is never overwritten, a counter is
    appended instead.

    Returns:
        The path of the archive, or ``None`` when there was nothing to archive.
    """
    if not path.exists():
        return None

    timestamp = timestamp or get_utc_now_str()
    archive = path.with_name(f"{path.stem}-{timestamp}{path.suffix}")
    counter = 0
    while archive.exists():
        counter += 1
        archive = path.with_name(f"{path.stem}-{timestamp}-{counter}{path.suffix}")

    path.rename(archive)
    return archive


def list_archives(path: Path) -> list[Path]:
    """Return the archives of ``path``, newest first."""
    name_re = _archive_name_re(path)
    archives = [entry for entry in path.parent.iterdir() if entry.is_file() and name_re.match(entry.name)]
    return sorted(archives, key=lambda entry: (entry.stat().st_mtime, entry.name), reverse=True)


def prune_archives(path: Path, keep: int = DEFAULT_KEEP) -> list[Path]:
    """Delete all but the ``keep`` most recent archives of ``path`` and return the deleted paths."""
    removed = list_archives(path)[max(keep, 0) :]
    for archive in removed:
        archive.unlink()
    return removed


def persist_execution_report(path: Path, report_data: dict) -> None:
    with open(path, "w") as f:
        f.write(json.dumps(report_data, sort_keys=True, indent=4))
