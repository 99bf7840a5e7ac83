from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, Optional

from dissect.target import Target
from dissect.target.filesystems.dir import DirectoryFilesystem

from sysnap.collector import DEFAULT_POLICY
from sysnap.exceptions import OutputError, OverwriteDeclined
from sysnap.log import setup_logging
from sysnap.outputs import TextFileOutput
from sysnap.policy import AdmissionPolicy, format_size
from sysnap.report import (
    ERRORS_TITLE,
    PERMISSION_ERRORS_TITLE,
    ReportAssembler,
    RunContext,
    Section,
    get_report_summary,
)
from sysnap.sections import build_default_sections
from sysnap.utils import (
    DEFAULT_OUTPUT_NAME,
    DEFAULT_STATIC_INFO_NAME,
    archive_existing,
    confirm_overwrite,
    create_argument_parser,
    ensure_directory,
    get_user_name,
    load_config,
    parse_sysnap_args,
    persist_execution_report,
    prompt_output_path,
    prune_archives,
)

try:
    from rich.progress import BarColumn, Progress, TextColumn

    progress = Progress(
        TextColumn("[bold blue]{task.fields[section]}", justify="right"),
        BarColumn(bar_width=None),
        "[progress.percentage]{task.percentage:>3.1f}%",
        transient=True,
    )
except ImportError:
    progress = None

try:
    from sysnap.version import version
except ImportError:
    version = "0.0.dev"


VERSION = version
SYSNAP_BANNER = r"""
 ___ _   _ ___ _ __   __ _ _ __
/ __| | | / __| '_ \ / _` | '_ \
\__ \ |_| \__ \ | | | (_| | |_) |
|___/\__, |___/_| |_|\__,_| .__/
     |___/                |_|
"""

log = logging.getLogger("sysnap")
log.propagate = 0


def open_local_target(root: Path) -> Target:
    """Return a target whose filesystem is the directory ``root`` mounted at ``/``."""
    fs = DirectoryFilesystem(root)
    target = Target()
    target.filesystems.add(fs)
    target.fs.mount("/", fs)
    return target


def resolve_output_path(
    args: argparse.Namespace,
    home: Path,
    input_func: Callable[[str], str] = input,
) -> Path:
    """Determine where the snapshot is written, before anything is collected.

    In ``--auto`` mode a previous snapshot is archived next to it and old archives are pruned.
    An explicit ``--output`` refuses to replace an existing file unless ``--force`` is given,
    the interactive mode asks for it.

    Raises:
        OverwriteDeclined: An existing file may not be replaced.
        OutputError: The output directory can not be created or prepared.
    """
    if args.auto:
        path = home.joinpath(DEFAULT_OUTPUT_NAME)
        try:
            if archive := archive_existing(path):
                log.info("Archived previous snapshot to %s", archive)
            for removed in prune_archives(path, args.keep):
                log.info("Removed old snapshot %s", removed)
        except OSError as error:
            raise OutputError(f"Can not archive previous snapshot {path}: {error}") from error
        return path

    if args.output:
        path = args.output
        if path.exists() and not args.force:
            raise OverwriteDeclined(f"Output file {path} exists, use --force to overwrite it")
        ensure_directory(path.parent)
        return path

    path = prompt_output_path(home, input_func)
    ensure_directory(path.parent)
    if path.exists():
        confirm_overwrite(path, input_func)
    return path


def assemble(assembler: ReportAssembler):
    if not progress:
        return assembler.run()

    with progress:
        task_id = progress.add_task("sections", total=len(assembler.sections), section="")

        def on_section(index: int, section: Section) -> None:
            progress.update(task_id, completed=index, section=section.title)

        assembler.on_section = on_section
        try:
            return assembler.run()
        finally:
            progress.remove_task(task_id)


def exit_success(default_args: list[str]):
    log.info("Sysnap finished successful")
    log.info("Arguments: %s", " ".join(sys.argv[1:]))
    log.info("Default Arguments: %s", " ".join(default_args))
    log.info("Exiting with status code 0 (SUCCESS)")
    sys.exit(0)


def exit_failure(default_args: list[str]):
    log.error("Sysnap FAILED")
    log.error("Arguments: %s", " ".join(sys.argv[1:]))
    log.error("Default Arguments: %s", " ".join(default_args))
    log.error("Exiting with status code 1 (FAILURE)")
    sys.exit(1)


def main(argv: Optional[list[str]] = None) -> None:
    parser = create_argument_parser()
    args = parse_sysnap_args(parser, load_config(), argv)

    # An explicit output file from the command line wins over --auto from the configuration
    if args.output:
        args.auto = False

    setup_logging(log, args.log, args.verbose)
    default_args = args.config.get("arguments")

    log.info(SYSNAP_BANNER)
    log.info("User: %s", get_user_name())
    log.info("Arguments: %s", " ".join(sys.argv[1:] if argv is None else argv))
    log.info("Default Arguments: %s", " ".join(default_args))
    log.info("")

    if not progress:
        log.info("`rich` is not installed, progress will not be shown")

    user_home = Path.home()
    home = args.home or user_home

    try:
        output_path = resolve_output_path(args, user_home)
    except (OverwriteDeclined, OutputError) as err:
        log.error("%s", err)
        exit_failure(default_args)

    policy = AdmissionPolicy(max_size=args.max_file_size) if args.max_file_size is not None else DEFAULT_POLICY
    static_info = args.static_info or home.joinpath(DEFAULT_STATIC_INFO_NAME)

    target = open_local_target(args.root)
    if not target.fs.path(static_info.as_posix()).is_file():
        log.warning("Static information file %s not found, section 0 will contain a template", static_info)

    sections = build_default_sections(home.as_posix(), static_info.as_posix(), args.timeout, policy)
    context = RunContext.current(home=home.as_posix(), version=VERSION, max_file_size=policy.max_size)

    log.info("Writing snapshot to %s", output_path)
    assembler = ReportAssembler(sections, TextFileOutput(output_path), target, context)

    try:
        summary = assemble(assembler)
    except OutputError:
        log.exception("Failed to write snapshot")
        exit_failure(default_args)

    log.info("")
    log.info("Snapshot written to %s (%s)", summary.path, format_size(summary.size))
    log.info("\n%s", get_report_summary(summary.counts))

    if summary.failure_count:
        log.warning("%d item(s) failed, see %s at the end of the file", summary.failure_count, ERRORS_TITLE)
    else:
        log.info("No errors encountered")
    log.info(
        "Permission errors: %d, see %s at the end of the file",
        summary.permission_error_count,
        PERMISSION_ERRORS_TITLE,
    )

    if args.json_report:
        try:
            persist_execution_report(args.json_report, summary.as_dict(context))
        except OSError:
            log.exception("Failed to write collection report to %s", args.json_report)
        else:
            log.info("Collection report written to %s", args.json_report)

    exit_success(default_args)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(1)
