from __future__ import annotations

import dataclasses
import logging
import socket
import textwrap
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from sysnap.collector import ArtifactType, Failed, Group, Outcome, Skipped, Text, iter_leaves
from sysnap.exceptions import OutputError, SnapshotError
from sysnap.policy import DEFAULT_MAX_FILE_SIZE, SkipReason, format_size
from sysnap.utils import StrEnum, display_path, get_user_name, get_utc_now

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from dissect.target import Target

    from sysnap.collector import Collector, CollectorResult
    from sysnap.outputs.base import Output

log = logging.getLogger(__name__)

RULE = "=" * 80
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S UTC"

PERMISSION_ERRORS_TITLE = "PERMISSION ERRORS ENCOUNTERED"
ERRORS_TITLE = "ERRORS ENCOUNTERED"

SOURCE_LABELS = {
    ArtifactType.COMMAND: "Command",
    ArtifactType.LISTING: "Directories",
    ArtifactType.ENV: "Variables",
}


class AssemblerState(StrEnum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"


NEXT_STATE = {
    AssemblerState.IDLE: AssemblerState.INITIALIZING,
    AssemblerState.INITIALIZING: AssemblerState.RUNNING,
    AssemblerState.RUNNING: AssemblerState.FINALIZING,
    AssemblerState.FINALIZING: AssemblerState.DONE,
}


@dataclass(frozen=True)
class Section:
    title: str
    purpose: str
    collectors: tuple[Collector, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "collectors", tuple(self.collectors))


@dataclass(frozen=True)
class RunContext:
    """Values written in the preamble, resolved once so the whole report is time-consistent."""

    timestamp: str
    hostname: str
    user: str
    home: str
    version: str = "0.0.dev"
    max_file_size: int = DEFAULT_MAX_FILE_SIZE

    @classmethod
    def current(cls, home: str, version: str, max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> RunContext:
        return cls(
            timestamp=get_utc_now().strftime(TIMESTAMP_FORMAT),
            hostname=socket.gethostname(),
            user=get_user_name(),
            home=home,
            version=version,
            max_file_size=max_file_size,
        )


@dataclass(frozen=True)
class LedgerEntry:
    section: str
    origin: str
    error: str


class FailureLedger:
    """Append-only record of failed collectors, plus a separate tally of permission errors.

    Only the :class:`ReportAssembler` running the collectors writes to it.
    """

    def __init__(self):
        self._failures: list[LedgerEntry] = []
        self._permission_errors: list[str] = []

    @property
    def failures(self) -> tuple[LedgerEntry, ...]:
        return tuple(self._failures)

    @property
    def permission_errors(self) -> tuple[str, ...]:
        return tuple(self._permission_errors)

    def record(self, section: str, result: CollectorResult, prefix: Optional[str] = None) -> None:
        if isinstance(result, Group):
            group_prefix = prefix or result.source or result.origin
            for child in result.results:
                child_prefix = f"{group_prefix}/{child.origin}" if isinstance(child, Group) else group_prefix
                self.record(section, child, prefix=child_prefix)
            return

        origin = f"{prefix}/{result.origin}" if prefix else result.origin

        if isinstance(result, Failed):
            self._failures.append(LedgerEntry(section=section, origin=origin, error=result.error))
        elif isinstance(result, Skipped) and result.reason == SkipReason.PERMISSION_DENIED:
            self._permission_errors.append(origin)


@dataclass(frozen=True)
class RunSummary:
    path: Optional[Path]
    size: int
    failures: tuple[LedgerEntry, ...]
    permission_errors: tuple[str, ...]
    counts: dict[str, dict[Outcome, int]]

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def permission_error_count(self) -> int:
        return len(self.permission_errors)

    def as_dict(self, context: RunContext) -> dict:
        return {
            "path": str(self.path) if self.path else None,
            "size": self.size,
            "timestamp": context.timestamp,
            "hostname": context.hostname,
            "user": context.user,
            "sections": {section: {str(k): v for k, v in counts.items()} for section, counts in self.counts.items()},
            "failures": [dataclasses.asdict(entry) for entry in self.failures],
            "permission-errors": list(self.permission_errors),
        }


class ReportAssembler:
    """Run all collectors of all sections in declaration order and render them into ``output``.

    The assembler moves through the states idle, initializing, running, finalizing and done, in
    that order, exactly once. Collector failures end up in the failure ledger. Only failures to
    write the artifact are raised, as :class:`OutputError`.
    """

    def __init__(
        self,
        sections: Iterable[Section],
        output: Output,
        target: Target,
        context: RunContext,
        on_section: Optional[Callable[[int, Section], None]] = None,
    ):
        self.sections = tuple(sections)
        self.output = output
        self.target = target
        self.context = context
        self.on_section = on_section

        self.ledger = FailureLedger()
        self.state = AssemblerState.IDLE
        self.counts: dict[str, dict[Outcome, int]] = {}

    def _transition(self, state: AssemblerState) -> None:
        if NEXT_STATE.get(self.state) != state:
            raise SnapshotError(f"Invalid report state transition from {self.state} to {state}")
        log.debug("Report state: %s -> %s", self.state, state)
        self.state = state

    def _write(self, lines: list[str]) -> None:
        try:
            self.output.write_lines(lines)
        except OSError as error:
            raise OutputError(f"Can not write to {self.output.path}: {error}") from error

    def run(self) -> RunSummary:
        if self.state != AssemblerState.IDLE:
            raise SnapshotError("A report can only be assembled once")

        try:
            self._transition(AssemblerState.INITIALIZING)
            try:
                self.output.init()
            except OSError as error:
                raise OutputError(f"Can not create {self.output.path}: {error}") from error
            self._write(render_preamble(self.context, self.sections))

            self._transition(AssemblerState.RUNNING)
            for index, section in enumerate(self.sections):
                self._run_section(index, section)

            self._transition(AssemblerState.FINALIZING)
            self._write(render_ledger(self.ledger))

            self.output.close()
            size = self.output.size()
            self._transition(AssemblerState.DONE)
        except OSError as error:
            self._abort()
            raise OutputError(f"Can not finish {self.output.path}: {error}") from error
        except OutputError:
            self._abort()
            raise

        return RunSummary(
            path=self.output.path,
            size=size,
            failures=self.ledger.failures,
            permission_errors=self.ledger.permission_errors,
            counts=self.counts,
        )

    def _abort(self) -> None:
        try:
            self.output.close()
        except OSError:
            log.debug("Failed to close %s after a write error", self.output.path, exc_info=True)

    def _run_section(self, index: int, section: Section) -> None:
        log.info("Collecting section %d: %s", index, section.title)
        if self.on_section:
            self.on_section(index, section)

        counts = self.counts.setdefault(section.title, defaultdict(int))
        self._write(render_section_header(f"SECTION {index}: {section.title.upper()}"))

        for collector in section.collectors:
            result = collector.run(self.target)

            prefix = None
            if isinstance(result, Group) and result.source:
                # Walked files are reported by their display path
                prefix = display_path(result.source, self.context.home)
            self.ledger.record(section.title, result, prefix=prefix)

            for leaf in iter_leaves(result):
                counts[leaf.outcome] += 1

            self._write(render_result(result, self.context.home, prefix))


def render_section_header(title: str) -> list[str]:
    return ["", RULE, title, RULE, ""]


def render_preamble(context: RunContext, sections: tuple[Section, ...]) -> list[str]:
    lines = [
        RULE,
        "SYSTEM SNAPSHOT",
        RULE,
        f"Generated: {context.timestamp}",
        f"Hostname: {context.hostname}",
        f"User: {context.user}",
        f"Home: {context.home}",
        f"Generator: sysnap {context.version}",
        "",
        "Purpose: This file provides comprehensive system information as context for",
        "         troubleshooting, customization, and development tasks.",
        "",
        RULE,
        "TABLE OF CONTENTS",
        RULE,
        "",
    ]

    number_width = len(str(len(sections)))
    indent = " " * (number_width + 4)
    for index, section in enumerate(sections):
        lines.append(f"{index:>{number_width}}. {section.title}")
        lines.extend(textwrap.wrap(section.purpose, width=76, initial_indent=indent, subsequent_indent=indent))

    lines.extend(
        [
            f"{'':>{number_width}}  {PERMISSION_ERRORS_TITLE.title()}",
            f"{'':>{number_width}}  {ERRORS_TITLE.title()}",
            "",
            RULE,
            "SECURITY & PRIVACY NOTICE",
            RULE,
            "",
            "Included:",
            "  - Output of the system inspection commands listed per section",
            "  - Text content of configuration files, scripts and SSH public keys",
            "  - Environment variables, with secret looking values replaced by <redacted>",
            "",
            "Not included (only the location is recorded):",
            "  - Executables, binaries, images, archives and databases",
            "  - Credential stores, keyrings and key containers",
            "  - Private keys",
            f"  - Files larger than {format_size(context.max_file_size)}",
            "  - Version control metadata (.git and similar directories)",
            "  - Contents of ~/.ssh/known_hosts (only the number of entries)",
            "",
            "Review this file before sharing it: configuration files may still contain secrets.",
            "",
            RULE,
        ]
    )
    return lines


def render_result(result: CollectorResult, home: str, prefix: Optional[str] = None) -> list[str]:
    if isinstance(result, Group):
        return _render_group(result, home, prefix)

    label = result.origin
    if result.artifact_type in (ArtifactType.FILE, ArtifactType.DIR):
        label = f"{prefix}/{label}" if prefix else display_path(label, home)

    if isinstance(result, Text):
        return _render_text(result, label, home)
    if isinstance(result, Skipped):
        return _render_skipped(result, label, home)
    if isinstance(result, Failed):
        return [f"ERROR: {label}: {result.error}", ""]

    raise SnapshotError(f"Unknown collector result: {result!r}")


def _render_body(content: bytes) -> list[str]:
    return content.decode("utf-8", errors="replace").splitlines()


def _render_text(result: Text, label: str, home: str) -> list[str]:
    if result.artifact_type == ArtifactType.FILE:
        return [f"--- FILE: {label} ---", *_render_body(result.content), f"--- END FILE: {label} ---", ""]

    lines = ["", f"--- {label} ---", ""]
    if result.source and result.artifact_type in SOURCE_LABELS:
        source = result.source
        if result.artifact_type == ArtifactType.LISTING:
            source = " ".join(display_path(root, home) for root in source.split(" "))
        lines.extend([f"{SOURCE_LABELS[result.artifact_type]}: {source}", ""])

    lines.extend(_render_body(result.content))
    lines.extend([f"--- END {label} ---", ""])
    return lines


def _render_skipped(result: Skipped, label: str, home: str) -> list[str]:
    reason = result.reason
    is_file = result.artifact_type == ArtifactType.FILE

    if reason == SkipReason.NOT_FOUND:
        if result.detail and is_file:
            return [*result.detail.splitlines(), ""]
        if is_file:
            return [f"File not found: {label}"]
        where = ", ".join(display_path(root, home) for root in (result.detail or label).split(", "))
        return [f"Directory not found: {where}"]

    if reason == SkipReason.PERMISSION_DENIED:
        if is_file:
            return [f"PERMISSION DENIED: Cannot read {label}"]
        where = display_path(result.detail, home) if result.detail else label
        return [f"PERMISSION DENIED: Cannot list {where}"]

    size = format_size(result.size) if result.size is not None else "unknown size"

    if reason == SkipReason.TOO_LARGE:
        return [f"FILE TOO LARGE ({size}): Skipping {label}"]
    if reason == SkipReason.BINARY_OR_DATA_FILE:
        return [f"BINARY FILE: {label} ({result.detail or 'data'}, {size}; location recorded, content not printed)"]
    if reason == SkipReason.SECRET:
        return [f"SECRET: {label} ({result.detail or 'secret'}; content withheld)"]

    raise SnapshotError(f"Unknown skip reason: {reason}")


def _render_group(result: Group, home: str, prefix: Optional[str], heading: Optional[str] = None) -> list[str]:
    root = prefix or display_path(result.source or result.origin, home)
    heading = heading or result.origin
    lines = ["", f"--- {heading} ---", ""]

    if not result.results:
        lines.append(f"No files found in {root}")

    for child in result.results:
        if isinstance(child, Group):
            # Nested groups are top-level directories of a split walk
            lines.extend(
                _render_group(child, home, f"{root}/{child.origin}", heading=f"{heading.rstrip('/')}/{child.origin}/")
            )
        else:
            lines.extend(render_result(child, home, prefix=root))

    lines.append("")
    return lines


def render_ledger(ledger: FailureLedger) -> list[str]:
    lines = render_section_header(PERMISSION_ERRORS_TITLE)
    if ledger.permission_errors:
        lines.extend(["The following items could not be accessed due to permissions:", ""])
        lines.extend(f"- {origin}" for origin in ledger.permission_errors)
    else:
        lines.append("No permission errors encountered.")

    lines.extend(render_section_header(ERRORS_TITLE))
    if ledger.failures:
        lines.extend(["The following items failed to collect:", ""])
        lines.extend(f"- [{entry.section}] {entry.origin}: {entry.error}" for entry in ledger.failures)
    else:
        lines.append("No errors encountered.")

    lines.extend(["", RULE, "END OF SYSTEM SNAPSHOT", RULE])
    return lines


def get_report_summary(counts: dict[str, dict[Outcome, int]]) -> str:
    """Create a table-view report summary with success/skipped/failure counters per section"""

    if not counts:
        return ""

    section_max_len = max(len(section) for section in counts)
    # Must be as long as a header
    section_max_len = max(len("Section"), section_max_len)

    row_template = (
        f"{{section: >{section_max_len}s}} | "
        "{success_count: >10} | "
        "{skipped_count: >10} | "
        "{failure_count: >10}"
    )

    header = row_template.format(
        section="Section",
        success_count="Success",
        skipped_count="Skipped",
        failure_count="Failure",
    )

    splitter = "-" * len(header)

    rows = [
        row_template.format(
            section=section,
            success_count=section_counts.get(Outcome.SUCCESS, ""),
            skipped_count=section_counts.get(Outcome.SKIPPED, ""),
            failure_count=section_counts.get(Outcome.FAILURE, ""),
        )
        for section, section_counts in counts.items()
    ]

    total_counts = defaultdict(int)
    for section_counts in counts.values():
        for outcome, value in section_counts.items():
            total_counts[outcome] += value

    total_counts_row = row_template.format(
        section="Total",
        success_count=total_counts[Outcome.SUCCESS],
        skipped_count=total_counts[Outcome.SKIPPED],
        failure_count=total_counts[Outcome.FAILURE],
    )

    return "\n".join(
        [
            splitter,
            header,
            splitter,
            *rows,
            splitter,
            total_counts_row,
            splitter,
        ]
    )
