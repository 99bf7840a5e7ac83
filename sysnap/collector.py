from __future__ import annotations

import errno
import fnmatch
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, ClassVar, Optional, Union

from dissect.target.exceptions import (
    FileNotFoundError,
    FilesystemError,
    NotADirectoryError,
    NotASymlinkError,
    SymlinkRecursionError,
)

from sysnap.policy import SNIFF_SIZE, AdmissionPolicy, SkipReason, redact_environment, strip_ansi
from sysnap.utils import DEFAULT_TIMEOUT, StrEnum

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from dissect.target import Target
    from dissect.target.helpers.fsutil import TargetPath

log = logging.getLogger(__name__)

DEFAULT_POLICY = AdmissionPolicy()

# Directories (and the ``.git`` marker file of worktrees and submodules) never entered by a walk
VCS_DIRECTORIES = frozenset({".git", ".hg", ".svn", ".bzr"})

# Variables passed on to commands, everything else in the environment is withheld
COMMAND_ENV_NAMES = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "SHELL",
    "XDG_RUNTIME_DIR",
    "XDG_SESSION_TYPE",
    "XDG_CURRENT_DESKTOP",
    "WAYLAND_DISPLAY",
    "DISPLAY",
    "DBUS_SESSION_BUS_ADDRESS",
    "HYPRLAND_INSTANCE_SIGNATURE",
)
COMMAND_ENV_OVERRIDES = {
    "LC_ALL": "C",
    "TERM": "dumb",
    "NO_COLOR": "1",
    "SYSTEMD_COLORS": "0",
    "SYSTEMD_PAGER": "",
    "PAGER": "cat",
}

MAX_ERROR_LINE = 200

_NOT_FOUND_ERRORS = (FileNotFoundError, NotADirectoryError, NotASymlinkError, SymlinkRecursionError)
_PERMISSION_ERRNOS = (errno.EACCES, errno.EPERM)


class Outcome(StrEnum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILURE = "failure"


class ArtifactType(StrEnum):
    FILE = "file"
    DIR = "dir"
    COMMAND = "command"
    TEXT = "text"
    ENV = "env"
    LISTING = "listing"


@dataclass(frozen=True)
class CollectorResult:
    artifact_type: ArtifactType
    origin: str

    outcome: ClassVar[Outcome]


@dataclass(frozen=True)
class Text(CollectorResult):
    content: bytes = b""
    source: Optional[str] = None

    outcome: ClassVar[Outcome] = Outcome.SUCCESS


@dataclass(frozen=True)
class Skipped(CollectorResult):
    reason: SkipReason = SkipReason.NOT_FOUND
    size: Optional[int] = None
    detail: Optional[str] = None

    outcome: ClassVar[Outcome] = Outcome.SKIPPED


@dataclass(frozen=True)
class Failed(CollectorResult):
    error: str = ""

    outcome: ClassVar[Outcome] = Outcome.FAILURE


@dataclass(frozen=True)
class Group(CollectorResult):
    """The result of a directory walk, one child result per file with an origin relative to ``source``.

    A split walk nests one group per top-level directory.
    """

    results: tuple[Union[Text, Skipped, Failed, Group], ...] = ()
    source: Optional[str] = None

    outcome: ClassVar[Outcome] = Outcome.SUCCESS


def iter_leaves(result: CollectorResult) -> Iterator[CollectorResult]:
    if isinstance(result, Group):
        for child in result.results:
            yield from iter_leaves(child)
    else:
        yield result


def bounded_environment(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ

    env = {name: environ[name] for name in COMMAND_ENV_NAMES if name in environ}
    env.setdefault("PATH", os.defpath)
    env.update(COMMAND_ENV_OVERRIDES)
    return env


def unwrap_os_error(error: BaseException | None) -> OSError | None:
    """Return the :class:`OSError` behind ``error``.

    dissect raises a :class:`FilesystemError` from the ``OSError`` of the underlying filesystem.
    """
    while error is not None and not isinstance(error, OSError):
        error = error.__cause__
    return error


def is_permission_error(error: BaseException) -> bool:
    cause = unwrap_os_error(error)
    return cause is not None and cause.errno in _PERMISSION_ERRNOS


def describe_error(error: BaseException) -> str:
    if not isinstance(error, OSError) and (cause := unwrap_os_error(error)) is not None:
        error = cause
    return f"{error.__class__.__name__}: {error}"


def collect_file(
    path: TargetPath,
    origin: str,
    policy: AdmissionPolicy = DEFAULT_POLICY,
    missing_note: str | None = None,
) -> Text | Skipped:
    """Read a single regular file, unless it is missing, unreadable or denied by ``policy``.

    Unexpected errors are raised, it is up to the caller to isolate them.
    """
    try:
        if not path.is_file():
            return Skipped(ArtifactType.FILE, origin, reason=SkipReason.NOT_FOUND, detail=missing_note)

        size = path.stat().st_size
        with path.open("rb") as fh:
            head = fh.read(SNIFF_SIZE)
            verdict = policy.classify(str(path), size, head)
            if not verdict.admitted:
                return Skipped(ArtifactType.FILE, origin, reason=verdict.reason, size=size, detail=verdict.detail)

            # The file may have grown since it was stat'ed
            content = head + fh.read(policy.max_size + 1 - len(head))
            if len(content) > policy.max_size:
                return Skipped(ArtifactType.FILE, origin, reason=SkipReason.TOO_LARGE, size=len(content))

    except _NOT_FOUND_ERRORS:
        return Skipped(ArtifactType.FILE, origin, reason=SkipReason.NOT_FOUND, detail=missing_note)
    except (OSError, FilesystemError) as error:
        cause = unwrap_os_error(error)
        if cause is None:
            raise
        if cause.errno == errno.ENOENT:
            return Skipped(ArtifactType.FILE, origin, reason=SkipReason.NOT_FOUND, detail=missing_note)
        if cause.errno in _PERMISSION_ERRNOS:
            return Skipped(ArtifactType.FILE, origin, reason=SkipReason.PERMISSION_DENIED)
        raise

    return Text(ArtifactType.FILE, origin, content=content, source=str(path))


class Collector:
    """A single piece of diagnostic information to collect.

    Sub-classes implement :meth:`_collect`, :meth:`run` makes sure every collector produces exactly
    one :class:`CollectorResult` and never raises.
    """

    artifact_type: ClassVar[ArtifactType]

    @property
    def origin(self) -> str:
        return self.description

    def run(self, target: Target) -> CollectorResult:
        log.debug("- Collecting %s %s", self.artifact_type, self.origin)
        try:
            result = self._collect(target)
        except Exception as error:
            log.error("- Failed to collect %s %s", self.artifact_type, self.origin, exc_info=True)  # noqa: G201
            return Failed(self.artifact_type, self.origin, error=describe_error(error))

        log.debug("- Collecting %s %s: %s", self.artifact_type, self.origin, result.outcome)
        return result

    def _collect(self, target: Target) -> CollectorResult:
        raise NotImplementedError


@dataclass(frozen=True)
class CommandCollector(Collector):
    description: str
    argv: tuple[str, ...]
    tail: Optional[int] = None
    postprocess: Optional[Callable[[str], str]] = None
    timeout: int = DEFAULT_TIMEOUT

    artifact_type: ClassVar[ArtifactType] = ArtifactType.COMMAND

    def __post_init__(self) -> None:
        object.__setattr__(self, "argv", tuple(self.argv))

    @property
    def source(self) -> str:
        return shlex.join(self.argv)

    def _collect(self, target: Target) -> CollectorResult:
        try:
            process = subprocess.run(
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=bounded_environment(),
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            log.error("- Command `%s` timed out after %ss", self.source, self.timeout)
            return Failed(self.artifact_type, self.origin, error=f"timed out after {self.timeout}s")
        except OSError as error:
            if error.errno == errno.ENOENT:
                return Failed(self.artifact_type, self.origin, error=f"command not found: {self.argv[0]}")
            return Failed(self.artifact_type, self.origin, error=f"could not execute {self.argv[0]}: {error.strerror}")

        output = strip_ansi(process.stdout or b"")

        if process.returncode != 0:
            log.error("- Command `%s` exited with status %s", self.source, process.returncode)
            return Failed(self.artifact_type, self.origin, error=describe_exit(process.returncode, output))

        if self.tail is not None or self.postprocess is not None:
            text = output.decode("utf-8", errors="replace")
            if self.tail is not None:
                text = "".join(text.splitlines(keepends=True)[-self.tail :]) if self.tail > 0 else ""
            if self.postprocess is not None:
                text = self.postprocess(text)
            output = text.encode()

        return Text(self.artifact_type, self.origin, content=output, source=self.source)


def describe_exit(returncode: int, output: bytes) -> str:
    if returncode < 0:
        error = f"killed by signal {-returncode}"
    else:
        error = f"exit status {returncode}"

    lines = [line.strip() for line in output.decode("utf-8", errors="replace").splitlines() if line.strip()]
    if lines:
        error = f"{error}: {lines[-1][:MAX_ERROR_LINE]}"

    return error


def count_lines(text: str) -> str:
    return f"{len(text.splitlines())}\n"


@dataclass(frozen=True)
class FileCollector(Collector):
    path: str
    label: Optional[str] = None
    missing_note: Optional[str] = None
    policy: AdmissionPolicy = DEFAULT_POLICY

    artifact_type: ClassVar[ArtifactType] = ArtifactType.FILE

    @property
    def description(self) -> str:
        return self.label or self.path

    def _collect(self, target: Target) -> CollectorResult:
        return collect_file(target.fs.path(self.path), self.origin, self.policy, self.missing_note)


@dataclass(frozen=True)
class LineCountCollector(FileCollector):
    """Report how many lines a file has, without its content."""

    noun: str = "Lines"

    def _collect(self, target: Target) -> CollectorResult:
        result = super()._collect(target)
        if not isinstance(result, Text):
            return result

        count = len(result.content.splitlines())
        summary = f"{self.noun} count: {count}\n(Contents not printed for security)\n"
        return Text(self.artifact_type, self.origin, content=summary.encode(), source=result.source)


@dataclass(frozen=True)
class DirectoryWalkCollector(Collector):
    """Collect every regular file below ``root``, ordered by path relative to ``root``.

    Version control metadata is never entered and symlinks are not followed. Every file is
    collected in isolation, so an unreadable file or directory only affects its own entry.

    With ``split`` every top-level directory becomes a nested :class:`Group` of its own, followed
    by the files directly in ``root``.
    """

    description: str
    root: str
    pattern: Optional[str] = None
    policy: AdmissionPolicy = DEFAULT_POLICY
    split: bool = False

    artifact_type: ClassVar[ArtifactType] = ArtifactType.DIR

    def _collect(self, target: Target) -> CollectorResult:
        root = target.fs.path(self.root)
        if not root.is_dir():
            return Skipped(self.artifact_type, self.origin, reason=SkipReason.NOT_FOUND, detail=self.root)

        results = self._collect_split(root) if self.split else self._collect_tree(root)
        if isinstance(results, Skipped):
            return Skipped(self.artifact_type, self.origin, reason=results.reason, detail=self.root)

        return Group(self.artifact_type, self.origin, results=tuple(results), source=self.root)

    def _collect_split(self, root: TargetPath) -> list[CollectorResult] | Skipped:
        try:
            entries = sorted(root.iterdir(), key=lambda entry: entry.name)
        except (OSError, FilesystemError) as error:
            log.error("- Failed to list directory %s", root)  # noqa: TRY400
            return Skipped(ArtifactType.DIR, "", reason=_listing_skip_reason(error))

        directories = []
        files = []
        for entry in entries:
            if entry.name in VCS_DIRECTORIES or entry.is_symlink():
                continue
            if entry.is_dir():
                children = self._collect_tree(entry)
                if isinstance(children, Skipped):
                    directories.append(
                        Skipped(ArtifactType.DIR, entry.name, reason=children.reason, detail=str(entry))
                    )
                else:
                    directories.append(Group(ArtifactType.DIR, entry.name, results=tuple(children), source=str(entry)))
            elif entry.is_file() and self._matches(entry):
                files.append(self._collect_one(entry, entry.name))

        return directories + files

    def _collect_tree(self, root: TargetPath) -> list[Text | Skipped | Failed] | Skipped:
        root_prefix = str(root).rstrip("/")
        results = []
        for relpath, entry in sorted(self._walk(root, root_prefix), key=lambda item: item[0]):
            if isinstance(entry, Skipped):
                if not relpath:
                    # The root itself could not be listed
                    return entry
                results.append(entry)
                continue

            results.append(self._collect_one(entry, relpath))

        return results

    def _collect_one(self, path: TargetPath, relpath: str) -> Text | Skipped | Failed:
        try:
            return collect_file(path, relpath, self.policy)
        except Exception as error:
            log.error("- Failed to collect file %s in %s", relpath, self.root, exc_info=True)  # noqa: G201
            return Failed(ArtifactType.FILE, relpath, error=describe_error(error))

    def _matches(self, entry: TargetPath) -> bool:
        return not self.pattern or fnmatch.fnmatchcase(entry.name, self.pattern)

    def _walk(self, root: TargetPath, root_prefix: str) -> Iterator[tuple[str, TargetPath | Skipped]]:
        directories = [root]
        while directories:
            directory = directories.pop()
            relpath = str(directory)[len(root_prefix) :].lstrip("/")

            try:
                entries = list(directory.iterdir())
            except (OSError, FilesystemError) as error:
                log.error("- Failed to list directory %s", directory)  # noqa: TRY400
                yield relpath, Skipped(ArtifactType.DIR, relpath, reason=_listing_skip_reason(error))
                continue

            for entry in entries:
                if entry.name in VCS_DIRECTORIES or entry.is_symlink():
                    continue

                if entry.is_dir():
                    directories.append(entry)
                elif entry.is_file() and self._matches(entry):
                    yield str(entry)[len(root_prefix) :].lstrip("/"), entry


def _listing_skip_reason(error: BaseException) -> SkipReason:
    return SkipReason.PERMISSION_DENIED if is_permission_error(error) else SkipReason.NOT_FOUND


@dataclass(frozen=True)
class StaticTextCollector(Collector):
    description: str
    text: str

    artifact_type: ClassVar[ArtifactType] = ArtifactType.TEXT

    def _collect(self, target: Target) -> CollectorResult:
        return Text(self.artifact_type, self.origin, content=self.text.encode())


@dataclass(frozen=True)
class EnvironmentCollector(Collector):
    """Show environment variables of this process, with secret looking values redacted.

    Without ``names`` the whole environment is shown. With a ``separator`` every value is split
    into one part per line, e.g. for ``PATH``.
    """

    description: str
    names: Optional[tuple[str, ...]] = None
    separator: Optional[str] = None

    artifact_type: ClassVar[ArtifactType] = ArtifactType.ENV

    def __post_init__(self) -> None:
        if self.names is not None:
            object.__setattr__(self, "names", tuple(self.names))

    def _collect(self, target: Target) -> CollectorResult:
        environ = redact_environment(os.environ)
        names = self.names if self.names is not None else tuple(environ)

        lines = []
        for name in names:
            if name not in environ:
                lines.append(f"{name} is not set")
            elif self.separator:
                lines.append(f"{name}:")
                lines.extend(f"  {part}" for part in environ[name].split(self.separator))
            else:
                lines.append(f"{name}={environ[name]}")

        content = "".join(f"{line}\n" for line in lines)
        source = " ".join(self.names) if self.names else None
        return Text(self.artifact_type, self.origin, content=content.encode(), source=source)


@dataclass(frozen=True)
class DirectoryListingCollector(Collector):
    """List the names below one or more directories up to ``depth`` levels, sorted and deduplicated.

    Like ``ls`` and ``tree``, hidden entries are left out unless ``include_hidden`` is set and
    directories are shown with a trailing ``/``. Roots that do not exist are ignored.
    """

    description: str
    roots: tuple[str, ...]
    depth: int = 1
    include_hidden: bool = False

    artifact_type: ClassVar[ArtifactType] = ArtifactType.LISTING

    def __post_init__(self) -> None:
        object.__setattr__(self, "roots", tuple(self.roots))

    def _collect(self, target: Target) -> CollectorResult:
        names = set()
        found = False
        for root in self.roots:
            path = target.fs.path(root)
            if not path.is_dir():
                continue
            found = True
            names.update(self._list(path, "", 1))

        if not found:
            return Skipped(
                self.artifact_type, self.origin, reason=SkipReason.NOT_FOUND, detail=", ".join(self.roots)
            )

        content = "".join(f"{name}\n" for name in sorted(names))
        return Text(self.artifact_type, self.origin, content=content.encode(), source=" ".join(self.roots))

    def _list(self, directory: TargetPath, prefix: str, level: int) -> Iterator[str]:
        try:
            entries = sorted(directory.iterdir(), key=lambda entry: entry.name)
        except (OSError, FilesystemError):
            yield f"{prefix}(unreadable)"
            return

        for entry in entries:
            if entry.name.startswith(".") and not self.include_hidden:
                continue

            name = f"{prefix}{entry.name}"
            if entry.is_dir() and not entry.is_symlink():
                yield f"{name}/"
                if level < self.depth:
                    yield from self._list(entry, f"{name}/", level + 1)
            else:
                yield name
