from __future__ import annotations

import argparse
import json
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from sysnap.collector import CommandCollector, DirectoryWalkCollector, FileCollector, StaticTextCollector
from sysnap.exceptions import OverwriteDeclined
from sysnap.report import Section
from sysnap.sections import build_default_sections
from sysnap.sysnap import main, open_local_target, resolve_output_path
from sysnap.utils import DEFAULT_KEEP, create_argument_parser, parse_sysnap_args

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def sysnap_parser_args(config: list[str], argument_list: list[str]) -> argparse.Namespace:
    config_dict = {}
    config_dict["arguments"] = config
    with patch("argparse._sys.argv", ["", *argument_list]):
        return parse_sysnap_args(create_argument_parser(), config=config_dict)


def get_args(*argv: str) -> argparse.Namespace:
    return parse_sysnap_args(create_argument_parser(), {}, list(argv))


@pytest.mark.parametrize(("config", "argument_list"), [([], [])])
def test_no_defaults_in_config(sysnap_parser_args: argparse.Namespace) -> None:
    assert not sysnap_parser_args.auto
    assert sysnap_parser_args.output is None
    assert sysnap_parser_args.keep == DEFAULT_KEEP
    assert sysnap_parser_args.verbose == 3


@pytest.mark.parametrize(("config", "argument_list"), [(["--auto", "--keep", "10"], [])])
def test_config_default_arguments(sysnap_parser_args: argparse.Namespace) -> None:
    assert sysnap_parser_args.auto
    assert sysnap_parser_args.keep == 10


@pytest.mark.parametrize(("config", "argument_list"), [(["--keep", "10"], ["--keep", "2"])])
def test_config_default_argument_override(sysnap_parser_args: argparse.Namespace) -> None:
    assert sysnap_parser_args.keep == 2


@pytest.mark.parametrize(("config", "argument_list"), [(["--timeout", "5"], ["-vv"])])
def test_config_and_command_line_combined(sysnap_parser_args: argparse.Namespace) -> None:
    assert sysnap_parser_args.timeout == 5
    assert sysnap_parser_args.verbose == 5
    assert sysnap_parser_args.config == {"arguments": ["--timeout", "5"]}


def test_auto_and_output_are_exclusive() -> None:
    with pytest.raises(SystemExit):
        get_args("--auto", "--output", "/tmp/out.txt")


def test_resolve_output_path_auto_rotation(tmp_path: Path) -> None:
    args = get_args("--auto", "--keep", "2")
    output = tmp_path / "system-snapshot.txt"

    assert resolve_output_path(args, tmp_path) == output
    assert list(tmp_path.iterdir()) == []

    archived = []
    for run in range(4):
        output.write_text(f"run {run}\n")
        with patch("sysnap.utils.get_utc_now_str", return_value=f"2024-01-0{run + 1}-120000"):
            assert resolve_output_path(args, tmp_path) == output
        archived.append(tmp_path / f"system-snapshot-2024-01-0{run + 1}-120000.txt")

    assert not output.exists()
    assert sorted(tmp_path.iterdir()) == archived[-2:]
    assert archived[-1].read_text() == "run 3\n"


def test_resolve_output_path_auto_second_run_keeps_first(tmp_path: Path) -> None:
    args = get_args("--auto")
    output = tmp_path / "system-snapshot.txt"
    output.write_text("first\n")

    resolve_output_path(args, tmp_path)

    archives = [path for path in tmp_path.iterdir() if path != output]
    assert len(archives) == 1
    assert archives[0].read_text() == "first\n"


def test_resolve_output_path_explicit(tmp_path: Path) -> None:
    args = get_args("--output", str(tmp_path / "new" / "out.txt"))

    assert resolve_output_path(args, tmp_path) == tmp_path / "new" / "out.txt"
    assert tmp_path.joinpath("new").is_dir()


def test_resolve_output_path_explicit_existing(tmp_path: Path) -> None:
    existing = tmp_path / "out.txt"
    existing.write_text("keep\n")

    with pytest.raises(OverwriteDeclined, match="--force"):
        resolve_output_path(get_args("--output", str(existing)), tmp_path)

    assert resolve_output_path(get_args("--output", str(existing), "--force"), tmp_path) == existing


def test_resolve_output_path_interactive(tmp_path: Path) -> None:
    input_func = MagicMock(side_effect=["snap.txt", str(tmp_path / "snaps")])

    assert resolve_output_path(get_args(), tmp_path, input_func) == tmp_path / "snaps" / "snap.txt"
    assert tmp_path.joinpath("snaps").is_dir()


def test_resolve_output_path_interactive_declined(tmp_path: Path) -> None:
    existing = tmp_path / "system-snapshot.txt"
    existing.write_text("previous\n")
    input_func = MagicMock(side_effect=["", "", "n"])

    with pytest.raises(OverwriteDeclined):
        resolve_output_path(get_args(), tmp_path, input_func)

    assert existing.read_text() == "previous\n"


def test_open_local_target(tmp_path: Path) -> None:
    tmp_path.joinpath("etc").mkdir()
    tmp_path.joinpath("etc", "os-release").write_text("NAME=Arch Linux\n")

    target = open_local_target(tmp_path)

    assert target.fs.path("/etc/os-release").read_text() == "NAME=Arch Linux\n"


def test_build_default_sections() -> None:
    sections = build_default_sections("/home/user", timeout=5)

    assert len(sections) == 13
    assert sections[0].title == "Static Hardware & User Information"
    assert sections[0].collectors[0].path == "/home/user/.system-info.private"
    assert sections[-1].title == "Notes for Future Command Additions"

    commands = [
        collector for section in sections for collector in section.collectors if isinstance(collector, CommandCollector)
    ]
    assert commands
    assert all(command.timeout == 5 for command in commands)
    assert all(isinstance(command.argv, tuple) for command in commands)

    walks = {
        collector.root: collector
        for section in sections
        for collector in section.collectors
        if isinstance(collector, DirectoryWalkCollector)
    }
    assert walks["/home/user/.config"].split
    assert not walks["/home/user/bin"].split


def test_build_default_sections_static_info() -> None:
    sections = build_default_sections("/home/user", static_info="/srv/info.txt")

    static_info = sections[0].collectors[0]
    assert isinstance(static_info, FileCollector)
    assert static_info.path == "/srv/info.txt"
    assert static_info.missing_note.startswith("No static information file found.")


@pytest.fixture
def small_sections() -> list[Section]:
    return [
        Section("Static", "Notes.", [StaticTextCollector("Notes", "hello\n")]),
        Section("Git Configuration", "Git.", [FileCollector("/home/user/.gitconfig")]),
    ]


def run_main(argv: list[str], sections: list[Section]) -> int:
    with (
        patch("sysnap.sysnap.load_config", return_value={}),
        patch("sysnap.sysnap.build_default_sections", return_value=sections),
        pytest.raises(SystemExit) as exit_info,
    ):
        main(argv)
    return exit_info.value.code


def test_main_writes_snapshot(root: Path, home: Path, tmp_path: Path, small_sections: list[Section]) -> None:
    home.joinpath(".gitconfig").write_text("[user]\n\tname = Test\n")
    output = tmp_path / "out" / "snapshot.txt"
    report = tmp_path / "report.json"

    code = run_main(
        [
            "--output",
            str(output),
            "--root",
            str(root),
            "--home",
            "/home/user",
            "--json-report",
            str(report),
            "-v",
        ],
        small_sections,
    )

    assert code == 0
    content = output.read_text()
    assert "SECTION 1: GIT CONFIGURATION" in content
    assert "--- FILE: ~/.gitconfig ---" in content
    assert content.endswith("END OF SYSTEM SNAPSHOT\n" + "=" * 80 + "\n")

    data = json.loads(report.read_text())
    assert data["failures"] == []
    assert data["size"] == len(content.encode())
    assert data["sections"]["Static"] == {"success": 1}


def test_main_refuses_existing_output(root: Path, tmp_path: Path, small_sections: list[Section]) -> None:
    output = tmp_path / "snapshot.txt"
    output.write_text("previous\n")

    code = run_main(["--output", str(output), "--root", str(root), "--home", "/home/user"], small_sections)

    assert code == 1
    assert output.read_text() == "previous\n"


def test_main_output_failure(root: Path, tmp_path: Path, small_sections: list[Section]) -> None:
    output = tmp_path / "snapshot.txt"

    with patch("sysnap.sysnap.TextFileOutput.init", side_effect=PermissionError(13, "Permission denied")):
        code = run_main(["--output", str(output), "--root", str(root), "--home", "/home/user"], small_sections)

    assert code == 1


def test_main_max_file_size_zero(root: Path, home: Path, tmp_path: Path, small_sections: list[Section]) -> None:
    home.joinpath(".gitconfig").write_text("[user]\n\tname = Test\n")
    output = tmp_path / "snapshot.txt"

    with (
        patch("sysnap.sysnap.load_config", return_value={}),
        patch("sysnap.sysnap.build_default_sections", return_value=small_sections) as build_sections,
        pytest.raises(SystemExit) as exit_info,
    ):
        main(["--output", str(output), "--root", str(root), "--home", "/home/user", "--max-file-size", "0"])

    assert exit_info.value.code == 0
    policy = build_sections.call_args.args[3]
    assert policy.max_size == 0
    assert "  - Files larger than 0B\n" in output.read_text()
