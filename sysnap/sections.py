from __future__ import annotations

import functools
from pathlib import PurePosixPath
from typing import Union

from sysnap.collector import (
    DEFAULT_POLICY,
    CommandCollector,
    DirectoryListingCollector,
    DirectoryWalkCollector,
    EnvironmentCollector,
    FileCollector,
    LineCountCollector,
    StaticTextCollector,
    count_lines,
)
from sysnap.policy import AdmissionPolicy
from sysnap.report import Section
from sysnap.utils import DEFAULT_STATIC_INFO_NAME, DEFAULT_TIMEOUT

PathLike = Union[str, PurePosixPath]

STATIC_INFO_MISSING_NOTE = f"""\
No static information file found.

To add your hardware specifications, warranty information, and other static
details, create a file at: ~/{DEFAULT_STATIC_INFO_NAME}

A template:

=== Hardware Specifications ===
Device: [Your laptop/desktop model]
Model: [Model number]
Screen: [Screen size and resolution]
Processor: [CPU model]
Storage: [Storage capacity and type]
Memory: [RAM amount]
Serial Number: [Serial number]

=== Warranty Information ===
Status: [Warranty status]
Coverage Through: [Date]
Warranty Portal: [URL to warranty page]

=== Display Information ===
External Monitor: [Monitor model if applicable]
Monitor Resolution: [Resolution]
Monitor Connection: [Connection type]

=== User Notes ===
[Any additional static information you want to include]
"""

FUTURE_ADDITIONS_NOTES = """\
This section serves as a reference for adding new collectors to sysnap.

Collectors are declared per section in sysnap/sections.py:
1. Identify the appropriate section (or add a new Section)
2. Commands: CommandCollector("Description", ["command", "arg"])
3. File contents: FileCollector("/path/to/file")
4. Directories: DirectoryWalkCollector("Section Title", "/path/to/dir")

Common additions might include:
- Bluetooth: bluetoothctl list, bluetoothctl devices
- Audio: pactl list sinks, pactl list sources
- Power: upower -d, tlp-stat (if installed)
- Temperature: sensors
- Process list: ps aux
- Docker: docker ps, docker images (if installed)
- Python: pip list (if using)
- Node: npm list -g (if using)
"""

GSETTINGS_INTERFACE = "org.gnome.desktop.interface"


def first_line(text: str) -> str:
    lines = text.splitlines(keepends=True)
    return lines[0] if lines else ""


def package_total(text: str) -> str:
    return f"{count_lines(text)}Total packages installed\n"


def build_default_sections(
    home: PathLike,
    static_info: PathLike | None = None,
    timeout: int = DEFAULT_TIMEOUT,
    policy: AdmissionPolicy = DEFAULT_POLICY,
) -> list[Section]:
    """Return the sections of a Linux desktop snapshot, in the order they are written.

    ``home`` and ``static_info`` are paths in the namespace of the target the snapshot is
    collected from, commands always run on the local system.
    """
    home = PurePosixPath(home)
    static_info = PurePosixPath(static_info) if static_info else home.joinpath(DEFAULT_STATIC_INFO_NAME)

    command = functools.partial(CommandCollector, timeout=timeout)
    file = functools.partial(FileCollector, policy=policy)
    walk = functools.partial(DirectoryWalkCollector, policy=policy)

    def in_home(*parts: str) -> str:
        return str(home.joinpath(*parts))

    return [
        Section(
            "Static Hardware & User Information",
            "Hardware specifications, warranty and display details kept by hand in "
            f"~/{DEFAULT_STATIC_INFO_NAME}.",
            [
                file(str(static_info), missing_note=STATIC_INFO_MISSING_NOTE),
            ],
        ),
        Section(
            "Hardware Information",
            "CPU, memory, disks, GPU, PCI and USB devices, firmware and BIOS.",
            [
                command("CPU Information", ["lscpu"]),
                command("Memory Information", ["free", "-h"]),
                command("Disk Layout and Filesystems", ["lsblk", "-f"]),
                command("Disk Usage", ["df", "-h"]),
                command("GPU Information", ["lspci", "-k", "-d", "::0300"]),
                command("All PCI Devices", ["lspci"]),
                command("USB Devices", ["lsusb"]),
                command("Firmware Devices", ["fwupdmgr", "get-devices", "--no-unreported-check"]),
                command("Firmware Updates Available", ["fwupdmgr", "get-updates", "--no-unreported-check"]),
                command("Firmware Update History", ["fwupdmgr", "get-history", "--no-unreported-check"]),
                command("BIOS/UEFI Information", ["dmidecode", "-t", "bios"]),
            ],
        ),
        Section(
            "System Core",
            "Kernel, OS release, running, failed and enabled services, init system and uptime.",
            [
                command("Kernel Version", ["uname", "-a"]),
                file("/etc/os-release"),
                command("Running Services", ["systemctl", "list-units", "--type=service", "--state=running"]),
                command("Failed Services", ["systemctl", "--failed"]),
                command("Enabled User Services", ["systemctl", "--user", "list-unit-files", "--state=enabled"]),
                command("Init System", ["ls", "-l", "/sbin/init"]),
                command("System Uptime", ["uptime"]),
            ],
        ),
        Section(
            "Package Management",
            "All, explicitly installed and foreign (AUR) packages with a total count.",
            [
                command("All Installed Packages", ["pacman", "-Q"]),
                command("Explicitly Installed Packages", ["pacman", "-Qe"]),
                command("AUR/Foreign Packages", ["pacman", "-Qm"]),
                command("Package Statistics", ["pacman", "-Q"], postprocess=package_total),
            ],
        ),
        Section(
            "Display & Wayland",
            "Session type, Hyprland monitors, workspaces and devices, GTK, Qt and icon themes.",
            [
                EnvironmentCollector("Session Type", ["XDG_SESSION_TYPE"]),
                command("Hyprland Version", ["hyprctl", "version"]),
                command("Monitor Configuration", ["hyprctl", "monitors"]),
                command("Active Workspaces", ["hyprctl", "workspaces"]),
                command("Hyprland Devices", ["hyprctl", "devices"]),
                command("GTK Theme Settings", ["gsettings", "get", GSETTINGS_INTERFACE, "gtk-theme"]),
                command("Icon Theme", ["gsettings", "get", GSETTINGS_INTERFACE, "icon-theme"]),
                command("Cursor Theme", ["gsettings", "get", GSETTINGS_INTERFACE, "cursor-theme"]),
                EnvironmentCollector("Qt Theme and Style", ["QT_QPA_PLATFORMTHEME", "QT_STYLE_OVERRIDE"]),
                file(in_home(".gtkrc-2.0")),
                file(in_home(".config", "gtk-4.0", "settings.ini")),
                EnvironmentCollector("Current Color Scheme (if set)", ["GTK_THEME"]),
                DirectoryListingCollector(
                    "Installed GTK Themes",
                    ["/usr/share/themes", in_home(".themes"), in_home(".local", "share", "themes")],
                ),
                DirectoryListingCollector(
                    "Installed Icon Themes",
                    ["/usr/share/icons", in_home(".icons"), in_home(".local", "share", "icons")],
                ),
            ],
        ),
        Section(
            "Shell & Environment",
            "Login shell, bash version, environment variables (secrets redacted) and PATH.",
            [
                EnvironmentCollector("Current Shell", ["SHELL"]),
                command("Shell Version", ["bash", "--version"], postprocess=first_line),
                EnvironmentCollector("Environment Variables"),
                EnvironmentCollector("PATH", ["PATH"], separator=":"),
            ],
        ),
        Section(
            "Dotfiles Structure",
            "Layout of the dotfiles repository, ~/.config and ~/bin.",
            [
                DirectoryListingCollector(
                    "Stow Packages (dotfiles directory listing)", [in_home("dotfiles")], include_hidden=True
                ),
                DirectoryListingCollector("Dotfiles Tree Structure", [in_home("dotfiles")], depth=3),
                DirectoryListingCollector("Config Directory Tree", [in_home(".config")], depth=2),
                command("Bin Directory Listing", ["ls", "-lah", in_home("bin")]),
            ],
        ),
        Section(
            "Configuration Files",
            "Content of every text file below ~/.config and ~/bin, binaries and large files by location only.",
            [
                walk("Config: ~/.config/", in_home(".config"), split=True),
                walk("Custom Scripts: ~/bin/", in_home("bin")),
            ],
        ),
        Section(
            "Git Configuration",
            "Global git settings and the git configuration files.",
            [
                command("Git Global Configuration", ["git", "config", "--list", "--global"]),
                file(in_home(".gitconfig")),
                file(in_home(".config", "git", "config")),
            ],
        ),
        Section(
            "SSH Configuration",
            "SSH directory layout, public keys and client config. Private keys and known hosts are withheld.",
            [
                command("SSH Directory Contents", ["ls", "-la", in_home(".ssh")]),
                DirectoryListingCollector("SSH Keys in ~/.ssh/keys/", [in_home(".ssh", "keys")], include_hidden=True),
                walk("SSH Public Keys Content", in_home(".ssh", "keys"), pattern="*.pub"),
                file(in_home(".ssh", "config")),
                LineCountCollector(
                    in_home(".ssh", "known_hosts"),
                    missing_note="No known_hosts file found",
                    policy=policy,
                    noun="Known hosts",
                ),
            ],
        ),
        Section(
            "Network Configuration",
            "Interfaces, routes, NetworkManager devices and connections, DNS resolver.",
            [
                command("Network Interfaces", ["ip", "addr"]),
                command("Routing Table", ["ip", "route"]),
                command("NetworkManager Status", ["nmcli", "device", "status"]),
                command("Active Connections", ["nmcli", "connection", "show", "--active"]),
                file("/etc/resolv.conf"),
            ],
        ),
        Section(
            "Boot & System Logs",
            "The tail of the current boot journal, recent errors and kernel messages.",
            [
                command("Last Boot Journal (last 100 lines)", ["journalctl", "-b", "--no-pager"], tail=100),
                command("Recent Errors", ["journalctl", "-p", "err", "-b", "--no-pager"], tail=50),
                command("Kernel Messages", ["dmesg"], tail=100),
            ],
        ),
        Section(
            "Notes for Future Command Additions",
            "Reference for extending the snapshot with new collectors.",
            [
                StaticTextCollector("Adding Collectors", FUTURE_ADDITIONS_NOTES),
            ],
        ),
    ]
