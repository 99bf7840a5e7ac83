from __future__ import annotations

from typing import TYPE_CHECKING, TextIO

from sysnap.outputs.base import Output

if TYPE_CHECKING:
    from pathlib import Path


class TextFileOutput(Output):
    def __init__(self, path: Path):
        self.path = path
        self.fh: TextIO | None = None

    def init(self) -> None:
        self.fh = self.path.open("w", encoding="utf-8", errors="replace", newline="\n")

    def write_text(self, text: str) -> None:
        self.fh.write(text)

    def size(self) -> int:
        return self.path.stat().st_size

    def close(self) -> None:
        if self.fh is not None:
            self.fh.close()
            self.fh = None
