from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class Output:
    """Base class to implement snapshot artifact writers with.

    The artifact is a single append-only text stream with one writer. New writers must
    sub-class this class.
    """

    path: Path | None = None

    def init(self) -> None:
        """Create or truncate the artifact."""

    def write_text(self, text: str) -> None:
        """Append ``text`` to the artifact.

        Args:
            text: The rendered text to append.
        """
        raise NotImplementedError

    def write_lines(self, lines: list[str]) -> None:
        self.write_text("".join(f"{line}\n" for line in lines))

    def size(self) -> int:
        """Return the size of the finished artifact in bytes."""
        raise NotImplementedError

    def close(self) -> None:
        """Flush and close the artifact."""
        raise NotImplementedError
