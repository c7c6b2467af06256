"""Packaging error taxonomy.

Every error raised by python-packager derives from :class:`PackagingError`.
None of them are recovered locally; they propagate as build-step failures.
"""

import pathlib
from collections.abc import Sequence


class PackagingError(RuntimeError):
    """Base class for all packaging failures."""


class PackagingConflict(PackagingError):
    """Two contributors map the same destination path to different content.

    :ivar kind: Component kind (``module``, ``resource``, ``native library``).
    :ivar destination: Conflicting destination path.
    :ivar first: Source seen first.
    :ivar second: Source seen second.
    """

    def __init__(self, *, owner: str | None, kind: str, destination: object, first: object, second: object) -> None:
        self.owner: str | None = owner
        self.kind: str = kind
        self.destination: object = destination
        self.first: object = first
        self.second: object = second
        prefix: str = f"{owner}: " if owner is not None else ""
        super().__init__(
            f"{prefix}found duplicate entries for {kind} {destination} when creating python package "
            f"({first} != {second})"
        )


class InvalidLayoutException(PackagingError):
    """Two link-tree entries would need different targets at one destination."""


class UnsupportedLayoutForPlatform(PackagingError):
    """The in-place layout cannot express the target platform's native linking."""


class ToolResolutionError(PackagingError):
    """An interpreter or packaging tool could not be located.

    :ivar candidates: Names/paths that were tried, in order.
    """

    def __init__(self, message: str, *, candidates: Sequence[str]) -> None:
        self.candidates: tuple[str, ...] = tuple(candidates)
        super().__init__(f"{message} (tried: {', '.join(self.candidates)})")


class ToolInvocationFailure(PackagingError):
    """The external packaging tool exited with a nonzero code.

    :ivar command: Command line that was executed.
    :ivar returncode: Process exit code.
    :ivar stdout: Captured standard output.
    :ivar stderr: Captured standard error.
    """

    def __init__(
        self,
        *,
        owner: str | None,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.owner: str | None = owner
        self.command: tuple[str, ...] = tuple(command)
        self.returncode: int = returncode
        self.stdout: str = stdout
        self.stderr: str = stderr
        prefix: str = f"{owner}: " if owner is not None else ""
        super().__init__(
            f"{prefix}packaging tool failed (exit={returncode}): {' '.join(self.command)}\n{stderr}{stdout}"
        )


class VersionProbeParseError(PackagingError):
    """The interpreter version probe produced output of the wrong shape.

    :ivar output: Raw captured output.
    """

    def __init__(self, message: str, *, output: str) -> None:
        self.output: str = output
        super().__init__(message)


class ArchiveExpansionError(PackagingError):
    """An archive of module sources could not be extracted.

    :ivar archive: Path to the archive.
    """

    def __init__(self, message: str, *, archive: pathlib.Path) -> None:
        self.archive: pathlib.Path = archive
        super().__init__(f"{message}: {archive}")


class ConfigError(PackagingError):
    """The packaging configuration file is malformed."""


class DescriptionError(PackagingError):
    """A package description is malformed or violates the entry-point rule."""
