"""Toolchain resolution helpers.

This module locates the Python interpreter a package is built for, identifies
its version with a small probe script, and resolves the external packaging
tool:

- ``resolve_interpreter`` searches an explicit path, then a fixed list of
  interpreter names on ``PATH``.
- ``probe_python_version`` runs the interpreter with a script on stdin and
  parses the ``<Impl> <Major> <Minor> <Patch>`` line it prints.
- ``PythonVersionCache`` memoizes probe results per interpreter file.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import os
import pathlib
import re
import shutil
import subprocess
import textwrap
import threading

from python_packager import __version__
from python_packager.errors import ToolResolutionError, VersionProbeParseError

PYTHON_INTERPRETER_NAMES: tuple[str, ...] = ("python3", "python")

DEFAULT_BUILDER_PATH: pathlib.Path = pathlib.Path(__file__).resolve().parent / "builder.py"

_VERSION_PROBE: str = textwrap.dedent(
    """
    import sys

    if hasattr(sys, 'pypy_version_info'):
        subversion = 'PyPy'
    elif sys.platform.startswith('java'):
        subversion = 'Jython'
    else:
        subversion = 'CPython'

    print('%s %s %s %s' % (subversion, sys.version_info[0], sys.version_info[1], sys.version_info[2]))
    """
).lstrip()

_ANSI_RE: re.Pattern[str] = re.compile(r"\x1b\[[;\d]*m")


@dataclass(frozen=True, slots=True)
class PythonVersion:
    """Interpreter identity.

    :ivar interpreter_name: Implementation name (``CPython``, ``PyPy``, ...).
    :ivar version_string: Dotted ``X.Y.Z`` version.
    """

    interpreter_name: str
    version_string: str

    def pex_compatibility_version(self) -> str:
        """Space-joined identity expected by the packaging tool (``CPython 3 12 1``)."""

        return f"{self.interpreter_name} {self.version_string.replace('.', ' ')}"

    def __str__(self) -> str:
        return f"{self.interpreter_name} {self.version_string}"


@dataclass(frozen=True, slots=True)
class PythonEnvironment:
    """A resolved interpreter and its version.

    :ivar path: Absolute interpreter path.
    :ivar version: Interpreter version identity.
    """

    path: pathlib.Path
    version: PythonVersion


@dataclass(frozen=True, slots=True)
class PackagingTool:
    """External packaging tool.

    :ivar command_prefix: Arguments that invoke the tool.
    :ivar inputs: Files whose content identifies the tool (for cache keys).
    :ivar version: Optional version label.
    """

    command_prefix: tuple[str, ...]
    inputs: tuple[pathlib.Path, ...]
    version: str | None = None


def _is_executable_file(path: pathlib.Path) -> bool:
    """Check that ``path`` is an executable regular file."""

    return path.is_file() is True and os.access(path, os.X_OK) is True


def resolve_interpreter(configured: str | None, *, search_path: str | None = None) -> pathlib.Path:
    """Resolve the Python interpreter to package for.

    An explicitly configured interpreter is used when it is an executable
    file; a bare name is looked up on ``PATH``. Without configuration, the
    first of :data:`PYTHON_INTERPRETER_NAMES` found on ``PATH`` wins.

    :param configured: Optional configured interpreter path or name.
    :param search_path: Optional ``PATH`` override.
    :returns: Absolute interpreter path.
    :raises ToolResolutionError: If no usable interpreter is found.
    """

    names: tuple[str, ...] = PYTHON_INTERPRETER_NAMES
    if configured is not None:
        candidate: pathlib.Path = pathlib.Path(configured)
        if _is_executable_file(candidate) is True:
            return candidate.absolute()
        if candidate.is_absolute() is True:
            raise ToolResolutionError("Not a python executable", candidates=[configured])
        names = (configured,)

    for name in names:
        found: str | None = shutil.which(name, path=search_path)
        if found is not None:
            return pathlib.Path(found).absolute()

    if configured is not None:
        raise ToolResolutionError("Not a python executable", candidates=list(names))
    raise ToolResolutionError("No python interpreter found on PATH", candidates=list(names))


def parse_python_version(
    python_path: pathlib.Path,
    *,
    returncode: int,
    stdout: str,
    stderr: str,
) -> PythonVersion:
    """Parse the output of the version probe.

    :param python_path: Interpreter that was probed (for errors).
    :param returncode: Probe exit code.
    :param stdout: Captured standard output.
    :param stderr: Captured standard error.
    :returns: Parsed version identity.
    :raises VersionProbeParseError: On a nonzero exit or a malformed line.
    """

    if returncode != 0:
        raise VersionProbeParseError(
            f"`{python_path} -` failed (exit={returncode}): {stderr.strip()}",
            output=stderr + stdout,
        )

    combined: str = (stderr.strip() + _ANSI_RE.sub("", stdout.strip())).strip()
    first_line: str = combined.splitlines()[0] if len(combined) > 0 else ""
    tokens: list[str] = first_line.split(" ")
    if len(tokens) != 4:
        raise VersionProbeParseError(
            f"`{python_path} -` returned an invalid version string {combined!r}",
            output=combined,
        )
    return PythonVersion(interpreter_name=tokens[0], version_string=".".join(tokens[1:4]))


def probe_python_version(python_path: pathlib.Path, *, timeout: float | None = None) -> PythonVersion:
    """Run the version probe against an interpreter.

    :param python_path: Interpreter to probe.
    :param timeout: Optional timeout in seconds.
    :returns: Parsed version identity.
    :raises ToolResolutionError: If the interpreter cannot be executed.
    :raises VersionProbeParseError: If the output is malformed.
    """

    try:
        proc = subprocess.run(
            [str(python_path), "-"],
            input=_VERSION_PROBE,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except OSError as e:
        raise ToolResolutionError(f"Could not run interpreter ({e})", candidates=[str(python_path)]) from e
    return parse_python_version(
        python_path,
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


def file_identity(path: pathlib.Path) -> tuple[str, int, int, int, int]:
    """Filesystem identity of a file (follows symlinks).

    :param path: File path.
    :returns: ``(resolved path, device, inode, size, mtime_ns)``.
    """

    resolved: pathlib.Path = path.resolve()
    st = os.stat(resolved)
    return (str(resolved), st.st_dev, st.st_ino, st.st_size, st.st_mtime_ns)


class PythonVersionCache:
    """Thread-safe memo of interpreter versions keyed by file identity.

    A miss runs the probe exactly once per key, even when several threads ask
    for the same interpreter at the same time.
    """

    def __init__(self, probe: Callable[[pathlib.Path], PythonVersion] = probe_python_version) -> None:
        self._probe: Callable[[pathlib.Path], PythonVersion] = probe
        self._lock: threading.Lock = threading.Lock()
        self._key_locks: dict[tuple, threading.Lock] = {}
        self._values: dict[tuple, PythonVersion] = {}

    def get(self, python_path: pathlib.Path) -> PythonVersion:
        """Return the version of ``python_path``, probing it on first use.

        :param python_path: Interpreter path.
        :returns: Version identity.
        """

        key: tuple = file_identity(python_path)
        with self._lock:
            cached: PythonVersion | None = self._values.get(key)
            if cached is not None:
                return cached
            key_lock: threading.Lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                cached = self._values.get(key)
            if cached is not None:
                return cached
            version: PythonVersion = self._probe(python_path)
            with self._lock:
                self._values[key] = version
                self._key_locks.pop(key, None)
            return version

    def environment(self, python_path: pathlib.Path) -> PythonEnvironment:
        """Bundle ``python_path`` with its version."""

        return PythonEnvironment(path=python_path, version=self.get(python_path))


def resolve_packaging_tool(
    configured: str | None,
    *,
    interpreter: pathlib.Path,
    search_path: str | None = None,
) -> PackagingTool:
    """Resolve the external packaging tool.

    Without configuration, the bundled builder script runs under the target
    interpreter (``<python> -S builder.py``).

    :param configured: Optional tool path or name.
    :param interpreter: Resolved target interpreter.
    :param search_path: Optional ``PATH`` override.
    :returns: Packaging tool.
    :raises ToolResolutionError: If a configured tool cannot be found.
    """

    if configured is None:
        return PackagingTool(
            command_prefix=(str(interpreter), "-S", str(DEFAULT_BUILDER_PATH)),
            inputs=(DEFAULT_BUILDER_PATH,),
            version=__version__,
        )

    candidates: list[str] = [configured]
    candidate: pathlib.Path = pathlib.Path(configured)
    if _is_executable_file(candidate) is True:
        tool_path: pathlib.Path = candidate.absolute()
        return PackagingTool(command_prefix=(str(tool_path),), inputs=(tool_path,))

    if candidate.is_absolute() is False:
        found: str | None = shutil.which(configured, path=search_path)
        if found is not None:
            found_path: pathlib.Path = pathlib.Path(found).absolute()
            return PackagingTool(command_prefix=(str(found_path),), inputs=(found_path,))
        candidates.append(f"PATH:{configured}")

    raise ToolResolutionError("Packaging tool is not an executable file", candidates=candidates)


def with_build_args(tool: PackagingTool, build_args: Sequence[str]) -> PackagingTool:
    """Append extra arguments to a tool's command prefix."""

    if len(build_args) == 0:
        return tool
    return PackagingTool(
        command_prefix=(*tool.command_prefix, *build_args),
        inputs=tool.inputs,
        version=tool.version,
    )
