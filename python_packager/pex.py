"""External packaging tool invocation.

One invocation has two phases: the component set is serialized into a JSON
manifest (expanding source archives on the way), then the tool runs with the
manifest on its standard input. The manifest never goes on the command line,
since large packages would exceed argument length limits.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import enum
import json
import logging
import pathlib
import subprocess
import time

from python_packager.archives import expand_source_archives
from python_packager.components import ComponentSet, DestMap
from python_packager.errors import ToolInvocationFailure, ToolResolutionError
from python_packager.toolchain import PythonEnvironment


class PexStyle(enum.Enum):
    """Shape of a self-contained package."""

    # A directory runnable as `python <dir>`.
    DIRECTORY = "directory"
    # A single executable zip file containing the directory above.
    FILE = "file"


def _path_strings(entries: DestMap) -> dict[pathlib.PurePosixPath, pathlib.Path]:
    return {dest: source.path.absolute() for dest, source in entries.items()}


def _string_map(entries: Mapping[pathlib.PurePosixPath, pathlib.Path]) -> dict[str, str]:
    return {dest.as_posix(): str(path) for dest, path in entries.items()}


@dataclass(frozen=True, slots=True)
class PexInvocation:
    """A single run of the external packaging tool.

    :ivar command_prefix: Arguments that invoke the tool.
    :ivar python: Target interpreter and version.
    :ivar destination: Where the tool writes the package.
    :ivar entry_point: Dotted name of the module to run.
    :ivar components: Merged components to package.
    :ivar style: Directory or single-file output.
    :ivar temp_dir: Private scratch directory for archive expansion.
    :ivar environment: Optional process environment (defaults to the caller's).
    :ivar owner: Build unit name for error messages.
    """

    command_prefix: tuple[str, ...]
    python: PythonEnvironment
    destination: pathlib.Path
    entry_point: str
    components: ComponentSet
    style: PexStyle
    temp_dir: pathlib.Path
    environment: Mapping[str, str] | None = None
    owner: str | None = None

    def command(self) -> list[str]:
        """Build the tool command line."""

        cmd: list[str] = [*self.command_prefix]
        cmd.extend(["--python", str(self.python.path)])
        cmd.extend(["--python-version", self.python.version.pex_compatibility_version()])
        cmd.extend(["--entry-point", self.entry_point])
        if self.components.is_zip_safe() is False:
            cmd.append("--no-zip-safe")
        if self.style is PexStyle.DIRECTORY:
            cmd.append("--directory")
        cmd.append(str(self.destination))
        return cmd

    def manifest(self) -> dict[str, object]:
        """Build the manifest document.

        Module entries that are source archives are expanded into
        :attr:`temp_dir` first.

        :returns: ``{"modules", "resources", "nativeLibraries", "bundledPackages"}``.
        """

        modules: dict[pathlib.PurePosixPath, pathlib.Path] = expand_source_archives(
            _path_strings(self.components.modules),
            work_dir=self.temp_dir,
            owner=self.owner,
        )
        bundled: list[str] = sorted(str(source.path.absolute()) for source in self.components.bundled_packages)
        return {
            "modules": _string_map(modules),
            "resources": _string_map(_path_strings(self.components.resources)),
            "nativeLibraries": _string_map(_path_strings(self.components.native_libraries)),
            "bundledPackages": bundled,
        }

    def stdin(self) -> str:
        """Serialize the manifest for the tool's standard input."""

        return json.dumps(self.manifest())

    def run(self, *, logger: logging.Logger | None = None, timeout: float | None = None) -> None:
        """Run the tool and wait for it.

        The child is killed if waiting is interrupted (timeout, cancellation).
        Nothing is retried.

        :param logger: Optional logger for progress output.
        :param timeout: Optional timeout in seconds.
        :raises ToolInvocationFailure: If the tool exits nonzero or times out.
        :raises ToolResolutionError: If the tool cannot be started.
        """

        if logger is None:
            logger = logging.getLogger("python_packager")

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        payload: str = self.stdin()
        cmd: list[str] = self.command()
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"python-packager: running packaging tool: {' '.join(cmd)}")
            logger.debug(f"python-packager: manifest size={len(payload)} bytes")

        t0: float = time.perf_counter()
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=dict(self.environment) if self.environment is not None else None,
            )
        except OSError as e:
            raise ToolResolutionError(f"Could not start packaging tool ({e})", candidates=[cmd[0]]) from e

        try:
            stdout, stderr = proc.communicate(input=payload, timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
            raise ToolInvocationFailure(
                owner=self.owner,
                command=cmd,
                returncode=proc.returncode,
                stdout=stdout,
                stderr=f"timed out after {timeout}s\n{stderr}",
            ) from None
        except BaseException:
            proc.kill()
            proc.wait()
            raise
        t1: float = time.perf_counter()

        if proc.returncode != 0:
            raise ToolInvocationFailure(
                owner=self.owner,
                command=cmd,
                returncode=proc.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        logger.info(f"python-packager: packaging tool finished in {t1 - t0:.2f}s")
