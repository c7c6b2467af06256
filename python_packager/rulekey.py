"""Cache-key computation for packaging steps.

The key is the SHA-256 of a canonical JSON document (sorted keys, compact
separators, UTF-8) describing everything that determines the package: file
contents by logical destination, the entry point, the packaging style, the
packaging tool's identity, the zip-safe flag and, for self-contained packages,
the interpreter version. Source file *paths* and the order contributors were
visited in never enter the key.
"""

from collections.abc import Mapping
import hashlib
import json
import os
import pathlib
import threading

from python_packager.components import ComponentSet, DestMap
from python_packager.errors import PackagingError
from python_packager.toolchain import PackagingTool, PythonVersion


def compute_hash(document: Mapping[str, object]) -> str:
    """SHA-256 of the canonical JSON serialization of ``document``.

    :param document: JSON-serializable mapping.
    :returns: 64-character hex digest.
    """

    text: str = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _sha256_file(path: pathlib.Path) -> str:
    """Hash a file with SHA-256.

    :param path: File to hash.
    :returns: Hex digest.
    """

    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk: bytes = f.read(1024 * 1024)
            if len(chunk) == 0:
                break
            h.update(chunk)
    return h.hexdigest()


class FileHashCache:
    """Thread-safe content-hash memo keyed by path, size and mtime.

    Directories hash to the digest of their sorted ``(relative path, file
    hash)`` listing.
    """

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._hashes: dict[tuple[str, int, int], str] = {}

    def get(self, path: pathlib.Path) -> str:
        """Return the content hash of ``path``.

        :param path: File or directory.
        :returns: Hex digest.
        :raises PackagingError: If the path does not exist.
        """

        try:
            st = os.stat(path)
        except OSError as e:
            raise PackagingError(f"Cannot hash missing content source: {path}") from e

        key: tuple[str, int, int] = (str(pathlib.Path(path).absolute()), st.st_size, st.st_mtime_ns)
        with self._lock:
            cached: str | None = self._hashes.get(key)
        if cached is not None:
            return cached

        digest: str
        if pathlib.Path(path).is_dir() is True:
            listing: list[list[str]] = []
            for p in sorted(pathlib.Path(path).rglob("*")):
                if p.is_file() is True:
                    listing.append([p.relative_to(path).as_posix(), self.get(p)])
            digest = compute_hash({"directory": listing})
        else:
            digest = _sha256_file(pathlib.Path(path))

        with self._lock:
            self._hashes[key] = digest
        return digest


def _layout(entries: DestMap, hashes: FileHashCache) -> dict[str, str]:
    return {dest.as_posix(): hashes.get(source.path) for dest, source in entries.items()}


def compute_package_key(
    *,
    components: ComponentSet,
    entry_point: str,
    package_style: str,
    hashes: FileHashCache,
    tool: PackagingTool | None = None,
    python_version: PythonVersion | None = None,
    interpreter: pathlib.Path | None = None,
) -> str:
    """Compute the cache key of a packaging step.

    :param components: Merged components.
    :param entry_point: Dotted entry-point module name.
    :param package_style: Packaging style name.
    :param hashes: Content hash cache.
    :param tool: External packaging tool (self-contained styles only).
    :param python_version: Interpreter version (self-contained styles only).
    :param interpreter: Interpreter path baked into in-place launchers.
    :returns: 64-character hex key.
    """

    tool_doc: dict[str, object] | None = None
    if tool is not None:
        tool_doc = {
            "command_prefix": list(tool.command_prefix),
            "inputs": [hashes.get(p) for p in tool.inputs],
            "version": tool.version,
        }

    document: dict[str, object] = {
        "entry_point": entry_point,
        "package_style": package_style,
        "zip_safe": components.is_zip_safe(),
        "modules": _layout(components.modules, hashes),
        "resources": _layout(components.resources, hashes),
        "native_libraries": _layout(components.native_libraries, hashes),
        "bundled_packages": sorted(hashes.get(source.path) for source in components.bundled_packages),
        "tool": tool_doc,
        "python_version": str(python_version) if python_version is not None else None,
        "interpreter": str(interpreter) if interpreter is not None else None,
    }
    return compute_hash(document)
