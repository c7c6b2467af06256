"""Default packaging tool.

This script is what python-packager runs when no external tool is configured
(``<python> -S builder.py ...``), so it only uses the standard library and
never imports ``python_packager``:

- It reads the JSON manifest from stdin and stages every module and resource at
  its destination path, native libraries under ``.native/`` and bundled
  third-party packages under ``.deps/``.
- It writes a ``__main__.py`` bootstrap that validates the interpreter, sets up
  ``sys.path`` and runs the entry point.
- With ``--directory`` the staged tree is the package; otherwise it is zipped
  into one executable file behind a ``#!<python>`` line.
"""

from dataclasses import dataclass
import argparse
import hashlib
import json
import logging
import os
import pathlib
import shutil
import sys
import tempfile
import textwrap
import time
import zipfile

NATIVE_DIR: str = ".native"
DEPS_DIR: str = ".deps"
MAIN_MODULE: str = "__main__.py"

# Fixed timestamp for reproducible archives (the earliest zip supports).
_ZIP_EPOCH: tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)

_MANIFEST_MAPS: tuple[str, ...] = ("modules", "resources", "nativeLibraries")

logger: logging.Logger = logging.getLogger("python_packager.builder")


class BuildError(RuntimeError):
    """Raised when building a package fails."""


@dataclass(frozen=True, slots=True)
class Manifest:
    """Parsed stdin manifest.

    :ivar modules: Destination -> absolute source path.
    :ivar resources: Destination -> absolute source path.
    :ivar native_libraries: Destination -> absolute source path.
    :ivar bundled_packages: Absolute paths of prebuilt distributions.
    """

    modules: dict[str, str]
    resources: dict[str, str]
    native_libraries: dict[str, str]
    bundled_packages: list[str]


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Command-line options.

    :ivar python: Interpreter for the shebang line.
    :ivar python_version: Space-joined ``<Impl> <Major> <Minor> <Patch>``.
    :ivar entry_point: Dotted module name to run.
    :ivar zip_safe: Whether the package may run from inside the zip.
    :ivar directory: Write a directory instead of a single file.
    :ivar destination: Output path.
    :ivar compresslevel: Deflate level for single-file output.
    """

    python: str
    python_version: str
    entry_point: str
    zip_safe: bool
    directory: bool
    destination: pathlib.Path
    compresslevel: int


def _string_map(data: dict, key: str) -> dict[str, str]:
    value: object = data.get(key, {})
    if not isinstance(value, dict):
        raise BuildError(f"Manifest key {key!r} must be an object")
    for dest, source in value.items():
        if not isinstance(dest, str) or not isinstance(source, str):
            raise BuildError(f"Manifest key {key!r} must map strings to strings")
    return dict(value)


def parse_manifest(text: str) -> Manifest:
    """Parse the manifest document.

    :param text: JSON text read from stdin.
    :returns: Parsed manifest.
    :raises BuildError: If the document is malformed.
    """

    try:
        data: object = json.loads(text)
    except json.JSONDecodeError as e:
        raise BuildError(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise BuildError("Manifest root must be an object")

    bundled: object = data.get("bundledPackages", [])
    if not isinstance(bundled, list) or any(not isinstance(p, str) for p in bundled):
        raise BuildError("Manifest key 'bundledPackages' must be a list of strings")

    maps: list[dict[str, str]] = [_string_map(data, key) for key in _MANIFEST_MAPS]
    return Manifest(
        modules=maps[0],
        resources=maps[1],
        native_libraries=maps[2],
        bundled_packages=list(bundled),
    )


def _validate_compresslevel(compresslevel: int) -> None:
    """Validate a zlib compression level.

    :param compresslevel: Compression level.
    :raises BuildError: If the level is out of range.
    """

    if compresslevel < 0 or compresslevel > 9:
        raise BuildError(f"Invalid compresslevel {compresslevel}; expected 0..9")


def parse_args(argv: list[str] | None = None) -> tuple[BuildOptions, int]:
    """Parse the tool command line.

    :param argv: Optional argv list (excluding program name).
    :returns: ``(options, verbosity)``.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="builder",
        description="Build a self-contained Python package from a manifest on stdin.",
    )
    parser.add_argument("--python", required=True, help="Interpreter the package runs under.")
    parser.add_argument(
        "--python-version",
        required=True,
        help="Interpreter identity as '<Impl> <Major> <Minor> <Patch>'.",
    )
    parser.add_argument("--entry-point", required=True, help="Dotted module name to run.")
    parser.add_argument(
        "--no-zip-safe",
        action="store_true",
        help="Always extract the package before running it.",
    )
    parser.add_argument(
        "--directory",
        action="store_true",
        help="Write a directory runnable as `python <dir>` instead of a single file.",
    )
    parser.add_argument(
        "--compresslevel",
        type=int,
        default=6,
        help="Deflate compression level for single-file output (0..9).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging.",
    )
    parser.add_argument("destination", type=pathlib.Path, help="Output path.")

    ns = parser.parse_args(argv)
    if len(ns.python_version.split(" ")) != 4:
        parser.error(f"--python-version must have 4 space-separated fields, got {ns.python_version!r}")
    options: BuildOptions = BuildOptions(
        python=ns.python,
        python_version=ns.python_version,
        entry_point=ns.entry_point,
        zip_safe=ns.no_zip_safe is False,
        directory=ns.directory,
        destination=ns.destination,
        compresslevel=ns.compresslevel,
    )
    return (options, ns.verbose)


def _safe_dest(dest: str) -> pathlib.PurePosixPath:
    """Validate a destination path from the manifest.

    :param dest: Destination relative to the package root.
    :returns: Destination path.
    :raises BuildError: If the destination would escape the package root.
    """

    if "\\" in dest:
        raise BuildError(f"Refusing backslash destination: {dest!r}")
    p: pathlib.PurePosixPath = pathlib.PurePosixPath(dest)
    if p.is_absolute() is True:
        raise BuildError(f"Refusing absolute destination: {dest!r}")
    if ".." in p.parts or len(p.parts) == 0:
        raise BuildError(f"Refusing destination outside the package: {dest!r}")
    return p


def _copy_tree_all(*, src: pathlib.Path, dst: pathlib.Path) -> None:
    """Copy a directory tree without filtering.

    :param src: Source directory.
    :param dst: Destination directory.
    """

    for p in src.rglob("*"):
        rel: pathlib.Path = p.relative_to(src)
        if p.is_dir() is True:
            (dst / rel).mkdir(parents=True, exist_ok=True)
            continue
        if p.is_file() is True:
            target_path: pathlib.Path = dst / rel
            target_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(p, target_path)


def _copy_item(*, src: pathlib.Path, dst: pathlib.Path) -> None:
    """Copy a file or directory to a destination.

    :param src: Source path.
    :param dst: Destination path.
    """

    if src.is_dir() is True:
        shutil.copytree(src, dst, dirs_exist_ok=True)
        return
    if src.is_file() is True:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        return


def _safe_extract_zipfile(*, zip_path: pathlib.Path, dest_dir: pathlib.Path) -> None:
    """Safely extract a zip file on disk into a destination directory.

    :param zip_path: Zip file path.
    :param dest_dir: Destination directory.
    :raises BuildError: If a member would escape ``dest_dir`` or the zip is bad.
    """

    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(zip_path, mode="r") as zf:
            for info in zf.infolist():
                name: str = info.filename
                if ":" in name:
                    raise BuildError(f"Refusing to extract drive-like path {name!r} from {zip_path}")
                p: pathlib.PurePosixPath = _safe_dest(name.rstrip("/"))
                out_path: pathlib.Path = dest_dir.joinpath(*p.parts)
                if info.is_dir() is True:
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, mode="r") as src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
    except zipfile.BadZipFile as e:
        raise BuildError(f"Bad zip archive: {zip_path}") from e


def _install_wheel_file(*, wheel_path: pathlib.Path, deps_dir: pathlib.Path) -> None:
    """Install a wheel by extracting it into ``deps_dir``.

    This is not a full wheel "installer", but it handles the common cases well:
    root packages + ``.dist-info`` and the ``.data/purelib|platlib`` relocation.

    :param wheel_path: Path to ``.whl`` file.
    :param deps_dir: Destination directory.
    :raises BuildError: If extraction fails.
    """

    with tempfile.TemporaryDirectory(prefix="python_packager_wheel_") as td:
        tmp_root: pathlib.Path = pathlib.Path(td)
        _safe_extract_zipfile(zip_path=wheel_path, dest_dir=tmp_root)

        data_dirs: list[pathlib.Path] = []
        for child in sorted(tmp_root.iterdir()):
            if child.name.endswith(".data") is True and child.is_dir() is True:
                data_dirs.append(child)
                continue
            _copy_item(src=child, dst=deps_dir / child.name)

        for data_dir in data_dirs:
            purelib: pathlib.Path = data_dir / "purelib"
            platlib: pathlib.Path = data_dir / "platlib"
            if purelib.exists() is True:
                _copy_tree_all(src=purelib, dst=deps_dir)
            if platlib.exists() is True:
                _copy_tree_all(src=platlib, dst=deps_dir)


def _install_bundled_package(*, path: pathlib.Path, deps_dir: pathlib.Path) -> None:
    """Merge one prebuilt distribution into ``deps_dir``.

    :param path: Wheel, egg/zip archive or unpacked directory.
    :param deps_dir: Destination directory.
    :raises BuildError: If the distribution kind is not supported.
    """

    if path.is_dir() is True:
        _copy_tree_all(src=path, dst=deps_dir)
        return
    if path.is_file() is False:
        raise BuildError(f"Bundled package not found: {path}")
    if path.suffix == ".whl":
        _install_wheel_file(wheel_path=path, deps_dir=deps_dir)
        return
    if path.suffix in {".egg", ".zip"}:
        _safe_extract_zipfile(zip_path=path, dest_dir=deps_dir)
        return
    raise BuildError(f"Unsupported bundled package (expected .whl, .egg, .zip or a directory): {path}")


def _stage_file(*, source: str, root: pathlib.Path, dest: pathlib.PurePosixPath) -> None:
    src: pathlib.Path = pathlib.Path(source)
    if src.is_file() is False:
        raise BuildError(f"Source file not found for {dest.as_posix()}: {source}")
    out_path: pathlib.Path = root.joinpath(*dest.parts)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, out_path)


def _has_native_code(root: pathlib.Path) -> bool:
    """Check whether a staged tree contains compiled extension modules."""

    for p in root.rglob("*"):
        name: str = p.name.lower()
        if name.endswith((".so", ".pyd", ".dylib")) is True or ".so." in name:
            return True
    return False


def stage(manifest: Manifest, *, root: pathlib.Path) -> list[str]:
    """Lay out the package contents under ``root``.

    :param manifest: Parsed manifest.
    :param root: Empty staging directory.
    :returns: Staged native library paths relative to ``root`` (sorted).
    :raises BuildError: If an entry is invalid or missing.
    """

    for kind, entries in (("module", manifest.modules), ("resource", manifest.resources)):
        for dest_text in sorted(entries):
            dest: pathlib.PurePosixPath = _safe_dest(dest_text)
            if dest.as_posix() == MAIN_MODULE:
                raise BuildError(f"{kind} {MAIN_MODULE} is reserved for the package bootstrap")
            if dest.parts[0] in {NATIVE_DIR, DEPS_DIR}:
                raise BuildError(f"{kind} {dest_text} uses the reserved directory {dest.parts[0]}")
            _stage_file(source=entries[dest_text], root=root, dest=dest)

    native: list[str] = []
    for dest_text in sorted(manifest.native_libraries):
        dest = pathlib.PurePosixPath(NATIVE_DIR) / _safe_dest(dest_text)
        _stage_file(source=manifest.native_libraries[dest_text], root=root, dest=dest)
        native.append(dest.as_posix())

    deps_dir: pathlib.Path = root / DEPS_DIR
    for bundled in sorted(manifest.bundled_packages):
        deps_dir.mkdir(parents=True, exist_ok=True)
        _install_bundled_package(path=pathlib.Path(bundled), deps_dir=deps_dir)
    return native


def render_bootstrap(
    *,
    entry_point: str,
    python_version: str,
    zip_safe: bool,
    native_libraries: list[str],
) -> str:
    """Render the package ``__main__.py``.

    :param entry_point: Dotted module name to run.
    :param python_version: Space-joined interpreter identity.
    :param zip_safe: Whether the package may run from inside its zip.
    :param native_libraries: Native library paths relative to the package root.
    :returns: Bootstrap source.
    """

    text: str = _BOOTSTRAP_TEMPLATE
    text = text.replace("__PYPKG_ENTRY_POINT__", repr(entry_point))
    text = text.replace("__PYPKG_PYTHON_VERSION__", repr(python_version))
    text = text.replace("__PYPKG_ZIP_SAFE__", "True" if zip_safe is True else "False")
    text = text.replace("__PYPKG_NATIVE_LIBRARIES__", repr(native_libraries))
    return text


def _write_zip(*, root: pathlib.Path, out_path: pathlib.Path, shebang: str, compresslevel: int) -> None:
    """Zip a staged tree into an executable file.

    Entries are sorted and carry a fixed timestamp, so identical trees give
    identical bytes.

    :param root: Staged package root.
    :param out_path: Output file.
    :param shebang: Interpreter for the ``#!`` line.
    :param compresslevel: Deflate compression level.
    """

    paths: list[pathlib.Path] = [p for p in root.rglob("*") if p.is_file() is True]
    with open(out_path, "wb") as f:
        f.write(f"#!{shebang}\n".encode("utf-8"))
        with zipfile.ZipFile(f, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel) as zf:
            for p in sorted(paths):
                arcname: str = str(p.relative_to(root)).replace(os.sep, "/")
                info: zipfile.ZipInfo = zipfile.ZipInfo(arcname, date_time=_ZIP_EPOCH)
                info.compress_type = zipfile.ZIP_DEFLATED
                mode: int = 0o755 if os.access(p, os.X_OK) is True else 0o644
                info.external_attr = (0o100000 | mode) << 16
                zf.writestr(info, p.read_bytes(), compresslevel=compresslevel)
    out_path.chmod(0o755)


def build(options: BuildOptions, manifest: Manifest) -> pathlib.Path:
    """Build a package.

    :param options: Parsed command line.
    :param manifest: Parsed manifest.
    :returns: Output path.
    :raises BuildError: If building fails.
    """

    _validate_compresslevel(options.compresslevel)
    t0: float = time.perf_counter()
    dest: pathlib.Path = options.destination
    dest.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix="python_packager_build_", dir=dest.parent) as td:
        root: pathlib.Path = pathlib.Path(td) / "root"
        root.mkdir()
        native: list[str] = stage(manifest, root=root)
        zip_safe: bool = options.zip_safe
        if zip_safe is True and _has_native_code(root) is True:
            logger.debug("builder: package contains native code; it will be extracted at runtime")
            zip_safe = False
        bootstrap: str = render_bootstrap(
            entry_point=options.entry_point,
            python_version=options.python_version,
            zip_safe=zip_safe,
            native_libraries=native,
        )
        (root / MAIN_MODULE).write_text(bootstrap, encoding="utf-8")
        t1: float = time.perf_counter()
        logger.info(f"builder: staged package in {t1 - t0:.2f}s")

        if dest.is_dir() is True and dest.is_symlink() is False:
            shutil.rmtree(dest)
        elif dest.exists() is True or dest.is_symlink() is True:
            dest.unlink()

        if options.directory is True:
            os.replace(root, dest)
        else:
            _write_zip(root=root, out_path=dest, shebang=options.python, compresslevel=options.compresslevel)

    t2: float = time.perf_counter()
    logger.info(f"builder: wrote {dest} in {t2 - t0:.2f}s")
    return dest


def main(argv: list[str] | None = None) -> int:
    """Run the builder.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    options, verbose = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if verbose >= 1 else logging.WARNING,
        format="%(message)s",
        stream=sys.stderr,
    )
    try:
        manifest: Manifest = parse_manifest(sys.stdin.read())
        build(options, manifest)
    except (BuildError, OSError) as e:
        sys.stderr.write(f"builder: error: {e}\n")
        return 1
    return 0


_BOOTSTRAP_TEMPLATE: str = textwrap.dedent(
    r'''
    # This file was generated by python-packager. It runs the packaged entry point.

    import hashlib
    import os
    import pathlib
    import platform
    import runpy
    import shutil
    import sys
    import tempfile
    import zipfile

    _ENTRY_POINT: str = __PYPKG_ENTRY_POINT__
    _PYTHON_VERSION: str = __PYPKG_PYTHON_VERSION__
    _ZIP_SAFE: bool = __PYPKG_ZIP_SAFE__
    _NATIVE_LIBRARIES: list[str] = __PYPKG_NATIVE_LIBRARIES__
    _DEPS_DIR: str = ".deps"


    def _runtime_error(message: str) -> None:
        """Exit with a message.

        :param message: Error message.
        """

        sys.stderr.write(message)
        if message.endswith("\n") is False:
            sys.stderr.write("\n")
        raise SystemExit(2)


    def _check_runtime_compat() -> None:
        """Validate that the running interpreter matches the package."""

        expected: list[str] = _PYTHON_VERSION.split(" ")
        actual_impl: str = platform.python_implementation()
        if actual_impl != expected[0]:
            _runtime_error(
                "Python implementation mismatch for this package.\n"
                f"Expected: {expected[0]}\n"
                f"Actual:   {actual_impl}\n"
            )
        actual_py: str = f"{sys.version_info.major}.{sys.version_info.minor}"
        expected_py: str = f"{expected[1]}.{expected[2]}"
        if actual_py != expected_py:
            _runtime_error(
                "Python version mismatch for this package.\n"
                f"Expected: {expected_py}\n"
                f"Actual:   {actual_py}\n"
            )


    def _package_path() -> pathlib.Path:
        """Return the package file or directory being run."""

        return pathlib.Path(os.path.abspath(os.path.dirname(__file__)))


    def _cache_dir(archive: pathlib.Path) -> pathlib.Path:
        """Return the extraction directory for ``archive``, keyed by its content."""

        h = hashlib.sha256()
        with open(archive, "rb") as f:
            while True:
                chunk: bytes = f.read(1024 * 1024)
                if len(chunk) == 0:
                    break
                h.update(chunk)

        override: str | None = os.environ.get("PYTHON_PACKAGER_CACHE_DIR")
        if override is not None and len(override) > 0:
            base: pathlib.Path = pathlib.Path(override)
        else:
            base = pathlib.Path(tempfile.gettempdir()) / "python_packager_cache"
        return base / h.hexdigest()


    def _ensure_extracted(archive: pathlib.Path) -> pathlib.Path:
        """Ensure the package is extracted to disk.

        :param archive: Package file.
        :returns: Extraction root directory.
        """

        root: pathlib.Path = _cache_dir(archive)
        marker: pathlib.Path = root / ".extracted"
        if marker.is_file() is True:
            return root

        root.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive, mode="r") as zf:
            for info in zf.infolist():
                p = pathlib.PurePosixPath(info.filename)
                if p.is_absolute() is True or ".." in p.parts:
                    _runtime_error(f"Refusing to extract path outside the package: {info.filename!r}")
                out_path: pathlib.Path = root.joinpath(*p.parts)
                if info.is_dir() is True:
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, mode="r") as src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                mode: int = (info.external_attr >> 16) & 0o777
                if mode != 0:
                    os.chmod(out_path, mode)
        marker.write_text("ok\n", encoding="utf-8")
        return root


    def _preload_native_libraries(root: pathlib.Path) -> None:
        """Load packaged native libraries globally before any import needs them.

        Libraries that depend on each other are retried until no more progress
        is made.
        """

        if len(_NATIVE_LIBRARIES) == 0:
            return

        import ctypes

        mode: int = getattr(os, "RTLD_GLOBAL", 0) | getattr(os, "RTLD_NOW", 0)
        pending: list[str] = list(_NATIVE_LIBRARIES)
        errors: dict[str, str] = {}
        while len(pending) > 0:
            next_pending: list[str] = []
            for rel in pending:
                try:
                    ctypes.CDLL(str(root / rel), mode=mode)
                except OSError as e:
                    errors[rel] = str(e)
                    next_pending.append(rel)
            if len(next_pending) == len(pending):
                lines: list[str] = ["Failed to load native libraries:"]
                for rel in next_pending:
                    lines.append(f"- {rel}: {errors[rel]}")
                _runtime_error("\n".join(lines) + "\n")
            pending = next_pending


    def _configure_sys_path(root: pathlib.Path, package: pathlib.Path) -> None:
        """Put the package root first on ``sys.path``, then bundled packages."""

        package_str: str = str(package)
        if len(sys.path) > 0 and os.path.abspath(sys.path[0]) == package_str:
            sys.path.pop(0)
        root_str: str = str(root)
        if root_str in sys.path:
            sys.path.remove(root_str)
        sys.path.insert(0, root_str)
        deps: str = os.path.join(root_str, _DEPS_DIR)
        if os.path.isdir(deps) is True or zipfile.is_zipfile(root_str) is True:
            sys.path.insert(1, deps)


    def main() -> None:
        """Program entrypoint."""

        _check_runtime_compat()
        package: pathlib.Path = _package_path()
        root: pathlib.Path = package
        if package.is_file() is True and (_ZIP_SAFE is False or len(_NATIVE_LIBRARIES) > 0):
            root = _ensure_extracted(package)
        _preload_native_libraries(root)
        _configure_sys_path(root, package)
        runpy.run_module(_ENTRY_POINT, run_name="__main__", alter_sys=True)


    if __name__ == "__main__":
        main()
    '''
).lstrip()


if __name__ == "__main__":
    sys.exit(main())
