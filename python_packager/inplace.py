"""In-place packaging.

An in-place package is a small launcher script plus a tree of symlinks into
the build output: every module, resource and native library is linked at its
destination path under one root, so imports resolve exactly as they would in
a self-contained package without copying anything.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import textwrap
import time

from python_packager.components import ComponentSet, EmptyInitCache, add_missing_init_modules
from python_packager.errors import InvalidLayoutException, UnsupportedLayoutForPlatform
from python_packager.toolchain import PythonEnvironment

# Platforms whose shared-library search mechanism a symlink tree cannot express.
UNSUPPORTED_PLATFORMS: frozenset[str] = frozenset({"windows", "win32", "cygwin"})


def check_platform(target_platform: str, *, owner: str | None = None) -> None:
    """Fail if the in-place layout cannot target ``target_platform``.

    :param target_platform: Platform name.
    :param owner: Build unit name for the error message.
    :raises UnsupportedLayoutForPlatform: For unsupported platforms.
    """

    if target_platform.lower() in UNSUPPORTED_PLATFORMS:
        prefix: str = f"{owner}: " if owner is not None else ""
        raise UnsupportedLayoutForPlatform(
            f"{prefix}cannot build in-place python binaries for {target_platform}"
        )


def native_library_search_var(target_platform: str) -> str:
    """Environment variable the dynamic loader searches on ``target_platform``."""

    if target_platform.lower() == "darwin":
        return "DYLD_LIBRARY_PATH"
    return "LD_LIBRARY_PATH"


def link_tree_entries(components: ComponentSet, *, owner: str | None = None) -> dict[pathlib.PurePosixPath, pathlib.Path]:
    """Collect the links of a tree: modules, resources and native libraries.

    :param components: Merged components.
    :param owner: Build unit name for error messages.
    :returns: Destination -> link target.
    :raises InvalidLayoutException: If one destination needs two different targets.
    """

    links: dict[pathlib.PurePosixPath, pathlib.Path] = {}
    for entries in (components.modules, components.resources, components.native_libraries):
        for dest, source in entries.items():
            target: pathlib.Path = source.path.absolute()
            existing: pathlib.Path | None = links.get(dest)
            if existing is not None and existing != target:
                prefix: str = f"{owner}: " if owner is not None else ""
                raise InvalidLayoutException(
                    f"{prefix}tried to link {dest.as_posix()} to both {existing} and {target}"
                )
            links[dest] = target
    return links


def build_symlink_tree(*, root: pathlib.Path, links: Mapping[pathlib.PurePosixPath, pathlib.Path]) -> None:
    """Materialize a symlink tree.

    The tree is built next to ``root`` and swapped in when complete.

    :param root: Root directory of the tree.
    :param links: Destination -> absolute link target.
    """

    staging: pathlib.Path = root.with_name(root.name + ".tmp")
    if staging.exists() is True:
        shutil.rmtree(staging)
    staging.mkdir(parents=True)

    for dest in sorted(links, key=lambda p: p.as_posix()):
        link: pathlib.Path = staging.joinpath(*dest.parts)
        link.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(links[dest], link)

    if root.is_symlink() is True or root.is_file() is True:
        root.unlink()
    elif root.exists() is True:
        shutil.rmtree(root)
    os.replace(staging, root)


@dataclass(frozen=True, slots=True)
class InPlacePackager:
    """Builds in-place packages.

    :ivar python: Target interpreter.
    :ivar empty_init_cache: Shared store of the empty ``__init__.py`` placeholder.
    :ivar target_platform: Platform the package runs on.
    """

    python: PythonEnvironment
    empty_init_cache: EmptyInitCache
    target_platform: str

    def package(
        self,
        *,
        name: str,
        components: ComponentSet,
        entry_point: str,
        output_path: pathlib.Path,
        work_dir: pathlib.Path,
        logger: logging.Logger | None = None,
    ) -> pathlib.Path:
        """Write the link tree and the launcher.

        :param name: Build unit name.
        :param components: Merged components.
        :param entry_point: Dotted entry-point module name.
        :param output_path: Launcher path.
        :param work_dir: Private generation directory of this build.
        :param logger: Optional logger for progress output.
        :returns: Launcher path.
        """

        if logger is None:
            logger = logging.getLogger("python_packager")

        check_platform(self.target_platform, owner=name)

        t0: float = time.perf_counter()
        empty_init = self.empty_init_cache.get(work_dir, owner=name)
        full: ComponentSet = add_missing_init_modules(components, empty_init)
        added: int = len(full.modules) - len(components.modules)
        if added > 0:
            logger.info(f"python-packager: synthesized {added} missing __init__.py modules")

        links: dict[pathlib.PurePosixPath, pathlib.Path] = link_tree_entries(full, owner=name)
        link_tree: pathlib.Path = work_dir / "link-tree"
        build_symlink_tree(root=link_tree, links=links)
        logger.info(f"python-packager: link tree ready ({len(links)} links) at {link_tree}")

        native_dirs: list[str] = sorted({dest.parent.as_posix() for dest in full.native_libraries})
        bundled: list[str] = sorted(str(s.path.absolute()) for s in full.bundled_packages)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        launcher: str = render_launcher(
            python=self.python.path,
            link_tree=os.path.relpath(link_tree.absolute(), output_path.absolute().parent),
            entry_point=entry_point,
            native_dirs=native_dirs,
            native_var=native_library_search_var(self.target_platform),
            bundled=bundled,
        )
        tmp_path: pathlib.Path = output_path.with_name(output_path.name + ".tmp")
        tmp_path.write_text(launcher, encoding="utf-8")
        tmp_path.chmod(0o755)
        os.replace(tmp_path, output_path)
        t1: float = time.perf_counter()
        logger.info(f"python-packager: wrote in-place launcher {output_path} in {t1 - t0:.2f}s")
        return output_path


def render_launcher(
    *,
    python: pathlib.Path,
    link_tree: str,
    entry_point: str,
    native_dirs: list[str],
    native_var: str,
    bundled: list[str],
) -> str:
    """Render the in-place launcher script.

    :param python: Interpreter for the shebang line.
    :param link_tree: Link-tree root, relative to the launcher's directory.
    :param entry_point: Dotted entry-point module name.
    :param native_dirs: Link-tree directories holding native libraries.
    :param native_var: Loader search-path variable.
    :param bundled: Absolute paths of bundled packages.
    :returns: Launcher source.
    """

    text: str = _LAUNCHER_TEMPLATE
    text = text.replace("__PYPKG_PYTHON__", str(python))
    text = text.replace("__PYPKG_LINK_TREE__", repr(link_tree))
    text = text.replace("__PYPKG_ENTRY_POINT__", repr(entry_point))
    text = text.replace("__PYPKG_NATIVE_DIRS__", repr(native_dirs))
    text = text.replace("__PYPKG_NATIVE_VAR__", repr(native_var))
    text = text.replace("__PYPKG_BUNDLED__", repr(bundled))
    return text


_LAUNCHER_TEMPLATE: str = textwrap.dedent(
    r'''
    #!__PYPKG_PYTHON__
    # This file was generated by python-packager (in-place launcher).

    import os
    import runpy
    import sys

    _LINK_TREE: str = __PYPKG_LINK_TREE__
    _ENTRY_POINT: str = __PYPKG_ENTRY_POINT__
    _NATIVE_DIRS: list[str] = __PYPKG_NATIVE_DIRS__
    _NATIVE_VAR: str = __PYPKG_NATIVE_VAR__
    _BUNDLED: list[str] = __PYPKG_BUNDLED__

    _REEXEC_MARKER: str = "PYTHON_PACKAGER_INPLACE_REEXEC"
    _ORIG_PREFIX: str = "PYTHON_PACKAGER_INPLACE_ORIG_"


    def _link_tree_root() -> str:
        """Resolve the link tree relative to this file's real location."""

        here: str = os.path.dirname(os.path.realpath(__file__))
        return os.path.normpath(os.path.join(here, _LINK_TREE))


    def _setup_native_search_path(root: str) -> None:
        """Re-exec once with the loader search path pointing into the link tree.

        The loader reads its search path at process start, so the child restores
        the caller's original value before running the program.
        """

        if len(_NATIVE_DIRS) == 0:
            return

        orig_key: str = _ORIG_PREFIX + _NATIVE_VAR
        if os.environ.get(_REEXEC_MARKER) == "1":
            del os.environ[_REEXEC_MARKER]
            orig: str | None = os.environ.pop(orig_key, None)
            if orig is None:
                os.environ.pop(_NATIVE_VAR, None)
            else:
                os.environ[_NATIVE_VAR] = orig
            return

        current: str | None = os.environ.get(_NATIVE_VAR)
        dirs: list[str] = [os.path.join(root, d) for d in _NATIVE_DIRS]
        if current is not None and len(current) > 0:
            dirs.append(current)
        env: dict[str, str] = dict(os.environ)
        env[_NATIVE_VAR] = os.pathsep.join(dirs)
        env[_REEXEC_MARKER] = "1"
        if current is not None:
            env[orig_key] = current
        os.execve(sys.executable, [sys.executable, *sys.argv], env)


    def main() -> None:
        """Program entrypoint."""

        root: str = _link_tree_root()
        _setup_native_search_path(root)
        sys.path[0] = root
        for i, path in enumerate(_BUNDLED):
            sys.path.insert(1 + i, path)
        runpy.run_module(_ENTRY_POINT, run_name="__main__", alter_sys=False)


    if __name__ == "__main__":
        main()
    '''
).lstrip()
