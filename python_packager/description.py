"""Package description files.

A description names one package to build and the components of everything it
depends on, in the order the dependency graph produced them::

    name: app
    base_module: app
    main_module: app.cli
    modules:
      app/cli.py: src/cli.py
    units:
      - name: //lib:util
        modules:
          util/__init__.py: lib/util/__init__.py
        native_libraries:
          libfast.so: build/libfast.so
        zip_safe: false

Source paths are relative to the description file.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import pathlib
from typing import Any

from python_packager.components import ComponentSet, DestMap, SourcePath, dest_path, to_module_name
from python_packager.config import NativeLinkStrategy, read_document
from python_packager.errors import DescriptionError, PackagingConflict


@dataclass(frozen=True, slots=True)
class PackageDescription:
    """A parsed package description.

    :ivar name: Build unit name of the package.
    :ivar path: Description file.
    :ivar entry_point: Dotted entry-point module (``None`` for test packages).
    :ivar components: Components of the package itself (incl. a ``main`` source).
    :ivar contributors: Components of its dependencies, in graph order.
    :ivar tests: Test module destination -> source (test packages only).
    :ivar build_args: Extra arguments for the packaging tool.
    """

    name: str
    path: pathlib.Path
    entry_point: str | None
    components: ComponentSet
    contributors: tuple[ComponentSet, ...]
    tests: DestMap
    build_args: tuple[str, ...]

    def is_test(self) -> bool:
        return len(self.tests) > 0


def resolve_entry_point(
    *,
    owner: str,
    main: SourcePath | None,
    main_module: str | None,
    base_module: pathlib.PurePosixPath,
    logger: logging.Logger | None = None,
) -> tuple[str, dict[pathlib.PurePosixPath, SourcePath]]:
    """Resolve the entry point from exactly one of ``main``/``main_module``.

    A ``main`` source is packaged at ``<base_module>/<file name>``.

    :param owner: Build unit name.
    :param main: Optional main source file (deprecated).
    :param main_module: Optional dotted module name.
    :param base_module: Base module path of the package.
    :param logger: Optional logger for the deprecation warning.
    :returns: ``(entry point, extra modules)``.
    :raises DescriptionError: Unless exactly one of the two is given.
    """

    if main is not None and main_module is not None:
        raise DescriptionError(f"{owner}: cannot set both main and main_module")
    if main is None and main_module is None:
        raise DescriptionError(f"{owner}: must set exactly one of main or main_module")

    if main_module is not None:
        return (main_module, {})

    if logger is None:
        logger = logging.getLogger("python_packager")
    logger.warning(f"python-packager: {owner}: main is deprecated; use main_module instead")

    dest: pathlib.PurePosixPath = base_module / main.path.name
    return (to_module_name(dest, owner=owner), {dest: main})


def _base_module(value: Any, *, owner: str) -> pathlib.PurePosixPath:
    if value is None or value == "":
        return pathlib.PurePosixPath()
    if not isinstance(value, str):
        raise DescriptionError(f"{owner}: base_module must be a string")
    return dest_path(value.replace(".", "/"))


def _source(value: Any, *, base_dir: pathlib.Path, target: str, owner: str) -> SourcePath:
    if not isinstance(value, str) or len(value) == 0:
        raise DescriptionError(f"{owner}: source paths must be non-empty strings, got {value!r}")
    return SourcePath(path=base_dir / value, target=target)


def _source_map(
    data: Mapping[str, Any],
    key: str,
    *,
    base_dir: pathlib.Path,
    target: str,
    owner: str,
) -> dict[pathlib.PurePosixPath, SourcePath]:
    """Parse a ``destination: source`` mapping."""

    value: Any = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise DescriptionError(f"{owner}: {key} must be a mapping of destination to source")
    result: dict[pathlib.PurePosixPath, SourcePath] = {}
    for dest, source in value.items():
        normalized: pathlib.PurePosixPath = dest_path(str(dest))
        parsed: SourcePath = _source(source, base_dir=base_dir, target=target, owner=owner)
        existing: SourcePath | None = result.get(normalized)
        if existing is not None and existing != parsed:
            raise PackagingConflict(owner=owner, kind=key, destination=normalized, first=existing, second=parsed)
        result[normalized] = parsed
    return result


def _source_list(
    data: Mapping[str, Any],
    key: str,
    *,
    base_dir: pathlib.Path,
    target: str,
    owner: str,
) -> frozenset[SourcePath]:
    value: Any = data.get(key)
    if value is None:
        return frozenset()
    if not isinstance(value, list):
        raise DescriptionError(f"{owner}: {key} must be a list of paths")
    return frozenset(_source(v, base_dir=base_dir, target=target, owner=owner) for v in value)


def _zip_safe(data: Mapping[str, Any], *, owner: str) -> bool | None:
    value: Any = data.get("zip_safe")
    if value is not None and not isinstance(value, bool):
        raise DescriptionError(f"{owner}: zip_safe must be true or false")
    return value


def _unit_components(
    unit: Any,
    *,
    index: int,
    base_dir: pathlib.Path,
    native_link_strategy: NativeLinkStrategy,
    owner: str,
) -> ComponentSet:
    """Parse one ``units`` entry."""

    if not isinstance(unit, Mapping):
        raise DescriptionError(f"{owner}: units[{index}] must be a mapping")
    name: Any = unit.get("name")
    if not isinstance(name, str) or len(name) == 0:
        raise DescriptionError(f"{owner}: units[{index}] needs a name")

    native: dict[pathlib.PurePosixPath, SourcePath] = {}
    if native_link_strategy is NativeLinkStrategy.SEPARATE:
        native = _source_map(unit, "native_libraries", base_dir=base_dir, target=name, owner=owner)

    return ComponentSet(
        modules=_source_map(unit, "modules", base_dir=base_dir, target=name, owner=owner),
        resources=_source_map(unit, "resources", base_dir=base_dir, target=name, owner=owner),
        native_libraries=native,
        bundled_packages=_source_list(unit, "bundled_packages", base_dir=base_dir, target=name, owner=owner),
        zip_safe=_zip_safe(unit, owner=f"{owner}: units[{index}]"),
    )


def description_from_mapping(
    data: Mapping[str, Any],
    *,
    path: pathlib.Path,
    native_link_strategy: NativeLinkStrategy = NativeLinkStrategy.SEPARATE,
    logger: logging.Logger | None = None,
) -> PackageDescription:
    """Build a description from a parsed document.

    :param data: Document root.
    :param path: Description file (relative sources resolve against its directory).
    :param native_link_strategy: Which native libraries are contributed.
    :param logger: Optional logger.
    :returns: Package description.
    :raises DescriptionError: If the document is malformed.
    :raises PackagingConflict: If two spellings of one destination map to different sources.
    """

    name: Any = data.get("name")
    if not isinstance(name, str) or len(name) == 0:
        raise DescriptionError(f"{path}: name must be a non-empty string")
    base_dir: pathlib.Path = path.parent.absolute()

    tests: dict[pathlib.PurePosixPath, SourcePath] = _source_map(
        data, "tests", base_dir=base_dir, target=name, owner=name
    )
    main_value: Any = data.get("main")
    main_module: Any = data.get("main_module")
    if main_module is not None and not isinstance(main_module, str):
        raise DescriptionError(f"{name}: main_module must be a string")

    entry_point: str | None = None
    extra_modules: dict[pathlib.PurePosixPath, SourcePath] = {}
    if len(tests) > 0:
        if main_value is not None or main_module is not None:
            raise DescriptionError(f"{name}: test packages cannot set main or main_module")
    else:
        main: SourcePath | None = None
        if main_value is not None:
            main = _source(main_value, base_dir=base_dir, target=name, owner=name)
        entry_point, extra_modules = resolve_entry_point(
            owner=name,
            main=main,
            main_module=main_module,
            base_module=_base_module(data.get("base_module"), owner=name),
            logger=logger,
        )

    modules: dict[pathlib.PurePosixPath, SourcePath] = _source_map(
        data, "modules", base_dir=base_dir, target=name, owner=name
    )
    for dest, source in extra_modules.items():
        existing: SourcePath | None = modules.get(dest)
        if existing is not None and existing != source:
            raise DescriptionError(f"{name}: main source {source} collides with module {dest.as_posix()}")
        modules[dest] = source

    native: dict[pathlib.PurePosixPath, SourcePath] = {}
    if native_link_strategy is NativeLinkStrategy.MERGED:
        native = _source_map(data, "merged_native_libraries", base_dir=base_dir, target=name, owner=name)

    units: Any = data.get("units", [])
    if units is None:
        units = []
    if not isinstance(units, list):
        raise DescriptionError(f"{name}: units must be a list")

    build_args: Any = data.get("build_args", [])
    if build_args is None:
        build_args = []
    if not isinstance(build_args, list) or any(not isinstance(a, str) for a in build_args):
        raise DescriptionError(f"{name}: build_args must be a list of strings")

    return PackageDescription(
        name=name,
        path=path,
        entry_point=entry_point,
        components=ComponentSet(
            modules=modules,
            resources=_source_map(data, "resources", base_dir=base_dir, target=name, owner=name),
            native_libraries=native,
            bundled_packages=_source_list(data, "bundled_packages", base_dir=base_dir, target=name, owner=name),
            zip_safe=_zip_safe(data, owner=name),
        ),
        contributors=tuple(
            _unit_components(
                unit,
                index=i,
                base_dir=base_dir,
                native_link_strategy=native_link_strategy,
                owner=name,
            )
            for i, unit in enumerate(units)
        ),
        tests=tests,
        build_args=tuple(build_args),
    )


def load_description(
    path: pathlib.Path,
    *,
    native_link_strategy: NativeLinkStrategy = NativeLinkStrategy.SEPARATE,
    logger: logging.Logger | None = None,
) -> PackageDescription:
    """Load a package description file.

    :param path: YAML or JSON description.
    :param native_link_strategy: Which native libraries are contributed.
    :param logger: Optional logger.
    :returns: Package description.
    :raises DescriptionError: If the file is missing or malformed.
    """

    data: Mapping[str, Any] = read_document(path, error=DescriptionError)
    return description_from_mapping(
        data,
        path=path,
        native_link_strategy=native_link_strategy,
        logger=logger,
    )
