"""Package components and the component merger.

A :class:`ComponentSet` is what one build unit contributes to a Python package:
modules, resources and native libraries (each mapped from a destination path in
the package to a content source), bundled third-party packages, and a tri-state
zip-safe flag. :func:`merge_components` folds the sets contributed by a
transitive dependency closure into the one set a packager consumes.
"""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
import pathlib
import threading
import types

from python_packager.errors import DescriptionError, PackagingConflict


@dataclass(frozen=True, slots=True)
class SourcePath:
    """A content source: a file on disk, optionally produced by a build unit.

    Two sources are the same content when their paths are equal; the producing
    unit is kept for messages only and file bytes are never compared.

    :ivar path: Path to the file.
    :ivar target: Name of the build unit that produced/declared it, if any.
    """

    path: pathlib.Path
    target: str | None = field(default=None, compare=False)

    def __str__(self) -> str:
        if self.target is None:
            return str(self.path)
        return f"{self.target} ({self.path})"


DestMap = Mapping[pathlib.PurePosixPath, SourcePath]


def dest_path(value: str | pathlib.PurePath) -> pathlib.PurePosixPath:
    """Normalize a destination path inside the package.

    :param value: Relative path (``/`` separated).
    :returns: Normalized POSIX path.
    :raises DescriptionError: If the path is absolute, empty or escapes the root.
    """

    p: pathlib.PurePosixPath = pathlib.PurePosixPath(str(value).replace("\\", "/"))
    if p.is_absolute() is True:
        raise DescriptionError(f"Destination path must be relative: {value!r}")
    if ".." in p.parts:
        raise DescriptionError(f"Destination path escapes the package root: {value!r}")
    if len(p.parts) == 0:
        raise DescriptionError(f"Destination path is empty: {value!r}")
    return p


def _frozen_map(entries: Mapping | None, *, kind: str) -> types.MappingProxyType:
    """Normalize destinations and freeze the map.

    :raises PackagingConflict: If two spellings of one destination map to different sources.
    """

    items: dict[pathlib.PurePosixPath, SourcePath] = {}
    if entries is not None:
        for dest, source in entries.items():
            normalized: pathlib.PurePosixPath = dest_path(dest)
            existing: SourcePath | None = items.get(normalized)
            if existing is not None and existing != source:
                raise PackagingConflict(
                    owner=None,
                    kind=kind,
                    destination=normalized,
                    first=existing,
                    second=source,
                )
            items[normalized] = source
    return types.MappingProxyType(dict(sorted(items.items(), key=lambda kv: kv[0].as_posix())))


def _empty_map() -> types.MappingProxyType:
    return types.MappingProxyType({})


@dataclass(frozen=True, slots=True)
class ComponentSet:
    """Immutable set of package components.

    Mapping fields are kept sorted by destination so iteration order never
    depends on the order contributors were visited in.

    :ivar modules: Destination path -> module source.
    :ivar resources: Destination path -> resource source.
    :ivar native_libraries: Destination path -> shared library source.
    :ivar bundled_packages: Prebuilt third-party distributions, merged as-is.
    :ivar zip_safe: ``None`` (unset), ``True`` or ``False``.
    """

    modules: DestMap = field(default_factory=_empty_map)
    resources: DestMap = field(default_factory=_empty_map)
    native_libraries: DestMap = field(default_factory=_empty_map)
    bundled_packages: frozenset[SourcePath] = frozenset()
    zip_safe: bool | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "modules", _frozen_map(self.modules, kind="module"))
        object.__setattr__(self, "resources", _frozen_map(self.resources, kind="resource"))
        object.__setattr__(self, "native_libraries", _frozen_map(self.native_libraries, kind="native library"))
        object.__setattr__(self, "bundled_packages", frozenset(self.bundled_packages))

    def with_modules(self, modules: DestMap) -> "ComponentSet":
        """Return a copy with the module map replaced."""

        return ComponentSet(
            modules=modules,
            resources=self.resources,
            native_libraries=self.native_libraries,
            bundled_packages=self.bundled_packages,
            zip_safe=self.zip_safe,
        )

    def is_zip_safe(self) -> bool:
        """Zip-safe unless explicitly set to ``False``."""

        return self.zip_safe is not False

    def sources(self) -> Iterator[SourcePath]:
        """Iterate every content source referenced by this set (sorted order)."""

        yield from self.modules.values()
        yield from self.resources.values()
        yield from self.native_libraries.values()
        yield from sorted(self.bundled_packages, key=_source_sort_key)


def _source_sort_key(source: SourcePath) -> tuple[str, str]:
    return (str(source.path), source.target or "")


def _merge_zip_safe(current: bool | None, other: bool | None) -> bool | None:
    """Fold two zip-safe flags: ``False`` wins, unset is neutral."""

    if current is False or other is False:
        return False
    if current is True or other is True:
        return True
    return None


def _merge_map(
    *,
    into: dict[pathlib.PurePosixPath, SourcePath],
    entries: DestMap,
    kind: str,
    owner: str | None,
) -> None:
    """Union ``entries`` into ``into``, failing on conflicting destinations.

    :raises PackagingConflict: If a destination maps to two different sources.
    """

    for dest, source in entries.items():
        existing: SourcePath | None = into.get(dest)
        if existing is not None and existing != source:
            raise PackagingConflict(
                owner=owner,
                kind=kind,
                destination=dest,
                first=existing,
                second=source,
            )
        into[dest] = source


def merge_components(
    base: ComponentSet,
    contributors: Iterable[ComponentSet],
    *,
    owner: str | None = None,
) -> ComponentSet:
    """Fold the components of a dependency closure into one set.

    ``contributors`` is the ordered, node-deduplicated sequence produced by the
    dependency-graph traversal. The result does not depend on that order, and
    whether a conflict is raised does not either.

    :param base: Components of the unit being packaged.
    :param contributors: Components of its transitive dependencies.
    :param owner: Name of the unit being packaged (used in error messages).
    :returns: Merged component set.
    :raises PackagingConflict: If two contributors disagree on a destination.
    """

    modules: dict[pathlib.PurePosixPath, SourcePath] = {}
    resources: dict[pathlib.PurePosixPath, SourcePath] = {}
    native_libraries: dict[pathlib.PurePosixPath, SourcePath] = {}
    bundled: set[SourcePath] = set()
    zip_safe: bool | None = None

    for comps in (base, *contributors):
        _merge_map(into=modules, entries=comps.modules, kind="module", owner=owner)
        _merge_map(into=resources, entries=comps.resources, kind="resource", owner=owner)
        _merge_map(into=native_libraries, entries=comps.native_libraries, kind="native library", owner=owner)
        bundled.update(comps.bundled_packages)
        zip_safe = _merge_zip_safe(zip_safe, comps.zip_safe)

    return ComponentSet(
        modules=modules,
        resources=resources,
        native_libraries=native_libraries,
        bundled_packages=frozenset(bundled),
        zip_safe=zip_safe,
    )


INIT_MODULE: str = "__init__.py"


def add_missing_init_modules(components: ComponentSet, empty_init: SourcePath) -> ComponentSet:
    """Add an empty ``__init__.py`` for every package directory lacking one.

    Ancestors are walked upward from each module's parent; the walk stops at
    the first directory already visited during this call. The package root
    itself (a module with no parent directory) gets no init module.

    :param components: Merged components.
    :param empty_init: The shared empty module source used for every synthesized init.
    :returns: Components with the synthesized modules added.
    """

    init_modules: dict[pathlib.PurePosixPath, SourcePath] = {}
    packages: set[pathlib.PurePosixPath] = set()
    for module in components.modules:
        pkg: pathlib.PurePosixPath = module.parent
        while len(pkg.parts) > 0 and pkg not in packages:
            init: pathlib.PurePosixPath = pkg / INIT_MODULE
            if init not in components.modules:
                init_modules[init] = empty_init
            packages.add(pkg)
            pkg = pkg.parent

    if len(init_modules) == 0:
        return components
    merged: dict[pathlib.PurePosixPath, SourcePath] = dict(components.modules)
    merged.update(init_modules)
    return components.with_modules(merged)


def to_module_name(path: str | pathlib.PurePath, *, owner: str | None = None) -> str:
    """Convert a module destination path into a dotted module name.

    :param path: Destination path ending in ``.py``.
    :param owner: Build unit name for error messages.
    :returns: Dotted module name (``a/b/c.py`` -> ``a.b.c``).
    :raises DescriptionError: If the path is not a Python source file.
    """

    p: pathlib.PurePosixPath = dest_path(path)
    if p.suffix != ".py":
        prefix: str = f"{owner}: " if owner is not None else ""
        raise DescriptionError(f"{prefix}{p.as_posix()} is not a valid python source file (expected .py)")
    return ".".join(p.with_suffix("").parts)


class EmptyInitCache:
    """Process-wide store of the shared empty ``__init__.py`` placeholder.

    The placeholder file is written at most once per generation directory
    (keyed by its resolved path) and is read-only afterwards, so concurrent
    in-place builds can share it.
    """

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._entries: dict[pathlib.Path, SourcePath] = {}

    def get(self, gen_dir: pathlib.Path, *, owner: str | None = None) -> SourcePath:
        """Return the placeholder for ``gen_dir``, writing it on first use.

        :param gen_dir: Generation directory of the packaging run.
        :param owner: Build unit the placeholder belongs to.
        :returns: Source for the empty module.
        """

        key: pathlib.Path = gen_dir.resolve()
        with self._lock:
            cached: SourcePath | None = self._entries.get(key)
            if cached is not None and cached.path.is_file() is True:
                return cached

            path: pathlib.Path = key / "__init__" / INIT_MODULE
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.is_file() is False:
                path.write_text("", encoding="utf-8")
            target: str | None = f"{owner}#__init__" if owner is not None else None
            source: SourcePath = SourcePath(path=path, target=target)
            self._entries[key] = source
            return source
