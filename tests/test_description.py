"""Tests for package description files."""

from collections.abc import Callable
import logging
import pathlib

import pytest

from python_packager.components import SourcePath, merge_components
from python_packager.config import NativeLinkStrategy
from python_packager.description import (
    PackageDescription,
    description_from_mapping,
    load_description,
    resolve_entry_point,
)
from python_packager.errors import DescriptionError, PackagingConflict

P = pathlib.PurePosixPath


def test_load_description(tmp_path: pathlib.Path, make_file: Callable[..., pathlib.Path]) -> None:
    path: pathlib.Path = make_file(
        "BUILD.yaml",
        """
        name: //app:bin
        main_module: app.cli
        modules:
          app/cli.py: src/cli.py
        resources:
          app/data.json: src/data.json
        build_args: ["--compresslevel", "9"]
        units:
          - name: //lib:util
            modules:
              util/__init__.py: lib/util/__init__.py
            native_libraries:
              libfast.so: build/libfast.so
            bundled_packages:
              - dist/six-1.16.0-py2.py3-none-any.whl
            zip_safe: false
        """,
    )

    description: PackageDescription = load_description(path)

    assert description.name == "//app:bin"
    assert description.entry_point == "app.cli"
    assert description.is_test() is False
    assert description.build_args == ("--compresslevel", "9")
    assert description.components.modules[P("app/cli.py")] == SourcePath(
        path=tmp_path / "src" / "cli.py", target="//app:bin"
    )
    assert P("app/data.json") in description.components.resources

    assert len(description.contributors) == 1
    unit = description.contributors[0]
    assert unit.modules[P("util/__init__.py")].target == "//lib:util"
    assert unit.native_libraries[P("libfast.so")].path == tmp_path / "build" / "libfast.so"
    assert unit.bundled_packages == frozenset(
        {SourcePath(path=tmp_path / "dist" / "six-1.16.0-py2.py3-none-any.whl", target="//lib:util")}
    )
    assert unit.zip_safe is False


def test_main_source_is_packaged_under_base_module(tmp_path: pathlib.Path) -> None:
    warnings: list[str] = []

    class _Collect(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            warnings.append(record.getMessage())

    logger: logging.Logger = logging.getLogger("test_description.main")
    logger.addHandler(_Collect(level=logging.WARNING))

    description: PackageDescription = description_from_mapping(
        {"name": "//app:bin", "base_module": "company.app", "main": "bin/run.py"},
        path=tmp_path / "BUILD.yaml",
        logger=logger,
    )

    assert description.entry_point == "company.app.run"
    assert description.components.modules[P("company/app/run.py")].path == tmp_path / "bin" / "run.py"
    assert len(warnings) == 1
    assert "deprecated" in warnings[0]


def test_main_without_base_module(tmp_path: pathlib.Path) -> None:
    entry, modules = resolve_entry_point(
        owner="//app:bin",
        main=SourcePath(path=tmp_path / "tool.py"),
        main_module=None,
        base_module=P(),
        logger=logging.getLogger("test_description.quiet"),
    )
    assert entry == "tool"
    assert list(modules) == [P("tool.py")]


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"name": "x", "main": "a.py", "main_module": "a"}, "cannot set both"),
        ({"name": "x"}, "exactly one"),
        ({"name": "x", "main": "a.txt"}, "not a valid python source"),
        ({"name": "x", "main_module": "a", "tests": {"t.py": "t.py"}}, "test packages"),
        ({"name": "", "main_module": "a"}, "name"),
        ({"name": "x", "main_module": "a", "modules": ["a.py"]}, "modules must be a mapping"),
        ({"name": "x", "main_module": "a", "modules": {"/abs.py": "a.py"}}, "relative"),
        ({"name": "x", "main_module": "a", "units": [{"modules": {}}]}, "needs a name"),
        ({"name": "x", "main_module": "a", "zip_safe": "yes"}, "zip_safe"),
        ({"name": "x", "main_module": "a", "build_args": "--fast"}, "build_args"),
    ],
)
def test_malformed_descriptions(tmp_path: pathlib.Path, data: dict, message: str) -> None:
    with pytest.raises(DescriptionError, match=message):
        description_from_mapping(data, path=tmp_path / "BUILD.yaml", logger=logging.getLogger("test_description.quiet"))


def test_native_link_strategy(tmp_path: pathlib.Path) -> None:
    data: dict = {
        "name": "//app:bin",
        "main_module": "app.main",
        "merged_native_libraries": {"libapp.so": "build/libapp.so"},
        "units": [{"name": "//lib:fast", "native_libraries": {"libfast.so": "build/libfast.so"}}],
    }

    separate: PackageDescription = description_from_mapping(data, path=tmp_path / "BUILD.yaml")
    merged: PackageDescription = description_from_mapping(
        data,
        path=tmp_path / "BUILD.yaml",
        native_link_strategy=NativeLinkStrategy.MERGED,
    )

    assert list(separate.components.native_libraries) == []
    assert list(separate.contributors[0].native_libraries) == [P("libfast.so")]
    assert list(merged.components.native_libraries) == [P("libapp.so")]
    assert list(merged.contributors[0].native_libraries) == []


def test_units_claiming_one_destination_conflict(tmp_path: pathlib.Path) -> None:
    description: PackageDescription = description_from_mapping(
        {
            "name": "//app:bin",
            "main_module": "app.main",
            "units": [
                {"name": "//lib:a", "modules": {"shared/util.py": "a/util.py"}},
                {"name": "//lib:b", "modules": {"shared/util.py": "b/util.py"}},
            ],
        },
        path=tmp_path / "BUILD.yaml",
    )

    with pytest.raises(PackagingConflict) as excinfo:
        merge_components(description.components, description.contributors, owner=description.name)

    message: str = str(excinfo.value)
    assert "//lib:a" in message and "//lib:b" in message
    assert "shared/util.py" in message


def test_units_sharing_a_source_do_not_conflict(tmp_path: pathlib.Path) -> None:
    description: PackageDescription = description_from_mapping(
        {
            "name": "//app:bin",
            "main_module": "app.main",
            "units": [
                {"name": "//a:a", "modules": {"common.py": "common.py"}, "bundled_packages": ["dep.whl"]},
                {"name": "//b:b", "modules": {"common.py": "common.py"}, "bundled_packages": ["dep.whl"]},
            ],
        },
        path=tmp_path / "BUILD.yaml",
    )

    merged = merge_components(description.components, description.contributors, owner=description.name)

    assert merged.modules[P("common.py")].path == tmp_path / "common.py"
    assert [s.path for s in merged.bundled_packages] == [tmp_path / "dep.whl"]


def test_two_spellings_of_one_destination_conflict(tmp_path: pathlib.Path) -> None:
    with pytest.raises(PackagingConflict, match="a/b.py"):
        description_from_mapping(
            {"name": "//app:bin", "main_module": "a.b", "modules": {"a/b.py": "x.py", "a//b.py": "y.py"}},
            path=tmp_path / "BUILD.yaml",
        )


def test_test_description(tmp_path: pathlib.Path) -> None:
    description: PackageDescription = description_from_mapping(
        {"name": "//app:tests", "tests": {"app/test_x.py": "tests/test_x.py"}},
        path=tmp_path / "BUILD.json",
    )
    assert description.is_test() is True
    assert description.entry_point is None
    assert description.tests[P("app/test_x.py")].path == tmp_path / "tests" / "test_x.py"


def test_missing_description_file(tmp_path: pathlib.Path) -> None:
    with pytest.raises(DescriptionError, match="File not found"):
        load_description(tmp_path / "BUILD.yaml")
