"""End-to-end tests for strategy selection and package builds."""

from collections.abc import Callable
import os
import pathlib
import subprocess
import sys
import zipfile

import pytest

from python_packager.components import ComponentSet, EmptyInitCache, SourcePath
from python_packager.config import PackageStyle, PackagingConfig
from python_packager.description import PackageDescription, description_from_mapping
from python_packager.errors import (
    PackagingConflict,
    PackagingError,
    ToolInvocationFailure,
    UnsupportedLayoutForPlatform,
)
from python_packager.inplace import InPlacePackager
from python_packager.packager import (
    BuildCaches,
    PackagePlan,
    PackageResult,
    SelfContainedPackager,
    build_description,
    build_package,
    default_output_path,
    plan_package,
    select_packager,
    work_dir_for,
)
from python_packager.pex import PexStyle
from python_packager.toolchain import PackagingTool, PythonEnvironment


def _config(style: PackageStyle, **kwargs: object) -> PackagingConfig:
    return PackagingConfig(
        package_style=style,
        interpreter=sys.executable,
        target_platform="linux",
        **kwargs,  # type: ignore[arg-type]
    )


def _run(path: pathlib.Path, *args: str, env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    return subprocess.run([sys.executable, str(path), *args], capture_output=True, text=True, env=env)


def test_select_packager_by_style(host_python: PythonEnvironment) -> None:
    tool: PackagingTool = PackagingTool(command_prefix=("make_pex",), inputs=())
    common: dict[str, object] = {
        "name": "//app:bin",
        "python": host_python,
        "tool": tool,
        "target_platform": "linux",
        "empty_init_cache": EmptyInitCache(),
    }

    in_place = select_packager(PackageStyle.IN_PLACE, **common)  # type: ignore[arg-type]
    directory = select_packager(PackageStyle.SELF_CONTAINED_DIRECTORY, **common)  # type: ignore[arg-type]
    single = select_packager(PackageStyle.SELF_CONTAINED_FILE, **common)  # type: ignore[arg-type]

    assert isinstance(in_place, InPlacePackager)
    assert isinstance(directory, SelfContainedPackager) and directory.style is PexStyle.DIRECTORY
    assert isinstance(single, SelfContainedPackager) and single.style is PexStyle.FILE


def test_self_contained_needs_a_tool(host_python: PythonEnvironment) -> None:
    with pytest.raises(PackagingError, match="packaging tool"):
        select_packager(
            PackageStyle.SELF_CONTAINED_FILE,
            name="//app:bin",
            python=host_python,
            tool=None,
            target_platform="linux",
            empty_init_cache=EmptyInitCache(),
        )


def test_in_place_on_windows_fails_before_any_work(tmp_path: pathlib.Path, app_components: ComponentSet) -> None:
    config: PackagingConfig = PackagingConfig(
        package_style=PackageStyle.IN_PLACE,
        interpreter=sys.executable,
        target_platform="windows",
    )
    with pytest.raises(UnsupportedLayoutForPlatform):
        build_package(
            name="//app:bin",
            components=app_components,
            contributors=[],
            entry_point="app.main",
            output_path=tmp_path / "out" / "app",
            work_dir=tmp_path / "work",
            config=config,
        )
    assert (tmp_path / "work").exists() is False
    assert (tmp_path / "out").exists() is False


def test_conflict_fails_before_any_work(
    tmp_path: pathlib.Path,
    app_components: ComponentSet,
    make_file: Callable[..., pathlib.Path],
) -> None:
    other: ComponentSet = ComponentSet(
        modules={"app/main.py": SourcePath(path=make_file("other/main.py", ""), target="//other:lib")}
    )
    with pytest.raises(PackagingConflict, match="//other:lib"):
        build_package(
            name="//app:bin",
            components=app_components,
            contributors=[other],
            entry_point="app.main",
            output_path=tmp_path / "out" / "app.pex",
            work_dir=tmp_path / "work",
            config=_config(PackageStyle.SELF_CONTAINED_FILE),
        )
    assert (tmp_path / "out").exists() is False


def test_single_file_package_runs(tmp_path: pathlib.Path, app_components: ComponentSet) -> None:
    output: pathlib.Path = tmp_path / "out" / "app.pex"

    result: PackageResult = build_package(
        name="//app:bin",
        components=app_components,
        contributors=[],
        entry_point="app.main",
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.SELF_CONTAINED_FILE),
    )

    assert result.output_path == output
    assert len(result.rule_key) == 64
    assert output.is_file() is True
    assert os.access(output, os.X_OK) is True
    assert output.read_bytes().startswith(f"#!{sys.executable}\n".encode("utf-8")) is True
    with zipfile.ZipFile(output) as zf:
        names: set[str] = set(zf.namelist())
    assert {"__main__.py", "app/__init__.py", "app/main.py", "app/data.txt"} <= names

    proc = _run(output)
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.splitlines()[0] == "hello from app"


def test_directory_package_runs(tmp_path: pathlib.Path, app_components: ComponentSet) -> None:
    output: pathlib.Path = tmp_path / "out" / "app"

    build_package(
        name="//app:bin",
        components=app_components,
        contributors=[],
        entry_point="app.main",
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.SELF_CONTAINED_DIRECTORY),
    )

    assert (output / "__main__.py").is_file() is True
    assert (output / "app" / "data.txt").read_text(encoding="utf-8") == "payload\n"
    proc = _run(output)
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.splitlines()[0] == "hello from app"


def test_rebuild_replaces_previous_output(tmp_path: pathlib.Path, app_components: ComponentSet) -> None:
    output: pathlib.Path = tmp_path / "out" / "app"
    output.mkdir(parents=True)
    (output / "stale.txt").write_text("", encoding="utf-8")

    build_package(
        name="//app:bin",
        components=app_components,
        contributors=[],
        entry_point="app.main",
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.SELF_CONTAINED_DIRECTORY),
    )

    assert (output / "stale.txt").exists() is False
    assert (output / "__main__.py").is_file() is True


def test_not_zip_safe_package_is_extracted(tmp_path: pathlib.Path, app_components: ComponentSet) -> None:
    output: pathlib.Path = tmp_path / "out" / "app.pex"
    unsafe: ComponentSet = ComponentSet(zip_safe=False)

    build_package(
        name="//app:bin",
        components=app_components,
        contributors=[unsafe],
        entry_point="app.main",
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.SELF_CONTAINED_FILE),
    )

    cache: pathlib.Path = tmp_path / "cache"
    env: dict[str, str] = {**os.environ, "PYTHON_PACKAGER_CACHE_DIR": str(cache)}
    proc = _run(output, env=env)

    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.splitlines()[0] == "hello from app"
    extracted: list[pathlib.Path] = list(cache.iterdir())
    assert len(extracted) == 1
    assert (extracted[0] / ".extracted").is_file() is True
    assert (extracted[0] / "app" / "main.py").is_file() is True


def test_bundled_wheel_is_importable(
    tmp_path: pathlib.Path,
    make_file: Callable[..., pathlib.Path],
) -> None:
    wheel: pathlib.Path = tmp_path / "dist" / "greeting-1.0-py3-none-any.whl"
    wheel.parent.mkdir(parents=True)
    with zipfile.ZipFile(wheel, "w") as zf:
        zf.writestr("greeting/__init__.py", "MESSAGE = 'hi from wheel'\n")
        zf.writestr("greeting-1.0.dist-info/METADATA", "Name: greeting\n")
    main: pathlib.Path = make_file("src/main.py", "import greeting\nprint(greeting.MESSAGE)\n")
    output: pathlib.Path = tmp_path / "out" / "app.pex"

    build_package(
        name="//app:bin",
        components=ComponentSet(modules={"main.py": SourcePath(path=main)}),
        contributors=[ComponentSet(bundled_packages=frozenset({SourcePath(path=wheel)}))],
        entry_point="main",
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.SELF_CONTAINED_FILE),
    )

    proc = _run(output)
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout == "hi from wheel\n"


def test_failing_tool_leaves_no_output(
    tmp_path: pathlib.Path,
    app_components: ComponentSet,
    make_tool: Callable[[str, str], pathlib.Path],
) -> None:
    tool: pathlib.Path = make_tool(
        "tools/broken_pex",
        """
        import pathlib
        import sys

        sys.stdin.read()
        pathlib.Path(sys.argv[-1]).write_text("partial", encoding="utf-8")
        sys.stderr.write("broken_pex: out of disk\\n")
        sys.exit(1)
        """,
    )
    output: pathlib.Path = tmp_path / "out" / "app.pex"

    with pytest.raises(ToolInvocationFailure, match="out of disk"):
        build_package(
            name="//app:bin",
            components=app_components,
            contributors=[],
            entry_point="app.main",
            output_path=output,
            work_dir=tmp_path / "work",
            config=_config(PackageStyle.SELF_CONTAINED_FILE, path_to_pex=str(tool)),
        )

    assert output.exists() is False
    assert list((work_dir_for(tmp_path / "work", "//app:bin") / "staging").iterdir()) == []


def test_rule_key_is_stable_and_style_specific(tmp_path: pathlib.Path, app_components: ComponentSet) -> None:
    caches: BuildCaches = BuildCaches()

    def plan(style: PackageStyle) -> PackagePlan:
        return plan_package(
            name="//app:bin",
            components=app_components,
            contributors=[],
            entry_point="app.main",
            work_dir=tmp_path / "work",
            config=_config(style),
            caches=caches,
        )

    first: PackagePlan = plan(PackageStyle.SELF_CONTAINED_FILE)
    assert plan(PackageStyle.SELF_CONTAINED_FILE).rule_key == first.rule_key
    assert plan(PackageStyle.SELF_CONTAINED_DIRECTORY).rule_key != first.rule_key
    assert plan(PackageStyle.IN_PLACE).rule_key != first.rule_key
    assert first.tool is not None
    assert plan(PackageStyle.IN_PLACE).tool is None
    assert (tmp_path / "work").exists() is False


def test_default_output_path() -> None:
    config: PackagingConfig = PackagingConfig(pex_extension=".par")
    out: pathlib.Path = pathlib.Path("/out")

    assert default_output_path("//app:bin", config=config, out_dir=out) == out / "bin.par"
    assert default_output_path("tool", config=config, out_dir=out) == out / "tool.par"
    assert work_dir_for(out, "//app:bin") == out / "app_bin"


_PASSING_TEST: str = """
import unittest


class ArithmeticTest(unittest.TestCase):
    def test_addition(self) -> None:
        self.assertEqual(1 + 1, 2)
"""

_FAILING_TEST: str = """
import unittest


class BrokenTest(unittest.TestCase):
    def test_fails(self) -> None:
        self.assertEqual(1 + 1, 3)
"""


def _test_description(tmp_path: pathlib.Path, tests: dict[str, str]) -> PackageDescription:
    return description_from_mapping(
        {"name": "//app:tests", "tests": tests},
        path=tmp_path / "BUILD.yaml",
    )


def test_test_package_runs_its_modules(
    tmp_path: pathlib.Path,
    make_file: Callable[..., pathlib.Path],
) -> None:
    make_file("test_arith.py", _PASSING_TEST)
    description: PackageDescription = _test_description(tmp_path, {"test_arith.py": "test_arith.py"})
    output: pathlib.Path = tmp_path / "out" / "tests.pex"

    build_description(
        description,
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.SELF_CONTAINED_FILE),
    )

    listed = _run(output, "--list")
    assert listed.stdout == "test_arith\n"
    proc = _run(output)
    assert proc.returncode == 0, proc.stderr
    assert "OK" in proc.stderr


def test_test_package_reports_failures(
    tmp_path: pathlib.Path,
    make_file: Callable[..., pathlib.Path],
) -> None:
    make_file("test_arith.py", _PASSING_TEST)
    make_file("test_broken.py", _FAILING_TEST)
    description: PackageDescription = _test_description(
        tmp_path,
        {"test_arith.py": "test_arith.py", "test_broken.py": "test_broken.py"},
    )
    output: pathlib.Path = tmp_path / "out" / "tests"

    build_description(
        description,
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.SELF_CONTAINED_DIRECTORY),
    )

    proc = _run(output)
    assert proc.returncode == 1
    assert "test_fails" in proc.stderr


def test_in_place_test_package(
    tmp_path: pathlib.Path,
    make_file: Callable[..., pathlib.Path],
) -> None:
    make_file("tests/unit/test_arith.py", _PASSING_TEST)
    description: PackageDescription = _test_description(
        tmp_path,
        {"unit/test_arith.py": "tests/unit/test_arith.py"},
    )
    output: pathlib.Path = tmp_path / "out" / "tests"

    build_description(
        description,
        output_path=output,
        work_dir=tmp_path / "work",
        config=_config(PackageStyle.IN_PLACE),
    )

    proc = _run(output, "--list")
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout == "unit.test_arith\n"
    assert _run(output).returncode == 0
