"""Shared fixtures for python-packager tests."""

from collections.abc import Callable
import pathlib
import sys
import textwrap

import pytest

from python_packager.components import ComponentSet, SourcePath
from python_packager.toolchain import PythonEnvironment, PythonVersion


def _implementation_name() -> str:
    if hasattr(sys, "pypy_version_info") is True:
        return "PyPy"
    return "CPython"


@pytest.fixture
def host_version() -> PythonVersion:
    """Version identity of the interpreter running the tests."""

    info = sys.version_info
    return PythonVersion(
        interpreter_name=_implementation_name(),
        version_string=f"{info[0]}.{info[1]}.{info[2]}",
    )


@pytest.fixture
def host_python(host_version: PythonVersion) -> PythonEnvironment:
    return PythonEnvironment(path=pathlib.Path(sys.executable), version=host_version)


@pytest.fixture
def make_file(tmp_path: pathlib.Path) -> Callable[..., pathlib.Path]:
    """Write a file under ``tmp_path`` and return its path."""

    def _make(rel: str, content: str = "", *, executable: bool = False) -> pathlib.Path:
        path: pathlib.Path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
        if executable is True:
            path.chmod(0o755)
        return path

    return _make


@pytest.fixture
def make_tool(make_file: Callable[..., pathlib.Path]) -> Callable[[str, str], pathlib.Path]:
    """Write an executable Python script usable as a packaging tool."""

    def _make(rel: str, body: str) -> pathlib.Path:
        source: str = f"#!{sys.executable}\n" + textwrap.dedent(body).lstrip()
        path: pathlib.Path = make_file(rel, "", executable=True)
        path.write_text(source, encoding="utf-8")
        return path

    return _make


@pytest.fixture
def app_components(make_file: Callable[..., pathlib.Path]) -> ComponentSet:
    """A small application: ``app.main`` prints a greeting and reads a resource."""

    init: pathlib.Path = make_file("src/app/__init__.py", "")
    main: pathlib.Path = make_file(
        "src/app/main.py",
        """
        import os
        import sys

        print("hello from app")
        print("argv0=" + os.path.basename(sys.argv[0]))
        """,
    )
    data: pathlib.Path = make_file("src/app/data.txt", "payload\n")
    return ComponentSet(
        modules={
            "app/__init__.py": SourcePath(path=init, target="//app:lib"),
            "app/main.py": SourcePath(path=main, target="//app:lib"),
        },
        resources={"app/data.txt": SourcePath(path=data, target="//app:lib")},
    )
