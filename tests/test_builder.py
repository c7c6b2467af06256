"""Tests for the bundled default packaging tool."""

from collections.abc import Callable
import io
import json
import pathlib
import zipfile

import pytest

from python_packager import builder


def _manifest(**kwargs: object) -> builder.Manifest:
    fields: dict[str, object] = {"modules": {}, "resources": {}, "native_libraries": {}, "bundled_packages": []}
    fields.update(kwargs)
    return builder.Manifest(**fields)  # type: ignore[arg-type]


def _options(destination: pathlib.Path, **kwargs: object) -> builder.BuildOptions:
    fields: dict[str, object] = {
        "python": "/usr/bin/python3",
        "python_version": "CPython 3 12 1",
        "entry_point": "app.main",
        "zip_safe": True,
        "directory": False,
        "destination": destination,
        "compresslevel": 6,
    }
    fields.update(kwargs)
    return builder.BuildOptions(**fields)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("not json", "not valid JSON"),
        ("[]", "root must be an object"),
        ('{"modules": []}', "'modules' must be an object"),
        ('{"resources": {"a.txt": 1}}', "'resources' must map strings"),
        ('{"bundledPackages": "x.whl"}', "'bundledPackages' must be a list"),
    ],
)
def test_parse_manifest_rejects(text: str, message: str) -> None:
    with pytest.raises(builder.BuildError, match=message):
        builder.parse_manifest(text)


def test_parse_manifest_defaults() -> None:
    manifest: builder.Manifest = builder.parse_manifest('{"modules": {"a.py": "/src/a.py"}}')
    assert manifest == _manifest(modules={"a.py": "/src/a.py"})


def test_parse_args() -> None:
    options, verbose = builder.parse_args(
        [
            "--python",
            "/usr/bin/python3",
            "--python-version",
            "CPython 3 12 1",
            "--entry-point",
            "app.main",
            "--no-zip-safe",
            "--directory",
            "-v",
            "out/app",
        ]
    )
    assert options == _options(pathlib.Path("out/app"), zip_safe=False, directory=True)
    assert verbose == 1


def test_parse_args_requires_full_version() -> None:
    with pytest.raises(SystemExit):
        builder.parse_args(["--python", "p", "--python-version", "CPython 3 12", "--entry-point", "m", "out"])


def test_stage_layout(tmp_path: pathlib.Path, make_file: Callable[..., pathlib.Path]) -> None:
    wheel: pathlib.Path = tmp_path / "dist" / "dep-1.0-py3-none-any.whl"
    wheel.parent.mkdir(parents=True)
    with zipfile.ZipFile(wheel, "w") as zf:
        zf.writestr("dep/__init__.py", "")
        zf.writestr("dep-1.0.data/purelib/dep_extra.py", "")
        zf.writestr("dep-1.0.dist-info/METADATA", "")
    plain: pathlib.Path = tmp_path / "plain"
    (plain / "vendored").mkdir(parents=True)
    (plain / "vendored" / "__init__.py").write_text("", encoding="utf-8")
    manifest: builder.Manifest = _manifest(
        modules={"app/main.py": str(make_file("src/main.py", "print(1)\n"))},
        resources={"app/data.txt": str(make_file("src/data.txt", "d"))},
        native_libraries={"lib/libz.so": str(make_file("src/libz.so", ""))},
        bundled_packages=[str(wheel), str(plain)],
    )
    root: pathlib.Path = tmp_path / "root"
    root.mkdir()

    native: list[str] = builder.stage(manifest, root=root)

    assert native == [".native/lib/libz.so"]
    assert (root / "app" / "main.py").read_text(encoding="utf-8") == "print(1)\n"
    assert (root / "app" / "data.txt").is_file() is True
    assert (root / ".native" / "lib" / "libz.so").is_file() is True
    assert (root / ".deps" / "dep" / "__init__.py").is_file() is True
    assert (root / ".deps" / "dep_extra.py").is_file() is True
    assert (root / ".deps" / "dep-1.0.data").exists() is False
    assert (root / ".deps" / "vendored" / "__init__.py").is_file() is True


@pytest.mark.parametrize(
    ("modules", "message"),
    [
        ({"__main__.py": "x"}, "reserved for the package bootstrap"),
        ({".deps/x.py": "x"}, "reserved directory"),
        ({"../x.py": "x"}, "outside the package"),
        ({"a.py": "/does/not/exist.py"}, "Source file not found"),
    ],
)
def test_stage_rejects(tmp_path: pathlib.Path, modules: dict[str, str], message: str) -> None:
    with pytest.raises(builder.BuildError, match=message):
        builder.stage(_manifest(modules=modules), root=tmp_path)


def test_unsupported_bundled_package(tmp_path: pathlib.Path, make_file: Callable[..., pathlib.Path]) -> None:
    sdist: pathlib.Path = make_file("dist/dep-1.0.tar.gz", "")
    with pytest.raises(builder.BuildError, match="Unsupported bundled package"):
        builder.stage(_manifest(bundled_packages=[str(sdist)]), root=tmp_path / "root")


def test_bootstrap_compiles() -> None:
    source: str = builder.render_bootstrap(
        entry_point="app.main",
        python_version="CPython 3 12 1",
        zip_safe=False,
        native_libraries=[".native/libz.so"],
    )
    assert "_ENTRY_POINT: str = 'app.main'" in source
    assert "_ZIP_SAFE: bool = False" in source
    compile(source, "__main__.py", "exec")


def test_single_file_output_is_deterministic(tmp_path: pathlib.Path, make_file: Callable[..., pathlib.Path]) -> None:
    manifest: builder.Manifest = _manifest(
        modules={
            "app/__init__.py": str(make_file("src/__init__.py", "")),
            "app/main.py": str(make_file("src/main.py", "print('hi')\n")),
        },
    )

    first: pathlib.Path = builder.build(_options(tmp_path / "a" / "app.pex"), manifest)
    second: pathlib.Path = builder.build(_options(tmp_path / "b" / "app.pex"), manifest)

    assert first.read_bytes() == second.read_bytes()
    assert first.read_bytes().startswith(b"#!/usr/bin/python3\n") is True
    with zipfile.ZipFile(first) as zf:
        assert zf.namelist() == ["__main__.py", "app/__init__.py", "app/main.py"]
    assert [p.name for p in (tmp_path / "a").iterdir()] == ["app.pex"]


def test_native_code_disables_zip_safe(tmp_path: pathlib.Path, make_file: Callable[..., pathlib.Path]) -> None:
    manifest: builder.Manifest = _manifest(
        modules={"app/_speedups.so": str(make_file("src/_speedups.so", ""))},
    )

    out: pathlib.Path = builder.build(_options(tmp_path / "out", directory=True), manifest)

    assert "_ZIP_SAFE: bool = False" in (out / "__main__.py").read_text(encoding="utf-8")


def test_invalid_compresslevel(tmp_path: pathlib.Path) -> None:
    with pytest.raises(builder.BuildError, match="compresslevel"):
        builder.build(_options(tmp_path / "app.pex", compresslevel=12), _manifest())


def test_main_reports_errors(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"modules": {"a.py": str(tmp_path / "missing.py")}})))

    code: int = builder.main(
        ["--python", "python3", "--python-version", "CPython 3 12 1", "--entry-point", "a", str(tmp_path / "a.pex")]
    )

    assert code == 1
    assert "builder: error: Source file not found" in capsys.readouterr().err
    assert (tmp_path / "a.pex").exists() is False
