"""Test packages.

A test package runs its test modules instead of an entry point: it carries a
generated ``__test_modules__.py`` listing the modules and the packaged
``__test_main__.py`` runner, which is the entry point.
"""

from collections.abc import Iterable
import pathlib

from python_packager.components import DestMap, INIT_MODULE, ComponentSet, SourcePath, to_module_name

TEST_MAIN_MODULE: str = "__test_main__"
TEST_MODULES_MODULE: str = "__test_modules__"

TEST_MAIN_SOURCE: pathlib.Path = pathlib.Path(__file__).resolve().parent / "resources" / f"{TEST_MAIN_MODULE}.py"


def collect_test_module_names(tests: DestMap, *, owner: str | None = None) -> list[str]:
    """Dotted names of the Python test sources, sorted.

    Non-Python entries are skipped; a package ``__init__.py`` is named after
    its package.
    """

    names: set[str] = set()
    for dest in tests:
        if dest.suffix != ".py":
            continue
        name: str = to_module_name(dest, owner=owner)
        if dest.name == INIT_MODULE:
            name = name.rpartition(".")[0]
            if len(name) == 0:
                continue
        names.add(name)
    return sorted(names)


def render_test_modules_list(modules: Iterable[str]) -> str:
    """Render the ``__test_modules__.py`` source."""

    lines: list[str] = ["TEST_MODULES = ["]
    for module in modules:
        lines.append(f"    {module!r},")
    lines.append("]")
    return "\n".join(lines) + "\n"


def build_test_components(
    tests: DestMap,
    *,
    gen_dir: pathlib.Path,
    owner: str,
) -> tuple[str, ComponentSet]:
    """Components that turn ``tests`` into a runnable test package.

    :param tests: Test module destination -> source.
    :param gen_dir: Directory for the generated module list.
    :param owner: Build unit name.
    :returns: ``(entry point, components)``.
    """

    modules_list: pathlib.Path = gen_dir / f"{TEST_MODULES_MODULE}.py"
    modules_list.parent.mkdir(parents=True, exist_ok=True)
    contents: str = render_test_modules_list(collect_test_module_names(tests, owner=owner))
    if modules_list.is_file() is False or modules_list.read_text(encoding="utf-8") != contents:
        modules_list.write_text(contents, encoding="utf-8")

    modules: dict[pathlib.PurePosixPath, SourcePath] = dict(tests)
    modules[pathlib.PurePosixPath(f"{TEST_MODULES_MODULE}.py")] = SourcePath(
        path=modules_list,
        target=f"{owner}#test_module",
    )
    modules[pathlib.PurePosixPath(f"{TEST_MAIN_MODULE}.py")] = SourcePath(path=TEST_MAIN_SOURCE)
    return (TEST_MAIN_MODULE, ComponentSet(modules=modules))
