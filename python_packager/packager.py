"""Packaging strategy selection and build orchestration.

Building one package goes through the same steps whatever the style:

1. Resolve the interpreter (and, for self-contained styles, the packaging tool).
2. Select the packager for the configured style. Unsupported combinations fail
   here, before anything is written.
3. Merge the components of the package and its dependencies.
4. Compute the cache key.
5. Run the packager, which publishes the artifact only when it is complete.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
import logging
import os
import pathlib
import re
import shutil
import time

from python_packager.components import ComponentSet, EmptyInitCache, merge_components
from python_packager.config import PackageStyle, PackagingConfig
from python_packager.description import PackageDescription
from python_packager.errors import PackagingError
from python_packager.inplace import InPlacePackager, check_platform
from python_packager.pex import PexInvocation, PexStyle
from python_packager.rulekey import FileHashCache, compute_package_key
from python_packager.suite import build_test_components
from python_packager.toolchain import (
    PackagingTool,
    PythonEnvironment,
    PythonVersionCache,
    resolve_interpreter,
    resolve_packaging_tool,
    with_build_args,
)


@dataclass(frozen=True, slots=True)
class BuildCaches:
    """Caches shared by every package built in one process.

    :ivar versions: Interpreter version memo.
    :ivar empty_init: Shared empty ``__init__.py`` placeholder.
    :ivar hashes: Content hash memo for cache keys.
    """

    versions: PythonVersionCache = field(default_factory=PythonVersionCache)
    empty_init: EmptyInitCache = field(default_factory=EmptyInitCache)
    hashes: FileHashCache = field(default_factory=FileHashCache)


def _remove_path(path: pathlib.Path) -> None:
    if path.is_dir() is True and path.is_symlink() is False:
        shutil.rmtree(path)
    elif path.exists() is True or path.is_symlink() is True:
        path.unlink()


def publish(staged: pathlib.Path, output_path: pathlib.Path) -> None:
    """Move a finished artifact to its output path.

    :param staged: Complete artifact (file or directory).
    :param output_path: Final location; an existing artifact there is replaced.
    """

    output_path.parent.mkdir(parents=True, exist_ok=True)
    if output_path.is_dir() is True and output_path.is_symlink() is False:
        shutil.rmtree(output_path)
    os.replace(staged, output_path)


@dataclass(frozen=True, slots=True)
class SelfContainedPackager:
    """Builds self-contained packages with the external packaging tool.

    :ivar tool: Packaging tool.
    :ivar python: Target interpreter.
    :ivar style: Directory or single-file output.
    :ivar environment: Optional tool environment (defaults to the caller's).
    :ivar timeout: Optional tool timeout in seconds.
    """

    tool: PackagingTool
    python: PythonEnvironment
    style: PexStyle
    environment: Mapping[str, str] | None = None
    timeout: float | None = None

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
        """Run the tool into a staging path and publish the result.

        :param name: Build unit name.
        :param components: Merged components.
        :param entry_point: Dotted entry-point module name.
        :param output_path: Final artifact path.
        :param work_dir: Private generation directory of this build.
        :param logger: Optional logger for progress output.
        :returns: Artifact path.
        :raises ToolInvocationFailure: If the tool fails.
        :raises PackagingError: If the tool reports success but writes nothing.
        """

        staging_dir: pathlib.Path = work_dir / "staging"
        staging_dir.mkdir(parents=True, exist_ok=True)
        staged: pathlib.Path = staging_dir / output_path.name
        _remove_path(staged)

        expanded_dir: pathlib.Path = work_dir / "expanded"
        if expanded_dir.exists() is True:
            shutil.rmtree(expanded_dir)

        invocation: PexInvocation = PexInvocation(
            command_prefix=self.tool.command_prefix,
            python=self.python,
            destination=staged,
            entry_point=entry_point,
            components=components,
            style=self.style,
            temp_dir=expanded_dir,
            environment=self.environment,
            owner=name,
        )
        try:
            invocation.run(logger=logger, timeout=self.timeout)
        except BaseException:
            _remove_path(staged)
            raise

        if staged.exists() is False:
            raise PackagingError(f"{name}: packaging tool exited successfully but wrote nothing to {staged}")
        publish(staged, output_path)
        return output_path


def select_packager(
    style: PackageStyle,
    *,
    name: str,
    python: PythonEnvironment,
    tool: PackagingTool | None,
    target_platform: str,
    empty_init_cache: EmptyInitCache,
    environment: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> InPlacePackager | SelfContainedPackager:
    """Construct the packager for ``style``.

    :param style: Configured package style.
    :param name: Build unit name.
    :param python: Target interpreter.
    :param tool: Packaging tool (required by self-contained styles).
    :param target_platform: Platform the package runs on.
    :param empty_init_cache: Shared init placeholder store (in-place only).
    :param environment: Optional tool environment.
    :param timeout: Optional tool timeout in seconds.
    :returns: Packager.
    :raises UnsupportedLayoutForPlatform: For in-place packages on unsupported platforms.
    """

    if style is PackageStyle.IN_PLACE:
        check_platform(target_platform, owner=name)
        return InPlacePackager(python=python, empty_init_cache=empty_init_cache, target_platform=target_platform)

    pex_style: PexStyle
    if style is PackageStyle.SELF_CONTAINED_DIRECTORY:
        pex_style = PexStyle.DIRECTORY
    elif style is PackageStyle.SELF_CONTAINED_FILE:
        pex_style = PexStyle.FILE
    else:
        raise AssertionError(f"Unhandled package style: {style}")

    if tool is None:
        raise PackagingError(f"{name}: {style.value} packages need a packaging tool")
    return SelfContainedPackager(
        tool=tool,
        python=python,
        style=pex_style,
        environment=environment,
        timeout=timeout,
    )


def resolve_toolchain(
    config: PackagingConfig,
    *,
    versions: PythonVersionCache,
    build_args: Sequence[str] = (),
    search_path: str | None = None,
) -> tuple[PythonEnvironment, PackagingTool | None]:
    """Resolve the interpreter and, for self-contained styles, the tool.

    :param config: Packaging config.
    :param versions: Interpreter version memo.
    :param build_args: Extra tool arguments.
    :param search_path: Optional ``PATH`` override.
    :returns: ``(interpreter, tool or None)``.
    """

    interpreter: pathlib.Path = resolve_interpreter(config.interpreter, search_path=search_path)
    python: PythonEnvironment = versions.environment(interpreter)
    if config.package_style is PackageStyle.IN_PLACE:
        return (python, None)
    tool: PackagingTool = resolve_packaging_tool(config.path_to_pex, interpreter=interpreter, search_path=search_path)
    return (python, with_build_args(tool, build_args))


_UNSAFE_NAME_RE: re.Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")


def work_dir_for(work_dir: pathlib.Path, name: str) -> pathlib.Path:
    """Private generation directory of the build unit ``name``."""

    safe: str = _UNSAFE_NAME_RE.sub("_", name).strip("._")
    return work_dir / (safe if len(safe) > 0 else "package")


def default_output_path(name: str, *, config: PackagingConfig, out_dir: pathlib.Path) -> pathlib.Path:
    """Output path used when none is given: ``<out_dir>/<short name><pex_extension>``."""

    short: str = re.split(r"[/:]", name)[-1]
    safe: str = _UNSAFE_NAME_RE.sub("_", short).strip("._")
    return out_dir / f"{safe if len(safe) > 0 else 'package'}{config.pex_extension}"


@dataclass(frozen=True, slots=True)
class PackagePlan:
    """Everything decided before a package is written.

    :ivar name: Build unit name.
    :ivar style: Package style.
    :ivar entry_point: Dotted entry-point module name.
    :ivar components: Merged components.
    :ivar python: Target interpreter.
    :ivar tool: Packaging tool (self-contained styles only).
    :ivar packager: Selected packager.
    :ivar rule_key: Cache key.
    :ivar work_dir: Private generation directory.
    """

    name: str
    style: PackageStyle
    entry_point: str
    components: ComponentSet
    python: PythonEnvironment
    tool: PackagingTool | None
    packager: InPlacePackager | SelfContainedPackager
    rule_key: str
    work_dir: pathlib.Path


@dataclass(frozen=True, slots=True)
class PackageResult:
    """A published package.

    :ivar output_path: Artifact path.
    :ivar plan: Plan it was built from.
    """

    output_path: pathlib.Path
    plan: PackagePlan

    @property
    def rule_key(self) -> str:
        return self.plan.rule_key


def plan_package(
    *,
    name: str,
    components: ComponentSet,
    contributors: Sequence[ComponentSet],
    entry_point: str,
    work_dir: pathlib.Path,
    config: PackagingConfig,
    caches: BuildCaches | None = None,
    build_args: Sequence[str] = (),
    environment: Mapping[str, str] | None = None,
    timeout: float | None = None,
    search_path: str | None = None,
    logger: logging.Logger | None = None,
) -> PackagePlan:
    """Resolve, select, merge and key a package without writing it.

    :param name: Build unit name.
    :param components: Components of the unit itself.
    :param contributors: Components of its dependencies, in graph order.
    :param entry_point: Dotted entry-point module name.
    :param work_dir: Root of the private generation directories.
    :param config: Packaging config.
    :param caches: Shared caches (fresh ones by default).
    :param build_args: Extra tool arguments.
    :param environment: Optional tool environment.
    :param timeout: Optional tool timeout in seconds.
    :param search_path: Optional ``PATH`` override.
    :param logger: Optional logger for progress output.
    :returns: Package plan.
    """

    if logger is None:
        logger = logging.getLogger("python_packager")
    if caches is None:
        caches = BuildCaches()

    t0: float = time.perf_counter()
    python, tool = resolve_toolchain(
        config,
        versions=caches.versions,
        build_args=build_args,
        search_path=search_path,
    )
    packager: InPlacePackager | SelfContainedPackager = select_packager(
        config.package_style,
        name=name,
        python=python,
        tool=tool,
        target_platform=config.target_platform,
        empty_init_cache=caches.empty_init,
        environment=environment,
        timeout=timeout,
    )
    t1: float = time.perf_counter()
    logger.info(f"python-packager: {name}: using {python.version} at {python.path} ({t1 - t0:.2f}s)")

    merged: ComponentSet = merge_components(components, contributors, owner=name)
    t2: float = time.perf_counter()
    logger.info(
        f"python-packager: {name}: merged {len(contributors) + 1} component sets "
        f"({len(merged.modules)} modules, {len(merged.resources)} resources, "
        f"{len(merged.native_libraries)} native libraries, {len(merged.bundled_packages)} bundled packages) "
        f"in {t2 - t1:.2f}s"
    )

    rule_key: str = compute_package_key(
        components=merged,
        entry_point=entry_point,
        package_style=config.package_style.value,
        hashes=caches.hashes,
        tool=tool,
        python_version=python.version if tool is not None else None,
        interpreter=python.path if tool is None else None,
    )
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"python-packager: {name}: rule key {rule_key}")

    return PackagePlan(
        name=name,
        style=config.package_style,
        entry_point=entry_point,
        components=merged,
        python=python,
        tool=tool,
        packager=packager,
        rule_key=rule_key,
        work_dir=work_dir_for(work_dir, name),
    )


def build_package(
    *,
    name: str,
    components: ComponentSet,
    contributors: Sequence[ComponentSet],
    entry_point: str,
    output_path: pathlib.Path,
    work_dir: pathlib.Path,
    config: PackagingConfig,
    caches: BuildCaches | None = None,
    build_args: Sequence[str] = (),
    environment: Mapping[str, str] | None = None,
    timeout: float | None = None,
    search_path: str | None = None,
    logger: logging.Logger | None = None,
) -> PackageResult:
    """Build and publish one package.

    :param output_path: Artifact path.
    :returns: Published package.
    :raises PackagingError: On any packaging failure.
    """

    if logger is None:
        logger = logging.getLogger("python_packager")

    plan: PackagePlan = plan_package(
        name=name,
        components=components,
        contributors=contributors,
        entry_point=entry_point,
        work_dir=work_dir,
        config=config,
        caches=caches,
        build_args=build_args,
        environment=environment,
        timeout=timeout,
        search_path=search_path,
        logger=logger,
    )

    t0: float = time.perf_counter()
    plan.work_dir.mkdir(parents=True, exist_ok=True)
    plan.packager.package(
        name=name,
        components=plan.components,
        entry_point=plan.entry_point,
        output_path=output_path,
        work_dir=plan.work_dir,
        logger=logger,
    )
    t1: float = time.perf_counter()
    logger.info(f"python-packager: {name}: wrote {plan.style.value} package {output_path} in {t1 - t0:.2f}s")
    return PackageResult(output_path=output_path, plan=plan)


def _description_inputs(
    description: PackageDescription,
    *,
    work_dir: pathlib.Path,
    config: PackagingConfig,
) -> tuple[str, tuple[ComponentSet, ...]]:
    """Entry point and contributors of a description (test packages included)."""

    if description.is_test() is False:
        if description.entry_point is None:
            raise PackagingError(f"Internal error: {description.name} has no entry point.")
        return (description.entry_point, description.contributors)

    if config.package_style is PackageStyle.IN_PLACE:
        check_platform(config.target_platform, owner=description.name)
    entry_point, test_components = build_test_components(
        description.tests,
        gen_dir=work_dir_for(work_dir, description.name) / "test_modules",
        owner=description.name,
    )
    return (entry_point, (test_components, *description.contributors))


def plan_description(
    description: PackageDescription,
    *,
    work_dir: pathlib.Path,
    config: PackagingConfig,
    caches: BuildCaches | None = None,
    timeout: float | None = None,
    search_path: str | None = None,
    logger: logging.Logger | None = None,
) -> PackagePlan:
    """Plan the package a description file names (see :func:`plan_package`)."""

    entry_point, contributors = _description_inputs(description, work_dir=work_dir, config=config)
    return plan_package(
        name=description.name,
        components=description.components,
        contributors=contributors,
        entry_point=entry_point,
        work_dir=work_dir,
        config=config,
        caches=caches,
        build_args=description.build_args,
        timeout=timeout,
        search_path=search_path,
        logger=logger,
    )


def build_description(
    description: PackageDescription,
    *,
    output_path: pathlib.Path,
    work_dir: pathlib.Path,
    config: PackagingConfig,
    caches: BuildCaches | None = None,
    timeout: float | None = None,
    search_path: str | None = None,
    logger: logging.Logger | None = None,
) -> PackageResult:
    """Build the package a description file names (see :func:`build_package`)."""

    entry_point, contributors = _description_inputs(description, work_dir=work_dir, config=config)
    return build_package(
        name=description.name,
        components=description.components,
        contributors=contributors,
        entry_point=entry_point,
        output_path=output_path,
        work_dir=work_dir,
        config=config,
        caches=caches,
        build_args=description.build_args,
        timeout=timeout,
        search_path=search_path,
        logger=logger,
    )
