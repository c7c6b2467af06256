"""Command line interface for python-packager."""

import argparse
import logging
import pathlib
import sys

from python_packager.config import PackagingConfig, apply_overrides, load_config
from python_packager.description import PackageDescription, load_description
from python_packager.errors import PackagingError
from python_packager.packager import (
    BuildCaches,
    PackagePlan,
    PackageResult,
    build_description,
    default_output_path,
    plan_description,
)

DEFAULT_WORK_DIR: pathlib.Path = pathlib.Path(".python_packager_out")


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the python-packager logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("python_packager")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "description",
        type=pathlib.Path,
        help="Path to the package description (.yaml, .yml or .json).",
    )
    p.add_argument(
        "--config",
        type=pathlib.Path,
        default=None,
        help="Packaging config file whose 'python' section sets the defaults.",
    )
    p.add_argument(
        "--package-style",
        type=str,
        default=None,
        help="in-place, self-contained-directory or self-contained-file (default: from config).",
    )
    p.add_argument(
        "--interpreter",
        type=str,
        default=None,
        help="Python interpreter path or name to package for.",
    )
    p.add_argument(
        "--path-to-pex",
        type=str,
        default=None,
        help="External packaging tool to use instead of the bundled builder.",
    )
    p.add_argument(
        "--target-platform",
        type=str,
        default=None,
        help="Platform the package runs on (default: host).",
    )
    p.add_argument(
        "--work-dir",
        type=pathlib.Path,
        default=DEFAULT_WORK_DIR,
        help=f"Directory for intermediate files (default: {DEFAULT_WORK_DIR}).",
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Kill the packaging tool after this many seconds.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _load(ns: argparse.Namespace, logger: logging.Logger) -> tuple[PackagingConfig, PackageDescription]:
    """Load config and description from parsed arguments."""

    config: PackagingConfig = PackagingConfig()
    if ns.config is not None:
        config = load_config(ns.config)
    config = apply_overrides(
        config,
        package_style=ns.package_style,
        interpreter=ns.interpreter,
        path_to_pex=ns.path_to_pex,
        target_platform=ns.target_platform,
    )
    description: PackageDescription = load_description(
        ns.description,
        native_link_strategy=config.native_link_strategy,
        logger=logger,
    )
    return (config, description)


def main(argv: list[str] | None = None) -> int:
    """Run the python-packager CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="python-packager",
        description="Assemble runnable Python packages from a package description.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build a package.",
    )
    _add_common_arguments(p_build)
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output path (default: <work-dir>/<name><pex_extension>).",
    )
    p_build.add_argument(
        "--show-rulekey",
        action="store_true",
        help="Also print the package's cache key.",
    )

    p_rulekey = subparsers.add_parser(
        "rulekey",
        help="Print the cache key of a package without building it.",
    )
    _add_common_arguments(p_rulekey)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
    try:
        config, description = _load(ns, logger)
        caches: BuildCaches = BuildCaches()

        if ns.command == "build":
            output: pathlib.Path = ns.output
            if output is None:
                output = default_output_path(description.name, config=config, out_dir=ns.work_dir)
            result: PackageResult = build_description(
                description,
                output_path=output,
                work_dir=ns.work_dir,
                config=config,
                caches=caches,
                timeout=ns.timeout,
                logger=logger,
            )
            print(result.output_path)
            if ns.show_rulekey is True:
                print(result.rule_key)
            return 0

        if ns.command == "rulekey":
            plan: PackagePlan = plan_description(
                description,
                work_dir=ns.work_dir,
                config=config,
                caches=caches,
                timeout=ns.timeout,
                logger=logger,
            )
            print(plan.rule_key)
            return 0
    except PackagingError as e:
        sys.stderr.write(f"python-packager: error: {e}\n")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
