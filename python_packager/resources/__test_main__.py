"""Test runner packaged into python-packager test packages.

Loads every module listed in ``__test_modules__.TEST_MODULES`` and runs their
tests with ``unittest``. Extra command-line arguments select tests by name
(``module.Class.test_method``) instead.
"""

import argparse
import sys
import unittest

from __test_modules__ import TEST_MODULES


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(description="Run packaged tests.")
    parser.add_argument("tests", nargs="*", help="Test names to run (default: all packaged modules).")
    parser.add_argument("-v", "--verbose", action="count", default=1, help="Increase output verbosity.")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal output.")
    parser.add_argument("--list", action="store_true", help="List the packaged test modules and exit.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Program entrypoint.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    ns: argparse.Namespace = _parse_args(sys.argv[1:] if argv is None else argv)
    if ns.list is True:
        for module in TEST_MODULES:
            print(module)
        return 0

    loader: unittest.TestLoader = unittest.TestLoader()
    names: list[str] = list(ns.tests) if len(ns.tests) > 0 else list(TEST_MODULES)
    suite: unittest.TestSuite = loader.loadTestsFromNames(names)
    verbosity: int = 0 if ns.quiet is True else ns.verbose
    result: unittest.TestResult = unittest.TextTestRunner(verbosity=verbosity).run(suite)
    return 0 if result.wasSuccessful() is True else 1


if __name__ == "__main__":
    sys.exit(main())
