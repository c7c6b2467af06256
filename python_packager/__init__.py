"""python-packager.

The packaging backend of a build orchestrator: merges the modules, resources,
native libraries and bundled third-party packages contributed by a set of build
units, and assembles them into a runnable Python package (an in-place symlink
layout, or a self-contained directory / single file produced by an external
packaging tool).
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
