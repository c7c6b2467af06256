"""Packaging configuration.

Configuration comes from an optional YAML or JSON file whose ``python``
section holds the packaging options, overridden by command-line flags::

    python:
      package_style: self-contained-file
      interpreter: /usr/bin/python3
      path_to_pex: tools/pex.sh
      pex_extension: .pex
      native_link_strategy: separate
      target_platform: linux
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
import enum
import json
import pathlib
import sys
from typing import Any

import yaml

from python_packager.errors import ConfigError, PackagingError

SECTION: str = "python"


class PackageStyle(enum.Enum):
    """How a package is assembled."""

    IN_PLACE = "in-place"
    SELF_CONTAINED_DIRECTORY = "self-contained-directory"
    SELF_CONTAINED_FILE = "self-contained-file"


_STYLE_ALIASES: dict[str, PackageStyle] = {
    "inplace": PackageStyle.IN_PLACE,
    "pex_inplace": PackageStyle.SELF_CONTAINED_DIRECTORY,
    "standalone": PackageStyle.SELF_CONTAINED_FILE,
}


class NativeLinkStrategy(enum.Enum):
    """How upstream native code reaches the package."""

    SEPARATE = "separate"
    MERGED = "merged"


def host_platform() -> str:
    """Name of the host platform (``linux``, ``darwin``, ``windows``, ...)."""

    if sys.platform.startswith("win") is True:
        return "windows"
    if sys.platform.startswith("linux") is True:
        return "linux"
    return sys.platform


@dataclass(frozen=True, slots=True)
class PackagingConfig:
    """Resolved packaging options.

    :ivar package_style: Packaging strategy.
    :ivar interpreter: Explicit interpreter path or name.
    :ivar path_to_pex: Explicit packaging tool path or name.
    :ivar pex_extension: File extension of single-file packages.
    :ivar native_link_strategy: How native libraries are contributed.
    :ivar target_platform: Platform the package is built for.
    """

    package_style: PackageStyle = PackageStyle.SELF_CONTAINED_FILE
    interpreter: str | None = None
    path_to_pex: str | None = None
    pex_extension: str = ".pex"
    native_link_strategy: NativeLinkStrategy = NativeLinkStrategy.SEPARATE
    target_platform: str = field(default_factory=host_platform)


def parse_package_style(value: str) -> PackageStyle:
    """Parse a package style name (canonical or legacy alias).

    :param value: Style name, case-insensitive.
    :returns: Package style.
    :raises ConfigError: If the name is unknown.
    """

    v: str = value.strip().lower()
    for style in PackageStyle:
        if style.value == v:
            return style
    alias: PackageStyle | None = _STYLE_ALIASES.get(v)
    if alias is not None:
        return alias
    known: list[str] = [s.value for s in PackageStyle] + sorted(_STYLE_ALIASES)
    raise ConfigError(f"Unknown package_style {value!r}; expected one of {', '.join(known)}")


def parse_native_link_strategy(value: str) -> NativeLinkStrategy:
    """Parse a native link strategy name.

    :raises ConfigError: If the name is unknown.
    """

    v: str = value.strip().lower()
    for strategy in NativeLinkStrategy:
        if strategy.value == v:
            return strategy
    raise ConfigError(f"Unknown native_link_strategy {value!r}; expected separate or merged")


def _optional_str(section: Mapping[str, Any], key: str) -> str | None:
    value: Any = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{SECTION}.{key} must be a string, got {type(value).__name__}")
    return value


def config_from_mapping(data: Mapping[str, Any]) -> PackagingConfig:
    """Build a config from a parsed document.

    :param data: Document root (the ``python`` section is read).
    :returns: Packaging config.
    :raises ConfigError: If the section is malformed.
    """

    section: Any = data.get(SECTION, {})
    if section is None:
        section = {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"[{SECTION}] section must be a mapping, got {type(section).__name__}")

    config: PackagingConfig = PackagingConfig()
    style: str | None = _optional_str(section, "package_style")
    if style is not None:
        config = replace(config, package_style=parse_package_style(style))
    strategy: str | None = _optional_str(section, "native_link_strategy")
    if strategy is not None:
        config = replace(config, native_link_strategy=parse_native_link_strategy(strategy))
    extension: str | None = _optional_str(section, "pex_extension")
    if extension is not None:
        config = replace(config, pex_extension=extension)
    platform: str | None = _optional_str(section, "target_platform")
    if platform is not None:
        config = replace(config, target_platform=platform.strip().lower())
    return replace(
        config,
        interpreter=_optional_str(section, "interpreter"),
        path_to_pex=_optional_str(section, "path_to_pex"),
    )


def read_document(path: pathlib.Path, *, error: type[PackagingError] = ConfigError) -> Mapping[str, Any]:
    """Read a YAML or JSON document whose root is a mapping.

    Supported formats: YAML (``.yaml``, ``.yml``) and JSON (``.json``).
    An empty file yields an empty mapping.

    :param path: Document path.
    :param error: Error class raised on failure.
    :returns: Document root.
    :raises PackagingError: If the file is missing, unsupported or malformed.
    """

    if path.is_file() is False:
        raise error(f"File not found: {path}")

    suffix: str = path.suffix.lower()
    if suffix not in {".yaml", ".yml", ".json"}:
        raise error(f"Unsupported file format {path.suffix!r} (expected .yaml, .yml or .json): {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            if suffix == ".json":
                data: Any = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise error(f"Could not parse {path}: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise error(f"Could not read {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise error(f"Document root must be a mapping, got {type(data).__name__}: {path}")
    return data


def load_config(path: pathlib.Path) -> PackagingConfig:
    """Load a config file.

    :param path: YAML or JSON config file.
    :returns: Packaging config.
    :raises ConfigError: If the file is missing, unsupported or malformed.
    """

    return config_from_mapping(read_document(path, error=ConfigError))


def apply_overrides(
    config: PackagingConfig,
    *,
    package_style: str | None = None,
    interpreter: str | None = None,
    path_to_pex: str | None = None,
    target_platform: str | None = None,
) -> PackagingConfig:
    """Apply command-line overrides (``None`` keeps the configured value).

    :param config: Base config.
    :returns: Updated config.
    """

    changes: dict[str, Any] = {}
    if package_style is not None:
        changes["package_style"] = parse_package_style(package_style)
    if interpreter is not None:
        changes["interpreter"] = interpreter
    if path_to_pex is not None:
        changes["path_to_pex"] = path_to_pex
    if target_platform is not None:
        changes["target_platform"] = target_platform.strip().lower()
    if len(changes) == 0:
        return config
    return replace(config, **changes)
