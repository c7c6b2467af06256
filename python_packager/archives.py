"""Expansion of source archives.

Some build units hand over their sources as a single ``.src.zip`` archive of
individually addressable modules. Before those can be packaged (or compiled),
the archive entry is replaced by one entry per contained file.
"""

from collections.abc import Callable, Mapping
import pathlib
import shutil
import zipfile

from python_packager.errors import ArchiveExpansionError, PackagingConflict

SRC_ZIP: str = ".src.zip"


def is_source_archive(path: pathlib.PurePath, *, suffix: str = SRC_ZIP) -> bool:
    """Check whether ``path`` names an archive of sources.

    :param path: Source path.
    :param suffix: Reserved archive suffix.
    :returns: ``True`` if the name ends with the suffix.
    """

    return str(path).endswith(suffix) is True


def extension_filter(*extensions: str) -> Callable[[pathlib.PurePosixPath], bool]:
    """Build a filter keeping expanded entries with one of ``extensions``.

    Packaging keeps every archive member; this is the ``keep`` argument for
    callers that expand archives mixing sources with other files.

    :param extensions: Suffixes to keep (e.g. ``".py"``).
    :returns: Predicate over archive member paths.
    """

    wanted: tuple[str, ...] = tuple(extensions)

    def keep(member: pathlib.PurePosixPath) -> bool:
        return member.name.endswith(wanted) is True

    return keep


def _safe_member_path(name: str, *, archive: pathlib.Path) -> pathlib.PurePosixPath:
    """Validate a zip member name.

    :param name: Member name from the archive.
    :param archive: Archive path (for errors).
    :returns: Member path.
    :raises ArchiveExpansionError: If the name would escape the extraction root.
    """

    if "\\" in name:
        raise ArchiveExpansionError(f"Refusing to extract backslash path {name!r}", archive=archive)
    if ":" in name:
        raise ArchiveExpansionError(f"Refusing to extract drive-like path {name!r}", archive=archive)
    p: pathlib.PurePosixPath = pathlib.PurePosixPath(name)
    if p.is_absolute() is True:
        raise ArchiveExpansionError(f"Refusing to extract absolute path {name!r}", archive=archive)
    if ".." in p.parts:
        raise ArchiveExpansionError(f"Refusing to extract parent-traversal path {name!r}", archive=archive)
    return p


def expand_source_archive(
    *,
    destination: pathlib.PurePosixPath,
    archive: pathlib.Path,
    work_dir: pathlib.Path,
    keep: Callable[[pathlib.PurePosixPath], bool] | None = None,
) -> list[tuple[pathlib.PurePosixPath, pathlib.Path]]:
    """Extract one source archive and map its members to destinations.

    Members are extracted under ``work_dir / destination`` (existing files are
    overwritten). Each extracted file's destination is its path relative to
    that directory.

    :param destination: Destination the archive entry was mapped to.
    :param archive: Archive file.
    :param work_dir: Private per-invocation scratch directory.
    :param keep: Optional filter over member paths.
    :returns: ``(destination, extracted file)`` pairs, sorted by destination.
    :raises ArchiveExpansionError: If the archive cannot be read or extracted.
    """

    out_dir: pathlib.Path = work_dir.joinpath(*destination.parts)
    pairs: list[tuple[pathlib.PurePosixPath, pathlib.Path]] = []
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive, mode="r") as zf:
            for info in zf.infolist():
                member: pathlib.PurePosixPath = _safe_member_path(info.filename, archive=archive)
                out_path: pathlib.Path = out_dir.joinpath(*member.parts)
                if info.is_dir() is True:
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, mode="r") as src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                if keep is not None and keep(member) is False:
                    continue
                pairs.append((member, out_path))
    except zipfile.BadZipFile as e:
        raise ArchiveExpansionError("Bad source archive", archive=archive) from e
    except OSError as e:
        raise ArchiveExpansionError(f"Could not extract source archive ({e})", archive=archive) from e

    pairs.sort(key=lambda pair: pair[0].as_posix())
    return pairs


def expand_source_archives(
    entries: Mapping[pathlib.PurePosixPath, pathlib.Path],
    *,
    work_dir: pathlib.Path,
    suffix: str = SRC_ZIP,
    keep: Callable[[pathlib.PurePosixPath], bool] | None = None,
    owner: str | None = None,
) -> dict[pathlib.PurePosixPath, pathlib.Path]:
    """Replace every archive entry of ``entries`` by its expanded members.

    Non-archive entries are passed through unchanged, in order.

    :param entries: Destination -> source file.
    :param work_dir: Private per-invocation scratch directory.
    :param suffix: Reserved archive suffix.
    :param keep: Optional filter over expanded member paths.
    :param owner: Build unit name for conflict messages.
    :returns: Expanded destination -> source file mapping.
    :raises ArchiveExpansionError: If an archive cannot be extracted.
    :raises PackagingConflict: If an expanded member collides with another entry.
    """

    expanded: dict[pathlib.PurePosixPath, pathlib.Path] = {}
    for dest, source in entries.items():
        pairs: list[tuple[pathlib.PurePosixPath, pathlib.Path]]
        if is_source_archive(source, suffix=suffix) is True:
            pairs = expand_source_archive(destination=dest, archive=source, work_dir=work_dir, keep=keep)
        else:
            pairs = [(dest, source)]

        for new_dest, path in pairs:
            existing: pathlib.Path | None = expanded.get(new_dest)
            if existing is not None and existing != path:
                raise PackagingConflict(
                    owner=owner,
                    kind="module",
                    destination=new_dest,
                    first=existing,
                    second=path,
                )
            expanded[new_dest] = path
    return expanded
