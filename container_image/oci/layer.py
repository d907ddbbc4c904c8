import logging
import os
import posixpath
import shutil
import tarfile
from pathlib import Path
from typing import BinaryIO

from container_image.exceptions import FilesystemError

logger = logging.getLogger(__name__)

DIR_MODE = 0o700
PERMISSION_BITS = 0o777


def _target(dest: Path, name: str) -> Path | None:
    """Return where entry `name` lands below `dest`, or None if it escapes `dest`"""
    relpath = posixpath.normpath(name.lstrip("/"))
    if relpath == "." or relpath == ".." or relpath.startswith("../"):
        return None
    path = dest / relpath
    # a symlink extracted earlier must not redirect later entries outside `dest`
    if not path.parent.resolve().is_relative_to(dest.resolve()):
        return None
    return path


def _remove(path: Path):
    if path.is_symlink() or path.is_file():
        path.unlink()


def _extract_member(
    archive: tarfile.TarFile,
    member: tarfile.TarInfo,
    dest: Path,
    directories: list[tuple[Path, int]],
):
    path = _target(dest, member.name)
    if path is None:
        logger.warning("Skipping %s: path outside of the layer", member.name)
        return
    path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    mode = member.mode & PERMISSION_BITS

    if member.isdir():
        if path.is_symlink():
            path.unlink()
        path.mkdir(mode=DIR_MODE, exist_ok=True)
        directories.append((path, mode))
    elif member.isreg():
        if path.is_symlink():
            path.unlink()
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as dst:
            shutil.copyfileobj(archive.extractfile(member), dst)
    elif member.issym():
        _remove(path)
        os.symlink(member.linkname, path)
    elif member.islnk():
        source = _target(dest, member.linkname)
        if source is None or not source.exists():
            logger.warning(
                "Skipping hard link %s: %s is not part of this layer",
                member.name,
                member.linkname,
            )
            return
        _remove(path)
        os.link(source, path, follow_symlinks=False)
    else:
        logger.warning(
            "Skipping %s: unsupported entry type %r", member.name, member.type
        )


def extract_layer(fileobj: BinaryIO, dest: Path):
    """Extract the compressed tar stream `fileobj` into `dest`

    Directories and regular files are created with the permission bits of
    their entry, symbolic links are recreated as is, hard links only when
    their target is part of the same layer. Devices and FIFOs are skipped.
    Directory modes are applied once the whole layer is extracted. Nothing
    is rolled back when extraction fails half way.
    """
    try:
        dest.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        directories = []
        with tarfile.open(fileobj=fileobj, mode="r|*") as archive:
            for member in archive:
                _extract_member(archive, member, dest, directories)
            # read-only directories must not reject the entries below them
            for path, mode in reversed(directories):
                if not path.is_symlink():
                    os.chmod(path, mode)
    except tarfile.TarError as e:
        raise FilesystemError(f"{dest}: invalid layer archive: {e}") from e
    except OSError as e:
        raise FilesystemError(f"{dest}: {e}") from e
