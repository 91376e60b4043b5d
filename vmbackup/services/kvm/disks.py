"""
Disk image discovery, copying and descriptor remapping.
"""
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field

from vmbackup.services.kvm.descriptor import Descriptor, DISK_SOURCE_SELECTOR
from vmbackup.services.kvm.errors import DiskCopyError
from vmbackup.services.kvm.privilege import PrivilegedRunner

logger = logging.getLogger(__name__)


class DiskCopyReport(BaseModel):
    """Outcome of copying a set of disk images."""
    copied: Dict[str, str] = Field(default_factory=dict)  # source path -> destination path
    skipped: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


def list_disk_paths(descriptor: Descriptor) -> List[str]:
    """Source file paths of all disk devices, in document order."""
    return descriptor.find_all(DISK_SOURCE_SELECTOR)


def find_backup_files(backup_dir: Union[str, Path], basename: str) -> List[Path]:
    """
    Find every file with the given basename under a backup directory.

    The walk is top-down with sorted subdirectories, so the first entry is
    stable between runs.
    """
    matches = []
    for dirpath, dirnames, filenames in os.walk(backup_dir):
        dirnames.sort()
        if basename in filenames:
            matches.append(Path(dirpath) / basename)
    return matches


def remap_disk_sources(descriptor: Descriptor, mapping: Dict[str, str]) -> int:
    """
    Point disk sources at their new locations.

    Every ``<disk><source file=...>`` whose path is a key in mapping is
    rewritten to the mapped value; other disks are left as they are.

    Returns:
        Number of source elements rewritten
    """
    rewritten = 0
    for source in descriptor.root.findall(".//disk/source"):
        old_path = source.get("file")
        if old_path in mapping:
            source.set("file", mapping[old_path])
            rewritten += 1
    return rewritten


class DiskCopier:
    """Copies disk images, retrying once with elevated privilege on permission errors."""

    def __init__(self, runner: Optional[PrivilegedRunner] = None):
        self.runner = runner or PrivilegedRunner()

    def _warn(self, report: DiskCopyReport, message: str):
        logger.warning(message)
        report.warnings.append(message)

    def copy_file(self, source: Union[str, Path], destination: Union[str, Path]):
        """
        Copy one file, escalating once if the current user lacks permission.

        Only PermissionError triggers the elevated retry; any other failure,
        or a failure of the elevated copy itself, raises DiskCopyError.
        """
        source, destination = str(source), str(destination)

        if os.access(source, os.R_OK):
            try:
                shutil.copy2(source, destination)
                return
            except PermissionError as e:
                if self.runner.is_privileged:
                    raise DiskCopyError(source, destination, str(e)) from e
                logger.warning(f"Permission denied copying {source}, retrying with elevated privilege")
            except OSError as e:
                raise DiskCopyError(source, destination, str(e)) from e
        else:
            if self.runner.is_privileged:
                raise DiskCopyError(source, destination, "source is not readable")
            logger.warning(f"{source} is not readable by current user, copying with elevated privilege")

        try:
            self.runner.copy(source, destination)
        except subprocess.CalledProcessError as e:
            reason = (e.stderr or "").strip() or f"exit status {e.returncode}"
            raise DiskCopyError(source, destination, reason) from e
        except OSError as e:
            raise DiskCopyError(source, destination, str(e)) from e

    def copy_for_backup(self, paths: List[str], dest_dir: Union[str, Path]) -> DiskCopyReport:
        """
        Copy a machine's disk images into a backup directory by basename.

        Missing sources are skipped with a warning. A copy that still fails
        after escalation raises DiskCopyError and aborts the backup.
        """
        dest_dir = Path(dest_dir)
        report = DiskCopyReport()
        used_names = set()

        for path in paths:
            diskname = os.path.basename(path)
            logger.info(f"Copying: {diskname}")

            if not os.path.isfile(path):
                self._warn(report, f"Disk not found: {path}")
                report.skipped.append(path)
                continue

            if diskname in used_names:
                self._warn(report, f"Disk {path} has the same file name as an earlier disk, skipping")
                report.skipped.append(path)
                continue

            destination = dest_dir / diskname
            self.copy_file(path, destination)
            used_names.add(diskname)
            report.copied[path] = str(destination)

        return report

    def copy_for_restore(
        self,
        paths: List[str],
        backup_dir: Union[str, Path],
        dest_dir: Union[str, Path],
        new_name_prefix: str
    ) -> DiskCopyReport:
        """
        Copy backed-up disk images into a storage directory under new names.

        Each disk lands at ``dest_dir/<new_name_prefix>_<basename>``. The
        image is looked up by basename anywhere under backup_dir; when more
        than one file matches, the first is used and the others are reported.
        Disks absent from the backup are skipped and left out of the mapping.

        Returns:
            Report whose ``copied`` maps old descriptor paths to new paths
        """
        dest_dir = Path(dest_dir)
        report = DiskCopyReport()

        for path in paths:
            if path in report.copied:
                continue

            diskname = os.path.basename(path)
            new_disk = dest_dir / f"{new_name_prefix}_{diskname}"

            matches = find_backup_files(backup_dir, diskname)
            if not matches:
                self._warn(report, f"Disk not found in backup: {diskname}")
                report.skipped.append(path)
                continue
            if len(matches) > 1:
                others = ", ".join(str(m) for m in matches[1:])
                self._warn(report, f"Several files named {diskname} in backup, using {matches[0]} (ignored: {others})")

            if str(new_disk) in report.copied.values():
                logger.info(f"{new_disk.name} already restored, reusing it for {path}")
            else:
                logger.info(f"Copying: {diskname} -> {new_disk.name}")
                self.copy_file(matches[0], new_disk)
            report.copied[path] = str(new_disk)

        return report
