"""
Result models returned by the backup and restore services.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class BackupResult(BaseModel):
    """Outcome of a completed backup run."""
    machine_name: str
    backup_dir: str
    config_file: str
    disks: List[str] = Field(default_factory=list)
    skipped_disks: List[str] = Field(default_factory=list)
    was_running: bool = False
    shutdown_timed_out: bool = False
    restarted: bool = False
    contents: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RestoreResult(BaseModel):
    """Outcome of a completed restore run."""
    machine_name: str
    machine_uuid: Optional[str] = None
    source_backup: str
    storage_dir: str
    disk_map: Dict[str, str] = Field(default_factory=dict)
    skipped_disks: List[str] = Field(default_factory=list)
    started: bool = False
    warnings: List[str] = Field(default_factory=list)
