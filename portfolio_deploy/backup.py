import hashlib
import json
import shutil
from datetime import datetime
from pathlib import Path

from .errors import BackupCorrupted, BackupNotFound
from .logger import get_logger, success
from .models import Backup, Release

POINTER_FILE = ".last_backup"
CHECKSUM_FILE = ".checksums.json"
NAME_FORMAT = "%Y%m%d_%H%M%S_%f"
NAME_LENGTH = len("20240101_000000_000000")


def _hash_tree(root):
    digests = {}
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        relative = path.relative_to(root).as_posix()
        if relative == CHECKSUM_FILE:
            continue
        digests[relative] = hashlib.sha256(path.read_bytes()).hexdigest()
    return digests


class BackupManager:
    """Snapshots the live artifact set and restores it on rollback.

    Backups are timestamp-named directories under ``backup_path``; names sort
    chronologically, so retention is plain FIFO on the sorted listing.
    """

    def __init__(self, deploy_path, backup_path, artifact_dir="dist",
                 metadata_files=("package.json", "ecosystem.config.js"), verify=False):
        self.deploy_path = Path(deploy_path)
        self.backup_path = Path(backup_path)
        self.artifact_dir = artifact_dir
        self.metadata_files = tuple(metadata_files)
        self.verify = verify
        self.logger = get_logger("backup")

    @classmethod
    def from_settings(cls, settings):
        return cls(
            settings.deploy_path,
            settings.backup_path,
            artifact_dir=settings.artifact_dir,
            metadata_files=settings.metadata_files,
            verify=settings.verify_backups,
        )

    @property
    def live_artifact_path(self):
        return self.deploy_path / self.artifact_dir

    def _new_name(self):
        base = datetime.now().strftime(NAME_FORMAT)
        name = base
        counter = 0
        # Clock resolution can repeat a timestamp; the suffix keeps names unique and ordered
        while (self.backup_path / name).exists():
            counter += 1
            name = f"{base}_{counter:03d}"
        return name

    def _to_backup(self, path):
        try:
            created_at = datetime.strptime(path.name[:NAME_LENGTH], NAME_FORMAT)
        except ValueError:
            created_at = datetime.fromtimestamp(path.stat().st_mtime)
        return Backup(name=path.name, path=path, created_at=created_at)

    def create_backup(self, release=None):
        """Copy the live artifact tree and metadata files into a new backup.

        Returns None when there is nothing deployed yet.
        """
        if not self.live_artifact_path.is_dir():
            self.logger.warning("No existing deployment found, skipping backup")
            return None

        self.backup_path.mkdir(parents=True, exist_ok=True)
        target = self.backup_path / self._new_name()
        # Assembled under a dot name, which list_backups skips, until every copy succeeded
        staging = self.backup_path / f".{target.name}.partial"
        staging.mkdir()
        try:
            shutil.copytree(self.live_artifact_path, staging / self.artifact_dir, symlinks=True)
            for name in self.metadata_files:
                source = self.deploy_path / name
                if source.is_file():
                    shutil.copy2(source, staging / name)
                else:
                    self.logger.debug(f"Metadata file {name} not present, not backed up")

            if release is not None:
                (staging / "release.json").write_text(json.dumps(release.to_dict(), indent=2))
            if self.verify:
                (staging / CHECKSUM_FILE).write_text(json.dumps(_hash_tree(staging), indent=2))
        except Exception:
            self.logger.error(f"Backup to {target} failed, discarding partial copy")
            shutil.rmtree(staging, ignore_errors=True)
            raise
        staging.rename(target)

        (self.backup_path / POINTER_FILE).write_text(target.name)
        backup = self._to_backup(target)
        success(self.logger, f"Backup created at {target}")
        return backup

    def list_backups(self):
        """Backups newest first"""
        if not self.backup_path.is_dir():
            return []
        dirs = [p for p in self.backup_path.iterdir() if p.is_dir() and not p.name.startswith(".")]
        return [self._to_backup(p) for p in sorted(dirs, key=lambda p: p.name, reverse=True)]

    def latest(self):
        backups = self.list_backups()
        return backups[0] if backups else None

    def last_recorded(self):
        """The backup named by the pointer file, falling back to the newest on disk"""
        pointer = self.backup_path / POINTER_FILE
        if pointer.is_file():
            name = pointer.read_text().strip()
            path = self.backup_path / name
            if name and path.is_dir():
                return self._to_backup(path)
            self.logger.warning(f"Recorded backup {name!r} no longer exists")
        return self.latest()

    def get(self, name):
        path = self.backup_path / name
        if not path.is_dir():
            raise BackupNotFound(f"Backup directory not found: {path}")
        return self._to_backup(path)

    def _verify(self, backup):
        manifest_path = backup.path / CHECKSUM_FILE
        if not manifest_path.is_file():
            raise BackupCorrupted(f"Backup {backup.name} has no checksum manifest")
        expected = json.loads(manifest_path.read_text())
        actual = _hash_tree(backup.path)
        if expected != actual:
            changed = sorted(set(expected) ^ set(actual) | {k for k in expected if actual.get(k) != expected[k]})
            raise BackupCorrupted(f"Backup {backup.name} failed checksum verification: {', '.join(changed[:5])}")

    def restore(self, ref):
        """Overwrite the live artifact directory with the backup's copy"""
        backup = self.get(ref.name if isinstance(ref, Backup) else ref)
        source = backup.path / self.artifact_dir
        if not source.is_dir():
            raise BackupNotFound(f"Backup {backup.name} has no {self.artifact_dir} directory")
        if self.verify:
            self._verify(backup)

        self.logger.info(f"Restoring {backup.path} into {self.deploy_path}")
        if self.live_artifact_path.exists():
            shutil.rmtree(self.live_artifact_path)
        shutil.copytree(source, self.live_artifact_path, symlinks=True)
        for name in self.metadata_files:
            if (backup.path / name).is_file():
                shutil.copy2(backup.path / name, self.deploy_path / name)

        release_id = backup.name
        manifest = backup.path / "release.json"
        if manifest.is_file():
            release_id = json.loads(manifest.read_text()).get("release_id", release_id)
        return Release(
            release_id=release_id,
            path=self.live_artifact_path,
            created_at=backup.created_at,
            source=f"backup:{backup.name}",
        )

    def cleanup(self, keep=5):
        """Delete every backup beyond the newest ``keep``; returns deleted names"""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        deleted = []
        for backup in self.list_backups()[keep:]:
            shutil.rmtree(backup.path)
            deleted.append(backup.name)
            self.logger.debug(f"Removed old backup {backup.name}")
        if deleted:
            success(self.logger, f"Old backups cleaned up ({len(deleted)} removed)")
        else:
            self.logger.info("No old backups to clean up")
        return deleted
