"""Backup manifest.

A backup directory holds a manifest.txt of flat key=value lines describing
the backup and each captured component. The file is written
append-only while the backup runs:

    backup_name=alfresco-backup_20260101_020000
    backup_type=full
    ...
    component.database.path=database_alfresco.sql.dump
    component.database.size=123456
    component.database.checksum=ab12...
    component.database.db_size=80 MB
    ...
    completed_at=2026-01-01T02:05:11
    total_size_uncompressed=987654

Component paths are relative to the backup root and must stay inside it.
Once completed_at is written the manifest is final and cannot gain
components.
"""

import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Optional

from errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = 'manifest.txt'

BACKUP_TYPES = ('full', 'db', 'content', 'config', 'search-index')
TYPE_ALIASES = {'solr': 'search-index', 'database': 'db'}

# Component names, in capture/restore order
DATABASE = 'database'
CONTENT = 'content'
SEARCH_INDEX = 'search-index'
CONFIG = 'config'
COMPONENTS = (DATABASE, CONTENT, SEARCH_INDEX, CONFIG)

TYPE_COMPONENTS = {
    'db': (DATABASE,),
    'content': (CONTENT,),
    'config': (CONFIG,),
    'search-index': (SEARCH_INDEX,),
}

HOT_CAVEAT = ('hot backup: files were copied while services were running; '
              'content store and index may not be consistent with the database dump')

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'


def normalize_type(backup_type: str) -> str:
    """Map aliases to canonical backup types.

    Raises:
        ValidationError: Unknown type
    """
    canonical = TYPE_ALIASES.get(backup_type, backup_type)
    if canonical not in BACKUP_TYPES:
        raise ValidationError(
            f"Invalid backup type '{backup_type}'. "
            f"Valid types: {', '.join(BACKUP_TYPES)} (alias: solr)"
        )
    return canonical


def components_for(backup_type: str, include_search_index: bool = True) -> list[str]:
    """Components captured or restored for a type."""
    backup_type = normalize_type(backup_type)
    if backup_type == 'full':
        return [c for c in COMPONENTS if c != SEARCH_INDEX or include_search_index]
    return list(TYPE_COMPONENTS[backup_type])


def safe_relative(path: str) -> PurePosixPath:
    """Validate a manifest path.

    Raises:
        ValidationError: Absolute path or path escaping the backup root
    """
    rel = PurePosixPath(path)
    if not path or rel.is_absolute() or '..' in rel.parts:
        raise ValidationError(f"Unsafe path in manifest: {path!r}")
    return rel


def safe_join(root: Path, path: str) -> Path:
    """Join a manifest path onto a backup root, refusing escapes."""
    rel = safe_relative(path)
    joined = (root / rel).resolve()
    if not joined.is_relative_to(root.resolve()):
        raise ValidationError(f"Manifest path {path!r} escapes {root}")
    return root / rel


def validate_backup_name(name: str) -> str:
    """Check a backup name prefix is a single path component.

    Raises:
        ConfigurationError: Empty name, '.'/'..', or a path separator
    """
    if not name or name in ('.', '..') or '/' in name or '\\' in name or '\0' in name:
        raise ConfigurationError(f"Invalid backup name {name!r}: must be a plain file name")
    return name


def _manifest_int(value: str, key: str) -> int:
    try:
        return int(value or 0)
    except ValueError as e:
        raise ValidationError(f"Invalid {key} in manifest: {value!r}") from e


@dataclass
class ComponentEntry:
    """One captured component.

    Attributes:
        name: database, content, search-index or config
        path: Location relative to the backup root
        size: Bytes captured
        checksum: sha256 of the file or tree (None when not computed)
        metadata: Free-form extra values (source path, db size, log file)
    """
    name: str
    path: str
    size: int = 0
    checksum: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        safe_relative(self.path)

    def to_lines(self) -> list[str]:
        prefix = f"component.{self.name}"
        lines = [f"{prefix}.path={self.path}", f"{prefix}.size={self.size}"]
        if self.checksum:
            lines.append(f"{prefix}.checksum={self.checksum}")
        for key, value in self.metadata.items():
            lines.append(f"{prefix}.{key}={value}")
        return lines


@dataclass
class BackupManifest:
    """Description of one backup."""
    backup_id: str
    backup_type: str
    timestamp: datetime
    home: str = ''
    hostname: str = field(default_factory=socket.gethostname)
    include_search_index: bool = True
    hot: bool = False
    compressed: bool = False
    retention_days: int = 0
    components: list[ComponentEntry] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    total_size: int = 0
    extra: dict = field(default_factory=dict)

    @property
    def finalized(self) -> bool:
        return self.completed_at is not None

    @property
    def retention_expires(self) -> Optional[datetime]:
        if self.retention_days <= 0:
            return None
        return self.timestamp + timedelta(days=self.retention_days)

    def get(self, name: str) -> Optional[ComponentEntry]:
        for entry in self.components:
            if entry.name == name:
                return entry
        return None

    def add(self, entry: ComponentEntry) -> None:
        """Record a component.

        Raises:
            ValidationError: Manifest already finalized or duplicate component
        """
        if self.finalized:
            raise ValidationError(f"Manifest {self.backup_id} is finalized; cannot add {entry.name}")
        if self.get(entry.name):
            raise ValidationError(f"Component {entry.name} already recorded in {self.backup_id}")
        self.components.append(entry)

    def finalize(self, completed_at: Optional[datetime] = None) -> None:
        if self.finalized:
            raise ValidationError(f"Manifest {self.backup_id} is already finalized")
        self.total_size = sum(c.size for c in self.components)
        self.completed_at = completed_at or datetime.now()

    def header_lines(self) -> list[str]:
        lines = [
            f"backup_name={self.backup_id}",
            f"backup_type={self.backup_type}",
            f"backup_timestamp={self.timestamp.strftime(TIMESTAMP_FORMAT)}",
            f"backup_date={self.timestamp.isoformat(timespec='seconds')}",
            f"alfresco_home={self.home}",
            f"hostname={self.hostname}",
            f"include_solr={str(self.include_search_index).lower()}",
            f"hot_backup={str(self.hot).lower()}",
            f"compressed={str(self.compressed).lower()}",
            f"retention_days={self.retention_days}",
        ]
        if expires := self.retention_expires:
            lines.append(f"retention_expires={expires.isoformat(timespec='seconds')}")
        if self.hot:
            lines.append(f"consistency_caveat={HOT_CAVEAT}")
        for key, value in self.extra.items():
            lines.append(f"{key}={value}")
        return lines

    def footer_lines(self) -> list[str]:
        if not self.completed_at:
            return []
        return [
            f"completed_at={self.completed_at.isoformat(timespec='seconds')}",
            f"total_size_uncompressed={self.total_size}",
        ]

    def to_text(self) -> str:
        lines = self.header_lines()
        for entry in self.components:
            lines.extend(entry.to_lines())
        lines.extend(self.footer_lines())
        return '\n'.join(lines) + '\n'

    def to_dict(self) -> dict:
        return {
            'backup_id': self.backup_id,
            'type': self.backup_type,
            'timestamp': self.timestamp.isoformat(timespec='seconds'),
            'hot': self.hot,
            'compressed': self.compressed,
            'retention_days': self.retention_days,
            'components': [
                {'name': c.name, 'path': c.path, 'size': c.size, 'checksum': c.checksum}
                for c in self.components
            ],
            'total_size': self.total_size,
            'completed_at': self.completed_at.isoformat(timespec='seconds') if self.completed_at else None,
        }

    @classmethod
    def from_text(cls, text: str) -> 'BackupManifest':
        """Parse manifest.txt content.

        Raises:
            ValidationError: Missing required keys or unsafe component paths
        """
        values: dict[str, str] = {}
        components: dict[str, dict] = {}
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            if key.startswith('component.'):
                parts = key.split('.', 2)
                if len(parts) != 3:
                    raise ValidationError(f"Malformed manifest key: {key}")
                _, name, attr = parts
                components.setdefault(name, {})[attr] = value
            else:
                values[key] = value

        for required in ('backup_name', 'backup_type', 'backup_timestamp'):
            if required not in values:
                raise ValidationError(f"Manifest missing '{required}'")

        try:
            timestamp = datetime.strptime(values.pop('backup_timestamp'), TIMESTAMP_FORMAT)
        except ValueError as e:
            raise ValidationError(f"Invalid backup_timestamp in manifest: {e}") from e

        entries = []
        for name, attrs in components.items():
            if 'path' not in attrs:
                raise ValidationError(f"Component {name} has no path")
            path = attrs.pop('path')
            try:
                size = int(attrs.pop('size', 0))
            except ValueError as e:
                raise ValidationError(f"Component {name} has invalid size") from e
            checksum = attrs.pop('checksum', None)
            entries.append(ComponentEntry(name=name, path=path, size=size,
                                          checksum=checksum, metadata=attrs))

        completed_at = None
        if done := values.pop('completed_at', None):
            try:
                completed_at = datetime.fromisoformat(done)
            except ValueError as e:
                raise ValidationError(f"Invalid completed_at in manifest: {done!r}") from e
        retention_days = _manifest_int(values.pop('retention_days', '0'), 'retention_days')
        total_size = _manifest_int(values.get('total_size_uncompressed', '0'), 'total_size_uncompressed')

        known = {'backup_date', 'retention_expires', 'consistency_caveat', 'total_size_uncompressed'}
        manifest = cls(
            backup_id=values.pop('backup_name'),
            backup_type=normalize_type(values.pop('backup_type')),
            timestamp=timestamp,
            home=values.pop('alfresco_home', ''),
            hostname=values.pop('hostname', ''),
            include_search_index=values.pop('include_solr', 'true') == 'true',
            hot=values.pop('hot_backup', 'false') == 'true',
            compressed=values.pop('compressed', 'false') == 'true',
            retention_days=retention_days,
            components=entries,
            completed_at=completed_at,
            total_size=total_size,
            extra={k: v for k, v in values.items() if k not in known},
        )
        return manifest

    @classmethod
    def load(cls, backup_root: Path) -> 'BackupManifest':
        """Load manifest.txt from a backup directory.

        Raises:
            ValidationError: No manifest found
        """
        path = backup_root / MANIFEST_FILENAME
        if not path.is_file():
            raise ValidationError(f"No {MANIFEST_FILENAME} in {backup_root}")
        return cls.from_text(path.read_text(encoding='utf-8'))


class ManifestWriter:
    """Append-only writer for a manifest being built during a backup."""

    def __init__(self, manifest: BackupManifest, backup_root: Path):
        self.manifest = manifest
        self.path = backup_root / MANIFEST_FILENAME

    def write_header(self) -> None:
        with open(self.path, 'x', encoding='utf-8') as f:
            f.write('\n'.join(self.manifest.header_lines()) + '\n')

    def add(self, entry: ComponentEntry) -> None:
        self.manifest.add(entry)
        self._append(entry.to_lines())
        logger.debug(f"Recorded component {entry.name} in {self.path}")

    def finalize(self) -> None:
        self.manifest.finalize()
        self._append(self.manifest.footer_lines())

    def _append(self, lines: list[str]) -> None:
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write('\n'.join(lines) + '\n')
