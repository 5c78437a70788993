"""
Backup metadata records stored as JSON next to the backup files.
"""
import enum
import json
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError


class BackupMode(str, enum.Enum):
    """Backup mode - one archive, or a set of incremental disks."""
    FULL = "full"
    DELTA = "delta"


class MetadataError(Exception):
    """Raised when a metadata file cannot be parsed."""
    pass


class BackupMetadata(BaseModel):
    """
    One backup run.

    Only ``size`` is ever rewritten; ``raw`` keeps the original JSON object
    so that fields this model does not know about survive the rewrite.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    mode: str
    size: Optional[int] = None
    xva: Optional[str] = None
    vdis: Optional[Dict[str, str]] = Field(
        default=None,
        validation_alias=AliasChoices("vdis", "vhds"),
    )
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @classmethod
    def from_json(cls, data: bytes) -> "BackupMetadata":
        """
        Parse a metadata file.

        Raises:
            MetadataError: if the content is not a JSON object or misses
                required fields
        """
        try:
            raw = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise MetadataError(f"invalid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise MetadataError(f"expected a JSON object, got {type(raw).__name__}")

        try:
            record = cls.model_validate(raw)
        except ValidationError as e:
            raise MetadataError(str(e)) from e

        record.raw = raw
        return record

    @property
    def backup_mode(self) -> Optional[BackupMode]:
        try:
            return BackupMode(self.mode)
        except ValueError:
            return None

    def with_size(self, size: int) -> bytes:
        """Serialize the original object with ``size`` replaced."""
        raw = dict(self.raw)
        raw["size"] = size
        return json.dumps(raw).encode("utf-8")
