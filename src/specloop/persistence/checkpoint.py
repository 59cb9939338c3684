"""Crash-safe checkpoint persistence and frozen-spec integrity checks."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import yaml

from specloop.errors import ErrorCode, IntegrityError
from specloop.protocol.io import tmp_path_for, write_yaml_atomic
from specloop.protocol.models import CHECKPOINT_SCHEMA_VERSION, Checkpoint, utc_now_iso

logger = logging.getLogger(__name__)

CHECKPOINT_FILENAME = "checkpoint.yml"


class CheckpointManager:
    """Reads and writes ``<run_dir>/checkpoint.yml``.

    ``save`` goes through a temp file, fsync, rename and directory fsync, so
    the canonical file is always a complete old or complete new state.
    """

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = run_dir
        self.path = run_dir / CHECKPOINT_FILENAME
        self.tmp_path = tmp_path_for(self.path)

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, checkpoint: Checkpoint) -> None:
        checkpoint.updated_at = utc_now_iso()
        write_yaml_atomic(self.path, checkpoint.to_dict())

    def load(self, *, discard_tmp: bool = True) -> Checkpoint:
        """Load the canonical checkpoint.

        A leftover temp file is an interrupted write; the canonical file is
        authoritative, so the temp file is deleted. ``discard_tmp=False``
        keeps the call read-only.
        """
        if discard_tmp and self.tmp_path.exists():
            logger.info("discarding interrupted checkpoint write %s", self.tmp_path)
            self.tmp_path.unlink(missing_ok=True)

        if not self.path.exists():
            raise IntegrityError(f"No checkpoint at {self.path}", code=ErrorCode.CHECKPOINT_CORRUPT)
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise IntegrityError(
                f"Checkpoint {self.path} is unreadable: {exc}", code=ErrorCode.CHECKPOINT_CORRUPT
            ) from exc
        if not isinstance(data, dict):
            raise IntegrityError(f"Checkpoint {self.path} is not a mapping", code=ErrorCode.CHECKPOINT_CORRUPT)

        version = data.get("schema_version")
        if version != CHECKPOINT_SCHEMA_VERSION:
            raise IntegrityError(
                f"Checkpoint schema version {version!r} is not supported (expected "
                f"{CHECKPOINT_SCHEMA_VERSION}). Start a new run or use a matching specloop version.",
                code=ErrorCode.CHECKPOINT_CORRUPT,
                details={"found": version, "expected": CHECKPOINT_SCHEMA_VERSION},
            )
        try:
            return Checkpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise IntegrityError(
                f"Checkpoint {self.path} is malformed: {exc!r}", code=ErrorCode.CHECKPOINT_CORRUPT
            ) from exc


def compute_file_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65_536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_spec_hash(path: Path, expected_hash: str) -> None:
    """Fail hard if the frozen spec changed or disappeared."""
    try:
        actual = compute_file_hash(path)
    except OSError as exc:
        raise IntegrityError(
            f"Frozen spec {path} cannot be read: {exc}", code=ErrorCode.SPEC_HASH_MISMATCH
        ) from exc
    if actual != expected_hash:
        raise IntegrityError(
            f"Frozen spec {path} was modified (expected sha256 {expected_hash[:12]}, got {actual[:12]})",
            code=ErrorCode.SPEC_HASH_MISMATCH,
            details={"expected": expected_hash, "actual": actual},
        )
