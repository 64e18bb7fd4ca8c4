from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .canonical import is_hex_digest
from .errors import CheckpointMissingError
from .models import Checkpoint, CheckpointMeta
from .state_store import atomic_write_text, create_exclusive_text, safe_read_text, unit_path

logger = logging.getLogger(__name__)

IMPL_FILENAME = "impl.py"
META_FILENAME = "meta.json"


class CheckpointStore:
    """Append-only store of validated implementations, addressed by (unit, H_chk).

    ``impl.py`` is created once and never rewritten. Because H_chk covers the
    code digest, concurrent writers of the same checkpoint hold identical
    code; ``meta.json`` is last-writer-wins.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def checkpoint_dir(self, unit_id: str, h_chk: str) -> Path:
        if not is_hex_digest(h_chk):
            raise ValueError(f"checkpoint hash must be a 64-char lower-case hex digest, got: {h_chk!r}")
        return self.root / unit_path(unit_id) / h_chk

    def exists(self, unit_id: str, h_chk: str) -> bool:
        directory = self.checkpoint_dir(unit_id, h_chk)
        return (directory / IMPL_FILENAME).is_file() and (directory / META_FILENAME).is_file()

    def write(self, unit_id: str, h_chk: str, code: str, meta: CheckpointMeta) -> Path:
        """Persist a checkpoint.

        Returns:
            The checkpoint directory.

        Raises:
            ValueError: If the metadata does not describe this (unit, H_chk).
        """
        if meta.unit_id != unit_id or meta.h_chk != h_chk:
            raise ValueError(
                f"checkpoint metadata is for {meta.unit_id}@{meta.h_chk[:12]}, not {unit_id}@{h_chk[:12]}"
            )
        directory = self.checkpoint_dir(unit_id, h_chk)
        created = create_exclusive_text(directory / IMPL_FILENAME, code)
        atomic_write_text(directory / META_FILENAME, meta.model_dump_json(indent=2))
        if created:
            logger.info("Wrote checkpoint %s@%s", unit_id, h_chk[:12])
        else:
            logger.debug("Checkpoint %s@%s already present; refreshed metadata", unit_id, h_chk[:12])
        return directory

    def read_meta(self, unit_id: str, h_chk: str) -> CheckpointMeta:
        """Raises CheckpointMissingError when absent, ValueError when corrupt."""
        path = self.checkpoint_dir(unit_id, h_chk) / META_FILENAME
        if not path.is_file():
            raise CheckpointMissingError(f"no checkpoint {h_chk} for {unit_id}", unit_id=unit_id)
        text = safe_read_text(path, "checkpoint metadata")
        try:
            return CheckpointMeta.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"checkpoint metadata at {path} failed validation: {exc}") from exc

    def read(self, unit_id: str, h_chk: str) -> Checkpoint:
        meta = self.read_meta(unit_id, h_chk)
        directory = self.checkpoint_dir(unit_id, h_chk)
        impl_path = directory / IMPL_FILENAME
        if not impl_path.is_file():
            raise CheckpointMissingError(f"checkpoint {h_chk} for {unit_id} has no implementation", unit_id=unit_id)
        code = impl_path.read_text(encoding="utf-8")
        return Checkpoint(unit_id=unit_id, h_chk=h_chk, code=code, meta=meta, path=directory)

    def list(self, unit_id: str) -> list[str]:
        """Stored checkpoint hashes for a unit, oldest first."""
        unit_dir = self.root / unit_path(unit_id)
        if not unit_dir.is_dir():
            return []
        metas: list[CheckpointMeta] = []
        for child in unit_dir.iterdir():
            if child.is_dir() and is_hex_digest(child.name) and (child / META_FILENAME).is_file():
                metas.append(self.read_meta(unit_id, child.name))
        metas.sort(key=lambda meta: (meta.created_at, meta.h_chk))
        return [meta.h_chk for meta in metas]
