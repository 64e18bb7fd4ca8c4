from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .canonical import is_hex_digest
from .models import IndexDocument
from .state_store import atomic_write_text, locked_file, safe_read_text

logger = logging.getLogger(__name__)


class ActiveIndex:
    """unit id -> active checkpoint hash; the only thing the runtime loader trusts.

    Mutations are read-modify-write under an exclusive lock, published with
    an atomic rename so readers see either the old or the new mapping.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read_document(self) -> IndexDocument:
        if not self.path.is_file():
            return IndexDocument()
        text = safe_read_text(self.path, "index")
        try:
            return IndexDocument.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"index at {self.path} failed validation: {exc}") from exc

    def _write_document(self, document: IndexDocument) -> None:
        ordered = IndexDocument(version=document.version, active=dict(sorted(document.active.items())))
        atomic_write_text(self.path, ordered.model_dump_json(indent=2))

    def get(self, unit_id: str) -> str | None:
        return self._read_document().active.get(unit_id)

    def entries(self) -> dict[str, str]:
        return dict(sorted(self._read_document().active.items()))

    def activate(self, unit_id: str, h_chk: str) -> str | None:
        """Point a unit at a checkpoint.

        Returns:
            The previously active hash, if any.
        """
        if not is_hex_digest(h_chk):
            raise ValueError(f"checkpoint hash must be a 64-char lower-case hex digest, got: {h_chk!r}")
        with locked_file(self.path):
            document = self._read_document()
            previous = document.active.get(unit_id)
            document.active[unit_id] = h_chk
            self._write_document(document)
        if previous != h_chk:
            logger.info(
                "Activated %s@%s (was %s)",
                unit_id,
                h_chk[:12],
                previous[:12] if previous else "none",
            )
        return previous

    def deactivate(self, unit_id: str) -> str | None:
        with locked_file(self.path):
            document = self._read_document()
            previous = document.active.pop(unit_id, None)
            if previous is not None:
                self._write_document(document)
        if previous is not None:
            logger.info("Deactivated %s (was %s)", unit_id, previous[:12])
        return previous
