from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .canonical import is_hex_digest
from .models import CacheEntry
from .state_store import atomic_write_text, safe_read_text

logger = logging.getLogger(__name__)


class CacheStore:
    """Provider responses addressed by spec hash.

    Purely an optimization: every failure to read an entry is a miss.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def entry_path(self, spec_hash: str) -> Path:
        if not is_hex_digest(spec_hash):
            raise ValueError(f"spec hash must be a 64-char lower-case hex digest, got: {spec_hash!r}")
        return self.root / spec_hash[:2] / f"{spec_hash}.json"

    def get(self, spec_hash: str, prompt_sha: str | None = None) -> CacheEntry | None:
        """Return the cached response, or None on a miss.

        A stored entry whose prompt digest differs from ``prompt_sha`` is a
        miss: the template changed without the spec hash changing.
        """
        path = self.entry_path(spec_hash)
        if not path.is_file():
            return None
        try:
            entry = CacheEntry.model_validate_json(safe_read_text(path, "cache entry"))
        except (ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None
        if entry.spec_hash != spec_hash:
            logger.warning("Ignoring cache entry %s recorded for spec hash %s", path, entry.spec_hash)
            return None
        if prompt_sha is not None and entry.prompt_sha != prompt_sha:
            logger.debug(
                "Cache entry %s has prompt_sha %s, wanted %s; treating as miss",
                spec_hash[:12],
                entry.prompt_sha[:12],
                prompt_sha[:12],
            )
            return None
        return entry

    def put(self, spec_hash: str, prompt_sha: str, response: str, *, provider: str, model: str) -> Path:
        entry = CacheEntry(
            spec_hash=spec_hash,
            prompt_sha=prompt_sha,
            response=response,
            provider=provider,
            model=model,
            created_at=datetime.now(UTC),
        )
        path = self.entry_path(spec_hash)
        atomic_write_text(path, entry.model_dump_json(indent=2))
        logger.debug("Cached response for %s at %s", spec_hash[:12], path)
        return path
