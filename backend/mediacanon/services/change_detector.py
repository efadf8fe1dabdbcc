"""
change_detector.py

Decides whether a bulk import is needed at all by fingerprinting the
downloaded dataset files and comparing against the stored checkpoint.
"""
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mediacanon.crud import get_sync_state, set_sync_state

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "imdb_files_hash"
_CHUNK = 1024 * 1024


def fingerprint_files(paths: Iterable[str]) -> str:
    """sha256 over the concatenated file contents, ordered by file name."""
    digest = hashlib.sha256()
    for path in sorted(paths, key=lambda p: (os.path.basename(p), p)):
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK), b""):
                digest.update(chunk)
    return digest.hexdigest()


@dataclass
class ChangeDecision:
    changed: bool
    fingerprint: str
    previous: Optional[str]
    reason: str  # first_run | forced | changed | unchanged


class ChangeDetector:
    def __init__(self, session_factory: Callable[[], Session], key: str = CHECKPOINT_KEY):
        self.session_factory = session_factory
        self.key = key

    def get_checkpoint(self) -> Optional[str]:
        db = self.session_factory()
        try:
            return get_sync_state(db, self.key)
        finally:
            db.close()

    def check(self, paths: Iterable[str], force: bool = False) -> ChangeDecision:
        fingerprint = fingerprint_files(paths)
        previous = self.get_checkpoint()
        if force:
            reason = "forced"
        elif previous is None:
            reason = "first_run"
        elif previous != fingerprint:
            reason = "changed"
        else:
            reason = "unchanged"
        changed = reason != "unchanged"
        logger.info(f"Dataset fingerprint {fingerprint[:12]}... ({reason})")
        return ChangeDecision(changed=changed, fingerprint=fingerprint, previous=previous, reason=reason)

    def commit(self, fingerprint: str) -> bool:
        """Record a fully imported fingerprint. A failure here only costs a re-import next run."""
        db = self.session_factory()
        try:
            set_sync_state(db, self.key, fingerprint)
            logger.info(f"Saved dataset fingerprint {fingerprint[:12]}...")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Failed to save dataset fingerprint: {e}")
            return False
        finally:
            db.close()
