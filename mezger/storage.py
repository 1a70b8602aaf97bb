import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

import filelock

from mezger.errors import PersistenceFailure
from mezger.models import Collection

log = logging.getLogger(__name__)

# How long to wait for a file lock before giving up (seconds)
_LOCK_TIMEOUT = 10


class CollectionStorage:
    """
    Flat-file storage for the listings Collection.

    Reads and writes a single JSON document:
        {"cars": [...], "parts": [...], "auctions": [...], "lastUpdated": "..."}

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so a failed write never leaves a half-written document.
    Access is serialised by filelock, one .lock file beside the document.
    """

    def __init__(self, path: str, track_auctions: bool = True) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_suffix(self._path.suffix + ".lock")
        self._track_auctions = track_auctions

    @property
    def path(self) -> Path:
        return self._path

    def lock(self) -> filelock.FileLock:
        """Lock guarding the document. Hold it across load -> reconcile -> save."""
        return filelock.FileLock(str(self._lock_path), timeout=_LOCK_TIMEOUT)

    def load(self, now: Optional[datetime] = None) -> Collection:
        """
        Read the document. A missing file is not an error: an empty
        Collection stamped with now is returned. Unreadable or invalid
        JSON raises PersistenceFailure.
        """
        if not self._path.exists():
            log.info("No existing data at %s — starting fresh", self._path)
            return Collection.empty(now, track_auctions=self._track_auctions)

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            raise PersistenceFailure(f"Could not read {self._path}: {exc}") from exc

        if not isinstance(doc, dict):
            raise PersistenceFailure(f"Unexpected document shape in {self._path}: {type(doc).__name__}")

        try:
            collection = Collection.from_dict(doc)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"Could not parse {self._path}: {exc}") from exc

        if self._track_auctions:
            collection.track_auctions = True
        log.info(
            "Loaded %d car, %d part and %d auction listing(s) from %s",
            len(collection.cars), len(collection.parts), len(collection.auctions), self._path,
        )
        return collection

    def save(self, collection: Collection) -> None:
        """Write the document atomically. Raises PersistenceFailure on any error."""
        doc = collection.to_dict()
        tmp_name = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=self._path.name + ".", suffix=".tmp", dir=str(self._path.parent),
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self._path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceFailure(f"Could not write {self._path}: {exc}") from exc

        log.debug(
            "Wrote %d cars, %d parts, %d auctions to %s",
            len(collection.cars), len(collection.parts), len(collection.auctions), self._path,
        )
