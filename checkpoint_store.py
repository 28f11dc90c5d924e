"""Per-collection CSV checkpoint of resolved mints, used to resume failed lookups."""

import csv
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Union

from mint_resolver import ResolutionRow
from retry_policy import FAILED, is_failed

logger = logging.getLogger(__name__)

HEADER = ["Mint", "Owner", "Associated Token Account"]
FAILED_MARKER = "FAILED"


class CheckpointStorageError(Exception):
    """checkpoint file could not be read or written"""


class CheckpointNotFoundError(CheckpointStorageError):
    pass


@dataclass
class RunState:
    succeeded: List[ResolutionRow] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _encode(value) -> str:
    return FAILED_MARKER if is_failed(value) else value


def _decode(value: str):
    return FAILED if value == FAILED_MARKER else value


class CheckpointStore:
    def __init__(self, directory: Union[str, Path] = "."):
        self.directory = Path(directory)

    def path_for(self, collection_id: str) -> Path:
        return self.directory / f"{collection_id}.csv"

    def save(self, rows: Sequence[ResolutionRow], collection_id: str) -> Path:
        """Write all rows for ``collection_id``, replacing any previous file.

        The rows go to a temporary file in the same directory which is then
        renamed over the target, so an interrupted save never leaves a
        truncated checkpoint behind.
        """
        path = self.path_for(collection_id)
        tmp_path = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{collection_id}.", suffix=".tmp", dir=self.directory)
            with os.fdopen(fd, "w", newline="") as f:
                writer = csv.writer(f, lineterminator="\n")
                writer.writerow(HEADER)
                for row in rows:
                    writer.writerow([row.mint, _encode(row.owner), _encode(row.token_account)])
                f.flush()
                os.fsync(f.fileno())
            # mkstemp creates 0600; give the checkpoint the usual umask-based mode
            os.chmod(tmp_path, 0o666 & ~_current_umask())
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise CheckpointStorageError(f"could not write checkpoint {path}: {e}") from e

        logger.info(f"Saved {len(rows)} rows to {path}")
        return path

    def load_incomplete(self, collection_id: str) -> RunState:
        """split a previous run's rows into resolved rows and mints to retry"""
        path = self.path_for(collection_id)
        if not path.exists():
            raise CheckpointNotFoundError(f"no checkpoint for {collection_id} at {path}")

        state = RunState()
        try:
            with path.open(newline="") as f:
                for line_no, fields in enumerate(csv.reader(f), start=1):
                    if not fields or fields == HEADER:
                        continue
                    if len(fields) != 3:
                        raise CheckpointStorageError(
                            f"{path}:{line_no}: expected 3 fields, got {len(fields)}")
                    mint, owner, token_account = fields
                    row = ResolutionRow(mint, _decode(owner), _decode(token_account))
                    if row.succeeded:
                        state.succeeded.append(row)
                    else:
                        state.failed.append(mint)
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise CheckpointStorageError(f"could not read checkpoint {path}: {e}") from e

        logger.info(f"Loaded {path}: {len(state.succeeded)} resolved, {len(state.failed)} failed")
        return state
