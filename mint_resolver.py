"""
Two-stage parallel resolution of mints to (owner, token account).

Stage 1 maps every mint to the token account holding it, stage 2 maps every
token account to its owning wallet. Each stage fans out over a thread pool
and finishes completely before the next one starts; results are kept in
input order so row i always belongs to mint i.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Union

from retry_policy import (
    FAILED,
    FailedType,
    NotFoundError,
    PermanentError,
    RetryPolicy,
    is_failed,
    with_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 20

HOLDER_STAGE = "token accounts"
OWNER_STAGE = "owners"

Address = Union[str, FailedType]


class HolderLookups(Protocol):
    def get_holder_account(self, mint: str) -> Optional[str]:
        ...

    def get_account_owner(self, account: str) -> Optional[str]:
        ...


@dataclass(frozen=True)
class ResolutionRow:
    mint: str
    owner: Address
    token_account: Address

    @property
    def succeeded(self) -> bool:
        return not (is_failed(self.owner) or is_failed(self.token_account))


class StageProgress:
    """thread-safe completed counter for one stage"""

    def __init__(self, stage: str, total: int,
                 callback: Optional[Callable[[str, int, int], None]] = None,
                 log_every: Optional[int] = None):
        self.stage = stage
        self.total = total
        self.callback = callback
        self.log_every = log_every or max(1, total // 10)
        self._completed = 0
        self._lock = threading.Lock()

    @property
    def completed(self) -> int:
        return self._completed

    def advance(self) -> int:
        # report under the lock so observers see counts in increasing order
        with self._lock:
            self._completed += 1
            completed = self._completed
            if completed % self.log_every == 0 or completed == self.total:
                logger.info(f"[{self.stage}] {completed}/{self.total}")
            if self.callback:
                self.callback(self.stage, completed, self.total)
        return completed


class MintResolver:
    def __init__(self, lookups: HolderLookups, workers: int = DEFAULT_WORKERS,
                 retry_policy: Optional[RetryPolicy] = None,
                 on_progress: Optional[Callable[[str, int, int], None]] = None):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.lookups = lookups
        self.workers = workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_progress = on_progress
        self.progress: Dict[str, StageProgress] = {}

    def resolve_holder_account(self, mint: str) -> Address:
        def lookup():
            account = self.lookups.get_holder_account(mint)
            if account is None:
                raise NotFoundError(f"no sole holder for {mint}")
            return account

        return with_retry(lookup, self.retry_policy)

    def resolve_owner(self, token_account: Address) -> Address:
        def lookup():
            if is_failed(token_account):
                raise PermanentError("token account lookup already failed")
            owner = self.lookups.get_account_owner(token_account)
            if owner is None:
                raise NotFoundError(f"no owner for {token_account}")
            return owner

        return with_retry(lookup, self.retry_policy)

    def _run_stage(self, stage: str, func: Callable, items: Sequence) -> List:
        progress = StageProgress(stage, len(items), self.on_progress)
        self.progress[stage] = progress

        def work(item):
            try:
                return func(item)
            finally:
                progress.advance()

        logger.info(f"Resolving {stage} for {len(items)} mints with {self.workers} workers")
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=stage.replace(" ", "-")) as executor:
            # map yields in submission order
            return list(executor.map(work, items))

    def resolve_all(self, mints: Sequence[str]) -> List[ResolutionRow]:
        """resolve every mint, one row per mint in input order"""
        mints = list(mints)
        if not mints:
            return []

        start_time = time.time()
        token_accounts = self._run_stage(HOLDER_STAGE, self.resolve_holder_account, mints)
        owners = self._run_stage(OWNER_STAGE, self.resolve_owner, token_accounts)

        rows = [ResolutionRow(mint, owner, account)
                for mint, owner, account in zip(mints, owners, token_accounts)]

        failed = sum(1 for row in rows if not row.succeeded)
        logger.info(f"Resolved {len(rows) - failed}/{len(rows)} mints in {time.time() - start_time:.1f} seconds")
        if failed:
            logger.warning(f"{failed} mints could not be resolved and are marked {FAILED!r}")
        return rows
