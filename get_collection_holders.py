#!/usr/bin/env python3
"""
Fetch every mint of a Solana NFT collection with its holder wallet and token account.

Usage:
    python get_collection_holders.py --creator <creator_address> [--rpc <url>] [--threads 20]
    python get_collection_holders.py --creator <creator_address> --failed

Results go to <creator_address>.csv. Mints that could not be resolved are
written with FAILED in place of the owner/token account; rerun with --failed
to retry just those.
"""

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol

from dotenv import load_dotenv

from checkpoint_store import CheckpointStorageError, CheckpointStore
from mint_resolver import DEFAULT_WORKERS, HolderLookups, MintResolver
from retry_policy import RetryPolicy, TransportError
from rpc_lookups import DEFAULT_RPC_URL, MetadataDecodeError, SolanaLookups

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class ListingFailedError(Exception):
    """the collection's mint list could not be fetched"""


class CollectionLookups(HolderLookups, Protocol):
    def list_mints_for_creator(self, creator: str) -> List[str]:
        ...


@dataclass
class RunSummary:
    creator: str
    mints: int
    succeeded: int = 0
    failed: int = 0
    output_path: Optional[str] = None
    elapsed: float = 0.0


def run_collection(creator: str, lookups: CollectionLookups, resolver: MintResolver,
                   store: CheckpointStore, resume: bool = False) -> RunSummary:
    """Resolve a collection and write its checkpoint.

    A fresh run lists the collection's mints and resolves all of them. A
    resume run resolves only the mints a previous run marked failed and keeps
    that run's resolved rows as they are.
    """
    start_time = time.time()
    previous = None

    if resume:
        previous = store.load_incomplete(creator)
        mints = previous.failed
        logger.info(f"Processing failed mints - {len(mints)}")
    else:
        logger.info("Getting mints")
        # single scan under the bulk HTTP timeout, outside the per-lookup retry budget
        try:
            mints = lookups.list_mints_for_creator(creator)
        except TransportError as e:
            raise ListingFailedError(f"could not list mints for creator {creator}: {e}") from e

    summary = RunSummary(creator=creator, mints=len(mints))
    if not mints:
        logger.info(f"No keys found for creator address: {creator}")
        return summary

    rows = resolver.resolve_all(mints)
    if previous is not None:
        rows.extend(previous.succeeded)

    summary.succeeded = sum(1 for row in rows if row.succeeded)
    summary.failed = len(rows) - summary.succeeded
    summary.output_path = str(store.save(rows, creator))
    summary.elapsed = time.time() - start_time
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="fetch tokens and addresses of an nft collection")
    parser.add_argument("-c", "--creator", required=True,
                        help="creator address of the collection (first in creator array)")
    parser.add_argument("-r", "--rpc", default=os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL),
                        help="rpc url to connect to (default: $SOLANA_RPC_URL or mainnet-beta)")
    parser.add_argument("-f", "--failed", action="store_true",
                        help="reprocess failed entries from a previous run's file")
    parser.add_argument("-t", "--threads", type=int, default=os.getenv("HOLDER_WORKERS") or DEFAULT_WORKERS,
                        help="number of worker threads (default: 20)")
    parser.add_argument("-o", "--output-dir", default=".",
                        help="directory for <creator>.csv (default: current directory)")
    parser.add_argument("--max-elapsed", type=float, default=os.getenv("RETRY_MAX_ELAPSED") or 180.0,
                        help="seconds to keep retrying a single lookup (default: 180)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="debug logging")
    return parser


def main(argv=None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    # Set up logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    if args.threads < 1:
        logger.error("--threads must be at least 1")
        return 2

    logger.info(f"creator={args.creator} rpc={args.rpc} failed={args.failed} threads={args.threads}")

    policy = RetryPolicy(max_elapsed=args.max_elapsed)
    store = CheckpointStore(args.output_dir)

    with SolanaLookups(args.rpc) as lookups:
        resolver = MintResolver(lookups, workers=args.threads, retry_policy=policy)
        try:
            summary = run_collection(args.creator, lookups, resolver, store, resume=args.failed)
        except CheckpointStorageError as e:
            logger.error(f"Checkpoint error: {e}")
            return 1
        except (ListingFailedError, MetadataDecodeError) as e:
            logger.error(f"Error fetching mints: {e}")
            return 1

    if summary.output_path:
        logger.info(f"\n{'='*60}")
        logger.info(f"Creator: {summary.creator}")
        logger.info(f"Mints processed: {summary.mints:,}")
        logger.info(f"Resolved: {summary.succeeded:,}  Failed: {summary.failed:,}")
        logger.info(f"Time taken: {summary.elapsed:.2f} seconds")
        logger.info(f"{'='*60}\n")
        logger.info(f"results in file: {summary.output_path}")
        if summary.failed:
            logger.info("Tip: rerun with --failed to retry the failed mints")
    return 0


if __name__ == "__main__":
    sys.exit(main())
