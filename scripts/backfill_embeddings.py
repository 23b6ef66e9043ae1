#!/usr/bin/env python3
"""Attach embeddings to facts stored without one.

Facts ingested while the embedding provider was unavailable (or before a
provider switch) have ``embedding IS NULL``. This walks them in batches and
fills the column using the configured provider.

Usage: python3 scripts/backfill_embeddings.py [--batch-size 50] [--dry-run]
"""

import argparse
import asyncio
import logging
import time

from narrative_memory.config import load_config
from narrative_memory.embeddings import build_embedder
from narrative_memory.storage import FactStorage

logger = logging.getLogger("backfill_embeddings")


async def backfill(storage: FactStorage, embedder, batch_size: int, dry_run: bool) -> int:
    done = 0
    while True:
        facts = storage.facts_missing_embeddings(limit=batch_size)
        if not facts:
            break
        if dry_run:
            return len(facts)
        vectors = await embedder.embed_batch([f.embedding_text for f in facts])
        for fact, vector in zip(facts, vectors):
            storage.update_embedding(fact.id, vector)
        done += len(facts)
        logger.info("Embedded %d facts so far", done)
    return done


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--batch-size", type=int, default=50)
    parser.add_argument("--dry-run", action="store_true", help="report the first batch size and exit")
    args = parser.parse_args()

    cfg = load_config()
    logging.basicConfig(level=cfg.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    storage = FactStorage(db_path=cfg.db_path)
    embedder = build_embedder(cfg)
    start = time.time()
    try:
        count = asyncio.run(backfill(storage, embedder, args.batch_size, args.dry_run))
    finally:
        storage.close()

    verb = "Would embed at least" if args.dry_run else "Embedded"
    print(f"{verb} {count} facts in {time.time() - start:.1f}s ({cfg.embedding_provider} provider)")


if __name__ == "__main__":
    main()
