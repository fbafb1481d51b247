#!/usr/bin/env python3
"""
Index Rebuild Utility
Rebuilds the similarity index from the encrypted Embedding Store and persists
its sealed segments, e.g. after lost or corrupted segment files.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from reunite.core import config
from reunite.core.engine import DiscoveryEngine
from util.logging import logger


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Rebuild the similarity index from the Embedding Store")
    parser.add_argument("--db-path", default=None, help="SQLite database (default: DB_PATH)")
    parser.add_argument("--segment-dir", default=config.INDEX_SEGMENT_DIR,
                        help="Directory for persisted index segments")
    parser.add_argument("--no-save", action="store_true", help="Rebuild in memory only")
    args = parser.parse_args(argv)

    config.ensure_db_directory(args.db_path)
    engine = DiscoveryEngine(db_path=args.db_path)

    print(f"Rebuilding index from {engine.store.count()} stored embeddings...")
    indexed = engine.rebuild_index()
    print(f"✓ Indexed {indexed} embeddings (current model version per case)")

    if not args.no_save:
        written = engine.save_index(args.segment_dir)
        print(f"✓ Wrote {written} encrypted segments to {args.segment_dir}")

    logger.log_operation("rebuild_index_cli", "success", {"indexed": indexed})
    return 0


if __name__ == "__main__":
    sys.exit(main())
