#!/usr/bin/env python3
"""
API server entrypoint.
"""

import argparse
import sys
from pathlib import Path

import uvicorn

sys.path.insert(0, str(Path(__file__).parent.parent))

from reunite.core import config, heartbeat
from reunite.core.engine import get_engine


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the discovery engine API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--load-index", action="store_true",
                        help="Load persisted segments instead of rebuilding from the store")
    args = parser.parse_args(argv)

    issues = config.validate_config()
    if issues:
        print(f"❌ Configuration invalid: {issues}")
        return 1

    engine = get_engine()
    if not (args.load_index and engine.load_index() is not None):
        engine.rebuild_index()

    if heartbeat.is_heartbeat_enabled():
        heartbeat.register_integrity_tasks(engine)
        heartbeat.start_in_background()

    uvicorn.run("reunite.api.main:app", host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
