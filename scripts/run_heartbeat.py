#!/usr/bin/env python3
"""
Heartbeat runner - periodic audit chain verification and ledger checkpoints.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from reunite.core import heartbeat
from reunite.core.engine import get_engine


def main():
    if not heartbeat.is_heartbeat_enabled():
        print("Heartbeat disabled (HEARTBEAT_ENABLED=false).")
        return 0

    heartbeat.register_integrity_tasks(get_engine())
    try:
        heartbeat.start()
    except KeyboardInterrupt:
        heartbeat.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
