#!/usr/bin/env python3
"""
Audit ledger operations: chain verification, checkpointing, range export and
manual clearance of an integrity fault.
"""

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from reunite.core.ledger import AuditLedger


def verify_command(ledger: AuditLedger, args) -> int:
    result = ledger.verify_chain(args.start, args.end)
    if result.valid:
        print(f"✅ Chain valid ({result.checked} events checked)")
        return 0
    print(f"❌ Chain broken at event {result.broken_at} ({result.checked} events checked)")
    return 2


def checkpoint_command(ledger: AuditLedger, args) -> int:
    event_id = ledger.checkpoint()
    if event_id is None:
        print("Ledger is empty; nothing to checkpoint")
    else:
        print(f"✓ Checkpoint written at event {event_id}")
    return 0


def export_command(ledger: AuditLedger, args) -> int:
    events = ledger.export_range(datetime.fromisoformat(args.from_ts), datetime.fromisoformat(args.to_ts))
    body = json.dumps([e.to_dict() for e in events], indent=2)
    if args.output:
        Path(args.output).write_text(body)
        print(f"✓ Exported {len(events)} events to {args.output}")
    else:
        print(body)
    return 0


def clear_command(ledger: AuditLedger, args) -> int:
    event = ledger.clear_integrity_fault(args.operator, args.note)
    print(f"✓ Integrity fault cleared by {args.operator} (audit event {event.event_id})")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Audit ledger operations")
    parser.add_argument("--db-path", default=None, help="SQLite database (default: DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="Recompute the hash chain")
    verify.add_argument("--start", type=int, default=None)
    verify.add_argument("--end", type=int, default=None)
    verify.set_defaults(func=verify_command)

    checkpoint = sub.add_parser("checkpoint", help="Snapshot the current head")
    checkpoint.set_defaults(func=checkpoint_command)

    export = sub.add_parser("export", help="Export events in a time range as JSON")
    export.add_argument("--from", dest="from_ts", required=True, help="ISO-8601 start")
    export.add_argument("--to", dest="to_ts", required=True, help="ISO-8601 end")
    export.add_argument("--output", default=None)
    export.set_defaults(func=export_command)

    clear = sub.add_parser("clear-fault", help="Clear an integrity fault after investigation")
    clear.add_argument("--operator", required=True)
    clear.add_argument("--note", default="")
    clear.set_defaults(func=clear_command)

    args = parser.parse_args(argv)
    ledger = AuditLedger(args.db_path)
    return args.func(ledger, args)


if __name__ == "__main__":
    sys.exit(main())
