"""
Forensic Reporter CLI
=====================

Offline inspection of a saved lattice snapshot. The file is only read,
never written back.

COMMANDS:
- verify:  Check journal hash chain integrity
- log:     Dump the linear journal (Git-style)
- explain: Ordered history of one entity
- stats:   Per-service metrics of the restored engine

USAGE:
    python -m lattice.forensic [COMMAND] SNAPSHOT [ARGS]
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from .persistence import SnapshotError, StrictLatticeEncoder, event_from_dict, load_snapshot, read_snapshot


def cmd_verify(args) -> int:
    """Verify hash chain integrity."""
    print(f"[*] Verifying snapshot: {args.snapshot}")
    try:
        engine = load_snapshot(args.snapshot)
    except SnapshotError as exc:
        print(f"[FAIL] Integrity Error: {exc}")
        return 1

    result = engine.journal.verify_integrity()
    if result.is_failure:
        print(f"[FAIL] {result.error.code}: {result.error.message}")
        return 1

    markers = engine.journal.compaction_markers()
    print(f"[PASS] Verified {result.value} events. Integrity intact.")
    if markers:
        dropped = sum(m.event_count for m in markers)
        print(f"[INFO] {len(markers)} compaction(s) dropped {dropped} events (up to seq {markers[-1].seq_to}).")
    print(f"[INFO] HEAD Hash: {engine.journal.head_hash}")
    return 0


def cmd_log(args) -> int:
    """Dump linear log."""
    data = read_snapshot(args.snapshot)
    events = [event_from_dict(raw) for raw in data.get('journal', {}).get('events', [])]
    if args.limit:
        events = events[-args.limit:]
    if not events:
        print("No log.")
        return 0

    print("SEQ  | TIME                | TYPE                | HASH        | ENTITY")
    print("-" * 80)
    for event in events:
        print(f"{event.seq:<4} | {event.timestamp.isoformat()[:19]} | {event.event_type.value:<19} | "
              f"{event.event_hash[:8]}... | {event.entity_id or '-'}")
    return 0


def cmd_explain(args) -> int:
    """Ordered history of one entity."""
    engine = load_snapshot(args.snapshot)
    result = engine.journal.explain(args.entity_id)
    if result.is_failure:
        print(f"[FAIL] {result.error.code}: {result.error.message}")
        return 1

    explanation = result.value
    print(f"HISTORY OF {explanation.entity_id}")
    print("=" * (11 + len(explanation.entity_id)))
    if explanation.truncated:
        print(f"[WARN] Compaction dropped earlier events; history starts after seq "
              f"{explanation.compacted_before_seq}.")
    for item in explanation.history:
        print(f"#{item.seq:<4} {item.timestamp.isoformat()[:19]} {item.actor or '-':<12} {item.summary}")
    if not explanation.history:
        print("(no retained events)")
    return 0


def cmd_stats(args) -> int:
    """Print per-service metrics."""
    engine = load_snapshot(args.snapshot)
    print(json.dumps(engine.metrics(), cls=StrictLatticeEncoder, indent=2, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m lattice.forensic", description="Lattice Forensic Reporter")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    verify = subparsers.add_parser("verify", help="Verify journal integrity")
    verify.add_argument("snapshot", help="Path to snapshot JSON")

    log = subparsers.add_parser("log", help="Dump journal")
    log.add_argument("snapshot", help="Path to snapshot JSON")
    log.add_argument("--limit", type=int, default=0, help="Only the last N events")

    explain = subparsers.add_parser("explain", help="Explain one entity")
    explain.add_argument("snapshot", help="Path to snapshot JSON")
    explain.add_argument("entity_id", help="Node, edge or proposal id")

    stats = subparsers.add_parser("stats", help="Print metrics")
    stats.add_argument("snapshot", help="Path to snapshot JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    commands = {
        'verify': cmd_verify,
        'log': cmd_log,
        'explain': cmd_explain,
        'stats': cmd_stats,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 2
    try:
        return handler(args)
    except SnapshotError as exc:
        print(f"[FAIL] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
