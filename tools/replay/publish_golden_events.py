from __future__ import annotations

import argparse
import glob
import json
import sys
from pathlib import Path

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from workforce_audit.contracts.validation import validate_wire_dict
from workforce_audit.core.broker import PikaBrokerConnection
from workforce_audit.core.errors import MalformedMessage
from workforce_audit.core.settings import load_settings


def _iter_event_files(root: Path) -> list[Path]:
    return [Path(p) for p in sorted(glob.glob(str(root / "*.json")))]


def main() -> None:
    ap = argparse.ArgumentParser(description="Publish golden wire messages to the workforce events exchange.")
    ap.add_argument("--settings", default=None, help="settings YAML (default: config/settings.yaml)")
    ap.add_argument("--events-dir", default=str(Path("contracts") / "golden_events" / "v1"))
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument(
        "--fail-on-invalid",
        action="store_true",
        help="By default invalid (dirty) golden events are skipped. Use this flag to fail fast instead.",
    )
    args = ap.parse_args()

    root = Path(args.events_dir)
    files = _iter_event_files(root)
    if not files:
        raise SystemExit(f"no golden events found under {root}")

    s = load_settings(args.settings)
    connection = None if args.dry_run else PikaBrokerConnection(s.broker)
    try:
        for fp in files:
            message = json.loads(fp.read_text(encoding="utf-8"))
            try:
                validate_wire_dict(message)
            except MalformedMessage as e:
                if args.fail_on_invalid:
                    raise
                print(f"[skip-invalid] {fp.name}: {e}")
                continue
            key = message["EventType"]
            body = json.dumps(message, ensure_ascii=False).encode("utf-8")
            if connection is None:
                print(f"[dry-run] publish {s.broker.exchange_name}/{key} <- {fp.name}")
            else:
                connection.publish(key, body, message_id=message["EventId"])
                print(f"publish {s.broker.exchange_name}/{key} <- {fp.name}")
    finally:
        if connection is not None:
            connection.close()


if __name__ == "__main__":
    main()
