from __future__ import annotations

import argparse
import glob
import json
import sys
from pathlib import Path

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

import redis  # type: ignore

from src.contracts.validation import validate_wire_dict


def _iter_event_files(root: Path) -> list[Path]:
    return [Path(p) for p in sorted(glob.glob(str(root / "*.json")))]


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--redis-url", required=True)
    ap.add_argument("--events-dir", default=str(Path("contracts") / "golden_events"))
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument(
        "--fail-on-invalid",
        action="store_true",
        help="By default invalid golden messages are skipped. Use this flag to fail fast instead.",
    )
    args = ap.parse_args()

    root = Path(args.events_dir)
    # One sub-directory per channel: golden_events/<channel>/*.json
    channels = sorted(p for p in root.iterdir() if p.is_dir())
    if not channels:
        raise SystemExit(f"no channel directories found under {root}")

    r = None if args.dry_run else redis.Redis.from_url(args.redis_url, decode_responses=True)
    for channel_dir in channels:
        channel = channel_dir.name
        for fp in _iter_event_files(channel_dir):
            msg = json.loads(fp.read_text(encoding="utf-8"))
            try:
                validate_wire_dict(channel, msg)
            except ValueError as e:
                if args.fail_on_invalid:
                    raise
                print(f"[skip-invalid] {channel}/{fp.name}: {e}")
                continue
            body = json.dumps(msg, ensure_ascii=False)
            if r is None:
                print(f"[dry-run] xadd {channel} <- {fp.name}")
            else:
                r.xadd(channel, {"event": body})
                print(f"xadd {channel} <- {fp.name}")


if __name__ == "__main__":
    main()
