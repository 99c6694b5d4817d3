# platemate/main.py
import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
import argparse
import asyncio
import json
from pathlib import Path

from core.settings import API, APP_NAME, OFFLINE_SYNC
from services.offline_service import OfflineSyncService
from services.reachability import ReachabilityProbe, watch
from storage.db import init_db


def _print(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


async def _run(args) -> int:
    # start offline so the first successful probe counts as a reconnect
    service = OfflineSyncService(initial_status=False).init()
    probe = ReachabilityProbe(service.api)
    try:
        if args.command == "status":
            service.set_online(await probe.check(), sync_on_reconnect=False)
            _print(service.status())
        elif args.command == "enqueue":
            data = json.loads(Path(args.file).read_text(encoding="utf-8"))
            print(service.add_to_queue(args.kind, data))
        elif args.command == "clear":
            service.clear_queue()
        elif args.command == "sync":
            service.set_online(await probe.check(), sync_on_reconnect=False)
            if not service.get_online_status():
                print(f"{API.base_url} is unreachable, {service.get_queue_count()} entries kept")
                return 1
            result = await service.force_sync()
            _print(result.as_dict())
        elif args.command == "watch":
            service.on_status_change(lambda online: print("online" if online else "offline"))
            await watch(service.monitor, probe, args.interval)
    finally:
        await service.aclose()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog=APP_NAME.lower(), description=f"{APP_NAME} offline queue")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="show connectivity and queue state")
    sub.add_parser("sync", help="replay queued writes now")
    sub.add_parser("clear", help="drop every queued write")
    enqueue = sub.add_parser("enqueue", help="queue a write from a JSON file")
    enqueue.add_argument("kind", choices=sorted(OFFLINE_SYNC.resource_families))
    enqueue.add_argument("file")
    watcher = sub.add_parser("watch", help="probe the backend and sync on reconnect")
    watcher.add_argument("--interval", type=float, default=OFFLINE_SYNC.reachability_interval_sec)
    args = parser.parse_args(argv)

    init_db()
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
