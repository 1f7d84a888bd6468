#!/usr/bin/env python3
"""
Narrator - GPS-triggered audio narration for walking tours

Usage:
    python -m narrator POIS [options]

POIS is a JSON file or an http(s) URL returning the POI list.

Options:
    --language LANG   Narration language (default: vi)
    --record FILE     Record GPS trace to JSON file for debugging
    --playback FILE   Playback GPS trace from JSON file
    --speed FACTOR    Playback speed multiplier (default: 1.0)
    --lat LAT         Fixed latitude (for testing without GPS)
    --lon LON         Fixed longitude (for testing without GPS)
    --preload         Cache audio for nearby POIs before starting
    --preload-all     Cache audio for every POI before starting
    --weighted        Use the weighted position smoother
    --radius METERS   Trigger radius (default: 18)
    --sync-url URL    Endpoint for batched analytics upload
    --db FILE         State database (default: narrator_state.db)
    --cache-dir DIR   Asset cache directory (default: narrator_cache)
    --log FILE        Log file path (default: narrator_TIMESTAMP.log)
    --events          Serve a WebSocket event feed (also accepts locations)
    --reset           Clear all POI cooldowns and exit
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

from .app import TourSession
from .assets import DiskAssetStore
from .audio import EspeakSpeech, ProcessAudioSink
from .config import CONFIG
from .cooldown import CooldownStore
from .directory import POIDirectory
from .event_server import EventServer, WebSocketPositionSource
from .gps import StaticPositionSource, TermuxPositionSource, TracePlaybackSource, TraceRecorder
from .logger import Logger
from .preload import AssetPreloader
from .smoothing import create_smoother
from .store import KeyValueStore
from .sync import HttpBatchTransport, SyncQueue


def main():
    parser = argparse.ArgumentParser(
        description="Narrator - GPS-triggered audio narration for walking tours"
    )
    parser.add_argument("pois", nargs="?",
                        help="POI list: JSON file or http(s) URL")
    parser.add_argument("--language", default=CONFIG["default_language"],
                        help=f"Narration language (default: {CONFIG['default_language']})")
    parser.add_argument("--record", metavar="FILE",
                        help="Record GPS trace to JSON file")
    parser.add_argument("--playback", metavar="FILE",
                        help="Playback GPS trace from JSON file")
    parser.add_argument("--speed", type=float, default=1.0,
                        help="Playback speed multiplier (default: 1.0)")
    parser.add_argument("--lat", type=float, metavar="LAT",
                        help="Fixed latitude (for testing without GPS)")
    parser.add_argument("--lon", type=float, metavar="LON",
                        help="Fixed longitude (for testing without GPS)")
    parser.add_argument("--preload", action="store_true",
                        help="Cache audio for POIs near the first fix")
    parser.add_argument("--preload-all", action="store_true",
                        help="Cache audio for every POI")
    parser.add_argument("--weighted", action="store_true",
                        help="Use the weighted moving-average smoother")
    parser.add_argument("--radius", type=float, metavar="METERS",
                        help=f"Trigger radius (default: {CONFIG['trigger_radius']})")
    parser.add_argument("--sync-url", metavar="URL",
                        help="Endpoint for batched analytics upload")
    parser.add_argument("--db", metavar="FILE", default=CONFIG["db_path"],
                        help=f"State database (default: {CONFIG['db_path']})")
    parser.add_argument("--cache-dir", metavar="DIR", default=CONFIG["asset_cache_dir"],
                        help=f"Asset cache directory (default: {CONFIG['asset_cache_dir']})")
    parser.add_argument("--log", metavar="FILE",
                        help="Log file path (default: narrator_TIMESTAMP.log)")
    parser.add_argument("--events", action="store_true",
                        help="Serve a WebSocket event feed that also accepts locations")
    parser.add_argument("--reset", action="store_true",
                        help="Clear all POI cooldowns and exit")

    args = parser.parse_args()

    # Validate lat/lon - must provide both or neither
    if (args.lat is None) != (args.lon is None):
        parser.error("--lat and --lon must be used together")

    # Reset cooldowns: early exit
    if args.reset:
        kv = KeyValueStore(args.db, logger=Logger(echo=False))
        cooldowns = CooldownStore(kv)
        active = len(cooldowns.list_active())
        cooldowns.clear_all()
        print(f"Cleared cooldowns ({active} POIs were cooling down).")
        kv.close()
        return

    if not args.pois:
        parser.error("a POI file or URL is required")

    # Determine log path
    log_path = args.log
    if not log_path:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = f"narrator_{timestamp}.log"

    event_server = None
    if args.events:
        event_server = EventServer()
        event_server.start()
    logger = Logger(log_path, callback=event_server.send_log if event_server else None)

    try:
        pois = POIDirectory(logger=logger).load(args.pois)
    except (OSError, ValueError) as e:
        print(f"Could not load POIs: {e}")
        sys.exit(1)

    kv = KeyValueStore(args.db, logger=logger)
    store = DiskAssetStore(args.cache_dir)
    preloader = AssetPreloader(store, kv, logger=logger)
    sink = ProcessAudioSink(resolver=preloader.resolve_path, logger=logger)
    speech = EspeakSpeech(logger=logger)
    transport = HttpBatchTransport(args.sync_url) if args.sync_url else None

    session = TourSession(
        pois, kv, sink, speech,
        language=args.language,
        smoother=create_smoother("weighted" if args.weighted else "simple"),
        sync=SyncQueue(kv, transport=transport, logger=logger),
        preloader=preloader,
        trigger_radius=args.radius,
        event_server=event_server,
        logger=logger,
    )

    # Set up position source
    if args.playback:
        if not Path(args.playback).exists():
            print(f"Playback file not found: {args.playback}")
            sys.exit(1)
        source = TracePlaybackSource(args.playback, args.speed)
    elif args.lat is not None:
        source = StaticPositionSource(args.lat, args.lon)
    elif event_server:
        source = WebSocketPositionSource(event_server)
    else:
        source = TermuxPositionSource(logger=logger)
    if args.record:
        source = TraceRecorder(source, args.record)

    print(f"\n=== Narrator ===")
    print(f"POIs: {len(pois)}, language: {args.language}")
    if isinstance(source, TracePlaybackSource):
        print(f"Playback mode: {args.speed}x speed")
    print("Press Ctrl+C to stop\n")

    try:
        asyncio.run(session.run(source, preload=args.preload, preload_all=args.preload_all))
    except KeyboardInterrupt:
        print("\nTour interrupted")
        logger.log("Tour interrupted by user")
    finally:
        if event_server:
            event_server.stop()
        kv.close()
        logger.close()


if __name__ == "__main__":
    main()
