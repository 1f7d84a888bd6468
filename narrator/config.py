"""Configuration settings for Narrator."""

CONFIG = {
    # Position smoothing
    "smoother_window_size": 5,          # samples in the moving average
    "smoother_max_age_ms": 30000,       # drop samples older than this
    "smoother_max_accuracy": 50,        # meters - reject fixes worse than this
    # Motion classification
    "motion_window_size": 3,            # readings in the speed average
    "motion_min_time_delta_ms": 1000,   # ignore readings closer together than this
    "motion_max_plausible_mps": 50,     # meters/second - faster is a GPS glitch
    "speed_thresholds": {               # m/s upper bounds per movement state
        "stationary": 0.5,
        "walking": 2.0,
        "jogging": 3.5,
        "running": 5.0,
    },
    # Geofencing
    "trigger_radius": 18,               # meters
    "nearby_radius_multiplier": 2.0,    # nearby list = trigger_radius * this
    "cooldown_period_ms": 30 * 60 * 1000,
    # Playback
    "autoplay": True,
    "default_volume": 1.0,
    "default_language": "vi",
    "fallback_language": "en",
    "audio_player_command": ["mpv", "--no-video", "--really-quiet"],
    "tts_command": ["espeak", "-s", "150"],
    "tts_languages": {
        "vi": "vi",
        "en": "en-us",
        "ja": "ja",
        "fr": "fr",
        "ko": "ko",
        "zh": "cmn",
    },
    # Preloading
    "preload_radius": 500,              # meters
    "preload_worker_timeout": 30,       # seconds before optimistic resolve
    "asset_fetch_timeout": 20,          # seconds per HTTP request
    "preload_max_age_ms": 24 * 3600 * 1000,
    "asset_cache_dir": "narrator_cache",
    # Analytics sync
    "sync_throttle_ms": 5000,
    "sync_interval": 5 * 60,            # seconds between periodic syncs
    "sync_timeout": 15,                 # seconds for the batch POST
    "connectivity_check_interval": 20,  # seconds between reachability checks while offline
    "coordinate_rounding": 3,           # decimals (~111m) for analytics privacy
    # Position sources
    "gps_poll_interval": 3,             # seconds
    "gps_timeout": 30,                  # seconds
    # POI directory
    "poi_cache_path": "narrator_pois.json",
    "poi_fetch_timeout": 30,
    # Local state
    "db_path": "narrator_state.db",
    "log_interval": 10,                 # seconds between STATE log entries
    "event_server_port": 8765,
}
