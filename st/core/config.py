import json
import os
from pathlib import Path
from st.common.logger import log
from st.common.setup import PATHS

#region === Helpers and Paths ===

SETTINGS_PATH = PATHS.settings
DEFAULT_TIMER_FILE = PATHS.current / "timer.json"

BACKENDS = ("memory", "file", "firebase")

# Default values for every settings key, along with the type each one must have.
_SETTINGS_DEFAULTS = {
    "backend": "file",
    "record_key": "timer",
    "file_path": "",
    "firebase_url": "",
    "firebase_auth": "",
    "tick_interval_ms": 200,
    "edit_tolerance_seconds": 1,
    "reconnect_delay_ms": 5000,
    "request_timeout_ms": 10000,
    "follow_network_status": True,
}

# Process environment that overrides whatever settings.json says, mostly for store endpoint and credentials.
_ENV_OVERRIDES = {
    "SHAREDTIMER_BACKEND": "backend",
    "SHAREDTIMER_RECORD_KEY": "record_key",
    "SHAREDTIMER_FILE": "file_path",
    "SHAREDTIMER_FIREBASE_URL": "firebase_url",
    "SHAREDTIMER_FIREBASE_AUTH": "firebase_auth",
}

# Helper to return a truly fresh, default settings dict.
def build_default_settings():
    return dict(_SETTINGS_DEFAULTS)

# Checks one value against the type of its default. Bools are kept apart from ints, and numbers must be positive.
def _is_valid(key, value):
    default = _SETTINGS_DEFAULTS[key]
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, int):
        return isinstance(value, int) and not isinstance(value, bool) and value >= 0
    return isinstance(value, str)

#endregion === Helpers and Paths ===

#region === Saving and Loading Settings ===

# Loads settings.json, filling in defaults for anything missing or mistyped, then applies environment overrides.
def load_settings(environ=None):
    environ = os.environ if environ is None else environ
    settings = build_default_settings()
    try:
        if not Path(SETTINGS_PATH).exists():
            log.info(f"No existing settings.json found at '{SETTINGS_PATH}', using default settings.")
        else:
            with open(SETTINGS_PATH, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if not isinstance(loaded, dict):
                raise TypeError(f"settings.json holds a {type(loaded).__name__}, not an object")

            defaulted_values = set()
            for key in _SETTINGS_DEFAULTS:
                if key not in loaded or not _is_valid(key, loaded[key]):
                    defaulted_values.add(key)
                else:
                    settings[key] = loaded[key]

            if defaulted_values:
                log.warning(f"Successfully loaded settings from '{SETTINGS_PATH}', but with missing values that were defaulted: {', '.join(sorted(defaulted_values))}")
            else:
                log.info(f"Successfully loaded settings from '{SETTINGS_PATH}'.")
    # Fall back to defaults in case of error, but warn in log
    except (json.JSONDecodeError, OSError, TypeError):
        log.warning("Ran into an error while trying to load settings.json, falling back to default settings.",exc_info=True)
        settings = build_default_settings()

    for env_name, key in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            settings[key] = value
            log.debug(f"Setting '{key}' overridden from environment variable {env_name}")

    if settings["backend"] not in BACKENDS:
        log.warning(f"Unknown store backend '{settings['backend']}' configured, expected one of {', '.join(BACKENDS)}.")
    return settings

# Write the given settings to disk under PATHS.settings
def save_settings(settings):
    with open(SETTINGS_PATH, "w", encoding="utf-8") as f:
        json.dump(settings, f, indent=2)
    log.info(f"Successfully saved settings to '{SETTINGS_PATH}'")

# Where the file backend keeps its record when no explicit path is configured.
def resolve_timer_file(settings):
    if settings.get("file_path"):
        return Path(settings["file_path"]).expanduser()
    return DEFAULT_TIMER_FILE

#endregion === Saving and Loading Settings ===
