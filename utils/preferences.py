"""
User preferences stored as a small JSON document.

Only the "analysis" section is read by the engine (see
config.load_analysis_settings); other keys are preserved untouched.
"""
import os
import sys
import json
import logging

logger = logging.getLogger("MultiDeck.Preferences")

ANALYSIS_KEY = "analysis"


def _default_prefs_file():
    if getattr(sys, 'frozen', False) and sys.platform == 'darwin':
        # Inside a macOS app bundle the install folder is read-only
        folder = os.path.join(os.path.expanduser("~"), "Library", "Application Support", "MultiDeck")
    else:
        folder = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data")
    return os.path.join(folder, "user_preferences.json")


# MULTIDECK_PREFS_FILE points a run at a different preferences file
PREFS_FILE = os.environ.get("MULTIDECK_PREFS_FILE") or _default_prefs_file()


def load_preferences():
    """The whole preferences document, or {} if missing or unreadable."""
    try:
        with open(PREFS_FILE, 'r') as f:
            prefs = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {PREFS_FILE}: {e}")
        return {}

    if not isinstance(prefs, dict):
        logger.warning(f"Ignoring {PREFS_FILE}: top level is not an object")
        return {}
    return prefs


def save_preferences(prefs):
    """Merge `prefs` into the stored document (top-level keys replace)."""
    merged = load_preferences()
    merged.update(prefs)

    folder = os.path.dirname(PREFS_FILE)
    try:
        if folder:
            os.makedirs(folder, exist_ok=True)
        # Written beside the target, then swapped in atomically
        tmp_path = PREFS_FILE + ".tmp"
        with open(tmp_path, 'w') as f:
            json.dump(merged, f, indent=2)
        os.replace(tmp_path, PREFS_FILE)
    except OSError as e:
        logger.error(f"Could not save preferences to {PREFS_FILE}: {e}")


def get_analysis_preferences():
    """Saved analysis overrides (waveform resolution, tempo band...)."""
    analysis = load_preferences().get(ANALYSIS_KEY, {})
    if not isinstance(analysis, dict):
        logger.warning(f"Ignoring malformed '{ANALYSIS_KEY}' preferences")
        return {}
    return analysis


def set_analysis_preferences(analysis):
    save_preferences({ANALYSIS_KEY: dict(analysis)})
