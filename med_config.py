# med_config.py
# App constants and on-device data paths.
#
# Data dir resolution order:
#   1. $MYPILLS_DATA_DIR
#   2. $ANDROID_PRIVATE/mypills_data   (set by python-for-android)
#   3. Android app files dir via pyjnius
#   4. ./mypills_data next to the sources (desktop)

import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    from jnius import autoclass
except Exception:
    autoclass = None

APP_TITLE = "My Pills"
DATA_DIR_NAME = "mypills_data"

DB_FILENAME = "medications.db.aes"
KEY_FILENAME = ".enc_key"
LOG_FILENAME = "app.log"
PREFS_FILENAME = "settings.json"
TMP_DIRNAME = "tmp"

ENV_DATA_DIR = "MYPILLS_DATA_DIR"
ENV_LOG_LEVEL = "MYPILLS_LOG_LEVEL"

DEFAULT_LOG_LEVEL = "INFO"
LOG_MAX_LINES = 800

DEFAULT_DARK_MODE = True

# Desktop window size (ignored on Android)
DESKTOP_WINDOW_SIZE = (420, 760)


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    key_path: Path
    log_path: Path
    prefs_path: Path
    tmp_dir: Path

    @classmethod
    def under(cls, base_dir: Path) -> "AppPaths":
        base_dir = Path(base_dir)
        return cls(
            base_dir=base_dir,
            db_path=base_dir / DB_FILENAME,
            key_path=base_dir / KEY_FILENAME,
            log_path=base_dir / LOG_FILENAME,
            prefs_path=base_dir / PREFS_FILENAME,
            tmp_dir=base_dir / TMP_DIRNAME,
        )

    def ensure(self) -> "AppPaths":
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        return self


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _android_files_dir() -> Optional[Path]:
    if autoclass is None or "ANDROID_ARGUMENT" not in os.environ:
        return None
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        activity = PythonActivity.mActivity
        d = activity.getFilesDir().getAbsolutePath()
        return Path(str(d))
    except Exception:
        return None


def app_base_dir() -> Path:
    override = os.environ.get(ENV_DATA_DIR)
    if override:
        return Path(override).expanduser()

    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d

    af = _android_files_dir()
    if af:
        d = af / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d

    return Path(__file__).resolve().parent / DATA_DIR_NAME


def resolve_paths() -> AppPaths:
    return AppPaths.under(app_base_dir()).ensure()


def log_level() -> str:
    return os.environ.get(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
