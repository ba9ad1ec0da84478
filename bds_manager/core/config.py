import os
import platform
from pathlib import Path

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
APP_DIR = CORE_DIR.parent
ROOT_DIR = APP_DIR.parent

ENV_FILE = ROOT_DIR / ".env"

_raw_data_dir = os.getenv("DATA_DIR", str(ROOT_DIR / "data")).strip()
DATA_DIR = Path(_raw_data_dir).expanduser()
if not DATA_DIR.is_absolute():
    DATA_DIR = ROOT_DIR / DATA_DIR

SETTINGS_FILE = DATA_DIR / "settings.yml"

# ==========================================
# Bedrock Dedicated Server Configuration
# ==========================================

_raw_bds_path = os.getenv("BDS_SERVER_PATH", str(DATA_DIR / "bedrock_server")).strip()
BDS_SERVER_PATH = Path(_raw_bds_path).expanduser()
if not BDS_SERVER_PATH.is_absolute():
    BDS_SERVER_PATH = ROOT_DIR / BDS_SERVER_PATH

_raw_backup_path = os.getenv("BDS_BACKUP_PATH", str(DATA_DIR / "backups")).strip()
DEFAULT_BACKUP_PATH = Path(_raw_backup_path).expanduser()
if not DEFAULT_BACKUP_PATH.is_absolute():
    DEFAULT_BACKUP_PATH = ROOT_DIR / DEFAULT_BACKUP_PATH

# The executable name as BDS ships it; users should not rename it.
BDS_EXECUTABLE_NAME = "bedrock_server.exe" if platform.system() == "Windows" else "bedrock_server"

# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "127.0.0.1")
