import os
from pathlib import Path
from typing import Any

PROJECT_NAME = "vendor_etl"

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

DATA_DIR = Path(os.getenv("VENDOR_ETL_DATA_DIR", PROJECT_ROOT_DIR / "data"))
SCRATCH_DIR = Path(os.getenv("VENDOR_ETL_SCRATCH_DIR", DATA_DIR / "scratch"))
LOG_FOLDER = Path(os.getenv("VENDOR_ETL_LOG_DIR", PROJECT_ROOT_DIR / "logs"))

DEFAULT_CONFIG_PATH = Path(os.getenv("VENDOR_ETL_CONFIG", PROJECT_ROOT_DIR / "config" / "default.yaml"))

# Environment overlay for the YAML config, e.g. APP_STORAGE__SECRET_KEY
CONFIG_ENV_PREFIX = "APP_"
CONFIG_ENV_NESTING_SEPARATOR = "__"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Parquet file metadata
PARQUET_SCHEMA_VERSION = "1"
PARQUET_FILE_PREFIX = "vendors_"
PARQUET_FILE_EXTENSION = "parquet"


def ensure_directories() -> None:
    os.makedirs(LOG_FOLDER, exist_ok=True)
    os.makedirs(SCRATCH_DIR, exist_ok=True)


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": LOG_LEVEL,
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "vendor_etl.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
        # botocore/httpx are chatty at DEBUG
        "botocore": {"level": "WARNING"},
        "boto3": {"level": "WARNING"},
        "httpx": {"level": "WARNING"},
        "httpcore": {"level": "WARNING"},
    }

}
