"""
Application configuration loaded from config.ini.

Configuration options:
    [Ingestion]
    ChunkSizeMB = 64                  # Max bytes pulled from the source per read
    RowBatchSize = 10000              # Rows mapped between cancellation checks
    ProgressIntervalMs = 100          # Min spacing of progress messages (<= 10/s)
    WorksheetNames = soh, Products    # Data sheet names tried first
    ContainersSheetName = Boxes       # Optional sheet enumerating containers
    MaxRejectionsKept = 1000          # Rejected rows kept with full detail
    DefaultContainerLocation = back-store

    [Storage]
    DatabasePath = ~/.stock_tracker/inventory.db
    ReconcileMode = full_recount      # full_recount | additive

A missing config.ini is not an error; every option has a default.
"""

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from logger import get_logger, CONFIG_FILE_ENV

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024 * 1024
DEFAULT_ROW_BATCH_SIZE = 10_000
DEFAULT_PROGRESS_INTERVAL = 0.1
DEFAULT_WORKSHEET_NAMES = ('soh', 'Products')
DEFAULT_CONTAINERS_SHEET = 'Boxes'
DEFAULT_MAX_REJECTIONS_KEPT = 1000
DEFAULT_CONTAINER_LOCATION = 'back-store'


@dataclass(frozen=True)
class IngestionSettings:
    """Tunables for one ingestion run."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    row_batch_size: int = DEFAULT_ROW_BATCH_SIZE
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    worksheet_names: Tuple[str, ...] = DEFAULT_WORKSHEET_NAMES
    containers_sheet_name: str = DEFAULT_CONTAINERS_SHEET
    max_rejections_kept: int = DEFAULT_MAX_REJECTIONS_KEPT
    default_container_location: str = DEFAULT_CONTAINER_LOCATION

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.row_batch_size <= 0:
            raise ValueError(f"row_batch_size must be positive, got {self.row_batch_size}")
        if self.progress_interval < 0:
            raise ValueError(f"progress_interval cannot be negative, got {self.progress_interval}")

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> 'IngestionSettings':
        """Build settings from the [Ingestion] section, falling back to defaults."""
        section = 'Ingestion'
        names = config.get(section, 'WorksheetNames', fallback='')
        worksheet_names = tuple(n.strip() for n in names.split(',') if n.strip())

        return cls(
            chunk_size=config.getint(section, 'ChunkSizeMB',
                                     fallback=DEFAULT_CHUNK_SIZE // (1024 * 1024)) * 1024 * 1024,
            row_batch_size=config.getint(section, 'RowBatchSize', fallback=DEFAULT_ROW_BATCH_SIZE),
            progress_interval=config.getint(section, 'ProgressIntervalMs',
                                            fallback=int(DEFAULT_PROGRESS_INTERVAL * 1000)) / 1000.0,
            worksheet_names=worksheet_names or DEFAULT_WORKSHEET_NAMES,
            containers_sheet_name=config.get(section, 'ContainersSheetName',
                                             fallback=DEFAULT_CONTAINERS_SHEET),
            max_rejections_kept=config.getint(section, 'MaxRejectionsKept',
                                              fallback=DEFAULT_MAX_REJECTIONS_KEPT),
            default_container_location=config.get(section, 'DefaultContainerLocation',
                                                   fallback=DEFAULT_CONTAINER_LOCATION),
        )


@dataclass(frozen=True)
class StorageSettings:
    """Where the inventory store lives and how uploads are reconciled."""
    database_path: Path
    reconcile_mode: str = 'full_recount'

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> 'StorageSettings':
        default_db = Path(os.path.expanduser("~")) / ".stock_tracker" / "inventory.db"
        raw_path = config.get('Storage', 'DatabasePath', fallback=str(default_db))
        return cls(
            database_path=Path(os.path.expanduser(raw_path)),
            reconcile_mode=config.get('Storage', 'ReconcileMode', fallback='full_recount').strip().lower(),
        )


def load_config(config_path: Optional[str] = None) -> configparser.ConfigParser:
    """
    Load configuration from config.ini.

    Args:
        config_path: Explicit path; defaults to $STOCK_TRACKER_CONFIG or ./config.ini

    Returns:
        ConfigParser (empty when the file does not exist)
    """
    config = configparser.ConfigParser()
    path = Path(config_path or os.environ.get(CONFIG_FILE_ENV, 'config.ini'))

    if not path.exists():
        logger.debug(f"Config file not found: {path}, using defaults")
        return config

    try:
        config.read(path, encoding='utf-8')
        logger.info(f"Configuration loaded from {path}")
    except configparser.Error as e:
        logger.error(f"Failed to parse config {path}: {e}")

    return config
