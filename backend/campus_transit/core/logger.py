import logging
from logging.handlers import RotatingFileHandler

from campus_transit.core.settings import get_settings

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_root = logging.getLogger("transit")
_root.setLevel(logging.INFO)

# Prevent duplicate handlers
if not _root.handlers:
    # Rotating file handler: max 5 MB per file, keep 3 backups
    file_handler = RotatingFileHandler(get_settings().log_file, maxBytes=5*1024*1024, backupCount=3)
    file_handler.setFormatter(logging.Formatter(_FORMAT))
    _root.addHandler(file_handler)

# Children propagate to the "transit" handler above.
workflow_logger = logging.getLogger("transit.workflow")
notify_logger = logging.getLogger("transit.notify")
poller_logger = logging.getLogger("transit.poller")
api_logger = logging.getLogger("transit.api")
