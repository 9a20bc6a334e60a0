# utils/logger.py
from loguru import logger
import os
import sys
from datetime import datetime
from pathlib import Path

log_dir = Path(os.getenv("LOG_DIR") or Path(__file__).resolve().parents[1] / "logs")
log_dir.mkdir(parents=True, exist_ok=True)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()

start_time = datetime.now().strftime("%Y%m%d_%H%M%S")
log_file = log_dir / f"agrisync_{start_time}.log"
alert_file = log_dir / "alerts.log"

logger.remove()

logger.add(
    sys.stdout,
    level=log_level,
    enqueue=True,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | {level} | {message}",
)

logger.add(
    log_file,
    level="DEBUG",
    rotation="100 MB",
    retention="90 days",
    enqueue=True,
    encoding="utf-8",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
)

# status regressions and invariant breaks, kept apart for whoever is on call
logger.add(
    alert_file,
    level="WARNING",
    filter=lambda record: record["message"].startswith("[ALERT]"),
    rotation="10 MB",
    retention="180 days",
    enqueue=True,
    encoding="utf-8",
    format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {message}",
)

logger.debug(f"Logger initialized. Writing logs to {log_file}")
