# utils/config.py
import os
from pathlib import Path
import yaml
from dotenv import load_dotenv

from utils.logger import logger


def resolve_env(obj):
    """Replace "${VAR}" string values with the environment value (empty if unset)."""
    if isinstance(obj, dict):
        return {k: resolve_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [resolve_env(v) for v in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        varname = obj[2:-1]
        return os.getenv(varname, "")
    return obj


def load_cfg(cfg_path: str | None = None):

    base_dir = Path(__file__).resolve().parents[1]

    cfg_file = Path(cfg_path or os.getenv("AGRISYNC_CONFIG") or (base_dir / "config.yaml"))

    load_dotenv(base_dir / ".env")

    with open(cfg_file, "r", encoding="utf-8") as f:
        raw_cfg = yaml.safe_load(f) or {}

    cfg = resolve_env(raw_cfg)

    if not (cfg.get("control", {}) or {}).get("token"):
        logger.warning("Control API has no token configured; every caller is trusted.")

    logger.info(f"Config loaded from {cfg_file}")
    return cfg
