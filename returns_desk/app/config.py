import json
import os
from typing import List, Optional

ROOT = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(ROOT, 'config.json')  # can be overridden via RETURNS_CONFIG_PATH
DB_PATH = os.path.join(ROOT, 'returns.sqlite')

DEFAULT_CONFIG = {
    'api_base_url': 'http://localhost:5000/api/pos',
    'store_id': '',
    'device_id': '',
    'device_token': '',
    'db_path': '',
    'currency': 'USD',
    # Store default rate in percent; swaps only fall back to it when the sale carries no usable rate.
    'store_tax_rate_pct': 0,
    'request_timeout_s': 10,
    'health_timeout_s': 0.8,
    # Treat the device as disconnected regardless of what the health probe says.
    'force_offline': False,
    'snapshot_interval_s': 300,
    'snapshot_window_days': 7,
    'snapshot_limit': 500,
    'drain_limit': 20,
    'drain_retry_after_s': 60,
    'max_sync_attempts': 100,
    'escalation_threshold': 5,
    'synced_retention_days': 7,
}

_ENV_OVERRIDES = {
    'RETURNS_API_BASE_URL': 'api_base_url',
    'RETURNS_STORE_ID': 'store_id',
    'RETURNS_DEVICE_ID': 'device_id',
    'RETURNS_DEVICE_TOKEN': 'device_token',
    'RETURNS_DB_PATH': 'db_path',
}


def _truthy(raw) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def config_int(cfg: dict, key: str) -> int:
    try:
        return int(cfg.get(key))
    except Exception:
        return int(DEFAULT_CONFIG[key])


def config_float(cfg: dict, key: str) -> float:
    try:
        return float(cfg.get(key))
    except Exception:
        return float(DEFAULT_CONFIG[key])


def load_config(path: Optional[str] = None) -> dict:
    path = path or settings.config_path
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow ops to override without rewriting the on-disk config.
    for env_name, key in _ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            cfg[key] = os.environ[env_name]
    if os.environ.get("RETURNS_FORCE_OFFLINE"):
        cfg["force_offline"] = _truthy(os.environ["RETURNS_FORCE_OFFLINE"])
    if not (cfg.get("db_path") or "").strip():
        cfg["db_path"] = DB_PATH
    return cfg


def save_config(data: dict, path: Optional[str] = None):
    with open(path or settings.config_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.config_path = os.getenv('RETURNS_CONFIG_PATH', '').strip() or CONFIG_PATH
        # The till UI is served from another origin during development.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

settings = Settings()
