import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    VOUCHER_TTL_MINUTES = _get_int("WELFARE_VOUCHER_TTL_MINUTES", 15)
    SNAPSHOT_PATH = os.getenv("WELFARE_SNAPSHOT_PATH", "").strip()
    SEED_DEMO_DATA = _get_bool("WELFARE_SEED_DEMO_DATA", True)
    LOG_LEVEL = os.getenv("WELFARE_LOG_LEVEL", "INFO").strip().upper()
    LOG_JSON = _get_bool("WELFARE_LOG_JSON", True)


settings = Settings()
