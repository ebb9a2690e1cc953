"""
Bridge configuration: environment variables (optionally from a .env file)
collected into one frozen Settings object.
"""

import os
from dataclasses import dataclass
from importlib import resources
from pathlib import Path

from dotenv import load_dotenv

BRIDGE_DIR = Path(__file__).resolve().parent
BUNDLED_CATEGORIES = Path(str(resources.files("bridge_data") / "manjaro_categories.json"))


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _getenv_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # target backend
    base_url: str
    cookie_file: Path
    captcha_file: Path
    diagnostics_dir: Path
    image_cdn_prefix: str

    # category resolution
    categories_file: Path
    qwen_api_key: str
    qwen_api_url: str
    qwen_model: str
    default_category_id: str
    default_category_name: str

    # polling / pacing (seconds)
    poll_interval: float
    login_check_interval: float
    max_poll_attempts: int | None
    pacing_delay: float

    # local storage + bridge
    db_path: Path
    host: str
    port: int
    log_level: str


def load_settings() -> Settings:
    env_path = BRIDGE_DIR.parent / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)
    else:
        load_dotenv()

    return Settings(
        base_url=os.getenv("MANJARO_BASE_URL", "https://www.manjarosupply.com/shop").rstrip("/"),
        cookie_file=Path(os.getenv("MANJARO_COOKIE_FILE", str(BRIDGE_DIR.parent / "manjaro_cookies.json"))),
        captcha_file=Path(os.getenv("MANJARO_CAPTCHA_FILE", "manjaro_captcha.png")),
        diagnostics_dir=Path(os.getenv("MANJARO_DIAGNOSTICS_DIR", "diagnostics")),
        image_cdn_prefix=os.getenv(
            "MANJARO_IMAGE_CDN_PREFIX",
            "https://image.manjarosupply.com/shop/store/goods/223/",
        ),
        categories_file=Path(
            os.getenv("MANJARO_CATEGORIES_FILE", str(BUNDLED_CATEGORIES))
        ),
        qwen_api_key=os.getenv("QWEN_API_KEY", "").strip(),
        qwen_api_url=os.getenv(
            "QWEN_API_URL",
            "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation",
        ),
        qwen_model=os.getenv("QWEN_MODEL", "qwen-turbo"),
        default_category_id=os.getenv("MANJARO_DEFAULT_CATEGORY_ID", "3871"),
        default_category_name=os.getenv(
            "MANJARO_DEFAULT_CATEGORY_NAME",
            "Sports/Outdoors > Exercise & Fitness > Aquatic Fitness Equipment",
        ),
        poll_interval=_getenv_float("MANJARO_POLL_INTERVAL", 0.5),
        login_check_interval=_getenv_float("MANJARO_LOGIN_CHECK_INTERVAL", 0.3),
        max_poll_attempts=_getenv_int("MANJARO_MAX_POLL_ATTEMPTS", None),
        pacing_delay=_getenv_float("MIGRATOR_PACING_DELAY", 2.0),
        db_path=Path(os.getenv("MIGRATOR_DB_PATH", "migrator.db")),
        host=os.getenv("MIGRATOR_HOST", "127.0.0.1"),
        port=_getenv_int("MIGRATOR_PORT", 37421) or 37421,
        log_level=os.getenv("MIGRATOR_LOG_LEVEL", "info").lower(),
    )
