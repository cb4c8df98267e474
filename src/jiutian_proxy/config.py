"""Configuration handling for the JiuTian proxy."""

import yaml
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

relay_logger = logging.getLogger("relay")
relay_logger.setLevel(logging.INFO)
relay_logger.propagate = True

DEFAULT_CONFIG: Dict[str, Any] = {
    "upstream": {
        "base_url": "https://jiutian.10086.cn/largemodel/api/v2",
        "model": "jiutian-lan",
    },
    "server": {"host": "0.0.0.0", "port": 3000},
    "settings": {
        "timeout": 60,
        "token_lifetime": 3600,
        "expose_errors": False,
        "log_file": "",
    },
}


class Settings(BaseModel):
    """Resolved runtime settings (config.yaml merged with the environment)."""
    api_key: str = ""
    base_url: str = DEFAULT_CONFIG["upstream"]["base_url"]
    model: str = DEFAULT_CONFIG["upstream"]["model"]
    host: str = "0.0.0.0"
    port: int = 3000
    timeout: float = 60
    token_lifetime: int = 3600
    expose_errors: bool = False
    log_file: str = ""


def load_config() -> Dict[str, Any]:
    """
    Load configuration from config.yaml file.
    Returns a dictionary containing the configuration.
    """
    try:
        config_path = Path(__file__).parent.parent.parent / "config.yaml"
        config_yaml = config_path.read_text()
        config = yaml.safe_load(config_yaml)
        logger.info("Successfully loaded configuration from config.yaml")
        return config
    except Exception as e:
        logger.error(f"Error loading config.yaml: {str(e)}")
        return DEFAULT_CONFIG


def load_settings(config: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Build Settings from the YAML configuration and the process environment.

    Environment variables (optionally read from a .env file) take precedence:
    JIUTIAN_API_KEY, JIUTIAN_API_BASE, PORT and ENVIRONMENT / NODE_ENV.
    """
    load_dotenv()
    if config is None:
        config = load_config()

    upstream = config.get("upstream") or {}
    server = config.get("server") or {}
    options = config.get("settings") or {}

    base_url = os.environ.get("JIUTIAN_API_BASE") or upstream.get("base_url", "")
    if not base_url:
        logger.warning("Upstream base_url not set, using default value")
        base_url = DEFAULT_CONFIG["upstream"]["base_url"]

    environment = os.environ.get("ENVIRONMENT") or os.environ.get("NODE_ENV", "")
    expose_errors = bool(options.get("expose_errors", False))
    if environment.lower() == "development":
        expose_errors = True

    return Settings(
        api_key=os.environ.get("JIUTIAN_API_KEY", ""),
        base_url=base_url.rstrip("/"),
        model=upstream.get("model") or DEFAULT_CONFIG["upstream"]["model"],
        host=server.get("host", "0.0.0.0"),
        port=int(os.environ.get("PORT") or server.get("port", 3000)),
        timeout=options.get("timeout", 60),
        token_lifetime=options.get("token_lifetime", 3600),
        expose_errors=expose_errors,
        log_file=options.get("log_file") or "",
    )


def setup_relay_log_file(log_file: str) -> None:
    """Attach a file handler to the relay logger when a log file is configured."""
    if not log_file:
        return
    log_path = Path(log_file)
    os.makedirs(log_path.parent, exist_ok=True)
    for handler in relay_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
            return
    file_handler = logging.FileHandler(str(log_path), mode="a")
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )
    relay_logger.addHandler(file_handler)
    logger.info(f"Relay log file enabled at {log_path}")


settings = load_settings()
setup_relay_log_file(settings.log_file)
