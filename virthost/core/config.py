import os
import yaml
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

# --- Base app settings ---
CONFIG_FILE = os.getenv("CONFIG_FILE", "config.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
APP_NAME = os.getenv("APP_NAME", "Virt Host API")
APP_VERSION = os.getenv("APP_VERSION", "0.1.0")

# Initialize logger early (before setup_logging is called)
logger = logging.getLogger(APP_NAME)
if not logger.handlers:
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s: %(message)s")


def load_yaml_config(path: str = CONFIG_FILE) -> dict:
    """Load global YAML configuration (app + hypervisor + console)."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
            logger.info("Loaded configuration from %s", path)
            return data if isinstance(data, dict) else {}
    except FileNotFoundError:
        logger.warning("Configuration file not found: %s", path)
        return {}
    except yaml.YAMLError as e:
        logger.error("Error parsing YAML config (%s): %s", path, e)
        return {}


# --- Load YAML and derive app settings ---
CONFIG_YAML = load_yaml_config()

# --- Extract CORS settings ---
CORS_CONFIG = CONFIG_YAML.get("cors", {}) or {}
CORS_ORIGINS = CORS_CONFIG.get("allow_origins", [])
CORS_ALLOW_CREDENTIALS = CORS_CONFIG.get("allow_credentials", True)
CORS_ALLOW_METHODS = CORS_CONFIG.get("allow_methods", ["*"])
CORS_ALLOW_HEADERS = CORS_CONFIG.get("allow_headers", ["*"])


def _load_int(raw: Any, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _load_float(raw: Any, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class VirtSettings:
    """Hypervisor, provisioning and console relay settings."""

    libvirt_uri: str = "qemu:///system"
    default_pool: str = "default"
    qemu_img: str = "qemu-img"
    virt_install: str = "virt-install"
    tool_timeout: float = 600.0
    registration_attempts: int = 5
    registration_interval: float = 1.0
    relay_command: str = "websockify"
    relay_offset: int = 1000
    relay_target_host: str = "127.0.0.1"
    relay_spawn_grace: float = 1.0
    advertised_host: Optional[str] = None


def build_settings(data: Optional[Dict[str, Any]] = None) -> VirtSettings:
    """Merge YAML sections with environment overrides into VirtSettings."""
    data = CONFIG_YAML if data is None else data
    hypervisor = _section(data, "libvirt")
    provisioning = _section(data, "provisioning")
    console = _section(data, "console")
    defaults = VirtSettings()

    return VirtSettings(
        libvirt_uri=os.getenv("LIBVIRT_URI") or hypervisor.get("uri") or defaults.libvirt_uri,
        default_pool=os.getenv("LIBVIRT_DEFAULT_POOL") or hypervisor.get("default_pool") or defaults.default_pool,
        qemu_img=os.getenv("QEMU_IMG_BIN") or provisioning.get("qemu_img") or defaults.qemu_img,
        virt_install=os.getenv("VIRT_INSTALL_BIN") or provisioning.get("virt_install") or defaults.virt_install,
        tool_timeout=_load_float(
            os.getenv("TOOL_TIMEOUT", provisioning.get("tool_timeout")), defaults.tool_timeout
        ),
        registration_attempts=max(
            1, _load_int(provisioning.get("registration_attempts"), defaults.registration_attempts)
        ),
        registration_interval=_load_float(
            provisioning.get("registration_interval"), defaults.registration_interval
        ),
        relay_command=os.getenv("RELAY_BIN") or console.get("relay_command") or defaults.relay_command,
        relay_offset=_load_int(console.get("relay_offset"), defaults.relay_offset),
        relay_target_host=console.get("target_host") or defaults.relay_target_host,
        relay_spawn_grace=_load_float(console.get("spawn_grace"), defaults.relay_spawn_grace),
        advertised_host=os.getenv("ADVERTISED_HOST") or console.get("advertised_host") or None,
    )


@lru_cache
def get_settings() -> VirtSettings:
    """Return cached settings for reuse across the app."""
    return build_settings()


# Confirm loaded config summary
logger.debug(
    "CORS_ORIGINS=%s, allow_credentials=%s, allow_methods=%s",
    CORS_ORIGINS,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
)
