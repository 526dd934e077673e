"""Process configuration.

Values come from the process environment first, then a ``.env`` file, then
flat ``KEY: value`` lines in ``config.yaml``. Keys already present in the
environment when the process starts are treated as overrides and never
rewritten from the config file or the config API.
"""

import os
import re
import shlex
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

from finance_tracker.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "TRANSACTION_API_URL",
    "TRANSACTION_API_TOKEN",
    "CREATE_TIMEOUT_SECONDS",
    "OPTIMISTIC_STALE_TTL_SECONDS",
    "FAILURE_POLICY",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "RENDERER_COMMAND",
    "RENDERER_TIMEOUT_SECONDS",
    "TESSERACT_LANG",
)

# ``KEY: value``, optionally disabled with a leading ``#``.
CONFIG_LINE = re.compile(r"^\s*(?P<disabled>#\s*)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*:(?P<value>.*)$")


@dataclass
class ConfigSources:
    config_path: str | None = None
    file_values: dict[str, str] = field(default_factory=dict)
    external_keys: frozenset[str] = frozenset()


_sources = ConfigSources()


def parse_config_value(raw_value: str) -> str:
    """Unquote a config value and drop any trailing ``# comment``."""
    lexer = shlex.shlex(raw_value, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = "#"
    # Keep backslashes literal, e.g. Windows paths.
    lexer.escape = ""
    try:
        return " ".join(lexer)
    except ValueError:
        # Unbalanced quotes; keep the text up to the comment as written.
        return raw_value.split("#", 1)[0].strip()


def format_config_value(value: str) -> str:
    return shlex.quote(value) if value else ""


def read_config_file(path: str | None) -> dict[str, str]:
    """Read enabled ``KEY: value`` lines; blank values are skipped."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            match = CONFIG_LINE.match(line)
            if not match or match.group("disabled"):
                continue
            value = parse_config_value(match.group("value"))
            if value:
                values[match.group("key")] = value
    return values


def _config_dir_file(name: str) -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    return os.path.join(config_dir, name) if config_dir else None


def _find_config_file() -> str:
    in_config_dir = _config_dir_file(CONFIG_FILENAME)
    if in_config_dir:
        return in_config_dir
    nested = os.path.join(os.getcwd(), "config", CONFIG_FILENAME)
    return nested if os.path.exists(nested) else os.path.join(os.getcwd(), CONFIG_FILENAME)


def load_environment() -> ConfigSources:
    global _sources

    dotenv_path = _config_dir_file(".env")
    if not (dotenv_path and os.path.exists(dotenv_path)):
        dotenv_path = find_dotenv(usecwd=True) or None
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    external_keys = frozenset(os.environ)
    config_path = _find_config_file()
    file_values = read_config_file(config_path)
    for key in CONFIG_KEYS:
        if key not in external_keys and key in file_values:
            os.environ[key] = file_values[key]

    _sources = ConfigSources(config_path=config_path, file_values=file_values, external_keys=external_keys)
    return _sources


def get_config_path() -> str | None:
    return _sources.config_path


def is_env_override(name: str) -> bool:
    return name in _sources.external_keys


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def get_env_float(name: str, default: float, min_value: float | None = None) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %.2f.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("[ENV] %s='%s' is below %s, using default %.2f.", name, raw, min_value, default)
        return default
    return value


def get_env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw not in choices:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    return raw


_SECRET_NAME = re.compile(r"KEY|TOKEN|SECRET|PASS|AUTH|BEARER|PRIVATE", re.IGNORECASE)
_SECRET_VALUE = re.compile(r"^(?:sk-|rk-|[Bb]earer )|^eyJ[^.]*\.[^.]*\.[^.]*$")


def mask_env_value(name: str, value: str) -> str:
    printable = value.replace("\r", "\\r").replace("\n", "\\n")
    if not (_SECRET_NAME.search(name) or _SECRET_VALUE.search(printable)):
        return printable
    if len(printable) <= 4:
        return "****"
    return f"{printable[:2]}...{printable[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Effective configuration (secrets masked):")
    for key in CONFIG_KEYS:
        raw_value = os.getenv(key)
        logger.info("[ENV] %s=%s", key, "<unset>" if raw_value is None else mask_env_value(key, raw_value))


DEFAULT_CREATE_TIMEOUT_SECONDS = 30.0
DEFAULT_STALE_TTL_SECONDS = 120.0
DEFAULT_RENDERER_TIMEOUT_SECONDS = 30.0
DEFAULT_RENDERER_COMMAND = "soffice"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

FAILURE_POLICIES = ("retain_once", "discard")

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def create_timeout_seconds() -> float:
    return get_env_float("CREATE_TIMEOUT_SECONDS", DEFAULT_CREATE_TIMEOUT_SECONDS, min_value=0.1)


def stale_ttl_seconds() -> float:
    return get_env_float("OPTIMISTIC_STALE_TTL_SECONDS", DEFAULT_STALE_TTL_SECONDS, min_value=0.0)


def failure_policy() -> str:
    return get_env_choice("FAILURE_POLICY", "retain_once", FAILURE_POLICIES)


def renderer_timeout_seconds() -> float:
    return get_env_float("RENDERER_TIMEOUT_SECONDS", DEFAULT_RENDERER_TIMEOUT_SECONDS, min_value=1.0)


load_environment()

LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dir(LOG_DIR)
ensure_dir(CONFIG_DIR)
