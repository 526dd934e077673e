import os
from dataclasses import dataclass
from typing import Any, Literal

from finance_tracker.core import settings
from finance_tracker.logger import get_logger

ValueType = Literal["string", "float"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfigField:
    key: str
    label: str
    description: str
    placeholder: str
    category: str
    value_type: ValueType = "string"
    sensitive: bool = False
    options: tuple[str, ...] | None = None
    min_value: float | int | None = None
    max_value: float | int | None = None
    restart_required: bool = False


CONFIG_FIELDS: tuple[ConfigField, ...] = (
    ConfigField(
        key="TRANSACTION_API_URL",
        label="Transaction API URL",
        description="Base URL of the transaction service (no trailing slash).",
        placeholder="http://localhost:5000",
        category="Transaction Service",
    ),
    ConfigField(
        key="TRANSACTION_API_TOKEN",
        label="Transaction API Token",
        description="Bearer token sent with every transaction service request.",
        placeholder="ey...",
        category="Transaction Service",
        sensitive=True,
    ),
    ConfigField(
        key="CREATE_TIMEOUT_SECONDS",
        label="Create Timeout",
        description="Seconds to wait for the service before a pending entry is reverted.",
        placeholder="30",
        category="Reconciliation",
        value_type="float",
        min_value=0.1,
    ),
    ConfigField(
        key="OPTIMISTIC_STALE_TTL_SECONDS",
        label="Stale Pending TTL",
        description="Seconds before an unclaimed pending entry may be swept.",
        placeholder="120",
        category="Reconciliation",
        value_type="float",
        min_value=0,
    ),
    ConfigField(
        key="FAILURE_POLICY",
        label="Failure Policy",
        description="Keep a failed entry for one retry, or discard it.",
        placeholder="retain_once",
        category="Reconciliation",
        options=settings.FAILURE_POLICIES,
    ),
    ConfigField(
        key="OPENAI_API_KEY",
        label="OpenAI API Key",
        description="API key used to parse receipts and statements. Regex parsing is used without it.",
        placeholder="sk-...",
        category="OpenAI",
        sensitive=True,
    ),
    ConfigField(
        key="OPENAI_MODEL",
        label="OpenAI Model",
        description="Model name for the OpenAI-compatible client.",
        placeholder=settings.DEFAULT_OPENAI_MODEL,
        category="OpenAI",
    ),
    ConfigField(
        key="OPENAI_BASE_URL",
        label="OpenAI Base URL",
        description="Override OpenAI base URL for compatible providers.",
        placeholder="http://localhost:11434/v1",
        category="OpenAI",
    ),
    ConfigField(
        key="RENDERER_COMMAND",
        label="Renderer Command",
        description="LibreOffice executable used to convert documents to PDF.",
        placeholder=settings.DEFAULT_RENDERER_COMMAND,
        category="Documents",
    ),
    ConfigField(
        key="RENDERER_TIMEOUT_SECONDS",
        label="Renderer Timeout",
        description="Seconds before a document conversion is aborted.",
        placeholder="30",
        category="Documents",
        value_type="float",
        min_value=1,
    ),
    ConfigField(
        key="TESSERACT_LANG",
        label="OCR Language",
        description="Tesseract language code(s), e.g. eng or eng+hin.",
        placeholder="eng",
        category="Documents",
    ),
    ConfigField(
        key="LOG_DIR",
        label="Log Directory",
        description="Directory for application logs (app.log).",
        placeholder="/app/logs",
        category="Logging",
        restart_required=True,
    ),
    ConfigField(
        key="LOG_LEVEL",
        label="Log Level",
        description="Logging verbosity for the application.",
        placeholder="INFO",
        category="Logging",
        options=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        restart_required=True,
    ),
)

CONFIG_TEMPLATE = """# Finance Tracker configuration
# These settings only take effect when the same environment variable is not set.
# Remove the leading "#" to enable a setting here.

# Transaction service URL (no trailing slash)
# TRANSACTION_API_URL:

# Transaction service bearer token
# TRANSACTION_API_TOKEN:

# Seconds before an unanswered create is reverted
# CREATE_TIMEOUT_SECONDS:

# Seconds before an unclaimed pending entry may be swept
# OPTIMISTIC_STALE_TTL_SECONDS:

# retain_once or discard
# FAILURE_POLICY:

# OpenAI API Key (Optional, for AI parsing)
# OPENAI_API_KEY:

# OpenAI Model (Optional, defaults to gpt-4o-mini)
# OPENAI_MODEL:

# OpenAI Base URL (Optional, for OpenAI-compatible APIs)
# OPENAI_BASE_URL:

# Document renderer (defaults to soffice)
# RENDERER_COMMAND:

# Document conversion timeout in seconds
# RENDERER_TIMEOUT_SECONDS:

# Tesseract language
# TESSERACT_LANG:

# Log directory (app.log)
# LOG_DIR:

# Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
# LOG_LEVEL:
"""

_SERVICE_KEYS = {"TRANSACTION_API_URL", "TRANSACTION_API_TOKEN"}
_PARSER_KEYS = {"OPENAI_API_KEY", "OPENAI_MODEL", "OPENAI_BASE_URL"}
_COORDINATOR_KEYS = {"CREATE_TIMEOUT_SECONDS", "OPTIMISTIC_STALE_TTL_SECONDS", "FAILURE_POLICY"}
_CONVERTER_KEYS = {"RENDERER_COMMAND", "RENDERER_TIMEOUT_SECONDS"}


def get_config_path() -> str | None:
    config_path = settings.get_config_path()
    if config_path:
        return config_path
    return os.path.join(os.getcwd(), "config", settings.CONFIG_FILENAME)


def build_config_context() -> dict[str, object]:
    config_path = get_config_path()
    config_values = settings.read_config_file(config_path)
    fields: list[dict[str, object]] = []
    env_override_count = 0

    for field in CONFIG_FIELDS:
        env_override = settings.is_env_override(field.key)
        if env_override:
            env_override_count += 1
        value = config_values.get(field.key, "")
        if env_override:
            value = os.getenv(field.key, "")
        is_set = bool(value)
        if field.sensitive:
            value = ""

        fields.append(
            {
                "key": field.key,
                "label": field.label,
                "description": field.description,
                "category": field.category,
                "placeholder": field.placeholder,
                "value": value,
                "is_set": is_set,
                "options": list(field.options) if field.options else None,
                "env_override": env_override,
                "sensitive": field.sensitive,
                "restart_required": field.restart_required,
            }
        )

    return {
        "config_path": config_path or "Not configured",
        "fields": fields,
        "env_override_count": env_override_count,
    }


def _validate_value(field: ConfigField, raw_value: str) -> tuple[str, str | None]:
    value = raw_value.strip()
    if not value:
        return "", None

    if "\n" in value or "\r" in value:
        return value, "Value must be a single line."

    if field.options:
        for option in field.options:
            if option.lower() == value.lower():
                return option, None
        return value, f"Must be one of: {', '.join(field.options)}."

    if field.value_type == "float":
        try:
            parsed_float = float(value)
        except ValueError:
            return value, "Must be a number."
        if field.min_value is not None and parsed_float < field.min_value:
            return value, f"Must be at least {field.min_value}."
        if field.max_value is not None and parsed_float > field.max_value:
            return value, f"Must be at most {field.max_value}."
        return str(parsed_float), None

    return value, None


def apply_config_updates(values: dict[str, Any]) -> tuple[dict[str, str], dict[str, str]]:
    """Validate, persist and export submitted values.

    Returns ``(errors, updates)``; nothing is written when any field fails.
    Keys set in the process environment are left alone.
    """
    errors: dict[str, str] = {}
    updates: dict[str, str] = {}

    for field in CONFIG_FIELDS:
        if settings.is_env_override(field.key):
            continue

        raw_value = values.get(field.key)
        if raw_value is None:
            continue

        cleaned, error = _validate_value(field, str(raw_value))
        if error:
            errors[field.key] = error
            continue
        updates[field.key] = cleaned

    if errors:
        return errors, {}

    _write_config_file(updates)
    _apply_runtime_overrides(updates)
    return {}, updates


def _write_config_file(updates: dict[str, str]) -> None:
    config_path = get_config_path()
    if not config_path:
        raise RuntimeError("No configuration path available.")

    os.makedirs(os.path.dirname(config_path) or ".", exist_ok=True)
    try:
        with open(config_path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        lines = CONFIG_TEMPLATE.splitlines()

    pending = dict(updates)
    for index, line in enumerate(lines):
        match = settings.CONFIG_LINE.match(line)
        if match and match.group("key") in pending:
            key = match.group("key")
            lines[index] = _config_line(key, pending.pop(key))
    lines.extend(_config_line(key, value) for key, value in pending.items())

    with open(config_path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines).rstrip("\n") + "\n")
    logger.info("[CONFIG] Wrote %d value(s) to %s.", len(updates), config_path)


def _apply_runtime_overrides(updates: dict[str, str]) -> None:
    for key, value in updates.items():
        if settings.is_env_override(key):
            continue
        if value:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)


def apply_runtime_updates(app: Any, updates: dict[str, str]) -> None:
    if not updates:
        return
    state = getattr(app, "state", None)
    if state is None:
        return

    keys = updates.keys()
    if _SERVICE_KEYS & keys:
        _refresh_service(getattr(state, "service", None))
    if _PARSER_KEYS & keys:
        _refresh_parser(getattr(state, "parser", None))
    if _COORDINATOR_KEYS & keys:
        _refresh_coordinator(getattr(state, "coordinator", None))
    if _CONVERTER_KEYS & keys:
        _refresh_converter(getattr(state, "converter", None))
    if "TESSERACT_LANG" in keys:
        _refresh_extractor(getattr(state, "extractor", None))


def _refresh_service(service: Any) -> None:
    from finance_tracker.integration.transaction_api import HttpTransactionService

    if not isinstance(service, HttpTransactionService):
        return
    service.refresh()
    logger.info("[CONFIG] Transaction service client refreshed.")


def _refresh_parser(parser: Any) -> None:
    from finance_tracker.ingestion.parsing import ReceiptParser

    if not isinstance(parser, ReceiptParser):
        return
    parser.refresh()


def _refresh_coordinator(coordinator: Any) -> None:
    from finance_tracker.services.reconciliation import ReconciliationCoordinator

    if not isinstance(coordinator, ReconciliationCoordinator):
        return
    coordinator.timeout = settings.create_timeout_seconds()
    coordinator.stale_ttl = settings.stale_ttl_seconds()
    coordinator.failure_policy = settings.failure_policy()
    logger.info(
        "[CONFIG] Reconciliation: timeout=%ss stale_ttl=%ss policy=%s.",
        coordinator.timeout,
        coordinator.stale_ttl,
        coordinator.failure_policy,
    )


def _refresh_converter(converter: Any) -> None:
    from finance_tracker.ingestion.converter import DocumentConverter

    if not isinstance(converter, DocumentConverter):
        return
    converter.refresh()
    logger.info("[CONFIG] Document renderer set to '%s'.", converter.renderer_command)


def _refresh_extractor(extractor: Any) -> None:
    from finance_tracker.ingestion.extraction import TextExtractor

    if not isinstance(extractor, TextExtractor):
        return
    extractor.lang = os.getenv("TESSERACT_LANG") or "eng"
    logger.info("[CONFIG] OCR language set to '%s'.", extractor.lang)


def _config_line(key: str, value: str) -> str:
    return f"{key}: {settings.format_config_value(value)}" if value else f"# {key}:"
