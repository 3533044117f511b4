import json
import os
import sys
from http import HTTPStatus
from typing import Mapping, Optional

# ============================================================
# CONFIGURATION
# ============================================================
# Set to True for detailed logging, False for minimal logging
DEBUG = True

CONFIG_FILE = "config.json"

DEFAULT_MODEL = "claude-3-7-sonnet-20250219"
DEFAULT_ADDRESS = "0.0.0.0:8080"
DEFAULT_MAX_CHAT_HISTORY_LENGTH = 10000
DEFAULT_MIRROR_API_PREFIX = "/mirror"
DEFAULT_CURL_IMPERSONATE = "chrome"

# Upper bound on per-request attempts, whatever the pool size.
MAX_RETRY_COUNT = 5

# config key -> environment variable
ENV_OVERRIDES = {
    "sessions": "SESSIONS",
    "address": "ADDRESS",
    "api_key": "APIKEY",
    "proxy": "PROXY",
    "curl_impersonate": "CURL_IMPERSONATE",
    "chat_delete": "CHAT_DELETE",
    "max_chat_history_length": "MAX_CHAT_HISTORY_LENGTH",
    "no_role_prefix": "NO_ROLE_PREFIX",
    "prompt_disable_artifacts": "PROMPT_DISABLE_ARTIFACTS",
    "enable_mirror_api": "ENABLE_MIRROR_API",
    "mirror_api_prefix": "MIRROR_API_PREFIX",
}


def debug_print(*args, **kwargs):
    """Print debug messages only if DEBUG is True"""
    if DEBUG:
        try:
            print(*args, **kwargs)
        except UnicodeEncodeError:
            # Some Windows consoles (e.g. GBK codepages) can't print emoji. Avoid
            # crashing the server just because logging contains unicode.
            encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
            end = kwargs.get("end", "\n")
            sep = kwargs.get("sep", " ")
            message = sep.join(str(a) for a in args) + end
            try:
                sys.stdout.buffer.write(message.encode(encoding, errors="replace"))
            except Exception:
                safe = message.encode("ascii", errors="backslashreplace").decode("ascii")
                print(safe, end="")


def get_status_emoji(status_code: int) -> str:
    if 200 <= status_code < 300:
        return "✅"
    if status_code == HTTPStatus.UNAUTHORIZED:
        return "🔒"
    if status_code == HTTPStatus.FORBIDDEN:
        return "🚫"
    if status_code == HTTPStatus.TOO_MANY_REQUESTS:
        return "⏱️"
    if 400 <= status_code < 500:
        return "⚠️"
    if 500 <= status_code < 600:
        return "❌"
    return "ℹ️"


def log_http_status(status_code: int, context: str = ""):
    """Log HTTP status with readable message"""
    emoji = get_status_emoji(status_code)
    try:
        message = HTTPStatus(status_code).phrase
    except ValueError:
        message = f"Unknown Status {status_code}"
    if context:
        debug_print(f"{emoji} HTTP {status_code}: {message} ({context})")
    else:
        debug_print(f"{emoji} HTTP {status_code}: {message}")


def _coerce_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1", "yes", "on"):
            return True
        if text in ("false", "0", "no", "off"):
            return False
    return default


def _coerce_int(value, default: int, *, minimum: int = 1) -> int:
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return default


def _coerce_float(value, default: float, *, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(value))
    except (TypeError, ValueError):
        return default


def get_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> dict:
    """
    Load bridge settings.

    Values come from ``config.json`` (if present), then environment variables
    override individual keys. Missing or broken files fall back to defaults.
    """
    path = path or CONFIG_FILE
    environ = os.environ if environ is None else environ

    try:
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            debug_print(f"⚠️  Config file {path} is not an object, using defaults")
            config = {}
    except FileNotFoundError:
        config = {}
    except json.JSONDecodeError as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}

    config.setdefault("sessions", "")
    config.setdefault("address", DEFAULT_ADDRESS)
    config.setdefault("api_key", "")
    config.setdefault("proxy", "")
    config.setdefault("curl_impersonate", DEFAULT_CURL_IMPERSONATE)
    config.setdefault("chat_delete", True)
    config.setdefault("max_chat_history_length", DEFAULT_MAX_CHAT_HISTORY_LENGTH)
    config.setdefault("no_role_prefix", False)
    config.setdefault("prompt_disable_artifacts", False)
    config.setdefault("enable_mirror_api", False)
    config.setdefault("mirror_api_prefix", DEFAULT_MIRROR_API_PREFIX)
    config.setdefault("default_model", DEFAULT_MODEL)
    config.setdefault("request_timeout_seconds", 300)
    config.setdefault("response_header_timeout_seconds", 10)
    config.setdefault("cleanup_attempts", 3)
    config.setdefault("cleanup_retry_delay_seconds", 1.0)

    for key, env_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            config[key] = value

    # CHAT_DELETE is opt-out: anything other than an explicit "false" keeps it on.
    chat_delete = config.get("chat_delete")
    if isinstance(chat_delete, str):
        config["chat_delete"] = chat_delete.strip().lower() != "false"
    else:
        config["chat_delete"] = bool(chat_delete)

    for key in ("no_role_prefix", "prompt_disable_artifacts", "enable_mirror_api"):
        config[key] = _coerce_bool(config.get(key), False)

    config["max_chat_history_length"] = _coerce_int(
        config.get("max_chat_history_length"), DEFAULT_MAX_CHAT_HISTORY_LENGTH
    )
    config["request_timeout_seconds"] = _coerce_float(config.get("request_timeout_seconds"), 300.0, minimum=1.0)
    config["response_header_timeout_seconds"] = _coerce_float(
        config.get("response_header_timeout_seconds"), 10.0, minimum=0.1
    )
    config["cleanup_attempts"] = _coerce_int(config.get("cleanup_attempts"), 3)
    config["cleanup_retry_delay_seconds"] = _coerce_float(config.get("cleanup_retry_delay_seconds"), 1.0)

    config["address"] = str(config.get("address") or DEFAULT_ADDRESS).strip()
    config["api_key"] = str(config.get("api_key") or "").strip()
    config["proxy"] = str(config.get("proxy") or "").strip()
    # "none" or "off" sends upstream requests through plain httpx.
    impersonate = str(config.get("curl_impersonate") or "").strip()
    config["curl_impersonate"] = "" if impersonate.lower() in ("none", "off", "false") else impersonate
    config["default_model"] = str(config.get("default_model") or DEFAULT_MODEL).strip()

    prefix = str(config.get("mirror_api_prefix") or DEFAULT_MIRROR_API_PREFIX).strip().rstrip("/")
    if not prefix:
        prefix = DEFAULT_MIRROR_API_PREFIX
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    config["mirror_api_prefix"] = prefix

    return config


def split_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` into its parts, defaulting to 0.0.0.0:8080."""
    host, _, port = str(address or DEFAULT_ADDRESS).rpartition(":")
    try:
        port_int = int(port)
    except ValueError:
        return "0.0.0.0", 8080
    return host or "0.0.0.0", port_int


def mask_secret(value: str, visible: int = 8) -> str:
    value = str(value or "")
    if len(value) <= visible:
        return value
    return value[:visible] + "..."


def log_config(config: dict, credentials) -> None:  # noqa: ANN001
    debug_print("Loaded config:")
    for credential in credentials:
        debug_print(f"  Session: {mask_secret(credential.session_key, 20)}, OrgID: {credential.organization_id or '-'}")
    debug_print(f"  Address: {config.get('address')}")
    debug_print(f"  APIKey: {mask_secret(config.get('api_key'), 4) or '(none)'}")
    debug_print(f"  Proxy: {config.get('proxy') or '(none)'}")
    debug_print(f"  CurlImpersonate: {config.get('curl_impersonate') or '(disabled)'}")
    debug_print(f"  ChatDelete: {config.get('chat_delete')}")
    debug_print(f"  MaxChatHistoryLength: {config.get('max_chat_history_length')}")
    debug_print(f"  NoRolePrefix: {config.get('no_role_prefix')}")
    debug_print(f"  PromptDisableArtifacts: {config.get('prompt_disable_artifacts')}")
    debug_print(f"  EnableMirrorApi: {config.get('enable_mirror_api')}")
    debug_print(f"  MirrorApiPrefix: {config.get('mirror_api_prefix')}")
