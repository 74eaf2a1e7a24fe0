import os
import tempfile
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("config")

CONFIG_PATH_ENV_VAR = "WEB_ACCESS_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "web-access-mcp" / "config.json"

PERPLEXITY_API_KEY_ENV_VAR = "PERPLEXITY_API_KEY"
GITHUB_TOKEN_ENV_VAR = "GITHUB_TOKEN"
CLONE_THRESHOLD_ENV_VAR = "WEB_ACCESS_CLONE_THRESHOLD_MB"
CLONE_TIMEOUT_ENV_VAR = "WEB_ACCESS_CLONE_TIMEOUT"
CLONE_DIR_ENV_VAR = "WEB_ACCESS_CLONE_DIR"
DISABLE_CLONE_ENV_VAR = "WEB_ACCESS_DISABLE_CLONE"
DISABLE_BROWSER_COOKIES_ENV_VAR = "WEB_ACCESS_DISABLE_BROWSER_COOKIES"

TRUTHY = {"1", "true", "yes", "on"}


class BaseConfigModel(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, use_attribute_docstrings=True, extra="ignore")


class CloneConfig(BaseConfigModel):
    enabled: bool = True
    """Whether hosted repositories are cloned locally at all."""

    size_threshold_mb: float | None = 350
    """Repositories larger than this are not cloned unless forced. `None` disables the check."""

    timeout_seconds: float | None = 120
    """How long a single clone may take. `None` disables the timeout."""

    directory: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "web-access-mcp" / "repos")
    """Where working copies are materialized."""


class FetchConfig(BaseConfigModel):
    max_content_length: int = Field(default=10000, gt=0)
    """Extracted content beyond this many characters is truncated."""

    timeout_seconds: float = Field(default=30, gt=0)
    """The default per-URL fetch timeout."""

    concurrency: int = Field(default=3, ge=1)
    """How many fetches may be in flight at once."""


class SearchConfig(BaseConfigModel):
    rate_limit_requests: int = Field(default=10, ge=1)
    """How many searches are admitted per window."""

    rate_limit_window_seconds: float = Field(default=60, gt=0)
    """The length of the sliding rate limit window."""

    isolated_runtime_dir: Path = Field(default_factory=lambda: Path.home() / ".cache" / "web-access-mcp" / "curl-cffi-venv")
    """Where the isolated TLS-impersonating interpreter is provisioned."""


class WebAccessConfig(BaseConfigModel):
    perplexity_api_key: str | None = None
    """An API key for the Perplexity API. Without one, a browser session is used."""

    browser_cookies: bool = True
    """Whether a local Chrome session may be used for authentication."""

    github_token: str | None = None
    """A token for GitHub API metadata lookups."""

    clone: CloneConfig = Field(default_factory=CloneConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)

    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)
    """The file this configuration was (or would have been) loaded from."""


def config_path() -> Path:
    if env_path := os.getenv(CONFIG_PATH_ENV_VAR):
        return Path(env_path).expanduser()

    return DEFAULT_CONFIG_PATH


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    try:
        return WebAccessConfig.model_validate_json(path.read_text(encoding="utf-8")).model_dump(exclude_unset=True)
    except (OSError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}


def _optional_float(name: str, value: str) -> tuple[bool, float | None]:
    """Parse an optional number from the environment. Returns `(False, None)` for values that are not numbers."""

    if value.strip().lower() in {"", "0", "none"}:
        return True, None

    try:
        return True, float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, keeping the default")
        return False, None


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    clone: dict[str, Any] = {}

    if api_key := os.getenv(PERPLEXITY_API_KEY_ENV_VAR):
        overrides["perplexity_api_key"] = api_key

    if github_token := os.getenv(GITHUB_TOKEN_ENV_VAR):
        overrides["github_token"] = github_token

    if (disable_cookies := os.getenv(DISABLE_BROWSER_COOKIES_ENV_VAR)) is not None:
        overrides["browser_cookies"] = disable_cookies.strip().lower() not in TRUTHY

    for env_var, field in ((CLONE_THRESHOLD_ENV_VAR, "size_threshold_mb"), (CLONE_TIMEOUT_ENV_VAR, "timeout_seconds")):
        if (raw := os.getenv(env_var)) is None:
            continue

        valid, number = _optional_float(env_var, raw)
        if valid:
            clone[field] = number

    if clone_dir := os.getenv(CLONE_DIR_ENV_VAR):
        clone["directory"] = Path(clone_dir).expanduser()

    if (disable_clone := os.getenv(DISABLE_CLONE_ENV_VAR)) is not None:
        clone["enabled"] = disable_clone.strip().lower() not in TRUTHY

    if clone:
        overrides["clone"] = clone

    return overrides


def load_config(path: Path | None = None) -> WebAccessConfig:
    """Load the configuration file, if any, and apply environment overrides on top of it."""

    path = path or config_path()

    values = _read_config_file(path)

    for key, value in _env_overrides().items():
        if isinstance(value, dict) and isinstance(values.get(key), dict):
            values[key] = {**values[key], **value}
        else:
            values[key] = value

    return WebAccessConfig.model_validate({**values, "config_path": path})
