"""
Settings for novelscope.

Precedence, lowest first: field defaults, the JSON settings file,
NOVELSCOPE_* environment variables, then CLI flags (applied by main.py
through ``Settings.merged``).
"""
import os, json, logging, pathlib, datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import Field, ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .errors import ValidationError

logger = logging.getLogger(__name__)

# ---------------- Defaults ----------------
SETTINGS_VERSION = "1.0.0"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4000
DEFAULT_REQUEST_TIMEOUT = 600
DEFAULT_GROUP_SIZE = 50
DEFAULT_ITEM_DELAY = 1.0
OUT_DIR = "analysis"

CONFIG_DIR = pathlib.Path(os.environ.get("NOVELSCOPE_HOME", pathlib.Path.home() / ".config" / "novelscope"))
SETTINGS_PATH = CONFIG_DIR / "settings.json"
CACHE_PATH = pathlib.Path.home() / ".cache" / "novelscope" / "cache.json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NOVELSCOPE_",
        env_ignore_empty=True,
        extra="ignore",
        validate_assignment=True,
    )

    api_key: str = Field(default="", max_length=200)
    base_url: str = Field(default=DEFAULT_BASE_URL, pattern=r"^https?://.+")
    model: str = Field(default=DEFAULT_MODEL, min_length=1)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0, le=1, allow_inf_nan=False)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=100, le=32000)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0, allow_inf_nan=False)
    group_size: int = Field(default=DEFAULT_GROUP_SIZE, ge=1)
    item_delay: float = Field(default=DEFAULT_ITEM_DELAY, ge=0, allow_inf_nan=False)
    cache_path: str = str(CACHE_PATH)
    output_dir: str = OUT_DIR

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type,
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # init kwargs carry the settings file, which the environment overrides
        return env_settings, init_settings

    def analysis_signature(self) -> Dict[str, Any]:
        """Parameters that change what the model returns; used in cache keys."""
        return {"model": self.model, "temperature": self.temperature, "max_tokens": self.max_tokens}

    def merged(self, **overrides) -> "Settings":
        """Copy with the non-None overrides applied and validated."""
        updated = self.model_copy()
        try:
            for key, value in overrides.items():
                if value is not None:
                    setattr(updated, key, value)
        except PydanticValidationError as e:
            raise ValidationError("invalid settings: " + _describe(e)) from e
        return updated


def _describe(err: PydanticValidationError) -> str:
    return ", ".join(f"{'.'.join(str(p) for p in e['loc']) or 'settings'} {e['msg']}" for e in err.errors())


def validate_settings(values: Mapping[str, Any]) -> Dict[str, str]:
    """Field -> message for every invalid value; the environment is not consulted."""
    try:
        Settings.model_validate(dict(values))
    except PydanticValidationError as e:
        return {".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()}
    return {}


def _read_saved(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        saved = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read settings %s (%s); using defaults", path, e)
        return {}
    if not isinstance(saved, dict):
        return {}
    if saved.get("version") and saved["version"] != SETTINGS_VERSION:
        logger.info("Settings file version %s differs from %s; migrating", saved["version"], SETTINGS_VERSION)
    saved = {k: v for k, v in saved.items() if k in Settings.model_fields}
    errors = validate_settings(saved)
    if errors:
        logger.warning("Saved settings are invalid (%s); reset to defaults",
                       ", ".join(f"{k}: {v}" for k, v in errors.items()))
        return {}
    return saved


def load_saved_settings(path: Optional[pathlib.Path] = None) -> Settings:
    """The settings file alone, without environment overrides."""
    return Settings.model_validate(_read_saved(pathlib.Path(path) if path else SETTINGS_PATH))


def load_settings(path: Optional[pathlib.Path] = None) -> Settings:
    saved = _read_saved(pathlib.Path(path) if path else SETTINGS_PATH)
    try:
        return Settings(**saved)
    except PydanticValidationError as e:
        raise ValidationError("invalid NOVELSCOPE_* environment: " + _describe(e)) from e


def save_settings(settings: Settings, path: Optional[pathlib.Path] = None) -> pathlib.Path:
    try:
        Settings.model_validate(settings.model_dump())
    except PydanticValidationError as e:
        raise ValidationError("invalid settings: " + _describe(e)) from e
    path = pathlib.Path(path) if path else SETTINGS_PATH
    payload = settings.model_dump()
    payload["version"] = SETTINGS_VERSION
    payload["last_modified"] = datetime.datetime.now().isoformat(timespec="seconds")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def update_setting(settings: Settings, key: str, raw: str) -> Settings:
    """Apply one `config set KEY VALUE`; the string is coerced to the field's type."""
    if key not in Settings.model_fields:
        raise ValidationError(f"unknown setting: {key}")
    return settings.merged(**{key: raw})


def mask_api_key(api_key: str) -> str:
    if not api_key or not api_key.strip():
        return "not set"
    key = api_key.strip()
    if len(key) <= 10:
        return "***"
    return f"{key[:6]}...{key[-4:]}"
