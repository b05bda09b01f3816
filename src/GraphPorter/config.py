"""Settings loader and the explicit configuration value used by the core."""

import enum
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any

import tomllib
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic_settings.exceptions import SettingsError

from GraphPorter.errors import ConfigurationError


class PrimaryKeyStrategy(str, enum.Enum):
    PRESERVE_ORIGINAL = "preserve_original"
    GENERATE_NEW = "generate_new"


DEFAULT_EXCLUDED_FIELDS = ("created_at", "updated_at")


def _split_names(v: Any) -> Any:
    # Accept comma separated strings from env/TOML as well as lists
    if isinstance(v, str):
        return [part.strip() for part in v.split(",") if part.strip()]
    return v


class GraphConfig(BaseModel):
    """Configuration threaded through the walker, catalog and importer.

    There is no process-wide instance; build one (or let Settings build one)
    and pass it to each component.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    max_depth: int = Field(default=5, gt=0)
    batch_size: int = Field(default=1000, gt=0)
    progress_enabled: bool = True
    stream_json: bool = False
    validate_records: bool = True
    use_transactions: bool = True
    handle_circular_references: bool = True
    skip_missing_models: bool = True
    strict_serialization: bool = False
    included_models: set[str] = Field(default_factory=set)
    excluded_models: set[str] = Field(default_factory=set)
    included_relationships: set[str] = Field(default_factory=set)
    excluded_relationships: set[str] = Field(default_factory=set)
    excluded_fields: set[str] = Field(default_factory=lambda: set(DEFAULT_EXCLUDED_FIELDS))
    custom_serializers: dict[str, Callable[[Any], dict[str, Any]]] = Field(default_factory=dict)
    primary_key_strategy: PrimaryKeyStrategy = PrimaryKeyStrategy.GENERATE_NEW

    @field_validator(
        "included_models",
        "excluded_models",
        "included_relationships",
        "excluded_relationships",
        "excluded_fields",
        mode="before",
    )
    @classmethod
    def _coerce_names(cls, v: Any) -> Any:
        return _split_names(v)

    def model_included(self, type_name: str) -> bool:
        if type_name in self.excluded_models:
            return False
        if not self.included_models:
            return True
        return type_name in self.included_models

    def relationship_included(self, name: str) -> bool:
        if name in self.excluded_relationships:
            return False
        if not self.included_relationships:
            return True
        return name in self.included_relationships

    def serializer_for(self, type_name: str) -> Callable[[Any], dict[str, Any]] | None:
        return self.custom_serializers.get(type_name)


def build_graph_config(**values: Any) -> GraphConfig:
    """Build a GraphConfig, reporting invalid values as ConfigurationError."""
    try:
        return GraphConfig(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from config.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)

    db_cfg = t.get("database", {}) or {}
    extract_cfg = t.get("extract", {}) or {}
    import_cfg = t.get("import", {}) or {}
    log_cfg = t.get("logging", {}) or {}

    out: dict[str, Any] = {
        "env": t.get("app", {}).get("env", "dev"),
        "logging_level": log_cfg.get("level", "INFO"),
        "logging_file_path": log_cfg.get("file_path", "logs/graphporter.jsonl"),
        "logging_max_bytes": log_cfg.get("max_bytes", 5_000_000),
        "logging_backup_count": log_cfg.get("backup_count", 5),
    }
    if db_cfg.get("url"):
        out["database_url"] = db_cfg["url"]
    if db_cfg.get("models"):
        out["models_module"] = db_cfg["models"]

    # [extract] and [import] keys are copied through when present
    for key in (
        "max_depth",
        "included_models",
        "excluded_models",
        "included_relationships",
        "excluded_relationships",
        "excluded_fields",
        "handle_circular_references",
        "skip_missing_models",
        "strict_serialization",
        "stream_json",
        "progress_enabled",
    ):
        if key in extract_cfg:
            out[key] = extract_cfg[key]
    for key in (
        "batch_size",
        "validate_records",
        "use_transactions",
        "primary_key_strategy",
    ):
        if key in import_cfg:
            out[key] = import_cfg[key]

    def _norm_level(v, default):
        if isinstance(v, str):
            return v.upper()
        if isinstance(v, bool):
            return default if v else "NONE"
        return default

    overall = str(out["logging_level"]).upper()
    out["logging_console"] = _norm_level(log_cfg.get("console"), overall)
    out["logging_file"] = _norm_level(log_cfg.get("to_file"), "NONE")
    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite:///./graphporter.sqlite3")
    # Dotted path "package.module:Base" to the declarative base to reflect
    models_module: str | None = None

    # --- Extraction / import defaults ---
    max_depth: int = 5
    batch_size: int = 1000
    progress_enabled: bool = True
    stream_json: bool = False
    validate_records: bool = True
    use_transactions: bool = True
    handle_circular_references: bool = True
    skip_missing_models: bool = True
    strict_serialization: bool = False
    included_models: Annotated[list[str], NoDecode] = Field(default_factory=list)
    excluded_models: Annotated[list[str], NoDecode] = Field(default_factory=list)
    included_relationships: Annotated[list[str], NoDecode] = Field(default_factory=list)
    excluded_relationships: Annotated[list[str], NoDecode] = Field(default_factory=list)
    excluded_fields: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_FIELDS)
    )
    primary_key_strategy: PrimaryKeyStrategy = PrimaryKeyStrategy.GENERATE_NEW

    # --- Logging ---
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "NONE"
    logging_file_path: str = "logs/graphporter.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="GRAPHPORTER_",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @field_validator(
        "included_models",
        "excluded_models",
        "included_relationships",
        "excluded_relationships",
        "excluded_fields",
        mode="before",
    )
    @classmethod
    def _split_list_fields(cls, v: Any) -> Any:
        return _split_names(v)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd)
        # 3) env_settings (OS env)
        # 4) TOML (config.toml)
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )

    def graph_config(self, **overrides: Any) -> GraphConfig:
        """Build the core GraphConfig from these settings plus explicit overrides.

        Overrides whose value is None are ignored so CLI flags can be passed
        through unconditionally.
        """
        values: dict[str, Any] = {
            "max_depth": self.max_depth,
            "batch_size": self.batch_size,
            "progress_enabled": self.progress_enabled,
            "stream_json": self.stream_json,
            "validate_records": self.validate_records,
            "use_transactions": self.use_transactions,
            "handle_circular_references": self.handle_circular_references,
            "skip_missing_models": self.skip_missing_models,
            "strict_serialization": self.strict_serialization,
            "included_models": set(self.included_models),
            "excluded_models": set(self.excluded_models),
            "included_relationships": set(self.included_relationships),
            "excluded_relationships": set(self.excluded_relationships),
            "excluded_fields": set(self.excluded_fields),
            "primary_key_strategy": self.primary_key_strategy,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return build_graph_config(**values)


def load_settings(**overrides: Any) -> Settings:
    try:
        return Settings(**overrides)
    except (ValidationError, SettingsError) as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc
