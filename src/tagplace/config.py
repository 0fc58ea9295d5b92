"""Application configuration via environment variables and .env file."""

import re
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")

_ENV_PREFIX = "TAGPLACE_"


def _field_to_env_key(name: str) -> str:
    """Convert Settings field name to TAGPLACE_ env var name."""
    return _ENV_PREFIX + name.upper()


def _parse_env_line(line: str) -> tuple[str, str] | None:
    """Parse a single KEY=VALUE or KEY="VALUE" line. Returns (key, value) or None."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    m = re.match(r"([A-Za-z_][A-Za-z0-9_]*)=(.*)$", line)
    if not m:
        return None
    key, raw = m.group(1), m.group(2).strip()
    if raw.startswith('"') and raw.endswith('"') and len(raw) >= 2:
        raw = raw[1:-1].replace('\\"', '"').replace("\\n", "\n")
    return (key, raw)


def _format_env_value(value: str) -> str:
    if not value:
        return ""
    if re.search(r'[\s#"\\\n]', value):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'
    return value


class Settings(BaseSettings):
    model_config = {
        "env_prefix": _ENV_PREFIX,
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/tagplace.db")

    # Logging
    log_level: str = "info"

    # Reader driver: "mock" or "none"
    reader_mode: str = "none"
    power_level_dbm: int = Field(default=28, ge=5, le=33)  # 28 dBm ~ 5 ft read range

    # Operator
    owner_id: str | None = None
    is_admin: bool = False
    scan_category: str = "placement"

    # Capture window / candidate selection
    capture_window_ms: int = Field(default=350, ge=250, le=500)
    rssi_ambiguity_threshold_db: int = Field(default=5, ge=3, le=7)
    count_ambiguity_threshold: int = Field(default=1, ge=0)

    # Cooldown and duplicate suppression
    cooldown_ms: int = Field(default=500, ge=0)
    cooldown_arm_on_pass: bool = True
    duplicate_window_seconds: int = 5 * 60
    duplicate_distance_m: float = 10.0

    # Remote sync
    api_base_url: str | None = None
    api_token: str | None = None
    api_timeout: float = 10.0
    sync_threshold: int = Field(default=1, ge=1)
    retry_initial_delay_ms: int = Field(default=2000, ge=0)
    retry_max_delay_ms: int = Field(default=60000, ge=0)
    retry_max_attempts: int = Field(default=5, ge=0)
    network_check_interval: int = Field(default=15, ge=1)  # seconds between health checks

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    @field_validator("scan_category")
    @classmethod
    def validate_scan_category(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("placement", "pallet"):
            raise ValueError(f"scan_category must be 'placement' or 'pallet', got {v!r}")
        return v

    @field_validator("reader_mode")
    @classmethod
    def normalize_reader_mode(cls, v: str) -> str:
        return v.strip().lower() or "none"


def save_config(values: dict[str, str | int | float | bool | None]) -> None:
    """Save configuration to .env file.

    Only stores keys that correspond to valid Settings fields.
    Merges with existing .env (preserves non-TAGPLACE_* lines and other vars).
    """
    valid_fields = set(Settings.model_fields.keys())
    filtered = {k: v for k, v in values.items() if k in valid_fields}

    other_lines: list[str] = []
    tagplace_vars: dict[str, str] = {}
    if _ENV_FILE.exists():
        with open(_ENV_FILE, encoding="utf-8") as f:
            for line in f:
                parsed = _parse_env_line(line)
                if parsed is None:
                    other_lines.append(line.rstrip("\n"))
                else:
                    key, val = parsed
                    if key.startswith(_ENV_PREFIX):
                        tagplace_vars[key] = val
                    else:
                        other_lines.append(line.rstrip("\n"))

    for name, val in filtered.items():
        tagplace_vars[_field_to_env_key(name)] = "" if val is None else str(val)

    with open(_ENV_FILE, "w", encoding="utf-8") as f:
        for line in other_lines:
            f.write(line + "\n")
        if other_lines:
            f.write("\n")
        for key in sorted(tagplace_vars):
            f.write(f"{key}={_format_env_value(tagplace_vars[key])}\n")


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
