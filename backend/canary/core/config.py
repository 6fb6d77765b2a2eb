# canary/core/config.py
import re
from pathlib import Path
from typing import List, Tuple, Union

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

_SECONDS_PATTERN = re.compile(r"\d+(?:\.\d+)?")
_DURATION_PART = r"(\d+(?:\.\d+)?)(ns|us|\u00b5s|ms|s|m|h)"
_DURATION_PATTERN = re.compile(rf"(?:{_DURATION_PART})+")
_DURATION_PARTS = re.compile(_DURATION_PART)
_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "\u00b5s": 1e-6, "ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def _env_file_candidates() -> Tuple[Union[str, Path], ...]:
    """Build a prioritized list of .env files."""
    base_dir = Path(__file__).resolve().parent.parent
    project_root = base_dir.parent
    candidates: List[Union[str, Path]] = [
        base_dir / ".env",
        project_root / ".env",
        project_root / ".env.local",
        ".env",
    ]

    unique_candidates: List[Union[str, Path]] = []
    seen = set()
    for candidate in candidates:
        key = str(candidate)
        if key in seen:
            continue
        seen.add(key)
        unique_candidates.append(candidate)
    return tuple(unique_candidates)


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse "10s", "500ms", "1m30s" or plain seconds into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if _SECONDS_PATTERN.fullmatch(text):
        return float(text)
    if not _DURATION_PATTERN.fullmatch(text):
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in _DURATION_PARTS.findall(text))


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "snowflake-canary"
    APP_ENV: str = "dev"
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str = "info"
    METRICS_PREFIX: str = "snowflake_canary"

    # Timing (seconds)
    GUARANTEE_CHANGE_AFTER: float = 10.0
    HTTP_TIMEOUT_SECONDS: float = 10.0
    AUTH_TIMEOUT_SECONDS: float = 5.0
    MQTT_ACK_TIMEOUT_SECONDS: float = 30.0
    MQTT_DISCONNECT_LINGER_SECONDS: float = 0.25
    MQTT_KEEPALIVE_SECONDS: int = 30
    LEG_SYNC_TIMEOUT_SECONDS: float = 300.0

    # Identity provider
    AUTH_ENDPOINT: str = "http://localhost:8080"
    AUTH_REALM: str = "master"
    AUTH_CLIENT_ID: str = ""
    AUTH_USERNAME: str = ""
    AUTH_PASSWORD: str = ""

    # Platform services
    PERMISSION_SEARCH_URL: str = "http://localhost:8081"
    DEVICE_MANAGER_URL: str = "http://localhost:8082"
    DEVICE_REPOSITORY_URL: str = "http://localhost:8083"
    CONNECTOR_MQTT_BROKER_URL: str = "tcp://localhost:1883"
    LAST_VALUE_QUERY_URL: str = "http://localhost:8084/last-values"
    PROCESS_DEPLOYMENT_URL: str = "http://localhost:8085"
    PROCESS_ENGINE_WRAPPER_URL: str = "http://localhost:8086"

    # Canary device type content
    CANARY_DEVICE_CLASS_ID: str = ""
    CANARY_PROTOCOL_ID: str = ""
    CANARY_PROTOCOL_SEGMENT_ID: str = ""
    CANARY_PROTOCOL_SEGMENT_ID_2: str = ""
    CANARY_PROTOCOL_SEGMENT_NAME: str = "data"
    CANARY_PROTOCOL_SEGMENT_NAME_2: str = "metadata"

    CANARY_CMD_FUNCTION_ID: str = ""
    CANARY_CMD_CHARACTERISTIC_ID: str = ""
    CANARY_CMD_VALUE_TYPE: str = "https://schema.org/Integer"
    CANARY_CMD_FUNCTION_ID_2: str = ""
    CANARY_CMD_CHARACTERISTIC_ID_2: str = ""
    CANARY_CMD_VALUE_TYPE_2: str = "https://schema.org/Text"
    CANARY_CMD_CHARACTERISTIC_ID_2_DEFAULT_VALUE: str = "on"

    CANARY_SENSOR_FUNCTION_ID: str = ""
    CANARY_SENSOR_CHARACTERISTIC_ID: str = ""
    CANARY_SENSOR_VALUE_TYPE: str = "https://schema.org/Integer"
    CANARY_SENSOR_ASPECT_ID: str = ""
    CANARY_SENSOR_SERIALIZATION: str = "xml"
    CANARY_SENSOR_COLUMN: str = "measurements.measurement.value"
    CANARY_SENSOR_FUNCTION_ID_2: str = ""
    CANARY_SENSOR_CHARACTERISTIC_ID_2: str = ""
    CANARY_SENSOR_VALUE_TYPE_2: str = "https://schema.org/Integer"
    CANARY_SENSOR_ASPECT_ID_2: str = ""
    CANARY_SENSOR_SERIALIZATION_2: str = "json"
    CANARY_SENSOR_COLUMN_2: str = "area"

    CANARY_HUB_NAME: str = "snowflake-canary-hub"

    @field_validator("GUARANTEE_CHANGE_AFTER", mode="before")
    @classmethod
    def parse_guarantee_duration(cls, v):
        """Accept Go style durations ("10s", "500ms") as well as seconds."""
        if v is None or v == "":
            return 10.0
        return parse_duration(v)

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v or "info").strip().lower()

    @model_validator(mode="after")
    def enforce_production_config(self):
        env = (self.APP_ENV or "").lower()
        if env in {"prod", "production", "staging"}:
            if not self.AUTH_CLIENT_ID or not self.AUTH_USERNAME or not self.AUTH_PASSWORD:
                raise ValueError("AUTH_CLIENT_ID, AUTH_USERNAME and AUTH_PASSWORD must be set for production/staging.")
            if self.GUARANTEE_CHANGE_AFTER <= 0:
                raise ValueError("GUARANTEE_CHANGE_AFTER must be positive in production/staging.")
        return self

    model_config = {
        "env_file": _env_file_candidates(),
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }

settings = Settings()
__all__ = ["settings", "Settings", "parse_duration"]
