"""
Configuration loader for the diagram tool server.

Loads settings from config.yaml. The only environment variable consulted is
DIAGRAM_SERVER_CONFIG, which overrides the path of the YAML file.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

CONFIG_PATH_ENV = "DIAGRAM_SERVER_CONFIG"

_LOGGING_KEYS = {
    "level": "log_level",
    "enable_pretty_print": "enable_pretty_print",
    "enable_jq_json_formatting": "enable_jq_json_formatting",
    "save_to_file": "save_to_file",
    "log_file_path": "log_file_path",
    "max_log_file_size": "max_log_file_size",
    "backup_count": "backup_count",
}


class GatewayConfig(BaseModel):
    """Configuration for the HTTP/WebSocket gateway."""

    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=8000, description="Port to bind to")
    max_connections: int = Field(default=100, description="Maximum concurrent connections")
    connection_timeout: int = Field(
        default=300, description="Seconds a WebSocket may stay silent before it is closed"
    )
    heartbeat_interval: float = Field(
        default=20.0, description="Seconds of outbound silence before a heartbeat frame is sent"
    )


class StreamingConfig(BaseModel):
    """Configuration for the streaming session engine."""

    stall_timeout: float = Field(
        default=30.0, gt=0, description="Seconds without progress before a session fails"
    )
    idle_connection_timeout: float = Field(
        default=600.0, gt=0, description="Seconds of inactivity before a connection is evicted"
    )
    sweep_interval: float = Field(
        default=60.0, gt=0, description="Seconds between idle-connection sweeps"
    )
    stage_delay_ms: int = Field(
        default=0, ge=0, description="Optional pause between stages, in milliseconds"
    )


class ValidationConfig(BaseModel):
    """Configuration for the hybrid validator."""

    default_strict: bool = Field(
        default=False, description="Strict mode used when a request does not specify one"
    )


class CatalogConfig(BaseModel):
    """Configuration for the template catalog."""

    templates_path: Optional[str] = Field(
        default=None, description="YAML catalog file; None uses the packaged catalog"
    )


class Config(BaseModel):
    """Main configuration object."""

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    log_level: str = Field(default="INFO", description="Logging level")
    enable_pretty_print: bool = Field(
        default=False, description="Enable custom pretty print for debugging"
    )
    enable_jq_json_formatting: bool = Field(
        default=False, description="Enable jq-style JSON formatting for logs"
    )
    save_to_file: bool = Field(default=False, description="Save logs to file")
    log_file_path: str = Field(default="server.log", description="Log file path (relative to root)")
    max_log_file_size: int = Field(
        default=10485760, description="Max log file size in bytes (10MB)"
    )
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config.yaml file. Defaults to $DIAGRAM_SERVER_CONFIG,
            then ./config.yaml

    Returns:
        Loaded configuration object
    """
    if config_path is None:
        config_path = Path(os.environ.get(CONFIG_PATH_ENV, "config.yaml"))

    config_data: Dict[str, Any] = {}

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

    # Flatten the nested logging block into top-level fields
    logging_config = config_data.pop("logging", None) or {}
    for yaml_key, field_name in _LOGGING_KEYS.items():
        if yaml_key in logging_config:
            config_data[field_name] = logging_config[yaml_key]

    return Config(**config_data)
