"""Configuration management using Pydantic settings."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class EngineLimits:
    """Hard limits the orchestrator enforces for a single scenario run."""

    max_drones: int = 25
    max_links: int = 325
    max_dt_s: float = 0.1
    max_altitude_m: float = 500.0
    fault_window_s: float = 5.0
    physics_workers: int = 4


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FLEETSIM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Result archive (one JSON file per run)
    results_dir: Path = Path("./results")

    # Engine limits
    max_drones: int = 25
    max_links: int = 325  # 25 drones + ground station, unordered pairs
    max_dt_s: float = 0.1
    max_altitude_m: float = 500.0
    fault_window_s: float = 5.0
    physics_workers: int = 4  # 0 = run passes serially

    # Telemetry bridge
    telemetry_decimation: int = 1
    history_size: int = 600
    ingress_queue_size: int = 1000

    # MQTT relay
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_site_id: str = "default"
    mqtt_username: str = ""
    mqtt_password: str = ""

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    def engine_limits(self) -> EngineLimits:
        return EngineLimits(
            max_drones=self.max_drones,
            max_links=self.max_links,
            max_dt_s=self.max_dt_s,
            max_altitude_m=self.max_altitude_m,
            fault_window_s=self.fault_window_s,
            physics_workers=self.physics_workers,
        )


settings = Settings()
