"""Broker configuration."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9092

LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class BrokerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT  # 0 = let the OS choose
    backlog: int = 128
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    def validate(self) -> "BrokerConfig":
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid port {self.port}. Must be between 0 and 65535")
        if self.backlog < 1:
            raise ValueError(f"Invalid backlog {self.backlog}. Must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. "
                f"Must be one of: {', '.join(sorted(LOG_LEVELS))}"
            )
        return self
