# preview_engine/core/models.py
"""Domain models for applications, services and their configuration."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, Iterator, List, Optional

from pydantic import SecretStr

from preview_engine.core.errors import InvalidAppNameError


_APP_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


def normalize(app_id: str) -> str:
    """
    Convert an application identifier into a name the orchestrator accepts.

    Kubernetes object names must be lowercase RFC 1123 labels. See
    https://kubernetes.io/docs/concepts/overview/working-with-objects/names/#dns-label-names
    """
    return app_id.lower()


# ============================================
# ENUMS
# ============================================

class ContainerType(Enum):
    """Role of a container within an application."""
    INSTANCE = "instance"
    REPLICA = "replica"
    APPLICATION_COMPANION = "app-companion"
    SERVICE_COMPANION = "service-companion"

    @classmethod
    def parse(cls, value: str) -> "ContainerType":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown container type: {value}")

    def __str__(self) -> str:
        return self.value


class ServiceStatus(Enum):
    """Runtime status of a deployed service."""
    RUNNING = "running"
    PAUSED = "paused"


# ============================================
# APPLICATION NAME
# ============================================

@dataclass(frozen=True)
class AppName:
    """
    Name of a preview application.

    The raw value is kept for labels and display. Every backend-visible
    name is derived from `to_rfc1123_namespace_id()`.
    """
    value: str

    def __post_init__(self):
        if not AppName.is_valid(self.value):
            raise InvalidAppNameError(f"Invalid application name: {self.value!r}")

    @staticmethod
    def is_valid(raw: str) -> bool:
        return bool(raw) and _APP_NAME_PATTERN.match(raw) is not None

    @classmethod
    def parse(cls, raw: str) -> "AppName":
        return cls(raw)

    @classmethod
    def master(cls) -> "AppName":
        return cls("master")

    def to_rfc1123_namespace_id(self) -> str:
        return normalize(self.value)

    def __str__(self) -> str:
        return self.value


# ============================================
# ENVIRONMENT
# ============================================

@dataclass
class EnvironmentVariable:
    """Environment variable of a service; values are treated as secrets."""
    key: str
    value: SecretStr
    templated: bool = False
    replicate: bool = False

    @classmethod
    def with_replicated(cls, key: str, value: str) -> "EnvironmentVariable":
        return cls(key=key, value=SecretStr(value), replicate=True)


@dataclass
class Environment:
    """Ordered collection of environment variables."""
    variables: List[EnvironmentVariable] = field(default_factory=list)

    def __iter__(self) -> Iterator[EnvironmentVariable]:
        return iter(self.variables)

    def __len__(self) -> int:
        return len(self.variables)

    def get(self, key: str) -> Optional[EnvironmentVariable]:
        for variable in self.variables:
            if variable.key == key:
                return variable
        return None

    def replicated(self) -> List[EnvironmentVariable]:
        return [v for v in self.variables if v.replicate]


# ============================================
# SERVICE CONFIGURATION
# ============================================

@dataclass
class ServiceConfig:
    """Configuration of one service as requested by the caller."""
    service_name: str
    image: str

    env: Optional[Environment] = None
    files: Optional[Dict[PurePosixPath, SecretStr]] = None

    port: int = 80
    container_type: ContainerType = ContainerType.INSTANCE

    def set_files(self, files: Optional[Dict[str, str]]) -> None:
        """Set mounted files from plain path/content pairs."""
        if files is None:
            self.files = None
            return

        self.files = {
            PurePosixPath(path): SecretStr(content)
            for path, content in files.items()
        }


# ============================================
# REALIZED SERVICE
# ============================================

@dataclass
class Service:
    """A service the backend reports as deployed."""
    id: str
    app_name: AppName
    config: ServiceConfig

    status: ServiceStatus = ServiceStatus.RUNNING
    started_at: Optional[datetime] = None

    @property
    def service_name(self) -> str:
        return self.config.service_name

    @property
    def container_type(self) -> ContainerType:
        return self.config.container_type
