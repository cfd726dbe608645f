"""
KLOG data models

Connection definitions and log stream requests arrive as JSON-shaped dicts
(camelCase keys, as written to the connections file) and are validated here.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SSHEndpoint(BaseModel):
    """SSH jump host used to reach the cluster API. The key is only ever a path."""
    model_config = ConfigDict(populate_by_name=True)

    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    private_key_path: str = Field(alias="privateKeyPath")


class ConnectionConfig(BaseModel):
    """One entry of the connections file: {id, name, ssh?, kubeconfig}"""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str
    ssh: Optional[SSHEndpoint] = None
    kubeconfig: str

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ConnectionSummary(BaseModel):
    id: str
    name: str
    has_ssh: bool


class PodInfo(BaseModel):
    name: str
    status: str = "Unknown"
    containers: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)


class LogOptions(BaseModel):
    """Server-side streaming parameters"""
    follow: bool = True
    since_time: Optional[datetime] = Field(default=None, alias="sinceTime")
    tail_lines: Optional[int] = Field(default=None, alias="tailLines", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("since_time")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class LogTarget(BaseModel):
    namespace: str
    pod_name: str = Field(alias="podName")
    container_name: str = Field(alias="containerName")

    model_config = ConfigDict(populate_by_name=True)


class LogStreamConfig(LogOptions):
    """
    Request to start a log stream:
    {sessionId, connectionId, namespace, podName, containerName, follow, sinceTime?, tailLines?}
    """
    session_id: str = Field(alias="sessionId", min_length=1)
    connection_id: str = Field(alias="connectionId", min_length=1)
    namespace: str
    pod_name: str = Field(alias="podName")
    container_name: str = Field(alias="containerName")

    @property
    def target(self) -> LogTarget:
        return LogTarget(
            namespace=self.namespace,
            pod_name=self.pod_name,
            container_name=self.container_name,
        )

    @property
    def options(self) -> LogOptions:
        return LogOptions(
            follow=self.follow,
            since_time=self.since_time,
            tail_lines=self.tail_lines,
        )


class SessionState(Enum):
    """Log session lifecycle: idle -> streaming -> stopped"""
    IDLE = "idle"
    STREAMING = "streaming"
    STOPPED = "stopped"

    @property
    def color(self) -> str:
        colors = {
            SessionState.IDLE: "white",
            SessionState.STREAMING: "green",
            SessionState.STOPPED: "grey50",
        }
        return colors.get(self, "white")
