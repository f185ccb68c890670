# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Pydantic Schemas

Request/response models for the control API. Field names are snake_case
in Python and camelCase on the wire.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# REQUEST MODELS
# =============================================================================

class LaunchRequest(BaseModel):
    """Launch the target behind the proxy."""
    target: Optional[str] = Field(default=None, description="Override the configured target executable")

    model_config = ConfigDict(populate_by_name=True)


class NotificationResponseRequest(BaseModel):
    """Answer to a notification."""
    action: str = Field(..., min_length=1, description="One of the notification's actions")


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(default="ok")
    version: str = Field(default="")
    proxy_state: str = Field(default="stopped", alias="proxyState")

    model_config = ConfigDict(populate_by_name=True)


class StatusInfo(BaseModel):
    """Status line shown to the user."""
    text: str
    level: str
    updated_at: float = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class NotificationInfo(BaseModel):
    """A pending or answered notification."""
    id: str
    kind: str
    title: str
    message: str
    actions: List[str] = Field(default_factory=list)
    created_at: float = Field(alias="createdAt")
    response: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_notification(cls, notification) -> "NotificationInfo":
        return cls(**notification.to_dict())


class NotificationListResponse(BaseModel):
    """Pending notifications."""
    data: List[NotificationInfo] = Field(default_factory=list)
    total: int = Field(default=0)


class ServiceStatusResponse(BaseModel):
    """Proxy state plus what the user should see."""
    proxy_state: str = Field(alias="proxyState")
    proxy_pid: Optional[int] = Field(default=None, alias="proxyPid")
    status: StatusInfo
    update_in_progress: bool = Field(default=False, alias="updateInProgress")
    notifications: List[NotificationInfo] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ProxyActionResponse(BaseModel):
    """Result of a proxy start/stop request."""
    proxy_state: str = Field(alias="proxyState")
    proxy_pid: Optional[int] = Field(default=None, alias="proxyPid")

    model_config = ConfigDict(populate_by_name=True)


class LaunchResponse(BaseModel):
    """A launched target."""
    pid: int
    target: str
    proxy_url: str = Field(alias="proxyUrl")

    model_config = ConfigDict(populate_by_name=True)


class LogsResponse(BaseModel):
    """In-memory log lines, oldest first."""
    lines: List[str] = Field(default_factory=list)
    total: int = Field(default=0)


class LogsClearedResponse(BaseModel):
    cleared: int = Field(default=0)


class UpdateCheckResponse(BaseModel):
    """Result of an update check."""
    current_version: str = Field(alias="currentVersion")
    update_available: bool = Field(default=False, alias="updateAvailable")
    latest_version: Optional[str] = Field(default=None, alias="latestVersion")
    major_update: bool = Field(default=False, alias="majorUpdate")
    notification_id: Optional[str] = Field(default=None, alias="notificationId")

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# ERROR MODELS
# =============================================================================

class ErrorDetail(BaseModel):
    """Error detail in response."""
    message: str
    type: str = Field(default="api_error")
    code: str


class ErrorResponse(BaseModel):
    """API error response format."""
    error: ErrorDetail

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump()
