"""User-facing recovery notices.

A notice describes what went wrong and which actions the caller can offer.
Rendering is up to the UI; this module only shapes the data.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["info", "warning", "error"]
ActionVariant = Literal["default", "primary", "secondary", "destructive", "outline"]


class NoticeAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1)
    variant: ActionVariant = "default"


class RecoveryNotice(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str
    message: str
    severity: Severity
    actions: tuple[NoticeAction, ...] = ()
    detail: str | None = None
    safe_state_message: str | None = Field(default=None, alias="safeStateMessage")

    def to_dict(self) -> dict[str, Any]:
        """UI shape: optional fields are omitted when unset."""
        body = self.model_dump(by_alias=True, exclude_none=True)
        if not self.actions:
            body.pop("actions", None)
        else:
            body["actions"] = [action.model_dump() for action in self.actions]
        return body


def create_recovery_notice(
    title: str,
    message: str,
    severity: Severity,
    actions: Iterable[NoticeAction | dict[str, str]] = (),
    detail: str | None = None,
    safe_state_message: str | None = None,
) -> RecoveryNotice:
    return RecoveryNotice(
        title=title,
        message=message,
        severity=severity,
        actions=tuple(
            action if isinstance(action, NoticeAction) else NoticeAction(**action) for action in actions
        ),
        detail=detail,
        safe_state_message=safe_state_message,
    )


START_NEW_SESSION = NoticeAction(label="Start a new session", variant="primary")
CONTACT_SUPPORT = NoticeAction(label="Contact support", variant="outline")
RETRY = NoticeAction(label="Retry", variant="default")
