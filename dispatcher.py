"""
dispatcher.py

Webhook processing pipeline: normalize -> (optional chat webhook) -> resolve targets -> fan-out.

The Flask route only acknowledges the webhook; the actual work is submitted to a small thread pool
owned by the Dispatcher so GitLab never waits on notification delivery.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from client_registry import ClientRegistry
from event_normalizer import (
    GitLabEvent,
    IssueDetails,
    MergeRequestDetails,
    PipelineDetails,
    PushDetails,
    normalize_event,
)
from gitlab_helpers import debug_dump
from settings import Settings
from target_resolver import resolve_targets, sorted_targets
from wechat_notifier import WeChatWorkNotifier

logger = logging.getLogger(__name__)

MAX_COMMIT_MESSAGES = 3


@dataclass
class Notification:
    type: str
    event_type: str
    project: str
    branch: Optional[str]
    user: str
    timestamp: str
    data: Dict[str, Any] = field(default_factory=dict)
    target_users: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "eventType": self.event_type,
            "project": self.project,
            "branch": self.branch,
            "user": self.user,
            "timestamp": self.timestamp,
            "data": self.data,
            "targetUsers": self.target_users,
            "raw": self.raw,
        }


@dataclass
class DispatchResult:
    success: bool
    sent_count: int = 0
    targets: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.success:
            out["sentCount"] = self.sent_count
        if self.targets:
            out["targets"] = self.targets
        if self.reason:
            out["reason"] = self.reason
        if self.error:
            out["error"] = self.error
        return out


def build_event_data(event: GitLabEvent) -> Dict[str, Any]:
    d = event.details
    if isinstance(d, PushDetails):
        return {
            "commits": d.commit_count,
            "commitMessages": list(d.commit_messages[:MAX_COMMIT_MESSAGES]),
        }
    if isinstance(d, MergeRequestDetails):
        return {
            "action": d.action,
            "title": d.title,
            "sourceBranch": d.source_branch,
            "targetBranch": d.target_branch,
            "url": event.link(d.url),
            "webUrl": event.link(d.web_url),
        }
    if isinstance(d, IssueDetails):
        return {
            "action": d.action,
            "title": d.title,
            "state": d.state,
            "url": event.link(d.url),
        }
    if isinstance(d, PipelineDetails):
        full_url = event.link(d.url)
        return {
            "status": d.status,
            "stage": d.stage,
            "ref": d.ref,
            "id": d.id,
            "url": full_url,
            "webUrl": full_url,
            "projectWebUrl": d.project_web_url,
        }
    return {}


def build_notification(event: GitLabEvent) -> Notification:
    return Notification(
        type="webhook",
        event_type=event.event_name,
        project=event.project,
        branch=event.branch,
        user=event.actor_name,
        timestamp=event.timestamp,
        data=build_event_data(event),
        raw=event.raw,
    )


def _log_event_summary(event: GitLabEvent) -> None:
    d = event.details
    if isinstance(d, PushDetails):
        logger.info(
            "[webhook] push project=%s branch=%s commits=%d user=%s",
            event.project, event.branch, d.commit_count, event.actor_name,
        )
    elif isinstance(d, MergeRequestDetails):
        logger.info(
            "[webhook] merge_request project=%s action=%s source=%s target=%s title=%r user=%s",
            event.project, d.action, d.source_branch, d.target_branch, d.title, event.actor_name,
        )
    elif isinstance(d, IssueDetails):
        logger.info(
            "[webhook] issue project=%s action=%s state=%s title=%r user=%s",
            event.project, d.action, d.state, d.title, event.actor_name,
        )
    elif isinstance(d, PipelineDetails):
        logger.info(
            "[webhook] pipeline project=%s ref=%s status=%s stage=%s user=%s",
            event.project, d.ref, d.status, d.stage, event.actor_name,
        )
    else:
        logger.info("[webhook] unhandled event type=%s project=%s user=%s", event.event_name, event.project, event.actor_name)


class Dispatcher:
    """
    Builds notifications and fans them out through the ClientRegistry.

    `dispatch` and `process_webhook` never raise: failures come back as DispatchResult(success=False, error=...).
    """

    def __init__(
        self,
        registry: ClientRegistry,
        settings: Optional[Settings] = None,
        chat_notifier: Optional[WeChatWorkNotifier] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or Settings()
        self.chat_notifier = chat_notifier
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.dispatch_workers, thread_name_prefix="webhook-dispatch"
        )

    def normalize(self, payload: Any, headers: Optional[Mapping[str, Any]]) -> GitLabEvent:
        return normalize_event(
            payload,
            headers,
            hint_provider=self.registry.any_connected_base_url_hint,
            is_internal=self.settings.is_internal_instance_url,
        )

    def dispatch(self, event: GitLabEvent, raw_payload: Optional[Dict[str, Any]] = None) -> DispatchResult:
        try:
            notification = build_notification(event)
            targets = sorted_targets(resolve_targets(event, raw_payload))
            notification.target_users = targets

            if not targets:
                logger.info("[dispatch] no target users, skipping browser notification event=%s", event.event_name)
                return DispatchResult(success=False, reason="no_target_users")

            delivered = self.registry.send_to_many(targets, notification.to_dict())
            if delivered == 0:
                logger.warning("[dispatch] target users not connected targets=%s", targets)
                return DispatchResult(success=False, reason="clients_not_connected", targets=targets)

            logger.info(
                "[dispatch] browser notification sent event=%s targets=%s sent_count=%d",
                event.event_name, targets, delivered,
            )
            return DispatchResult(success=True, sent_count=delivered, targets=targets)
        except Exception as e:
            logger.exception("[dispatch] browser notification failed")
            return DispatchResult(success=False, error=str(e))

    def process_webhook(self, payload: Any, headers: Optional[Mapping[str, Any]]) -> DispatchResult:
        try:
            event = self.normalize(payload, headers)
        except Exception as e:
            logger.exception("[webhook] normalization failed")
            return DispatchResult(success=False, error=str(e))

        logger.info("[webhook] processing event=%s instance=%s", event.event_name, event.instance_base_url or "-")
        debug_dump(event.raw, self.settings.debug_dump_events)
        _log_event_summary(event)

        if self.chat_notifier is not None:
            try:
                self.chat_notifier.notify(event)
            except Exception:
                # Chat delivery must never block browser fan-out.
                logger.exception("[wechat] notification failed")

        return self.dispatch(event)

    def submit(self, payload: Any, headers: Optional[Mapping[str, Any]]) -> "Future[DispatchResult]":
        future = self._executor.submit(self.process_webhook, payload, dict(headers or {}))
        future.add_done_callback(_log_future_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        if self.chat_notifier is not None:
            self.chat_notifier.close()


def _log_future_failure(future: "Future[DispatchResult]") -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("[webhook] detached processing failed", exc_info=exc)
