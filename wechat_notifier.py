"""
wechat_notifier.py

Optional chat-webhook channel (WeCom / WeChat Work group robot).

Enabled only when WECHAT_WORK_WEBHOOK_URL is configured. Each event is rendered as one markdown
message (plain text for unrecognized events) and POSTed as JSON. Failures are reported, never raised.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from event_normalizer import (
    EventType,
    GitLabEvent,
    IssueDetails,
    MergeRequestDetails,
    PipelineDetails,
    PushDetails,
)

logger = logging.getLogger(__name__)

MAX_COMMITS = 5
MAX_DESCRIPTION = 200

MR_ACTIONS = {"open": "Opened", "close": "Closed", "merge": "Merged", "reopen": "Reopened", "update": "Updated"}
MR_STATE_COLORS = {"opened": "info", "closed": "comment", "merged": "warning"}
ISSUE_ACTIONS = {"open": "Opened", "close": "Closed", "reopen": "Reopened", "update": "Updated"}
ISSUE_STATE_COLORS = {"opened": "warning", "closed": "comment"}
PIPELINE_MARKERS = {
    "success": "[OK]",
    "failed": "[FAILED]",
    "running": "[RUNNING]",
    "pending": "[PENDING]",
    "canceled": "[CANCELED]",
    "skipped": "[SKIPPED]",
}
PIPELINE_COLORS = {"success": "info", "failed": "warning"}


def _now_label() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _markdown(content: str) -> Dict[str, Any]:
    return {"msgtype": "markdown", "markdown": {"content": content}}


def _description_block(description: Optional[str]) -> str:
    if not description:
        return ""
    text = description[:MAX_DESCRIPTION]
    if len(description) > MAX_DESCRIPTION:
        text += "..."
    return f"**Description:**\n> {text}"


def _link_block(event: GitLabEvent, url: Optional[str]) -> str:
    if not url:
        return ""
    return f"**Link:** [View details]({event.link(url)})"


def format_push_message(event: GitLabEvent, details: PushDetails) -> Dict[str, Any]:
    branch = (event.branch or "").replace("refs/heads/", "") or "unknown"
    lines = [f"{i}. `{sha}` {msg}" for i, (sha, msg) in enumerate(details.commits[:MAX_COMMITS], start=1)]
    if len(details.commits) > MAX_COMMITS:
        lines.append(f"> ... {len(details.commits) - MAX_COMMITS} more commits")
    commit_list = "\n".join(lines) or "No commits"

    content = f"""## Push

**Project:** <font color="info">{event.project}</font>
**Branch:** <font color="comment">{branch}</font>
**Pushed by:** {event.actor_name}
**Commits:** <font color="warning">{details.commit_count}</font>

### Commits
{commit_list}

---
<font color="comment">Time: {_now_label()}</font>"""
    return _markdown(content)


def format_merge_request_message(event: GitLabEvent, details: MergeRequestDetails) -> Dict[str, Any]:
    action = details.action or "unknown"
    state = details.state or "unknown"
    content = f"""## Merge request

**Project:** <font color="info">{event.project}</font>
**Action:** {MR_ACTIONS.get(action, action)}
**State:** <font color="{MR_STATE_COLORS.get(state, 'comment')}">{state}</font>

**Title:** {details.title or 'Untitled'}

**Source branch:** <font color="comment">{details.source_branch or 'unknown'}</font>
**Target branch:** <font color="comment">{details.target_branch or 'unknown'}</font>

**Author:** {event.actor_name}

{_description_block(details.description)}

{_link_block(event, details.url)}

---
<font color="comment">Time: {_now_label()}</font>"""
    return _markdown(content)


def format_issue_message(event: GitLabEvent, details: IssueDetails) -> Dict[str, Any]:
    action = details.action or "unknown"
    state = details.state or "unknown"
    content = f"""## Issue

**Project:** <font color="info">{event.project}</font>
**Action:** {ISSUE_ACTIONS.get(action, action)}
**State:** <font color="{ISSUE_STATE_COLORS.get(state, 'comment')}">{state}</font>

**Title:** {details.title or 'Untitled'}

**Author:** {event.actor_name}

{_description_block(details.description)}

{_link_block(event, details.url)}

---
<font color="comment">Time: {_now_label()}</font>"""
    return _markdown(content)


def format_pipeline_message(event: GitLabEvent, details: PipelineDetails) -> Dict[str, Any]:
    status = details.status or "unknown"
    duration = f"**Duration:** {details.duration} s" if details.duration else ""
    content = f"""## Pipeline

**Project:** <font color="info">{event.project}</font>
**Status:** {PIPELINE_MARKERS.get(status, '[?]')} <font color="{PIPELINE_COLORS.get(status, 'comment')}">{status}</font>
**Branch:** <font color="comment">{details.ref or event.branch or 'unknown'}</font>

**Stage:** {details.stage or 'unknown'}

{duration}

**Triggered by:** {event.actor_name}

{_link_block(event, details.url)}

---
<font color="comment">Time: {_now_label()}</font>"""
    return _markdown(content)


def format_generic_message(event: GitLabEvent) -> Dict[str, Any]:
    content = f"""GitLab webhook

Event: {event.event_name}
Project: {event.project}
User: {event.actor_name}
Time: {_now_label()}

See server logs for details."""
    return {"msgtype": "text", "text": {"content": content}}


def format_message(event: GitLabEvent) -> Dict[str, Any]:
    d = event.details
    if event.event_type is EventType.PUSH and isinstance(d, PushDetails):
        return format_push_message(event, d)
    if event.event_type is EventType.MERGE_REQUEST and isinstance(d, MergeRequestDetails):
        return format_merge_request_message(event, d)
    if event.event_type is EventType.ISSUE and isinstance(d, IssueDetails):
        return format_issue_message(event, d)
    if event.event_type is EventType.PIPELINE and isinstance(d, PipelineDetails):
        return format_pipeline_message(event, d)
    return format_generic_message(event)


class WeChatWorkNotifier:
    def __init__(self, webhook_url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(self.webhook_url, json=message)
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("[wechat] send failed error=%s", e)
            return {"success": False, "error": str(e)}

        if isinstance(result, dict) and result.get("errcode") == 0:
            logger.info("[wechat] message sent msgtype=%s", message.get("msgtype"))
            return {"success": True, "data": result}

        errcode = result.get("errcode") if isinstance(result, dict) else None
        errmsg = result.get("errmsg") if isinstance(result, dict) else None
        logger.error("[wechat] api error errcode=%s errmsg=%s", errcode, errmsg)
        return {"success": False, "error": result}

    def notify(self, event: GitLabEvent) -> Dict[str, Any]:
        return self.send(format_message(event))

    def close(self) -> None:
        self._client.close()
