"""
event_normalizer.py

Turns a raw GitLab webhook (payload + headers) into a canonical `GitLabEvent`.

Event-specific fields live in one details object per event type (push, merge request, issue, pipeline)
plus a generic variant for everything else. Malformed payloads never raise: missing fields fall back
to "unknown"/"Unknown" placeholders so one odd webhook cannot break fan-out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from gitlab_helpers import first_non_empty, resolve_url_with_instance, safe_get, strip_trailing_slash, utc_now_iso

logger = logging.getLogger(__name__)

UNKNOWN_EVENT = "unknown"
UNKNOWN_VALUE = "Unknown"


class EventType(str, Enum):
    PUSH = "push"
    MERGE_REQUEST = "merge_request"
    ISSUE = "issue"
    PIPELINE = "pipeline"
    GENERIC = "generic"

    @classmethod
    def from_header(cls, header_value: Optional[str]) -> "EventType":
        return _HEADER_TO_TYPE.get((header_value or "").strip(), cls.GENERIC)


_HEADER_TO_TYPE = {
    "Push Hook": EventType.PUSH,
    "Merge Request Hook": EventType.MERGE_REQUEST,
    "Issue Hook": EventType.ISSUE,
    "Pipeline Hook": EventType.PIPELINE,
}


@dataclass(frozen=True)
class PushDetails:
    commit_count: int = 0
    commit_messages: Tuple[str, ...] = ()
    # (short sha, first line of message)
    commits: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class MergeRequestDetails:
    action: Optional[str] = None
    state: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    source_branch: Optional[str] = None
    target_branch: Optional[str] = None
    url: Optional[str] = None
    web_url: Optional[str] = None


@dataclass(frozen=True)
class IssueDetails:
    action: Optional[str] = None
    state: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class PipelineDetails:
    id: Optional[Any] = None
    status: Optional[str] = None
    stage: Optional[str] = None
    ref: Optional[str] = None
    duration: Optional[Any] = None
    url: str = ""
    project_web_url: str = ""


@dataclass(frozen=True)
class GenericDetails:
    object_kind: Optional[str] = None


EventDetails = Union[PushDetails, MergeRequestDetails, IssueDetails, PipelineDetails, GenericDetails]


@dataclass(frozen=True)
class GitLabEvent:
    event_type: EventType
    # Raw X-Gitlab-Event value ("Push Hook", ...); this is what clients see as eventType.
    event_name: str
    project: str
    branch: Optional[str]
    actor_name: str
    actor_id: Optional[str]
    timestamp: str
    instance_base_url: str
    details: EventDetails
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def link(self, url: Optional[str]) -> str:
        """Rewrite a payload link against the resolved instance base URL."""
        return resolve_url_with_instance(url, self.instance_base_url)


def get_header(headers: Optional[Mapping[str, Any]], name: str) -> str:
    if not headers:
        return ""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for k, v in headers.items():
            if str(k).lower() == lowered:
                value = v
                break
    return str(value).strip() if value is not None else ""


def resolve_instance_base_url(
    raw_instance: str,
    hint_provider: Callable[[], str],
    is_internal: Callable[[Optional[str]], bool],
) -> str:
    """
    Prefer X-Gitlab-Instance unless it looks internal; then the base URL reported by a connected
    browser extension; then the raw header value anyway.
    """
    instance = strip_trailing_slash(raw_instance)
    if not is_internal(instance):
        return instance
    return strip_trailing_slash(hint_provider()) or instance


def pipeline_url(payload: Dict[str, Any]) -> str:
    """
    Full pipeline URL: absolute `web_url` if present, else `<project.web_url>/-/pipelines/<id>`,
    else whatever `web_url`/`url` carry (possibly relative).
    """
    attrs = safe_get(payload, "object_attributes", {})
    project_web_url = safe_get(safe_get(payload, "project", {}), "web_url", "") or ""
    pipeline_id = safe_get(attrs, "id")
    web_url = safe_get(attrs, "web_url")
    if isinstance(web_url, str) and web_url.startswith("http"):
        return web_url
    if project_web_url and pipeline_id:
        return f"{str(project_web_url).rstrip('/')}/-/pipelines/{pipeline_id}"
    return web_url or safe_get(attrs, "url", "") or ""


def _build_details(event_type: EventType, payload: Dict[str, Any]) -> EventDetails:
    attrs = safe_get(payload, "object_attributes", {})
    if not isinstance(attrs, dict):
        attrs = {}

    if event_type is EventType.PUSH:
        commits = safe_get(payload, "commits", [])
        if not isinstance(commits, list):
            commits = []
        commits = [c for c in commits if isinstance(c, dict)]
        messages = tuple(str(c.get("message") or "") for c in commits)
        short = tuple(
            (
                str(c.get("id") or "unknown")[:7],
                (str(c.get("message") or "").split("\n")[0] or "no message"),
            )
            for c in commits
        )
        return PushDetails(commit_count=len(commits), commit_messages=messages, commits=short)

    if event_type is EventType.MERGE_REQUEST:
        return MergeRequestDetails(
            action=attrs.get("action"),
            state=attrs.get("state"),
            title=attrs.get("title"),
            description=attrs.get("description"),
            source_branch=attrs.get("source_branch"),
            target_branch=attrs.get("target_branch"),
            url=attrs.get("url"),
            web_url=attrs.get("web_url"),
        )

    if event_type is EventType.ISSUE:
        return IssueDetails(
            action=attrs.get("action"),
            state=attrs.get("state"),
            title=attrs.get("title"),
            description=attrs.get("description"),
            url=attrs.get("url"),
        )

    if event_type is EventType.PIPELINE:
        return PipelineDetails(
            id=attrs.get("id"),
            status=attrs.get("status"),
            stage=attrs.get("stage"),
            ref=attrs.get("ref"),
            duration=attrs.get("duration"),
            url=pipeline_url(payload),
            project_web_url=str(safe_get(safe_get(payload, "project", {}), "web_url", "") or ""),
        )

    return GenericDetails(object_kind=first_non_empty(safe_get(payload, "object_kind")))


def actor_id_of(payload: Dict[str, Any]) -> Optional[str]:
    """The single triggering user: user.id, then user_id, then object_attributes.user_id / author_id."""
    attrs = safe_get(payload, "object_attributes", {})
    return first_non_empty(
        safe_get(safe_get(payload, "user", {}), "id"),
        safe_get(payload, "user_id"),
        safe_get(attrs, "user_id"),
        safe_get(attrs, "author_id"),
    )


def normalize_event(
    payload: Any,
    headers: Optional[Mapping[str, Any]],
    hint_provider: Callable[[], str] = lambda: "",
    is_internal: Callable[[Optional[str]], bool] = lambda url: not url,
) -> GitLabEvent:
    if not isinstance(payload, dict):
        logger.warning("[normalizer] payload is not an object type=%s, using placeholders", type(payload).__name__)
        payload = {}

    event_name = get_header(headers, "X-Gitlab-Event") or UNKNOWN_EVENT
    event_type = EventType.from_header(event_name)

    project = first_non_empty(
        safe_get(safe_get(payload, "project", {}), "name"),
        safe_get(safe_get(payload, "repository", {}), "name"),
    )
    actor_name = first_non_empty(
        safe_get(safe_get(payload, "user", {}), "name"),
        safe_get(payload, "user_name"),
        safe_get(payload, "user_username"),
        safe_get(safe_get(payload, "user", {}), "username"),
    )

    instance = resolve_instance_base_url(get_header(headers, "X-Gitlab-Instance"), hint_provider, is_internal)

    return GitLabEvent(
        event_type=event_type,
        event_name=event_name,
        project=project or UNKNOWN_VALUE,
        branch=first_non_empty(safe_get(payload, "ref"), safe_get(safe_get(payload, "object_attributes", {}), "ref")),
        actor_name=actor_name or UNKNOWN_VALUE,
        actor_id=actor_id_of(payload),
        timestamp=utc_now_iso(),
        instance_base_url=instance,
        details=_build_details(event_type, payload),
        raw=payload,
    )
