"""
target_resolver.py

Decides which subscribers should receive a GitLab event.

The default is deliberately narrow: only the people involved in a merge request or issue, and only
the triggering user for everything else. Upstream can override with an explicit `targetUsers` list.
"""

from typing import Any, Dict, Iterable, Optional, Set

from event_normalizer import EventType, GitLabEvent
from gitlab_helpers import normalize_id, safe_get


def _add(targets: Set[str], value: Any) -> None:
    nid = normalize_id(value)
    if nid is not None:
        targets.add(nid)


def _add_many(targets: Set[str], values: Any) -> None:
    if not isinstance(values, list):
        return
    for v in values:
        _add(targets, v)


def _add_from_objects(targets: Set[str], users: Any) -> None:
    # GitLab user objects look like {id, username, name, ...}
    if not isinstance(users, list):
        return
    for u in users:
        if isinstance(u, dict):
            _add(targets, u.get("id"))


def resolve_targets(event: GitLabEvent, raw_payload: Optional[Dict[str, Any]] = None) -> Set[str]:
    payload = event.raw if raw_payload is None else raw_payload
    if not isinstance(payload, dict):
        payload = {}
    attrs = safe_get(payload, "object_attributes", {})

    targets: Set[str] = set()
    _add_many(targets, payload.get("targetUsers"))

    if event.event_type is EventType.MERGE_REQUEST:
        _add_many(targets, safe_get(attrs, "reviewer_ids"))
        _add_many(targets, safe_get(attrs, "assignee_ids"))
        _add(targets, safe_get(attrs, "assignee_id"))
        _add(targets, safe_get(attrs, "author_id"))
        _add_from_objects(targets, payload.get("reviewers"))
        _add_from_objects(targets, payload.get("assignees"))
        _add(targets, safe_get(safe_get(payload, "assignee", {}), "id"))
    elif event.event_type is EventType.ISSUE:
        _add_many(targets, safe_get(attrs, "assignee_ids"))
        _add(targets, safe_get(attrs, "assignee_id"))
        _add(targets, safe_get(attrs, "author_id"))
        _add_from_objects(targets, payload.get("assignees"))
        _add(targets, safe_get(safe_get(payload, "assignee", {}), "id"))
    else:
        _add(targets, event.actor_id)

    return targets


def sorted_targets(targets: Iterable[str]) -> list:
    return sorted(set(targets))
