"""Map GitHub payloads onto :class:`CanonicalEvent` (pure, no DB access).

Supported kinds:

    pull_request         webhook, actions opened/reopened/ready_for_review/closed
    pull_request_review  webhook, action submitted
    issues               webhook, actions opened/reopened/closed
    issue_comment        webhook, actions created/edited
    commit               a commit object (push payload entry or REST commit)
    timeline             an item from ``GET /repos/{repo}/issues`` (issue or PR)

Anything else canonicalizes to ``None``: the caller counts it as skipped.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from gitpulse.engines.canonical.content_hash import compute_content_hash
from gitpulse.engines.canonical.models import ActorRef, CanonicalEvent, RepoRef

Payload = Mapping[str, Any]

TEXT_LIMIT = 512
_ELLIPSIS = "…"
_WS_RE = re.compile(r"\s+")


# ── public ────────────────────────────────────────────────────────────────


def canonicalize(
    kind: str,
    payload: Payload,
    *,
    repository: Payload | None = None,
    repo_full_name: str | None = None,
) -> CanonicalEvent | None:
    """Canonicalize one raw payload of the given *kind*.

    ``repository`` supplies the repo for kinds whose payload does not embed
    one (``commit``); ``repo_full_name`` does the same for ``timeline``.
    """
    handler = _HANDLERS.get(kind)
    if handler is None:
        return None
    return handler(payload, repository=repository, repo_full_name=repo_full_name)


def canonicalize_push(payload: Payload) -> list[CanonicalEvent]:
    """Expand a push webhook payload into one commit event per commit."""
    repository = payload.get("repository")
    events = []
    for commit in payload.get("commits") or []:
        event = canonicalize("commit", commit, repository=repository)
        if event is not None:
            events.append(event)
    return events


def normalize_url(value: str | None) -> str | None:
    """Trim whitespace and drop a single trailing slash (root URLs are kept)."""
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if len(trimmed) > 1 and trimmed.endswith("/") and not trimmed.endswith("://"):
        trimmed = trimmed[:-1]
    return trimmed


# ── per-kind handlers ─────────────────────────────────────────────────────


def _pull_request(payload: Payload, **_: Any) -> CanonicalEvent | None:
    pr = payload.get("pull_request") or {}
    repo = _normalize_repo(payload.get("repository"))
    actor = _normalize_actor(payload.get("sender") or pr.get("user"))
    if repo is None or actor is None:
        return None

    action = payload.get("action")
    if action in ("opened", "reopened", "ready_for_review"):
        event_type, verb = "pr_opened", "opened"
        ts = _parse_datetime(pr.get("created_at") or pr.get("updated_at"))
    elif action == "closed" and pr.get("merged"):
        event_type, verb = "pr_merged", "merged"
        ts = _parse_datetime(pr.get("merged_at") or pr.get("closed_at") or pr.get("updated_at"))
    elif action == "closed":
        event_type, verb = "pr_closed", "closed"
        ts = _parse_datetime(pr.get("closed_at") or pr.get("updated_at"))
    else:
        return None

    source_url = normalize_url(pr.get("html_url") or pr.get("url") or repo.url)
    if ts is None or source_url is None:
        return None

    metrics = _extract_metrics(pr.get("additions"), pr.get("deletions"), pr.get("changed_files"))
    text = _join(
        f"PR #{pr.get('number')}",
        _dash(pr.get("title")),
        f"{verb} by {actor.gh_login}",
        _format_metrics(metrics),
    )
    return _build(
        event_type,
        actor,
        repo,
        ts,
        text,
        source_url,
        metrics,
        metadata={
            "number": pr.get("number"),
            "title": pr.get("title"),
            "merged": pr.get("merged"),
            "state": pr.get("state"),
            "baseBranch": (pr.get("base") or {}).get("ref"),
            "headBranch": (pr.get("head") or {}).get("ref"),
        },
        gh_id=pr.get("id"),
        gh_node_id=pr.get("node_id"),
    )


def _pull_request_review(payload: Payload, **_: Any) -> CanonicalEvent | None:
    if payload.get("action") != "submitted":
        return None
    review = payload.get("review") or {}
    pr = payload.get("pull_request") or {}
    repo = _normalize_repo(payload.get("repository"))
    actor = _normalize_actor(review.get("user"))
    if repo is None or actor is None:
        return None

    ts = _parse_datetime(review.get("submitted_at") or pr.get("updated_at"))
    source_url = normalize_url(
        review.get("html_url") or review.get("pull_request_url") or pr.get("html_url") or repo.url
    )
    if ts is None or source_url is None:
        return None

    state = review.get("state")
    text = _join(
        f"Review on PR #{pr.get('number')}",
        f"by {actor.gh_login}",
        f"[{state}]" if state else None,
        _dash(review.get("body"), 160),
    )
    return _build(
        "review_submitted",
        actor,
        repo,
        ts,
        text,
        source_url,
        None,
        metadata={"prNumber": pr.get("number"), "reviewId": review.get("id"), "state": state},
        gh_id=review.get("id"),
        gh_node_id=review.get("node_id"),
    )


def _issues(payload: Payload, **_: Any) -> CanonicalEvent | None:
    issue = payload.get("issue") or {}
    repo = _normalize_repo(payload.get("repository"))
    actor = _normalize_actor(payload.get("sender") or issue.get("user"))
    if repo is None or actor is None:
        return None

    action = payload.get("action")
    if action in ("opened", "reopened"):
        event_type, verb = "issue_opened", "opened"
        ts = _parse_datetime(issue.get("created_at") or issue.get("updated_at"))
    elif action == "closed":
        event_type, verb = "issue_closed", "closed"
        ts = _parse_datetime(issue.get("closed_at") or issue.get("updated_at"))
    else:
        return None

    source_url = normalize_url(issue.get("html_url") or issue.get("url") or repo.url)
    if ts is None or source_url is None:
        return None

    text = _join(
        f"Issue #{issue.get('number')}",
        _dash(issue.get("title")),
        f"{verb} by {actor.gh_login}",
    )
    return _build(
        event_type,
        actor,
        repo,
        ts,
        text,
        source_url,
        None,
        metadata={
            "issueNumber": issue.get("number"),
            "isPullRequest": bool(issue.get("pull_request")),
            "state": issue.get("state"),
        },
        gh_id=issue.get("id"),
        gh_node_id=issue.get("node_id"),
    )


def _issue_comment(payload: Payload, **_: Any) -> CanonicalEvent | None:
    if payload.get("action") not in ("created", "edited"):
        return None
    comment = payload.get("comment") or {}
    issue = payload.get("issue") or {}
    repo = _normalize_repo(payload.get("repository"))
    actor = _normalize_actor(comment.get("user") or payload.get("sender"))
    if repo is None or actor is None:
        return None

    ts = _parse_datetime(comment.get("updated_at") or comment.get("created_at"))
    source_url = normalize_url(comment.get("html_url") or comment.get("url") or repo.url)
    if ts is None or source_url is None:
        return None

    target = "pull request" if issue.get("pull_request") else "issue"
    text = _join(
        f"Comment on {target} #{issue.get('number')}",
        f"by {actor.gh_login}",
        _dash(comment.get("body"), 200),
    )
    return _build(
        "issue_comment",
        actor,
        repo,
        ts,
        text,
        source_url,
        None,
        metadata={
            "issueNumber": issue.get("number"),
            "isPullRequest": bool(issue.get("pull_request")),
            "commentId": comment.get("id"),
        },
        gh_id=comment.get("id"),
        gh_node_id=comment.get("node_id"),
    )


def _commit(
    payload: Payload, *, repository: Payload | None = None, **_: Any
) -> CanonicalEvent | None:
    # REST commits nest author/message under "commit"; push payloads do not.
    detail = payload.get("commit") or {}
    repo = _normalize_repo(repository or payload.get("repository"))
    author = payload.get("author") or detail.get("author") or payload.get("committer")
    actor = _normalize_actor(author)
    if repo is None or actor is None:
        return None

    ts = _parse_datetime(
        payload.get("timestamp")
        or (detail.get("author") or {}).get("date")
        or (payload.get("author") or {}).get("date")
        or (payload.get("committer") or {}).get("date")
    )
    source_url = normalize_url(payload.get("html_url") or payload.get("url") or repo.url)
    if ts is None or source_url is None:
        return None

    sha = payload.get("sha") or payload.get("id") or ""
    message = payload.get("message") or detail.get("message")
    stats = payload.get("stats") or {}
    metrics = _extract_metrics(
        stats.get("additions"),
        stats.get("deletions"),
        stats.get("filesChanged", len(payload["files"]) if payload.get("files") else None),
    )
    text = _join(
        f"Commit {sha[:7]}".strip(),
        f"by {actor.gh_login}",
        _dash(message, 200),
        _format_metrics(metrics),
    )
    return _build(
        "commit",
        actor,
        repo,
        ts,
        text,
        source_url,
        metrics,
        metadata={"sha": sha or None, "message": message},
        gh_id=sha or None,
        gh_node_id=payload.get("node_id"),
    )


def _timeline(
    payload: Payload, *, repo_full_name: str | None = None, **_: Any
) -> CanonicalEvent | None:
    if not repo_full_name:
        return None
    owner, _sep, name = repo_full_name.partition("/")
    repo = RepoRef(full_name=repo_full_name, owner=owner or None, name=name or None)
    actor = _normalize_actor(payload.get("user"))
    if actor is None:
        return None

    pr_info = payload.get("pull_request")
    is_pr = pr_info is not None
    closed = (payload.get("state") or "").lower() == "closed"
    if is_pr and closed and (pr_info or {}).get("merged_at"):
        event_type, verb = "pr_merged", "merged"
        ts = _parse_datetime(pr_info.get("merged_at"))
    elif closed:
        event_type, verb = ("pr_closed" if is_pr else "issue_closed"), "closed"
        ts = _parse_datetime(payload.get("closed_at") or payload.get("updated_at"))
    else:
        event_type, verb = ("pr_opened" if is_pr else "issue_opened"), "opened"
        ts = _parse_datetime(payload.get("created_at") or payload.get("updated_at"))

    source_url = normalize_url(payload.get("html_url") or payload.get("url"))
    if ts is None or source_url is None:
        return None

    text = _join(
        f"{'PR' if is_pr else 'Issue'} #{payload.get('number')}",
        _dash(payload.get("title")),
        f"{verb} by {actor.gh_login}",
    )
    return _build(
        event_type,
        actor,
        repo,
        ts,
        text,
        source_url,
        None,
        metadata={
            "number": payload.get("number"),
            "state": payload.get("state"),
            "isPullRequest": is_pr,
            "timeline": True,
        },
        gh_id=payload.get("id"),
        gh_node_id=payload.get("node_id"),
    )


_HANDLERS: dict[str, Callable[..., CanonicalEvent | None]] = {
    "pull_request": _pull_request,
    "pull_request_review": _pull_request_review,
    "issues": _issues,
    "issue_comment": _issue_comment,
    "commit": _commit,
    "timeline": _timeline,
}


# ── helpers ───────────────────────────────────────────────────────────────


def _build(
    event_type: str,
    actor: ActorRef,
    repo: RepoRef,
    ts: datetime,
    text: str,
    source_url: str,
    metrics: dict[str, int] | None,
    *,
    metadata: dict[str, Any],
    gh_id: Any,
    gh_node_id: str | None,
) -> CanonicalEvent:
    text = _truncate(text)
    return CanonicalEvent(
        type=event_type,
        actor=actor,
        repo=repo,
        occurred_at=ts,
        canonical_text=text,
        source_url=source_url,
        metrics=metrics,
        content_hash=compute_content_hash(text, source_url, metrics),
        metadata={k: v for k, v in metadata.items() if v is not None},
        gh_id=str(gh_id) if gh_id is not None else None,
        gh_node_id=gh_node_id,
    )


def _normalize_repo(repo: Payload | None) -> RepoRef | None:
    if not repo:
        return None
    owner = (repo.get("owner") or {}).get("login")
    name = repo.get("name")
    full_name = repo.get("full_name") or (f"{owner}/{name}" if owner and name else None)
    if not full_name:
        return None
    return RepoRef(
        full_name=full_name,
        owner=owner or full_name.split("/", 1)[0],
        name=name or full_name.split("/", 1)[-1],
        gh_id=repo.get("id") if isinstance(repo.get("id"), int) else None,
        gh_node_id=repo.get("node_id"),
        url=normalize_url(repo.get("html_url")),
    )


def _normalize_actor(user: Payload | None) -> ActorRef | None:
    """Resolve a login from login, username, display name, or email local part."""
    if not user:
        return None
    name = user.get("name")
    name = name.strip() if isinstance(name, str) and name.strip() else None
    email = user.get("email")
    login = (
        user.get("login")
        or user.get("username")
        or name
        or (email.split("@", 1)[0] if isinstance(email, str) and email else None)
    )
    if not login:
        return None
    gh_id = user.get("id")
    return ActorRef(
        gh_login=login,
        gh_id=gh_id if isinstance(gh_id, int) and not isinstance(gh_id, bool) else None,
        gh_node_id=user.get("node_id"),
        name=name,
        avatar_url=user.get("avatar_url"),
    )


def _parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds, returning None on failure."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _extract_metrics(additions: Any, deletions: Any, files_changed: Any) -> dict[str, int] | None:
    metrics = {}
    if _is_number(additions):
        metrics["additions"] = additions
    if _is_number(deletions):
        metrics["deletions"] = deletions
    if _is_number(files_changed):
        metrics["filesChanged"] = files_changed
    return metrics or None


def _format_metrics(metrics: dict[str, int] | None) -> str | None:
    if not metrics:
        return None
    parts = []
    if "additions" in metrics:
        parts.append(f"+{metrics['additions']}")
    if "deletions" in metrics:
        parts.append(f"-{metrics['deletions']}")
    if "filesChanged" in metrics:
        parts.append(f"{metrics['filesChanged']} files")
    return f"({', '.join(parts)})"


def _collapse(value: str) -> str:
    return _WS_RE.sub(" ", value).strip()


def _dash(value: Any, limit: int | None = None) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = _collapse(value)
    return f"– {text[:limit] if limit else text}"


def _join(*parts: str | None) -> str:
    return " ".join(p for p in parts if p and p.strip()).strip()


def _truncate(value: str) -> str:
    if len(value) <= TEXT_LIMIT:
        return value
    return value[: TEXT_LIMIT - 1] + _ELLIPSIS
