"""
GitHub service for webhook validation and payload parsing.
"""

import hmac
import hashlib
from typing import Optional, Dict, Any

from api.src.config import get_settings
from api.src.models.run import BuildEvent

settings = get_settings()

BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"

# Pull request actions that carry new code to build
PULL_REQUEST_ACTIONS = {"opened", "synchronize", "reopened"}

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

def _repository(payload: Dict[str, Any]) -> Dict[str, str]:
    repo = payload.get("repository") or {}
    owner = repo.get("owner") or {}
    return {
        "repo_owner": owner.get("login") or owner.get("name") or "",
        "repo_name": repo.get("name", ""),
        "link": repo.get("html_url", ""),
    }

def parse_push_payload(payload: Dict[str, Any]) -> Optional[BuildEvent]:
    """Push to a branch or a tag. Deletions produce no event."""
    if payload.get("deleted"):
        return None

    ref = payload.get("ref", "")
    head_commit = payload.get("head_commit") or {}

    if ref.startswith(TAG_PREFIX):
        kind, branch = "tag", None
    elif ref.startswith(BRANCH_PREFIX):
        kind, branch = "push", ref[len(BRANCH_PREFIX):]
    else:
        return None

    return BuildEvent(
        kind=kind,
        ref=ref,
        branch=branch,
        commit_sha=head_commit.get("id") or payload.get("after", ""),
        message=head_commit.get("message", ""),
        author=(payload.get("pusher") or {}).get("name", ""),
        **_repository(payload),
    )

def parse_pull_request_payload(payload: Dict[str, Any]) -> Optional[BuildEvent]:
    """Pull request opened or updated; the branch is the target branch."""
    action = payload.get("action", "")
    if action not in PULL_REQUEST_ACTIONS:
        return None

    pull = payload.get("pull_request") or {}
    number = pull.get("number", payload.get("number"))
    return BuildEvent(
        kind="pull_request",
        ref=f"refs/pull/{number}/head",
        branch=(pull.get("base") or {}).get("ref"),
        commit_sha=(pull.get("head") or {}).get("sha", ""),
        message=pull.get("title", ""),
        author=(pull.get("user") or {}).get("login", ""),
        action=action,
        **_repository(payload),
    )

def parse_webhook_payload(payload: Dict[str, Any], event_type: str = "push") -> Optional[BuildEvent]:
    """Turn a GitHub webhook payload into a build event, or None if nothing should run."""
    if event_type == "push":
        return parse_push_payload(payload)
    if event_type == "pull_request":
        return parse_pull_request_payload(payload)
    return None
