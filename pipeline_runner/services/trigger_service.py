"""
Trigger Service
===============
Decides whether an incoming event starts a pipeline, and turns GitHub
webhook deliveries into Trigger objects.

Matching rules (subset of GitHub Actions `on:`):
    - The event name must be declared under `on:`.
    - workflow_dispatch always matches when declared.
    - branches / branches-ignore filter branch refs; tags filters tag refs.
    - When only `tags` is declared, branch pushes do not match, and vice versa.
    - Patterns are shell-style globs (fnmatch); a leading '!' in `branches`
      negates a pattern.

Webhook signatures:
    GitHub signs deliveries with HMAC-SHA256 over the raw body and sends it
    as ``X-Hub-Signature-256: sha256=<hex>``. Verification uses a constant
    time comparison.
"""
import fnmatch
import hashlib
import hmac
import logging
from typing import Any, Optional

from pipeline_runner.models.trigger import Trigger
from pipeline_runner.parser.pipeline_spec import EventFilter, PipelineSpec

logger = logging.getLogger(__name__)

_SIGNATURE_PREFIX = "sha256="


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------
def _matches_any(value: str, patterns: tuple) -> bool:
    return any(fnmatch.fnmatchcase(value, p) for p in patterns)


def _branch_allowed(branch: str, event_filter: EventFilter) -> bool:
    if event_filter.branches:
        included = False
        for pattern in event_filter.branches:
            if pattern.startswith("!"):
                if fnmatch.fnmatchcase(branch, pattern[1:]):
                    included = False
            elif fnmatch.fnmatchcase(branch, pattern):
                included = True
        if not included:
            return False
    if event_filter.branches_ignore and _matches_any(branch, event_filter.branches_ignore):
        return False
    return True


def matches_trigger(spec: PipelineSpec, trigger: Trigger) -> bool:
    """True if *trigger* should start a run of *spec*."""
    if trigger.event not in spec.triggers:
        return False
    if trigger.event == "workflow_dispatch":
        return True

    event_filter: EventFilter = spec.triggers[trigger.event]
    has_branch_filter = bool(event_filter.branches or event_filter.branches_ignore)

    if trigger.tag is not None:
        if event_filter.tags:
            return _matches_any(trigger.tag, event_filter.tags)
        return not has_branch_filter

    branch = trigger.branch or ""
    if event_filter.tags and not has_branch_filter:
        return False
    return _branch_allowed(branch, event_filter)


# ---------------------------------------------------------------------------
# GitHub webhooks
# ---------------------------------------------------------------------------
def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{_SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    """Validate an X-Hub-Signature-256 header against the raw request body."""
    if not header or not header.startswith(_SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(compute_signature(secret, body), header)


def trigger_from_github_event(event: str, payload: dict[str, Any]) -> Optional[Trigger]:
    """
    Build a Trigger from a GitHub webhook payload.

    Supports push, pull_request and workflow_dispatch. Returns None for
    anything else (including branch deletions, which carry no commit).
    """
    sender = (payload.get("sender") or {}).get("login", "")

    if event == "push":
        if payload.get("deleted"):
            return None
        return Trigger.from_ref(
            "push",
            payload.get("ref", ""),
            sha=payload.get("after", ""),
            actor=(payload.get("pusher") or {}).get("name", "") or sender,
        )

    if event == "pull_request":
        pr = payload.get("pull_request") or {}
        base = pr.get("base") or {}
        head = pr.get("head") or {}
        # Branch filters on pull_request apply to the base branch
        return Trigger(
            event="pull_request",
            ref=f"refs/heads/{base.get('ref', '')}",
            branch=base.get("ref", ""),
            sha=head.get("sha", ""),
            actor=sender,
        )

    if event == "workflow_dispatch":
        return Trigger.from_ref("workflow_dispatch", payload.get("ref", ""), actor=sender)

    logger.info("Ignoring unsupported webhook event '%s'", event)
    return None
