"""
Constants
Centralised storage for stage/run statuses, secret names and gate decisions.
"""


class StageStatus:
    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# A stage in one of these states will not change again
FINISHED_STAGE_STATUSES = frozenset({
    StageStatus.SUCCESS,
    StageStatus.FAILURE,
    StageStatus.SKIPPED,
    StageStatus.REJECTED,
    StageStatus.CANCELLED,
})

# Upstream states that make failure() true
FAILED_STAGE_STATUSES = frozenset({StageStatus.FAILURE, StageStatus.REJECTED})


class RunStatus:
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.SUCCESS,
    RunStatus.FAILURE,
    RunStatus.CANCELLED,
})


class StepStatus:
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ApprovalDecision:
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


# Credentials the deployment pipeline expects to find
DEFAULT_SECRET_NAMES = (
    "DOCKER_USERNAME",
    "DOCKER_PASSWORD",
    "EC2_SSH_KEY",
    "EC2_HOST",
    "EC2_USER",
    "SONAR_TOKEN",
)

# Extra secrets are picked up from RUNNER_SECRET_<NAME> variables
SECRET_ENV_PREFIX = "RUNNER_SECRET_"

SECRET_MASK = "***"

# Exit code reported when a step exceeds its timeout (same as coreutils timeout)
TIMEOUT_EXIT_CODE = 124

SUPPORTED_EVENTS = frozenset({"push", "pull_request", "workflow_dispatch"})

# Host variables a local step inherits; everything else comes from the pipeline
HOST_ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "SHELL",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TERM",
    "TZ",
    "TMPDIR",
    "DOCKER_HOST",
    "DOCKER_CONFIG",
)
