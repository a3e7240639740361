"""Exception types for skillrunner.

Every error carries a stable ``code`` so callers (and the execution record,
where a failure is persisted) can branch on it without matching messages.
"""


class SkillRunnerError(Exception):
    """Base exception for all skillrunner errors."""

    code = "SKILLRUNNER_ERROR"


class ValidationError(SkillRunnerError):
    """Raised when submitted input fails the skill's declared schema."""

    code = "VALIDATION_ERROR"


class SkillNotFound(SkillRunnerError):
    """Raised when a skill key (and version) does not resolve in the registry."""

    code = "SKILL_NOT_FOUND"


class SkillCategoryForbidden(SkillRunnerError):
    """Raised when an internal skill is called from outside a parent execution."""

    code = "INTERNAL_SKILL_BLOCKED"


class ResponsibilityError(SkillRunnerError):
    """Raised when responsibility metadata on a submission is missing or invalid."""

    code = "RESPONSIBILITY_ERROR"


class PIIPolicyError(SkillRunnerError):
    """Raised when input carries PII that the skill's policy rejects."""

    code = "PII_POLICY_ERROR"


class ExecutionNotFound(SkillRunnerError):
    code = "EXECUTION_NOT_FOUND"


class StaleState(SkillRunnerError):
    """Raised when the expected current state no longer matches (lost a race)."""

    code = "STALE_STATE"


class InvalidTransition(SkillRunnerError):
    """Raised for transitions the state table forbids, including any exit from a terminal state."""

    code = "INVALID_STATE_TRANSITION"


class ActorRequired(SkillRunnerError):
    """Raised when a transition that needs a human actor is attempted without one."""

    code = "ACTOR_REQUIRED"


class ApprovalNotFound(SkillRunnerError):
    code = "APPROVAL_NOT_FOUND"


class NotPending(SkillRunnerError):
    """Raised when resolving an approval request that is no longer pending."""

    code = "NOT_PENDING"


class HandlerTimeout(SkillRunnerError):
    """Raised by the invoker when a handler exceeds its timeout."""

    code = "HANDLER_TIMEOUT"


class AuditLogError(SkillRunnerError):
    """Raised when audit logging fails."""

    code = "AUDIT_LOG_ERROR"
