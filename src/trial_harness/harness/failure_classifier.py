"""Deterministic classification of trial runner failures into error causes."""

from __future__ import annotations

from dataclasses import dataclass

from trial_harness.harness.models import ErrorCause

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient_quota",
    "billing",
    "payment required",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid x-api-key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "http 429",
    "status 429",
    "error 429",
    "overloaded",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "read timed out",
)


@dataclass(slots=True)
class TrialFailureClassification:
    """Normalized failure classification result."""

    cause: ErrorCause
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def describe(self, *, exit_code: int) -> str:
        """Short message stored alongside the error cause."""

        if self.matched_pattern is None:
            return f"exit code {exit_code} ({self.matched_rule})"
        return f"exit code {exit_code}, matched {self.matched_pattern!r}"


def classify_trial_failure(
    *,
    model: str,
    exit_code: int,
    output: str,
    transient_exit_codes: tuple[int, ...],
) -> TrialFailureClassification:
    """Classify a runner exit that is neither a pass nor a plain task failure."""

    haystack = output.lower()
    rules: tuple[tuple[ErrorCause, str, tuple[str, ...]], ...] = (
        (ErrorCause.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (ErrorCause.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (ErrorCause.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (ErrorCause.BACKEND_TRANSIENT, "rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS),
    )
    for cause, rule, patterns in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return TrialFailureClassification(
                cause=cause,
                reason_code=f"{model}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return TrialFailureClassification(
            cause=ErrorCause.BACKEND_TRANSIENT,
            reason_code=f"{model}_backend_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return TrialFailureClassification(
        cause=ErrorCause.NONZERO_EXIT,
        reason_code=f"{model}_nonzero_exit",
        matched_rule="fallback_nonzero_exit",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
