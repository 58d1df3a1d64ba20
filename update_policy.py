"""
Update policy evaluation.

Decides whether moving an application from its current tag to a candidate
tag is allowed under the configured policy and optional major-version pin.
Every decision carries a stable reason code that logs, the status endpoint
and tests rely on verbatim.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from versioning import compare, parse_version

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Invalid configuration; the process must not start."""


class Policy(str, Enum):
    AUTO_PATCH = "auto-patch"
    AUTO_MINOR = "auto-minor"
    AUTO_ALL = "auto-all"
    NOTIFY_ONLY = "notify-only"

    @classmethod
    def parse(cls, value: Any) -> "Policy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip())
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ConfigurationError(
                f"invalid policy '{value}'. Must be one of: {allowed}"
            ) from None


class ReasonCode(str, Enum):
    # Denials
    NON_SEMVER_REQUIRES_EXPLICIT_OPT_IN = "NonSemverRequiresExplicitOptIn"
    CANDIDATE_NOT_VERSIONED = "CandidateNotVersioned"
    NOT_NEWER = "NotNewer"
    PIN_VIOLATION_ON_CURRENT = "PinViolationOnCurrent"
    PIN_BOUNDARY_CROSSED = "PinBoundaryCrossed"
    NOTIFY_ONLY_POLICY = "NotifyOnlyPolicy"
    PATCH_ONLY_POLICY = "PatchOnlyPolicy"
    MAJOR_CHANGE_BLOCKED = "MajorChangeBlocked"
    # Approvals
    NON_SEMVER_UPDATE_ALLOWED = "NonSemverUpdateAllowed"
    PATCH_UPDATE_ALLOWED = "PatchUpdateAllowed"
    MINOR_UPDATE_ALLOWED = "MinorUpdateAllowed"
    ANY_UPDATE_ALLOWED = "AnyUpdateAllowed"


@dataclass(frozen=True)
class UpdateDecision:
    allowed: bool
    reason: ReasonCode

    def __bool__(self) -> bool:
        return self.allowed


def parse_pin(value: Any) -> Optional[int]:
    """Parse a major-version pin from config ('17', 17, '' or None)."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid pin '{value}'. Must be a number (e.g., 17)")
    if isinstance(value, int):
        pin = value
    else:
        text = str(value).strip()
        if not text.isdigit():
            raise ConfigurationError(f"invalid pin '{value}'. Must be a number (e.g., 17)")
        pin = int(text)
    if pin < 0:
        raise ConfigurationError(f"invalid pin '{value}'. Must not be negative")
    return pin


def decide(current_tag: str, candidate_tag: str, policy: Policy,
           pin: Optional[int] = None) -> UpdateDecision:
    """Decide whether current_tag may be replaced by candidate_tag.

    Rules are evaluated in order and the first match wins:

    1. Non-version current tag: only auto-all may move it, and only to a
       textually different tag.
    2. Non-version candidate: denied.
    3. Candidate not strictly newer (equal or a regression): denied.
    4. Pin set: denied when the current tag is already outside the pinned
       major, or when the candidate would leave it.
    5. Policy check on the version delta.

    Args:
        current_tag: Tag currently deployed
        candidate_tag: Newest tag offered by the registry
        policy: Effective update policy
        pin: Optional major version the application is pinned to

    Returns:
        UpdateDecision with the allow flag and reason code
    """
    policy = Policy.parse(policy)

    current = parse_version(current_tag)
    if current is None:
        if policy is Policy.AUTO_ALL:
            if candidate_tag != current_tag:
                return UpdateDecision(True, ReasonCode.NON_SEMVER_UPDATE_ALLOWED)
            return UpdateDecision(False, ReasonCode.NOT_NEWER)
        return UpdateDecision(False, ReasonCode.NON_SEMVER_REQUIRES_EXPLICIT_OPT_IN)

    candidate = parse_version(candidate_tag)
    if candidate is None:
        return UpdateDecision(False, ReasonCode.CANDIDATE_NOT_VERSIONED)

    if compare(candidate, current) <= 0:
        return UpdateDecision(False, ReasonCode.NOT_NEWER)

    if pin is not None:
        if current.major != pin:
            logger.warning(
                f"Current tag {current_tag} is outside pinned major {pin}; "
                f"refusing to move it to {candidate_tag}"
            )
            return UpdateDecision(False, ReasonCode.PIN_VIOLATION_ON_CURRENT)
        if candidate.major != pin:
            return UpdateDecision(False, ReasonCode.PIN_BOUNDARY_CROSSED)

    if policy is Policy.NOTIFY_ONLY:
        return UpdateDecision(False, ReasonCode.NOTIFY_ONLY_POLICY)

    if policy is Policy.AUTO_PATCH:
        if candidate.major != current.major or candidate.minor != current.minor:
            return UpdateDecision(False, ReasonCode.PATCH_ONLY_POLICY)
        return UpdateDecision(True, ReasonCode.PATCH_UPDATE_ALLOWED)

    if policy is Policy.AUTO_MINOR:
        if candidate.major != current.major:
            return UpdateDecision(False, ReasonCode.MAJOR_CHANGE_BLOCKED)
        return UpdateDecision(True, ReasonCode.MINOR_UPDATE_ALLOWED)

    if policy is Policy.AUTO_ALL:
        return UpdateDecision(True, ReasonCode.ANY_UPDATE_ALLOWED)

    raise ConfigurationError(f"unknown update policy: {policy}")
