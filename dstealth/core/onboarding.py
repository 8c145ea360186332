"""Per-user setup progress and the features it unlocks."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

IDENTITY_SUFFIX = ".fkey.id"

CLAIM_PATTERNS = [
    re.compile(r"^([a-z0-9]{3,20})(?:\.fkey\.id)?$", re.IGNORECASE),
    re.compile(r"^(?:my username is|my fkey is|username)\s+([a-z0-9]{3,20})(?:\.fkey\.id)?$", re.IGNORECASE),
    re.compile(r"^set\s+(?:fkey|username)\s+([a-z0-9]{3,20})(?:\.fkey\.id)?$", re.IGNORECASE),
]


class SetupStatus(str, Enum):
    NEW = "new"
    FKEY_PENDING = "fkey_pending"
    FKEY_SET = "fkey_set"
    MINIAPP_PENDING = "miniapp_pending"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    @property
    def has_identity(self) -> bool:
        return self.rank >= SetupStatus.FKEY_SET.rank


_ORDER = [
    SetupStatus.NEW,
    SetupStatus.FKEY_PENDING,
    SetupStatus.FKEY_SET,
    SetupStatus.MINIAPP_PENDING,
    SetupStatus.COMPLETE,
]


class Feature(str, Enum):
    PAYMENT_LINK = "Payment Link Generation"
    BALANCE = "Balance Tracking"
    LINKS = "Links Management"
    CONTENT = "Content Creation"
    LOOKUP = "Identity Lookup"
    SCAN = "Address Scanning"


GATED_FEATURES = frozenset({Feature.PAYMENT_LINK, Feature.BALANCE, Feature.LINKS, Feature.CONTENT})


def normalize_claim(raw: str) -> str:
    """`TantoDefi` and `tantodefi.fkey.id` both become `tantodefi.fkey.id`."""
    value = raw.strip().lower()
    if not value.endswith(IDENTITY_SUFFIX):
        value = f"{value}{IDENTITY_SUFFIX}"
    return value


def extract_claim(text: str) -> Optional[str]:
    stripped = text.strip()
    for pattern in CLAIM_PATTERNS:
        match = pattern.match(stripped)
        if match:
            return match.group(1).lower()
    return None


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    setup_status: SetupStatus = SetupStatus.NEW
    fkey_id: Optional[str] = None
    stealth_address: Optional[str] = None
    proof: Optional[Any] = None
    last_updated: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.fkey_id and not self.stealth_address:
            raise ValueError("an identity claim needs a resolved stealth address")
        if self.setup_status.has_identity and not self.fkey_id:
            raise ValueError(f"{self.setup_status.value} requires a stored identity claim")

    @property
    def is_complete(self) -> bool:
        return self.setup_status is SetupStatus.COMPLETE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "setup_status": self.setup_status.value,
            "fkey_id": self.fkey_id,
            "stealth_address": self.stealth_address,
            "proof": self.proof,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "UserProfile":
        return cls(
            user_id=str(payload["user_id"]),
            setup_status=SetupStatus(payload.get("setup_status") or SetupStatus.NEW.value),
            fkey_id=payload.get("fkey_id") or None,
            stealth_address=payload.get("stealth_address") or None,
            proof=payload.get("proof"),
            last_updated=float(payload.get("last_updated") or time.time()),
        )


@dataclass(frozen=True)
class Transition:
    profile: UserProfile
    accepted: bool
    previous: SetupStatus

    @property
    def changed(self) -> bool:
        return self.accepted and self.profile.setup_status is not self.previous


class OnboardingStateMachine:
    """Monotonic transitions over `SetupStatus`.

    Every method returns a new profile; nothing here touches storage.
    Requests that would move a user backwards keep the current status.
    """

    def _advance(self, profile: UserProfile, target: SetupStatus, **changes: Any) -> Transition:
        status = target if target.rank > profile.setup_status.rank else profile.setup_status
        updated = replace(profile, setup_status=status, last_updated=time.time(), **changes)
        return Transition(profile=updated, accepted=True, previous=profile.setup_status)

    def welcome(self, profile: UserProfile) -> Transition:
        if profile.setup_status is not SetupStatus.NEW:
            return Transition(profile=profile, accepted=False, previous=profile.setup_status)
        return self._advance(profile, SetupStatus.FKEY_PENDING)

    def claim_identity(
        self,
        profile: UserProfile,
        fkey_id: str,
        stealth_address: Optional[str],
        proof: Optional[Any] = None,
    ) -> Transition:
        if not stealth_address:
            return Transition(profile=profile, accepted=False, previous=profile.setup_status)
        return self._advance(
            profile,
            SetupStatus.FKEY_SET,
            fkey_id=normalize_claim(fkey_id),
            stealth_address=stealth_address,
            proof=proof,
        )

    def point_to_miniapp(self, profile: UserProfile) -> Transition:
        if profile.setup_status is not SetupStatus.FKEY_SET:
            return Transition(profile=profile, accepted=False, previous=profile.setup_status)
        return self._advance(profile, SetupStatus.MINIAPP_PENDING)

    def complete_setup(self, profile: UserProfile) -> Transition:
        if not profile.fkey_id or not profile.setup_status.has_identity:
            return Transition(profile=profile, accepted=False, previous=profile.setup_status)
        return self._advance(profile, SetupStatus.COMPLETE)

    @staticmethod
    def allows(profile: UserProfile, feature: Feature) -> bool:
        if feature in GATED_FEATURES:
            return profile.is_complete and bool(profile.stealth_address)
        return True
