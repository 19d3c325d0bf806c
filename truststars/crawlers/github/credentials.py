"""Credential fallback policy for outbound GitHub calls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional


CALLER = "caller"
SERVICE = "service"
ANONYMOUS = "anonymous"

# Statuses that move the plan to the next credential. 404 only counts when a
# token was sent, since a narrowly scoped token can hide a public repository.
FALLBACK_STATUSES = frozenset({401, 403})
TOKEN_SCOPED_STATUSES = frozenset({404})


def mask_token(token: Optional[str]) -> str:
    """Mask token to show only last 4 characters."""
    if not token or len(token) <= 4:
        return "****"
    return f"****{token[-4:]}"


@dataclass(frozen=True, slots=True)
class Credential:
    label: str
    token: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.token is None

    def __repr__(self) -> str:
        return f"Credential(label={self.label!r}, token={mask_token(self.token)!r})"


@dataclass(frozen=True, slots=True)
class CredentialPlan:
    """Ordered credential sequence: caller token, service token, anonymous."""

    credentials: tuple[Credential, ...]

    @classmethod
    def resolve(cls, caller_token: Optional[str] = None, service_token: Optional[str] = None) -> CredentialPlan:
        credentials: list[Credential] = []
        seen: set[str] = set()
        for label, token in ((CALLER, caller_token), (SERVICE, service_token)):
            token = (token or "").strip()
            if token and token not in seen:
                credentials.append(Credential(label=label, token=token))
                seen.add(token)
        credentials.append(Credential(label=ANONYMOUS))
        return cls(credentials=tuple(credentials))

    @classmethod
    def caller_only(cls, caller_token: str) -> CredentialPlan:
        """Plan for calls that must act as the caller, such as listing their repositories."""
        return cls(credentials=(Credential(label=CALLER, token=caller_token.strip()),))

    @classmethod
    def service_only(cls, service_token: Optional[str] = None) -> CredentialPlan:
        """Plan for non-interactive jobs where no caller token exists."""
        return cls.resolve(None, service_token)

    @property
    def has_caller_token(self) -> bool:
        return any(credential.label == CALLER for credential in self.credentials)

    def __iter__(self) -> Iterator[Credential]:
        return iter(self.credentials)

    def __len__(self) -> int:
        return len(self.credentials)

    @staticmethod
    def should_fall_back(status_code: int | None, credential: Credential) -> bool:
        """Whether a failed attempt justifies trying the next credential."""
        if status_code is None:
            return False
        if status_code in FALLBACK_STATUSES:
            return True
        return status_code in TOKEN_SCOPED_STATUSES and not credential.is_anonymous
