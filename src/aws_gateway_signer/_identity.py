"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from .exceptions import InputError


@dataclass(frozen=True, kw_only=True)
class Credentials:
    access_key: str
    """A unique identifier for an AWS user or role."""

    secret_key: str
    """The secret paired with ``access_key``. Never logged."""

    session_token: str | None = None
    """Present only for temporary credentials."""

    expires_at: datetime | None = None
    """Expiry of temporary credentials, in UTC."""

    def __post_init__(self) -> None:
        if not self.access_key or not self.secret_key:
            raise InputError("Credentials require a non-empty access and secret key.")
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            object.__setattr__(self, "expires_at", self.expires_at.replace(tzinfo=UTC))

    @property
    def is_temporary(self) -> bool:
        return self.session_token is not None

    @property
    def is_expired(self) -> bool:
        """Whether the credentials are expired."""
        return self.expires_within(timedelta(0))

    def expires_within(self, margin: timedelta) -> bool:
        """Whether the credentials expire before ``now + margin``."""
        if self.expires_at is None:
            return False
        return self.expires_at <= datetime.now(UTC) + margin

    def __repr__(self) -> str:
        return (
            f"Credentials(access_key={self.access_key!r}, "
            f"temporary={self.is_temporary}, expires_at={self.expires_at!r})"
        )
