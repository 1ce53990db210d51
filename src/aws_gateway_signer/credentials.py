"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0

Credential sources and the ordered chain that picks between them.

A source reports whether it applies to the current environment and knows how
to fetch credentials. :class:`CredentialResolver` uses the first configured
source only; a fetch failure from that source is returned to the caller rather
than falling through to the next one.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, ClassVar, Protocol, runtime_checkable
from urllib.parse import urlsplit

import aiohttp

from ._identity import Credentials
from .exceptions import CredentialFetchError, InputError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: float = 2.0

CONTAINER_CREDENTIALS_HOST = "http://169.254.170.2"
CONTAINER_RELATIVE_URI_ENV = "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI"
CONTAINER_FULL_URI_ENV = "AWS_CONTAINER_CREDENTIALS_FULL_URI"
CONTAINER_AUTHORIZATION_TOKEN_ENV = "AWS_CONTAINER_AUTHORIZATION_TOKEN"
# Plain-http full URIs may only point at these hosts or at a loopback address.
CONTAINER_ALLOWED_HOSTS = frozenset(
    {"localhost", "169.254.170.2", "169.254.170.23", "fd00:ec2::23"}
)

IMDS_ENDPOINT = "http://169.254.169.254"
IMDS_TOKEN_PATH = "/latest/api/token"
IMDS_ROLE_PATH = "/latest/meta-data/iam/security-credentials/"
IMDS_TOKEN_TTL_SECONDS = 21600


@runtime_checkable
class CredentialSource(Protocol):
    always_configured: ClassVar[bool]
    """True for a source that applies everywhere and so must end a chain."""

    def is_configured(self) -> bool:
        """Returns True if this source applies to the current environment."""
        ...

    async def fetch_credentials(self) -> Credentials:
        """Fetch credentials, raising CredentialFetchError on failure."""
        ...


class StaticCredentialSource:
    """Caller-supplied keys. They never expire and need no network call."""

    always_configured: ClassVar[bool] = False

    def __init__(
        self,
        access_key: str | None,
        secret_key: str | None,
        session_token: str | None = None,
    ):
        self._access_key = access_key
        self._secret_key = secret_key
        self._session_token = session_token

    def is_configured(self) -> bool:
        return bool(self._access_key and self._secret_key)

    async def fetch_credentials(self) -> Credentials:
        if not self.is_configured():
            raise InputError("Static credentials require an access and secret key.")
        assert self._access_key is not None and self._secret_key is not None
        return Credentials(
            access_key=self._access_key,
            secret_key=self._secret_key,
            session_token=self._session_token,
        )


class _MetadataCredentialSource(ABC):
    """Shared HTTP plumbing for sources backed by a metadata endpoint."""

    always_configured: ClassVar[bool] = False
    name: ClassVar[str] = "metadata"

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ):
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def fetch_credentials(self) -> Credentials:
        logger.debug("Fetching credentials from the %s endpoint", self.name)
        try:
            if self._session is not None:
                data = await self._fetch_document(self._session)
            else:
                async with aiohttp.ClientSession(timeout=self._timeout) as session:
                    data = await self._fetch_document(session)
        except CredentialFetchError as e:
            logger.warning("Credential fetch from %s failed: %s", self.name, e)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Credential fetch from %s failed: %r", self.name, e)
            raise CredentialFetchError(
                f"Unable to reach the {self.name} credential endpoint: {e!r}"
            ) from e

        credentials = parse_credential_document(data, source=self.name)
        logger.debug(
            "Fetched credentials for %s from %s, expiring at %s",
            credentials.access_key,
            self.name,
            credentials.expires_at,
        )
        return credentials

    @abstractmethod
    async def _fetch_document(self, session: aiohttp.ClientSession) -> Any:
        """Return the decoded credential document from the endpoint."""

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        as_json: bool = False,
    ) -> Any:
        async with session.request(
            method, url, headers=headers, timeout=self._timeout
        ) as response:
            if response.status != 200:
                raise CredentialFetchError(
                    f"{self.name} credential endpoint returned HTTP "
                    f"{response.status} for {method} {url}"
                )
            if not as_json:
                return await response.text()
            try:
                # IMDS answers with text/plain, so the content type is not checked.
                return await response.json(content_type=None)
            except ValueError as e:
                raise CredentialFetchError(
                    f"{self.name} credential endpoint returned a malformed document"
                ) from e


def _is_allowed_full_uri(uri: str) -> bool:
    parts = urlsplit(uri)
    if parts.scheme == "https":
        return True
    if parts.scheme != "http" or not parts.hostname:
        return False
    if parts.hostname in CONTAINER_ALLOWED_HOSTS:
        return True
    try:
        return ipaddress.ip_address(parts.hostname).is_loopback
    except ValueError:
        return False


class ContainerCredentialSource(_MetadataCredentialSource):
    """Credentials from the ECS/EKS container metadata endpoint."""

    name = "container"

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ):
        super().__init__(timeout=timeout, session=session)
        self._environ = os.environ if environ is None else environ

    def is_configured(self) -> bool:
        return bool(
            self._environ.get(CONTAINER_RELATIVE_URI_ENV)
            or self._environ.get(CONTAINER_FULL_URI_ENV)
        )

    @property
    def url(self) -> str:
        if relative_uri := self._environ.get(CONTAINER_RELATIVE_URI_ENV):
            return f"{CONTAINER_CREDENTIALS_HOST}{relative_uri}"
        if full_uri := self._environ.get(CONTAINER_FULL_URI_ENV):
            if not _is_allowed_full_uri(full_uri):
                raise CredentialFetchError(
                    f"{CONTAINER_FULL_URI_ENV} must use https or a loopback or "
                    f"container metadata host, got {full_uri!r}."
                )
            return full_uri
        raise CredentialFetchError(
            f"Neither {CONTAINER_RELATIVE_URI_ENV} nor {CONTAINER_FULL_URI_ENV} is set."
        )

    async def _fetch_document(self, session: aiohttp.ClientSession) -> Any:
        headers = {}
        if token := self._environ.get(CONTAINER_AUTHORIZATION_TOKEN_ENV):
            headers["Authorization"] = token
        return await self._request(
            session, "GET", self.url, headers=headers, as_json=True
        )


class InstanceMetadataCredentialSource(_MetadataCredentialSource):
    """Instance profile credentials from the EC2 instance metadata service.

    IMDS cannot be probed cheaply, so this source always reports itself as
    configured and must be the last entry of any chain.
    """

    always_configured = True
    name = "instance metadata"

    def __init__(
        self,
        *,
        endpoint: str = IMDS_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ):
        super().__init__(timeout=timeout, session=session)
        self._endpoint = endpoint.rstrip("/")

    def is_configured(self) -> bool:
        return True

    async def _fetch_document(self, session: aiohttp.ClientSession) -> Any:
        token = await self._session_token(session)
        headers = {"X-aws-ec2-metadata-token": token} if token else {}
        role_names = await self._request(
            session, "GET", f"{self._endpoint}{IMDS_ROLE_PATH}", headers=headers
        )
        role_name = role_names.strip().splitlines()[0] if role_names.strip() else ""
        if not role_name:
            raise CredentialFetchError("No IAM role is attached to this instance.")
        return await self._request(
            session,
            "GET",
            f"{self._endpoint}{IMDS_ROLE_PATH}{role_name}",
            headers=headers,
            as_json=True,
        )

    async def _session_token(self, session: aiohttp.ClientSession) -> str | None:
        try:
            return await self._request(
                session,
                "PUT",
                f"{self._endpoint}{IMDS_TOKEN_PATH}",
                headers={
                    "X-aws-ec2-metadata-token-ttl-seconds": str(IMDS_TOKEN_TTL_SECONDS)
                },
            )
        except (CredentialFetchError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            # IMDSv1 still serves credentials without a session token.
            logger.debug("IMDSv2 token request failed, continuing without: %r", e)
            return None


def parse_credential_document(data: Any, *, source: str) -> Credentials:
    """Build :class:`Credentials` from a metadata service JSON document."""
    if not isinstance(data, Mapping):
        raise CredentialFetchError(f"{source} credential document is not an object")
    try:
        access_key = data["AccessKeyId"]
        secret_key = data["SecretAccessKey"]
    except KeyError as e:
        raise CredentialFetchError(
            f"{source} credential document is missing {e.args[0]}"
        ) from e

    expires_at = None
    if expiration := data.get("Expiration"):
        try:
            expires_at = datetime.fromisoformat(expiration)
        except (TypeError, ValueError) as e:
            raise CredentialFetchError(
                f"{source} credential document has an invalid Expiration {expiration!r}"
            ) from e

    try:
        return Credentials(
            access_key=access_key,
            secret_key=secret_key,
            session_token=data.get("Token") or None,
            expires_at=expires_at,
        )
    except InputError as e:
        raise CredentialFetchError(
            f"{source} credential document has empty keys"
        ) from e


class CredentialResolver:
    """Picks the first configured source out of an ordered chain."""

    def __init__(self, sources: Sequence[CredentialSource]):
        for source in sources[:-1]:
            if getattr(source, "always_configured", False):
                raise ValueError(
                    f"{type(source).__name__} is always configured and would hide "
                    "every source after it; it must be last in the chain."
                )
        self._sources = tuple(sources)

    @property
    def sources(self) -> tuple[CredentialSource, ...]:
        return self._sources

    def select_source(self) -> CredentialSource | None:
        for source in self._sources:
            if source.is_configured():
                logger.debug("Using credential source %s", type(source).__name__)
                return source
        return None

    async def resolve(self) -> Credentials:
        source = self.select_source()
        if source is None:
            raise CredentialFetchError("No credential source is configured.")
        return await source.fetch_credentials()


def create_default_chain(
    *,
    environ: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    session: aiohttp.ClientSession | None = None,
) -> CredentialResolver:
    """Creates the default chain: container metadata, then instance metadata."""
    return CredentialResolver(
        sources=(
            ContainerCredentialSource(
                environ=environ, timeout=timeout, session=session
            ),
            InstanceMetadataCredentialSource(timeout=timeout, session=session),
        )
    )
