"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0

Glue between an API gateway's request handling and the SigV4 signer.

The gateway hands over the logical upstream request plus the inbound headers;
:class:`GatewaySigner` resolves credentials (static keys, or the metadata
chain through a shared single-flight cache), signs, and returns where and how
to dispatch the request.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from ._http import Field, Fields, SignedRequest, SigningRequest
from ._identity import Credentials
from .cache import SingleFlightCache
from .credentials import (
    CredentialResolver,
    StaticCredentialSource,
    create_default_chain,
)
from .exceptions import (
    BaseSignerException,
    InputError,
    MissingSigningParameterError,
)
from .signers import SigV4Signer

logger = logging.getLogger(__name__)

AWS_METHOD = "POST"
AWS_PORT = 443
AMZ_JSON_CONTENT_TYPE = "application/x-amz-json-1.1"
DEFAULT_CREDENTIALS_CACHE_KEY = "aws_gateway_signer.iam_role_temp_creds"
DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass(kw_only=True)
class GatewayConfig:
    aws_key: str | None = None
    """Static access key. With ``aws_secret`` it bypasses credential resolution."""

    aws_secret: str | None = None

    api_prefix: bool = False
    """Dispatch to ``api.<host>`` instead of the service host."""

    force_content_type_amz_json: bool = False
    """Always send ``Content-Type: application/x-amz-json-1.1``."""

    credentials_cache_key: str = DEFAULT_CREDENTIALS_CACHE_KEY
    credentials_ttl: float | None = None
    """Seconds to keep fetched credentials; None relies on their expiry alone."""

    refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN
    """Refetch temporary credentials this long before they expire."""


def aws_endpoint_host(service: str, region: str) -> str:
    return f"{service}.{region}.amazonaws.com"


def status_code_for(error: BaseException) -> int:
    """HTTP status a gateway should answer with when signing fails."""
    if isinstance(error, BaseSignerException):
        return error.status_code
    return 500


class GatewaySigner:
    def __init__(
        self,
        config: GatewayConfig,
        *,
        resolver: CredentialResolver | None = None,
        cache: SingleFlightCache[Credentials] | None = None,
        signer: SigV4Signer | None = None,
    ):
        if bool(config.aws_key) != bool(config.aws_secret):
            raise InputError(
                "aws_key and aws_secret must be configured together; "
                "set both or neither."
            )
        self._config = config
        self._static = StaticCredentialSource(config.aws_key, config.aws_secret)
        self._resolver = resolver or create_default_chain()
        self._cache = cache or SingleFlightCache[Credentials](
            expiry=lambda credentials: credentials.expires_at,
            refresh_margin=config.refresh_margin,
        )
        self._signer = signer or SigV4Signer()

    @property
    def config(self) -> GatewayConfig:
        return self._config

    async def credentials(self) -> Credentials:
        """Static keys when configured, otherwise cached chain credentials."""
        if self._static.is_configured():
            return await self._static.fetch_credentials()
        return await self._cache.get(
            self._config.credentials_cache_key,
            self._resolver.resolve,
            ttl=self._config.credentials_ttl,
        )

    async def sign(
        self,
        request: SigningRequest,
        *,
        inbound_headers: Mapping[str, str] | None = None,
    ) -> SignedRequest:
        """Resolve credentials and sign ``request`` for dispatch.

        :param request: The upstream request to sign.
        :param inbound_headers: Headers of the request the gateway received.
        :raises InputError: Before any network call, if region or service is empty.
        :raises CredentialFetchError: If the selected credential source fails.
        """
        if not request.region or not request.service:
            raise MissingSigningParameterError(
                "Payload does not contain a service and/or region."
            )

        request = self._prepare_request(request, Fields(inbound_headers))
        credentials = await self.credentials()
        signed = self._signer.sign(request=request, credentials=credentials)

        if self._config.api_prefix:
            signed = dataclasses.replace(
                signed, target_host=f"api.{signed.target_host}"
            )
        logger.debug(
            "Signed %s request for %s/%s to %s",
            signed.method,
            request.service,
            request.region,
            signed.url,
        )
        return signed

    def _prepare_request(
        self, request: SigningRequest, inbound: Fields
    ) -> SigningRequest:
        fields = Fields(list(request.fields))
        if (target := inbound.get_field("X-Amz-Target")) is not None:
            fields.set_field(Field(name="X-Amz-Target", values=list(target.values)))

        inbound_content_type = inbound.get_field("Content-Type")
        if self._config.force_content_type_amz_json or (
            inbound_content_type is not None
            and inbound_content_type.as_string() == AMZ_JSON_CONTENT_TYPE
        ):
            fields.set_field(Field(name="Content-Type", values=[AMZ_JSON_CONTENT_TYPE]))
        return dataclasses.replace(request, headers=fields)
