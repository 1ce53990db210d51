"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0
"""

import datetime
import hmac
import logging
import re
from copy import deepcopy
from dataclasses import dataclass
from hashlib import sha256
from typing import Required, TypedDict
from urllib.parse import quote

from ._http import Field, SignedRequest, SigningRequest, normalize_target
from ._identity import Credentials
from .exceptions import InputError, MissingSigningParameterError, SigningError

logger = logging.getLogger(__name__)

HEADERS_EXCLUDED_FROM_SIGNING: tuple[str, ...] = (
    "authorization",
    "connection",
    "expect",
    "user-agent",
    "x-amzn-trace-id",
)

SIGNING_ALGORITHM: str = "AWS4-HMAC-SHA256"
SIGV4_TIMESTAMP_FORMAT: str = "%Y%m%dT%H%M%SZ"
SIGV4_TIMESTAMP_RE = re.compile(r"\d{8}T\d{6}Z")
EMPTY_SHA256_HASH = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


@dataclass(kw_only=True)
class SignerConfig:
    double_encode_path: bool = False
    """Percent-encode the path a second time, as most non-S3 services expect."""

    normalize_path: bool = True
    """Remove dot segments and consecutive slashes before encoding the path."""

    content_sha256_header: bool = True
    """Add and sign ``X-Amz-Content-Sha256``."""


class SigV4SigningProperties(TypedDict, total=False):
    region: Required[str]
    service: Required[str]
    date: str


class SigV4Signer:
    """
    Request signer for applying the AWS Signature Version 4 algorithm.

    Signing is synchronous and never fetches credentials; resolve them first
    (see :class:`~aws_gateway_signer.gateway.GatewaySigner`).
    """

    def __init__(self, *, config: SignerConfig | None = None):
        self._config = config or SignerConfig()

    def sign(
        self,
        *,
        request: SigningRequest,
        credentials: Credentials | None,
    ) -> SignedRequest:
        """Sign a copy of ``request`` and return the dispatchable result.

        :param request: The logical request to sign. It is not modified.
        :param credentials: Resolved credentials. Only borrowed for this call.
        :raises MissingSigningParameterError: If region or service is empty.
        :raises SigningError: If credentials are absent or expired.
        """
        # Nothing is hashed until inputs and credentials are known good.
        signing_properties = self._signing_properties(request=request)
        self._validate_credentials(credentials=credentials)
        assert credentials is not None

        new_request = self._generate_new_request(request=request)
        self._apply_required_fields(
            request=new_request,
            signing_properties=signing_properties,
            credentials=credentials,
        )

        # Construct core signing components
        canonical_request = self.canonical_request(
            signing_properties=signing_properties,
            request=new_request,
        )
        string_to_sign = self.string_to_sign(
            canonical_request=canonical_request,
            signing_properties=signing_properties,
        )
        logger.debug("StringToSign:\n%s", string_to_sign)
        signature = self._signature(
            string_to_sign=string_to_sign,
            secret_key=credentials.secret_key,
            signing_properties=signing_properties,
        )

        signing_fields = self._normalize_signing_fields(request=new_request)
        credential_scope = self._scope(signing_properties=signing_properties)
        credential = f"{credentials.access_key}/{credential_scope}"
        authorization = self.generate_authorization_field(
            credential=credential,
            signed_headers=list(signing_fields.keys()),
            signature=signature,
        )
        new_request.fields.set_field(authorization)

        return SignedRequest(
            method=new_request.method.upper(),
            target_host=new_request.host,
            target_port=new_request.port,
            target_path=self._format_target(request=new_request),
            headers=new_request.fields.as_dict(),
            body=bytes(new_request.body),
        )

    def generate_authorization_field(
        self, *, credential: str, signed_headers: list[str], signature: str
    ) -> Field:
        """Generate the `Authorization` field.

        :param credential:
            ``<access_key>/<date>/<region>/<service>/aws4_request``
        :param signed_headers:
            The lower-cased field names used in signing, in sorted order.
        :param signature:
            Hex-encoded signature over the string to sign.
        """
        signed_headers_str = ";".join(signed_headers)
        auth_str = (
            f"{SIGNING_ALGORITHM} Credential={credential}, "
            f"SignedHeaders={signed_headers_str}, Signature={signature}"
        )
        return Field(name="Authorization", values=[auth_str])

    def signing_key(
        self, *, secret_key: str, signing_properties: SigV4SigningProperties
    ) -> bytes:
        """Derive the signing key scoped to a date, region and service.

        DateKey              = HMAC-SHA256("AWS4"+"<SecretAccessKey>", "<YYYYMMDD>")
        DateRegionKey        = HMAC-SHA256(<DateKey>, "<aws-region>")
        DateRegionServiceKey = HMAC-SHA256(<DateRegionKey>, "<aws-service>")
        SigningKey           = HMAC-SHA256(<DateRegionServiceKey>, "aws4_request")
        """
        assert "date" in signing_properties
        k_date = self._hash(
            key=f"AWS4{secret_key}".encode(), value=signing_properties["date"][0:8]
        )
        k_region = self._hash(key=k_date, value=signing_properties["region"])
        k_service = self._hash(key=k_region, value=signing_properties["service"])
        return self._hash(key=k_service, value="aws4_request")

    def _signature(
        self,
        *,
        string_to_sign: str,
        secret_key: str,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        k_signing = self.signing_key(
            secret_key=secret_key, signing_properties=signing_properties
        )
        return self._hash(key=k_signing, value=string_to_sign).hex()

    def _hash(self, key: bytes, value: str) -> bytes:
        return hmac.new(key=key, msg=value.encode(), digestmod=sha256).digest()

    def _validate_credentials(self, *, credentials: Credentials | None) -> None:
        """Perform runtime and expiration checks before attempting signing."""
        if credentials is None:
            raise SigningError(
                "No credentials were supplied. Credentials must be resolved "
                "before a request can be signed."
            )
        elif not isinstance(credentials, Credentials):
            raise SigningError(
                "Received unexpected value for credentials parameter. Expected "
                f"Credentials but received {type(credentials)}."
            )
        elif credentials.is_expired:
            raise SigningError(
                f"Provided credentials expired at {credentials.expires_at}. "
                "Please refresh the credentials before signing."
            )

    def _signing_properties(self, *, request: SigningRequest) -> SigV4SigningProperties:
        missing = [
            name for name in ("region", "service") if not getattr(request, name)
        ]
        if missing:
            raise MissingSigningParameterError(
                f"Cannot sign a request without {' and '.join(missing)}."
            )
        return SigV4SigningProperties(
            region=request.region,
            service=request.service,
            date=self._resolve_signing_date(request=request),
        )

    def _resolve_signing_date(self, *, request: SigningRequest) -> str:
        # An existing X-Amz-Date wins so the header and scope always agree.
        if (date_field := request.fields.get_field("X-Amz-Date")) is not None:
            date = date_field.as_string()
            message = f"X-Amz-Date must be formatted as YYYYMMDDTHHMMSSZ, got {date!r}."
            # strptime alone accepts fields without zero padding.
            if not SIGV4_TIMESTAMP_RE.fullmatch(date):
                raise InputError(message)
            try:
                datetime.datetime.strptime(date, SIGV4_TIMESTAMP_FORMAT)
            except ValueError as e:
                raise InputError(message) from e
            return date

        date_obj = request.timestamp
        if date_obj is None:
            date_obj = datetime.datetime.now(datetime.UTC)
        elif date_obj.tzinfo is None:
            # Naive timestamps are taken to already be UTC.
            date_obj = date_obj.replace(tzinfo=datetime.UTC)
        return date_obj.astimezone(datetime.UTC).strftime(SIGV4_TIMESTAMP_FORMAT)

    def _generate_new_request(self, *, request: SigningRequest) -> SigningRequest:
        return deepcopy(request)

    def _apply_required_fields(
        self,
        *,
        request: SigningRequest,
        signing_properties: SigV4SigningProperties,
        credentials: Credentials,
    ) -> None:
        fields = request.fields
        # Sent explicitly so a rewritten dispatch target keeps the signed host.
        if "Host" not in fields:
            fields.set_field(Field(name="Host", values=[request.netloc]))
        if "X-Amz-Date" not in fields:
            assert "date" in signing_properties
            fields.set_field(
                Field(name="X-Amz-Date", values=[signing_properties["date"]])
            )
        if self._config.content_sha256_header and "X-Amz-Content-Sha256" not in fields:
            fields.set_field(
                Field(
                    name="X-Amz-Content-Sha256",
                    values=[self.payload_hash(body=bytes(request.body))],
                )
            )
        if "X-Amz-Security-Token" not in fields and credentials.session_token:
            fields.set_field(
                Field(name="X-Amz-Security-Token", values=[credentials.session_token])
            )

    def canonical_request(
        self, *, signing_properties: SigV4SigningProperties, request: SigningRequest
    ) -> str:
        """The canonical request is a standardized string laying out the components
        used in the SigV4 signing algorithm. Comparing it against the service's
        expectation is the quickest way to find a signature mismatch.

            <HTTPMethod>\\n
            <CanonicalURI>\\n
            <CanonicalQueryString>\\n
            <CanonicalHeaders>\\n
            <SignedHeaders>\\n
            <HashedPayload>

        :param signing_properties:
            SigV4SigningProperties holding the target service, region, and date.
        :param request:
            The request to canonicalize, with required fields already applied.
        """
        canonical_path = self._format_canonical_path(path=request.path)
        canonical_query = self._format_canonical_query(query=request.query_pairs())
        normalized_fields = self._normalize_signing_fields(request=request)
        canonical_fields = self._format_canonical_fields(fields=normalized_fields)
        canonical_payload = self._format_canonical_payload(request=request)
        return (
            f"{request.method.upper()}\n"
            f"{canonical_path}\n"
            f"{canonical_query}\n"
            f"{canonical_fields}\n"
            f"{';'.join(normalized_fields)}\n"
            f"{canonical_payload}"
        )

    def string_to_sign(
        self,
        *,
        canonical_request: str,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        """Concatenate the algorithm, the signing timestamp, the credential scope
        and the hash of the canonical request.

            Algorithm \\n
            RequestDateTime \\n
            CredentialScope \\n
            HashedCanonicalRequest
        """
        date = signing_properties.get("date")
        if date is None:
            raise SigningError(
                "Cannot generate string_to_sign without a valid date "
                f"in your signing_properties. Current value: {date}"
            )
        return (
            f"{SIGNING_ALGORITHM}\n"
            f"{date}\n"
            f"{self._scope(signing_properties=signing_properties)}\n"
            f"{sha256(canonical_request.encode()).hexdigest()}"
        )

    def payload_hash(self, *, body: bytes) -> str:
        if not body:
            return EMPTY_SHA256_HASH
        return sha256(body).hexdigest()

    def _scope(self, signing_properties: SigV4SigningProperties) -> str:
        assert "date" in signing_properties
        formatted_date = signing_properties["date"][0:8]
        region = signing_properties["region"]
        service = signing_properties["service"]
        # Scope format: <YYYYMMDD>/<AWS Region>/<AWS Service>/aws4_request
        return f"{formatted_date}/{region}/{service}/aws4_request"

    def _format_canonical_path(self, *, path: str | None) -> str:
        if not path:
            path = "/"
        if self._config.normalize_path:
            path = _remove_dot_segments(path)
        # "%" is safe so existing escapes are not encoded again.
        encoded = quote(string=path, safe="/%")
        if self._config.double_encode_path:
            encoded = quote(string=encoded, safe="/")
        return encoded

    def _format_canonical_query(self, *, query: list[tuple[str, str]]) -> str:
        query_parts = (
            (quote(string=key, safe=""), quote(string=value, safe=""))
            for key, value in query
        )
        # key-value pairs must be in sorted order for their encoded forms.
        return "&".join(f"{key}={value}" for key, value in sorted(query_parts))

    def _normalize_signing_fields(self, *, request: SigningRequest) -> dict[str, str]:
        normalized_fields = {
            field.name.lower(): field.as_string(delimiter=",")
            for field in request.fields
            if field.name.lower() not in HEADERS_EXCLUDED_FROM_SIGNING
        }
        if "host" not in normalized_fields:
            normalized_fields["host"] = request.netloc

        return dict(sorted(normalized_fields.items()))

    def _format_canonical_fields(self, *, fields: dict[str, str]) -> str:
        return "".join(
            f"{key}:{' '.join(value.split())}\n" for key, value in fields.items()
        )

    def _format_canonical_payload(self, *, request: SigningRequest) -> str:
        # A caller-supplied hash is what the service verifies the body against.
        content_sha256 = request.fields.get_field("X-Amz-Content-Sha256")
        if content_sha256 is not None:
            return content_sha256.as_string()
        return self.payload_hash(body=bytes(request.body))

    def _format_target(self, *, request: SigningRequest) -> str:
        path = quote(string=request.path or "/", safe="/%")
        query = self._format_canonical_query(query=request.query_pairs())
        return normalize_target(f"{path}?{query}")


def _remove_dot_segments(path: str, remove_consecutive_slashes: bool = True) -> str:
    """Removes dot segments from a path per :rfc:`3986#section-5.2.4`.
    Optionally removes consecutive slashes, true by default.
    :param path: The path to modify.
    :param remove_consecutive_slashes: Whether to remove consecutive slashes.
    :returns: The path with dot segments removed.
    """
    output = []
    for segment in path.split("/"):
        if segment == ".":
            continue
        elif segment != "..":
            output.append(segment)
        elif output:
            output.pop()
    if path.startswith("/") and (not output or output[0]):
        output.insert(0, "")
    if output and path.endswith(("/.", "/..")):
        output.append("")
    result = "/".join(output)
    if remove_consecutive_slashes:
        result = result.replace("//", "/")
    return result
