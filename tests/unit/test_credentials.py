"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0
"""

import asyncio
import json
from datetime import UTC, datetime

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer as MetadataServer

from aws_gateway_signer import (
    ContainerCredentialSource,
    CredentialFetchError,
    CredentialResolver,
    Credentials,
    InstanceMetadataCredentialSource,
    StaticCredentialSource,
    create_default_chain,
)
from aws_gateway_signer.credentials import (
    CONTAINER_AUTHORIZATION_TOKEN_ENV,
    CONTAINER_FULL_URI_ENV,
    CONTAINER_RELATIVE_URI_ENV,
    _MetadataCredentialSource,
    parse_credential_document,
)

CREDENTIAL_DOCUMENT = {
    "Code": "Success",
    "Type": "AWS-HMAC",
    "AccessKeyId": "ASIAEXAMPLE",
    "SecretAccessKey": "wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY",
    "Token": "session-token",
    "Expiration": "2015-08-30T18:36:00Z",
}


class MetadataService:
    """In-process stand-in for the container and instance metadata endpoints."""

    def __init__(self):
        self.issue_token = True
        self.role_names = "gateway-role\n"
        self.document_status = 200
        self.document_body = json.dumps(CREDENTIAL_DOCUMENT)
        self.requests: list[tuple[str, str, dict[str, str]]] = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_put("/latest/api/token", self.token)
        app.router.add_get("/latest/meta-data/iam/security-credentials/", self.roles)
        app.router.add_get(
            "/latest/meta-data/iam/security-credentials/{role}", self.document
        )
        app.router.add_get("/v2/credentials/{id}", self.document)
        app.router.add_get("/slow", self.slow)
        return app

    def _record(self, request: web.Request) -> None:
        headers = {name.lower(): value for name, value in request.headers.items()}
        self.requests.append((request.method, request.path, headers))

    async def token(self, request: web.Request) -> web.Response:
        self._record(request)
        if not self.issue_token:
            return web.Response(status=403)
        return web.Response(text="imds-session-token")

    async def roles(self, request: web.Request) -> web.Response:
        self._record(request)
        return web.Response(text=self.role_names)

    async def document(self, request: web.Request) -> web.Response:
        self._record(request)
        # IMDS serves credential documents as text/plain.
        return web.Response(
            status=self.document_status,
            text=self.document_body,
            content_type="text/plain",
        )

    async def slow(self, request: web.Request) -> web.Response:
        await asyncio.sleep(0.5)
        return web.Response(text="{}")


@pytest.fixture
def metadata() -> MetadataService:
    return MetadataService()


@pytest_asyncio.fixture
async def server(metadata: MetadataService):
    test_server = MetadataServer(metadata.app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


def container_source(server: MetadataServer, path: str = "/v2/credentials/abc", **env):
    environ = {CONTAINER_FULL_URI_ENV: str(server.make_url(path)), **env}
    return ContainerCredentialSource(environ=environ, timeout=0.5)


def instance_source(server: MetadataServer) -> InstanceMetadataCredentialSource:
    return InstanceMetadataCredentialSource(
        endpoint=str(server.make_url("/")), timeout=0.5
    )


class FakeSource:
    always_configured = False

    def __init__(self, configured: bool, *, access_key: str = "AKID", error=None):
        self.configured = configured
        self.access_key = access_key
        self.error = error
        self.fetches = 0

    def is_configured(self) -> bool:
        return self.configured

    async def fetch_credentials(self) -> Credentials:
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return Credentials(access_key=self.access_key, secret_key="SECRET")


class AlwaysConfiguredFakeSource(FakeSource):
    always_configured = True

    def __init__(self, **kwargs):
        super().__init__(True, **kwargs)


class TestCredentialResolver:
    @pytest.mark.asyncio
    async def test_first_configured_source_wins(self):
        first = FakeSource(False, access_key="FIRST")
        second = FakeSource(True, access_key="SECOND")

        credentials = await CredentialResolver([first, second]).resolve()

        assert credentials.access_key == "SECOND"
        assert first.fetches == 0

    @pytest.mark.asyncio
    async def test_only_the_first_configured_source_is_used(self):
        first = FakeSource(True, access_key="FIRST")
        second = FakeSource(True, access_key="SECOND")

        credentials = await CredentialResolver([first, second]).resolve()

        assert credentials.access_key == "FIRST"
        assert second.fetches == 0

    @pytest.mark.asyncio
    async def test_fetch_failure_does_not_fall_through(self):
        first = FakeSource(True, error=CredentialFetchError("endpoint down"))
        second = AlwaysConfiguredFakeSource(access_key="SECOND")

        with pytest.raises(CredentialFetchError, match="endpoint down"):
            await CredentialResolver([first, second]).resolve()
        assert second.fetches == 0

    @pytest.mark.asyncio
    async def test_no_configured_source(self):
        with pytest.raises(CredentialFetchError, match="No credential source"):
            await CredentialResolver([FakeSource(False)]).resolve()

    def test_always_configured_source_must_be_last(self):
        with pytest.raises(ValueError, match="must be last"):
            CredentialResolver([AlwaysConfiguredFakeSource(), FakeSource(True)])

    def test_default_chain_order(self):
        resolver = create_default_chain(environ={})
        container, instance = resolver.sources
        assert isinstance(container, ContainerCredentialSource)
        assert isinstance(instance, InstanceMetadataCredentialSource)
        assert instance.always_configured
        assert not container.always_configured

    def test_default_chain_prefers_container_when_present(self):
        resolver = create_default_chain(
            environ={CONTAINER_RELATIVE_URI_ENV: "/v2/credentials/abc"}
        )
        assert isinstance(resolver.select_source(), ContainerCredentialSource)

    def test_default_chain_falls_back_to_instance_metadata(self):
        resolver = create_default_chain(environ={})
        assert isinstance(resolver.select_source(), InstanceMetadataCredentialSource)


class TestStaticCredentialSource:
    @pytest.mark.asyncio
    async def test_fetch(self):
        source = StaticCredentialSource("AKIDEXAMPLE", "SECRET")
        assert source.is_configured()
        credentials = await source.fetch_credentials()
        assert credentials == Credentials(access_key="AKIDEXAMPLE", secret_key="SECRET")
        assert credentials.expires_at is None

    @pytest.mark.parametrize(
        "access_key, secret_key", [(None, "S"), ("A", ""), (None, None)]
    )
    def test_requires_both_keys(self, access_key, secret_key):
        assert not StaticCredentialSource(access_key, secret_key).is_configured()


class TestContainerCredentialSource:
    def test_configuration(self):
        assert not ContainerCredentialSource(environ={}).is_configured()
        assert ContainerCredentialSource(
            environ={CONTAINER_RELATIVE_URI_ENV: "/v2/credentials/abc"}
        ).is_configured()
        assert ContainerCredentialSource(
            environ={CONTAINER_FULL_URI_ENV: "http://localhost/creds"}
        ).is_configured()

    def test_relative_uri_uses_link_local_host(self):
        source = ContainerCredentialSource(
            environ={CONTAINER_RELATIVE_URI_ENV: "/v2/credentials/abc"}
        )
        assert source.url == "http://169.254.170.2/v2/credentials/abc"

    @pytest.mark.parametrize(
        "uri",
        [
            "https://credentials.example.com/creds",
            "http://localhost/creds",
            "http://127.0.0.1:8080/creds",
            "http://[::1]/creds",
            "http://169.254.170.2/v2/credentials/abc",
            "http://169.254.170.23/v1/credentials",
            "http://[fd00:ec2::23]/v1/credentials",
        ],
    )
    def test_allowed_full_uris(self, uri):
        source = ContainerCredentialSource(environ={CONTAINER_FULL_URI_ENV: uri})
        assert source.url == uri

    @pytest.mark.parametrize(
        "uri",
        [
            "http://example.com/creds",
            "http://10.0.0.5/creds",
            "ftp://localhost/creds",
            "not a url",
        ],
    )
    def test_disallowed_full_uris(self, uri):
        source = ContainerCredentialSource(environ={CONTAINER_FULL_URI_ENV: uri})
        with pytest.raises(CredentialFetchError, match=CONTAINER_FULL_URI_ENV):
            source.url

    @pytest.mark.asyncio
    async def test_token_is_not_sent_to_disallowed_host(self):
        source = ContainerCredentialSource(
            environ={
                CONTAINER_FULL_URI_ENV: "http://example.com/creds",
                CONTAINER_AUTHORIZATION_TOKEN_ENV: "container-auth",
            }
        )
        with pytest.raises(CredentialFetchError, match="must use https"):
            await source.fetch_credentials()

    @pytest.mark.asyncio
    async def test_fetch(self, server: MetadataServer, metadata: MetadataService):
        credentials = await container_source(server).fetch_credentials()

        assert credentials.access_key == "ASIAEXAMPLE"
        assert credentials.secret_key == CREDENTIAL_DOCUMENT["SecretAccessKey"]
        assert credentials.session_token == "session-token"
        assert credentials.expires_at == datetime(2015, 8, 30, 18, 36, tzinfo=UTC)
        assert [(method, path) for method, path, _ in metadata.requests] == [
            ("GET", "/v2/credentials/abc")
        ]

    @pytest.mark.asyncio
    async def test_authorization_token(
        self, server: MetadataServer, metadata: MetadataService
    ):
        source = container_source(
            server, **{CONTAINER_AUTHORIZATION_TOKEN_ENV: "container-auth"}
        )
        await source.fetch_credentials()
        _, _, headers = metadata.requests[0]
        assert headers["authorization"] == "container-auth"

    @pytest.mark.asyncio
    async def test_injected_session(self, server: MetadataServer):
        async with aiohttp.ClientSession() as session:
            url = str(server.make_url("/v2/credentials/x"))
            source = ContainerCredentialSource(
                environ={CONTAINER_FULL_URI_ENV: url}, session=session
            )
            credentials = await source.fetch_credentials()
            assert not session.closed
        assert credentials.access_key == "ASIAEXAMPLE"

    @pytest.mark.asyncio
    async def test_error_status(
        self, server: MetadataServer, metadata: MetadataService
    ):
        metadata.document_status = 500
        with pytest.raises(CredentialFetchError, match="HTTP 500"):
            await container_source(server).fetch_credentials()

    @pytest.mark.asyncio
    async def test_malformed_document(
        self, server: MetadataServer, metadata: MetadataService
    ):
        metadata.document_body = "<html>not json</html>"
        with pytest.raises(CredentialFetchError, match="malformed"):
            await container_source(server).fetch_credentials()

    @pytest.mark.asyncio
    async def test_timeout(self, server: MetadataServer):
        source = ContainerCredentialSource(
            environ={CONTAINER_FULL_URI_ENV: str(server.make_url("/slow"))},
            timeout=0.1,
        )
        with pytest.raises(CredentialFetchError, match="Unable to reach"):
            await source.fetch_credentials()

    @pytest.mark.asyncio
    async def test_unreachable(self):
        source = ContainerCredentialSource(
            environ={CONTAINER_FULL_URI_ENV: "http://127.0.0.1:1/creds"}, timeout=0.5
        )
        with pytest.raises(CredentialFetchError, match="Unable to reach"):
            await source.fetch_credentials()


class TestInstanceMetadataCredentialSource:
    def test_always_configured(self):
        source = InstanceMetadataCredentialSource()
        assert source.is_configured()
        assert source.always_configured

    @pytest.mark.asyncio
    async def test_fetch_with_session_token(
        self, server: MetadataServer, metadata: MetadataService
    ):
        credentials = await instance_source(server).fetch_credentials()

        assert credentials.access_key == "ASIAEXAMPLE"
        assert credentials.session_token == "session-token"
        assert [(method, path) for method, path, _ in metadata.requests] == [
            ("PUT", "/latest/api/token"),
            ("GET", "/latest/meta-data/iam/security-credentials/"),
            ("GET", "/latest/meta-data/iam/security-credentials/gateway-role"),
        ]
        token_headers = metadata.requests[0][2]
        assert token_headers["x-aws-ec2-metadata-token-ttl-seconds"] == "21600"
        for _, _, headers in metadata.requests[1:]:
            assert headers["x-aws-ec2-metadata-token"] == "imds-session-token"

    @pytest.mark.asyncio
    async def test_falls_back_without_session_token(
        self, server: MetadataServer, metadata: MetadataService
    ):
        metadata.issue_token = False

        credentials = await instance_source(server).fetch_credentials()

        assert credentials.access_key == "ASIAEXAMPLE"
        for _, _, headers in metadata.requests[1:]:
            assert "x-aws-ec2-metadata-token" not in headers

    @pytest.mark.asyncio
    async def test_no_role_attached(
        self, server: MetadataServer, metadata: MetadataService
    ):
        metadata.role_names = ""
        with pytest.raises(CredentialFetchError, match="No IAM role"):
            await instance_source(server).fetch_credentials()

    @pytest.mark.asyncio
    async def test_missing_document(
        self, server: MetadataServer, metadata: MetadataService
    ):
        metadata.document_status = 404
        with pytest.raises(CredentialFetchError, match="HTTP 404"):
            await instance_source(server).fetch_credentials()


def test_metadata_source_requires_a_document_fetch():
    with pytest.raises(TypeError, match="_fetch_document"):
        _MetadataCredentialSource()

    class NoFetch(_MetadataCredentialSource):
        pass

    with pytest.raises(TypeError):
        NoFetch()


class TestParseCredentialDocument:
    def test_without_expiration(self):
        credentials = parse_credential_document(
            {"AccessKeyId": "AKID", "SecretAccessKey": "SECRET"}, source="test"
        )
        assert credentials.session_token is None
        assert credentials.expires_at is None

    @pytest.mark.parametrize(
        "document, message",
        [
            ([], "not an object"),
            ({"SecretAccessKey": "SECRET"}, "missing AccessKeyId"),
            ({"AccessKeyId": "AKID"}, "missing SecretAccessKey"),
            ({"AccessKeyId": "", "SecretAccessKey": "SECRET"}, "empty keys"),
            (
                {"AccessKeyId": "A", "SecretAccessKey": "S", "Expiration": "soon"},
                "invalid Expiration",
            ),
        ],
    )
    def test_invalid_documents(self, document, message):
        with pytest.raises(CredentialFetchError, match=message):
            parse_credential_document(document, source="test")
