"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0
"""


class BaseSignerException(Exception):
    """Top-level exception to capture signing and credential errors."""

    status_code: int = 500


class InputError(BaseSignerException, ValueError):
    """The caller supplied a request that cannot be signed as given."""

    status_code = 400


class SigningError(BaseSignerException):
    """Signing was attempted without everything a valid signature needs."""

    ...


class MissingSigningParameterError(InputError, SigningError):
    """Region and service are required to build a credential scope."""

    status_code = 400


class CredentialFetchError(BaseSignerException):
    """Credentials could not be retrieved from the selected source."""

    ...
