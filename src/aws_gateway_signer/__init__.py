"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0

AWS Gateway Signer signs requests an API gateway forwards to AWS service
endpoints with Signature Version 4, resolving credentials from static keys or
the container and instance metadata services.
"""

from __future__ import annotations

from ._http import Field, Fields, SignedRequest, SigningRequest, normalize_target
from ._identity import Credentials
from .cache import SingleFlightCache
from .credentials import (
    ContainerCredentialSource,
    CredentialResolver,
    CredentialSource,
    InstanceMetadataCredentialSource,
    StaticCredentialSource,
    create_default_chain,
)
from .exceptions import (
    CredentialFetchError,
    InputError,
    MissingSigningParameterError,
    SigningError,
)
from .gateway import GatewayConfig, GatewaySigner
from .signers import SignerConfig, SigV4Signer, SigV4SigningProperties

__license__ = "Apache-2.0"
__version__ = "0.1.0"

__all__ = (
    "ContainerCredentialSource",
    "CredentialFetchError",
    "CredentialResolver",
    "CredentialSource",
    "Credentials",
    "Field",
    "Fields",
    "GatewayConfig",
    "GatewaySigner",
    "InputError",
    "InstanceMetadataCredentialSource",
    "MissingSigningParameterError",
    "SignedRequest",
    "SignerConfig",
    "SigV4Signer",
    "SigV4SigningProperties",
    "SigningError",
    "SigningRequest",
    "SingleFlightCache",
    "StaticCredentialSource",
    "create_default_chain",
    "normalize_target",
)
