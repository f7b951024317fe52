# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
Command-line OpenID Connect relying-party client: Authorization Code login with a local callback listener.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import ClientConfig
from .exceptions import IdenError
from .flow import OIDCFlow, OIDCFlowAsync, login, refresh_flow
from .models import IdTokenClaims, LoginResult, ProviderMetadata, TokenResult

__all__ = [
    "ClientConfig",
    "IdTokenClaims",
    "IdenError",
    "LoginResult",
    "OIDCFlow",
    "OIDCFlowAsync",
    "ProviderMetadata",
    "TokenResult",
    "login",
    "refresh_flow",
]
