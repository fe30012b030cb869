"""OAuth 2.0 Authorization Code flow with PKCE.

Provides the flow orchestrator with redirect, popup and silent
strategies, PKCE generation, pending-request correlation, token storage
and preemptive refresh.
"""

from iam_pkce.oauth.discovery import DiscoveryCache, DiscoveryDocument
from iam_pkce.oauth.flows import (
    AuthorizationRequest,
    FlowState,
    OAuth2AuthorizationCodeFlow,
)
from iam_pkce.oauth.pending import FlowMode, PendingRequest, PendingRequestStore
from iam_pkce.oauth.pkce import PKCEPair, create_pkce_pair, generate_code_challenge, generate_state
from iam_pkce.oauth.race import Race
from iam_pkce.oauth.scheduler import RefreshScheduler
from iam_pkce.oauth.session import AuthSession, Organization, OrganizationDirectory
from iam_pkce.oauth.tokens import TokenSet, TokenStore

__all__ = [
    "AuthSession",
    "AuthorizationRequest",
    "DiscoveryCache",
    "DiscoveryDocument",
    "FlowMode",
    "FlowState",
    "OAuth2AuthorizationCodeFlow",
    "Organization",
    "OrganizationDirectory",
    "PKCEPair",
    "PendingRequest",
    "PendingRequestStore",
    "Race",
    "RefreshScheduler",
    "TokenSet",
    "TokenStore",
    "create_pkce_pair",
    "generate_code_challenge",
    "generate_state",
]
