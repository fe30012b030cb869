"""Browser-style OAuth2/OIDC client using the Authorization Code flow with PKCE."""

__version__ = "0.1.0"

from iam_pkce.config import Config, ConfigError, load_config
from iam_pkce.exceptions import IamAuthError
from iam_pkce.oauth.flows import OAuth2AuthorizationCodeFlow
from iam_pkce.oauth.session import AuthSession

__all__ = [
    "AuthSession",
    "Config",
    "ConfigError",
    "IamAuthError",
    "OAuth2AuthorizationCodeFlow",
    "__version__",
    "load_config",
]
