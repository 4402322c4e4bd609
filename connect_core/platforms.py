"""
Supported third-party platforms and their OAuth endpoints.

The set of platforms is closed: every state token, token record and flow is
bound to exactly one ``Platform`` member. Credentials come from Settings so the
registry itself holds only public endpoint data.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Tuple
from urllib.parse import quote, urlencode

from connect_core.errors import UnknownPlatformError


class Platform(str, Enum):
    """External systems that can be connected to the dashboard."""

    QUICKBOOKS = "QUICKBOOKS"
    HUBSPOT = "HUBSPOT"
    STRIPE = "STRIPE"

    @classmethod
    def parse(cls, value: Any) -> "Platform":
        """
        Resolve a platform identifier, case-insensitively.

        Raises:
            UnknownPlatformError: If the value is empty or not supported
        """
        if isinstance(value, cls):
            return value
        if not value or not isinstance(value, str):
            raise UnknownPlatformError(value)
        try:
            return cls(value.strip().upper())
        except ValueError as e:
            raise UnknownPlatformError(value) from e


class RevokeStyle(str, Enum):
    """How a platform expects refresh tokens to be revoked."""

    FORM_POST = "form_post"  # POST token=<refresh_token>
    DELETE_PATH = "delete_path"  # DELETE <revoke_url>/<refresh_token>
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class PlatformConfig:
    """OAuth endpoint configuration for a single platform."""

    platform: Platform
    display_name: str
    authorize_url: str
    token_url: str
    scopes: Tuple[str, ...] = ()
    requires_scopes: bool = True
    supports_pkce: bool = True
    revoke_url: Optional[str] = None
    revoke_style: RevokeStyle = RevokeStyle.FORM_POST
    scope_separator: str = " "
    # "basic": HTTP Basic client authentication, "body": credentials in the form body
    client_auth: str = "basic"
    # Callback query parameters copied into the token record metadata
    callback_extras: Tuple[str, ...] = ()
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    redirect_uri: Optional[str] = None
    # Data API base used to look up account details after a connection
    api_base_url: Optional[str] = None


QUICKBOOKS_SANDBOX_AUTHORIZE_URL = (
    "https://sandbox-quickbooks.api.intuit.com/connect/oauth2/authorize"
)
QUICKBOOKS_PRODUCTION_AUTHORIZE_URL = "https://appcenter.intuit.com/connect/oauth2"
QUICKBOOKS_SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
QUICKBOOKS_PRODUCTION_API_BASE = "https://quickbooks.api.intuit.com"

PLATFORM_REGISTRY = {
    Platform.QUICKBOOKS: PlatformConfig(
        platform=Platform.QUICKBOOKS,
        display_name="QuickBooks Online",
        authorize_url=QUICKBOOKS_SANDBOX_AUTHORIZE_URL,
        token_url="https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        revoke_url="https://developer.api.intuit.com/v2/oauth2/tokens/revoke",
        scopes=(
            "com.intuit.quickbooks.accounting",
            "com.intuit.quickbooks.payment",
            "openid",
            "profile",
            "email",
        ),
        callback_extras=("realmId",),
        api_base_url=QUICKBOOKS_SANDBOX_API_BASE,
    ),
    Platform.HUBSPOT: PlatformConfig(
        platform=Platform.HUBSPOT,
        display_name="HubSpot",
        authorize_url="https://app.hubspot.com/oauth/authorize",
        token_url="https://api.hubapi.com/oauth/v1/token",
        revoke_url="https://api.hubapi.com/oauth/v1/refresh-tokens",
        revoke_style=RevokeStyle.DELETE_PATH,
        scopes=(
            "crm.objects.contacts.read",
            "crm.objects.companies.read",
        ),
        client_auth="body",
    ),
    Platform.STRIPE: PlatformConfig(
        platform=Platform.STRIPE,
        display_name="Stripe",
        authorize_url="https://connect.stripe.com/oauth/authorize",
        token_url="https://connect.stripe.com/oauth/token",
        revoke_style=RevokeStyle.UNSUPPORTED,
        scopes=("read_write",),
        requires_scopes=False,
        supports_pkce=False,
        scope_separator=",",
        client_auth="body",
    ),
}


def get_platform_config(
    platform: Any, settings: Optional[Any] = None
) -> PlatformConfig:
    """
    Look up the endpoint configuration for a platform.

    Args:
        platform: Platform member or identifier string
        settings: Optional Settings; when given, client credentials, redirect
            URI and the QuickBooks environment are merged into the config

    Returns:
        PlatformConfig for the platform
    """
    config = PLATFORM_REGISTRY[Platform.parse(platform)]
    if settings is None:
        return config

    prefix = config.platform.value.lower()
    overrides = {
        "client_id": getattr(settings, f"{prefix}_client_id", None),
        "client_secret": getattr(settings, f"{prefix}_client_secret", None),
        "redirect_uri": getattr(settings, f"{prefix}_redirect_uri", None),
    }
    if overrides["redirect_uri"] is not None:
        overrides["redirect_uri"] = str(overrides["redirect_uri"])

    if (
        config.platform is Platform.QUICKBOOKS
        and getattr(settings, "quickbooks_environment", "sandbox") == "production"
    ):
        overrides["authorize_url"] = QUICKBOOKS_PRODUCTION_AUTHORIZE_URL
        overrides["api_base_url"] = QUICKBOOKS_PRODUCTION_API_BASE

    return replace(config, **overrides)


def build_authorization_url(
    config: PlatformConfig,
    state: str,
    redirect_uri: Optional[str] = None,
    code_challenge: Optional[str] = None,
    code_challenge_method: Optional[str] = None,
) -> str:
    """
    Build the provider authorization URL for one attempt.

    Args:
        config: Platform configuration (with client_id resolved)
        state: CSRF state token issued by the state service
        redirect_uri: Callback override; falls back to the configured URI
        code_challenge: PKCE challenge, omitted for non-PKCE flows
        code_challenge_method: Challenge method, ``S256`` by default

    Returns:
        Complete authorization URL for the popup window
    """
    params = {
        "client_id": config.client_id or "",
        "response_type": "code",
        "scope": config.scope_separator.join(config.scopes),
        "redirect_uri": redirect_uri or config.redirect_uri or "",
        "state": state,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = code_challenge_method or "S256"

    return f"{config.authorize_url}?{urlencode(params, quote_via=quote)}"
