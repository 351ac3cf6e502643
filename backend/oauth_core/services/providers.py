"""
Provider registry for OAuth integrations.

Static description of every supported provider: endpoints, scopes, PKCE
support, group membership, revocation behaviour and token endpoint quirks.
Client credentials are read from settings when the registry is built; a
provider without credentials is simply not registered.

Groups (e.g. "atlassian", "microsoft") share one OAuth app and one consent
screen across several providers. Their authorization request uses the shared
endpoints and credentials with the union of the member scopes.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Literal
from urllib.parse import urlsplit

from oauth_core.core.config import Settings
from oauth_core.core.exceptions import ConfigurationError, UnknownProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevocationConfig:
    """
    How to revoke a token at the provider.

    Attributes:
        url: Revocation endpoint, may contain a ``{client_id}`` placeholder
        method: HTTP method
        client_auth: "basic" sends client credentials as HTTP basic auth,
            "bearer" sends the access token itself, "none" sends neither
        token_location: Where the token goes: form body, JSON body, or nowhere
        token_param: Name of the token parameter in the body
        ok_flag: Provider answers 200 with ``{"ok": false}`` on failure
    """

    url: str
    method: str = "POST"
    client_auth: Literal["none", "basic", "bearer"] = "none"
    token_location: Literal["form", "json", "none"] = "form"
    token_param: str = "token"
    ok_flag: bool = False


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for an OAuth provider (or a provider group)."""

    name: str
    display_name: str
    authorization_url: str
    token_url: str
    scopes: tuple[str, ...]
    client_id: str | None = None
    client_secret: str | None = None
    use_pkce: bool = False
    group: str | None = None
    revocation: RevocationConfig | None = None
    extra_params: dict[str, str] = field(default_factory=dict)
    # Parameter carrying the scopes in the authorization URL
    scope_param: str = "scope"
    # "body" sends client credentials as form fields, "basic" as HTTP basic auth
    token_auth: Literal["body", "basic"] = "body"
    # Settings prefix for <PREFIX>_CLIENT_ID / <PREFIX>_CLIENT_SECRET
    credentials: str = ""

    @property
    def token_host(self) -> str:
        """Host of the token endpoint, used to throttle refreshes per provider host."""
        return urlsplit(self.token_url).netloc

    @property
    def scope_string(self) -> str:
        return " ".join(self.scopes)


@dataclass(frozen=True)
class ProviderGroup:
    """Several providers authorized together with one consent."""

    name: str
    display_name: str
    members: tuple[str, ...]


_ATLASSIAN_AUTHORIZE = "https://auth.atlassian.com/authorize"
_ATLASSIAN_TOKEN = "https://auth.atlassian.com/oauth/token"
_MICROSOFT_AUTHORIZE = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
_MICROSOFT_TOKEN = "https://login.microsoftonline.com/common/oauth2/v2.0/token"


BUILTIN_PROVIDERS: tuple[ProviderConfig, ...] = (
    ProviderConfig(
        name="github",
        display_name="GitHub",
        authorization_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        scopes=("repo", "read:user"),
        revocation=RevocationConfig(
            url="https://api.github.com/applications/{client_id}/token",
            method="DELETE",
            client_auth="basic",
            token_location="json",
            token_param="access_token",
        ),
        credentials="GITHUB",
    ),
    ProviderConfig(
        name="jira",
        display_name="Jira",
        authorization_url=_ATLASSIAN_AUTHORIZE,
        token_url=_ATLASSIAN_TOKEN,
        scopes=("read:jira-work", "read:jira-user", "offline_access"),
        group="atlassian",
        extra_params={"audience": "api.atlassian.com", "prompt": "consent"},
        credentials="ATLASSIAN",
    ),
    ProviderConfig(
        name="confluence",
        display_name="Confluence",
        authorization_url=_ATLASSIAN_AUTHORIZE,
        token_url=_ATLASSIAN_TOKEN,
        scopes=("read:confluence-content.all", "read:confluence-user", "offline_access"),
        group="atlassian",
        extra_params={"audience": "api.atlassian.com", "prompt": "consent"},
        credentials="ATLASSIAN",
    ),
    ProviderConfig(
        name="outlook",
        display_name="Outlook",
        authorization_url=_MICROSOFT_AUTHORIZE,
        token_url=_MICROSOFT_TOKEN,
        scopes=("User.Read", "Mail.Read", "Calendars.Read", "offline_access"),
        use_pkce=True,
        group="microsoft",
        extra_params={"response_mode": "query", "prompt": "consent"},
        credentials="MICROSOFT",
    ),
    ProviderConfig(
        name="teams",
        display_name="Microsoft Teams",
        authorization_url=_MICROSOFT_AUTHORIZE,
        token_url=_MICROSOFT_TOKEN,
        scopes=(
            "User.Read",
            "Team.ReadBasic.All",
            "Channel.ReadBasic.All",
            "Chat.Read",
            "ChannelMessage.Read.All",
            "offline_access",
        ),
        use_pkce=True,
        group="microsoft",
        extra_params={"response_mode": "query", "prompt": "consent"},
        credentials="MICROSOFT",
    ),
    ProviderConfig(
        name="google",
        display_name="Google",
        authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes=(
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/drive.readonly",
        ),
        use_pkce=True,
        revocation=RevocationConfig(url="https://oauth2.googleapis.com/revoke"),
        extra_params={"access_type": "offline", "prompt": "consent"},
        credentials="GOOGLE",
    ),
    ProviderConfig(
        name="slack",
        display_name="Slack",
        authorization_url="https://slack.com/oauth/v2/authorize",
        token_url="https://slack.com/api/oauth.v2.access",
        scopes=("channels:read", "users:read", "chat:write"),
        revocation=RevocationConfig(
            url="https://slack.com/api/auth.revoke",
            client_auth="bearer",
            token_location="none",
            ok_flag=True,
        ),
        scope_param="user_scope",
        credentials="SLACK",
    ),
    ProviderConfig(
        name="figma",
        display_name="Figma",
        authorization_url="https://www.figma.com/oauth",
        token_url="https://www.figma.com/api/oauth/token",
        scopes=("file_read",),
        credentials="FIGMA",
    ),
    ProviderConfig(
        name="zoom",
        display_name="Zoom",
        authorization_url="https://zoom.us/oauth/authorize",
        token_url="https://zoom.us/oauth/token",
        scopes=("meeting:read", "user:read"),
        use_pkce=True,
        revocation=RevocationConfig(
            url="https://zoom.us/oauth/revoke",
            client_auth="basic",
        ),
        token_auth="basic",
        credentials="ZOOM",
    ),
)

BUILTIN_GROUPS: tuple[ProviderGroup, ...] = (
    ProviderGroup(name="atlassian", display_name="Atlassian", members=("jira", "confluence")),
    ProviderGroup(name="microsoft", display_name="Microsoft 365", members=("outlook", "teams")),
)


class ProviderRegistry:
    """
    Lookup table of configured providers and groups.

    Only providers whose credentials are configured are registered; a group
    is available as soon as one of its members is.
    """

    def __init__(
        self,
        providers: list[ProviderConfig],
        groups: tuple[ProviderGroup, ...] = BUILTIN_GROUPS,
    ):
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.name in self._providers:
                raise ConfigurationError(f"Duplicate provider configuration: {provider.name}")
            self._providers[provider.name] = provider

        self._groups: dict[str, ProviderGroup] = {}
        for group in groups:
            members = tuple(m for m in group.members if m in self._providers)
            if members:
                self._groups[group.name] = replace(group, members=members)

    def get(self, name: str) -> ProviderConfig:
        """
        Get the configuration of a single provider.

        Raises:
            UnknownProviderError: If the provider is unknown or not configured
        """
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(name)
        return provider

    def get_group(self, name: str) -> ProviderGroup:
        """
        Get a provider group.

        Raises:
            UnknownProviderError: If the group is unknown or has no configured member
        """
        group = self._groups.get(name)
        if group is None:
            raise UnknownProviderError(name)
        return group

    def group_config(self, name: str) -> ProviderConfig:
        """
        Synthesize the authorization config of a group.

        Members of a group share endpoints and credentials, so the first
        member provides them; scopes are the ordered union of all members'.
        """
        group = self.get_group(name)
        members = [self._providers[m] for m in group.members]

        scopes: list[str] = []
        extra_params: dict[str, str] = {}
        for member in members:
            for scope in member.scopes:
                if scope not in scopes:
                    scopes.append(scope)
            extra_params.update(member.extra_params)

        return replace(
            members[0],
            name=group.name,
            display_name=group.display_name,
            scopes=tuple(scopes),
            use_pkce=any(m.use_pkce for m in members),
            group=None,
            revocation=None,
            extra_params=extra_params,
        )

    def members(self, group: str) -> list[ProviderConfig]:
        return [self._providers[m] for m in self.get_group(group).members]

    def providers(self) -> list[ProviderConfig]:
        return list(self._providers.values())

    def groups(self) -> list[ProviderGroup]:
        return list(self._groups.values())

    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers


def build_provider_registry(
    settings: Settings,
    definitions: tuple[ProviderConfig, ...] = BUILTIN_PROVIDERS,
) -> ProviderRegistry:
    """
    Build the registry from settings.

    Args:
        settings: Application settings holding <PREFIX>_CLIENT_ID/_SECRET
        definitions: Provider definitions to consider

    Returns:
        ProviderRegistry containing every provider with credentials

    Raises:
        ConfigurationError: If a provider has only one of client id / secret
    """
    configured: list[ProviderConfig] = []
    for definition in definitions:
        client_id = getattr(settings, f"{definition.credentials}_CLIENT_ID", None)
        client_secret = getattr(settings, f"{definition.credentials}_CLIENT_SECRET", None)

        if not client_id and not client_secret:
            logger.debug("Provider %s not configured, skipping", definition.name)
            continue
        if not client_id or not client_secret:
            raise ConfigurationError(
                f"{definition.credentials}_CLIENT_ID and {definition.credentials}_CLIENT_SECRET "
                f"must both be set to enable {definition.name}",
                provider=definition.name,
            )

        configured.append(
            replace(definition, client_id=client_id, client_secret=client_secret)
        )

    registry = ProviderRegistry(configured)
    logger.info("Configured OAuth providers: %s", ", ".join(registry.names()) or "none")
    return registry
