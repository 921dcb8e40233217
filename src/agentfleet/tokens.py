"""Agent access tokens.

The backend that issues tokens is a collaborator: the installer only needs
to list the tokens it may use. ``AgentTokenClient`` is a thin REST client
for that one call.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import requests

from agentfleet.errors import TokenError
from agentfleet.prompt import PromptCancelled, Prompter


logger = logging.getLogger(__name__)

TOKENS_PATH = "/api/v2/AgentAccessTokens"


@dataclass(frozen=True)
class AgentToken:
    alias: str
    value: str
    enabled: bool = True


class TokenSource(Protocol):
    def list_tokens(self) -> list[AgentToken]: ...


class AgentTokenClient:
    """Lists agent access tokens from the backend API.

    Args:
        api_url: Base URL, e.g. ``https://example.lacework.net``.
        api_key: Bearer token for the API.
        timeout: Request timeout in seconds.
        session: requests session, replaceable in tests.
    """

    def __init__(self, api_url: str, api_key: str, timeout: float = 30.0, session: requests.Session | None = None):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def list_tokens(self) -> list[AgentToken]:
        """Fetch every token visible to the API key.

        Raises:
            TokenError: If the request fails or the payload is malformed.
        """
        try:
            response = self.session.get(
                f"{self.api_url}{TOKENS_PATH}",
                headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TokenError(f"unable to list agent access tokens: {exc}") from exc

        tokens = []
        for item in payload.get("data", []):
            try:
                tokens.append(
                    AgentToken(
                        alias=item.get("tokenAlias") or "",
                        value=item["accessToken"],
                        enabled=str(item.get("tokenEnabled", 1)) not in ("0", "False", "false"),
                    )
                )
            except KeyError as exc:
                raise TokenError(f"agent access token without {exc}") from exc
        return tokens


def select_agent_token(
    token: str | None,
    source: TokenSource | None,
    prompter: Prompter | None,
    interactive: bool,
) -> str:
    """Return the agent token to install with.

    An explicit token always wins. Otherwise, in interactive mode, the user
    picks one of the backend's tokens by alias; tokens without an alias are
    not offered.

    Raises:
        TokenError: If no token can be obtained.
    """
    if token:
        return token
    if not interactive or prompter is None:
        raise TokenError("agent token required: pass --token")
    if source is None:
        raise TokenError("agent token required: pass --token or configure api_url and api_key")

    candidates = [t for t in source.list_tokens() if t.alias.strip() and t.enabled]
    if not candidates:
        raise TokenError("no agent access tokens with an alias found")

    by_alias = {t.alias: t.value for t in candidates}
    try:
        alias = prompter.select("Choose an agent token:", list(by_alias))
    except PromptCancelled as exc:
        raise TokenError("no agent token selected") from exc
    if alias not in by_alias:
        raise TokenError(f"unknown agent token {alias!r}")
    logger.debug("using agent token %s", alias)
    return by_alias[alias]
