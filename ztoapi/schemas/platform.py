from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PlatformFlow(str, Enum):
    """
    How a chat request is delivered to the platform.
    """

    COMPLETIONS = "completions"  # single signed POST, Z.ai style
    TALK = "talk"  # create talk, then post a message into it


class PlatformDescriptor(BaseModel):
    """
    Static description of one upstream platform. Immutable after load.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique platform id, e.g. 'zai'")
    name: str = Field(..., description="Human readable platform name")
    brand: str = Field(..., description="Brand used in client-facing messages")
    home_url: str = Field(..., description="Public home page of the platform")
    origin_base: str = Field(..., description="Value used for the Origin header")
    api_base: str = Field(..., description="Base URL of the platform API")
    referer_prefix: str = Field("/", description="Path prepended to the chat id in Referer")
    chat_url: str = Field(..., description="Chat completion URL (talk URL for talk flow)")
    auth_url: Optional[str] = Field(
        None, description="Anonymous token endpoint; None disables anonymous tokens"
    )
    owned_by: str = Field(..., description="owned_by label reported by /v1/models")
    token_header: str = Field("Authorization", description="Header carrying the bearer token")
    override_header: str = Field(
        ..., description="Client request header that supplies an explicit upstream token"
    )
    default_model_id: Optional[str] = Field(
        None, description="Upstream model id used when no route matches"
    )
    x_fe_version: Optional[str] = Field(None, description="X-FE-Version header value")
    flow: PlatformFlow = Field(PlatformFlow.COMPLETIONS, description="Request flow")
    sign_body: bool = Field(False, description="Attach X-Signature = sha256(body)")
    browser_fingerprint: bool = Field(
        False, description="Send randomized Chrome client-hint headers"
    )
    send_timeout: float = Field(45.0, description="Upstream send timeout in seconds", gt=0)
    user_agent: Optional[str] = Field(
        None, description="User-Agent when no browser fingerprint is sent"
    )
    talk_repo_id: Optional[str] = Field(None, description="Repository context for talk flow")
    talk_wiki_id: Optional[str] = Field(None, description="Wiki context for talk flow")
    talk_page_id: Optional[str] = Field(None, description="Wiki page context for talk flow")


class ModelRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_model: str = Field(..., description="Display name, original casing")
    platform_id: str
    upstream_model_id: str


class ModelResolution(BaseModel):
    """
    Result of routing a requested model name. Never persisted.
    """

    platform: PlatformDescriptor
    client_model: str
    upstream_model_id: str
    explicit: bool = Field(False, description="True when a configured route matched")

    @property
    def platform_id(self) -> str:
        return self.platform.id


__all__ = ["ModelResolution", "ModelRoute", "PlatformDescriptor", "PlatformFlow"]
