from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field


class ProtectedResourceMetadata(BaseModel):
    """
    RFC 9728 OAuth 2.0 Protected Resource Metadata.
    See https://datatracker.ietf.org/doc/html/rfc9728#section-2
    """

    resource: str
    resource_name: str | None = None
    resource_documentation: str | None = None
    authorization_servers: list[AnyHttpUrl] | None = None
    bearer_methods_supported: list[str] | None = None
    scopes_supported: list[str] | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def display_name(self) -> str:
        return self.resource_name or self.resource


class OAuthMetadata(BaseModel):
    """
    RFC 8414 OAuth 2.0 Authorization Server Metadata.
    See https://datatracker.ietf.org/doc/html/rfc8414#section-2

    Remote servers in the wild publish plenty of values this client never
    acts on, so everything except the issuer is optional and unknown fields
    are kept.
    """

    issuer: str
    authorization_endpoint: AnyHttpUrl | None = None
    token_endpoint: AnyHttpUrl | None = None
    # presence of this endpoint is what signals Dynamic Client Registration
    # (RFC 7591) support
    registration_endpoint: AnyHttpUrl | None = None
    revocation_endpoint: AnyHttpUrl | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] = Field(default_factory=list)
    grant_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def supports_dcr(self) -> bool:
        return self.registration_endpoint is not None

