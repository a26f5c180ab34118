"""Identity provider token verification configuration."""

from pydantic import BaseModel, SecretStr


class AuthConfig(BaseModel, frozen=True):
    """Bearer token verification settings.

    ``jwt_key`` is either the shared secret (HS*) or the PEM public key (RS*/ES*)
    of the identity provider. When ``jwks_url`` is set the signing key is looked
    up from the provider's JWKS endpoint instead.
    """

    jwt_key: SecretStr
    algorithm: str
    issuer: str | None = None
    audience: str | None = None
    jwks_url: str | None = None
