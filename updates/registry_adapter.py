"""
Registry Adapter for Image Drift Detection

Resolves an image tag to the digest currently published in the registry by
querying the Registry v2 API. Built for GHCR (GitHub Container Registry), and
works with any registry that exposes a `/token` endpoint with the same shape.

Flow per resolution:
1. Exchange a personal access token for a short-lived, repository-scoped
   bearer token (or use the configured token directly)
2. HEAD the manifest for the tag and read Docker-Content-Digest
3. Optionally HEAD the manifest again by digest to confirm it is addressable
"""

import asyncio
import base64
import logging

import aiohttp
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from updates.errors import (
    AuthenticationError,
    DigestHeaderMissingError,
    DigestMismatchError,
    ManifestNotFoundError,
    RegistryError,
)
from updates.image_ref import ImageReference, is_valid_digest
from updates.types import RegistryCredential

logger = logging.getLogger(__name__)

DIGEST_HEADER = "Docker-Content-Digest"

MANIFEST_ACCEPT = (
    "application/vnd.oci.image.manifest.v1+json,"
    "application/vnd.oci.image.index.v1+json,"
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.docker.distribution.manifest.list.v2+json"
)


class TokenResponse(BaseModel):
    """Body returned by the registry token endpoint."""
    model_config = ConfigDict(extra="ignore")

    token: str = Field(min_length=1, validation_alias=AliasChoices("token", "access_token"))


class RegistryAdapter:
    """
    Adapter for querying a registry to resolve image tags to digests.

    The aiohttp session is process-wide; the caller creates and closes it.
    Bearer tokens are never cached; each one lives for a single resolution.
    """

    def __init__(
        self,
        credential: RegistryCredential,
        session: aiohttp.ClientSession,
        timeout: float = 30,
        confirm_digest: bool = True
    ):
        """
        Initialize registry adapter.

        Args:
            credential: Registry credential from configuration
            session: Shared aiohttp session
            timeout: Total timeout per HTTP request in seconds
            confirm_digest: Re-check the resolved digest is addressable
        """
        self.credential = credential
        self.session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.confirm_digest = confirm_digest

    def _encode_basic_auth(self) -> str:
        """
        Encode username:token as a Basic authentication header.

        Returns:
            Basic auth header string (e.g., "Basic dXNlcjpwYXNz")
        """
        credentials = f"{self.credential.username}:{self.credential.token}"
        encoded = base64.b64encode(credentials.encode()).decode()
        return f"Basic {encoded}"

    def _normalize_registry_url(self, registry: str) -> str:
        """
        Normalize registry host to a full HTTPS URL.

        Args:
            registry: Registry host (e.g., "ghcr.io", "registry.local:5000")

        Returns:
            Normalized URL (e.g., "https://ghcr.io")
        """
        if not registry.startswith("http"):
            registry = f"https://{registry}"
        return registry.rstrip("/")

    def _get_manifest_url(self, ref: ImageReference, reference: str) -> str:
        """
        Construct manifest URL (Registry v2 API format).

        Args:
            ref: Image reference (supplies host and repository path)
            reference: Tag or digest to address
        """
        registry = self._normalize_registry_url(ref.registry_host)
        return f"{registry}/v2/{ref.repository_path}/manifests/{reference}"

    def _get_token_url(self, registry: str) -> str:
        return f"{self._normalize_registry_url(registry)}/token"

    @staticmethod
    def build_scope(ref: ImageReference) -> str:
        """
        Authorization scope for pulling a repository.

        Example:
            ghcr.io/acme/app → "repository:acme/app:pull"
        """
        return f"repository:{ref.repository_path}:pull"

    async def resolve_latest_digest(self, ref: ImageReference) -> str:
        """
        Resolve the digest currently published for the reference's tag.

        Args:
            ref: Image reference; its digest (if any) is ignored

        Returns:
            Digest string ("sha256:...")

        Raises:
            AuthenticationError: token exchange failed
            ManifestNotFoundError: manifest request returned non-success
            DigestHeaderMissingError: no usable Docker-Content-Digest header
            DigestMismatchError: the digest resolved to a different manifest
            RegistryError: transport error or timeout
        """
        image = ref.tag_reference
        logger.debug(f"Fetching digest for {image}")

        try:
            token = await self._get_bearer_token(ref)
            digest = await self._head_manifest(ref, ref.tag, token)

            if self.confirm_digest:
                # A digest the registry cannot serve directly is useless as a pin
                confirmed = await self._head_manifest(ref, digest, token)
                if confirmed != digest:
                    raise DigestMismatchError(
                        f"{ref.repository}@{digest[:19]}... is served as {confirmed[:19]}..."
                    )
                logger.debug(f"Confirmed {image} is addressable at {digest[:19]}...")

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistryError(f"Registry request failed for {image}: {e!r}") from e

        logger.debug(f"Resolved {image} → {digest[:19]}...")
        return digest

    async def _get_bearer_token(self, ref: ImageReference) -> str:
        """
        Get a bearer token for pulling the reference's repository.

        Personal access tokens are exchanged via HTTP Basic auth against the
        registry token endpoint. Anything else is assumed to be a usable
        bearer token already.
        """
        if not self.credential.is_personal_access_token:
            return self.credential.token

        scope = self.build_scope(ref)
        registry = ref.registry_host
        token_url = self._get_token_url(registry)
        params = {"scope": scope, "service": registry}
        headers = {"Authorization": self._encode_basic_auth()}

        logger.debug(f"Requesting bearer token from {token_url} for scope {scope}")

        async with self.session.get(
            token_url,
            params=params,
            headers=headers,
            timeout=self._timeout
        ) as response:
            if not 200 <= response.status < 300:
                response_text = await response.text()
                logger.error(f"Token request to {token_url} failed with status {response.status}: {response_text[:200]}")
                raise AuthenticationError(
                    f"Token exchange for {scope} failed with status {response.status}",
                    status=response.status
                )

            try:
                data = await response.json(content_type=None)
                parsed = TokenResponse.model_validate(data)
            except (ValueError, ValidationError) as e:
                raise AuthenticationError(f"Token endpoint returned an unusable body for {scope}: {e}") from e

        logger.debug(f"Obtained bearer token for {scope}")
        return parsed.token

    async def _head_manifest(self, ref: ImageReference, reference: str, token: str) -> str:
        """
        HEAD a manifest and return the Docker-Content-Digest header.

        HEAD avoids downloading the manifest body; the header is the only
        thing we need and is authoritative.
        """
        manifest_url = self._get_manifest_url(ref, reference)
        headers = {
            "Accept": MANIFEST_ACCEPT,
            "Authorization": f"Bearer {token}",
        }

        async with self.session.head(
            manifest_url,
            headers=headers,
            timeout=self._timeout,
            allow_redirects=True
        ) as response:
            if not 200 <= response.status < 300:
                if response.status == 401:
                    logger.error(f"Authentication failed for {manifest_url}")
                elif response.status == 404:
                    logger.error(f"Manifest not found: {manifest_url}")
                elif response.status == 429:
                    logger.warning(f"Rate limited by registry: {manifest_url}")
                else:
                    logger.error(f"Registry returned {response.status} for {manifest_url}")
                raise ManifestNotFoundError(
                    f"Manifest request for {ref.repository}:{reference} returned {response.status}",
                    status=response.status
                )

            digest = response.headers.get(DIGEST_HEADER)

        if not digest:
            raise DigestHeaderMissingError(f"{DIGEST_HEADER} header missing for {ref.repository}:{reference}")
        if not is_valid_digest(digest):
            raise DigestHeaderMissingError(f"{DIGEST_HEADER} header malformed for {ref.repository}:{reference}: {digest!r}")

        return digest
