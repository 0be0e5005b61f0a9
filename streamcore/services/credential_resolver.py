"""Credential Resolver: stored social account → platform ingest target.

The OAuth handshake and token refresh live in the management API. This
service only consumes the stored (Fernet-encrypted) access token and asks the
platform for a fresh ingest endpoint:

    facebook: POST /{page_id|me}/live_videos (status LIVE_NOW)
    youtube:  insert liveBroadcast, insert liveStream, bind them
    twitch:   GET helix/streams/key for the broadcaster
    custom:   token is a JSON object {"rtmpUrl": ..., "streamKey": ...}

Every failure (inactive account, undecryptable token, HTTP error, reply that
is not a JSON object, response without a stream key) surfaces as
CredentialResolutionError so the restream engine can fail exactly one
destination.

Usage:
    resolver = PlatformCredentialResolver()
    target = await resolver.resolve(account)
    argv = build_restream_args(source_url, target.url)
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from streamcore.config import get_credential_timeout_seconds, get_twitch_client_id
from streamcore.exceptions import CredentialResolutionError
from streamcore.models import Platform, SocialAccount
from streamcore.utils.encryption import DecryptionError, EncryptionKeyMissing, get_encryption_service
from streamcore.utils.ffmpeg import join_ingest_url
from streamcore.utils.logging import get_logger

log = get_logger(__name__)

FACEBOOK_GRAPH_URL = "https://graph.facebook.com/v18.0"
FACEBOOK_DEFAULT_RTMP = "rtmps://live-api-s.facebook.com:443/rtmp"
YOUTUBE_API_URL = "https://www.googleapis.com/youtube/v3"
YOUTUBE_DEFAULT_RTMP = "rtmp://a.rtmp.youtube.com/live2"
TWITCH_API_URL = "https://api.twitch.tv/helix"
TWITCH_RTMP = "rtmp://live.twitch.tv/app"


@dataclass(frozen=True)
class IngestTarget:
    """Where a destination's ffmpeg process should push.

    Attributes:
        rtmp_url: Ingest application URL (persisted as Destination.rtmp_url).
        stream_key: Platform stream key. NEVER log it.
        platform_stream_id: Platform-side broadcast/stream id, if any.
    """

    rtmp_url: str
    stream_key: str
    platform_stream_id: str | None = None

    @property
    def url(self) -> str:
        return join_ingest_url(self.rtmp_url, self.stream_key)


class CredentialResolver(Protocol):
    """Anything that can turn a stored account into an ingest target."""

    async def resolve(self, account: SocialAccount) -> IngestTarget: ...


def _split_stream_url(url: str) -> tuple[str, str]:
    head, _, key = url.rstrip("/").rpartition("/")
    return head, key


class PlatformCredentialResolver:
    """Resolves ingest targets through each platform's HTTP API.

    Args:
        client: Shared httpx.AsyncClient (created if omitted).
        timeout: Per-request timeout; defaults to CREDENTIAL_TIMEOUT_SECONDS.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float | None = None):
        self._timeout = timeout if timeout is not None else get_credential_timeout_seconds()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self._timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def resolve(self, account: SocialAccount | None) -> IngestTarget:
        """Resolve the ingest target for one social account.

        Raises:
            CredentialResolutionError: On any failure.
        """
        if account is None:
            raise CredentialResolutionError("Social account not found")
        if not account.is_active:
            raise CredentialResolutionError(
                "Social account is disabled",
                platform=account.platform.value,
                account_id=account.id,
            )

        token = self._decrypt_token(account)
        platform = account.platform
        try:
            if platform is Platform.FACEBOOK:
                target = await self._resolve_facebook(account, token)
            elif platform is Platform.YOUTUBE:
                target = await self._resolve_youtube(token)
            elif platform is Platform.TWITCH:
                target = await self._resolve_twitch(account, token)
            elif platform is Platform.CUSTOM:
                target = self._resolve_custom(token)
            else:
                raise CredentialResolutionError(f"Unsupported platform: {platform}")
        except httpx.HTTPStatusError as e:
            log.warning(
                "platform_api_error",
                platform=platform.value,
                account_id=account.id,
                status_code=e.response.status_code,
            )
            raise CredentialResolutionError(
                f"{platform.value} API returned {e.response.status_code}",
                platform=platform.value,
                account_id=account.id,
            ) from e
        except httpx.HTTPError as e:
            log.warning(
                "platform_api_unreachable",
                platform=platform.value,
                account_id=account.id,
                error_type=type(e).__name__,
            )
            raise CredentialResolutionError(
                f"{platform.value} API request failed: {type(e).__name__}",
                platform=platform.value,
                account_id=account.id,
            ) from e
        except CredentialResolutionError as e:
            e.platform = e.platform or platform.value
            e.account_id = e.account_id or account.id
            raise
        except (ValueError, AttributeError, KeyError, IndexError, TypeError) as e:
            log.warning(
                "platform_api_malformed_response",
                platform=platform.value,
                account_id=account.id,
                error_type=type(e).__name__,
            )
            raise CredentialResolutionError(
                f"{platform.value} API returned an unexpected response",
                platform=platform.value,
                account_id=account.id,
            ) from e

        # custom targets may carry the key inside rtmpUrl
        if not target.stream_key and platform is not Platform.CUSTOM:
            raise CredentialResolutionError(
                f"{platform.value} returned no stream key",
                platform=platform.value,
                account_id=account.id,
            )

        log.info(
            "ingest_target_resolved",
            platform=platform.value,
            account_id=account.id,
            rtmp_url=target.rtmp_url,
        )
        return target

    def _decrypt_token(self, account: SocialAccount) -> str:
        if not account.access_token_encrypted:
            raise CredentialResolutionError(
                "Social account has no stored token",
                platform=account.platform.value,
                account_id=account.id,
            )
        try:
            return get_encryption_service().decrypt(
                account.access_token_encrypted, account_id=account.id
            )
        except (DecryptionError, EncryptionKeyMissing) as e:
            raise CredentialResolutionError(
                "Stored token could not be decrypted",
                platform=account.platform.value,
                account_id=account.id,
            ) from e

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        data = response.json()
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return data

    @staticmethod
    def _auth(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _post_json(self, url: str, token: str, **kwargs: Any) -> dict[str, Any]:
        response = await self.client.post(url, headers=self._auth(token), **kwargs)
        response.raise_for_status()
        return self._json_object(response)

    async def _resolve_facebook(self, account: SocialAccount, token: str) -> IngestTarget:
        page_id = account.page_id or "me"
        data = await self._post_json(
            f"{FACEBOOK_GRAPH_URL}/{page_id}/live_videos",
            token,
            json={"title": "Live Stream", "status": "LIVE_NOW"},
        )
        stream_url = data.get("secure_stream_url") or data.get("stream_url")
        if stream_url:
            rtmp_url, stream_key = _split_stream_url(stream_url)
        else:
            rtmp_url, stream_key = FACEBOOK_DEFAULT_RTMP, ""
        return IngestTarget(
            rtmp_url=rtmp_url,
            stream_key=data.get("stream_key") or stream_key,
            platform_stream_id=data.get("id"),
        )

    async def _resolve_youtube(self, token: str) -> IngestTarget:
        broadcast = await self._post_json(
            f"{YOUTUBE_API_URL}/liveBroadcasts",
            token,
            params={"part": "snippet,status,contentDetails"},
            json={
                "snippet": {
                    "title": "Live Stream",
                    "scheduledStartTime": datetime.now(timezone.utc).isoformat(),
                },
                "status": {"privacyStatus": "public"},
                "contentDetails": {"enableAutoStart": True, "enableAutoStop": True},
            },
        )
        stream = await self._post_json(
            f"{YOUTUBE_API_URL}/liveStreams",
            token,
            params={"part": "snippet,cdn"},
            json={
                "snippet": {"title": "Stream"},
                "cdn": {"frameRate": "30fps", "ingestionType": "rtmp", "resolution": "1080p"},
            },
        )
        await self._post_json(
            f"{YOUTUBE_API_URL}/liveBroadcasts/bind",
            token,
            params={"id": broadcast.get("id"), "part": "id,contentDetails", "streamId": stream.get("id")},
        )

        ingestion = (stream.get("cdn") or {}).get("ingestionInfo") or {}
        return IngestTarget(
            rtmp_url=ingestion.get("ingestionAddress") or YOUTUBE_DEFAULT_RTMP,
            stream_key=ingestion.get("streamName") or "",
            platform_stream_id=broadcast.get("id"),
        )

    async def _resolve_twitch(self, account: SocialAccount, token: str) -> IngestTarget:
        if not account.platform_user_id:
            raise CredentialResolutionError("Twitch account has no broadcaster id")
        headers = self._auth(token)
        client_id = get_twitch_client_id()
        if client_id:
            headers["Client-Id"] = client_id
        response = await self.client.get(
            f"{TWITCH_API_URL}/streams/key",
            params={"broadcaster_id": account.platform_user_id},
            headers=headers,
        )
        response.raise_for_status()
        entries = self._json_object(response).get("data") or [{}]
        return IngestTarget(rtmp_url=TWITCH_RTMP, stream_key=entries[0].get("stream_key") or "")

    @staticmethod
    def _resolve_custom(token: str) -> IngestTarget:
        try:
            data = json.loads(token)
        except json.JSONDecodeError as e:
            raise CredentialResolutionError("Custom destination settings are not valid JSON") from e
        if not isinstance(data, dict) or not data.get("rtmpUrl"):
            raise CredentialResolutionError("Custom destination has no rtmpUrl")
        return IngestTarget(rtmp_url=data["rtmpUrl"].rstrip("/"), stream_key=data.get("streamKey") or "")
