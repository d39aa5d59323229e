"""X (Twitter) publisher adapter.

Uploads media through the v1.1 endpoint and creates posts through v2, the
same split tweepy exposes as ``tweepy.API`` and ``tweepy.Client``.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Sequence

import tweepy

from core.errors import PostError, UploadError

LOGGER = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

_FORBIDDEN_HINT = (
    "403 Forbidden usually means the app permissions are not set to "
    '"Read and Write" or the access token was generated before that change. '
    "Update the permissions at https://developer.x.com/en/portal/dashboard, "
    "regenerate the access token and secret, and update .env."
)


class TwitterPublisher:
    """Publisher adapter that satisfies the PublisherPort contract."""

    def __init__(self, client: tweepy.Client, api: tweepy.API) -> None:
        self._client = client
        self._api = api

    async def verify_identity(self) -> bool:
        """Check the credentials by fetching the authenticated user."""

        try:
            response = await asyncio.to_thread(self._client.get_me)
        except tweepy.TweepyException as exc:
            LOGGER.error("Failed to verify X credentials: %s", exc)
            return False
        user = getattr(response, "data", None)
        if user is None:
            LOGGER.error("Failed to verify X credentials: empty response")
            return False
        LOGGER.info("Authenticated as @%s", user.username)
        return True

    async def upload_media(self, data: bytes, mime_hint: str) -> str:
        """Upload one image and return its media id."""

        filename = "media" + _EXTENSIONS.get(mime_hint, ".jpg")
        try:
            media = await asyncio.to_thread(
                self._api.media_upload,
                filename,
                file=io.BytesIO(data),
            )
        except tweepy.TweepyException as exc:
            raise UploadError(filename, f"Media upload failed: {exc}") from exc
        media_id = str(media.media_id_string)
        LOGGER.info("Media uploaded: %s (%s, %s bytes)", media_id, mime_hint, len(data))
        return media_id

    async def post(self, text: str, media_refs: Sequence[str]) -> str:
        """Create a post and return its id.

        Any failure raises PostError; the caller must not retry it because the
        post may have been created before the error surfaced.
        """

        kwargs = {"text": text}
        if media_refs:
            kwargs["media_ids"] = list(media_refs)
        try:
            response = await asyncio.to_thread(self._client.create_tweet, **kwargs)
        except tweepy.Forbidden as exc:
            LOGGER.error(_FORBIDDEN_HINT)
            raise PostError(f"Tweet posting failed: {exc}") from exc
        except tweepy.TooManyRequests as exc:
            LOGGER.error("Rate limit exceeded; wait before posting again")
            raise PostError(f"Tweet posting failed: {exc}") from exc
        except tweepy.TweepyException as exc:
            raise PostError(f"Tweet posting failed: {exc}") from exc

        post_id = str(response.data["id"])
        LOGGER.info("View at: https://x.com/i/web/status/%s", post_id)
        return post_id
