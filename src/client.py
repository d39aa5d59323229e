"""X (Twitter) client factory for textweet.

Media upload is only available on the v1.1 API while posting uses v2, so the
factory returns both tweepy clients built from the same OAuth 1.0a user
credentials.
"""

from __future__ import annotations

import logging
import os

import tweepy
from dotenv import load_dotenv

CREDENTIAL_VARS = (
    "TWITTER_API_KEY",
    "TWITTER_API_SECRET",
    "TWITTER_ACCESS_TOKEN",
    "TWITTER_ACCESS_SECRET",
)


def build_twitter_clients() -> tuple[tweepy.Client, tweepy.API]:
    """Create tweepy v2 and v1.1 clients from environment variables.

    Credentials are read via python-dotenv to keep secrets out of the repo.
    """

    load_dotenv()

    values = {name: os.getenv(name) for name in CREDENTIAL_VARS}
    missing = [name for name, value in values.items() if not value]
    # Fail fast on missing credentials to avoid an opaque 401 later.
    if missing:
        raise RuntimeError(f"Missing {', '.join(missing)} in environment")

    logging.getLogger(__name__).info("Initializing X API clients")

    client = tweepy.Client(
        consumer_key=values["TWITTER_API_KEY"],
        consumer_secret=values["TWITTER_API_SECRET"],
        access_token=values["TWITTER_ACCESS_TOKEN"],
        access_token_secret=values["TWITTER_ACCESS_SECRET"],
    )
    auth = tweepy.OAuth1UserHandler(
        values["TWITTER_API_KEY"],
        values["TWITTER_API_SECRET"],
        values["TWITTER_ACCESS_TOKEN"],
        values["TWITTER_ACCESS_SECRET"],
    )
    return client, tweepy.API(auth)
