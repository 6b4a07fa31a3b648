"""
Firebase Cloud Messaging push channel.

Sends through the Firebase Admin SDK, which authenticates with a service
account and refreshes its own OAuth tokens. Reports per-token outcomes;
tokens the provider reports as unregistered are returned as invalid so the
caller can prune them. Every batch has a bounded timeout.
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional

import firebase_admin
from dotenv import load_dotenv
from firebase_admin import credentials, exceptions, messaging

from clubnight.utils.env_utils import get_bool_env, get_int_env, get_str_env

load_dotenv()

logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "clubnight-push"
PUSH_ICON_PATH = "/icons/icon-192x192.png"
# FCM caps a multicast message at 500 tokens
MAX_TOKENS_PER_BATCH = 500

# Service account JSON, inline or as a path to the key file
FIREBASE_CREDENTIALS = get_str_env("FIREBASE_CREDENTIALS")
ENABLE_PUSH = get_bool_env("ENABLE_PUSH", default=True)
CHANNEL_TIMEOUT_SECONDS = get_int_env("CHANNEL_TIMEOUT_SECONDS", 10)


def load_certificate(raw: str) -> credentials.Certificate:
    """Service account credentials from inline JSON or a key file path."""
    if raw.lstrip().startswith("{"):
        return credentials.Certificate(json.loads(raw))
    return credentials.Certificate(raw)


def _is_unregistered(error: Optional[Exception]) -> bool:
    """True if FCM says the token is no longer valid."""
    return isinstance(error, (messaging.UnregisteredError, exceptions.NotFoundError))


class PushChannel:
    """Push delivery through the Firebase Admin SDK."""

    def __init__(
        self,
        credentials_json: Optional[str] = FIREBASE_CREDENTIALS,
        enabled: bool = ENABLE_PUSH,
        timeout: float = CHANNEL_TIMEOUT_SECONDS,
        app: Optional[firebase_admin.App] = None,
    ):
        self.credentials_json = credentials_json
        self.timeout = timeout
        self._app = app
        self._enabled = bool(enabled and (app is not None or credentials_json))
        if not self._enabled:
            logger.info("Firebase credentials not configured, push notifications disabled")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _get_app(self) -> firebase_admin.App:
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(FIREBASE_APP_NAME)
            except ValueError:
                self._app = firebase_admin.initialize_app(
                    load_certificate(self.credentials_json),
                    options={"httpTimeout": self.timeout},
                    name=FIREBASE_APP_NAME,
                )
                logger.info("Firebase Cloud Messaging initialized")
        return self._app

    def _build_message(
        self, tokens: List[str], title: str, body: str, data: Optional[Dict]
    ) -> messaging.MulticastMessage:
        return messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            # FCM data values must be strings
            data={str(k): str(v) for k, v in (data or {}).items()},
            webpush=messaging.WebpushConfig(
                notification=messaging.WebpushNotification(icon=PUSH_ICON_PATH)
            ),
        )

    async def _send_batch(self, tokens: List[str], title: str, body: str, data: Optional[Dict], outcome: Dict):
        try:
            app = self._get_app()
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    messaging.send_each_for_multicast,
                    self._build_message(tokens, title, body, data),
                    app=app,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            outcome["failure_count"] += len(tokens)
            logger.warning(f"FCM timed out after {self.timeout}s sending to {len(tokens)} device(s)")
            return
        except (exceptions.FirebaseError, ValueError, OSError) as e:
            outcome["failure_count"] += len(tokens)
            logger.warning(f"FCM request failed: {e}")
            return

        for token, result in zip(tokens, response.responses):
            if result.success:
                outcome["success_count"] += 1
            elif _is_unregistered(result.exception):
                outcome["failure_count"] += 1
                outcome["invalid_tokens"].append(token)
            else:
                outcome["failure_count"] += 1
                logger.warning(f"FCM rejected a token: {result.exception}")

    async def send(
        self, tokens: List[str], title: str, body: str, data: Optional[Dict] = None
    ) -> Dict:
        """
        Send a notification to each device token.

        Returns:
            Dict with success_count, failure_count and invalid_tokens
        """
        outcome = {"success_count": 0, "failure_count": 0, "invalid_tokens": []}
        if not self._enabled or not tokens:
            return outcome

        for start in range(0, len(tokens), MAX_TOKENS_PER_BATCH):
            batch = tokens[start:start + MAX_TOKENS_PER_BATCH]
            await self._send_batch(batch, title, body, data, outcome)

        logger.info(
            f"Push sent to {outcome['success_count']}/{len(tokens)} device(s)"
        )
        return outcome
