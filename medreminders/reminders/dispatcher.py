from typing import Any, Dict, List, Optional
import json
import logging
import os

import requests
from firebase_admin import messaging, credentials, initialize_app, _apps  # type: ignore

from medreminders.db.session import SessionLocal
from .config import settings
from .metrics import (
    reminders_dispatch_failed_total,
    reminders_dispatch_success_total,
    reminders_invalid_tokens_total,
)
from .repository import list_user_push_tokens, remove_push_token
from .schemas import PushPayload, PushResult

logger = logging.getLogger(__name__)

DEVICE_NOT_REGISTERED = "DeviceNotRegistered"
EXPO_MAX_BATCH = 100


class PushTransportError(Exception):
    """The push transport is not usable (missing credentials, bad provider name)."""


def _stringify_data(data: Dict[str, Any]) -> Dict[str, str]:
    # FCM data values must be strings
    return {key: "" if value is None else str(value) for key, value in data.items()}


def _ensure_firebase_initialized() -> None:
    if _apps:
        return

    proj = settings.FCM_PROJECT_ID
    creds_json: Optional[str] = (
        settings.FCM_CREDENTIALS_JSON
        or os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")
        or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    )
    options = {"projectId": proj} if proj else None

    if creds_json and creds_json.strip().startswith("{"):
        logger.info("[Push] Initializing Firebase with inline JSON credentials")
        initialize_app(credentials.Certificate(json.loads(creds_json)), options=options)
    elif creds_json and os.path.exists(creds_json):
        logger.info(f"[Push] Initializing Firebase with credentials file {creds_json}")
        initialize_app(credentials.Certificate(creds_json), options=options)
    elif proj:
        logger.info(f"[Push] Initializing Firebase with project id only ({proj})")
        initialize_app(options=options)
    else:
        raise PushTransportError("No FCM credentials or project id configured")


class FcmPushTransport:
    """Sends through Firebase Cloud Messaging (APNs for iOS via FCM)."""

    def send(self, payloads: List[PushPayload]) -> List[PushResult]:
        try:
            _ensure_firebase_initialized()
        except (PushTransportError, ValueError, OSError) as e:
            logger.error(f"[Push] FCM unavailable: {e}")
            return [PushResult(status="error", message=str(e)) for _ in payloads]

        messages = [
            messaging.Message(
                token=payload.to,
                notification=messaging.Notification(title=payload.title, body=payload.body),
                data=_stringify_data(payload.data),
                android=messaging.AndroidConfig(priority="high" if payload.priority == "high" else "normal"),
                apns=messaging.APNSConfig(
                    headers={
                        "apns-push-type": "alert",
                        "apns-priority": "10" if payload.priority == "high" else "5",
                    },
                    payload=messaging.APNSPayload(aps=messaging.Aps(sound=payload.sound)) if payload.sound else None,
                ),
            )
            for payload in payloads
        ]
        try:
            batch = messaging.send_each(messages)
        except Exception as e:
            logger.error(f"[Push] FCM batch send failed: {e!r}")
            return [PushResult(status="error", message=str(e)) for _ in payloads]

        results: List[PushResult] = []
        for response in batch.responses:
            if response.success:
                results.append(PushResult(status="ok", id=response.message_id))
                continue
            exc = response.exception
            error = DEVICE_NOT_REGISTERED if isinstance(exc, messaging.UnregisteredError) else type(exc).__name__
            results.append(PushResult(status="error", message=str(exc), error=error))
        return results


class ExpoPushTransport:
    """Sends through the Expo push API (ExponentPushToken[...] tokens)."""

    def __init__(self, url: Optional[str] = None, access_token: Optional[str] = None,
                 timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        self.url = url or settings.EXPO_PUSH_URL
        self.access_token = access_token if access_token is not None else settings.EXPO_ACCESS_TOKEN
        self.timeout = timeout or settings.PUSH_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _send_chunk(self, chunk: List[PushPayload]) -> List[PushResult]:
        body = [payload.model_dump(exclude_none=True) for payload in chunk]
        try:
            response = self.session.post(self.url, json=body, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            tickets = response.json().get("data") or []
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[Push] Expo batch send failed: {e!r}")
            return [PushResult(status="error", message=str(e)) for _ in chunk]

        results: List[PushResult] = []
        for index in range(len(chunk)):
            ticket = tickets[index] if index < len(tickets) else None
            if not isinstance(ticket, dict):
                results.append(PushResult(status="error", message="missing push ticket"))
                continue
            details = ticket.get("details") or {}
            results.append(
                PushResult(
                    status="ok" if ticket.get("status") == "ok" else "error",
                    id=ticket.get("id"),
                    message=ticket.get("message"),
                    error=details.get("error"),
                )
            )
        return results

    def send(self, payloads: List[PushPayload]) -> List[PushResult]:
        results: List[PushResult] = []
        for start in range(0, len(payloads), EXPO_MAX_BATCH):
            results.extend(self._send_chunk(payloads[start:start + EXPO_MAX_BATCH]))
        return results


class NotificationService:
    """Token lookup, batched dispatch and invalid-token cleanup for one push transport."""

    def __init__(self, transport, session_factory=None):
        self.transport = transport
        self.session_factory = session_factory or SessionLocal

    def get_user_push_tokens(self, user_id: str) -> List[Dict[str, str]]:
        db = self.session_factory()
        try:
            return list_user_push_tokens(db, user_id)
        finally:
            db.close()

    def send_notifications(self, payloads: List[PushPayload]) -> List[PushResult]:
        if not payloads:
            return []
        results = self.transport.send(payloads)
        for result in results:
            if result.status == "ok":
                reminders_dispatch_success_total.inc()
            else:
                reminders_dispatch_failed_total.inc()
        return results

    def remove_invalid_token(self, user_id: str, token: str) -> None:
        db = self.session_factory()
        try:
            removed = remove_push_token(db, user_id, token)
            if removed:
                reminders_invalid_tokens_total.inc()
                logger.info(f"[Push] Removed invalid token for user {user_id}")
        except Exception as e:
            logger.error(f"[Push] Error removing invalid token for user {user_id}: {e!r}")
        finally:
            db.close()


def get_notification_service(session_factory=None) -> NotificationService:
    provider = (settings.PUSH_PROVIDER or "").strip().lower()
    if provider == "fcm":
        transport = FcmPushTransport()
    elif provider == "expo":
        transport = ExpoPushTransport()
    else:
        raise PushTransportError(f"Unknown push provider {settings.PUSH_PROVIDER!r}")
    return NotificationService(transport, session_factory=session_factory)
