"""Evolution API client: sends messages and lists an instance's groups."""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from .models import (
    AudioMessage, ContactMessage, DirectoryUnavailable, Group, LocationMessage,
    MediaMessage, MessageSpec, PixMessage, PollMessage, ProviderError, TextMessage,
)

LOGGER = logging.getLogger(__name__)

# Typing delay the provider applies before delivering, in milliseconds.
SEND_DELAY_MS = 1200

ENDPOINTS = {
    TextMessage.kind: "/message/sendText",
    MediaMessage.kind: "/message/sendMedia",
    AudioMessage.kind: "/message/sendWhatsAppAudio",
    PollMessage.kind: "/message/sendPoll",
    PixMessage.kind: "/message/sendPix",
    ContactMessage.kind: "/message/sendContact",
    LocationMessage.kind: "/message/sendLocation",
}


def build_payload(recipient_id: str, message: MessageSpec, mention_everyone: bool = False) -> Dict:
    body = {"number": recipient_id, "delay": SEND_DELAY_MS}
    if mention_everyone:
        body["mentionsEveryOne"] = True

    if isinstance(message, TextMessage):
        body.update(text=message.body, linkPreview=message.link_preview)
    elif isinstance(message, MediaMessage):
        body.update(
            mediatype=message.mediatype,
            mimetype=message.mimetype,
            caption=message.caption,
            media=message.url,
            fileName=message.file_name,
        )
    elif isinstance(message, AudioMessage):
        body["audio"] = message.url
    elif isinstance(message, PollMessage):
        body.update(
            name=message.question,
            selectableCount=message.selectable_count,
            values=[o for o in message.options if o.strip()],
        )
    elif isinstance(message, PixMessage):
        body["pixMessage"] = {"key": message.key, "type": message.key_type, "amount": message.amount}
    elif isinstance(message, ContactMessage):
        body["contactMessage"] = [{
            "fullName": message.full_name,
            "wuid": message.phone,
            "phoneNumber": message.phone,
        }]
    elif isinstance(message, LocationMessage):
        body["locationMessage"] = {
            "latitude": message.latitude,
            "longitude": message.longitude,
            "name": message.name,
            "address": message.address,
        }
    else:
        raise TypeError(f"Unsupported message type: {type(message).__name__}")
    return body


def _group_from_json(item: Dict) -> Group:
    return Group(
        id=item["id"],
        subject=item.get("subject") or "",
        size=int(item.get("size") or 0),
    )


class EvolutionClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(
            base_url=self.base_url,
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def send(self, instance: str, recipient_id: str, message: MessageSpec, mention_everyone: bool = False):
        path = f"{ENDPOINTS[message.kind]}/{instance}"
        payload = build_payload(recipient_id, message, mention_everyone)
        try:
            res = self._http.post(path, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"Network error on {path}: {e}")
        if res.is_error:
            raise ProviderError(f"API Error {res.status_code}: {res.text[:300]}", res.status_code)
        LOGGER.debug("Sent %s to %s via %s (%s)", message.kind, recipient_id, instance, res.status_code)

    def list_groups(self, instance: str) -> List[Group]:
        try:
            res = self._http.get(
                f"/group/fetchAllGroups/{instance}",
                params={"getParticipants": "false"},
            )
            res.raise_for_status()
            data = res.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DirectoryUnavailable(f"Failed to fetch groups for {instance}: {e}")
        if not isinstance(data, list):
            raise DirectoryUnavailable(f"Failed to fetch groups for {instance}: {str(data)[:200]}")
        try:
            return [_group_from_json(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise DirectoryUnavailable(f"Malformed group list for {instance}: {e}")


class CachedDirectory:
    """Read-through cache of group lists, keyed by instance."""

    def __init__(self, source: Callable[[str], List[Group]], ttl: float = 300.0, clock=time.monotonic):
        self._source = source
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, List[Group]]] = {}

    def list_groups(self, instance: str) -> List[Group]:
        now = self._clock()
        with self._lock:
            cached = self._entries.get(instance)
        if cached and now - cached[0] < self._ttl:
            return list(cached[1])

        try:
            groups = self._source(instance)
        except DirectoryUnavailable as e:
            if cached:
                LOGGER.warning("Serving stale group list for %s: %s", instance, e)
                return list(cached[1])
            raise

        with self._lock:
            self._entries[instance] = (now, list(groups))
        return list(groups)

    def invalidate(self, instance: Optional[str] = None):
        with self._lock:
            if instance is None:
                self._entries.clear()
            else:
                self._entries.pop(instance, None)
