"""
Inbound message normalization

PURE CONVERSION - NO I/O, NO LOGGING, NEVER RAISES

Provider message objects are parsed into a closed set of variants
(TextMessage, MediaMessage, ButtonMessage, InteractiveMessage, UnknownMessage)
and each variant maps to a canonical (content, message_type) pair.
"""
from dataclasses import dataclass
from typing import Any, Optional, Union

# Media kinds the provider sends and the stored message_type for each
MEDIA_MESSAGE_TYPES = {
    "image": "image",
    "document": "document",
    "audio": "audio",
    "voice": "audio",
    "video": "text",
}

INTERACTIVE_REPLY_TYPES = ("button_reply", "list_reply")


@dataclass(frozen=True)
class TextMessage:
    body: Optional[str]


@dataclass(frozen=True)
class MediaMessage:
    kind: str
    caption: Optional[str] = None
    filename: Optional[str] = None
    media_id: Optional[str] = None


@dataclass(frozen=True)
class ButtonMessage:
    text: Optional[str]
    payload: Optional[str] = None


@dataclass(frozen=True)
class InteractiveMessage:
    reply_type: Optional[str]
    reply_id: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class UnknownMessage:
    type_name: str


InboundMessage = Union[TextMessage, MediaMessage, ButtonMessage, InteractiveMessage, UnknownMessage]


@dataclass(frozen=True)
class NormalizedContent:
    content: str
    message_type: str


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_message(raw: Any) -> InboundMessage:
    """Build the variant for a provider message object"""
    raw = _as_dict(raw)
    type_name = _as_text(raw.get("type")) or "unknown"

    if type_name == "text":
        return TextMessage(body=_as_text(_as_dict(raw.get("text")).get("body")))

    if type_name in MEDIA_MESSAGE_TYPES:
        media = _as_dict(raw.get(type_name))
        return MediaMessage(
            kind=type_name,
            caption=_as_text(media.get("caption")),
            filename=_as_text(media.get("filename")),
            media_id=_as_text(media.get("id")),
        )

    if type_name == "button":
        button = _as_dict(raw.get("button"))
        return ButtonMessage(text=_as_text(button.get("text")), payload=_as_text(button.get("payload")))

    if type_name == "interactive":
        interactive = _as_dict(raw.get("interactive"))
        reply_type = _as_text(interactive.get("type"))
        reply = _as_dict(interactive.get(reply_type)) if reply_type in INTERACTIVE_REPLY_TYPES else {}
        return InteractiveMessage(
            reply_type=reply_type,
            reply_id=_as_text(reply.get("id")),
            title=_as_text(reply.get("title")),
        )

    return UnknownMessage(type_name=type_name)


def _media_placeholder(message: MediaMessage) -> str:
    if message.kind == "document":
        return f"[Document: {message.filename}]" if message.filename else "[Document]"
    label = "Audio" if message.kind == "voice" else message.kind.capitalize()
    return f"[{label}]"


def normalize(message: InboundMessage) -> NormalizedContent:
    """Map a parsed variant to its canonical content. Every variant is handled."""
    if isinstance(message, TextMessage):
        return NormalizedContent(message.body or "[Empty text message]", "text")

    if isinstance(message, MediaMessage):
        content = message.caption or _media_placeholder(message)
        return NormalizedContent(content, MEDIA_MESSAGE_TYPES.get(message.kind, "text"))

    if isinstance(message, ButtonMessage):
        return NormalizedContent(message.text or message.payload or "[Button reply]", "text")

    if isinstance(message, InteractiveMessage):
        if message.reply_type in INTERACTIVE_REPLY_TYPES and message.title:
            return NormalizedContent(message.title, "text")
        return NormalizedContent("[Interactive reply]", "text")

    if isinstance(message, UnknownMessage):
        return NormalizedContent(f"[Unsupported message type: {message.type_name}]", "text")

    raise TypeError(f"Unhandled message variant: {type(message).__name__}")


def normalize_message(raw: Any) -> NormalizedContent:
    """parse_message + normalize for a raw provider message object"""
    return normalize(parse_message(raw))
