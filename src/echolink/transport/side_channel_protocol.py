"""Side-channel message protocol definitions.

Defines Pydantic models for side-channel message serialization. Messages
are UTF-8 JSON carried as reliable LiveKit data packets:

    {"kind": "TRANSCRIPT", "payload": {"id", "sender", "text", "isFinal", "timestamp"}}
    {"kind": "CHAT", "payload": {"id", "text", "timestamp"}}
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from echolink.errors import ProtocolError
from echolink.transcript import Sender, TranscriptItem

# LiveKit data topic reserved for EchoLink messages
SIDE_CHANNEL_TOPIC = "echolink.sidechannel"


class TranscriptPayload(BaseModel):
    """Wire form of a transcript item.

    ``sender`` is advisory only; receivers overwrite it.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, description="Item id, unique within a session")
    sender: Literal["local", "remote"] = Field(default="local")
    text: str = Field(..., description="Current best transcript")
    is_final: bool = Field(..., alias="isFinal")
    timestamp: float = Field(..., ge=0, description="Milliseconds since epoch")

    @classmethod
    def from_item(cls, item: TranscriptItem) -> "TranscriptPayload":
        return cls(
            id=item.id,
            sender=item.sender.value,
            text=item.text,
            is_final=item.is_final,
            timestamp=item.timestamp,
        )

    def to_item(self) -> TranscriptItem:
        return TranscriptItem(
            id=self.id,
            sender=Sender(self.sender),
            text=self.text,
            is_final=self.is_final,
            timestamp=self.timestamp,
        )


class TranscriptMessage(BaseModel):
    """Peer → Peer: speech transcript update (interim or final)."""

    kind: Literal["TRANSCRIPT"] = "TRANSCRIPT"
    payload: TranscriptPayload


class ChatPayload(BaseModel):
    """Typed chat line."""

    id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    timestamp: float = Field(..., ge=0)


class ChatMessage(BaseModel):
    """Peer → Peer: typed chat line, merged as a final item."""

    kind: Literal["CHAT"] = "CHAT"
    payload: ChatPayload

    def to_item(self) -> TranscriptItem:
        return TranscriptItem(
            id=self.payload.id,
            sender=Sender.REMOTE,
            text=self.payload.text,
            is_final=True,
            timestamp=self.payload.timestamp,
        )


# Union type for all side-channel messages
SideChannelMessage = Annotated[TranscriptMessage | ChatMessage, Field(discriminator="kind")]

_message_adapter: TypeAdapter[TranscriptMessage | ChatMessage] = TypeAdapter(SideChannelMessage)


def transcript_message(item: TranscriptItem) -> TranscriptMessage:
    """Build the TRANSCRIPT message announcing ``item``."""
    return TranscriptMessage(payload=TranscriptPayload.from_item(item))


def encode_message(message: TranscriptMessage | ChatMessage) -> bytes:
    """Serialize a message to UTF-8 JSON using wire field names."""
    return message.model_dump_json(by_alias=True).encode("utf-8")


def decode_message(data: bytes | str) -> TranscriptMessage | ChatMessage:
    """Parse a side-channel payload.

    Raises:
        ProtocolError: If the payload is not valid UTF-8 JSON of a known kind
    """
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return _message_adapter.validate_json(data)
    except (UnicodeDecodeError, ValidationError) as e:
        raise ProtocolError(f"Malformed side-channel message: {e}") from e
