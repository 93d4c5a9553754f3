"""Transcript synchronization.

Merges local speech fragments into the shared, ordered item sequence and
mirrors each update to the remote party over the side-channel; merges
remote items into the same sequence.

Local continuation rule: if the most recent speech item is LOCAL and not
yet final, the incoming fragment replaces it in place (same id). Otherwise
a new item is appended. Fragments from one party are captured serially, so
"last item, same sender, not final" identifies the open utterance. Local
chat lines are typed, not spoken: they are appended after an open utterance
without closing it. A newly appended remote item does close it.

Remote merge rule: the sender is forced to REMOTE, the item with the same
id is replaced in place, or the item is appended. Re-delivery is
idempotent. The side-channel is ordered, so no revision counter is kept;
a stale update arriving after a final one would regress it.
"""

import logging
from collections.abc import Callable

from echolink.connection import SideChannel
from echolink.errors import SideChannelSendFailure
from echolink.identity import ItemIdFactory, now_ms
from echolink.transcript import Sender, TranscriptItem
from echolink.transport.side_channel_protocol import (
    ChatMessage,
    ChatPayload,
    TranscriptMessage,
    transcript_message,
)

logger = logging.getLogger(__name__)


class TranscriptSynchronizer:
    """Owner of the shared transcript sequence for one session."""

    def __init__(
        self,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        """Initialize synchronizer.

        Args:
            id_factory: Mints item ids unique within the session
            clock: Millisecond wall clock for item timestamps
        """
        self._items: list[TranscriptItem] = []
        self._index: dict[str, int] = {}
        self._id_factory = id_factory or ItemIdFactory(clock)
        self._clock = clock
        self._channel: SideChannel | None = None
        self._open_local_id: str | None = None

    @property
    def items(self) -> tuple[TranscriptItem, ...]:
        """Read-only snapshot of the shared sequence."""
        return tuple(self._items)

    @property
    def channel(self) -> SideChannel | None:
        return self._channel

    def bind(self, channel: SideChannel) -> None:
        """Attach the side-channel updates are mirrored to."""
        self._channel = channel

    def unbind(self) -> None:
        self._channel = None

    def _append(self, item: TranscriptItem) -> None:
        self._index[item.id] = len(self._items)
        self._items.append(item)

    def _replace(self, position: int, item: TranscriptItem) -> None:
        self._items[position] = item

    async def ingest_local(self, text: str, is_final: bool) -> TranscriptItem:
        """Merge one local speech fragment and mirror it to the peer.

        Returns:
            The created or updated item
        """
        if self._open_local_id is not None:
            position = self._index[self._open_local_id]
            item = self._items[position].revise(text, is_final, self._clock())
            self._replace(position, item)
        else:
            item = TranscriptItem(
                id=self._id_factory(),
                sender=Sender.LOCAL,
                text=text,
                is_final=is_final,
                timestamp=self._clock(),
            )
            self._append(item)

        self._open_local_id = None if item.is_final else item.id
        await self._send(transcript_message(item))
        return item

    async def send_chat(self, text: str) -> TranscriptItem:
        """Append a typed chat line as a final local item and send it."""
        item = TranscriptItem(
            id=self._id_factory(),
            sender=Sender.LOCAL,
            text=text,
            is_final=True,
            timestamp=self._clock(),
        )
        self._append(item)

        await self._send(
            ChatMessage(payload=ChatPayload(id=item.id, text=item.text, timestamp=item.timestamp))
        )
        return item

    async def _send(self, message: TranscriptMessage | ChatMessage) -> None:
        if self._channel is None or not self._channel.is_open:
            return

        try:
            await self._channel.send(message)
        except SideChannelSendFailure as e:
            # Local state stays; the next fragment carries the utterance forward
            logger.warning(
                "Side channel send failed",
                extra={"item_id": message.payload.id, "error": str(e)},
            )

    def ingest_remote(self, message: TranscriptMessage | ChatMessage) -> TranscriptItem:
        """Merge a message received from the peer.

        Returns:
            The merged item
        """
        if isinstance(message, ChatMessage):
            item = message.to_item()
        else:
            item = message.payload.to_item().as_remote()

        position = self._index.get(item.id)
        if position is None:
            self._append(item)
            self._open_local_id = None
            return item

        current = self._items[position]
        if current.sender != Sender.REMOTE:
            logger.warning("Remote item id collides with a local item", extra={"item_id": item.id})
            return current

        if current.is_final and (not item.is_final or item.text != current.text):
            logger.warning(
                "Remote update regresses a final item",
                extra={"item_id": item.id, "is_final": item.is_final},
            )

        # Keep the receiver-local translation while the text is unchanged
        if current.translated_text is not None and current.text == item.text:
            item = item.with_translation(current.translated_text)

        self._replace(position, item)
        return item

    def apply_translation(self, item_id: str, translated_text: str) -> TranscriptItem | None:
        """Annotate an item with its translation.

        Returns:
            The annotated item, or None if the id is unknown
        """
        position = self._index.get(item_id)
        if position is None:
            return None

        item = self._items[position].with_translation(translated_text)
        self._replace(position, item)
        return item
