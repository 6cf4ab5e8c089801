"""
Transfer Status Publishing

Design Decision: Status Delivery
================================

Options Considered:
1. Single "latest value" slot
   - Trivial for displays that only need the current state
   - Slow readers miss updates; concurrent transfers overwrite each other

2. Event queue only
   - Nothing is lost
   - Late observers have no current value to render

Decision: Both, plus per-transfer state
- `current` keeps the last event for simple displays
- every subscriber gets its own ordered queue of events
- every status carries a transfer_id, and the latest status of each
  recent transfer is kept so concurrent transfers stay distinguishable
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class StatusKind(Enum):
    """Kinds of transfer status."""
    IDLE = "idle"
    SENDING = "sending"
    RECEIVING = "receiving"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class TransferStatus:
    """A single transfer event."""
    kind: StatusKind
    name: Optional[str] = None
    progress: Optional[int] = None
    message: Optional[str] = None
    transfer_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def idle(cls) -> 'TransferStatus':
        return cls(kind=StatusKind.IDLE)

    @classmethod
    def sending(cls, transfer_id: str, name: str, progress: int) -> 'TransferStatus':
        return cls(kind=StatusKind.SENDING, name=name, progress=progress,
                   transfer_id=transfer_id)

    @classmethod
    def receiving(cls, transfer_id: str, name: str, progress: int) -> 'TransferStatus':
        return cls(kind=StatusKind.RECEIVING, name=name, progress=progress,
                   transfer_id=transfer_id)

    @classmethod
    def success(cls, transfer_id: str, name: Optional[str] = None) -> 'TransferStatus':
        return cls(kind=StatusKind.SUCCESS, name=name, transfer_id=transfer_id)

    @classmethod
    def error(cls, transfer_id: str, message: str,
              name: Optional[str] = None) -> 'TransferStatus':
        return cls(kind=StatusKind.ERROR, name=name, message=message,
                   transfer_id=transfer_id)

    @property
    def is_terminal(self) -> bool:
        """True for Success and Error."""
        return self.kind in (StatusKind.SUCCESS, StatusKind.ERROR)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'kind': self.kind.value,
            'name': self.name,
            'progress': self.progress,
            'message': self.message,
            'transfer_id': self.transfer_id,
            'timestamp': self.timestamp,
        }


# Status callback type
StatusCallback = Callable[[TransferStatus], None]


class StatusSubscription:
    """
    An ordered stream of status events.

    Usable as an async context manager that unsubscribes on exit.
    """

    def __init__(self, publisher: 'StatusPublisher'):
        self._publisher = publisher
        self._queue: asyncio.Queue = asyncio.Queue()

    def _push(self, status: TransferStatus):
        self._queue.put_nowait(status)

    async def get(self) -> TransferStatus:
        """Wait for the next event."""
        return await self._queue.get()

    def get_nowait(self) -> TransferStatus:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self):
        """Stop receiving events."""
        self._publisher.unsubscribe(self)

    async def __aenter__(self) -> 'StatusSubscription':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class StatusPublisher:
    """
    Broadcasts transfer status to any number of observers.

    Written by TransferServer and TransferClient, read by displays,
    the REST API and tests.
    """

    def __init__(self, history: int = 256):
        """
        Args:
            history: How many recent transfers to remember by transfer_id
        """
        self.history = history
        self._current = TransferStatus.idle()
        self._transfers: 'OrderedDict[str, TransferStatus]' = OrderedDict()
        self._subscriptions: List[StatusSubscription] = []
        self._callbacks: List[StatusCallback] = []

    @staticmethod
    def new_transfer_id() -> str:
        """Identity for a new transfer."""
        return uuid.uuid4().hex

    @property
    def current(self) -> TransferStatus:
        """The most recent status, whichever transfer produced it."""
        return self._current

    def get(self, transfer_id: str) -> Optional[TransferStatus]:
        """Latest status of a specific transfer."""
        return self._transfers.get(transfer_id)

    def transfers(self) -> Dict[str, TransferStatus]:
        """Latest status of every remembered transfer."""
        return dict(self._transfers)

    def publish(self, status: TransferStatus):
        """Record a status and deliver it to every observer."""
        self._current = status

        if status.transfer_id is not None:
            self._transfers[status.transfer_id] = status
            self._transfers.move_to_end(status.transfer_id)
            while len(self._transfers) > self.history:
                self._transfers.popitem(last=False)

        for subscription in list(self._subscriptions):
            subscription._push(status)

        for callback in self._callbacks:
            try:
                callback(status)
            except Exception as e:
                logger.error(f"Status callback error: {e}")

    def reset(self):
        """Forget per-transfer state and go back to Idle."""
        self._transfers.clear()
        self.publish(TransferStatus.idle())

    def subscribe(self) -> StatusSubscription:
        """Open an ordered channel of every event published from now on."""
        subscription = StatusSubscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: StatusSubscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def on_status(self, callback: StatusCallback):
        """Register a synchronous callback for every event."""
        self._callbacks.append(callback)
