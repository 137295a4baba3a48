from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from .models import DeviceState, Message
from .topics import device_id


class DeviceStateCache:
    """Last known state per topic.

    Copy-on-write: ``update`` builds a new dict and swaps the reference, so
    readers only ever see a complete snapshot and never wait. Only the
    dispatcher writes.
    """

    def __init__(self):
        self._entries: Mapping[str, DeviceState] = MappingProxyType({})

    def get(self, topic: str) -> Optional[DeviceState]:
        return self._entries.get(topic)

    def snapshot(self) -> Mapping[str, DeviceState]:
        return self._entries

    def devices(self, device: str) -> List[DeviceState]:
        return [s for s in self._entries.values() if s.device_id == device]

    def update(self, message: Message) -> DeviceState:
        entry = DeviceState(
            device_id=device_id(message.topic),
            topic=message.topic,
            payload=message.payload,
            qos=message.qos,
            retained=message.retained,
            updated_at=message.timestamp,
        )
        entries: Dict[str, DeviceState] = dict(self._entries)
        entries[message.topic] = entry
        self._entries = MappingProxyType(entries)
        return entry

    def clear(self) -> None:
        self._entries = MappingProxyType({})

    def __len__(self) -> int:
        return len(self._entries)


DEVICE_STATE = DeviceStateCache()
