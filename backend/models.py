from __future__ import annotations

import json
from functools import lru_cache
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

# (timestamp in ms, header-key -> byte count)
HistoryEntry = Tuple[int, Dict[str, int]]
# Placeholders are either a bare null or an entry with null counters.
SegmentEntry = Optional[Tuple[int, Optional[Dict[str, int]]]]


class IpHeader(BaseModel):
    protocol: int
    source: str
    destination: str


class PacketHeader(BaseModel):
    protocol: int  # EtherType
    source: str
    destination: str
    ip_header: Optional[IpHeader] = None

    def to_key(self) -> str:
        return json.dumps(self.model_dump(), separators=(",", ":"))

    @classmethod
    def from_key(cls, key: str) -> PacketHeader:
        return _parse_key(key)


@lru_cache(maxsize=4096)
def _parse_key(key: str) -> PacketHeader:
    return PacketHeader.model_validate_json(key)


class InterfaceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    history: Tuple[HistoryEntry, ...] = ()
    closed: bool = False
    mac: Optional[str] = None

    @property
    def latest_timestamp(self) -> Optional[int]:
        if not self.history:
            return None
        return self.history[-1][0]


class InterfaceSegment(BaseModel):
    history: List[SegmentEntry] = []
    closed: bool = False
    mac: Optional[str] = None


DataSet = Mapping[str, InterfaceSnapshot]


def is_placeholder(entry: SegmentEntry) -> bool:
    return entry is None or entry[1] is None
