from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from pydantic import ValidationError

from models import InterfaceSnapshot, PacketHeader

log = logging.getLogger("netview.classify")

ETHERTYPE_ARP = 0x0806

GB = 1024 * 1024 * 1024
MB = 1024 * 1024
KB = 1024

Series = List[Tuple[int, int]]


class Bucket(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    ICMP = "ICMP"
    ICMPV6 = "ICMPv6"
    ARP = "ARP"
    OTHER = "Other"


class Direction(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


PROTOCOL_MAP = {
    6: Bucket.TCP,
    17: Bucket.UDP,
    1: Bucket.ICMP,
    58: Bucket.ICMPV6,
}


class Classification(NamedTuple):
    bucket: Bucket
    direction: Direction


def classify(header: PacketHeader, self_mac: Optional[str]) -> Classification:
    direction = Direction.OUTBOUND if header.source == self_mac else Direction.INBOUND
    if header.ip_header is not None:
        bucket = PROTOCOL_MAP.get(header.ip_header.protocol, Bucket.OTHER)
    elif header.protocol == ETHERTYPE_ARP:
        bucket = Bucket.ARP
    else:
        bucket = Bucket.OTHER
    return Classification(bucket, direction)


def _headers(counters: Dict[str, int]):
    for key, size in counters.items():
        try:
            yield PacketHeader.from_key(key), size
        except ValidationError:
            log.debug("Skipping unparsable header key: %.80s", key)


def direction_series(snapshot: InterfaceSnapshot) -> Dict[str, Series]:
    upload: Series = []
    download: Series = []
    for timestamp, counters in snapshot.history:
        out_amount = 0
        in_amount = 0
        for header, size in _headers(counters):
            if header.source == snapshot.mac:
                out_amount += size
            else:
                in_amount += size
        upload.append((timestamp, out_amount))
        download.append((timestamp, in_amount))
    return {"upload": upload, "download": download}


def protocol_series(snapshot: InterfaceSnapshot) -> Dict[Bucket, Dict[str, Series]]:
    result = {bucket: {"upload": [], "download": []} for bucket in Bucket}
    for timestamp, counters in snapshot.history:
        totals = {bucket: [0, 0] for bucket in Bucket}
        for header, size in _headers(counters):
            bucket, direction = classify(header, snapshot.mac)
            totals[bucket][0 if direction is Direction.OUTBOUND else 1] += size
        for bucket, (out_amount, in_amount) in totals.items():
            result[bucket]["upload"].append((timestamp, out_amount))
            result[bucket]["download"].append((timestamp, in_amount))
    return result


def address_series(snapshot: InterfaceSnapshot, kind: str = "ip") -> Dict[str, Dict[str, Series]]:
    """Per-address upload/download series, aligned on the history timestamps.

    ``kind="ip"`` counts both ends of the IP header, ``kind="mac"`` both
    Ethernet ends. The interface's own MAC is always listed.
    """
    if kind not in ("ip", "mac"):
        raise ValueError(f"unknown address kind: {kind}")

    sizes: Dict[str, Dict[str, Dict[int, int]]] = {}
    if kind == "mac" and snapshot.mac is not None:
        sizes[snapshot.mac] = {"upload": {}, "download": {}}

    for timestamp, counters in snapshot.history:
        for header, size in _headers(counters):
            if kind == "ip":
                if header.ip_header is None:
                    continue
                ends = (header.ip_header.source, header.ip_header.destination)
            else:
                ends = (header.source, header.destination)
            side = "upload" if header.source == snapshot.mac else "download"
            for address in ends:
                per = sizes.setdefault(address, {"upload": {}, "download": {}})[side]
                per[timestamp] = per.get(timestamp, 0) + size

    timestamps = [t for t, _ in snapshot.history]
    return {
        address: {
            side: [(t, values.get(t, 0)) for t in timestamps]
            for side, values in sides.items()
        }
        for address, sides in sizes.items()
    }


def rate(series: Sequence[Tuple[int, int]]) -> Optional[float]:
    """Bytes per second of the last bucket, or None without two samples."""
    if len(series) < 2:
        return None
    (t0, _), (t1, amount) = series[-2], series[-1]
    elapsed = t1 - t0
    if elapsed <= 0:
        return None
    return amount * 1000 / elapsed


def total(series: Sequence[Tuple[int, int]]) -> int:
    return sum(amount for _, amount in series)


def interface_speed(snapshot: InterfaceSnapshot) -> Optional[float]:
    if snapshot.closed:
        return None
    series = [(t, sum(counters.values())) for t, counters in snapshot.history[-2:]]
    return rate(series)


def to_display(speed: Optional[float]) -> str:
    if speed is None:
        return "no data"
    if speed > GB:
        return f"{speed / GB:.2f} GB/s"
    if speed > MB:
        return f"{speed / MB:.2f} MB/s"
    if speed > KB:
        return f"{speed / KB:.2f} KB/s"
    return f"{speed:.2f} B/s"
