import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import pyshark
from aioquic.quic.packet import QuicFrameType

logger = logging.getLogger(__name__)

# addresses of the endpoints inside the simulated network
SERVER_ADDRESSES = ("193.167.100.100", "fd00:cafe:cafe:100::100")
CLIENT_ADDRESSES = ("193.167.0.100", "fd00:cafe:cafe:0::100")
QUIC_PORT = 443

LONG_HEADER_TYPES = {0: "initial", 1: "0rtt", 2: "handshake", 3: "retry"}
STREAM_FRAME_TYPES = range(0x08, 0x10)


class CheckFailure(Exception):
    """
    A run did not meet the criteria of its test case.
    """


class TraceError(CheckFailure):
    """
    A packet capture is missing or could not be decoded.
    """


class TraceAssertionViolation(CheckFailure):
    """
    A protocol invariant was not observed in the captured packets.
    """


class Direction(Enum):
    ALL = 0
    FROM_SERVER = 1
    TO_SERVER = 2


def frame_type(value: int) -> int:
    if value in STREAM_FRAME_TYPES:
        return QuicFrameType.STREAM_BASE
    try:
        return QuicFrameType(value)
    except ValueError:
        return value


def frame_name(value: int) -> str:
    if isinstance(value, QuicFrameType):
        return value.name
    return "0x%x" % value


@dataclass(frozen=True)
class Frame:
    type: int
    data: Optional[str] = None


@dataclass(frozen=True)
class TracePacket:
    """
    A single QUIC packet as seen on one side of the simulated link.

    Coalesced packets share the addressing of their UDP datagram. `packet_type`
    is the long header packet type, or None for short header (1-RTT) packets.
    """

    time: float
    src: str
    src_port: int
    dst: str
    dst_port: int
    size: int
    packet_type: Optional[str] = None
    version: Optional[int] = None
    scid: Optional[str] = None
    dcid: Optional[str] = None
    token: Optional[str] = None
    key_phase: Optional[int] = None
    ecn: int = 0
    frames: Tuple[Frame, ...] = ()
    cipher_suite: Optional[int] = None
    alpn: Tuple[str, ...] = ()

    @property
    def source(self) -> Tuple[str, int]:
        return (self.src, self.src_port)

    @property
    def destination(self) -> Tuple[str, int]:
        return (self.dst, self.dst_port)

    @property
    def is_short_header(self) -> bool:
        return self.packet_type is None

    def has_frame(self, type: int) -> bool:
        return any(frame.type == type for frame in self.frames)

    def frame_values(self, type: int) -> List[str]:
        return [
            frame.data
            for frame in self.frames
            if frame.type == type and frame.data is not None
        ]


# the client's address changes under rebinding and the server's under
# migration, so either fixed address identifies the direction
def is_from_server(packet: TracePacket) -> bool:
    return packet.src in SERVER_ADDRESSES or packet.dst in CLIENT_ADDRESSES


def is_to_server(packet: TracePacket) -> bool:
    return packet.dst in SERVER_ADDRESSES or packet.src in CLIENT_ADDRESSES


@dataclass
class Trace:
    packets: List[TracePacket] = field(default_factory=list)

    def __iter__(self) -> Iterator[TracePacket]:
        return iter(self.packets)

    def __len__(self) -> int:
        return len(self.packets)

    def get(self, direction: Direction = Direction.ALL) -> List[TracePacket]:
        if direction is Direction.FROM_SERVER:
            return [p for p in self.packets if is_from_server(p)]
        elif direction is Direction.TO_SERVER:
            return [p for p in self.packets if is_to_server(p)]
        return list(self.packets)

    def get_long_header(
        self, packet_type: str, direction: Direction = Direction.ALL
    ) -> List[TracePacket]:
        return [p for p in self.get(direction) if p.packet_type == packet_type]

    def get_1rtt(self, direction: Direction = Direction.ALL) -> List[TracePacket]:
        return [p for p in self.get(direction) if p.is_short_header]


def _values(layer, name: str) -> List[str]:
    field = layer.get_field(name)
    if field is None:
        return []
    return [f.show for f in field.all_fields]


def _first(layer, name: str) -> Optional[str]:
    values = _values(layer, name)
    return values[0] if values else None


def _int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    if value in ("True", "False"):
        return int(value == "True")
    return int(value, 0)


def _hex(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(":", "").lower()


def _frames(layer) -> Tuple[Frame, ...]:
    challenges = iter(_values(layer, "path_challenge.data"))
    responses = iter(_values(layer, "path_response.data"))
    frames = []
    for raw in _values(layer, "frame_type"):
        type = frame_type(int(raw, 0))
        data = None
        if type == QuicFrameType.PATH_CHALLENGE:
            data = _hex(next(challenges, None))
        elif type == QuicFrameType.PATH_RESPONSE:
            data = _hex(next(responses, None))
        frames.append(Frame(type, data))
    return tuple(frames)


def _convert(packet) -> List[TracePacket]:
    if hasattr(packet, "ipv6"):
        ip = packet.ipv6
        ecn = _int(_first(ip, "tclass.ecn")) or 0
    else:
        ip = packet.ip
        ecn = _int(_first(ip, "dsfield.ecn")) or 0

    cipher_suite = None
    alpn: Tuple[str, ...] = ()
    if hasattr(packet, "tls"):
        cipher_suite = _int(_first(packet.tls, "handshake.ciphersuite"))
        alpn = tuple(_values(packet.tls, "handshake.extensions_alpn_str"))

    converted = []
    for layer in packet.get_multiple_layers("quic"):
        packet_type = None
        if _int(_first(layer, "header_form")) == 1:
            packet_type = LONG_HEADER_TYPES.get(_int(_first(layer, "long.packet_type")))
        converted.append(
            TracePacket(
                time=float(packet.sniff_timestamp),
                src=ip.src,
                src_port=int(packet.udp.srcport),
                dst=ip.dst,
                dst_port=int(packet.udp.dstport),
                size=_int(_first(layer, "packet_length")) or int(packet.udp.length),
                packet_type=packet_type,
                version=_int(_first(layer, "version")),
                scid=_hex(_first(layer, "scid")),
                dcid=_hex(_first(layer, "dcid")),
                token=_hex(_first(layer, "retry_token") or _first(layer, "token")),
                key_phase=_int(_first(layer, "key_phase")),
                ecn=ecn,
                frames=_frames(layer),
                cipher_suite=cipher_suite,
                alpn=alpn,
            )
        )
    return converted


def load_trace(pcap: str, keylog_file: Optional[str] = None) -> Trace:
    """
    Decode a packet capture into a trace of QUIC packets.

    Decryption uses the TLS key log written by the endpoints. Any failure to
    read or dissect the capture raises TraceError.
    """
    if not os.path.isfile(pcap):
        raise TraceError("trace %s not found" % pcap)

    override_prefs = {}
    if keylog_file and os.path.isfile(keylog_file):
        override_prefs["tls.keylog_file"] = keylog_file
    else:
        logger.warning("No key log file, 1-RTT packets of %s cannot be decrypted", pcap)

    capture = pyshark.FileCapture(
        pcap,
        display_filter="quic",
        override_prefs=override_prefs,
        decode_as={"udp.port==%d" % QUIC_PORT: "quic"},
        keep_packets=False,
    )
    trace = Trace()
    try:
        for packet in capture:
            trace.packets.extend(_convert(packet))
    except Exception as exc:
        raise TraceError("unable to parse trace %s: %s" % (pcap, exc)) from exc
    finally:
        capture.close()
    logger.debug("Read %d QUIC packets from %s", len(trace), pcap)
    return trace


def count_handshakes(trace: Trace) -> int:
    # the server's SCID of Initial packets does not change within a connection
    return len({p.scid for p in trace.get_long_header("initial", Direction.FROM_SERVER)})


def frame_values(packets: Iterable[TracePacket], type: int) -> Set[str]:
    values: Set[str] = set()
    for packet in packets:
        values.update(packet.frame_values(type))
    return values


def check_path_migration(
    outgoing: Sequence[TracePacket], incoming: Sequence[TracePacket]
) -> int:
    """
    Verify path validation after the destination of `outgoing` changed.

    Every change of the (address, port) destination relative to the preceding
    packet counts as a migration, and the first packet sent to the new
    destination must carry a PATH_CHALLENGE. The PATH_RESPONSE values in
    `incoming` must equal the PATH_CHALLENGE values in `outgoing`.

    Returns the number of migrations.
    """
    destinations = {p.destination for p in outgoing}
    if len(destinations) <= 1:
        raise TraceAssertionViolation(
            "saw only one path: %s" % ", ".join("%s:%d" % d for d in destinations)
        )

    last = None
    migrations = 0
    for packet in outgoing:
        current = packet.destination
        if last is None:
            last = current
            continue
        if current != last:
            last = current
            migrations += 1
            if not packet.has_frame(QuicFrameType.PATH_CHALLENGE):
                frames = ", ".join(frame_name(f.type) for f in packet.frames)
                raise TraceAssertionViolation(
                    "first packet to new destination %s:%d did not contain a "
                    "PATH_CHALLENGE frame (frames: %s)" % (current + (frames or "none",))
                )

    challenges = frame_values(outgoing, QuicFrameType.PATH_CHALLENGE)
    if len(challenges) < migrations:
        raise TraceAssertionViolation(
            "saw %d migrations, but only %d unique PATH_CHALLENGE frames"
            % (migrations, len(challenges))
        )

    responses = frame_values(incoming, QuicFrameType.PATH_RESPONSE)
    unanswered = challenges - responses
    if unanswered:
        raise TraceAssertionViolation(
            "PATH_CHALLENGE without matching PATH_RESPONSE: %s"
            % ", ".join(sorted(unanswered))
        )
    unmatched = responses - challenges
    if unmatched:
        raise TraceAssertionViolation(
            "PATH_RESPONSE not echoing any PATH_CHALLENGE: %s"
            % ", ".join(sorted(unmatched))
        )
    logger.info("Saw %d migrations, all PATH_CHALLENGE frames answered", migrations)
    return migrations
