import filecmp
import logging
import math
import os
import random
import statistics
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from aioquic.quic.packet import QuicFrameType, QuicProtocolVersion

from result import Outcome, TestResult
from traces import (
    CheckFailure,
    Direction,
    Trace,
    TraceAssertionViolation,
    check_path_migration,
    count_handshakes,
    is_to_server,
    load_trace,
)

logger = logging.getLogger(__name__)

KB = 1 << 10
MB = 1 << 20

DEFAULT_TIMEOUT = 60
MEASUREMENT_TIMEOUT = 180

SIMPLE_P2P = "simple-p2p --delay=15ms --bandwidth=10Mbps --queue=25"
TLS_CHACHA20_POLY1305_SHA256 = 0x1303


class TestType(Enum):
    TEST = "TEST"
    MEASUREMENT = "MEASUREMENT"

    __test__ = False


class Perspective(Enum):
    SERVER = "server"
    CLIENT = "client"


class Kind(Enum):
    HANDSHAKE = "handshake"
    TRANSFER = "transfer"
    LONGRTT = "longrtt"
    CHACHA20 = "chacha20"
    MULTIPLEXING = "multiplexing"
    RETRY = "retry"
    RESUMPTION = "resumption"
    ZERORTT = "zerortt"
    HTTP3 = "http3"
    BLACKHOLE = "blackhole"
    KEYUPDATE = "keyupdate"
    ECN = "ecn"
    AMPLIFICATIONLIMIT = "amplificationlimit"
    HANDSHAKELOSS = "handshakeloss"
    TRANSFERLOSS = "transferloss"
    HANDSHAKECORRUPTION = "handshakecorruption"
    TRANSFERCORRUPTION = "transfercorruption"
    IPV6 = "ipv6"
    V2 = "v2"
    PORTREBINDING = "portrebinding"
    ADDRESSREBINDING = "addressrebinding"
    CONNECTIONMIGRATION = "connectionmigration"
    GOODPUT = "goodput"
    CROSSTRAFFIC = "crosstraffic"


@dataclass(frozen=True)
class TestCase:
    """
    Declarative description of one interop test.

    Behaviour is selected by `kind`; see CHECKS for the criteria each kind
    applies to a finished run.
    """

    name: str
    abbreviation: str
    kind: Kind
    description: str
    file_sizes: Tuple[int, ...]
    scenario: str = SIMPLE_P2P
    timeout: int = DEFAULT_TIMEOUT
    server_testname: Optional[str] = None
    client_testname: Optional[str] = None
    version: int = QuicProtocolVersion.VERSION_1
    services: Tuple[str, ...] = ()
    ipv6: bool = False

    __test__ = False

    @property
    def test_type(self) -> TestType:
        return TestType.TEST

    def testname(self, perspective: Perspective) -> str:
        if perspective is Perspective.SERVER and self.server_testname:
            return self.server_testname
        if perspective is Perspective.CLIENT and self.client_testname:
            return self.client_testname
        return self.name

    @property
    def server_host(self) -> str:
        return "server6" if self.ipv6 else "server4"


@dataclass(frozen=True)
class Measurement(TestCase):
    timeout: int = MEASUREMENT_TIMEOUT
    repetitions: int = 5
    unit: str = "kbps"

    def __post_init__(self):
        if self.repetitions < 1:
            raise ValueError("%s needs at least one repetition" % self.name)

    @property
    def test_type(self) -> TestType:
        return TestType.MEASUREMENT


@dataclass
class CheckContext:
    """
    Everything a check may look at once a run has finished.

    The traces are decoded on first access.
    """

    www_dir: str
    download_dir: str
    files: List[str]
    server_pcap: str
    client_pcap: str
    keylog_file: Optional[str] = None
    loader: Callable[[str, Optional[str]], Trace] = load_trace
    _traces: Dict[str, Trace] = field(default_factory=dict, repr=False)

    def _trace(self, pcap: str) -> Trace:
        if pcap not in self._traces:
            self._traces[pcap] = self.loader(pcap, self.keylog_file)
        return self._traces[pcap]

    @property
    def server_trace(self) -> Trace:
        """Packets captured on the server side of the simulated link."""
        return self._trace(self.server_pcap)

    @property
    def client_trace(self) -> Trace:
        """Packets captured on the client side of the simulated link."""
        return self._trace(self.client_pcap)


def random_string(length: int) -> str:
    return "".join(
        random.choice(string.ascii_lowercase + string.digits) for _ in range(length)
    )


def generate_files(www_dir: str, sizes: Sequence[int]) -> List[str]:
    files = []
    for size in sizes:
        name = random_string(10)
        with open(os.path.join(www_dir, name), "wb") as fp:
            fp.write(os.urandom(size))
        files.append(name)
    logger.debug("Generated %d files in %s", len(files), www_dir)
    return files


def _round(value: float) -> int:
    # halves round up, not to the even neighbour
    return math.floor(value + 0.5)


def format_measurement(values: Sequence[float], unit: str) -> str:
    # the standard deviation of a single observation is not reported
    if len(values) == 1:
        return "%d %s" % (_round(values[0]), unit)
    mean = statistics.mean(values)
    stdev = statistics.stdev(values)
    return "%d (± %d) %s" % (_round(mean), _round(stdev), unit)


# checks


def _check_files(ctx: CheckContext) -> None:
    if not ctx.files:
        raise CheckFailure("no files were generated for this test")
    for name in ctx.files:
        served = os.path.join(ctx.www_dir, name)
        downloaded = os.path.join(ctx.download_dir, name)
        if not os.path.isfile(downloaded):
            raise CheckFailure("file %s was not downloaded" % name)
        if not filecmp.cmp(served, downloaded, shallow=False):
            raise CheckFailure("downloaded file %s does not match the served file" % name)


def _check_handshakes(ctx: CheckContext, expected: int) -> None:
    handshakes = count_handshakes(ctx.server_trace)
    if handshakes != expected:
        raise TraceAssertionViolation(
            "expected %d handshakes, got %d" % (expected, handshakes)
        )


def _check_version(tc: TestCase, ctx: CheckContext) -> None:
    for packet in ctx.server_trace:
        if packet.packet_type in ("initial", "handshake") and packet.version != tc.version:
            raise TraceAssertionViolation(
                "%s packet from %s:%d used version 0x%x, expected 0x%x"
                % (packet.packet_type, packet.src, packet.src_port, packet.version or 0, tc.version)
            )


def check_transfer(tc: TestCase, ctx: CheckContext) -> None:
    _check_files(ctx)
    _check_version(tc, ctx)
    _check_handshakes(ctx, 1)


def check_multiconnect(tc: TestCase, ctx: CheckContext) -> None:
    _check_files(ctx)
    _check_handshakes(ctx, len(ctx.files))


def check_chacha20(tc: TestCase, ctx: CheckContext) -> None:
    check_transfer(tc, ctx)
    suites = {p.cipher_suite for p in ctx.server_trace.get(Direction.FROM_SERVER)}
    suites.discard(None)
    if suites != {TLS_CHACHA20_POLY1305_SHA256}:
        raise TraceAssertionViolation(
            "server selected cipher suites %s, expected 0x%04x"
            % (", ".join("0x%04x" % s for s in sorted(suites)) or "none", TLS_CHACHA20_POLY1305_SHA256)
        )


def check_retry(tc: TestCase, ctx: CheckContext) -> None:
    check_transfer(tc, ctx)
    trace = ctx.server_trace
    retries = trace.get_long_header("retry", Direction.FROM_SERVER)
    if not retries:
        raise TraceAssertionViolation("server did not send a Retry packet")
    tokens = {p.token for p in retries if p.token}
    if not tokens:
        raise TraceAssertionViolation("Retry packet did not carry a token")

    first_retry = retries[0].time
    initials = [
        p
        for p in trace.get_long_header("initial", Direction.TO_SERVER)
        if p.time >= first_retry
    ]
    if not any(p.token in tokens for p in initials):
        raise TraceAssertionViolation(
            "client did not echo the Retry token in a subsequent Initial packet"
        )


def check_resumption(tc: TestCase, ctx: CheckContext) -> None:
    _check_files(ctx)
    _check_handshakes(ctx, 2)


def check_zerortt(tc: TestCase, ctx: CheckContext) -> None:
    _check_files(ctx)
    _check_handshakes(ctx, 2)
    zero_rtt = ctx.server_trace.get_long_header("0rtt", Direction.TO_SERVER)
    if not zero_rtt:
        raise TraceAssertionViolation("client did not send any 0-RTT packets")
    if not any(p.has_frame(QuicFrameType.STREAM_BASE) for p in zero_rtt):
        raise TraceAssertionViolation("0-RTT packets did not carry any STREAM frames")


def check_http3(tc: TestCase, ctx: CheckContext) -> None:
    check_transfer(tc, ctx)
    offered = set()
    for packet in ctx.server_trace.get(Direction.TO_SERVER):
        offered.update(packet.alpn)
    if "h3" not in offered:
        raise TraceAssertionViolation(
            "client did not offer ALPN h3 (offered: %s)" % (", ".join(sorted(offered)) or "none")
        )


def check_keyupdate(tc: TestCase, ctx: CheckContext) -> None:
    check_transfer(tc, ctx)
    trace = ctx.server_trace
    updated = [p for p in trace.get_1rtt() if p.key_phase == 1]
    if not updated:
        raise TraceAssertionViolation("no 1-RTT packet was sent with key phase 1")
    if not is_to_server(updated[0]):
        raise TraceAssertionViolation("key update was not initiated by the client")
    if not any(p.key_phase == 1 for p in trace.get_1rtt(Direction.FROM_SERVER)):
        raise TraceAssertionViolation("server did not update its keys")


def check_ecn(tc: TestCase, ctx: CheckContext) -> None:
    check_transfer(tc, ctx)
    for direction, peer in ((Direction.TO_SERVER, "client"), (Direction.FROM_SERVER, "server")):
        packets = ctx.server_trace.get(direction)
        if not any(p.ecn in (1, 2) for p in packets):
            raise TraceAssertionViolation("%s did not mark any packets ECT" % peer)
        if not any(p.has_frame(QuicFrameType.ACK_ECN) for p in packets):
            raise TraceAssertionViolation("%s did not send any ACK_ECN frames" % peer)


def check_amplificationlimit(tc: TestCase, ctx: CheckContext) -> None:
    check_transfer(tc, ctx)
    trace = ctx.server_trace
    validated = [p.time for p in trace.get_long_header("handshake", Direction.TO_SERVER)]
    if not validated:
        raise TraceAssertionViolation("client never sent a Handshake packet")
    received = sum(p.size for p in trace.get(Direction.TO_SERVER) if p.time < validated[0])
    sent = sum(p.size for p in trace.get(Direction.FROM_SERVER) if p.time < validated[0])
    if sent > 3 * received:
        raise TraceAssertionViolation(
            "server sent %d bytes before address validation, limit is %d" % (sent, 3 * received)
        )


def check_ipv6(tc: TestCase, ctx: CheckContext) -> None:
    check_transfer(tc, ctx)
    for packet in ctx.server_trace:
        if ":" not in packet.src or ":" not in packet.dst:
            raise TraceAssertionViolation(
                "packet from %s to %s was not sent over IPv6" % (packet.src, packet.dst)
            )


def check_v2(tc: TestCase, ctx: CheckContext) -> None:
    _check_files(ctx)
    _check_handshakes(ctx, 1)
    trace = ctx.server_trace
    initials = trace.get_long_header("initial", Direction.TO_SERVER)
    if not initials or initials[0].version != QuicProtocolVersion.VERSION_1:
        raise TraceAssertionViolation("client did not start the connection with QUIC v1")
    handshakes = trace.get_long_header("handshake", Direction.FROM_SERVER)
    if not handshakes or any(p.version != QuicProtocolVersion.VERSION_2 for p in handshakes):
        raise TraceAssertionViolation("server did not use QUIC v2 for its Handshake packets")


def check_rebinding(tc: TestCase, ctx: CheckContext) -> None:
    _check_files(ctx)
    _check_handshakes(ctx, 1)
    trace = ctx.server_trace
    check_path_migration(
        trace.get_1rtt(Direction.FROM_SERVER), trace.get_1rtt(Direction.TO_SERVER)
    )


def check_connectionmigration(tc: TestCase, ctx: CheckContext) -> None:
    _check_files(ctx)
    _check_handshakes(ctx, 1)
    trace = ctx.client_trace
    check_path_migration(
        trace.get_1rtt(Direction.TO_SERVER), trace.get_1rtt(Direction.FROM_SERVER)
    )


def measure_goodput(tc: TestCase, ctx: CheckContext) -> float:
    check_transfer(tc, ctx)
    trace = ctx.client_trace
    initials = trace.get_long_header("initial", Direction.TO_SERVER)
    data = trace.get_1rtt(Direction.FROM_SERVER)
    if not initials or not data:
        raise TraceAssertionViolation("trace does not cover the transfer")
    elapsed = data[-1].time - initials[0].time
    if elapsed <= 0:
        raise TraceAssertionViolation("transfer took no measurable time")
    octets = sum(tc.file_sizes)
    goodput = (8 * octets) / elapsed / 1000
    logger.info("Transferred %d bytes in %.3f s: %d kbps", octets, elapsed, goodput)
    return goodput


CHECKS: Dict[Kind, Callable[[TestCase, CheckContext], Optional[float]]] = {
    Kind.HANDSHAKE: check_transfer,
    Kind.TRANSFER: check_transfer,
    Kind.LONGRTT: check_transfer,
    Kind.CHACHA20: check_chacha20,
    Kind.MULTIPLEXING: check_transfer,
    Kind.RETRY: check_retry,
    Kind.RESUMPTION: check_resumption,
    Kind.ZERORTT: check_zerortt,
    Kind.HTTP3: check_http3,
    Kind.BLACKHOLE: check_transfer,
    Kind.KEYUPDATE: check_keyupdate,
    Kind.ECN: check_ecn,
    Kind.AMPLIFICATIONLIMIT: check_amplificationlimit,
    Kind.HANDSHAKELOSS: check_multiconnect,
    Kind.TRANSFERLOSS: check_transfer,
    Kind.HANDSHAKECORRUPTION: check_multiconnect,
    Kind.TRANSFERCORRUPTION: check_transfer,
    Kind.IPV6: check_ipv6,
    Kind.V2: check_v2,
    Kind.PORTREBINDING: check_rebinding,
    Kind.ADDRESSREBINDING: check_rebinding,
    Kind.CONNECTIONMIGRATION: check_connectionmigration,
    Kind.GOODPUT: measure_goodput,
    Kind.CROSSTRAFFIC: measure_goodput,
}


def evaluate(tc: TestCase, ctx: CheckContext) -> Outcome:
    try:
        value = CHECKS[tc.kind](tc, ctx)
    except CheckFailure as exc:
        logger.info("%s failed: %s", tc.name, exc)
        return Outcome(TestResult.FAILED, str(exc))
    return Outcome(TestResult.SUCCEEDED, value=value)


TESTCASES: List[TestCase] = [
    TestCase(
        "handshake", "H", Kind.HANDSHAKE,
        "Handshake completes successfully.",
        file_sizes=(1 * KB,),
    ),
    TestCase(
        "transfer", "DC", Kind.TRANSFER,
        "Stream data is being sent and received correctly. Connection close completes with a zero error code.",
        file_sizes=(2 * MB, 3 * MB, 5 * MB),
    ),
    TestCase(
        "longrtt", "LR", Kind.LONGRTT,
        "Handshake completes when RTT is long.",
        file_sizes=(1 * KB,),
        scenario="simple-p2p --delay=750ms --bandwidth=10Mbps --queue=25",
        client_testname="handshake", server_testname="handshake",
    ),
    TestCase(
        "chacha20", "C20", Kind.CHACHA20,
        "Handshake completes using ChaCha20.",
        file_sizes=(3 * MB,),
    ),
    TestCase(
        "multiplexing", "M", Kind.MULTIPLEXING,
        "Thousands of files are transferred over a single connection, and server increased stream limits to accommodate client requests.",
        file_sizes=(32,) * 200,
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "retry", "S", Kind.RETRY,
        "Server sends a Retry, and a subsequent connection using the Retry token completes successfully.",
        file_sizes=(10 * KB,),
    ),
    TestCase(
        "resumption", "R", Kind.RESUMPTION,
        "Connection is established using TLS Session Resumption.",
        file_sizes=(5 * KB, 10 * KB),
    ),
    TestCase(
        "zerortt", "Z", Kind.ZERORTT,
        "0-RTT data is being sent and acted upon.",
        file_sizes=(5 * KB,) * 10,
    ),
    TestCase(
        "http3", "3", Kind.HTTP3,
        "An H3 transaction succeeded.",
        file_sizes=(5 * KB, 10 * KB, 500 * KB),
    ),
    TestCase(
        "blackhole", "B", Kind.BLACKHOLE,
        "Transfer succeeds despite underlying network blacking out for a few seconds.",
        file_sizes=(10 * MB,),
        scenario="blackhole --delay=15ms --bandwidth=10Mbps --queue=25 --on=5s --off=2s",
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "keyupdate", "U", Kind.KEYUPDATE,
        "One of the two endpoints updates keys and the peer responds correctly.",
        file_sizes=(3 * MB,),
        server_testname="transfer",
    ),
    TestCase(
        "ecn", "E", Kind.ECN,
        "Explicit Congestion Notification is used and acknowledged.",
        file_sizes=(3 * MB,),
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "amplificationlimit", "A", Kind.AMPLIFICATIONLIMIT,
        "The server obeys the 3x amplification limit.",
        file_sizes=(5 * KB,),
        scenario="drop-rate --delay=15ms --bandwidth=10Mbps --queue=25 --rate_to_server=0 --rate_to_client=0 --burst_to_client=3",
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "handshakeloss", "L1", Kind.HANDSHAKELOSS,
        "Handshake completes under extreme packet loss.",
        file_sizes=(1 * KB,) * 50,
        scenario="drop-rate --delay=15ms --bandwidth=10Mbps --queue=25 --rate_to_server=30 --rate_to_client=30",
        timeout=300,
        client_testname="multiconnect", server_testname="handshake",
    ),
    TestCase(
        "transferloss", "L2", Kind.TRANSFERLOSS,
        "Transfer completes under moderate packet loss.",
        file_sizes=(1 * MB,) * 3,
        scenario="drop-rate --delay=15ms --bandwidth=10Mbps --queue=25 --rate_to_server=2 --rate_to_client=2",
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "handshakecorruption", "C1", Kind.HANDSHAKECORRUPTION,
        "Handshake completes under extreme packet corruption.",
        file_sizes=(1 * KB,) * 50,
        scenario="corrupt-rate --delay=15ms --bandwidth=10Mbps --queue=25 --rate_to_server=30 --rate_to_client=30",
        timeout=300,
        client_testname="multiconnect", server_testname="handshake",
    ),
    TestCase(
        "transfercorruption", "C2", Kind.TRANSFERCORRUPTION,
        "Transfer completes under moderate packet corruption.",
        file_sizes=(1 * MB,) * 3,
        scenario="corrupt-rate --delay=15ms --bandwidth=10Mbps --queue=25 --rate_to_server=2 --rate_to_client=2",
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "ipv6", "6", Kind.IPV6,
        "A transfer across an IPv6-only network succeeded.",
        file_sizes=(5 * KB, 10 * KB),
        client_testname="transfer", server_testname="transfer",
        ipv6=True,
    ),
    TestCase(
        "v2", "V2", Kind.V2,
        "Server should select QUIC v2 in compatible version negotiation.",
        file_sizes=(1 * KB,),
        version=QuicProtocolVersion.VERSION_2,
    ),
    TestCase(
        "portrebinding", "BP", Kind.PORTREBINDING,
        "Transfer completes under frequent port rebindings on the client side.",
        file_sizes=(10 * MB,),
        scenario="rebind --delay=15ms --bandwidth=10Mbps --queue=25 --first-rebind=1s --rebind-freq=5s",
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "addressrebinding", "BA", Kind.ADDRESSREBINDING,
        "Transfer completes under frequent IP address and port rebindings on the client side.",
        file_sizes=(10 * MB,),
        scenario="rebind --delay=15ms --bandwidth=10Mbps --queue=25 --first-rebind=1s --rebind-freq=5s --rebind-addr=193.167.0.0/24",
        client_testname="transfer", server_testname="transfer",
    ),
    TestCase(
        "connectionmigration", "CM", Kind.CONNECTIONMIGRATION,
        "Client uses the server's preferred address and migrates the connection to it.",
        file_sizes=(2 * MB,),
    ),
]

MEASUREMENTS: List[Measurement] = [
    Measurement(
        "goodput", "G", Kind.GOODPUT,
        "Measures connection goodput over a 10Mbps link.",
        file_sizes=(10 * MB,),
        scenario="simple-p2p --delay=15ms --bandwidth=10Mbps --queue=25",
        client_testname="transfer", server_testname="transfer",
    ),
    Measurement(
        "crosstraffic", "C", Kind.CROSSTRAFFIC,
        "Measures goodput over a 10Mbps link when competing with a TCP (cubic) connection.",
        file_sizes=(25 * MB,),
        scenario="simple-p2p --delay=15ms --bandwidth=10Mbps --queue=25",
        client_testname="transfer", server_testname="transfer",
        services=("iperf_server", "iperf_client"),
    ),
]

# a measurement is only meaningful if this test succeeded for the same pair
BASELINE_TESTCASE = "transfer"


def find(name: str) -> TestCase:
    for tc in TESTCASES + MEASUREMENTS:
        if tc.name == name:
            return tc
    raise KeyError(name)
