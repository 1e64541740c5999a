"""
Pytest fixtures shared by the interop harness tests.

The fakes stand in for docker compose and the packet capture, so the suite
runs without containers or tshark.
"""

import asyncio
import os
import shutil
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from aioquic.quic.packet import QuicProtocolVersion

from implementations import Implementation, Role
from traces import CLIENT_ADDRESSES, SERVER_ADDRESSES, Trace, TracePacket

CLIENT = CLIENT_ADDRESSES[0]
SERVER = SERVER_ADDRESSES[0]


def packet(time, to_server, **kwargs) -> TracePacket:
    if to_server:
        addressing = dict(src=CLIENT, src_port=50000, dst=SERVER, dst_port=443)
    else:
        addressing = dict(src=SERVER, src_port=443, dst=CLIENT, dst_port=50000)
    addressing.update(kwargs.pop("addressing", {}))
    kwargs.setdefault("size", 1200)
    return TracePacket(time=time, **addressing, **kwargs)


def handshake_trace(duration: float = 2.0) -> Trace:
    """A trace of one successful connection."""
    v1 = QuicProtocolVersion.VERSION_1
    return Trace(
        [
            packet(0.0, True, packet_type="initial", version=v1, scid="c1"),
            packet(0.1, False, packet_type="initial", version=v1, scid="s1"),
            packet(0.1, False, packet_type="handshake", version=v1, scid="s1"),
            packet(0.2, True, packet_type="handshake", version=v1, scid="c1"),
            packet(0.3, True),
            packet(duration, False),
        ]
    )


class FakeStack:
    """
    Scripted replacement for ComposeStack.

    `behaviour` is one of "success", "hang", "error" or "raise", or a dict of
    exit codes to report.
    """

    def __init__(self, environment, services, behaviour="success"):
        self.environment = environment
        self.services = tuple(services)
        self.behaviour = behaviour
        self.calls = []

    async def up(self):
        self.calls.append("up")
        if self.behaviour == "hang":
            await asyncio.sleep(60)
        if self.behaviour == "error":
            from stack import OrchestrationFailure

            raise OrchestrationFailure("image not found")
        if self.behaviour == "raise":
            raise RuntimeError("boom")
        if isinstance(self.behaviour, dict):
            exit_codes = dict(self.behaviour)
        else:
            exit_codes = {"client": 0, "server": 137, "sim": 137}
        if exit_codes.get("client") == 0:
            # the client downloads everything the server serves
            for name in os.listdir(self.environment["WWW"]):
                shutil.copy(
                    os.path.join(self.environment["WWW"], name),
                    os.path.join(self.environment["DOWNLOADS"], name),
                )
        return exit_codes, "client exited with code %d" % exit_codes.get("client", 0)

    async def kill(self):
        self.calls.append("kill")

    async def down(self):
        self.calls.append("down")


class FakeCompose:
    def __init__(self):
        self.stacks = []
        self.behaviours = {}
        self.default = "success"
        self.noncompliant = set()

    def set(self, server, client, behaviour, testcase=None):
        self.behaviours[(server, client, testcase)] = behaviour

    def __call__(self, environment, services):
        behaviour = self.default
        if "server" in services and "client" in services:
            for key in (
                (environment["SERVER"], environment["CLIENT"], environment["TESTCASE_CLIENT"]),
                (environment["SERVER"], environment["CLIENT"], None),
            ):
                if key in self.behaviours:
                    behaviour = self.behaviours[key]
                    break
        else:
            # compliant endpoints reject the random test name
            role = services[-1]
            image = environment[role.upper()]
            code = 0 if image in self.noncompliant else 127
            behaviour = {role: code, "sim": 137}
        stack = FakeStack(environment, services, behaviour)
        self.stacks.append(stack)
        return stack


@pytest.fixture
def compose():
    return FakeCompose()


@pytest.fixture
def trace_loader():
    def load(pcap, keylog_file=None):
        return handshake_trace()

    return load


@pytest.fixture
def implementations():
    return [
        Implementation("alpha", "alpha", Role.BOTH),
        Implementation("beta", "beta", Role.BOTH),
        Implementation("gamma", "gamma", Role.CLIENT),
    ]
