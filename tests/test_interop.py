"""
Tests for the orchestration of single runs and the scheduler.

Tests cover:
- Classification of container exit codes
- Teardown of containers and run directories on every exit path
- Timeouts
- The per-pair dependency of measurements on the transfer test
- The compliance probe
"""

import dataclasses
import os

import pytest

from interop import (
    DEPENDENCY_SKIPPED,
    InteropRunner,
    classify_exit,
)
from result import TestResult
from testcases import find


def small_goodput(repetitions=2):
    return dataclasses.replace(find("goodput"), file_sizes=(1000,), repetitions=repetitions)


def run_root(stack):
    return os.path.dirname(stack.environment["CERTS"])


def make_runner(implementations, compose, trace_loader, **kwargs):
    kwargs.setdefault("testcases", [find("handshake"), find("transfer")])
    kwargs.setdefault("measurements", [small_goodput()])
    kwargs.setdefault("compliance_check", False)
    return InteropRunner(
        implementations=implementations,
        stack_factory=compose,
        trace_loader=trace_loader,
        **kwargs,
    )


class TestClassifyExit:
    def test_success_needs_further_checks(self):
        assert classify_exit({"client": 0, "server": 137, "sim": 137}) is None
        assert classify_exit({"client": 0, "server": 0}) is None

    def test_iperf_exits_are_ignored(self):
        exit_codes = {"iperf_client": 1, "client": 0, "server": 137, "iperf_server": 137}
        assert classify_exit(exit_codes) is None

    def test_unsupported(self):
        assert classify_exit({"client": 127}).result is TestResult.UNSUPPORTED
        assert classify_exit({"client": 1, "server": 127}).result is TestResult.UNSUPPORTED

    def test_client_failure(self):
        outcome = classify_exit({"client": 1, "server": 137})
        assert outcome.result is TestResult.FAILED
        assert outcome.reason == "client exited with code 1"

    def test_server_failure(self):
        outcome = classify_exit({"client": 0, "server": 1})
        assert outcome.result is TestResult.FAILED
        assert "server exited with code 1" in outcome.reason

    def test_client_never_finished(self):
        outcome = classify_exit({"sim": 1})
        assert outcome.result is TestResult.FAILED
        assert "sim exited with code 1" in outcome.reason


class TestRunTestcase:
    @pytest.mark.asyncio
    async def test_success_tears_down(self, implementations, compose, trace_loader):
        runner = make_runner(implementations, compose, trace_loader)

        outcome = await runner.run_testcase(
            implementations[0], implementations[1], find("transfer")
        )

        assert outcome.result is TestResult.SUCCEEDED
        (stack,) = compose.stacks
        assert stack.calls == ["up", "down"]
        assert not os.path.exists(run_root(stack))

    @pytest.mark.asyncio
    async def test_environment(self, implementations, compose, trace_loader):
        runner = make_runner(implementations, compose, trace_loader)

        await runner.run_testcase(implementations[0], implementations[1], find("handshakeloss"))

        env = compose.stacks[0].environment
        assert env["SERVER"] == "alpha"
        assert env["CLIENT"] == "beta"
        assert env["TESTCASE_CLIENT"] == "multiconnect"
        assert env["TESTCASE_SERVER"] == "handshake"
        assert env["TEST_TYPE"] == "TEST"
        assert len(env["REQUESTS"].split(" ")) == 50
        assert env["REQUESTS"].startswith("https://server4:443/")

    @pytest.mark.asyncio
    async def test_timeout_kills_stack(self, implementations, compose, trace_loader):
        compose.default = "hang"
        runner = make_runner(implementations, compose, trace_loader)
        testcase = dataclasses.replace(find("handshake"), timeout=0.05)

        outcome = await runner.run_testcase(implementations[0], implementations[1], testcase)

        assert outcome.result is TestResult.FAILED
        assert outcome.reason.startswith("TIMEOUT")
        (stack,) = compose.stacks
        assert stack.calls == ["up", "kill", "down"]
        assert not os.path.exists(run_root(stack))

    @pytest.mark.asyncio
    async def test_unsupported(self, implementations, compose, trace_loader):
        compose.default = {"client": 127, "server": 137}
        runner = make_runner(implementations, compose, trace_loader)

        outcome = await runner.run_testcase(implementations[0], implementations[1], find("retry"))

        assert outcome.result is TestResult.UNSUPPORTED
        assert compose.stacks[0].calls == ["up", "down"]

    @pytest.mark.asyncio
    async def test_orchestration_failure(self, implementations, compose, trace_loader):
        compose.default = "error"
        runner = make_runner(implementations, compose, trace_loader)

        outcome = await runner.run_testcase(implementations[0], implementations[1], find("handshake"))

        assert outcome.result is TestResult.FAILED
        assert "image not found" in outcome.reason
        (stack,) = compose.stacks
        assert stack.calls == ["up", "down"]
        assert not os.path.exists(run_root(stack))

    @pytest.mark.asyncio
    async def test_internal_error_is_contained(self, implementations, compose, trace_loader):
        compose.default = "raise"
        runner = make_runner(implementations, compose, trace_loader)

        outcome = await runner.run_testcase(implementations[0], implementations[1], find("handshake"))

        assert outcome.result is TestResult.FAILED
        assert "internal error" in outcome.reason
        (stack,) = compose.stacks
        assert stack.calls == ["up", "down"]
        assert not os.path.exists(run_root(stack))

    @pytest.mark.asyncio
    async def test_logs_are_kept(self, implementations, compose, trace_loader, tmp_path):
        runner = make_runner(implementations, compose, trace_loader, log_dir=str(tmp_path))

        await runner.run_testcase(implementations[0], implementations[1], find("handshake"))

        saved = tmp_path / "alpha_beta" / "handshake"
        assert (saved / "output.txt").read_text() == "client exited with code 0"
        assert (saved / "client").is_dir()
        assert not os.path.exists(run_root(compose.stacks[0]))


class TestRun:
    @pytest.mark.asyncio
    async def test_every_triple_is_recorded(self, implementations, compose, trace_loader):
        runner = make_runner(implementations, compose, trace_loader)

        matrix = await runner.run()

        assert [impl.name for impl in runner.servers] == ["alpha", "beta"]
        assert [impl.name for impl in runner.clients] == ["alpha", "beta", "gamma"]
        assert len(matrix.results) == 2 * 3 * 2
        assert len(matrix.measurements) == 2 * 3
        assert all(result is TestResult.SUCCEEDED for _, result in matrix.cells())

    @pytest.mark.asyncio
    async def test_measurement_statistics(self, implementations, compose, trace_loader):
        runner = make_runner(implementations, compose, trace_loader, testcases=[])

        result = await runner.run_measurement(
            implementations[0], implementations[1], small_goodput(repetitions=3)
        )

        assert result.result is TestResult.SUCCEEDED
        assert result.details == "4 (± 0) kbps"
        assert len(compose.stacks) == 3

    @pytest.mark.asyncio
    async def test_measurement_stops_at_first_failed_repetition(
        self, implementations, compose, trace_loader
    ):
        compose.default = {"client": 1, "server": 137}
        runner = make_runner(implementations, compose, trace_loader, testcases=[])

        result = await runner.run_measurement(implementations[0], implementations[1], small_goodput())

        assert result.result is TestResult.FAILED
        assert len(compose.stacks) == 1

    @pytest.mark.asyncio
    async def test_failed_transfer_skips_measurements_of_that_pair(
        self, implementations, compose, trace_loader
    ):
        compose.set("alpha", "beta", {"client": 1, "server": 137}, testcase="transfer")
        runner = make_runner(implementations, compose, trace_loader)

        matrix = await runner.run()

        assert matrix.get("alpha", "beta", "transfer") is TestResult.FAILED
        skipped = matrix.get_measurement("alpha", "beta", "goodput")
        assert skipped.result is TestResult.UNSUPPORTED
        assert skipped.details == DEPENDENCY_SKIPPED
        pair_stacks = [
            s
            for s in compose.stacks
            if s.environment["SERVER"] == "alpha" and s.environment["CLIENT"] == "beta"
        ]
        # handshake and transfer only
        assert len(pair_stacks) == 2

        # the other pairs are measured
        for server, client in (("beta", "alpha"), ("alpha", "alpha"), ("alpha", "gamma")):
            assert matrix.get_measurement(server, client, "goodput").result is TestResult.SUCCEEDED

    @pytest.mark.asyncio
    async def test_measurements_run_without_transfer_in_catalog(
        self, implementations, compose, trace_loader
    ):
        runner = make_runner(implementations, compose, trace_loader, testcases=[find("handshake")])

        matrix = await runner.run()

        assert matrix.get_measurement("alpha", "beta", "goodput").result is TestResult.SUCCEEDED

    @pytest.mark.asyncio
    async def test_selected_implementations(self, implementations, compose, trace_loader):
        runner = make_runner(
            implementations,
            compose,
            trace_loader,
            server_names=["beta"],
            client_names=["gamma"],
        )

        matrix = await runner.run()

        assert {key[:2] for key, _ in matrix.cells()} == {("beta", "gamma")}


class TestCompliance:
    @pytest.mark.asyncio
    async def test_noncompliant_implementation_fails_its_pairs(
        self, implementations, compose, trace_loader
    ):
        compose.noncompliant.add("gamma")
        runner = make_runner(implementations, compose, trace_loader, compliance_check=True)

        matrix = await runner.run()

        for server in ("alpha", "beta"):
            assert matrix.get(server, "gamma", "handshake") is TestResult.FAILED
            assert matrix.get(server, "gamma", "transfer") is TestResult.FAILED
            skipped = matrix.get_measurement(server, "gamma", "goodput")
            assert skipped.result is TestResult.UNSUPPORTED
            assert skipped.details == DEPENDENCY_SKIPPED
            assert matrix.get(server, "alpha", "handshake") is TestResult.SUCCEEDED
        # no test runs involve gamma
        assert not [
            s for s in compose.stacks if "server" in s.services and s.environment["CLIENT"] == "gamma"
        ]

    @pytest.mark.asyncio
    async def test_compliance_is_probed_once_with_a_random_token(
        self, implementations, compose, trace_loader
    ):
        runner = make_runner(
            implementations,
            compose,
            trace_loader,
            compliance_check=True,
            token_factory=lambda: "zzzzzz",
        )

        await runner.run()

        probes = [s for s in compose.stacks if "server" not in s.services or "client" not in s.services]
        # alpha and beta as server, alpha, beta and gamma as client
        assert len(probes) == 5
        for probe in probes:
            assert probe.environment["TESTCASE_CLIENT"] == "zzzzzz"
            assert probe.environment["TESTCASE_SERVER"] == "zzzzzz"
            assert probe.calls == ["up", "down"]
