import asyncio
import logging
import os
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from implementations import Implementation, clients, servers
from result import MeasurementResult, Outcome, ResultsMatrix, TestResult
from stack import (
    ENDPOINT_SERVICES,
    ComposeStack,
    OrchestrationFailure,
    RunArtifacts,
    acquire_artifacts,
    build_environment,
    generate_certificates,
    save_logs,
)
from testcases import (
    BASELINE_TESTCASE,
    CheckContext,
    Measurement,
    Perspective,
    TestCase,
    evaluate,
    find,
    format_measurement,
    generate_files,
    random_string,
)
from traces import Trace, load_trace

logger = logging.getLogger(__name__)

TESTCASE_TOKEN_LENGTH = 6
COMPLIANCE_TIMEOUT = 30

# status an endpoint exits with for a test case it does not implement
UNSUPPORTED_EXIT_CODE = 127
# compose stops the remaining containers once the client exits
STOPPED_EXIT_CODES = (137, 143)

DEPENDENCY_SKIPPED = "Test skipped as transfer failed"
NOT_COMPLIANT = "%s is not compliant"

StackFactory = Callable[[Dict[str, str], Sequence[str]], ComposeStack]


def testcase_token() -> str:
    return random_string(TESTCASE_TOKEN_LENGTH)


def classify_exit(exit_codes: Dict[str, int]) -> Optional[Outcome]:
    """
    Map the container exit codes to a verdict, or None if the run needs to
    be checked further.
    """
    for service in ("server", "client"):
        if exit_codes.get(service) == UNSUPPORTED_EXIT_CODE:
            return Outcome(TestResult.UNSUPPORTED, "%s does not support this test" % service)

    client = exit_codes.get("client")
    if client is None:
        stopped = ", ".join("%s exited with code %d" % item for item in sorted(exit_codes.items()))
        return Outcome(TestResult.FAILED, "client did not finish (%s)" % stopped)
    if client != 0:
        return Outcome(TestResult.FAILED, "client exited with code %d" % client)

    server = exit_codes.get("server")
    if server is not None and server != 0 and server not in STOPPED_EXIT_CODES:
        return Outcome(TestResult.FAILED, "server exited with code %d" % server)
    return None


class InteropRunner:
    def __init__(
        self,
        implementations: List[Implementation],
        testcases: List[TestCase],
        measurements: List[Measurement],
        stack_factory: StackFactory = ComposeStack,
        trace_loader: Callable[[str, Optional[str]], Trace] = load_trace,
        token_factory: Callable[[], str] = testcase_token,
        log_dir: Optional[str] = None,
        compliance_check: bool = True,
        server_names: Optional[Sequence[str]] = None,
        client_names: Optional[Sequence[str]] = None,
    ):
        self._servers = [
            impl
            for impl in servers(implementations)
            if server_names is None or impl.name in server_names
        ]
        self._clients = [
            impl
            for impl in clients(implementations)
            if client_names is None or impl.name in client_names
        ]
        self._testcases = list(testcases)
        self._measurements = list(measurements)
        self._stack_factory = stack_factory
        self._trace_loader = trace_loader
        self._token_factory = token_factory
        self._log_dir = log_dir
        self._compliance_check = compliance_check
        self._compliant: Dict[Tuple[str, Perspective], bool] = {}
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    @property
    def servers(self) -> List[Implementation]:
        return self._servers

    @property
    def clients(self) -> List[Implementation]:
        return self._clients

    @property
    def testcases(self) -> List[TestCase]:
        return self._testcases

    @property
    def measurements(self) -> List[Measurement]:
        return self._measurements

    async def _teardown(self, stack: ComposeStack) -> None:
        try:
            await stack.down()
        except OrchestrationFailure as exc:
            logger.error("Teardown failed: %s", exc)

    async def _run_stack(
        self, stack: ComposeStack, timeout: float
    ) -> Tuple[Dict[str, int], str]:
        try:
            try:
                return await asyncio.wait_for(stack.up(), timeout=timeout)
            except asyncio.TimeoutError:
                await stack.kill()
                raise
        finally:
            await self._teardown(stack)

    async def is_compliant(
        self, implementation: Implementation, perspective: Perspective
    ) -> bool:
        """
        Check that an implementation rejects an unknown test case.

        The endpoint is started with a random test name and has to exit with
        UNSUPPORTED_EXIT_CODE.
        """
        key = (implementation.name, perspective)
        if key in self._compliant:
            return self._compliant[key]

        token = self._token_factory()
        logger.info("Checking compliance of %s %s", implementation.name, perspective.value)
        compliant = False
        with acquire_artifacts() as artifacts:
            env = build_environment(
                artifacts,
                find("handshake"),
                implementation.image,
                implementation.image,
                testnames=(token, token),
            )
            stack = self._stack_factory(env, ("sim", perspective.value))
            try:
                exit_codes, _ = await self._run_stack(stack, COMPLIANCE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.error("%s timed out on unknown test case %s", implementation.name, token)
            except OrchestrationFailure as exc:
                logger.error("Unable to check compliance of %s: %s", implementation.name, exc)
            else:
                compliant = exit_codes.get(perspective.value) == UNSUPPORTED_EXIT_CODE
                if not compliant:
                    logger.error(
                        "%s %s exited with %s on unknown test case %s, expected %d",
                        implementation.name,
                        perspective.value,
                        exit_codes.get(perspective.value),
                        token,
                        UNSUPPORTED_EXIT_CODE,
                    )
        self._compliant[key] = compliant
        return compliant

    async def _execute(
        self,
        artifacts: RunArtifacts,
        server: Implementation,
        client: Implementation,
        testcase: TestCase,
    ) -> Outcome:
        generate_certificates(artifacts.certs_dir)
        artifacts.files = generate_files(artifacts.www_dir, testcase.file_sizes)
        env = build_environment(artifacts, testcase, server.image, client.image)
        logger.debug("Environment: %s", env)

        stack = self._stack_factory(env, ENDPOINT_SERVICES + testcase.services)
        try:
            artifacts.exit_codes, artifacts.output = await self._run_stack(
                stack, testcase.timeout
            )
        except asyncio.TimeoutError:
            logger.info("Test case %s timed out after %d s", testcase.name, testcase.timeout)
            return Outcome(TestResult.FAILED, "TIMEOUT after %d s" % testcase.timeout)
        except OrchestrationFailure as exc:
            logger.error("Unable to run %s: %s", testcase.name, exc)
            return Outcome(TestResult.FAILED, str(exc))

        outcome = classify_exit(artifacts.exit_codes)
        if outcome is not None:
            return outcome

        context = CheckContext(
            www_dir=artifacts.www_dir,
            download_dir=artifacts.download_dir,
            files=artifacts.files,
            server_pcap=artifacts.server_pcap,
            client_pcap=artifacts.client_pcap,
            keylog_file=artifacts.keylog_file,
            loader=self._trace_loader,
        )
        return evaluate(testcase, context)

    async def run_testcase(
        self,
        server: Implementation,
        client: Implementation,
        testcase: TestCase,
        log_name: Optional[str] = None,
    ) -> Outcome:
        logger.info(
            "Server: %s. Client: %s. Running test case: %s",
            server.name,
            client.name,
            testcase.name,
        )
        start = time.time()
        try:
            with acquire_artifacts() as artifacts:
                try:
                    outcome = await self._execute(artifacts, server, client, testcase)
                finally:
                    if self._log_dir is not None:
                        save_logs(
                            artifacts,
                            os.path.join(
                                self._log_dir,
                                "%s_%s" % (server.name, client.name),
                                log_name or testcase.name,
                            ),
                        )
        except Exception as exc:
            # one triple must never abort the whole run
            logger.exception("Test case %s failed with an internal error", testcase.name)
            outcome = Outcome(TestResult.FAILED, "internal error: %s" % exc)

        logger.info(
            "Test case %s %s after %.1f s%s",
            testcase.name,
            outcome.result.value,
            time.time() - start,
            ": " + outcome.reason if outcome.reason else "",
        )
        return outcome

    async def run_measurement(
        self, server: Implementation, client: Implementation, measurement: Measurement
    ) -> MeasurementResult:
        values = []
        for i in range(measurement.repetitions):
            outcome = await self.run_testcase(
                server, client, measurement, log_name="%s/%d" % (measurement.name, i + 1)
            )
            if outcome.result is not TestResult.SUCCEEDED:
                return MeasurementResult(outcome.result, outcome.reason)
            values.append(outcome.value)
        details = format_measurement(values, measurement.unit)
        logger.info("Measurement %s: %s", measurement.name, details)
        return MeasurementResult(TestResult.SUCCEEDED, details)

    async def run_pair(
        self, server: Implementation, client: Implementation, matrix: ResultsMatrix
    ) -> None:
        if self._compliance_check:
            for implementation, perspective in (
                (server, Perspective.SERVER),
                (client, Perspective.CLIENT),
            ):
                if not await self.is_compliant(implementation, perspective):
                    logger.info(
                        "Skipping %s/%s: %s",
                        server.name,
                        client.name,
                        NOT_COMPLIANT % implementation.name,
                    )
                    for testcase in self._testcases:
                        matrix.record(server.name, client.name, testcase.name, TestResult.FAILED)
                    # transfer failed, so the measurements are never attempted
                    for measurement in self._measurements:
                        matrix.record_measurement(
                            server.name,
                            client.name,
                            measurement.name,
                            MeasurementResult(TestResult.UNSUPPORTED, DEPENDENCY_SKIPPED),
                        )
                    return

        # latched before any measurement of this pair is scheduled
        transfer_succeeded = True
        for testcase in self._testcases:
            outcome = await self.run_testcase(server, client, testcase)
            matrix.record(server.name, client.name, testcase.name, outcome.result)
            if testcase.name == BASELINE_TESTCASE:
                transfer_succeeded = outcome.result is TestResult.SUCCEEDED

        for measurement in self._measurements:
            if not transfer_succeeded:
                logger.info(
                    "Skipping measurement %s for %s/%s: %s",
                    measurement.name,
                    server.name,
                    client.name,
                    DEPENDENCY_SKIPPED,
                )
                result = MeasurementResult(TestResult.UNSUPPORTED, DEPENDENCY_SKIPPED)
            else:
                result = await self.run_measurement(server, client, measurement)
            matrix.record_measurement(server.name, client.name, measurement.name, result)

    async def run(self) -> ResultsMatrix:
        matrix = ResultsMatrix()
        self.start_time = time.time()
        for server in self._servers:
            for client in self._clients:
                logger.info("Running with server %s and client %s", server.name, client.name)
                await self.run_pair(server, client, matrix)
        self.end_time = time.time()
        return matrix
