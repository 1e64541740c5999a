import asyncio
import datetime
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from testcases import Perspective, TestCase

logger = logging.getLogger(__name__)

COMPOSE_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "docker-compose.yml")
PROJECT_NAME = "quic-interop"
ENDPOINT_SERVICES = ("sim", "server", "client")

# paths inside the endpoint containers, where the log directories are mounted
KEYLOG_FILE = "/logs/keys.log"
QLOG_DIR = "/logs/qlog/"

# container names are fixed in the compose file
EXIT_RE = re.compile(
    r"^\s*(sim|server|client|iperf_server|iperf_client)\s+exited with code (\d+)",
    re.MULTILINE,
)


class OrchestrationFailure(Exception):
    """
    The container stack could not be started or stopped.
    """


@dataclass
class RunArtifacts:
    """
    The per-run directory tree shared with the containers.
    """

    root: str
    files: List[str] = field(default_factory=list)
    exit_codes: Dict[str, int] = field(default_factory=dict)
    output: str = ""

    @property
    def certs_dir(self) -> str:
        return os.path.join(self.root, "certs")

    @property
    def www_dir(self) -> str:
        return os.path.join(self.root, "www")

    @property
    def download_dir(self) -> str:
        return os.path.join(self.root, "downloads")

    @property
    def server_log_dir(self) -> str:
        return os.path.join(self.root, "server-logs")

    @property
    def client_log_dir(self) -> str:
        return os.path.join(self.root, "client-logs")

    @property
    def sim_log_dir(self) -> str:
        return os.path.join(self.root, "sim-logs")

    @property
    def qlog_dir(self) -> str:
        return os.path.join(self.client_log_dir, "qlog")

    @property
    def keylog_file(self) -> str:
        return os.path.join(self.client_log_dir, os.path.basename(KEYLOG_FILE))

    @property
    def server_pcap(self) -> str:
        return os.path.join(self.sim_log_dir, "trace_node_right.pcap")

    @property
    def client_pcap(self) -> str:
        return os.path.join(self.sim_log_dir, "trace_node_left.pcap")

    def directories(self) -> Tuple[str, ...]:
        return (
            self.certs_dir,
            self.www_dir,
            self.download_dir,
            self.server_log_dir,
            self.client_log_dir,
            self.sim_log_dir,
        )


@contextmanager
def acquire_artifacts(prefix: str = "quic-interop-") -> Iterator[RunArtifacts]:
    artifacts = RunArtifacts(root=tempfile.mkdtemp(prefix=prefix))
    try:
        for path in artifacts.directories():
            os.makedirs(path)
        yield artifacts
    finally:
        try:
            shutil.rmtree(artifacts.root)
        except OSError as exc:
            logger.warning("Unable to remove %s: %s", artifacts.root, exc)


def save_logs(artifacts: RunArtifacts, destination: str) -> None:
    os.makedirs(destination, exist_ok=True)
    for name, path in (
        ("server", artifacts.server_log_dir),
        ("client", artifacts.client_log_dir),
        ("sim", artifacts.sim_log_dir),
    ):
        shutil.copytree(path, os.path.join(destination, name), dirs_exist_ok=True)
    with open(os.path.join(destination, "output.txt"), "w", encoding="utf-8") as fp:
        fp.write(artifacts.output)


def _write_pem(path: str, *blobs: bytes) -> None:
    with open(path, "wb") as fp:
        for blob in blobs:
            fp.write(blob)


def generate_certificates(certs_dir: str, days: int = 10) -> None:
    now = datetime.datetime.now(datetime.timezone.utc)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "quic-interop CA")])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(ca_key, hashes.SHA256())
    )

    key = ec.generate_private_key(ec.SECP256R1())
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "server")]))
        .issuer_name(ca_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName("server"), x509.DNSName("server4"), x509.DNSName("server6")]
            ),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )

    _write_pem(
        os.path.join(certs_dir, "priv.key"),
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )
    _write_pem(
        os.path.join(certs_dir, "cert.pem"),
        cert.public_bytes(serialization.Encoding.PEM),
        ca_cert.public_bytes(serialization.Encoding.PEM),
    )
    _write_pem(
        os.path.join(certs_dir, "ca.pem"), ca_cert.public_bytes(serialization.Encoding.PEM)
    )


def build_environment(
    artifacts: RunArtifacts,
    testcase: TestCase,
    server_image: str,
    client_image: str,
    testnames: Optional[Tuple[str, str]] = None,
) -> Dict[str, str]:
    """
    Build the environment handed to docker compose for one run.

    `testnames` overrides the (server, client) test names, which otherwise
    come from the test case.
    """
    if testnames is None:
        testnames = (
            testcase.testname(Perspective.SERVER),
            testcase.testname(Perspective.CLIENT),
        )
    requests = " ".join(
        "https://%s:443/%s" % (testcase.server_host, name) for name in artifacts.files
    )
    return {
        "CERTS": artifacts.certs_dir,
        "TESTCASE_SERVER": testnames[0],
        "TESTCASE_CLIENT": testnames[1],
        "TEST_TYPE": testcase.test_type.value,
        "WWW": artifacts.www_dir,
        "DOWNLOADS": artifacts.download_dir,
        "SERVER_LOGS": artifacts.server_log_dir,
        "CLIENT_LOGS": artifacts.client_log_dir,
        "SIM_LOGS": artifacts.sim_log_dir,
        "SSLKEYLOGFILE": KEYLOG_FILE,
        "QLOGDIR": QLOG_DIR,
        "REQUESTS": requests,
        "VERSION": hex(testcase.version),
        "SCENARIO": testcase.scenario,
        "SERVER": server_image,
        "CLIENT": client_image,
    }


def parse_exit_codes(output: str) -> Dict[str, int]:
    exit_codes = {}
    for match in EXIT_RE.finditer(output):
        # the first exit reported for a service is the one that counts
        exit_codes.setdefault(match.group(1), int(match.group(2)))
    return exit_codes


class ComposeStack:
    """
    The simulator, server and client containers of one run.
    """

    def __init__(
        self,
        environment: Dict[str, str],
        services: Sequence[str] = ENDPOINT_SERVICES,
        compose_file: str = COMPOSE_FILE,
        project: str = PROJECT_NAME,
    ):
        self.environment = environment
        self.services = tuple(services)
        self._compose_file = compose_file
        self._project = project

    async def _run(self, *args: str) -> Tuple[int, str]:
        env = dict(os.environ)
        env.update(self.environment)
        try:
            process = await asyncio.create_subprocess_exec(
                "docker",
                "compose",
                "--ansi",
                "never",
                "--project-name",
                self._project,
                "--file",
                self._compose_file,
                *args,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise OrchestrationFailure("unable to run docker compose: %s" % exc) from exc

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout.decode("utf-8", errors="replace")

    async def up(self) -> Tuple[Dict[str, int], str]:
        """
        Start the stack and wait until the first container exits.
        """
        returncode, output = await self._run(
            "up",
            "--abort-on-container-exit",
            "--timeout",
            "1",
            "--renew-anon-volumes",
            *self.services,
        )
        logger.debug("docker compose output:\n%s", output)
        exit_codes = parse_exit_codes(output)
        if not exit_codes:
            raise OrchestrationFailure(
                "docker compose exited with status %d before any container finished: %s"
                % (returncode, output.strip()[-500:])
            )
        return exit_codes, output

    async def kill(self) -> None:
        returncode, output = await self._run("kill", *self.services)
        if returncode != 0:
            logger.warning("docker compose kill failed: %s", output.strip())

    async def down(self) -> None:
        returncode, output = await self._run("down", "--volumes", "--timeout", "1")
        if returncode != 0:
            raise OrchestrationFailure("docker compose down failed: %s" % output.strip())
