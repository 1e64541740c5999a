import argparse
import asyncio
import logging
import sys
from typing import List, Optional, Tuple

from implementations import (
    DEFAULT_IMPLEMENTATIONS_FILE,
    Implementation,
    load_implementations,
    replace_image,
)
from interop import InteropRunner
from report import print_report, to_json, write_json
from result import TestResult
from testcases import MEASUREMENTS, TESTCASES, Measurement, TestCase


def select_implementations(
    implementations: List[Implementation], names: Optional[str]
) -> Optional[List[str]]:
    if not names:
        return None
    known = {impl.name for impl in implementations}
    selected = names.split(",")
    for name in selected:
        if name not in known:
            raise ValueError("implementation %s not found" % name)
    return selected


def select_tests(names: Optional[str]) -> Tuple[List[TestCase], List[Measurement]]:
    if not names:
        return TESTCASES, MEASUREMENTS
    if names == "onlyTests":
        return TESTCASES, []
    if names == "onlyMeasurements":
        return [], MEASUREMENTS

    wanted = names.split(",")
    known = {tc.name for tc in TESTCASES + MEASUREMENTS}
    for name in wanted:
        if name not in known:
            raise ValueError("test case %s not found" % name)
    # catalog order is kept whatever order the names were given in
    return (
        [tc for tc in TESTCASES if tc.name in wanted],
        [m for m in MEASUREMENTS if m.name in wanted],
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="QUIC interop runner")
    parser.add_argument(
        "-d", "--debug", action="store_true", help="turn on debug logs"
    )
    parser.add_argument(
        "-s", "--server", type=str, help="server implementations (comma-separated)"
    )
    parser.add_argument(
        "-c", "--client", type=str, help="client implementations (comma-separated)"
    )
    parser.add_argument(
        "-t",
        "--test",
        type=str,
        help="test cases (comma-separated), or onlyTests / onlyMeasurements",
    )
    parser.add_argument(
        "-r",
        "--replace",
        action="append",
        default=[],
        help="replace the image of an implementation, as name=image",
    )
    parser.add_argument(
        "-i",
        "--implementations",
        type=str,
        default=DEFAULT_IMPLEMENTATIONS_FILE,
        help="implementation catalog (JSON)",
    )
    parser.add_argument(
        "-l", "--log-dir", type=str, help="keep the logs of every run in this directory"
    )
    parser.add_argument("-j", "--json", type=str, help="write the results to a JSON file")
    parser.add_argument(
        "--no-compliance-check",
        action="store_true",
        help="do not check that implementations reject unknown test cases",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=logging.DEBUG if args.debug else logging.INFO,
    )

    try:
        implementations = load_implementations(args.implementations)
        for replacement in args.replace:
            name, sep, image = replacement.partition("=")
            if not sep or not image:
                raise ValueError("invalid replacement %r, expected name=image" % replacement)
            implementations = replace_image(implementations, name, image)
        server_names = select_implementations(implementations, args.server)
        client_names = select_implementations(implementations, args.client)
        testcases, measurements = select_tests(args.test)
    except (OSError, ValueError) as exc:
        parser.error(str(exc))

    runner = InteropRunner(
        implementations=implementations,
        testcases=testcases,
        measurements=measurements,
        log_dir=args.log_dir,
        compliance_check=not args.no_compliance_check,
        server_names=server_names,
        client_names=client_names,
    )

    matrix = asyncio.run(runner.run())

    print_report(matrix, runner.servers, runner.clients, testcases, measurements)
    if args.json:
        write_json(
            args.json,
            to_json(
                matrix,
                runner.servers,
                runner.clients,
                testcases,
                measurements,
                start_time=runner.start_time,
                end_time=runner.end_time,
            ),
        )

    failed = sum(1 for _, result in matrix.cells() if result is TestResult.FAILED)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
