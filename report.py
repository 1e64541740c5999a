import json
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console, Group
from rich.table import Table
from rich.text import Text

from implementations import Implementation
from result import ResultsMatrix, TestResult
from testcases import Measurement, TestCase

STYLES = {
    TestResult.SUCCEEDED: "green",
    TestResult.UNSUPPORTED: "yellow",
    TestResult.FAILED: "red",
}


def _test_cell(
    matrix: ResultsMatrix, server: str, client: str, testcases: Sequence[TestCase]
) -> Text:
    cell = Text()
    for result in (TestResult.SUCCEEDED, TestResult.UNSUPPORTED, TestResult.FAILED):
        abbreviations = [
            tc.abbreviation
            for tc in testcases
            if matrix.get(server, client, tc.name) is result
        ]
        if abbreviations:
            if cell:
                cell.append("\n")
            cell.append(
                "%s(%s)" % (result.symbol(), ",".join(abbreviations)), style=STYLES[result]
            )
    return cell


def _measurement_cell(
    matrix: ResultsMatrix, server: str, client: str, measurements: Sequence[Measurement]
) -> Text:
    cell = Text()
    for measurement in measurements:
        res = matrix.get_measurement(server, client, measurement.name)
        if res is None:
            continue
        if cell:
            cell.append("\n")
        if res.result is TestResult.SUCCEEDED:
            cell.append("%s: %s" % (measurement.abbreviation, res.details), style="green")
        else:
            cell.append(
                "%s: %s" % (measurement.abbreviation, res.result.symbol()),
                style=STYLES[res.result],
            )
    return cell


def _grid(title: str, servers: Sequence[Implementation], clients: Sequence[Implementation]) -> Table:
    table = Table(title=title, show_lines=True)
    table.add_column("server\\client", style="cyan")
    for client in clients:
        table.add_column(client.name, justify="center")
    return table


def render(
    matrix: ResultsMatrix,
    servers: Sequence[Implementation],
    clients: Sequence[Implementation],
    testcases: Sequence[TestCase],
    measurements: Sequence[Measurement],
) -> Group:
    tables = []
    if testcases:
        table = _grid("Test Cases", servers, clients)
        for server in servers:
            table.add_row(
                server.name,
                *[_test_cell(matrix, server.name, client.name, testcases) for client in clients],
            )
        tables.append(table)
    if measurements:
        table = _grid("Measurements", servers, clients)
        for server in servers:
            table.add_row(
                server.name,
                *[
                    _measurement_cell(matrix, server.name, client.name, measurements)
                    for client in clients
                ],
            )
        tables.append(table)
    return Group(*tables)


def print_report(
    matrix: ResultsMatrix,
    servers: Sequence[Implementation],
    clients: Sequence[Implementation],
    testcases: Sequence[TestCase],
    measurements: Sequence[Measurement],
    console: Optional[Console] = None,
) -> None:
    console = console or Console()
    console.print(render(matrix, servers, clients, testcases, measurements))


def to_json(
    matrix: ResultsMatrix,
    servers: Sequence[Implementation],
    clients: Sequence[Implementation],
    testcases: Sequence[TestCase],
    measurements: Sequence[Measurement],
    start_time: Optional[float] = None,
    end_time: Optional[float] = None,
) -> Dict[str, Any]:
    # results are listed per pair in client-major order
    results: List[List[Dict[str, Any]]] = []
    measurement_results: List[List[Dict[str, Any]]] = []
    for client in clients:
        for server in servers:
            results.append(
                [
                    {
                        "abbr": tc.abbreviation,
                        "name": tc.name,
                        "result": matrix.get(server.name, client.name, tc.name).value,
                    }
                    for tc in testcases
                    if matrix.get(server.name, client.name, tc.name) is not None
                ]
            )
            row = []
            for measurement in measurements:
                res = matrix.get_measurement(server.name, client.name, measurement.name)
                if res is None:
                    continue
                row.append(
                    {
                        "abbr": measurement.abbreviation,
                        "name": measurement.name,
                        "result": res.result.value,
                        "details": res.details,
                    }
                )
            measurement_results.append(row)

    return {
        "start_time": start_time,
        "end_time": end_time,
        "servers": [server.name for server in servers],
        "clients": [client.name for client in clients],
        "urls": {
            impl.name: impl.url for impl in list(servers) + list(clients) if impl.url
        },
        "tests": {
            tc.abbreviation: {"name": tc.name, "desc": tc.description}
            for tc in list(testcases) + list(measurements)
        },
        "results": results,
        "measurements": measurement_results,
    }


def write_json(path: str, data: Dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as fp:
        json.dump(data, fp, indent=2)
        fp.write("\n")
