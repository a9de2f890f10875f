import os
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Generator, List, Optional, Tuple

import pytest
from _pytest.config.exceptions import UsageError

from pytest_zebrunner.api import (
    Configuration,
    LabelDTO,
    TestCaseFinishDTO,
    TestCaseStartDTO,
    TestResult,
    TestRunConfigDTO,
    TestRunFinishDTO,
    TestRunStartDTO,
    epoch_millis,
    iso_now,
)
from pytest_zebrunner.client import ZebrunnerApiClient, reset, setup
from pytest_zebrunner.log import setup_logger
from pytest_zebrunner.types import (
    TestReportEvent,
    TestReportStats,
    TestRunReportEvent,
    TestRunReportStats,
)

if TYPE_CHECKING:
    from _pytest.config import Config, PytestPluginManager  # pragma: no cover
    from _pytest.config.argparsing import Parser  # pragma: no cover
    from _pytest.nodes import Item  # pragma: no cover
    from _pytest.reports import TestReport  # pragma: no cover
    from _pytest.terminal import TerminalReporter  # pragma: no cover
    from pytest import Session  # pragma: no cover


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def pytest_addoption(parser: "Parser", pluginmanager: "PytestPluginManager") -> None:
    group = parser.getgroup("zebrunner", "Zebrunner test reporting")
    group.addoption(
        "--zebrunner",
        dest="zebrunnerenabled",
        action="store_true",
        default=_env_flag("REPORTING_ENABLED"),
        help="report tests to Zebrunner",
    )
    group.addoption(
        "--zebrunner-base-url",
        dest="zebrunnerbaseurl",
        default=os.environ.get("REPORTING_SERVER_HOSTNAME", ""),
        help="Zebrunner server url",
    )
    group.addoption(
        "--zebrunner-access-token",
        dest="zebrunneraccesstoken",
        default=os.environ.get("REPORTING_SERVER_ACCESS_TOKEN", ""),
        help="Zebrunner access (refresh) token",
    )
    group.addoption(
        "--zebrunner-project-key",
        dest="zebrunnerprojectkey",
        default=os.environ.get("REPORTING_PROJECT_KEY", "DEF"),
        help="Zebrunner project key",
    )
    group.addoption(
        "--zebrunner-run-name",
        dest="zebrunnerrunname",
        default=os.environ.get("REPORTING_RUN_DISPLAY_NAME", ""),
        help="test run display name",
    )
    group.addoption(
        "--zebrunner-environment",
        dest="zebrunnerenvironment",
        default=os.environ.get("REPORTING_RUN_ENVIRONMENT"),
        help="environment the test run is executed against",
    )
    group.addoption(
        "--zebrunner-build",
        dest="zebrunnerbuild",
        default=os.environ.get("REPORTING_RUN_BUILD"),
        help="build under test",
    )
    group.addoption(
        "--zebrunner-label",
        dest="zebrunnerlabels",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="test run label, may be repeated",
    )
    group.addoption(
        "--zebrunner-strict",
        dest="zebrunnerstrict",
        action="store_true",
        help="raise on reporting failures instead of logging them",
    )


def pytest_configure(config: "Config") -> None:
    config.addinivalue_line("markers", "zebrunner_labels(**labels): attach labels to the Zebrunner test case")
    config.addinivalue_line("markers", "zebrunner_maintainer(name): Zebrunner test case maintainer")

    if not config.option.zebrunnerenabled:
        return

    # Reporting from xdist workers is not supported
    if hasattr(config, "workerinput"):
        return

    if not (config.option.zebrunnerbaseurl and config.option.zebrunneraccesstoken):
        raise UsageError("--zebrunner should be used with --zebrunner-base-url and --zebrunner-access-token")

    run_labels = parse_labels(config.option.zebrunnerlabels)

    setup_logger(config.getoption("log_level") or "WARNING")
    client = setup(get_configuration(config))

    config.pluginmanager.register(TestReportPlugin(config=config, client=client), "zebrunner_test_report_plugin")
    config.pluginmanager.register(
        TestRunReportPlugin(client=client, run_labels=run_labels), "zebrunner_test_run_plugin"
    )
    config.pluginmanager.register(ReportSummaryPlugin(), "zebrunner_summary_plugin")


def get_configuration(config: "Config") -> Configuration:
    return Configuration(
        base_url=config.option.zebrunnerbaseurl,
        project_key=config.option.zebrunnerprojectkey,
        access_token=config.option.zebrunneraccesstoken,
        strict=config.option.zebrunnerstrict,
    )


def parse_labels(raw_labels: List[str]) -> Dict[str, str]:
    labels = {}
    for raw in raw_labels:
        key, sep, value = raw.partition("=")
        if not (sep and key):
            raise UsageError(f"--zebrunner-label expects KEY=VALUE, got {raw!r}")
        labels[key] = value
    return labels


def build_test_case_start_request(item: "Item") -> TestCaseStartDTO:
    cls = getattr(item, "cls", None)
    module_path = item.nodeid.split("::")[0]
    maintainer_marker = item.get_closest_marker("zebrunner_maintainer")
    labels: Dict[str, str] = {}
    # closest marker wins, so apply the outermost first
    for marker in reversed(list(item.iter_markers("zebrunner_labels"))):
        labels.update({k: str(v) for k, v in marker.kwargs.items()})
    return TestCaseStartDTO(
        name=item.nodeid,
        class_name=f"{module_path}::{cls.__qualname__}" if cls else module_path,
        method_name=getattr(item, "originalname", None) or item.name,
        started_at=iso_now(),
        maintainer=maintainer_marker.args[0] if maintainer_marker and maintainer_marker.args else None,
        labels=[LabelDTO(key=k, value=v) for k, v in labels.items()] or None,
    )


class TestReportPlugin:
    def __init__(self, config: "Config", client: ZebrunnerApiClient) -> None:
        self.config = config
        self.client = client
        self.outcomes: Dict[str, Tuple[TestResult, Optional[str]]] = {}
        self.report_stats: List[TestReportStats] = []

    def report_stat(
        self, node_id: str, test_id: int, event: TestReportEvent, result: Optional[TestResult] = None
    ) -> None:
        self.report_stats.append(
            {
                "timestamp": datetime.now().isoformat(),
                "node_id": node_id,
                "test_id": test_id,
                "event": event,
                "result": result,
            }
        )

    def store_stats(self) -> None:
        self.config.zebrunner_test_report_stats = self.report_stats

    @pytest.hookimpl(tryfirst=True)
    def pytest_runtest_setup(self, item: "Item") -> None:
        node_id = item.nodeid
        self.client.start_test(build_test_case_start_request(item))
        test_id = self.client.get_test_case_id(node_id)
        if test_id is not None:
            self.report_stat(node_id=node_id, test_id=test_id, event="test_start")

    @pytest.hookimpl(hookwrapper=True)
    def pytest_runtest_makereport(self, item: "Item") -> Generator[None, None, None]:
        report: "TestReport" = (yield).get_result()

        node_id = item.nodeid
        if report.when in ("setup", "call"):
            if report.failed:
                self.outcomes[node_id] = ("FAILED", report.longreprtext)
            elif report.skipped:
                self.outcomes[node_id] = ("SKIPPED", _skip_reason(report))
            else:
                self.outcomes[node_id] = ("PASSED", None)
        elif report.when == "teardown":
            result, reason = self.outcomes.pop(node_id, ("PASSED", None))
            if report.failed and result != "FAILED":
                result, reason = "FAILED", report.longreprtext
            self.finish_test(node_id, result, reason)

    def finish_test(self, node_id: str, result: TestResult, reason: Optional[str]) -> None:
        test_id = self.client.get_test_case_id(node_id)
        if test_id is None:
            return
        if result == "FAILED" and reason:
            self.client.send_logs(node_id, reason.splitlines(), "ERROR", epoch_millis())
        self.client.finish_test(node_id, TestCaseFinishDTO(result=result, reason=reason, ended_at=iso_now()))
        self.report_stat(node_id=node_id, test_id=test_id, event="test_finish", result=result)

    @pytest.hookimpl(hookwrapper=True, trylast=True)
    def pytest_sessionfinish(self) -> Generator[None, None, None]:
        yield
        self.store_stats()


def _skip_reason(report: "TestReport") -> Optional[str]:
    longrepr = report.longrepr
    # skips carry a (path, lineno, message) tuple
    if isinstance(longrepr, tuple) and len(longrepr) == 3:
        return str(longrepr[2])
    return report.longreprtext or None


class TestRunReportPlugin:
    def __init__(self, client: ZebrunnerApiClient, run_labels: Optional[Dict[str, str]] = None) -> None:
        self.client = client
        self.run_labels = run_labels or {}
        self.report_stats: List[TestRunReportStats] = []

    def report_stat(self, run_id: int, event: TestRunReportEvent) -> None:
        self.report_stats.append(
            {
                "timestamp": datetime.now().isoformat(),
                "run_id": run_id,
                "event": event,
            }
        )

    def store_stats(self, config: "Config") -> None:
        config.zebrunner_test_run_report_stats = self.report_stats

    def build_test_run_start_request(self, session: "Session") -> TestRunStartDTO:
        option = session.config.option
        run_config = None
        if option.zebrunnerenvironment or option.zebrunnerbuild:
            run_config = TestRunConfigDTO(environment=option.zebrunnerenvironment, build=option.zebrunnerbuild)
        return TestRunStartDTO(
            name=option.zebrunnerrunname or f"pytest {session.name}",
            started_at=iso_now(),
            config=run_config,
        )

    @pytest.hookimpl(hookwrapper=True)
    def pytest_runtestloop(self, session: "Session") -> Generator[None, None, None]:
        client = self.client
        client.start_test_run(self.build_test_run_start_request(session))
        run_id = client.test_run.id if client.test_run else 0
        if run_id:
            self.report_stat(run_id=run_id, event="test_run_started")
            if self.run_labels:
                client.send_test_run_labels(self.run_labels)

        yield

        client.finish_test_run(TestRunFinishDTO(ended_at=iso_now()))
        if run_id:
            self.report_stat(run_id=run_id, event="test_run_finished")
        self.store_stats(config=session.config)

    def pytest_unconfigure(self, config: "Config") -> None:
        # one client per pytest process, drop it so in-process reruns start clean
        reset()


class ReportSummaryPlugin:
    """Prints what was reported to Zebrunner, oldest event first."""

    @staticmethod
    def format_stat(stat: Dict) -> str:
        parts = [stat["timestamp"], stat["event"]]
        if stat.get("run_id"):
            parts.append(f"Run ID: {stat['run_id']}")
        if stat.get("test_id"):
            parts.append(f"Test ID: {stat['test_id']}")
        if stat.get("node_id"):
            parts.append(stat["node_id"])
        if stat.get("result"):
            parts.append(stat["result"])
        return "\t".join(parts)

    def pytest_terminal_summary(self, terminalreporter: "TerminalReporter") -> None:
        config = terminalreporter.config
        run_stats: List[TestRunReportStats] = getattr(config, "zebrunner_test_run_report_stats", [])
        test_stats: List[TestReportStats] = getattr(config, "zebrunner_test_report_stats", [])

        terminalreporter.write_sep("=", "Zebrunner report summary")
        for stat in sorted([*run_stats, *test_stats], key=lambda d: datetime.fromisoformat(d["timestamp"])):
            terminalreporter.write_line(self.format_stat(stat))
        terminalreporter.write_sep("-")

        results = Counter(s["result"] for s in test_stats if s["event"] == "test_finish")
        terminalreporter.write_line(
            f"Cases reported: {len({s['test_id'] for s in test_stats})}, test reports sent: {len(test_stats)}"
        )
        if results:
            terminalreporter.write_line(
                "Results: " + ", ".join(f"{result} {count}" for result, count in sorted(results.items()))
            )
