from typing import TYPE_CHECKING, Literal, Optional, Protocol, TypedDict

if TYPE_CHECKING:
    import requests  # pragma: no cover

    from pytest_zebrunner.transport import Exchange  # pragma: no cover


class Transport(Protocol):
    """Performs one blocking request/response exchange."""

    def execute(self, request: "requests.Request") -> "Exchange":
        pass  # pragma: no cover


TestReportEvent = Literal["test_start", "test_finish"]
TestRunReportEvent = Literal["test_run_started", "test_run_finished"]


class TestReportStats(TypedDict):
    timestamp: str
    node_id: str
    test_id: int
    event: TestReportEvent
    result: Optional[str]


class TestRunReportStats(TypedDict):
    timestamp: str
    run_id: int
    event: TestRunReportEvent
