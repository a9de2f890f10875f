"""Session/state coordinator for the Zebrunner reporting API.

The client authenticates once, remembers the id Zebrunner assigns to the
current test run and to every started test case, and turns each reporting
call into exactly one blocking HTTP exchange. Calls made one after another
reach the server in the same order.

Reporting is best effort: missing state, transport errors and rejected
requests are logged and the call becomes a no-op. Set
``Configuration.strict`` to raise ``ReportingError`` instead. The only
errors raised in the default mode are ``NotInitializedError`` from
``get_instance`` and ``UnknownTestCaseError`` from ``finish_test`` and
``update_test``.
"""
import functools
import threading
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import requests
import structlog
from pydantic import ValidationError

from pytest_zebrunner.api import (
    AuthResponse,
    Configuration,
    Dto,
    LogLevel,
    TestCaseFinishDTO,
    TestCaseStartDTO,
    TestCaseStartResponse,
    TestCaseUpdateDTO,
    TestRunFinishDTO,
    TestRunStartDTO,
    TestRunStartResponse,
    map_from_json,
)
from pytest_zebrunner.errors import NotInitializedError, ReportingError, UnknownTestCaseError
from pytest_zebrunner.request_builder import RequestBuilder
from pytest_zebrunner.transport import HTTPTransport
from pytest_zebrunner.types import Transport

LOG = structlog.get_logger()

T = TypeVar("T", bound=Dto)
F = TypeVar("F", bound=Callable[..., Any])


def synchronized(method: F) -> F:
    @functools.wraps(method)
    def wrapper(self: "ZebrunnerApiClient", *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class ZebrunnerApiClient:
    def __init__(self, configuration: Configuration, transport: Optional[Transport] = None) -> None:
        self.configuration = configuration
        self.transport: Transport = transport or HTTPTransport(timeout=configuration.timeout)
        self.request_builder = RequestBuilder(
            base_url=configuration.base_url,
            refresh_token=configuration.access_token,
        )
        self.test_run: Optional[TestRunStartResponse] = None
        self._test_cases: Dict[str, int] = {}
        self._lock = threading.RLock()

        auth_token = self._authenticate()
        if auth_token:
            self.request_builder.set_auth_token(auth_token)

    @property
    def auth_token(self) -> Optional[str]:
        return self.request_builder.auth_token

    @property
    def strict(self) -> bool:
        return self.configuration.strict

    def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def _report_failure(self, message: str, level: str = "warning", **context: Any) -> None:
        getattr(LOG, level)(message, **context)
        if self.strict:
            raise ReportingError(message)

    def _send(self, request: requests.Request, action: str) -> Optional[bytes]:
        exchange = self.transport.execute(request)
        if exchange.body is None:
            self._report_failure(f"Failed to {action}", level="error", error=str(exchange.error))
            return None
        if self.strict and not exchange.ok:
            raise ReportingError(f"Failed to {action}: unexpected response code", status_code=exchange.status_code)
        return exchange.body

    def _decode(self, body: bytes, cls: Type[T]) -> Optional[T]:
        try:
            return map_from_json(body, cls)
        except ValidationError as e:
            self._report_failure(f"Failed to map response into {cls.__name__}", level="error", data=body, error=str(e))
            return None

    def _authenticate(self) -> Optional[str]:
        request = self.request_builder.build_auth_request()
        body = self._send(request, "authenticate")
        if body is None:
            return None
        auth_response = self._decode(body, AuthResponse)
        if auth_response is None:
            return None
        LOG.debug("Authenticated", base_url=self.configuration.base_url)
        return auth_response.auth_token

    def get_test_run_id(self) -> int:
        """Returns 0 when no test run was started; callers skip the operation on 0."""
        if self.test_run is None:
            self._report_failure("There is no test run id found")
            return 0
        return self.test_run.id

    def get_test_case_id(self, test_case_name: str) -> Optional[int]:
        return self._test_cases.get(test_case_name)

    def _find_test_case_id(self, test_case_name: str) -> Optional[int]:
        test_case_id = self._test_cases.get(test_case_name)
        if test_case_id is None:
            self._report_failure(
                "There is no test case found in test run",
                test_case_name=test_case_name,
                test_run_id=self.test_run.id if self.test_run else None,
            )
        return test_case_id

    def _require_test_case_id(self, test_case_name: str) -> int:
        try:
            return self._test_cases[test_case_name]
        except KeyError:
            raise UnknownTestCaseError(test_case_name) from None

    @synchronized
    def start_test_run(self, test_run_start_request: TestRunStartDTO) -> None:
        request = self.request_builder.build_start_test_run_request(
            project_key=self.configuration.project_key,
            test_run_start_request=test_run_start_request,
        )
        body = self._send(request, "create test run")
        if body is None:
            return
        test_run = self._decode(body, TestRunStartResponse)
        if test_run is not None:
            self.test_run = test_run
            LOG.info("Test run started", test_run_id=test_run.id, name=test_run_start_request.name)

    @synchronized
    def finish_test_run(self, test_run_finish_request: TestRunFinishDTO) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        request = self.request_builder.build_finish_test_run_request(test_run_id, test_run_finish_request)
        if self._send(request, "finish test run") is not None:
            LOG.info("Test run finished", test_run_id=test_run_id)

    @synchronized
    def start_test(self, test_case_start_request: TestCaseStartDTO) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        request = self.request_builder.build_start_test_request(test_run_id, test_case_start_request)
        body = self._send(request, "create test case execution")
        if body is None:
            return
        test_case = self._decode(body, TestCaseStartResponse)
        if test_case is None:
            return
        name = test_case_start_request.name
        self._test_cases[name] = test_case.id
        LOG.debug("Test case started", test_run_id=test_run_id, test_id=test_case.id, name=name)

    @synchronized
    def finish_test(self, test_case_name: str, test_case_finish_request: TestCaseFinishDTO) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        test_id = self._require_test_case_id(test_case_name)
        request = self.request_builder.build_finish_test_request(test_run_id, test_id, test_case_finish_request)
        self._send(request, "finish test case")
        LOG.debug("Test case finished", test_run_id=test_run_id, test_id=test_id, result=test_case_finish_request.result)

    @synchronized
    def update_test(self, test_case_update_request: TestCaseUpdateDTO) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        test_id = self._require_test_case_id(test_case_update_request.name)
        request = self.request_builder.build_update_test_request(test_run_id, test_id, test_case_update_request)
        self._send(request, "update test case")

    @synchronized
    def send_logs(self, test_case_name: str, log_messages: List[str], level: LogLevel, timestamp: str) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        test_id = self._find_test_case_id(test_case_name)
        if test_id is None:
            return
        request = self.request_builder.build_log_request(test_run_id, test_id, log_messages, level, timestamp)
        self._send(request, "send logs")

    @synchronized
    def send_screenshot(self, test_case_name: str, screenshot: Optional[bytes]) -> None:
        if not screenshot:
            self._report_failure("There is no screenshot to attach", test_case_name=test_case_name)
            return
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        test_id = self._find_test_case_id(test_case_name)
        if test_id is None:
            return
        request = self.request_builder.build_screenshot_request(test_run_id, test_id, screenshot)
        self._send(request, "send screenshot")

    @synchronized
    def send_test_case_artifact(self, test_case_name: str, artifact: Optional[bytes], name: str) -> None:
        if not artifact:
            self._report_failure("There is no data to attach", test_case_name=test_case_name, artifact=name)
            return
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        test_id = self._find_test_case_id(test_case_name)
        if test_id is None:
            return
        request = self.request_builder.build_test_case_artifacts_request(test_run_id, test_id, artifact, name)
        self._send(request, "send test case artifact")

    @synchronized
    def send_test_run_artifact(self, artifact: Optional[bytes], name: str) -> None:
        if not artifact:
            self._report_failure("There is no data to attach", artifact=name)
            return
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        request = self.request_builder.build_test_run_artifacts_request(test_run_id, artifact, name)
        self._send(request, "send test run artifact")

    @synchronized
    def send_test_case_artifact_references(self, test_case_name: str, references: Dict[str, str]) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        test_id = self._find_test_case_id(test_case_name)
        if test_id is None:
            return
        request = self.request_builder.build_test_case_artifact_references_request(test_run_id, test_id, references)
        self._send(request, "send test case artifact references")

    @synchronized
    def send_test_run_artifact_references(self, references: Dict[str, str]) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        request = self.request_builder.build_test_run_artifact_references_request(test_run_id, references)
        self._send(request, "send test run artifact references")

    @synchronized
    def send_test_run_labels(self, labels: Dict[str, str]) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        request = self.request_builder.build_test_run_labels_request(test_run_id, labels)
        self._send(request, "send test run labels")

    @synchronized
    def send_test_case_labels(self, test_case_name: str, labels: Dict[str, str]) -> None:
        test_run_id = self.get_test_run_id()
        if not test_run_id:
            return
        test_id = self._find_test_case_id(test_case_name)
        if test_id is None:
            return
        request = self.request_builder.build_test_case_labels_request(test_run_id, test_id, labels)
        self._send(request, "send test case labels")


_instance: Optional[ZebrunnerApiClient] = None
_instance_lock = threading.Lock()


def setup(configuration: Configuration, transport: Optional[Transport] = None) -> ZebrunnerApiClient:
    """Creates the process-wide client on first call; later calls return it unchanged."""
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = ZebrunnerApiClient(configuration, transport=transport)
        else:
            LOG.debug("Zebrunner client is already set up, ignoring configuration")
        return _instance


def get_instance() -> ZebrunnerApiClient:
    if _instance is None:
        raise NotInitializedError()
    return _instance


def reset() -> None:
    """Drops the process-wide client and closes its transport."""
    global _instance
    with _instance_lock:
        if _instance is not None:
            _instance.close()
        _instance = None
