import json
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest
import requests
from werkzeug.wrappers import Request, Response

from pytest_zebrunner import client as zebrunner_client
from pytest_zebrunner.api import Configuration
from pytest_zebrunner.transport import Exchange

pytest_plugins = ["pytester"]

BASE_URL = "http://zebrunner.test"
AUTH_PATH = "/api/iam/v1/auth/refresh"
RUNS_PATH = "/api/reporting/v1/test-runs"


class RecordingTransport:
    """In-memory transport: records every request and replays canned exchanges.

    Unrouted requests get an empty 204 response. When several exchanges are
    queued for one route they are consumed in order, the last one sticks.
    """

    def __init__(self) -> None:
        self.requests: List[requests.PreparedRequest] = []
        self.routes: Dict[Tuple[str, str], List[Exchange]] = {}
        self.closed = False

    def respond_with(
        self,
        method: str,
        path: str,
        json_data: Optional[object] = None,
        status_code: int = 200,
        body: Optional[bytes] = None,
    ) -> None:
        if json_data is not None:
            body = json.dumps(json_data).encode()
        self.routes.setdefault((method, path), []).append(Exchange(body=body, status_code=status_code, error=None))

    def fail_with(self, method: str, path: str, error: Exception) -> None:
        self.routes.setdefault((method, path), []).append(Exchange(body=None, status_code=None, error=error))

    def execute(self, request: requests.Request) -> Exchange:
        prepared = request.prepare()
        self.requests.append(prepared)
        queue = self.routes.get((prepared.method, urlsplit(prepared.url).path))
        if not queue:
            return Exchange(body=b"", status_code=204, error=None)
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def close(self) -> None:
        self.closed = True

    @property
    def reporting_requests(self) -> List[requests.PreparedRequest]:
        return [r for r in self.requests if urlsplit(r.url).path != AUTH_PATH]

    @property
    def calls(self) -> List[Tuple[str, str]]:
        return [(r.method, urlsplit(r.url).path) for r in self.reporting_requests]


@pytest.fixture(autouse=True)
def reset_zebrunner_client():
    zebrunner_client.reset()
    yield
    zebrunner_client.reset()


@pytest.fixture
def access_token() -> str:
    return "refresh-me"


@pytest.fixture
def auth_token() -> str:
    return "ABCDEF"


@pytest.fixture
def expected_headers(auth_token) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {auth_token}",
        "Content-Type": "application/json",
    }


@pytest.fixture
def configuration(access_token) -> Configuration:
    return Configuration(base_url=BASE_URL, project_key="DEF", access_token=access_token)


@pytest.fixture
def transport(auth_token) -> RecordingTransport:
    transport = RecordingTransport()
    transport.respond_with("POST", AUTH_PATH, json_data={"authToken": auth_token})
    return transport


@pytest.fixture
def testmodule(testdir) -> Path:
    return testdir.makepyfile(
        """
    import pytest
    from hypothesis import strategies as st, given


    @pytest.mark.parametrize(
        "left, right",
        (
            (2, 2),
            pytest.param(3.14, 5.55, marks=pytest.mark.skip("Skipped!")),
            (float("nan"), 42),
        ),
    )
    def test_examples(left, right):
        assert left + right == right + left


    NUMBER = st.integers() | st.floats()


    @given(left=NUMBER, right=NUMBER)
    def test_properties(left, right):
        assert left + right == right + left


    @pytest.fixture
    def error_at_setup():
        raise RuntimeError

    def test_error_at_setup(error_at_setup):
        pass

    @pytest.fixture
    def error_at_teardown():
        yield
        raise RuntimeError

    def test_error_at_teardown(error_at_teardown):
        pass

    @pytest.mark.zebrunner_maintainer("kim")
    @pytest.mark.zebrunner_labels(priority="P1", feature="auth")
    def test_labelled():
        pass
    """
    )


@pytest.fixture
def expected_results(request) -> Dict[str, str]:
    module_name = request.node.originalname
    return {
        f"{module_name}.py::test_examples[2-2]": "PASSED",
        f"{module_name}.py::test_examples[3.14-5.55]": "SKIPPED",
        f"{module_name}.py::test_examples[nan-42]": "FAILED",
        f"{module_name}.py::test_properties": "FAILED",
        f"{module_name}.py::test_error_at_setup": "FAILED",
        f"{module_name}.py::test_error_at_teardown": "FAILED",
        f"{module_name}.py::test_labelled": "PASSED",
    }


class ZebrunnerServer:
    """Records what the plugin reports to the fake Zebrunner service."""

    def __init__(self, run_id: int) -> None:
        self.run_id = run_id
        self.started: Dict[str, dict] = {}
        self.test_ids: Dict[str, int] = {}
        self.results: Dict[str, str] = {}
        self.logs: List[dict] = []
        self.run_start: Optional[dict] = None
        self.run_labels: Optional[dict] = None
        self.run_finished = False

    def _name_of(self, test_id: int) -> str:
        return next(name for name, id_ in self.test_ids.items() if id_ == test_id)

    def start_run(self, request: Request) -> Response:
        self.run_start = request.get_json()
        return Response(json.dumps({"id": self.run_id}), content_type="application/json")

    def finish_run(self, request: Request) -> Response:
        self.run_finished = True
        return Response(status=200)

    def start_test(self, request: Request) -> Response:
        payload = request.get_json()
        test_id = len(self.test_ids) + 1
        self.started[payload["name"]] = payload
        self.test_ids[payload["name"]] = test_id
        return Response(
            json.dumps({"id": test_id, "name": payload["name"]}),
            content_type="application/json",
        )

    def finish_test(self, request: Request) -> Response:
        test_id = int(request.path.rsplit("/", 1)[1])
        self.results[self._name_of(test_id)] = request.get_json()["result"]
        return Response(status=200)

    def send_logs(self, request: Request) -> Response:
        self.logs.extend(request.get_json())
        return Response(status=202)

    def send_run_labels(self, request: Request) -> Response:
        self.run_labels = request.get_json()
        return Response(status=204)


@pytest.fixture
def zebrunner_api(httpserver, access_token, auth_token, expected_headers) -> ZebrunnerServer:
    server = ZebrunnerServer(run_id=11)
    run_path = f"{RUNS_PATH}/11"

    httpserver.expect_request(
        AUTH_PATH, method="POST", json={"refreshToken": access_token}
    ).respond_with_json({"authToken": auth_token, "userId": 1})
    httpserver.expect_request(
        RUNS_PATH, method="POST", headers=expected_headers, query_string="projectKey=DEF"
    ).respond_with_handler(server.start_run)
    httpserver.expect_request(
        run_path, method="PUT", headers=expected_headers
    ).respond_with_handler(server.finish_run)
    httpserver.expect_request(
        f"{run_path}/labels", method="PUT", headers=expected_headers
    ).respond_with_handler(server.send_run_labels)
    httpserver.expect_request(
        f"{run_path}/tests", method="POST", headers=expected_headers
    ).respond_with_handler(server.start_test)
    httpserver.expect_request(
        re.compile(rf"^{run_path}/tests/\d+$"), method="PUT", headers=expected_headers
    ).respond_with_handler(server.finish_test)
    httpserver.expect_request(
        f"{run_path}/logs", method="POST", headers=expected_headers
    ).respond_with_handler(server.send_logs)
    return server
