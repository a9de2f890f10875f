import json
from typing import Dict, List, Optional

import requests

from pytest_zebrunner.api import (
    ArtifactReferencesDTO,
    AuthRefreshRequest,
    Dto,
    LabelsDTO,
    LogEntryDTO,
    LogLevel,
    TestCaseFinishDTO,
    TestCaseStartDTO,
    TestCaseUpdateDTO,
    TestRunFinishDTO,
    TestRunStartDTO,
    epoch_millis,
    map_to_json,
)

REPORTING_API = "/api/reporting/v1"


class RequestBuilder:
    """Builds one ``requests.Request`` per reporting operation.

    Nothing here touches the network: the coordinator hands the result to a
    transport. Every request except the auth one carries the bearer token
    once ``set_auth_token`` has been called.
    """

    def __init__(self, base_url: str, refresh_token: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.refresh_token = refresh_token
        self.auth_token: Optional[str] = None

    def set_auth_token(self, auth_token: str) -> None:
        self.auth_token = auth_token

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _run_url(self, test_run_id: int, path: str = "") -> str:
        return self._url(f"{REPORTING_API}/test-runs/{test_run_id}{path}")

    def _test_url(self, test_run_id: int, test_id: int, path: str = "") -> str:
        return self._run_url(test_run_id, f"/tests/{test_id}{path}")

    def _headers(self, content_type: Optional[str] = "application/json") -> Dict[str, str]:
        headers = {}
        if content_type:
            headers["Content-Type"] = content_type
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _json_request(
        self,
        method: str,
        url: str,
        dto: Optional[Dto] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> requests.Request:
        json_str: Optional[str] = None
        if dto is not None:
            json_str = map_to_json(dto)
        return requests.Request(method=method, url=url, data=json_str, params=params, headers=self._headers())

    def build_auth_request(self) -> requests.Request:
        request = AuthRefreshRequest(refresh_token=self.refresh_token)
        return requests.Request(
            method="POST",
            url=self._url("/api/iam/v1/auth/refresh"),
            data=map_to_json(request),
            headers={"Content-Type": "application/json"},
        )

    def build_start_test_run_request(self, project_key: str, test_run_start_request: TestRunStartDTO) -> requests.Request:
        return self._json_request(
            "POST",
            self._url(f"{REPORTING_API}/test-runs"),
            dto=test_run_start_request,
            params={"projectKey": project_key},
        )

    def build_finish_test_run_request(self, test_run_id: int, test_run_finish_request: TestRunFinishDTO) -> requests.Request:
        return self._json_request("PUT", self._run_url(test_run_id), dto=test_run_finish_request)

    def build_start_test_request(self, test_run_id: int, test_case_start_request: TestCaseStartDTO) -> requests.Request:
        return self._json_request("POST", self._run_url(test_run_id, "/tests"), dto=test_case_start_request)

    def build_finish_test_request(
        self, test_run_id: int, test_id: int, test_case_finish_request: TestCaseFinishDTO
    ) -> requests.Request:
        return self._json_request("PUT", self._test_url(test_run_id, test_id), dto=test_case_finish_request)

    def build_update_test_request(
        self, test_run_id: int, test_id: int, test_case_update_request: TestCaseUpdateDTO
    ) -> requests.Request:
        return self._json_request(
            "PUT",
            self._test_url(test_run_id, test_id),
            dto=test_case_update_request,
            params={"headless": "false"},
        )

    def build_log_request(
        self, test_run_id: int, test_id: int, log_messages: List[str], level: LogLevel, timestamp: str
    ) -> requests.Request:
        entries = [
            LogEntryDTO(test_id=test_id, level=level, timestamp=timestamp, message=message).model_dump(by_alias=True)
            for message in log_messages
        ]
        return requests.Request(
            method="POST",
            url=self._run_url(test_run_id, "/logs"),
            data=json.dumps(entries),
            headers=self._headers(),
        )

    def build_screenshot_request(self, test_run_id: int, test_id: int, screenshot: bytes) -> requests.Request:
        headers = self._headers(content_type="image/png")
        headers["x-zbr-screenshot-captured-at"] = epoch_millis()
        return requests.Request(
            method="POST",
            url=self._test_url(test_run_id, test_id, "/screenshots"),
            data=screenshot,
            headers=headers,
        )

    def build_test_case_artifacts_request(
        self, test_run_id: int, test_case_id: int, artifact: bytes, name: str
    ) -> requests.Request:
        # requests sets the multipart boundary itself
        return requests.Request(
            method="POST",
            url=self._test_url(test_run_id, test_case_id, "/artifacts"),
            files={"file": (name, artifact)},
            headers=self._headers(content_type=None),
        )

    def build_test_run_artifacts_request(self, test_run_id: int, artifact: bytes, name: str) -> requests.Request:
        return requests.Request(
            method="POST",
            url=self._run_url(test_run_id, "/artifacts"),
            files={"file": (name, artifact)},
            headers=self._headers(content_type=None),
        )

    def build_test_case_artifact_references_request(
        self, test_run_id: int, test_case_id: int, references: Dict[str, str]
    ) -> requests.Request:
        return self._json_request(
            "PUT",
            self._test_url(test_run_id, test_case_id, "/artifact-references"),
            dto=ArtifactReferencesDTO.from_mapping(references),
        )

    def build_test_run_artifact_references_request(
        self, test_run_id: int, references: Dict[str, str]
    ) -> requests.Request:
        return self._json_request(
            "PUT",
            self._run_url(test_run_id, "/artifact-references"),
            dto=ArtifactReferencesDTO.from_mapping(references),
        )

    def build_test_run_labels_request(self, test_run_id: int, labels: Dict[str, str]) -> requests.Request:
        return self._json_request("PUT", self._run_url(test_run_id, "/labels"), dto=LabelsDTO.from_mapping(labels))

    def build_test_case_labels_request(
        self, test_run_id: int, test_case_id: int, labels: Dict[str, str]
    ) -> requests.Request:
        return self._json_request(
            "PUT",
            self._test_url(test_run_id, test_case_id, "/labels"),
            dto=LabelsDTO.from_mapping(labels),
        )
