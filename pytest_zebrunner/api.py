from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

TestResult = Literal["PASSED", "FAILED", "SKIPPED", "ABORTED"]
LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARN", "ERROR", "FATAL"]


class Dto(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    # keep pytest from collecting the Test* models
    __test__ = False


T = TypeVar("T", bound=Dto)


def map_from_json(json_data: Union[bytes, str], cls: Type[T]) -> T:
    return cls.model_validate_json(json_data)


def map_to_json(dto: Dto) -> str:
    return dto.model_dump_json(by_alias=True, exclude_none=True)


def iso_now() -> str:
    """Current local time as ISO-8601 with UTC offset, e.g. ``2022-07-20T10:01:02.345+02:00``."""
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="milliseconds")


def epoch_millis() -> str:
    return str(int(datetime.now(timezone.utc).timestamp() * 1_000))


class Configuration(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str
    project_key: str
    access_token: str
    strict: bool = False
    timeout: Optional[float] = None

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class AuthRefreshRequest(Dto):
    refresh_token: str


class AuthResponse(Dto):
    auth_token: str


class TestRunConfigDTO(Dto):
    environment: Optional[str] = None
    build: Optional[str] = None


class TestRunStartDTO(Dto):
    name: str
    framework: str = "pytest"
    started_at: str
    config: Optional[TestRunConfigDTO] = None


class TestRunStartResponse(Dto):
    id: int


class TestRunFinishDTO(Dto):
    ended_at: str


class LabelDTO(Dto):
    key: str
    value: str


class TestCaseStartDTO(Dto):
    name: str
    class_name: str
    method_name: str
    started_at: str
    maintainer: Optional[str] = None
    labels: Optional[List[LabelDTO]] = None


class TestCaseStartResponse(Dto):
    id: int
    name: Optional[str] = None


class TestCaseFinishDTO(Dto):
    result: TestResult
    reason: Optional[str] = None
    ended_at: str


class TestCaseUpdateDTO(Dto):
    name: str
    class_name: str
    method_name: str
    maintainer: Optional[str] = None
    labels: Optional[List[LabelDTO]] = None


class LogEntryDTO(Dto):
    test_id: int
    level: LogLevel
    timestamp: str
    message: str


class ArtifactReferenceDTO(Dto):
    name: str
    value: str


class ArtifactReferencesDTO(Dto):
    items: List[ArtifactReferenceDTO]

    @classmethod
    def from_mapping(cls, references: Dict[str, str]) -> "ArtifactReferencesDTO":
        return cls(items=[ArtifactReferenceDTO(name=k, value=v) for k, v in references.items()])


class LabelsDTO(Dto):
    items: List[LabelDTO]

    @classmethod
    def from_mapping(cls, labels: Dict[str, str]) -> "LabelsDTO":
        return cls(items=[LabelDTO(key=k, value=v) for k, v in labels.items()])
