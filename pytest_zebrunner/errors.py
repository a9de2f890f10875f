from typing import Optional


class ZebrunnerError(Exception):
    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message
        super().__init__(message)


class NotInitializedError(ZebrunnerError):
    def __init__(self) -> None:
        super().__init__("Zebrunner client has not been set up, call setup() first")


class UnknownTestCaseError(ZebrunnerError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Test case {name!r} was never started in this test run")


class ReportingError(ZebrunnerError):
    """Raised in strict mode for failures that are otherwise only logged."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)
