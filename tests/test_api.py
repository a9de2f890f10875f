import re
import time
from datetime import datetime

from pytest_zebrunner.api import Configuration, epoch_millis, iso_now


def test_iso_now__millisecond_precision_with_offset():
    value = iso_now()

    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}[+-]\d{2}:\d{2}", value)
    parsed = datetime.fromisoformat(value)
    assert parsed.utcoffset() is not None
    assert abs(parsed.timestamp() - time.time()) < 5


def test_epoch_millis__current_time_in_milliseconds():
    before = int(time.time() * 1_000)

    value = epoch_millis()

    after = int(time.time() * 1_000)
    assert value.isdigit()
    assert before <= int(value) <= after + 1


def test_configuration__strips_trailing_slash():
    configuration = Configuration(base_url="http://zebrunner.test/", project_key="DEF", access_token="x")

    assert configuration.base_url == "http://zebrunner.test"
    assert configuration.strict is False
    assert configuration.timeout is None
