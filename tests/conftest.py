import datetime

import pytest

import moonicode
from moonicode import PrimaryPhase

UTC = datetime.timezone.utc

# Primary phases around late 2019, UTC.
KNOWN_PHASES = {
    PrimaryPhase.NEW: [
        datetime.datetime(2019, 9, 28, 18, 26, tzinfo=UTC),
        datetime.datetime(2019, 10, 28, 3, 38, tzinfo=UTC),
        datetime.datetime(2019, 11, 26, 15, 6, tzinfo=UTC),
        datetime.datetime(2019, 12, 26, 5, 13, tzinfo=UTC),
    ],
    PrimaryPhase.FIRST: [
        datetime.datetime(2019, 10, 5, 16, 47, tzinfo=UTC),
        datetime.datetime(2019, 11, 4, 10, 23, tzinfo=UTC),
        datetime.datetime(2019, 12, 4, 6, 58, tzinfo=UTC),
    ],
    PrimaryPhase.FULL: [
        datetime.datetime(2019, 10, 13, 21, 8, tzinfo=UTC),
        datetime.datetime(2019, 11, 12, 13, 34, tzinfo=UTC),
        datetime.datetime(2019, 12, 12, 5, 12, tzinfo=UTC),
    ],
    PrimaryPhase.LAST: [
        datetime.datetime(2019, 10, 21, 12, 39, tzinfo=UTC),
        datetime.datetime(2019, 11, 19, 21, 11, tzinfo=UTC),
        datetime.datetime(2019, 12, 19, 4, 57, tzinfo=UTC),
    ],
}


def _jd(when):
    return moonicode.julian_day(moonicode.to_astronomical_day(when))


def table_oracle(day, phase):
    """Nearest entry of KNOWN_PHASES, as a Julian day."""
    target = moonicode.julian_day(day)
    return min((_jd(t) for t in KNOWN_PHASES[phase]), key=lambda jd: abs(jd - target))


@pytest.fixture
def oracle():
    return table_oracle


@pytest.fixture
def settings(tmp_path):
    return moonicode.Settings(
        city="San Francisco",
        state="CA",
        timezone="UTC",
        source="arithmetic",
        oracle="mean",
        ephemeris_file="de421.bsp",
        url="http://almanac.test/rstt/oneday",
        timeout=5.0,
        cache_path=tmp_path / "moon",
        cache_enabled=True,
    )
