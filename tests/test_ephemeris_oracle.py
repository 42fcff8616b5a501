import datetime

import pytest
from skyfield.api import load
from skyfield.errors import EphemerisRangeError

import moonicode
from moonicode import LocateError, PrimaryPhase, ephemeris_oracle, locate

UTC = datetime.timezone.utc


@pytest.fixture(scope="module")
def ts():
    return load.timescale(builtin=True)


class KernelEdge(EphemerisRangeError):
    def __init__(self, message):
        Exception.__init__(self, message)


@pytest.fixture
def almanac_events(monkeypatch, ts):
    """Replace skyfield's phase search with a fixed list of (time, code) events."""
    searches = []

    def install(events=(), error=None):
        def moon_phases(eph):
            assert eph == "kernel"
            return "phase function"

        def find_discrete(t0, t1, f):
            assert f == "phase function"
            searches.append((t0, t1))
            if error is not None:
                raise error
            return [ts.utc(*e[:5]) for e in events], [e[5] for e in events]

        monkeypatch.setattr(moonicode.almanac, "moon_phases", moon_phases)
        monkeypatch.setattr(moonicode.almanac, "find_discrete", find_discrete)
        return ephemeris_oracle("kernel", ts)

    install.searches = searches
    return install


def test_nearest_event_of_the_phase_is_chosen(almanac_events):
    oracle = almanac_events([
        (2019, 10, 28, 3, 38, 0),
        (2019, 11, 4, 10, 23, 1),
        (2019, 11, 12, 13, 34, 2),
        (2019, 11, 19, 21, 11, 3),
        (2019, 11, 26, 15, 6, 0),
    ])
    found = locate(datetime.datetime(2019, 11, 20, tzinfo=UTC), PrimaryPhase.NEW, oracle)
    expected = datetime.datetime(2019, 11, 26, 15, 6, tzinfo=UTC)
    assert abs((found - expected).total_seconds()) < 2

    found = locate(datetime.datetime(2019, 11, 5, tzinfo=UTC), PrimaryPhase.NEW, oracle)
    assert found.date() == datetime.date(2019, 10, 28)


def test_other_phases_are_filtered_out(almanac_events):
    oracle = almanac_events([
        (2019, 11, 12, 13, 34, 2),
        (2019, 11, 19, 21, 11, 3),
    ])
    found = locate(datetime.datetime(2019, 11, 12, tzinfo=UTC), PrimaryPhase.LAST, oracle)
    assert found.date() == datetime.date(2019, 11, 19)


def test_search_spans_sixteen_days_each_side(almanac_events, ts):
    oracle = almanac_events([(2019, 11, 12, 13, 34, 2)])
    oracle(moonicode.to_astronomical_day(datetime.datetime(2019, 11, 10, tzinfo=UTC)),
           PrimaryPhase.FULL)
    (t0, t1), = almanac_events.searches
    center = ts.utc(2019, 11, 10).tt
    assert t0.tt == pytest.approx(center - 16)
    assert t1.tt == pytest.approx(center + 16)


def test_no_event_of_the_phase(almanac_events):
    oracle = almanac_events([(2019, 11, 12, 13, 34, 2)])
    with pytest.raises(LocateError, match="no First Quarter within 16 days"):
        locate(datetime.datetime(2019, 11, 10, tzinfo=UTC), PrimaryPhase.FIRST, oracle)


def test_range_error_becomes_locate_error(almanac_events):
    oracle = almanac_events(error=KernelEdge("ephemeris segment only covers dates 1899-07-29 through 2053-10-09"))
    with pytest.raises(LocateError, match="only covers dates 1899-07-29"):
        locate(datetime.datetime(2100, 1, 1, tzinfo=UTC), PrimaryPhase.NEW, oracle)
