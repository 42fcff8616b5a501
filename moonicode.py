#!/usr/bin/env python3
"""
☾ MOONICODE ☽
Prints the phase of the moon as a single glyph, e.g. for a shell prompt.

Three sources can answer "what phase is the moon in today?", chosen with
[source] kind in moonicode.cfg or with --source:

    arithmetic  calendar arithmetic against a known new moon; no I/O at all
    ephemeris   dates of the four primary phases around the day, located with
                Skyfield + JPL ephemeris DE421 (or mean lunations, --oracle mean)
    remote      the USNO one-day almanac service

Today's answer is cached in a small file so repeated calls are instant.
On first use of the skyfield oracle, de421.bsp (~17MB) is downloaded to the
current directory.

Usage:
    python3 moonicode.py
    python3 moonicode.py --date 2019-11-12 --name
    python3 moonicode.py --source remote --city Boston --state MA
    python3 moonicode.py --compare --date 2019-11-01 --days 29
    python3 moonicode.py --anchors --date 2019-11-20
"""

import argparse
import configparser
import datetime
import enum
import json
import math
import pathlib
import sys
from collections import namedtuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

try:
    from skyfield import almanac
    from skyfield.api import load
    from skyfield.errors import EphemerisRangeError
except ImportError:
    print("ERROR: skyfield is not installed.", file=sys.stderr)
    print("Install it with:  pip install skyfield")
    sys.exit(1)

# ─────────────────────────────────────────────
#  CONSTANTS
# ─────────────────────────────────────────────

SYNODIC_MONTH = 29.530588          # mean synodic month, days
DAYS_PER_YEAR = 365.25             # leap years as an average
LUNATIONS_PER_YEAR = DAYS_PER_YEAR / SYNODIC_MONTH

# A known new moon: 2000-01-06 18:14 UTC.
EPOCH = datetime.datetime(2000, 1, 6, 18, 14, tzinfo=datetime.timezone.utc)

# Half a day either side of an exact primary phase, as a fraction of a lunation.
BUFFER = 12 / (SYNODIC_MONTH * 24)

# Mean new moon of lunation 0 (JDE) and the mean synodic month used with it.
MEAN_NEW_MOON_JD = 2451550.09766
MEAN_SYNODIC_MONTH = 29.530588861

# Any phase recurs within one lunation, so ±16 days always brackets the nearest.
SEARCH_DAYS = 16

ALMANAC_URL = "http://api.usno.navy.mil/rstt/oneday"


class Phase(enum.Enum):
    NEW_MOON        = "New Moon"
    WAXING_CRESCENT = "Waxing Crescent"
    FIRST_QUARTER   = "First Quarter"
    WAXING_GIBBOUS  = "Waxing Gibbous"
    FULL_MOON       = "Full Moon"
    WANING_GIBBOUS  = "Waning Gibbous"
    LAST_QUARTER    = "Last Quarter"
    WANING_CRESCENT = "Waning Crescent"


class PrimaryPhase(enum.Enum):
    """The four instantaneous phases; values match skyfield's MOON_PHASES index."""
    NEW   = 0
    FIRST = 1
    FULL  = 2
    LAST  = 3

    @property
    def phase(self):
        return PRIMARY_PHASES[self]

    @property
    def next_phase(self):
        """The intermediate phase that follows this one."""
        return NEXT_PHASE[self]

    @property
    def prev_phase(self):
        """The intermediate phase that leads up to this one."""
        return PREV_PHASE[self]


PRIMARY_PHASES = {
    PrimaryPhase.NEW:   Phase.NEW_MOON,
    PrimaryPhase.FIRST: Phase.FIRST_QUARTER,
    PrimaryPhase.FULL:  Phase.FULL_MOON,
    PrimaryPhase.LAST:  Phase.LAST_QUARTER,
}

NEXT_PHASE = {
    PrimaryPhase.NEW:   Phase.WAXING_CRESCENT,
    PrimaryPhase.FIRST: Phase.WAXING_GIBBOUS,
    PrimaryPhase.FULL:  Phase.WANING_GIBBOUS,
    PrimaryPhase.LAST:  Phase.WANING_CRESCENT,
}

PREV_PHASE = {
    PrimaryPhase.NEW:   Phase.WANING_CRESCENT,
    PrimaryPhase.FIRST: Phase.WAXING_CRESCENT,
    PrimaryPhase.FULL:  Phase.WAXING_GIBBOUS,
    PrimaryPhase.LAST:  Phase.WANING_GIBBOUS,
}

# Exact position of each primary phase within a lunation. 1.0 wraps to New.
PHASE_BOUNDARIES = [
    (0.0,  Phase.NEW_MOON),
    (0.25, Phase.FIRST_QUARTER),
    (0.5,  Phase.FULL_MOON),
    (0.75, Phase.LAST_QUARTER),
    (1.0,  Phase.NEW_MOON),
]

# Indexed by the quarter of the lunation a position falls in.
INTERMEDIATE_PHASES = [
    Phase.WAXING_CRESCENT,
    Phase.WAXING_GIBBOUS,
    Phase.WANING_GIBBOUS,
    Phase.WANING_CRESCENT,
]

GLYPHS = {
    Phase.NEW_MOON:        "\U0001F31A",   # new moon with face
    Phase.WAXING_CRESCENT: "\U0001F312",
    Phase.FIRST_QUARTER:   "\U0001F313",
    Phase.WAXING_GIBBOUS:  "\U0001F314",
    Phase.FULL_MOON:       "\U0001F31D",   # full moon with face
    Phase.WANING_GIBBOUS:  "\U0001F316",
    Phase.LAST_QUARTER:    "\U0001F317",
    Phase.WANING_CRESCENT: "\U0001F318",
}

SOURCES = ("arithmetic", "ephemeris", "remote")
ORACLES = ("skyfield", "mean")

# ─────────────────────────────────────────────
#  ERRORS
# ─────────────────────────────────────────────

class MoonPhaseError(Exception):
    pass


class UnknownPhaseError(MoonPhaseError, ValueError):
    """A phase name that is not one of the eight canonical names."""

    def __init__(self, phase_name):
        super().__init__(f"Unknown phase: {phase_name!r}")
        self.phase_name = phase_name


class LocateError(MoonPhaseError):
    """The phase oracle could not produce a calendar date."""


class FetchError(MoonPhaseError):
    """The remote almanac could not be fetched or understood."""

# ─────────────────────────────────────────────
#  HELPERS
# ─────────────────────────────────────────────

def _as_datetime(when):
    if isinstance(when, datetime.datetime):
        return when
    return datetime.datetime(when.year, when.month, when.day)


def _as_utc(when):
    """Aware datetimes are converted to UTC; naive ones are taken as UTC."""
    when = _as_datetime(when)
    if when.tzinfo is None:
        return when.replace(tzinfo=datetime.timezone.utc)
    return when.astimezone(datetime.timezone.utc)


def _in_zone_of(found_utc, when):
    """Express a UTC datetime the way `when` is expressed (same zone, or naive)."""
    if isinstance(when, datetime.datetime) and when.tzinfo is not None:
        return found_utc.astimezone(when.tzinfo)
    return found_utc.replace(tzinfo=None)

# ─────────────────────────────────────────────
#  CALENDAR / JULIAN DAY
# ─────────────────────────────────────────────

AstronomicalDay = namedtuple("AstronomicalDay", "year month decimal_day calendar")


def to_astronomical_day(when):
    when = _as_utc(when)
    seconds = (when.hour * 3600 + when.minute * 60 + when.second
               + when.microsecond / 1e6)
    return AstronomicalDay(when.year, when.month,
                           when.day + seconds / 86400.0, "gregorian")


def julian_day(day):
    """Julian day number of a Gregorian calendar day (Meeus, ch. 7)."""
    year, month = day.year, day.month
    if month <= 2:
        year  -= 1
        month += 12
    a = year // 100
    b = 2 - a + a // 4
    return (math.floor(365.25 * (year + 4716))
            + math.floor(30.6001 * (month + 1))
            + day.decimal_day + b - 1524.5)


def calendar_from_julian_day(jd):
    """
    Convert a Julian day back to (year, month, decimal_day).

    The result is always proleptic Gregorian, the inverse of julian_day() and
    the calendar of datetime, including before 1582-10-15.
    Raises LocateError for a negative day number, which the method can't handle.
    """
    if jd < 0:
        raise LocateError("Julian day is negative")

    jd += 0.5
    z = math.floor(jd)
    f = jd - z
    alpha = math.floor((z - 1867216.25) / 36524.25)
    a = z + 1 + alpha - alpha // 4
    b = a + 1524
    c = math.floor((b - 122.1) / 365.25)
    d = math.floor(365.25 * c)
    e = math.floor((b - d) / 30.6001)

    day   = b - d - math.floor(30.6001 * e) + f
    month = e - 1 if e < 14 else e - 13
    year  = c - 4716 if month > 2 else c - 4715
    return year, month, day

# ─────────────────────────────────────────────
#  PHASE ESTIMATE  (calendar arithmetic)
# ─────────────────────────────────────────────

def fractional_year(when):
    when = _as_utc(when)
    start = datetime.datetime(when.year, 1, 1, tzinfo=datetime.timezone.utc)
    day_of_year = (when - start).total_seconds() / 86400.0
    return when.year + day_of_year / DAYS_PER_YEAR


def lunation_position(when):
    """
    Progress through the current lunation, in [0, 1).

    0 is new moon and 0.5 full moon. Counts mean synodic months since EPOCH
    along a fractional-year time axis and keeps only the fractional part.
    """
    lunations = (fractional_year(when) - fractional_year(EPOCH)) * LUNATIONS_PER_YEAR
    return lunations - math.floor(lunations)


def classify(position):
    """
    Name the phase at a lunation position.

    A primary phase holds within BUFFER (half a day) of its exact position,
    boundary included; everything between belongs to the waxing/waning phase
    of that quarter.
    """
    position = position % 1.0
    for boundary, phase in PHASE_BOUNDARIES:
        if abs(position - boundary) <= BUFFER:
            return phase
    return INTERMEDIATE_PHASES[int(position * 4)]


def estimate(when):
    return classify(lunation_position(when))

# ─────────────────────────────────────────────
#  PHASE ORACLES
# ─────────────────────────────────────────────
#
# An oracle is any callable  oracle(day, phase) -> julian_day  that returns the
# Julian day (UT) of the occurrence of `phase` nearest to AstronomicalDay `day`.
# It raises LocateError when it cannot answer.

def mean_phase_oracle(day, phase):
    """Nearest mean phase; within about 14 hours of the true one."""
    quarter = phase.value / 4
    k = round((julian_day(day) - MEAN_NEW_MOON_JD) / MEAN_SYNODIC_MONTH - quarter) + quarter
    return MEAN_NEW_MOON_JD + MEAN_SYNODIC_MONTH * k


def ephemeris_oracle(eph, ts):
    """Build an oracle that finds true phase times with skyfield's almanac."""
    phase_at = almanac.moon_phases(eph)

    def oracle(day, phase):
        whole = math.floor(day.decimal_day)
        t = ts.utc(day.year, day.month, whole, 0, 0,
                   (day.decimal_day - whole) * 86400.0)
        t0 = ts.tt_jd(t.tt - SEARCH_DAYS)
        t1 = ts.tt_jd(t.tt + SEARCH_DAYS)
        try:
            times, codes = almanac.find_discrete(t0, t1, phase_at)
        except EphemerisRangeError as e:
            raise LocateError(str(e)) from e

        candidates = [ti for ti, code in zip(times, codes) if int(code) == phase.value]
        if not candidates:
            raise LocateError(
                f"no {phase.phase.value} within {SEARCH_DAYS} days of {t.utc_iso()}")
        nearest = min(candidates, key=lambda ti: abs(ti.tt - t.tt))
        return nearest.ut1

    return oracle


def load_ephemeris(filename):
    try:
        eph = load(filename)
    except Exception as e:
        print(f"ERROR loading ephemeris: {e}", file=sys.stderr)
        print("Make sure you have an internet connection for the first run.")
        sys.exit(1)
    ts = load.timescale()
    return eph, ts


def make_oracle(settings):
    if settings.oracle == "mean":
        return mean_phase_oracle
    print(f"Loading ephemeris (downloads {settings.ephemeris_file} on first run, ~17MB)...",
          file=sys.stderr)
    eph, ts = load_ephemeris(settings.ephemeris_file)
    return ephemeris_oracle(eph, ts)

# ─────────────────────────────────────────────
#  PRIMARY PHASE DATES
# ─────────────────────────────────────────────

# `when` is None and `error` holds the LocateError when the oracle failed.
Anchor = namedtuple("Anchor", "phase when error")


def locate(when, phase, oracle):
    """
    Date and time of the occurrence of `phase` nearest to `when`.

    The result is in the same zone as `when` (naive UTC for naive input) and
    carries the time of day, truncated to the second.
    """
    jd = oracle(to_astronomical_day(when), phase)
    year, month, day = calendar_from_julian_day(jd)
    seconds = (day - math.floor(day)) * 86400.0
    try:
        found = datetime.datetime(year, month, int(day), tzinfo=datetime.timezone.utc)
        found += datetime.timedelta(seconds=int(seconds))
    except (ValueError, OverflowError) as e:
        raise LocateError(str(e)) from e
    return _in_zone_of(found, when)


def _anchor(when, phase, oracle):
    try:
        return Anchor(phase, locate(when, phase, oracle), None)
    except LocateError as e:
        return Anchor(phase, None, e)


def near_phases(when, oracle):
    """Each primary phase located independently; not necessarily in date order."""
    when = _as_datetime(when)
    return [_anchor(when, phase, oracle) for phase in PrimaryPhase]


def phase_calendar(when, oracle):
    """
    The four primary phases of the lunation containing `when`, in date order.

    Starts from the last New Moon on or before the day and locates the other
    three relative to it. If that New Moon can't be found, falls back to
    locating each phase relative to `when` itself.
    """
    when = _as_datetime(when)
    new = _anchor(when, PrimaryPhase.NEW, oracle)
    if new.when is not None and new.when.date() > when.date():
        new = _anchor(new.when - datetime.timedelta(days=SYNODIC_MONTH),
                      PrimaryPhase.NEW, oracle)

    anchors = [new]
    for phase in (PrimaryPhase.FIRST, PrimaryPhase.FULL, PrimaryPhase.LAST):
        if new.when is None:
            near = when
        else:
            near = new.when + datetime.timedelta(days=SYNODIC_MONTH * phase.value / 4)
        anchors.append(_anchor(near, phase, oracle))
    return anchors


def nearest_named_phase(when, oracle):
    """
    Name the phase on the day of `when` from the primary phase dates around it.

    Anchors are scanned New, First, Full, Last comparing calendar days only:
    the first anchor on the day names a primary phase, the first one after it
    names the intermediate phase leading up to that anchor, and a day past all
    four is Waning Crescent. Anchors the oracle couldn't locate are reported
    on stderr and skipped.

    The anchors come from phase_calendar(), so they are in date order;
    near_phases() is the variant that locates each phase relative to `when`.
    """
    when = _as_datetime(when)
    anchors = phase_calendar(when, oracle)
    for anchor in anchors:
        if anchor.error is not None:
            print(f"Trouble with phase: {anchor.error}", file=sys.stderr)

    located = [anchor for anchor in anchors if anchor.when is not None]
    if not located:
        raise LocateError(f"no primary phase could be located near {when:%Y/%m/%d}: "
                          f"{anchors[0].error}")

    today = when.date()
    for anchor in located:
        day = anchor.when.date()
        if day == today:
            return anchor.phase.phase
        if day > today:
            return anchor.phase.prev_phase
    return PrimaryPhase.LAST.next_phase

# ─────────────────────────────────────────────
#  DISPLAY
# ─────────────────────────────────────────────

def glyph_for(phase_name):
    """Glyph for one of the eight canonical phase names (or a Phase)."""
    try:
        return GLYPHS[Phase(phase_name)]
    except ValueError:
        raise UnknownPhaseError(phase_name) from None


def compare_phases(start, days, oracle):
    """
    One row per day from `start`: the ephemeris-anchored phase next to the
    arithmetic estimate, for checking one method against the other.
    """
    rows = []
    for i in range(days):
        when = _as_datetime(start) + datetime.timedelta(days=i)
        nearest = nearest_named_phase(when, oracle)
        simple  = estimate(when)
        rows.append({
            "date":     when.date().isoformat(),
            "nearest":  nearest.value,
            "simple":   simple.value,
            "agree":    nearest is simple,
            "position": round(lunation_position(when), 3),
        })
    return rows


def print_comparison(rows):
    for row in rows:
        day = datetime.date.fromisoformat(row["date"])
        print(f"{day:%Y/%m/%d} {glyph_for(row['nearest'])} "
              f"{glyph_for(row['simple'])} {row['position']:.3f}")


def print_anchors(anchors):
    for anchor in anchors:
        if anchor.when is None:
            print(f"Trouble with phase: {anchor.error}", file=sys.stderr)
        else:
            print(f"{anchor.phase.phase.value} {anchor.when:%Y/%m/%d}")

# ─────────────────────────────────────────────
#  REMOTE ALMANAC
# ─────────────────────────────────────────────

def fetch_almanac(day, city, state, url=ALMANAC_URL, timeout=30):
    """GET the one-day almanac document for `day` at "<city>, <state>"."""
    params = {"date": day.strftime("%m/%d/%Y"), "loc": f"{city}, {state}"}
    try:
        r = requests.get(url, params=params, timeout=timeout)
        r.raise_for_status()
        return r.json()
    except requests.RequestException as e:
        raise FetchError(f"could not fetch {url}: {e}") from e
    except ValueError as e:
        raise FetchError(f"could not decode almanac response: {e}") from e


def phase_from_almanac(doc):
    """`curphase` when the service gives one, else `closestphase.phase`."""
    if not isinstance(doc, dict):
        raise FetchError(f"unexpected almanac response: {doc!r}")
    if doc.get("error") is True:
        raise FetchError(f"almanac service reported an error: {doc.get('type', doc)}")

    current = doc.get("curphase")
    if current:
        return current
    try:
        return doc["closestphase"]["phase"]
    except (KeyError, TypeError) as e:
        raise FetchError("almanac response has neither curphase nor closestphase.phase") from e

# ─────────────────────────────────────────────
#  DAY CACHE
# ─────────────────────────────────────────────

def read_cache(path, today, tz=None, verbose=False):
    """
    The cached glyph if the cache file was written on `today`, else None.

    The file's modification time, taken in `tz` (system local when None), is
    the only freshness check.
    """
    path = pathlib.Path(path)
    if not path.exists():
        if verbose:
            print(f"cache miss: {path} does not exist", file=sys.stderr)
        return None

    modified = datetime.datetime.fromtimestamp(path.stat().st_mtime, tz).date()
    if modified != today:
        if verbose:
            print(f"cache miss: {path} is stale (written {modified})", file=sys.stderr)
        return None

    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        if verbose:
            print(f"cache miss: {path} is unreadable ({e})", file=sys.stderr)
        return None


def write_cache(path, glyph):
    pathlib.Path(path).write_text(glyph, encoding="utf-8")

# ─────────────────────────────────────────────
#  CONFIGURATION FILE
# ─────────────────────────────────────────────

CONFIG_PATH = pathlib.Path("moonicode.cfg")

DEFAULT_CONFIG = """[location]
# Place sent to the remote almanac service
city = San Francisco
state = CA

[time]
# IANA timezone name; decides what "today" is
timezone = America/Los_Angeles

[source]
# arithmetic | ephemeris | remote
kind = ephemeris

[ephemeris]
# skyfield (JPL DE421, accurate) | mean (mean lunations, no download)
oracle = skyfield
file = de421.bsp

[remote]
url = http://api.usno.navy.mil/rstt/oneday
# Seconds
timeout = 30

[cache]
path = /tmp/moon
enabled = yes
"""

Settings = namedtuple("Settings", [
    "city", "state", "timezone", "source", "oracle", "ephemeris_file",
    "url", "timeout", "cache_path", "cache_enabled",
])


def load_config(path=CONFIG_PATH):
    """
    Load settings from the config file, writing the default one first if it
    does not exist. Exits with status 1 on a missing or malformed setting.
    """
    path = pathlib.Path(path)
    if not path.exists():
        path.write_text(DEFAULT_CONFIG)
        print(f"Created default config file: {path.resolve()}", file=sys.stderr)

    cfg = configparser.ConfigParser()
    cfg.read(path)

    try:
        settings = Settings(
            city           = cfg.get("location", "city").strip(),
            state          = cfg.get("location", "state").strip(),
            timezone       = cfg.get("time", "timezone").strip(),
            source         = cfg.get("source", "kind").strip(),
            oracle         = cfg.get("ephemeris", "oracle").strip(),
            ephemeris_file = cfg.get("ephemeris", "file").strip(),
            url            = cfg.get("remote", "url").strip(),
            timeout        = cfg.getfloat("remote", "timeout"),
            cache_path     = pathlib.Path(cfg.get("cache", "path").strip()),
            cache_enabled  = cfg.getboolean("cache", "enabled"),
        )
    except (configparser.NoSectionError, configparser.NoOptionError, ValueError) as e:
        print(f"Error reading config file ({path}): {e}", file=sys.stderr)
        sys.exit(1)

    if settings.source not in SOURCES:
        print(f"Error reading config file ({path}): unknown source '{settings.source}' "
              f"(expected one of {', '.join(SOURCES)})", file=sys.stderr)
        sys.exit(1)
    if settings.oracle not in ORACLES:
        print(f"Error reading config file ({path}): unknown oracle '{settings.oracle}' "
              f"(expected one of {', '.join(ORACLES)})", file=sys.stderr)
        sys.exit(1)

    return settings

# ─────────────────────────────────────────────
#  PHASE OF A DAY
# ─────────────────────────────────────────────

def resolve_phase_name(when, settings, oracle=None):
    """
    Phase name for the day of `when` from the configured source.

    The remote source returns whatever name the service sends, which may not
    be one of the canonical eight.
    """
    if settings.source == "arithmetic":
        return estimate(when).value
    if settings.source == "remote":
        doc = fetch_almanac(when, settings.city, settings.state,
                            settings.url, settings.timeout)
        return phase_from_almanac(doc)
    if oracle is None:
        oracle = make_oracle(settings)
    return nearest_named_phase(when, oracle).value

# ─────────────────────────────────────────────
#  ENTRY POINT
# ─────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="☾ Moonicode — the phase of the moon as a glyph",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 moonicode.py
  python3 moonicode.py --date 2019-11-12 --name
  python3 moonicode.py --source remote --city Boston --state MA
  python3 moonicode.py --compare --date 2019-11-01 --days 29
  python3 moonicode.py --anchors --raw --date 2019-11-16

Config file: moonicode.cfg (created automatically on first run)
        """
    )
    parser.add_argument("--config",   type=str, default=str(CONFIG_PATH),
                        help=f"Config file (default: {CONFIG_PATH})")
    parser.add_argument("--source",   choices=SOURCES, default=None,
                        help="Where the phase comes from (config: [source] kind)")
    parser.add_argument("--oracle",   choices=ORACLES, default=None,
                        help="How primary phases are located (config: [ephemeris] oracle)")
    parser.add_argument("--timezone", type=str, default=None,
                        help="IANA timezone name (config: [time] timezone)")
    parser.add_argument("--city",     type=str, default=None,
                        help="City for the remote almanac")
    parser.add_argument("--state",    type=str, default=None,
                        help="State for the remote almanac")
    parser.add_argument("--date",     type=str, default=None,
                        help="Date YYYY-MM-DD (default: today)")
    parser.add_argument("--name",     action="store_true", default=False,
                        help="Print the phase name instead of the glyph")
    parser.add_argument("--no-cache", action="store_true", default=False,
                        help="Neither read nor write the day cache")
    parser.add_argument("--compare",  action="store_true", default=False,
                        help="Compare the ephemeris and arithmetic methods day by day")
    parser.add_argument("--days",     type=int, default=29,
                        help="Days to compare (default: 29)")
    parser.add_argument("--anchors",  action="store_true", default=False,
                        help="Print the dates of the four primary phases")
    parser.add_argument("--raw",      action="store_true", default=False,
                        help="With --anchors: locate each phase independently")
    parser.add_argument("--json",     action="store_true", default=False,
                        help="Output the report as a single JSON object")
    parser.add_argument("--verbose",  action="store_true", default=False,
                        help="Explain cache misses on stderr")
    args = parser.parse_args(argv)

    settings = load_config(args.config)

    # CLI args take priority over config file
    overrides = {
        "source":   args.source,
        "oracle":   args.oracle,
        "timezone": args.timezone,
        "city":     args.city,
        "state":    args.state,
    }
    settings = settings._replace(**{k: v for k, v in overrides.items() if v is not None})
    if args.no_cache:
        settings = settings._replace(cache_enabled=False)

    try:
        tz = ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        print(f"Error: unknown timezone '{settings.timezone}'. "
              f"Use IANA names like 'America/Los_Angeles'.", file=sys.stderr)
        sys.exit(1)

    today = datetime.datetime.now(tz).date()
    if args.date:
        try:
            day = datetime.date.fromisoformat(args.date)
        except ValueError:
            print("Error: date must be YYYY-MM-DD format.", file=sys.stderr)
            sys.exit(1)
    else:
        day = today
    when = datetime.datetime(day.year, day.month, day.day, tzinfo=tz)

    if args.compare or args.anchors:
        oracle = make_oracle(settings)
        try:
            if args.compare:
                rows = compare_phases(when, args.days, oracle)
            elif args.raw:
                anchors = near_phases(when, oracle)
            else:
                anchors = phase_calendar(when, oracle)
        except LocateError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

        if args.compare:
            if args.json:
                print(json.dumps({"comparison": rows}, indent=2, ensure_ascii=False))
            else:
                print_comparison(rows)
        elif args.json:
            print(json.dumps({"date": day.isoformat(), "anchors": [
                {"phase": a.phase.phase.value,
                 "when": a.when.isoformat() if a.when else None,
                 "error": str(a.error) if a.error else None}
                for a in anchors]}, indent=2, ensure_ascii=False))
        else:
            print_anchors(anchors)
        return

    use_cache = settings.cache_enabled and day == today and not args.name and not args.json
    if use_cache:
        cached = read_cache(settings.cache_path, today, tz, verbose=args.verbose)
        if cached is not None:
            print(cached)
            return

    try:
        name = resolve_phase_name(when, settings)
    except (FetchError, LocateError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        glyph = glyph_for(name)
    except UnknownPhaseError as e:
        glyph = None
        if not args.json:
            print(f"Don't know phase: {e.phase_name}")
            return

    if args.json:
        print(json.dumps({"date": day.isoformat(), "source": settings.source,
                          "phase": name, "glyph": glyph},
                         indent=2, ensure_ascii=False))
        return

    print(name if args.name else glyph)

    if use_cache:
        try:
            write_cache(settings.cache_path, glyph)
        except OSError as e:
            print(f"Warning: could not write cache {settings.cache_path}: {e}",
                  file=sys.stderr)

if __name__ == "__main__":
    main()
