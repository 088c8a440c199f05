#!/usr/bin/env python3
"""
New Castle County Neighborhood Parcel Search
--------------------------------------------

Downloads the parcel records for one or more subdivisions from the New Castle
County (DE) ArcGIS "find" endpoint and prints them as a CSV.

Implements:
  * query_subdivision(name) -> list[ParcelRecord]
  * collect_parcels(names) -> list[ParcelRecord] (failed subdivisions skipped)
  * sort_parcels(records) -> list[ParcelRecord] (street name, then street number)
  * write_csv(records, destination)

Notes:
- The county's certificate chain is not trusted by the default root stores, so
  TLS verification is OFF unless --verify-tls is given.
- No paging: the find endpoint returns every match in one response.

Tested with Python 3.10+.
"""
from __future__ import annotations

import argparse
import csv
import functools
import logging
import re
import sys
import typing as t
from dataclasses import dataclass
from urllib.parse import urlencode

import requests
import urllib3


# ------------------------------
# Config & Endpoints
# ------------------------------

# ArcGIS REST: "find" on the base layers MapServer (layer 0 = parcels)
NCC_FIND_URL = (
    "https://gis.nccde.org/agsserver/rest/services/BaseMaps/Base_Layers/MapServer/find"
)

DEFAULT_USER_AGENT = "ncc-neighborhood/1.0 (+python-requests)"

STDOUT_SENTINEL = "-"

STREET_NAME_FIELD = "STNAME"
STREET_NUMBER_FIELD = "STNO"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

ParcelRecord = dict[str, str]


@dataclass
class ClientConfig:
    base_url: str = NCC_FIND_URL
    verify_tls: bool = False
    timeout: float | None = None
    user_agent: str = DEFAULT_USER_AGENT


# ------------------------------
# Errors
# ------------------------------

class ConfigurationError(Exception):
    """Bad startup configuration; the process exits with status 1."""


class QueryError(Exception):
    """A single subdivision query failed; the subdivision is skipped."""


class TransportError(QueryError):
    pass


class HttpStatusError(QueryError):
    def __init__(self, status_code: int):
        super().__init__(f"Got back status code {status_code}")
        self.status_code = status_code


class DecodeError(QueryError):
    pass


class ApiError(QueryError):
    def __init__(self, code: int, message: str):
        super().__init__(f"Got back status code {code}: {message}")
        self.code = code
        self.message = message


# ------------------------------
# Utilities
# ------------------------------

def parse_log_level(name: str) -> int:
    try:
        return LOG_LEVELS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Could not parse log level string {name!r} "
            f"(expected one of: error, warn, info, debug, trace)"
        ) from None


def setup_logging(level: int) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger().setLevel(level)


def fix_value(value: str) -> str:
    """Collapse whitespace runs to a single space and trim the ends."""
    return " ".join(value.split())


_INT32_RE = re.compile(r"[+-]?[0-9]+")


def parse_street_number(value: str | None) -> int | None:
    """Parse STNO as a signed 32-bit decimal integer; None when it isn't one."""
    if not value or not _INT32_RE.fullmatch(value):
        return None
    n = int(value)
    if not -(2**31) <= n < 2**31:
        return None
    return n


# ------------------------------
# HTTP session
# ------------------------------

def build_session(config: ClientConfig) -> requests.Session:
    s = requests.Session()
    s.headers.update({"User-Agent": config.user_agent})
    s.verify = config.verify_tls
    if not config.verify_tls:
        # the county's chain fails verification; don't warn on every request
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        logging.debug("TLS certificate verification is disabled")
    return s


# ------------------------------
# ArcGIS "find" query
# ------------------------------

def find_params(search_text: str) -> list[tuple[str, str]]:
    return [
        ("searchText", search_text),
        ("contains", "false"),
        ("searchFields", "SUBDIV"),
        ("sr", ""),
        ("layers", "0"),
        ("layerDefs", ""),
        ("returnGeometry", "false"),
        ("maxAllowableOffset", ""),
        ("geometryPrecision", ""),
        ("dynamicLayers", ""),
        ("returnZ", "false"),
        ("returnM", "false"),
        ("gdbVersion", ""),
        ("f", "pjson"),
    ]


def build_find_url(search_text: str, base_url: str = NCC_FIND_URL) -> str:
    return base_url + "?" + urlencode(find_params(search_text))


def decode_find_response(js: t.Any) -> list[ParcelRecord]:
    """
    Validate the find envelope and flatten it into parcel records:

        {"results": [{"attributes": {...}}, ...],
         "error": {"code": int, "message": str}}

    Raises ApiError when the service reports a code above 299 and DecodeError
    when the payload doesn't have that shape.
    """
    if js is None:
        # a literal null body is an empty envelope
        return []
    if not isinstance(js, dict):
        raise DecodeError(f"Could not parse response: expected an object, got {type(js).__name__}")

    err = js.get("error")
    if err is None:
        err = {}
    if not isinstance(err, dict):
        raise DecodeError("Could not parse response: 'error' is not an object")
    code = err.get("code")
    if code is None:
        code = 0
    if not isinstance(code, int) or isinstance(code, bool):
        raise DecodeError(f"Could not parse response: error code {code!r} is not an integer")
    message = err.get("message")
    if message is None:
        message = ""
    if not isinstance(message, str):
        raise DecodeError(f"Could not parse response: error message {message!r} is not a string")
    if code > 299:
        raise ApiError(code, message)

    results = js.get("results")
    if results is None:
        return []
    if not isinstance(results, list):
        raise DecodeError("Could not parse response: 'results' is not a list")

    records: list[ParcelRecord] = []
    for i, entry in enumerate(results):
        if not isinstance(entry, dict):
            raise DecodeError(f"Could not parse response: result {i} is not an object")
        attrs = entry.get("attributes")
        if attrs is None:
            attrs = {}
        if not isinstance(attrs, dict):
            raise DecodeError(f"Could not parse response: result {i} attributes is not an object")
        record: ParcelRecord = {}
        for k, v in attrs.items():
            if v is None:
                v = ""
            if not isinstance(v, str):
                raise DecodeError(
                    f"Could not parse response: attribute {k!r} of result {i} is not a string"
                )
            record[k] = fix_value(v)
        records.append(record)
    return records


def query_subdivision(
    subdivision: str,
    *,
    session: requests.Session,
    config: ClientConfig | None = None,
) -> list[ParcelRecord]:
    config = config or ClientConfig()
    url = build_find_url(subdivision, config.base_url)

    logging.debug("GET %s", url)
    try:
        r = session.get(url, timeout=config.timeout)
    except requests.RequestException as e:
        raise TransportError(f"Could not perform request: {e}") from e

    logging.debug("Status code: %d", r.status_code)
    if r.status_code != 200:
        raise HttpStatusError(r.status_code)

    logging.log(TRACE, "Response body: %s", r.text)
    try:
        js = r.json()
    except ValueError as e:
        raise DecodeError(f"Could not parse response: {e}") from e

    return decode_find_response(js)


# ------------------------------
# Aggregate & sort
# ------------------------------

def collect_parcels(
    subdivisions: t.Iterable[str],
    *,
    session: requests.Session,
    config: ClientConfig | None = None,
) -> list[ParcelRecord]:
    houses: list[ParcelRecord] = []
    for subdivision in subdivisions:
        logging.info("Working on subdivision: %s", subdivision)
        try:
            results = query_subdivision(subdivision, session=session, config=config)
        except QueryError as e:
            logging.warning("Could not query for subdivision %r: %s", subdivision, e)
            continue
        logging.info("Found %d homes (%s).", len(results), subdivision)
        houses.extend(results)
    logging.info("Found %d homes (total).", len(houses))
    return houses


def _street_key(record: ParcelRecord) -> tuple[str, int, int]:
    n = parse_street_number(record.get(STREET_NUMBER_FIELD))
    # unparsable numbers go after the numbered houses on the same street
    return (record.get(STREET_NAME_FIELD, ""), 0 if n is not None else 1, n or 0)


def _legacy_street_cmp(left: ParcelRecord, right: ParcelRecord) -> int:
    # Not symmetric: "left < right" whenever either STNO is unparsable.
    ln, rn = left.get(STREET_NAME_FIELD, ""), right.get(STREET_NAME_FIELD, "")
    if ln != rn:
        return -1 if ln < rn else 1
    li = parse_street_number(left.get(STREET_NUMBER_FIELD))
    ri = parse_street_number(right.get(STREET_NUMBER_FIELD))
    if li is None or ri is None:
        return -1
    if li < ri:
        return -1
    return 1 if li > ri else 0


def sort_parcels(records: t.Iterable[ParcelRecord], *, legacy: bool = False) -> list[ParcelRecord]:
    """Stable sort by STNAME, then numeric STNO."""
    if legacy:
        return sorted(records, key=functools.cmp_to_key(_legacy_street_cmp))
    return sorted(records, key=_street_key)


# ------------------------------
# CSV output
# ------------------------------

def csv_header(records: t.Iterable[ParcelRecord]) -> list[str]:
    keys: set[str] = set()
    for record in records:
        keys.update(record)
    return sorted(keys)


def write_csv(records: t.Sequence[ParcelRecord], destination: t.TextIO) -> None:
    writer = csv.DictWriter(
        destination,
        fieldnames=csv_header(records),
        restval="",
        lineterminator="\n",
    )
    writer.writeheader()
    writer.writerows(records)


def save_to_csv(records: t.Sequence[ParcelRecord], filename: str) -> None:
    if filename == STDOUT_SENTINEL:
        logging.info("Writing to stdout.")
        write_csv(records, sys.stdout)
        sys.stdout.flush()
        return

    logging.info("Writing to %r.", filename)
    try:
        f = open(filename, "w", newline="", encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Could not open file {filename!r}: {e}") from e
    with f:
        write_csv(records, f)


# ------------------------------
# CLI glue
# ------------------------------

EPILOG = """\
Examples:
   List all of the parcels in Green Valley.
      ncc-neighborhood 'GREEN VALLEY 1' 'GREEN VALLEY 2A' 'GREEN VALLEY 2B' 'GREEN VALLEY 3' 'GREEN VALLEY V'

   List all of the parcels in Cotswold Hills.
      ncc-neighborhood 'COTSWOLD HILLS'
"""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> t.NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="ncc-neighborhood",
        description=(
            "New Castle County neighborhood parcel search. Downloads the parcel "
            "data for the given subdivisions and prints a CSV of the data."
        ),
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("subdivisions", nargs="+", metavar="subdivision", help="Subdivision name (e.g., 'GREEN VALLEY 1')")
    parser.add_argument("--log-level", default="info", help="One of: error, warn, info, debug, trace (default: info)")
    parser.add_argument("--output-filename", default=STDOUT_SENTINEL, help="Where to write the results; use '-' for stdout (default: -)")
    parser.add_argument("--verify-tls", action="store_true", help="Verify the server's TLS certificate (off by default)")
    parser.add_argument("--base-url", default=NCC_FIND_URL, help="ArcGIS find endpoint to query")
    parser.add_argument("--legacy-sort", action="store_true", help="Order unparsable street numbers with the original comparator (left side always sorts first)")
    return parser


def main(argv: t.Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        level = parse_log_level(args.log_level)
    except ConfigurationError as e:
        setup_logging(logging.ERROR)
        logging.error("%s", e)
        return 1
    setup_logging(level)

    try:
        if args.output_filename == "":
            raise ConfigurationError("Output filename cannot be empty (use '-' for stdout)")

        config = ClientConfig(base_url=args.base_url, verify_tls=args.verify_tls)
        session = build_session(config)

        houses = collect_parcels(args.subdivisions, session=session, config=config)
        houses = sort_parcels(houses, legacy=args.legacy_sort)

        save_to_csv(houses, args.output_filename)
    except ConfigurationError as e:
        logging.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
