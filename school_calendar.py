from __future__ import annotations

import argparse
import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

try:
    from pdfminer.high_level import extract_pages as pdf_extract_pages
    from pdfminer.layout import LTTextContainer
except Exception:  # pragma: no cover - optional dependency
    pdf_extract_pages = None
    LTTextContainer = None

try:
    import yaml
except Exception:  # pragma: no cover - optional dependency
    yaml = None


HOLIDAY_HEADER = "Holidays and Other Days Schools Closed for Student Attendance"
STOP_HEADERS = (
    "Senior High School Parent/Teacher Conference Schedule",
    "Junior High School Parent/Teacher Conference Schedule",
    "Elementary School SEP Conference Schedule",
    "Beginning and Ending of Terms",
)
EVENT_MARKERS = ("School Begins", "School Ends")
UNNAMED_HOLIDAY = "Unnamed holiday"

WEEKDAYS = "Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday"
MONTHS = (
    "January|February|March|April|May|June|July|"
    "August|September|October|November|December"
)
DATE_TEXT = (
    rf"\b(?:{WEEKDAYS}),\s*(?:{MONTHS})\s+(?:3[01]|[12]\d|0?[1-9]),\s*\d{{4}}\b"
)
DATE_RE = re.compile(DATE_TEXT, re.IGNORECASE)
WRITTEN_DATE_RE = re.compile(
    rf"(?P<weekday>{WEEKDAYS}),\s*(?P<month>{MONTHS})\s+(?P<day>\d{{1,2}}),\s*(?P<year>\d{{4}})",
    re.IGNORECASE,
)
RANGE_RE = re.compile(
    rf"(?P<label>.*?)(?P<start>{DATE_TEXT})\s+through\s+(?P<end>{DATE_TEXT})",
    re.IGNORECASE,
)


class SourceUnavailableError(RuntimeError):
    """The calendar document could not be read or split into pages."""


@dataclass(frozen=True)
class DateRange:
    label: str
    start: str
    end: str


@dataclass(frozen=True)
class Event:
    name: str
    written: str
    date: date


@dataclass(frozen=True)
class Holiday:
    name: str
    dates: tuple[date, ...]


@dataclass(frozen=True)
class Markers:
    holiday_header: str = HOLIDAY_HEADER
    stop_headers: tuple[str, ...] = STOP_HEADERS
    event_markers: tuple[str, ...] = EVENT_MARKERS


@dataclass
class CalendarFacts:
    events: dict[str, Event] = field(default_factory=dict)
    holidays: dict[str, Holiday] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def add_event(self, name: str, written: str, day: date) -> None:
        self.events[name] = Event(name=name, written=written, date=day)

    def add_holiday(self, name: str, dates: Iterable[date]) -> None:
        dates = tuple(dates)
        if not dates:
            return
        self.holidays[name] = Holiday(name=name, dates=dates)

    def event_map(self) -> dict[str, str]:
        return {name: event.written for name, event in self.events.items()}

    def holiday_map(self) -> dict[str, list[str]]:
        return {
            name: [format_date(day) for day in holiday.dates]
            for name, holiday in self.holidays.items()
        }


def normalize_date_text(value: str) -> str:
    return " ".join(value.split())


def find_date(line: str) -> str | None:
    match = DATE_RE.search(line)
    return match.group(0) if match else None


def find_dates(line: str) -> list[str]:
    return [match.group(0) for match in DATE_RE.finditer(line)]


def find_date_range(line: str) -> DateRange | None:
    match = RANGE_RE.search(line)
    if not match:
        return None
    return DateRange(
        label=match.group("label"),
        start=match.group("start"),
        end=match.group("end"),
    )


def parse_written_date(value: str) -> date:
    match = WRITTEN_DATE_RE.fullmatch(value.strip())
    if not match:
        raise ValueError(f"Unrecognized date format: {value}")
    text = "{weekday}, {month} {day}, {year}".format(
        **{key: part.capitalize() for key, part in match.groupdict().items()}
    )
    parsed = datetime.strptime(text, "%A, %B %d, %Y").date()
    if f"{parsed:%A}" != match.group("weekday").capitalize():
        raise ValueError(f"{normalize_date_text(value)} falls on a {parsed:%A}")
    return parsed


def format_date(value: date) -> str:
    return f"{value:%B %d, %Y}"


def expand_dates(start: date, end: date) -> list[date]:
    dates: list[date] = []
    current = start
    while current <= end:
        dates.append(current)
        current += timedelta(days=1)
    return dates


class SectionTracker:
    """Follows the holiday section of the document line by line.

    ``update`` reports ``"enter"`` on the holiday header, ``"leave"`` on any of
    the headers of the sections that follow it, and ``None`` otherwise.
    """

    def __init__(
        self,
        holiday_header: str = HOLIDAY_HEADER,
        stop_headers: Iterable[str] = STOP_HEADERS,
    ) -> None:
        self.holiday_header = holiday_header
        self.stop_headers = tuple(stop_headers)
        self.inside_holidays = False

    @property
    def state(self) -> str:
        return "InsideHolidays" if self.inside_holidays else "Outside"

    def update(self, line: str) -> str | None:
        if self.holiday_header in line:
            self.inside_holidays = True
            return "enter"
        if any(header in line for header in self.stop_headers):
            self.inside_holidays = False
            return "leave"
        return None


def holiday_name(line: str) -> str:
    if "." not in line:
        return line.strip()
    return line.split(".", 1)[0].strip() or UNNAMED_HOLIDAY


def _parse_or_warn(value: str, facts: CalendarFacts) -> date | None:
    try:
        return parse_written_date(value)
    except ValueError as exc:
        facts.warnings.append(f"skipped date {normalize_date_text(value)!r}: {exc}")
        return None


def extract_holiday_dates(line: str, facts: CalendarFacts) -> list[date]:
    date_range = find_date_range(line)
    if date_range:
        start = _parse_or_warn(date_range.start, facts)
        end = _parse_or_warn(date_range.end, facts)
        if start is None or end is None:
            return []
        if start > end:
            facts.warnings.append(
                f"reversed range {normalize_date_text(date_range.start)} through "
                f"{normalize_date_text(date_range.end)}"
            )
        return expand_dates(start, end)

    dates: list[date] = []
    for text in find_dates(line):
        parsed = _parse_or_warn(text, facts)
        if parsed is not None:
            dates.append(parsed)
    return dates


def extract_line(
    line: str,
    tracker: SectionTracker,
    facts: CalendarFacts,
    event_markers: Iterable[str] = EVENT_MARKERS,
) -> bool:
    """Classify one line, recording what it holds into ``facts``.

    Returns False when the line closes the holiday section, meaning the rest of
    the current page must not be read.
    """
    # First marker on the line wins, even when its date is missing or invalid.
    for marker in event_markers:
        if marker in line:
            written = find_date(line)
            if written:
                parsed = _parse_or_warn(written, facts)
                if parsed is not None:
                    facts.add_event(marker, written, parsed)
            break

    transition = tracker.update(line)
    if transition == "leave":
        return False
    if transition == "enter" or not tracker.inside_holidays:
        return True

    dates = extract_holiday_dates(line, facts)
    if dates:
        facts.add_holiday(holiday_name(line), dates)
    return True


def extract_pages(
    pages: Iterable[str | None],
    markers: Markers | None = None,
    debug: bool = False,
) -> CalendarFacts:
    markers = markers or Markers()
    tracker = SectionTracker(markers.holiday_header, markers.stop_headers)
    facts = CalendarFacts()
    for number, page_text in enumerate(pages, start=1):
        if page_text is None:
            facts.warnings.append(f"page {number} has no extractable text")
            continue
        lines_read = 0
        for line in page_text.splitlines():
            lines_read += 1
            if not extract_line(line, tracker, facts, markers.event_markers):
                break
        if debug:
            print(
                f"page {number}: lines={lines_read} section={tracker.state} "
                f"events={len(facts.events)} holidays={len(facts.holidays)}"
            )
    return facts


def extract_text(text: str, markers: Markers | None = None) -> CalendarFacts:
    return extract_pages([text], markers)


def split_text_pages(text: str) -> list[str | None]:
    return [page if page.strip() else None for page in text.split("\f")]


def read_pdf_pages(path: Path) -> list[str | None]:
    if pdf_extract_pages is None:
        raise RuntimeError("pdfminer.six not installed")
    pages: list[str | None] = []
    try:
        with path.open("rb") as handle:
            for layout in pdf_extract_pages(handle):
                text = "".join(
                    element.get_text()
                    for element in layout
                    if isinstance(element, LTTextContainer)
                )
                pages.append(text if text.strip() else None)
    except OSError as exc:
        raise SourceUnavailableError(f"cannot read {path}: {exc}") from exc
    except Exception as exc:
        raise SourceUnavailableError(f"cannot parse PDF {path}: {exc}") from exc
    return pages


def read_source_pages(source: str | Path) -> list[str | None]:
    path = Path(source)
    if path.suffix.lower() == ".pdf":
        pages = read_pdf_pages(path)
    else:
        try:
            pages = split_text_pages(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceUnavailableError(f"cannot read {path}: {exc}") from exc
    if not pages:
        raise SourceUnavailableError(f"no pages found in {path}")
    return pages


def load_config(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    if yaml is None:
        raise RuntimeError("PyYAML is not installed")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else {}


def resolve_config_path(value: object, base_dir: Path) -> Path | None:
    if value is None:
        return None
    path = Path(str(value))
    return path if path.is_absolute() else base_dir / path


def markers_from_config(config: dict[str, object]) -> Markers:
    def text_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
        value = config.get(key)
        if value is None:
            return default
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ValueError(f"{key} must be a list of strings")
        return tuple(value)

    return Markers(
        holiday_header=str(config.get("holiday_header", HOLIDAY_HEADER)),
        stop_headers=text_list("stop_headers", STOP_HEADERS),
        event_markers=text_list("event_markers", EVENT_MARKERS),
    )


def date_runs(dates: Iterable[date]) -> list[tuple[date, date]]:
    """Group dates into (first, last) runs of consecutive days."""
    runs: list[tuple[date, date]] = []
    for current in sorted(set(dates)):
        if runs and current - runs[-1][1] == timedelta(days=1):
            runs[-1] = (runs[-1][0], current)
        else:
            runs.append((current, current))
    return runs


def build_calendar_json(
    facts: CalendarFacts,
    source: str,
    school_name: str | None = None,
) -> dict[str, object]:
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "source": source,
        "school": school_name,
        "events": [
            {"name": event.name, "written": event.written, "date": event.date.isoformat()}
            for event in facts.events.values()
        ],
        "holidays": [
            {
                "name": holiday.name,
                "dates": [format_date(day) for day in holiday.dates],
                "iso_dates": [day.isoformat() for day in holiday.dates],
            }
            for holiday in facts.holidays.values()
        ],
    }


def format_ics_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def ics_escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
    )


def slugify(value: str) -> str:
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value.strip().lower()).strip("-")
    return value or "event"


def write_ics(path: Path, facts: CalendarFacts, school_name: str | None = None) -> None:
    now = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//school-calendar//calendar facts//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]

    def add_event(uid: str, start: date, end: date, label: str) -> None:
        summary = f"{school_name}: {label}" if school_name else label
        lines.extend(
            [
                "BEGIN:VEVENT",
                f"UID:{uid}@school-calendar",
                f"DTSTAMP:{now}",
                f"DTSTART;VALUE=DATE:{format_ics_date(start)}",
                f"DTEND;VALUE=DATE:{format_ics_date(end + timedelta(days=1))}",
                f"SUMMARY:{ics_escape(summary)}",
                "END:VEVENT",
            ]
        )

    for event in facts.events.values():
        add_event(f"event-{slugify(event.name)}-{event.date:%Y%m%d}", event.date, event.date, event.name)

    for holiday in facts.holidays.values():
        for start, end in date_runs(holiday.dates):
            add_event(
                f"holiday-{slugify(holiday.name)}-{start:%Y%m%d}-{end:%Y%m%d}",
                start,
                end,
                holiday.name,
            )

    lines.append("END:VCALENDAR")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def json_data_changed(new_data: dict[str, object], existing_data: dict[str, object] | None) -> bool:
    """Check if JSON data has changed, ignoring generated_at timestamp."""
    if not isinstance(existing_data, dict):
        return True
    new_copy = {k: v for k, v in new_data.items() if k != "generated_at"}
    existing_copy = {k: v for k, v in existing_data.items() if k != "generated_at"}
    return new_copy != existing_copy


def write_outputs(output_dir: Path, payload: dict[str, object], facts: CalendarFacts, school_name: str | None) -> bool:
    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / "calendar.json"
    existing_data = None
    if json_path.exists():
        try:
            existing_data = json.loads(json_path.read_text(encoding="utf-8"))
        except ValueError:
            pass  # If we can't parse it, start fresh

    if not json_data_changed(payload, existing_data):
        return False
    json_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    write_ics(output_dir / "calendar.ics", facts, school_name)
    return True


def print_facts(facts: CalendarFacts) -> None:
    for name, written in facts.event_map().items():
        print(f"Event: {name}, Date: {written}")
    for name, dates in facts.holiday_map().items():
        print(f"Holiday: {name}, Dates: {dates}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Extract school events and holidays from a school calendar document."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).with_name("config.yaml"),
        help="YAML config file (optional)",
    )
    parser.add_argument(
        "--source",
        default=None,
        help="Path to the calendar PDF or a plain-text export of it",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory to write calendar.json and calendar.ics",
    )
    parser.add_argument(
        "--school-name",
        default=None,
        help="School name to include in written outputs",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the extracted facts as JSON instead of a listing",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print per-page section state and running counts",
    )
    args = parser.parse_args(argv)

    config = load_config(args.config) if args.config else {}
    config_base = args.config.parent if args.config else Path.cwd()
    source = resolve_config_path(
        args.source or config.get("source", "calendars/calendar-2024-2025.pdf"),
        Path.cwd() if args.source else config_base,
    )
    output_dir = args.output_dir or resolve_config_path(config.get("output_dir"), config_base)
    school_name = args.school_name or config.get("school_name")
    debug = args.debug or bool(config.get("debug", False))
    markers = markers_from_config(config)

    try:
        pages = read_source_pages(source)
    except SourceUnavailableError as exc:
        print(f"Error: {exc}")
        raise SystemExit(1) from exc

    facts = extract_pages(pages, markers, debug=debug)
    for warning in facts.warnings:
        print(f"Warning: {warning}")

    payload = build_calendar_json(facts, str(source), school_name)
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print_facts(facts)

    if output_dir:
        if write_outputs(Path(output_dir), payload, facts, school_name):
            print(f"Wrote outputs to {output_dir}")
        else:
            print(f"Outputs in {output_dir} already up to date")


if __name__ == "__main__":
    main()
