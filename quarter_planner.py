"""
Quarter Planning Tool
Tracks team capacity, roadmap and technical projects, and per-member weekly
allocations for a quarter, and produces allocation workbooks and charts.

Features:
  - Sprint-aware quarter calendar (sprints anchored to a global date, not the quarter)
  - Weekly allocation ledger with split weeks (two projects sharing one week)
  - Capacity status badges comparing allocated weeks against estimates
  - Technical project dates derived from the sprints their allocations fall in
  - Portable plan export (JSON file or base64 share string) with integrity checks
  - Excel allocation workbook and PNG allocation/capacity charts
"""

import argparse
import base64
import binascii
import copy
import io
import json
import math
import os
import re
import sys
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from urllib.parse import unquote

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
from matplotlib.patches import Rectangle
import numpy as np
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side


# ── Constants ────────────────────────────────────────────────────────────────

PLAN_FORMAT_VERSION = "1.0"
PREFERENCES_SCHEMA_VERSION = "1.0"

DEFAULT_TEAM_NAME = "My Team"
DEFAULT_SPRINT_ANCHOR = date(2024, 1, 1)
DEFAULT_SPRINT_LENGTH_WEEKS = 2
DEFAULT_CAPACITY = 12.0
DEFAULT_NUM_WEEKS = 13

MIN_SPRINT_LENGTH_WEEKS = 1
MAX_SPRINT_LENGTH_WEEKS = 4

# A plan covers at most a year of weeks
MAX_NUM_WEEKS = 53

# Percentages within this distance are considered equal
PERCENTAGE_EPSILON = 0.01

# Capacity status thresholds (percent difference between allocated and estimated)
SUCCESS_THRESHOLD_PCT = 5.0
WARNING_THRESHOLD_PCT = 25.0

DEFAULT_OUTDIR = "output"
STORAGE_DIR_ENV = "QUARTER_PLANNER_HOME"
DEFAULT_STORAGE_DIR = os.path.join(os.path.expanduser("~"), ".config", "quarter-planner")
PREFERENCES_FILENAME = "preferences.json"
PLAN_STATE_FILENAME = "plan_state.json"

TECHNICAL_FILTERS = ["all", "on_track", "at_risk", "no_link"]
TECHNICAL_SORTS = ["roadmap", "status", "allocation"]
REPORT_CHOICES = ["all", "workbook", "grid", "capacity"]


class Role(str, Enum):
    """Team member discipline. Serialised as 'eng' / 'sci'."""
    ENGINEERING = "eng"
    SCIENCE = "sci"

    @property
    def short_name(self):
        return ROLE_SHORT_NAMES[self]


ROLE_SHORT_NAMES = {Role.ENGINEERING: "SDE", Role.SCIENCE: "AS"}


class ProjectColor(str, Enum):
    BLUE = "Blue"
    GREEN = "Green"
    YELLOW = "Yellow"
    ORANGE = "Orange"
    RED = "Red"
    PURPLE = "Purple"
    PINK = "Pink"
    TEAL = "Teal"
    INDIGO = "Indigo"

    def to_hex(self):
        return PROJECT_COLOR_HEX[self]


PROJECT_COLOR_HEX = {
    ProjectColor.BLUE: "#5AC8FA",
    ProjectColor.GREEN: "#4ADE80",
    ProjectColor.YELLOW: "#FBBF24",
    ProjectColor.ORANGE: "#FB923C",
    ProjectColor.RED: "#F472B6",
    ProjectColor.PURPLE: "#A78BFA",
    ProjectColor.PINK: "#E879F9",
    ProjectColor.TEAL: "#2DD4BF",
    ProjectColor.INDIGO: "#818CF8",
}


class CapacityStatus(str, Enum):
    """Badge state for an allocated-vs-estimated comparison."""
    NEUTRAL = "neutral"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


STATUS_COLORS = {
    CapacityStatus.NEUTRAL: "#9E9E9E",
    CapacityStatus.SUCCESS: "#43A047",
    CapacityStatus.WARNING: "#FF8F00",
    CapacityStatus.ERROR: "#E53935",
}

# Sort order used by the "status" sort of technical projects (worst first)
STATUS_SORT_ORDER = {
    CapacityStatus.ERROR: 0,
    CapacityStatus.WARNING: 1,
    CapacityStatus.SUCCESS: 2,
    CapacityStatus.NEUTRAL: 3,
}

STYLE = {
    "font_family": "DejaVu Sans",
    "title_size": 18,
    "subtitle_size": 13,
    "label_size": 9.5,
    "tick_size": 8.5,
    "small_size": 7.5,
    "bg_color": "#FAFAFA",
    "panel_bg": "#FFFFFF",
    "text_primary": "#1A1A2E",
    "text_secondary": "#555555",
    "text_muted": "#999999",
    "grid_color": "#E0E0E0",
    "empty_cell_color": "#F0F0F0",
    "estimate_color": "#CFD8DC",
    "sprint_line_color": "#1A1A2E",
    "dpi": 180,
    "fig_width": 20,
}


# ── Utility Helpers ──────────────────────────────────────────────────────────

def new_id():
    """Return a fresh opaque identifier for an entity."""
    return str(uuid.uuid4())


def utc_now():
    return datetime.now(timezone.utc)


def clean_str(val):
    """Return stripped string or empty string for NaN/None."""
    if val is None or (isinstance(val, float) and math.isnan(val)):
        return ""
    return str(val).strip()


def _ctx(context):
    return f" ({context})" if context else ""


def parse_date(val, context=""):
    """Parse a calendar date from JSON or Excel values: date, datetime, Timestamp, or string."""
    if val is None or val is pd.NaT or (isinstance(val, float) and math.isnan(val)):
        raise ValueError(f"Date is blank{_ctx(context)}")
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if isinstance(val, str):
        val = val.strip()
        if not val:
            raise ValueError(f"Date is blank{_ctx(context)}")
        for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"):
            try:
                return datetime.strptime(val, fmt).date()
            except ValueError:
                pass
        raise ValueError(f"Cannot parse date{_ctx(context)}: {val!r}. Expected YYYY-MM-DD or DD/MM/YYYY")
    raise ValueError(f"Cannot parse date{_ctx(context)}: {val!r}")


def parse_optional_date(val, context=""):
    if val is None or (isinstance(val, str) and not val.strip()):
        return None
    return parse_date(val, context)


def parse_timestamp(val, context=""):
    """Parse an ISO 8601 timestamp into an aware UTC datetime."""
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    if not isinstance(val, str) or not val.strip():
        raise ValueError(f"Cannot parse timestamp{_ctx(context)}: {val!r}")
    text = val.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat accepts at most microseconds
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Cannot parse timestamp{_ctx(context)}: {val!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(dt):
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_number(val, context="", minimum=None):
    """Parse a finite real number, optionally enforcing a lower bound."""
    if isinstance(val, bool):
        raise ValueError(f"Invalid number{_ctx(context)}: {val!r}")
    try:
        number = float(val)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid number{_ctx(context)}: {val!r}") from None
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"Invalid number{_ctx(context)}: {val!r}")
    if minimum is not None and number < minimum:
        raise ValueError(f"Number{_ctx(context)} must be >= {minimum:g}, got {number:g}")
    return number


def parse_int(val, context="", minimum=None):
    number = parse_number(val, context, minimum)
    if not number.is_integer():
        raise ValueError(f"Expected a whole number{_ctx(context)}: {val!r}")
    return int(number)


def parse_enum(enum_cls, val, context=""):
    try:
        return enum_cls(val)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {enum_cls.__name__}{_ctx(context)}: {val!r}. Valid: {valid}") from None


def _require(data, key, context):
    if not isinstance(data, dict):
        raise ValueError(f"Expected an object{_ctx(context)}, got {type(data).__name__}")
    if key not in data:
        raise ValueError(f"Missing field '{key}'{_ctx(context)}")
    return data[key]


def _require_list(data, key, context):
    value = _require(data, key, context)
    if not isinstance(value, list):
        raise ValueError(f"Field '{key}'{_ctx(context)} must be a list")
    return value


def _optional_notes(val):
    notes = clean_str(val)
    return notes or None


def _parse_name(val, context=""):
    name = clean_str(val)
    if not name:
        raise ValueError(f"Name is blank{_ctx(context)}")
    return name


def _parse_estimate(val, context=""):
    return parse_number(val, context, minimum=0)


def _apply_changes(entity, changes, parsers, check=None):
    """Edit an entity in place.

    Each value goes through the parser for its field; fields without a parser
    (ids, unknown names) are refused. check runs on an edited copy first, so
    a rejected edit leaves the entity untouched.
    """
    kind = type(entity).__name__
    unknown = set(changes) - set(parsers)
    if unknown:
        raise ValueError(f"Unknown field(s) for {kind}: {', '.join(sorted(unknown))}")
    parsed = {key: parsers[key](value, f"{kind}.{key}") for key, value in changes.items()}
    candidate = copy.copy(entity)
    for key, value in parsed.items():
        setattr(candidate, key, value)
    if check is not None:
        check(candidate)
    for key, value in parsed.items():
        setattr(entity, key, value)
    return entity


class _TeeWriter:
    """Write to two streams simultaneously (for summary.txt capture)."""
    def __init__(self, a, b):
        self.a, self.b = a, b
    def write(self, data):
        self.a.write(data)
        self.b.write(data)
    def flush(self):
        self.a.flush()
        self.b.flush()


# ── Calendar & Sprint Math ───────────────────────────────────────────────────

@dataclass(frozen=True)
class WeekInfo:
    """One week column of the quarter grid."""
    start_date: date
    week_number: int
    sprint_number: int
    total_weeks: int
    sprint_length_weeks: int

    def format_week_number(self):
        return f"Week {self.week_number}"

    def format_sprint_number(self):
        return f"Sprint {self.sprint_number}"

    def format_date(self, include_weekday=False):
        """Format as 'Jan 6', or 'Jan 8 (W)' for a Wednesday when include_weekday is set."""
        formatted = f"{self.start_date.strftime('%b')} {self.start_date.day}"
        if include_weekday and self.start_date.weekday() == 2:
            return f"{formatted} (W)"
        return formatted

    def is_sprint_start(self):
        return (self.week_number - 1) % self.sprint_length_weeks == 0


def _check_sprint_length(sprint_length_weeks):
    if sprint_length_weeks < 1:
        raise ValueError(f"Sprint length must be at least 1 week, got {sprint_length_weeks}")


def generate_quarter_weeks(quarter_start, num_weeks, sprint_length_weeks):
    """Return the ordered WeekInfo list for a quarter, one entry per 7-day step."""
    _check_sprint_length(sprint_length_weeks)
    weeks = []
    for week_index in range(max(num_weeks, 0)):
        weeks.append(WeekInfo(
            start_date=quarter_start + timedelta(weeks=week_index),
            week_number=week_index + 1,
            sprint_number=week_index // sprint_length_weeks + 1,
            total_weeks=num_weeks,
            sprint_length_weeks=sprint_length_weeks,
        ))
    return weeks


def get_sprint_boundaries(week_start, anchor_date, sprint_length_weeks):
    """Return (sprint_start, sprint_end) of the sprint containing week_start.

    Sprints are counted from anchor_date, which need not be the quarter start.
    sprint_end is the last day of the sprint (inclusive).
    """
    _check_sprint_length(sprint_length_weeks)
    week_index = (week_start - anchor_date).days // 7
    sprint_index = week_index // sprint_length_weeks
    sprint_start = anchor_date + timedelta(weeks=sprint_index * sprint_length_weeks)
    sprint_end = sprint_start + timedelta(weeks=sprint_length_weeks) - timedelta(days=1)
    return sprint_start, sprint_end


def get_quarter_start_date(year, quarter):
    """First day of Q1-Q4 (Jan 1, Apr 1, Jul 1, Oct 1), or None for an invalid quarter."""
    if quarter not in (1, 2, 3, 4):
        return None
    return date(year, (quarter - 1) * 3 + 1, 1)


def get_quarter_label(year, quarter):
    return f"Q{quarter} {year}"


def get_next_quarter_info(today):
    """Return (year, quarter, start_date, name) of the first quarter starting on or after today."""
    year = today.year
    for quarter in range(1, 5):
        start = get_quarter_start_date(year, quarter)
        if start >= today:
            return year, quarter, start, get_quarter_label(year, quarter)
    next_year = year + 1
    return next_year, 1, get_quarter_start_date(next_year, 1), get_quarter_label(next_year, 1)


def find_first_monday(d):
    """First Monday on or after the given date."""
    return d + timedelta(days=(7 - d.weekday()) % 7)


def get_week_start(d):
    """Get the Monday of the week containing the given date."""
    return d - timedelta(days=d.weekday())


def weeks_between(start, end):
    return (end - start).days / 7.0


def is_date_in_week(d, week_start):
    return week_start <= d <= week_start + timedelta(days=6)


# ── Domain Entities ──────────────────────────────────────────────────────────

@dataclass
class TeamMember:
    name: str
    role: Role
    capacity: float
    id: str = field(default_factory=new_id)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "role": self.role.value, "capacity": self.capacity}

    @classmethod
    def from_dict(cls, data, context="team member"):
        return cls(
            id=clean_str(_require(data, "id", context)),
            name=clean_str(_require(data, "name", context)),
            role=parse_enum(Role, _require(data, "role", context), f"{context}.role"),
            capacity=parse_number(_require(data, "capacity", context), f"{context}.capacity", minimum=0),
        )


@dataclass
class RoadmapProject:
    """High-level initiative with its own estimate and timeline."""
    name: str
    eng_estimate: float
    sci_estimate: float
    start_date: date
    launch_date: date
    color: ProjectColor = ProjectColor.BLUE
    notes: str = None
    id: str = field(default_factory=new_id)

    def total_estimate(self):
        return self.eng_estimate + self.sci_estimate

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "eng_estimate": self.eng_estimate,
            "sci_estimate": self.sci_estimate,
            "start_date": self.start_date.isoformat(),
            "launch_date": self.launch_date.isoformat(),
            "color": self.color.value,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data, context="roadmap project"):
        return cls(
            id=clean_str(_require(data, "id", context)),
            name=clean_str(_require(data, "name", context)),
            eng_estimate=parse_number(_require(data, "eng_estimate", context),
                                      f"{context}.eng_estimate", minimum=0),
            sci_estimate=parse_number(_require(data, "sci_estimate", context),
                                      f"{context}.sci_estimate", minimum=0),
            start_date=parse_date(_require(data, "start_date", context), f"{context}.start_date"),
            launch_date=parse_date(_require(data, "launch_date", context), f"{context}.launch_date"),
            color=parse_enum(ProjectColor, data.get("color", ProjectColor.BLUE.value), f"{context}.color"),
            notes=_optional_notes(data.get("notes")),
        )


@dataclass
class TechnicalProject:
    """Unit of implementation work, optionally linked to a roadmap project.

    start_date and expected_completion are rewritten from allocations by
    PlanState.update_technical_project_dates once the project has any.
    """
    name: str
    roadmap_project_id: str = None
    eng_estimate: float = 0.0
    sci_estimate: float = 0.0
    start_date: date = None
    expected_completion: date = None
    notes: str = None
    id: str = field(default_factory=new_id)

    def total_estimate(self):
        return self.eng_estimate + self.sci_estimate

    def color(self, state):
        """Color of the linked roadmap project; Blue when unlinked or the link dangles."""
        if self.roadmap_project_id:
            roadmap = state.get_roadmap_project(self.roadmap_project_id)
            if roadmap is not None:
                return roadmap.color
        return ProjectColor.BLUE

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "roadmap_project_id": self.roadmap_project_id,
            "eng_estimate": self.eng_estimate,
            "sci_estimate": self.sci_estimate,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "expected_completion": self.expected_completion.isoformat() if self.expected_completion else None,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data, context="technical project"):
        return cls(
            id=clean_str(_require(data, "id", context)),
            name=clean_str(_require(data, "name", context)),
            roadmap_project_id=clean_str(data.get("roadmap_project_id")) or None,
            eng_estimate=parse_number(_require(data, "eng_estimate", context),
                                      f"{context}.eng_estimate", minimum=0),
            sci_estimate=parse_number(_require(data, "sci_estimate", context),
                                      f"{context}.sci_estimate", minimum=0),
            start_date=parse_optional_date(data.get("start_date"), f"{context}.start_date"),
            expected_completion=parse_optional_date(data.get("expected_completion"),
                                                    f"{context}.expected_completion"),
            notes=_optional_notes(data.get("notes")),
        )


# Editable fields and how an edited value is parsed
TEAM_MEMBER_EDITS = {
    "name": _parse_name,
    "role": lambda val, context: parse_enum(Role, val, context),
    "capacity": _parse_estimate,
}

ROADMAP_PROJECT_EDITS = {
    "name": _parse_name,
    "eng_estimate": _parse_estimate,
    "sci_estimate": _parse_estimate,
    "start_date": parse_date,
    "launch_date": parse_date,
    "color": lambda val, context: parse_enum(ProjectColor, val, context),
    "notes": lambda val, context: _optional_notes(val),
}

TECHNICAL_PROJECT_EDITS = {
    "name": _parse_name,
    "roadmap_project_id": lambda val, context: clean_str(val) or None,
    "eng_estimate": _parse_estimate,
    "sci_estimate": _parse_estimate,
    "start_date": parse_date,
    "expected_completion": parse_optional_date,
    "notes": lambda val, context: _optional_notes(val),
}


def check_roadmap_project(project):
    """Raise ValueError unless estimates are non-negative and start_date < launch_date."""
    if project.eng_estimate < 0 or project.sci_estimate < 0:
        raise ValueError(f"Roadmap project '{project.name}': estimates must be non-negative")
    if project.start_date >= project.launch_date:
        raise ValueError(f"Roadmap project '{project.name}': start date "
                         f"{project.start_date.isoformat()} must be before launch date "
                         f"{project.launch_date.isoformat()}")


def check_technical_project(project):
    if project.eng_estimate < 0 or project.sci_estimate < 0:
        raise ValueError(f"Technical project '{project.name}': estimates must be non-negative")
    if project.start_date is None:
        raise ValueError(f"Technical project '{project.name}': start date is required")


@dataclass
class Assignment:
    """Share of one week given to a technical project (0-100 percent)."""
    technical_project_id: str
    percentage: float

    def __post_init__(self):
        if not 0.0 <= self.percentage <= 100.0:
            raise ValueError(f"Percentage must be between 0 and 100, got {self.percentage}")

    def weeks(self):
        return self.percentage / 100.0

    def to_dict(self):
        return {"technical_project_id": self.technical_project_id, "percentage": self.percentage}

    @classmethod
    def from_dict(cls, data, context="assignment"):
        return cls(
            technical_project_id=clean_str(_require(data, "technical_project_id", context)),
            percentage=parse_number(_require(data, "percentage", context), f"{context}.percentage"),
        )


@dataclass
class Allocation:
    """What one team member works on during one week. Keyed by (team_member_id, week_start_date)."""
    team_member_id: str
    week_start_date: date
    assignments: list = field(default_factory=list)

    @property
    def key(self):
        return (self.team_member_id, self.week_start_date)

    def total_percentage(self):
        return sum(a.percentage for a in self.assignments)

    def _percentage_equals(self, target):
        return abs(self.total_percentage() - target) < PERCENTAGE_EPSILON

    def is_valid(self):
        """Assignments sum to 100% (or there are none)."""
        return self.is_empty() or self._percentage_equals(100.0)

    def is_full(self):
        return self._percentage_equals(100.0)

    def is_empty(self):
        return not self.assignments

    def is_split(self):
        return len(self.assignments) == 2

    def project_ids(self):
        return [a.technical_project_id for a in self.assignments]

    def to_dict(self):
        return {
            "team_member_id": self.team_member_id,
            "week_start_date": self.week_start_date.isoformat(),
            "assignments": [a.to_dict() for a in self.assignments],
        }

    @classmethod
    def from_dict(cls, data, context="allocation"):
        raw_assignments = _require_list(data, "assignments", context)
        return cls(
            team_member_id=clean_str(_require(data, "team_member_id", context)),
            week_start_date=parse_date(_require(data, "week_start_date", context),
                                       f"{context}.week_start_date"),
            assignments=[Assignment.from_dict(a, f"{context}.assignments[{i}]")
                         for i, a in enumerate(raw_assignments)],
        )


class PreferencesValidationError(ValueError):
    """Invalid team preferences. kind is one of empty_team_name,
    invalid_sprint_length, invalid_default_capacity."""
    def __init__(self, kind, message, value=None):
        super().__init__(message)
        self.kind = kind
        self.value = value


@dataclass
class Preferences:
    """Long-lived team configuration: roster and sprint cadence. Not quarter-scoped."""
    team_name: str = DEFAULT_TEAM_NAME
    team_members: list = field(default_factory=list)
    sprint_anchor_date: date = DEFAULT_SPRINT_ANCHOR
    sprint_length_weeks: int = DEFAULT_SPRINT_LENGTH_WEEKS
    default_capacity: float = DEFAULT_CAPACITY
    schema_version: str = PREFERENCES_SCHEMA_VERSION

    def validate(self):
        if not self.team_name.strip():
            raise PreferencesValidationError("empty_team_name", "Team name is empty.")
        if not MIN_SPRINT_LENGTH_WEEKS <= self.sprint_length_weeks <= MAX_SPRINT_LENGTH_WEEKS:
            raise PreferencesValidationError(
                "invalid_sprint_length",
                f"Sprint length must be {MIN_SPRINT_LENGTH_WEEKS}-{MAX_SPRINT_LENGTH_WEEKS} weeks, "
                f"got {self.sprint_length_weeks}.",
                self.sprint_length_weeks)
        if self.default_capacity <= 0:
            raise PreferencesValidationError(
                "invalid_default_capacity",
                f"Default capacity must be positive, got {self.default_capacity:g}.",
                self.default_capacity)

    def get_team_member(self, member_id):
        return next((m for m in self.team_members if m.id == member_id), None)

    def member_role(self, member_id):
        """Role lookup handed to the allocation ledger. None for unknown (e.g. deleted) members."""
        member = self.get_team_member(member_id)
        return member.role if member else None

    def add_team_member(self, name, role, capacity=None):
        capacity = self.default_capacity if capacity is None else capacity
        if not clean_str(name):
            raise ValueError("Team member name is empty")
        if capacity < 0:
            raise ValueError(f"Capacity must be non-negative, got {capacity:g}")
        member = TeamMember(name=clean_str(name), role=Role(role), capacity=float(capacity))
        self.team_members.append(member)
        return member

    def update_team_member(self, member_id, **changes):
        member = self.get_team_member(member_id)
        if member is None:
            return None
        return _apply_changes(member, changes, TEAM_MEMBER_EDITS)

    def remove_team_member(self, member_id):
        """Remove a member from the roster. Their allocations are left in place (orphaned)."""
        before = len(self.team_members)
        self.team_members = [m for m in self.team_members if m.id != member_id]
        return len(self.team_members) < before

    def calculate_total_capacity(self):
        """Returns (eng_capacity, sci_capacity, total_capacity) in weeks."""
        eng = sum(m.capacity for m in self.team_members if m.role == Role.ENGINEERING)
        sci = sum(m.capacity for m in self.team_members if m.role == Role.SCIENCE)
        return eng, sci, eng + sci

    def to_dict(self):
        return {
            "schema_version": self.schema_version,
            "team_name": self.team_name,
            "team_members": [m.to_dict() for m in self.team_members],
            "sprint_anchor_date": self.sprint_anchor_date.isoformat(),
            "sprint_length_weeks": self.sprint_length_weeks,
            "default_capacity": self.default_capacity,
        }

    @classmethod
    def from_dict(cls, data, context="preferences"):
        members = _require_list(data, "team_members", context)
        return cls(
            schema_version=clean_str(data.get("schema_version")) or PREFERENCES_SCHEMA_VERSION,
            team_name=clean_str(_require(data, "team_name", context)),
            team_members=[TeamMember.from_dict(m, f"{context}.team_members[{i}]")
                          for i, m in enumerate(members)],
            sprint_anchor_date=parse_date(data.get("sprint_anchor_date", DEFAULT_SPRINT_ANCHOR),
                                          f"{context}.sprint_anchor_date"),
            sprint_length_weeks=parse_int(data.get("sprint_length_weeks", DEFAULT_SPRINT_LENGTH_WEEKS),
                                          f"{context}.sprint_length_weeks", minimum=1),
            default_capacity=parse_number(data.get("default_capacity", DEFAULT_CAPACITY),
                                          f"{context}.default_capacity"),
        )


@dataclass
class PlanMetadata:
    version: str = PLAN_FORMAT_VERSION
    created_at: datetime = None
    modified_at: datetime = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()
        if self.modified_at is None:
            self.modified_at = self.created_at

    def mark_modified(self):
        self.modified_at = utc_now()

    def to_dict(self):
        return {
            "version": self.version,
            "created_at": format_timestamp(self.created_at),
            "modified_at": format_timestamp(self.modified_at),
        }

    @classmethod
    def from_dict(cls, data, context="metadata"):
        return cls(
            version=clean_str(_require(data, "version", context)),
            created_at=parse_timestamp(_require(data, "created_at", context), f"{context}.created_at"),
            modified_at=parse_timestamp(_require(data, "modified_at", context), f"{context}.modified_at"),
        )


# ── Allocation Ledger ────────────────────────────────────────────────────────

@dataclass
class PlanState:
    """Quarter-scoped planning data: projects and the allocation ledger.

    References between entities are ids resolved by scanning; they may
    dangle after deletions and every query treats an unresolved id as no
    match. Mutate allocations through replace_cell, or call
    invalidate_allocation_index after editing the list directly.
    """
    quarter_name: str
    quarter_start_date: date
    num_weeks: int = DEFAULT_NUM_WEEKS
    roadmap_projects: list = field(default_factory=list)
    technical_projects: list = field(default_factory=list)
    allocations: list = field(default_factory=list)
    metadata: PlanMetadata = field(default_factory=PlanMetadata)
    _allocation_index: dict = field(default=None, init=False, repr=False, compare=False)

    def mark_modified(self):
        self.metadata.mark_modified()

    def weeks(self, sprint_length_weeks=DEFAULT_SPRINT_LENGTH_WEEKS):
        return generate_quarter_weeks(self.quarter_start_date, self.num_weeks, sprint_length_weeks)

    # Lookups

    def get_roadmap_project(self, project_id):
        return next((p for p in self.roadmap_projects if p.id == project_id), None)

    def get_technical_project(self, project_id):
        return next((p for p in self.technical_projects if p.id == project_id), None)

    # Project editing

    def add_roadmap_project(self, project):
        check_roadmap_project(project)
        self.roadmap_projects.append(project)
        self.mark_modified()
        return project

    def update_roadmap_project(self, project_id, **changes):
        project = self.get_roadmap_project(project_id)
        if project is None:
            return None
        _apply_changes(project, changes, ROADMAP_PROJECT_EDITS, check_roadmap_project)
        self.mark_modified()
        return project

    def remove_roadmap_project(self, project_id):
        """Delete a roadmap project and unlink (not delete) its technical projects."""
        before = len(self.roadmap_projects)
        self.roadmap_projects = [p for p in self.roadmap_projects if p.id != project_id]
        if len(self.roadmap_projects) == before:
            return False
        for tech in self.technical_projects:
            if tech.roadmap_project_id == project_id:
                tech.roadmap_project_id = None
        self.mark_modified()
        return True

    def add_technical_project(self, project):
        if project.start_date is None:
            project.start_date = self.quarter_start_date
        check_technical_project(project)
        self.technical_projects.append(project)
        self.mark_modified()
        return project

    def update_technical_project(self, project_id, **changes):
        project = self.get_technical_project(project_id)
        if project is None:
            return None
        _apply_changes(project, changes, TECHNICAL_PROJECT_EDITS, check_technical_project)
        self.mark_modified()
        return project

    def remove_technical_project(self, project_id):
        """Delete a technical project. Assignments that referenced it are left dangling."""
        before = len(self.technical_projects)
        self.technical_projects = [p for p in self.technical_projects if p.id != project_id]
        if len(self.technical_projects) == before:
            return False
        self.mark_modified()
        return True

    # Allocation index

    def invalidate_allocation_index(self):
        self._allocation_index = None

    def rebuild_allocation_index(self):
        self._allocation_index = {a.key: a for a in self.allocations}
        return self._allocation_index

    def get_allocation(self, member_id, week_start):
        index = self._allocation_index
        if index is None:
            index = self.rebuild_allocation_index()
        return index.get((member_id, week_start))

    def get_team_member_allocations(self, member_id):
        return [a for a in self.allocations if a.team_member_id == member_id]

    def replace_cell(self, member_id, week_start, new_assignments):
        """Replace whatever is allocated at (member, week) with new_assignments.

        An empty list clears the cell. The percentage sum of new_assignments is
        not checked here; Allocation.is_valid reports it. Returns the ids of all
        projects that were in the cell before or after, in first-seen order.
        """
        key = (member_id, week_start)
        touched = []
        kept = []
        for alloc in self.allocations:
            if alloc.key == key:
                touched.extend(alloc.project_ids())
            else:
                kept.append(alloc)
        new_assignments = list(new_assignments)
        if new_assignments:
            kept.append(Allocation(member_id, week_start, new_assignments))
            touched.extend(a.technical_project_id for a in new_assignments)
        self.allocations = kept
        self.rebuild_allocation_index()
        self.mark_modified()
        return list(dict.fromkeys(touched))

    # Aggregates

    def _weeks_with_project(self, project_id):
        return sorted(a.week_start_date for a in self.allocations if project_id in a.project_ids())

    def calculate_project_allocated_weeks(self, project_id):
        return sum(assignment.weeks()
                   for alloc in self.allocations
                   for assignment in alloc.assignments
                   if assignment.technical_project_id == project_id)

    def calculate_team_member_allocated_weeks(self, member_id):
        return sum(a.total_percentage() / 100.0 for a in self.allocations if a.team_member_id == member_id)

    def _allocated_by_role(self, project_ids, role_lookup):
        eng = 0.0
        sci = 0.0
        for alloc in self.allocations:
            role = role_lookup(alloc.team_member_id)
            if role is None:
                continue
            for assignment in alloc.assignments:
                if assignment.technical_project_id not in project_ids:
                    continue
                if role == Role.ENGINEERING:
                    eng += assignment.weeks()
                elif role == Role.SCIENCE:
                    sci += assignment.weeks()
        return eng, sci, eng + sci

    def calculate_technical_project_allocated_by_role(self, project_id, role_lookup):
        """Returns (eng_weeks, sci_weeks, total_weeks). role_lookup maps member id -> Role or None."""
        return self._allocated_by_role({project_id}, role_lookup)

    def calculate_roadmap_allocated_weeks(self, roadmap_id, role_lookup):
        """Returns (eng_weeks, sci_weeks, total_weeks) summed over all linked technical projects."""
        linked = {p.id for p in self.technical_projects if p.roadmap_project_id == roadmap_id}
        return self._allocated_by_role(linked, role_lookup)

    def calculate_total_allocated(self, role_lookup):
        """Returns (eng_weeks, sci_weeks, total_weeks) across every allocation with a known member."""
        eng = 0.0
        sci = 0.0
        for alloc in self.allocations:
            role = role_lookup(alloc.team_member_id)
            weeks = alloc.total_percentage() / 100.0
            if role == Role.ENGINEERING:
                eng += weeks
            elif role == Role.SCIENCE:
                sci += weeks
        return eng, sci, eng + sci

    def get_assigned_team_members(self, project_id):
        return sorted({a.team_member_id for a in self.allocations if project_id in a.project_ids()})

    def get_assigned_project_names_for_member(self, member_id):
        names = set()
        for alloc in self.get_team_member_allocations(member_id):
            for project_id in alloc.project_ids():
                project = self.get_technical_project(project_id)
                if project is not None:
                    names.add(project.name)
        return sorted(names)

    def get_project_allocation_date_range(self, project_id):
        """(earliest_week, latest_week) with an assignment to the project, or None."""
        weeks = self._weeks_with_project(project_id)
        if not weeks:
            return None
        return weeks[0], weeks[-1]

    # ── Project Date Propagation ──

    def update_technical_project_dates(self, project_id, sprint_anchor_date, sprint_length_weeks):
        """Snap a technical project's dates to the sprints of its first and last allocated weeks.

        With no allocations the existing dates are kept.
        """
        date_range = self.get_project_allocation_date_range(project_id)
        if date_range is None:
            return False
        project = self.get_technical_project(project_id)
        if project is None:
            return False
        first_week, last_week = date_range
        project.start_date, _ = get_sprint_boundaries(first_week, sprint_anchor_date, sprint_length_weeks)
        _, project.expected_completion = get_sprint_boundaries(last_week, sprint_anchor_date,
                                                               sprint_length_weeks)
        self.mark_modified()
        return True

    def to_dict(self):
        return {
            "quarter_name": self.quarter_name,
            "quarter_start_date": self.quarter_start_date.isoformat(),
            "num_weeks": self.num_weeks,
            "roadmap_projects": [p.to_dict() for p in self.roadmap_projects],
            "technical_projects": [p.to_dict() for p in self.technical_projects],
            "allocations": [a.to_dict() for a in self.allocations],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data, context="plan"):
        return cls(**_plan_fields_from_dict(data, context))


def _plan_fields_from_dict(data, context):
    """Parse the quarter-scoped fields shared by PlanState and PlanExport."""
    roadmap = _require_list(data, "roadmap_projects", context)
    technical = _require_list(data, "technical_projects", context)
    allocations = _require_list(data, "allocations", context)
    quarter_start = parse_date(_require(data, "quarter_start_date", context), f"{context}.quarter_start_date")
    num_weeks = parse_int(_require(data, "num_weeks", context), f"{context}.num_weeks", minimum=0)
    if num_weeks > MAX_NUM_WEEKS:
        raise ValueError(f"Number of weeks ({context}.num_weeks) must be at most {MAX_NUM_WEEKS}, "
                         f"got {num_weeks}")
    technical_projects = [TechnicalProject.from_dict(p, f"{context}.technical_projects[{i}]")
                          for i, p in enumerate(technical)]
    # A missing start date means the project starts with the quarter
    for project in technical_projects:
        if project.start_date is None:
            project.start_date = quarter_start
    return {
        "quarter_name": clean_str(_require(data, "quarter_name", context)),
        "quarter_start_date": quarter_start,
        "num_weeks": num_weeks,
        "roadmap_projects": [RoadmapProject.from_dict(p, f"{context}.roadmap_projects[{i}]")
                             for i, p in enumerate(roadmap)],
        "technical_projects": technical_projects,
        "allocations": [Allocation.from_dict(a, f"{context}.allocations[{i}]")
                        for i, a in enumerate(allocations)],
        "metadata": PlanMetadata.from_dict(_require(data, "metadata", context), f"{context}.metadata"),
    }


def propagate_project_dates(state, project_ids, sprint_anchor_date, sprint_length_weeks):
    """Run the date update for every touched project (added to or removed from a cell)."""
    for project_id in project_ids:
        state.update_technical_project_dates(project_id, sprint_anchor_date, sprint_length_weeks)


# ── Capacity Status ──────────────────────────────────────────────────────────

def get_capacity_status(allocated, estimated):
    """Classify allocated vs estimated weeks.

    Neutral: nothing estimated, nothing allocated.
    Success: within 5% of the estimate.
    Warning: 5-25% off, or allocated without an estimate.
    Error:   more than 25% off.
    """
    if estimated == 0:
        return CapacityStatus.NEUTRAL if allocated == 0 else CapacityStatus.WARNING
    diff_pct = abs(allocated - estimated) / estimated * 100
    if diff_pct <= SUCCESS_THRESHOLD_PCT:
        return CapacityStatus.SUCCESS
    if diff_pct <= WARNING_THRESHOLD_PCT:
        return CapacityStatus.WARNING
    return CapacityStatus.ERROR


def technical_project_status(state, project):
    return get_capacity_status(state.calculate_project_allocated_weeks(project.id), project.total_estimate())


def team_member_status(state, member):
    return get_capacity_status(state.calculate_team_member_allocated_weeks(member.id), member.capacity)


def roadmap_project_statuses(state, roadmap, role_lookup):
    """Returns (eng_status, sci_status, total_status) for a roadmap project."""
    eng, sci, total = state.calculate_roadmap_allocated_weeks(roadmap.id, role_lookup)
    return (get_capacity_status(eng, roadmap.eng_estimate),
            get_capacity_status(sci, roadmap.sci_estimate),
            get_capacity_status(total, roadmap.total_estimate()))


# ── Cell Editing ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SelectedProject:
    """Paint-mode selection: either nothing (clears cells) or one technical project."""
    project_id: str = None

    @classmethod
    def technical(cls, project_id):
        if not project_id:
            raise ValueError("A technical selection needs a project id")
        return cls(project_id)

    @property
    def is_none(self):
        return self.project_id is None


SelectedProject.NONE = SelectedProject()


def assign_cell(state, preferences, member_id, week_start, assignments):
    """replace_cell followed by date propagation for every project touched."""
    touched = state.replace_cell(member_id, week_start, assignments)
    propagate_project_dates(state, touched, preferences.sprint_anchor_date, preferences.sprint_length_weeks)
    return touched


def paint_cell(state, preferences, selected, member_id, week_start):
    """Apply the paint-mode selection to one cell.

    Returns False (and changes nothing) when the selected project does not exist.
    """
    if selected.is_none:
        assign_cell(state, preferences, member_id, week_start, [])
        return True
    if state.get_technical_project(selected.project_id) is None:
        return False
    assign_cell(state, preferences, member_id, week_start, [Assignment(selected.project_id, 100.0)])
    return True


def clear_cell(state, preferences, member_id, week_start):
    return assign_cell(state, preferences, member_id, week_start, [])


def split_cell(state, preferences, member_id, week_start, first_project_id, second_project_id,
               first_percentage):
    """Split one week between two distinct projects at first_percentage / remainder."""
    if not first_project_id or not second_project_id:
        raise ValueError("Please select both projects")
    if first_project_id == second_project_id:
        raise ValueError("Projects must be different")
    if not 0 < first_percentage < 100:
        raise ValueError(f"Split percentage must be between 0 and 100 (exclusive), got {first_percentage}")
    for project_id in (first_project_id, second_project_id):
        if state.get_technical_project(project_id) is None:
            raise ValueError(f"Unknown technical project: {project_id}")
    assignments = [
        Assignment(first_project_id, float(first_percentage)),
        Assignment(second_project_id, 100.0 - first_percentage),
    ]
    return assign_cell(state, preferences, member_id, week_start, assignments)


class PlanSession:
    """Owns the Preferences and PlanState roots for one user session.

    Every mutation goes through here so that subscribers (views holding
    derived data) are told to recompute afterwards.
    """

    def __init__(self, preferences=None, plan_state=None):
        self.preferences = preferences or Preferences()
        self.plan_state = plan_state or default_plan_state()
        self._subscribers = []

    def subscribe(self, callback):
        """Register callback(session); returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self):
        for callback in list(self._subscribers):
            callback(self)

    def paint(self, selected, member_id, week_start):
        changed = paint_cell(self.plan_state, self.preferences, selected, member_id, week_start)
        if changed:
            self._notify()
        return changed

    def assign(self, member_id, week_start, project_id):
        return self.paint(SelectedProject.technical(project_id), member_id, week_start)

    def clear(self, member_id, week_start):
        return self.paint(SelectedProject.NONE, member_id, week_start)

    def split(self, member_id, week_start, first_project_id, second_project_id, first_percentage):
        touched = split_cell(self.plan_state, self.preferences, member_id, week_start,
                             first_project_id, second_project_id, first_percentage)
        self._notify()
        return touched

    def replace_plan(self, plan_state, preferences=None):
        """Swap the quarter wholesale (import, sample load, clear)."""
        self.plan_state = plan_state
        if preferences is not None:
            self.preferences = preferences
        self._notify()

    def update_preferences(self, preferences):
        self.preferences = preferences
        self._notify()


# ── Views & Summaries ────────────────────────────────────────────────────────

def filter_technical_projects(state, filters=("all",), search=""):
    """Filter technical projects by name search and status filters (any filter matching keeps a project)."""
    selected = set(filters) or {"all"}
    unknown = selected - set(TECHNICAL_FILTERS)
    if unknown:
        raise ValueError(f"Unknown filter(s): {', '.join(sorted(unknown))}. "
                         f"Valid: {', '.join(TECHNICAL_FILTERS)}")
    query = clean_str(search).lower()
    result = []
    for project in state.technical_projects:
        if query and query not in project.name.lower():
            continue
        if "all" in selected:
            result.append(project)
            continue
        status = technical_project_status(state, project)
        if "on_track" in selected and status == CapacityStatus.SUCCESS:
            result.append(project)
        elif "at_risk" in selected and status in (CapacityStatus.WARNING, CapacityStatus.ERROR):
            result.append(project)
        elif "no_link" in selected and project.roadmap_project_id is None:
            result.append(project)
    return result


def sort_technical_projects(state, projects, sort_by="roadmap"):
    if sort_by == "roadmap":
        def key(p):
            roadmap = state.get_roadmap_project(p.roadmap_project_id) if p.roadmap_project_id else None
            return (roadmap is not None, roadmap.name if roadmap else "")
        return sorted(projects, key=key)
    if sort_by == "status":
        return sorted(projects, key=lambda p: STATUS_SORT_ORDER[technical_project_status(state, p)])
    if sort_by == "allocation":
        return sorted(projects, key=lambda p: state.calculate_project_allocated_weeks(p.id), reverse=True)
    raise ValueError(f"Unknown sort '{sort_by}'. Valid: {', '.join(TECHNICAL_SORTS)}")


def classify_cell(state, allocation, week_start):
    """Describe how a grid cell should be drawn.

    Returns {"kind": "empty"}, a "single" dict (project_name, color, percentage,
    is_before_start) or a "split" dict with a two-item "parts" list.
    """
    if allocation is None or allocation.is_empty():
        return {"kind": "empty"}
    if allocation.is_split():
        parts = []
        for assignment, fallback in zip(allocation.assignments, (ProjectColor.BLUE, ProjectColor.GREEN)):
            project = state.get_technical_project(assignment.technical_project_id)
            if project is None:
                return {"kind": "empty"}
            roadmap = state.get_roadmap_project(project.roadmap_project_id) if project.roadmap_project_id else None
            parts.append({
                "project_name": project.name,
                "color": roadmap.color if roadmap else fallback,
                "percentage": assignment.percentage,
            })
        return {"kind": "split", "parts": parts}
    assignment = allocation.assignments[0]
    project = state.get_technical_project(assignment.technical_project_id)
    if project is None:
        return {"kind": "empty"}
    return {
        "kind": "single",
        "project_name": project.name,
        "color": project.color(state),
        "percentage": assignment.percentage,
        "is_before_start": project.start_date is not None and week_start < project.start_date,
    }


def calculate_quarter_summary(preferences, state):
    """Quarter-level capacity and allocation figures plus per-entity status rows."""
    role_lookup = preferences.member_role
    eng_cap, sci_cap, total_cap = preferences.calculate_total_capacity()
    eng_alloc, sci_alloc, total_alloc = state.calculate_total_allocated(role_lookup)

    members = []
    for member in preferences.team_members:
        allocated = state.calculate_team_member_allocated_weeks(member.id)
        members.append({
            "id": member.id,
            "name": member.name,
            "role": member.role,
            "capacity": member.capacity,
            "allocated": allocated,
            "status": team_member_status(state, member),
            "projects": state.get_assigned_project_names_for_member(member.id),
        })

    technical = []
    for project in state.technical_projects:
        eng, sci, total = state.calculate_technical_project_allocated_by_role(project.id, role_lookup)
        technical.append({
            "id": project.id,
            "name": project.name,
            "estimate": project.total_estimate(),
            "allocated": state.calculate_project_allocated_weeks(project.id),
            "eng_allocated": eng,
            "sci_allocated": sci,
            "status": technical_project_status(state, project),
            "members": len(state.get_assigned_team_members(project.id)),
        })

    roadmap = []
    for project in state.roadmap_projects:
        eng, sci, total = state.calculate_roadmap_allocated_weeks(project.id, role_lookup)
        eng_status, sci_status, status = roadmap_project_statuses(state, project, role_lookup)
        roadmap.append({
            "id": project.id,
            "name": project.name,
            "eng_estimate": project.eng_estimate,
            "sci_estimate": project.sci_estimate,
            "eng_allocated": eng,
            "sci_allocated": sci,
            "allocated": total,
            "eng_status": eng_status,
            "sci_status": sci_status,
            "status": status,
        })

    return {
        "quarter_name": state.quarter_name,
        "num_weeks": state.num_weeks,
        "capacity": {"eng": eng_cap, "sci": sci_cap, "total": total_cap},
        "allocated": {"eng": eng_alloc, "sci": sci_alloc, "total": total_alloc},
        "utilisation_pct": (total_alloc / total_cap * 100) if total_cap > 0 else 0.0,
        "members": members,
        "technical_projects": technical,
        "roadmap_projects": roadmap,
    }


def allocation_grid(preferences, state):
    """Member x week DataFrame of allocated fractions (0..1).

    Rows follow roster order; allocations for members no longer in the roster
    or for weeks outside the quarter are left out.
    """
    weeks = [w.start_date for w in state.weeks(preferences.sprint_length_weeks)]
    names = [m.name for m in preferences.team_members]
    values = np.zeros((len(names), len(weeks)))
    week_pos = {w: i for i, w in enumerate(weeks)}
    member_pos = {m.id: i for i, m in enumerate(preferences.team_members)}
    for alloc in state.allocations:
        row = member_pos.get(alloc.team_member_id)
        col = week_pos.get(alloc.week_start_date)
        if row is None or col is None:
            continue
        values[row, col] = alloc.total_percentage() / 100.0
    return pd.DataFrame(values, index=pd.Index(names, name="Team Member"),
                        columns=pd.Index(weeks, name="Week"))


def project_summary_frame(preferences, state):
    """One row per technical project with estimates, allocation, status and derived dates."""
    rows = []
    for project in state.technical_projects:
        roadmap = state.get_roadmap_project(project.roadmap_project_id) if project.roadmap_project_id else None
        eng, sci, _ = state.calculate_technical_project_allocated_by_role(project.id, preferences.member_role)
        rows.append({
            "Project": project.name,
            "Roadmap": roadmap.name if roadmap else "",
            "Eng Estimate": project.eng_estimate,
            "Sci Estimate": project.sci_estimate,
            "Estimate": project.total_estimate(),
            "Eng Allocated": eng,
            "Sci Allocated": sci,
            "Allocated": state.calculate_project_allocated_weeks(project.id),
            "Status": technical_project_status(state, project).value,
            "Start": project.start_date,
            "Expected Completion": project.expected_completion,
        })
    columns = ["Project", "Roadmap", "Eng Estimate", "Sci Estimate", "Estimate",
               "Eng Allocated", "Sci Allocated", "Allocated", "Status", "Start", "Expected Completion"]
    return pd.DataFrame(rows, columns=columns)


# ── Plan Validation ──────────────────────────────────────────────────────────

def validate_plan(preferences, state):
    """Check allocation bookkeeping. Returns (errors, warnings) lists."""
    errors = []
    warnings = []
    members = {m.id: m for m in preferences.team_members}

    for alloc in sorted(state.allocations, key=lambda a: (a.week_start_date, a.team_member_id)):
        member = members.get(alloc.team_member_id)
        who = member.name if member else alloc.team_member_id
        week = alloc.week_start_date.isoformat()
        if not alloc.is_valid():
            errors.append(f"{who}, week of {week}: assignments total "
                          f"{alloc.total_percentage():.4g}% (must be 100%).")
        if member is None:
            warnings.append(f"Allocation for week of {week} references unknown team member "
                            f"'{alloc.team_member_id}'.")
        for assignment in alloc.assignments:
            project = state.get_technical_project(assignment.technical_project_id)
            if project is None:
                warnings.append(f"{who}, week of {week}: unknown technical project "
                                f"'{assignment.technical_project_id}'.")
            elif project.start_date and alloc.week_start_date < project.start_date:
                warnings.append(f"{who}, week of {week}: allocated to '{project.name}' before its "
                                f"start date {project.start_date.isoformat()}.")

    for member in preferences.team_members:
        allocated = state.calculate_team_member_allocated_weeks(member.id)
        if allocated > member.capacity + PERCENTAGE_EPSILON / 100:
            errors.append(f"{member.name} is over-allocated: {allocated:.4g} of "
                          f"{member.capacity:.4g} weeks.")

    return errors, warnings


# ── Sample Data ──────────────────────────────────────────────────────────────

def default_plan_state(today=None):
    """Empty plan for the upcoming quarter."""
    _, _, start, name = get_next_quarter_info(today or date.today())
    return PlanState(quarter_name=name, quarter_start_date=start, num_weeks=DEFAULT_NUM_WEEKS)


def create_sample_plan():
    """Sample team, projects and allocations for Q1 2025. Returns (Preferences, PlanState)."""
    quarter_start = get_quarter_start_date(2025, 1)
    preferences = Preferences(team_name="Engineering Team")
    state = PlanState(quarter_name="Q1 2025", quarter_start_date=quarter_start, num_weeks=DEFAULT_NUM_WEEKS)

    alice = preferences.add_team_member("Alice Kim", Role.ENGINEERING, 12.0)
    bob = preferences.add_team_member("Bob Martinez", Role.ENGINEERING, 12.0)
    carol = preferences.add_team_member("Carol Smith", Role.SCIENCE, 6.0)
    dave = preferences.add_team_member("Dave Roberts", Role.ENGINEERING, 12.0)

    platform = state.add_roadmap_project(RoadmapProject(
        "Q1 Platform Improvements", 24.0, 8.0, date(2025, 1, 6), date(2025, 3, 31), ProjectColor.BLUE))
    payments = state.add_roadmap_project(RoadmapProject(
        "Payment Gateway", 8.0, 0.0, date(2025, 1, 6), date(2025, 2, 28), ProjectColor.GREEN))
    data = state.add_roadmap_project(RoadmapProject(
        "Data Pipeline Overhaul", 16.0, 6.0, date(2025, 1, 20), date(2025, 3, 31), ProjectColor.YELLOW))

    auth = state.add_technical_project(TechnicalProject(
        "Auth Service Refactor", platform.id, 6.0, 0.0, date(2025, 1, 6)))
    payment_api = state.add_technical_project(TechnicalProject(
        "Payment API Integration", payments.id, 8.0, 0.0, date(2025, 1, 6)))
    ml = state.add_technical_project(TechnicalProject(
        "ML Pipeline Optimization", platform.id, 6.0, 6.0, date(2025, 1, 6)))
    migration = state.add_technical_project(TechnicalProject(
        "Data Pipeline Migration", data.id, 6.0, 4.0, date(2025, 1, 20)))
    research = state.add_technical_project(TechnicalProject(
        "Algorithm Research", data.id, 0.0, 6.0, date(2025, 1, 6)))

    def week(n):
        return quarter_start + timedelta(weeks=n)

    # Alice: Payment API for weeks 1-3, then a 60/40 split with the migration
    for n in range(3):
        state.replace_cell(alice.id, week(n), [Assignment(payment_api.id, 100.0)])
    state.replace_cell(alice.id, week(3), [Assignment(payment_api.id, 60.0), Assignment(migration.id, 40.0)])

    for n in range(4):
        state.replace_cell(bob.id, week(n), [Assignment(ml.id, 100.0)])

    # Carol: research weeks 1, 2 and 4; week 3 unallocated
    for n in (0, 1, 3):
        state.replace_cell(carol.id, week(n), [Assignment(research.id, 100.0)])

    for n in range(3):
        state.replace_cell(dave.id, week(n), [Assignment(auth.id, 100.0)])

    return preferences, state


# ── Export / Import Envelope ─────────────────────────────────────────────────

class ExportValidationError(ValueError):
    """A plan export failed validation.

    kind is one of invalid_version, empty_team_name, no_team_members,
    empty_quarter_name, invalid_num_weeks, invalid_team_member_reference,
    invalid_technical_project_reference, invalid_roadmap_project_reference.
    reference_id holds the dangling id for reference errors.
    """
    def __init__(self, kind, message, reference_id=None):
        super().__init__(message)
        self.kind = kind
        self.reference_id = reference_id


@dataclass
class PlanExport:
    """Self-contained, portable plan: team snapshot plus all quarter data."""
    version: str
    metadata: PlanMetadata
    team_name: str
    team_members: list
    quarter_name: str
    quarter_start_date: date
    num_weeks: int
    roadmap_projects: list
    technical_projects: list
    allocations: list

    @classmethod
    def from_signals(cls, preferences, state):
        """Snapshot Preferences' team and the whole PlanState into one export."""
        return cls(
            version=state.metadata.version,
            metadata=copy.deepcopy(state.metadata),
            team_name=preferences.team_name,
            team_members=copy.deepcopy(preferences.team_members),
            quarter_name=state.quarter_name,
            quarter_start_date=state.quarter_start_date,
            num_weeks=state.num_weeks,
            roadmap_projects=copy.deepcopy(state.roadmap_projects),
            technical_projects=copy.deepcopy(state.technical_projects),
            allocations=copy.deepcopy(state.allocations),
        )

    def into_signals(self):
        """Split back into (Preferences, PlanState).

        Sprint configuration is not carried in an export: the importer gets the
        default anchor and length and is expected to configure sprints locally.
        """
        preferences = Preferences(
            team_name=self.team_name,
            team_members=copy.deepcopy(self.team_members),
            sprint_anchor_date=DEFAULT_SPRINT_ANCHOR,
            sprint_length_weeks=DEFAULT_SPRINT_LENGTH_WEEKS,
            default_capacity=DEFAULT_CAPACITY,
        )
        state = PlanState(
            quarter_name=self.quarter_name,
            quarter_start_date=self.quarter_start_date,
            num_weeks=self.num_weeks,
            roadmap_projects=copy.deepcopy(self.roadmap_projects),
            technical_projects=copy.deepcopy(self.technical_projects),
            allocations=copy.deepcopy(self.allocations),
            metadata=copy.deepcopy(self.metadata),
        )
        return preferences, state

    def validation_error(self):
        """Return the first ExportValidationError found, or None."""
        if not self.version.strip():
            return ExportValidationError("invalid_version", "Export version is empty.")
        if not self.team_name.strip():
            return ExportValidationError("empty_team_name", "Team name is empty.")
        if not self.team_members:
            return ExportValidationError("no_team_members", "Export has no team members.")
        if not self.quarter_name.strip():
            return ExportValidationError("empty_quarter_name", "Quarter name is empty.")
        if not 0 < self.num_weeks <= MAX_NUM_WEEKS:
            return ExportValidationError("invalid_num_weeks",
                                         f"Number of weeks must be 1-{MAX_NUM_WEEKS}, got {self.num_weeks}.")

        member_ids = {m.id for m in self.team_members}
        for alloc in self.allocations:
            if alloc.team_member_id not in member_ids:
                return ExportValidationError(
                    "invalid_team_member_reference",
                    f"Allocation references unknown team member '{alloc.team_member_id}'.",
                    alloc.team_member_id)

        project_ids = {p.id for p in self.technical_projects}
        for alloc in self.allocations:
            for assignment in alloc.assignments:
                if assignment.technical_project_id not in project_ids:
                    return ExportValidationError(
                        "invalid_technical_project_reference",
                        f"Assignment references unknown technical project "
                        f"'{assignment.technical_project_id}'.",
                        assignment.technical_project_id)

        roadmap_ids = {p.id for p in self.roadmap_projects}
        for project in self.technical_projects:
            if project.roadmap_project_id is not None and project.roadmap_project_id not in roadmap_ids:
                return ExportValidationError(
                    "invalid_roadmap_project_reference",
                    f"Technical project '{project.name}' references unknown roadmap project "
                    f"'{project.roadmap_project_id}'.",
                    project.roadmap_project_id)
        return None

    def validate(self):
        """Raise the first ExportValidationError; does not repair anything."""
        error = self.validation_error()
        if error is not None:
            raise error

    def to_dict(self):
        return {
            "version": self.version,
            "metadata": self.metadata.to_dict(),
            "team_name": self.team_name,
            "team_members": [m.to_dict() for m in self.team_members],
            "quarter_name": self.quarter_name,
            "quarter_start_date": self.quarter_start_date.isoformat(),
            "num_weeks": self.num_weeks,
            "roadmap_projects": [p.to_dict() for p in self.roadmap_projects],
            "technical_projects": [p.to_dict() for p in self.technical_projects],
            "allocations": [a.to_dict() for a in self.allocations],
        }

    @classmethod
    def from_dict(cls, data, context="export"):
        plan_fields = _plan_fields_from_dict(data, context)
        members = _require_list(data, "team_members", context)
        return cls(
            version=clean_str(_require(data, "version", context)),
            team_name=clean_str(_require(data, "team_name", context)),
            team_members=[TeamMember.from_dict(m, f"{context}.team_members[{i}]")
                          for i, m in enumerate(members)],
            **plan_fields,
        )

    def to_json(self, indent=2):
        if indent is None:
            return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_json(cls, text):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to parse plan: {e}") from e
        return cls.from_dict(data)


def plan_filename(export):
    """'plan-<team>-<quarter>.json', lower case with spaces as dashes."""
    team = export.team_name.lower().replace(" ", "-")
    quarter = export.quarter_name.lower().replace(" ", "-")
    return f"plan-{team}-{quarter}.json"


def encode_share_string(export):
    """Base64 of the compact JSON export, for clipboard or URL sharing."""
    return base64.b64encode(export.to_json(indent=None).encode("utf-8")).decode("ascii")


def decode_share_string(text):
    """Inverse of encode_share_string. Accepts URL-quoted or form-encoded input."""
    # base64 has no spaces; a form-decoded "+" arrives as one
    cleaned = re.sub(r"\s+", "", unquote(str(text or "").strip("\r\n\t")).replace(" ", "+"))
    try:
        raw = base64.b64decode(cleaned, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        raise ValueError("Invalid base64") from None
    return PlanExport.from_json(raw)


def import_plan(text):
    """Parse (JSON or share string), validate, and split an export. Returns (Preferences, PlanState)."""
    stripped = clean_str(text)
    if not stripped:
        raise ValueError("Plan is empty")
    export = PlanExport.from_json(stripped) if stripped.startswith("{") else decode_share_string(stripped)
    export.validate()
    return export.into_signals()


# ── Persistence ──────────────────────────────────────────────────────────────

def get_storage_dir(storage_dir=None):
    return storage_dir or os.environ.get(STORAGE_DIR_ENV) or DEFAULT_STORAGE_DIR


def _write_document(path, payload):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    return path


def _load_document(path, label, parser):
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"  WARNING: Could not read {label} file {path}: {e}")
        return None
    try:
        return parser(data)
    except ValueError as e:
        print(f"  WARNING: Could not parse {label} from {path}: {e}")
        return None


def _remove_document(path):
    if os.path.exists(path):
        os.remove(path)
        return True
    return False


def save_preferences(preferences, storage_dir=None):
    path = os.path.join(get_storage_dir(storage_dir), PREFERENCES_FILENAME)
    return _write_document(path, preferences.to_dict())


def load_preferences(storage_dir=None):
    """Stored preferences, or None when missing or unreadable."""
    path = os.path.join(get_storage_dir(storage_dir), PREFERENCES_FILENAME)
    return _load_document(path, "preferences", Preferences.from_dict)


def clear_preferences(storage_dir=None):
    return _remove_document(os.path.join(get_storage_dir(storage_dir), PREFERENCES_FILENAME))


def save_plan_state(state, storage_dir=None):
    path = os.path.join(get_storage_dir(storage_dir), PLAN_STATE_FILENAME)
    return _write_document(path, state.to_dict())


def load_plan_state(storage_dir=None):
    """Stored plan state, or None when missing or unreadable."""
    path = os.path.join(get_storage_dir(storage_dir), PLAN_STATE_FILENAME)
    return _load_document(path, "plan state", PlanState.from_dict)


def clear_plan_state(storage_dir=None):
    return _remove_document(os.path.join(get_storage_dir(storage_dir), PLAN_STATE_FILENAME))


# ── Roster Import ────────────────────────────────────────────────────────────

def load_team_roster(filepath, default_capacity=DEFAULT_CAPACITY):
    """Load team members from the 'Team' sheet of an Excel file (Name, Role, Capacity).

    Role accepts eng/sci or Engineering/Science. Bad rows are skipped with a warning.
    """
    try:
        df = pd.read_excel(filepath, sheet_name="Team")
    except Exception as e:
        print(f"  WARNING: Could not read Team sheet: {e}")
        return []
    if df.empty:
        return []
    df.columns = df.columns.str.strip()
    required = {"Name", "Role"}
    missing = required - set(df.columns)
    if missing:
        print(f"  ERROR: Team sheet is missing column(s): {', '.join(sorted(missing))}. "
              f"Found: {', '.join(df.columns)}")
        return []
    role_aliases = {"eng": Role.ENGINEERING, "engineering": Role.ENGINEERING, "sde": Role.ENGINEERING,
                    "sci": Role.SCIENCE, "science": Role.SCIENCE, "as": Role.SCIENCE}
    members = []
    seen = set()
    for idx, row in df.iterrows():
        name = clean_str(row["Name"])
        if not name:
            continue  # skip blank rows
        if name in seen:
            print(f"  WARNING: Team row {idx + 2}: duplicate name '{name}', skipping.")
            continue
        role = role_aliases.get(clean_str(row["Role"]).lower())
        if role is None:
            print(f"  WARNING: Team row {idx + 2}: unknown role '{clean_str(row['Role'])}' for '{name}', skipping.")
            continue
        capacity = default_capacity
        if "Capacity" in df.columns and pd.notna(row.get("Capacity")):
            try:
                capacity = parse_number(row["Capacity"], f"Team row {idx + 2}", minimum=0)
            except ValueError as e:
                print(f"  WARNING: {e}, skipping.")
                continue
        seen.add(name)
        members.append(TeamMember(name=name, role=role, capacity=capacity))
    return members


# ── Style Helpers ────────────────────────────────────────────────────────────

def apply_style():
    """Configure matplotlib rcParams for consistent styling."""
    plt.rcParams.update({
        "font.family": STYLE["font_family"],
        "font.size": STYLE["label_size"],
        "axes.facecolor": STYLE["panel_bg"],
        "figure.facecolor": STYLE["bg_color"],
        "axes.edgecolor": STYLE["grid_color"],
        "axes.linewidth": 0.8,
        "axes.grid": False,
        "xtick.color": STYLE["text_secondary"],
        "ytick.color": STYLE["text_secondary"],
        "text.color": STYLE["text_primary"],
    })


def style_axes(ax, title="", ylabel="", show_grid_y=False):
    """Apply consistent axis styling to any subplot."""
    if title:
        ax.set_title(title, fontsize=STYLE["subtitle_size"], fontweight="bold",
                     color=STYLE["text_primary"], pad=12, loc="left")
    if ylabel:
        ax.set_ylabel(ylabel, fontsize=STYLE["label_size"], color=STYLE["text_secondary"])
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    if show_grid_y:
        ax.grid(axis="y", alpha=0.15, linewidth=0.5, color=STYLE["grid_color"])
    ax.set_axisbelow(True)


def add_header_footer(fig, title, subtitle=""):
    """Add a title block and generation timestamp footer."""
    fig.suptitle(title, fontsize=STYLE["title_size"], fontweight="bold",
                 color=STYLE["text_primary"], y=0.98, x=0.04, ha="left")
    if subtitle:
        fig.text(0.04, 0.935, subtitle, fontsize=STYLE["small_size"] + 1,
                 color=STYLE["text_muted"], ha="left")
    fig.text(0.98, 0.008, f"Generated {datetime.now().strftime('%d %b %Y %H:%M')}",
             ha="right", fontsize=STYLE["small_size"], color=STYLE["text_muted"])
    fig.text(0.04, 0.008, "Quarter Planning Tool",
             ha="left", fontsize=STYLE["small_size"], color=STYLE["text_muted"])


def _save_figure(fig, output_path):
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    fig.savefig(output_path, dpi=STYLE["dpi"], bbox_inches="tight", facecolor=STYLE["bg_color"])
    plt.close(fig)


# ── Chart: Allocation Grid ───────────────────────────────────────────────────

def render_allocation_chart(preferences, state, output_path):
    """Render the member x week allocation grid, split weeks drawn as stacked halves."""
    apply_style()
    members = preferences.team_members
    if not members:
        print("  No team members to chart.")
        return None

    weeks = state.weeks(preferences.sprint_length_weeks)
    n_rows, n_cols = len(members), len(weeks)
    fig_height = max(4, n_rows * 0.6 + 2.5)
    fig = plt.figure(figsize=(STYLE["fig_width"], fig_height), facecolor=STYLE["bg_color"])
    ax = fig.add_axes([0.16, 0.12, 0.80, 0.72])

    for row, member in enumerate(members):
        for col, week in enumerate(weeks):
            cell = classify_cell(state, state.get_allocation(member.id, week.start_date), week.start_date)
            x, y = col, n_rows - 1 - row
            if cell["kind"] == "empty":
                ax.add_patch(Rectangle((x + 0.04, y + 0.06), 0.92, 0.88,
                                       facecolor=STYLE["empty_cell_color"], edgecolor="white"))
            elif cell["kind"] == "single":
                ax.add_patch(Rectangle((x + 0.04, y + 0.06), 0.92, 0.88,
                                       facecolor=cell["color"].to_hex(), edgecolor="white",
                                       alpha=0.55 if cell["is_before_start"] else 0.9,
                                       hatch="//" if cell["is_before_start"] else ""))
                ax.text(x + 0.5, y + 0.5, cell["project_name"][:14], ha="center", va="center",
                        fontsize=5.5, color=STYLE["text_primary"])
            else:
                bottom = y + 0.06
                for part in cell["parts"]:
                    height = 0.88 * part["percentage"] / 100.0
                    ax.add_patch(Rectangle((x + 0.04, bottom), 0.92, height,
                                           facecolor=part["color"].to_hex(), edgecolor="white", alpha=0.9))
                    ax.text(x + 0.5, bottom + height / 2, f"{part['percentage']:.0f}%",
                            ha="center", va="center", fontsize=5, color=STYLE["text_primary"])
                    bottom += height

    for col, week in enumerate(weeks):
        if col > 0 and week.is_sprint_start():
            ax.axvline(col, color=STYLE["sprint_line_color"], linewidth=1.0, alpha=0.35, zorder=5)

    row_labels = []
    label_colors = []
    for member in reversed(members):
        allocated = state.calculate_team_member_allocated_weeks(member.id)
        row_labels.append(f"{member.name} ({member.role.short_name})  {allocated:.4g}/{member.capacity:.4g}")
        label_colors.append(STATUS_COLORS[get_capacity_status(allocated, member.capacity)])

    ax.set_xlim(0, n_cols)
    ax.set_ylim(0, n_rows)
    ax.set_xticks(np.arange(n_cols) + 0.5)
    ax.set_xticklabels([f"W{w.week_number}\n{w.format_date()}" for w in weeks], fontsize=STYLE["tick_size"])
    ax.set_yticks(np.arange(n_rows) + 0.5)
    ax.set_yticklabels(row_labels, fontsize=STYLE["tick_size"])
    for tick, color in zip(ax.get_yticklabels(), label_colors):
        tick.set_color(color)
    style_axes(ax, title="Weekly Allocations")
    ax.spines["left"].set_visible(False)
    ax.spines["bottom"].set_visible(False)
    ax.tick_params(length=0)

    legend_handles = [mpatches.Patch(facecolor=p.color(state).to_hex(), label=p.name)
                      for p in state.technical_projects]
    if legend_handles:
        ax.legend(handles=legend_handles, loc="upper left", bbox_to_anchor=(0, -0.12),
                  ncol=min(len(legend_handles), 5), fontsize=STYLE["small_size"], frameon=False)

    subtitle = (f"{preferences.team_name}  ·  starts {state.quarter_start_date.isoformat()}  "
                f"·  {preferences.sprint_length_weeks}-week sprints")
    add_header_footer(fig, f"Allocations: {state.quarter_name}", subtitle)
    _save_figure(fig, output_path)
    print(f"  Allocation chart saved: {output_path}")
    return output_path


# ── Chart: Project Capacity ──────────────────────────────────────────────────

def render_capacity_chart(preferences, state, output_path):
    """Render allocated vs estimated weeks per technical project, colored by status."""
    apply_style()
    frame = project_summary_frame(preferences, state)
    if frame.empty:
        print("  No technical projects to chart.")
        return None

    x_positions = np.arange(len(frame))
    fig = plt.figure(figsize=(STYLE["fig_width"] * 0.6, 7), facecolor=STYLE["bg_color"])
    ax = fig.add_axes([0.08, 0.25, 0.88, 0.6])

    ax.bar(x_positions - 0.2, frame["Estimate"], 0.4, color=STYLE["estimate_color"],
           edgecolor="white", label="Estimate", zorder=3)
    status_colors = [STATUS_COLORS[CapacityStatus(s)] for s in frame["Status"]]
    ax.bar(x_positions + 0.2, frame["Allocated"], 0.4, color=status_colors,
           edgecolor="white", alpha=0.9, zorder=3)
    for i, (allocated, estimate) in enumerate(zip(frame["Allocated"], frame["Estimate"])):
        ax.text(i + 0.2, allocated + 0.1, f"{allocated:.4g}", ha="center", va="bottom",
                fontsize=STYLE["small_size"], color=STYLE["text_secondary"])

    ax.set_xticks(x_positions)
    ax.set_xticklabels(frame["Project"], rotation=30, ha="right", fontsize=STYLE["tick_size"])
    top = max(frame["Estimate"].max(), frame["Allocated"].max(), 1.0)
    ax.set_ylim(0, top * 1.2)

    legend_handles = [mpatches.Patch(facecolor=STYLE["estimate_color"], label="Estimate")]
    for status in (CapacityStatus.SUCCESS, CapacityStatus.WARNING, CapacityStatus.ERROR, CapacityStatus.NEUTRAL):
        legend_handles.append(mpatches.Patch(facecolor=STATUS_COLORS[status],
                                             label=f"Allocated ({status.value})"))
    ax.legend(handles=legend_handles, loc="upper right", fontsize=STYLE["small_size"],
              framealpha=0.9, edgecolor=STYLE["grid_color"])
    style_axes(ax, title="Allocated vs Estimated (weeks)", ylabel="Weeks", show_grid_y=True)
    add_header_footer(fig, f"Project Capacity: {state.quarter_name}", preferences.team_name)
    _save_figure(fig, output_path)
    print(f"  Capacity chart saved: {output_path}")
    return output_path


# ── Excel Workbook ───────────────────────────────────────────────────────────

def export_workbook(preferences, state, output_path):
    """Write the plan as an Excel workbook: Allocations grid, Team, Roadmap Projects, Technical Projects."""
    wb = Workbook()

    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="2E3B4E", end_color="2E3B4E", fill_type="solid")
    header_alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    def fill(hex_color):
        color = hex_color.lstrip("#")
        return PatternFill(start_color=color, end_color=color, fill_type="solid")

    def style_sheet(ws, widths):
        for cell in ws[1]:
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment
            cell.border = thin_border
        for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
            for cell in row:
                cell.border = thin_border
                cell.alignment = Alignment(vertical="center")
        for col_letter, width in widths.items():
            ws.column_dimensions[col_letter].width = width
        ws.freeze_panes = "A2"

    role_lookup = preferences.member_role
    weeks = state.weeks(preferences.sprint_length_weeks)

    # ── Sheet 1: Allocations ──
    ws_alloc = wb.active
    ws_alloc.title = "Allocations"
    ws_alloc.append(["Team Member", "Role", "Capacity", "Allocated"]
                    + [f"W{w.week_number} {w.start_date.strftime('%d %b')}" for w in weeks])
    for member in preferences.team_members:
        allocated = state.calculate_team_member_allocated_weeks(member.id)
        row = [member.name, member.role.short_name, member.capacity, allocated]
        colors = []
        for week in weeks:
            cell = classify_cell(state, state.get_allocation(member.id, week.start_date), week.start_date)
            if cell["kind"] == "single":
                row.append(cell["project_name"])
                colors.append(cell["color"].to_hex())
            elif cell["kind"] == "split":
                row.append(" / ".join(f"{p['project_name']} {p['percentage']:.0f}%" for p in cell["parts"]))
                colors.append(cell["parts"][0]["color"].to_hex())
            else:
                row.append(None)
                colors.append(None)
        ws_alloc.append(row)
        row_idx = ws_alloc.max_row
        status = get_capacity_status(allocated, member.capacity)
        ws_alloc.cell(row=row_idx, column=4).fill = fill(STATUS_COLORS[status])
        for offset, color in enumerate(colors):
            if color:
                ws_alloc.cell(row=row_idx, column=5 + offset).fill = fill(color)
    widths = {"A": 20, "B": 8, "C": 10, "D": 10}
    for offset in range(len(weeks)):
        widths[ws_alloc.cell(row=1, column=5 + offset).column_letter] = 16
    style_sheet(ws_alloc, widths)
    ws_alloc.freeze_panes = "E2"

    # ── Sheet 2: Team ──
    ws_team = wb.create_sheet("Team")
    ws_team.append(["Name", "Role", "Capacity", "Allocated", "Status", "Projects"])
    for member in preferences.team_members:
        allocated = state.calculate_team_member_allocated_weeks(member.id)
        status = get_capacity_status(allocated, member.capacity)
        ws_team.append([member.name, member.role.short_name, member.capacity, allocated, status.value,
                        ", ".join(state.get_assigned_project_names_for_member(member.id))])
        ws_team.cell(row=ws_team.max_row, column=5).fill = fill(STATUS_COLORS[status])
    style_sheet(ws_team, {"A": 20, "B": 8, "C": 10, "D": 10, "E": 10, "F": 50})

    # ── Sheet 3: Roadmap Projects ──
    ws_roadmap = wb.create_sheet("Roadmap Projects")
    ws_roadmap.append(["Name", "Color", "Eng Estimate", "Sci Estimate", "Eng Allocated", "Sci Allocated",
                       "Start", "Launch", "Status", "Notes"])
    for project in state.roadmap_projects:
        eng, sci, _ = state.calculate_roadmap_allocated_weeks(project.id, role_lookup)
        _, _, status = roadmap_project_statuses(state, project, role_lookup)
        ws_roadmap.append([project.name, project.color.value, project.eng_estimate, project.sci_estimate,
                           eng, sci, project.start_date, project.launch_date, status.value, project.notes])
        row_idx = ws_roadmap.max_row
        ws_roadmap.cell(row=row_idx, column=2).fill = fill(project.color.to_hex())
        ws_roadmap.cell(row=row_idx, column=9).fill = fill(STATUS_COLORS[status])
    style_sheet(ws_roadmap, {"A": 30, "B": 10, "C": 12, "D": 12, "E": 12, "F": 12,
                             "G": 12, "H": 12, "I": 10, "J": 40})

    # ── Sheet 4: Technical Projects ──
    ws_tech = wb.create_sheet("Technical Projects")
    frame = project_summary_frame(preferences, state)
    ws_tech.append(list(frame.columns))
    status_col = list(frame.columns).index("Status") + 1
    for record in frame.itertuples(index=False):
        values = [None if (v is None or (isinstance(v, float) and math.isnan(v))) else v for v in record]
        ws_tech.append(values)
        status = CapacityStatus(values[status_col - 1])
        ws_tech.cell(row=ws_tech.max_row, column=status_col).fill = fill(STATUS_COLORS[status])
    style_sheet(ws_tech, {"A": 30, "B": 30, "C": 12, "D": 12, "E": 10, "F": 12, "G": 12,
                          "H": 10, "I": 10, "J": 12, "K": 18})

    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    wb.save(output_path)
    print(f"  Workbook saved: {output_path}")
    return output_path


# ── Summary ──────────────────────────────────────────────────────────────────

def print_summary(preferences, state):
    """Print the executive summary of a plan."""
    summary = calculate_quarter_summary(preferences, state)
    cap = summary["capacity"]
    alloc = summary["allocated"]

    print()
    print("=" * 60)
    print("  EXECUTIVE SUMMARY")
    print("=" * 60)
    print(f"  Team:          {preferences.team_name} ({len(preferences.team_members)} members)")
    print(f"  Quarter:       {summary['quarter_name']} ({summary['num_weeks']} weeks from "
          f"{state.quarter_start_date.isoformat()})")
    print(f"  Sprints:       {preferences.sprint_length_weeks} weeks, anchored "
          f"{preferences.sprint_anchor_date.isoformat()}")
    print(f"  Capacity:      {cap['total']:.4g} weeks ({cap['eng']:.4g} eng, {cap['sci']:.4g} sci)")
    print(f"  Allocated:     {alloc['total']:.4g} weeks ({alloc['eng']:.4g} eng, {alloc['sci']:.4g} sci)")
    print(f"  Utilisation:   {summary['utilisation_pct']:.0f}% overall")

    if summary["members"]:
        print()
        print("  Team members:")
        for m in summary["members"]:
            print(f"    {m['name']} ({m['role'].short_name}): {m['allocated']:.4g} / "
                  f"{m['capacity']:.4g} weeks [{m['status'].value}]")

    if summary["roadmap_projects"]:
        print()
        print("  Roadmap projects:")
        for r in summary["roadmap_projects"]:
            print(f"    {r['name']}: eng {r['eng_allocated']:.4g}/{r['eng_estimate']:.4g}, "
                  f"sci {r['sci_allocated']:.4g}/{r['sci_estimate']:.4g} [{r['status'].value}]")

    if summary["technical_projects"]:
        print()
        print("  Technical projects:")
        for t in summary["technical_projects"]:
            project = state.get_technical_project(t["id"])
            start = project.start_date.isoformat() if project.start_date else "-"
            end = project.expected_completion.isoformat() if project.expected_completion else "-"
            print(f"    {t['name']}: {t['allocated']:.4g} / {t['estimate']:.4g} weeks "
                  f"[{t['status'].value}] {start} -> {end}")

    errors, warnings = validate_plan(preferences, state)
    if errors or warnings:
        print()
        print(f"  Findings: {len(errors)} error(s), {len(warnings)} warning(s)")
        for e in errors:
            print(f"    ERROR: {e}")
        for w in warnings:
            print(f"    WARNING: {w}")

    print("=" * 60)
    print()


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Quarter Planning Tool: validate a plan export and generate allocation reports"
    )
    parser.add_argument(
        "--sample", metavar="PATH", default=None,
        help="Write a sample plan export (Q1 2025) to PATH and exit"
    )
    parser.add_argument(
        "--input", default=None,
        help="Plan export to load (JSON file or a file holding a share string). "
             "Defaults to the plan saved in the storage directory."
    )
    parser.add_argument(
        "--storage-dir", default=None,
        help=f"Where preferences and plan state are saved (default: ${STORAGE_DIR_ENV} or ~/.config/quarter-planner)"
    )
    parser.add_argument(
        "--roster", default=None,
        help="Excel file with a 'Team' sheet (Name, Role, Capacity) replacing the plan's team"
    )
    parser.add_argument(
        "--quarter", nargs=2, type=int, metavar=("YEAR", "QUARTER"), default=None,
        help="Start a fresh, empty plan for this quarter (keeps the team), e.g. --quarter 2025 2"
    )
    parser.add_argument(
        "--save", action="store_true",
        help="Save the loaded plan to the storage directory"
    )
    parser.add_argument(
        "--outdir", default=DEFAULT_OUTDIR,
        help="Output directory for reports (default: output/)"
    )
    parser.add_argument(
        "--reports", default=["all"], nargs="+", choices=REPORT_CHOICES,
        help="Which reports to generate (default: all). Can specify multiple: --reports workbook grid"
    )
    parser.add_argument(
        "--share", action="store_true",
        help="Print the base64 share string for the plan"
    )
    args = parser.parse_args(argv)

    if args.sample:
        preferences, state = create_sample_plan()
        export = PlanExport.from_signals(preferences, state)
        os.makedirs(os.path.dirname(args.sample) or ".", exist_ok=True)
        with open(args.sample, "w", encoding="utf-8") as f:
            f.write(export.to_json())
        print(f"Sample plan created: {args.sample}")
        print(f"\nRun again with --input {args.sample} to generate the reports.")
        return

    storage_dir = get_storage_dir(args.storage_dir)
    if args.input:
        if not os.path.exists(args.input):
            print(f"Error: Input file not found: {args.input}")
            print("Run with --sample PATH first to create a sample plan.")
            sys.exit(1)
        print(f"Loading plan from: {args.input}")
        with open(args.input, "r", encoding="utf-8") as f:
            text = f.read()
        try:
            preferences, state = import_plan(text)
        except ExportValidationError as e:
            print(f"  ERROR: Plan failed validation ({e.kind}): {e}")
            sys.exit(1)
        except ValueError as e:
            print(f"  ERROR: {e}")
            sys.exit(1)
        local = load_preferences(storage_dir)
        if local is not None:
            preferences.sprint_anchor_date = local.sprint_anchor_date
            preferences.sprint_length_weeks = local.sprint_length_weeks
            preferences.default_capacity = local.default_capacity
            print(f"  Using local sprint settings from: {storage_dir}")
    else:
        print(f"Loading saved plan from: {storage_dir}")
        preferences = load_preferences(storage_dir)
        state = load_plan_state(storage_dir)
        if preferences is None or state is None:
            print("Error: No saved plan found.")
            print("Run with --input PATH --save, or --sample PATH to create one.")
            sys.exit(1)

    if args.roster:
        if not os.path.exists(args.roster):
            print(f"Error: Roster file not found: {args.roster}")
            sys.exit(1)
        members = load_team_roster(args.roster, preferences.default_capacity)
        if not members:
            print("  ERROR: Roster has no usable team members.")
            sys.exit(1)
        preferences.team_members = members
        print(f"  Team replaced from roster: {args.roster}")

    if args.quarter:
        year, quarter = args.quarter
        start = get_quarter_start_date(year, quarter)
        if start is None:
            print(f"  ERROR: Quarter must be 1-4, got {quarter}")
            sys.exit(1)
        state = PlanState(quarter_name=get_quarter_label(year, quarter), quarter_start_date=start)
        print(f"  Started new plan for {state.quarter_name}")

    print(f"  Team: {', '.join(f'{m.name} ({m.role.short_name}, {m.capacity:.4g}w)' for m in preferences.team_members)}")
    print(f"  Roadmap projects: {len(state.roadmap_projects)}")
    print(f"  Technical projects: {len(state.technical_projects)}")
    print(f"  Allocations: {len(state.allocations)}")

    try:
        preferences.validate()
    except PreferencesValidationError as e:
        print(f"  WARNING: {e}")

    if args.save:
        save_preferences(preferences, storage_dir)
        save_plan_state(state, storage_dir)
        print(f"  Saved plan to: {storage_dir}")

    export = PlanExport.from_signals(preferences, state)
    if args.share:
        print()
        print("  Share string:")
        print(encode_share_string(export))

    # Summary (captured for summary.txt)
    os.makedirs(args.outdir, exist_ok=True)
    summary_capture = io.StringIO()
    _orig_stdout = sys.stdout
    sys.stdout = _TeeWriter(_orig_stdout, summary_capture)
    try:
        print_summary(preferences, state)
    finally:
        sys.stdout = _orig_stdout

    reports = args.reports
    gen_all = "all" in reports
    output_files = []

    if gen_all or "workbook" in reports:
        output_files.append(export_workbook(
            preferences, state, os.path.join(args.outdir, plan_filename(export).replace(".json", ".xlsx"))))
    if gen_all or "grid" in reports:
        output_files.append(render_allocation_chart(
            preferences, state, os.path.join(args.outdir, "allocations.png")))
    if gen_all or "capacity" in reports:
        output_files.append(render_capacity_chart(
            preferences, state, os.path.join(args.outdir, "project_capacity.png")))

    summary_path = os.path.join(args.outdir, "summary.txt")
    with open(summary_path, "w", encoding="utf-8") as sf:
        sf.write(summary_capture.getvalue())
    output_files.append(summary_path)

    output_files = [f for f in output_files if f]
    if output_files:
        print()
        print("  Output:")
        for f in output_files:
            print(f"    {os.path.abspath(f)}")
    print("\nDone.")


if __name__ == "__main__":
    main()
