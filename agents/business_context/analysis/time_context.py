"""
Time Context Analyzer

Resolves the temporal window of a question from relative expressions
("last month", "ytd"), numeric expressions ("last 30 days"), absolute
dates and, as a last resort, the language model. Weeks start on Monday.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional, Tuple

from shared.base.services import LanguageModelService
from shared.config.logging_config import configure_logger_for_component
from shared.config.settings import BusinessContextConfig, get_settings
from shared.schemas.business_context import TimeGranularity, TimeRange
from shared.utils.metrics import track_performance
from shared.utils.text import normalize_text

from .interfaces import TimeRangeExtractor
from .llm_support import complete_with_timeout, extract_json


MONTH_NAMES = {
    'january': 1, 'february': 2, 'march': 3, 'april': 4, 'may': 5, 'june': 6,
    'july': 7, 'august': 8, 'september': 9, 'october': 10, 'november': 11, 'december': 12,
}

_UNIT_GRANULARITY = {
    'day': TimeGranularity.DAY,
    'week': TimeGranularity.WEEK,
    'month': TimeGranularity.MONTH,
    'quarter': TimeGranularity.QUARTER,
    'year': TimeGranularity.YEAR,
}

_NUMERIC_RE = re.compile(r"\b(last|past|next)\s+(\d+)\s+(day|week|month|year)s?\b")
_PERIOD_RE = re.compile(r"\b(this|last|next|previous)\s+(week|month|quarter|year)\b")
_QUARTER_RE = re.compile(r"\bq([1-4])\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_MONTH_YEAR_RE = re.compile(r"\b(" + "|".join(MONTH_NAMES) + r")\s+(\d{4})\b")
_YEAR_RE = re.compile(r"\b(20[0-2][0-9]|2030)\b")

_RECENT_CUES = ("recent", "latest", "current", "now", "trending")
_REPORTING_CUES = ("performance", "analytics", "metrics", "kpi", "dashboard")
_GRANULARITY_CUES = {
    'daily': TimeGranularity.DAY,
    'weekly': TimeGranularity.WEEK,
    'monthly': TimeGranularity.MONTH,
}

TIME_EXTRACTION_PROMPT = """Identify the time period referred to by this business question.
Today is {today}.

Question: "{question}"

Respond with ONLY a JSON object:
{{"start": "YYYY-MM-DD", "end": "YYYY-MM-DD", "expression": "<text>", "granularity": "Day|Week|Month|Quarter|Year"}}
If the question has no time reference respond with {{}}.
"""


def _start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min)


def _end_of_day(d: date) -> datetime:
    return datetime.combine(d, time.max)


def _add_months(d: date, months: int) -> date:
    month_index = d.year * 12 + (d.month - 1) + months
    year, month = divmod(month_index, 12)
    return date(year, month + 1, 1)


def _month_bounds(d: date) -> Tuple[date, date]:
    first = date(d.year, d.month, 1)
    last = _add_months(first, 1) - timedelta(days=1)
    return first, last


def _quarter_bounds(year: int, quarter: int) -> Tuple[date, date]:
    first = date(year, (quarter - 1) * 3 + 1, 1)
    last = _add_months(first, 3) - timedelta(days=1)
    return first, last


class TimeContextAnalyzer(TimeRangeExtractor):
    """
    Temporal window extractor.

    ``today`` may be injected as a callable returning a ``date`` so results
    are deterministic in tests.
    """

    def __init__(
        self,
        language_model: Optional[LanguageModelService] = None,
        config: Optional[BusinessContextConfig] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.logger = configure_logger_for_component("analysis.time_context")
        self.language_model = language_model
        self.config = config or get_settings().business_context
        self._today = today or date.today

    def _range(self, start: date, end: date, expression: str, granularity: TimeGranularity) -> TimeRange:
        return TimeRange(
            start=_start_of_day(start),
            end=_end_of_day(end),
            relative_expression=expression,
            granularity=granularity,
        )

    @track_performance(tags={"operation": "extract_time_range"})
    async def extract_time_range(self, question: str) -> Optional[TimeRange]:
        text = normalize_text(question)
        if not text:
            return None

        today = self._today()
        time_range = (
            self._parse_numeric(text, today)
            or self._parse_relative(text, today)
            or self._parse_absolute(text)
        )
        if time_range is None:
            time_range = await self._parse_with_language_model(question, today)
        if time_range is None:
            time_range = self._parse_implicit(text, today)

        if time_range is not None:
            self.logger.debug(
                f"Resolved time range '{time_range.relative_expression}'",
                extra={"granularity": time_range.granularity.value}
            )
        return time_range

    def _parse_numeric(self, text: str, today: date) -> Optional[TimeRange]:
        match = _NUMERIC_RE.search(text)
        if not match:
            return None
        direction, amount, unit = match.group(1), int(match.group(2)), match.group(3)
        if amount <= 0:
            return None
        days_per_unit = {'day': 1, 'week': 7, 'month': 30, 'year': 365}[unit]
        granularity = TimeGranularity.DAY if unit in ('day', 'week') else _UNIT_GRANULARITY[unit]
        try:
            span = timedelta(days=days_per_unit * amount)
            if direction == 'next':
                return self._range(today, today + span, match.group(0), granularity)
            return self._range(today - span, today, match.group(0), granularity)
        except OverflowError:
            self.logger.debug(f"Ignoring out-of-range expression '{match.group(0)}'")
            return None

    def _parse_relative(self, text: str, today: date) -> Optional[TimeRange]:
        if re.search(r"\btoday\b", text):
            return self._range(today, today, 'today', TimeGranularity.DAY)
        if re.search(r"\byesterday\b", text):
            day = today - timedelta(days=1)
            return self._range(day, day, 'yesterday', TimeGranularity.DAY)
        if re.search(r"\btomorrow\b", text):
            day = today + timedelta(days=1)
            return self._range(day, day, 'tomorrow', TimeGranularity.DAY)

        if re.search(r"\b(ytd|year to date)\b", text):
            return self._range(date(today.year, 1, 1), today, 'year to date', TimeGranularity.MONTH)
        if re.search(r"\b(mtd|month to date)\b", text):
            return self._range(date(today.year, today.month, 1), today, 'month to date', TimeGranularity.DAY)
        if re.search(r"\bpast week\b", text):
            return self._range(today - timedelta(days=7), today, 'past week', TimeGranularity.DAY)
        if re.search(r"\bpast month\b", text):
            return self._range(today - timedelta(days=30), today, 'past month', TimeGranularity.DAY)

        match = _PERIOD_RE.search(text)
        if match:
            return self._period_range(match.group(1), match.group(2), today, match.group(0))

        match = _QUARTER_RE.search(text)
        if match:
            quarter = int(match.group(1))
            start, end = _quarter_bounds(today.year, quarter)
            return self._range(start, end, match.group(0), TimeGranularity.QUARTER)

        if re.search(r"\brecent(ly)?\b", text):
            return self._range(today - timedelta(days=30), today, 'recent', TimeGranularity.DAY)
        return None

    def _period_range(self, qualifier: str, unit: str, today: date, expression: str) -> TimeRange:
        offset = {'this': 0, 'last': -1, 'previous': -1, 'next': 1}[qualifier]

        if unit == 'week':
            monday = today - timedelta(days=today.weekday()) + timedelta(weeks=offset)
            return self._range(monday, monday + timedelta(days=6), expression, TimeGranularity.DAY)

        if unit == 'month':
            start, end = _month_bounds(_add_months(today, offset))
            return self._range(start, end, expression, TimeGranularity.MONTH)

        if unit == 'quarter':
            quarter_index = today.year * 4 + (today.month - 1) // 3 + offset
            year, quarter = divmod(quarter_index, 4)
            start, end = _quarter_bounds(year, quarter + 1)
            return self._range(start, end, expression, TimeGranularity.QUARTER)

        year = today.year + offset
        return self._range(date(year, 1, 1), date(year, 12, 31), expression, TimeGranularity.MONTH)

    def _parse_absolute(self, text: str) -> Optional[TimeRange]:
        match = _ISO_DATE_RE.search(text)
        if match:
            day = self._safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
            if day:
                return self._range(day, day, match.group(0), TimeGranularity.DAY)

        match = _US_DATE_RE.search(text)
        if match:
            day = self._safe_date(int(match.group(3)), int(match.group(1)), int(match.group(2)))
            if day:
                return self._range(day, day, match.group(0), TimeGranularity.DAY)

        match = _MONTH_YEAR_RE.search(text)
        if match:
            try:
                start, end = _month_bounds(date(int(match.group(2)), MONTH_NAMES[match.group(1)], 1))
            except (ValueError, OverflowError):
                self.logger.debug(f"Ignoring out-of-range month expression '{match.group(0)}'")
            else:
                return self._range(start, end, match.group(0), TimeGranularity.DAY)

        match = _YEAR_RE.search(text)
        if match:
            year = int(match.group(1))
            return self._range(date(year, 1, 1), date(year, 12, 31), match.group(0), TimeGranularity.MONTH)
        return None

    @staticmethod
    def _safe_date(year: int, month: int, day: int) -> Optional[date]:
        try:
            return date(year, month, day)
        except ValueError:
            return None

    async def _parse_with_language_model(self, question: str, today: date) -> Optional[TimeRange]:
        if self.language_model is None:
            return None
        response, ok = await complete_with_timeout(
            self.language_model,
            TIME_EXTRACTION_PROMPT.format(question=question, today=today.isoformat()),
            self.config.llm_timeout_seconds,
            "time_extraction",
            self.logger,
        )
        if not ok:
            return None

        data, ok = extract_json(response, "{")
        if not ok or not isinstance(data, dict) or not data.get('start') or not data.get('end'):
            return None
        try:
            start = date.fromisoformat(str(data['start'])[:10])
            end = date.fromisoformat(str(data['end'])[:10])
        except ValueError:
            self.logger.warning(f"Language model returned invalid dates: {data}")
            return None
        if end < start:
            start, end = end, start

        try:
            granularity = TimeGranularity(str(data.get('granularity', 'Unknown')).capitalize())
        except ValueError:
            granularity = TimeGranularity.UNKNOWN
        return self._range(start, end, str(data.get('expression') or ''), granularity)

    def _parse_implicit(self, text: str, today: date) -> Optional[TimeRange]:
        granularity = None
        for cue, cue_granularity in _GRANULARITY_CUES.items():
            if re.search(rf"\b{cue}\b", text):
                granularity = cue_granularity
                break

        if any(re.search(rf"\b{cue}\b", text) for cue in _RECENT_CUES):
            return self._range(
                today - timedelta(days=30), today, 'implicit recent', granularity or TimeGranularity.DAY
            )
        if any(re.search(rf"\b{cue}\b", text) for cue in _REPORTING_CUES):
            return self._range(
                today - timedelta(days=7), today, 'implicit reporting window', granularity or TimeGranularity.DAY
            )
        if granularity is not None:
            return self._range(today - timedelta(days=30), today, 'implicit periodic', granularity)
        return None
