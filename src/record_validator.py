from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional, Sequence

from .date_utils import calculate_weeks, format_date, is_open_end, same_calendar_date, to_date

log = logging.getLogger(__name__)


class ValidationFailed(Exception):
    """検証対象のレコードが1件も無い。"""


@dataclass(frozen=True)
class ReportColumns:
    """掲載実績レポートの列名（候補を先頭から順に探す）。"""
    plan: tuple[str, ...] = ("掲載プラン", "プラン")
    job_no: tuple[str, ...] = ("仕事No", "仕事番号")
    list_pv: tuple[str, ...] = ("一覧PV数", "一覧PV")
    detail_pv: tuple[str, ...] = ("詳細PV数", "詳細PV")
    web_application: tuple[str, ...] = ("WEB応募数", "Web応募数")
    tel_application: tuple[str, ...] = ("TEL応募数", "電話応募数", "通常応募数")
    perf_start: tuple[str, ...] = ("掲載実績開始日", "掲載開始日")
    perf_end: tuple[str, ...] = ("掲載実績終了日", "掲載終了日")
    app_start: tuple[str, ...] = ("申込開始日",)
    app_end: tuple[str, ...] = ("申込終了日",)
    job_category: tuple[str, ...] = ("職種",)
    salary: tuple[str, ...] = ("給与",)

    @staticmethod
    def pick(row: Mapping[str, Any], names: Sequence[str]) -> Any:
        for name in names:
            if name in row:
                value = row.get(name)
                if value is not None and str(value).strip() != "":
                    return value
        return None


_COUNT_CLEAN_RE = re.compile(r"[,\s件回]")


def parse_count(value: Any) -> float:
    """'1,234' / '' / None → 数値。読めなければ 0。"""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    s = _COUNT_CLEAN_RE.sub("", str(value))
    if not s:
        return 0
    try:
        num = float(s)
    except ValueError:
        return 0
    return int(num) if num.is_integer() else num


@dataclass(frozen=True)
class RawRecord:
    """ダウンロードした掲載実績レポートの1行。"""
    perf_start: Any = None
    perf_end: Any = None
    app_start: Any = None
    app_end: Any = None
    list_pv: float = 0
    detail_pv: float = 0
    web_application: float = 0
    tel_application: float = 0
    plan_text: str = ""
    job_no: str = ""
    job_category_text: str = ""
    salary_text: str = ""
    index: int = 0
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], columns: ReportColumns | None = None, index: int = 0) -> "RawRecord":
        cols = columns or ReportColumns()
        pick = ReportColumns.pick

        def text(names: Sequence[str]) -> str:
            v = pick(row, names)
            return str(v).strip() if v is not None else ""

        return cls(
            perf_start=pick(row, cols.perf_start),
            perf_end=pick(row, cols.perf_end),
            app_start=pick(row, cols.app_start),
            app_end=pick(row, cols.app_end),
            list_pv=parse_count(pick(row, cols.list_pv)),
            detail_pv=parse_count(pick(row, cols.detail_pv)),
            web_application=parse_count(pick(row, cols.web_application)),
            tel_application=parse_count(pick(row, cols.tel_application)),
            plan_text=text(cols.plan),
            job_no=text(cols.job_no),
            job_category_text=text(cols.job_category),
            salary_text=text(cols.salary),
            index=index,
            raw=dict(row),
        )

    @property
    def weeks(self) -> int:
        return calculate_weeks(self.app_start, self.app_end)


def is_period_matched(record: RawRecord) -> bool:
    """
    掲載実績期間と申込期間が一致しているか。
    終了日が「掲載中」なら開始日の一致だけで判定する。
    """
    start_match = same_calendar_date(record.perf_start, record.app_start)
    if is_open_end(record.perf_end):
        return start_match
    return start_match and same_calendar_date(record.perf_end, record.app_end)


@dataclass(frozen=True)
class ValidationOutcome:
    matched_records: list[RawRecord]
    unmatched_records: list[RawRecord]

    @property
    def total(self) -> int:
        return len(self.matched_records) + len(self.unmatched_records)

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def aggregate(self) -> Optional[RawRecord]:
        return aggregate_unmatched(self.unmatched_records)


def validate(records: Iterable[RawRecord], application_period: Optional[tuple[Any, Any]] = None) -> ValidationOutcome:
    """
    レコードを「期間一致」と「不一致」に分ける。全件どちらか一方に入る。
    application_period はログ用（判定は各行の申込期間で行う）。
    """
    matched: list[RawRecord] = []
    unmatched: list[RawRecord] = []
    for rec in records:
        if is_period_matched(rec):
            matched.append(rec)
        else:
            unmatched.append(rec)
            log.debug(
                "period mismatch: row=%s perf=%s..%s app=%s..%s",
                rec.index, rec.perf_start, rec.perf_end, rec.app_start, rec.app_end,
            )
    outcome = ValidationOutcome(matched, unmatched)
    if outcome.is_empty:
        raise ValidationFailed("レポートにレコードがありません")
    if application_period:
        log.info(
            "validation %s-%s: matched=%d unmatched=%d",
            format_date(application_period[0]), format_date(application_period[1]),
            len(matched), len(unmatched),
        )
    return outcome


def aggregate_unmatched(records: Sequence[RawRecord]) -> Optional[RawRecord]:
    """
    期間不一致の行を1行にまとめる。
    - PV数・応募数は合計
    - 申込開始日は最も早い日、申込終了日は最も遅い日（週数はこの期間で再計算）
    - それ以外は先頭行の値
    """
    if not records:
        return None
    first = records[0]
    starts = [d for d in (to_date(r.app_start) for r in records) if d is not None]
    ends = [d for d in (to_date(r.app_end) for r in records) if d is not None]
    return replace(
        first,
        list_pv=sum(r.list_pv for r in records),
        detail_pv=sum(r.detail_pv for r in records),
        web_application=sum(r.web_application for r in records),
        tel_application=sum(r.tel_application for r in records),
        app_start=min(starts) if starts else first.app_start,
        app_end=max(ends) if ends else first.app_end,
    )
