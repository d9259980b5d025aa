from __future__ import annotations

import datetime as dt
import math
import re
from typing import Any, Optional

# 掲載実績の終了日が未確定（掲載継続中）のときにレポートへ入る値
OPEN_END_MARKER = "掲載中"

EXCEL_EPOCH = dt.date(1899, 12, 30)
_SERIAL_STRING_MAX = 1_000_000
_DATE_STR_RE = re.compile(r"^\s*(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})(?:[ T].*)?$")
_NUMERIC_RE = re.compile(r"^\s*\d+(?:\.\d+)?\s*$")


def _from_serial(value: float) -> Optional[dt.date]:
    if value <= 0:
        return None
    try:
        return EXCEL_EPOCH + dt.timedelta(days=int(value))
    except OverflowError:
        return None


def to_date(value: Any) -> Optional[dt.date]:
    """
    スプレッドシート/CSV 由来の日付表現を date に揃える。
    - date / datetime
    - Excel シリアル値（1899-12-30 起点）
    - "2024/1/5" "2024-01-05" 形式の文字列（時刻部分は無視）
    - 数字だけの文字列（1,000,000 未満ならシリアル値扱い）
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, (int, float)):
        return _from_serial(float(value))
    s = str(value).strip()
    if not s:
        return None
    m = _DATE_STR_RE.match(s)
    if m:
        try:
            return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None
    if _NUMERIC_RE.match(s):
        num = float(s)
        if num < _SERIAL_STRING_MAX:
            return _from_serial(num)
    return None


def format_date(value: Any) -> str:
    """YYYY/MM/DD。日付として読めなければ空文字。"""
    d = to_date(value)
    return d.strftime("%Y/%m/%d") if d else ""


def same_calendar_date(a: Any, b: Any) -> bool:
    da = to_date(a)
    db = to_date(b)
    if da is None or db is None:
        return False
    return (da.year, da.month, da.day) == (db.year, db.month, db.day)


def is_open_end(value: Any) -> bool:
    return str(value or "").strip() == OPEN_END_MARKER


def calculate_weeks(start: Any, end: Any) -> int:
    """
    期間（週数）。日数・週数ともに切り上げる。
    2024/01/01〜2024/01/08 → 1週, 2024/01/01〜2024/01/09 → 2週
    """
    ds = to_date(start)
    de = to_date(end)
    if ds is None or de is None:
        return 0
    days = math.ceil(abs((de - ds).days))
    return math.ceil(days / 7)


def year_month(value: Any) -> Optional[tuple[int, int]]:
    d = to_date(value)
    if d is None:
        return None
    return d.year, d.month
