from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional

from openpyxl import load_workbook
from openpyxl.utils import column_index_from_string

from .date_utils import format_date, to_date
from .sheet_layout import InputColumns

log = logging.getLogger(__name__)

NIGHT_LABELS = {"ナイト", "night"}


class Category(enum.Enum):
    NIGHT = "ナイト"
    NORMAL = "通常"

    @classmethod
    def from_label(cls, label: Any) -> "Category":
        s = str(label or "").strip().lower()
        return cls.NIGHT if s in NIGHT_LABELS else cls.NORMAL

    @property
    def is_night(self) -> bool:
        return self is Category.NIGHT


def make_unique_id(company_id: str, company_name: str, start: Any, end: Any) -> str:
    """企業ID_企業名_YYYY/MM/DD_YYYY/MM/DD"""
    return f"{company_id}_{company_name}_{format_date(start)}_{format_date(end)}"


@dataclass(frozen=True)
class CompanyTask:
    company_id: str
    company_name: str
    category: Category
    period_start: Any
    period_end: Any
    source_site: str = ""
    row: Optional[int] = None

    @property
    def is_night(self) -> bool:
        return self.category.is_night

    @property
    def period_start_text(self) -> str:
        return format_date(self.period_start)

    @property
    def period_end_text(self) -> str:
        return format_date(self.period_end)

    @property
    def unique_id(self) -> str:
        return make_unique_id(self.company_id, self.company_name, self.period_start, self.period_end)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def read_company_tasks(
    path: str,
    columns: InputColumns | None = None,
    start_row: int = 2,
    limit: Optional[int] = None,
) -> list[CompanyTask]:
    """
    入力エクセル（1枚目のシート）から CompanyTask を作る。
    企業IDが空の行は読み飛ばす。limit 件で打ち切り。
    """
    cols = columns or InputColumns()
    idx = {name: column_index_from_string(letter) - 1 for name, letter in vars(cols).items() if letter}
    wb = load_workbook(path, read_only=True, data_only=True)
    tasks: list[CompanyTask] = []
    try:
        ws = wb.worksheets[0]
        for row_no, values in enumerate(ws.iter_rows(min_row=start_row, values_only=True), start=start_row):
            def get(name: str) -> Any:
                i = idx.get(name)
                if i is None or values is None or i >= len(values):
                    return None
                return values[i]

            company_id = _cell_text(get("company_id"))
            if not company_id:
                continue
            start = get("start_date")
            end = get("end_date")
            tasks.append(
                CompanyTask(
                    company_id=company_id,
                    company_name=_cell_text(get("company_name")),
                    category=Category.from_label(get("category")),
                    period_start=to_date(start) or start,
                    period_end=to_date(end) or end,
                    source_site=_cell_text(get("site")),
                    row=row_no,
                )
            )
            if limit and len(tasks) >= limit:
                break
    finally:
        wb.close()
    log.info("input tasks loaded: %s (%d rows)", path, len(tasks))
    return tasks
