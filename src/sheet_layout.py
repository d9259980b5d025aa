from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

log = logging.getLogger(__name__)

UNIQUE_ID_HEADER = "ユニークID"


@dataclass(frozen=True)
class TrendColumns:
    """出力（傾向データベース）シートの列。空文字の列には書き込まない。"""
    year: str = "A"
    month: str = "B"
    region: str = "C"
    prefecture: str = "D"
    city: str = "E"
    station: str = "F"
    job_category_large: str = "G"
    job_category_medium: str = "H"
    job_category_small: str = "I"
    salary_type: str = "J"
    salary_amount: str = "K"
    plan: str = "L"
    list_pv: str = "M"
    detail_pv: str = "N"
    web_application: str = "O"
    tel_application: str = "P"
    period: str = "Q"
    company_id: str = "R"
    company_name: str = "S"
    store_name: str = "T"
    media: str = "U"
    application_start: str = "V"
    application_end: str = "W"
    # 空き行判定に使う列（必ず値が入る列）
    anchor: str = "A"


NORMAL_COLUMNS = TrendColumns()
NIGHT_COLUMNS = TrendColumns(
    plan="J",
    salary_type="L",
    salary_amount="M",
    list_pv="N",
    detail_pv="O",
    web_application="P",
    tel_application="Q",
    period="R",
    company_id="S",
    company_name="T",
    store_name="U",
    media="",
    application_start="V",
    application_end="W",
)


@dataclass(frozen=True)
class InputColumns:
    """入力シート（企業リスト）の列。"""
    company_id: str = "A"
    company_name: str = "B"
    category: str = "C"
    site: str = "D"
    start_date: str = "E"
    end_date: str = "F"


@dataclass(frozen=True)
class Layouts:
    normal: TrendColumns = NORMAL_COLUMNS
    night: TrendColumns = NIGHT_COLUMNS
    input: InputColumns = InputColumns()

    def for_category(self, is_night: bool) -> TrendColumns:
        return self.night if is_night else self.normal


def _override(base: Any, data: Any, name: str) -> Any:
    if not isinstance(data, dict):
        return base
    known = {f.name for f in fields(base)}
    unknown = sorted(set(data) - known)
    if unknown:
        log.warning("columns.json[%s]: unknown keys ignored: %s", name, unknown)
    values = {k: str(v or "").strip().upper() for k, v in data.items() if k in known}
    return replace(base, **values)


def load_layouts(path: Optional[str] = None) -> Layouts:
    """
    config/columns.json があれば既定の列割り当てを上書きする。
    {"normal": {...}, "night": {...}, "input": {...}}
    """
    layouts = Layouts()
    if not path or not os.path.exists(path):
        return layouts
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return Layouts(
        normal=_override(layouts.normal, data.get("normal"), "normal"),
        night=_override(layouts.night, data.get("night"), "night"),
        input=_override(layouts.input, data.get("input"), "input"),
    )
