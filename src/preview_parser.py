from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .job_classifier import PREFECTURES

WORK_LOCATION_LABELS = ("[勤務地]", "[勤務地・面接地]", "[勤務地･面接地]")
_LABEL_PREFIX_RE = re.compile(r"^\[勤務地(?:[・･]面接地)?\]\s*")
_PREFECTURE_RE = re.compile("(" + "|".join(PREFECTURES) + ")")
_CITY_RE = re.compile(r"([^都道府県]+?[市区町村])")
_STATION_RE = re.compile(r"([^\s/]+駅)")
_PAREN_RE = re.compile(r"\([^)]+\)|（[^）]+）")
_YEN_AMOUNT_RE = re.compile(r"([\d,]+)\s*円")
_NUMBER_RE = re.compile(r"([\d,]+)")

# 先に見つかったものを採用（「月収」は「月給」より優先）
SALARY_FORM_PRIORITY = ("月収", "時給", "日給", "月給", "年俸")
DEFAULT_SALARY_FORM = "時給"


@dataclass(frozen=True)
class PreviewAttributes:
    prefecture: str = ""
    city: str = ""
    station: str = ""
    job_category_raw_text: str = ""
    salary_type: str = ""
    salary_raw_amount: int | float | str = 0


def is_work_location_text(text: str) -> bool:
    return any(label in (text or "") for label in WORK_LOCATION_LABELS)


def _strip_label(text: str) -> str:
    return _LABEL_PREFIX_RE.sub("", text.strip()).strip()


def parse_work_location(texts: Iterable[str]) -> tuple[str, str, str]:
    """
    勤務地の li テキスト群から (都道府県, 市区町村, 最寄り駅) を取り出す。
    「[勤務地]」「[勤務地・面接地]」を含む項目だけを見る。
    """
    prefecture = city = station = ""
    for raw in texts:
        text = (raw or "").strip()
        if not is_work_location_text(text):
            continue
        body = _strip_label(text)
        if not prefecture:
            m = _PREFECTURE_RE.search(body)
            if m:
                prefecture = m.group(1)
        if not city and any(ch in text for ch in "区市町村"):
            city_text = body.replace(prefecture, "", 1).strip() if prefecture else body
            m = _CITY_RE.search(city_text)
            if m and (not prefecture or prefecture not in m.group(1)):
                city = m.group(1).strip()
        if not station and ("駅" in text or "線" in text):
            m = _STATION_RE.search(_PAREN_RE.sub("", text))
            if m:
                station = m.group(1).replace("駅", "").strip()
        if prefecture and city and station:
            break
    station = _PAREN_RE.sub("", station).strip()
    return prefecture, city, station


def detect_salary_form(text: str) -> str:
    for form in SALARY_FORM_PRIORITY:
        if form in (text or ""):
            return form
    return DEFAULT_SALARY_FORM


def parse_salary_text(text: str) -> tuple[str, int | str]:
    """
    プレビューの給与テキスト → (給与形態, 金額)。
    "時給1,200円"        → ("時給", 1200)
    "月給21万円～22万円"  → ("月給", "月給21万円～22万円")
    """
    s = (text or "").strip()
    if not s:
        return DEFAULT_SALARY_FORM, 0
    form = detect_salary_form(s)
    idx = s.find(form)
    if "万円" in s or ("～" in s and "円" in s):
        return form, (s[idx:].strip() if idx != -1 else s)
    after = s[idx + len(form):] if idx != -1 else s
    m = _YEN_AMOUNT_RE.search(after) or _NUMBER_RE.search(after)
    if m:
        digits = m.group(1).replace(",", "")
        if digits:
            return form, int(digits)
    return form, 0


def pick_salary_text(candidates: Iterable[str]) -> Optional[str]:
    """金額入りの候補を優先し、無ければ給与形態だけの候補を返す。"""
    fallback: Optional[str] = None
    for cand in candidates:
        c = (cand or "").strip()
        if not c:
            continue
        if "円" in c or re.search(r"\d{3,}", c):
            return c
        if fallback is None and any(f in c for f in SALARY_FORM_PRIORITY):
            fallback = c
    return fallback
