from __future__ import annotations

import re
import unicodedata
from typing import Any

# プラン名: 「Aプラン」「PEXプラン」など
_PLAN_RE = re.compile(r"(?:[A-Z]|O|PEX|EL|PL)\s*プラン", re.IGNORECASE)

# 職種ラベル先頭の番号・タグ（適用順に意味がある）
_JOB_LABEL_PREFIXES = (
    re.compile(r"^[\(\[（【]\s*\d+\s*[\)\]）】]\s*"),  # (1) [2] （3） 【4】
    re.compile(r"^\d+[\.\)）]\s*"),  # 1. 1)
    re.compile(r"^\[[^\]]+\]\s*[①②③④⑤⑥⑦⑧⑨⑩]+\s*"),  # [ア・パ]①
    re.compile(r"^\[[^\]]+\]\s*"),  # [ア・パ]
    re.compile(r"^[①②③④⑤⑥⑦⑧⑨⑩]+\s*"),  # ①②
)

_SALARY_FORM_PREFIX_RE = re.compile(r"^(?:時給|月給|日給|月収)[\s・、]*", re.IGNORECASE)
_NIGHT_FORM_RE = re.compile(r"(時給|月給|日給)")
_YEN_AMOUNT_RE = re.compile(r"([\d,]+)\s*円")
_NON_NUMERIC_RE = re.compile(r"[^\d.]")
_NIGHT_NUMERIC_RE = re.compile(r"^[\d,.\s-]+$")
_TILDE_RE = re.compile(r"[〜～]")


def clean_plan_name(text: Any) -> str:
    """「Bプラン（おすすめ）」→「Bプラン」。プラン表記が無ければ trim のみ。"""
    if not text:
        return ""
    s = str(text)
    m = _PLAN_RE.match(s) or _PLAN_RE.search(s)
    if m:
        return m.group(0).strip()
    return s.strip()


def clean_job_category_label(text: Any) -> str:
    """
    職種ラベル先頭の番号・括弧タグを除去する。
    例: "(1) アルバイト・パート" → "アルバイト・パート"
        "[ア・パ]①②ホールスタッフ" → "ホールスタッフ"
    """
    if not text:
        return ""
    s = str(text)
    for pattern in _JOB_LABEL_PREFIXES:
        s = pattern.sub("", s)
    return s.strip()


def extract_salary_form(text: Any, default: str = "") -> str:
    if not isinstance(text, str):
        return default
    m = _NIGHT_FORM_RE.search(text)
    return m.group(1) if m else default


def _to_number(digits: str) -> int | float:
    value = float(digits)
    return int(value) if value.is_integer() else value


def _parse_digits(text: str) -> int | float:
    digits = _NON_NUMERIC_RE.sub("", text)
    try:
        return _to_number(digits)
    except ValueError:
        return 0


def _normal_salary_amount(text: str) -> int | float | str:
    s = _SALARY_FORM_PREFIX_RE.sub("", text.strip()).strip()
    if "、" in s:
        s = s.split("、")[0].strip()
    if "万円" in s:
        # 「21万円〜22万円」のような幅表記は数値にせず文字列で残す
        return s
    if "円" in s:
        m = _YEN_AMOUNT_RE.search(s)
        if m:
            return int(m.group(1).replace(",", ""))
    return _parse_digits(s)


def _night_salary_amount(text: str) -> int | float | str:
    s = text.strip()
    if "、" in s:
        s = s.split("、")[0].strip()
    s = _NIGHT_FORM_RE.sub("", s).strip()
    s = s.replace("円", "").strip()
    # 「〜」は位置を問わず全て落としてから数値判定する
    s = _TILDE_RE.sub("", s).strip()
    if s and _NIGHT_NUMERIC_RE.match(s) and re.search(r"\d", s):
        try:
            return _to_number(s.replace(",", "").replace(" ", ""))
        except ValueError:
            return s
    return s


def normalize_salary_amount(text: Any, form_type: str = "", is_night: bool = False) -> int | float | str:
    """
    給与金額を書き込み用に正規化する。
    数値に落とせるものは数値、幅表記（万円・〜）などは文字列で返す。
    ナイト案件と通常案件で処理順が異なるため、経路を分けている。
    """
    if isinstance(text, bool):
        return 0
    if isinstance(text, (int, float)):
        return text
    if text is None or not str(text).strip():
        return 0
    s = unicodedata.normalize("NFC", str(text))
    if is_night:
        return _night_salary_amount(s)
    return _normal_salary_amount(s)


def normalize_salary(text: Any, form_type: str = "", is_night: bool = False) -> tuple[str, int | float | str]:
    """(給与形態, 金額) を返す。ナイトは金額テキスト内の形態を優先する。"""
    form = form_type or ""
    if is_night:
        form = extract_salary_form(text, form)
    return form, normalize_salary_amount(text, form, is_night)
