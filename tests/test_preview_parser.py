# tests/test_preview_parser.py
import pytest

from src.preview_parser import (
    PreviewAttributes,
    detect_salary_form,
    is_work_location_text,
    parse_salary_text,
    parse_work_location,
    pick_salary_text,
)


def test_parse_work_location_across_items():
    texts = [
        "[応募受付先名]カフェ新宿店",
        "[勤務地]東京都新宿区西新宿1-1-1",
        "[勤務地・面接地]JR山手線 新宿駅 徒歩5分",
    ]
    assert parse_work_location(texts) == ("東京都", "新宿区", "新宿")


def test_parse_work_location_strips_parenthesised_notes():
    texts = ["[勤務地]大阪府大阪市北区 梅田駅(徒歩3分)"]
    assert parse_work_location(texts) == ("大阪府", "大阪市", "梅田")


def test_parse_work_location_ignores_unlabelled_items():
    assert parse_work_location(["東京都渋谷区 渋谷駅"]) == ("", "", "")
    assert parse_work_location([]) == ("", "", "")


def test_is_work_location_text():
    assert is_work_location_text("[勤務地・面接地]横浜市")
    assert not is_work_location_text("勤務地なし")


@pytest.mark.parametrize(
    "text,expected",
    [
        ("時給1,200円", ("時給", 1200)),
        ("日給10000", ("日給", 10000)),
        ("月給21万円～22万円", ("月給", "月給21万円～22万円")),
        ("【給与】時給1,200円～", ("時給", "時給1,200円～")),
        ("", ("時給", 0)),
        ("応相談", ("時給", 0)),
    ],
)
def test_parse_salary_text(text, expected):
    assert parse_salary_text(text) == expected


def test_detect_salary_form_priority():
    assert detect_salary_form("月収30万円以上（月給25万円）") == "月収"
    assert detect_salary_form("日給1万円 or 時給1,200円") == "時給"
    assert detect_salary_form("年俸300万円") == "年俸"
    assert detect_salary_form("") == "時給"


def test_pick_salary_text():
    assert pick_salary_text(["", "時給", "時給1,100円"]) == "時給1,100円"
    assert pick_salary_text(["給与", "月給"]) == "月給"
    assert pick_salary_text([]) is None


def test_preview_attributes_defaults():
    attrs = PreviewAttributes()
    assert attrs.salary_raw_amount == 0
    assert (attrs.prefecture, attrs.city, attrs.station) == ("", "", "")
    assert not hasattr(attrs, "has_location")
