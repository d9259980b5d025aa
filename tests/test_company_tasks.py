# tests/test_company_tasks.py
import datetime as dt

import pytest
from openpyxl import Workbook

from src.company_tasks import Category, CompanyTask, make_unique_id, read_company_tasks
from src.sheet_layout import InputColumns


def _input_book(tmp_path, rows):
    wb = Workbook()
    ws = wb.active
    ws.append(["企業ID", "企業名", "区分", "媒体", "開始日", "終了日"])
    for r in rows:
        ws.append(r)
    path = tmp_path / "input.xlsx"
    wb.save(path)
    return str(path)


def test_make_unique_id_formats_dates():
    assert make_unique_id("1001", "Acme", dt.date(2024, 1, 1), "2024-1-31") == "1001_Acme_2024/01/01_2024/01/31"


@pytest.mark.parametrize(
    "label,expected",
    [("ナイト", Category.NIGHT), (" Night ", Category.NIGHT), ("通常", Category.NORMAL), (None, Category.NORMAL)],
)
def test_category_from_label(label, expected):
    assert Category.from_label(label) is expected


def test_read_company_tasks(tmp_path):
    path = _input_book(tmp_path, [
        [1001, "Acme", "ナイト", "", dt.date(2024, 1, 1), dt.date(2024, 1, 31)],
        [None, "no id", "通常", "", None, None],
        ["2002", " Beta ", "通常", "バイトル", "2024/02/01", 45322],
    ])
    tasks = read_company_tasks(path)

    assert len(tasks) == 2
    first, second = tasks
    assert first.company_id == "1001"
    assert first.is_night
    assert first.unique_id == "1001_Acme_2024/01/01_2024/01/31"
    assert first.row == 2
    assert second.company_name == "Beta"
    assert second.source_site == "バイトル"
    assert second.period_start == dt.date(2024, 2, 1)
    assert second.period_end == dt.date(2024, 1, 31)
    assert second.row == 4


def test_read_company_tasks_start_row_and_limit(tmp_path):
    path = _input_book(tmp_path, [
        [1, "a", "通常", "", "2024/01/01", "2024/01/31"],
        [2, "b", "通常", "", "2024/01/01", "2024/01/31"],
        [3, "c", "通常", "", "2024/01/01", "2024/01/31"],
    ])
    tasks = read_company_tasks(path, start_row=3, limit=1)
    assert [t.company_id for t in tasks] == ["2"]


def test_read_company_tasks_custom_columns(tmp_path):
    wb = Workbook()
    ws = wb.active
    ws.append(["企業名", "企業ID", "開始日", "終了日"])
    ws.append(["Acme", 1001, "2024/01/01", "2024/01/31"])
    path = tmp_path / "custom.xlsx"
    wb.save(path)

    cols = InputColumns(company_id="B", company_name="A", category="", site="", start_date="C", end_date="D")
    (task,) = read_company_tasks(str(path), cols)
    assert task.company_id == "1001"
    assert task.category is Category.NORMAL
    assert task.period_end_text == "2024/01/31"


def test_unreadable_period_is_kept_as_is():
    task = CompanyTask("1", "a", Category.NORMAL, "未定", "2024/01/31")
    assert task.period_start_text == ""
    assert task.period_end_text == "2024/01/31"
