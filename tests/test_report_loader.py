# tests/test_report_loader.py
import pytest
from openpyxl import Workbook

from src.report_loader import ReportLoadError, decode_report_bytes, load_report, load_report_rows

HEADER = "掲載プラン,仕事No,一覧PV数,詳細PV数,WEB応募数,TEL応募数,掲載実績開始日,掲載実績終了日,申込開始日,申込終了日"
ROW1 = "Bプラン,1001,\"1,200\",34,2,1,2024/01/01,2024/01/31,2024/01/01,2024/01/31"
ROW2 = "PEXプラン,1002,80,8,0,0,2024/01/05,掲載中,2024/01/05,2024/02/05"


def _write(tmp_path, name, text, encoding):
    path = tmp_path / name
    path.write_bytes(text.encode(encoding))
    return path


@pytest.mark.parametrize("encoding", ["cp932", "utf-8", "utf-8-sig"])
def test_load_report_detects_japanese_encodings(tmp_path, encoding):
    path = _write(tmp_path, "report.csv", "\r\n".join([HEADER, ROW1, ROW2]) + "\r\n", encoding)
    records = load_report(path)
    assert [r.job_no for r in records] == ["1001", "1002"]
    assert records[0].plan_text == "Bプラン"
    assert records[0].list_pv == 1200
    assert records[1].perf_end == "掲載中"
    assert records[1].index == 2


def test_decode_report_bytes_prefers_japanese_reading():
    raw = (HEADER + "\n").encode("cp932")
    text, enc = decode_report_bytes(raw)
    assert text.startswith("掲載プラン")
    assert enc in ("cp932", "shift_jis")


def test_header_only_report_is_empty_batch(tmp_path):
    path = _write(tmp_path, "header.csv", HEADER + "\n", "cp932")
    assert load_report(path) == []


def test_blank_lines_are_skipped(tmp_path):
    path = _write(tmp_path, "blank.csv", "\n".join([HEADER, ROW1, ",,,,,,,,,", ""]), "utf-8")
    assert len(load_report_rows(path)) == 1


def test_missing_or_empty_file_raises(tmp_path):
    with pytest.raises(ReportLoadError):
        load_report(tmp_path / "none.csv")
    empty = tmp_path / "empty.csv"
    empty.write_bytes(b"")
    with pytest.raises(ReportLoadError):
        load_report(empty)


def test_load_report_xlsx(tmp_path):
    wb = Workbook()
    ws = wb.active
    ws.append(HEADER.split(","))
    ws.append(["Aプラン", 2001, 10, 2, 1, 0, "2024/03/01", "2024/03/28", "2024/03/01", "2024/03/28"])
    ws.append([None] * 10)
    path = tmp_path / "report.xlsx"
    wb.save(path)

    records = load_report(path)
    assert len(records) == 1
    assert records[0].job_no == "2001"
    assert records[0].list_pv == 10
    assert records[0].weeks == 4


def test_broken_xlsx_raises(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"not a zip file")
    with pytest.raises(ReportLoadError):
        load_report(path)
