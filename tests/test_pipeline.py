# tests/test_pipeline.py
import datetime as dt
from pathlib import Path

import pytest

from src.company_tasks import Category, CompanyTask
from src.config import Config
from src.job_classifier import JobCategory, JobCategoryTaxonomy, JobClassifier
from src.pipeline import ClassificationResult, FailureLog, Taxonomies, TrendPipeline, TrendRow
from src.portal_session import PortalError, PortalErrorPage, Session
from src.preview_parser import PreviewAttributes
from src.record_validator import RawRecord
from src.sheet_layout import NIGHT_COLUMNS, NORMAL_COLUMNS
from src.sheets_store import SheetStore

HALL = JobCategory("飲食・フード", "ホール", "ホールスタッフ")
CAST = JobCategory("ナイトワーク", "キャバクラ", "キャスト")
UNIQUE_COL = "X"


# ---------------------------------------------------------------- fakes
class FakeStore(SheetStore):
    def __init__(self, with_unique_column=True):
        self.with_unique_column = with_unique_column
        self.cells = {}  # (sid, column, row) -> value
        self.writes = []

    def find_column_by_name(self, spreadsheet_id, sheet_name, header):
        return UNIQUE_COL if self.with_unique_column else None

    def find_value_in_column(self, spreadsheet_id, sheet_name, column, value, start_row=2):
        return any(
            sid == spreadsheet_id and col == column and row >= start_row and v == value
            for (sid, col, row), v in self.cells.items()
        )

    def find_first_empty_row(self, spreadsheet_id, sheet_name, column="A", start_row=2):
        rows = [row for (sid, col, row) in self.cells if sid == spreadsheet_id and col == column]
        return max(rows + [start_row - 1]) + 1

    def set_cell_value(self, spreadsheet_id, sheet_name, column, row, value):
        self.cells[(spreadsheet_id, column, row)] = value
        self.writes.append((spreadsheet_id, column, row, value))

    def row(self, spreadsheet_id, row):
        return {col: v for (sid, col, r), v in self.cells.items() if sid == spreadsheet_id and r == row}


class FakePortal:
    def __init__(self, preview=None, fetch_errors=None):
        self.preview = preview or PreviewAttributes()
        self.fetch_errors = list(fetch_errors or [])
        self.fetches = []
        self.opened = []
        self.closed = 0
        self.started = 0

    async def start(self):
        self.started += 1
        return Session(page=object())

    async def fetch_report(self, session, company_id, start, end, folder):
        self.fetches.append((company_id, start, end))
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return Path(folder) / f"{company_id}.csv"

    async def open_job_preview(self, session, job_no, company_id=""):
        self.opened.append((job_no, company_id))

    async def save_preview_screenshot(self, session, folder, job_no, company_id, start, end):
        return None

    async def scrape_preview(self, session, preview=None):
        return self.preview

    async def close_preview(self, session):
        self.closed += 1


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _rec(job_no, perf_start, perf_end, app_start, app_end, list_pv=0, plan="Bプラン"):
    return RawRecord(
        perf_start=perf_start, perf_end=perf_end,
        app_start=app_start, app_end=app_end,
        list_pv=list_pv, detail_pv=1, web_application=1, tel_application=0,
        plan_text=plan, job_no=job_no,
    )


REPORT = [
    _rec("555", "2024/01/01", "2024/01/31", "2024/01/01", "2024/01/31", list_pv=100),
    _rec("556", "2024/01/03", "2024/01/20", "2024/01/01", "2024/01/20", list_pv=10),
    _rec("557", "2024/01/10", "掲載中", "2024/01/09", "2024/01/31", list_pv=5),
]

PREVIEW = PreviewAttributes(
    prefecture="東京都", city="新宿区", station="新宿",
    job_category_raw_text="ホールスタッフ", salary_type="時給", salary_raw_amount=1200,
)


def _task(cid="1001", name="Acme", category=Category.NORMAL, site="バイトル"):
    return CompanyTask(cid, name, category, dt.date(2024, 1, 1), dt.date(2024, 1, 31), source_site=site)


def _pipeline(tmp_path, portal, store, report=REPORT, sleep=None):
    config = Config(
        spreadsheet_id_night="night", spreadsheet_id_normal="normal",
        max_retries=3, retry_delay_ms=1000, download_dir=str(tmp_path),
    )
    taxonomies = Taxonomies(
        night=JobCategoryTaxonomy.from_entries([CAST]),
        normal=JobCategoryTaxonomy.from_entries([HALL]),
    )
    return TrendPipeline(
        config, portal, store, JobClassifier(None), taxonomies,
        report_loader=lambda path: list(report),
        now=lambda: dt.datetime(2024, 2, 1, 9, 0, 0),
        sleep=sleep or Sleeps(),
    )


# ---------------------------------------------------------------- tests
@pytest.mark.asyncio
async def test_normal_task_writes_matched_and_aggregate_rows(tmp_path):
    store = FakeStore()
    portal = FakePortal(PREVIEW)
    pipeline = _pipeline(tmp_path, portal, store)

    summary = await pipeline.run([_task()], folder=tmp_path)

    assert summary.succeeded == 1
    assert summary.rows_written == 2
    assert summary.failure_log_path is None
    assert [j for j, _ in portal.opened] == ["555", "556"]
    assert portal.closed == 2

    first = store.row("normal", 2)
    assert first["A"] == 2024
    assert first["B"] == 1
    assert first["C"] == "関東地方"
    assert (first["D"], first["E"], first["F"]) == ("東京都", "新宿区", "新宿")
    assert (first["G"], first["H"], first["I"]) == ("飲食・フード", "ホール", "ホールスタッフ")
    assert (first["J"], first["K"]) == ("時給", 1200)
    assert first["L"] == "Bプラン"
    assert first["M"] == 100
    assert first["Q"] == 5
    assert (first["R"], first["S"], first["U"]) == ("1001", "Acme", "バイトル")
    assert (first["V"], first["W"]) == ("2024/01/01", "2024/01/31")
    assert first[UNIQUE_COL] == "1001_Acme_2024/01/01_2024/01/31"
    assert "T" not in first

    aggregate = store.row("normal", 3)
    assert aggregate["M"] == 15
    assert aggregate["N"] == 2
    assert (aggregate["V"], aggregate["W"]) == ("2024/01/01", "2024/01/31")
    assert aggregate[UNIQUE_COL] == "1001_Acme_2024/01/01_2024/01/31"


@pytest.mark.asyncio
async def test_unique_id_is_written_last(tmp_path):
    store = FakeStore()
    await _pipeline(tmp_path, FakePortal(PREVIEW), store, report=REPORT[:1]).run([_task()], folder=tmp_path)
    assert store.writes[-1][1] == UNIQUE_COL
    assert [w[1] for w in store.writes].count(UNIQUE_COL) == 1


@pytest.mark.asyncio
async def test_duplicate_task_is_skipped_without_browser(tmp_path):
    store = FakeStore()
    store.set_cell_value("normal", "Sheet1", UNIQUE_COL, 2, "1001_Acme_2024/01/01_2024/01/31")
    store.writes.clear()
    portal = FakePortal(PREVIEW)

    summary = await _pipeline(tmp_path, portal, store).run([_task()], folder=tmp_path)

    assert summary.duplicates == 1
    assert summary.rows_written == 0
    assert portal.fetches == []
    assert portal.started == 0
    assert store.writes == []


@pytest.mark.asyncio
async def test_second_run_is_idempotent(tmp_path):
    store = FakeStore()
    portal = FakePortal(PREVIEW)
    pipeline = _pipeline(tmp_path, portal, store)

    await pipeline.run([_task()], folder=tmp_path)
    written = len(store.writes)
    summary = await pipeline.run([_task()], folder=tmp_path)

    assert summary.duplicates == 1
    assert len(store.writes) == written
    assert len(portal.fetches) == 1


@pytest.mark.asyncio
async def test_same_company_different_period_is_not_duplicate(tmp_path):
    store = FakeStore()
    store.set_cell_value("normal", "Sheet1", UNIQUE_COL, 2, "1001_Acme_2023/12/01_2023/12/31")
    summary = await _pipeline(tmp_path, FakePortal(PREVIEW), store, report=REPORT[:1]).run([_task()], folder=tmp_path)
    assert summary.succeeded == 1


@pytest.mark.asyncio
async def test_night_task_uses_night_sheet_and_layout(tmp_path):
    store = FakeStore()
    preview = PreviewAttributes(
        prefecture="大阪府", city="大阪市", station="梅田",
        job_category_raw_text="[ナイト]①キャスト", salary_type="", salary_raw_amount="時給3,000円～",
    )
    task = _task(cid="2002", name="Club", category=Category.NIGHT)
    await _pipeline(tmp_path, FakePortal(preview), store, report=REPORT[:1]).run([task], folder=tmp_path)

    assert store.row("normal", 2) == {}
    row = store.row("night", 2)
    assert row[NIGHT_COLUMNS.plan] == "Bプラン"
    assert row[NIGHT_COLUMNS.region] == "近畿地方"
    assert row[NIGHT_COLUMNS.job_category_small] == "キャスト"
    assert row[NIGHT_COLUMNS.salary_type] == "時給"
    assert row[NIGHT_COLUMNS.salary_amount] == 3000
    assert "バイトル" not in row.values()
    assert row[UNIQUE_COL] == "2002_Club_2024/01/01_2024/01/31"


@pytest.mark.asyncio
async def test_report_fetch_is_retried_with_linear_backoff(tmp_path):
    store = FakeStore()
    portal = FakePortal(PREVIEW, fetch_errors=[PortalError("timeout"), PortalError("timeout")])
    sleep = Sleeps()
    summary = await _pipeline(tmp_path, portal, store, report=REPORT[:1], sleep=sleep).run([_task()], folder=tmp_path)
    assert summary.succeeded == 1
    assert len(portal.fetches) == 3
    assert sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_failed_task_is_logged_and_batch_continues(tmp_path):
    store = FakeStore()
    portal = FakePortal(PREVIEW, fetch_errors=[PortalErrorPage("エラーページ")])
    tasks = [_task(), _task(cid="1002", name="Beta")]

    summary = await _pipeline(tmp_path, portal, store, report=REPORT[:1]).run(tasks, folder=tmp_path)

    assert summary.failed == 1
    assert summary.succeeded == 1
    assert store.row("normal", 2)["R"] == "1002"
    log_path = summary.failure_log_path
    assert log_path == tmp_path / "failure_log_20240201_090000.txt"
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "失敗件数: 1"
    assert "企業ID=1001" in lines[1]
    assert "PortalErrorPage" in lines[1]


@pytest.mark.asyncio
async def test_empty_report_is_skipped(tmp_path):
    store = FakeStore()
    portal = FakePortal(PREVIEW)
    summary = await _pipeline(tmp_path, portal, store, report=[]).run([_task()], folder=tmp_path)
    assert summary.skipped == 1
    assert store.writes == []
    assert portal.opened == []


@pytest.mark.asyncio
async def test_invalid_period_fails_before_browser(tmp_path):
    portal = FakePortal(PREVIEW)
    task = CompanyTask("1001", "Acme", Category.NORMAL, "未定", dt.date(2024, 1, 31))
    summary = await _pipeline(tmp_path, portal, FakeStore()).run([task], folder=tmp_path)
    assert summary.failed == 1
    assert portal.started == 0


@pytest.mark.asyncio
async def test_missing_unique_column_still_writes(tmp_path):
    store = FakeStore(with_unique_column=False)
    summary = await _pipeline(tmp_path, FakePortal(PREVIEW), store, report=REPORT[:1]).run([_task()], folder=tmp_path)
    assert summary.rows_written == 1
    assert UNIQUE_COL not in store.row("normal", 2)


@pytest.mark.asyncio
async def test_record_without_job_no_skips_preview(tmp_path):
    report = [_rec("", "2024/01/01", "2024/01/31", "2024/01/01", "2024/01/31")]
    portal = FakePortal(PREVIEW)
    store = FakeStore()
    await _pipeline(tmp_path, portal, store, report=report).run([_task()], folder=tmp_path)
    assert portal.opened == []
    row = store.row("normal", 2)
    assert "D" not in row
    assert row["L"] == "Bプラン"


def test_trend_row_cells_skip_empty_values():
    rec = _rec("1", "2024/03/01", "2024/03/28", "2024/03/01", "2024/03/28")
    row = TrendRow(
        unique_id="u", company_id="1", company_name="n", media="",
        record=rec, preview=PreviewAttributes(), classification=ClassificationResult(),
    )
    cells = row.cells(NORMAL_COLUMNS)
    assert cells["A"] == 2024 and cells["B"] == 3
    assert cells["Q"] == 4
    assert "C" not in cells
    assert "K" not in cells
    assert "U" not in cells


def test_failure_log_not_written_when_empty(tmp_path):
    assert FailureLog().write(tmp_path) is None
