# src/pipeline.py
"""
企業タスクを1件ずつ処理する:
重複チェック → 掲載実績DL → 期間照合・集計 → プレビュー取得 → 分類 → シート転記
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .company_tasks import CompanyTask
from .date_utils import format_date, to_date, year_month
from .download_watcher import DownloadTimeoutError
from .job_classifier import JobCategory, JobCategoryTaxonomy, JobClassifier, REGION_OPTIONS
from .portal_session import PortalError, PortalErrorPage, Session
from .preview_parser import PreviewAttributes
from .record_validator import RawRecord, ValidationFailed, validate
from .report_loader import ReportLoadError, load_report
from .retry import retry_async
from .sheet_layout import Layouts, TrendColumns, UNIQUE_ID_HEADER
from .sheets_store import SheetStore, SheetWriteError
from .text_normalizer import normalize_salary

log = logging.getLogger(__name__)

RUN_FOLDER_FORMAT = "%Y%m%d_%H%M%S"

# タスク単位で失敗として記録する例外（バッチは続行）
TASK_ERRORS = (
    PortalError, PortalErrorPage, DownloadTimeoutError,
    ReportLoadError, SheetWriteError, OSError,
)


@dataclass(frozen=True)
class ClassificationResult:
    plan: str = ""
    job_category_large: str = ""
    job_category_medium: str = ""
    job_category_small: str = ""
    region: str = ""
    salary_type: str = ""
    salary_amount: int | float | str = 0


@dataclass(frozen=True)
class TrendRow:
    """出力シートの1行。"""
    unique_id: str
    company_id: str
    company_name: str
    media: str
    record: RawRecord
    preview: PreviewAttributes
    classification: ClassificationResult
    store_name: str = ""

    def cells(self, layout: TrendColumns) -> dict[str, Any]:
        """列記号 → 値。列が未割り当て、または値が空のものは含めない。"""
        rec = self.record
        cls = self.classification
        ym = year_month(rec.app_start)
        values = [
            (layout.year, ym[0] if ym else None),
            (layout.month, ym[1] if ym else None),
            (layout.region, cls.region),
            (layout.prefecture, self.preview.prefecture),
            (layout.city, self.preview.city),
            (layout.station, self.preview.station),
            (layout.job_category_large, cls.job_category_large),
            (layout.job_category_medium, cls.job_category_medium),
            (layout.job_category_small, cls.job_category_small),
            (layout.salary_type, cls.salary_type),
            (layout.salary_amount, cls.salary_amount or None),
            (layout.plan, cls.plan),
            (layout.list_pv, rec.list_pv),
            (layout.detail_pv, rec.detail_pv),
            (layout.web_application, rec.web_application),
            (layout.tel_application, rec.tel_application),
            (layout.period, rec.weeks),
            (layout.company_id, self.company_id),
            (layout.company_name, self.company_name),
            (layout.store_name, self.store_name),
            (layout.media, self.media),
            (layout.application_start, format_date(rec.app_start)),
            (layout.application_end, format_date(rec.app_end)),
        ]
        out: dict[str, Any] = {}
        for column, value in values:
            if not column or value is None or value == "":
                continue
            out[column] = value
        return out


@dataclass
class FailureEntry:
    company_id: str
    company_name: str
    reason: str
    job_no: str = ""
    timestamp: dt.datetime = field(default_factory=dt.datetime.now)

    def line(self) -> str:
        job = f" 仕事No={self.job_no}" if self.job_no else ""
        return f"[{self.timestamp:%Y-%m-%d %H:%M:%S}] 企業ID={self.company_id} 企業名={self.company_name}{job} 理由={self.reason}"


class FailureLog:
    def __init__(self) -> None:
        self.entries: list[FailureEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def add(self, company_id: str, company_name: str, reason: str, job_no: str = "") -> FailureEntry:
        entry = FailureEntry(company_id, company_name, reason, job_no)
        self.entries.append(entry)
        return entry

    def write(self, folder: str | Path, now: Optional[dt.datetime] = None) -> Optional[Path]:
        if not self.entries:
            return None
        folder = Path(folder)
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"failure_log_{(now or dt.datetime.now()):%Y%m%d_%H%M%S}.txt"
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"失敗件数: {len(self.entries)}\n")
            for e in self.entries:
                f.write(e.line() + "\n")
        log.info("failure log written: %s", path)
        return path


@dataclass
class RunSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    rows_written: int = 0
    failure_log_path: Optional[Path] = None

    def describe(self) -> str:
        return (
            f"total={self.total} succeeded={self.succeeded} failed={self.failed} "
            f"skipped={self.skipped} duplicates={self.duplicates} rows={self.rows_written}"
        )


@dataclass(frozen=True)
class TaskOutcome:
    status: str  # "ok" | "duplicate" | "skipped" | "failed"
    unique_id: str = ""
    rows_written: int = 0
    reason: str = ""
    job_no: str = ""


@dataclass
class Taxonomies:
    night: JobCategoryTaxonomy
    normal: JobCategoryTaxonomy

    @classmethod
    def load(cls, night_path: str, normal_path: str) -> "Taxonomies":
        night = JobCategoryTaxonomy(night_path)
        normal = JobCategoryTaxonomy(normal_path)
        night.load()
        normal.load()
        return cls(night=night, normal=normal)

    def for_category(self, is_night: bool) -> JobCategoryTaxonomy:
        return self.night if is_night else self.normal


class TrendPipeline:
    """
    CompanyTask を順番に処理する（並列化しない）。
    ブラウザ操作は portal（PortalClient）に、書き込みは store（SheetStore）に委ねる。
    """

    def __init__(
        self,
        config: Any,
        portal: Any,
        store: SheetStore,
        classifier: JobClassifier,
        taxonomies: Taxonomies,
        layouts: Layouts | None = None,
        report_loader: Callable[[Path], list[RawRecord]] = load_report,
        now: Callable[[], dt.datetime] = dt.datetime.now,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.portal = portal
        self.store = store
        self.classifier = classifier
        self.taxonomies = taxonomies
        self.layouts = layouts or Layouts()
        self.report_loader = report_loader
        self.now = now
        self.sleep = sleep
        self.session: Optional[Session] = None
        self.failures = FailureLog()
        self._unique_columns: dict[str, Optional[str]] = {}
        self._current_job_no = ""

    # ===== 実行 =====
    def run_folder(self) -> Path:
        return Path(self.config.download_dir) / self.now().strftime(RUN_FOLDER_FORMAT)

    async def run(self, tasks: Iterable[CompanyTask], folder: str | Path | None = None) -> RunSummary:
        tasks = list(tasks)
        folder = Path(folder) if folder else self.run_folder()
        summary = RunSummary(total=len(tasks))
        log.info("処理開始: %d件 (保存先: %s)", len(tasks), folder)
        try:
            for i, task in enumerate(tasks, start=1):
                log.info("[%d/%d] 企業ID=%s %s (%s) %s〜%s",
                         i, len(tasks), task.company_id, task.company_name, task.category.value,
                         task.period_start_text, task.period_end_text)
                outcome = await self.process_task(task, folder)
                summary.rows_written += outcome.rows_written
                if outcome.status == "ok":
                    summary.succeeded += 1
                elif outcome.status == "duplicate":
                    summary.duplicates += 1
                elif outcome.status == "skipped":
                    summary.skipped += 1
                else:
                    summary.failed += 1
        finally:
            summary.failure_log_path = self.failures.write(folder, self.now())
        log.info("処理完了: %s", summary.describe())
        return summary

    async def _ensure_session(self) -> Session:
        if self.session is None:
            self.session = await self.portal.start()
        return self.session

    def _fail(self, task: CompanyTask, reason: str, job_no: str = "") -> TaskOutcome:
        log.error("失敗: 企業ID=%s 仕事No=%s 理由=%s", task.company_id, job_no or "-", reason)
        self.failures.add(task.company_id, task.company_name, reason, job_no)
        return TaskOutcome("failed", task.unique_id, reason=reason, job_no=job_no)

    async def process_task(self, task: CompanyTask, folder: str | Path) -> TaskOutcome:
        if not task.company_id:
            return self._fail(task, "企業IDが空です")
        if not task.period_start_text or not task.period_end_text:
            return self._fail(task, f"申込期間が日付として読めません: {task.period_start!r}〜{task.period_end!r}")

        spreadsheet_id = self.config.spreadsheet_id_for(task.is_night)
        unique_id = task.unique_id
        self._current_job_no = ""
        written = 0
        try:
            unique_col = self.unique_id_column(spreadsheet_id)
            if unique_col and self.store.find_value_in_column(
                spreadsheet_id, self.config.sheet_name, unique_col, unique_id
            ):
                log.info("重複のためスキップ: %s", unique_id)
                return TaskOutcome("duplicate", unique_id)

            session = await self._ensure_session()
            report_path = await retry_async(
                lambda: self.portal.fetch_report(
                    session, task.company_id, task.period_start_text, task.period_end_text, folder
                ),
                max_attempts=max(1, int(self.config.max_retries)),
                base_delay=self.config.retry_delay_sec,
                backoff="linear",
                retry_on=(PortalError, DownloadTimeoutError),
                name=f"report download {task.company_id}",
                sleep=self.sleep,
            )
            records = self.report_loader(report_path)
            try:
                outcome = validate(records, (task.period_start, task.period_end))
            except ValidationFailed as e:
                log.info("検証NGのためスキップ: %s (%s)", unique_id, e)
                return TaskOutcome("skipped", unique_id, reason=str(e))

            targets = list(outcome.matched_records)
            aggregate = outcome.aggregate()
            if aggregate is not None:
                targets.append(aggregate)

            layout = self.layouts.for_category(task.is_night)
            for record in targets:
                self._current_job_no = record.job_no
                preview = await self.fetch_preview(session, record, task, folder)
                classification = await self.classify(record, preview, task)
                row = TrendRow(
                    unique_id=unique_id,
                    company_id=task.company_id,
                    company_name=task.company_name,
                    media="" if task.is_night else task.source_site,
                    record=self._with_task_period(record, task),
                    preview=preview,
                    classification=classification,
                )
                self.write_row(row, spreadsheet_id, layout, unique_col)
                written += 1
        except TASK_ERRORS as e:
            outcome = self._fail(task, f"{type(e).__name__}: {e}", self._current_job_no)
            return TaskOutcome(outcome.status, unique_id, written, outcome.reason, outcome.job_no)
        except Exception as e:
            log.exception("想定外のエラー: 企業ID=%s", task.company_id)
            outcome = self._fail(task, f"{type(e).__name__}: {e}", self._current_job_no)
            return TaskOutcome(outcome.status, unique_id, written, outcome.reason, outcome.job_no)
        log.info("完了: %s (%d行)", unique_id, written)
        return TaskOutcome("ok", unique_id, written)

    def unique_id_column(self, spreadsheet_id: str) -> Optional[str]:
        if spreadsheet_id not in self._unique_columns:
            col = self.store.find_column_by_name(spreadsheet_id, self.config.sheet_name, UNIQUE_ID_HEADER)
            if not col:
                log.warning("ユニークID列が見つかりません（重複チェックなしで続行）: %s", spreadsheet_id)
            self._unique_columns[spreadsheet_id] = col
        return self._unique_columns[spreadsheet_id]

    @staticmethod
    def _with_task_period(record: RawRecord, task: CompanyTask) -> RawRecord:
        """申込日がレポートに無い行は入力シートの期間で補う。"""
        if to_date(record.app_start) and to_date(record.app_end):
            return record
        return replace(
            record,
            app_start=record.app_start if to_date(record.app_start) else task.period_start,
            app_end=record.app_end if to_date(record.app_end) else task.period_end,
        )

    # ===== プレビュー =====
    async def fetch_preview(self, session: Session, record: RawRecord, task: CompanyTask, folder: str | Path) -> PreviewAttributes:
        if not record.job_no:
            log.info("仕事Noが無いためプレビューを省略します (row=%s)", record.index)
            return PreviewAttributes()
        await self.portal.open_job_preview(session, record.job_no, task.company_id)
        try:
            await self.portal.save_preview_screenshot(
                session, folder, record.job_no, task.company_id,
                task.period_start_text, task.period_end_text,
            )
            return await self.portal.scrape_preview(session)
        finally:
            await self.portal.close_preview(session)

    # ===== 分類 =====
    async def classify(self, record: RawRecord, preview: PreviewAttributes, task: CompanyTask) -> ClassificationResult:
        is_night = task.is_night
        plan = await self.classifier.classify_plan(record.plan_text) or ""
        region = await self.classifier.classify_region(preview.prefecture, REGION_OPTIONS) or ""

        raw_job = preview.job_category_raw_text or record.job_category_text
        category = self.classifier.classify_job_category(raw_job, self.taxonomies.for_category(is_night), is_night) if raw_job else None
        category = category or JobCategory("")

        salary_form, salary_amount = "", 0
        if preview.salary_type or preview.salary_raw_amount:
            salary_form, salary_amount = normalize_salary(preview.salary_raw_amount, preview.salary_type, is_night)
        elif record.salary_text:
            salary_form, salary_amount = normalize_salary(record.salary_text, "", is_night)

        return ClassificationResult(
            plan=plan,
            job_category_large=category.large,
            job_category_medium=category.medium,
            job_category_small=category.small,
            region=region,
            salary_type=salary_form,
            salary_amount=salary_amount,
        )

    # ===== 書き込み =====
    def write_row(self, row: TrendRow, spreadsheet_id: str, layout: TrendColumns, unique_col: Optional[str] = None) -> int:
        """
        アンカー列の最初の空行に1セルずつ書き込む。ユニークIDは最後に書く
        （途中で失敗した行は重複扱いにならない）。ロールバックはしない。
        """
        sheet = self.config.sheet_name
        target = self.store.find_first_empty_row(spreadsheet_id, sheet, layout.anchor or "A")
        for column, value in row.cells(layout).items():
            self.store.set_cell_value(spreadsheet_id, sheet, column, target, value)
        if unique_col:
            self.store.set_cell_value(spreadsheet_id, sheet, unique_col, target, row.unique_id)
        log.info("転記: 行%d %s", target, row.unique_id)
        return target
