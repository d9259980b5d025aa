# src/portal_session.py
"""
バイトル管理画面（agent.baitoru.com）の操作。

ログイン → TOP → 企業ID検索 → 選択 → 掲載実績DL → 原稿検索 → プレビュー → 閉じる
の順に状態を進める。現在のページと状態は Session に持たせ、各操作に明示的に渡す。
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import (
    async_playwright, Browser, BrowserContext, Page,
    TimeoutError as PlaywrightTimeoutError,
)

from .download_watcher import DownloadWatcher, archive_report
from .preview_parser import (
    PreviewAttributes, is_work_location_text, parse_salary_text,
    parse_work_location, pick_salary_text,
)
from .retry import retry_async

log = logging.getLogger(__name__)

PERFORMANCE_URL = os.getenv("BAITORU_PERFORMANCE_URL", "https://agent.baitoru.com/publication/result?mode=1")
JOB_SEARCH_URL = os.getenv("BAITORU_JOB_SEARCH_URL", "https://agent.baitoru.com/job?mode=1")
ERROR_URL_MARKER = "/error"
PREVIEW_URL_MARKERS = ("/pv", "preview")

TYPE_DELAY_MS = 50
SELECT_NAV_TIMEOUT_MS = int(os.getenv("SELECT_NAV_TIMEOUT_MS", "10000"))
SELECT_RECHECK_DELAY_SEC = 2.0
PREVIEW_OPEN_TIMEOUT_MS = 15000
JOB_SEARCH_MAX_ATTEMPTS = 5
JOB_SEARCH_RETRY_DELAY_SEC = 3.0
SCRAPE_MAX_ATTEMPTS = 3
SCRAPE_RETRY_DELAY_SEC = 2.0
SCREENSHOT_DIR_NAME = "スクリーンショット"

_GET_TEXTS_JS = "els => els.map(e => (e.textContent || '').trim())"
_SALARY_DD_JS = """els => els.map(dd => {
  const li = dd.querySelector('li');
  return ((li || dd).textContent || '').trim();
})"""
_SALARY_PAGE_JS = """() => {
  const out = [];
  for (const el of document.querySelectorAll('td, th, dd, span, div, p, li')) {
    const t = (el.textContent || '').trim();
    if (t.length < 200 && /時給|日給|月給|月収/.test(t)) out.push(t);
  }
  return out;
}"""
_SALARY_DT_XPATH = (
    "xpath=//dt[contains(., '給与') or contains(., '時給') or contains(., '日給') or contains(., '月給')]"
    "/ancestor::dl[1]/dd"
)


class SessionState(enum.Enum):
    LOGGED_OUT = "logged_out"
    TOP_PAGE = "top_page"
    COMPANY_SEARCHED = "company_searched"
    COMPANY_SELECTED = "company_selected"
    REPORT_DOWNLOADED = "report_downloaded"
    JOB_SEARCH_PAGE = "job_search_page"
    PREVIEW_OPEN = "preview_open"
    PREVIEW_CLOSED = "preview_closed"


_CHAIN = list(SessionState)
# 直列の順序以外に許す遷移
_EXTRA_EDGES = {
    (SessionState.COMPANY_SELECTED, SessionState.JOB_SEARCH_PAGE),  # DL済みの再検索
    (SessionState.PREVIEW_CLOSED, SessionState.JOB_SEARCH_PAGE),  # 同じ企業の次の仕事No
    (SessionState.PREVIEW_OPEN, SessionState.JOB_SEARCH_PAGE),
}


class PortalError(Exception):
    """画面操作の失敗（リトライ対象）。"""


class PortalErrorPage(Exception):
    """エラーページへ遷移した（そのタスクは中断、リトライしない）。"""


class InvalidTransition(Exception):
    pass


class EmptyAttribute(PortalError):
    """プレビューから値が取れなかった。"""


@dataclass
class Session:
    """ブラウザ操作の現在地。PortalClient の各操作はこれを受け取って更新する。"""
    page: Any = None
    state: SessionState = SessionState.LOGGED_OUT
    company_id: str = ""
    report_path: Optional[Path] = None
    preview: Any = None
    soft_failures: list[str] = field(default_factory=list)
    history: list[SessionState] = field(default_factory=list)

    @property
    def url(self) -> str:
        return getattr(self.page, "url", "") or ""

    def can_transition(self, new_state: SessionState) -> bool:
        if new_state is self.state:
            return True
        if new_state is SessionState.LOGGED_OUT:
            return True
        if new_state is SessionState.TOP_PAGE:
            return True
        if (self.state, new_state) in _EXTRA_EDGES:
            return True
        return _CHAIN.index(new_state) == _CHAIN.index(self.state) + 1

    def transition(self, new_state: SessionState) -> None:
        if not self.can_transition(new_state):
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        if new_state is not self.state:
            self.history.append(new_state)
            log.debug("session: %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def check_error_page(self, page: Any = None, what: str = "") -> None:
        url = getattr(page or self.page, "url", "") or ""
        if ERROR_URL_MARKER in url:
            raise PortalErrorPage(f"エラーページに遷移しました{('（' + what + '）') if what else ''}: {url}")


@dataclass(frozen=True)
class Selectors:
    username_input: str = "#loginId"
    password_input: str = "#password"
    login_button: str = "button[type=submit]"
    top_page_link: str = "a[href$='/top']"
    company_id_input: str = "input[name='companyId']"
    company_search_button: str = "#searchButton"
    select_button: str = "table tbody tr:first-child .selectButton"
    perf_start_input: str = "input[name='startDate']"
    perf_end_input: str = "input[name='endDate']"
    download_button: str = "#csvDownload"
    job_no_input: str = "input[name='jobNo']"
    job_search_button: str = "#jobSearchButton"
    first_preview_button: str = "table tbody tr:first-child .previewButton"
    preview_frame: str = "#list-preview-frame"
    job_type_in_frame: str = "div.pt02 > div.pt02b > p"
    salary_in_frame: str = "div.pt03 dl dd li"
    work_location_items: tuple[str, ...] = (
        "body > div > article > div > div.bg01 > div > div.pt02 > div.pt02b > ul.ul02 > li",
        "body > div > article > div > div.bg01 > div > div.pt12 > div.pt12b > dl > dd > ul > li",
        "body > div > article > div > div.bg01 > div > div li",
    )

    @classmethod
    def from_dict(cls, data: dict) -> "Selectors":
        login = data.get("login", {}) or {}
        search = data.get("search", {}) or {}
        perf = data.get("performance", {}) or {}
        job = data.get("jobSearch", {}) or {}
        pv = data.get("preview", {}) or {}
        d = cls()
        items = pv.get("workLocationItems")
        return cls(
            username_input=login.get("usernameInput", d.username_input),
            password_input=login.get("passwordInput", d.password_input),
            login_button=login.get("loginButton", d.login_button),
            top_page_link=login.get("topPageButton", d.top_page_link),
            company_id_input=search.get("companyIdInput", d.company_id_input),
            company_search_button=search.get("searchButton", d.company_search_button),
            select_button=search.get("selectButton", d.select_button),
            perf_start_input=perf.get("startDateInput", d.perf_start_input),
            perf_end_input=perf.get("endDateInput", d.perf_end_input),
            download_button=perf.get("downloadButton", d.download_button),
            job_no_input=job.get("jobNoInput", d.job_no_input),
            job_search_button=job.get("searchButton", d.job_search_button),
            first_preview_button=job.get("firstPreviewButton", d.first_preview_button),
            preview_frame=pv.get("jobListPreview", d.preview_frame),
            job_type_in_frame=pv.get("jobTypeInIframeSelector", d.job_type_in_frame),
            salary_in_frame=pv.get("salaryInIframeSelector", d.salary_in_frame),
            work_location_items=tuple(items) if items else d.work_location_items,
        )


def load_selectors(path: Optional[str]) -> Selectors:
    if not path or not os.path.exists(path):
        log.warning("selectors file not found, using defaults: %s", path)
        return Selectors()
    with open(path, "r", encoding="utf-8") as f:
        return Selectors.from_dict(json.load(f))


def is_preview_url(url: str) -> bool:
    return any(m in (url or "") for m in PREVIEW_URL_MARKERS)


class PortalClient:
    def __init__(
        self,
        config: Any,
        selectors: Selectors | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        watcher_factory: Callable[..., DownloadWatcher] = DownloadWatcher,
    ) -> None:
        self.config = config
        self.selectors = selectors or Selectors()
        self.sleep = sleep
        self.watcher_factory = watcher_factory
        self.selector_timeout = int(getattr(config, "browser_timeout_ms", 30000))
        self.page_timeout = int(getattr(config, "page_timeout_ms", 60000))
        self._pw = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None

    # ===== ブラウザ =====
    async def start(self) -> Session:
        if not self.browser:
            self._pw = await async_playwright().start()
            self.browser = await self._pw.chromium.launch(
                headless=bool(getattr(self.config, "headless", True)),
                args=[
                    "--no-sandbox",
                    "--disable-dev-shm-usage",  # /dev/shm不足でのクラッシュ回避
                ],
            )
            self.context = await self.browser.new_context(locale="ja-JP", accept_downloads=True)
        page: Page = await self.context.new_page()
        page.set_default_timeout(self.selector_timeout)
        return Session(page=page)

    async def close(self):
        try:
            if self.context:
                await self.context.close()
        finally:
            try:
                if self.browser:
                    await self.browser.close()
            finally:
                if self._pw:
                    await self._pw.stop()
        self._pw = None
        self.browser = None
        self.context = None

    # ===== 入力ヘルパ =====
    async def _wait_visible(self, page: Any, selector: str, timeout: int | None = None) -> None:
        await page.wait_for_selector(selector, state="visible", timeout=timeout or self.selector_timeout)

    async def _fill(self, page: Any, selector: str, value: str) -> None:
        """トリプルクリックで既存値を選択→削除→1文字ずつ入力"""
        await self._wait_visible(page, selector)
        await page.click(selector, click_count=3)
        await page.keyboard.press("Backspace")
        await page.type(selector, value, delay=TYPE_DELAY_MS)

    async def _goto(self, page: Any, url: str) -> None:
        await page.goto(url, wait_until="networkidle", timeout=self.page_timeout)
        await self.sleep(1.0)

    # ===== 状態遷移 =====
    async def login(self, session: Session) -> None:
        page = session.page
        sel = self.selectors
        log.info("ログイン: %s", self.config.login_url)
        await self._goto(page, self.config.login_url)
        await self._fill(page, sel.username_input, self.config.username)
        await self._fill(page, sel.password_input, self.config.password)
        await self._wait_visible(page, sel.login_button)
        await page.click(sel.login_button)
        try:
            await page.wait_for_load_state("networkidle", timeout=self.page_timeout)
        except PlaywrightTimeoutError:
            log.warning("ログイン後の読み込み待機がタイムアウトしました（続行）")
        session.check_error_page(what="ログイン")
        session.transition(SessionState.TOP_PAGE)
        await self.go_to_top(session)

    async def go_to_top(self, session: Session) -> None:
        page = session.page
        if "/top" not in session.url:
            try:
                link = await page.query_selector(self.selectors.top_page_link)
                if link:
                    await link.click()
                    await page.wait_for_load_state("networkidle", timeout=self.page_timeout)
                else:
                    await self._goto(page, self.config.top_url)
            except PlaywrightTimeoutError:
                log.warning("TOPリンクからの遷移に失敗。URLで直接遷移します")
                await self._goto(page, self.config.top_url)
            if "/top" not in session.url:
                await self._goto(page, self.config.top_url)
        session.transition(SessionState.TOP_PAGE)

    async def search_company(self, session: Session, company_id: str) -> None:
        page = session.page
        sel = self.selectors
        if session.state is SessionState.LOGGED_OUT:
            raise PortalError("ログインしていません")
        log.info("企業ID検索: %s", company_id)
        try:
            await self._fill(page, sel.company_id_input, str(company_id))
            await self._wait_visible(page, sel.company_search_button)
            await page.click(sel.company_search_button)
            await self.sleep(1.0)
            await self._wait_visible(page, sel.select_button)
        except PlaywrightTimeoutError as e:
            session.check_error_page(what="企業ID検索")
            raise PortalError(f"企業ID検索に失敗しました: {company_id}") from e
        session.company_id = str(company_id)
        session.transition(SessionState.COMPANY_SEARCHED)

    async def select_company(self, session: Session) -> None:
        """
        検索結果の先頭行を選択する。
        遷移イベントが来ないことがあるため、一定時間後に URL を見直し、
        変化が無くても警告だけ出して続行する。
        """
        page = session.page
        before = session.url
        await self._wait_visible(page, self.selectors.select_button)
        await page.click(self.selectors.select_button)
        await self.sleep(1.0)
        try:
            await page.wait_for_url(lambda url: url != before, timeout=SELECT_NAV_TIMEOUT_MS)
            await page.wait_for_load_state("networkidle", timeout=self.page_timeout)
        except PlaywrightTimeoutError:
            await self.sleep(SELECT_RECHECK_DELAY_SEC)
            if session.url == before:
                msg = f"選択後も URL が変化しませんでした: {before}"
                log.warning(msg)
                session.soft_failures.append(msg)
        session.check_error_page(what="企業選択")
        session.transition(SessionState.COMPANY_SELECTED)

    async def _go_to_performance_page(self, session: Session) -> None:
        if "publication/result" in session.url and ERROR_URL_MARKER not in session.url:
            return
        await self._goto(session.page, PERFORMANCE_URL)
        session.check_error_page(what="掲載実績")

    def _download_saver(self, folder: Path) -> Callable[[Any], Awaitable[None]]:
        async def _save(download: Any) -> None:
            name = download.suggested_filename or "download.csv"
            try:
                await download.save_as(str(folder / name))
            except Exception:
                log.warning("download save failed: %s", name, exc_info=True)
        return _save

    async def download_report(self, session: Session, start: str, end: str, company_id: str, folder: str | Path) -> Path:
        """掲載実績（start〜end, YYYY/MM/DD）をダウンロードし、保存先パスを返す。"""
        page = session.page
        sel = self.selectors
        folder = Path(folder)
        folder.mkdir(parents=True, exist_ok=True)
        await self._go_to_performance_page(session)
        try:
            await self._fill(page, sel.perf_start_input, start)
            await self._fill(page, sel.perf_end_input, end)
            await self._wait_visible(page, sel.download_button)
        except PlaywrightTimeoutError as e:
            session.check_error_page(what="掲載実績")
            raise PortalError("掲載実績の入力欄が見つかりませんでした") from e
        watcher = self.watcher_factory(folder)
        before = watcher.snapshot()
        page.once("download", self._download_saver(folder))
        await page.click(sel.download_button)
        await self.sleep(1.0)
        path = await watcher.wait_for_new_file(before)
        saved = archive_report(path, company_id, folder)
        session.report_path = saved
        session.transition(SessionState.REPORT_DOWNLOADED)
        return saved

    async def go_to_job_search(self, session: Session) -> None:
        if "job?mode=1" not in session.url:
            await self._goto(session.page, JOB_SEARCH_URL)
        session.check_error_page(what="原稿検索")
        session.transition(SessionState.JOB_SEARCH_PAGE)

    async def _search_job_once(self, session: Session, job_no: str) -> Any:
        page = session.page
        sel = self.selectors
        await self.go_to_job_search(session)
        await self.sleep(1.5)
        try:
            await self._fill(page, sel.job_no_input, str(job_no))
            await self._wait_visible(page, sel.job_search_button)
            await page.click(sel.job_search_button)
            await self.sleep(1.0)
            await self._wait_visible(page, sel.first_preview_button)
        except PlaywrightTimeoutError as e:
            session.check_error_page(what="原稿検索")
            raise PortalError(f"原稿検索に失敗しました: 仕事No={job_no}") from e

        try:
            async with page.context.expect_page(timeout=PREVIEW_OPEN_TIMEOUT_MS) as info:
                await page.click(sel.first_preview_button)
            preview = await info.value
        except PlaywrightTimeoutError as e:
            raise PortalError("プレビュータブが開きませんでした") from e
        try:
            await preview.wait_for_load_state("domcontentloaded", timeout=10000)
        except PlaywrightTimeoutError:
            pass
        if not is_preview_url(preview.url):
            await self.sleep(2.0)
        if not is_preview_url(preview.url):
            await self._safe_close(preview)
            raise PortalError(f"プレビューページに遷移できませんでした: {preview.url}")
        try:
            await preview.wait_for_selector(sel.preview_frame, state="visible", timeout=20000)
        except PlaywrightTimeoutError:
            log.warning("プレビューの iframe 待機がタイムアウトしました（続行）")
        session.preview = preview
        session.transition(SessionState.PREVIEW_OPEN)
        return preview

    async def reset_to_company(self, session: Session, company_id: str) -> None:
        """TOP に戻り、企業の検索・選択からやり直す。"""
        await self.go_to_top(session)
        await self.search_company(session, company_id)
        await self.select_company(session)

    async def open_job_preview(self, session: Session, job_no: str, company_id: str = "") -> Any:
        """仕事Noで原稿を検索し先頭のプレビューを開く。最大5回、失敗ごとに TOP からやり直す。"""
        cid = company_id or session.company_id
        attempts = 0

        async def _attempt():
            nonlocal attempts
            attempts += 1
            # やり直しの失敗も1回分の失敗として数える
            if attempts > 1:
                await self.reset_to_company(session, cid)
            return await self._search_job_once(session, job_no)

        def _log_retry(attempt: int, exc: BaseException) -> None:
            log.info("原稿検索リトライ %d/%d（仕事No=%s）", attempt, JOB_SEARCH_MAX_ATTEMPTS, job_no)

        return await retry_async(
            _attempt,
            max_attempts=JOB_SEARCH_MAX_ATTEMPTS,
            base_delay=JOB_SEARCH_RETRY_DELAY_SEC,
            on_retry=_log_retry,
            retry_on=(PortalError, PlaywrightTimeoutError),
            name=f"job search {job_no}",
            sleep=self.sleep,
        )

    # ===== プレビューの読み取り =====
    async def _preview_frame(self, preview: Any) -> Any:
        handle = await preview.query_selector(self.selectors.preview_frame)
        if not handle:
            return None
        return await handle.content_frame()

    async def _read_work_location(self, preview: Any) -> tuple[str, str, str]:
        frame = await self._preview_frame(preview)
        texts: list[str] = []
        if frame is not None:
            for selector in self.selectors.work_location_items:
                try:
                    texts = await frame.eval_on_selector_all(selector, _GET_TEXTS_JS)
                except Exception:
                    continue
                if any(is_work_location_text(t) for t in texts):
                    break
            if not any(is_work_location_text(t) for t in texts):
                texts = await frame.eval_on_selector_all("body li, body dd", _GET_TEXTS_JS)
        location = parse_work_location(texts)
        if not any(location):
            raise EmptyAttribute("勤務地情報が空です")
        return location

    async def _read_job_category(self, preview: Any) -> str:
        frame = await self._preview_frame(preview)
        text = ""
        if frame is not None:
            el = await frame.query_selector(self.selectors.job_type_in_frame)
            if el:
                text = ((await el.text_content()) or "").strip()
        if not text:
            raise EmptyAttribute("職種情報が空です")
        return text

    async def _read_salary(self, preview: Any) -> tuple[str, int | str]:
        frame = await self._preview_frame(preview)
        candidates: list[str] = []
        if frame is not None:
            try:
                candidates += await frame.eval_on_selector_all(_SALARY_DT_XPATH, _SALARY_DD_JS)
            except Exception:
                log.debug("salary dl lookup failed", exc_info=True)
            if not candidates:
                el = await frame.query_selector(self.selectors.salary_in_frame)
                if el:
                    candidates.append(((await el.text_content()) or "").strip())
        text = pick_salary_text(candidates)
        if not text:
            text = pick_salary_text(await preview.evaluate(_SALARY_PAGE_JS))
        if not text:
            raise EmptyAttribute("給与情報が空です")
        return parse_salary_text(text)

    async def _scrape_group(self, preview: Any, reader: Callable[[Any], Awaitable[Any]], default: Any, label: str) -> Any:
        async def _reload(attempt: int, exc: BaseException) -> None:
            try:
                await preview.reload(wait_until="networkidle", timeout=self.page_timeout)
            except PlaywrightTimeoutError:
                log.warning("プレビューの再読み込みがタイムアウトしました")

        try:
            return await retry_async(
                lambda: reader(preview),
                max_attempts=SCRAPE_MAX_ATTEMPTS,
                base_delay=SCRAPE_RETRY_DELAY_SEC,
                on_retry=_reload,
                retry_on=(PortalError, PlaywrightTimeoutError),
                name=label,
                sleep=self.sleep,
            )
        except (PortalError, PlaywrightTimeoutError):
            log.warning("%s を取得できませんでした。空欄で続行します", label)
            return default

    async def scrape_preview(self, session: Session, preview: Any = None) -> PreviewAttributes:
        """勤務地・職種・給与をそれぞれ最大3回（再読み込み付き）で取得する。"""
        preview = preview or session.preview
        prefecture, city, station = await self._scrape_group(preview, self._read_work_location, ("", "", ""), "勤務地")
        job_text = await self._scrape_group(preview, self._read_job_category, "", "職種")
        salary_type, salary_amount = await self._scrape_group(preview, self._read_salary, ("", 0), "給与")
        return PreviewAttributes(
            prefecture=prefecture,
            city=city,
            station=station,
            job_category_raw_text=job_text,
            salary_type=salary_type,
            salary_raw_amount=salary_amount,
        )

    async def save_preview_screenshot(self, session: Session, folder: str | Path, job_no: str, company_id: str, start: str, end: str) -> Optional[Path]:
        preview = session.preview
        if preview is None:
            return None
        out_dir = Path(folder) / SCREENSHOT_DIR_NAME
        out_dir.mkdir(parents=True, exist_ok=True)
        name = f"{company_id}-{job_no}-{start}-{end}.png".replace("/", "")
        path = out_dir / name
        try:
            await preview.screenshot(path=str(path), full_page=True)
        except Exception:
            log.warning("スクリーンショットの保存をスキップ: %s", path, exc_info=True)
            return None
        return path

    async def _safe_close(self, page: Any) -> None:
        try:
            if page is not None and not page.is_closed():
                await page.close()
        except Exception:
            log.warning("プレビュータブのクローズに失敗", exc_info=True)

    async def close_preview(self, session: Session) -> None:
        await self._safe_close(session.preview)
        session.preview = None
        if session.state is SessionState.PREVIEW_OPEN:
            session.transition(SessionState.PREVIEW_CLOSED)

    # ===== まとめ =====
    async def fetch_report(self, session: Session, company_id: str, start: str, end: str, folder: str | Path) -> Path:
        """TOP → 企業検索 → 選択 → 掲載実績DL。"""
        if session.state is SessionState.LOGGED_OUT:
            await self.login(session)
        else:
            await self.go_to_top(session)
        await self.search_company(session, company_id)
        await self.select_company(session)
        return await self.download_report(session, start, end, company_id, folder)
