# main.py
"""
バイトル掲載実績 → 傾向データベース（Google スプレッドシート）転記

  python main.py run                       # 入力エクセルの全行
  python main.py single --row 5            # 5行目だけ
  python main.py loop 10                   # 先頭から10件
  python main.py company 70687 2025-08-25 2025-09-21 通常
  python main.py convert-taxonomy ナイト案件リスト.xlsx config/jobCategoriesNight.json
"""
import argparse
import asyncio
import datetime as dt
import logging
import os
import sys
from dataclasses import replace
from typing import Optional

from src.ai_matcher import AIMatcher
from src.company_tasks import Category, CompanyTask, read_company_tasks
from src.config import Config, ConfigError
from src.date_utils import to_date
from src.job_classifier import JobCategoryTaxonomy, JobClassifier
from src.pipeline import RunSummary, Taxonomies, TrendPipeline
from src.portal_session import PortalClient, load_selectors
from src.sheet_layout import load_layouts
from src.sheets_store import GoogleSheetStore

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


# --------------------------------------------------
# ロギング設定
# --------------------------------------------------
def setup_logging(level: int = logging.INFO) -> None:
    os.makedirs("logs", exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler("logs/app.log", encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )


# --------------------------------------------------
# 引数
# --------------------------------------------------
def _date_arg(value: str) -> dt.date:
    d = to_date(value)
    if d is None:
        raise argparse.ArgumentTypeError(f"日付は YYYY-MM-DD 形式で指定してください: {value}")
    return d


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--headless", dest="headless", action="store_true", default=None, help="ヘッドレスで起動")
    common.add_argument("--no-headless", dest="headless", action="store_false", help="ブラウザを表示して起動")
    common.add_argument("--max-retries", type=int, default=None, help="掲載実績取得のリトライ回数（MAX_RETRIES）")
    common.add_argument("--retry-delay", type=int, default=None, help="リトライ間隔ミリ秒（RETRY_DELAY）")
    common.add_argument("--start-date", type=_date_arg, default=None, help="申込開始日を上書き")
    common.add_argument("--end-date", type=_date_arg, default=None, help="申込終了日を上書き")
    common.add_argument("--input", default=None, help="入力エクセル（INPUT_FILE）")
    common.add_argument("--verbose", "-v", action="store_true", help="DEBUGログを出す")

    ap = argparse.ArgumentParser(description="Baitoru performance report → trend sheet")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("run", parents=[common], help="入力エクセルの全行を処理")

    p_single = sub.add_parser("single", parents=[common], help="1行だけ処理")
    p_single.add_argument("--row", type=int, default=2, help="エクセルの行番号（既定: 2）")

    p_loop = sub.add_parser("loop", parents=[common], help="先頭から N 件処理")
    p_loop.add_argument("count", type=int)

    p_company = sub.add_parser("company", parents=[common], help="企業IDを直接指定して処理")
    p_company.add_argument("company_id")
    p_company.add_argument("start", nargs="?", type=_date_arg, default=None)
    p_company.add_argument("end", nargs="?", type=_date_arg, default=None)
    p_company.add_argument("category", nargs="?", default=Category.NORMAL.value, choices=[c.value for c in Category])
    p_company.add_argument("--name", default="", help="企業名（ユニークIDに使う）")
    p_company.add_argument("--site", default="", help="媒体名")

    p_conv = sub.add_parser("convert-taxonomy", help="職種リストのエクセルを JSON に変換")
    p_conv.add_argument("xlsx")
    p_conv.add_argument("json")
    return ap


def config_overrides(args: argparse.Namespace) -> dict:
    return {
        "headless": getattr(args, "headless", None),
        "max_retries": getattr(args, "max_retries", None),
        "retry_delay_ms": getattr(args, "retry_delay", None),
        "input_file": getattr(args, "input", None),
    }


# --------------------------------------------------
# タスク
# --------------------------------------------------
def company_task_from_args(args: argparse.Namespace, today: Optional[dt.date] = None) -> CompanyTask:
    """期間省略時は「1か月前〜今日」。"""
    if not str(args.company_id).strip().isdigit():
        raise ValueError(f"有効な企業IDを指定してください: {args.company_id}")
    if bool(args.start) != bool(args.end):
        raise ValueError("開始日と終了日は両方指定してください")
    start, end = args.start, args.end
    if not start:
        end = today or dt.date.today()
        month = end.month - 1 or 12
        year = end.year - (1 if end.month == 1 else 0)
        day = min(end.day, 28)
        start = dt.date(year, month, day)
    return CompanyTask(
        company_id=str(args.company_id).strip(),
        company_name=args.name,
        category=Category.from_label(args.category),
        period_start=start,
        period_end=end,
        source_site=args.site,
    )


def load_tasks(args: argparse.Namespace, config: Config) -> list[CompanyTask]:
    if args.command == "company":
        tasks = [company_task_from_args(args)]
    else:
        layouts = load_layouts(config.columns_path)
        if args.command == "single":
            tasks = read_company_tasks(config.input_file, layouts.input, start_row=args.row, limit=1)
        elif args.command == "loop":
            tasks = read_company_tasks(config.input_file, layouts.input, limit=max(1, args.count))
        else:
            tasks = read_company_tasks(config.input_file, layouts.input)
    if args.start_date or args.end_date:
        tasks = [
            replace(
                t,
                period_start=args.start_date or t.period_start,
                period_end=args.end_date or t.period_end,
            )
            for t in tasks
        ]
    return tasks


# --------------------------------------------------
# 実行
# --------------------------------------------------
async def run_pipeline(config: Config, tasks: list[CompanyTask]) -> RunSummary:
    layouts = load_layouts(config.columns_path)
    portal = PortalClient(config, load_selectors(config.selectors_path))
    store = GoogleSheetStore(config.service_account_key_path)
    matcher = AIMatcher()
    if not matcher.enabled:
        log.info("AI マッチャー無効（キーワード/類似度のみで分類）")
    taxonomies = Taxonomies.load(config.job_category_list_night, config.job_category_list_normal)
    pipeline = TrendPipeline(config, portal, store, JobClassifier(matcher), taxonomies, layouts)
    try:
        return await pipeline.run(tasks)
    finally:
        await portal.close()


def convert_taxonomy(xlsx: str, json_path: str) -> int:
    taxonomy = JobCategoryTaxonomy.from_workbook(xlsx)
    if not taxonomy:
        log.warning("データが0件のため JSON を更新しません: %s", xlsx)
        return EXIT_FAILURE
    taxonomy.save(json_path)
    log.info("変換完了: %d件 → %s", len(taxonomy), json_path)
    return EXIT_OK


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if getattr(args, "verbose", False) else logging.INFO)

    if args.command == "convert-taxonomy":
        return convert_taxonomy(args.xlsx, args.json)

    try:
        config = Config.from_env(config_overrides(args))
        config.validate()
    except ConfigError as e:
        log.error("%s", e)
        return EXIT_CONFIG_ERROR

    try:
        tasks = load_tasks(args, config)
    except (OSError, ValueError) as e:
        log.error("タスクを読み込めませんでした: %s", e)
        return EXIT_FAILURE
    if not tasks:
        log.warning("処理対象の行がありません: %s", config.input_file)
        return EXIT_OK

    summary = asyncio.run(run_pipeline(config, tasks))
    log.info("成功 %d / 失敗 %d / スキップ %d / 重複 %d（全 %d 件）",
             summary.succeeded, summary.failed, summary.skipped, summary.duplicates, summary.total)
    if summary.failure_log_path:
        log.info("失敗ログ: %s", summary.failure_log_path)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
