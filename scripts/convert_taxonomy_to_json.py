# scripts/convert_taxonomy_to_json.py
"""
職種リスト（エクセル）→ config/jobCategories*.json

  python scripts/convert_taxonomy_to_json.py ナイト案件リスト.xlsx config/jobCategoriesNight.json
  python scripts/convert_taxonomy_to_json.py --all
"""
import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.job_classifier import JobCategoryTaxonomy  # noqa: E402

log = logging.getLogger("convert_taxonomy")

DEFAULT_PAIRS = (
    (ROOT / "ナイト案件リスト.xlsx", ROOT / "config" / "jobCategoriesNight.json"),
    (ROOT / "通常案件リスト.xlsx", ROOT / "config" / "jobCategoriesNormal.json"),
)


def convert(xlsx_path: Path, json_path: Path) -> int:
    """変換件数を返す。元ファイルが無い/0件のときは既存の JSON を残す。"""
    if not xlsx_path.exists():
        log.warning("ファイルが見つかりません（既存のJSONを保持）: %s", xlsx_path)
        return 0
    taxonomy = JobCategoryTaxonomy.from_workbook(str(xlsx_path))
    if not taxonomy:
        log.warning("データが0件のため更新しません: %s", xlsx_path)
        return 0
    taxonomy.save(str(json_path))
    log.info("変換完了: %d件 → %s", len(taxonomy), json_path)
    return len(taxonomy)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Convert a job category workbook into JSON")
    ap.add_argument("xlsx", nargs="?", type=Path, help="職種リストのエクセル")
    ap.add_argument("json", nargs="?", type=Path, help="出力先JSON")
    ap.add_argument("--all", action="store_true", help="ナイト/通常の既定ファイルをまとめて変換")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    if args.all:
        pairs = DEFAULT_PAIRS
    elif args.xlsx and args.json:
        pairs = ((args.xlsx, args.json),)
    else:
        ap.error("xlsx と json を指定するか --all を付けてください")
    total = sum(convert(x, j) for x, j in pairs)
    return 0 if total else 1


if __name__ == "__main__":
    raise SystemExit(main())
