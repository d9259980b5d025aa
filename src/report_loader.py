from __future__ import annotations

import csv
import io
import logging
import re
from pathlib import Path
from typing import Any, Optional

from charset_normalizer import from_bytes
from openpyxl import load_workbook

from .record_validator import RawRecord, ReportColumns

log = logging.getLogger(__name__)

_JAPANESE_RE = re.compile(r"[぀-ゟ゠-ヿ一-龯]")
# UTF-8 は厳密デコードで誤判定しにくいので先に試す
_FALLBACK_ENCODINGS = ("utf-8-sig", "cp932", "shift_jis", "euc_jp", "iso2022_jp")
_ENCODING_ALIASES = {
    "shift_jis": "cp932",
    "sjis": "cp932",
    "windows-31j": "cp932",
    "utf_8": "utf-8-sig",
    "euc-jp": "euc_jp",
    "iso-2022-jp": "iso2022_jp",
    "utf-8": "utf-8-sig",
    "ascii": "utf-8-sig",
}


class ReportLoadError(Exception):
    """レポートファイルを読めなかった。"""


def _detect_encoding(raw: bytes) -> Optional[str]:
    try:
        best = from_bytes(raw).best()
    except Exception:
        log.debug("charset detection failed", exc_info=True)
        return None
    if best is None or not best.encoding:
        return None
    enc = best.encoding.lower()
    return _ENCODING_ALIASES.get(enc, enc)


def _has_japanese(text: str) -> bool:
    return bool(_JAPANESE_RE.search(text))


def _looks_like_csv(text: str) -> bool:
    first_lines = text.splitlines()[:3]
    has_csv_shape = any("," in line for line in first_lines)
    return has_csv_shape and "�" not in text


def decode_report_bytes(raw: bytes) -> tuple[str, str]:
    """
    CSV のエンコーディングを推定してデコードする。
    utf-8 → (推定結果) → cp932/shift_jis → euc_jp → iso2022_jp の順に試す。
    日本語として読めた候補を優先し、無ければ文字化けの無い CSV らしい候補を採用する。
    """
    detected = _detect_encoding(raw)
    candidates = list(_FALLBACK_ENCODINGS)
    if detected in candidates:
        candidates.remove(detected)
        candidates.insert(1 if detected != "utf-8-sig" else 0, detected)
    elif detected:
        # 日本語系以外の推定は最後に回す（cp932 を big5 等と誤判定することがある）
        candidates.append(detected)
    decoded: list[tuple[str, str]] = []
    for enc in candidates:
        try:
            decoded.append((raw.decode(enc), enc))
        except (UnicodeDecodeError, LookupError):
            continue
    for check in (_has_japanese, _looks_like_csv):
        for text, enc in decoded:
            if check(text):
                log.info("report encoding: %s (detected=%s)", enc, detected)
                return text, enc
    log.warning("report encoding undetermined; forcing cp932 (tried=%s)", candidates)
    return raw.decode("cp932", errors="replace"), "cp932"


def _read_csv_rows(path: Path) -> list[dict[str, str]]:
    raw = path.read_bytes()
    text, _enc = decode_report_bytes(raw)
    try:
        reader = csv.DictReader(io.StringIO(text, newline=""))
        rows = []
        for row in reader:
            clean = {(k or "").strip(): (v.strip() if isinstance(v, str) else v) for k, v in row.items() if k is not None}
            if any(v not in (None, "") for v in clean.values()):
                rows.append(clean)
    except csv.Error as e:
        raise ReportLoadError(f"CSVのパースに失敗しました: {e}") from e
    if not rows:
        log.warning("report has no data rows (header only): %s", path)
    return rows


def _read_xlsx_rows(path: Path) -> list[dict[str, Any]]:
    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except Exception as e:
        raise ReportLoadError(f"Excelファイルを開けませんでした: {e}") from e
    try:
        ws = wb.worksheets[0]
        rows_iter = ws.iter_rows(values_only=True)
        header = next(rows_iter, None)
        if not header:
            return []
        keys = [str(h).strip() if h is not None else "" for h in header]
        rows: list[dict[str, Any]] = []
        for values in rows_iter:
            if values is None or all(v in (None, "") for v in values):
                continue
            rows.append({k: v for k, v in zip(keys, values) if k})
        return rows
    finally:
        wb.close()


def load_report_rows(path: str | Path) -> list[dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        raise ReportLoadError(f"レポートファイルが見つかりません: {p}")
    if p.stat().st_size == 0:
        raise ReportLoadError(f"レポートファイルが空です: {p}")
    if p.suffix.lower() == ".xlsx":
        return _read_xlsx_rows(p)
    return _read_csv_rows(p)


def load_report(path: str | Path, columns: ReportColumns | None = None) -> list[RawRecord]:
    rows = load_report_rows(path)
    records = [RawRecord.from_row(row, columns, index=i) for i, row in enumerate(rows, start=1)]
    log.info("report loaded: %s (%d records)", path, len(records))
    return records
