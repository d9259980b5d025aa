import json
import logging
import os
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from openpyxl import load_workbook

from .text_normalizer import clean_job_category_label

log = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.3
SMALL_EXACT_BONUS = 0.1
TIE_TOLERANCE = 0.05

PREFECTURES = (
    "北海道", "青森県", "岩手県", "宮城県", "秋田県", "山形県", "福島県",
    "茨城県", "栃木県", "群馬県", "埼玉県", "千葉県", "東京都", "神奈川県",
    "新潟県", "富山県", "石川県", "福井県", "山梨県", "長野県", "岐阜県", "静岡県", "愛知県",
    "三重県", "滋賀県", "京都府", "大阪府", "兵庫県", "奈良県", "和歌山県",
    "鳥取県", "島根県", "岡山県", "広島県", "山口県",
    "徳島県", "香川県", "愛媛県", "高知県",
    "福岡県", "佐賀県", "長崎県", "熊本県", "大分県", "宮崎県", "鹿児島県",
    "沖縄県",
)

REGION_OPTIONS = (
    "北海道地方", "東北地方", "関東地方", "中部地方", "近畿地方",
    "中国地方", "四国地方", "九州", "沖縄地方",
)

_REGION_GROUPS = {
    "北海道地方": PREFECTURES[0:1],
    "東北地方": PREFECTURES[1:7],
    "関東地方": PREFECTURES[7:14],
    "中部地方": PREFECTURES[14:23],
    "近畿地方": PREFECTURES[23:30],
    "中国地方": PREFECTURES[30:35],
    "四国地方": PREFECTURES[35:39],
    "九州": PREFECTURES[39:46],
    "沖縄地方": PREFECTURES[46:47],
}
PREFECTURE_TO_REGION: dict[str, str] = {
    pref: region for region, prefs in _REGION_GROUPS.items() for pref in prefs
}

PLAN_OPTIONS = ("PEXプラン", "Bプラン", "ELプラン", "Dプラン", "Cプラン", "Aプラン")

_SPLIT_RAW_RE = re.compile(r"[,、\s]+")
_KEYWORD_SPLIT_RE = re.compile(r"[・、,\s]+")
_NIGHT_PREFIX_RE = re.compile(r"^\[[^\]]+\][①②③④⑤⑥⑦⑧⑨⑩]*")


@dataclass(frozen=True)
class JobCategory:
    large: str
    medium: str = ""
    small: str = ""

    @property
    def combined(self) -> str:
        return f"{self.large} {self.medium} {self.small}".strip()


@dataclass(frozen=True)
class SimilarityMatch:
    category: JobCategory
    part: str
    score: float


class JobCategoryTaxonomy:
    """職種（大・中・小）リスト。JSON: [{"large": ..., "medium": ..., "small": ...}, ...]"""

    def __init__(self, json_path: Optional[str] = None) -> None:
        self.json_path = json_path
        self.entries: list[JobCategory] = []

    @classmethod
    def from_entries(cls, entries: Iterable[Any]) -> "JobCategoryTaxonomy":
        tax = cls()
        tax.entries = [e for e in (cls._coerce(x) for x in entries) if e is not None]
        return tax

    @staticmethod
    def _coerce(item: Any) -> Optional[JobCategory]:
        if isinstance(item, JobCategory):
            return item
        if isinstance(item, dict):
            large = str(item.get("large") or "").strip()
            medium = str(item.get("medium") or "").strip()
            small = str(item.get("small") or "").strip()
            if large or medium or small:
                return JobCategory(large, medium, small)
            return None
        if isinstance(item, (list, tuple)) and item:
            vals = [str(v or "").strip() for v in list(item)[:3]]
            vals += [""] * (3 - len(vals))
            if any(vals):
                return JobCategory(*vals)
        return None

    def load(self) -> bool:
        if not self.json_path or not os.path.exists(self.json_path):
            log.warning("job category list not found: %s", self.json_path)
            return False
        try:
            with open(self.json_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            log.warning("job category list could not be read: %s", self.json_path, exc_info=True)
            return False
        if not isinstance(data, list):
            log.warning("job category list is not a JSON array: %s", self.json_path)
            return False
        self.entries = [e for e in (self._coerce(x) for x in data) if e is not None]
        log.info("job category list loaded: %s (%d entries)", self.json_path, len(self.entries))
        return bool(self.entries)

    @classmethod
    def from_workbook(cls, xlsx_path: str, start_row: int = 2, max_empty_rows: int = 10) -> "JobCategoryTaxonomy":
        """
        職種リストのエクセル（1枚目、A/B/C=大/中/小）を読む。
        空行が max_empty_rows 行続いたら打ち切る。
        """
        wb = load_workbook(xlsx_path, read_only=True, data_only=True)
        entries: list[JobCategory] = []
        try:
            ws = wb.worksheets[0]
            empty = 0
            for values in ws.iter_rows(min_row=start_row, max_col=3, values_only=True):
                entry = cls._coerce(list(values or ()))
                if entry is None:
                    empty += 1
                    if empty >= max_empty_rows:
                        break
                    continue
                empty = 0
                entries.append(entry)
        finally:
            wb.close()
        tax = cls.from_entries(entries)
        log.info("job category workbook read: %s (%d entries)", xlsx_path, len(tax))
        return tax

    def save(self, json_path: str) -> None:
        data = [{"large": e.large, "medium": e.medium, "small": e.small} for e in self.entries]
        folder = os.path.dirname(json_path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)


def _nfkc(text: str) -> str:
    return unicodedata.normalize("NFKC", text or "")


def split_raw_job_category(text: str) -> JobCategory:
    """
    プレビューの職種テキストを大・中・小に割る。
    "アルバイト・パート 建築・建設・土木作業,建築・土木その他"
      → large="アルバイト・パート", medium="建築・建設・土木作業", small="建築・土木その他"
    """
    raw = (text or "").strip()
    parts = [p.strip() for p in _SPLIT_RAW_RE.split(raw) if p.strip()]
    large = parts[0] if parts else ""
    medium = parts[1] if len(parts) >= 2 else ""
    small = " ".join(parts[2:]) if len(parts) >= 3 else ""
    return JobCategory(large or raw, medium, small)


def keyword_match(text: str, taxonomy: Iterable[JobCategory]) -> Optional[JobCategory]:
    """
    双方向の部分一致。
    - 大/中/小の名称が入力に含まれる
    - 入力から切り出した2文字以上のキーワードが大/中/小の名称に含まれる
    最初に当たったエントリを返す。
    """
    cleaned = _nfkc(text).strip()
    if not cleaned:
        return None
    lowered = cleaned.lower()
    keywords = [k.lower() for k in _KEYWORD_SPLIT_RE.split(cleaned) if len(k) >= 2]
    for entry in taxonomy:
        names = [_nfkc(n).lower() for n in (entry.large, entry.medium, entry.small)]
        if any(n and n in lowered for n in names):
            return entry
        if any(kw in n for n in names if n for kw in keywords):
            return entry
    return None


def _tokens(text: str) -> set[str]:
    return {t for t in (text or "").lower().split() if t}


def jaccard_similarity(a: str, b: str) -> float:
    """空白区切りトークンの集合一致率（|A∩B| / |A∪B|）。"""
    ta = _tokens(a)
    tb = _tokens(b)
    union = ta | tb
    if not union:
        return 0.0
    return len(ta & tb) / len(union)


def best_similarity_match(
    parts: Sequence[str],
    taxonomy: Iterable[JobCategory],
    threshold: float = SIMILARITY_THRESHOLD,
) -> Optional[SimilarityMatch]:
    entries = list(taxonomy)
    candidates: list[SimilarityMatch] = []
    for part in parts:
        if not part:
            continue
        best: Optional[SimilarityMatch] = None
        for entry in entries:
            score = jaccard_similarity(part, entry.combined)
            if entry.small and part == entry.small:
                score += SMALL_EXACT_BONUS
            if best is None or score > best.score:
                best = SimilarityMatch(entry, part, score)
        if best is not None and best.score >= threshold:
            candidates.append(best)
    if not candidates:
        return None
    top = max(c.score for c in candidates)
    # 僅差なら短い（より具体的な）パートを優先
    close = [c for c in candidates if top - c.score <= TIE_TOLERANCE]
    close.sort(key=lambda c: (len(c.part), -c.score))
    return close[0]


def classify_job_category(
    raw_text: str,
    taxonomy: Iterable[JobCategory],
    is_night: bool = False,
) -> Optional[JobCategory]:
    """
    職種テキスト → 職種リストの1エントリ。
    1. キーワード一致（単一職種・通常案件のみ）
    2. 類似度（しきい値 0.3）
    3. どちらも外れたら入力の大/中/小分割をそのまま返す
    入力かリストが空のときだけ None。
    """
    entries = list(taxonomy or [])
    text = (raw_text or "").strip()
    if not text or not entries:
        return None
    try:
        if is_night:
            cleaned = _NIGHT_PREFIX_RE.sub("", text).strip()
        else:
            cleaned = clean_job_category_label(text)
        parts = [p.strip() for p in cleaned.split("、") if p.strip()]
        if not is_night and len(parts) <= 1:
            hit = keyword_match(cleaned, entries)
            if hit is not None:
                log.info("職種キーワード一致: %s -> %s", text, hit.combined)
                return hit
        match = best_similarity_match(parts or [cleaned], entries)
        if match is not None:
            log.info("職種類似度一致(%.3f): %s -> %s", match.score, match.part, match.category.combined)
            return match.category
    except Exception:
        log.warning("job category classification failed: %s", text, exc_info=True)
    fallback = split_raw_job_category(text)
    return JobCategory(
        clean_job_category_label(fallback.large) or fallback.large,
        fallback.medium,
        fallback.small,
    )


def resolve_prefecture(text: str) -> Optional[str]:
    """「東京」「東京都新宿区」などから47都道府県名を返す。"""
    s = _nfkc(text).strip()
    if not s:
        return None
    if s in PREFECTURE_TO_REGION:
        return s
    for suffix in ("都", "道", "府", "県"):
        if s + suffix in PREFECTURE_TO_REGION:
            return s + suffix
    for pref in PREFECTURES:
        if pref in s:
            return pref
    return None


def match_plan(text: str) -> Optional[str]:
    """PLAN_OPTIONS の順（PEX が先）にコードかラベルの包含で判定。"""
    s = _nfkc(text).upper()
    if not s:
        return None
    for plan in PLAN_OPTIONS:
        code = plan.replace("プラン", "").upper()
        if code in s or plan.upper() in s:
            return plan
    return None


class JobClassifier:
    """
    静的テーブルで決まらないときだけ AI マッチャーに委ねる分類器。
    matcher は best_match(text, options, context) を持つ任意のオブジェクト（None 可）。
    """

    def __init__(self, matcher: Any = None) -> None:
        self.matcher = matcher

    async def _ask(self, text: str, options: Sequence[str], context: str) -> Optional[str]:
        if self.matcher is None:
            return None
        try:
            choice = await self.matcher.best_match(text, list(options), context)
        except Exception:
            log.warning("AI matcher failed for %s", text, exc_info=True)
            return None
        if choice and choice in options:
            return choice
        return None

    async def classify_region(self, prefecture: str, region_options: Sequence[str] = REGION_OPTIONS) -> Optional[str]:
        if not prefecture:
            return None
        pref = resolve_prefecture(prefecture)
        if pref:
            region = PREFECTURE_TO_REGION[pref]
            if region in region_options:
                return region
        return await self._ask(prefecture, region_options, "都道府県から地方を選んでください")

    async def classify_plan(self, raw_plan_text: str) -> Optional[str]:
        if not raw_plan_text or not raw_plan_text.strip():
            return None
        plan = match_plan(raw_plan_text)
        if plan:
            return plan
        return await self._ask(raw_plan_text, PLAN_OPTIONS, "掲載プラン名から該当するプランを選んでください")

    def classify_job_category(self, raw_text: str, taxonomy: Iterable[JobCategory], is_night: bool = False) -> Optional[JobCategory]:
        return classify_job_category(raw_text, taxonomy, is_night)
