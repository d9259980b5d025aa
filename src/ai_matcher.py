import os
import asyncio
import logging
import re
import unicodedata
from typing import Any, Optional, Sequence

# ---- .env -------------------------------------------------------
try:
    from dotenv import load_dotenv
    load_dotenv()
except Exception:
    pass

def _getenv_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    return (str(v).strip().lower() == "true") if v is not None else default

USE_AI: bool = _getenv_bool("USE_AI", True)
API_KEY: str = (os.getenv("GEMINI_API_KEY") or "").strip()
DEFAULT_MODEL: str = (os.getenv("GEMINI_MODEL") or "gemini-2.5-flash-lite").strip()
AI_CALL_TIMEOUT_SEC = float(os.getenv("AI_CALL_TIMEOUT_SEC", "20") or 0)

# ---- deps -------------------------------------------------------
try:
    import google.generativeai as generativeai
    GEN_IMPORT_ERROR = None
except Exception as e:
    generativeai = None  # type: ignore
    GEN_IMPORT_ERROR = e

AI_ENABLED: bool = USE_AI and bool(API_KEY) and (generativeai is not None)
if AI_ENABLED:
    try:
        generativeai.configure(api_key=API_KEY)  # type: ignore
    except Exception as e:
        AI_ENABLED = False
        GEN_IMPORT_ERROR = e

log = logging.getLogger(__name__)

NO_MATCH_TOKENS = ("なし", "該当なし", "none", "null")
_INDEX_RE = re.compile(r"\d+")


def _resp_text(resp: Any) -> str:
    t = getattr(resp, "text", None)
    if isinstance(t, str) and t.strip():
        return t
    try:
        for cand in getattr(resp, "candidates", []) or []:
            parts = getattr(getattr(cand, "content", None), "parts", []) or []
            for p in parts:
                pt = getattr(p, "text", None)
                if isinstance(pt, str) and pt.strip():
                    return pt
    except Exception:
        pass
    return str(resp)


def _norm(s: str) -> str:
    return re.sub(r"\s+", "", unicodedata.normalize("NFKC", s or "")).lower()


def parse_choice(raw: str, options: Sequence[str]) -> Optional[str]:
    """
    モデルの返答から選択肢を1つ決める。
    - 番号（1始まり）を優先
    - 「なし」等は None
    - 選択肢ラベルそのものが返ってきた場合も受け付ける
    """
    text = re.sub(r"```(?:\w+)?", "", raw or "").strip()
    if not text:
        return None
    head = _norm(text.splitlines()[0])
    if any(head.startswith(tok) for tok in NO_MATCH_TOKENS):
        return None
    m = _INDEX_RE.search(unicodedata.normalize("NFKC", text))
    if m:
        idx = int(m.group(0))
        if 1 <= idx <= len(options):
            return options[idx - 1]
        return None
    norm_text = _norm(text)
    for opt in options:
        if _norm(opt) == norm_text:
            return opt
    for opt in options:
        if _norm(opt) and _norm(opt) in norm_text:
            return opt
    return None


class AIMatcher:
    """
    自由記述を固定の選択肢へ寄せる Gemini ラッパー。
    鍵が無い・import に失敗した場合は model=None となり、常に None を返す。
    """

    def __init__(self, model=None, timeout_sec: float | None = None):
        self.timeout_sec = AI_CALL_TIMEOUT_SEC if timeout_sec is None else float(timeout_sec)
        if model is not None:
            self.model = model
        else:
            if AI_ENABLED:
                try:
                    self.model = generativeai.GenerativeModel(DEFAULT_MODEL)  # type: ignore
                    log.info(f"AIMatcher: Gemini model initialized ({DEFAULT_MODEL}).")
                except Exception as e:
                    log.error(f"AIMatcher: Failed to init model: {e}", exc_info=True)
                    self.model = None
            else:
                self.model = None
                if GEN_IMPORT_ERROR:
                    log.warning(f"AIMatcher: AI disabled due to import/config error: {GEN_IMPORT_ERROR}")
                else:
                    log.info("AIMatcher: AI disabled (USE_AI/GEMINI_API_KEY)")

    @property
    def enabled(self) -> bool:
        return self.model is not None

    async def _generate_with_timeout(self, content: list[Any]) -> Any:
        if not self.model:
            return None

        async def _call():
            return await self.model.generate_content_async(content)

        timeout = self.timeout_sec
        if timeout > 0:
            try:
                return await asyncio.wait_for(_call(), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning(f"Gemini call timed out after {timeout:.1f}s")
                return None
        return await _call()

    @staticmethod
    def build_prompt(text: str, options: Sequence[str], context: str | None = None) -> str:
        numbered = "\n".join(f"{i}. {opt}" for i, opt in enumerate(options, start=1))
        lines = [
            "次のテキストに最も当てはまる選択肢を1つ選び、番号だけを出力してください。",
            "当てはまるものが無い場合は「なし」とだけ出力してください。説明は禁止。",
        ]
        if context:
            lines.append(f"補足: {context}")
        lines.append(f"テキスト: {text}")
        lines.append("選択肢:")
        lines.append(numbered)
        return "\n".join(lines)

    async def best_match(self, text: str, options: Sequence[str], context: str | None = None) -> Optional[str]:
        if not self.model or not text or not options:
            return None
        options = list(options)
        prompt = self.build_prompt(text, options, context)
        resp = await self._generate_with_timeout([prompt])
        if resp is None:
            return None
        choice = parse_choice(_resp_text(resp), options)
        log.info("AIMatcher: %s -> %s", text, choice)
        return choice
