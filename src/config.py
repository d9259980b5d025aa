from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """起動時に検出する設定不備（致命的）。"""


def _getenv_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = env.get(name)
    return (str(v).strip().lower() == "true") if v is not None else default


def _getenv_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(env.get(name) or default)
    except ValueError:
        raise ConfigError(f"{name} は整数で指定してください: {env.get(name)!r}")


@dataclass(frozen=True)
class Config:
    login_url: str = ""
    username: str = ""
    password: str = field(default="", repr=False)
    input_file: str = "【バイトル】実績.xlsx"
    job_category_list_night: str = "config/jobCategoriesNight.json"
    job_category_list_normal: str = "config/jobCategoriesNormal.json"
    spreadsheet_id_night: str = ""
    spreadsheet_id_normal: str = ""
    sheet_name: str = "Sheet1"
    service_account_key_path: str = ""
    headless: bool = True
    browser_timeout_ms: int = 30000
    page_timeout_ms: int = 60000
    max_retries: int = 3
    retry_delay_ms: int = 2000
    download_dir: str = "downloads"
    selectors_path: str = "config/selectors.json"
    columns_path: str = "config/columns.json"
    skip_validation: bool = False

    @classmethod
    def from_env(cls, overrides: Optional[Mapping[str, Any]] = None, env: Optional[Mapping[str, str]] = None) -> "Config":
        """.env → 環境変数 → overrides の順で値を決める。"""
        if env is None:
            load_dotenv()
            env = os.environ
        d = cls()
        cfg = cls(
            login_url=env.get("BAITORU_LOGIN_URL", "").strip(),
            username=env.get("BAITORU_USERNAME", "").strip(),
            password=env.get("BAITORU_PASSWORD", ""),
            input_file=env.get("INPUT_FILE") or d.input_file,
            job_category_list_night=env.get("JOB_CATEGORY_LIST_NIGHT") or d.job_category_list_night,
            job_category_list_normal=env.get("JOB_CATEGORY_LIST_NORMAL") or d.job_category_list_normal,
            spreadsheet_id_night=env.get("GOOGLE_SPREADSHEET_ID_NIGHT", "").strip(),
            spreadsheet_id_normal=env.get("GOOGLE_SPREADSHEET_ID_NORMAL", "").strip(),
            sheet_name=env.get("GOOGLE_SHEET_NAME") or d.sheet_name,
            service_account_key_path=env.get("GOOGLE_SERVICE_ACCOUNT_KEY_PATH", "").strip(),
            headless=_getenv_bool(env, "HEADLESS", d.headless),
            browser_timeout_ms=_getenv_int(env, "BROWSER_TIMEOUT", d.browser_timeout_ms),
            page_timeout_ms=_getenv_int(env, "PAGE_TIMEOUT", d.page_timeout_ms),
            max_retries=_getenv_int(env, "MAX_RETRIES", d.max_retries),
            retry_delay_ms=_getenv_int(env, "RETRY_DELAY", d.retry_delay_ms),
            download_dir=env.get("DOWNLOAD_DIR") or d.download_dir,
            selectors_path=env.get("SELECTORS_PATH") or d.selectors_path,
            columns_path=env.get("COLUMNS_PATH") or d.columns_path,
            skip_validation=_getenv_bool(env, "SKIP_CONFIG_VALIDATION", False),
        )
        if overrides:
            cfg = replace(cfg, **{k: v for k, v in overrides.items() if v is not None})
        return cfg

    @property
    def top_url(self) -> str:
        """ログインURLと同じホストの /top。"""
        if "/top" in self.login_url:
            return self.login_url
        parts = urlsplit(self.login_url)
        if not parts.netloc:
            return self.login_url.rstrip("/") + "/top"
        return f"{parts.scheme}://{parts.netloc}/top"

    @property
    def retry_delay_sec(self) -> float:
        return self.retry_delay_ms / 1000.0

    def spreadsheet_id_for(self, is_night: bool) -> str:
        return self.spreadsheet_id_night if is_night else self.spreadsheet_id_normal

    def validate(self) -> None:
        """不足があればまとめて ConfigError。SKIP_CONFIG_VALIDATION=true で省略。"""
        if self.skip_validation:
            log.warning("設定の検証をスキップしました（SKIP_CONFIG_VALIDATION=true）")
            return
        errors = []
        if not self.login_url:
            errors.append("BAITORU_LOGIN_URL が設定されていません")
        if not self.username:
            errors.append("BAITORU_USERNAME が設定されていません")
        if not self.password:
            errors.append("BAITORU_PASSWORD が設定されていません")
        if not self.spreadsheet_id_night:
            errors.append("GOOGLE_SPREADSHEET_ID_NIGHT が設定されていません")
        if not self.spreadsheet_id_normal:
            errors.append("GOOGLE_SPREADSHEET_ID_NORMAL が設定されていません")
        if not self.service_account_key_path:
            errors.append("GOOGLE_SERVICE_ACCOUNT_KEY_PATH が設定されていません")
        if self.max_retries < 1:
            errors.append("MAX_RETRIES は1以上にしてください")
        if errors:
            raise ConfigError("設定エラー:\n" + "\n".join(errors))
