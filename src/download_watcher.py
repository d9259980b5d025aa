from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger(__name__)

REPORT_EXTENSIONS = (".csv", ".xlsx")


class DownloadTimeoutError(Exception):
    """ダウンロードが上限時間内に終わらなかった。"""


class LocalFileSystem:
    """DownloadWatcher が使うファイル操作（テストで差し替える）。"""

    def listdir(self, directory: Path) -> list[str]:
        return os.listdir(directory)

    def size(self, path: Path) -> Optional[int]:
        try:
            return os.path.getsize(path)
        except OSError:
            return None


class DownloadWatcher:
    """
    ダウンロードフォルダをポーリングして完了を判定する。
    新しい .csv/.xlsx が現れ、サイズが stable_for 秒以上変わらなければ完了。
    timeout 秒を超えたら DownloadTimeoutError。
    """

    def __init__(
        self,
        directory: str | Path,
        poll_interval: float = 0.5,
        stable_for: float = 2.0,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        fs: Any = None,
    ) -> None:
        self.directory = Path(directory)
        self.poll_interval = poll_interval
        self.stable_for = stable_for
        self.timeout = timeout
        self.clock = clock
        self.sleep = sleep
        self.fs = fs or LocalFileSystem()

    def snapshot(self) -> set[str]:
        try:
            return set(self.fs.listdir(self.directory))
        except OSError:
            return set()

    def _pick_new_file(self, before: set[str]) -> Optional[str]:
        try:
            names = self.fs.listdir(self.directory)
        except OSError:
            return None
        new = sorted(n for n in names if n not in before)
        for ext in REPORT_EXTENSIONS:
            for name in new:
                if name.lower().endswith(ext):
                    return name
        return None

    async def wait_for_new_file(self, before: set[str]) -> Path:
        started = self.clock()
        found: Optional[Path] = None
        last_size: Optional[int] = None
        stable_since: Optional[float] = None

        while True:
            await self.sleep(self.poll_interval)
            now = self.clock()
            if found is None:
                name = self._pick_new_file(before)
                if name:
                    found = self.directory / name
                    log.info("download detected: %s", name)
            if found is not None:
                size = self.fs.size(found)
                if size is not None and size > 0 and size == last_size:
                    if stable_since is None:
                        stable_since = now
                    if now - stable_since >= self.stable_for:
                        return found
                else:
                    last_size = size
                    stable_since = now if size else None
            if now - started >= self.timeout:
                break

        log.error("download timeout: dir=%s before=%s", self.directory, sorted(before))
        raise DownloadTimeoutError(f"download timeout after {self.timeout:.0f}s")


def _safe_id(company_id: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", str(company_id)) if company_id else "unknown"


def archive_report(path: str | Path, company_id: str, folder: str | Path, now: Optional[dt.datetime] = None) -> Path:
    """
    performance_{企業ID}_{timestamp}.csv にリネームする。csv は folder/csv/ へ移す。
    """
    src = Path(path)
    ext = ".csv" if src.suffix.lower() == ".csv" else ".xlsx"
    stamp = int((now or dt.datetime.now()).timestamp() * 1000)
    target_dir = Path(folder) / "csv" if ext == ".csv" else Path(folder)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"performance_{_safe_id(company_id)}_{stamp}{ext}"
    shutil.move(str(src), str(target))
    log.info("report saved: %s", target)
    return target
