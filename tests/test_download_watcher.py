# tests/test_download_watcher.py
import datetime as dt
from pathlib import Path

import pytest

from src.download_watcher import DownloadTimeoutError, DownloadWatcher, archive_report


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


class FakeFS:
    """appear_at: 名前→出現時刻, sizes: 名前→サイズ列（最後の値を繰り返す）"""

    def __init__(self, clock, appear_at, sizes):
        self.clock = clock
        self.appear_at = appear_at
        self.sizes = {k: list(v) for k, v in sizes.items()}

    def listdir(self, directory):
        return [n for n, t in self.appear_at.items() if self.clock.now >= t]

    def size(self, path):
        seq = self.sizes.get(Path(path).name)
        if not seq:
            return None
        return seq.pop(0) if len(seq) > 1 else seq[0]


def _watcher(clock, fs, **kw):
    return DownloadWatcher("downloads", clock=clock, sleep=clock.sleep, fs=fs, **kw)


@pytest.mark.asyncio
async def test_waits_until_size_is_stable():
    clock = FakeClock()
    fs = FakeFS(clock, {"perf.csv.crdownload": 0.5, "perf.csv": 1.0}, {"perf.csv": [10, 20, 20]})
    watcher = _watcher(clock, fs)
    path = await watcher.wait_for_new_file(set())
    assert path == Path("downloads") / "perf.csv"
    # 1.5秒で 20 になり、そこから 2 秒変化なし
    assert clock.now == pytest.approx(3.5)


@pytest.mark.asyncio
async def test_ignores_files_present_before_and_prefers_csv():
    clock = FakeClock()
    fs = FakeFS(
        clock,
        {"old.csv": 0.0, "b.xlsx": 0.5, "a.csv": 0.5},
        {"old.csv": [5], "b.xlsx": [7], "a.csv": [9]},
    )
    watcher = _watcher(clock, fs)
    before = watcher.snapshot()
    assert before == {"old.csv"}
    path = await watcher.wait_for_new_file(before)
    assert path.name == "a.csv"


@pytest.mark.asyncio
async def test_timeout_when_nothing_arrives():
    clock = FakeClock()
    watcher = _watcher(clock, FakeFS(clock, {}, {}), timeout=60.0)
    with pytest.raises(DownloadTimeoutError):
        await watcher.wait_for_new_file(set())
    assert clock.now >= 60.0


@pytest.mark.asyncio
async def test_zero_byte_file_never_completes():
    clock = FakeClock()
    fs = FakeFS(clock, {"perf.csv": 0.5}, {"perf.csv": [0]})
    watcher = _watcher(clock, fs, timeout=10.0)
    with pytest.raises(DownloadTimeoutError):
        await watcher.wait_for_new_file(set())


def test_archive_report_moves_csv_into_csv_folder(tmp_path):
    src = tmp_path / "download.csv"
    src.write_text("a,b\n", encoding="utf-8")
    now = dt.datetime(2024, 1, 1, 12, 0, 0)
    saved = archive_report(src, "10/01", tmp_path, now=now)
    assert saved.parent == tmp_path / "csv"
    assert saved.name == f"performance_10_01_{int(now.timestamp() * 1000)}.csv"
    assert saved.exists()
    assert not src.exists()


def test_archive_report_keeps_xlsx_in_folder(tmp_path):
    src = tmp_path / "download.xlsx"
    src.write_bytes(b"x")
    saved = archive_report(src, "1001", tmp_path)
    assert saved.parent == tmp_path
    assert saved.name.startswith("performance_1001_")
    assert saved.suffix == ".xlsx"
