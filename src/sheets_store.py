"""
Google スプレッドシートへの読み書き（セル単位）。
出力シートの「ユニークID」列で重複を判定し、A列の最初の空行に1行ずつ書き込む。
"""
from __future__ import annotations

import logging
import re
from typing import Any, Optional

import gspread
from google.oauth2.service_account import Credentials
from gspread.utils import a1_to_rowcol, rowcol_to_a1

log = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

EMPTY_ROW_BATCH = 100


class SheetWriteError(Exception):
    """スプレッドシート API の呼び出しに失敗した。"""


def column_letter(index: int) -> str:
    """1始まりの列番号 → 列記号（1 → A, 27 → AA）"""
    return re.sub(r"\d+", "", rowcol_to_a1(1, index))


def column_index(column: str) -> int:
    """列記号 → 1始まりの列番号"""
    return a1_to_rowcol(f"{column.strip().upper()}1")[1]


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


class SheetStore:
    """セル単位の読み書きインターフェース。"""

    def find_column_by_name(self, spreadsheet_id: str, sheet_name: str, header: str) -> Optional[str]:
        raise NotImplementedError

    def find_value_in_column(self, spreadsheet_id: str, sheet_name: str, column: str, value: str, start_row: int = 2) -> bool:
        raise NotImplementedError

    def find_first_empty_row(self, spreadsheet_id: str, sheet_name: str, column: str = "A", start_row: int = 2) -> int:
        raise NotImplementedError

    def set_cell_value(self, spreadsheet_id: str, sheet_name: str, column: str, row: int, value: Any) -> None:
        raise NotImplementedError


class GoogleSheetStore(SheetStore):
    def __init__(self, service_account_path: str, client: Any = None) -> None:
        self.service_account_path = service_account_path
        self._client = client
        self._worksheets: dict[tuple[str, str], Any] = {}

    @property
    def client(self) -> Any:
        if self._client is None:
            creds = Credentials.from_service_account_file(self.service_account_path, scopes=SCOPES)
            self._client = gspread.authorize(creds)
            log.info("Google Sheets: authorized with %s", self.service_account_path)
        return self._client

    def worksheet(self, spreadsheet_id: str, sheet_name: str) -> Any:
        key = (spreadsheet_id, sheet_name)
        ws = self._worksheets.get(key)
        if ws is None:
            try:
                ws = self.client.open_by_key(spreadsheet_id).worksheet(sheet_name)
            except gspread.exceptions.GSpreadException as e:
                raise SheetWriteError(f"シートを開けませんでした: {sheet_name} ({e})") from e
            self._worksheets[key] = ws
        return ws

    def find_column_by_name(self, spreadsheet_id: str, sheet_name: str, header: str) -> Optional[str]:
        ws = self.worksheet(spreadsheet_id, sheet_name)
        try:
            headers = ws.row_values(1)
        except gspread.exceptions.APIError as e:
            raise SheetWriteError(f"ヘッダー行の取得に失敗しました: {e}") from e
        for i, h in enumerate(headers, start=1):
            if str(h).strip() == header:
                return column_letter(i)
        return None

    def _column_values(self, ws: Any, column: str, start_row: int, end_row: int) -> list[Any]:
        try:
            rows = ws.get(f"{column}{start_row}:{column}{end_row}")
        except gspread.exceptions.APIError as e:
            raise SheetWriteError(f"列の取得に失敗しました: {column} ({e})") from e
        return [r[0] if r else "" for r in (rows or [])]

    def find_value_in_column(self, spreadsheet_id: str, sheet_name: str, column: str, value: str, start_row: int = 2) -> bool:
        ws = self.worksheet(spreadsheet_id, sheet_name)
        try:
            values = ws.col_values(column_index(column))
        except gspread.exceptions.APIError as e:
            raise SheetWriteError(f"列の取得に失敗しました: {column} ({e})") from e
        target = str(value).strip()
        return any(str(v).strip() == target for v in values[start_row - 1:])

    def find_first_empty_row(self, spreadsheet_id: str, sheet_name: str, column: str = "A", start_row: int = 2) -> int:
        ws = self.worksheet(spreadsheet_id, sheet_name)
        row = start_row
        while True:
            end = row + EMPTY_ROW_BATCH - 1
            values = self._column_values(ws, column, row, end)
            for offset, v in enumerate(values):
                if _is_blank(v):
                    return row + offset
            if len(values) < EMPTY_ROW_BATCH:
                # 末尾の空セルは API が返さない
                return row + len(values)
            row = end + 1

    def set_cell_value(self, spreadsheet_id: str, sheet_name: str, column: str, row: int, value: Any) -> None:
        ws = self.worksheet(spreadsheet_id, sheet_name)
        try:
            ws.update(range_name=f"{column}{row}", values=[[value]], value_input_option="USER_ENTERED")
        except gspread.exceptions.APIError as e:
            raise SheetWriteError(f"セルの書き込みに失敗しました: {column}{row} ({e})") from e
