"""
导出模块 (Export Module)
=======================

将已完成的工作项写入单工作表 Excel 文件。
核心逻辑只依赖 SpreadsheetWriter 接口（行输入、字节输出），
openpyxl 的细节封装在 OpenpyxlWriter 中。
"""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence, Union

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from labsupply.errors import NothingToExportError
from labsupply.logger import get_logger
from labsupply.models import ItemStatus, WorkItem

logger = get_logger(__name__)

EXPORT_COLUMNS = (
    "File Name",
    "Product Name",
    "Reference (REF)",
    "Lot Number (LOT)",
    "Expiration Date",
)
DEFAULT_SHEET_NAME = "Lab Supplies"
DEFAULT_FILENAME = "LabSupplyData.xlsx"
XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

Row = Sequence[Optional[str]]


class SpreadsheetWriter(Protocol):
    """行输入、文件字节输出的最小写入接口。"""

    def write(self, header: Sequence[str], rows: Sequence[Row], sheet_name: str) -> bytes:
        ...


class OpenpyxlWriter:
    """
    使用 openpyxl 生成 .xlsx。

    所有值按文本写入（number_format "@"），避免长编号被 Excel 转为科学计数法。
    """

    MAX_COLUMN_WIDTH = 60

    def write(self, header: Sequence[str], rows: Sequence[Row], sheet_name: str) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = sheet_name[:31]

        sheet.append(list(header))
        for cell in sheet[1]:
            cell.font = Font(bold=True)

        for row in rows:
            sheet.append(list(row))
            for cell in sheet[sheet.max_row]:
                cell.number_format = "@"

        for index, title in enumerate(header, start=1):
            values = [str(r[index - 1]) for r in rows if r[index - 1] is not None]
            width = max([len(title)] + [len(v) for v in values]) + 2
            sheet.column_dimensions[get_column_letter(index)].width = min(width, self.MAX_COLUMN_WIDTH)
        sheet.freeze_panes = "A2"

        buffer = BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()


def build_rows(items: Iterable[WorkItem]) -> List[Row]:
    """Return one row per done item in EXPORT_COLUMNS order."""
    rows: List[Row] = []
    for item in items:
        if item.status != ItemStatus.DONE or item.extracted is None:
            continue
        fields = item.extracted
        rows.append((
            item.filename,
            fields.product_name,
            fields.ref_number,
            fields.lot_number,
            fields.expiration_date,
        ))
    return rows


def export_workbook(
    items: Iterable[WorkItem],
    destination: Optional[Union[str, Path]] = None,
    sheet_name: str = DEFAULT_SHEET_NAME,
    writer: Optional[SpreadsheetWriter] = None,
) -> bytes:
    """
    生成导出文件内容；指定 destination 时同时写入磁盘。

    没有 done 状态的工作项时抛出 NothingToExportError，不生成文件。
    """
    rows = build_rows(items)
    if not rows:
        raise NothingToExportError("No data available to export.")

    content = (writer or OpenpyxlWriter()).write(EXPORT_COLUMNS, rows, sheet_name)
    if destination is not None:
        path = Path(destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.info("Exported %d row(s) to %s", len(rows), path)
    else:
        logger.info("Exported %d row(s) (%d bytes)", len(rows), len(content))
    return content
