"""
后端处理模块 (Backend Process Module)
====================================

无界面批处理：读入图片 → 队列控制器提取 → 导出 Excel 与 JSON 结果。
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from labsupply.config import Settings
from labsupply.errors import IntakeError, NothingToExportError
from labsupply.export import export_workbook
from labsupply.extraction import ExtractionClient
from labsupply.intake import load_upload
from labsupply.logger import get_logger
from labsupply.models import ImageUpload, WorkItem
from labsupply.queue import QueueController
from labsupply.queue.controller import Extractor

logger = get_logger("labsupply.app.process")


def ensure_output_dir(output_dir: str) -> Path:
    """确保输出目录存在，不存在则创建。"""
    output_path = Path(output_dir).resolve()
    output_path.mkdir(parents=True, exist_ok=True)
    return output_path


def load_uploads(file_paths: List[str], max_size_mb: int) -> Dict[str, Any]:
    """读入图片；被拒绝的文件记录原因后跳过。"""
    uploads: List[ImageUpload] = []
    rejected: List[Dict[str, str]] = []
    for path in file_paths:
        try:
            uploads.append(load_upload(path, max_size_mb=max_size_mb))
        except IntakeError as exc:
            logger.warning("Skipping %s: %s", path, exc)
            rejected.append({"file": path, "error": str(exc)})
    return {"uploads": uploads, "rejected": rejected}


async def extract_all(
    uploads: List[ImageUpload],
    settings: Settings,
    extractor: Optional[Extractor] = None,
) -> List[WorkItem]:
    """通过队列控制器提取所有图片，返回最终的工作项快照。"""
    if extractor is None:
        extractor = ExtractionClient().extract
    controller = QueueController.from_settings(extractor, settings)
    await controller.start()
    try:
        controller.submit(uploads)
        await controller.run_until_idle()
    finally:
        await controller.stop()
    return list(controller.queue.snapshot())


def item_to_dict(item: WorkItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "filename": item.filename,
        "status": item.status.value,
        "fields": item.extracted.as_dict() if item.extracted else None,
        "error": item.error_message,
    }


def process_files(
    file_paths: List[str],
    settings: Settings,
    output_dir: str = ".",
    output_name: Optional[str] = None,
    extractor: Optional[Extractor] = None,
) -> Dict[str, Any]:
    """
    批处理入口。

    返回包含 items、rejected、export_path 的结果字典；
    没有成功项时 export_path 为 None 并附带 notice。
    """
    loaded = load_uploads(file_paths, settings.MAX_IMAGE_SIZE_MB)
    items = asyncio.run(extract_all(loaded["uploads"], settings, extractor)) if loaded["uploads"] else []

    output_path = ensure_output_dir(output_dir)
    export_path: Optional[str] = None
    notice: Optional[str] = None
    try:
        destination = output_path / (output_name or settings.EXPORT_FILENAME)
        export_workbook(items, destination, sheet_name=settings.EXPORT_SHEET_NAME)
        export_path = str(destination)
    except NothingToExportError as exc:
        notice = str(exc)
        logger.warning(notice)

    return {
        "items": [item_to_dict(item) for item in items],
        "rejected": loaded["rejected"],
        "export_path": export_path,
        "notice": notice,
    }


def write_json_output(result: Dict[str, Any], output_dir: str, output_filename: Optional[str] = None) -> str:
    """将处理结果写入 JSON 文件，返回文件路径。"""
    output_path = ensure_output_dir(output_dir)
    filename = output_filename or f"result_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
    json_path = output_path / filename
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(result, f, ensure_ascii=False, indent=2)
    return str(json_path)
