"""
数据模型模块 (Data Model Module)
===============================

定义上传图片、提取字段、工作项及控制器状态等核心数据结构。
所有模型均为不可变对象，状态变化通过 model_copy 生成新实例。
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_item_id() -> str:
    return uuid.uuid4().hex


class ItemStatus(str, Enum):
    """
    工作项生命周期状态。

    queued -> loading -> done | error
    """
    QUEUED = "queued"
    LOADING = "loading"
    DONE = "done"
    ERROR = "error"


class ImageUpload(BaseModel):
    """
    一张已读入内存的上传图片。

    属性:
        filename: 原始文件名
        data: 图片原始字节（同时作为界面预览句柄）
        media_type: MIME 类型，如 image/png
    """
    filename: str
    data: bytes
    media_type: str

    class Config:
        frozen = True

    @property
    def size(self) -> int:
        return len(self.data)


class ExtractedFields(BaseModel):
    """
    从标签中提取的四个字段，均可为空（表示未找到）。

    序列化时使用 camelCase 名称，与推理服务的响应结构一致。
    """
    product_name: Optional[str] = Field(default=None, alias="productName")
    ref_number: Optional[str] = Field(default=None, alias="refNumber")
    lot_number: Optional[str] = Field(default=None, alias="lotNumber")
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate")

    class Config:
        frozen = True
        populate_by_name = True
        extra = "ignore"

    @field_validator("product_name", "ref_number", "lot_number", "expiration_date", mode="before")
    @classmethod
    def normalize_value(cls, v: Any) -> Any:
        """空字符串视为未找到；数字按原样转为字符串；其他类型交由校验报错。"""
        if v is None:
            return None
        if isinstance(v, bool):
            return v
        if isinstance(v, (int, float)):
            return str(v)
        if isinstance(v, str):
            text = v.strip()
            if not text or text.lower() in ("null", "none", "n/a"):
                return None
            return text
        return v

    def as_dict(self) -> Dict[str, Optional[str]]:
        return self.model_dump(by_alias=True)


class WorkItem(BaseModel):
    """
    一张图片及其提取生命周期。

    属性:
        id: 不透明的唯一标识
        image: 上传图片
        filename: 源文件名
        status: 当前状态
        extracted: 提取结果，仅 done 状态存在
        error_message: 错误信息，仅 error 状态存在
    """
    id: str = Field(default_factory=_new_item_id)
    image: ImageUpload
    filename: str
    status: ItemStatus = ItemStatus.QUEUED
    extracted: Optional[ExtractedFields] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    class Config:
        frozen = True

    @classmethod
    def from_upload(cls, upload: ImageUpload) -> "WorkItem":
        return cls(image=upload, filename=upload.filename)

    def transition(self, status: ItemStatus, **changes: Any) -> "WorkItem":
        """返回一个状态已更新的新实例，原实例保持不变。"""
        return self.model_copy(update={"status": status, "updated_at": _utcnow(), **changes})


class ControllerStatus(BaseModel):
    """队列控制器的只读状态快照，供界面显示。"""
    paused: bool = False
    countdown: int = 0
    in_flight: int = 0
    queued: int = 0
    loading: int = 0
    done: int = 0
    error: int = 0
    window_dispatched: int = 0
    window_completed: int = 0

    class Config:
        frozen = True

    @property
    def idle(self) -> bool:
        return self.queued == 0 and self.in_flight == 0
