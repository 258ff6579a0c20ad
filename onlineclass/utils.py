import logging
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_letters + string.digits + "_-"

# 扩展名 -> 资料类型
FILE_TYPE_MAP = {
    "pdf": "pdf",
    "ppt": "ppt",
    "pptx": "pptx",
    "doc": "doc",
    "docx": "docx",
    "xls": "xls",
    "xlsx": "xlsx",
    "png": "image",
    "jpg": "image",
    "jpeg": "image",
    "gif": "image",
    "mp4": "video",
    "avi": "video",
    "mov": "video",
}

FILE_ICONS = {
    "pdf": "📄",
    "ppt": "📊",
    "pptx": "📊",
    "doc": "📝",
    "docx": "📝",
    "xls": "📈",
    "xlsx": "📈",
    "image": "🖼️",
    "video": "🎥",
}


# 生成随机 ID（URL 安全）
def new_id(length: int = 21) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


# 数据库统一存 naive UTC 时间
def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


# 百分比保留两位小数；满分不大于 0 时记 0
def percentage(score: float, max_score: float) -> float:
    if not max_score or max_score <= 0:
        return 0.0
    value = round2(score / max_score * 100)
    return max(0.0, min(100.0, value))


def file_type_for(filename: str) -> str:
    ext = filename.rsplit(".", 1)[1].lower() if "." in filename else ""
    return FILE_TYPE_MAP.get(ext, "other")


# 创建文件夹
def mkdir(path):
    folder_path = Path(path)
    folder_path.mkdir(parents=True, exist_ok=True)
    logger.debug("文件夹 '%s' 已就绪", folder_path)
    return folder_path


def isoformat(value):
    if value is None:
        return None
    return value.isoformat() + ("Z" if value.tzinfo is None else "")
